"""fasthook - webhook subscription and signed delivery service."""

__version__ = "0.1.0"
