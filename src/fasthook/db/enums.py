"""Database enum types for consistent status values."""

from enum import Enum


class DeliveryStatus(str, Enum):
    """Status values for webhook deliveries."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
