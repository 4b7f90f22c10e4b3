"""Pytest configuration and fixtures for fasthook tests."""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

# Set required environment variables before any imports
os.environ.setdefault("FASTHOOK_ROOT_API_KEY", "test_root_api_key_12345")
os.environ.setdefault("FASTHOOK_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fasthook.config import Settings, clear_settings_cache, get_settings
from fasthook.db.models import Base, Webhook
from fasthook.db.session import (
    build_engine,
    get_async_session_factory,
    get_session,
    session_scope,
)
from fasthook.main import create_app
from fasthook.webhook.registry import register_webhook

TEST_ROOT_API_KEY = "test_root_api_key_12345"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a temporary SQLite database."""
    clear_settings_cache()
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fasthook.db'}",
        root_api_key=TEST_ROOT_API_KEY,
        api_host="127.0.0.1",
        api_port=18000,
        instance_id="test-instance",
        webhook_resolve_dns=False,
        webhook_max_attempts=3,
        webhook_retry_base_delay=60.0,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings):
    """Create test database engine with fresh tables."""
    engine = build_engine(test_settings)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def make_webhook(test_session: AsyncSession, test_settings: Settings):
    """Factory registering committed webhooks."""

    async def _make(
        events: list[str],
        url: str = "https://hooks.example.com/receive",
        created_by: str = "user-1",
        is_active: bool = True,
        secret: str | None = None,
    ) -> Webhook:
        webhook, _ = await register_webhook(
            test_session,
            url=url,
            events=events,
            created_by=created_by,
            secret=secret,
            settings=test_settings,
        )
        webhook.is_active = is_active
        await test_session.commit()
        return webhook

    return _make


@pytest_asyncio.fixture
async def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[FastAPI, None]:
    """Create test FastAPI application."""
    application = create_app(test_settings)

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_scope(session_factory) as session:
            yield session

    application.dependency_overrides[get_session] = override_get_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_async_session_factory] = lambda: session_factory

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_client(
    app: FastAPI,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create authenticated test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": test_settings.root_api_key.get_secret_value()},
    ) as ac:
        yield ac
