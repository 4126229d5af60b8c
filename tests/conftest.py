"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from archon import db
from archon.api import create_app
from archon.events import LifecycleEvent, event_bus


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A fresh file-backed SQLite database per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'archon.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[None]:
    """Point the module engine at the test database and create the schema."""
    db.configure_engine(database_url)
    await db.init_db()
    yield
    await db.engine.dispose()


@pytest_asyncio.fixture
async def client(database: None) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client bound to a fresh app instance."""
    transport = httpx.ASGITransport(app=create_app(), raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def captured_events() -> Generator[list[LifecycleEvent]]:
    """Collect every event the bus emits during the test."""
    events: list[LifecycleEvent] = []
    event_bus.on_event(events.append)
    yield events
    event_bus.remove_handler(events.append)
