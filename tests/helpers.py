"""Shared async helpers for the test-suite."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


@asynccontextmanager
async def sqlite_sessions(
    path: Path, init_schema: Callable
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """File-backed SQLite engine living for one ``asyncio.run`` call."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    await init_schema(engine)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


def mock_broker() -> MagicMock:
    broker = MagicMock()
    broker.publish = AsyncMock(return_value=1)
    broker.publish_with_response = AsyncMock()
    broker.subscribe = AsyncMock()
    return broker


async def eventually(condition: Callable[[], bool], timeout: float = 1.0) -> None:
    """Wait until ``condition()`` holds; fail the test otherwise."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
