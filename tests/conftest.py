"""Pytest configuration and fixtures."""

from collections.abc import Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bridge_flow_tracker.storage.database import DatabaseManager
from bridge_flow_tracker.storage.models import Base
from bridge_flow_tracker.storage.repos import FlowType, TransactionDTO

SENDER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
RECIPIENT = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    """Database manager bound to the in-memory test engine."""
    return DatabaseManager("sqlite+aiosqlite:///:memory:", engine=async_engine)


@pytest.fixture
def make_tx() -> Callable[..., TransactionDTO]:
    """Factory for canonical transactions with sensible defaults."""

    def _make(
        n: int,
        *,
        value: int = 1000,
        timestamp: int = 1_700_000_000,
        type: FlowType = FlowType.INFLOW,
        block_number: int | None = None,
        from_address: str = SENDER,
        to_address: str = RECIPIENT,
    ) -> TransactionDTO:
        return TransactionDTO(
            hash="0x" + f"{n:064x}",
            from_address=from_address,
            to_address=to_address,
            value=value,
            timestamp=timestamp,
            type=type,
            block_number=block_number if block_number is not None else 100 + n,
        )

    return _make
