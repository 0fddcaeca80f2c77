"""Shared test fixtures for yieldlens."""

from collections.abc import AsyncIterator
from decimal import Decimal

import pytest
import pytest_asyncio

from yieldlens.config import AppSettings, PricingSettings, ReplaySettings, SnapshotSettings
from yieldlens.data.database import LedgerDatabase
from yieldlens.data.rates import PriceStore, RateStore
from yieldlens.data.store import LedgerEventStore


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (UTC days, LP token configured)."""
    return AppSettings(
        log_level="DEBUG",
        replay=ReplaySettings(default_days=30, timezone="UTC"),
        pricing=PricingSettings(fallback_usd_price=Decimal("0"), lp_token_address="LPTOKEN"),
        snapshot=SnapshotSettings(tracked_pools=["POOL_A", "POOL_B"]),
    )


@pytest_asyncio.fixture
async def ledger_db(tmp_path) -> AsyncIterator[LedgerDatabase]:
    """A fresh on-disk ledger database per test."""
    async with LedgerDatabase(str(tmp_path / "ledger.db")) as database:
        yield database


@pytest.fixture
def store(ledger_db: LedgerDatabase) -> LedgerEventStore:
    return LedgerEventStore(ledger_db)


@pytest.fixture
def rate_store(ledger_db: LedgerDatabase) -> RateStore:
    return RateStore(ledger_db)


@pytest.fixture
def price_store(ledger_db: LedgerDatabase) -> PriceStore:
    return PriceStore(ledger_db)
