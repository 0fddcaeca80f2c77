"""Ledger event store and rate/price time series.

Provides the SQLite database manager, the typed event store, and the
forward-filling rate and price accessors consumed by the replay and
attribution engines.
"""

from yieldlens.data.database import LedgerDatabase
from yieldlens.data.models import PeriodApy, PoolAssetPair, PoolInfo, TokenInfo
from yieldlens.data.rates import (
    PriceResolver,
    PriceSeries,
    PriceStore,
    RateSeries,
    RateStore,
    ResolvedPrice,
)
from yieldlens.data.store import LedgerEventStore

__all__ = [
    "LedgerDatabase",
    "LedgerEventStore",
    "PeriodApy",
    "PoolAssetPair",
    "PoolInfo",
    "PriceResolver",
    "PriceSeries",
    "PriceStore",
    "RateSeries",
    "RateStore",
    "ResolvedPrice",
    "TokenInfo",
]
