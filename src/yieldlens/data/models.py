"""Metadata rows and query results of the ledger store.

Amounts and rates are stored as TEXT in SQLite and restored as Decimal
(or int for raw on-chain quantities) on read.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal


@dataclass
class PoolInfo:
    """A tracked lending pool."""

    pool_id: str
    name: str
    short_name: str | None = None
    version: int = 2
    is_active: bool = True


@dataclass
class TokenInfo:
    """Token dictionary entry."""

    asset_address: str
    symbol: str
    name: str | None = None
    decimals: int = 7
    is_native: bool = False


@dataclass
class PoolAssetPair:
    """A (pool, asset) combination the user has touched."""

    pool_id: str
    asset_address: str


@dataclass
class PeriodApy:
    """Annualised supply APY from b_rate growth over a trailing window."""

    pool_id: str
    asset_address: str
    apy: Decimal | None  # percent; None when the window holds fewer than two days
    start_date: date | None = None
    end_date: date | None = None
