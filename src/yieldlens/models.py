"""Shared domain models: ledger events, rate and price samples.

CRITICAL: All monetary values, token quantities and rates use Decimal.
Raw on-chain amounts stay as int (smallest token unit) until scaled.

Regular pool actions and backstop actions are two distinct event types
merged by the caller; neither carries the other's fields.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from zoneinfo import ZoneInfo

from yieldlens.exceptions import UnknownActionError

# auction_type for liquidation auctions; bad-debt and interest auctions use 1 and 2
LIQUIDATION_AUCTION = 0


class PoolAction(str, Enum):
    """Action recorded against a lending pool reserve."""

    SUPPLY = "supply"
    WITHDRAW = "withdraw"
    SUPPLY_COLLATERAL = "supply_collateral"
    WITHDRAW_COLLATERAL = "withdraw_collateral"
    BORROW = "borrow"
    REPAY = "repay"
    CLAIM = "claim"
    NEW_AUCTION = "new_auction"
    FILL_AUCTION = "fill_auction"
    DELETE_AUCTION = "delete_auction"

    @property
    def is_auction(self) -> bool:
        return self in _AUCTION_ACTIONS


_AUCTION_ACTIONS = frozenset(
    {PoolAction.NEW_AUCTION, PoolAction.FILL_AUCTION, PoolAction.DELETE_AUCTION}
)


class BackstopAction(str, Enum):
    """Action recorded against a pool's backstop."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    QUEUE_WITHDRAWAL = "queue_withdrawal"
    DEQUEUE_WITHDRAWAL = "dequeue_withdrawal"
    CLAIM = "claim"
    DONATE = "donate"


class PriceSource(str, Enum):
    """Provenance of a resolved historical price."""

    EXACT = "exact"
    FORWARD_FILL = "forward_fill"
    LIVE_FALLBACK = "live_fallback"
    CONSTANT = "constant"


def parse_pool_action(value: str) -> PoolAction:
    """Map a stored action_type string to PoolAction.

    Raises:
        UnknownActionError: If the string is not a known pool action.
    """
    try:
        return PoolAction(value)
    except ValueError as exc:
        raise UnknownActionError(f"unknown pool action_type: {value!r}") from exc


def parse_backstop_action(value: str) -> BackstopAction:
    """Map a stored action_type string to BackstopAction.

    Raises:
        UnknownActionError: If the string is not a known backstop action.
    """
    try:
        return BackstopAction(value)
    except ValueError as exc:
        raise UnknownActionError(f"unknown backstop action_type: {value!r}") from exc


def composite_key(pool_id: str, asset_address: str) -> str:
    """Key joining historical attribution onto live positions."""
    return f"{pool_id}-{asset_address}"


@dataclass(frozen=True)
class AuctionLegs:
    """Lot (collateral) and bid (debt) legs of an auction event."""

    auction_type: int
    filler_address: str | None = None
    lot_asset: str | None = None
    lot_amount: int | None = None
    bid_asset: str | None = None
    bid_amount: int | None = None
    liquidation_percent: int | None = None

    @property
    def is_liquidation(self) -> bool:
        return self.auction_type == LIQUIDATION_AUCTION

    def touches(self, asset_address: str) -> bool:
        return asset_address in (self.lot_asset, self.bid_asset)


@dataclass(frozen=True)
class PoolEvent:
    """Immutable pool ledger fact. Ordered by (closed_at, ledger_sequence)."""

    pool_id: str
    user_address: str
    action: PoolAction
    ledger_sequence: int
    closed_at: datetime  # timezone-aware, UTC
    asset_address: str | None = None
    amount_underlying: int | None = None
    amount_tokens: int | None = None
    implied_rate: Decimal | None = None
    transaction_hash: str = ""
    auction: AuctionLegs | None = None

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.closed_at, self.ledger_sequence)


@dataclass(frozen=True)
class BackstopEvent:
    """Immutable backstop ledger fact. Ordered by (closed_at, ledger_sequence)."""

    pool_id: str
    user_address: str
    action: BackstopAction
    ledger_sequence: int
    closed_at: datetime
    lp_tokens: int | None = None
    shares: int | None = None
    q4w_expiration: int | None = None  # unix seconds
    transaction_hash: str = ""

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.closed_at, self.ledger_sequence)


@dataclass(frozen=True)
class RateSample:
    """Daily b_rate/d_rate for one pool reserve. Either rate may be absent."""

    pool_id: str
    asset_address: str
    rate_date: date
    b_rate: Decimal | None
    d_rate: Decimal | None


@dataclass(frozen=True)
class PriceSample:
    """Daily USD price for one token."""

    token_address: str
    price_date: date
    usd_price: Decimal


def resolve_timezone(name: str) -> tzinfo:
    """Timezone used for calendar days ("today", an event's day)."""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def local_day(moment: datetime, tz: tzinfo) -> date:
    return moment.astimezone(tz).date()
