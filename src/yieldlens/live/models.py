"""Data models for live wallet snapshots.

Rebuilt from live protocol state on every request and never persisted.
Raw b-/d-token and share balances stay int; everything derived is Decimal.
APYs and APRs are percentages.
"""

from dataclasses import dataclass, field
from decimal import Decimal

ZERO = Decimal("0")


@dataclass(frozen=True)
class ReservePosition:
    """A wallet's supply/collateral/borrow position in one pool reserve."""

    id: str  # composite key "{pool_id}-{asset_id}"
    pool_id: str
    pool_name: str
    asset_id: str
    symbol: str
    name: str
    price: Decimal | None
    supply_btokens: int
    collateral_btokens: int
    liability_dtokens: int
    non_collateral_amount: Decimal
    collateral_amount: Decimal
    borrow_amount: Decimal
    supply_usd: Decimal
    collateral_usd: Decimal
    borrow_usd: Decimal
    supply_apy: Decimal
    borrow_apy: Decimal
    supply_emission_apy: Decimal
    borrow_emission_apy: Decimal
    collateral_factor: Decimal
    liability_factor: Decimal
    utilization: Decimal
    b_rate: Decimal
    d_rate: Decimal

    @property
    def supply_amount(self) -> Decimal:
        """Supplied plus collateral, in underlying tokens."""
        return self.non_collateral_amount + self.collateral_amount


@dataclass(frozen=True)
class PoolEstimate:
    """Pool-level health and capacity for the wallet's positions."""

    pool_id: str
    pool_name: str
    total_supplied_usd: Decimal
    total_borrowed_usd: Decimal
    total_collateral_usd: Decimal
    total_effective_collateral: Decimal
    total_effective_liabilities: Decimal
    borrow_capacity: Decimal
    borrow_limit: Decimal  # effective liabilities / effective collateral
    health_factor: Decimal | None  # None without liabilities
    net_apy: Decimal


@dataclass(frozen=True)
class Q4WChunk:
    """One queued backstop withdrawal with its own unlock time."""

    shares: int
    lp_tokens: Decimal
    lp_tokens_usd: Decimal
    expiration: int
    unlocked: bool


@dataclass(frozen=True)
class BackstopPosition:
    pool_id: str
    pool_name: str
    shares: int
    lp_tokens: Decimal
    lp_tokens_usd: Decimal
    q4w_shares: int
    q4w_lp_tokens: Decimal
    q4w_lp_tokens_usd: Decimal
    unlocked_q4w_shares: int
    unlocked_q4w_lp_tokens: Decimal
    q4w_chunks: list[Q4WChunk]  # soonest unlock first
    interest_apr: Decimal
    emission_apy: Decimal
    claimable_emissions: Decimal
    pool_q4w_percent: Decimal


@dataclass(frozen=True)
class SnapshotFailure:
    """A dependency that failed and was left out of the snapshot."""

    pool_id: str
    component: str
    error: str


@dataclass
class WalletSnapshot:
    wallet: str
    positions: list[ReservePosition] = field(default_factory=list)
    backstop_positions: list[BackstopPosition] = field(default_factory=list)
    pool_estimates: list[PoolEstimate] = field(default_factory=list)
    total_supply_usd: Decimal = ZERO
    total_borrow_usd: Decimal = ZERO
    total_collateral_usd: Decimal = ZERO
    total_non_collateral_usd: Decimal = ZERO
    total_backstop_usd: Decimal = ZERO
    total_backstop_q4w_usd: Decimal = ZERO
    net_position_usd: Decimal = ZERO
    weighted_supply_apy: Decimal | None = None
    weighted_borrow_apy: Decimal | None = None
    net_apy: Decimal | None = None
    weighted_blnd_apy: Decimal | None = None
    weighted_supply_borrow_blnd_apy: Decimal | None = None
    total_emissions: Decimal = ZERO
    total_supply_emissions: Decimal = ZERO
    total_borrow_emissions: Decimal = ZERO
    per_pool_emissions: dict[str, Decimal] = field(default_factory=dict)
    per_pool_supply_emissions: dict[str, Decimal] = field(default_factory=dict)
    per_pool_borrow_emissions: dict[str, Decimal] = field(default_factory=dict)
    blnd_price: Decimal | None = None
    lp_token_price: Decimal | None = None
    blnd_per_lp_token: Decimal = ZERO
    backstop_pool_blnd: int = 0
    backstop_pool_shares: int = 0
    excluded: list[SnapshotFailure] = field(default_factory=list)

    def position(self, key: str) -> ReservePosition | None:
        for p in self.positions:
            if p.id == key:
                return p
        return None

    def backstop_position(self, pool_id: str) -> BackstopPosition | None:
        for bp in self.backstop_positions:
            if bp.pool_id == pool_id:
                return bp
        return None
