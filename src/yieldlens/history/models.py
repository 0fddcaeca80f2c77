"""Data models for reconstructed balance histories.

All quantities are Decimal in whole-token units (raw amounts already
scaled by the token's decimals).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

ZERO = Decimal("0")


@dataclass(frozen=True)
class CumulativePosition:
    """Running totals for one (user, pool, asset) after some prefix of events.

    Addition is component-wise, so a position is both a running state and a
    per-event delta.
    """

    supply_btokens: Decimal = ZERO
    collateral_btokens: Decimal = ZERO
    liability_dtokens: Decimal = ZERO
    total_deposits: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    total_borrows: Decimal = ZERO
    total_repays: Decimal = ZERO

    def __add__(self, other: "CumulativePosition") -> "CumulativePosition":
        return CumulativePosition(
            supply_btokens=self.supply_btokens + other.supply_btokens,
            collateral_btokens=self.collateral_btokens + other.collateral_btokens,
            liability_dtokens=self.liability_dtokens + other.liability_dtokens,
            total_deposits=self.total_deposits + other.total_deposits,
            total_withdrawals=self.total_withdrawals + other.total_withdrawals,
            total_borrows=self.total_borrows + other.total_borrows,
            total_repays=self.total_repays + other.total_repays,
        )

    @property
    def cost_basis(self) -> Decimal:
        """Deposits minus withdrawals, never negative."""
        return max(ZERO, self.total_deposits - self.total_withdrawals)

    @property
    def borrow_cost_basis(self) -> Decimal:
        return max(ZERO, self.total_borrows - self.total_repays)


ZERO_POSITION = CumulativePosition()


@dataclass(frozen=True)
class ReplayStep:
    """Position of one pool immediately after an event."""

    pool_id: str
    day: date
    ledger_sequence: int
    position: CumulativePosition


@dataclass
class ReplayResult:
    steps: list[ReplayStep] = field(default_factory=list)
    final: dict[str, CumulativePosition] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyBalance:
    """Point-in-time position of one (pool, day), valued with that day's rates."""

    pool_id: str
    asset_address: str
    date: date
    ledger_sequence: int
    supply_btokens: Decimal
    collateral_btokens: Decimal
    liability_dtokens: Decimal
    total_deposits: Decimal
    total_withdrawals: Decimal
    total_borrows: Decimal
    total_repays: Decimal
    cost_basis: Decimal
    borrow_cost_basis: Decimal
    b_rate: Decimal
    d_rate: Decimal
    supply_balance: Decimal
    collateral_balance: Decimal
    debt_balance: Decimal
    net_balance: Decimal
    total_yield: Decimal
    total_interest_accrued: Decimal

    @property
    def asset_balance(self) -> Decimal:
        """Supplied plus collateral, in underlying units."""
        return self.supply_balance + self.collateral_balance


@dataclass
class BalanceHistory:
    user_address: str
    asset_address: str
    history: list[DailyBalance] = field(default_factory=list)
    first_event_date: date | None = None

    @property
    def pool_ids(self) -> list[str]:
        return sorted({r.pool_id for r in self.history})

    def for_pool(self, pool_id: str) -> list[DailyBalance]:
        return [r for r in self.history if r.pool_id == pool_id]

    def latest(self, pool_id: str) -> DailyBalance | None:
        rows = self.for_pool(pool_id)
        return rows[-1] if rows else None


@dataclass(frozen=True)
class PositionChange:
    """Day-over-day change in units summed across pools."""

    index: int  # position of `date` in the ascending list of distinct days
    date: date
    supply_change: Decimal
    collateral_change: Decimal
    debt_change: Decimal
    net_change: Decimal


@dataclass(frozen=True)
class PoolEarnings:
    total_interest: Decimal
    current_apy: Decimal
    avg_daily_interest: Decimal
    projected_annual: Decimal
    avg_position: Decimal


@dataclass(frozen=True)
class EarningsStats:
    total_interest: Decimal = ZERO
    current_apy: Decimal = ZERO
    avg_daily_interest: Decimal = ZERO
    projected_annual: Decimal = ZERO
    day_count: int = 0
    avg_position: Decimal = ZERO
    per_pool: dict[str, PoolEarnings] = field(default_factory=dict)
