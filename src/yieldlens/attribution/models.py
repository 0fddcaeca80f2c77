"""Data models for yield attribution.

All values are Decimal. Token quantities are whole-token units; prices and
values are USD.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

from yieldlens.models import PriceSource

ZERO = Decimal("0")


class Side(str, Enum):
    """Which side of a lending position a flow belongs to."""

    SUPPLY = "supply"  # supply/collateral, auction lot leg
    BORROW = "borrow"  # liabilities, auction bid leg


@dataclass(frozen=True)
class PricedFlow:
    """A deposit/withdrawal (or borrow/repay) valued at its day's price."""

    day: date | None
    tokens: Decimal
    price: Decimal
    usd_value: Decimal
    price_source: PriceSource = PriceSource.EXACT


@dataclass(frozen=True)
class CostBasisAccount:
    """Average-cost account for one (pool, asset) position.

    weighted_avg_price is recomputed from the full deposit set; withdrawals
    debit cost at that average, never at their own market price.
    """

    total_deposited_tokens: Decimal
    total_deposited_usd: Decimal
    total_withdrawn_tokens: Decimal
    weighted_avg_price: Decimal
    cost_basis: Decimal

    @property
    def net_deposited_tokens(self) -> Decimal:
        return self.total_deposited_tokens - self.total_withdrawn_tokens


@dataclass(frozen=True)
class YieldBreakdown:
    """All-time decomposition of a supply-side position's value change."""

    cost_basis_historical: Decimal
    weighted_avg_deposit_price: Decimal
    net_deposited_tokens: Decimal
    protocol_yield_tokens: Decimal
    protocol_yield_usd: Decimal
    price_change_usd: Decimal
    price_change_percent: Decimal
    current_value_usd: Decimal
    total_earned_usd: Decimal
    total_earned_percent: Decimal


@dataclass(frozen=True)
class PeriodYieldBreakdown:
    """Decomposition of a position's value change over a trailing period."""

    tokens_at_start: Decimal
    price_at_start: Decimal
    value_at_start: Decimal
    tokens_now: Decimal
    price_now: Decimal
    value_now: Decimal
    protocol_yield_usd: Decimal
    price_change_usd: Decimal
    total_earned_usd: Decimal
    total_earned_percent: Decimal


@dataclass(frozen=True)
class BorrowBreakdown:
    """All-time decomposition of a debt position's cost.

    A rising asset price is a cost to the borrower, so price_change_usd is
    positive when the price went up.
    """

    borrow_cost_basis: Decimal
    weighted_avg_borrow_price: Decimal
    net_borrowed_tokens: Decimal
    interest_accrued_tokens: Decimal
    interest_cost_usd: Decimal
    price_change_usd: Decimal
    current_debt_usd: Decimal
    total_cost_usd: Decimal
    total_cost_percent: Decimal


@dataclass
class FlowSet:
    """Priced inflows and outflows of one position."""

    inflows: list[PricedFlow] = field(default_factory=list)
    outflows: list[PricedFlow] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.inflows or self.outflows)


@dataclass
class SupplyAttribution:
    """Historical attribution joined onto live supply positions."""

    by_key: dict[str, YieldBreakdown] = field(default_factory=dict)
    total_cost_basis: Decimal = ZERO
    total_protocol_yield_usd: Decimal = ZERO
    total_price_change_usd: Decimal = ZERO
    total_earned_usd: Decimal = ZERO
    total_current_value_usd: Decimal = ZERO

    def add(self, key: str, breakdown: YieldBreakdown) -> None:
        self.by_key[key] = breakdown
        self.total_cost_basis += breakdown.cost_basis_historical
        self.total_protocol_yield_usd += breakdown.protocol_yield_usd
        self.total_price_change_usd += breakdown.price_change_usd
        self.total_earned_usd += breakdown.total_earned_usd
        self.total_current_value_usd += breakdown.current_value_usd


@dataclass
class BorrowAttribution:
    """Historical attribution joined onto live debt positions."""

    by_key: dict[str, BorrowBreakdown] = field(default_factory=dict)
    total_borrow_cost_basis: Decimal = ZERO
    total_interest_cost_usd: Decimal = ZERO
    total_price_change_usd: Decimal = ZERO
    total_cost_usd: Decimal = ZERO
    total_current_debt_usd: Decimal = ZERO

    def add(self, key: str, breakdown: BorrowBreakdown) -> None:
        self.by_key[key] = breakdown
        self.total_borrow_cost_basis += breakdown.borrow_cost_basis
        self.total_interest_cost_usd += breakdown.interest_cost_usd
        self.total_price_change_usd += breakdown.price_change_usd
        self.total_cost_usd += breakdown.total_cost_usd
        self.total_current_debt_usd += breakdown.current_debt_usd


@dataclass
class PeriodAttribution:
    """Period breakdown across live supply positions."""

    period: str
    start_date: date
    by_key: dict[str, PeriodYieldBreakdown] = field(default_factory=dict)
    total_value_at_start: Decimal = ZERO
    total_value_now: Decimal = ZERO
    total_protocol_yield_usd: Decimal = ZERO
    total_price_change_usd: Decimal = ZERO

    def add(self, key: str, breakdown: PeriodYieldBreakdown) -> None:
        self.by_key[key] = breakdown
        self.total_value_at_start += breakdown.value_at_start
        self.total_value_now += breakdown.value_now
        self.total_protocol_yield_usd += breakdown.protocol_yield_usd
        self.total_price_change_usd += breakdown.price_change_usd

    @property
    def total_earned_usd(self) -> Decimal:
        return self.total_protocol_yield_usd + self.total_price_change_usd

    @property
    def total_earned_percent(self) -> Decimal:
        if self.total_value_at_start <= 0:
            return ZERO
        return self.total_earned_usd / self.total_value_at_start * 100
