"""Yield attribution.

Splits a position's value change into protocol yield and price change,
all-time (average-cost basis) or over a trailing period, for supply,
borrow and backstop positions.
"""

from yieldlens.attribution.breakdown import (
    borrow_breakdown_from_account,
    cost_basis_account,
    historical_borrow_breakdown,
    historical_yield_breakdown,
    period_yield_breakdown,
    yield_breakdown_from_account,
)
from yieldlens.attribution.cost_basis import CostBasisService, extract_flows
from yieldlens.attribution.models import (
    BorrowAttribution,
    BorrowBreakdown,
    CostBasisAccount,
    FlowSet,
    PeriodAttribution,
    PeriodYieldBreakdown,
    PricedFlow,
    Side,
    SupplyAttribution,
    YieldBreakdown,
)
from yieldlens.attribution.portfolio import (
    attribute_backstop_positions,
    attribute_borrow_positions,
    attribute_period,
    attribute_supply_positions,
    balance_at_date,
    period_start_date,
)

__all__ = [
    "BorrowAttribution",
    "BorrowBreakdown",
    "CostBasisAccount",
    "CostBasisService",
    "FlowSet",
    "PeriodAttribution",
    "PeriodYieldBreakdown",
    "PricedFlow",
    "Side",
    "SupplyAttribution",
    "YieldBreakdown",
    "attribute_backstop_positions",
    "attribute_borrow_positions",
    "attribute_period",
    "attribute_supply_positions",
    "balance_at_date",
    "borrow_breakdown_from_account",
    "cost_basis_account",
    "extract_flows",
    "historical_borrow_breakdown",
    "historical_yield_breakdown",
    "period_start_date",
    "period_yield_breakdown",
    "yield_breakdown_from_account",
]
