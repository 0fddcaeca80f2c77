"""Join historical cost basis and balance history onto a live snapshot.

Live positions are the source of truth for what the wallet holds now;
the store-backed accounts and histories supply what it paid and when.
Keys are composite "{pool_id}-{asset}" for pool positions and pool ids
for backstop positions.
"""

from collections.abc import Mapping, Sequence
from datetime import date, timedelta
from decimal import Decimal

from yieldlens.attribution.breakdown import (
    borrow_breakdown_from_account,
    historical_yield_breakdown,
    period_yield_breakdown,
    yield_breakdown_from_account,
)
from yieldlens.attribution.models import (
    ZERO,
    BorrowAttribution,
    CostBasisAccount,
    FlowSet,
    PeriodAttribution,
    PricedFlow,
    SupplyAttribution,
)
from yieldlens.data.rates import PriceSeries, resolve_from_series
from yieldlens.history.models import BalanceHistory
from yieldlens.live.models import BackstopPosition, WalletSnapshot
from yieldlens.logging import get_logger
from yieldlens.models import PriceSource

logger = get_logger(__name__)

PERIODS = ("1W", "1M", "1Y", "All")
ALL_TIME_START = date(2020, 1, 1)


def attribute_supply_positions(
    snapshot: WalletSnapshot, accounts: Mapping[str, CostBasisAccount]
) -> SupplyAttribution:
    """All-time breakdown of every live supply position with a known cost basis."""
    result = SupplyAttribution()
    for position in snapshot.positions:
        if position.supply_amount <= 0 or position.price is None:
            continue
        account = accounts.get(position.id)
        if account is None:
            logger.debug("cost_basis_missing", key=position.id, side="supply")
            continue
        result.add(
            position.id,
            yield_breakdown_from_account(account, position.supply_amount, position.price),
        )
    return result


def attribute_borrow_positions(
    snapshot: WalletSnapshot, accounts: Mapping[str, CostBasisAccount]
) -> BorrowAttribution:
    """All-time cost breakdown of every live debt position with a known borrow basis."""
    result = BorrowAttribution()
    for position in snapshot.positions:
        if position.borrow_amount <= 0 or position.price is None:
            continue
        account = accounts.get(position.id)
        if account is None:
            logger.debug("cost_basis_missing", key=position.id, side="borrow")
            continue
        result.add(
            position.id,
            borrow_breakdown_from_account(account, position.borrow_amount, position.price),
        )
    return result


def attribute_backstop_positions(
    positions: Sequence[BackstopPosition],
    lp_price: Decimal | None,
    flows_by_pool: Mapping[str, FlowSet],
    net_deposited_lp: Mapping[str, Decimal],
    today: date | None = None,
) -> SupplyAttribution:
    """Backstop breakdown per pool, queued LP tokens included.

    Without priced flows the position is valued from its net deposited LP
    count at the current LP price, so the price change is zero.
    """
    result = SupplyAttribution()
    if lp_price is None:
        return result
    for position in positions:
        current_lp = position.lp_tokens + position.q4w_lp_tokens
        if current_lp <= 0:
            continue
        flows = flows_by_pool.get(position.pool_id)
        if flows:
            breakdown = historical_yield_breakdown(
                current_lp, lp_price, flows.inflows, flows.outflows, today
            )
        else:
            net = net_deposited_lp.get(position.pool_id, ZERO)
            if net <= 0:
                net = current_lp
            basis = PricedFlow(
                day=None,
                tokens=net,
                price=lp_price,
                usd_value=net * lp_price,
                price_source=PriceSource.LIVE_FALLBACK,
            )
            breakdown = historical_yield_breakdown(current_lp, lp_price, [basis], [])
        result.add(position.pool_id, breakdown)
    return result


def period_start_date(period: str, today: date) -> date:
    """First day of a trailing period: 1W, 1M (30 days), 1Y or All."""
    if period == "1W":
        return today - timedelta(days=7)
    if period == "1M":
        return today - timedelta(days=30)
    if period == "1Y":
        try:
            return today.replace(year=today.year - 1)
        except ValueError:
            # Feb 29
            return today.replace(year=today.year - 1, day=28)
    if period == "All":
        return ALL_TIME_START
    raise ValueError(f"Unknown period: {period!r}, expected one of {PERIODS}")


def balance_at_date(history: BalanceHistory, day: date, pool_id: str) -> Decimal:
    """Supplied plus collateral tokens of the latest record on or before ``day``.

    Zero when the position started after ``day``.
    """
    balance = ZERO
    for row in history.for_pool(pool_id):
        if row.date > day:
            break
        balance = row.asset_balance
    return balance


def attribute_period(
    snapshot: WalletSnapshot,
    histories: Mapping[str, BalanceHistory],
    price_series: Mapping[str, PriceSeries],
    period: str,
    today: date,
) -> PeriodAttribution:
    """Period breakdown of live supply positions against their balance at the period start."""
    start = period_start_date(period, today)
    result = PeriodAttribution(period=period, start_date=start)
    for position in snapshot.positions:
        if position.supply_amount <= 0 or position.price is None:
            continue
        history = histories.get(position.asset_id)
        tokens_at_start = (
            balance_at_date(history, start, position.pool_id) if history is not None else ZERO
        )
        series = price_series.get(position.asset_id) or PriceSeries([])
        price_at_start = resolve_from_series(series, start, live_price=position.price).usd_price
        result.add(
            position.id,
            period_yield_breakdown(
                tokens_at_start, price_at_start, position.supply_amount, position.price
            ),
        )
    return result
