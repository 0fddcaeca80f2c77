"""Pure yield-attribution calculators (no I/O).

Supply side uses the average-cost method:
    weighted_avg = sum(deposit_usd) / sum(deposit_tokens)
    cost_basis   = sum(deposit_usd) - withdrawn_tokens * weighted_avg
    protocol     = (current_tokens - net_deposited) * current_price
    price_change = net_deposited * (current_price - weighted_avg)
so protocol + price_change == current_value - cost_basis.

Flows dated today are re-priced at the current price first; a once-daily
price feed would otherwise manufacture intraday P&L.
"""

from collections.abc import Sequence
from datetime import date
from decimal import Decimal

from yieldlens.attribution.models import (
    ZERO,
    BorrowBreakdown,
    CostBasisAccount,
    PeriodYieldBreakdown,
    PricedFlow,
    YieldBreakdown,
)
from yieldlens.models import PriceSource


def _percent(numerator: Decimal, base: Decimal) -> Decimal:
    """numerator / base * 100, collapsing to 0 when base is not positive."""
    if base <= 0:
        return ZERO
    return numerator / base * 100


def reprice_same_day(
    flows: Sequence[PricedFlow],
    current_price: Decimal,
    today: date | None,
) -> list[PricedFlow]:
    """Value flows dated ``today`` at the current price."""
    if today is None:
        return list(flows)
    repriced = []
    for flow in flows:
        if flow.day == today:
            flow = PricedFlow(
                day=flow.day,
                tokens=flow.tokens,
                price=current_price,
                usd_value=flow.tokens * current_price,
                price_source=PriceSource.LIVE_FALLBACK,
            )
        repriced.append(flow)
    return repriced


def cost_basis_account(
    deposits: Sequence[PricedFlow],
    withdrawals: Sequence[PricedFlow],
    current_price: Decimal,
    today: date | None = None,
) -> CostBasisAccount:
    """Average-cost account from priced flows.

    With nothing deposited the weighted average falls back to current_price.
    """
    deposits = reprice_same_day(deposits, current_price, today)

    deposited_usd = sum((d.usd_value for d in deposits), ZERO)
    deposited_tokens = sum((d.tokens for d in deposits), ZERO)
    withdrawn_tokens = sum((w.tokens for w in withdrawals), ZERO)

    weighted_avg = deposited_usd / deposited_tokens if deposited_tokens > 0 else current_price

    return CostBasisAccount(
        total_deposited_tokens=deposited_tokens,
        total_deposited_usd=deposited_usd,
        total_withdrawn_tokens=withdrawn_tokens,
        weighted_avg_price=weighted_avg,
        cost_basis=deposited_usd - withdrawn_tokens * weighted_avg,
    )


def yield_breakdown_from_account(
    account: CostBasisAccount,
    current_balance: Decimal,
    current_price: Decimal,
) -> YieldBreakdown:
    """Split a supply position into protocol yield and price change against its account.

    Uses the account's own weighted average and cost basis, so the split
    holds even when more was withdrawn than deposited (net <= 0).
    """
    net = account.net_deposited_tokens
    avg = account.weighted_avg_price
    cost_basis = account.cost_basis

    protocol_tokens = current_balance - net
    protocol_usd = protocol_tokens * current_price
    price_change = net * (current_price - avg)
    current_value = current_balance * current_price
    total_earned = current_value - cost_basis

    return YieldBreakdown(
        cost_basis_historical=cost_basis,
        weighted_avg_deposit_price=avg,
        net_deposited_tokens=net,
        protocol_yield_tokens=protocol_tokens,
        protocol_yield_usd=protocol_usd,
        price_change_usd=price_change,
        price_change_percent=(
            _percent(current_price - avg, avg) if cost_basis > 0 else ZERO
        ),
        current_value_usd=current_value,
        total_earned_usd=total_earned,
        total_earned_percent=_percent(total_earned, cost_basis),
    )


def historical_yield_breakdown(
    current_balance: Decimal,
    current_price: Decimal,
    deposits: Sequence[PricedFlow],
    withdrawals: Sequence[PricedFlow],
    today: date | None = None,
) -> YieldBreakdown:
    """All-time split of a supply position into protocol yield and price change."""
    account = cost_basis_account(deposits, withdrawals, current_price, today)
    return yield_breakdown_from_account(account, current_balance, current_price)


def period_yield_breakdown(
    tokens_at_start: Decimal,
    price_at_start: Decimal,
    tokens_now: Decimal,
    price_now: Decimal,
) -> PeriodYieldBreakdown:
    """Split value change over a period.

    protocol = (tokens_now - tokens_at_start) * price_now and
    price_change = tokens_at_start * (price_now - price_at_start); their sum
    is exactly value_now - value_at_start. Protocol yield goes negative when
    the user withdrew during the period.
    """
    value_at_start = tokens_at_start * price_at_start
    value_now = tokens_now * price_now
    protocol = (tokens_now - tokens_at_start) * price_now
    price_change = tokens_at_start * (price_now - price_at_start)
    total = protocol + price_change

    return PeriodYieldBreakdown(
        tokens_at_start=tokens_at_start,
        price_at_start=price_at_start,
        value_at_start=value_at_start,
        tokens_now=tokens_now,
        price_now=price_now,
        value_now=value_now,
        protocol_yield_usd=protocol,
        price_change_usd=price_change,
        total_earned_usd=total,
        total_earned_percent=_percent(total, value_at_start),
    )


def borrow_breakdown_from_account(
    account: CostBasisAccount,
    current_debt: Decimal,
    current_price: Decimal,
) -> BorrowBreakdown:
    """Split a debt position into interest and price cost against its borrow account."""
    net = account.net_deposited_tokens
    avg = account.weighted_avg_price
    cost_basis = account.cost_basis

    interest_tokens = current_debt - net
    interest_usd = interest_tokens * current_price
    price_change = net * (current_price - avg)
    current_debt_usd = current_debt * current_price
    total_cost = interest_usd + price_change

    return BorrowBreakdown(
        borrow_cost_basis=cost_basis,
        weighted_avg_borrow_price=avg,
        net_borrowed_tokens=net,
        interest_accrued_tokens=interest_tokens,
        interest_cost_usd=interest_usd,
        price_change_usd=price_change,
        current_debt_usd=current_debt_usd,
        total_cost_usd=total_cost,
        total_cost_percent=_percent(total_cost, cost_basis),
    )


def historical_borrow_breakdown(
    current_debt: Decimal,
    current_price: Decimal,
    borrows: Sequence[PricedFlow],
    repays: Sequence[PricedFlow],
    today: date | None = None,
) -> BorrowBreakdown:
    """Mirror of the supply breakdown for debt: interest and price rise are costs."""
    account = cost_basis_account(borrows, repays, current_price, today)
    return borrow_breakdown_from_account(account, current_debt, current_price)
