"""Tests for the pure yield attribution calculators.

All values use Decimal. Covers the average-cost policy, same-day
re-pricing, the decomposition identities and zero-basis edge cases.
"""

from datetime import date
from decimal import Decimal

import pytest

from yieldlens.attribution.breakdown import (
    borrow_breakdown_from_account,
    cost_basis_account,
    historical_borrow_breakdown,
    historical_yield_breakdown,
    period_yield_breakdown,
    reprice_same_day,
    yield_breakdown_from_account,
)
from yieldlens.attribution.models import PricedFlow
from yieldlens.models import PriceSource

DAY_0 = date(2024, 3, 1)
DAY_5 = date(2024, 3, 6)


def _flow(tokens: str, price: str, day: date | None = DAY_0) -> PricedFlow:
    t = Decimal(tokens)
    p = Decimal(price)
    return PricedFlow(day=day, tokens=t, price=p, usd_value=t * p)


class TestCostBasisAccount:
    """Tests for the average-cost account."""

    def test_withdrawals_debit_average_cost(self) -> None:
        """A withdrawal removes cost at the average deposit price, not its own price."""
        account = cost_basis_account(
            [_flow("1000", "1.00")], [_flow("400", "1.10", DAY_5)], Decimal("1.10")
        )
        assert account.weighted_avg_price == Decimal("1.00")
        assert account.cost_basis == Decimal("600")
        assert account.net_deposited_tokens == Decimal("600")

    def test_weighted_average_over_deposits(self) -> None:
        account = cost_basis_account(
            [_flow("100", "1.00"), _flow("300", "2.00")], [], Decimal("3")
        )
        assert account.weighted_avg_price == Decimal("700") / Decimal("400")
        assert account.total_deposited_usd == Decimal("700")

    def test_no_deposits_falls_back_to_current_price(self) -> None:
        account = cost_basis_account([], [], Decimal("1.25"))
        assert account.weighted_avg_price == Decimal("1.25")
        assert account.cost_basis == 0

    def test_more_withdrawn_than_deposited_keeps_average(self) -> None:
        """Interest lets a wallet withdraw more than it put in; the average stays historical."""
        account = cost_basis_account([_flow("100", "1")], [_flow("101", "1.5")], Decimal("2"))
        assert account.net_deposited_tokens == Decimal("-1")
        assert account.weighted_avg_price == Decimal("1")
        assert account.cost_basis == Decimal("-1")


class TestBreakdownFromAccount:
    """Tests for breakdowns computed from a precomputed account."""

    @pytest.mark.parametrize(
        "deposits, withdrawals, balance, price",
        [
            ([("1000", "1.00")], [("400", "1.10")], "600", "1.10"),
            ([("100", "1")], [("101", "1.5")], "19", "2"),
            ([], [("5", "1")], "3", "2"),
        ],
    )
    def test_matches_flow_breakdown(
        self,
        deposits: list[tuple[str, str]],
        withdrawals: list[tuple[str, str]],
        balance: str,
        price: str,
    ) -> None:
        deposit_flows = [_flow(t, p) for t, p in deposits]
        withdrawal_flows = [_flow(t, p) for t, p in withdrawals]
        account = cost_basis_account(deposit_flows, withdrawal_flows, Decimal(price))

        from_account = yield_breakdown_from_account(account, Decimal(balance), Decimal(price))
        from_flows = historical_yield_breakdown(
            Decimal(balance), Decimal(price), deposit_flows, withdrawal_flows
        )

        assert from_account == from_flows
        assert (
            from_account.protocol_yield_usd + from_account.price_change_usd
            == from_account.total_earned_usd
        )

    def test_borrow_side_net_repaid_beyond_borrowed(self) -> None:
        account = cost_basis_account([_flow("100", "1")], [_flow("101", "1")], Decimal("2"))

        breakdown = borrow_breakdown_from_account(account, Decimal("19"), Decimal("2"))

        assert breakdown.weighted_avg_borrow_price == Decimal("1")
        assert breakdown.interest_cost_usd == Decimal("40")
        assert breakdown.price_change_usd == Decimal("-1")
        assert breakdown.total_cost_usd == Decimal("39")
        assert breakdown == historical_borrow_breakdown(
            Decimal("19"), Decimal("2"), [_flow("100", "1")], [_flow("101", "1")]
        )


class TestSameDayRepricing:
    """Tests for re-pricing flows dated today at the live price."""

    def test_only_today_repriced(self) -> None:
        flows = [_flow("10", "0.90", DAY_0), _flow("50", "0.90", DAY_5)]
        repriced = reprice_same_day(flows, Decimal("1.00"), today=DAY_5)
        assert repriced[0] == flows[0]
        assert repriced[1].usd_value == Decimal("50.00")
        assert repriced[1].price_source == PriceSource.LIVE_FALLBACK

    def test_no_today_means_no_repricing(self) -> None:
        flows = [_flow("10", "0.90", DAY_5)]
        assert reprice_same_day(flows, Decimal("1"), today=None) == flows

    def test_same_day_deposit_has_no_price_change(self) -> None:
        """A deposit made today contributes nothing to price change, whatever the feed says."""
        breakdown = historical_yield_breakdown(
            Decimal("50"),
            Decimal("1.00"),
            [_flow("50", "0.80", DAY_5)],
            [],
            today=DAY_5,
        )
        assert breakdown.price_change_usd == 0
        assert breakdown.total_earned_usd == 0


class TestHistoricalYieldBreakdown:
    """Tests for the all-time supply breakdown."""

    def test_price_rise_before_withdrawal(self) -> None:
        """1000 tokens at $1.00, price $1.10 and no growth: all $100 is price change."""
        breakdown = historical_yield_breakdown(
            Decimal("1000"), Decimal("1.10"), [_flow("1000", "1.00")], []
        )
        assert breakdown.cost_basis_historical == Decimal("1000")
        assert breakdown.price_change_usd == Decimal("100")
        assert breakdown.protocol_yield_usd == 0
        assert breakdown.total_earned_usd == Decimal("100")
        assert breakdown.price_change_percent == Decimal("10")

    def test_after_withdrawing_400(self) -> None:
        """Cost basis drops to $600 (400 x $1.00, not $1.10)."""
        breakdown = historical_yield_breakdown(
            Decimal("600"),
            Decimal("1.10"),
            [_flow("1000", "1.00")],
            [_flow("400", "1.10", DAY_5)],
        )
        assert breakdown.cost_basis_historical == Decimal("600")
        assert breakdown.price_change_usd == Decimal("60")
        assert breakdown.total_earned_usd == Decimal("60")
        assert breakdown.total_earned_percent == Decimal("10")

    def test_protocol_yield_from_token_growth(self) -> None:
        breakdown = historical_yield_breakdown(
            Decimal("1050"), Decimal("1.00"), [_flow("1000", "1.00")], []
        )
        assert breakdown.protocol_yield_tokens == Decimal("50")
        assert breakdown.protocol_yield_usd == Decimal("50")
        assert breakdown.price_change_usd == 0

    @pytest.mark.parametrize(
        "balance, price, deposits, withdrawals",
        [
            ("1050", "1.20", [("1000", "1.00")], []),
            ("0", "1.20", [("1000", "1.00")], [("1000", "1.10")]),
            ("10", "2.00", [], []),
            ("500", "0.50", [("300", "1.00"), ("400", "0.80")], [("250", "0.70")]),
            ("0", "0", [], []),
        ],
    )
    def test_decomposition_identity(
        self,
        balance: str,
        price: str,
        deposits: list[tuple[str, str]],
        withdrawals: list[tuple[str, str]],
    ) -> None:
        """total_earned == protocol_yield + price_change for every input shape."""
        breakdown = historical_yield_breakdown(
            Decimal(balance),
            Decimal(price),
            [_flow(t, p) for t, p in deposits],
            [_flow(t, p) for t, p in withdrawals],
        )
        components = breakdown.protocol_yield_usd + breakdown.price_change_usd
        # inexact weighted averages round at Decimal's 28 digits
        assert abs(breakdown.total_earned_usd - components) < Decimal("1e-20")

    def test_zero_cost_basis_collapses_percentages(self) -> None:
        breakdown = historical_yield_breakdown(
            Decimal("0"), Decimal("1.20"), [_flow("1000", "1.00")], [_flow("1000", "1.10")]
        )
        assert breakdown.cost_basis_historical == 0
        assert breakdown.total_earned_percent == 0
        assert breakdown.price_change_percent == 0


class TestPeriodYieldBreakdown:
    """Tests for the trailing-period breakdown."""

    @pytest.mark.parametrize(
        "ts, ps, tn, pn",
        [
            ("100", "1.00", "110", "1.20"),
            ("100", "1.00", "40", "0.90"),
            ("0", "1.00", "50", "1.10"),
            ("100", "0", "100", "0"),
        ],
    )
    def test_components_sum_to_value_change(self, ts: str, ps: str, tn: str, pn: str) -> None:
        result = period_yield_breakdown(Decimal(ts), Decimal(ps), Decimal(tn), Decimal(pn))
        assert result.total_earned_usd == result.value_now - result.value_at_start
        assert result.total_earned_usd == result.protocol_yield_usd + result.price_change_usd

    def test_values(self) -> None:
        result = period_yield_breakdown(
            Decimal("100"), Decimal("1.00"), Decimal("110"), Decimal("1.20")
        )
        assert result.protocol_yield_usd == Decimal("12.00")
        assert result.price_change_usd == Decimal("20.00")
        assert result.total_earned_percent == Decimal("32")

    def test_withdrawal_makes_protocol_negative(self) -> None:
        result = period_yield_breakdown(
            Decimal("100"), Decimal("1.00"), Decimal("40"), Decimal("1.00")
        )
        assert result.protocol_yield_usd == Decimal("-60.00")

    def test_zero_start_value_percent_is_zero(self) -> None:
        result = period_yield_breakdown(Decimal("0"), Decimal("1"), Decimal("50"), Decimal("1"))
        assert result.total_earned_percent == 0


class TestHistoricalBorrowBreakdown:
    """Tests for the debt-side mirror."""

    def test_price_rise_is_a_cost(self) -> None:
        breakdown = historical_borrow_breakdown(
            Decimal("105"), Decimal("2.00"), [_flow("100", "1.00")], []
        )
        assert breakdown.interest_accrued_tokens == Decimal("5")
        assert breakdown.interest_cost_usd == Decimal("10.00")
        assert breakdown.price_change_usd == Decimal("100.00")
        assert breakdown.total_cost_usd == Decimal("110.00")
        assert breakdown.current_debt_usd == Decimal("210.00")
        assert breakdown.total_cost_percent == Decimal("110")

    def test_repays_debit_average_borrow_price(self) -> None:
        breakdown = historical_borrow_breakdown(
            Decimal("60"), Decimal("1.00"), [_flow("100", "0.50")], [_flow("40", "1.00")]
        )
        assert breakdown.borrow_cost_basis == Decimal("30")
        assert breakdown.net_borrowed_tokens == Decimal("60")

    def test_fully_repaid_percent_is_zero(self) -> None:
        breakdown = historical_borrow_breakdown(
            Decimal("0"), Decimal("1.00"), [_flow("100", "1.00")], [_flow("100", "1.00")]
        )
        assert breakdown.total_cost_percent == 0
