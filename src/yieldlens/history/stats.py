"""Chart-side statistics over a reconstructed daily balance series."""

from collections import defaultdict
from collections.abc import Sequence
from datetime import date
from decimal import Decimal

from yieldlens.history.models import (
    ZERO,
    DailyBalance,
    EarningsStats,
    PoolEarnings,
    PositionChange,
)


def _by_day(history: Sequence[DailyBalance]) -> dict[date, list[DailyBalance]]:
    grouped: dict[date, list[DailyBalance]] = defaultdict(list)
    for row in sorted(history, key=lambda r: (r.date, r.ledger_sequence)):
        grouped[row.date].append(row)
    return grouped


def detect_position_changes(
    history: Sequence[DailyBalance],
    threshold: Decimal = Decimal("0.01"),
) -> list[PositionChange]:
    """Find days where supplied, collateral or debt units moved by more than threshold.

    Units are summed across pools before comparing consecutive days, so
    rate-driven balance growth never registers as a change.
    """
    if len(history) <= 1:
        return []

    grouped = _by_day(history)
    days = sorted(grouped)
    changes: list[PositionChange] = []

    for i in range(1, len(days)):
        prev_rows = grouped[days[i - 1]]
        curr_rows = grouped[days[i]]

        supply_change = sum((r.supply_btokens for r in curr_rows), ZERO) - sum(
            (r.supply_btokens for r in prev_rows), ZERO
        )
        collateral_change = sum((r.collateral_btokens for r in curr_rows), ZERO) - sum(
            (r.collateral_btokens for r in prev_rows), ZERO
        )
        debt_change = sum((r.liability_dtokens for r in curr_rows), ZERO) - sum(
            (r.liability_dtokens for r in prev_rows), ZERO
        )

        if max(abs(supply_change), abs(collateral_change), abs(debt_change)) > threshold:
            net_change = sum((r.net_balance for r in curr_rows), ZERO) - sum(
                (r.net_balance for r in prev_rows), ZERO
            )
            changes.append(
                PositionChange(
                    index=i,
                    date=days[i],
                    supply_change=supply_change,
                    collateral_change=collateral_change,
                    debt_change=debt_change,
                    net_change=net_change,
                )
            )
    return changes


def calculate_earnings_stats(history: Sequence[DailyBalance]) -> EarningsStats:
    """Per-pool and combined interest statistics.

    Interest is the latest total_yield of each pool; APY annualises it
    against the average position over the covered days:
    (interest / avg_position) * (365 / days) * 100.
    """
    grouped = _by_day(history)
    days = sorted(grouped)
    day_count = len(days) - 1
    if day_count <= 0:
        return EarningsStats()

    per_pool: dict[str, PoolEarnings] = {}
    pool_ids = sorted({r.pool_id for r in history})
    for pool_id in pool_ids:
        interest = ZERO
        latest_balance = ZERO
        total_position = ZERO
        points = 0
        for day in days:
            for row in grouped[day]:
                if row.pool_id != pool_id:
                    continue
                interest = row.total_yield
                latest_balance = row.asset_balance
                total_position += row.asset_balance
                points += 1

        avg_position = total_position / points if points else ZERO
        apy = (
            interest / avg_position * Decimal(365) / Decimal(day_count) * 100
            if avg_position > 0
            else ZERO
        )
        per_pool[pool_id] = PoolEarnings(
            total_interest=interest,
            current_apy=apy,
            avg_daily_interest=interest / day_count,
            projected_annual=latest_balance * apy / 100,
            avg_position=avg_position,
        )

    total_interest = sum((p.total_interest for p in per_pool.values()), ZERO)
    total_position = sum((p.avg_position for p in per_pool.values()), ZERO)
    combined_apy = (
        total_interest / total_position * Decimal(365) / Decimal(day_count) * 100
        if total_position > 0
        else ZERO
    )
    latest_total = sum((r.asset_balance for r in grouped[days[-1]]), ZERO)

    return EarningsStats(
        total_interest=total_interest,
        current_apy=combined_apy,
        avg_daily_interest=total_interest / day_count,
        projected_annual=latest_total * combined_apy / 100,
        day_count=day_count,
        avg_position=total_position,
        per_pool=per_pool,
    )
