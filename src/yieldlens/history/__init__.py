"""Balance reconstruction engine.

Replays a wallet's ledger events into per-pool running totals and lays
them over a dense daily grid valued with forward-filled b_rate/d_rate.
"""

from yieldlens.history.models import (
    BalanceHistory,
    CumulativePosition,
    DailyBalance,
    EarningsStats,
    PositionChange,
)
from yieldlens.history.replay import (
    BalanceHistoryService,
    build_daily_balances,
    first_activity_day,
    replay_events,
)
from yieldlens.history.stats import calculate_earnings_stats, detect_position_changes

__all__ = [
    "BalanceHistory",
    "BalanceHistoryService",
    "CumulativePosition",
    "DailyBalance",
    "EarningsStats",
    "PositionChange",
    "build_daily_balances",
    "calculate_earnings_stats",
    "detect_position_changes",
    "first_activity_day",
    "replay_events",
]
