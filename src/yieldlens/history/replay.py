"""Balance reconstruction: replay ledger events into a dense daily series.

Events are folded into per-pool running totals as a prefix sum ordered by
(closed_at, ledger_sequence). The last running total of each (pool, day)
is then laid over a continuous day grid and valued with the forward-filled
b_rate/d_rate of that day.

A liquidation fill moves both legs in one step: the liquidated party loses
the lot (collateral) and the bid (debt), the filler gains both. Opening or
deleting an auction changes nothing.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import Decimal

from yieldlens.config import ReplaySettings
from yieldlens.data.rates import RateSeries, RateStore
from yieldlens.data.store import LedgerEventStore
from yieldlens.exceptions import UnknownActionError
from yieldlens.history.models import (
    ZERO,
    ZERO_POSITION,
    BalanceHistory,
    CumulativePosition,
    DailyBalance,
    ReplayResult,
    ReplayStep,
)
from yieldlens.logging import bound_request, get_logger
from yieldlens.models import PoolAction, PoolEvent, local_day, resolve_timezone

logger = get_logger(__name__)


def _scale(raw: int | None, token_decimals: int) -> Decimal:
    if raw is None:
        return ZERO
    return Decimal(raw).scaleb(-token_decimals)


def position_delta(
    event: PoolEvent,
    user_address: str,
    asset_address: str,
    token_decimals: int = 7,
) -> CumulativePosition:
    """Change one event makes to the user's running totals for the asset.

    Raises:
        UnknownActionError: If the action has no replay rule.
    """
    action = event.action

    if action in (PoolAction.CLAIM, PoolAction.NEW_AUCTION, PoolAction.DELETE_AUCTION):
        return ZERO_POSITION

    if action == PoolAction.FILL_AUCTION:
        return _fill_delta(event, user_address, asset_address, token_decimals)

    if event.user_address != user_address or event.asset_address != asset_address:
        return ZERO_POSITION

    tokens = _scale(event.amount_tokens, token_decimals)
    underlying = _scale(event.amount_underlying, token_decimals)

    if action == PoolAction.SUPPLY:
        return CumulativePosition(supply_btokens=tokens, total_deposits=underlying)
    elif action == PoolAction.WITHDRAW:
        return CumulativePosition(supply_btokens=-tokens, total_withdrawals=underlying)
    elif action == PoolAction.SUPPLY_COLLATERAL:
        return CumulativePosition(collateral_btokens=tokens, total_deposits=underlying)
    elif action == PoolAction.WITHDRAW_COLLATERAL:
        return CumulativePosition(collateral_btokens=-tokens, total_withdrawals=underlying)
    elif action == PoolAction.BORROW:
        return CumulativePosition(liability_dtokens=tokens, total_borrows=underlying)
    elif action == PoolAction.REPAY:
        return CumulativePosition(liability_dtokens=-tokens, total_repays=underlying)

    raise UnknownActionError(f"no replay rule for action {action!r}")


def _fill_delta(
    event: PoolEvent,
    user_address: str,
    asset_address: str,
    token_decimals: int,
) -> CumulativePosition:
    legs = event.auction
    if legs is None or not legs.is_liquidation:
        return ZERO_POSITION

    lot = _scale(legs.lot_amount, token_decimals) if legs.lot_asset == asset_address else ZERO
    bid = _scale(legs.bid_amount, token_decimals) if legs.bid_asset == asset_address else ZERO

    delta = ZERO_POSITION
    # a self-liquidation matches both branches and nets to zero units
    if event.user_address == user_address:
        delta = delta + CumulativePosition(
            collateral_btokens=-lot,
            liability_dtokens=-bid,
            total_withdrawals=lot,
            total_repays=bid,
        )
    if legs.filler_address == user_address:
        delta = delta + CumulativePosition(
            collateral_btokens=lot,
            liability_dtokens=bid,
            total_deposits=lot,
            total_borrows=bid,
        )
    return delta


def replay_events(
    events: Iterable[PoolEvent],
    user_address: str,
    asset_address: str,
    start: Mapping[str, CumulativePosition] | None = None,
    token_decimals: int = 7,
    tz: tzinfo = timezone.utc,
) -> ReplayResult:
    """Fold events into per-pool running totals.

    Args:
        events: Events ordered by (closed_at, ledger_sequence).
        start: Per-pool totals to continue from (e.g. a previous result's
            ``final``). Missing pools start at zero.

    Returns:
        One ReplayStep per event plus the final totals per pool.
    """
    running: dict[str, CumulativePosition] = dict(start or {})
    steps: list[ReplayStep] = []
    for event in events:
        delta = position_delta(event, user_address, asset_address, token_decimals)
        position = running.get(event.pool_id, ZERO_POSITION) + delta
        running[event.pool_id] = position
        steps.append(
            ReplayStep(
                pool_id=event.pool_id,
                day=local_day(event.closed_at, tz),
                ledger_sequence=event.ledger_sequence,
                position=position,
            )
        )
    return ReplayResult(steps=steps, final=running)


def first_activity_day(
    events: Iterable[PoolEvent],
    user_address: str,
    asset_address: str,
    tz: tzinfo = timezone.utc,
) -> date | None:
    """Earliest day the user touched the asset directly or through a liquidation fill.

    Auction creation rows do not count.
    """
    first: date | None = None
    for event in events:
        if event.action == PoolAction.FILL_AUCTION:
            legs = event.auction
            counts = (
                legs is not None
                and legs.touches(asset_address)
                and user_address in (event.user_address, legs.filler_address)
            )
        elif event.action.is_auction:
            counts = False
        else:
            counts = event.user_address == user_address and event.asset_address == asset_address
        if counts:
            day = local_day(event.closed_at, tz)
            if first is None or day < first:
                first = day
    return first


def _clamp_noise(value: Decimal, epsilon: Decimal) -> Decimal:
    return ZERO if abs(value) < epsilon else value


def daily_snapshots(steps: Sequence[ReplayStep]) -> dict[str, dict[date, ReplayStep]]:
    """Last step of each (pool, day)."""
    by_pool: dict[str, dict[date, ReplayStep]] = {}
    for step in steps:
        # later steps overwrite earlier ones of the same day
        by_pool.setdefault(step.pool_id, {})[step.day] = step
    return by_pool


def build_daily_balances(
    steps: Sequence[ReplayStep],
    rate_series: Mapping[str, RateSeries],
    asset_address: str,
    start_day: date,
    end_day: date,
    epsilon: Decimal = Decimal("0.0001"),
    default_rate: Decimal = Decimal("1"),
) -> list[DailyBalance]:
    """Lay per-pool snapshots over the [start_day, end_day] grid.

    Each grid cell carries the latest snapshot on or before its day (zero
    before the pool's first event) and the rates in force that day.
    Returned ascending by (date, pool_id).
    """
    snapshots = daily_snapshots(steps)
    empty_series = RateSeries([], default_rate)
    days = [start_day + timedelta(days=i) for i in range((end_day - start_day).days + 1)]

    rows: list[DailyBalance] = []
    for pool_id in sorted(snapshots):
        pool_days = snapshots[pool_id]
        snapshot_days = sorted(pool_days)
        series = rate_series.get(pool_id, empty_series)
        cursor = 0
        current: ReplayStep | None = None
        for day in days:
            while cursor < len(snapshot_days) and snapshot_days[cursor] <= day:
                current = pool_days[snapshot_days[cursor]]
                cursor += 1
            rows.append(_value_row(pool_id, asset_address, day, current, series, epsilon))

    rows.sort(key=lambda r: (r.date, r.pool_id))
    return rows


def _value_row(
    pool_id: str,
    asset_address: str,
    day: date,
    step: ReplayStep | None,
    series: RateSeries,
    epsilon: Decimal,
) -> DailyBalance:
    position = step.position if step is not None else ZERO_POSITION
    b_rate, d_rate = series.at(day)

    supply_balance = position.supply_btokens * b_rate
    collateral_balance = position.collateral_btokens * b_rate
    debt_balance = position.liability_dtokens * d_rate
    cost_basis = position.cost_basis
    borrow_cost_basis = position.borrow_cost_basis

    total_yield = max(ZERO, _clamp_noise(supply_balance + collateral_balance - cost_basis, epsilon))
    interest = _clamp_noise(debt_balance - borrow_cost_basis, epsilon)

    return DailyBalance(
        pool_id=pool_id,
        asset_address=asset_address,
        date=day,
        ledger_sequence=step.ledger_sequence if step is not None else 0,
        supply_btokens=position.supply_btokens,
        collateral_btokens=position.collateral_btokens,
        liability_dtokens=position.liability_dtokens,
        total_deposits=position.total_deposits,
        total_withdrawals=position.total_withdrawals,
        total_borrows=position.total_borrows,
        total_repays=position.total_repays,
        cost_basis=cost_basis,
        borrow_cost_basis=borrow_cost_basis,
        b_rate=b_rate,
        d_rate=d_rate,
        supply_balance=supply_balance,
        collateral_balance=collateral_balance,
        debt_balance=debt_balance,
        net_balance=supply_balance + collateral_balance - debt_balance,
        total_yield=total_yield,
        total_interest_accrued=interest,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BalanceHistoryService:
    """Builds per-asset daily balance histories from the event and rate stores.

    Usage:
        service = BalanceHistoryService(store, rates, settings.replay)
        result = await service.get_balance_history(wallet, asset, days=90)
    """

    def __init__(
        self,
        store: LedgerEventStore,
        rates: RateStore,
        settings: ReplaySettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._rates = rates
        self._settings = settings or ReplaySettings()
        self._tz = resolve_timezone(self._settings.timezone)
        self._clock = clock

    def today(self) -> date:
        return local_day(self._clock(), self._tz)

    async def get_balance_history(
        self,
        user_address: str,
        asset_address: str,
        days: int | None = None,
    ) -> BalanceHistory:
        """Daily balances for one asset across every pool the user touched it in.

        An empty wallet, an unknown asset or a wallet without events yields
        an empty history.
        """
        result = BalanceHistory(user_address=user_address, asset_address=asset_address)
        if not user_address or not asset_address:
            return result

        days = self._settings.default_days if days is None else days
        with bound_request(wallet=user_address, asset=asset_address):
            return await self._build(result, days)

    async def _build(self, result: BalanceHistory, days: int) -> BalanceHistory:
        user_address = result.user_address
        asset_address = result.asset_address
        events = await self._store.get_asset_events(user_address, asset_address)
        first = first_activity_day(events, user_address, asset_address, self._tz)
        if first is None:
            return result

        today = self.today()
        start_day = max(first, today - timedelta(days=days))
        replay = replay_events(
            events,
            user_address,
            asset_address,
            token_decimals=self._settings.token_decimals,
            tz=self._tz,
        )
        series = await self._rates.get_asset_rate_series(
            asset_address, until=today, pool_ids=sorted(replay.final)
        )
        result.history = build_daily_balances(
            replay.steps,
            series,
            asset_address,
            start_day,
            today,
            epsilon=self._settings.epsilon,
            default_rate=self._settings.default_rate,
        )
        result.first_event_date = first

        logger.info(
            "balance_history_built",
            asset=asset_address,
            events=len(events),
            pools=len(replay.final),
            rows=len(result.history),
            first_event_date=first.isoformat(),
        )
        return result

    async def get_balance_histories(
        self,
        user_address: str,
        asset_addresses: Sequence[str],
        days: int | None = None,
    ) -> dict[str, BalanceHistory]:
        """Batch variant: one history per asset, fetched concurrently."""
        unique = list(dict.fromkeys(asset_addresses))
        histories = await asyncio.gather(
            *(self.get_balance_history(user_address, a, days) for a in unique)
        )
        return dict(zip(unique, histories))
