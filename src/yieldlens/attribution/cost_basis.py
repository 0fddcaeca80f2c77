"""Store-backed cost-basis accounts for supply, borrow and backstop positions.

Flows are read from the ledger store, valued through the PriceResolver's
fallback chain at their calendar day, and folded into average-cost
accounts keyed by composite key "{pool_id}-{asset}".

Liquidations count as flows: a liquidator's lot is a deposit and the
liquidated party's lot a withdrawal; the bid leg maps onto borrow/repay
the same way.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal

from yieldlens.attribution.breakdown import cost_basis_account
from yieldlens.attribution.models import CostBasisAccount, FlowSet, PricedFlow, Side
from yieldlens.config import PricingSettings, ReplaySettings
from yieldlens.data.rates import PriceResolver
from yieldlens.data.store import LedgerEventStore
from yieldlens.exceptions import UnknownActionError
from yieldlens.logging import get_logger
from yieldlens.models import (
    BackstopAction,
    PoolAction,
    PoolEvent,
    composite_key,
    local_day,
    resolve_timezone,
)

logger = get_logger(__name__)

ZERO = Decimal("0")

# (pool_id, asset) -> ([(day, tokens) inflows], [(day, tokens) outflows])
RawFlows = dict[tuple[str, str], tuple[list[tuple[date, Decimal]], list[tuple[date, Decimal]]]]

# every non-fill action, per side: True inflow, False outflow, None no flow
_FLOW_RULES: dict[Side, dict[PoolAction, bool | None]] = {
    Side.SUPPLY: {
        PoolAction.SUPPLY: True,
        PoolAction.SUPPLY_COLLATERAL: True,
        PoolAction.WITHDRAW: False,
        PoolAction.WITHDRAW_COLLATERAL: False,
        PoolAction.BORROW: None,
        PoolAction.REPAY: None,
        PoolAction.CLAIM: None,
        PoolAction.NEW_AUCTION: None,
        PoolAction.DELETE_AUCTION: None,
    },
    Side.BORROW: {
        PoolAction.BORROW: True,
        PoolAction.REPAY: False,
        PoolAction.SUPPLY: None,
        PoolAction.SUPPLY_COLLATERAL: None,
        PoolAction.WITHDRAW: None,
        PoolAction.WITHDRAW_COLLATERAL: None,
        PoolAction.CLAIM: None,
        PoolAction.NEW_AUCTION: None,
        PoolAction.DELETE_AUCTION: None,
    },
}


def _scale(raw: int | None, token_decimals: int) -> Decimal:
    return ZERO if raw is None else Decimal(raw).scaleb(-token_decimals)


def extract_flows(
    events: Iterable[PoolEvent],
    user_address: str,
    side: Side | str,
    token_decimals: int = 7,
    tz: tzinfo = timezone.utc,
) -> RawFlows:
    """Group a wallet's events into unpriced inflows/outflows per (pool, asset).

    The supply side follows the auction lot leg, the borrow side the bid leg.

    Raises:
        ValueError: If ``side`` is not a Side.
        UnknownActionError: If an event's action has no flow rule.
    """
    side = Side(side)
    rules = _FLOW_RULES[side]
    flows: RawFlows = defaultdict(lambda: ([], []))

    for event in events:
        day = local_day(event.closed_at, tz)
        if event.action == PoolAction.FILL_AUCTION:
            legs = event.auction
            if legs is None or not legs.is_liquidation:
                continue
            asset, raw = (
                (legs.lot_asset, legs.lot_amount)
                if side == Side.SUPPLY
                else (legs.bid_asset, legs.bid_amount)
            )
            if asset is None:
                continue
            tokens = _scale(raw, token_decimals)
            bucket = flows[(event.pool_id, asset)]
            if legs.filler_address == user_address:
                bucket[0].append((day, tokens))
            if event.user_address == user_address:
                bucket[1].append((day, tokens))
            continue

        if event.action not in rules:
            raise UnknownActionError(f"no {side.value} flow rule for action {event.action!r}")
        inflow = rules[event.action]
        if inflow is None or event.asset_address is None or event.user_address != user_address:
            continue
        tokens = _scale(event.amount_underlying, token_decimals)
        bucket = flows[(event.pool_id, event.asset_address)]
        bucket[0 if inflow else 1].append((day, tokens))

    return dict(flows)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CostBasisService:
    """Average-cost accounts across one or more wallets.

    Usage:
        service = CostBasisService(store, resolver)
        accounts = await service.supply_cost_basis([wallet], {usdc: Decimal("1")})
    """

    def __init__(
        self,
        store: LedgerEventStore,
        resolver: PriceResolver,
        replay: ReplaySettings | None = None,
        pricing: PricingSettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._replay = replay or ReplaySettings()
        self._pricing = pricing or PricingSettings()
        self._tz = resolve_timezone(self._replay.timezone)
        self._clock = clock

    def today(self) -> date:
        return local_day(self._clock(), self._tz)

    async def _price_flows(
        self,
        token_address: str,
        points: Sequence[tuple[date, Decimal]],
        live_price: Decimal | None,
    ) -> list[PricedFlow]:
        priced = []
        for day, tokens in points:
            resolved = await self._resolver.resolve(token_address, day, live_price)
            priced.append(
                PricedFlow(
                    day=day,
                    tokens=tokens,
                    price=resolved.usd_price,
                    usd_value=tokens * resolved.usd_price,
                    price_source=resolved.source,
                )
            )
        return priced

    async def _accounts(
        self,
        side: Side,
        users: Sequence[str],
        current_prices: Mapping[str, Decimal],
        active_wallets: Mapping[str, Sequence[str]] | None,
    ) -> dict[str, CostBasisAccount]:
        users = [u for u in dict.fromkeys(users) if u]
        if not users:
            return {}

        wallet_events = await asyncio.gather(*(self._store.get_wallet_events(u) for u in users))

        combined: dict[tuple[str, str], tuple[list, list]] = {}
        for user, events in zip(users, wallet_events):
            flows = extract_flows(
                events, user, side, self._replay.token_decimals, self._tz
            )
            for (pool_id, asset), (inflows, outflows) in flows.items():
                key = composite_key(pool_id, asset)
                if active_wallets is not None:
                    holders = active_wallets.get(key)
                    # a wallet that closed this position contributes nothing
                    if holders is not None and user not in holders:
                        continue
                bucket = combined.setdefault((pool_id, asset), ([], []))
                bucket[0].extend(inflows)
                bucket[1].extend(outflows)

        today = self.today()
        accounts: dict[str, CostBasisAccount] = {}
        for (pool_id, asset), (inflows, outflows) in combined.items():
            if not inflows and not outflows:
                continue
            live_price = current_prices.get(asset)
            deposits = await self._price_flows(asset, inflows, live_price)
            withdrawals = await self._price_flows(asset, outflows, live_price)
            current = live_price if live_price is not None else self._pricing.fallback_usd_price
            accounts[composite_key(pool_id, asset)] = cost_basis_account(
                deposits, withdrawals, current, today
            )

        logger.info(
            "cost_basis_computed",
            side=side.value,
            wallets=len(users),
            positions=len(accounts),
        )
        return accounts

    async def supply_cost_basis(
        self,
        users: Sequence[str],
        current_prices: Mapping[str, Decimal],
        active_wallets: Mapping[str, Sequence[str]] | None = None,
    ) -> dict[str, CostBasisAccount]:
        """Supply-side accounts keyed by composite key, combined across wallets."""
        return await self._accounts(Side.SUPPLY, users, current_prices, active_wallets)

    async def borrow_cost_basis(
        self,
        users: Sequence[str],
        current_prices: Mapping[str, Decimal],
        active_wallets: Mapping[str, Sequence[str]] | None = None,
    ) -> dict[str, CostBasisAccount]:
        """Debt-side accounts keyed by composite key, combined across wallets."""
        return await self._accounts(Side.BORROW, users, current_prices, active_wallets)

    async def backstop_cost_basis(
        self, user_address: str, pool_id: str | None = None
    ) -> dict[str, Decimal]:
        """Net LP tokens deposited (deposits minus withdrawals) per pool."""
        if not user_address:
            return {}
        events = await self._store.get_backstop_events(user_address, pool_id)
        net: dict[str, Decimal] = {}
        for event in events:
            tokens = _scale(event.lp_tokens, self._replay.token_decimals)
            if event.action == BackstopAction.DEPOSIT:
                net[event.pool_id] = net.get(event.pool_id, ZERO) + tokens
            elif event.action == BackstopAction.WITHDRAW:
                net[event.pool_id] = net.get(event.pool_id, ZERO) - tokens
        return net

    async def backstop_flows_with_prices(
        self,
        user_address: str,
        live_lp_price: Decimal | None,
        pool_id: str | None = None,
    ) -> dict[str, FlowSet]:
        """LP-token deposits and withdrawals per pool, valued at the LP price of their day."""
        if not user_address:
            return {}
        events = await self._store.get_backstop_events(user_address, pool_id)
        lp_token = self._pricing.lp_token_address

        flows: dict[str, FlowSet] = {}
        for event in events:
            if event.action not in (BackstopAction.DEPOSIT, BackstopAction.WITHDRAW):
                continue
            day = local_day(event.closed_at, self._tz)
            tokens = _scale(event.lp_tokens, self._replay.token_decimals)
            priced = await self._price_flows(lp_token, [(day, tokens)], live_lp_price)
            bucket = flows.setdefault(event.pool_id, FlowSet())
            if event.action == BackstopAction.DEPOSIT:
                bucket.inflows.extend(priced)
            else:
                bucket.outflows.extend(priced)
        return flows
