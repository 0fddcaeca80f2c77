"""Live snapshot aggregator: the "right now" view of a wallet's positions.

For each tracked pool it loads pool state (30s cache), the wallet's
on-chain positions, token metadata and oracle prices (5 min cache), and
the backstop (token composition, pool shares, the wallet's shares and
queued withdrawals). Independent pools load concurrently; within a pool
oracle decimals resolve before the prices that depend on them.

A failing pool, oracle or backstop is logged and left out of the
snapshot (listed in ``excluded``). An oracle failure on a reserve the
wallet holds nothing in only leaves that reserve unpriced for the
backstop interest APR. Building a snapshot never fails
because one dependency is down. Identical concurrent requests share one
build through SingleFlight.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal

from yieldlens.config import SnapshotSettings
from yieldlens.exceptions import DependencyUnavailableError
from yieldlens.live.cache import SnapshotCaches
from yieldlens.live.client import ProtocolStateClient
from yieldlens.live.models import (
    ZERO,
    BackstopPosition,
    PoolEstimate,
    Q4WChunk,
    ReservePosition,
    SnapshotFailure,
    WalletSnapshot,
)
from yieldlens.live.protocol_math import (
    blnd_per_lp_token,
    btokens_to_underlying,
    claimable_emissions,
    dtokens_to_underlying,
    emissions_per_year_per_token,
    lp_token_price,
    shares_to_lp_tokens,
    to_decimal,
    usdc_per_blnd,
)
from yieldlens.live.singleflight import SingleFlight, snapshot_key
from yieldlens.live.state import (
    BackstopPoolState,
    BackstopTokenState,
    PoolState,
    ReserveState,
    TokenMetadata,
    UserBackstopState,
    UserPositions,
)
from yieldlens.logging import bound_request, get_logger
from yieldlens.models import composite_key

logger = get_logger(__name__)


@dataclass
class _PoolBundle:
    pool: PoolState
    user: UserPositions
    metadata: dict[str, TokenMetadata | None]
    prices: dict[str, Decimal | None]


@dataclass
class _BackstopBundle:
    token: BackstopTokenState
    state: BackstopPoolState
    user: UserBackstopState


class _Build:
    """Per-invocation state: memoised oracle decimals and recorded failures."""

    def __init__(self, wallet: str) -> None:
        self.wallet = wallet
        self.oracle_decimals: dict[str, asyncio.Future] = {}
        self.failures: list[SnapshotFailure] = []

    def exclude(self, exc: DependencyUnavailableError) -> None:
        self.failures.append(
            SnapshotFailure(pool_id=exc.pool_id, component=exc.component, error=exc.reason)
        )
        logger.warning(
            "pool_excluded_from_snapshot",
            pool_id=exc.pool_id,
            component=exc.component,
            error=exc.reason,
            exc_info=True,
        )


def _weighted(pairs: Iterable[tuple[Decimal, Decimal]]) -> Decimal | None:
    """USD-weighted average of (weight, value) pairs; None without weight."""
    total_weight = ZERO
    total = ZERO
    for weight, value in pairs:
        total_weight += weight
        total += weight * value
    if total_weight <= 0:
        return None
    return total / total_weight


class SnapshotAggregator:
    """Builds WalletSnapshot views from a ProtocolStateClient.

    Usage:
        aggregator = SnapshotAggregator(client, settings.snapshot)
        snapshot = await aggregator.get_wallet_snapshot(wallet)
    """

    def __init__(
        self,
        client: ProtocolStateClient,
        settings: SnapshotSettings | None = None,
        caches: SnapshotCaches | None = None,
        flights: SingleFlight[WalletSnapshot] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._settings = settings or SnapshotSettings()
        self._caches = caches or SnapshotCaches.create(
            pool_ttl=self._settings.pool_cache_ttl,
            metadata_ttl=self._settings.metadata_cache_ttl,
        )
        self._flights = flights or SingleFlight()
        self._clock = clock

    async def get_wallet_snapshot(
        self, wallet: str, pool_ids: Iterable[str] | None = None
    ) -> WalletSnapshot:
        """Current positions of ``wallet`` across ``pool_ids`` (default: tracked pools).

        No wallet or no pools yields an empty snapshot.
        """
        pools = list(pool_ids) if pool_ids is not None else list(self._settings.tracked_pools)
        if not wallet or not pools:
            return WalletSnapshot(wallet=wallet)
        key = snapshot_key(wallet, pools)
        return await self._flights.do(key, lambda: self._build(wallet, key[1]))

    # ──────────────────────────────────────────────
    # Loading
    # ──────────────────────────────────────────────

    async def _pool(self, pool_id: str) -> PoolState:
        hit, cached = self._caches.pools.get_entry(pool_id)
        if hit:
            return cached
        try:
            pool = await self._client.load_pool(pool_id)
        except Exception as exc:
            raise DependencyUnavailableError(pool_id, "pool", str(exc)) from exc
        self._caches.pools.set(pool_id, pool)
        return pool

    async def _user_positions(self, pool: PoolState, wallet: str) -> UserPositions:
        try:
            return await self._client.load_user_positions(pool, wallet)
        except Exception as exc:
            raise DependencyUnavailableError(pool.pool_id, "user_positions", str(exc)) from exc

    async def _metadata(self, asset_id: str) -> TokenMetadata | None:
        hit, cached = self._caches.tokens.get_entry(asset_id)
        if hit:
            return cached
        try:
            metadata = await self._client.load_token_metadata(asset_id)
        except Exception as exc:
            logger.warning("token_metadata_unavailable", asset=asset_id, error=str(exc))
            return None
        self._caches.tokens.set(asset_id, metadata)
        return metadata

    async def _oracle_decimals(self, build: _Build, oracle_id: str) -> int:
        future = build.oracle_decimals.get(oracle_id)
        if future is None:
            future = asyncio.ensure_future(self._client.get_oracle_decimals(oracle_id))
            build.oracle_decimals[oracle_id] = future
        decimals = await future
        return decimals if decimals is not None else self._settings.default_oracle_decimals

    async def _price(
        self,
        build: _Build,
        pool: PoolState,
        asset_id: str,
        symbol: str | None,
    ) -> Decimal | None:
        key = f"{pool.pool_id}:{asset_id}:{symbol or ''}"
        hit, cached = self._caches.prices.get_entry(key)
        if hit:
            return cached
        if not pool.oracle_id:
            self._caches.prices.set(key, None)
            return None

        try:
            decimals = await self._oracle_decimals(build, pool.oracle_id)
            raw = await self._client.get_oracle_price(pool.oracle_id, asset_id)
        except Exception as exc:
            raise DependencyUnavailableError(pool.pool_id, "oracle", str(exc)) from exc

        price = to_decimal(raw, decimals) if raw is not None else None
        if price is not None and price <= 0:
            price = None
        if price is None:
            logger.debug("oracle_price_missing", pool_id=pool.pool_id, asset=asset_id)
        self._caches.prices.set(key, price)
        return price

    async def _untouched_price(
        self,
        build: _Build,
        pool: PoolState,
        asset_id: str,
        symbol: str | None,
    ) -> Decimal | None:
        """Price of a reserve the wallet holds nothing in; only the backstop APR needs it."""
        try:
            return await self._price(build, pool, asset_id, symbol)
        except DependencyUnavailableError as exc:
            logger.warning(
                "untouched_reserve_price_unavailable",
                pool_id=pool.pool_id,
                asset=asset_id,
                error=exc.reason,
                exc_info=True,
            )
            return None

    async def _load_pool_bundle(self, build: _Build, pool_id: str) -> _PoolBundle | None:
        try:
            pool = await self._pool(pool_id)
            user = await self._user_positions(pool, build.wallet)
            assets = list(pool.reserves)
            metadata = await asyncio.gather(*(self._metadata(a) for a in assets))
            # an oracle failure excludes the pool only for reserves the wallet holds
            prices = await asyncio.gather(
                *(
                    (self._price if user.touches(a) else self._untouched_price)(
                        build, pool, a, m.symbol if m is not None else None
                    )
                    for a, m in zip(assets, metadata)
                )
            )
        except DependencyUnavailableError as exc:
            build.exclude(exc)
            return None
        return _PoolBundle(
            pool=pool,
            user=user,
            metadata=dict(zip(assets, metadata)),
            prices=dict(zip(assets, prices)),
        )

    async def _backstop_token(self, pool: PoolState) -> BackstopTokenState:
        hit, cached = self._caches.backstop_tokens.get_entry(pool.backstop_id)
        if hit:
            return cached
        token = await self._client.load_backstop_token(pool.backstop_id)
        self._caches.backstop_tokens.set(pool.backstop_id, token)
        return token

    async def _backstop_pool(self, pool: PoolState) -> BackstopPoolState:
        key = f"{pool.backstop_id}:{pool.pool_id}"
        hit, cached = self._caches.backstop_pools.get_entry(key)
        if hit:
            return cached
        state = await self._client.load_backstop_pool(pool.backstop_id, pool.pool_id)
        self._caches.backstop_pools.set(key, state)
        return state

    async def _load_backstop(self, build: _Build, pool: PoolState) -> _BackstopBundle | None:
        if not pool.backstop_id:
            return None
        try:
            token, state, user = await asyncio.gather(
                self._backstop_token(pool),
                self._backstop_pool(pool),
                self._client.load_user_backstop(pool.backstop_id, pool.pool_id, build.wallet),
            )
        except Exception as exc:
            build.exclude(DependencyUnavailableError(pool.pool_id, "backstop", str(exc)))
            return None
        return _BackstopBundle(token=token, state=state, user=user)

    # ──────────────────────────────────────────────
    # Building
    # ──────────────────────────────────────────────

    async def _build(self, wallet: str, pool_ids: tuple[str, ...]) -> WalletSnapshot:
        with bound_request(wallet=wallet):
            return await self._assemble(wallet, pool_ids)

    async def _assemble(self, wallet: str, pool_ids: tuple[str, ...]) -> WalletSnapshot:
        build = _Build(wallet)
        bundles = [
            b
            for b in await asyncio.gather(*(self._load_pool_bundle(build, p) for p in pool_ids))
            if b is not None
        ]
        backstops = await asyncio.gather(*(self._load_backstop(build, b.pool) for b in bundles))
        now = int(self._clock())

        token = next((bs.token for bs in backstops if bs is not None), None)
        blnd_price = usdc_per_blnd(token) if token is not None else None
        lp_price = lp_token_price(token) if token is not None else None

        snapshot = WalletSnapshot(wallet=wallet, excluded=build.failures)
        for bundle, backstop in zip(bundles, backstops):
            pool_positions = [
                self._position(bundle, reserve, blnd_price, now)
                for asset_id, reserve in bundle.pool.reserves.items()
                if bundle.user.touches(asset_id)
            ]
            snapshot.positions.extend(pool_positions)
            if pool_positions:
                snapshot.pool_estimates.append(self._estimate(bundle.pool, pool_positions))
            self._add_emissions(snapshot, bundle, now)
            if backstop is not None:
                position = self._backstop_position(bundle, backstop, blnd_price, lp_price, now)
                if position is not None:
                    snapshot.backstop_positions.append(position)

        self._aggregate(snapshot)
        snapshot.blnd_price = blnd_price
        snapshot.lp_token_price = lp_price
        if token is not None:
            snapshot.blnd_per_lp_token = blnd_per_lp_token(token)
            snapshot.backstop_pool_blnd = token.blnd
            snapshot.backstop_pool_shares = token.shares

        logger.info(
            "wallet_snapshot_built",
            pools=len(bundles),
            positions=len(snapshot.positions),
            backstop_positions=len(snapshot.backstop_positions),
            excluded=len(snapshot.excluded),
        )
        return snapshot

    def _position(
        self,
        bundle: _PoolBundle,
        reserve: ReserveState,
        blnd_price: Decimal | None,
        now: int,
    ) -> ReservePosition:
        asset_id = reserve.asset_id
        user = bundle.user
        rate_decimals = self._settings.rate_decimals
        factor_decimals = self._settings.factor_decimals
        metadata = bundle.metadata.get(asset_id)
        price = bundle.prices.get(asset_id)
        usd = price if price is not None else ZERO

        supply_b = user.supply.get(asset_id, 0)
        collateral_b = user.collateral.get(asset_id, 0)
        liability_d = user.liabilities.get(asset_id, 0)

        def underlying_b(btokens: int) -> Decimal:
            return to_decimal(
                btokens_to_underlying(btokens, reserve.b_rate, rate_decimals), reserve.decimals
            )

        def underlying_d(dtokens: int) -> Decimal:
            return to_decimal(
                dtokens_to_underlying(dtokens, reserve.d_rate, rate_decimals), reserve.decimals
            )

        non_collateral = underlying_b(supply_b)
        collateral = underlying_b(collateral_b)
        borrowed = underlying_d(liability_d)
        total_supplied = underlying_b(reserve.b_supply)
        total_borrowed = underlying_d(reserve.d_supply)

        supply_emission_apy = ZERO
        borrow_emission_apy = ZERO
        if blnd_price is not None and price is not None:
            per_supplied = emissions_per_year_per_token(
                reserve.supply_emissions, total_supplied, now
            )
            per_borrowed = emissions_per_year_per_token(
                reserve.borrow_emissions, total_borrowed, now
            )
            supply_emission_apy = per_supplied * blnd_price / price * 100
            borrow_emission_apy = per_borrowed * blnd_price / price * 100

        return ReservePosition(
            id=composite_key(bundle.pool.pool_id, asset_id),
            pool_id=bundle.pool.pool_id,
            pool_name=bundle.pool.name,
            asset_id=asset_id,
            symbol=metadata.symbol if metadata is not None else asset_id[:4],
            name=(metadata.name or metadata.symbol) if metadata is not None else asset_id,
            price=price,
            supply_btokens=supply_b,
            collateral_btokens=collateral_b,
            liability_dtokens=liability_d,
            non_collateral_amount=non_collateral,
            collateral_amount=collateral,
            borrow_amount=borrowed,
            supply_usd=(non_collateral + collateral) * usd,
            collateral_usd=collateral * usd,
            borrow_usd=borrowed * usd,
            supply_apy=reserve.supply_apy * 100,
            borrow_apy=reserve.borrow_apy * 100,
            supply_emission_apy=supply_emission_apy,
            borrow_emission_apy=borrow_emission_apy,
            collateral_factor=to_decimal(reserve.c_factor, factor_decimals),
            liability_factor=to_decimal(reserve.l_factor, factor_decimals),
            utilization=total_borrowed / total_supplied if total_supplied > 0 else ZERO,
            b_rate=to_decimal(reserve.b_rate, rate_decimals),
            d_rate=to_decimal(reserve.d_rate, rate_decimals),
        )

    def _estimate(self, pool: PoolState, positions: list[ReservePosition]) -> PoolEstimate:
        supplied = sum((p.supply_usd for p in positions), ZERO)
        borrowed = sum((p.borrow_usd for p in positions), ZERO)
        collateral = sum((p.collateral_usd for p in positions), ZERO)
        effective_collateral = sum((p.collateral_usd * p.collateral_factor for p in positions), ZERO)
        effective_liabilities = sum(
            (
                p.borrow_usd / p.liability_factor if p.liability_factor > 0 else p.borrow_usd
                for p in positions
            ),
            ZERO,
        )
        earning = sum((p.supply_usd * p.supply_apy for p in positions), ZERO)
        paying = sum((p.borrow_usd * p.borrow_apy for p in positions), ZERO)

        return PoolEstimate(
            pool_id=pool.pool_id,
            pool_name=pool.name,
            total_supplied_usd=supplied,
            total_borrowed_usd=borrowed,
            total_collateral_usd=collateral,
            total_effective_collateral=effective_collateral,
            total_effective_liabilities=effective_liabilities,
            borrow_capacity=effective_collateral - effective_liabilities,
            borrow_limit=(
                effective_liabilities / effective_collateral if effective_collateral > 0 else ZERO
            ),
            health_factor=(
                effective_collateral / effective_liabilities if effective_liabilities > 0 else None
            ),
            net_apy=(earning - paying) / supplied if supplied > 0 else ZERO,
        )

    def _add_emissions(self, snapshot: WalletSnapshot, bundle: _PoolBundle, now: int) -> None:
        """Claimable supply-side and borrow-side emissions of one pool."""
        user = bundle.user
        supply_total = ZERO
        borrow_total = ZERO
        for asset_id, reserve in bundle.pool.reserves.items():
            btokens = user.supply.get(asset_id, 0) + user.collateral.get(asset_id, 0)
            checkpoint = user.supply_emissions.get(asset_id)
            if btokens or checkpoint is not None:
                supply_total += claimable_emissions(
                    reserve.supply_emissions,
                    checkpoint,
                    to_decimal(btokens, reserve.decimals),
                    to_decimal(reserve.b_supply, reserve.decimals),
                    now,
                )
            dtokens = user.liabilities.get(asset_id, 0)
            checkpoint = user.borrow_emissions.get(asset_id)
            if dtokens or checkpoint is not None:
                borrow_total += claimable_emissions(
                    reserve.borrow_emissions,
                    checkpoint,
                    to_decimal(dtokens, reserve.decimals),
                    to_decimal(reserve.d_supply, reserve.decimals),
                    now,
                )

        pool_id = bundle.pool.pool_id
        if supply_total or borrow_total:
            snapshot.per_pool_supply_emissions[pool_id] = supply_total
            snapshot.per_pool_borrow_emissions[pool_id] = borrow_total
            snapshot.per_pool_emissions[pool_id] = supply_total + borrow_total
        snapshot.total_supply_emissions += supply_total
        snapshot.total_borrow_emissions += borrow_total
        snapshot.total_emissions += supply_total + borrow_total

    def _backstop_interest_apr(
        self, bundle: _PoolBundle, backstop: _BackstopBundle, lp_price: Decimal | None
    ) -> Decimal:
        """backstop_rate * avg_borrow_apy * total_borrowed / backstop_spot_value * 100."""
        if lp_price is None:
            return ZERO
        spot_value = to_decimal(backstop.state.tokens, backstop.token.decimals) * lp_price
        if spot_value <= 0:
            return ZERO

        borrowed_by_reserve = []
        for asset_id, reserve in bundle.pool.reserves.items():
            price = bundle.prices.get(asset_id)
            if price is None:
                continue
            borrowed = to_decimal(
                dtokens_to_underlying(reserve.d_supply, reserve.d_rate, self._settings.rate_decimals),
                reserve.decimals,
            )
            borrowed_by_reserve.append((borrowed * price, reserve.borrow_apy))

        total_borrowed = sum((usd for usd, _ in borrowed_by_reserve), ZERO)
        avg_borrow_apy = _weighted(borrowed_by_reserve)
        if avg_borrow_apy is None:
            return ZERO
        backstop_rate = to_decimal(bundle.pool.backstop_rate, self._settings.factor_decimals)
        return backstop_rate * avg_borrow_apy * total_borrowed / spot_value * 100

    def _backstop_position(
        self,
        bundle: _PoolBundle,
        backstop: _BackstopBundle,
        blnd_price: Decimal | None,
        lp_price: Decimal | None,
        now: int,
    ) -> BackstopPosition | None:
        user = backstop.user
        state = backstop.state
        decimals = backstop.token.decimals
        if user.shares <= 0 and not user.q4w:
            return None
        usd = lp_price if lp_price is not None else ZERO

        def lp_tokens(shares: int) -> Decimal:
            return to_decimal(shares_to_lp_tokens(shares, state.shares, state.tokens), decimals)

        chunks = [
            Q4WChunk(
                shares=entry.amount,
                lp_tokens=lp_tokens(entry.amount),
                lp_tokens_usd=lp_tokens(entry.amount) * usd,
                expiration=entry.expiration,
                unlocked=entry.expiration <= now,
            )
            for entry in sorted(user.q4w, key=lambda e: e.expiration)
        ]
        q4w_shares = sum(c.shares for c in chunks)
        if q4w_shares != user.q4w_total:
            logger.warning(
                "q4w_total_mismatch",
                pool_id=state.pool_id,
                entries_total=q4w_shares,
                reported_total=user.q4w_total,
            )
        unlocked_shares = sum(c.shares for c in chunks if c.unlocked)

        emission_apy = ZERO
        pool_lp_tokens = to_decimal(state.tokens, decimals)
        if blnd_price is not None and lp_price is not None and lp_price > 0:
            per_lp = emissions_per_year_per_token(state.emissions, pool_lp_tokens, now)
            emission_apy = per_lp * blnd_price / lp_price * 100

        user_lp = lp_tokens(user.shares)
        q4w_lp = sum((c.lp_tokens for c in chunks), ZERO)
        return BackstopPosition(
            pool_id=state.pool_id,
            pool_name=bundle.pool.name,
            shares=user.shares,
            lp_tokens=user_lp,
            lp_tokens_usd=user_lp * usd,
            q4w_shares=q4w_shares,
            q4w_lp_tokens=q4w_lp,
            q4w_lp_tokens_usd=q4w_lp * usd,
            unlocked_q4w_shares=unlocked_shares,
            unlocked_q4w_lp_tokens=sum((c.lp_tokens for c in chunks if c.unlocked), ZERO),
            q4w_chunks=chunks,
            interest_apr=self._backstop_interest_apr(bundle, backstop, lp_price),
            emission_apy=emission_apy,
            claimable_emissions=claimable_emissions(
                state.emissions,
                user.emission,
                to_decimal(user.shares, decimals),
                to_decimal(state.shares, decimals),
                now,
            ),
            pool_q4w_percent=(
                Decimal(state.q4w_shares) / Decimal(state.shares) * 100 if state.shares > 0 else ZERO
            ),
        )

    def _aggregate(self, snapshot: WalletSnapshot) -> None:
        positions = snapshot.positions
        snapshot.total_supply_usd = sum((p.supply_usd for p in positions), ZERO)
        snapshot.total_borrow_usd = sum((p.borrow_usd for p in positions), ZERO)
        snapshot.total_collateral_usd = sum((p.collateral_usd for p in positions), ZERO)
        snapshot.total_non_collateral_usd = snapshot.total_supply_usd - snapshot.total_collateral_usd
        snapshot.net_position_usd = snapshot.total_supply_usd - snapshot.total_borrow_usd

        snapshot.total_backstop_q4w_usd = sum(
            (bp.q4w_lp_tokens_usd for bp in snapshot.backstop_positions), ZERO
        )
        snapshot.total_backstop_usd = (
            sum((bp.lp_tokens_usd for bp in snapshot.backstop_positions), ZERO)
            + snapshot.total_backstop_q4w_usd
        )

        snapshot.weighted_supply_apy = _weighted((p.supply_usd, p.supply_apy) for p in positions)
        snapshot.weighted_borrow_apy = _weighted((p.borrow_usd, p.borrow_apy) for p in positions)
        snapshot.weighted_blnd_apy = _weighted(
            (p.supply_usd, p.supply_emission_apy) for p in positions
        )
        snapshot.weighted_supply_borrow_blnd_apy = _weighted(
            [(p.supply_usd, p.supply_emission_apy) for p in positions]
            + [(p.borrow_usd, p.borrow_emission_apy) for p in positions]
        )

        net_apy = _weighted((e.total_supplied_usd, e.net_apy) for e in snapshot.pool_estimates)
        if net_apy is None and snapshot.weighted_supply_apy is not None:
            net_apy = snapshot.weighted_supply_apy - (snapshot.weighted_borrow_apy or ZERO)
        snapshot.net_apy = net_apy
