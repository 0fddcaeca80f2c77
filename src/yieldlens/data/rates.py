"""Rate and price time series with "latest at or before" lookups.

Both daily series forward-fill: a query for a day with no sample returns
the most recent earlier sample. A miss is never an error. Rates default
to 1 before the first sample; prices resolve through PriceResolver's
fallback chain (exact -> forward_fill -> live_fallback -> constant).
"""

from bisect import bisect_right
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

import aiosqlite

from yieldlens.data.database import LedgerDatabase
from yieldlens.data.models import PeriodApy
from yieldlens.exceptions import StoreUnavailableError
from yieldlens.logging import get_logger
from yieldlens.models import PriceSource, RateSample

logger = get_logger(__name__)

_DEFAULT_RATE = Decimal("1")


class _ForwardFill:
    """Sorted (day, value) pairs; lookup returns the value of the latest day <= query."""

    def __init__(self, points: Iterable[tuple[date, Decimal]]) -> None:
        ordered = sorted(points, key=lambda p: p[0])
        self._days = [p[0] for p in ordered]
        self._values = [p[1] for p in ordered]

    def __len__(self) -> int:
        return len(self._days)

    def lookup(self, day: date) -> tuple[date, Decimal] | None:
        idx = bisect_right(self._days, day)
        if idx == 0:
            return None
        return self._days[idx - 1], self._values[idx - 1]


class RateSeries:
    """Daily b_rate/d_rate for one pool reserve.

    b_rate and d_rate forward-fill independently, so a day carrying only
    one of them does not reset the other.
    """

    def __init__(
        self,
        samples: Iterable[RateSample],
        default_rate: Decimal = _DEFAULT_RATE,
    ) -> None:
        samples = list(samples)
        self._b = _ForwardFill((s.rate_date, s.b_rate) for s in samples if s.b_rate is not None)
        self._d = _ForwardFill((s.rate_date, s.d_rate) for s in samples if s.d_rate is not None)
        self._default = default_rate

    def __len__(self) -> int:
        return max(len(self._b), len(self._d))

    def b_rate_at(self, day: date) -> Decimal:
        hit = self._b.lookup(day)
        return hit[1] if hit is not None else self._default

    def d_rate_at(self, day: date) -> Decimal:
        hit = self._d.lookup(day)
        return hit[1] if hit is not None else self._default

    def at(self, day: date) -> tuple[Decimal, Decimal]:
        """Return (b_rate, d_rate) in force on the given day."""
        return self.b_rate_at(day), self.d_rate_at(day)


class PriceSeries:
    """Daily USD prices for one token."""

    def __init__(self, points: Iterable[tuple[date, Decimal]]) -> None:
        self._series = _ForwardFill(points)

    def __len__(self) -> int:
        return len(self._series)

    def lookup(self, day: date) -> tuple[date, Decimal] | None:
        """Return (sample_day, price) of the latest sample on or before day."""
        return self._series.lookup(day)

    def price_at(self, day: date) -> Decimal | None:
        hit = self._series.lookup(day)
        return hit[1] if hit is not None else None


class RateStore:
    """Read-only accessor over the daily_rates table."""

    def __init__(self, database: LedgerDatabase, default_rate: Decimal = _DEFAULT_RATE) -> None:
        self._database = database
        self._default_rate = default_rate

    async def _fetchall(self, sql: str, params: list) -> list:
        try:
            cursor = await self._database.db.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"rate query failed: {exc}") from exc

    async def get_rate_at(
        self, pool_id: str, asset_address: str, day: date
    ) -> tuple[Decimal, Decimal]:
        """Return (b_rate, d_rate) in force on day, each forward-filled on its own."""
        rates = []
        for column in ("b_rate", "d_rate"):
            rows = await self._fetchall(
                f"SELECT {column} FROM daily_rates "
                f"WHERE pool_id = ? AND asset_address = ? AND rate_date <= ? "
                f"AND {column} IS NOT NULL ORDER BY rate_date DESC LIMIT 1",
                [pool_id, asset_address, day.isoformat()],
            )
            rates.append(Decimal(rows[0][0]) if rows else self._default_rate)
        return rates[0], rates[1]

    async def get_rate_series(
        self,
        pool_id: str,
        asset_address: str,
        until: date | None = None,
    ) -> RateSeries:
        series = await self.get_asset_rate_series(asset_address, until, pool_ids=[pool_id])
        return series.get(pool_id, RateSeries([], self._default_rate))

    async def get_asset_rate_series(
        self,
        asset_address: str,
        until: date | None = None,
        pool_ids: list[str] | None = None,
    ) -> dict[str, RateSeries]:
        """Load rate series for one asset across pools, keyed by pool_id."""
        conditions = ["asset_address = ?"]
        params: list = [asset_address]
        if until is not None:
            conditions.append("rate_date <= ?")
            params.append(until.isoformat())
        if pool_ids:
            conditions.append(f"pool_id IN ({', '.join('?' for _ in pool_ids)})")
            params.extend(pool_ids)

        rows = await self._fetchall(
            "SELECT pool_id, asset_address, rate_date, b_rate, d_rate FROM daily_rates "
            f"WHERE {' AND '.join(conditions)} ORDER BY pool_id, rate_date",
            params,
        )
        by_pool: dict[str, list[RateSample]] = {}
        for r in rows:
            by_pool.setdefault(r[0], []).append(
                RateSample(
                    pool_id=r[0],
                    asset_address=r[1],
                    rate_date=date.fromisoformat(r[2]),
                    b_rate=Decimal(r[3]) if r[3] is not None else None,
                    d_rate=Decimal(r[4]) if r[4] is not None else None,
                )
            )
        return {
            pool_id: RateSeries(samples, self._default_rate)
            for pool_id, samples in by_pool.items()
        }

    async def get_period_apy_all(self, days: int, today: date) -> list[PeriodApy]:
        """Annualised b_rate growth per (pool, asset) over the trailing window.

        The window is [today - days, today); the incomplete current day is
        excluded. The exponent uses the span between the first and last
        sample actually present.
        """
        rows = await self._fetchall(
            "SELECT pool_id, asset_address, rate_date, b_rate FROM daily_rates "
            "WHERE rate_date >= ? AND rate_date < ? AND b_rate IS NOT NULL "
            "ORDER BY pool_id, asset_address, rate_date",
            [(today - timedelta(days=days)).isoformat(), today.isoformat()],
        )
        bounds: dict[tuple[str, str], list[tuple[date, Decimal]]] = {}
        for r in rows:
            key = (r[0], r[1])
            point = (date.fromisoformat(r[2]), Decimal(r[3]))
            if key not in bounds:
                bounds[key] = [point, point]
            else:
                bounds[key][1] = point

        results = []
        for (pool_id, asset_address), (first, last) in bounds.items():
            span = (last[0] - first[0]).days
            apy = None
            if first[1] > 0 and last[1] > 0 and span > 0:
                growth = (last[1] / first[1]) ** (Decimal(365) / Decimal(span))
                apy = (growth - 1) * 100
            results.append(
                PeriodApy(
                    pool_id=pool_id,
                    asset_address=asset_address,
                    apy=apy,
                    start_date=first[0],
                    end_date=last[0],
                )
            )
        return results


class PriceStore:
    """Read-only accessor over the daily_token_prices table."""

    def __init__(self, database: LedgerDatabase) -> None:
        self._database = database

    async def get_price_series(
        self,
        token_address: str,
        until: date | None = None,
    ) -> PriceSeries:
        sql = "SELECT price_date, usd_price FROM daily_token_prices WHERE token_address = ?"
        params: list = [token_address]
        if until is not None:
            sql += " AND price_date <= ?"
            params.append(until.isoformat())
        try:
            cursor = await self._database.db.execute(sql + " ORDER BY price_date", params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"price query failed: {exc}") from exc
        return PriceSeries((date.fromisoformat(r[0]), Decimal(r[1])) for r in rows)

    async def get_price_at(self, token_address: str, day: date) -> tuple[date, Decimal] | None:
        """Return (sample_day, price) of the latest sample on or before day."""
        try:
            cursor = await self._database.db.execute(
                "SELECT price_date, usd_price FROM daily_token_prices "
                "WHERE token_address = ? AND price_date <= ? "
                "ORDER BY price_date DESC LIMIT 1",
                (token_address, day.isoformat()),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"price query failed: {exc}") from exc
        if row is None:
            return None
        return date.fromisoformat(row[0]), Decimal(row[1])


@dataclass(frozen=True)
class ResolvedPrice:
    """A historical USD price together with where it came from."""

    usd_price: Decimal
    source: PriceSource


def resolve_from_series(
    series: PriceSeries,
    day: date,
    live_price: Decimal | None = None,
    fallback: Decimal = Decimal("0"),
) -> ResolvedPrice:
    """Walk the fallback chain against an already-loaded series."""
    hit = series.lookup(day)
    if hit is not None:
        sample_day, price = hit
        source = PriceSource.EXACT if sample_day == day else PriceSource.FORWARD_FILL
        return ResolvedPrice(price, source)
    if live_price is not None:
        return ResolvedPrice(live_price, PriceSource.LIVE_FALLBACK)
    return ResolvedPrice(fallback, PriceSource.CONSTANT)


class PriceResolver:
    """Historical price lookup with the exact -> forward_fill -> live -> constant chain.

    Series are loaded once per token and kept for the resolver's lifetime,
    which is a single request.
    """

    def __init__(self, prices: PriceStore, fallback_usd_price: Decimal = Decimal("0")) -> None:
        self._prices = prices
        self._fallback = fallback_usd_price
        self._series: dict[str, PriceSeries] = {}

    async def series_for(self, token_address: str) -> PriceSeries:
        series = self._series.get(token_address)
        if series is None:
            series = await self._prices.get_price_series(token_address)
            self._series[token_address] = series
        return series

    async def resolve(
        self,
        token_address: str,
        day: date,
        live_price: Decimal | None = None,
    ) -> ResolvedPrice:
        series = await self.series_for(token_address)
        resolved = resolve_from_series(series, day, live_price, self._fallback)
        if resolved.source in (PriceSource.LIVE_FALLBACK, PriceSource.CONSTANT):
            logger.debug(
                "historical_price_missing",
                token=token_address,
                day=day.isoformat(),
                source=resolved.source.value,
            )
        return resolved
