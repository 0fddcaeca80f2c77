"""Typed SQLite read/write abstraction for the ledger event store.

Provides LedgerEventStore with typed methods for inserting and querying
pool events, backstop events, rate/price samples and the pool/token
dictionaries. All SQL is isolated behind this interface.

CRITICAL: All amounts and rates stored as TEXT in SQLite, restored as
int (raw units) or Decimal (rates, prices) on read.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import aiosqlite

from yieldlens.data.database import LedgerDatabase
from yieldlens.data.models import PoolAssetPair, PoolInfo, TokenInfo
from yieldlens.exceptions import StoreUnavailableError
from yieldlens.logging import get_logger
from yieldlens.models import (
    LIQUIDATION_AUCTION,
    AuctionLegs,
    BackstopEvent,
    PoolAction,
    PoolEvent,
    PriceSample,
    RateSample,
    parse_backstop_action,
    parse_pool_action,
)

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_POOL_EVENT_COLUMNS = (
    "pool_id, user_address, action_type, ledger_sequence, ledger_closed_at, "
    "asset_address, amount_underlying, amount_tokens, implied_rate, transaction_hash, "
    "auction_type, filler_address, lot_asset, lot_amount, bid_asset, bid_amount, "
    "liquidation_percent"
)

_BACKSTOP_EVENT_COLUMNS = (
    "pool_id, user_address, action_type, ledger_sequence, ledger_closed_at, "
    "lp_tokens, shares, q4w_expiration, transaction_hash"
)

_AUCTION_TYPES = tuple(a.value for a in PoolAction if a.is_auction)


def format_timestamp(value: datetime) -> str:
    """Serialize a timezone-aware datetime as a lexically sortable UTC string."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _text(value: Any) -> str | None:
    return None if value is None else str(value)


def _int(value: Any) -> int | None:
    return None if value is None else int(value)


def _decimal(value: Any) -> Decimal | None:
    return None if value is None else Decimal(value)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _row_to_pool_event(row: Sequence[Any]) -> PoolEvent:
    auction = None
    if row[10] is not None:
        auction = AuctionLegs(
            auction_type=int(row[10]),
            filler_address=row[11],
            lot_asset=row[12],
            lot_amount=_int(row[13]),
            bid_asset=row[14],
            bid_amount=_int(row[15]),
            liquidation_percent=_int(row[16]),
        )
    return PoolEvent(
        pool_id=row[0],
        user_address=row[1],
        action=parse_pool_action(row[2]),
        ledger_sequence=int(row[3]),
        closed_at=parse_timestamp(row[4]),
        asset_address=row[5],
        amount_underlying=_int(row[6]),
        amount_tokens=_int(row[7]),
        implied_rate=_decimal(row[8]),
        transaction_hash=row[9] or "",
        auction=auction,
    )


def _row_to_backstop_event(row: Sequence[Any]) -> BackstopEvent:
    return BackstopEvent(
        pool_id=row[0],
        user_address=row[1],
        action=parse_backstop_action(row[2]),
        ledger_sequence=int(row[3]),
        closed_at=parse_timestamp(row[4]),
        lp_tokens=_int(row[5]),
        shares=_int(row[6]),
        q4w_expiration=_int(row[7]),
        transaction_hash=row[8] or "",
    )


class LedgerEventStore:
    """Async SQLite store for ledger events and their reference dictionaries.

    Wraps LedgerDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection). SQLite
    errors surface as StoreUnavailableError.

    Usage:
        async with LedgerDatabase("data/ledger.db") as database:
            store = LedgerEventStore(database)
            events = await store.get_asset_events(wallet, asset)
    """

    def __init__(self, database: LedgerDatabase) -> None:
        self._database = database

    @property
    def database(self) -> LedgerDatabase:
        return self._database

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[Sequence[Any]]:
        try:
            cursor = await self._database.db.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"ledger query failed: {exc}") from exc

    async def _executemany(self, sql: str, data: list[tuple]) -> int:
        try:
            cursor = await self._database.db.executemany(sql, data)
            await self._database.db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"ledger write failed: {exc}") from exc
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def insert_pool_events(self, events: Iterable[PoolEvent]) -> int:
        """Append pool events. Returns the number of inserted rows."""
        data = []
        for e in events:
            legs = e.auction
            data.append(
                (
                    e.pool_id,
                    e.transaction_hash,
                    e.ledger_sequence,
                    format_timestamp(e.closed_at),
                    e.action.value,
                    e.asset_address,
                    e.user_address,
                    _text(e.amount_underlying),
                    _text(e.amount_tokens),
                    _text(e.implied_rate),
                    legs.auction_type if legs else None,
                    legs.filler_address if legs else None,
                    legs.liquidation_percent if legs else None,
                    legs.lot_asset if legs else None,
                    _text(legs.lot_amount) if legs else None,
                    legs.bid_asset if legs else None,
                    _text(legs.bid_amount) if legs else None,
                )
            )
        if not data:
            return 0

        inserted = await self._executemany(
            "INSERT INTO pool_events "
            "(pool_id, transaction_hash, ledger_sequence, ledger_closed_at, action_type, "
            "asset_address, user_address, amount_underlying, amount_tokens, implied_rate, "
            "auction_type, filler_address, liquidation_percent, lot_asset, lot_amount, "
            "bid_asset, bid_amount) "
            f"VALUES ({_placeholders(17)})",
            data,
        )
        logger.debug("inserted_pool_events", total=len(data), inserted=inserted)
        return inserted

    async def insert_backstop_events(self, events: Iterable[BackstopEvent]) -> int:
        """Append backstop events. Returns the number of inserted rows."""
        data = [
            (
                e.pool_id,
                e.transaction_hash,
                e.ledger_sequence,
                format_timestamp(e.closed_at),
                e.action.value,
                e.user_address,
                _text(e.lp_tokens),
                _text(e.shares),
                e.q4w_expiration,
            )
            for e in events
        ]
        if not data:
            return 0

        inserted = await self._executemany(
            "INSERT INTO backstop_events "
            "(pool_id, transaction_hash, ledger_sequence, ledger_closed_at, action_type, "
            "user_address, lp_tokens, shares, q4w_expiration) "
            f"VALUES ({_placeholders(9)})",
            data,
        )
        logger.debug("inserted_backstop_events", total=len(data), inserted=inserted)
        return inserted

    async def insert_rate_samples(self, samples: Iterable[RateSample]) -> int:
        """Insert or replace daily rate snapshots keyed by (pool, asset, day)."""
        data = [
            (
                s.pool_id,
                s.asset_address,
                s.rate_date.isoformat(),
                _text(s.b_rate),
                _text(s.d_rate),
            )
            for s in samples
        ]
        if not data:
            return 0
        return await self._executemany(
            "INSERT OR REPLACE INTO daily_rates "
            "(pool_id, asset_address, rate_date, b_rate, d_rate) VALUES (?, ?, ?, ?, ?)",
            data,
        )

    async def insert_price_samples(self, samples: Iterable[PriceSample]) -> int:
        """Insert or replace daily USD prices keyed by (token, day)."""
        data = [
            (s.token_address, s.price_date.isoformat(), str(s.usd_price)) for s in samples
        ]
        if not data:
            return 0
        return await self._executemany(
            "INSERT OR REPLACE INTO daily_token_prices "
            "(token_address, price_date, usd_price) VALUES (?, ?, ?)",
            data,
        )

    async def upsert_pool(self, pool: PoolInfo) -> None:
        await self._executemany(
            "INSERT OR REPLACE INTO pools (pool_id, name, short_name, version, is_active) "
            "VALUES (?, ?, ?, ?, ?)",
            [(pool.pool_id, pool.name, pool.short_name, pool.version, 1 if pool.is_active else 0)],
        )

    async def upsert_token(self, token: TokenInfo) -> None:
        await self._executemany(
            "INSERT OR REPLACE INTO tokens (asset_address, symbol, name, decimals, is_native) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (
                    token.asset_address,
                    token.symbol,
                    token.name,
                    token.decimals,
                    1 if token.is_native else 0,
                )
            ],
        )

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_user_actions(
        self,
        user_address: str,
        action_types: Sequence[PoolAction] | None = None,
        pool_id: str | None = None,
        asset_address: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PoolEvent]:
        """Query a user's pool events, newest first.

        Matches rows where the user is the actor or the liquidator. An asset
        filter also matches auction lot/bid legs.
        """
        conditions = ["(user_address = ? OR filler_address = ?)"]
        params: list[Any] = [user_address, user_address]

        if action_types:
            conditions.append(f"action_type IN ({_placeholders(len(action_types))})")
            params.extend(a.value for a in action_types)
        if pool_id is not None:
            conditions.append("pool_id = ?")
            params.append(pool_id)
        if asset_address is not None:
            conditions.append("(asset_address = ? OR lot_asset = ? OR bid_asset = ?)")
            params.extend([asset_address] * 3)
        if since is not None:
            conditions.append("ledger_closed_at >= ?")
            params.append(format_timestamp(since))
        if until is not None:
            conditions.append("ledger_closed_at <= ?")
            params.append(format_timestamp(until))

        where = " AND ".join(conditions)
        rows = await self._fetchall(
            f"SELECT {_POOL_EVENT_COLUMNS} FROM pool_events WHERE {where} "
            "ORDER BY ledger_closed_at DESC, ledger_sequence DESC, id DESC "
            "LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [_row_to_pool_event(r) for r in rows]

    async def get_asset_events(self, user_address: str, asset_address: str) -> list[PoolEvent]:
        """Replay input for one (user, asset), oldest first.

        Returns the user's non-auction events for the asset, liquidation
        new/fill rows where the user is the liquidated party, and liquidation
        fills where the user is the filler, each touching the asset on either
        leg. A self-liquidation row is returned once.
        """
        auction_marks = _placeholders(len(_AUCTION_TYPES))
        rows = await self._fetchall(
            f"SELECT {_POOL_EVENT_COLUMNS} FROM pool_events WHERE "
            f"(user_address = ? AND asset_address = ? AND action_type NOT IN ({auction_marks})) "
            "OR (user_address = ? AND action_type IN (?, ?) AND auction_type = ? "
            "    AND (lot_asset = ? OR bid_asset = ?)) "
            "OR (filler_address = ? AND action_type = ? AND auction_type = ? "
            "    AND (lot_asset = ? OR bid_asset = ?)) "
            "ORDER BY ledger_closed_at ASC, ledger_sequence ASC, id ASC",
            [
                user_address,
                asset_address,
                *_AUCTION_TYPES,
                user_address,
                PoolAction.NEW_AUCTION.value,
                PoolAction.FILL_AUCTION.value,
                LIQUIDATION_AUCTION,
                asset_address,
                asset_address,
                user_address,
                PoolAction.FILL_AUCTION.value,
                LIQUIDATION_AUCTION,
                asset_address,
                asset_address,
            ],
        )
        events = [_row_to_pool_event(r) for r in rows]
        logger.debug("asset_events_loaded", asset=asset_address, count=len(events))
        return events

    async def get_wallet_events(self, user_address: str) -> list[PoolEvent]:
        """Every non-auction event of the user plus liquidation fills on either side, oldest first."""
        auction_marks = _placeholders(len(_AUCTION_TYPES))
        rows = await self._fetchall(
            f"SELECT {_POOL_EVENT_COLUMNS} FROM pool_events WHERE "
            f"(user_address = ? AND action_type NOT IN ({auction_marks})) "
            "OR ((user_address = ? OR filler_address = ?) AND action_type = ? "
            "    AND auction_type = ?) "
            "ORDER BY ledger_closed_at ASC, ledger_sequence ASC, id ASC",
            [
                user_address,
                *_AUCTION_TYPES,
                user_address,
                user_address,
                PoolAction.FILL_AUCTION.value,
                LIQUIDATION_AUCTION,
            ],
        )
        return [_row_to_pool_event(r) for r in rows]

    async def get_backstop_events(
        self, user_address: str, pool_id: str | None = None
    ) -> list[BackstopEvent]:
        """Query a user's backstop events, oldest first."""
        conditions = ["user_address = ?"]
        params: list[Any] = [user_address]
        if pool_id is not None:
            conditions.append("pool_id = ?")
            params.append(pool_id)

        where = " AND ".join(conditions)
        rows = await self._fetchall(
            f"SELECT {_BACKSTOP_EVENT_COLUMNS} FROM backstop_events WHERE {where} "
            "ORDER BY ledger_closed_at ASC, ledger_sequence ASC, id ASC",
            params,
        )
        return [_row_to_backstop_event(r) for r in rows]

    async def get_pool_asset_pairs(
        self, user_address: str, action_types: Sequence[PoolAction]
    ) -> list[PoolAssetPair]:
        """Distinct (pool, asset) pairs the user touched with the given actions."""
        if not action_types:
            return []
        rows = await self._fetchall(
            "SELECT DISTINCT pool_id, asset_address FROM pool_events "
            "WHERE user_address = ? AND asset_address IS NOT NULL "
            f"AND action_type IN ({_placeholders(len(action_types))}) "
            "ORDER BY pool_id, asset_address",
            [user_address, *(a.value for a in action_types)],
        )
        return [PoolAssetPair(pool_id=r[0], asset_address=r[1]) for r in rows]

    async def get_pools(self, active_only: bool = True) -> list[PoolInfo]:
        sql = "SELECT pool_id, name, short_name, version, is_active FROM pools"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._fetchall(sql + " ORDER BY pool_id")
        return [
            PoolInfo(
                pool_id=r[0],
                name=r[1],
                short_name=r[2],
                version=int(r[3]),
                is_active=bool(r[4]),
            )
            for r in rows
        ]

    async def get_token(self, asset_address: str) -> TokenInfo | None:
        rows = await self._fetchall(
            "SELECT asset_address, symbol, name, decimals, is_native "
            "FROM tokens WHERE asset_address = ?",
            (asset_address,),
        )
        if not rows:
            return None
        r = rows[0]
        return TokenInfo(
            asset_address=r[0],
            symbol=r[1],
            name=r[2],
            decimals=int(r[3]),
            is_native=bool(r[4]),
        )
