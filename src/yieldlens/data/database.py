"""Async SQLite database manager for the ledger event store.

Uses aiosqlite for non-blocking access with WAL mode so readers never
wait on the (external) ingestion writer.
"""

import os
from typing import Self

import aiosqlite

from yieldlens.exceptions import StoreUnavailableError
from yieldlens.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS pool_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_id TEXT NOT NULL,
    transaction_hash TEXT NOT NULL DEFAULT '',
    ledger_sequence INTEGER NOT NULL,
    ledger_closed_at TEXT NOT NULL,
    action_type TEXT NOT NULL,
    asset_address TEXT,
    user_address TEXT NOT NULL,
    amount_underlying TEXT,
    amount_tokens TEXT,
    implied_rate TEXT,
    auction_type INTEGER,
    filler_address TEXT,
    liquidation_percent INTEGER,
    lot_asset TEXT,
    lot_amount TEXT,
    bid_asset TEXT,
    bid_amount TEXT
);

CREATE TABLE IF NOT EXISTS backstop_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_id TEXT NOT NULL,
    transaction_hash TEXT NOT NULL DEFAULT '',
    ledger_sequence INTEGER NOT NULL,
    ledger_closed_at TEXT NOT NULL,
    action_type TEXT NOT NULL,
    user_address TEXT NOT NULL,
    lp_tokens TEXT,
    shares TEXT,
    q4w_expiration INTEGER
);

CREATE TABLE IF NOT EXISTS daily_rates (
    pool_id TEXT NOT NULL,
    asset_address TEXT NOT NULL,
    rate_date TEXT NOT NULL,
    b_rate TEXT,
    d_rate TEXT,
    PRIMARY KEY (pool_id, asset_address, rate_date)
);

CREATE TABLE IF NOT EXISTS daily_token_prices (
    token_address TEXT NOT NULL,
    price_date TEXT NOT NULL,
    usd_price TEXT NOT NULL,
    PRIMARY KEY (token_address, price_date)
);

CREATE TABLE IF NOT EXISTS pools (
    pool_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    short_name TEXT,
    version INTEGER NOT NULL DEFAULT 2,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS tokens (
    asset_address TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    name TEXT,
    decimals INTEGER NOT NULL DEFAULT 7,
    is_native INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_pool_events_user_asset
    ON pool_events(user_address, asset_address, ledger_closed_at, ledger_sequence);

CREATE INDEX IF NOT EXISTS idx_pool_events_filler
    ON pool_events(filler_address, action_type);

CREATE INDEX IF NOT EXISTS idx_backstop_events_user
    ON backstop_events(user_address, pool_id, ledger_closed_at, ledger_sequence);
"""


class LedgerDatabase:
    """Async SQLite connection manager for ledger events, rates and prices.

    Usage:
        async with LedgerDatabase("/path/to/db") as db:
            await db.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/ledger.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises:
            StoreUnavailableError: If not connected.
        """
        if self._connection is None:
            raise StoreUnavailableError("Ledger database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the connection, configure pragmas, and create the schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(self._db_path)
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._create_tables()
            await self._ensure_schema_version()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(f"cannot open ledger database {self._db_path}") from exc

        logger.info("ledger_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("ledger_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
