"""Tests for LedgerEventStore -- typed persistence of ledger events.

Covers exact round-trips of raw amounts, replay ordering, the liquidation
union queried for balance reconstruction, and the paginated action feed.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from yieldlens.data.database import LedgerDatabase
from yieldlens.data.models import PoolInfo, TokenInfo
from yieldlens.data.store import LedgerEventStore, format_timestamp, parse_timestamp
from yieldlens.exceptions import StoreUnavailableError, UnknownActionError
from yieldlens.models import (
    AuctionLegs,
    BackstopAction,
    BackstopEvent,
    PoolAction,
    PoolEvent,
)

WALLET = "GWALLET"
LIQUIDATOR = "GLIQUIDATOR"
OTHER = "GOTHER"
POOL_A = "POOL_A"
POOL_B = "POOL_B"
USDC = "USDC_ADDR"
XLM = "XLM_ADDR"


def _at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, tzinfo=timezone.utc)


def _make_event(
    action: PoolAction = PoolAction.SUPPLY,
    user: str = WALLET,
    asset: str | None = USDC,
    pool: str = POOL_A,
    amount: int = 1_000_0000000,
    day: int = 1,
    seq: int = 100,
    hour: int = 12,
    auction: AuctionLegs | None = None,
) -> PoolEvent:
    """Create a PoolEvent with tokens == underlying (rate 1)."""
    return PoolEvent(
        pool_id=pool,
        user_address=user,
        action=action,
        ledger_sequence=seq,
        closed_at=_at(day, hour),
        asset_address=asset,
        amount_underlying=amount,
        amount_tokens=amount,
        transaction_hash=f"tx-{seq}",
        auction=auction,
    )


def _make_fill(
    user: str = WALLET,
    filler: str = LIQUIDATOR,
    lot_asset: str = XLM,
    bid_asset: str = USDC,
    day: int = 5,
    seq: int = 500,
    auction_type: int = 0,
    action: PoolAction = PoolAction.FILL_AUCTION,
) -> PoolEvent:
    return _make_event(
        action=action,
        user=user,
        asset=None,
        day=day,
        seq=seq,
        auction=AuctionLegs(
            auction_type=auction_type,
            filler_address=filler,
            lot_asset=lot_asset,
            lot_amount=300_0000000,
            bid_asset=bid_asset,
            bid_amount=50_0000000,
            liquidation_percent=50,
        ),
    )


class TestTimestamps:
    """Tests for the sortable UTC timestamp encoding."""

    def test_roundtrip_utc(self) -> None:
        """A UTC datetime survives format/parse unchanged."""
        moment = datetime(2024, 3, 1, 23, 59, 59, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_offset_is_normalised(self) -> None:
        """Non-UTC offsets are stored as the equivalent UTC instant."""
        moment = datetime(2024, 3, 2, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(moment) == "2024-03-01T23:00:00Z"


class TestPoolEventRoundTrip:
    """Tests for writing and reading back pool events."""

    @pytest.mark.asyncio
    async def test_amounts_roundtrip_exactly(self, store: LedgerEventStore) -> None:
        """Raw amounts beyond float precision come back as the same int."""
        big = 123_456_789_012_345_678_901
        event = PoolEvent(
            pool_id=POOL_A,
            user_address=WALLET,
            action=PoolAction.SUPPLY,
            ledger_sequence=7,
            closed_at=_at(1),
            asset_address=USDC,
            amount_underlying=big,
            amount_tokens=big - 1,
            implied_rate=Decimal("1.000000000123"),
        )
        await store.insert_pool_events([event])

        (loaded,) = await store.get_asset_events(WALLET, USDC)
        assert loaded.amount_underlying == big
        assert loaded.amount_tokens == big - 1
        assert loaded.implied_rate == Decimal("1.000000000123")
        assert loaded.closed_at == _at(1)

    @pytest.mark.asyncio
    async def test_insert_empty_returns_zero(self, store: LedgerEventStore) -> None:
        assert await store.insert_pool_events([]) == 0
        assert await store.insert_backstop_events([]) == 0

    @pytest.mark.asyncio
    async def test_auction_legs_roundtrip(self, store: LedgerEventStore) -> None:
        """Lot and bid legs of a fill survive storage."""
        await store.insert_pool_events([_make_fill()])

        (loaded,) = await store.get_asset_events(WALLET, XLM)
        assert loaded.action == PoolAction.FILL_AUCTION
        assert loaded.auction is not None
        assert loaded.auction.filler_address == LIQUIDATOR
        assert loaded.auction.lot_amount == 300_0000000
        assert loaded.auction.bid_asset == USDC
        assert loaded.auction.liquidation_percent == 50

    @pytest.mark.asyncio
    async def test_unknown_action_type_raises(
        self, store: LedgerEventStore, ledger_db: LedgerDatabase
    ) -> None:
        """A row with an action outside the known set is a hard error."""
        await ledger_db.db.execute(
            "INSERT INTO pool_events (pool_id, ledger_sequence, ledger_closed_at, "
            "action_type, asset_address, user_address) VALUES (?, ?, ?, ?, ?, ?)",
            (POOL_A, 1, "2024-03-01T00:00:00Z", "flash_loan", USDC, WALLET),
        )
        await ledger_db.db.commit()

        with pytest.raises(UnknownActionError):
            await store.get_asset_events(WALLET, USDC)


class TestGetAssetEvents:
    """Tests for the replay input query."""

    @pytest.mark.asyncio
    async def test_ordered_by_time_then_sequence(self, store: LedgerEventStore) -> None:
        """Events come back ordered by (closed_at, ledger_sequence) regardless of insert order."""
        await store.insert_pool_events(
            [
                _make_event(day=3, seq=300),
                _make_event(PoolAction.WITHDRAW, day=2, seq=201),
                _make_event(day=2, seq=200),
            ]
        )

        events = await store.get_asset_events(WALLET, USDC)
        assert [e.ledger_sequence for e in events] == [200, 201, 300]

    @pytest.mark.asyncio
    async def test_filters_user_and_asset(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events(
            [
                _make_event(),
                _make_event(asset=XLM, seq=101),
                _make_event(user=OTHER, seq=102),
                _make_event(pool=POOL_B, seq=103),
            ]
        )

        events = await store.get_asset_events(WALLET, USDC)
        assert {(e.pool_id, e.ledger_sequence) for e in events} == {(POOL_A, 100), (POOL_B, 103)}

    @pytest.mark.asyncio
    async def test_includes_liquidation_for_both_parties(self, store: LedgerEventStore) -> None:
        """Fills appear for the liquidated user and for the filler."""
        await store.insert_pool_events([_make_fill()])

        assert len(await store.get_asset_events(WALLET, XLM)) == 1
        assert len(await store.get_asset_events(WALLET, USDC)) == 1
        assert len(await store.get_asset_events(LIQUIDATOR, XLM)) == 1
        assert len(await store.get_asset_events(LIQUIDATOR, USDC)) == 1
        assert await store.get_asset_events(OTHER, XLM) == []

    @pytest.mark.asyncio
    async def test_liquidation_on_unrelated_asset_excluded(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events([_make_fill()])
        assert await store.get_asset_events(WALLET, "EURC_ADDR") == []

    @pytest.mark.asyncio
    async def test_non_liquidation_auctions_excluded(self, store: LedgerEventStore) -> None:
        """Bad-debt and interest auctions never enter a user's replay."""
        await store.insert_pool_events(
            [_make_fill(auction_type=1, seq=1), _make_fill(auction_type=2, seq=2)]
        )
        assert await store.get_asset_events(WALLET, XLM) == []
        assert await store.get_asset_events(LIQUIDATOR, XLM) == []

    @pytest.mark.asyncio
    async def test_new_auction_visible_to_liquidated_only(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events([_make_fill(action=PoolAction.NEW_AUCTION, filler=None)])

        events = await store.get_asset_events(WALLET, XLM)
        assert [e.action for e in events] == [PoolAction.NEW_AUCTION]
        assert await store.get_asset_events(LIQUIDATOR, XLM) == []

    @pytest.mark.asyncio
    async def test_self_liquidation_returned_once(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events([_make_fill(filler=WALLET)])
        assert len(await store.get_asset_events(WALLET, XLM)) == 1


class TestGetWalletEvents:
    """Tests for the cost-basis input query."""

    @pytest.mark.asyncio
    async def test_all_assets_and_fills(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events(
            [
                _make_event(seq=1, day=1),
                _make_event(PoolAction.BORROW, asset=XLM, seq=2, day=2),
                _make_fill(seq=3, day=3),
                _make_fill(action=PoolAction.NEW_AUCTION, seq=4, day=3),
                _make_fill(user=OTHER, filler=WALLET, seq=5, day=4),
                _make_event(user=OTHER, seq=6, day=4),
            ]
        )

        events = await store.get_wallet_events(WALLET)
        assert [e.ledger_sequence for e in events] == [1, 2, 3, 5]


class TestGetUserActions:
    """Tests for the paginated action feed."""

    @pytest.mark.asyncio
    async def test_newest_first_with_pagination(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events([_make_event(day=d, seq=d) for d in range(1, 6)])

        first_page = await store.get_user_actions(WALLET, limit=2)
        second_page = await store.get_user_actions(WALLET, limit=2, offset=2)
        assert [e.ledger_sequence for e in first_page] == [5, 4]
        assert [e.ledger_sequence for e in second_page] == [3, 2]

    @pytest.mark.asyncio
    async def test_filters(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events(
            [
                _make_event(PoolAction.SUPPLY, seq=1, day=1),
                _make_event(PoolAction.BORROW, seq=2, day=2),
                _make_event(PoolAction.SUPPLY, pool=POOL_B, seq=3, day=3),
                _make_event(PoolAction.SUPPLY, asset=XLM, seq=4, day=4),
            ]
        )

        supplies = await store.get_user_actions(WALLET, action_types=[PoolAction.SUPPLY])
        assert [e.ledger_sequence for e in supplies] == [4, 3, 1]

        pool_b = await store.get_user_actions(WALLET, pool_id=POOL_B)
        assert [e.ledger_sequence for e in pool_b] == [3]

        windowed = await store.get_user_actions(WALLET, since=_at(2), until=_at(3))
        assert [e.ledger_sequence for e in windowed] == [3, 2]

    @pytest.mark.asyncio
    async def test_asset_filter_matches_auction_legs(self, store: LedgerEventStore) -> None:
        """A liquidator sees fills whose lot is the filtered asset."""
        await store.insert_pool_events([_make_fill()])

        actions = await store.get_user_actions(LIQUIDATOR, asset_address=XLM)
        assert [e.action for e in actions] == [PoolAction.FILL_AUCTION]


class TestBackstopEvents:
    """Tests for backstop event storage."""

    @pytest.mark.asyncio
    async def test_filter_by_pool(self, store: LedgerEventStore) -> None:
        await store.insert_backstop_events(
            [
                BackstopEvent(
                    pool_id=pool,
                    user_address=WALLET,
                    action=BackstopAction.DEPOSIT,
                    ledger_sequence=seq,
                    closed_at=_at(seq),
                    lp_tokens=10_0000000,
                    shares=9_0000000,
                )
                for seq, pool in ((1, POOL_A), (2, POOL_B), (3, POOL_A))
            ]
        )

        all_events = await store.get_backstop_events(WALLET)
        pool_a = await store.get_backstop_events(WALLET, POOL_A)
        assert [e.ledger_sequence for e in all_events] == [1, 2, 3]
        assert [e.ledger_sequence for e in pool_a] == [1, 3]
        assert pool_a[0].lp_tokens == 10_0000000


class TestDictionaries:
    """Tests for pool/token dictionaries and distinct pairs."""

    @pytest.mark.asyncio
    async def test_pool_asset_pairs(self, store: LedgerEventStore) -> None:
        await store.insert_pool_events(
            [
                _make_event(seq=1),
                _make_event(seq=2),
                _make_event(PoolAction.BORROW, asset=XLM, seq=3),
            ]
        )

        pairs = await store.get_pool_asset_pairs(WALLET, [PoolAction.SUPPLY])
        assert [(p.pool_id, p.asset_address) for p in pairs] == [(POOL_A, USDC)]
        assert await store.get_pool_asset_pairs(WALLET, []) == []

    @pytest.mark.asyncio
    async def test_pools_and_tokens(self, store: LedgerEventStore) -> None:
        await store.upsert_pool(PoolInfo(pool_id=POOL_A, name="Fixed"))
        await store.upsert_pool(PoolInfo(pool_id=POOL_B, name="Old", is_active=False))
        await store.upsert_token(TokenInfo(asset_address=USDC, symbol="USDC", decimals=7))

        assert [p.pool_id for p in await store.get_pools()] == [POOL_A]
        assert len(await store.get_pools(active_only=False)) == 2
        token = await store.get_token(USDC)
        assert token is not None and token.symbol == "USDC"
        assert await store.get_token(XLM) is None


class TestStoreUnavailable:
    """Tests for the unreachable-store error path."""

    @pytest.mark.asyncio
    async def test_query_without_connection_raises(self) -> None:
        store = LedgerEventStore(LedgerDatabase("unused.db"))
        with pytest.raises(StoreUnavailableError):
            await store.get_asset_events(WALLET, USDC)

    @pytest.mark.asyncio
    async def test_closed_database_raises(self, tmp_path) -> None:
        database = LedgerDatabase(str(tmp_path / "ledger.db"))
        await database.connect()
        await database.close()
        with pytest.raises(StoreUnavailableError):
            await LedgerEventStore(database).get_wallet_events(WALLET)

    @pytest.mark.asyncio
    async def test_unopenable_path_raises(self, tmp_path) -> None:
        """A path that cannot be opened surfaces as StoreUnavailableError."""
        with pytest.raises(StoreUnavailableError):
            await LedgerDatabase(str(tmp_path)).connect()
