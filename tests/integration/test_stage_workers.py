"""
Stage workers against an in-memory SQLite store and a fake marketplace.

Each stage runs end to end: tracker rows, checkpoints, upserts and
dependency repair all hit the real database.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from marketsync.errors import PlayerNotFoundError, StageBusyError
from marketsync.models.market import Player, Sale
from marketsync.normalizer import normalize_listing, normalize_player, normalize_sale
from marketsync.store import MarketStore
from marketsync.sync.checkpoints import (
    LAST_BURNED_PLAYER_ID,
    LAST_HISTORICAL_SALE_ID,
    LAST_LISTING_ID,
    LAST_PLAYER_ID,
    LAST_RETIRED_BURNED_PLAYER_ID,
    LAST_RETIRED_PLAYER_ID,
    LAST_SALE_ID,
    SqlCheckpointStore,
)
from marketsync.sync.progress import ProgressBroadcaster
from marketsync.sync.repair import DependencyRepair
from marketsync.sync.stages.listings import ListingsStage
from marketsync.sync.stages.players import PLAYER_STREAMS, PlayersImportStage
from marketsync.sync.stages.sales import HistoricalSalesStage, SalesStage
from marketsync.sync.stages.valuations import MarketValuesStage
from marketsync.sync.tracker import ExecutionTracker

BURN_WALLET = "0x6fec8986261ecf49"


@pytest.fixture(name="tracker")
def tracker_fixture(engine):
    return ExecutionTracker(engine)


@pytest.fixture(name="store")
def store_fixture(engine):
    return MarketStore(engine)


@pytest.fixture(name="checkpoints")
def checkpoints_fixture(engine):
    return SqlCheckpointStore(engine)


@pytest.fixture(name="broadcaster")
def broadcaster_fixture():
    return ProgressBroadcaster()


@pytest.fixture(name="repair")
def repair_fixture(api_client, store, settings):
    return DependencyRepair(
        api_client,
        store,
        attempts=settings.repair_retry_attempts,
        base_delay=0,
        sleep=AsyncMock(),
        burn_wallet_address=settings.burn_wallet_address,
    )


@pytest.fixture(name="seed_players")
def seed_players_fixture(store, make_player):
    def seed(*player_ids):
        store.upsert_players([normalize_player(make_player(pid)) for pid in player_ids])

    return seed


def get_player(engine, player_id):
    with Session(engine) as s:
        return s.get(Player, player_id)


# ─── players_import ───────────────────────────────────────────────────────────

class TestPlayersImport:
    @pytest.fixture(name="stage")
    def stage_fixture(self, tracker, broadcaster, api_client, store, checkpoints, settings):
        return PlayersImportStage(
            tracker, broadcaster, api_client, store, checkpoints, settings, sleep=AsyncMock()
        )

    @pytest.mark.asyncio
    async def test_imports_all_four_streams(
        self, make_player, stage, market, engine, store, checkpoints
    ):
        market.players = [make_player(pid) for pid in (1, 2, 3, 4)]
        market.players.append(make_player(5, owner=BURN_WALLET))
        market.players.append(make_player(6, owner=BURN_WALLET))
        market.retired_ids = {4, 6}

        result = await stage.run(trigger="manual")

        assert result.success
        assert store.count_players() == 6
        assert get_player(engine, 4).is_retired
        assert not get_player(engine, 4).is_burned
        assert get_player(engine, 5).is_burned
        assert get_player(engine, 6).is_burned and get_player(engine, 6).is_retired
        assert not get_player(engine, 1).is_burned
        assert checkpoints.get(LAST_PLAYER_ID) == "5"
        assert checkpoints.get(LAST_RETIRED_PLAYER_ID) == "6"
        assert checkpoints.get(LAST_BURNED_PLAYER_ID) == "5"
        assert checkpoints.get(LAST_RETIRED_BURNED_PLAYER_ID) == "6"
        assert result.metadata["cursors"] == {
            "active": 5,
            "retired": 6,
            "burned": 5,
            "retired_burned": 6,
        }

    @pytest.mark.asyncio
    async def test_burned_streams_filter_by_burn_wallet(
        self, make_player, stage, market, api_client
    ):
        market.players = [make_player(1)]

        await stage.run()

        owners = {
            (c.kwargs["is_retired"], c.kwargs["owner_wallet_address"])
            for c in api_client.fetch_players.await_args_list
        }
        assert owners == {(False, None), (True, None), (False, BURN_WALLET), (True, BURN_WALLET)}

    @pytest.mark.asyncio
    async def test_no_burn_wallet_skips_burned_streams(
        self, make_player, stage, market, api_client, engine, settings
    ):
        market.players = [make_player(1), make_player(2, owner="")]
        settings.burn_wallet_address = ""

        result = await stage.run()

        assert result.success
        owners = {c.kwargs["owner_wallet_address"] for c in api_client.fetch_players.await_args_list}
        assert owners == {None}
        assert set(result.metadata["cursors"]) == {"active", "retired"}
        assert not get_player(engine, 1).is_burned
        assert not get_player(engine, 2).is_burned

    @pytest.mark.asyncio
    async def test_resumes_from_stream_checkpoint(
        self, make_player, stage, market, api_client, checkpoints
    ):
        market.players = [make_player(pid) for pid in (1, 2, 3, 4, 5)]
        checkpoints.set(LAST_PLAYER_ID, "3")
        stage.streams = [PLAYER_STREAMS[0]]

        result = await stage.run()

        first_call = api_client.fetch_players.await_args_list[0]
        assert first_call.kwargs["before_player_id"] == 3
        assert result.records_processed == 2
        assert checkpoints.get(LAST_PLAYER_ID) == "5"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_player, stage, market, store, checkpoints):
        market.players = [make_player(pid) for pid in (1, 2, 3)]

        await stage.run()
        checkpoints.set(LAST_PLAYER_ID, "")
        second = await stage.run()

        assert second.success
        assert store.count_players() == 3

    @pytest.mark.asyncio
    async def test_updates_changed_players(self, make_player, stage, market, engine, checkpoints):
        market.players = [make_player(1)]
        await stage.run()

        market.players = [make_player(1, overall=80)]
        checkpoints.set(LAST_PLAYER_ID, "")
        await stage.run()

        assert get_player(engine, 1).overall == 80

    @pytest.mark.asyncio
    async def test_malformed_records_counted_as_failed(
        self, make_player, stage, api_client, store
    ):
        malformed = {"metadata": {"firstName": "Nobody"}}
        api_client.fetch_players = AsyncMock(side_effect=[[malformed, make_player(2)], []])
        stage.streams = [PLAYER_STREAMS[0]]

        result = await stage.run()

        assert result.success
        assert result.records_processed == 1
        assert result.records_failed == 1
        assert store.count_players() == 1

    @pytest.mark.asyncio
    async def test_cancellation_ends_cancelled(
        self, make_player, stage, market, api_client, tracker
    ):
        market.players = [make_player(pid) for pid in range(1, 9)]
        stage.streams = [PLAYER_STREAMS[0]]
        execution_id = stage.begin()

        def cancel_then_fetch(**kwargs):
            tracker.cancel(execution_id)
            return market.players_page(**kwargs)

        api_client.fetch_players = AsyncMock(side_effect=cancel_then_fetch)

        result = await stage.run(execution_id=execution_id)

        assert result.cancelled
        assert not result.success
        assert tracker.get_execution(execution_id).status == "cancelled"
        assert tracker.get_stage("players_import").status == "cancelled"

    @pytest.mark.asyncio
    async def test_unreadable_checkpoint_fails_instead_of_restarting(
        self, make_player, stage, market, api_client, checkpoints, tracker
    ):
        market.players = [make_player(1)]
        stage.streams = [PLAYER_STREAMS[0]]
        error = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(checkpoints, "get", side_effect=error):
            result = await stage.run()

        assert not result.success
        assert "database is locked" in result.errors[0]
        api_client.fetch_players.assert_not_awaited()
        assert tracker.get_execution(result.execution_id).status == "failed"

    @pytest.mark.asyncio
    async def test_busy_stage_rejected(self, stage, tracker):
        stage.begin()
        with pytest.raises(StageBusyError):
            await stage.run()


# ─── sales ────────────────────────────────────────────────────────────────────

class TestSales:
    @pytest.fixture(name="stage")
    def stage_fixture(self, tracker, broadcaster, api_client, store, checkpoints, repair, settings):
        return SalesStage(
            tracker,
            broadcaster,
            api_client,
            store,
            checkpoints,
            repair,
            settings,
            sleep=AsyncMock(),
        )

    @pytest.mark.asyncio
    async def test_imports_bought_listings(
        self, seed_players, stage, market, store, checkpoints, make_listing
    ):
        seed_players(1, 2)
        market.listings = [
            make_listing(101, 1, minutes=1),
            make_listing(102, 2, minutes=2),
            make_listing(103, 1, minutes=3),
            make_listing(104, 2, status="AVAILABLE", minutes=4),
        ]

        result = await stage.run()

        assert result.success
        assert store.count_sales() == 3
        assert result.records_processed == 3
        assert result.metadata["start_cursor"] is None
        assert result.metadata["end_cursor"] == 103
        assert checkpoints.get(LAST_SALE_ID) == "103"

    @pytest.mark.asyncio
    async def test_resumes_after_newest_stored_sale(
        self, seed_players, stage, market, store, api_client, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(101, 1, minutes=1), make_listing(102, 1, minutes=2)]
        await stage.run()

        market.listings.append(make_listing(103, 1, minutes=3))
        api_client.fetch_listings.reset_mock()
        result = await stage.run()

        first_call = api_client.fetch_listings.await_args_list[0]
        assert first_call.kwargs["before_listing_id"] == 102
        assert first_call.kwargs["status"] == "BOUGHT"
        assert result.records_processed == 1
        assert store.count_sales() == 3

    @pytest.mark.asyncio
    async def test_missing_player_imported_on_demand(
        self, seed_players, make_player, stage, market, store, engine, api_client, make_listing
    ):
        seed_players(1)
        market.detail_only[7] = make_player(7, owner=BURN_WALLET)
        market.listings = [make_listing(101, 1), make_listing(102, 7, minutes=1)]

        result = await stage.run()

        assert result.success
        assert store.count_sales() == 2
        api_client.fetch_player.assert_awaited_once_with(7)
        assert get_player(engine, 7).is_burned

    @pytest.mark.asyncio
    async def test_player_gone_upstream_fails_batch(
        self, seed_players, stage, market, store, checkpoints, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(201, 1), make_listing(202, 99, minutes=1)]

        result = await stage.run()

        assert not result.success
        assert result.records_failed == 2
        assert "missing players [99]" in result.errors[0]
        assert store.count_sales() == 0
        assert checkpoints.get(LAST_SALE_ID) == "202"

    @pytest.mark.asyncio
    async def test_sale_without_player_skipped(
        self, seed_players, stage, market, store, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(301, None), make_listing(302, 1, minutes=1)]

        result = await stage.run()

        assert result.success
        assert result.records_failed == 1
        assert store.count_sales() == 1

    @pytest.mark.asyncio
    async def test_sale_fields_persisted(
        self, seed_players, stage, market, store, engine, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(401, 1, price=145)]

        await stage.run()

        with Session(engine) as s:
            sale = s.exec(select(Sale)).one()
        assert sale.price == 145.0
        assert sale.player_id == 1
        assert sale.buyer_wallet_address == "0x99aa88bb77cc66dd"


class TestHistoricalSales:
    @pytest.fixture(name="stage")
    def stage_fixture(self, tracker, broadcaster, api_client, store, checkpoints, repair, settings):
        return HistoricalSalesStage(
            tracker,
            broadcaster,
            api_client,
            store,
            checkpoints,
            repair,
            settings,
            sleep=AsyncMock(),
        )

    @pytest.mark.asyncio
    async def test_resumes_from_own_checkpoint_and_hands_off(
        self, seed_players, stage, market, checkpoints, api_client, make_listing
    ):
        seed_players(1)
        checkpoints.set(LAST_HISTORICAL_SALE_ID, "102")
        market.listings = [make_listing(i, 1, minutes=i) for i in (101, 102, 103, 104)]

        result = await stage.run()

        assert result.success
        first_call = api_client.fetch_listings.await_args_list[0]
        assert first_call.kwargs["before_listing_id"] == 102
        assert result.records_processed == 2
        assert checkpoints.get(LAST_HISTORICAL_SALE_ID) == "104"
        assert checkpoints.get(LAST_SALE_ID) == "104"

    @pytest.mark.asyncio
    async def test_stored_sales_do_not_move_backfill_start(
        self, seed_players, stage, market, store, api_client, make_listing
    ):
        seed_players(1)
        store.upsert_sales([normalize_sale(make_listing(110, 1, minutes=10))])
        market.listings = [make_listing(101, 1, minutes=1), make_listing(110, 1, minutes=10)]

        result = await stage.run()

        assert api_client.fetch_listings.await_args_list[0].kwargs["before_listing_id"] is None
        assert result.metadata["start_cursor"] is None
        assert store.count_sales() == 2

    @pytest.mark.asyncio
    async def test_failed_backfill_keeps_live_marker(
        self, seed_players, stage, market, checkpoints, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(201, 1), make_listing(202, 99, minutes=1)]

        result = await stage.run()

        assert not result.success
        assert checkpoints.get(LAST_HISTORICAL_SALE_ID) == "202"
        assert checkpoints.get(LAST_SALE_ID) is None


class TestSinglePlayerImport:
    @pytest.mark.asyncio
    async def test_stored_player_is_refreshed(
        self, seed_players, repair, market, engine, make_player
    ):
        seed_players(7)
        market.players = [make_player(7, overall=88, owner=BURN_WALLET)]

        row = await repair.import_player(7)

        assert row["overall"] == 88
        player = get_player(engine, 7)
        assert player.overall == 88
        assert player.is_burned

    @pytest.mark.asyncio
    async def test_empty_response_is_not_found(self, repair, api_client, store):
        api_client.fetch_player.side_effect = None
        api_client.fetch_player.return_value = {}

        with pytest.raises(PlayerNotFoundError):
            await repair.import_player(7)
        assert store.count_players() == 0

    @pytest.mark.asyncio
    async def test_unknown_player_raises(self, repair):
        with pytest.raises(PlayerNotFoundError):
            await repair.import_player(99)


# ─── listings ─────────────────────────────────────────────────────────────────

class TestListings:
    @pytest.fixture(name="stage")
    def stage_fixture(self, tracker, broadcaster, api_client, store, checkpoints, repair, settings):
        return ListingsStage(
            tracker,
            broadcaster,
            api_client,
            store,
            checkpoints,
            repair,
            settings,
            sleep=AsyncMock(),
        )

    @pytest.mark.asyncio
    async def test_clears_stale_and_applies_latest(
        self, seed_players, stage, market, store, engine, checkpoints, make_listing
    ):
        seed_players(1, 2, 3)
        store.apply_current_listings(
            [normalize_listing(make_listing(50, 3, status="AVAILABLE"))]
        )
        market.listings = [
            make_listing(301, 1, status="AVAILABLE", price=10),
            make_listing(302, 2, status="AVAILABLE", price=20, minutes=1),
            make_listing(303, 1, status="AVAILABLE", price=30, minutes=2),
            make_listing(304, 2, status="BOUGHT", price=99, minutes=3),
        ]

        result = await stage.run()

        assert result.success
        assert result.metadata["cleared"] == 1
        assert get_player(engine, 1).current_listing_id == 303
        assert get_player(engine, 1).current_listing_price == 30.0
        assert get_player(engine, 2).current_listing_id == 302
        assert get_player(engine, 3).current_listing_id is None
        assert checkpoints.get(LAST_LISTING_ID) == "303"

    @pytest.mark.asyncio
    async def test_always_walks_full_feed(
        self, seed_players, stage, market, store, api_client, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(301, 1, status="AVAILABLE")]

        await stage.run()
        api_client.fetch_listings.reset_mock()
        await stage.run()

        first_call = api_client.fetch_listings.await_args_list[0]
        assert first_call.kwargs["before_listing_id"] is None
        assert first_call.kwargs["status"] == "AVAILABLE"

    @pytest.mark.asyncio
    async def test_missing_player_imported_on_demand(
        self, make_player, stage, market, store, engine, make_listing
    ):
        market.detail_only[8] = make_player(8)
        market.listings = [make_listing(305, 8, status="AVAILABLE", price=12)]

        result = await stage.run()

        assert result.success
        assert get_player(engine, 8).current_listing_id == 305

    @pytest.mark.asyncio
    async def test_progress_published(
        self, seed_players, stage, market, store, broadcaster, make_listing
    ):
        seed_players(1)
        market.listings = [make_listing(301, 1, status="AVAILABLE")]
        stage.cleanup_delay = 60

        result = await stage.run()

        updates = broadcaster.history(result.execution_id)
        assert updates[0].status == "started"
        assert updates[1].step == "Cleared 0 stale listings"
        assert updates[-1].status == "completed"
        assert updates[-1].metadata["cleared"] == 0


# ─── market_values ────────────────────────────────────────────────────────────

class TestMarketValues:
    @pytest.mark.asyncio
    async def test_runs_batches_until_short(self, tracker, broadcaster, engine, settings):
        valuation = MagicMock()
        valuation.run.side_effect = [(5000, 4000, 1), (3000, 2500, 0)]
        store = MarketStore(engine, valuation=valuation)
        stage = MarketValuesStage(tracker, broadcaster, store, settings)

        result = await stage.run()

        offsets = [c.args[2] for c in valuation.run.call_args_list]
        assert offsets == [0, 5000]
        assert result.success
        assert result.records_processed == 8000
        assert result.records_failed == 1
        assert result.metadata["updated"] == 6500
        assert result.metadata["batches"] == 2

    @pytest.mark.asyncio
    async def test_procedure_error_fails_stage(self, tracker, broadcaster, engine, settings):
        valuation = MagicMock()
        valuation.run.side_effect = RuntimeError("function does not exist")
        stage = MarketValuesStage(tracker, broadcaster, MarketStore(engine, valuation), settings)

        result = await stage.run()

        assert not result.success
        assert result.errors == ["function does not exist"]
        assert tracker.get_execution(result.execution_id).status == "failed"

    @pytest.mark.asyncio
    async def test_unconfigured_procedure_fails_stage(
        self, tracker, broadcaster, engine, settings
    ):
        stage = MarketValuesStage(tracker, broadcaster, MarketStore(engine), settings)

        result = await stage.run()

        assert not result.success
        assert "No valuation procedure configured" in result.errors[0]
