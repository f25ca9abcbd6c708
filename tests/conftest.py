"""Shared test fixtures."""
import copy
import json
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from marketsync.config import Settings
from marketsync.db.engine import build_engine, create_tables
from marketsync.errors import PlayerNotFoundError

FIXTURES_DIR = Path(__file__).parent / "fixtures"

PLAYER_TEMPLATE = json.loads((FIXTURES_DIR / "market_player.json").read_text())
SALE_TEMPLATE = json.loads((FIXTURES_DIR / "market_sale.json").read_text())

BURN_WALLET = "0x6fec8986261ecf49"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with foreign keys enforced. Fresh per test."""
    engine = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    create_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Small pages and no delays so stage loops finish instantly."""
    return Settings(
        _env_file=None,
        players_page_size=2,
        listings_page_size=2,
        db_batch_size=100,
        players_page_delay=0,
        listings_page_delay=0,
        retry_attempts=2,
        retry_base_delay=0,
        repair_retry_attempts=1,
        max_page_errors=5,
        progress_cleanup_delay=0,
        burn_wallet_address=BURN_WALLET,
    )


def build_player(player_id: int, owner: str = "0x1a2b3c4d5e6f7081", **metadata) -> Dict[str, Any]:
    raw = copy.deepcopy(PLAYER_TEMPLATE)
    raw["id"] = player_id
    raw["metadata"]["id"] = player_id
    raw["metadata"].update(metadata)
    raw["ownedBy"]["walletAddress"] = owner
    return raw


def build_listing(
    listing_id: int,
    player_id: Optional[int],
    status: str = "BOUGHT",
    price: float = 100,
    minutes: int = 0,
) -> Dict[str, Any]:
    """A listing whose timestamps increase with `minutes`."""
    raw = copy.deepcopy(SALE_TEMPLATE)
    raw["listingResourceId"] = listing_id
    raw["status"] = status
    raw["price"] = price
    raw["createdDateTime"] = 1717400000000 + minutes * 60000
    raw["purchaseDateTime"] = (
        1717403600000 + minutes * 60000 if status == "BOUGHT" else None
    )
    if player_id is None:
        raw.pop("player")
    else:
        raw["player"]["id"] = player_id
        raw["player"]["metadata"]["id"] = player_id
    return raw


@pytest.fixture(name="make_player")
def make_player_fixture():
    return build_player


@pytest.fixture(name="make_listing")
def make_listing_fixture():
    return build_listing


class FakeMarket:
    """In-memory upstream: ascending feeds, `before*Id` returns records after the cursor."""

    def __init__(self):
        self.players: List[Dict[str, Any]] = []
        self.retired_ids = set()
        self.listings: List[Dict[str, Any]] = []
        self.detail_only: Dict[int, Dict[str, Any]] = {}

    def players_page(
        self,
        limit: int,
        before_player_id: Optional[int] = None,
        is_retired: Optional[bool] = None,
        owner_wallet_address: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows = sorted(self.players, key=lambda p: p["id"])
        if before_player_id:
            rows = [p for p in rows if p["id"] > before_player_id]
        if is_retired is not None:
            rows = [p for p in rows if (p["id"] in self.retired_ids) == is_retired]
        if owner_wallet_address:
            rows = [p for p in rows if p["ownedBy"]["walletAddress"] == owner_wallet_address]
        return copy.deepcopy(rows[:limit])

    def player(self, player_id: int) -> Dict[str, Any]:
        for raw in self.players:
            if raw["id"] == player_id:
                return copy.deepcopy(raw)
        if player_id in self.detail_only:
            return copy.deepcopy(self.detail_only[player_id])
        raise PlayerNotFoundError(f"Player not found: {player_id}", status_code=404)

    def listings_page(
        self,
        status: str,
        limit: int,
        before_listing_id: Optional[int] = None,
        sort_field: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        rows = [row for row in self.listings if row["status"] == status]
        rows.sort(key=lambda row: row["listingResourceId"])
        if before_listing_id:
            rows = [row for row in rows if row["listingResourceId"] > before_listing_id]
        return copy.deepcopy(rows[:limit])


@pytest.fixture(name="market")
def market_fixture() -> FakeMarket:
    return FakeMarket()


@pytest.fixture(name="api_client")
def api_client_fixture(market: FakeMarket) -> AsyncMock:
    """AsyncMock MarketClient backed by the FakeMarket data."""
    client = AsyncMock()
    client.fetch_players = AsyncMock(side_effect=market.players_page)
    client.fetch_player = AsyncMock(side_effect=market.player)
    client.fetch_listings = AsyncMock(side_effect=market.listings_page)
    return client
