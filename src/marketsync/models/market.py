"""Marketplace data models: players (with cached listing/valuation fields) and sales."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from marketsync.clock import utcnow


class Player(SQLModel, table=True):
    """One row per marketplace player. The external id is the primary key."""

    id: int = Field(primary_key=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age: Optional[int] = None
    height: Optional[int] = None
    nationality: Optional[str] = None
    primary_position: Optional[str] = None
    secondary_positions_json: Optional[str] = None  # JSON list, e.g. '["CM", "CDM"]'
    preferred_foot: Optional[str] = None
    is_retired: bool = Field(default=False, index=True)
    is_burned: bool = Field(default=False, index=True)

    # Attribute ratings
    overall: Optional[int] = Field(default=None, index=True)
    pace: Optional[int] = None
    shooting: Optional[int] = None
    passing: Optional[int] = None
    dribbling: Optional[int] = None
    defense: Optional[int] = None
    physical: Optional[int] = None
    goalkeeping: Optional[int] = None
    resistance: Optional[int] = None

    # Contract / club summary
    contract_id: Optional[int] = None
    contract_status: Optional[str] = None
    contract_kind: Optional[str] = None
    revenue_share: Optional[int] = None
    club_id: Optional[int] = None
    club_name: Optional[str] = None
    club_division: Optional[int] = None

    # Owner summary
    owner_wallet_address: Optional[str] = Field(default=None, index=True)
    owner_name: Optional[str] = None

    # Computed at import time for sorting and display
    best_position: Optional[str] = None
    best_ovr: Optional[int] = None
    ovr_difference: Optional[int] = None
    position_index: int = 999
    best_position_index: int = 999
    position_ratings_json: Optional[str] = None

    # Cached current listing. Cleared before every listings pass.
    current_listing_id: Optional[int] = None
    current_listing_price: Optional[float] = None
    current_listing_status: Optional[str] = None
    listing_created_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Written by the stored valuation procedure
    market_value_estimate: Optional[float] = None
    market_value_low: Optional[float] = None
    market_value_high: Optional[float] = None
    market_value_confidence: Optional[str] = None
    market_value_updated_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    basic_data_synced_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_synced_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    data_hash: Optional[str] = None

    sales: List["Sale"] = Relationship(back_populates="player")


class Sale(SQLModel, table=True):
    """One completed ("BOUGHT") listing."""

    listing_resource_id: int = Field(primary_key=True)
    player_id: int = Field(foreign_key="player.id", index=True)
    price: float
    seller_wallet_address: Optional[str] = None
    buyer_wallet_address: Optional[str] = None
    created_date_time: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    purchase_date_time: Optional[datetime] = Field(
        default=None, index=True, sa_type=DateTime(timezone=True)
    )
    status: str = "BOUGHT"

    # Player snapshot at time of sale, for fast filtering
    player_age: Optional[int] = None
    player_overall: Optional[int] = None
    player_position: Optional[str] = None

    player: Optional[Player] = Relationship(back_populates="sales")
