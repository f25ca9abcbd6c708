"""
Marketplace API response normalizer.

Converts raw player / listing dicts into field dicts that map directly onto
the SQLModel columns. No DB access here: stages and dependency repair handle
persistence.

Raw shapes (abridged):

  player:
    {"id": 1, "metadata": {"firstName", "lastName", "age", "overall",
     "positions": ["ST", "CF"], "pace", ...}, "activeContract": {...,
     "club": {...}}, "ownedBy": {"walletAddress", "name"}}

  listing:
    {"listingResourceId": 12345, "status": "BOUGHT", "price": 120,
     "sellerAddress": "0x..", "createdDateTime": 1700000000000,
     "purchaseDateTime": 1700000500000, "player": {<player>}}

Timestamps arrive as epoch milliseconds; ISO strings are accepted too.
"""
import base64
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from marketsync.clock import utcnow
from marketsync.ratings import position_index, position_ratings


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch milliseconds or an ISO 8601 string into a timezone-aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        s = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def essential_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Computed sort/display fields: best-fit position, its rating and delta."""
    metadata = raw.get("metadata") or {}
    positions = metadata.get("positions") or []
    primary = positions[0] if positions else None
    ratings = position_ratings(metadata) if positions else []
    best = ratings[0] if ratings else {
        "position": primary,
        "rating": metadata.get("overall"),
        "difference": 0,
    }
    return {
        "best_position": best["position"],
        "best_ovr": best["rating"],
        "ovr_difference": best["difference"],
        "position_index": position_index(primary or "Unknown"),
        "best_position_index": position_index(best["position"] or "Unknown"),
        "position_ratings_json": json.dumps(ratings) if ratings else None,
    }


def data_hash(raw: Dict[str, Any]) -> str:
    """Short change-detection fingerprint of the fields that move most often."""
    metadata = raw.get("metadata") or {}
    contract = raw.get("activeContract") or {}
    owner = raw.get("ownedBy") or {}
    key = "-".join(
        str(v)
        for v in (
            raw.get("id"),
            metadata.get("overall"),
            metadata.get("age"),
            contract.get("status") or "none",
            owner.get("walletAddress") or "none",
        )
    )
    return base64.b64encode(key.encode()).decode()[:32]


def normalize_player(
    raw: Dict[str, Any],
    *,
    is_retired: bool = False,
    is_burned: bool = False,
) -> Dict[str, Any]:
    """Normalize a raw player dict into a Player row dict."""
    metadata = raw.get("metadata") or {}
    contract = raw.get("activeContract") or {}
    club = contract.get("club") or {}
    owner = raw.get("ownedBy") or {}
    positions = metadata.get("positions") or []
    nationalities = metadata.get("nationalities") or []
    now = utcnow()

    fields = {
        "id": int(raw["id"]),
        "first_name": metadata.get("firstName") or None,
        "last_name": metadata.get("lastName") or None,
        "age": metadata.get("age"),
        "height": metadata.get("height"),
        "nationality": nationalities[0] if nationalities else None,
        "primary_position": positions[0] if positions else None,
        "secondary_positions_json": json.dumps(positions[1:]),
        "preferred_foot": metadata.get("preferredFoot") or None,
        "is_retired": is_retired,
        "is_burned": is_burned,
        "overall": metadata.get("overall"),
        "pace": metadata.get("pace"),
        "shooting": metadata.get("shooting"),
        "passing": metadata.get("passing"),
        "dribbling": metadata.get("dribbling"),
        "defense": metadata.get("defense"),
        "physical": metadata.get("physical"),
        "goalkeeping": metadata.get("goalkeeping"),
        "resistance": metadata.get("resistance"),
        "contract_id": contract.get("id"),
        "contract_status": contract.get("status"),
        "contract_kind": contract.get("kind"),
        "revenue_share": contract.get("revenueShare"),
        "club_id": club.get("id"),
        "club_name": club.get("name"),
        "club_division": club.get("division"),
        "owner_wallet_address": owner.get("walletAddress"),
        "owner_name": owner.get("name"),
        "basic_data_synced_at": now,
        "last_synced_at": now,
        "data_hash": data_hash(raw),
    }
    fields.update(essential_fields(raw))
    return fields


def is_bought(raw: Dict[str, Any]) -> bool:
    return raw.get("status") == "BOUGHT"


def listing_player_id(raw: Dict[str, Any]) -> Optional[int]:
    player = raw.get("player") or {}
    player_id = player.get("id")
    return int(player_id) if player_id else None


def normalize_sale(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize a completed listing into a Sale row dict.

    Returns None when the listing carries no player (cannot satisfy the FK).
    """
    player_id = listing_player_id(raw)
    if player_id is None:
        return None
    metadata = (raw.get("player") or {}).get("metadata") or {}
    positions = metadata.get("positions") or []
    return {
        "listing_resource_id": int(raw["listingResourceId"]),
        "player_id": player_id,
        "price": float(raw.get("price") or 0),
        "seller_wallet_address": raw.get("sellerAddress"),
        "buyer_wallet_address": raw.get("buyerAddress"),
        "created_date_time": parse_timestamp(raw.get("createdDateTime")),
        "purchase_date_time": parse_timestamp(raw.get("purchaseDateTime")),
        "status": raw.get("status") or "BOUGHT",
        "player_age": metadata.get("age"),
        "player_overall": metadata.get("overall"),
        "player_position": positions[0] if positions else None,
    }


def normalize_listing(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize an active listing into the current-listing fields of a Player."""
    player_id = listing_player_id(raw)
    if player_id is None:
        return None
    return {
        "player_id": player_id,
        "current_listing_id": int(raw["listingResourceId"]),
        "current_listing_price": float(raw.get("price") or 0),
        "current_listing_status": raw.get("status"),
        "listing_created_at": parse_timestamp(raw.get("createdDateTime")),
    }
