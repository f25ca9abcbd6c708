"""
Async client for the marketplace read API.

All list endpoints are cursor-paginated: results are sorted ascending and
`beforePlayerId` / `beforeListingId` carries the id of the last record of the
previous page. A page shorter than `limit` means there is no more data.

Throttling surfaces as 403 or 429 and is raised as RateLimitError so the
retry engine can apply its steeper backoff curve.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from marketsync.errors import MarketApiError, PlayerNotFoundError, RateLimitError

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = (403, 429)

LISTING_STATUS_BOUGHT = "BOUGHT"
LISTING_STATUS_AVAILABLE = "AVAILABLE"
SORT_PURCHASE_TIME = "listing.purchaseDateTime"
SORT_CREATED_TIME = "listing.createdDateTime"


class MarketClient:
    """Thin async wrapper over the marketplace HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: API root, e.g. "https://.../prod".
            timeout: Per-request timeout in seconds.
            http: Pre-built httpx.AsyncClient (tests pass one with a MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "MarketClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch_players(
        self,
        limit: int,
        before_player_id: Optional[int] = None,
        is_retired: Optional[bool] = None,
        owner_wallet_address: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of players sorted by ascending id."""
        params: Dict[str, Any] = {"limit": limit, "sorts": "id", "sortsOrders": "ASC"}
        if before_player_id:
            params["beforePlayerId"] = before_player_id
        if is_retired is not None:
            params["isRetired"] = "true" if is_retired else "false"
        if owner_wallet_address:
            params["ownerWalletAddress"] = owner_wallet_address
        return await self._get_json("/players", params)

    async def fetch_player(self, player_id: int) -> Dict[str, Any]:
        """Fetch a single player by id.

        Raises:
            PlayerNotFoundError: if the API does not know the player.
        """
        data = await self._get_json(f"/players/{player_id}")
        # The detail endpoint wraps the player: {"player": {...}}
        if isinstance(data, dict) and "player" in data:
            return data["player"]
        return data

    async def fetch_listings(
        self,
        status: str,
        limit: int,
        before_listing_id: Optional[int] = None,
        sort_field: str = SORT_CREATED_TIME,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of player listings with the given status, oldest first."""
        params: Dict[str, Any] = {
            "type": "PLAYER",
            "marketplace": "all",
            "status": status,
            "limit": limit,
            "sorts": sort_field,
            "sortsOrders": "ASC",
        }
        if before_listing_id:
            params["beforeListingId"] = before_listing_id
        return await self._get_json("/listings", params)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.get(url, params=params)
        except httpx.HTTPError as exc:
            raise MarketApiError(f"API request failed: {url} Error: {exc}") from exc

        if response.status_code in RATE_LIMIT_STATUSES:
            raise RateLimitError(
                f"API request failed: {response.url} Error: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code == 404 and path.startswith("/players/"):
            raise PlayerNotFoundError(
                f"Player not found: {response.url}", status_code=404
            )
        if not response.is_success:
            raise MarketApiError(
                f"API request failed: {response.url} Error: HTTP {response.status_code}: "
                f"{response.reason_phrase}",
                status_code=response.status_code,
            )
        return response.json()
