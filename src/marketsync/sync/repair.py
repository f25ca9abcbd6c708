"""
Dependency repair: close referential gaps by importing missing players on demand.

When a batch write fails because it references players the store does not
have yet, each missing player is fetched individually, normalized the same
way the players stage does it, and upserted. The original write is then
retried exactly once. If nothing could be imported the error is re-raised
without a retry, so a player that is truly gone upstream cannot cause a loop.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from marketsync.errors import MarketApiError, MissingReferenceError, PlayerNotFoundError
from marketsync.normalizer import normalize_player
from marketsync.sync.retry import with_retry

logger = logging.getLogger(__name__)


class DependencyRepair:
    def __init__(
        self,
        client,
        store,
        attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        burn_wallet_address: Optional[str] = None,
    ):
        """
        Args:
            client: MarketClient instance (or AsyncMock in tests).
            store: MarketStore the missing players are written to.
            attempts: Retry budget for each single-player fetch.
            base_delay: Backoff base for those fetches.
            sleep: Injected for tests.
            burn_wallet_address: Owner address that marks a player as burned.
        """
        self.client = client
        self.store = store
        self.attempts = attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.burn_wallet_address = burn_wallet_address

    async def import_player(self, player_id: int) -> Dict[str, Any]:
        """Fetch one player and upsert it, whether or not it is already stored.

        Returns the stored row.

        Raises:
            PlayerNotFoundError: the API does not know the player.
            MarketApiError: the fetch still failed after retries.
        """
        raw = await with_retry(
            lambda: self.client.fetch_player(player_id),
            max_attempts=self.attempts,
            base_delay=self.base_delay,
            label=f"player {player_id}",
            sleep=self.sleep,
        )
        if not raw or not raw.get("id"):
            raise PlayerNotFoundError(f"Empty response for player {player_id}", status_code=404)

        row = normalize_player(raw, is_burned=self._is_burned(raw))
        self.store.upsert_players([row])
        return row

    async def import_missing(self, player_ids: Iterable[int]) -> int:
        """Fetch and upsert every id not already stored. Returns the number imported."""
        ids = set(player_ids)
        missing = sorted(ids - self.store.existing_player_ids(ids))
        if not missing:
            return 0

        logger.info("Importing %d missing player(s): %s", len(missing), missing)
        imported = 0
        for player_id in missing:
            try:
                await self.import_player(player_id)
            except PlayerNotFoundError:
                logger.warning("Player %s not found upstream, skipping", player_id)
                continue
            except MarketApiError as exc:
                logger.error("Failed to fetch missing player %s: %s", player_id, exc)
                continue
            imported += 1

        logger.info("Imported %d/%d missing player(s)", imported, len(missing))
        return imported

    async def write_with_repair(
        self,
        write: Callable[[], int],
        player_ids: Iterable[int],
    ) -> int:
        """Run `write()`; on a missing reference repair once and retry once.

        Raises:
            MissingReferenceError: repair imported nothing, or the retry still
                references missing players.
        """
        try:
            return write()
        except MissingReferenceError as exc:
            ids = exc.player_ids or list(player_ids)
            logger.warning("Missing players for batch write: %s", ids)
            imported = await self.import_missing(ids)
            if imported == 0:
                raise
            return write()

    def _is_burned(self, raw) -> bool:
        owner = (raw.get("ownedBy") or {}).get("walletAddress")
        return bool(self.burn_wallet_address) and owner == self.burn_wallet_address
