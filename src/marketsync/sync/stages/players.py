"""
players_import: bulk import of every player into the store.

The /players feed is split into four independent sub-streams by retirement
flag and burned ownership. Each has its own checkpoint key and pages
sequentially with one page of look-ahead; the four run concurrently.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from sqlalchemy.exc import SQLAlchemyError

from marketsync.errors import SyncCancelled
from marketsync.normalizer import normalize_player
from marketsync.sync.checkpoints import (
    LAST_BURNED_PLAYER_ID,
    LAST_PLAYER_ID,
    LAST_RETIRED_BURNED_PLAYER_ID,
    LAST_RETIRED_PLAYER_ID,
    get_int,
)
from marketsync.sync.pipeline import (
    PageOutcome,
    PagedSync,
    StageContext,
    SyncStageWorker,
    chunked,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerStream:
    name: str
    checkpoint_key: str
    is_retired: bool
    is_burned: bool


PLAYER_STREAMS = (
    PlayerStream("active", LAST_PLAYER_ID, is_retired=False, is_burned=False),
    PlayerStream("retired", LAST_RETIRED_PLAYER_ID, is_retired=True, is_burned=False),
    PlayerStream("burned", LAST_BURNED_PLAYER_ID, is_retired=False, is_burned=True),
    PlayerStream(
        "retired_burned", LAST_RETIRED_BURNED_PLAYER_ID, is_retired=True, is_burned=True
    ),
)


class PlayersImportStage(SyncStageWorker):
    name = "players_import"
    label = "Players import"

    def __init__(
        self,
        tracker,
        broadcaster,
        client,
        store,
        checkpoints,
        settings,
        streams: Sequence[PlayerStream] = PLAYER_STREAMS,
        sleep=asyncio.sleep,
    ):
        super().__init__(tracker, broadcaster, settings.progress_cleanup_delay)
        self.client = client
        self.store = store
        self.checkpoints = checkpoints
        self.settings = settings
        self.streams = list(streams)
        self.sleep = sleep

    def active_streams(self) -> List[PlayerStream]:
        """Streams to page this run. Burned streams need a burn wallet to filter on."""
        if self.settings.burn_wallet_address:
            return list(self.streams)
        logger.info("[%s] No burn wallet configured, skipping burned streams", self.name)
        return [stream for stream in self.streams if not stream.is_burned]

    async def execute(self, ctx: StageContext) -> None:
        streams = self.active_streams()
        results = await asyncio.gather(
            *(self._run_stream(ctx, stream) for stream in streams),
            return_exceptions=True,
        )
        # Surface cancellation first, then any other escaped error
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if isinstance(failure, (SyncCancelled, asyncio.CancelledError)):
                raise failure
        for failure in failures:
            raise failure

        ctx.metadata["cursors"] = {
            stream.name: cursor for stream, cursor in zip(streams, results)
        }

    async def _run_stream(self, ctx: StageContext, stream: PlayerStream):
        owner = self.settings.burn_wallet_address if stream.is_burned else None
        page_size = self.settings.players_page_size

        async def fetch(cursor):
            return await self.client.fetch_players(
                limit=page_size,
                before_player_id=cursor,
                is_retired=stream.is_retired,
                owner_wallet_address=owner,
            )

        async def process(page: List[Dict[str, Any]]) -> PageOutcome:
            return self._store_page(page, stream)

        loop = PagedSync(
            name=f"{self.name}:{stream.name}",
            fetch=fetch,
            cursor_of=lambda raw: int(raw["id"]),
            process=process,
            checkpoints=self.checkpoints,
            checkpoint_key=stream.checkpoint_key,
            page_size=page_size,
            page_delay=self.settings.players_page_delay,
            lookahead=True,
            max_page_errors=self.settings.max_page_errors,
            retry_attempts=self.settings.retry_attempts,
            retry_base_delay=self.settings.retry_base_delay,
            sleep=self.sleep,
        )
        return await loop.run(ctx, get_int(self.checkpoints, stream.checkpoint_key))

    def _store_page(self, page: List[Dict[str, Any]], stream: PlayerStream) -> PageOutcome:
        outcome = PageOutcome()
        rows = []
        for raw in page:
            try:
                rows.append(
                    normalize_player(
                        raw,
                        is_retired=stream.is_retired,
                        is_burned=stream.is_burned or self._owned_by_burn_wallet(raw),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed player %s: %s", raw.get("id"), exc)
                outcome.failed += 1

        for batch in chunked(rows, self.settings.db_batch_size):
            try:
                outcome.processed += self.store.upsert_players(batch)
            except SQLAlchemyError as exc:
                outcome.failed += len(batch)
                outcome.errors.append(f"Database error: {exc}")
        return outcome

    def _owned_by_burn_wallet(self, raw: Dict[str, Any]) -> bool:
        # Unfiltered streams also return burned players
        burn_wallet = self.settings.burn_wallet_address
        owner = (raw.get("ownedBy") or {}).get("walletAddress")
        return bool(burn_wallet) and owner == burn_wallet
