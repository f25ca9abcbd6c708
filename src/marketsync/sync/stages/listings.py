"""
listings: refresh the cached "current listing" fields on players.

Listings have no durable history: a listing that is no longer returned is no
longer active. Every run clears the cached fields and then walks the whole
AVAILABLE feed oldest first, so the latest listing per player wins.
"""
import asyncio
import logging
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from marketsync.client import LISTING_STATUS_AVAILABLE, SORT_CREATED_TIME
from marketsync.errors import MissingReferenceError
from marketsync.normalizer import normalize_listing
from marketsync.sync.checkpoints import LAST_LISTING_ID
from marketsync.sync.pipeline import (
    PageOutcome,
    PagedSync,
    StageContext,
    SyncStageWorker,
    chunked,
)

logger = logging.getLogger(__name__)


class ListingsStage(SyncStageWorker):
    name = "listings"
    label = "Listings sync"

    def __init__(
        self,
        tracker,
        broadcaster,
        client,
        store,
        checkpoints,
        repair,
        settings,
        sleep=asyncio.sleep,
    ):
        super().__init__(tracker, broadcaster, settings.progress_cleanup_delay)
        self.client = client
        self.store = store
        self.checkpoints = checkpoints
        self.repair = repair
        self.settings = settings
        self.sleep = sleep

    async def execute(self, ctx: StageContext) -> None:
        cleared = self.store.clear_current_listings()
        ctx.metadata["cleared"] = cleared
        ctx.report(step=f"Cleared {cleared} stale listings")

        page_size = self.settings.listings_page_size

        async def fetch(cursor):
            return await self.client.fetch_listings(
                status=LISTING_STATUS_AVAILABLE,
                limit=page_size,
                before_listing_id=cursor,
                sort_field=SORT_CREATED_TIME,
            )

        loop = PagedSync(
            name=self.name,
            fetch=fetch,
            cursor_of=lambda raw: int(raw["listingResourceId"]),
            process=self.process_page,
            checkpoints=self.checkpoints,
            checkpoint_key=LAST_LISTING_ID,
            page_size=page_size,
            page_delay=self.settings.listings_page_delay,
            max_page_errors=self.settings.max_page_errors,
            retry_attempts=self.settings.retry_attempts,
            retry_base_delay=self.settings.retry_base_delay,
            sleep=self.sleep,
        )
        ctx.metadata["end_cursor"] = await loop.run(ctx, None)

    async def process_page(self, page: List[Dict[str, Any]]) -> PageOutcome:
        outcome = PageOutcome()
        rows = []
        for raw in page:
            row = normalize_listing(raw)
            if row is None:
                logger.warning(
                    "Listing %s has no player, skipping", raw.get("listingResourceId")
                )
                outcome.failed += 1
                continue
            rows.append(row)

        for batch in chunked(rows, self.settings.db_batch_size):
            player_ids = {row["player_id"] for row in batch}
            try:
                outcome.processed += await self.repair.write_with_repair(
                    lambda b=batch: self.store.apply_current_listings(b), player_ids
                )
            except MissingReferenceError as exc:
                outcome.failed += len(batch)
                outcome.errors.append(
                    f"Database error (missing players {exc.player_ids}): {exc}"
                )
            except SQLAlchemyError as exc:
                outcome.failed += len(batch)
                outcome.errors.append(f"Database error: {exc}")
        return outcome
