"""
sales: incremental import of completed marketplace sales.

The live cursor is derived from the data rather than a stored marker: the
listing id of the newest stored sale. An empty table therefore imports the
full history, and a re-run with nothing new fetches one empty page.

sales_historical is the one-time backfill of the same feed. It resumes from
its own checkpoint and, once it finishes cleanly, hands its last cursor to
the live stage's marker.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from marketsync.client import LISTING_STATUS_BOUGHT, SORT_PURCHASE_TIME
from marketsync.errors import MissingReferenceError
from marketsync.normalizer import is_bought, normalize_sale
from marketsync.sync.checkpoints import LAST_HISTORICAL_SALE_ID, LAST_SALE_ID, get_int
from marketsync.sync.pipeline import (
    PageOutcome,
    PagedSync,
    StageContext,
    SyncStageWorker,
    chunked,
)

logger = logging.getLogger(__name__)


class SalesStage(SyncStageWorker):
    name = "sales"
    label = "Sales sync"
    checkpoint_key = LAST_SALE_ID

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

    def start_cursor(self) -> Optional[int]:
        return self.store.latest_sale_cursor()

    async def execute(self, ctx: StageContext) -> None:
        start = self.start_cursor()
        ctx.metadata["start_cursor"] = start
        page_size = self.settings.listings_page_size

        async def fetch(cursor):
            return await self.client.fetch_listings(
                status=LISTING_STATUS_BOUGHT,
                limit=page_size,
                before_listing_id=cursor,
                sort_field=SORT_PURCHASE_TIME,
            )

        loop = PagedSync(
            name=self.name,
            fetch=fetch,
            cursor_of=lambda raw: int(raw["listingResourceId"]),
            process=self.process_page,
            checkpoints=self.checkpoints,
            checkpoint_key=self.checkpoint_key,
            page_size=page_size,
            page_delay=self.settings.listings_page_delay,
            max_page_errors=self.settings.max_page_errors,
            retry_attempts=self.settings.retry_attempts,
            retry_base_delay=self.settings.retry_base_delay,
            sleep=self.sleep,
        )
        ctx.metadata["end_cursor"] = await loop.run(ctx, start)

    async def process_page(self, page: List[Dict[str, Any]]) -> PageOutcome:
        outcome = PageOutcome()
        rows = []
        for raw in page:
            if not is_bought(raw):
                continue
            row = normalize_sale(raw)
            if row is None:
                logger.warning("Sale %s has no player, skipping", raw.get("listingResourceId"))
                outcome.failed += 1
                continue
            rows.append(row)

        for batch in chunked(rows, self.settings.db_batch_size):
            player_ids = {row["player_id"] for row in batch}
            try:
                outcome.processed += await self.repair.write_with_repair(
                    lambda b=batch: self.store.upsert_sales(b), player_ids
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


class HistoricalSalesStage(SalesStage):
    name = "sales_historical"
    label = "Historical sales import"
    checkpoint_key = LAST_HISTORICAL_SALE_ID

    def start_cursor(self) -> Optional[int]:
        return get_int(self.checkpoints, self.checkpoint_key)

    async def execute(self, ctx: StageContext) -> None:
        await super().execute(ctx)
        end = ctx.metadata.get("end_cursor")
        if end and not ctx.errors:
            logger.info("[%s] Backfill finished at %s, handing off to live sales", self.name, end)
            self.checkpoints.set(LAST_SALE_ID, str(end))
