"""
market_values: bulk recompute of market value estimates.

Not page-based: the stored valuation procedure is called in fixed-size
batches until it reports fewer processed rows than the batch size.
"""
import logging

from marketsync.sync.pipeline import StageContext, SyncStageWorker

logger = logging.getLogger(__name__)


class MarketValuesStage(SyncStageWorker):
    name = "market_values"
    label = "Market values"

    def __init__(self, tracker, broadcaster, store, settings):
        super().__init__(tracker, broadcaster, settings.progress_cleanup_delay)
        self.store = store
        self.batch_size = settings.valuation_batch_size

    async def execute(self, ctx: StageContext) -> None:
        total = self.store.count_players()
        offset = 0
        batch = 0
        updated = 0

        while True:
            processed, batch_updated, batch_errors = self.store.run_valuation_batch(
                self.batch_size, offset
            )
            batch += 1
            ctx.processed += processed
            ctx.failed += batch_errors
            updated += batch_updated
            logger.info(
                "[%s] Batch %d at offset %d: %d processed, %d updated, %d errors",
                self.name,
                batch,
                offset,
                processed,
                batch_updated,
                batch_errors,
            )
            ctx.report(
                step=f"Valuation batch {batch}",
                page=batch,
                total=total,
                offset=offset,
                updated=updated,
            )
            if processed < self.batch_size:
                break
            offset += self.batch_size

        ctx.metadata.update(batches=batch, updated=updated, total_players=total)
