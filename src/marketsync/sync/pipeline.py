"""
Stage worker base class and the shared paged fetch loop.

SyncStageWorker.run() owns the execution lifecycle:

  1. tracker.start()            → execution row "running"
  2. execute(ctx)               → stage-specific work, reporting through ctx
  3. tracker.complete()         → "completed" / "failed" / "cancelled"
  4. broadcaster cleanup timer  → progress buffer dropped after a grace period

PagedSync is the single page loop every paginated stage runs:

  fetch(cursor) via with_retry → empty page ends
  → process(page) → tail checkpoint → ctx.report() (cancellation point)
  → short page ends → sleep → next page

Errors inside a page are accumulated on the context; the loop keeps going
until more than `max_page_errors` have piled up. With `lookahead=True` the
fetch of page N+1 is issued before page N is processed, so at most one fetch
is in flight while a page is being written.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from marketsync.errors import SyncCancelled
from marketsync.sync.checkpoints import CheckpointStore
from marketsync.sync.progress import ProgressBroadcaster, ProgressReporter
from marketsync.sync.retry import with_retry

logger = logging.getLogger(__name__)

ERROR_SUMMARY_LIMIT = 5


def summarize_errors(errors: List[str], limit: int = ERROR_SUMMARY_LIMIT) -> Optional[str]:
    """First `limit` messages joined by "; ", or None when there are none."""
    if not errors:
        return None
    return "; ".join(errors[:limit])


@dataclass
class StageResult:
    success: bool
    duration_ms: int = 0
    records_processed: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PageOutcome:
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class StageContext:
    """Per-run accumulator and the stage's handle on tracker and broadcaster."""

    def __init__(self, execution_id: int, tracker, reporter: ProgressReporter):
        self.execution_id = execution_id
        self.tracker = tracker
        self.reporter = reporter
        self.processed = 0
        self.failed = 0
        self.errors: List[str] = []
        self.metadata: Dict[str, Any] = {}

    def add(self, outcome: PageOutcome) -> None:
        self.processed += outcome.processed
        self.failed += outcome.failed
        self.errors.extend(outcome.errors)

    def report(
        self,
        step: Optional[str] = None,
        page: Optional[int] = None,
        total: Optional[int] = None,
        **payload,
    ) -> None:
        """Persist counts and publish a progress event.

        Raises:
            SyncCancelled: the execution was cancelled externally.
        """
        self.tracker.report_progress(
            self.execution_id,
            self.processed,
            self.failed,
            dict(payload, step=step, page=page, total=total),
        )
        self.reporter.progress(self.processed, step=step, total=total, page=page, **payload)


class SyncStageWorker:
    """Base class for one named, independently resumable stage."""

    name: str = ""
    label: str = ""

    def __init__(
        self,
        tracker,
        broadcaster: ProgressBroadcaster,
        cleanup_delay: float = 300.0,
    ):
        self.tracker = tracker
        self.broadcaster = broadcaster
        self.cleanup_delay = cleanup_delay

    async def execute(self, ctx: StageContext) -> None:
        raise NotImplementedError

    def begin(self, trigger: str = "api", triggered_by: Optional[str] = None) -> int:
        """Start the execution row. Raises StageBusyError if the stage is running."""
        return self.tracker.start(self.name, trigger, triggered_by)

    async def run(
        self,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
        execution_id: Optional[int] = None,
    ) -> StageResult:
        """Run the stage to a terminal status and return its result.

        Pass `execution_id` when the execution was already started with begin().
        """
        if execution_id is None:
            execution_id = self.begin(trigger, triggered_by)

        reporter = ProgressReporter(self.broadcaster, execution_id, self.name, self.label)
        ctx = StageContext(execution_id, self.tracker, reporter)
        started = time.monotonic()
        reporter.started()
        logger.info("[%s] Starting execution %s", self.name, execution_id)

        cancelled = False
        try:
            await self.execute(ctx)
        except SyncCancelled:
            cancelled = True
        except asyncio.CancelledError:
            self.tracker.complete(
                execution_id, "cancelled", "Sync interrupted", ctx.processed, ctx.failed
            )
            # Close open progress streams before unwinding
            reporter.failed(
                "Sync interrupted", ctx.processed, int((time.monotonic() - started) * 1000)
            )
            raise
        except Exception as exc:
            logger.exception("[%s] Stage failed", self.name)
            ctx.errors.insert(0, str(exc) or exc.__class__.__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        summary = summarize_errors(ctx.errors)

        if cancelled:
            logger.info("[%s] Execution %s cancelled", self.name, execution_id)
            self.tracker.complete(
                execution_id, "cancelled", "Sync cancelled", ctx.processed, ctx.failed
            )
            reporter.failed("Sync cancelled", ctx.processed, duration_ms)
        elif ctx.errors:
            logger.error(
                "[%s] Execution %s failed after %d records: %s",
                self.name,
                execution_id,
                ctx.processed,
                summary,
            )
            self.tracker.complete(execution_id, "failed", summary, ctx.processed, ctx.failed)
            reporter.failed(summary, ctx.processed, duration_ms)
        else:
            logger.info(
                "[%s] Execution %s completed: %d processed, %d failed in %dms",
                self.name,
                execution_id,
                ctx.processed,
                ctx.failed,
                duration_ms,
            )
            self.tracker.complete(execution_id, "completed", None, ctx.processed, ctx.failed)
            reporter.completed(ctx.processed, duration_ms, **ctx.metadata)

        self.broadcaster.schedule_cleanup(execution_id, self.cleanup_delay)
        return StageResult(
            success=not cancelled and not ctx.errors,
            duration_ms=duration_ms,
            records_processed=ctx.processed,
            records_failed=ctx.failed,
            errors=list(ctx.errors),
            cancelled=cancelled,
            metadata=dict(ctx.metadata),
            execution_id=execution_id,
        )


class PagedSync:
    """Cursor-paginated fetch → process → checkpoint loop."""

    def __init__(
        self,
        *,
        name: str,
        fetch: Callable[[Optional[int]], Awaitable[List[Dict[str, Any]]]],
        cursor_of: Callable[[Dict[str, Any]], int],
        process: Callable[[List[Dict[str, Any]]], Awaitable[PageOutcome]],
        checkpoints: CheckpointStore,
        checkpoint_key: Optional[str],
        page_size: int,
        page_delay: float = 0.0,
        lookahead: bool = False,
        max_page_errors: int = 5,
        retry_attempts: int = 5,
        retry_base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.fetch = fetch
        self.cursor_of = cursor_of
        self.process = process
        self.checkpoints = checkpoints
        self.checkpoint_key = checkpoint_key
        self.page_size = page_size
        self.page_delay = page_delay
        self.lookahead = lookahead
        self.max_page_errors = max_page_errors
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    async def _fetch_page(self, cursor: Optional[int]) -> List[Dict[str, Any]]:
        return await with_retry(
            lambda: self.fetch(cursor),
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            label=self.name,
            sleep=self.sleep,
        )

    async def run(self, ctx: StageContext, start_cursor: Optional[int] = None) -> Optional[int]:
        """Page from `start_cursor` to the end of the feed. Returns the last cursor."""
        cursor = start_cursor
        page_number = 0
        page_errors = 0
        pending: Optional[asyncio.Task] = None

        logger.info("[%s] Starting from cursor %s", self.name, cursor or "beginning")
        try:
            while True:
                try:
                    if pending is not None:
                        page = await pending
                        pending = None
                    else:
                        page = await self._fetch_page(cursor)
                except (SyncCancelled, asyncio.CancelledError):
                    raise
                except Exception as exc:
                    pending = None
                    page_errors += 1
                    ctx.errors.append(f"Page after {cursor} failed: {exc}")
                    logger.error("[%s] Fetch after cursor %s failed: %s", self.name, cursor, exc)
                    if page_errors > self.max_page_errors:
                        logger.error("[%s] Too many errors, stopping", self.name)
                        break
                    await self.sleep(self.page_delay)
                    continue

                if not page:
                    logger.info("[%s] No more records", self.name)
                    break

                page_number += 1
                tail = self.cursor_of(page[-1])
                is_last = len(page) < self.page_size
                if self.lookahead and not is_last:
                    pending = asyncio.ensure_future(self._fetch_page(tail))

                try:
                    outcome = await self.process(page)
                except (SyncCancelled, asyncio.CancelledError):
                    raise
                except Exception as exc:
                    page_errors += 1
                    ctx.errors.append(f"Page {page_number} failed: {exc}")
                    logger.exception("[%s] Processing page %d failed", self.name, page_number)
                    if pending is not None:
                        pending.cancel()
                        pending = None
                    if page_errors > self.max_page_errors:
                        logger.error("[%s] Too many errors, stopping", self.name)
                        break
                    await self.sleep(self.page_delay)
                    continue

                ctx.add(outcome)
                page_errors += len(outcome.errors)
                cursor = tail
                if self.checkpoint_key:
                    self.checkpoints.set(self.checkpoint_key, str(cursor))

                logger.info(
                    "[%s] Page %d: %d records, cursor %s, %d processed so far",
                    self.name,
                    page_number,
                    len(page),
                    cursor,
                    ctx.processed,
                )
                ctx.report(
                    step=f"{self.name}: page {page_number}",
                    page=page_number,
                    stream=self.name,
                    cursor=cursor,
                )

                if is_last:
                    break
                if page_errors > self.max_page_errors:
                    logger.error("[%s] Too many errors, stopping", self.name)
                    break
                await self.sleep(self.page_delay)
        finally:
            if pending is not None:
                if not pending.done():
                    pending.cancel()
                elif not pending.cancelled():
                    # Mark a failed look-ahead as retrieved; its page is never used
                    pending.exception()

        return cursor


def chunked(rows: List[Any], size: int) -> List[List[Any]]:
    return [rows[i:i + size] for i in range(0, len(rows), size)]
