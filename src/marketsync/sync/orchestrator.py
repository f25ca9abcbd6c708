"""
Full-sync orchestrator: runs the stage workers strictly in order.

Policy per stage definition:

  required  failure stops the run immediately (critical failure)
  optional  failure is recorded, the run continues
  one_time  skipped unless requested and never succeeded before

The run succeeds only if no stage failed. Records are counted from
successful stages only; failed counts from every stage that ran. The
orchestrator's own execution ends "completed" or "failed", never
"cancelled": a cancelled stage stops the run and the run is failed.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from marketsync.clock import utcnow
from marketsync.errors import SyncCancelled
from marketsync.sync.checkpoints import LAST_FULL_SYNC, CheckpointStore
from marketsync.sync.pipeline import StageResult, SyncStageWorker, summarize_errors
from marketsync.sync.progress import ProgressBroadcaster, ProgressReporter

logger = logging.getLogger(__name__)

FULL_SYNC_STAGE = "full_sync"
FULL_SYNC_LABEL = "Full sync"


@dataclass
class StageDefinition:
    worker: SyncStageWorker
    required: bool = True
    one_time: bool = False
    order: int = 0

    @property
    def name(self) -> str:
        return self.worker.name

    @property
    def label(self) -> str:
        return self.worker.label


@dataclass
class RunOptions:
    include_one_time: bool = False
    skip: Sequence[str] = ()


@dataclass
class SyncResult:
    success: bool
    duration_ms: int = 0
    records_processed: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Orchestrator:
    def __init__(
        self,
        definitions: Iterable[StageDefinition],
        tracker,
        checkpoints: CheckpointStore,
        broadcaster: ProgressBroadcaster,
        cleanup_delay: float = 300.0,
    ):
        self.definitions = sorted(definitions, key=lambda d: d.order)
        self.tracker = tracker
        self.checkpoints = checkpoints
        self.broadcaster = broadcaster
        self.cleanup_delay = cleanup_delay

    def get(self, stage_name: str) -> Optional[StageDefinition]:
        for definition in self.definitions:
            if definition.name == stage_name:
                return definition
        return None

    def plan(self, options: Optional[RunOptions] = None) -> List[StageDefinition]:
        """Stages that would run for `options`, in order."""
        options = options or RunOptions()
        skip = set(options.skip)
        planned = []
        for definition in self.definitions:
            if definition.name in skip:
                logger.info("Skipping stage %s (requested)", definition.name)
                continue
            if definition.one_time:
                if not options.include_one_time:
                    continue
                if self.tracker.has_succeeded(definition.name):
                    logger.info("Skipping one-time stage %s (already completed)", definition.name)
                    continue
            planned.append(definition)
        return planned

    def begin(self, trigger: str = "api", triggered_by: Optional[str] = None) -> int:
        return self.tracker.start(FULL_SYNC_STAGE, trigger, triggered_by)

    async def run(
        self,
        options: Optional[RunOptions] = None,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
        execution_id: Optional[int] = None,
    ) -> SyncResult:
        if execution_id is None:
            execution_id = self.begin(trigger, triggered_by)

        planned = self.plan(options)
        reporter = ProgressReporter(
            self.broadcaster, execution_id, FULL_SYNC_STAGE, FULL_SYNC_LABEL
        )
        reporter.started(stages=[d.name for d in planned])
        logger.info("Full sync %s starting: %s", execution_id, [d.name for d in planned])

        started = time.monotonic()
        processed = 0
        failed = 0
        errors: List[str] = []
        stage_results: Dict[str, Dict[str, Any]] = {}

        try:
            for index, definition in enumerate(planned, 1):
                try:
                    self.tracker.report_progress(
                        execution_id,
                        processed,
                        failed,
                        {"stage": definition.name, "index": index, "total": len(planned)},
                    )
                except SyncCancelled:
                    errors.append("Full sync cancelled")
                    break
                reporter.progress(
                    processed,
                    step=f"Running {definition.label}",
                    total=len(planned),
                    page=index,
                    stage=definition.name,
                )

                result = await self._run_stage(definition, trigger, triggered_by)
                stage_results[definition.name] = result.to_dict()
                failed += result.records_failed

                if result.success:
                    processed += result.records_processed
                    continue
                if result.cancelled:
                    errors.append(f"{definition.name}: cancelled")
                    logger.warning("Stage %s was cancelled, stopping full sync", definition.name)
                    break

                message = f"{definition.name}: {summarize_errors(result.errors) or 'failed'}"
                if definition.required:
                    errors.append(f"Critical failure in required stage {message}")
                    logger.error("Required stage %s failed, stopping full sync", definition.name)
                    break
                errors.append(message)
                logger.warning("Optional stage %s failed, continuing", definition.name)
        except asyncio.CancelledError:
            self.tracker.complete(
                execution_id,
                "failed",
                "Full sync interrupted",
                processed,
                failed,
                keep_cancelled=False,
            )
            reporter.failed(
                "Full sync interrupted", processed, int((time.monotonic() - started) * 1000)
            )
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        success = not errors
        summary = summarize_errors(errors)

        if success:
            self.checkpoints.set(LAST_FULL_SYNC, utcnow().isoformat())
        self.tracker.complete(
            execution_id,
            "completed" if success else "failed",
            summary,
            processed,
            failed,
            keep_cancelled=False,
        )
        if success:
            reporter.completed(processed, duration_ms, stages=list(stage_results))
        else:
            reporter.failed(summary, processed, duration_ms)
        self.broadcaster.schedule_cleanup(execution_id, self.cleanup_delay)

        logger.info(
            "Full sync %s %s in %dms: %d processed, %d failed",
            execution_id,
            "completed" if success else "failed",
            duration_ms,
            processed,
            failed,
        )
        return SyncResult(
            success=success,
            duration_ms=duration_ms,
            records_processed=processed,
            records_failed=failed,
            errors=errors,
            metadata={"stages": stage_results, "planned": [d.name for d in planned]},
            execution_id=execution_id,
        )

    @staticmethod
    async def _run_stage(
        definition: StageDefinition, trigger: str, triggered_by: Optional[str]
    ) -> StageResult:
        try:
            return await definition.worker.run(trigger, triggered_by)
        except Exception as exc:
            # The worker records its own failures; this catches a refused start
            logger.exception("Stage %s could not run", definition.name)
            return StageResult(success=False, errors=[str(exc)])
