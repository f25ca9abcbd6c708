"""
SyncService: the control surface used by the API, the scheduler and the CLI.

start_* methods create the execution row synchronously (so the caller gets
an id, or a StageBusyError, right away) and then run the work as a task on
the current event loop. run_* methods await the work and return its result.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from marketsync.errors import UnknownStageError
from marketsync.sync.checkpoints import LAST_FULL_SYNC, CheckpointStore
from marketsync.sync.orchestrator import FULL_SYNC_STAGE, Orchestrator, RunOptions, SyncResult
from marketsync.sync.pipeline import StageResult, SyncStageWorker
from marketsync.sync.progress import ProgressBroadcaster, ProgressUpdate
from marketsync.sync.tracker import ExecutionTracker

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        orchestrator: Orchestrator,
        tracker: ExecutionTracker,
        checkpoints: CheckpointStore,
        broadcaster: ProgressBroadcaster,
        client=None,
        repair=None,
    ):
        self.orchestrator = orchestrator
        self.tracker = tracker
        self.checkpoints = checkpoints
        self.broadcaster = broadcaster
        self.client = client
        self.repair = repair
        self._tasks: Dict[int, asyncio.Task] = {}

    def stage_names(self) -> List[str]:
        return [d.name for d in self.orchestrator.definitions]

    def worker(self, stage_name: str) -> SyncStageWorker:
        definition = self.orchestrator.get(stage_name)
        if definition is None:
            raise UnknownStageError(stage_name)
        return definition.worker

    # ─── Stages ───────────────────────────────────────────────────────────────

    def start_stage(
        self,
        stage_name: str,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
    ) -> int:
        """Start a stage in the background and return its execution id.

        Raises:
            UnknownStageError: no stage with that name.
            StageBusyError: the stage is already running.
        """
        worker = self.worker(stage_name)
        loop = asyncio.get_running_loop()
        execution_id = worker.begin(trigger, triggered_by)
        self._spawn(
            loop,
            execution_id,
            worker.run(trigger, triggered_by, execution_id=execution_id),
        )
        return execution_id

    async def run_stage(
        self,
        stage_name: str,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
    ) -> StageResult:
        return await self.worker(stage_name).run(trigger, triggered_by)

    # ─── Full sync ────────────────────────────────────────────────────────────

    def start_full_sync(
        self,
        options: Optional[RunOptions] = None,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
    ) -> int:
        loop = asyncio.get_running_loop()
        execution_id = self.orchestrator.begin(trigger, triggered_by)
        self._spawn(
            loop,
            execution_id,
            self.orchestrator.run(options, trigger, triggered_by, execution_id=execution_id),
        )
        return execution_id

    async def run_full_sync(
        self,
        options: Optional[RunOptions] = None,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
    ) -> SyncResult:
        return await self.orchestrator.run(options, trigger, triggered_by)

    # ─── Single player ────────────────────────────────────────────────────────

    async def import_player(self, player_id: int) -> Dict[str, Any]:
        """Fetch one player from the API and upsert it.

        Raises:
            PlayerNotFoundError: the API does not know the player.
            MarketApiError: the fetch failed after retries.
        """
        logger.info("Importing player %s on request", player_id)
        return await self.repair.import_player(player_id)

    # ─── Control ──────────────────────────────────────────────────────────────

    def cancel(self, execution_id: int) -> bool:
        return self.tracker.cancel(execution_id)

    def cancel_all(self) -> List[int]:
        cancelled = self.tracker.cancel_all()
        logger.info("Cancelled %d running execution(s): %s", len(cancelled), cancelled)
        return cancelled

    def subscribe_progress(self, execution_id: int) -> AsyncIterator[ProgressUpdate]:
        return self.broadcaster.stream(execution_id)

    def get_execution(self, execution_id: int):
        return self.tracker.get_execution(execution_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "stages": self.tracker.stage_statuses(),
            "running": [
                {
                    "execution_id": execution.id,
                    "stage_name": execution.stage_name,
                    "started_at": execution.started_at,
                    "records_processed": execution.records_processed,
                }
                for execution in self.tracker.running_executions()
            ],
            "last_full_sync": self.checkpoints.get(LAST_FULL_SYNC),
        }

    def recover_interrupted(self) -> List[int]:
        """Fail executions left running by a previous process."""
        return self.tracker.recover_interrupted()

    async def wait(self, execution_id: int) -> None:
        """Await a background execution started by this service, if any."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)

    async def aclose(self) -> None:
        """Cancel background executions and close the API client.

        An execution whose task never got to run is closed out here, so no row
        is left "running" across a restart.
        """
        tasks = dict(self._tasks)
        for task in tasks.values():
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        for execution_id in tasks:
            execution = self.tracker.get_execution(execution_id)
            if execution is None:
                continue
            status = "failed" if execution.stage_name == FULL_SYNC_STAGE else "cancelled"
            self.tracker.complete(
                execution_id, status, "Sync interrupted", keep_cancelled=False
            )
        if self.client is not None:
            await self.client.aclose()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _spawn(self, loop, execution_id: int, coro) -> None:
        task = loop.create_task(coro)
        self._tasks[execution_id] = task

        def _done(t: asyncio.Task) -> None:
            self._tasks.pop(execution_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Background execution %s crashed: %s", execution_id, t.exception()
                )

        task.add_done_callback(_done)


def build_sync_service(settings=None, engine=None, client=None, sleep=asyncio.sleep) -> SyncService:
    """Wire the default stage list against the configured API and database."""
    from marketsync.client import MarketClient
    from marketsync.config import get_settings
    from marketsync.db.engine import get_engine
    from marketsync.store import MarketStore, SqlValuationProcedure
    from marketsync.sync.checkpoints import SqlCheckpointStore
    from marketsync.sync.orchestrator import StageDefinition
    from marketsync.sync.repair import DependencyRepair
    from marketsync.sync.stages.listings import ListingsStage
    from marketsync.sync.stages.players import PlayersImportStage
    from marketsync.sync.stages.sales import HistoricalSalesStage, SalesStage
    from marketsync.sync.stages.valuations import MarketValuesStage

    settings = settings or get_settings()
    engine = engine or get_engine()
    client = client or MarketClient(settings.api_base_url, timeout=settings.http_timeout)

    tracker = ExecutionTracker(engine)
    checkpoints = SqlCheckpointStore(engine)
    broadcaster = ProgressBroadcaster()
    store = MarketStore(engine, SqlValuationProcedure(settings.valuation_procedure))
    repair = DependencyRepair(
        client,
        store,
        attempts=settings.repair_retry_attempts,
        base_delay=settings.retry_base_delay,
        sleep=sleep,
        burn_wallet_address=settings.burn_wallet_address,
    )

    definitions = [
        StageDefinition(
            PlayersImportStage(tracker, broadcaster, client, store, checkpoints, settings, sleep=sleep),
            required=True,
            order=1,
        ),
        StageDefinition(
            HistoricalSalesStage(
                tracker, broadcaster, client, store, checkpoints, repair, settings, sleep=sleep
            ),
            required=True,
            one_time=True,
            order=2,
        ),
        StageDefinition(
            SalesStage(tracker, broadcaster, client, store, checkpoints, repair, settings, sleep=sleep),
            required=True,
            order=3,
        ),
        StageDefinition(
            ListingsStage(tracker, broadcaster, client, store, checkpoints, repair, settings, sleep=sleep),
            required=False,
            order=4,
        ),
        StageDefinition(
            MarketValuesStage(tracker, broadcaster, store, settings),
            required=False,
            order=5,
        ),
    ]
    orchestrator = Orchestrator(
        definitions, tracker, checkpoints, broadcaster, settings.progress_cleanup_delay
    )
    tracker.ensure_stages(definitions)
    return SyncService(
        orchestrator, tracker, checkpoints, broadcaster, client=client, repair=repair
    )


_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """Return the process-wide service, building it on first call (FastAPI dependency).

    The API process owns background executions, so rows a previous process
    left running are failed when the service is first built.
    """
    global _service
    if _service is None:
        _service = build_sync_service()
        _service.recover_interrupted()
    return _service


async def close_sync_service() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None
