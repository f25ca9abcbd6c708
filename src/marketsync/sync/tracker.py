"""
ExecutionTracker: lifecycle of sync runs in the sync_execution / sync_stage tables.

  start()            → insert "running" execution, mark stage "running"
  report_progress()  → cooperative cancellation checkpoint, then write counts
  complete()         → terminal status + duration, propagate to the stage row

Only start() raises on a failed write: a run that cannot be recorded is not
started. Everything after that is best-effort telemetry and never aborts an
in-progress sync.

"One running execution per stage" is enforced by reading before inserting,
not by a database lock. Two concurrent manual triggers can race; that is an
accepted operator-caused condition.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from marketsync.clock import as_utc, utcnow
from marketsync.errors import StageBusyError, SyncCancelled
from marketsync.models.sync import SyncExecution, SyncStage

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class ExecutionTracker:
    def __init__(self, engine):
        self.engine = engine

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def start(
        self,
        stage_name: str,
        trigger: str = "api",
        triggered_by: Optional[str] = None,
    ) -> int:
        """Insert a running execution for the stage and return its id.

        Raises:
            StageBusyError: if the stage already has a running execution.
        """
        with Session(self.engine) as s:
            running = s.exec(
                select(SyncExecution).where(
                    SyncExecution.stage_name == stage_name,
                    SyncExecution.status == "running",
                )
            ).first()
            if running is not None:
                raise StageBusyError(stage_name, running.id)

            execution = SyncExecution(
                stage_name=stage_name,
                execution_type=trigger,
                status="running",
                triggered_by=triggered_by,
                progress_json="{}",
            )
            s.add(execution)

            stage = self._get_or_create_stage(s, stage_name)
            stage.status = "running"
            stage.last_run_at = utcnow()
            s.add(stage)

            s.commit()
            s.refresh(execution)

        logger.info("Started sync execution %s for stage %s", execution.id, stage_name)
        return execution.id

    def is_cancelled(self, execution_id: int) -> bool:
        try:
            with Session(self.engine) as s:
                execution = s.get(SyncExecution, execution_id)
                return execution is not None and execution.status == "cancelled"
        except SQLAlchemyError as exc:
            logger.warning(
                "Could not check cancellation status for execution %s: %s",
                execution_id,
                exc,
            )
            return False

    def report_progress(
        self,
        execution_id: int,
        processed: int,
        failed: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write progress counts, or raise SyncCancelled if the run was cancelled."""
        if self.is_cancelled(execution_id):
            logger.info("Sync execution %s has been cancelled, stopping", execution_id)
            raise SyncCancelled(execution_id)

        try:
            with Session(self.engine) as s:
                execution = s.get(SyncExecution, execution_id)
                if execution is None:
                    return
                execution.records_processed = processed
                execution.records_failed = failed
                if payload is not None:
                    execution.progress_json = json.dumps(payload, default=str)
                s.add(execution)
                s.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to update progress for execution %s: %s", execution_id, exc)

    def complete(
        self,
        execution_id: int,
        status: str,
        error_message: Optional[str] = None,
        processed: Optional[int] = None,
        failed: Optional[int] = None,
        keep_cancelled: bool = True,
    ) -> None:
        """Finalize an execution. A second call for the same execution is ignored.

        An execution flipped to "cancelled" externally stays cancelled whatever
        status the worker reports, unless `keep_cancelled` is False (the
        orchestrator only ends "completed" or "failed").
        """
        try:
            with Session(self.engine) as s:
                execution = s.get(SyncExecution, execution_id)
                if execution is None:
                    logger.warning("Cannot complete unknown execution %s", execution_id)
                    return
                if execution.completed_at is not None:
                    return

                if execution.status == "cancelled" and keep_cancelled:
                    status = "cancelled"
                    error_message = error_message or execution.error_message

                now = utcnow()
                execution.status = status
                execution.completed_at = now
                execution.duration_ms = int(
                    (now - as_utc(execution.started_at)).total_seconds() * 1000
                )
                execution.error_message = error_message
                if processed is not None:
                    execution.records_processed = processed
                if failed is not None:
                    execution.records_failed = failed
                s.add(execution)

                stage = self._get_or_create_stage(s, execution.stage_name)
                stage.status = status
                stage.last_run_at = now
                stage.error_message = error_message
                if status == "completed":
                    stage.last_success_at = now
                s.add(stage)

                s.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to complete execution %s: %s", execution_id, exc)
            return

        logger.info("Completed sync execution %s with status: %s", execution_id, status)

    def cancel(self, execution_id: int, reason: str = "Sync manually cancelled by user") -> bool:
        """Flip a running execution to cancelled. Returns False if it was not running."""
        with Session(self.engine) as s:
            execution = s.get(SyncExecution, execution_id)
            if execution is None or execution.status != "running":
                return False
            execution.status = "cancelled"
            execution.error_message = reason
            s.add(execution)
            s.commit()
        logger.info("Cancellation requested for execution %s", execution_id)
        return True

    def cancel_all(self) -> List[int]:
        """Cancel every running execution. Returns the cancelled ids."""
        with Session(self.engine) as s:
            running = s.exec(
                select(SyncExecution).where(SyncExecution.status == "running")
            ).all()
            ids = [execution.id for execution in running]
        return [execution_id for execution_id in ids if self.cancel(execution_id)]

    def recover_interrupted(self, reason: str = "Sync interrupted") -> List[int]:
        """Fail every execution still marked running. Call once at process startup.

        A process killed mid-run leaves its row "running", which would block
        every later start() of that stage. The next run resumes from the
        stage's checkpoints.
        """
        now = utcnow()
        with Session(self.engine) as s:
            orphans = s.exec(
                select(SyncExecution).where(SyncExecution.status == "running")
            ).all()
            for execution in orphans:
                execution.status = "failed"
                execution.completed_at = now
                execution.duration_ms = int(
                    (now - as_utc(execution.started_at)).total_seconds() * 1000
                )
                execution.error_message = reason
                s.add(execution)

                stage = self._get_or_create_stage(s, execution.stage_name)
                stage.status = "failed"
                stage.error_message = reason
                s.add(stage)
            s.commit()
            ids = [execution.id for execution in orphans]

        if ids:
            logger.warning("Marked %d interrupted execution(s) as failed: %s", len(ids), ids)
        return ids

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get_execution(self, execution_id: int) -> Optional[SyncExecution]:
        with Session(self.engine) as s:
            return s.get(SyncExecution, execution_id)

    def latest_execution(self, stage_name: str) -> Optional[SyncExecution]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncExecution)
                .where(SyncExecution.stage_name == stage_name)
                .order_by(SyncExecution.id.desc())
            ).first()

    def running_executions(self) -> List[SyncExecution]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncExecution)
                    .where(SyncExecution.status == "running")
                    .order_by(SyncExecution.started_at)
                ).all()
            )

    def is_running(self, stage_name: str) -> bool:
        execution = self.latest_execution(stage_name)
        return execution is not None and execution.status == "running"

    def get_stage(self, stage_name: str) -> Optional[SyncStage]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncStage).where(SyncStage.stage_name == stage_name)
            ).first()

    def has_succeeded(self, stage_name: str) -> bool:
        stage = self.get_stage(stage_name)
        return stage is not None and stage.last_success_at is not None

    def ensure_stages(self, definitions: Iterable[Any]) -> None:
        """Seed stage rows from orchestrator definitions (name, label, order, one_time)."""
        with Session(self.engine) as s:
            for definition in definitions:
                stage = self._get_or_create_stage(s, definition.name)
                stage.stage_order = definition.order
                stage.description = definition.label
                stage.is_one_time = definition.one_time
                s.add(stage)
            s.commit()

    def stage_statuses(self) -> List[Dict[str, Any]]:
        with Session(self.engine) as s:
            stages = s.exec(select(SyncStage).order_by(SyncStage.stage_order)).all()
            return [
                {
                    "stage_name": stage.stage_name,
                    "description": stage.description,
                    "stage_order": stage.stage_order,
                    "is_one_time": stage.is_one_time,
                    "status": stage.status,
                    "last_run_at": stage.last_run_at,
                    "last_success_at": stage.last_success_at,
                    "error_message": stage.error_message,
                }
                for stage in stages
            ]

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _get_or_create_stage(s: Session, stage_name: str) -> SyncStage:
        stage = s.exec(select(SyncStage).where(SyncStage.stage_name == stage_name)).first()
        if stage is None:
            stage = SyncStage(stage_name=stage_name)
        return stage
