"""Sync trigger, control and status routes."""
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from marketsync.errors import (
    MarketApiError,
    PlayerNotFoundError,
    StageBusyError,
    UnknownStageError,
)
from marketsync.models.sync import SyncExecution
from marketsync.sync.orchestrator import FULL_SYNC_STAGE, RunOptions
from marketsync.sync.service import SyncService, get_sync_service

router = APIRouter()


class StageTriggerRequest(BaseModel):
    triggered_by: Optional[str] = None


class FullSyncRequest(BaseModel):
    include_one_time: bool = False
    skip: List[str] = []
    triggered_by: Optional[str] = None


class TriggerResponse(BaseModel):
    message: str
    stage: str
    execution_id: int


class CancelResponse(BaseModel):
    cancelled: List[int]


class PlayerImportResponse(BaseModel):
    player_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    overall: Optional[int] = None
    is_burned: bool = False


@router.post("/stages/{stage_name}", response_model=TriggerResponse)
async def trigger_stage(
    stage_name: str,
    request: Optional[StageTriggerRequest] = None,
    service: SyncService = Depends(get_sync_service),
):
    """Start one stage in the background. Returns immediately with the execution id."""
    triggered_by = request.triggered_by if request else None
    try:
        execution_id = service.start_stage(stage_name, "api", triggered_by)
    except UnknownStageError:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage_name}")
    except StageBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return TriggerResponse(message="Stage started", stage=stage_name, execution_id=execution_id)


@router.post("/full", response_model=TriggerResponse)
async def trigger_full_sync(
    request: Optional[FullSyncRequest] = None,
    service: SyncService = Depends(get_sync_service),
):
    """Start the orchestrated full sync in the background."""
    request = request or FullSyncRequest()
    options = RunOptions(include_one_time=request.include_one_time, skip=tuple(request.skip))
    try:
        execution_id = service.start_full_sync(options, "api", request.triggered_by)
    except StageBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return TriggerResponse(
        message="Full sync started", stage=FULL_SYNC_STAGE, execution_id=execution_id
    )


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
def cancel_execution(execution_id: int, service: SyncService = Depends(get_sync_service)):
    """Request cooperative cancellation; the stage stops at its next progress report."""
    if service.get_execution(execution_id) is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    if not service.cancel(execution_id):
        raise HTTPException(status_code=409, detail="Execution is not running")
    return CancelResponse(cancelled=[execution_id])


@router.post("/stop", response_model=CancelResponse)
def stop_all(service: SyncService = Depends(get_sync_service)):
    """Cancel every running execution."""
    return CancelResponse(cancelled=service.cancel_all())


@router.post("/players/{player_id}", response_model=PlayerImportResponse)
async def import_player(player_id: int, service: SyncService = Depends(get_sync_service)):
    """Fetch one player from the API and upsert it, outside any stage run."""
    try:
        row = await service.import_player(player_id)
    except PlayerNotFoundError:
        raise HTTPException(status_code=404, detail=f"Player not found: {player_id}")
    except MarketApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return PlayerImportResponse(
        player_id=row["id"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        overall=row.get("overall"),
        is_burned=row.get("is_burned", False),
    )


@router.get("/status")
def sync_status(service: SyncService = Depends(get_sync_service)) -> Dict[str, Any]:
    """Per-stage status, running executions and the last successful full sync."""
    return service.get_status()


@router.get("/executions/{execution_id}", response_model=SyncExecution)
def get_execution(execution_id: int, service: SyncService = Depends(get_sync_service)):
    execution = service.get_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


@router.get("/executions/{execution_id}/progress")
async def stream_progress(execution_id: int, service: SyncService = Depends(get_sync_service)):
    """Server-sent events: buffered history, then live updates until the run ends."""
    execution = service.get_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")

    if execution.status != "running" and not service.broadcaster.history(execution_id):
        # Buffer already cleaned up: report the stored outcome once
        final = {
            "execution_id": execution.id,
            "stage_name": execution.stage_name,
            "status": "completed" if execution.status == "completed" else "failed",
            "processed": execution.records_processed,
            "duration_ms": execution.duration_ms,
            "error": execution.error_message,
        }
        return StreamingResponse(
            iter([_sse(final)]), media_type="text/event-stream"
        )

    async def events():
        async for update in service.subscribe_progress(execution_id):
            yield _sse(update.to_dict())

    return StreamingResponse(events(), media_type="text/event-stream")


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"
