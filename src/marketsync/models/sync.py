"""Sync bookkeeping models: executions, stages and checkpoints."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from marketsync.clock import utcnow


class SyncExecution(SQLModel, table=True):
    """One row per run of a stage (or of the full-sync orchestrator)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    stage_name: str = Field(index=True)
    execution_type: str = "api"  # "manual", "scheduled", "api"
    status: str = Field(default="running", index=True)  # "running", "completed", "failed", "cancelled"
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    duration_ms: Optional[int] = None
    records_processed: int = 0
    records_failed: int = 0
    progress_json: Optional[str] = None
    error_message: Optional[str] = None
    triggered_by: Optional[str] = None


class SyncStage(SQLModel, table=True):
    """One row per named stage. Never deleted."""

    id: Optional[int] = Field(default=None, primary_key=True)
    stage_name: str = Field(unique=True, index=True)
    stage_order: int = 0
    description: Optional[str] = None
    is_one_time: bool = False
    last_run_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_success_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    status: str = "pending"  # "pending", "running", "completed", "failed", "cancelled"
    error_message: Optional[str] = None
    progress_json: Optional[str] = None


class SyncCheckpoint(SQLModel, table=True):
    """Resumable cursor or global marker. Last write wins, no history."""

    key: str = Field(primary_key=True)
    value: str = ""
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
