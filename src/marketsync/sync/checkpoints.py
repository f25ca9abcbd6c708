"""
Checkpoint store: key/value persistence for resumable cursors and global markers.

Stages depend on the CheckpointStore protocol, not on a module-level
singleton, so tests can hand them a MemoryCheckpointStore.

A failed write is logged and reported as False, never raised: the stage
simply re-processes from the last successful checkpoint on its next run,
which is safe because every write is an idempotent upsert. A failed read
is raised: treating it as "no checkpoint" would restart a stream from the
beginning.
"""
import logging
from typing import Dict, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from marketsync.clock import utcnow
from marketsync.models.sync import SyncCheckpoint

logger = logging.getLogger(__name__)

LAST_PLAYER_ID = "last_player_id_imported"
LAST_RETIRED_PLAYER_ID = "last_retired_player_id_imported"
LAST_BURNED_PLAYER_ID = "last_burned_player_id_imported"
LAST_RETIRED_BURNED_PLAYER_ID = "last_retired_burned_player_id_imported"
LAST_SALE_ID = "last_sale_id_synced"
LAST_HISTORICAL_SALE_ID = "last_historical_sale_id"
LAST_LISTING_ID = "last_listing_id_synced"
LAST_FULL_SYNC = "last_full_sync_completed_at"


class CheckpointStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> bool:
        ...


class MemoryCheckpointStore:
    """Dict-backed store for tests and embedded use."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> bool:
        self.values[key] = value
        return True


class SqlCheckpointStore:
    """Checkpoints persisted in the sync_checkpoint table."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, key: str) -> Optional[str]:
        """Stored value, or None when the key was never written.

        Raises:
            SQLAlchemyError: the checkpoint could not be read.
        """
        try:
            with Session(self.engine) as s:
                row = s.get(SyncCheckpoint, key)
                return row.value if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Failed to read checkpoint %s: %s", key, exc)
            raise

    def set(self, key: str, value: str) -> bool:
        try:
            with Session(self.engine) as s:
                row = s.get(SyncCheckpoint, key)
                if row is None:
                    row = SyncCheckpoint(key=key, value=value)
                else:
                    row.value = value
                    row.updated_at = utcnow()
                s.add(row)
                s.commit()
            return True
        except SQLAlchemyError as exc:
            logger.warning("Failed to write checkpoint %s=%s: %s", key, value, exc)
            return False


def get_int(store: CheckpointStore, key: str) -> Optional[int]:
    """Read a checkpoint as an integer cursor. Empty, "0" and garbage mean absent."""
    raw = store.get(key)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer checkpoint %s=%r", key, raw)
        return None
    return value or None
