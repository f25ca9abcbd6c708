"""Exception types shared by the client, store and sync pipeline."""
from typing import Iterable, Optional


class MarketApiError(RuntimeError):
    """Raised when the marketplace API returns a non-2xx response or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(MarketApiError):
    """Raised on throttling responses (403/429). Retried on the steeper curve."""


class PlayerNotFoundError(MarketApiError):
    """Raised when a single-player lookup returns 404."""


class MissingReferenceError(RuntimeError):
    """Raised when a batch write references players absent from the store."""

    def __init__(self, message: str, player_ids: Iterable[int] = ()):
        super().__init__(message)
        self.player_ids = sorted(set(player_ids))


class SyncCancelled(Exception):
    """Cooperative cancellation signal raised from a progress checkpoint."""

    def __init__(self, execution_id: int):
        super().__init__(f"Sync execution {execution_id} was cancelled")
        self.execution_id = execution_id


class StageBusyError(RuntimeError):
    """Raised when a stage already has a running execution."""

    def __init__(self, stage_name: str, execution_id: int):
        super().__init__(
            f"Stage {stage_name} already has running execution {execution_id}"
        )
        self.stage_name = stage_name
        self.execution_id = execution_id


class UnknownStageError(KeyError):
    """Raised when the control surface is asked for a stage it does not know."""
