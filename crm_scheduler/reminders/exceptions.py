"""
Error taxonomy for the scheduling engine.
"""
from typing import List, Optional


class SchedulerError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(SchedulerError):
    """A recurrence or reminder rule is malformed. Raised at write time only."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class ImmutableStateError(SchedulerError):
    """Edit or delete attempted on a reminder that has already been sent."""


class NotFoundError(SchedulerError):
    pass


class ClaimConflict(SchedulerError):
    """Another dispatcher already owns the item. Skipped, never surfaced."""

    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} {item_id} already claimed or no longer due")


class DispatchFailure(SchedulerError):
    """The notify or instantiate hook failed or timed out."""

    def __init__(self, kind: str, item_id: str, cause: Optional[BaseException] = None, timed_out: bool = False):
        self.kind = kind
        self.item_id = item_id
        self.cause = cause
        self.timed_out = timed_out
        reason = "timed out" if timed_out else f"{type(cause).__name__}: {cause}"
        super().__init__(f"Hook for {kind} {item_id} failed: {reason}")


class ItemBusyError(SchedulerError):
    """A dispatcher holds a claim on the item; the edit can be retried once it finishes."""
