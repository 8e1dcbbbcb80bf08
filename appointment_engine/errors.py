"""
Scheduling Errors

Typed error taxonomy for the scheduling engine. Every public engine
operation either returns a fully-applied result or raises one of these.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base exception for scheduling engine errors."""

    status_code: int = 400
    code: str = "scheduling_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for an API response body."""
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **self.details,
        }


class InvalidTimeFormat(SchedulingError):
    """Raised when a date-time string cannot be parsed."""

    status_code = 422
    code = "invalid_time_format"


class AmbiguousOrInvalidLocalTime(SchedulingError):
    """Raised when a wall-clock time does not exist in the tenant zone."""

    status_code = 422
    code = "invalid_local_time"


class OutsideWorkingHours(SchedulingError):
    """Raised when a requested interval is not inside a work-hour window."""

    status_code = 422
    code = "outside_working_hours"


class SlotNoLongerAvailable(SchedulingError):
    """Raised when the requested interval is already taken."""

    status_code = 409
    code = "slot_unavailable"


class RecordNotFound(SchedulingError):
    """Raised when an appointment, block or tenant policy does not exist."""

    status_code = 404
    code = "not_found"


class ExternalProviderUnavailable(SchedulingError):
    """Raised when the calendar provider cannot be reached or fails."""

    status_code = 503
    code = "calendar_unavailable"


class InvalidTransition(SchedulingError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    status_code = 409
    code = "invalid_transition"


class PersistenceConflict(SchedulingError):
    """
    Raised when the external artifact was mutated but persisting failed.

    Carries the artifact id and the attempted state so that callers can
    reconcile the calendar with the store.
    """

    status_code = 409
    code = "persistence_conflict"

    def __init__(
        self,
        message: str,
        artifact_id: Optional[str],
        attempted_status: str,
        record_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            artifact_id=artifact_id,
            attempted_status=attempted_status,
            record_id=record_id,
        )
        self.artifact_id = artifact_id
        self.attempted_status = attempted_status
        self.record_id = record_id
