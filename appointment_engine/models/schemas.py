"""
Pydantic Schemas

Data validation and serialization schemas for the scheduling engine,
its persisted records and the HTTP API.
"""

from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment record."""

    PENDING_CONFIRMATION = "PendingConfirmation"
    CONFIRMED = "Confirmed"
    CANCELED = "Canceled"
    COMPLETED = "Completed"


class BlockStatus(str, Enum):
    """States of a calendar block record."""

    ACTIVE = "Active"
    DELETED = "Deleted"


class BusyKind(str, Enum):
    APPOINTMENT = "Appointment"
    BLOCK = "Block"


# Statuses that consume availability
ACTIVE_APPOINTMENT_STATUSES = (
    AppointmentStatus.PENDING_CONFIRMATION,
    AppointmentStatus.CONFIRMED,
)


class TenantPolicy(BaseModel):
    """
    Per-tenant scheduling configuration.

    Loaded once per request and passed explicitly to every component.
    Weekdays follow Python's convention: Monday is 0, Sunday is 6.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    timezone: str
    work_days: FrozenSet[int] = frozenset({0, 1, 2, 3, 4})
    work_start: time = time(9, 0)
    work_end: time = time(17, 0)
    slot_granularity_minutes: int = Field(default=30, gt=0, le=1440)
    calendar_id: str = "primary"
    default_duration_minutes: int = Field(default=60, gt=0)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the zone exists in the IANA database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown IANA time zone: {v}") from e
        return v

    @field_validator("work_days")
    @classmethod
    def validate_work_days(cls, v: FrozenSet[int]) -> FrozenSet[int]:
        invalid = [day for day in v if day < 0 or day > 6]
        if invalid:
            raise ValueError(f"Weekdays must be between 0 and 6, got {sorted(invalid)}")
        return v

    @model_validator(mode="after")
    def validate_work_hours(self) -> "TenantPolicy":
        if self.work_start >= self.work_end:
            raise ValueError("work_start must be earlier than work_end")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def work_day_length(self) -> timedelta:
        """Length of one work-hour window."""
        start = datetime.combine(datetime.min.date(), self.work_start)
        end = datetime.combine(datetime.min.date(), self.work_end)
        return end - start

    @property
    def slot_step(self) -> timedelta:
        return timedelta(minutes=self.slot_granularity_minutes)


class BusyInterval(BaseModel):
    """An interval, in tenant-local wall-clock time, that consumes availability."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    kind: BusyKind = BusyKind.APPOINTMENT
    source_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_order(self) -> "BusyInterval":
        if self.end < self.start:
            raise ValueError("Busy interval ends before it starts")
        return self


class Slot(BaseModel):
    """A candidate bookable interval in tenant-local wall-clock time."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    duration_minutes: int = Field(gt=0)

    @model_validator(mode="after")
    def validate_duration(self) -> "Slot":
        if self.end - self.start != timedelta(minutes=self.duration_minutes):
            raise ValueError("Slot end must equal start plus duration")
        return self

    @classmethod
    def starting_at(cls, start: datetime, duration_minutes: int) -> "Slot":
        return cls(
            start=start,
            end=start + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
        )


class AppointmentRecord(BaseModel):
    """Persisted appointment. start/end are UTC instants."""

    id: str
    tenant_id: str
    client_ref: str
    service_descriptor: Optional[str] = None
    start: datetime
    end: datetime
    duration_minutes: int = Field(gt=0)
    status: AppointmentStatus
    external_event_ref: Optional[str] = None
    notes: str = ""
    location: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def validate_invariants(self) -> "AppointmentRecord":
        if self.end - self.start != timedelta(minutes=self.duration_minutes):
            raise ValueError("Appointment end must equal start plus duration")
        if self.status == AppointmentStatus.CONFIRMED and not self.external_event_ref:
            raise ValueError("A confirmed appointment requires an external event reference")
        return self

    def with_changes(self, **changes: Any) -> "AppointmentRecord":
        """Return a validated copy with the given fields replaced."""
        return AppointmentRecord.model_validate({**self.model_dump(), **changes})


class CalendarBlock(BaseModel):
    """Persisted tenant-declared unavailable period. start/end are UTC instants."""

    id: str
    tenant_id: str
    start: datetime
    end: datetime
    block_type: str = "blocked"
    reason: Optional[str] = None
    status: BlockStatus = BlockStatus.ACTIVE
    external_event_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AvailabilityResult(BaseModel):
    """Outcome of testing one candidate interval."""

    available: bool
    conflicts: List[BusyInterval] = Field(default_factory=list)
    reason: Optional[str] = None


class CalendarEvent(BaseModel):
    """Calendar provider event, normalized to tenant-local wall-clock time."""

    id: str
    summary: Optional[str] = None
    start: datetime
    end: datetime


class EventPayload(BaseModel):
    """Event body sent to the calendar provider."""

    summary: str
    description: str = ""
    start: str
    end: str
    time_zone: str
    location: Optional[str] = None

    def to_google_body(self) -> Dict[str, Any]:
        """Convert to the Google Calendar API event format."""
        body: Dict[str, Any] = {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": self.start, "timeZone": self.time_zone},
            "end": {"dateTime": self.end, "timeZone": self.time_zone},
        }
        if self.location:
            body["location"] = self.location
        return body


class BookingDetails(BaseModel):
    """Client-supplied details for a new appointment."""

    client_ref: str = Field(min_length=1)
    service_descriptor: Optional[str] = None
    notes: str = ""
    location: Optional[str] = None
    tentative: bool = False


# API request schemas

class BookingRequest(BookingDetails):
    start: str
    duration_minutes: Optional[int] = Field(default=None, gt=0)


class ConfirmRequest(BaseModel):
    """Confirmation body. Time fields are accepted but never applied."""

    start: Optional[str] = None
    end: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_start: str
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class AppointmentUpdate(BaseModel):
    service_descriptor: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None


class BlockRequest(BaseModel):
    start: str
    end: str
    block_type: str = "blocked"
    reason: Optional[str] = None


class APIResponse(BaseModel):
    """Generic response wrapper."""

    success: bool = True
    message: Optional[str] = None
    data: Any = None


class PolicyRequest(BaseModel):
    """Tenant policy body; the tenant id comes from the path."""

    timezone: str
    work_days: FrozenSet[int] = frozenset({0, 1, 2, 3, 4})
    work_start: time = time(9, 0)
    work_end: time = time(17, 0)
    slot_granularity_minutes: int = 30
    calendar_id: str = "primary"
    default_duration_minutes: int = 60
