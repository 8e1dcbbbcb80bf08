"""
Appointment Service

Drives an appointment through its lifecycle:

    create ──► PendingConfirmation ──► Confirmed
       │              │   ▲                │
       └──► Confirmed │   └─ reschedule ◄──┤
                      ▼                    ▼
                   Canceled ◄──────────────┘

Each transition validates first, then mutates the external calendar
artifact, then persists. A failure after the external mutation is raised
as PersistenceConflict carrying the artifact id for reconciliation.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Collection, List, Optional

from appointment_engine.db.repository import (
    AppointmentRepository,
    DatabaseError,
    DuplicateRecordError,
)
from appointment_engine.errors import (
    InvalidTransition,
    OutsideWorkingHours,
    PersistenceConflict,
    SchedulingError,
    SlotNoLongerAvailable,
)
from appointment_engine.models.schemas import (
    ACTIVE_APPOINTMENT_STATUSES,
    AppointmentRecord,
    AppointmentStatus,
    BookingDetails,
    BusyInterval,
    EventPayload,
    Slot,
    TenantPolicy,
)
from appointment_engine.scheduling.availability import AvailabilityCalculator
from appointment_engine.scheduling.conflicts import ConflictDetector
from appointment_engine.scheduling.timezone import TimeZoneConverter
from appointment_engine.services.calendar_provider import CalendarProvider

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AppointmentService:
    """
    Lifecycle state machine for appointment records.

    Busy intervals are supplied by the caller as a point-in-time snapshot;
    the calendar provider's insert is the authoritative conflict check.
    """

    def __init__(
        self,
        appointment_repo: AppointmentRepository,
        calendar: CalendarProvider,
        converter: Optional[TimeZoneConverter] = None,
        detector: Optional[ConflictDetector] = None,
        calculator: Optional[AvailabilityCalculator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize AppointmentService.

        Args:
            appointment_repo: Persistence for appointment records
            calendar: External calendar provider
            converter: Wall-clock/UTC converter
            detector: Conflict detector
            calculator: Availability calculator, used for work-hour checks
            clock: Returns the current UTC instant
        """
        self.appointment_repo = appointment_repo
        self.calendar = calendar
        self.converter = converter or TimeZoneConverter()
        self.detector = detector or ConflictDetector()
        self.calculator = calculator or AvailabilityCalculator(self.converter)
        self.clock = clock

    # Validation

    def validate_slot(
        self,
        policy: TenantPolicy,
        slot: Slot,
        busy_intervals: List[BusyInterval],
        exclude: Collection[str] = (),
    ) -> None:
        """
        Reject a slot before any side effect.

        Raises:
            AmbiguousOrInvalidLocalTime: If the start falls in a DST gap
            OutsideWorkingHours: If the slot is outside the work-hour window
            SlotNoLongerAvailable: If the slot overlaps a busy interval
        """
        self.converter.convert(slot.start, policy.zone)

        if not self.calculator.fits_working_hours(policy, slot.start, slot.end):
            raise OutsideWorkingHours(
                f"{self.converter.format_wall_clock(slot.start)} for "
                f"{slot.duration_minutes} minutes is outside working hours",
                start=self.converter.format_wall_clock(slot.start),
                duration_minutes=slot.duration_minutes,
            )

        result = self.detector.is_available(slot, busy_intervals, exclude=exclude)
        if not result.available:
            raise SlotNoLongerAvailable(
                f"{self.converter.format_wall_clock(slot.start)} is not available",
                conflicts=[
                    {
                        "start": self.converter.format_wall_clock(busy.start),
                        "end": self.converter.format_wall_clock(busy.end),
                        "kind": busy.kind.value,
                    }
                    for busy in result.conflicts
                ],
            )

    @staticmethod
    def _require_status(
        record: AppointmentRecord,
        allowed: Collection[AppointmentStatus],
        transition: str,
    ) -> None:
        if record.status not in allowed:
            raise InvalidTransition(
                f"Cannot {transition} appointment {record.id} in status {record.status.value}",
                appointment_id=record.id,
                status=record.status.value,
            )

    # Calendar artifacts

    def event_payload(self, policy: TenantPolicy, record: AppointmentRecord) -> EventPayload:
        """Build the calendar event for a record, using the record's own time."""
        service = record.service_descriptor or "Appointment"
        description = f"Client: {record.client_ref}\nService: {service}"
        if record.notes:
            description += f"\n\nNotes: {record.notes}"

        return EventPayload(
            summary=f"{service}: {record.client_ref}",
            description=description,
            start=self.converter.convert_back(record.start, policy.zone),
            end=self.converter.convert_back(record.end, policy.zone),
            time_zone=policy.timezone,
            location=record.location,
        )

    async def _discard_artifact(self, policy: TenantPolicy, event_id: str) -> bool:
        """Compensating delete of an artifact this request just created."""
        try:
            await self.calendar.delete_event(policy.calendar_id, event_id)
            return True
        except SchedulingError as e:
            logger.error(f"Could not remove calendar event {event_id}: {e}")
            return False

    async def _persist_after_insert(
        self,
        policy: TenantPolicy,
        record: AppointmentRecord,
        event_id: str,
        create: bool,
    ) -> AppointmentRecord:
        """Persist a record whose calendar event already exists."""
        try:
            if create:
                return await self.appointment_repo.create_appointment(record)
            return await self.appointment_repo.update_appointment(record)
        except DuplicateRecordError as e:
            logger.warning(
                f"Interval of appointment {record.id} was confirmed concurrently; "
                f"removing calendar event {event_id}"
            )
            if await self._discard_artifact(policy, event_id):
                raise SlotNoLongerAvailable(
                    "The slot was booked by another request",
                    appointment_id=record.id,
                ) from e
            raise PersistenceConflict(
                f"Calendar event {event_id} exists but appointment {record.id} was not saved",
                artifact_id=event_id,
                attempted_status=record.status.value,
                record_id=record.id,
            ) from e
        except DatabaseError as e:
            logger.error(f"Calendar event {event_id} created but saving {record.id} failed: {e}")
            raise PersistenceConflict(
                f"Calendar event {event_id} exists but appointment {record.id} was not saved",
                artifact_id=event_id,
                attempted_status=record.status.value,
                record_id=record.id,
            ) from e

    # Transitions

    def _new_record(
        self,
        policy: TenantPolicy,
        slot: Slot,
        details: BookingDetails,
    ) -> AppointmentRecord:
        start = self.converter.convert(slot.start, policy.zone)
        now = self.clock()
        return AppointmentRecord(
            id=str(uuid.uuid4()),
            tenant_id=policy.tenant_id,
            client_ref=details.client_ref,
            service_descriptor=details.service_descriptor,
            start=start,
            end=start + timedelta(minutes=slot.duration_minutes),
            duration_minutes=slot.duration_minutes,
            status=AppointmentStatus.PENDING_CONFIRMATION,
            notes=details.notes,
            location=details.location,
            created_at=now,
            updated_at=now,
        )

    async def create_pending(
        self,
        policy: TenantPolicy,
        slot: Slot,
        details: BookingDetails,
        busy_intervals: List[BusyInterval],
    ) -> AppointmentRecord:
        """Persist a tentative hold. No calendar event is created yet."""
        self.validate_slot(policy, slot, busy_intervals)
        record = await self.appointment_repo.create_appointment(
            self._new_record(policy, slot, details)
        )
        logger.info(f"Appointment {record.id} held pending confirmation")
        return record

    async def create_confirmed(
        self,
        policy: TenantPolicy,
        slot: Slot,
        details: BookingDetails,
        busy_intervals: List[BusyInterval],
    ) -> AppointmentRecord:
        """
        Book immediately: create the calendar event, then persist.

        Raises:
            SlotNoLongerAvailable: If the calendar or the store reports the slot taken
            PersistenceConflict: If the event exists but the record could not be saved
        """
        self.validate_slot(policy, slot, busy_intervals)
        pending = self._new_record(policy, slot, details)

        event_id = await self.calendar.insert_event(
            policy.calendar_id, self.event_payload(policy, pending)
        )
        record = pending.with_changes(
            status=AppointmentStatus.CONFIRMED,
            external_event_ref=event_id,
        )

        saved = await self._persist_after_insert(policy, record, event_id, create=True)
        logger.info(f"Appointment {saved.id} confirmed with calendar event {event_id}")
        return saved

    async def confirm(
        self,
        policy: TenantPolicy,
        record: AppointmentRecord,
        requested_start: Optional[str] = None,
        requested_end: Optional[str] = None,
    ) -> AppointmentRecord:
        """
        Confirm a pending hold at the time already stored on the record.

        Time fields resubmitted with the confirmation are ignored.
        """
        self._require_status(record, (AppointmentStatus.PENDING_CONFIRMATION,), "confirm")

        if requested_start or requested_end:
            logger.warning(
                f"Ignoring resubmitted time ({requested_start} - {requested_end}) "
                f"while confirming appointment {record.id}"
            )

        event_id = await self.calendar.insert_event(
            policy.calendar_id, self.event_payload(policy, record)
        )
        confirmed = record.with_changes(
            status=AppointmentStatus.CONFIRMED,
            external_event_ref=event_id,
            updated_at=self.clock(),
        )

        saved = await self._persist_after_insert(policy, confirmed, event_id, create=False)
        logger.info(f"Appointment {saved.id} confirmed with calendar event {event_id}")
        return saved

    async def cancel(self, policy: TenantPolicy, record: AppointmentRecord) -> AppointmentRecord:
        """
        Cancel an appointment. The calendar event is deleted first; if that
        fails the error propagates and the record is left untouched.
        """
        self._require_status(record, ACTIVE_APPOINTMENT_STATUSES, "cancel")

        if record.external_event_ref:
            await self.calendar.delete_event(policy.calendar_id, record.external_event_ref)

        canceled = record.with_changes(
            status=AppointmentStatus.CANCELED,
            updated_at=self.clock(),
        )

        try:
            saved = await self.appointment_repo.update_appointment(canceled)
        except DatabaseError as e:
            if not record.external_event_ref:
                raise
            raise PersistenceConflict(
                f"Calendar event {record.external_event_ref} deleted but "
                f"appointment {record.id} was not marked canceled",
                artifact_id=record.external_event_ref,
                attempted_status=AppointmentStatus.CANCELED.value,
                record_id=record.id,
            ) from e

        logger.info(f"Appointment {saved.id} canceled")
        return saved

    async def reschedule(
        self,
        policy: TenantPolicy,
        record: AppointmentRecord,
        new_start: datetime,
        busy_intervals: List[BusyInterval],
        duration_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> AppointmentRecord:
        """
        Move an appointment to a new start time, back to PendingConfirmation.

        The record keeps its id. Its calendar event is removed on a best-effort
        basis after the new time is saved; a failure there is only logged.
        """
        self._require_status(record, ACTIVE_APPOINTMENT_STATUSES, "reschedule")

        slot = Slot.starting_at(new_start, duration_minutes or record.duration_minutes)
        exclude = {record.id}
        if record.external_event_ref:
            exclude.add(record.external_event_ref)
        self.validate_slot(policy, slot, busy_intervals, exclude=exclude)

        now = self.clock()
        start = self.converter.convert(slot.start, policy.zone)
        audit = (
            f"[{self.converter.convert_back(now, policy.zone)}] Rescheduled from "
            f"{self.converter.convert_back(record.start, policy.zone)} to "
            f"{self.converter.format_wall_clock(slot.start)}"
        )
        if reason:
            audit += f": {reason}"

        updated = record.with_changes(
            start=start,
            end=start + timedelta(minutes=slot.duration_minutes),
            duration_minutes=slot.duration_minutes,
            status=AppointmentStatus.PENDING_CONFIRMATION,
            external_event_ref=None,
            notes=f"{record.notes}\n{audit}".strip(),
            updated_at=now,
        )
        saved = await self.appointment_repo.update_appointment(updated)

        if record.external_event_ref:
            try:
                await self.calendar.delete_event(policy.calendar_id, record.external_event_ref)
            except SchedulingError as e:
                logger.warning(
                    f"Orphaned calendar event {record.external_event_ref} "
                    f"after rescheduling {record.id}: {e}"
                )

        logger.info(f"Appointment {saved.id} rescheduled to {slot.start}")
        return saved

    async def update_details(
        self,
        policy: TenantPolicy,
        record: AppointmentRecord,
        service_descriptor: Optional[str] = None,
        notes: Optional[str] = None,
        location: Optional[str] = None,
    ) -> AppointmentRecord:
        """Change descriptive fields and push them to the calendar event, if any."""
        self._require_status(record, ACTIVE_APPOINTMENT_STATUSES, "update")

        changes = {"updated_at": self.clock()}
        if service_descriptor is not None:
            changes["service_descriptor"] = service_descriptor
        if notes is not None:
            changes["notes"] = notes
        if location is not None:
            changes["location"] = location
        updated = record.with_changes(**changes)

        if record.external_event_ref:
            await self.calendar.update_event(
                policy.calendar_id,
                record.external_event_ref,
                self.event_payload(policy, updated),
            )

        try:
            return await self.appointment_repo.update_appointment(updated)
        except DatabaseError as e:
            if not record.external_event_ref:
                raise
            raise PersistenceConflict(
                f"Calendar event {record.external_event_ref} updated but "
                f"appointment {record.id} was not saved",
                artifact_id=record.external_event_ref,
                attempted_status=record.status.value,
                record_id=record.id,
            ) from e
