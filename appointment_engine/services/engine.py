"""
Scheduling Engine

Public surface of the scheduling engine. Every operation loads the
tenant's policy, assembles busy intervals for the relevant window, and
delegates to the lifecycle and block services:

    fetch busy intervals -> compute -> mutate calendar -> persist
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from appointment_engine.config import settings
from appointment_engine.db.repository import (
    AppointmentRepository,
    CalendarBlockRepository,
    TenantPolicyRepository,
)
from appointment_engine.errors import RecordNotFound
from appointment_engine.models.schemas import (
    ACTIVE_APPOINTMENT_STATUSES,
    AppointmentRecord,
    AppointmentStatus,
    AvailabilityResult,
    BookingDetails,
    BusyInterval,
    BusyKind,
    CalendarBlock,
    Slot,
    TenantPolicy,
)
from appointment_engine.scheduling.availability import AvailabilityCalculator
from appointment_engine.scheduling.conflicts import ConflictDetector
from appointment_engine.scheduling.timezone import TimeZoneConverter
from appointment_engine.services.appointment import AppointmentService
from appointment_engine.services.blocks import CalendarBlockManager
from appointment_engine.services.calendar_provider import CalendarProvider

logger = logging.getLogger(__name__)

WallClock = Union[str, datetime]


class SchedulingEngine:
    """
    One parameterised engine for every tenant.

    Tenant variation is TenantPolicy data loaded per call, never forked code.
    """

    def __init__(
        self,
        policy_repo: TenantPolicyRepository,
        appointment_repo: AppointmentRepository,
        block_repo: CalendarBlockRepository,
        calendar: CalendarProvider,
        converter: Optional[TimeZoneConverter] = None,
    ):
        self.policy_repo = policy_repo
        self.appointment_repo = appointment_repo
        self.block_repo = block_repo
        self.calendar = calendar
        self.converter = converter or TimeZoneConverter()
        self.detector = ConflictDetector()
        self.calculator = AvailabilityCalculator(self.converter)
        self.appointments = AppointmentService(
            appointment_repo,
            calendar,
            converter=self.converter,
            detector=self.detector,
            calculator=self.calculator,
        )
        self.blocks = CalendarBlockManager(block_repo, calendar, converter=self.converter)

    @classmethod
    def from_session(cls, session: AsyncSession, calendar: CalendarProvider) -> "SchedulingEngine":
        """Build an engine whose repositories share one database session."""
        return cls(
            TenantPolicyRepository(session),
            AppointmentRepository(session),
            CalendarBlockRepository(session),
            calendar,
        )

    # Loading

    async def get_policy(self, tenant_id: str) -> TenantPolicy:
        policy = await self.policy_repo.get_policy(tenant_id)
        if policy is None:
            raise RecordNotFound(f"Unknown tenant {tenant_id}", tenant_id=tenant_id)
        return policy

    async def save_policy(self, policy: TenantPolicy) -> TenantPolicy:
        return await self.policy_repo.save_policy(policy)

    async def get_appointment(self, appointment_id: str) -> AppointmentRecord:
        record = await self.appointment_repo.get_appointment(appointment_id)
        if record is None:
            raise RecordNotFound(
                f"Appointment {appointment_id} not found",
                appointment_id=appointment_id,
            )
        return record

    async def _get_block(self, block_id: str) -> CalendarBlock:
        block = await self.block_repo.get_block(block_id)
        if block is None:
            raise RecordNotFound(f"Calendar block {block_id} not found", block_id=block_id)
        return block

    def _window_bound(self, policy: TenantPolicy, wall_clock: datetime) -> datetime:
        # Search bounds tolerate DST gaps; they only need to cover the window
        return wall_clock.replace(tzinfo=policy.zone).astimezone(timezone.utc)

    async def busy_intervals(
        self,
        policy: TenantPolicy,
        window_start: datetime,
        window_end: datetime,
    ) -> List[BusyInterval]:
        """
        Assemble busy intervals for a local wall-clock window.

        Calendar events, persisted appointments (pending holds included) and
        active blocks are merged. Records backed by a listed calendar event
        are only counted once.
        """
        time_min = self._window_bound(policy, window_start)
        time_max = self._window_bound(policy, window_end)

        events = await self.calendar.list_events(
            policy.calendar_id, time_min, time_max, policy.timezone
        )
        appointments = await self.appointment_repo.list_appointments(
            policy.tenant_id,
            statuses=ACTIVE_APPOINTMENT_STATUSES,
            start=time_min,
            end=time_max,
        )
        blocks = await self.block_repo.list_blocks(policy.tenant_id, start=time_min, end=time_max)

        appointment_refs = {a.external_event_ref: a.id for a in appointments if a.external_event_ref}
        block_refs = {b.external_event_ref: b.id for b in blocks if b.external_event_ref}

        intervals: List[BusyInterval] = []
        for event in events:
            if event.id in block_refs:
                kind, source_id = BusyKind.BLOCK, block_refs[event.id]
            else:
                kind, source_id = BusyKind.APPOINTMENT, appointment_refs.get(event.id, event.id)
            intervals.append(
                BusyInterval(start=event.start, end=event.end, kind=kind, source_id=source_id)
            )

        listed = {event.id for event in events}
        for appointment in appointments:
            if appointment.external_event_ref in listed:
                continue
            intervals.append(
                BusyInterval(
                    start=self.converter.to_local(appointment.start, policy.zone),
                    end=self.converter.to_local(appointment.end, policy.zone),
                    kind=BusyKind.APPOINTMENT,
                    source_id=appointment.id,
                )
            )
        for block in blocks:
            if block.external_event_ref in listed:
                continue
            intervals.append(
                BusyInterval(
                    start=self.converter.to_local(block.start, policy.zone),
                    end=self.converter.to_local(block.end, policy.zone),
                    kind=BusyKind.BLOCK,
                    source_id=block.id,
                )
            )

        intervals.sort(key=lambda b: (b.start, b.end))
        logger.debug(
            f"{len(intervals)} busy interval(s) for tenant {policy.tenant_id} "
            f"between {window_start} and {window_end}"
        )
        return intervals

    # Availability

    async def check_availability(
        self,
        tenant_id: str,
        start: WallClock,
        duration_minutes: Optional[int] = None,
    ) -> AvailabilityResult:
        """
        Check whether one interval can be booked.

        Returns:
            AvailabilityResult; reason is "outside_working_hours" or "conflict"
            when unavailable
        """
        policy = await self.get_policy(tenant_id)
        local_start = self.converter.parse_wall_clock(start, policy.zone)
        # Raises for a start inside a DST gap
        self.converter.convert(local_start, policy.zone)
        slot = Slot.starting_at(local_start, duration_minutes or policy.default_duration_minutes)

        if not self.calculator.fits_working_hours(policy, slot.start, slot.end):
            return AvailabilityResult(available=False, reason="outside_working_hours")

        busy = await self.busy_intervals(policy, slot.start, slot.end)
        return self.detector.is_available(slot, busy)

    async def find_slots(
        self,
        tenant_id: str,
        search_from: WallClock,
        count: Optional[int] = None,
        duration_minutes: Optional[int] = None,
    ) -> List[Slot]:
        """Find the next free slots, searching settings.search_horizon_days ahead."""
        policy = await self.get_policy(tenant_id)
        window_start = self.converter.parse_wall_clock(search_from, policy.zone)
        window_end = window_start + timedelta(days=settings.search_horizon_days)
        limit = min(count or settings.default_slot_count, settings.max_slot_count)

        busy = await self.busy_intervals(policy, window_start, window_end)
        return self.calculator.find_slots(
            policy,
            busy,
            window_start,
            window_end,
            duration_minutes or policy.default_duration_minutes,
            limit,
        )

    # Appointment lifecycle

    async def book_appointment(
        self,
        tenant_id: str,
        slot: Slot,
        details: BookingDetails,
    ) -> AppointmentRecord:
        """Book a slot, either as a tentative hold or confirmed immediately."""
        policy = await self.get_policy(tenant_id)
        busy = await self.busy_intervals(policy, slot.start, slot.end)

        if details.tentative:
            return await self.appointments.create_pending(policy, slot, details, busy)
        return await self.appointments.create_confirmed(policy, slot, details, busy)

    async def confirm_appointment(
        self,
        appointment_id: str,
        requested_start: Optional[str] = None,
        requested_end: Optional[str] = None,
    ) -> AppointmentRecord:
        record = await self.get_appointment(appointment_id)
        policy = await self.get_policy(record.tenant_id)
        return await self.appointments.confirm(policy, record, requested_start, requested_end)

    async def cancel_appointment(self, appointment_id: str) -> AppointmentRecord:
        record = await self.get_appointment(appointment_id)
        policy = await self.get_policy(record.tenant_id)
        return await self.appointments.cancel(policy, record)

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: WallClock,
        duration_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> AppointmentRecord:
        """Move an appointment; its duration is kept unless overridden."""
        record = await self.get_appointment(appointment_id)
        policy = await self.get_policy(record.tenant_id)
        local_start = self.converter.parse_wall_clock(new_start, policy.zone)
        local_end = local_start + timedelta(minutes=duration_minutes or record.duration_minutes)

        busy = await self.busy_intervals(policy, local_start, local_end)
        return await self.appointments.reschedule(
            policy,
            record,
            local_start,
            busy,
            duration_minutes=duration_minutes,
            reason=reason,
        )

    async def update_appointment_details(
        self,
        appointment_id: str,
        service_descriptor: Optional[str] = None,
        notes: Optional[str] = None,
        location: Optional[str] = None,
    ) -> AppointmentRecord:
        record = await self.get_appointment(appointment_id)
        policy = await self.get_policy(record.tenant_id)
        return await self.appointments.update_details(
            policy, record, service_descriptor, notes, location
        )

    async def list_appointments(
        self,
        tenant_id: str,
        status: Optional[AppointmentStatus] = None,
        start: Optional[WallClock] = None,
        end: Optional[WallClock] = None,
    ) -> List[AppointmentRecord]:
        policy = await self.get_policy(tenant_id)
        return await self.appointment_repo.list_appointments(
            tenant_id,
            statuses=[status] if status else None,
            start=self.converter.convert(start, policy.zone) if start else None,
            end=self.converter.convert(end, policy.zone) if end else None,
        )

    # Calendar blocks

    async def block_period(
        self,
        tenant_id: str,
        start: WallClock,
        end: WallClock,
        reason: Optional[str] = None,
        block_type: str = "blocked",
    ) -> CalendarBlock:
        policy = await self.get_policy(tenant_id)
        return await self.blocks.block(
            policy,
            self.converter.parse_wall_clock(start, policy.zone),
            self.converter.parse_wall_clock(end, policy.zone),
            block_type=block_type,
            reason=reason,
        )

    async def unblock_period(self, block_id: str) -> None:
        block = await self._get_block(block_id)
        policy = await self.get_policy(block.tenant_id)
        await self.blocks.unblock(policy, block)

    async def list_blocks(
        self,
        tenant_id: str,
        include_deleted: bool = False,
    ) -> List[CalendarBlock]:
        await self.get_policy(tenant_id)
        return await self.blocks.list_blocks(tenant_id, include_deleted=include_deleted)
