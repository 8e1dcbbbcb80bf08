"""
Shared fixtures: an in-memory calendar provider and in-memory repositories
that mirror the behaviour of the real ones, including the unique index on
confirmed intervals.
"""

import asyncio
import itertools
from datetime import datetime, time
from typing import Dict, List, Optional, Set

import pytest

from appointment_engine.db.repository import DatabaseError, DuplicateRecordError
from appointment_engine.errors import ExternalProviderUnavailable, SlotNoLongerAvailable
from appointment_engine.models.schemas import (
    AppointmentRecord,
    AppointmentStatus,
    BlockStatus,
    CalendarBlock,
    CalendarEvent,
    EventPayload,
    TenantPolicy,
)
from appointment_engine.scheduling.conflicts import overlaps
from appointment_engine.scheduling.timezone import TimeZoneConverter
from appointment_engine.services.calendar_provider import CalendarProvider
from appointment_engine.services.engine import SchedulingEngine


class FakeCalendarProvider(CalendarProvider):
    """Calendar kept in memory. Methods named in `failing` raise ExternalProviderUnavailable."""

    def __init__(self):
        self.converter = TimeZoneConverter()
        self.events: Dict[str, CalendarEvent] = {}
        self.payloads: Dict[str, EventPayload] = {}
        self.failing: Set[str] = set()
        self._ids = itertools.count(1)

    def _check(self, method: str) -> None:
        if method in self.failing:
            raise ExternalProviderUnavailable(f"{method} failed")

    async def list_events(self, calendar_id, time_min, time_max, time_zone) -> List[CalendarEvent]:
        self._check("list_events")
        start = self.converter.to_local(time_min, time_zone)
        end = self.converter.to_local(time_max, time_zone)
        found = [
            event for event in self.events.values()
            if overlaps(start, end, event.start, event.end)
        ]
        # Yield after taking the snapshot, like a network round trip would
        await asyncio.sleep(0)
        return found

    async def insert_event(self, calendar_id, payload, reject_overlaps=True) -> str:
        self._check("insert_event")
        start = self.converter.parse_wall_clock(payload.start, payload.time_zone)
        end = self.converter.parse_wall_clock(payload.end, payload.time_zone)
        if reject_overlaps and any(
            overlaps(start, end, event.start, event.end) for event in self.events.values()
        ):
            raise SlotNoLongerAvailable("Calendar provider reported a conflicting event")

        event_id = f"evt-{next(self._ids)}"
        self.events[event_id] = CalendarEvent(
            id=event_id, summary=payload.summary, start=start, end=end
        )
        self.payloads[event_id] = payload
        return event_id

    async def update_event(self, calendar_id, event_id, payload) -> None:
        self._check("update_event")
        event = self.events[event_id]
        self.events[event_id] = event.model_copy(update={"summary": payload.summary})
        self.payloads[event_id] = payload

    async def delete_event(self, calendar_id, event_id) -> bool:
        self._check("delete_event")
        return self.events.pop(event_id, None) is not None


class FakePolicyRepository:
    def __init__(self):
        self.policies: Dict[str, TenantPolicy] = {}

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        return self.policies.get(tenant_id)

    async def save_policy(self, policy: TenantPolicy) -> TenantPolicy:
        self.policies[policy.tenant_id] = policy
        return policy


class FakeAppointmentRepository:
    """Set `fail_writes` to a DatabaseError instance to make the next writes fail."""

    def __init__(self):
        self.records: Dict[str, AppointmentRecord] = {}
        self.fail_writes: Optional[DatabaseError] = None

    def _check_unique(self, record: AppointmentRecord) -> None:
        if record.status != AppointmentStatus.CONFIRMED:
            return
        for other in self.records.values():
            if (
                other.id != record.id
                and other.tenant_id == record.tenant_id
                and other.status == AppointmentStatus.CONFIRMED
                and other.start == record.start
                and other.end == record.end
            ):
                raise DuplicateRecordError("ux_appointments_confirmed_interval")

    async def create_appointment(self, record: AppointmentRecord) -> AppointmentRecord:
        if self.fail_writes:
            raise self.fail_writes
        self._check_unique(record)
        self.records[record.id] = record.model_copy()
        return record.model_copy()

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentRecord]:
        record = self.records.get(appointment_id)
        return record.model_copy() if record else None

    async def list_appointments(self, tenant_id, statuses=None, start=None, end=None):
        found = [
            record.model_copy() for record in self.records.values()
            if record.tenant_id == tenant_id
            and (not statuses or record.status in statuses)
            and (start is None or record.end > start)
            and (end is None or record.start < end)
        ]
        return sorted(found, key=lambda r: r.start)

    async def update_appointment(self, record: AppointmentRecord) -> AppointmentRecord:
        if self.fail_writes:
            raise self.fail_writes
        if record.id not in self.records:
            raise DatabaseError(f"Appointment {record.id} no longer exists")
        self._check_unique(record)
        self.records[record.id] = record.model_copy()
        return record.model_copy()


class FakeBlockRepository:
    def __init__(self):
        self.blocks: Dict[str, CalendarBlock] = {}
        self.fail_writes: Optional[DatabaseError] = None

    async def create_block(self, block: CalendarBlock) -> CalendarBlock:
        if self.fail_writes:
            raise self.fail_writes
        self.blocks[block.id] = block.model_copy()
        return block.model_copy()

    async def get_block(self, block_id: str) -> Optional[CalendarBlock]:
        block = self.blocks.get(block_id)
        return block.model_copy() if block else None

    async def list_blocks(self, tenant_id, include_deleted=False, start=None, end=None):
        found = [
            block.model_copy() for block in self.blocks.values()
            if block.tenant_id == tenant_id
            and (include_deleted or block.status == BlockStatus.ACTIVE)
            and (start is None or block.end > start)
            and (end is None or block.start < end)
        ]
        return sorted(found, key=lambda b: b.start)

    async def update_block_status(self, block_id, status, updated_at) -> CalendarBlock:
        if self.fail_writes:
            raise self.fail_writes
        if block_id not in self.blocks:
            raise DatabaseError(f"Calendar block {block_id} no longer exists")
        block = self.blocks[block_id].model_copy(update={"status": status, "updated_at": updated_at})
        self.blocks[block_id] = block
        return block.model_copy()


@pytest.fixture
def converter() -> TimeZoneConverter:
    return TimeZoneConverter()


@pytest.fixture
def chicago_policy() -> TenantPolicy:
    """Mon-Fri, 09:00-18:00 in America/Chicago, 30 minute granularity."""
    return TenantPolicy(
        tenant_id="acme",
        timezone="America/Chicago",
        work_days=frozenset({0, 1, 2, 3, 4}),
        work_start=time(9, 0),
        work_end=time(18, 0),
        slot_granularity_minutes=30,
    )


@pytest.fixture
def calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def policy_repo(chicago_policy) -> FakePolicyRepository:
    repo = FakePolicyRepository()
    repo.policies[chicago_policy.tenant_id] = chicago_policy
    return repo


@pytest.fixture
def appointment_repo() -> FakeAppointmentRepository:
    return FakeAppointmentRepository()


@pytest.fixture
def block_repo() -> FakeBlockRepository:
    return FakeBlockRepository()


@pytest.fixture
def engine(policy_repo, appointment_repo, block_repo, calendar) -> SchedulingEngine:
    return SchedulingEngine(policy_repo, appointment_repo, block_repo, calendar)


def local(value: str) -> datetime:
    """Shorthand for a naive wall-clock datetime."""
    return datetime.fromisoformat(value)
