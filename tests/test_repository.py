from datetime import datetime, time, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from appointment_engine.db.repository import (
    AppointmentRepository,
    CalendarBlockRepository,
    DatabaseError,
    DuplicateRecordError,
    TenantPolicyRepository,
)
from appointment_engine.errors import PersistenceConflict, SlotNoLongerAvailable
from appointment_engine.models.schemas import (
    AppointmentRecord,
    AppointmentStatus,
    BlockStatus,
    BookingDetails,
    Slot,
    TenantPolicy,
)
from appointment_engine.services.engine import SchedulingEngine
from tests.conftest import local

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class DriverError(Exception):
    """Stands in for the DB-API error SQLAlchemy wraps, carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


UNIQUE_ERROR = IntegrityError(
    "INSERT",
    {},
    DriverError(
        'duplicate key value violates unique constraint "ux_appointments_confirmed_interval"',
        "23505",
    ),
)

FOREIGN_KEY_ERROR = IntegrityError(
    "INSERT",
    {},
    DriverError(
        'insert or update on table "appointments" violates foreign key constraint '
        '"appointments_tenant_id_fkey"',
        "23503",
    ),
)


def make_session(row=None, rows=None, error=None) -> AsyncMock:
    session = AsyncMock()
    result = MagicMock()
    result.mappings.return_value.fetchone.return_value = row
    result.mappings.return_value.fetchall.return_value = rows or []
    if error is not None:
        session.execute.side_effect = error
    else:
        session.execute.return_value = result
    return session


def executed(session) -> tuple:
    """Return the SQL text and parameters of the last execute call."""
    statement, params = session.execute.call_args.args
    return str(statement), params


def appointment(**overrides) -> AppointmentRecord:
    start = datetime(2024, 6, 10, 15, 0, tzinfo=timezone.utc)
    values = dict(
        id="appt-1",
        tenant_id="acme",
        client_ref="client-1",
        service_descriptor="Consultation",
        start=start,
        end=start + timedelta(minutes=60),
        duration_minutes=60,
        status=AppointmentStatus.CONFIRMED,
        external_event_ref="evt-1",
        notes="",
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return AppointmentRecord(**values)


def appointment_row(record: AppointmentRecord) -> dict:
    return {
        "id": record.id,
        "tenant_id": record.tenant_id,
        "client_ref": record.client_ref,
        "service_descriptor": record.service_descriptor,
        "start_at": record.start,
        "end_at": record.end,
        "duration_minutes": record.duration_minutes,
        "status": record.status.value,
        "external_event_ref": record.external_event_ref,
        "notes": record.notes,
        "location": record.location,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


# Tenant policies

@pytest.mark.asyncio
async def test_get_policy_parses_row():
    session = make_session(row={
        "tenant_id": "acme",
        "timezone": "America/Chicago",
        "work_days": "0,1,2,3,4",
        "work_start": "09:00",
        "work_end": "18:00",
        "slot_granularity_minutes": 30,
        "calendar_id": "primary",
        "default_duration_minutes": 60,
    })

    policy = await TenantPolicyRepository(session).get_policy("acme")

    assert policy.work_days == frozenset({0, 1, 2, 3, 4})
    assert policy.work_start == time(9, 0)
    assert policy.work_end == time(18, 0)
    assert executed(session)[1] == {"tenant_id": "acme"}


@pytest.mark.asyncio
async def test_get_policy_unknown_tenant():
    assert await TenantPolicyRepository(make_session(row=None)).get_policy("nobody") is None


@pytest.mark.asyncio
async def test_save_policy_serializes_and_commits():
    session = make_session(row={"tenant_id": "acme"})
    policy = TenantPolicy(
        tenant_id="acme",
        timezone="Europe/Berlin",
        work_days=frozenset({4, 0, 2}),
        work_start=time(8, 30),
        work_end=time(16, 0),
    )

    await TenantPolicyRepository(session).save_policy(policy)

    sql, params = executed(session)
    assert "ON CONFLICT (tenant_id)" in sql
    assert params["work_days"] == "0,2,4"
    assert params["work_start"] == "08:30:00"
    assert params["work_end"] == "16:00:00"
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_policy_hours_keep_seconds():
    session = make_session(row={"tenant_id": "acme"})
    policy = TenantPolicy(
        tenant_id="acme",
        timezone="America/Chicago",
        work_start=time(8, 59, 30),
        work_end=time(17, 0, 15),
    )

    await TenantPolicyRepository(session).save_policy(policy)
    _, params = executed(session)

    loaded = TenantPolicyRepository._row_to_policy(params)
    assert params["work_start"] == "08:59:30"
    assert loaded.work_start == time(8, 59, 30)
    assert loaded.work_end == time(17, 0, 15)


# Appointments

@pytest.mark.asyncio
async def test_create_appointment_round_trips_row():
    record = appointment()
    session = make_session(row=appointment_row(record))

    saved = await AppointmentRepository(session).create_appointment(record)

    assert saved == record
    _, params = executed(session)
    assert params["status"] == "Confirmed"
    assert params["start_at"] == record.start
    session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_appointment_duplicate_interval():
    session = make_session(error=UNIQUE_ERROR)

    with pytest.raises(DuplicateRecordError):
        await AppointmentRepository(session).create_appointment(appointment())

    session.rollback.assert_awaited_once()
    session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_integrity_errors_are_not_duplicates():
    session = make_session(error=FOREIGN_KEY_ERROR)

    with pytest.raises(DatabaseError) as exc_info:
        await AppointmentRepository(session).create_appointment(appointment())

    assert not isinstance(exc_info.value, DuplicateRecordError)
    session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_foreign_key_failure_keeps_calendar_event(policy_repo, block_repo, calendar):
    empty = MagicMock()
    empty.mappings.return_value.fetchall.return_value = []

    async def execute(statement, params):
        if str(statement).lstrip().startswith("INSERT"):
            raise FOREIGN_KEY_ERROR
        return empty

    session = AsyncMock()
    session.execute.side_effect = execute
    engine = SchedulingEngine(policy_repo, AppointmentRepository(session), block_repo, calendar)

    with pytest.raises(PersistenceConflict) as exc_info:
        await engine.book_appointment(
            "acme",
            Slot.starting_at(local("2024-06-10T10:00:00"), 60),
            BookingDetails(client_ref="client-1", service_descriptor="Consultation"),
        )

    assert not isinstance(exc_info.value, SlotNoLongerAvailable)
    assert list(calendar.events) == [exc_info.value.artifact_id]
    assert exc_info.value.attempted_status == "Confirmed"


@pytest.mark.asyncio
async def test_database_failure_is_wrapped():
    session = make_session(error=OperationalError("SELECT", {}, Exception("connection refused")))

    with pytest.raises(DatabaseError) as exc_info:
        await AppointmentRepository(session).get_appointment("appt-1")

    assert not isinstance(exc_info.value, DuplicateRecordError)


@pytest.mark.asyncio
async def test_update_missing_appointment():
    session = make_session(row=None)

    with pytest.raises(DatabaseError):
        await AppointmentRepository(session).update_appointment(appointment())


@pytest.mark.asyncio
async def test_list_appointments_filters():
    record = appointment()
    session = make_session(rows=[appointment_row(record)])
    range_start = datetime(2024, 6, 10, 0, 0, tzinfo=timezone.utc)
    range_end = datetime(2024, 6, 11, 0, 0, tzinfo=timezone.utc)

    found = await AppointmentRepository(session).list_appointments(
        "acme",
        statuses=[AppointmentStatus.PENDING_CONFIRMATION, AppointmentStatus.CONFIRMED],
        start=range_start,
        end=range_end,
    )

    assert found == [record]
    sql, params = executed(session)
    assert "status IN (:status_0, :status_1)" in sql
    assert "end_at > :range_start" in sql
    assert "start_at < :range_end" in sql
    assert params["status_0"] == "PendingConfirmation"
    assert params["range_end"] == range_end


@pytest.mark.asyncio
async def test_naive_timestamps_are_read_as_utc():
    row = appointment_row(appointment())
    row["start_at"] = "2024-06-10 15:00:00"
    row["end_at"] = "2024-06-10 16:00:00"

    found = await AppointmentRepository(make_session(row=row)).get_appointment("appt-1")

    assert found.start == datetime(2024, 6, 10, 15, 0, tzinfo=timezone.utc)
    assert found.end.tzinfo is not None


# Calendar blocks

@pytest.mark.asyncio
async def test_update_block_status():
    row = {
        "id": "blk-1",
        "tenant_id": "acme",
        "start_at": datetime(2024, 6, 10, 14, 0, tzinfo=timezone.utc),
        "end_at": datetime(2024, 6, 10, 17, 0, tzinfo=timezone.utc),
        "block_type": "blocked",
        "reason": None,
        "status": "Deleted",
        "external_event_ref": "evt-9",
        "created_at": NOW,
        "updated_at": NOW,
    }
    session = make_session(row=row)

    block = await CalendarBlockRepository(session).update_block_status(
        "blk-1", BlockStatus.DELETED, NOW
    )

    assert block.status == BlockStatus.DELETED
    assert executed(session)[1]["status"] == "Deleted"


@pytest.mark.asyncio
async def test_list_blocks_active_only_by_default():
    session = make_session(rows=[])

    await CalendarBlockRepository(session).list_blocks("acme")
    sql, params = executed(session)
    assert "status = :status" in sql
    assert params["status"] == "Active"

    await CalendarBlockRepository(session).list_blocks("acme", include_deleted=True)
    sql, params = executed(session)
    assert "status" not in params
