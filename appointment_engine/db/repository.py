"""
Database Repository Layer

Implements repository pattern for the scheduling store.
Provides abstraction over SQLAlchemy for cleaner business logic.
"""

import logging
from datetime import datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import asyncpg
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_engine.models.schemas import (
    AppointmentRecord,
    AppointmentStatus,
    BlockStatus,
    CalendarBlock,
    TenantPolicy,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class DuplicateRecordError(DatabaseError):
    """Raised when a write violates a uniqueness constraint."""
    pass


def _as_utc(value: Any) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_unique_violation(error: IntegrityError) -> bool:
    """Foreign key, NOT NULL and CHECK failures are integrity errors too."""
    orig = error.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if isinstance(candidate, asyncpg.UniqueViolationError):
            return True
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == UNIQUE_VIOLATION


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


class BaseRepository:
    """Base repository with common database operations."""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: AsyncSession instance for database operations
        """
        self.session = session

    async def execute_query(
        self,
        query: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Execute a parametrized SQL query safely.

        Raises:
            DuplicateRecordError: If a uniqueness constraint is violated
            DatabaseError: If query execution fails
        """
        try:
            return await self.session.execute(text(query), params or {})
        except IntegrityError as e:
            if _is_unique_violation(e):
                logger.warning(f"Unique constraint violation: {e}")
                raise DuplicateRecordError(f"Duplicate record: {str(e)}") from e
            logger.error(f"Integrity violation: {e}")
            raise DatabaseError(f"Constraint violated: {str(e)}") from e
        except SQLAlchemyError as e:
            logger.error(f"Query execution failed: {e}")
            raise DatabaseError(f"Database operation failed: {str(e)}") from e

    async def execute_write(self, query: str, params: Dict[str, Any]) -> Optional[Mapping[str, Any]]:
        """Execute a write returning at most one row, committing on success."""
        try:
            result = await self.execute_query(query, params)
            row = result.mappings().fetchone()
            await self.session.commit()
            return row
        except DatabaseError:
            await self.session.rollback()
            raise


class TenantPolicyRepository(BaseRepository):
    """Repository for per-tenant scheduling policies."""

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        """
        Load a tenant's policy.

        Returns:
            TenantPolicy or None if the tenant is unknown
        """
        query = """
            SELECT
                tenant_id,
                timezone,
                work_days,
                work_start,
                work_end,
                slot_granularity_minutes,
                calendar_id,
                default_duration_minutes
            FROM tenant_policies
            WHERE tenant_id = :tenant_id;
        """

        result = await self.execute_query(query, {"tenant_id": tenant_id})
        row = result.mappings().fetchone()
        if not row:
            return None
        return self._row_to_policy(row)

    async def save_policy(self, policy: TenantPolicy) -> TenantPolicy:
        """Insert or replace a tenant's policy."""
        query = """
            INSERT INTO tenant_policies (
                tenant_id,
                timezone,
                work_days,
                work_start,
                work_end,
                slot_granularity_minutes,
                calendar_id,
                default_duration_minutes
            )
            VALUES (
                :tenant_id,
                :timezone,
                :work_days,
                :work_start,
                :work_end,
                :slot_granularity_minutes,
                :calendar_id,
                :default_duration_minutes
            )
            ON CONFLICT (tenant_id) DO UPDATE SET
                timezone = excluded.timezone,
                work_days = excluded.work_days,
                work_start = excluded.work_start,
                work_end = excluded.work_end,
                slot_granularity_minutes = excluded.slot_granularity_minutes,
                calendar_id = excluded.calendar_id,
                default_duration_minutes = excluded.default_duration_minutes
            RETURNING tenant_id;
        """

        await self.execute_write(
            query,
            {
                "tenant_id": policy.tenant_id,
                "timezone": policy.timezone,
                "work_days": ",".join(str(day) for day in sorted(policy.work_days)),
                "work_start": policy.work_start.isoformat(),
                "work_end": policy.work_end.isoformat(),
                "slot_granularity_minutes": policy.slot_granularity_minutes,
                "calendar_id": policy.calendar_id,
                "default_duration_minutes": policy.default_duration_minutes,
            },
        )
        logger.info(f"Saved scheduling policy for tenant {policy.tenant_id}")
        return policy

    @staticmethod
    def _row_to_policy(row: Mapping[str, Any]) -> TenantPolicy:
        work_days = [int(day) for day in str(row["work_days"]).split(",") if day.strip()]
        return TenantPolicy(
            tenant_id=row["tenant_id"],
            timezone=row["timezone"],
            work_days=frozenset(work_days),
            work_start=_parse_time(row["work_start"]),
            work_end=_parse_time(row["work_end"]),
            slot_granularity_minutes=row["slot_granularity_minutes"],
            calendar_id=row["calendar_id"],
            default_duration_minutes=row["default_duration_minutes"],
        )


APPOINTMENT_COLUMNS = """
    id,
    tenant_id,
    client_ref,
    service_descriptor,
    start_at,
    end_at,
    duration_minutes,
    status,
    external_event_ref,
    notes,
    location,
    created_at,
    updated_at
"""


class AppointmentRepository(BaseRepository):
    """Repository for appointment records."""

    async def create_appointment(self, record: AppointmentRecord) -> AppointmentRecord:
        """
        Insert a new appointment record.

        Raises:
            DuplicateRecordError: If a confirmed appointment already holds the interval
            DatabaseError: If the insert fails
        """
        query = f"""
            INSERT INTO appointments ({APPOINTMENT_COLUMNS})
            VALUES (
                :id,
                :tenant_id,
                :client_ref,
                :service_descriptor,
                :start_at,
                :end_at,
                :duration_minutes,
                :status,
                :external_event_ref,
                :notes,
                :location,
                :created_at,
                :updated_at
            )
            RETURNING {APPOINTMENT_COLUMNS};
        """

        row = await self.execute_write(query, self._record_params(record))
        if not row:
            raise DatabaseError("Failed to create appointment - no data returned")

        logger.info(
            f"Created appointment {record.id} for tenant {record.tenant_id} "
            f"({record.status.value})"
        )
        return self._row_to_record(row)

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentRecord]:
        """Get appointment by ID, or None if not found."""
        query = f"""
            SELECT {APPOINTMENT_COLUMNS}
            FROM appointments
            WHERE id = :appointment_id;
        """

        result = await self.execute_query(query, {"appointment_id": appointment_id})
        row = result.mappings().fetchone()
        return self._row_to_record(row) if row else None

    async def list_appointments(
        self,
        tenant_id: str,
        statuses: Optional[Sequence[AppointmentStatus]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AppointmentRecord]:
        """
        List a tenant's appointments.

        Args:
            tenant_id: Tenant identifier
            statuses: Optional status filter
            start: Only appointments ending after this instant
            end: Only appointments starting before this instant

        Returns:
            Appointments ordered by start time
        """
        query = f"""
            SELECT {APPOINTMENT_COLUMNS}
            FROM appointments
            WHERE tenant_id = :tenant_id
        """
        params: Dict[str, Any] = {"tenant_id": tenant_id}

        if statuses:
            names = []
            for index, status in enumerate(statuses):
                names.append(f":status_{index}")
                params[f"status_{index}"] = AppointmentStatus(status).value
            query += f" AND status IN ({', '.join(names)})"
        if start is not None:
            query += " AND end_at > :range_start"
            params["range_start"] = start
        if end is not None:
            query += " AND start_at < :range_end"
            params["range_end"] = end

        query += " ORDER BY start_at;"

        result = await self.execute_query(query, params)
        return [self._row_to_record(row) for row in result.mappings().fetchall()]

    async def update_appointment(self, record: AppointmentRecord) -> AppointmentRecord:
        """
        Persist the mutable fields of an existing appointment.

        Raises:
            DuplicateRecordError: If the new state collides with a confirmed appointment
            DatabaseError: If the record does not exist or the update fails
        """
        query = f"""
            UPDATE appointments
            SET
                service_descriptor = :service_descriptor,
                start_at = :start_at,
                end_at = :end_at,
                duration_minutes = :duration_minutes,
                status = :status,
                external_event_ref = :external_event_ref,
                notes = :notes,
                location = :location,
                updated_at = :updated_at
            WHERE id = :id
            RETURNING {APPOINTMENT_COLUMNS};
        """

        row = await self.execute_write(query, self._record_params(record))
        if not row:
            raise DatabaseError(f"Appointment {record.id} no longer exists")

        logger.info(f"Updated appointment {record.id} ({record.status.value})")
        return self._row_to_record(row)

    @staticmethod
    def _record_params(record: AppointmentRecord) -> Dict[str, Any]:
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

    @staticmethod
    def _row_to_record(row: Mapping[str, Any]) -> AppointmentRecord:
        return AppointmentRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            client_ref=row["client_ref"],
            service_descriptor=row["service_descriptor"],
            start=_as_utc(row["start_at"]),
            end=_as_utc(row["end_at"]),
            duration_minutes=row["duration_minutes"],
            status=AppointmentStatus(row["status"]),
            external_event_ref=row["external_event_ref"],
            notes=row["notes"] or "",
            location=row["location"],
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )


BLOCK_COLUMNS = """
    id,
    tenant_id,
    start_at,
    end_at,
    block_type,
    reason,
    status,
    external_event_ref,
    created_at,
    updated_at
"""


class CalendarBlockRepository(BaseRepository):
    """Repository for tenant-declared unavailable periods. Blocks are never purged."""

    async def create_block(self, block: CalendarBlock) -> CalendarBlock:
        """Insert a new calendar block."""
        query = f"""
            INSERT INTO calendar_blocks ({BLOCK_COLUMNS})
            VALUES (
                :id,
                :tenant_id,
                :start_at,
                :end_at,
                :block_type,
                :reason,
                :status,
                :external_event_ref,
                :created_at,
                :updated_at
            )
            RETURNING {BLOCK_COLUMNS};
        """

        row = await self.execute_write(
            query,
            {
                "id": block.id,
                "tenant_id": block.tenant_id,
                "start_at": block.start,
                "end_at": block.end,
                "block_type": block.block_type,
                "reason": block.reason,
                "status": block.status.value,
                "external_event_ref": block.external_event_ref,
                "created_at": block.created_at,
                "updated_at": block.updated_at,
            },
        )
        if not row:
            raise DatabaseError("Failed to create calendar block - no data returned")

        logger.info(f"Created calendar block {block.id} for tenant {block.tenant_id}")
        return self._row_to_block(row)

    async def get_block(self, block_id: str) -> Optional[CalendarBlock]:
        query = f"""
            SELECT {BLOCK_COLUMNS}
            FROM calendar_blocks
            WHERE id = :block_id;
        """

        result = await self.execute_query(query, {"block_id": block_id})
        row = result.mappings().fetchone()
        return self._row_to_block(row) if row else None

    async def list_blocks(
        self,
        tenant_id: str,
        include_deleted: bool = False,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarBlock]:
        """
        List a tenant's calendar blocks.

        Args:
            tenant_id: Tenant identifier
            include_deleted: Include soft-deleted blocks
            start: Only blocks ending after this instant
            end: Only blocks starting before this instant
        """
        query = f"""
            SELECT {BLOCK_COLUMNS}
            FROM calendar_blocks
            WHERE tenant_id = :tenant_id
        """
        params: Dict[str, Any] = {"tenant_id": tenant_id}

        if not include_deleted:
            query += " AND status = :status"
            params["status"] = BlockStatus.ACTIVE.value
        if start is not None:
            query += " AND end_at > :range_start"
            params["range_start"] = start
        if end is not None:
            query += " AND start_at < :range_end"
            params["range_end"] = end

        query += " ORDER BY start_at;"

        result = await self.execute_query(query, params)
        return [self._row_to_block(row) for row in result.mappings().fetchall()]

    async def update_block_status(
        self,
        block_id: str,
        status: BlockStatus,
        updated_at: datetime,
    ) -> CalendarBlock:
        """Change a block's status (soft delete)."""
        query = f"""
            UPDATE calendar_blocks
            SET
                status = :status,
                updated_at = :updated_at
            WHERE id = :block_id
            RETURNING {BLOCK_COLUMNS};
        """

        row = await self.execute_write(
            query,
            {"block_id": block_id, "status": status.value, "updated_at": updated_at},
        )
        if not row:
            raise DatabaseError(f"Calendar block {block_id} no longer exists")

        logger.info(f"Calendar block {block_id} marked {status.value}")
        return self._row_to_block(row)

    @staticmethod
    def _row_to_block(row: Mapping[str, Any]) -> CalendarBlock:
        return CalendarBlock(
            id=row["id"],
            tenant_id=row["tenant_id"],
            start=_as_utc(row["start_at"]),
            end=_as_utc(row["end_at"]),
            block_type=row["block_type"],
            reason=row["reason"],
            status=BlockStatus(row["status"]),
            external_event_ref=row["external_event_ref"],
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )
