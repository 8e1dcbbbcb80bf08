"""
Calendar Block Service

Manages tenant-declared unavailable periods. A block is not an
appointment, but it consumes availability like one. Blocks are soft
deleted so the audit trail survives.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from appointment_engine.db.repository import CalendarBlockRepository, DatabaseError
from appointment_engine.errors import InvalidTimeFormat, InvalidTransition, PersistenceConflict
from appointment_engine.models.schemas import BlockStatus, CalendarBlock, EventPayload, TenantPolicy
from appointment_engine.scheduling.timezone import TimeZoneConverter
from appointment_engine.services.appointment import utc_now
from appointment_engine.services.calendar_provider import CalendarProvider

logger = logging.getLogger(__name__)


class CalendarBlockManager:
    """Creates and removes calendar blocks, keeping calendar and store in step."""

    def __init__(
        self,
        block_repo: CalendarBlockRepository,
        calendar: CalendarProvider,
        converter: Optional[TimeZoneConverter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.block_repo = block_repo
        self.calendar = calendar
        self.converter = converter or TimeZoneConverter()
        self.clock = clock

    async def block(
        self,
        policy: TenantPolicy,
        start: datetime,
        end: datetime,
        block_type: str = "blocked",
        reason: Optional[str] = None,
    ) -> CalendarBlock:
        """
        Block out [start, end) in tenant-local wall-clock time.

        Overlapping existing events is allowed: a block may be declared over
        time that is already busy.

        Raises:
            InvalidTimeFormat: If the range is empty or reversed
            AmbiguousOrInvalidLocalTime: If either end falls in a DST gap
            PersistenceConflict: If the calendar event exists but saving failed
        """
        if end <= start:
            raise InvalidTimeFormat(
                "Block must end after it starts",
                start=self.converter.format_wall_clock(start),
                end=self.converter.format_wall_clock(end),
            )

        start_at = self.converter.convert(start, policy.zone)
        end_at = self.converter.convert(end, policy.zone)

        payload = EventPayload(
            summary=f"Unavailable: {reason or block_type}",
            description=f"Type: {block_type}" + (f"\nReason: {reason}" if reason else ""),
            start=self.converter.format_wall_clock(start),
            end=self.converter.format_wall_clock(end),
            time_zone=policy.timezone,
        )
        event_id = await self.calendar.insert_event(
            policy.calendar_id, payload, reject_overlaps=False
        )

        now = self.clock()
        block = CalendarBlock(
            id=str(uuid.uuid4()),
            tenant_id=policy.tenant_id,
            start=start_at,
            end=end_at,
            block_type=block_type,
            reason=reason,
            status=BlockStatus.ACTIVE,
            external_event_ref=event_id,
            created_at=now,
            updated_at=now,
        )

        try:
            saved = await self.block_repo.create_block(block)
        except DatabaseError as e:
            logger.error(f"Calendar event {event_id} created but saving block failed: {e}")
            raise PersistenceConflict(
                f"Calendar event {event_id} exists but the block was not saved",
                artifact_id=event_id,
                attempted_status=BlockStatus.ACTIVE.value,
                record_id=block.id,
            ) from e

        logger.info(f"Blocked {payload.start} - {payload.end} for tenant {policy.tenant_id}")
        return saved

    async def unblock(self, policy: TenantPolicy, block: CalendarBlock) -> CalendarBlock:
        """Delete the block's calendar event, then mark the record Deleted."""
        if block.status == BlockStatus.DELETED:
            raise InvalidTransition(
                f"Calendar block {block.id} is already deleted",
                block_id=block.id,
            )

        if block.external_event_ref:
            await self.calendar.delete_event(policy.calendar_id, block.external_event_ref)

        try:
            return await self.block_repo.update_block_status(
                block.id, BlockStatus.DELETED, self.clock()
            )
        except DatabaseError as e:
            if not block.external_event_ref:
                raise
            raise PersistenceConflict(
                f"Calendar event {block.external_event_ref} deleted but "
                f"block {block.id} was not marked deleted",
                artifact_id=block.external_event_ref,
                attempted_status=BlockStatus.DELETED.value,
                record_id=block.id,
            ) from e

    async def list_blocks(
        self,
        tenant_id: str,
        include_deleted: bool = False,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarBlock]:
        """List blocks; only Active ones unless include_deleted is set."""
        return await self.block_repo.list_blocks(
            tenant_id,
            include_deleted=include_deleted,
            start=start,
            end=end,
        )
