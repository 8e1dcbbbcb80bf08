"""
Availability Calculation

Enumerates free candidate slots for a tenant, considering:
- Work days and the daily work-hour window
- Slot granularity
- Busy intervals (appointments, pending holds and calendar blocks)

All arithmetic is done on tenant-local wall-clock time.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from appointment_engine.models.schemas import BusyInterval, Slot, TenantPolicy
from appointment_engine.scheduling.timezone import TimeZoneConverter

logger = logging.getLogger(__name__)


def align_up(value: datetime, anchor: datetime, step: timedelta) -> datetime:
    """Round value up to the next boundary of anchor + k * step."""
    if value <= anchor:
        return anchor
    remainder = (value - anchor) % step
    if not remainder:
        return value
    return value + (step - remainder)


class AvailabilityCalculator:
    """Computes bookable slots from a tenant policy and busy intervals."""

    def __init__(self, converter: Optional[TimeZoneConverter] = None):
        self.converter = converter or TimeZoneConverter()

    def work_window(self, policy: TenantPolicy, day: date) -> Tuple[datetime, datetime]:
        """Return the [work_start, work_end) window for a day."""
        return (
            datetime.combine(day, policy.work_start),
            datetime.combine(day, policy.work_end),
        )

    def fits_working_hours(
        self,
        policy: TenantPolicy,
        start: datetime,
        end: datetime,
    ) -> bool:
        """True when [start, end) lies fully inside one work-hour window on a work day."""
        if end <= start or start.weekday() not in policy.work_days:
            return False
        day_start, day_end = self.work_window(policy, start.date())
        return day_start <= start and end <= day_end

    def next_work_day_start(self, policy: TenantPolicy, day: date) -> datetime:
        """Start of the work-hour window on the first work day after `day`."""
        for offset in range(1, 8):
            candidate = day + timedelta(days=offset)
            if candidate.weekday() in policy.work_days:
                return datetime.combine(candidate, policy.work_start)
        raise ValueError(f"Tenant {policy.tenant_id} has no work days")

    def find_slots(
        self,
        policy: TenantPolicy,
        busy_intervals: Iterable[BusyInterval],
        window_start: datetime,
        window_end: datetime,
        duration_minutes: int,
        limit: int,
    ) -> List[Slot]:
        """
        Find up to `limit` free slots inside [window_start, window_end).

        Args:
            policy: Tenant scheduling policy
            busy_intervals: Intervals consuming availability, local wall clock
            window_start: Search start, local wall clock
            window_end: Search end (exclusive), local wall clock
            duration_minutes: Length of each slot
            limit: Maximum number of slots to return

        Returns:
            Ascending, mutually disjoint slots. Running out of window is not
            an error, so the list may be empty.

        Algorithm:
            1. Clip the cursor to the current day's work window
            2. If the candidate would cross work_end, jump to the next work day
            3. On conflict, advance to max(cursor + step, conflict end),
               rounded up to the next granularity boundary
            4. On success, record the slot and continue from its end
        """
        if duration_minutes <= 0 or limit <= 0 or not policy.work_days:
            return []

        duration = timedelta(minutes=duration_minutes)
        if duration > policy.work_day_length:
            logger.debug(
                f"Duration {duration_minutes}m exceeds the work day of tenant {policy.tenant_id}"
            )
            return []

        step = policy.slot_step
        zone = policy.zone
        busy = sorted(busy_intervals, key=lambda b: (b.start, b.end))
        slots: List[Slot] = []
        cursor = window_start

        while len(slots) < limit and cursor < window_end:
            day = cursor.date()
            day_start, day_end = self.work_window(policy, day)

            if day.weekday() not in policy.work_days or cursor >= day_end:
                cursor = self.next_work_day_start(policy, day)
                continue

            cursor = align_up(cursor, day_start, step)
            candidate_end = cursor + duration

            if candidate_end > day_end:
                cursor = self.next_work_day_start(policy, day)
                continue
            if candidate_end > window_end:
                break

            if not (
                self.converter.exists(cursor, zone)
                and self.converter.exists(candidate_end, zone)
            ):
                cursor += step
                continue

            conflict_end = self._latest_conflict_end(cursor, candidate_end, busy)
            if conflict_end is not None:
                cursor = align_up(max(cursor + step, conflict_end), day_start, step)
                continue

            slots.append(
                Slot(start=cursor, end=candidate_end, duration_minutes=duration_minutes)
            )
            cursor = candidate_end

        logger.debug(
            f"Found {len(slots)} slot(s) for tenant {policy.tenant_id} "
            f"between {window_start} and {window_end}"
        )
        return slots

    @staticmethod
    def _latest_conflict_end(
        start: datetime,
        end: datetime,
        busy: Sequence[BusyInterval],
    ) -> Optional[datetime]:
        """End of the latest-ending busy interval overlapping [start, end)."""
        latest: Optional[datetime] = None
        for interval in busy:
            if interval.start >= end:
                break
            if start < interval.end and interval.start < end:
                if latest is None or interval.end > latest:
                    latest = interval.end
        return latest
