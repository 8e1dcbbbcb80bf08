"""
Conflict Detection

Tests candidate intervals against a set of busy intervals using the
half-open rule: [a, b) and [c, d) overlap iff a < d and c < b. Touching
intervals do not conflict, so back-to-back bookings are allowed.
"""

from datetime import datetime
from typing import Collection, Iterable, List, Optional, Union

from appointment_engine.models.schemas import AvailabilityResult, BusyInterval, Slot


def overlaps(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Half-open overlap test."""
    return start_a < end_b and start_b < end_a


def find_conflicts(
    start: datetime,
    end: datetime,
    busy_intervals: Iterable[BusyInterval],
    exclude: Collection[str] = (),
) -> List[BusyInterval]:
    """Return every busy interval overlapping [start, end), in input order."""
    return [
        busy
        for busy in busy_intervals
        if not (busy.source_id is not None and busy.source_id in exclude)
        and overlaps(start, end, busy.start, busy.end)
    ]


class ConflictDetector:
    """
    Validates one candidate interval against busy intervals.

    The result is advisory: busy intervals are a point-in-time snapshot, so
    the calendar provider's insert remains the authoritative check.
    """

    def is_available(
        self,
        candidate: Union[Slot, BusyInterval],
        busy_intervals: Iterable[BusyInterval],
        exclude: Optional[Collection[str]] = None,
    ) -> AvailabilityResult:
        """
        Check a candidate against busy intervals.

        Args:
            candidate: Interval to test
            busy_intervals: Intervals consuming availability
            exclude: Source ids to ignore, e.g. the record being rescheduled

        Returns:
            AvailabilityResult with the conflicting intervals, if any
        """
        conflicts = find_conflicts(
            candidate.start,
            candidate.end,
            busy_intervals,
            exclude or (),
        )
        return AvailabilityResult(
            available=not conflicts,
            conflicts=conflicts,
            reason="conflict" if conflicts else None,
        )
