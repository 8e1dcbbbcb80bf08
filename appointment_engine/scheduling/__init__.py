"""
Scheduling Module

Pure scheduling logic, free of I/O:
- Time zone conversion (timezone.py)
- Availability calculation (availability.py)
- Conflict detection (conflicts.py)
"""

from appointment_engine.scheduling.availability import AvailabilityCalculator
from appointment_engine.scheduling.conflicts import ConflictDetector, overlaps
from appointment_engine.scheduling.timezone import TimeZoneConverter

__all__ = [
    "AvailabilityCalculator",
    "ConflictDetector",
    "TimeZoneConverter",
    "overlaps",
]
