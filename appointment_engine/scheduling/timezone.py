"""
Time Zone Conversion

Converts between a tenant's local wall-clock time and the UTC instants
that are persisted. DST is resolved with the IANA database through
zoneinfo; no offsets are computed by hand.
"""

import logging
from datetime import datetime, timezone
from typing import Union
from zoneinfo import ZoneInfo

from appointment_engine.errors import AmbiguousOrInvalidLocalTime, InvalidTimeFormat

logger = logging.getLogger(__name__)

WALL_CLOCK_FORMAT = "%Y-%m-%dT%H:%M:%S"

ZoneLike = Union[str, ZoneInfo]


def _zone(tenant_zone: ZoneLike) -> ZoneInfo:
    if isinstance(tenant_zone, ZoneInfo):
        return tenant_zone
    return ZoneInfo(tenant_zone)


class TimeZoneConverter:
    """Boundary conversions between tenant wall-clock time and UTC instants."""

    def parse_wall_clock(
        self,
        value: Union[str, datetime],
        tenant_zone: ZoneLike,
    ) -> datetime:
        """
        Parse a wall-clock value into a naive datetime in the tenant zone.

        Accepts ``YYYY-MM-DDTHH:MM[:SS[.ffffff]]`` (a space separator works
        too). A value carrying an offset or ``Z`` is shifted into the tenant
        zone first, so it names the same instant.

        Raises:
            InvalidTimeFormat: If the value cannot be parsed
        """
        if isinstance(value, datetime):
            parsed = value
        else:
            if not isinstance(value, str) or not value.strip():
                raise InvalidTimeFormat(f"Invalid date-time: {value!r}")
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as e:
                raise InvalidTimeFormat(f"Invalid date-time format: {value!r}") from e
            if "T" not in text and " " not in text:
                # A bare date is not a wall-clock time
                raise InvalidTimeFormat(f"Missing time component: {value!r}")

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(_zone(tenant_zone)).replace(tzinfo=None)

        return parsed.replace(microsecond=0)

    def exists(self, wall_clock: datetime, tenant_zone: ZoneLike) -> bool:
        """Return False when the wall-clock time falls in a DST gap."""
        zone = _zone(tenant_zone)
        local = wall_clock.replace(tzinfo=zone, fold=0)
        round_trip = local.astimezone(timezone.utc).astimezone(zone)
        return round_trip.replace(tzinfo=None) == wall_clock.replace(fold=0)

    def convert(
        self,
        wall_clock: Union[str, datetime],
        tenant_zone: ZoneLike,
    ) -> datetime:
        """
        Convert tenant wall-clock time into a UTC instant.

        Repeated wall-clock times during a fall-back transition resolve to
        their first occurrence, unless the value carried an offset naming
        the second one (or is a datetime with ``fold=1``).

        Returns:
            Timezone-aware datetime in UTC

        Raises:
            InvalidTimeFormat: If the value cannot be parsed
            AmbiguousOrInvalidLocalTime: If the time falls in a DST gap
        """
        zone = _zone(tenant_zone)
        local = self.parse_wall_clock(wall_clock, zone)

        if not self.exists(local, zone):
            raise AmbiguousOrInvalidLocalTime(
                f"{local.strftime(WALL_CLOCK_FORMAT)} does not exist in {zone.key}",
                wall_clock=local.strftime(WALL_CLOCK_FORMAT),
                timezone=zone.key,
            )

        # parse_wall_clock keeps the fold of an offset-bearing value
        return local.replace(tzinfo=zone).astimezone(timezone.utc)

    def to_local(self, instant: datetime, tenant_zone: ZoneLike) -> datetime:
        """Convert a UTC instant into a naive wall-clock datetime in the tenant zone."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(_zone(tenant_zone)).replace(tzinfo=None)

    def convert_back(self, instant: datetime, tenant_zone: ZoneLike) -> str:
        """Format a UTC instant as tenant wall-clock time, without an offset suffix."""
        return self.to_local(instant, tenant_zone).strftime(WALL_CLOCK_FORMAT)

    @staticmethod
    def format_wall_clock(wall_clock: datetime) -> str:
        return wall_clock.strftime(WALL_CLOCK_FORMAT)
