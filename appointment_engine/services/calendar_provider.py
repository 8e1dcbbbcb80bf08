"""
Calendar Provider Integration

Interface to the external calendar that backs confirmed appointments and
blocks, plus a Google Calendar v3 implementation. Times are exchanged as
tenant-local wall-clock values paired with an IANA zone name.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

import requests

from appointment_engine.config import settings
from appointment_engine.errors import ExternalProviderUnavailable, SlotNoLongerAvailable
from appointment_engine.models.schemas import CalendarEvent, EventPayload
from appointment_engine.scheduling.conflicts import overlaps
from appointment_engine.scheduling.timezone import TimeZoneConverter

logger = logging.getLogger(__name__)


class CalendarProvider(ABC):
    """External calendar consumed by the scheduling engine."""

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> List[CalendarEvent]:
        """Return busy events between two UTC instants, in local wall-clock time."""

    @abstractmethod
    async def insert_event(
        self,
        calendar_id: str,
        payload: EventPayload,
        reject_overlaps: bool = True,
    ) -> str:
        """
        Create an event and return its id.

        Raises:
            SlotNoLongerAvailable: If reject_overlaps is set and the interval is taken
            ExternalProviderUnavailable: If the provider fails
        """

    @abstractmethod
    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        payload: EventPayload,
    ) -> None:
        """Replace an event's summary, description and times."""

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """
        Delete an event.

        Returns:
            True if deleted, False if the event was already gone
        """


class GoogleCalendarProvider(CalendarProvider):
    """
    Google Calendar REST client.

    Uses a static bearer token; obtaining and refreshing it is handled
    outside this service. Blocking HTTP calls run in a worker thread.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        send_updates: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ):
        self.access_token = access_token or settings.google_access_token
        self.base_url = (base_url or settings.google_calendar_api_url).rstrip("/")
        self.timeout = timeout or settings.calendar_request_timeout
        self.send_updates = send_updates or settings.calendar_send_updates
        self.http = http or requests.Session()
        self.converter = TimeZoneConverter()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        try:
            response = self.http.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Calendar request {method} {path} failed: {e}")
            raise ExternalProviderUnavailable(f"Calendar provider unreachable: {e}") from e

        if response.status_code == 409:
            raise SlotNoLongerAvailable("Calendar provider reported a conflicting event")
        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"Calendar provider error {response.status_code} on {method} {path}")
            raise ExternalProviderUnavailable(
                f"Calendar provider returned {response.status_code}",
                provider_status=response.status_code,
            )
        return response

    async def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    @staticmethod
    def _raise_for_status(response: requests.Response, action: str) -> None:
        if response.status_code >= 400:
            logger.error(f"Calendar provider rejected {action}: {response.status_code} {response.text}")
            raise ExternalProviderUnavailable(
                f"Calendar provider rejected {action}",
                provider_status=response.status_code,
            )

    def _to_local(self, value: Dict[str, Any], time_zone: str) -> datetime:
        if value.get("dateTime"):
            return self.converter.parse_wall_clock(value["dateTime"], time_zone)
        # All-day events start and end at local midnight
        return datetime.combine(date.fromisoformat(value["date"]), time.min)

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> List[CalendarEvent]:
        params: Dict[str, Any] = {
            "timeMin": time_min.astimezone(timezone.utc).isoformat(),
            "timeMax": time_max.astimezone(timezone.utc).isoformat(),
            "timeZone": time_zone,
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 250,
        }
        events: List[CalendarEvent] = []

        while True:
            response = await self._call(
                "GET", f"/calendars/{calendar_id}/events", params=dict(params)
            )
            self._raise_for_status(response, "event listing")
            data = response.json()

            for item in data.get("items", []):
                if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                    continue
                events.append(
                    CalendarEvent(
                        id=item["id"],
                        summary=item.get("summary"),
                        start=self._to_local(item["start"], time_zone),
                        end=self._to_local(item["end"], time_zone),
                    )
                )

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"Fetched {len(events)} event(s) from calendar {calendar_id}")
        return events

    async def insert_event(
        self,
        calendar_id: str,
        payload: EventPayload,
        reject_overlaps: bool = True,
    ) -> str:
        if reject_overlaps:
            start = self.converter.parse_wall_clock(payload.start, payload.time_zone)
            end = self.converter.parse_wall_clock(payload.end, payload.time_zone)
            existing = await self.list_events(
                calendar_id,
                self.converter.convert(start, payload.time_zone),
                self.converter.convert(end, payload.time_zone),
                payload.time_zone,
            )
            if any(overlaps(start, end, event.start, event.end) for event in existing):
                raise SlotNoLongerAvailable(
                    f"{payload.start} - {payload.end} is already taken on the calendar"
                )

        response = await self._call(
            "POST",
            f"/calendars/{calendar_id}/events",
            params={"sendUpdates": self.send_updates},
            json=payload.to_google_body(),
        )
        self._raise_for_status(response, "event creation")
        event_id = response.json()["id"]

        logger.info(f"Created calendar event {event_id} on {calendar_id}")
        return event_id

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        payload: EventPayload,
    ) -> None:
        response = await self._call(
            "PATCH",
            f"/calendars/{calendar_id}/events/{event_id}",
            params={"sendUpdates": self.send_updates},
            json=payload.to_google_body(),
        )
        self._raise_for_status(response, "event update")
        logger.info(f"Updated calendar event {event_id} on {calendar_id}")

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        response = await self._call(
            "DELETE",
            f"/calendars/{calendar_id}/events/{event_id}",
            params={"sendUpdates": self.send_updates},
        )
        if response.status_code in (404, 410):
            logger.info(f"Calendar event {event_id} was already deleted")
            return False
        self._raise_for_status(response, "event deletion")

        logger.info(f"Deleted calendar event {event_id} from {calendar_id}")
        return True
