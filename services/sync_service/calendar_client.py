"""Google Calendar v3 client."""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

from services.sync_service.google_api import GoogleAPIClient, GoogleAPIError, format_google_datetime

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"


def _calendar_url(calendar_id: str) -> str:
    return f"{CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='')}"


class CalendarClient(GoogleAPIClient):
    """Reads and writes events on a user's Google calendars."""

    async def list_calendars(self, access_token: str) -> List[Dict]:
        response = await self._request(
            "GET", f"{CALENDAR_API_BASE}/users/me/calendarList", access_token, "list calendars"
        )
        return response.json().get("items", [])

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        max_results: Optional[int] = None,
        page_token: Optional[str] = None,
        single_events: bool = True
    ) -> Tuple[List[Dict], Optional[str]]:
        """
        List events of a calendar.

        Args:
            access_token: OAuth access token
            calendar_id: Calendar to read ("primary" for the main calendar)
            time_min: Lower bound on event end (naive UTC)
            time_max: Upper bound on event start (naive UTC)
            max_results: Maximum events per page
            page_token: Continuation token from a previous call
            single_events: Expand recurring events into instances

        Returns:
            Tuple of (event resources, next page token or None)
        """
        params = {"singleEvents": "true" if single_events else "false"}
        if single_events:
            params["orderBy"] = "startTime"
        if time_min:
            params["timeMin"] = format_google_datetime(time_min)
        if time_max:
            params["timeMax"] = format_google_datetime(time_max)
        if max_results:
            params["maxResults"] = str(max_results)
        if page_token:
            params["pageToken"] = page_token

        response = await self._request(
            "GET", f"{_calendar_url(calendar_id)}/events", access_token, "list events", params=params
        )
        data = response.json()
        return data.get("items", []), data.get("nextPageToken")

    async def get_event(self, access_token: str, calendar_id: str, event_id: str) -> Dict:
        response = await self._request(
            "GET",
            f"{_calendar_url(calendar_id)}/events/{quote(event_id, safe='')}",
            access_token,
            "get event"
        )
        return response.json()

    async def create_event(self, access_token: str, calendar_id: str, body: Dict) -> Dict:
        response = await self._request(
            "POST", f"{_calendar_url(calendar_id)}/events", access_token, "create event", json=body
        )
        return response.json()

    async def update_event(self, access_token: str, calendar_id: str, event_id: str, body: Dict) -> Dict:
        response = await self._request(
            "PUT",
            f"{_calendar_url(calendar_id)}/events/{quote(event_id, safe='')}",
            access_token,
            "update event",
            json=body
        )
        return response.json()

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> bool:
        """
        Delete an event.

        Returns:
            True if deleted, False if it was already gone (404/410)
        """
        try:
            await self._request(
                "DELETE",
                f"{_calendar_url(calendar_id)}/events/{quote(event_id, safe='')}",
                access_token,
                "delete event"
            )
        except GoogleAPIError as e:
            if e.status_code in (404, 410):
                logger.info(f"Calendar event {event_id} already deleted")
                return False
            raise
        return True
