"""Normalized, paged listing of remote items for a connection."""

import logging
from datetime import datetime
from typing import Dict, Optional

import httpx

from shared.db_models import Connection
from shared.errors import RemoteListingFailed
from shared.models import ListingPage, RemoteItem
from shared.retry import retry_with_exponential_backoff
from services.sync_service.calendar_client import CalendarClient
from services.sync_service.drive_client import DriveClient
from services.sync_service.google_api import GoogleAPIError, parse_google_datetime

logger = logging.getLogger(__name__)

CALENDAR_EVENT_CONTENT_TYPE = "application/vnd.google-apps.event"


def drive_file_to_item(resource: Dict) -> RemoteItem:
    size = resource.get("size")
    return RemoteItem(
        remote_id=resource["id"],
        name=resource.get("name", ""),
        content_type=resource.get("mimeType", ""),
        size=int(size) if size is not None else None,
        created_at=parse_google_datetime(resource.get("createdTime")),
        modified_at=parse_google_datetime(resource.get("modifiedTime")),
        raw=resource,
    )


def calendar_event_to_item(resource: Dict) -> RemoteItem:
    return RemoteItem(
        remote_id=resource["id"],
        name=resource.get("summary", ""),
        content_type=CALENDAR_EVENT_CONTENT_TYPE,
        size=None,
        created_at=parse_google_datetime(resource.get("created")),
        modified_at=parse_google_datetime(resource.get("updated")),
        raw=resource,
    )


class RemoteListingClient:
    """Lists one page of a connection's scope, whichever provider it points at."""

    def __init__(
        self,
        drive_client: DriveClient,
        calendar_client: CalendarClient,
        max_retries: int = 3,
        initial_delay: float = 1.0
    ):
        """
        Args:
            drive_client: Drive API client
            calendar_client: Calendar API client
            max_retries: Retries for transport errors (timeouts, resets)
            initial_delay: First backoff delay in seconds
        """
        self.drive_client = drive_client
        self.calendar_client = calendar_client
        self._fetch_page = retry_with_exponential_backoff(
            max_retries=max_retries,
            initial_delay=initial_delay,
            exceptions=(httpx.TransportError,)
        )(self._fetch_page_once)

    async def list_remote_items(
        self,
        connection: Connection,
        access_token: str,
        cursor: Optional[str] = None,
        page_size: int = 100,
        now: Optional[datetime] = None
    ) -> ListingPage:
        """
        List one page of remote items in the connection's scope.

        Items are returned in provider order. Calendar scopes only include
        events that have not ended yet.

        Raises:
            RemoteListingFailed: On any non-2xx response, or once transport
                errors have exhausted their retries
        """
        try:
            return await self._fetch_page(connection, access_token, cursor, page_size, now)
        except GoogleAPIError as e:
            raise RemoteListingFailed(
                f"Failed to list remote items for connection {connection.id}: {e}",
                status_code=e.status_code,
                body=e.body
            ) from e
        except httpx.TransportError as e:
            raise RemoteListingFailed(
                f"Failed to reach provider for connection {connection.id}: {e}"
            ) from e

    async def _fetch_page_once(
        self,
        connection: Connection,
        access_token: str,
        cursor: Optional[str],
        page_size: int,
        now: Optional[datetime]
    ) -> ListingPage:
        if connection.kind == "drive":
            files, next_cursor = await self.drive_client.list_files(
                access_token,
                folder_id=connection.folder_id or "root",
                page_size=page_size,
                page_token=cursor
            )
            items = [drive_file_to_item(f) for f in files]

        elif connection.kind == "calendar":
            events, next_cursor = await self.calendar_client.list_events(
                access_token,
                connection.calendar_id or "primary",
                time_min=now or datetime.utcnow(),
                max_results=page_size,
                page_token=cursor,
                single_events=True
            )
            items = [calendar_event_to_item(e) for e in events]

        else:
            raise ValueError(f"Unsupported connection kind: {connection.kind}")

        logger.info(f"Listed {len(items)} remote items for connection {connection.id}")
        return ListingPage(items=items, next_cursor=next_cursor)
