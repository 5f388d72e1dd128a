"""Common plumbing for Google REST API clients."""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class GoogleAPIError(Exception):
    """A Google API call returned a non-2xx response."""

    def __init__(self, message: str, status_code: int, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def parse_google_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp or an all-day date into a naive UTC datetime.

    Args:
        value: e.g. "2024-03-01T10:15:00.000Z", "2024-03-01T10:15:00+02:00" or "2024-03-01"

    Returns:
        Naive UTC datetime, or None for empty input
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_google_datetime(value: datetime) -> str:
    """Format a naive-UTC (or aware) datetime as RFC 3339 with a Z suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class GoogleAPIClient:
    """Base class holding the shared HTTP client and bearer-authenticated requests."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        """
        Args:
            http_client: Shared HTTP client; one is created if not provided
            timeout: Per-request timeout in seconds
        """
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        action: str,
        **kwargs
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"

        response = await self.http_client.request(
            method, url, headers=headers, timeout=self.timeout, **kwargs
        )

        if response.status_code >= 400:
            logger.error(f"Google API {action} failed ({response.status_code}): {response.text}")
            raise GoogleAPIError(
                f"Failed to {action}: {response.status_code}",
                status_code=response.status_code,
                body=response.text
            )

        return response
