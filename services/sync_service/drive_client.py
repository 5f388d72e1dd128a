"""Google Drive v3 client."""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from services.sync_service.google_api import GoogleAPIClient

logger = logging.getLogger(__name__)

DRIVE_API_BASE_URL = "https://www.googleapis.com/drive/v3"

GOOGLE_FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
GOOGLE_DOCUMENT_MIME_TYPE = "application/vnd.google-apps.document"
GOOGLE_WORKSPACE_PREFIX = "application/vnd.google-apps."

# Legal document formats listed from Drive
SUPPORTED_MIME_TYPES = [
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
    "image/tiff",
    "text/plain",
    "application/rtf",
    GOOGLE_DOCUMENT_MIME_TYPE,
]

FILE_FIELDS = "id, name, mimeType, size, createdTime, modifiedTime, parents, webViewLink"


def is_google_workspace_file(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.startswith(GOOGLE_WORKSPACE_PREFIX)


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient(GoogleAPIClient):
    """Lists, fetches and downloads Drive files on behalf of one access token per call."""

    async def list_files(
        self,
        access_token: str,
        folder_id: str = "root",
        page_size: int = 100,
        page_token: Optional[str] = None,
        mime_types: Optional[Sequence[str]] = None
    ) -> Tuple[List[Dict], Optional[str]]:
        """
        List supported files directly inside a folder, most recently modified first.

        Args:
            access_token: OAuth access token
            folder_id: Drive folder to list ("root" for My Drive)
            page_size: Maximum files per page
            page_token: Continuation token from a previous call
            mime_types: MIME types to include (defaults to SUPPORTED_MIME_TYPES)

        Returns:
            Tuple of (file resources, next page token or None)
        """
        mime_types = SUPPORTED_MIME_TYPES if mime_types is None else mime_types

        query_parts = [f"'{_quote(folder_id)}' in parents"]
        if mime_types:
            query_parts.append("(" + " or ".join(f"mimeType='{t}'" for t in mime_types) + ")")
        query_parts.append("trashed=false")

        params = {
            "q": " and ".join(query_parts),
            "pageSize": str(page_size),
            "fields": f"nextPageToken, files({FILE_FIELDS})",
            "orderBy": "modifiedTime desc",
        }
        if page_token:
            params["pageToken"] = page_token

        response = await self._request(
            "GET", f"{DRIVE_API_BASE_URL}/files", access_token, "list files", params=params
        )
        data = response.json()
        return data.get("files", []), data.get("nextPageToken")

    async def get_file(self, access_token: str, file_id: str) -> Dict:
        """Get file metadata."""
        response = await self._request(
            "GET",
            f"{DRIVE_API_BASE_URL}/files/{file_id}",
            access_token,
            "get file",
            params={"fields": FILE_FIELDS}
        )
        return response.json()

    async def download_file(self, access_token: str, file_id: str, mime_type: Optional[str] = None) -> bytes:
        """
        Download file contents.

        Google Workspace documents have no binary content and are exported as PDF.
        """
        if is_google_workspace_file(mime_type):
            response = await self._request(
                "GET",
                f"{DRIVE_API_BASE_URL}/files/{file_id}/export",
                access_token,
                "export file",
                params={"mimeType": "application/pdf"}
            )
        else:
            response = await self._request(
                "GET",
                f"{DRIVE_API_BASE_URL}/files/{file_id}",
                access_token,
                "download file",
                params={"alt": "media"}
            )
        return response.content

    async def list_folders(self, access_token: str, parent_folder_id: Optional[str] = None) -> List[Dict]:
        """List folders, optionally restricted to one parent."""
        query = f"mimeType='{GOOGLE_FOLDER_MIME_TYPE}' and trashed=false"
        if parent_folder_id:
            query = f"'{_quote(parent_folder_id)}' in parents and {query}"

        response = await self._request(
            "GET",
            f"{DRIVE_API_BASE_URL}/files",
            access_token,
            "list folders",
            params={"q": query, "fields": "files(id, name, parents)", "orderBy": "name", "pageSize": "100"}
        )
        return response.json().get("files", [])
