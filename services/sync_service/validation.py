"""Domain validation for items pulled from remote providers."""

import os
from typing import Dict, Optional

from shared.errors import ItemValidationFailed

MAX_FILE_SIZE = 10 * 1024 * 1024

SUPPORTED_FILE_TYPES = {
    "application/pdf": [".pdf"],
    "application/msword": [".doc"],
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": [".docx"],
    "image/jpeg": [".jpg", ".jpeg"],
    "image/png": [".png"],
    "image/tiff": [".tiff", ".tif"],
    "text/plain": [".txt"],
    "application/rtf": [".rtf"],
}

ALLOWED_EXTENSIONS = {ext for exts in SUPPORTED_FILE_TYPES.values() for ext in exts}


def format_file_size(size: int) -> str:
    """Human-readable size, e.g. 10.0 MB."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def validate_document_file(name: str, content_type: str, size: Optional[int]):
    """
    Check a document against the allowed formats and size limit.

    Both the MIME type and the file extension must be allowed.

    Raises:
        ItemValidationFailed: With a user-facing reason
    """
    if content_type not in SUPPORTED_FILE_TYPES:
        raise ItemValidationFailed(
            f"File type {content_type} is not supported. "
            "Allowed types: PDF, Word, Images (JPG, PNG, TIFF), TXT, RTF"
        )

    extension = os.path.splitext(name)[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ItemValidationFailed(f"File extension {extension or '(none)'} is not supported")

    if size is None or size == 0:
        raise ItemValidationFailed("File is empty")

    if size > MAX_FILE_SIZE:
        raise ItemValidationFailed(
            f"File size {format_file_size(size)} exceeds maximum allowed size of "
            f"{format_file_size(MAX_FILE_SIZE)}"
        )


def validate_calendar_event(event: Dict):
    """
    Check that a calendar event can become a local event.

    Raises:
        ItemValidationFailed: If it is cancelled or has no title or start
    """
    if event.get("status") == "cancelled":
        raise ItemValidationFailed("Event is cancelled")

    if not (event.get("summary") or "").strip():
        raise ItemValidationFailed("Event has no title")

    start = event.get("start") or {}
    if not (start.get("dateTime") or start.get("date")):
        raise ItemValidationFailed("Event has no start time")
