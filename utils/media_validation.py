"""Read and validate local files sent as chat attachments."""

import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict

import aiofiles

from services.thumbnail_generator import ThumbnailGenerator

LOGGER = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024

ALLOWED_ATTACHMENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "text/csv",
    "application/json",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "audio/wav",
    "audio/x-wav",
    "audio/webm",
    "audio/mpeg",
}


class AttachmentError(ValueError):
    """Raised when a file cannot be sent as an attachment."""


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or "application/octet-stream"


def validate_attachment(path: Path, size: int, content_type: str) -> None:
    """Reject empty, oversized or unsupported files."""
    if size == 0:
        raise AttachmentError(f"Attachment {path.name} is empty.")
    if size > MAX_ATTACHMENT_BYTES:
        raise AttachmentError(
            f"Attachment {path.name} is {size} bytes; the limit is {MAX_ATTACHMENT_BYTES}."
        )
    if content_type not in ALLOWED_ATTACHMENT_TYPES:
        raise AttachmentError(f"Unsupported attachment type: {content_type}")


def to_data_url(raw: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(raw).decode('ascii')}"


async def read_attachment(path, thumbnailer: ThumbnailGenerator | None = None) -> Dict[str, Any]:
    """Read `path` without blocking the loop and return its outbound payload.

    The payload is `{name, content_type, size, data_url}`; images also carry
    a `thumbnail` data URL. A thumbnail failure is logged and skipped.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise AttachmentError(f"Attachment not found: {path}")

    content_type = guess_content_type(path)
    try:
        async with aiofiles.open(path, "rb") as handle:
            raw = await handle.read()
    except OSError as exc:
        raise AttachmentError(f"Could not read attachment {path.name}: {exc}") from exc

    validate_attachment(path, len(raw), content_type)
    payload: Dict[str, Any] = {
        "name": path.name,
        "content_type": content_type,
        "size": len(raw),
        "data_url": to_data_url(raw, content_type),
    }
    if content_type.startswith("image/"):
        try:
            payload["thumbnail"] = (thumbnailer or ThumbnailGenerator()).create_data_url(raw)
        except ValueError as exc:
            LOGGER.warning("No thumbnail for %s: %s", path.name, exc)
    return payload
