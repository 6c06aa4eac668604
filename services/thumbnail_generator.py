"""Thumbnail previews for image attachments.

Wraps Pillow to turn raw image bytes into a small PNG data URL that a chat
UI can render inline before (or instead of) the full attachment.

Example:
    tg = ThumbnailGenerator(max_size=(160, 160))
    preview = tg.create_data_url(raw_png_bytes)
"""
from __future__ import annotations

import base64
import io
from typing import Tuple

from PIL import Image, UnidentifiedImageError


class ThumbnailGenerator:
    """Generate attachment thumbnails.

    Args:
        max_size: Maximum width and height of the thumbnail. Defaults to (160, 160).
        background: Colour used to flatten transparent images. Defaults to white.
    """

    def __init__(self, max_size: Tuple[int, int] = (160, 160), background: Tuple[int, int, int] | None = None):
        self.max_size = max_size
        self.background = background or (255, 255, 255)

    def create_png(self, raw: bytes) -> bytes:
        """Return PNG bytes of `raw` scaled to fit `max_size`.

        Raises:
            ValueError: If the bytes are not an image Pillow can open.
        """
        try:
            src = Image.open(io.BytesIO(raw))
            src.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("Attachment bytes are not a supported image format") from exc

        src = src.convert("RGBA")
        src.thumbnail(self.max_size, Image.LANCZOS)

        flattened = Image.new("RGB", src.size, self.background)
        flattened.paste(src, mask=src.split()[3])

        out_io = io.BytesIO()
        flattened.save(out_io, format="PNG", optimize=True)
        return out_io.getvalue()

    def create_data_url(self, raw: bytes) -> str:
        encoded = base64.b64encode(self.create_png(raw)).decode("ascii")
        return f"data:image/png;base64,{encoded}"
