import base64
import io

import pytest
from PIL import Image

from services.thumbnail_generator import ThumbnailGenerator
from utils.media_validation import AttachmentError, read_attachment


def png_bytes(size=(640, 480)):
    buffer = io.BytesIO()
    Image.new("RGBA", size, (200, 20, 20, 128)).save(buffer, format="PNG")
    return buffer.getvalue()


async def test_image_attachment_gets_thumbnail(tmp_path):
    path = tmp_path / "photo.png"
    path.write_bytes(png_bytes())

    payload = await read_attachment(path)

    assert payload["name"] == "photo.png"
    assert payload["content_type"] == "image/png"
    assert payload["data_url"].startswith("data:image/png;base64,")
    thumb = base64.b64decode(payload["thumbnail"].split(",", 1)[1])
    assert max(Image.open(io.BytesIO(thumb)).size) <= 160


async def test_text_attachment_has_no_thumbnail(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")

    payload = await read_attachment(path)

    assert payload["size"] == 5
    assert "thumbnail" not in payload


@pytest.mark.parametrize("name, content", [("empty.txt", b""), ("tool.exe", b"MZ")])
async def test_rejected_attachments(tmp_path, name, content):
    path = tmp_path / name
    path.write_bytes(content)

    with pytest.raises(AttachmentError):
        await read_attachment(path)


async def test_missing_attachment(tmp_path):
    with pytest.raises(AttachmentError):
        await read_attachment(tmp_path / "nope.pdf")


def test_thumbnail_rejects_non_images():
    with pytest.raises(ValueError):
        ThumbnailGenerator().create_png(b"not an image")
