"""
Image reference handling: data URLs, http(s) URLs, local paths, bare base64.

Dependencies: requests pillow
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional, Tuple

import requests
from PIL import Image

from ..errors import IMAGE_FETCH_FAILED, ErrorKind, GhostPipelineError

logger = logging.getLogger("ghoststudio.image_io")

FILES_API_PREFIX = "https://generativelanguage.googleapis.com/v1beta/files/"
DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.\-]+);base64,(?P<data>.+)$", re.DOTALL)
DEFAULT_MIME = "image/jpeg"


def is_files_api_uri(ref: str) -> bool:
    return ref.startswith(FILES_API_PREFIX)


def is_data_url(ref: str) -> bool:
    return ref.startswith("data:")


def _fetch_failed(message: str) -> GhostPipelineError:
    return GhostPipelineError(message, ErrorKind.TRANSPORT, reason=IMAGE_FETCH_FAILED)


def sniff_mime_type(data: bytes, default: str = DEFAULT_MIME) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format or "", default)
    except Exception:
        return default


def load_image_bytes(
    ref: str,
    session: Optional[requests.Session] = None,
    timeout_s: float = 30.0,
) -> Tuple[bytes, str]:
    """Resolve an image reference to ``(bytes, mime_type)``."""
    match = DATA_URL_PATTERN.match(ref)
    if match:
        try:
            return base64.b64decode(match.group("data"), validate=False), match.group("mime")
        except (binascii.Error, ValueError) as e:
            raise _fetch_failed(f"Malformed data URL: {e}") from e

    if ref.startswith(("http://", "https://")):
        http = session or requests.Session()
        try:
            response = http.get(ref, timeout=timeout_s)
            response.raise_for_status()
        except requests.RequestException as e:
            raise _fetch_failed(f"Failed to fetch image {ref[:80]}: {e}") from e
        mime = (response.headers.get("content-type") or "").split(";")[0].strip()
        if not mime.startswith("image/"):
            mime = sniff_mime_type(response.content)
        return response.content, mime

    path = Path(ref)
    if len(ref) < 4096 and path.is_file():
        data = path.read_bytes()
        guessed, _ = mimetypes.guess_type(path.name)
        return data, guessed or sniff_mime_type(data)

    try:
        data = base64.b64decode(ref, validate=True)
    except (binascii.Error, ValueError) as e:
        raise _fetch_failed(f"Unrecognised image reference: {ref[:60]!r}") from e
    return data, sniff_mime_type(data)


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def downscale_image(data: bytes, max_dimension: int = 1024) -> Tuple[bytes, str]:
    """Shrink to ``max_dimension`` on the long side; originals are returned on failure."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            mime = Image.MIME.get(img.format or "", DEFAULT_MIME)
            if max(img.size) <= max_dimension:
                return data, mime
            has_alpha = img.mode in ("RGBA", "LA") or "transparency" in img.info
            resized = img.convert("RGBA" if has_alpha else "RGB")
            resized.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
            buf = io.BytesIO()
            if has_alpha:
                resized.save(buf, format="PNG", optimize=True)
                out_mime = "image/png"
            else:
                resized.save(buf, format="JPEG", quality=90)
                out_mime = "image/jpeg"
            logger.debug(f"Downscaled {img.size} -> {resized.size} ({len(data)} -> {buf.tell()} bytes)")
            return buf.getvalue(), out_mime
    except Exception as e:
        logger.warning(f"Image downscale failed, using original: {e}")
        return data, sniff_mime_type(data)


def save_png(data: bytes, out_path: Path, size: Optional[int] = None) -> Path:
    """Write image bytes as PNG, optionally resized to ``size`` x ``size``."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if size and img.size != (size, size):
            img = img.resize((size, size), Image.LANCZOS)
        img.save(out_path, format="PNG")
    return out_path
