"""
Files-API uploads with a bounded read-through cache.

Entries are keyed by ``(content_hash, role, session_id)`` and never change once
written; concurrent sessions can at worst upload the same bytes twice.
"""

from __future__ import annotations

import hashlib
import io
import logging
from collections import OrderedDict
from typing import Any, Optional, Tuple

import requests
from google.genai import types

from ..errors import UPLOAD_FAILED
from .genai_helpers import classify_provider_error
from .image_io import is_files_api_uri, load_image_bytes

logger = logging.getLogger("ghoststudio.files")

CacheKey = Tuple[str, str, str]


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


class UploadCache:
    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, str]" = OrderedDict()

    @staticmethod
    def key(data: bytes, role: str, session_id: str) -> CacheKey:
        return (content_hash(data), role, session_id)

    def get(self, key: CacheKey) -> Optional[str]:
        return self._entries.get(key)

    def put(self, key: CacheKey, uri: str) -> None:
        if key in self._entries:
            return
        self._entries[key] = uri
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted upload cache entry {evicted}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class FilesUploader:
    """Upload image bytes to the Gemini Files API, reusing cached URIs."""

    def __init__(self, client: Any, cache: Optional[UploadCache] = None):
        self.client = client
        self.cache = cache if cache is not None else UploadCache()

    def upload(self, data: bytes, mime_type: str, role: str, session_id: str) -> str:
        key = self.cache.key(data, role, session_id)
        cached = self.cache.get(key)
        if cached:
            logger.debug(f"[{session_id}] Files API cache hit for {role}")
            return cached

        try:
            uploaded = self.client.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=f"{session_id}-{role}"),
            )
        except Exception as e:
            raise classify_provider_error(e, reason=UPLOAD_FAILED) from e

        uri = getattr(uploaded, "uri", None)
        if not uri:
            raise classify_provider_error(RuntimeError("Files API returned no URI"), reason=UPLOAD_FAILED)
        self.cache.put(key, uri)
        logger.info(f"[{session_id}] Uploaded {role} image to Files API ({len(data)} bytes)")
        return uri

    def upload_ref(
        self,
        ref: str,
        role: str,
        session_id: str,
        http: Optional[requests.Session] = None,
        timeout_s: float = 30.0,
    ) -> str:
        """Fetch an image reference and upload it; Files-API URIs pass through."""
        if is_files_api_uri(ref):
            return ref
        data, mime = load_image_bytes(ref, http, timeout_s)
        return self.upload(data, mime, role, session_id)
