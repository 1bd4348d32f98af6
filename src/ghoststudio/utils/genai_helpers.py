"""
Helpers around the google-genai SDK: error classification, response inspection
and image part construction.

Dependencies: google-genai requests
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Tuple

import requests
from google.genai import types

from ..errors import (
    API_ERROR,
    INSUFFICIENT_CREDITS,
    QUOTA_EXCEEDED,
    ErrorKind,
    GhostPipelineError,
    Stage,
)
from .image_io import downscale_image, is_files_api_uri, load_image_bytes
from .retry import DEFAULT_QUOTA_DELAY_S

logger = logging.getLogger("ghoststudio.genai")

_RETRY_IN = re.compile(r"retry in ([0-9.]+)\s*s", re.IGNORECASE)
_RETRY_DELAY = re.compile(r"retryDelay['\"]?\s*[:=]\s*['\"]?([0-9.]+)s", re.IGNORECASE)
_BLOCK_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY")


def parse_retry_after(message: str) -> Optional[float]:
    for pattern in (_RETRY_IN, _RETRY_DELAY):
        match = pattern.search(message or "")
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                continue
    return None


def classify_provider_error(
    exc: BaseException,
    stage: Optional[Stage] = None,
    reason: str = API_ERROR,
) -> GhostPipelineError:
    """Map an SDK / HTTP exception onto the pipeline taxonomy."""
    if isinstance(exc, GhostPipelineError):
        return exc.with_stage(stage) if stage is not None else exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    code = getattr(exc, "code", None)
    if code is None and isinstance(exc, requests.HTTPError) and exc.response is not None:
        code = exc.response.status_code
    status = str(getattr(exc, "status", "") or "").upper()

    if code == 402 or "insufficient credit" in lowered or "exhausted balance" in lowered:
        return GhostPipelineError(
            f"Provider credits exhausted: {message}", ErrorKind.QUOTA, stage, INSUFFICIENT_CREDITS
        )
    if (
        code == 429
        or "RESOURCE_EXHAUSTED" in status
        or "resource_exhausted" in lowered
        or "quota" in lowered
        or "rate limit" in lowered
    ):
        return GhostPipelineError(
            f"Provider quota exceeded: {message}",
            ErrorKind.QUOTA,
            stage,
            QUOTA_EXCEEDED,
            retry_after_s=parse_retry_after(message) or DEFAULT_QUOTA_DELAY_S,
        )
    if "safety" in lowered or "blocked" in lowered:
        return GhostPipelineError(f"Content blocked: {message}", ErrorKind.CONTENT_BLOCKED, stage, reason)
    if code in (401, 403) or "api key" in lowered:
        return GhostPipelineError(f"Provider rejected credentials: {message}", ErrorKind.CONFIGURATION, stage, reason)
    return GhostPipelineError(message, ErrorKind.TRANSPORT, stage, reason)


def response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    return text if isinstance(text, str) else ""


def blocked_reason(response: Any) -> Optional[str]:
    """Block / safety reason reported on a response, if any."""
    feedback = getattr(response, "prompt_feedback", None)
    block = getattr(feedback, "block_reason", None) if feedback is not None else None
    if block:
        return str(getattr(block, "name", block))
    for candidate in getattr(response, "candidates", None) or []:
        finish = getattr(candidate, "finish_reason", None)
        if finish is None:
            continue
        name = str(getattr(finish, "name", finish)).upper()
        if name.endswith(_BLOCK_FINISH_REASONS):
            return name
    return None


def inline_images(response: Any) -> List[Tuple[bytes, str]]:
    images = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            data = getattr(inline, "data", None) if inline is not None else None
            if data:
                images.append((data, getattr(inline, "mime_type", None) or "image/png"))
    return images


def image_part(
    ref: str,
    http: Optional[requests.Session] = None,
    timeout_s: float = 30.0,
    max_dimension: Optional[int] = 1024,
) -> types.Part:
    if is_files_api_uri(ref):
        return types.Part.from_uri(file_uri=ref, mime_type="image/png")
    data, mime = load_image_bytes(ref, http, timeout_s)
    if max_dimension:
        data, mime = downscale_image(data, max_dimension)
    return types.Part.from_bytes(data=data, mime_type=mime)
