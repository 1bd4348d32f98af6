#!/usr/bin/env python3
"""
step0_background_removal.py – Stage 0: Background Removal (FAL Bria)
====================================================================

Sends the flat-lay reference to FAL's Bria background-removal model and returns
the URL of the cleaned garment image. Local paths and bare base64 are converted
to data URLs first since FAL only accepts URLs.

Dependencies: requests
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import requests

from ..errors import API_ERROR, IMAGE_FETCH_FAILED, ErrorKind, GhostPipelineError, Stage
from ..models import BackgroundRemovalResult
from ..utils.genai_helpers import classify_provider_error
from ..utils.image_io import is_data_url, load_image_bytes, to_data_url
from ..utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.background_removal")

FAL_BRIA_ENDPOINT = "https://fal.run/fal-ai/bria/background/remove"


class BackgroundRemover:
    def __init__(
        self,
        api_key: str,
        http: Optional[requests.Session] = None,
        endpoint: str = FAL_BRIA_ENDPOINT,
        timeout_s: float = 30.0,
        retry: RetryPolicy = NO_RETRY,
    ):
        self.api_key = api_key
        self.http = http or requests.Session()
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        self.retry = retry

    def remove_background(self, image_ref: str) -> BackgroundRemovalResult:
        start = time.perf_counter()
        url = self.retry.call(self._request, self._as_url(image_ref), description="background removal")
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"✅ Background removed in {elapsed_ms:.0f}ms")
        return BackgroundRemovalResult(cleaned_image_url=url, processing_time_ms=elapsed_ms)

    def _as_url(self, image_ref: str) -> str:
        if image_ref.startswith(("http://", "https://")) or is_data_url(image_ref):
            return image_ref
        try:
            data, mime = load_image_bytes(image_ref, self.http, self.timeout_s)
        except GhostPipelineError as e:
            raise e.with_stage(Stage.BACKGROUND_REMOVAL)
        return to_data_url(data, mime)

    def _request(self, image_url: str) -> str:
        try:
            response = self.http.post(
                self.endpoint,
                json={"image_url": image_url},
                headers={"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise GhostPipelineError(
                f"FAL request failed: {e}", ErrorKind.TRANSPORT, Stage.BACKGROUND_REMOVAL, API_ERROR
            ) from e

        if response.status_code in (400, 422):
            # FAL could not download or decode the input
            raise GhostPipelineError(
                f"FAL rejected the input image ({response.status_code}): {response.text[:200]}",
                ErrorKind.TRANSPORT,
                Stage.BACKGROUND_REMOVAL,
                IMAGE_FETCH_FAILED,
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise classify_provider_error(e, Stage.BACKGROUND_REMOVAL, API_ERROR) from e

        try:
            body = response.json()
        except ValueError as e:
            raise GhostPipelineError(
                "FAL returned a non-JSON response", ErrorKind.PARSE, Stage.BACKGROUND_REMOVAL, API_ERROR
            ) from e

        image = body.get("image") if isinstance(body, dict) else None
        url = image.get("url") if isinstance(image, dict) else None
        if not url:
            raise GhostPipelineError(
                "FAL response contained no image URL", ErrorKind.PARSE, Stage.BACKGROUND_REMOVAL, API_ERROR
            )
        return url
