"""
Service clients built from configuration and passed explicitly to adapters.

Dependencies: google-genai requests
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import google.genai as genai
import requests

from .config import PipelineConfig
from .errors import ErrorKind, GhostPipelineError

logger = logging.getLogger("ghoststudio.clients")


@dataclass
class ServiceClients:
    genai: Any
    http: requests.Session
    fal_api_key: str


def build_clients(config: PipelineConfig) -> ServiceClients:
    missing = [
        name for name, value in (("GEMINI_API_KEY", config.gemini_api_key), ("FAL_API_KEY", config.fal_api_key))
        if not value
    ]
    if missing:
        raise GhostPipelineError(
            f"Missing required credentials: {', '.join(missing)}", ErrorKind.CONFIGURATION
        )

    http = requests.Session()
    http.headers.update({"User-Agent": "ghoststudio/1.0"})
    client = genai.Client(api_key=config.gemini_api_key)
    logger.info("Initialized Gemini and FAL clients")
    return ServiceClients(genai=client, http=http, fal_api_key=config.fal_api_key)
