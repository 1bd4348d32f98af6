"""
errors.py – Error taxonomy for the ghost-mannequin pipeline
===========================================================

Every failure that crosses a stage boundary is a ``GhostPipelineError`` carrying
an ``ErrorKind`` (what went wrong), the ``Stage`` it happened in, and the adapter
``reason`` code (IMAGE_FETCH_FAILED, RENDERING_FAILED, ...).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    BACKGROUND_REMOVAL = "background_removal"
    ANALYSIS = "analysis"
    ENRICHMENT = "enrichment"
    CONSOLIDATION = "consolidation"
    RENDERING = "rendering"
    QA = "qa"


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    CONFIGURATION = "CONFIGURATION"
    TRANSPORT = "TRANSPORT"
    TIMEOUT = "TIMEOUT"
    PARSE = "PARSE"
    SCHEMA = "SCHEMA"
    QUOTA = "QUOTA"
    CONTENT_BLOCKED = "CONTENT_BLOCKED"
    CANCELLED = "CANCELLED"


# Adapter reason codes
IMAGE_FETCH_FAILED = "IMAGE_FETCH_FAILED"
API_ERROR = "API_ERROR"
ANALYSIS_FAILED = "ANALYSIS_FAILED"
ENRICHMENT_FAILED = "ENRICHMENT_FAILED"
RENDERING_FAILED = "RENDERING_FAILED"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
QA_FAILED = "QA_FAILED"
UPLOAD_FAILED = "UPLOAD_FAILED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class GhostPipelineError(Exception):
    """Classified pipeline failure."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        stage: Optional[Stage] = None,
        reason: Optional[str] = None,
        retry_after_s: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.stage = Stage(stage) if stage is not None else None
        self.reason = reason
        self.retry_after_s = retry_after_s

    def with_stage(self, stage: Stage) -> "GhostPipelineError":
        """Tag with a stage unless the adapter already did."""
        if self.stage is None:
            self.stage = Stage(stage)
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "message": self.message,
            "code": self.kind.value,
            "stage": self.stage.value if self.stage else None,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload

    def __repr__(self) -> str:
        return (
            f"GhostPipelineError({self.message!r}, kind={self.kind.value}, "
            f"stage={self.stage.value if self.stage else None}, reason={self.reason})"
        )


class ResponseParseError(ValueError):
    """Model text did not contain a JSON object."""


class SchemaValidationError(ValueError):
    """Strict normalisation found structurally invalid fields."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        preview = "; ".join(self.issues[:5])
        more = f" (+{len(self.issues) - 5} more)" if len(self.issues) > 5 else ""
        super().__init__(f"{len(self.issues)} schema issue(s): {preview}{more}")


def http_status_for(error: GhostPipelineError) -> int:
    """Map a classified error onto the HTTP status the API layer returns."""
    if error.kind is ErrorKind.VALIDATION:
        return 400
    if error.kind is ErrorKind.CONFIGURATION:
        return 500
    if error.kind is ErrorKind.QUOTA:
        # exhausted credits are an upstream problem, not client back-pressure
        return 502 if error.reason == INSUFFICIENT_CREDITS else 429
    if error.kind is ErrorKind.TIMEOUT:
        return 504
    return 500
