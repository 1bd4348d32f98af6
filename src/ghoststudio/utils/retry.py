"""
Retry policy shared by the stage adapters and the orchestrator.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, TypeVar

from ..errors import ErrorKind, GhostPipelineError

logger = logging.getLogger("ghoststudio.retry")

T = TypeVar("T")

DEFAULT_QUOTA_DELAY_S = 45.0


@dataclass
class RetryPolicy:
    max_attempts: int = 1
    backoff_s: Tuple[float, ...] = (1.0, 2.0, 4.0)
    retry_on: Tuple[ErrorKind, ...] = (ErrorKind.TRANSPORT,)
    honor_quota_delay: bool = False
    max_quota_wait_s: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def delay_for(self, attempt: int, error: GhostPipelineError) -> Optional[float]:
        """Seconds to wait before attempt ``attempt + 1``; None means give up."""
        if attempt >= self.max_attempts:
            return None
        if error.kind is ErrorKind.QUOTA:
            if not self.honor_quota_delay:
                return None
            suggested = error.retry_after_s if error.retry_after_s is not None else DEFAULT_QUOTA_DELAY_S
            return max(0.0, min(suggested, self.max_quota_wait_s))
        if error.kind in self.retry_on:
            if not self.backoff_s:
                return 0.0
            return self.backoff_s[min(attempt - 1, len(self.backoff_s) - 1)]
        return None

    def worst_case_s(self, per_attempt_s: float) -> float:
        """Wall time of ``max_attempts`` calls that each run ``per_attempt_s``, backoff included."""
        waits = sum(
            self.backoff_s[min(attempt - 1, len(self.backoff_s) - 1)] if self.backoff_s else 0.0
            for attempt in range(1, self.max_attempts)
        )
        return per_attempt_s * self.max_attempts + waits

    def call(self, fn: Callable[..., T], *args: Any, description: str = "call", **kwargs: Any) -> T:
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except GhostPipelineError as e:
                delay = self.delay_for(attempt, e)
                if delay is None:
                    raise
                logger.warning(
                    f"{description} failed ({e.kind.value}: {e.message}); "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})"
                )
                self.sleep(delay)
                attempt += 1


NO_RETRY = RetryPolicy(max_attempts=1)
