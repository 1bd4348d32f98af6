"""
config.py – Pipeline configuration
==================================

Defaults → optional YAML file → environment variables. Stage timeouts are held
in seconds; the ``TIMEOUT_*`` environment variables are milliseconds.

Example ``pipeline.yml``::

    timeouts:
      rendering: 240
    qa:
      enabled: true
      max_iterations: 2
    consolidation:
      reconciliation_mode: skip
    retry:
      per_stage:
        rendering:
          max_attempts: 3

The reconciliation worst case (per-call timeout x attempts + backoff) must fit
inside the consolidation stage deadline; ``validate`` rejects configs where it
does not.

Dependencies: pyyaml
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ErrorKind, GhostPipelineError, Stage
from .utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.config")

RECONCILIATION_MODES = ("attempt", "skip")
RETRY_OVERRIDE_KEYS = ("max_attempts", "backoff_s")


@dataclass
class StageTimeouts:
    background_removal: float = 30.0
    analysis: float = 90.0
    enrichment: float = 120.0
    consolidation: float = 45.0
    rendering: float = 180.0
    qa: float = 60.0
    upload: float = 15.0

    def for_stage(self, stage: Stage) -> float:
        return float(getattr(self, Stage(stage).value))


@dataclass
class ModelConfig:
    analysis_model: str = "gemini-2.5-flash"
    enrichment_model: str = "gemini-2.5-flash"
    consolidation_model: str = "gemini-2.5-flash-lite"
    rendering_model: str = "gemini-2.5-flash-image-preview"
    qa_model: str = "gemini-2.5-flash"
    analysis_temperature: float = 0.1
    rendering_temperature: float = 0.05
    analysis_max_dimension: int = 1024
    fal_endpoint: str = "https://fal.run/fal-ai/bria/background/remove"


@dataclass
class ConsolidationConfig:
    # with retries disabled, "attempt" still calls the model once; "skip" goes straight to fallback
    allow_model_retries: bool = False
    reconciliation_mode: str = "attempt"
    reconcile_timeout_s: float = 20.0

    def model_budget_s(self, retry: RetryPolicy) -> float:
        """Worst-case wall time of the reconciliation call, backoff included."""
        policy = retry if self.allow_model_retries else NO_RETRY
        return policy.worst_case_s(self.reconcile_timeout_s)


@dataclass
class QALoopConfig:
    enabled: bool = False
    max_iterations: int = 2


@dataclass
class RetryConfig:
    max_attempts: int = 2
    backoff_s: List[float] = field(default_factory=lambda: [1.0, 3.0])
    max_quota_wait_s: float = 60.0
    # stage name -> {"max_attempts": ..., "backoff_s": [...]}
    per_stage: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def policy_for(self, stage: Stage) -> RetryPolicy:
        """Transport retry policy for one stage adapter, with any per-stage override applied."""
        override = self.per_stage.get(Stage(stage).value) or {}
        return RetryPolicy(
            max_attempts=int(override.get("max_attempts", self.max_attempts)),
            backoff_s=tuple(float(s) for s in override.get("backoff_s", self.backoff_s)),
        )

    def quota_policy(self) -> RetryPolicy:
        """One extra attempt after the provider-suggested delay."""
        return RetryPolicy(
            max_attempts=2, retry_on=(), honor_quota_delay=True, max_quota_wait_s=self.max_quota_wait_s
        )


@dataclass
class PipelineConfig:
    fal_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    models: ModelConfig = field(default_factory=ModelConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    qa: QALoopConfig = field(default_factory=QALoopConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    enable_early_upload: bool = False
    upload_cache_size: int = 256
    output_dir: str = "outputs"
    style_config_path: Optional[str] = None

    def validate(self) -> "PipelineConfig":
        if self.consolidation.reconciliation_mode not in RECONCILIATION_MODES:
            raise GhostPipelineError(
                f"consolidation.reconciliation_mode must be one of {RECONCILIATION_MODES}, "
                f"got {self.consolidation.reconciliation_mode!r}",
                ErrorKind.CONFIGURATION,
            )
        if self.qa.max_iterations < 0:
            raise GhostPipelineError("qa.max_iterations must be >= 0", ErrorKind.CONFIGURATION)
        for f in fields(self.timeouts):
            if getattr(self.timeouts, f.name) <= 0:
                raise GhostPipelineError(f"timeouts.{f.name} must be positive", ErrorKind.CONFIGURATION)

        if not isinstance(self.retry.per_stage, dict):
            raise GhostPipelineError("retry.per_stage must be a mapping", ErrorKind.CONFIGURATION)
        for name, override in self.retry.per_stage.items():
            if name not in {s.value for s in Stage}:
                raise GhostPipelineError(f"retry.per_stage: unknown stage {name!r}", ErrorKind.CONFIGURATION)
            if not isinstance(override, dict) or set(override) - set(RETRY_OVERRIDE_KEYS):
                raise GhostPipelineError(
                    f"retry.per_stage.{name} may only set {RETRY_OVERRIDE_KEYS}", ErrorKind.CONFIGURATION
                )
            if int(override.get("max_attempts", 1)) < 1:
                raise GhostPipelineError(f"retry.per_stage.{name}.max_attempts must be >= 1", ErrorKind.CONFIGURATION)

        # the engine falls back on its own; it must get there before the stage deadline fires
        budget = self.consolidation.model_budget_s(self.retry.policy_for(Stage.CONSOLIDATION))
        if budget >= self.timeouts.consolidation:
            raise GhostPipelineError(
                f"Reconciliation worst case {budget:.1f}s (timeout x attempts + backoff) must be shorter "
                f"than timeouts.consolidation ({self.timeouts.consolidation:.1f}s)",
                ErrorKind.CONFIGURATION,
            )
        return self


# -----------------------------
# Loading
# -----------------------------
def _apply_mapping(target: Any, values: Mapping[str, Any], prefix: str = "") -> None:
    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {prefix}{key}")
            continue
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise GhostPipelineError(f"Config section {prefix}{key} must be a mapping", ErrorKind.CONFIGURATION)
            _apply_mapping(current, value, prefix=f"{prefix}{key}.")
        else:
            setattr(target, key, value)


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as e:
        raise GhostPipelineError(f"{name} must be numeric, got {raw!r}", ErrorKind.CONFIGURATION) from e


_TIMEOUT_ENV = {
    "TIMEOUT_BACKGROUND_REMOVAL": "background_removal",
    "TIMEOUT_ANALYSIS": "analysis",
    "TIMEOUT_ENRICHMENT": "enrichment",
    "TIMEOUT_CONSOLIDATION": "consolidation",
    "TIMEOUT_RENDERING": "rendering",
    "TIMEOUT_QA": "qa",
}


def _apply_env(config: PipelineConfig, env: Mapping[str, str]) -> None:
    if env.get("FAL_API_KEY") or env.get("FAL_KEY"):
        config.fal_api_key = env.get("FAL_API_KEY") or env.get("FAL_KEY")
    if env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY"):
        config.gemini_api_key = env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY")

    for name, attr in _TIMEOUT_ENV.items():
        if env.get(name):
            setattr(config.timeouts, attr, _env_number(name, env[name]) / 1000.0)

    if env.get("ENABLE_QA_LOOP"):
        config.qa.enabled = _env_bool(env["ENABLE_QA_LOOP"])
    if env.get("MAX_QA_ITERATIONS"):
        config.qa.max_iterations = int(_env_number("MAX_QA_ITERATIONS", env["MAX_QA_ITERATIONS"]))
    if env.get("ALLOW_EXPENSIVE_CONSOLIDATION_RETRIES"):
        config.consolidation.allow_model_retries = _env_bool(env["ALLOW_EXPENSIVE_CONSOLIDATION_RETRIES"])
    if env.get("RECONCILIATION_MODE"):
        config.consolidation.reconciliation_mode = env["RECONCILIATION_MODE"].strip().lower()
    if env.get("ENABLE_EARLY_FILES_UPLOAD"):
        config.enable_early_upload = _env_bool(env["ENABLE_EARLY_FILES_UPLOAD"])
    if env.get("RENDERING_MODEL"):
        config.models.rendering_model = env["RENDERING_MODEL"]
    if env.get("GHOSTSTUDIO_OUTPUT_DIR"):
        config.output_dir = env["GHOSTSTUDIO_OUTPUT_DIR"]


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """Build a validated ``PipelineConfig`` from defaults, YAML and environment."""
    config = PipelineConfig()

    if path:
        path = Path(path)
        if not path.exists():
            raise GhostPipelineError(f"Config file not found: {path}", ErrorKind.CONFIGURATION)
        try:
            with open(path, "r") as f:
                data: Dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise GhostPipelineError(f"Invalid YAML in {path}: {e}", ErrorKind.CONFIGURATION) from e
        if not isinstance(data, dict):
            raise GhostPipelineError(f"Config file {path} must contain a mapping", ErrorKind.CONFIGURATION)
        _apply_mapping(config, data)
        logger.info(f"Loaded pipeline config from {path}")

    _apply_env(config, os.environ if env is None else env)
    return config.validate()
