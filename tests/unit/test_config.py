"""
Unit tests for configuration loading.
"""

import pytest
from unittest.mock import MagicMock

from ghoststudio.clients import ServiceClients
from ghoststudio.config import PipelineConfig, load_config
from ghoststudio.errors import ErrorKind, GhostPipelineError, Stage
from ghoststudio.pipeline import build_stage_adapters


class TestDefaults:

    def test_default_values(self):
        config = load_config(env={})
        assert config.timeouts.background_removal == 30.0
        assert config.timeouts.rendering == 180.0
        assert config.timeouts.for_stage(Stage.ENRICHMENT) == 120.0
        assert config.qa.enabled is False
        assert config.qa.max_iterations == 2
        assert config.consolidation.allow_model_retries is False
        assert config.consolidation.reconciliation_mode == "attempt"
        assert config.consolidation.reconcile_timeout_s == 20.0
        assert config.fal_api_key is None

    def test_quota_policy_allows_one_extra_attempt(self):
        policy = PipelineConfig().retry.quota_policy()
        assert policy.max_attempts == 2
        assert policy.honor_quota_delay is True
        assert policy.retry_on == ()


class TestYaml:

    def test_yaml_overrides(self, temp_dir):
        path = temp_dir / "pipeline.yml"
        path.write_text(
            "timeouts:\n  rendering: 240\n"
            "qa:\n  enabled: true\n  max_iterations: 3\n"
            "consolidation:\n  reconciliation_mode: skip\n"
            "output_dir: /tmp/renders\n"
            "mystery: 1\n"
        )
        config = load_config(path, env={})
        assert config.timeouts.rendering == 240
        assert config.qa.enabled is True
        assert config.qa.max_iterations == 3
        assert config.consolidation.reconciliation_mode == "skip"
        assert config.output_dir == "/tmp/renders"

    def test_missing_file(self, temp_dir):
        with pytest.raises(GhostPipelineError) as exc_info:
            load_config(temp_dir / "nope.yml", env={})
        assert exc_info.value.kind is ErrorKind.CONFIGURATION

    @pytest.mark.parametrize("content", ["- a\n- b\n", "timeouts: 5\n", "qa: [\n"])
    def test_malformed_yaml(self, temp_dir, content):
        path = temp_dir / "bad.yml"
        path.write_text(content)
        with pytest.raises(GhostPipelineError) as exc_info:
            load_config(path, env={})
        assert exc_info.value.kind is ErrorKind.CONFIGURATION


class TestEnvironment:

    def test_env_overrides_and_millisecond_timeouts(self):
        config = load_config(env={
            "FAL_KEY": "fal-123",
            "GOOGLE_API_KEY": "g-456",
            "TIMEOUT_RENDERING": "240000",
            "TIMEOUT_QA": "1500",
            "ENABLE_QA_LOOP": "true",
            "MAX_QA_ITERATIONS": "4",
            "ALLOW_EXPENSIVE_CONSOLIDATION_RETRIES": "1",
            "ENABLE_EARLY_FILES_UPLOAD": "yes",
            "RENDERING_MODEL": "gemini-test-image",
        })
        assert config.fal_api_key == "fal-123"
        assert config.gemini_api_key == "g-456"
        assert config.timeouts.rendering == pytest.approx(240.0)
        assert config.timeouts.qa == pytest.approx(1.5)
        assert config.qa.enabled is True
        assert config.qa.max_iterations == 4
        assert config.consolidation.allow_model_retries is True
        assert config.enable_early_upload is True
        assert config.models.rendering_model == "gemini-test-image"

    def test_primary_key_names_win(self):
        config = load_config(env={"FAL_API_KEY": "primary", "FAL_KEY": "alias"})
        assert config.fal_api_key == "primary"

    def test_env_beats_yaml(self, temp_dir):
        path = temp_dir / "pipeline.yml"
        path.write_text("qa:\n  enabled: true\n")
        assert load_config(path, env={"ENABLE_QA_LOOP": "false"}).qa.enabled is False

    @pytest.mark.parametrize("env", [
        {"RECONCILIATION_MODE": "sometimes"},
        {"TIMEOUT_ANALYSIS": "fast"},
        {"TIMEOUT_ANALYSIS": "0"},
        {"MAX_QA_ITERATIONS": "-1"},
    ])
    def test_invalid_values_raise_configuration(self, env):
        with pytest.raises(GhostPipelineError) as exc_info:
            load_config(env=env)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION


class TestReconciliationBudget:

    def test_retries_fit_default_deadline(self):
        config = load_config(env={"ALLOW_EXPENSIVE_CONSOLIDATION_RETRIES": "1"})
        budget = config.consolidation.model_budget_s(config.retry.policy_for(Stage.CONSOLIDATION))
        assert budget == pytest.approx(41.0)
        assert budget < config.timeouts.consolidation

    @pytest.mark.parametrize("env", [
        {"ALLOW_EXPENSIVE_CONSOLIDATION_RETRIES": "1", "TIMEOUT_CONSOLIDATION": "30000"},
        {"TIMEOUT_CONSOLIDATION": "20000"},
    ])
    def test_budget_past_stage_deadline_rejected(self, env):
        with pytest.raises(GhostPipelineError) as exc_info:
            load_config(env=env)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert "timeouts.consolidation" in exc_info.value.message

    def test_reconcile_timeout_from_yaml_checked(self, temp_dir):
        path = temp_dir / "pipeline.yml"
        path.write_text("consolidation:\n  reconcile_timeout_s: 50\n")
        with pytest.raises(GhostPipelineError):
            load_config(path, env={})


class TestPerStageRetry:

    def _config(self, temp_dir, body):
        path = temp_dir / "pipeline.yml"
        path.write_text(body)
        return load_config(path, env={})

    def test_override_applies_to_one_stage(self, temp_dir):
        config = self._config(temp_dir, "retry:\n  per_stage:\n    rendering:\n      max_attempts: 3\n      backoff_s: [0.5]\n")
        rendering = config.retry.policy_for(Stage.RENDERING)
        assert rendering.max_attempts == 3
        assert rendering.backoff_s == (0.5,)
        qa = config.retry.policy_for(Stage.QA)
        assert qa.max_attempts == 2
        assert qa.backoff_s == (1.0, 3.0)

    @pytest.mark.parametrize("body", [
        "retry:\n  per_stage:\n    upscale:\n      max_attempts: 2\n",
        "retry:\n  per_stage:\n    qa:\n      jitter: 1\n",
        "retry:\n  per_stage:\n    qa:\n      max_attempts: 0\n",
        "retry:\n  per_stage: [qa]\n",
    ])
    def test_bad_overrides_rejected(self, temp_dir, body):
        with pytest.raises(GhostPipelineError) as exc_info:
            self._config(temp_dir, body)
        assert exc_info.value.kind is ErrorKind.CONFIGURATION

    def test_adapters_receive_their_stage_policy(self, temp_dir):
        config = self._config(temp_dir, "retry:\n  per_stage:\n    qa:\n      max_attempts: 4\n")
        adapters = build_stage_adapters(config, ServiceClients(genai=MagicMock(), http=MagicMock(), fal_api_key="k"))
        assert adapters.review_quality.__self__.retry.max_attempts == 4
        assert adapters.synthesize_image.__self__.retry.max_attempts == 2
        assert adapters.consolidate.__self__.retry.max_attempts == 2
