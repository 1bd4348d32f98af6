"""
Unit tests for the external stage adapters with mocked transports.
"""

import io
import json
import pytest
import requests
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

from PIL import Image

from ghoststudio.config import ConsolidationConfig
from ghoststudio.errors import (
    ANALYSIS_FAILED,
    API_ERROR,
    IMAGE_FETCH_FAILED,
    INSUFFICIENT_CREDITS,
    QUOTA_EXCEEDED,
    RENDERING_FAILED,
    ErrorKind,
    GhostPipelineError,
    Stage,
)
from ghoststudio.models import RequestOptions
from ghoststudio.steps.step0_background_removal import BackgroundRemover
from ghoststudio.steps.step1_analysis import GarmentAnalyzer
from ghoststudio.steps.step2_consolidation import ConsolidationEngine
from ghoststudio.steps.step3_renderer import GhostRenderer, RenderPromptBuilder
from ghoststudio.steps.step4_quality_review import QualityReviewer
from ghoststudio.utils.genai_helpers import classify_provider_error, parse_retry_after
from ghoststudio.utils.image_io import to_data_url
from ghoststudio.utils.retry import RetryPolicy


def _http_response(status_code, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = body
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error", response=response)
    return response


def _image_chunk(data):
    inline = SimpleNamespace(data=data, mime_type="image/png")
    content = SimpleNamespace(parts=[SimpleNamespace(inline_data=inline)])
    return SimpleNamespace(candidates=[SimpleNamespace(content=content, finish_reason=None)],
                           prompt_feedback=None, text=None)


def _text_chunk(text, finish_reason=None):
    content = SimpleNamespace(parts=[SimpleNamespace(inline_data=None)])
    return SimpleNamespace(candidates=[SimpleNamespace(content=content, finish_reason=finish_reason)],
                           prompt_feedback=None, text=text)


@pytest.fixture
def consolidation(structural, enrichment):
    engine = ConsolidationEngine(MagicMock(), ConsolidationConfig(reconciliation_mode="skip"))
    return engine.consolidate(structural, enrichment, (), "sess-1")


class TestClassifyProviderError:

    @pytest.mark.parametrize("exc,kind,reason", [
        (Exception("429 RESOURCE_EXHAUSTED: quota exceeded, retry in 12s"), ErrorKind.QUOTA, QUOTA_EXCEEDED),
        (Exception("402 insufficient credits on account"), ErrorKind.QUOTA, INSUFFICIENT_CREDITS),
        (Exception("Response blocked by safety filters"), ErrorKind.CONTENT_BLOCKED, API_ERROR),
        (Exception("429 RESOURCE_EXHAUSTED retry in 3s"), ErrorKind.QUOTA, QUOTA_EXCEEDED),
        (Exception("API key not valid"), ErrorKind.CONFIGURATION, API_ERROR),
        (ConnectionError("connection reset"), ErrorKind.TRANSPORT, API_ERROR),
    ])
    def test_mapping(self, exc, kind, reason):
        err = classify_provider_error(exc, Stage.RENDERING)
        assert err.kind is kind
        assert err.reason == reason
        assert err.stage is Stage.RENDERING

    def test_quota_carries_retry_after(self):
        err = classify_provider_error(Exception("quota exceeded, please retry in 12.5s"))
        assert err.retry_after_s == pytest.approx(12.5)
        assert parse_retry_after("'retryDelay': '7s'") == 7.0
        assert parse_retry_after("nothing here") is None

    def test_classified_errors_pass_through(self):
        original = GhostPipelineError("x", ErrorKind.PARSE)
        assert classify_provider_error(original, Stage.QA) is original
        assert original.stage is Stage.QA


class TestBackgroundRemover:

    def test_returns_cleaned_url(self):
        http = MagicMock()
        http.post.return_value = _http_response(200, {"image": {"url": "https://fal.media/clean.png"}})
        result = BackgroundRemover("fal-key", http=http).remove_background("https://cdn.test/flat.jpg")

        assert result.cleaned_image_url == "https://fal.media/clean.png"
        kwargs = http.post.call_args.kwargs
        assert kwargs["json"] == {"image_url": "https://cdn.test/flat.jpg"}
        assert kwargs["headers"]["Authorization"] == "Key fal-key"

    def test_local_file_sent_as_data_url(self, temp_dir, sample_png_bytes):
        path = temp_dir / "flat.png"
        path.write_bytes(sample_png_bytes)
        http = MagicMock()
        http.post.return_value = _http_response(200, {"image": {"url": "https://fal.media/clean.png"}})
        BackgroundRemover("fal-key", http=http).remove_background(str(path))
        assert http.post.call_args.kwargs["json"]["image_url"].startswith("data:image/png;base64,")

    def test_rejected_input_is_fetch_failure(self):
        http = MagicMock()
        http.post.return_value = _http_response(422, text="could not download image")
        with pytest.raises(GhostPipelineError) as exc_info:
            BackgroundRemover("fal-key", http=http).remove_background("https://cdn.test/missing.jpg")
        assert exc_info.value.reason == IMAGE_FETCH_FAILED
        assert exc_info.value.stage is Stage.BACKGROUND_REMOVAL

    def test_rate_limit_is_quota(self):
        http = MagicMock()
        http.post.return_value = _http_response(429, text="slow down")
        with pytest.raises(GhostPipelineError) as exc_info:
            BackgroundRemover("fal-key", http=http).remove_background("https://cdn.test/flat.jpg")
        assert exc_info.value.kind is ErrorKind.QUOTA

    def test_missing_image_url_is_parse_error(self):
        http = MagicMock()
        http.post.return_value = _http_response(200, {"images": []})
        with pytest.raises(GhostPipelineError) as exc_info:
            BackgroundRemover("fal-key", http=http).remove_background("https://cdn.test/flat.jpg")
        assert exc_info.value.kind is ErrorKind.PARSE


class TestGarmentAnalyzer:

    def test_structural_analysis_normalised(self, fake_client_factory, structural_json, sample_png_bytes):
        client = fake_client_factory(json.dumps(structural_json))
        analyzer = GarmentAnalyzer(client)
        analysis = analyzer.analyze_structure(to_data_url(sample_png_bytes, "image/png"), "sess-1")

        assert analysis.category_generic == "top"
        assert len(analysis.labels_found) == 2
        kwargs = client.models.generate_content.call_args.kwargs
        assert kwargs["config"].response_mime_type == "application/json"
        assert "sess-1" in kwargs["contents"][0]

    def test_enrichment_prompt_references_base_analysis(self, fake_client_factory, enrichment_json, sample_png_bytes):
        client = fake_client_factory("```json\n" + json.dumps(enrichment_json) + "\n```")
        enrichment = GarmentAnalyzer(client).analyze_enrichment(
            to_data_url(sample_png_bytes, "image/png"), "sess-1_enrichment", "sess-1"
        )
        assert enrichment.color_precision.primary_hex == "#4682B4"
        prompt = client.models.generate_content.call_args.kwargs["contents"][0]
        assert "base analysis ref: sess-1)" in prompt

    def test_prose_response_is_parse_error(self, fake_client_factory, sample_png_bytes):
        client = fake_client_factory("I could not see a garment.")
        with pytest.raises(GhostPipelineError) as exc_info:
            GarmentAnalyzer(client).analyze_structure(to_data_url(sample_png_bytes, "image/png"), "sess-1")
        assert exc_info.value.kind is ErrorKind.PARSE
        assert exc_info.value.stage is Stage.ANALYSIS
        assert exc_info.value.reason == ANALYSIS_FAILED

    def test_unreadable_image_tagged_with_stage(self, fake_client_factory):
        with pytest.raises(GhostPipelineError) as exc_info:
            GarmentAnalyzer(fake_client_factory("{}")).analyze_enrichment("not an image ref!", "sess-1")
        assert exc_info.value.stage is Stage.ENRICHMENT
        assert exc_info.value.reason == IMAGE_FETCH_FAILED

    def test_enrichment_uses_its_own_retry_policy(self, fake_client_factory, enrichment_json, sample_png_bytes):
        sleeps = []
        client = fake_client_factory(ConnectionError("reset"), json.dumps(enrichment_json))
        analyzer = GarmentAnalyzer(
            client,
            retry=RetryPolicy(max_attempts=1),
            enrichment_retry=RetryPolicy(max_attempts=2, backoff_s=(2.0,), sleep=sleeps.append),
        )
        enrichment = analyzer.analyze_enrichment(to_data_url(sample_png_bytes, "image/png"), "sess-1_enrichment")
        assert enrichment.color_precision.primary_hex == "#4682B4"
        assert sleeps == [2.0]


class TestRenderPromptBuilder:

    def test_sections_present(self, consolidation):
        prompt = RenderPromptBuilder().build(consolidation, RequestOptions())
        assert "NON-NEGOTIABLE FACTS" in prompt
        assert "PRIMARY_COLOR: #4682B4" in prompt
        assert 'Keep label text exactly: "ACME"' in prompt
        assert "Machine wash 30C" not in prompt
        assert "DO NOT show mannequins" in prompt
        assert "QA CORRECTIONS" not in prompt

    def test_labels_omitted_when_not_preserved(self, consolidation):
        prompt = RenderPromptBuilder().build(consolidation, RequestOptions(preserve_labels=False))
        assert "LABEL PRESERVATION" not in prompt

    def test_corrections_and_transparent_background(self, consolidation):
        prompt = RenderPromptBuilder().build(
            consolidation, RequestOptions(background_color="transparent"), ["Shift body colour toward #4682B4"]
        )
        assert "- Shift body colour toward #4682B4" in prompt
        assert "BACKGROUND: transparent" in prompt

    def test_style_overrides_from_yaml(self, consolidation, temp_dir):
        path = temp_dir / "style.yml"
        path.write_text("style_guide:\n  lighting: north window light\nforbidden_edits:\n  - DO NOT crop sleeves\n")
        prompt = RenderPromptBuilder(path).build(consolidation)
        assert "LIGHTING: north window light" in prompt
        assert "- DO NOT crop sleeves" in prompt


class TestGhostRenderer:

    def _renderer(self, client, temp_dir):
        return GhostRenderer(client, model_name="image-model", output_dir=temp_dir)

    def test_render_saved_at_requested_size(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.return_value = iter(
            [_text_chunk("Here is your render"), _image_chunk(sample_png_bytes)]
        )
        cleaned = to_data_url(sample_png_bytes, "image/png")
        result = self._renderer(client, temp_dir).synthesize_image(
            cleaned, consolidation, options=RequestOptions(output_size="1024x1024")
        )

        assert result.render_url.endswith("render_01.png")
        with Image.open(result.render_url) as img:
            assert img.size == (1024, 1024)
        assert client.models.generate_content_stream.call_args.kwargs["model"] == "image-model"

    def test_file_named_from_attempt_number(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.side_effect = lambda **kw: iter([_image_chunk(sample_png_bytes)])
        renderer = self._renderer(client, temp_dir)
        cleaned = to_data_url(sample_png_bytes, "image/png")
        second = renderer.synthesize_image(cleaned, consolidation, corrections=["fix hem"], attempt=2)
        again = renderer.synthesize_image(cleaned, consolidation, attempt=2)
        assert second.render_url.endswith("sess-1/render_02.png")
        assert again.render_url == second.render_url
        third = self._renderer(client, temp_dir).synthesize_image(cleaned, consolidation, attempt=3)
        assert third.render_url.endswith("sess-1/render_03.png")

    def test_transport_error_retried_with_policy(self, consolidation, temp_dir, sample_png_bytes):
        sleeps = []
        client = MagicMock()
        client.models.generate_content_stream.side_effect = [
            ConnectionError("stream reset"),
            iter([_image_chunk(sample_png_bytes)]),
        ]
        renderer = GhostRenderer(
            client, output_dir=temp_dir, retry=RetryPolicy(max_attempts=2, backoff_s=(0.25,), sleep=sleeps.append)
        )
        result = renderer.synthesize_image(to_data_url(sample_png_bytes, "image/png"), consolidation)
        assert result.render_url.endswith("render_01.png")
        assert client.models.generate_content_stream.call_count == 2
        assert sleeps == [0.25]

    def test_quota_error_not_retried_by_adapter_policy(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.side_effect = Exception("429 RESOURCE_EXHAUSTED")
        renderer = GhostRenderer(client, output_dir=temp_dir, retry=RetryPolicy(max_attempts=3, sleep=lambda s: None))
        with pytest.raises(GhostPipelineError) as exc_info:
            renderer.synthesize_image(to_data_url(sample_png_bytes, "image/png"), consolidation)
        assert exc_info.value.kind is ErrorKind.QUOTA
        assert client.models.generate_content_stream.call_count == 1

    def test_no_image_is_rendering_failure(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.return_value = iter([_text_chunk("I can't draw that")])
        with pytest.raises(GhostPipelineError) as exc_info:
            self._renderer(client, temp_dir).synthesize_image(to_data_url(sample_png_bytes, "image/png"), consolidation)
        assert exc_info.value.reason == RENDERING_FAILED
        assert exc_info.value.kind is ErrorKind.TRANSPORT

    def test_safety_finish_is_content_blocked(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.return_value = iter([_text_chunk(None, finish_reason="IMAGE_SAFETY")])
        with pytest.raises(GhostPipelineError) as exc_info:
            self._renderer(client, temp_dir).synthesize_image(to_data_url(sample_png_bytes, "image/png"), consolidation)
        assert exc_info.value.kind is ErrorKind.CONTENT_BLOCKED

    def test_quota_error_classified(self, consolidation, temp_dir, sample_png_bytes):
        client = MagicMock()
        client.models.generate_content_stream.side_effect = Exception("429 RESOURCE_EXHAUSTED retry in 3s")
        with pytest.raises(GhostPipelineError) as exc_info:
            self._renderer(client, temp_dir).synthesize_image(to_data_url(sample_png_bytes, "image/png"), consolidation)
        assert exc_info.value.kind is ErrorKind.QUOTA
        assert exc_info.value.retry_after_s == pytest.approx(3.0)


class TestQualityReviewer:

    def _png_ref(self, temp_dir, sample_png_bytes):
        path = temp_dir / "render_01.png"
        path.write_bytes(sample_png_bytes)
        return str(path)

    def test_pass_derived_from_threshold(self, consolidation, fake_client_factory, temp_dir, sample_png_bytes):
        client = fake_client_factory(json.dumps({"overall_quality_score": 0.72, "deltas": []}))
        report = QualityReviewer(client, pass_threshold=0.8).review_quality(
            self._png_ref(temp_dir, sample_png_bytes), consolidation.facts, "sess-1"
        )
        assert report.overall_score == pytest.approx(0.72)
        assert report.passed is False

    def test_explicit_verdict_kept(self, consolidation, fake_client_factory, temp_dir, sample_png_bytes):
        body = {"overall_quality_score": 0.6, "passed": True,
                "deltas": [{"metric": "edge_halo", "current_value": 2, "target_value": 1,
                            "correction_prompt": "Remove the grey halo along the hem"}]}
        client = fake_client_factory(json.dumps(body))
        report = QualityReviewer(client).review_quality(
            self._png_ref(temp_dir, sample_png_bytes), consolidation.facts, "sess-1"
        )
        assert report.passed is True
        assert report.correction_prompts == ("Remove the grey halo along the hem",)

    def test_unparsable_review(self, consolidation, fake_client_factory, temp_dir, sample_png_bytes):
        with pytest.raises(GhostPipelineError) as exc_info:
            QualityReviewer(fake_client_factory("looks great!")).review_quality(
                self._png_ref(temp_dir, sample_png_bytes), consolidation.facts, "sess-1"
            )
        assert exc_info.value.kind is ErrorKind.PARSE
        assert exc_info.value.stage is Stage.QA

    def test_transport_error_retried_with_policy(self, consolidation, fake_client_factory, temp_dir, sample_png_bytes):
        sleeps = []
        client = fake_client_factory(
            ConnectionError("connection reset"),
            json.dumps({"overall_quality_score": 0.91, "passed": True, "deltas": []}),
        )
        reviewer = QualityReviewer(client, retry=RetryPolicy(max_attempts=2, backoff_s=(1.5,), sleep=sleeps.append))
        report = reviewer.review_quality(self._png_ref(temp_dir, sample_png_bytes), consolidation.facts, "sess-1")

        assert report.passed is True
        assert client.models.generate_content.call_count == 2
        assert sleeps == [1.5]

    def test_no_retry_by_default(self, consolidation, fake_client_factory, temp_dir, sample_png_bytes):
        client = fake_client_factory(ConnectionError("connection reset"), "{}")
        with pytest.raises(GhostPipelineError) as exc_info:
            QualityReviewer(client).review_quality(
                self._png_ref(temp_dir, sample_png_bytes), consolidation.facts, "sess-1"
            )
        assert exc_info.value.kind is ErrorKind.TRANSPORT
        assert client.models.generate_content.call_count == 1
