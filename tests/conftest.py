"""
Pytest configuration and fixtures for the ghost-mannequin pipeline tests.
"""

import io
import time
import pytest
import tempfile
from pathlib import Path
from PIL import Image
from typing import Any, Dict, List, Optional

from ghoststudio.config import PipelineConfig
from ghoststudio.models import (
    BackgroundRemovalResult,
    QADelta,
    QAReport,
    RenderResult,
)
from ghoststudio.pipeline import StageAdapters
from ghoststudio.schema import normalize_enrichment_analysis, normalize_structural_analysis


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_png_bytes():
    """A small garment-blue PNG."""
    img = Image.new('RGB', (64, 48), color=(70, 130, 180))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def structural_json() -> Dict[str, Any]:
    """Structural analysis as the model returns it."""
    return {
        "type": "garment_analysis",
        "meta": {"schema_version": "4.1", "session_id": "sess-1"},
        "category_generic": "top",
        "labels_found": [
            {
                "type": "brand",
                "location": "inner neck",
                "bbox_norm": [0.42, 0.05, 0.58, 0.11],
                "text": "ACME",
                "ocr_conf": 0.93,
                "readable": True,
                "preserve": True,
                "visibility": "fully_visible",
            },
            {
                "type": "care_label",
                "location": "left side seam",
                "text": "Machine wash 30C",
                "ocr_conf": "0.7",
                "readable": True,
                "preserve": False,
            },
        ],
        "preserve_details": [
            {"element": "chest pocket", "priority": "critical", "location": "left chest"},
            {"element": "contrast stitching", "priority": "important"},
        ],
        "hollow_regions": [
            {"region_type": "neckline", "keep_hollow": True, "inner_visible": True,
             "inner_description": "navy back neck tape"},
        ],
        "construction_details": [
            {"feature": "set-in sleeves", "silhouette_rule": "keep shoulders square", "critical_for_structure": True},
        ],
        "interior_analysis": [
            {"surface_type": "collar_interior", "priority": "important", "color_hex": "#1B2A4A",
             "material_description": "cotton tape", "visibility_through_opening": "partially_visible"},
        ],
        "special_handling": "keep pocket flap flat",
    }


@pytest.fixture
def enrichment_json() -> Dict[str, Any]:
    """Enrichment analysis as the model returns it."""
    return {
        "type": "garment_enrichment_focused",
        "meta": {"schema_version": "4.3", "session_id": "sess-1_enrichment", "base_analysis_ref": "sess-1"},
        "color_precision": {
            "primary_hex": "#4682B4",
            "secondary_hex": "#FFFFFF",
            "color_temperature": "Cool",
            "saturation_level": "moderate",
        },
        "fabric_behavior": {
            "drape_quality": "structured",
            "surface_sheen": "subtle_sheen",
            "transparency_level": "opaque",
        },
        "construction_precision": {"seam_visibility": "subtle", "edge_finishing": "serged", "stitching_contrast": True},
        "rendering_guidance": {
            "lighting_preference": "soft_diffused",
            "shadow_behavior": "soft_shadows",
            "color_fidelity_priority": "high",
        },
        "market_intelligence": {"price_tier": "mid_range", "style_longevity": "classic", "target_season": ["spring", "summer", "monsoon"]},
        "confidence_breakdown": {"color_confidence": 0.9, "fabric_confidence": "0.8", "overall_confidence": 0.85},
    }


@pytest.fixture
def structural(structural_json):
    return normalize_structural_analysis(structural_json, "sess-1")


@pytest.fixture
def enrichment(enrichment_json):
    return normalize_enrichment_analysis(enrichment_json, "sess-1")


@pytest.fixture
def fast_config(temp_dir) -> PipelineConfig:
    """Config with short stage deadlines for orchestration tests."""
    config = PipelineConfig(fal_api_key="fal-test", gemini_api_key="gemini-test", output_dir=str(temp_dir))
    config.timeouts.background_removal = 1.0
    config.timeouts.analysis = 1.0
    config.timeouts.enrichment = 1.0
    config.timeouts.consolidation = 1.0
    config.timeouts.rendering = 1.0
    config.timeouts.qa = 1.0
    config.timeouts.upload = 0.2
    config.retry.max_quota_wait_s = 0.05
    config.consolidation.reconcile_timeout_s = 0.2
    return config


class FakeStages:
    """In-memory stand-ins for every external adapter; records each call."""

    def __init__(self, structural, enrichment, engine=None):
        self.structural = structural
        self.enrichment = enrichment
        self.engine = engine
        self.calls: List[str] = []
        self.render_corrections: List[tuple] = []
        self.render_attempts: List[int] = []
        self.qa_reports: List[QAReport] = [QAReport(overall_score=0.95, passed=True)]
        self.delays: Dict[str, float] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.uploaded: List[str] = []

    def _enter(self, name: str):
        self.calls.append(name)
        if self.delays.get(name):
            time.sleep(self.delays[name])
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def remove_background(self, image_ref):
        self._enter("background_removal")
        return BackgroundRemovalResult(cleaned_image_url=f"https://cdn.test/clean/{image_ref}", processing_time_ms=1.0)

    def analyze_structure(self, image_ref, session_id):
        self._enter("analysis")
        return self.structural

    def analyze_enrichment(self, image_ref, session_id, base_ref=None):
        self._enter("enrichment")
        return self.enrichment

    def consolidate(self, structural, enrichment, image_refs, session_id):
        self._enter("consolidation")
        return self.engine.consolidate(structural, enrichment, image_refs, session_id)

    def synthesize_image(self, cleaned_ref, consolidation, reference_ref=None, corrections=(), options=None, attempt=1):
        self.render_attempts.append(attempt)
        self._enter("rendering")
        self.render_corrections.append(tuple(corrections))
        return RenderResult(
            render_url=f"/renders/{consolidation.session_id}/render_{attempt:02d}.png", processing_time_ms=1.0
        )

    def review_quality(self, render_url, facts, session_id):
        self._enter("qa")
        time.sleep(0.005)
        if len(self.qa_reports) > 1:
            return self.qa_reports.pop(0)
        return self.qa_reports[0]

    def upload_image(self, ref, role, session_id):
        self._enter("upload")
        self.uploaded.append(ref)
        return "https://generativelanguage.googleapis.com/v1beta/files/abc123"

    def adapters(self, with_upload: bool = False) -> StageAdapters:
        return StageAdapters(
            remove_background=self.remove_background,
            analyze_structure=self.analyze_structure,
            analyze_enrichment=self.analyze_enrichment,
            consolidate=self.consolidate,
            synthesize_image=self.synthesize_image,
            review_quality=self.review_quality,
            upload_image=self.upload_image if with_upload else None,
        )


def failing_qa(score: float, prompt: str) -> QAReport:
    return QAReport(
        overall_score=score,
        passed=False,
        deltas=(QADelta(metric="deltaE", current_value=5.0, target_value=3.0, correction_prompt=prompt),),
    )


@pytest.fixture
def fake_client_factory():
    """Build a stand-in genai client whose generate_content returns given texts or raises."""
    from types import SimpleNamespace
    from unittest.mock import MagicMock

    def _factory(*outcomes):
        client = MagicMock()
        side_effects = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                side_effects.append(outcome)
            else:
                side_effects.append(SimpleNamespace(text=outcome, candidates=[], prompt_feedback=None))
        if len(side_effects) == 1 and not isinstance(side_effects[0], BaseException):
            client.models.generate_content.return_value = side_effects[0]
        else:
            client.models.generate_content.side_effect = side_effects
        return client

    return _factory


@pytest.fixture
def reconciled_text(structural_json) -> str:
    """A well-formed reconciliation response wrapped in a fenced block."""
    import json

    facts = {
        "category_generic": "top",
        "silhouette": "boxy_tee",
        "labels_found": structural_json["labels_found"],
        "preserve_details": structural_json["preserve_details"],
        "hollow_regions": structural_json["hollow_regions"],
        "construction_details": structural_json["construction_details"],
        "interior_analysis": structural_json["interior_analysis"],
        "palette": {"dominant_hex": "#4682B4", "accent_hex": "#FFFFFF", "trim_hex": None,
                    "pattern_hexes": [], "region_hints": {"collar": "navy, white"}},
        "material": "cotton jersey",
        "weave_knit": "knit",
        "drape_stiffness": "0.3",
        "transparency": "opaque",
        "surface_sheen": "Matte",
        "view": "front",
        "framing_margin_pct": 6,
        "shadow_style": "soft",
        "safety": {"must_not": ["add logos"]},
    }
    body = {
        "facts_v3": facts,
        "conflicts_found": [
            {"field": "palette.dominant_hex", "json_a": "#4682B5", "json_b": "#4682B4",
             "resolution": "use enrichment", "source_of_truth": "json_b", "confidence": "0.8"},
        ],
    }
    return "Here is the merged record:\n```json\n" + json.dumps(body) + "\n```"


@pytest.fixture
def fake_stages(structural, enrichment, fake_client_factory, reconciled_text):
    """Fake adapters backed by a real ConsolidationEngine over a canned model response."""
    from ghoststudio.steps.step2_consolidation import ConsolidationEngine

    engine = ConsolidationEngine(fake_client_factory(reconciled_text))
    return FakeStages(structural, enrichment, engine)


@pytest.fixture
def make_failing_qa():
    return failing_qa
