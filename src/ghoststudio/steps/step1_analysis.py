#!/usr/bin/env python3
"""
step1_analysis.py – Stages 1–2: Structural & Enrichment Analysis (Gemini)
=========================================================================

Two JSON-mode Gemini calls over the cleaned garment image:

- structural analysis: labels, details to preserve, hollow regions, construction,
  interior surfaces
- enrichment analysis: colour precision, fabric behaviour, construction precision,
  rendering guidance, market intelligence, confidence

Responses are unwrapped and loose-normalised; only a response with no JSON object
at all is an error.

Dependencies: google-genai requests pillow
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests
from google.genai import types

from ..errors import (
    ANALYSIS_FAILED,
    ENRICHMENT_FAILED,
    ErrorKind,
    GhostPipelineError,
    ResponseParseError,
    Stage,
)
from ..models import EnrichmentAnalysis, StructuralAnalysis
from ..schema import normalize_enrichment_analysis, normalize_structural_analysis
from ..utils.genai_helpers import blocked_reason, classify_provider_error, image_part, response_text
from ..utils.json_extract import unwrap_json_response
from ..utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.analysis")

STRUCTURAL_PROMPT = """You are a garment analyst preparing a ghost-mannequin product render.
Analyse the garment image and return ONLY a JSON object of this shape:

{
  "type": "garment_analysis",
  "meta": {"schema_version": "4.1", "session_id": "<SESSION_ID>"},
  "category_generic": "top|bottom|dress|outerwear|knitwear|underwear|accessory|unknown",
  "labels_found": [{"type": "brand|size|care|composition|origin|price|security_tag|rfid|other",
                    "location": "string", "bbox_norm": [x0, y0, x1, y1], "text": "string",
                    "ocr_conf": 0.0, "readable": true, "preserve": true,
                    "visibility": "fully_visible|partially_occluded|edge_visible"}],
  "preserve_details": [{"element": "string", "priority": "critical|important|nice_to_have",
                        "location": "string", "notes": "string"}],
  "hollow_regions": [{"region_type": "neckline|sleeves|front_opening|armholes|other",
                      "keep_hollow": true, "inner_visible": false, "inner_description": "string"}],
  "construction_details": [{"feature": "string", "silhouette_rule": "string",
                            "critical_for_structure": false}],
  "interior_analysis": [{"surface_type": "lining|inner_fabric|facing|collar_interior|sleeve_interior|pocket_interior|hem_interior|reverse_side|other",
                         "priority": "critical|important|nice_to_have", "location": "string",
                         "pattern_description": "string", "material_description": "string",
                         "color_hex": "#RRGGBB", "visibility_through_opening": "fully_visible|partially_visible|edge_visible"}],
  "special_handling": "string"
}

Rules:
- bbox_norm values are normalised to [0, 1] relative to the image.
- Transcribe label text exactly; never invent text you cannot read.
- Use empty arrays when nothing applies. Do not add keys."""

ENRICHMENT_PROMPT = """You are a textile and colour specialist refining a garment analysis
(base analysis ref: <BASE_REF>). Study the garment image and return ONLY a JSON object:

{
  "type": "garment_enrichment_focused",
  "meta": {"schema_version": "4.3", "session_id": "<SESSION_ID>", "base_analysis_ref": "<BASE_REF>"},
  "color_precision": {"primary_hex": "#RRGGBB", "secondary_hex": "#RRGGBB", "trim_hex": "#RRGGBB",
                      "color_temperature": "warm|cool|neutral", "saturation_level": "muted|moderate|vibrant",
                      "pattern_direction": "horizontal|vertical|diagonal|random",
                      "pattern_repeat_size": "micro|small|medium|large"},
  "fabric_behavior": {"drape_quality": "crisp|flowing|structured|fluid|stiff",
                      "surface_sheen": "matte|subtle_sheen|glossy|metallic",
                      "texture_depth": "flat|subtle_texture|pronounced_texture|heavily_textured",
                      "wrinkle_tendency": "wrinkle_resistant|moderate|wrinkles_easily",
                      "transparency_level": "opaque|semi_opaque|translucent|sheer"},
  "construction_precision": {"seam_visibility": "hidden|subtle|visible|decorative",
                             "edge_finishing": "raw|serged|bound|rolled|pinked",
                             "stitching_contrast": false,
                             "hardware_finish": "none|matte_metal|polished_metal|plastic|fabric_covered",
                             "closure_visibility": "none|hidden|functional|decorative"},
  "rendering_guidance": {"lighting_preference": "soft_diffused|directional|high_key|dramatic",
                         "shadow_behavior": "minimal_shadows|soft_shadows|defined_shadows|dramatic_shadows",
                         "texture_emphasis": "minimize|subtle|enhance|maximize",
                         "color_fidelity_priority": "low|medium|high|critical",
                         "detail_sharpness": "soft|natural|sharp|ultra_sharp"},
  "market_intelligence": {"price_tier": "budget|mid_range|premium|luxury",
                          "style_longevity": "trendy|seasonal|classic|timeless",
                          "care_complexity": "easy_care|moderate_care|delicate|specialty_care",
                          "target_season": ["spring|summer|fall|winter"]},
  "confidence_breakdown": {"color_confidence": 0.0, "fabric_confidence": 0.0,
                           "construction_confidence": 0.0, "overall_confidence": 0.0}
}

Measure colours from the fabric itself, not from shadows or highlights."""


class GarmentAnalyzer:
    """Structural and enrichment analysis over one cleaned garment image."""

    def __init__(
        self,
        client: Any,
        http: Optional[requests.Session] = None,
        analysis_model: str = "gemini-2.5-flash",
        enrichment_model: str = "gemini-2.5-flash",
        temperature: float = 0.1,
        max_dimension: int = 1024,
        retry: RetryPolicy = NO_RETRY,
        enrichment_retry: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.http = http or requests.Session()
        self.analysis_model = analysis_model
        self.enrichment_model = enrichment_model
        self.temperature = temperature
        self.max_dimension = max_dimension
        self.retry = retry
        self.enrichment_retry = enrichment_retry or retry

    def analyze_structure(self, image_ref: str, session_id: str) -> StructuralAnalysis:
        prompt = STRUCTURAL_PROMPT.replace("<SESSION_ID>", session_id)
        raw = self._generate_json(
            self.analysis_model, prompt, image_ref, Stage.ANALYSIS, ANALYSIS_FAILED, session_id
        )
        analysis = normalize_structural_analysis(raw, session_id)
        logger.info(
            f"[{session_id}] Structural analysis: category={analysis.category_generic}, "
            f"{len(analysis.labels_found)} labels, {len(analysis.preserve_details)} preserve details, "
            f"{len(analysis.hollow_regions)} hollow regions"
        )
        return analysis

    def analyze_enrichment(
        self, image_ref: str, session_id: str, base_analysis_ref: Optional[str] = None
    ) -> EnrichmentAnalysis:
        base_ref = base_analysis_ref or session_id
        prompt = ENRICHMENT_PROMPT.replace("<SESSION_ID>", session_id).replace("<BASE_REF>", base_ref)
        raw = self._generate_json(
            self.enrichment_model, prompt, image_ref, Stage.ENRICHMENT, ENRICHMENT_FAILED, session_id
        )
        enrichment = normalize_enrichment_analysis(raw, session_id)
        cp = enrichment.color_precision
        logger.info(
            f"[{session_id}] Enrichment analysis: primary={cp.primary_hex if cp else None}, "
            f"fabric={'yes' if enrichment.fabric_behavior else 'no'}"
        )
        return enrichment

    # -----------------------------
    # Internals
    # -----------------------------
    def _generate_json(
        self, model: str, prompt: str, image_ref: str, stage: Stage, reason: str, session_id: str
    ) -> dict:
        try:
            part = image_part(image_ref, self.http, max_dimension=self.max_dimension)
        except GhostPipelineError as e:
            raise e.with_stage(stage)

        config = types.GenerateContentConfig(
            temperature=self.temperature,
            response_mime_type="application/json",
        )

        def _call() -> str:
            start = time.perf_counter()
            try:
                response = self.client.models.generate_content(model=model, contents=[prompt, part], config=config)
            except Exception as e:
                raise classify_provider_error(e, stage, reason) from e
            block = blocked_reason(response)
            if block:
                raise GhostPipelineError(
                    f"{stage.value} blocked by provider: {block}", ErrorKind.CONTENT_BLOCKED, stage, reason
                )
            logger.debug(f"[{session_id}] {model} responded in {(time.perf_counter() - start) * 1000:.0f}ms")
            return response_text(response)

        policy = self.enrichment_retry if stage is Stage.ENRICHMENT else self.retry
        text = policy.call(_call, description=f"{stage.value} ({model})")
        try:
            return unwrap_json_response(text)
        except ResponseParseError as e:
            raise GhostPipelineError(f"{stage.value} returned unparsable output: {e}", ErrorKind.PARSE, stage, reason) from e
