#!/usr/bin/env python3
"""
step2_consolidation.py – Stage 3: Consolidation Engine
======================================================

Reconciles the structural and enrichment analyses into one ``AnalysisFacts``
record and derives the render ``ControlBlock``.

Flow:
1. build the reconciliation prompt (both documents + strict output template)
2. one reconciliation model call (JSON mode, temperature 0), bounded by the
   engine's own wall-clock budget so it falls back before the stage deadline
3. unwrap the response (fenced block → bare object → parse failure)
4. targeted repairs, strict validation, field-by-field recovery
5. deterministic fallback from the two source documents when 2–4 fail
6. control block derivation

``consolidate`` never raises.

Dependencies: google-genai
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from google.genai import types

from ..config import ConsolidationConfig
from ..control_block import derive_control_block
from ..errors import ErrorKind, GhostPipelineError, ResponseParseError, SchemaValidationError, Stage
from ..models import AnalysisFacts, Conflict, ConsolidationOutput, EnrichmentAnalysis, StructuralAnalysis
from ..schema import (
    SURFACE_SHEEN,
    normalize_conflicts,
    normalize_enrichment_analysis,
    normalize_facts,
    normalize_palette,
    normalize_structural_analysis,
)
from ..utils.genai_helpers import blocked_reason, classify_provider_error, response_text
from ..utils.image_io import is_files_api_uri
from ..utils.json_extract import unwrap_json_response
from ..utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.consolidation")

STRUCTURAL_LIST_FIELDS = (
    "interior_analysis", "labels_found", "preserve_details", "hollow_regions", "construction_details",
)
_FACTS_MARKERS = ("palette", "labels_found", "category_generic", "material", "silhouette")
_DIRECT_TRANSPARENCY = {"opaque": "opaque", "sheer": "sheer"}

FACTS_TEMPLATE: Dict[str, Any] = {
    "category_generic": "top|bottom|dress|outerwear|knitwear|underwear|accessory|unknown",
    "silhouette": None,
    "required_components": [],
    "forbidden_components": [],
    "labels_found": [],
    "preserve_details": [],
    "hollow_regions": [],
    "construction_details": [],
    "interior_analysis": [],
    "palette": {
        "dominant_hex": "#RRGGBB",
        "accent_hex": "#RRGGBB",
        "trim_hex": "#RRGGBB",
        "pattern_hexes": [],
        "region_hints": {},
    },
    "pattern": None,
    "print_scale": None,
    "material": None,
    "weave_knit": "woven|knit|nonwoven|unknown",
    "drape_stiffness": None,
    "transparency": "opaque|semi_sheer|sheer",
    "surface_sheen": "matte|subtle_sheen|glossy",
    "edge_finish": None,
    "color_precision": None,
    "fabric_behavior": None,
    "construction_precision": None,
    "rendering_guidance": None,
    "market_intelligence": None,
    "confidence_breakdown": None,
    "view": "front",
    "framing_margin_pct": 6,
    "shadow_style": "soft|medium|hard",
    "lighting_preference": None,
    "shadow_behavior": None,
    "qa_targets": {"deltaE_max": 3, "edge_halo_max_pct": 1, "symmetry_tolerance_pct": 3, "min_resolution_px": 2000},
    "safety": {"must_not": []},
    "label_visibility": "required|optional",
    "structural_asymmetry": {"expected": False, "regions": []},
    "notes": None,
}

CONFLICT_TEMPLATE = {
    "field": "palette.dominant_hex",
    "json_a": None,
    "json_b": None,
    "resolution": "string",
    "source_of_truth": "visual|json_a|json_b",
    "confidence": 0.5,
}


def build_reconciliation_prompt(
    structural: StructuralAnalysis, enrichment: EnrichmentAnalysis, image_refs: Sequence[str] = ()
) -> str:
    sections = [
        "TASK: Merge two analyses of the same garment into one unified facts record for a "
        "ghost-mannequin render.",
        "SOURCE A: STRUCTURAL ANALYSIS (authoritative for labels, details, hollows, construction, interior):\n"
        + json.dumps(dict(structural.raw), indent=2, default=str),
        "SOURCE B: ENRICHMENT ANALYSIS (authoritative for colour, fabric, rendering guidance):\n"
        + json.dumps(dict(enrichment.raw), indent=2, default=str),
        "RULES:\n" + "\n".join(f"- {rule}" for rule in (
            "Copy labels_found, preserve_details, hollow_regions, construction_details and interior_analysis from A.",
            "Derive palette from B.color_precision; hex colours must be #RRGGBB.",
            "Where A and B disagree, pick one value and record the disagreement in conflicts_found.",
            "Every key of the template must be present; use null for unknown values.",
            "Do not invent keys and do not invent label text.",
            f"{len(image_refs)} reference image(s) accompany this request; prefer what is visible.",
        )),
        "OUTPUT TEMPLATE (return ONLY this JSON object):\n"
        + json.dumps({"facts_v3": FACTS_TEMPLATE, "conflicts_found": [CONFLICT_TEMPLATE]}, indent=2),
    ]
    return "\n\n".join(sections)


def repair_facts(
    candidate: Dict[str, Any], structural: StructuralAnalysis, enrichment: EnrichmentAnalysis
) -> Dict[str, Any]:
    """Patch the usual gaps in a reconciled facts object before validation."""
    repaired = dict(candidate)

    for key in STRUCTURAL_LIST_FIELDS:
        current = repaired.get(key)
        source = structural.raw.get(key)
        if (not isinstance(current, list) or not current) and isinstance(source, list) and source:
            logger.debug(f"Restoring {key} from structural analysis ({len(source)} entries)")
            repaired[key] = list(source)

    palette = repaired.get("palette")
    if not isinstance(palette, dict):
        cp = enrichment.color_precision
        repaired["palette"] = {
            "dominant_hex": cp.primary_hex if cp else None,
            "accent_hex": cp.secondary_hex if cp else None,
            "trim_hex": cp.trim_hex if cp else None,
            "pattern_hexes": [],
            "region_hints": {},
        }
    else:
        palette = dict(palette)
        if not isinstance(palette.get("pattern_hexes"), list):
            palette["pattern_hexes"] = []
        if not isinstance(palette.get("region_hints"), dict):
            palette["region_hints"] = {}
        repaired["palette"] = palette

    if not repaired.get("category_generic"):
        repaired["category_generic"] = structural.category_generic
    return repaired


def build_fallback_facts(structural: StructuralAnalysis, enrichment: EnrichmentAnalysis) -> AnalysisFacts:
    """Deterministic facts from the two source documents. Makes no external calls."""
    cp = enrichment.color_precision
    fabric = enrichment.fabric_behavior
    guidance = enrichment.rendering_guidance

    transparency = "opaque"
    sheen = "matte"
    if fabric is not None:
        transparency = _DIRECT_TRANSPARENCY.get(fabric.transparency_level or "", "opaque")
        if fabric.surface_sheen in SURFACE_SHEEN:
            sheen = fabric.surface_sheen

    return AnalysisFacts(
        category_generic=structural.category_generic,
        labels_found=structural.labels_found,
        preserve_details=structural.preserve_details,
        hollow_regions=structural.hollow_regions,
        construction_details=structural.construction_details,
        interior_analysis=structural.interior_analysis,
        palette=normalize_palette({
            "dominant_hex": cp.primary_hex if cp else None,
            "accent_hex": cp.secondary_hex if cp else None,
            "trim_hex": cp.trim_hex if cp else None,
        }),
        transparency=transparency,
        surface_sheen=sheen,
        color_precision=cp,
        fabric_behavior=fabric,
        construction_precision=enrichment.construction_precision,
        rendering_guidance=guidance,
        market_intelligence=enrichment.market_intelligence,
        confidence_breakdown=enrichment.confidence_breakdown,
        lighting_preference=guidance.lighting_preference if guidance else None,
        shadow_behavior=guidance.shadow_behavior if guidance else None,
        notes=structural.special_handling,
    )


class ConsolidationEngine:
    """Reconcile structural + enrichment analyses into facts and a control block."""

    def __init__(
        self,
        client: Any,
        config: Optional[ConsolidationConfig] = None,
        model: str = "gemini-2.5-flash-lite",
        retry: RetryPolicy = NO_RETRY,
    ):
        self.client = client
        self.config = config or ConsolidationConfig()
        self.model = model
        self.retry = retry

    def consolidate(
        self,
        structural: StructuralAnalysis,
        enrichment: EnrichmentAnalysis,
        image_refs: Sequence[str] = (),
        session_id: Optional[str] = None,
    ) -> ConsolidationOutput:
        session_id = session_id or structural.session_id
        start = time.perf_counter()

        facts: Optional[AnalysisFacts] = None
        conflicts: Tuple[Conflict, ...] = ()
        source = "fallback"

        if self._should_call_model():
            try:
                text = self._call_model_within_budget(
                    build_reconciliation_prompt(structural, enrichment, image_refs), image_refs, session_id
                )
                facts, conflicts, source = self._facts_from_response(text, structural, enrichment, session_id)
            except FuturesTimeout:
                logger.warning(
                    f"[{session_id}] Reconciliation exceeded its {self.model_budget_s:.1f}s budget; using fallback"
                )
            except GhostPipelineError as e:
                logger.warning(f"[{session_id}] Reconciliation call failed ({e.kind.value}: {e.message}); using fallback")
            except ResponseParseError as e:
                logger.warning(f"[{session_id}] Reconciliation output unusable ({e}); using fallback")
            except Exception:
                logger.exception(f"[{session_id}] Unexpected error during reconciliation; using fallback")
        else:
            logger.info(f"[{session_id}] Reconciliation model disabled; using deterministic fallback")

        if facts is None:
            facts = build_fallback_facts(structural, enrichment)
            conflicts = ()
            source = "fallback"

        for conflict in conflicts:
            logger.info(
                f"[{session_id}] Conflict on {conflict.field}: resolved via "
                f"{conflict.source_of_truth or 'unspecified'} (confidence {conflict.confidence:.2f})"
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"[{session_id}] Consolidation complete via {source} in {elapsed_ms:.0f}ms")
        return ConsolidationOutput(
            facts=facts,
            control_block=derive_control_block(facts),
            conflicts_found=conflicts,
            session_id=session_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=source,
            processing_time_ms=elapsed_ms,
        )

    # -----------------------------
    # Internals
    # -----------------------------
    def _should_call_model(self) -> bool:
        if self.config.allow_model_retries:
            return True
        return self.config.reconciliation_mode != "skip"

    @property
    def model_budget_s(self) -> float:
        return self.config.model_budget_s(self.retry)

    def _call_model_within_budget(self, prompt: str, image_refs: Sequence[str], session_id: str) -> str:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"reconcile-{session_id}")
        try:
            future = executor.submit(self._call_model, prompt, image_refs)
            return future.result(timeout=self.model_budget_s)
        finally:
            # an overrunning call is abandoned, not joined
            executor.shutdown(wait=False)

    def _call_model(self, prompt: str, image_refs: Sequence[str]) -> str:
        contents: list = [prompt]
        # only already-uploaded references are attached; anything else would need a fetch here
        contents.extend(
            types.Part.from_uri(file_uri=ref, mime_type="image/png") for ref in image_refs if is_files_api_uri(ref)
        )
        config = types.GenerateContentConfig(
            temperature=0.0,
            response_mime_type="application/json",
            http_options=types.HttpOptions(timeout=int(self.config.reconcile_timeout_s * 1000)),
        )

        def _invoke() -> str:
            try:
                response = self.client.models.generate_content(model=self.model, contents=contents, config=config)
            except Exception as e:
                raise classify_provider_error(e, Stage.CONSOLIDATION) from e
            block = blocked_reason(response)
            if block:
                raise GhostPipelineError(f"Reconciliation blocked: {block}", ErrorKind.CONTENT_BLOCKED, Stage.CONSOLIDATION)
            return response_text(response)

        policy = self.retry if self.config.allow_model_retries else NO_RETRY
        return policy.call(_invoke, description="reconciliation")

    def _facts_from_response(
        self, text: str, structural: StructuralAnalysis, enrichment: EnrichmentAnalysis, session_id: str
    ) -> Tuple[AnalysisFacts, Tuple[Conflict, ...], str]:
        parsed = unwrap_json_response(text)

        candidate = parsed.get("facts_v3", parsed.get("facts"))
        if not isinstance(candidate, dict):
            if not any(key in parsed for key in _FACTS_MARKERS):
                raise ResponseParseError("reconciliation response has no facts object")
            candidate = parsed

        repaired = repair_facts(candidate, structural, enrichment)
        conflicts = normalize_conflicts(parsed.get("conflicts_found"))
        try:
            return normalize_facts(repaired, strict=True), conflicts, "model"
        except SchemaValidationError as e:
            logger.warning(f"[{session_id}] Strict validation failed, recovering field by field: {e}")
            return normalize_facts(repaired), conflicts, "recovered"


def main():
    """Run consolidation offline over two saved analysis JSON files."""
    parser = argparse.ArgumentParser(description="Consolidate structural + enrichment analyses")
    parser.add_argument("--analysis", required=True, help="Structural analysis JSON file")
    parser.add_argument("--enrichment", required=True, help="Enrichment analysis JSON file")
    parser.add_argument("--session-id", default="offline", help="Session identifier")
    parser.add_argument("--config", help="Pipeline config YAML")
    parser.add_argument("--skip-model", action="store_true", help="Deterministic fallback only, no API call")
    parser.add_argument("--out", help="Write the consolidation JSON here instead of stdout")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    from ..clients import build_clients
    from ..config import load_config

    with open(args.analysis, "r") as f:
        structural = normalize_structural_analysis(json.load(f), args.session_id)
    with open(args.enrichment, "r") as f:
        enrichment = normalize_enrichment_analysis(json.load(f), args.session_id)

    config = load_config(args.config)
    if args.skip_model:
        config.consolidation.allow_model_retries = False
        config.consolidation.reconciliation_mode = "skip"
        client = None
    else:
        client = build_clients(config).genai

    engine = ConsolidationEngine(
        client,
        config.consolidation,
        model=config.models.consolidation_model,
        retry=config.retry.policy_for(Stage.CONSOLIDATION),
    )
    output = engine.consolidate(structural, enrichment, session_id=args.session_id)

    payload = json.dumps(output.to_dict(), indent=2, default=str)
    if args.out:
        Path(args.out).write_text(payload)
        logger.info(f"Consolidation written to {args.out}")
    else:
        print(payload)


if __name__ == "__main__":
    main()
