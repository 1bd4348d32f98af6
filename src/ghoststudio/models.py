"""
models.py – Records shared by the pipeline stages
=================================================

Facts records are frozen dataclasses built once by the normaliser (``schema.py``)
and never mutated afterwards; list-valued fields are tuples. The session and
result records at the bottom are the orchestrator's mutable bookkeeping.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorKind, GhostPipelineError, Stage

NEUTRAL_GRAY = "#888888"


# -----------------------------
# Facts building blocks
# -----------------------------
@dataclass(frozen=True)
class LabelFound:
    text: Optional[str] = None
    type: str = "other"
    location_hint: Optional[str] = None
    bbox_norm: Optional[Tuple[float, float, float, float]] = None
    visible: bool = True
    legibility: float = 1.0
    preserve: bool = True
    priority: str = "high"


@dataclass(frozen=True)
class PreserveDetail:
    element: str
    priority: str = "important"
    location: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class HollowRegion:
    region_type: str = "other"
    keep_hollow: bool = True
    inner_visible: bool = False
    inner_description: Optional[str] = None


@dataclass(frozen=True)
class ConstructionDetail:
    feature: str
    silhouette_rule: Optional[str] = None
    critical_for_structure: bool = False


@dataclass(frozen=True)
class InteriorSurface:
    surface_type: str = "other"
    priority: str = "important"
    location: Optional[str] = None
    pattern_description: Optional[str] = None
    material_description: Optional[str] = None
    color_hex: Optional[str] = None
    construction_notes: Optional[str] = None
    edge_definition: Optional[str] = None
    visibility_through_opening: Optional[str] = None


@dataclass(frozen=True)
class Palette:
    dominant_hex: str = NEUTRAL_GRAY
    accent_hex: str = NEUTRAL_GRAY
    trim_hex: str = NEUTRAL_GRAY
    pattern_hexes: Tuple[str, ...] = ()
    # (region, colour names) pairs in model order
    region_hints: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    def region_hint_map(self) -> Dict[str, List[str]]:
        return {region: list(colours) for region, colours in self.region_hints}

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["region_hints"] = self.region_hint_map()
        return payload


@dataclass(frozen=True)
class StructuralAsymmetry:
    expected: bool = False
    regions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QATargets:
    delta_e_max: float = 3.0
    edge_halo_max_pct: float = 1.0
    symmetry_tolerance_pct: float = 3.0
    min_resolution_px: int = 2000


# -----------------------------
# Enrichment sub-records
# -----------------------------
@dataclass(frozen=True)
class ColorPrecision:
    primary_hex: Optional[str] = None
    secondary_hex: Optional[str] = None
    trim_hex: Optional[str] = None
    color_temperature: Optional[str] = None
    saturation_level: Optional[str] = None
    pattern_direction: Optional[str] = None
    pattern_repeat_size: Optional[str] = None


@dataclass(frozen=True)
class FabricBehavior:
    drape_quality: Optional[str] = None
    surface_sheen: Optional[str] = None
    texture_depth: Optional[str] = None
    wrinkle_tendency: Optional[str] = None
    transparency_level: Optional[str] = None


@dataclass(frozen=True)
class ConstructionPrecision:
    seam_visibility: Optional[str] = None
    edge_finishing: Optional[str] = None
    stitching_contrast: Optional[bool] = None
    hardware_finish: Optional[str] = None
    closure_visibility: Optional[str] = None


@dataclass(frozen=True)
class RenderingGuidance:
    lighting_preference: Optional[str] = None
    shadow_behavior: Optional[str] = None
    texture_emphasis: Optional[str] = None
    color_fidelity_priority: Optional[str] = None
    detail_sharpness: Optional[str] = None


@dataclass(frozen=True)
class MarketIntelligence:
    price_tier: Optional[str] = None
    style_longevity: Optional[str] = None
    care_complexity: Optional[str] = None
    target_season: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfidenceBreakdown:
    color_confidence: Optional[float] = None
    fabric_confidence: Optional[float] = None
    construction_confidence: Optional[float] = None
    overall_confidence: Optional[float] = None


# -----------------------------
# Unified facts / control block
# -----------------------------
@dataclass(frozen=True)
class AnalysisFacts:
    """The reconciled garment specification that drives synthesis."""

    category_generic: str = "unknown"
    silhouette: str = "generic_silhouette"
    required_components: Tuple[str, ...] = ()
    forbidden_components: Tuple[str, ...] = ()

    labels_found: Tuple[LabelFound, ...] = ()
    preserve_details: Tuple[PreserveDetail, ...] = ()
    hollow_regions: Tuple[HollowRegion, ...] = ()
    construction_details: Tuple[ConstructionDetail, ...] = ()
    interior_analysis: Tuple[InteriorSurface, ...] = ()

    palette: Palette = field(default_factory=Palette)
    pattern: str = "unknown"
    print_scale: str = "unknown"
    material: str = "unspecified_material"
    weave_knit: str = "unknown"
    drape_stiffness: float = 0.4
    transparency: str = "opaque"
    surface_sheen: str = "matte"
    edge_finish: str = "unknown"

    color_precision: Optional[ColorPrecision] = None
    fabric_behavior: Optional[FabricBehavior] = None
    construction_precision: Optional[ConstructionPrecision] = None
    rendering_guidance: Optional[RenderingGuidance] = None
    market_intelligence: Optional[MarketIntelligence] = None
    confidence_breakdown: Optional[ConfidenceBreakdown] = None

    view: str = "front"
    framing_margin_pct: float = 6.0
    shadow_style: str = "soft"
    lighting_preference: Optional[str] = None
    shadow_behavior: Optional[str] = None

    qa_targets: QATargets = field(default_factory=QATargets)
    must_not: Tuple[str, ...] = ()
    label_visibility: str = "required"
    structural_asymmetry: StructuralAsymmetry = field(default_factory=StructuralAsymmetry)
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["palette"] = self.palette.to_dict()
        return payload


@dataclass(frozen=True)
class ControlBlock:
    """Render directives derived purely from ``AnalysisFacts``."""

    must: Tuple[str, ...]
    ban: Tuple[str, ...]
    label_keep_list: Tuple[str, ...]
    label_bbox_hard_hints: Tuple[Tuple[float, float, float, float], ...]
    label_legibility_min: Optional[float]
    category_generic: str
    silhouette: str
    required_components: Tuple[str, ...]
    forbidden_components: Tuple[str, ...]
    palette: Palette
    material: str
    weave_knit: str
    drape_stiffness: float
    transparency: str
    surface_sheen: str
    edge_finish: str
    view: str
    framing_margin_pct: float
    shadow_style: str
    lighting_hint: str
    must_not: Tuple[str, ...]
    label_visibility: str
    structural_asymmetry: StructuralAsymmetry

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["palette"] = self.palette.to_dict()
        return payload


@dataclass(frozen=True)
class Conflict:
    field: str
    json_a: Any = None
    json_b: Any = None
    resolution: Optional[str] = None
    source_of_truth: Optional[str] = None
    confidence: float = 0.5


@dataclass(frozen=True)
class ConsolidationOutput:
    facts: AnalysisFacts
    control_block: ControlBlock
    conflicts_found: Tuple[Conflict, ...]
    session_id: str
    timestamp: str
    source: str = "model"
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facts_v3": self.facts.to_dict(),
            "control_block": self.control_block.to_dict(),
            "conflicts_found": [asdict(c) for c in self.conflicts_found],
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "source": self.source,
            "processing_time_ms": self.processing_time_ms,
        }


# -----------------------------
# Source documents
# -----------------------------
@dataclass(frozen=True)
class StructuralAnalysis:
    """Loose-normalised structural analysis (document A)."""

    session_id: str
    category_generic: str = "unknown"
    labels_found: Tuple[LabelFound, ...] = ()
    preserve_details: Tuple[PreserveDetail, ...] = ()
    hollow_regions: Tuple[HollowRegion, ...] = ()
    construction_details: Tuple[ConstructionDetail, ...] = ()
    interior_analysis: Tuple[InteriorSurface, ...] = ()
    special_handling: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False, repr=False)


@dataclass(frozen=True)
class EnrichmentAnalysis:
    """Loose-normalised enrichment analysis (document B)."""

    session_id: str
    base_analysis_ref: Optional[str] = None
    color_precision: Optional[ColorPrecision] = None
    fabric_behavior: Optional[FabricBehavior] = None
    construction_precision: Optional[ConstructionPrecision] = None
    rendering_guidance: Optional[RenderingGuidance] = None
    market_intelligence: Optional[MarketIntelligence] = None
    confidence_breakdown: Optional[ConfidenceBreakdown] = None
    raw: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False, repr=False)


# -----------------------------
# Stage results
# -----------------------------
@dataclass(frozen=True)
class QADelta:
    metric: str
    current_value: Optional[float] = None
    target_value: Optional[float] = None
    correction_prompt: Optional[str] = None


@dataclass(frozen=True)
class QAReport:
    overall_score: float = 0.0
    passed: bool = False
    deltas: Tuple[QADelta, ...] = ()

    @property
    def correction_prompts(self) -> Tuple[str, ...]:
        return tuple(d.correction_prompt for d in self.deltas if d.correction_prompt)


@dataclass(frozen=True)
class BackgroundRemovalResult:
    cleaned_image_url: str
    processing_time_ms: float = 0.0


@dataclass(frozen=True)
class RenderResult:
    render_url: str
    processing_time_ms: float = 0.0


# -----------------------------
# Request
# -----------------------------
OUTPUT_SIZES = ("1024x1024", "2048x2048")
BACKGROUND_COLORS = ("white", "transparent")


@dataclass(frozen=True)
class RequestOptions:
    preserve_labels: bool = True
    output_size: str = "2048x2048"
    background_color: str = "white"

    @property
    def output_px(self) -> int:
        return int(self.output_size.split("x")[0])


@dataclass(frozen=True)
class GhostRequest:
    flatlay: str
    on_model: Optional[str] = None
    options: RequestOptions = field(default_factory=RequestOptions)

    @classmethod
    def from_dict(cls, payload: Any) -> "GhostRequest":
        """Validate an incoming request body (camelCase or snake_case keys)."""
        if not isinstance(payload, dict):
            raise GhostPipelineError("Request body must be a JSON object", ErrorKind.VALIDATION)

        flatlay = payload.get("flatlay")
        if not isinstance(flatlay, str) or not flatlay.strip():
            raise GhostPipelineError("Missing required field: flatlay", ErrorKind.VALIDATION)

        on_model = payload.get("onModel", payload.get("on_model"))
        if on_model is not None and (not isinstance(on_model, str) or not on_model.strip()):
            raise GhostPipelineError("onModel must be a non-empty string", ErrorKind.VALIDATION)

        raw_opts = payload.get("options") or {}
        if not isinstance(raw_opts, dict):
            raise GhostPipelineError("options must be an object", ErrorKind.VALIDATION)

        preserve = raw_opts.get("preserveLabels", raw_opts.get("preserve_labels", True))
        if not isinstance(preserve, bool):
            raise GhostPipelineError("options.preserveLabels must be a boolean", ErrorKind.VALIDATION)

        size = raw_opts.get("outputSize", raw_opts.get("output_size", "2048x2048"))
        if size not in OUTPUT_SIZES:
            raise GhostPipelineError(
                f"options.outputSize must be one of {', '.join(OUTPUT_SIZES)}", ErrorKind.VALIDATION
            )

        background = raw_opts.get("backgroundColor", raw_opts.get("background_color", "white"))
        if background not in BACKGROUND_COLORS:
            raise GhostPipelineError(
                f"options.backgroundColor must be one of {', '.join(BACKGROUND_COLORS)}",
                ErrorKind.VALIDATION,
            )

        return cls(
            flatlay=flatlay.strip(),
            on_model=on_model.strip() if on_model else None,
            options=RequestOptions(preserve_labels=preserve, output_size=size, background_color=background),
        )


# -----------------------------
# Session state machine
# -----------------------------
class PipelineState(str, Enum):
    IDLE = "idle"
    BACKGROUND_REMOVAL = "background_removal"
    ANALYSIS = "analysis"
    ENRICHMENT = "enrichment"
    CONSOLIDATION = "consolidation"
    RENDERING = "rendering"
    QA_REVIEW = "qa_review"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[PipelineState, Tuple[PipelineState, ...]] = {
    PipelineState.IDLE: (PipelineState.BACKGROUND_REMOVAL, PipelineState.FAILED),
    PipelineState.BACKGROUND_REMOVAL: (PipelineState.ANALYSIS, PipelineState.FAILED),
    PipelineState.ANALYSIS: (PipelineState.ENRICHMENT, PipelineState.FAILED),
    PipelineState.ENRICHMENT: (PipelineState.CONSOLIDATION, PipelineState.FAILED),
    PipelineState.CONSOLIDATION: (PipelineState.RENDERING, PipelineState.FAILED),
    PipelineState.RENDERING: (PipelineState.QA_REVIEW, PipelineState.COMPLETED, PipelineState.FAILED),
    PipelineState.QA_REVIEW: (PipelineState.RENDERING, PipelineState.COMPLETED, PipelineState.FAILED),
    PipelineState.COMPLETED: (),
    PipelineState.FAILED: (),
}

STAGE_STATES: Dict[Stage, PipelineState] = {
    Stage.BACKGROUND_REMOVAL: PipelineState.BACKGROUND_REMOVAL,
    Stage.ANALYSIS: PipelineState.ANALYSIS,
    Stage.ENRICHMENT: PipelineState.ENRICHMENT,
    Stage.CONSOLIDATION: PipelineState.CONSOLIDATION,
    Stage.RENDERING: PipelineState.RENDERING,
    Stage.QA: PipelineState.QA_REVIEW,
}

# Wire names for metrics.stageTimings
STAGE_TIMING_KEYS: Dict[Stage, str] = {
    Stage.BACKGROUND_REMOVAL: "backgroundRemoval",
    Stage.ANALYSIS: "analysis",
    Stage.ENRICHMENT: "enrichment",
    Stage.CONSOLIDATION: "consolidation",
    Stage.RENDERING: "rendering",
    Stage.QA: "qa",
}


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PipelineSession:
    session_id: str
    state: PipelineState = PipelineState.IDLE
    stage_status: Dict[Stage, StageStatus] = field(
        default_factory=lambda: {s: StageStatus.PENDING for s in Stage}
    )
    stage_timings: Dict[Stage, float] = field(default_factory=lambda: {s: 0.0 for s in Stage})
    timing_records: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[GhostPipelineError] = None
    qa_iterations: int = 0
    render_attempts: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.perf_counter)

    cleaned_image_url: Optional[str] = None
    analysis: Optional[StructuralAnalysis] = None
    enrichment: Optional[EnrichmentAnalysis] = None
    consolidation: Optional[ConsolidationOutput] = None
    render: Optional[RenderResult] = None
    qa_report: Optional[QAReport] = None

    def transition(self, new_state: PipelineState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0


@dataclass
class GhostResult:
    session_id: str
    status: str
    processing_time_ms: float
    stage_timings: Dict[Stage, float]
    cleaned_image_url: Optional[str] = None
    render_url: Optional[str] = None
    error: Optional[GhostPipelineError] = None
    analysis: Optional[StructuralAnalysis] = None
    enrichment: Optional[EnrichmentAnalysis] = None
    consolidation: Optional[ConsolidationOutput] = None
    qa_report: Optional[QAReport] = None
    qa_iterations: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape returned to API callers."""
        payload: Dict[str, Any] = {
            "sessionId": self.session_id,
            "status": self.status,
            "metrics": {
                "processingTime": f"{self.processing_time_ms / 1000.0:.2f}s",
                "stageTimings": {STAGE_TIMING_KEYS[s]: self.stage_timings.get(s, 0.0) for s in Stage},
            },
        }
        if self.cleaned_image_url:
            payload["cleanedImageUrl"] = self.cleaned_image_url
        if self.render_url:
            payload["renderUrl"] = self.render_url
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.analysis is not None:
            payload["analysis"] = dict(self.analysis.raw)
        if self.enrichment is not None:
            payload["enrichment"] = dict(self.enrichment.raw)
        if self.consolidation is not None:
            payload["consolidation"] = self.consolidation.to_dict()
        if self.qa_report is not None:
            payload["qaReport"] = asdict(self.qa_report)
            payload["qaIterations"] = self.qa_iterations
        return payload
