"""
schema.py – Tolerant normalisation of model JSON into typed records
===================================================================

Model output drifts: enum values arrive in the wrong case, numbers come back as
strings, hex colours are missing or malformed, arrays contain nulls. Everything
here is total in loose mode: any JSON-like input yields a fully populated record.

Rules applied everywhere:
- absent / null fields take their declared default
- enums are "catch" coerced (case / separator normalised, else default)
- hex colours must match ``#RRGGBB``; invalid values walk an explicit fallback chain
- numeric strings are coerced, booleans are never numbers, ranges are clamped
- arrays drop null / empty / malformed entries but are never replaced wholesale

``normalize_facts(value, strict=True)`` additionally reports structurally wrong
fields as a ``SchemaValidationError`` before normalising.
"""

from __future__ import annotations

import copy
import math
import re
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import SchemaValidationError
from .models import (
    NEUTRAL_GRAY,
    AnalysisFacts,
    ColorPrecision,
    ConfidenceBreakdown,
    Conflict,
    ConstructionDetail,
    ConstructionPrecision,
    EnrichmentAnalysis,
    FabricBehavior,
    HollowRegion,
    InteriorSurface,
    LabelFound,
    MarketIntelligence,
    Palette,
    PreserveDetail,
    QADelta,
    QAReport,
    QATargets,
    RenderingGuidance,
    StructuralAnalysis,
    StructuralAsymmetry,
)

HEX_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
LABEL_TEXT_MAX = 80

# -----------------------------
# Enumerations
# -----------------------------
CATEGORIES = ("top", "bottom", "dress", "outerwear", "knitwear", "underwear", "accessory", "unknown")
WEAVE_KNIT = ("woven", "knit", "nonwoven", "unknown")
TRANSPARENCY = ("opaque", "semi_sheer", "sheer")
SURFACE_SHEEN = ("matte", "subtle_sheen", "glossy")
SHADOW_STYLES = ("soft", "medium", "hard")
LABEL_VISIBILITY = ("required", "optional")
LABEL_TYPES = ("brand", "size", "care", "composition", "origin", "price", "security_tag", "rfid", "other")
LABEL_TYPE_ALIASES = {"brand_label": "brand", "care_label": "care", "size_label": "size"}
LABEL_PRIORITIES = ("critical", "high", "normal", "low")
DETAIL_PRIORITIES = ("critical", "important", "nice_to_have")
HOLLOW_TYPES = ("neckline", "sleeves", "front_opening", "armholes", "other")
SURFACE_TYPES = (
    "lining", "inner_fabric", "facing", "collar_interior", "sleeve_interior",
    "pocket_interior", "hem_interior", "reverse_side", "other",
)
OPENING_VISIBILITY = ("fully_visible", "partially_visible", "edge_visible")
SOURCES_OF_TRUTH = ("visual", "json_a", "json_b")

COLOR_TEMPERATURE = ("warm", "cool", "neutral")
SATURATION_LEVEL = ("muted", "moderate", "vibrant")
PATTERN_DIRECTION = ("horizontal", "vertical", "diagonal", "random")
PATTERN_REPEAT = ("micro", "small", "medium", "large")
DRAPE_QUALITY = ("crisp", "flowing", "structured", "fluid", "stiff")
FABRIC_SHEEN = ("matte", "subtle_sheen", "glossy", "metallic")
TEXTURE_DEPTH = ("flat", "subtle_texture", "pronounced_texture", "heavily_textured")
WRINKLE_TENDENCY = ("wrinkle_resistant", "moderate", "wrinkles_easily")
TRANSPARENCY_LEVEL = ("opaque", "semi_opaque", "translucent", "sheer")
SEAM_VISIBILITY = ("hidden", "subtle", "visible", "decorative")
EDGE_FINISHING = ("raw", "serged", "bound", "rolled", "pinked")
HARDWARE_FINISH = ("none", "matte_metal", "polished_metal", "plastic", "fabric_covered")
CLOSURE_VISIBILITY = ("none", "hidden", "functional", "decorative")
LIGHTING_PREFERENCE = ("soft_diffused", "directional", "high_key", "dramatic")
SHADOW_BEHAVIOR = ("minimal_shadows", "soft_shadows", "defined_shadows", "dramatic_shadows")
TEXTURE_EMPHASIS = ("minimize", "subtle", "enhance", "maximize")
FIDELITY_PRIORITY = ("low", "medium", "high", "critical")
DETAIL_SHARPNESS = ("soft", "natural", "sharp", "ultra_sharp")
PRICE_TIER = ("budget", "mid_range", "premium", "luxury")
STYLE_LONGEVITY = ("trendy", "seasonal", "classic", "timeless")
CARE_COMPLEXITY = ("easy_care", "moderate_care", "delicate", "specialty_care")
SEASONS = ("spring", "summer", "fall", "winter")


# -----------------------------
# Scalar coercion
# -----------------------------
def is_hex(value: Any) -> bool:
    return isinstance(value, str) and bool(HEX_PATTERN.match(value.strip()))


def coerce_hex(value: Any, *fallbacks: Any) -> str:
    """First valid hex among ``value`` and ``fallbacks``, else neutral gray."""
    for candidate in (value,) + fallbacks:
        if is_hex(candidate):
            return candidate.strip()
    return NEUTRAL_GRAY


def optional_hex(value: Any) -> Optional[str]:
    return value.strip() if is_hex(value) else None


def _enum_token(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    token = value.strip().lower().replace("-", "_").replace(" ", "_")
    return token or None


def coerce_enum(value: Any, allowed: Sequence[str], default: str) -> str:
    token = _enum_token(value)
    return token if token in allowed else default


def optional_enum(value: Any, allowed: Sequence[str]) -> Optional[str]:
    token = _enum_token(value)
    return token if token in allowed else None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _clamp(number: float, lo: Optional[float], hi: Optional[float]) -> float:
    if lo is not None:
        number = max(lo, number)
    if hi is not None:
        number = min(hi, number)
    return number


def coerce_number(value: Any, default: float, lo: Optional[float] = None, hi: Optional[float] = None) -> float:
    number = _as_number(value)
    return default if number is None else _clamp(number, lo, hi)


def optional_number(value: Any, lo: Optional[float] = None, hi: Optional[float] = None) -> Optional[float]:
    number = _as_number(value)
    return None if number is None else _clamp(number, lo, hi)


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token in ("true", "yes", "1"):
            return True
        if token in ("false", "no", "0"):
            return False
    return default


def optional_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def coerce_str(value: Any, default: str) -> str:
    return optional_str(value) or default


def coerce_str_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return ()
    return tuple(s for s in (optional_str(v) for v in value) if s)


def coerce_bbox(value: Any) -> Optional[Tuple[float, float, float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) != 4:
        return None
    numbers = [_as_number(v) for v in value]
    if any(n is None for n in numbers):
        return None
    return tuple(_clamp(n, 0.0, 1.0) for n in numbers)  # type: ignore[return-value]


def _entries(value: Any) -> Iterable[Dict[str, Any]]:
    """Non-empty dict entries of a list; anything else yields nothing."""
    if not isinstance(value, list):
        return ()
    return (entry for entry in value if isinstance(entry, dict) and entry)


# -----------------------------
# Structural lists
# -----------------------------
def normalize_labels(value: Any) -> Tuple[LabelFound, ...]:
    labels: List[LabelFound] = []
    for entry in _entries(value):
        text = optional_str(entry.get("text"))
        raw_type = _enum_token(entry.get("type"))
        raw_type = LABEL_TYPE_ALIASES.get(raw_type, raw_type)
        legibility = entry.get("legibility", entry.get("ocr_conf"))
        labels.append(LabelFound(
            text=text[:LABEL_TEXT_MAX] if text else None,
            type=raw_type if raw_type in LABEL_TYPES else "other",
            location_hint=optional_str(
                entry.get("location_hint") or entry.get("location") or entry.get("region_hint")
            ),
            bbox_norm=coerce_bbox(entry.get("bbox_norm")),
            visible=coerce_bool(entry.get("visible"), True),
            legibility=coerce_number(legibility, 1.0, 0.0, 1.0),
            preserve=coerce_bool(entry.get("preserve"), True),
            priority=coerce_enum(entry.get("priority"), LABEL_PRIORITIES, "high"),
        ))
    return tuple(labels)


def normalize_preserve_details(value: Any) -> Tuple[PreserveDetail, ...]:
    details = []
    for entry in _entries(value):
        element = optional_str(entry.get("element"))
        if not element:
            continue
        details.append(PreserveDetail(
            element=element,
            priority=coerce_enum(entry.get("priority"), DETAIL_PRIORITIES, "important"),
            location=optional_str(entry.get("location")),
            notes=optional_str(entry.get("notes")),
        ))
    return tuple(details)


def normalize_hollow_regions(value: Any) -> Tuple[HollowRegion, ...]:
    return tuple(
        HollowRegion(
            region_type=coerce_enum(entry.get("region_type"), HOLLOW_TYPES, "other"),
            keep_hollow=coerce_bool(entry.get("keep_hollow"), True),
            inner_visible=coerce_bool(entry.get("inner_visible"), False),
            inner_description=optional_str(entry.get("inner_description")),
        )
        for entry in _entries(value)
    )


def normalize_construction_details(value: Any) -> Tuple[ConstructionDetail, ...]:
    details = []
    for entry in _entries(value):
        feature = optional_str(entry.get("feature"))
        if not feature:
            continue
        details.append(ConstructionDetail(
            feature=feature,
            silhouette_rule=optional_str(entry.get("silhouette_rule")),
            critical_for_structure=coerce_bool(entry.get("critical_for_structure"), False),
        ))
    return tuple(details)


def normalize_interior(value: Any) -> Tuple[InteriorSurface, ...]:
    return tuple(
        InteriorSurface(
            surface_type=coerce_enum(entry.get("surface_type"), SURFACE_TYPES, "other"),
            priority=coerce_enum(entry.get("priority"), DETAIL_PRIORITIES, "important"),
            location=optional_str(entry.get("location")),
            pattern_description=optional_str(entry.get("pattern_description")),
            material_description=optional_str(entry.get("material_description")),
            color_hex=optional_hex(entry.get("color_hex")),
            construction_notes=optional_str(entry.get("construction_notes")),
            edge_definition=optional_str(entry.get("edge_definition")),
            visibility_through_opening=optional_enum(
                entry.get("visibility_through_opening"), OPENING_VISIBILITY
            ),
        )
        for entry in _entries(value)
    )


# -----------------------------
# Palette
# -----------------------------
def normalize_region_hints(value: Any) -> Tuple[Tuple[str, Tuple[str, ...]], ...]:
    if not isinstance(value, dict):
        return ()
    hints: List[Tuple[str, Tuple[str, ...]]] = []
    for region, raw in value.items():
        if isinstance(raw, str):
            parts = tuple(p.strip() for p in raw.split(",") if p.strip())
        elif isinstance(raw, list):
            parts = tuple(p.strip() for p in raw if isinstance(p, str) and p.strip())
        else:
            continue
        if parts:
            hints.append((str(region), parts))
    return tuple(hints)


def normalize_palette(value: Any) -> Palette:
    """dominant → gray; accent → dominant; trim → accent → dominant."""
    raw = value if isinstance(value, dict) else {}
    dominant = coerce_hex(raw.get("dominant_hex"))
    accent = coerce_hex(raw.get("accent_hex"), dominant)
    trim = coerce_hex(raw.get("trim_hex"), accent, dominant)
    pattern_hexes = raw.get("pattern_hexes")
    return Palette(
        dominant_hex=dominant,
        accent_hex=accent,
        trim_hex=trim,
        pattern_hexes=tuple(h.strip() for h in pattern_hexes if is_hex(h)) if isinstance(pattern_hexes, list) else (),
        region_hints=normalize_region_hints(raw.get("region_hints")),
    )


# -----------------------------
# Enrichment sub-records (present-or-None)
# -----------------------------
def normalize_color_precision(value: Any) -> Optional[ColorPrecision]:
    if not isinstance(value, dict):
        return None
    return ColorPrecision(
        primary_hex=optional_hex(value.get("primary_hex")),
        secondary_hex=optional_hex(value.get("secondary_hex")),
        trim_hex=optional_hex(value.get("trim_hex")),
        color_temperature=optional_enum(value.get("color_temperature"), COLOR_TEMPERATURE),
        saturation_level=optional_enum(value.get("saturation_level"), SATURATION_LEVEL),
        pattern_direction=optional_enum(value.get("pattern_direction"), PATTERN_DIRECTION),
        pattern_repeat_size=optional_enum(value.get("pattern_repeat_size"), PATTERN_REPEAT),
    )


def normalize_fabric_behavior(value: Any) -> Optional[FabricBehavior]:
    if not isinstance(value, dict):
        return None
    return FabricBehavior(
        drape_quality=optional_enum(value.get("drape_quality"), DRAPE_QUALITY),
        surface_sheen=optional_enum(value.get("surface_sheen"), FABRIC_SHEEN),
        texture_depth=optional_enum(value.get("texture_depth"), TEXTURE_DEPTH),
        wrinkle_tendency=optional_enum(value.get("wrinkle_tendency"), WRINKLE_TENDENCY),
        transparency_level=optional_enum(value.get("transparency_level"), TRANSPARENCY_LEVEL),
    )


def normalize_construction_precision(value: Any) -> Optional[ConstructionPrecision]:
    if not isinstance(value, dict):
        return None
    return ConstructionPrecision(
        seam_visibility=optional_enum(value.get("seam_visibility"), SEAM_VISIBILITY),
        edge_finishing=optional_enum(value.get("edge_finishing"), EDGE_FINISHING),
        stitching_contrast=optional_bool(value.get("stitching_contrast")),
        hardware_finish=optional_enum(value.get("hardware_finish"), HARDWARE_FINISH),
        closure_visibility=optional_enum(value.get("closure_visibility"), CLOSURE_VISIBILITY),
    )


def normalize_rendering_guidance(value: Any) -> Optional[RenderingGuidance]:
    if not isinstance(value, dict):
        return None
    return RenderingGuidance(
        lighting_preference=optional_enum(value.get("lighting_preference"), LIGHTING_PREFERENCE),
        shadow_behavior=optional_enum(value.get("shadow_behavior"), SHADOW_BEHAVIOR),
        texture_emphasis=optional_enum(value.get("texture_emphasis"), TEXTURE_EMPHASIS),
        color_fidelity_priority=optional_enum(value.get("color_fidelity_priority"), FIDELITY_PRIORITY),
        detail_sharpness=optional_enum(value.get("detail_sharpness"), DETAIL_SHARPNESS),
    )


def normalize_market_intelligence(value: Any) -> Optional[MarketIntelligence]:
    if not isinstance(value, dict):
        return None
    seasons = value.get("target_season")
    return MarketIntelligence(
        price_tier=optional_enum(value.get("price_tier"), PRICE_TIER),
        style_longevity=optional_enum(value.get("style_longevity"), STYLE_LONGEVITY),
        care_complexity=optional_enum(value.get("care_complexity"), CARE_COMPLEXITY),
        target_season=tuple(
            s for s in (optional_enum(v, SEASONS) for v in seasons) if s
        ) if isinstance(seasons, list) else (),
    )


def normalize_confidence_breakdown(value: Any) -> Optional[ConfidenceBreakdown]:
    if not isinstance(value, dict):
        return None
    return ConfidenceBreakdown(
        color_confidence=optional_number(value.get("color_confidence"), 0.0, 1.0),
        fabric_confidence=optional_number(value.get("fabric_confidence"), 0.0, 1.0),
        construction_confidence=optional_number(value.get("construction_confidence"), 0.0, 1.0),
        overall_confidence=optional_number(value.get("overall_confidence"), 0.0, 1.0),
    )


# -----------------------------
# Misc facts fields
# -----------------------------
def normalize_qa_targets(value: Any) -> QATargets:
    raw = value if isinstance(value, dict) else {}
    return QATargets(
        delta_e_max=coerce_number(raw.get("deltaE_max", raw.get("delta_e_max")), 3.0, 0.0),
        edge_halo_max_pct=coerce_number(raw.get("edge_halo_max_pct"), 1.0, 0.0, 100.0),
        symmetry_tolerance_pct=coerce_number(raw.get("symmetry_tolerance_pct"), 3.0, 0.0, 100.0),
        min_resolution_px=int(coerce_number(raw.get("min_resolution_px"), 2000, 1)),
    )


def normalize_must_not(value: Any) -> Tuple[str, ...]:
    """Accepts a list, ``{"must_not": [...]}`` or null."""
    if isinstance(value, dict):
        value = value.get("must_not")
    return coerce_str_list(value) if isinstance(value, list) else ()


def normalize_structural_asymmetry(value: Any) -> StructuralAsymmetry:
    raw = value if isinstance(value, dict) else {}
    return StructuralAsymmetry(
        expected=coerce_bool(raw.get("expected"), False),
        regions=coerce_str_list(raw.get("regions")),
    )


# -----------------------------
# Strict structural check
# -----------------------------
_STRING_FIELDS = ("silhouette", "pattern", "print_scale", "material", "edge_finish", "view", "notes")
_ENUM_FIELDS = (
    "category_generic", "weave_knit", "transparency", "surface_sheen", "shadow_style",
    "label_visibility", "lighting_preference", "shadow_behavior",
)
_LIST_FIELDS = (
    "labels_found", "preserve_details", "hollow_regions", "construction_details",
    "interior_analysis",
)
_SUB_RECORDS = (
    "color_precision", "fabric_behavior", "construction_precision", "rendering_guidance",
    "market_intelligence", "confidence_breakdown", "qa_targets", "structural_asymmetry",
)
_REQUIRED_KEYS = {"preserve_details": "element", "construction_details": "feature"}


def _check_number(issues: List[str], path: str, value: Any, lo: float, hi: float) -> None:
    if value is None:
        return
    number = _as_number(value)
    if number is None:
        issues.append(f"{path}: expected number, got {type(value).__name__}")
    elif not lo <= number <= hi:
        issues.append(f"{path}: {number} outside [{lo}, {hi}]")


def find_schema_issues(value: Any) -> List[str]:
    """Structural problems that strict validation rejects (enum drift is tolerated)."""
    if not isinstance(value, dict):
        return [f"$: expected object, got {type(value).__name__}"]

    issues: List[str] = []
    for key in _STRING_FIELDS + _ENUM_FIELDS:
        raw = value.get(key)
        if raw is not None and not isinstance(raw, str):
            issues.append(f"{key}: expected string, got {type(raw).__name__}")

    for key in ("required_components", "forbidden_components"):
        raw = value.get(key)
        if raw is not None and not isinstance(raw, list):
            issues.append(f"{key}: expected array")

    for key in _LIST_FIELDS:
        raw = value.get(key)
        if raw is None:
            continue
        if not isinstance(raw, list):
            issues.append(f"{key}: expected array, got {type(raw).__name__}")
            continue
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                issues.append(f"{key}[{i}]: expected object")
            elif key in _REQUIRED_KEYS and not optional_str(entry.get(_REQUIRED_KEYS[key])):
                issues.append(f"{key}[{i}].{_REQUIRED_KEYS[key]}: required")
            elif key == "interior_analysis" and entry.get("color_hex") is not None and not is_hex(entry["color_hex"]):
                issues.append(f"{key}[{i}].color_hex: invalid hex {entry['color_hex']!r}")

    palette = value.get("palette")
    if not isinstance(palette, dict):
        issues.append("palette: required object")
    else:
        for key in ("dominant_hex", "accent_hex", "trim_hex"):
            raw = palette.get(key)
            if raw is not None and not is_hex(raw):
                issues.append(f"palette.{key}: invalid hex {raw!r}")
        if palette.get("pattern_hexes") is not None and not isinstance(palette["pattern_hexes"], list):
            issues.append("palette.pattern_hexes: expected array")
        if palette.get("region_hints") is not None and not isinstance(palette["region_hints"], dict):
            issues.append("palette.region_hints: expected object")

    for key in _SUB_RECORDS:
        raw = value.get(key)
        if raw is not None and not isinstance(raw, dict):
            issues.append(f"{key}: expected object or null")

    _check_number(issues, "drape_stiffness", value.get("drape_stiffness"), 0.0, 1.0)
    _check_number(issues, "framing_margin_pct", value.get("framing_margin_pct"), 2.0, 12.0)

    must_not = value.get("safety") if value.get("safety") is not None else value.get("must_not")
    if must_not is not None and not isinstance(must_not, (list, dict)):
        issues.append("safety: expected array or object")
    return issues


# -----------------------------
# Top-level records
# -----------------------------
def normalize_facts(value: Any, strict: bool = False) -> AnalysisFacts:
    """Normalise a facts object. Loose mode never raises."""
    if strict:
        issues = find_schema_issues(value)
        if issues:
            raise SchemaValidationError(issues)

    raw: Dict[str, Any] = value if isinstance(value, dict) else {}
    lighting = raw.get("lighting_preference")
    shadow = raw.get("shadow_behavior")
    return AnalysisFacts(
        category_generic=coerce_enum(raw.get("category_generic"), CATEGORIES, "unknown"),
        silhouette=coerce_str(raw.get("silhouette"), "generic_silhouette"),
        required_components=coerce_str_list(raw.get("required_components")),
        forbidden_components=coerce_str_list(raw.get("forbidden_components")),
        labels_found=normalize_labels(raw.get("labels_found")),
        preserve_details=normalize_preserve_details(raw.get("preserve_details")),
        hollow_regions=normalize_hollow_regions(raw.get("hollow_regions")),
        construction_details=normalize_construction_details(raw.get("construction_details")),
        interior_analysis=normalize_interior(raw.get("interior_analysis")),
        palette=normalize_palette(raw.get("palette")),
        pattern=coerce_str(raw.get("pattern"), "unknown"),
        print_scale=coerce_str(raw.get("print_scale"), "unknown"),
        material=coerce_str(raw.get("material"), "unspecified_material"),
        weave_knit=coerce_enum(raw.get("weave_knit"), WEAVE_KNIT, "unknown"),
        drape_stiffness=coerce_number(raw.get("drape_stiffness"), 0.4, 0.0, 1.0),
        transparency=coerce_enum(raw.get("transparency"), TRANSPARENCY, "opaque"),
        surface_sheen=coerce_enum(raw.get("surface_sheen"), SURFACE_SHEEN, "matte"),
        edge_finish=coerce_str(raw.get("edge_finish"), "unknown"),
        color_precision=normalize_color_precision(raw.get("color_precision")),
        fabric_behavior=normalize_fabric_behavior(raw.get("fabric_behavior")),
        construction_precision=normalize_construction_precision(raw.get("construction_precision")),
        rendering_guidance=normalize_rendering_guidance(raw.get("rendering_guidance")),
        market_intelligence=normalize_market_intelligence(raw.get("market_intelligence")),
        confidence_breakdown=normalize_confidence_breakdown(raw.get("confidence_breakdown")),
        view=coerce_str(raw.get("view"), "front"),
        framing_margin_pct=coerce_number(raw.get("framing_margin_pct"), 6.0, 2.0, 12.0),
        shadow_style=coerce_enum(raw.get("shadow_style"), SHADOW_STYLES, "soft"),
        lighting_preference=optional_enum(lighting, LIGHTING_PREFERENCE),
        shadow_behavior=optional_enum(shadow, SHADOW_BEHAVIOR),
        qa_targets=normalize_qa_targets(raw.get("qa_targets")),
        must_not=normalize_must_not(raw.get("safety") if raw.get("safety") is not None else raw.get("must_not")),
        label_visibility=coerce_enum(raw.get("label_visibility"), LABEL_VISIBILITY, "required"),
        structural_asymmetry=normalize_structural_asymmetry(raw.get("structural_asymmetry")),
        notes=optional_str(raw.get("notes")),
    )


def _meta(raw: Dict[str, Any]) -> Dict[str, Any]:
    meta = raw.get("meta")
    return meta if isinstance(meta, dict) else {}


def normalize_structural_analysis(value: Any, session_id: str) -> StructuralAnalysis:
    raw: Dict[str, Any] = value if isinstance(value, dict) else {}
    return StructuralAnalysis(
        session_id=coerce_str(_meta(raw).get("session_id"), session_id),
        category_generic=coerce_enum(raw.get("category_generic"), CATEGORIES, "unknown"),
        labels_found=normalize_labels(raw.get("labels_found")),
        preserve_details=normalize_preserve_details(raw.get("preserve_details")),
        hollow_regions=normalize_hollow_regions(raw.get("hollow_regions")),
        construction_details=normalize_construction_details(raw.get("construction_details")),
        interior_analysis=normalize_interior(raw.get("interior_analysis")),
        special_handling=optional_str(raw.get("special_handling")),
        raw=MappingProxyType(copy.deepcopy(raw)),
    )


def normalize_enrichment_analysis(value: Any, session_id: str) -> EnrichmentAnalysis:
    raw: Dict[str, Any] = value if isinstance(value, dict) else {}
    meta = _meta(raw)
    return EnrichmentAnalysis(
        session_id=coerce_str(meta.get("session_id"), session_id),
        base_analysis_ref=optional_str(meta.get("base_analysis_ref")),
        color_precision=normalize_color_precision(raw.get("color_precision")),
        fabric_behavior=normalize_fabric_behavior(raw.get("fabric_behavior")),
        construction_precision=normalize_construction_precision(raw.get("construction_precision")),
        rendering_guidance=normalize_rendering_guidance(raw.get("rendering_guidance")),
        market_intelligence=normalize_market_intelligence(raw.get("market_intelligence")),
        confidence_breakdown=normalize_confidence_breakdown(raw.get("confidence_breakdown")),
        raw=MappingProxyType(copy.deepcopy(raw)),
    )


def normalize_conflicts(value: Any) -> Tuple[Conflict, ...]:
    """Conflict entries may be objects or bare field names."""
    if not isinstance(value, list):
        return ()
    conflicts = []
    for entry in value:
        if isinstance(entry, str) and entry.strip():
            conflicts.append(Conflict(field=entry.strip()))
        elif isinstance(entry, dict):
            name = optional_str(entry.get("field"))
            if not name:
                continue
            conflicts.append(Conflict(
                field=name,
                json_a=entry.get("json_a"),
                json_b=entry.get("json_b"),
                resolution=optional_str(entry.get("resolution")),
                source_of_truth=optional_enum(entry.get("source_of_truth"), SOURCES_OF_TRUTH),
                confidence=coerce_number(entry.get("confidence"), 0.5, 0.0, 1.0),
            ))
    return tuple(conflicts)


def normalize_qa_report(value: Any) -> QAReport:
    raw: Dict[str, Any] = value if isinstance(value, dict) else {}
    deltas = []
    for entry in _entries(raw.get("deltas")):
        metric = optional_str(entry.get("metric"))
        if not metric:
            continue
        deltas.append(QADelta(
            metric=metric,
            current_value=optional_number(entry.get("current_value")),
            target_value=optional_number(entry.get("target_value")),
            correction_prompt=optional_str(entry.get("correction_prompt")),
        ))
    return QAReport(
        overall_score=coerce_number(
            raw.get("overall_quality_score", raw.get("overall_score")), 0.0, 0.0, 1.0
        ),
        passed=coerce_bool(raw.get("passed"), False),
        deltas=tuple(deltas),
    )
