"""
control_block.py – Render directives derived from consolidated facts
====================================================================

``derive_control_block`` is pure: same facts in, same control block out, no
I/O and no clock. The renderer only ever sees what is derivable from facts.
"""

from __future__ import annotations

from .models import AnalysisFacts, ControlBlock
from .schema import normalize_palette

BAN_LIST = ("mannequins", "humans", "props", "reflections")
LABEL_LEGIBILITY_MIN = 0.85
DEFAULT_LIGHTING = "soft_diffused"


def derive_control_block(facts: AnalysisFacts) -> ControlBlock:
    keep = [label for label in facts.labels_found if label.preserve and label.visible]
    # critical labels first, stable otherwise
    keep.sort(key=lambda label: 0 if label.priority == "critical" else 1)

    must = ["pure_white_background"]
    if facts.hollow_regions:
        must.append("render_hollows")
    if keep:
        must.extend(("preserve_brand_labels", "preserve_label_text"))

    lighting = facts.lighting_preference
    if lighting is None and facts.rendering_guidance is not None:
        lighting = facts.rendering_guidance.lighting_preference

    palette = facts.palette
    return ControlBlock(
        must=tuple(must),
        ban=BAN_LIST,
        label_keep_list=tuple(label.text for label in keep if label.text),
        label_bbox_hard_hints=tuple(label.bbox_norm for label in keep if label.bbox_norm),
        label_legibility_min=LABEL_LEGIBILITY_MIN if keep else None,
        category_generic=facts.category_generic,
        silhouette=facts.silhouette,
        required_components=facts.required_components,
        forbidden_components=facts.forbidden_components,
        palette=normalize_palette({
            "dominant_hex": palette.dominant_hex,
            "accent_hex": palette.accent_hex,
            "trim_hex": palette.trim_hex,
            "pattern_hexes": list(palette.pattern_hexes),
            "region_hints": palette.region_hint_map(),
        }),
        material=facts.material,
        weave_knit=facts.weave_knit,
        drape_stiffness=facts.drape_stiffness,
        transparency=facts.transparency,
        surface_sheen=facts.surface_sheen,
        edge_finish=facts.edge_finish,
        view=facts.view,
        framing_margin_pct=facts.framing_margin_pct,
        shadow_style=facts.shadow_style,
        lighting_hint=lighting or DEFAULT_LIGHTING,
        must_not=facts.must_not,
        label_visibility="required" if keep else facts.label_visibility,
        structural_asymmetry=facts.structural_asymmetry,
    )
