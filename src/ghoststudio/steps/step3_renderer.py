#!/usr/bin/env python3
"""
step3_renderer.py – Stage 4: Ghost-Mannequin Image Synthesis (Gemini image model)
=================================================================================

Turns the consolidated facts + control block into a sectioned render instruction
and asks the Gemini image model to produce the ghost-mannequin image from the
cleaned garment (plus an optional on-model reference).

Prompt sections:
- TEMPLATE / NON-NEGOTIABLE FACTS / MANDATORY STYLE GUIDE
- GARMENT-AWARE RULES / LABEL PRESERVATION / FORBIDDEN EDITS
- QA CORRECTIONS (re-renders only) / CRITICAL QUALITY CHECKS

The style guide can be overridden with a YAML file (``style_config_path``).

Dependencies: google-genai pillow pyyaml requests
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests
import yaml
from google.genai import types

from ..errors import QUOTA_EXCEEDED, RENDERING_FAILED, ErrorKind, GhostPipelineError, Stage
from ..models import ConsolidationOutput, RenderResult, RequestOptions
from ..utils.genai_helpers import blocked_reason, classify_provider_error, image_part, inline_images
from ..utils.image_io import save_png
from ..utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.renderer")


class RenderPromptBuilder:
    """Sectioned render instruction built only from consolidation output."""

    def __init__(self, style_config_path: Optional[Path] = None):
        if style_config_path and Path(style_config_path).exists():
            with open(style_config_path, "r") as f:
                self.style_config = yaml.safe_load(f) or {}
            logger.info(f"Loaded render style config from {style_config_path}")
        else:
            self.style_config = self._default_style_config()

    def build(
        self,
        consolidation: ConsolidationOutput,
        options: Optional[RequestOptions] = None,
        corrections: Sequence[str] = (),
    ) -> str:
        options = options or RequestOptions()
        sections = [
            self._build_template_section(consolidation),
            self._build_facts_section(consolidation),
            self._build_style_guide_section(consolidation, options),
            self._build_garment_rules_section(consolidation),
        ]
        if options.preserve_labels and consolidation.control_block.label_keep_list:
            sections.append(self._build_label_section(consolidation))
        sections.append(self._build_forbidden_section(consolidation))
        if corrections:
            sections.append("QA CORRECTIONS (apply to this render):\n" + "\n".join(f"- {c}" for c in corrections))
        sections.append(self._build_quality_checks_section(consolidation, options))
        return "\n\n".join(sections)

    def _build_template_section(self, consolidation: ConsolidationOutput) -> str:
        cb = consolidation.control_block
        return f"""TEMPLATE: ghost_mannequin_product_photo
SESSION: {consolidation.session_id}
DIRECTIVES_MUST: {', '.join(cb.must)}
DIRECTIVES_BAN: {', '.join(cb.ban)}"""

    def _build_facts_section(self, consolidation: ConsolidationOutput) -> str:
        cb = consolidation.control_block
        facts = consolidation.facts
        lines = [
            f"GARMENT_CATEGORY: {cb.category_generic}",
            f"SILHOUETTE: {cb.silhouette}",
            f"PRIMARY_COLOR: {cb.palette.dominant_hex}",
            f"ACCENT_COLOR: {cb.palette.accent_hex}",
            f"TRIM_COLOR: {cb.palette.trim_hex}",
            f"MATERIAL: {cb.material} ({cb.weave_knit})",
            f"DRAPE_STIFFNESS: {cb.drape_stiffness:.2f}",
            f"TRANSPARENCY: {cb.transparency}",
            f"SURFACE_SHEEN: {cb.surface_sheen}",
        ]
        if cb.palette.pattern_hexes:
            lines.append(f"PATTERN_COLORS: {', '.join(cb.palette.pattern_hexes)}")
        if facts.pattern != "unknown":
            lines.append(f"PATTERN: {facts.pattern} (scale: {facts.print_scale})")
        if cb.edge_finish != "unknown":
            lines.append(f"EDGE_FINISH: {cb.edge_finish}")
        if cb.required_components:
            lines.append(f"REQUIRED_COMPONENTS: {', '.join(cb.required_components)}")
        for detail in facts.preserve_details:
            where = f" at {detail.location}" if detail.location else ""
            lines.append(f"PRESERVE [{detail.priority}]: {detail.element}{where}")
        for surface in facts.interior_analysis:
            desc = surface.material_description or surface.pattern_description or "as photographed"
            color = f" {surface.color_hex}" if surface.color_hex else ""
            lines.append(f"INTERIOR {surface.surface_type}:{color} {desc}")
        return "NON-NEGOTIABLE FACTS:\n" + "\n".join(f"- {line}" for line in lines)

    def _build_style_guide_section(self, consolidation: ConsolidationOutput, options: RequestOptions) -> str:
        style = self.style_config.get("style_guide", {})
        cb = consolidation.control_block
        background = (
            "transparent, no backdrop" if options.background_color == "transparent"
            else style.get("background", "pure white (#FFFFFF), seamless")
        )
        return f"""MANDATORY STYLE GUIDE:
- BACKGROUND: {background}
- LIGHTING: {style.get('lighting', cb.lighting_hint.replace('_', ' ') + ', even, professional studio lighting')}
- SHADOWS: {cb.shadow_style}
- RESOLUTION: {options.output_size} pixels
- VIEW: {cb.view}
- FRAMING: {cb.framing_margin_pct:.0f}% margin on every side, garment centered
- PRESENTATION: {style.get('presentation', 'ghost mannequin effect, hollow interior visible')}"""

    def _build_garment_rules_section(self, consolidation: ConsolidationOutput) -> str:
        facts = consolidation.facts
        rules = []
        for hollow in facts.hollow_regions:
            if hollow.keep_hollow:
                inner = f"; show {hollow.inner_description}" if hollow.inner_visible and hollow.inner_description else ""
                rules.append(f"Render the {hollow.region_type.replace('_', ' ')} as an open hollow{inner}")
        for detail in facts.construction_details:
            rule = detail.silhouette_rule or "keep exactly as photographed"
            rules.append(f"{detail.feature}: {rule}")
        if facts.structural_asymmetry.expected:
            regions = ", ".join(facts.structural_asymmetry.regions) or "as photographed"
            rules.append(f"Asymmetry is intentional ({regions}); do not symmetrise")
        if not rules:
            rules.append("Fill the garment with natural volume as if worn by an invisible form")
        return "GARMENT-AWARE RULES:\n" + "\n".join(f"- {rule}" for rule in rules)

    def _build_label_section(self, consolidation: ConsolidationOutput) -> str:
        cb = consolidation.control_block
        lines = [f'Keep label text exactly: "{text}"' for text in cb.label_keep_list]
        for bbox in cb.label_bbox_hard_hints:
            lines.append(f"Label region (normalised x0,y0,x1,y1): {', '.join(f'{v:.3f}' for v in bbox)}")
        if cb.label_legibility_min is not None:
            lines.append(f"Minimum label legibility: {cb.label_legibility_min:.2f}")
        return "LABEL PRESERVATION:\n" + "\n".join(f"- {line}" for line in lines)

    def _build_forbidden_section(self, consolidation: ConsolidationOutput) -> str:
        cb = consolidation.control_block
        forbidden = list(self.style_config.get("forbidden_edits", []))
        forbidden.extend(f"DO NOT show {item}" for item in cb.ban)
        forbidden.extend(f"DO NOT add {item}" for item in cb.forbidden_components)
        forbidden.extend(f"DO NOT {item}" for item in cb.must_not)
        forbidden.extend([
            "DO NOT alter the primary color specified in facts",
            "DO NOT invent or relocate labels, prints or hardware",
            "DO NOT modify garment proportions or silhouette",
        ])
        return "FORBIDDEN EDITS:\n" + "\n".join(f"- {rule}" for rule in forbidden)

    def _build_quality_checks_section(self, consolidation: ConsolidationOutput, options: RequestOptions) -> str:
        targets = consolidation.facts.qa_targets
        return f"""CRITICAL QUALITY CHECKS:
- COLOR_ACCURACY: match {consolidation.control_block.palette.dominant_hex} within ΔE2000 < {targets.delta_e_max:g}
- EDGE_QUALITY: halo below {targets.edge_halo_max_pct:g}% of the edge length
- SYMMETRY_CHECK: within {targets.symmetry_tolerance_pct:g}% unless asymmetry is intentional
- RESOLUTION_CHECK: output exactly {options.output_size}"""

    def _default_style_config(self) -> Dict[str, Any]:
        return {
            "style_guide": {
                "background": "pure white (#FFFFFF), seamless, no shadows on the backdrop",
                "presentation": "ghost mannequin effect, hollow interior visible",
            },
            "forbidden_edits": [],
        }


class GhostRenderer:
    """Gemini image-model synthesis; renders are written as PNG under ``output_dir``."""

    def __init__(
        self,
        client: Any,
        http: Optional[requests.Session] = None,
        model_name: str = "gemini-2.5-flash-image-preview",
        output_dir: Path = Path("outputs"),
        temperature: float = 0.05,
        prompt_builder: Optional[RenderPromptBuilder] = None,
        retry: RetryPolicy = NO_RETRY,
    ):
        self.client = client
        self.http = http or requests.Session()
        self.model_name = model_name
        self.output_dir = Path(output_dir)
        self.temperature = temperature
        self.prompt_builder = prompt_builder or RenderPromptBuilder()
        self.retry = retry

    def synthesize_image(
        self,
        cleaned_image_ref: str,
        consolidation: ConsolidationOutput,
        reference_image_ref: Optional[str] = None,
        corrections: Sequence[str] = (),
        options: Optional[RequestOptions] = None,
        attempt: int = 1,
    ) -> RenderResult:
        """Render one ghost-mannequin image; ``attempt`` numbers the output file within the session."""
        options = options or RequestOptions()
        session_id = consolidation.session_id
        start = time.perf_counter()

        instruction = self.prompt_builder.build(consolidation, options, corrections)
        try:
            parts: List[types.Part] = [image_part(cleaned_image_ref, self.http, max_dimension=None)]
            if reference_image_ref:
                parts.append(image_part(reference_image_ref, self.http, max_dimension=1024))
        except GhostPipelineError as e:
            raise e.with_stage(Stage.RENDERING)
        parts.append(types.Part.from_text(text=instruction))

        config = types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            temperature=self.temperature,
        )
        logger.info(
            f"[{session_id}] Rendering with {self.model_name} "
            f"({len(instruction)} chars, {len(corrections)} corrections)"
        )

        image_bytes = self.retry.call(self._stream_image, parts, config, description="rendering")

        try:
            out_path = save_png(image_bytes, self.output_dir / session_id / f"render_{attempt:02d}.png", options.output_px)
        except (OSError, ValueError) as e:
            raise GhostPipelineError(
                f"Could not decode rendered image: {e}", ErrorKind.PARSE, Stage.RENDERING, RENDERING_FAILED
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"✅ [{session_id}] Render {attempt} saved to {out_path} in {elapsed_ms:.0f}ms")
        return RenderResult(render_url=str(out_path.resolve()), processing_time_ms=elapsed_ms)

    def _stream_image(self, parts: List[types.Part], config: types.GenerateContentConfig) -> bytes:
        image_bytes = None
        block = None
        try:
            stream = self.client.models.generate_content_stream(
                model=self.model_name,
                contents=[types.Content(role="user", parts=parts)],
                config=config,
            )
            for chunk in stream:
                block = block or blocked_reason(chunk)
                images = inline_images(chunk)
                if images:
                    image_bytes = images[0][0]
                    break
                if getattr(chunk, "text", None):
                    logger.debug(f"Gemini text response: {chunk.text[:100]}...")
        except Exception as e:
            error = classify_provider_error(e, Stage.RENDERING, RENDERING_FAILED)
            if error.kind is ErrorKind.QUOTA:
                error.reason = error.reason or QUOTA_EXCEEDED
            raise error from e

        if image_bytes is None:
            if block:
                raise GhostPipelineError(
                    f"Render blocked by provider: {block}", ErrorKind.CONTENT_BLOCKED, Stage.RENDERING, RENDERING_FAILED
                )
            raise GhostPipelineError("Image model returned no image", ErrorKind.TRANSPORT, Stage.RENDERING, RENDERING_FAILED)
        return image_bytes
