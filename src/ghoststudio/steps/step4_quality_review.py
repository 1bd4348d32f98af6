#!/usr/bin/env python3
"""
step4_quality_review.py – Stage 5: Automated QA Review (Gemini vision)
======================================================================

Scores a render against the consolidated facts and returns per-metric deltas
with correction prompts the renderer can apply on the next pass.

Dependencies: google-genai
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import requests
from google.genai import types

from ..errors import QA_FAILED, ErrorKind, GhostPipelineError, ResponseParseError, Stage
from ..models import AnalysisFacts, QAReport
from ..schema import normalize_qa_report
from ..utils.genai_helpers import blocked_reason, classify_provider_error, image_part, response_text
from ..utils.json_extract import unwrap_json_response
from ..utils.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger("ghoststudio.qa")

QA_PROMPT = """You are the quality reviewer for ghost-mannequin product renders.
Compare the render against these facts:

{facts}

Check colour accuracy against the palette, edge halos, symmetry, hollow regions,
label legibility, and that no mannequin, human, prop or reflection is visible.
Targets: ΔE2000 <= {delta_e}, edge halo <= {halo}% , symmetry within {symmetry}%.

Return ONLY JSON:
{{"overall_quality_score": 0.0-1.0, "passed": true|false,
  "deltas": [{{"metric": "string", "current_value": 0.0, "target_value": 0.0,
              "correction_prompt": "one imperative sentence for the renderer"}}]}}"""


class QualityReviewer:
    def __init__(
        self,
        client: Any,
        http: Optional[requests.Session] = None,
        model_name: str = "gemini-2.5-flash",
        pass_threshold: float = 0.8,
        retry: RetryPolicy = NO_RETRY,
    ):
        self.client = client
        self.http = http or requests.Session()
        self.model_name = model_name
        self.pass_threshold = pass_threshold
        self.retry = retry

    def _facts_summary(self, facts: AnalysisFacts) -> str:
        summary = {
            "category": facts.category_generic,
            "palette": {
                "dominant": facts.palette.dominant_hex,
                "accent": facts.palette.accent_hex,
                "trim": facts.palette.trim_hex,
            },
            "material": facts.material,
            "hollow_regions": [h.region_type for h in facts.hollow_regions],
            "labels": [label.text for label in facts.labels_found if label.text and label.preserve],
        }
        return json.dumps(summary, indent=2)

    def review_quality(self, render_url: str, facts: AnalysisFacts, session_id: str) -> QAReport:
        try:
            part = image_part(render_url, self.http, max_dimension=1024)
        except GhostPipelineError as e:
            raise e.with_stage(Stage.QA)

        targets = facts.qa_targets
        prompt = QA_PROMPT.format(
            facts=self._facts_summary(facts),
            delta_e=targets.delta_e_max,
            halo=targets.edge_halo_max_pct,
            symmetry=targets.symmetry_tolerance_pct,
        )
        config = types.GenerateContentConfig(temperature=0.0, response_mime_type="application/json")

        def _call() -> str:
            try:
                response = self.client.models.generate_content(
                    model=self.model_name, contents=[prompt, part], config=config
                )
            except Exception as e:
                raise classify_provider_error(e, Stage.QA, QA_FAILED) from e
            block = blocked_reason(response)
            if block:
                raise GhostPipelineError(f"QA review blocked: {block}", ErrorKind.CONTENT_BLOCKED, Stage.QA, QA_FAILED)
            return response_text(response)

        text = self.retry.call(_call, description="qa review")
        try:
            raw = unwrap_json_response(text)
        except ResponseParseError as e:
            raise GhostPipelineError(f"QA review returned unparsable output: {e}", ErrorKind.PARSE, Stage.QA, QA_FAILED) from e

        report = normalize_qa_report(raw)
        if "passed" not in raw:
            report = QAReport(
                overall_score=report.overall_score,
                passed=report.overall_score >= self.pass_threshold,
                deltas=report.deltas,
            )
        logger.info(
            f"[{session_id}] QA score {report.overall_score:.2f} "
            f"({'passed' if report.passed else 'failed'}, {len(report.deltas)} deltas)"
        )
        return report
