"""
pipeline.py – Ghost-Mannequin Pipeline Orchestrator
===================================================

Sequences the stages of one request:

    Idle → BackgroundRemoval → Analysis → Enrichment → Consolidation → Rendering
         → [QAReview ⇄ Rendering]* → Completed | Failed

Each stage call runs on a worker thread under its own deadline. A stage that
misses its deadline fails the session with TIMEOUT; the in-flight call is left to
finish in the background and its result is discarded. Partial results collected
before a failure are returned with the error.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar, Union

from .clients import ServiceClients, build_clients
from .config import PipelineConfig
from .errors import UNEXPECTED_ERROR, ErrorKind, GhostPipelineError, Stage
from .models import (
    AnalysisFacts,
    BackgroundRemovalResult,
    ConsolidationOutput,
    EnrichmentAnalysis,
    GhostRequest,
    GhostResult,
    PipelineSession,
    PipelineState,
    QAReport,
    RenderResult,
    StageStatus,
    STAGE_STATES,
    StructuralAnalysis,
)
from .steps.step0_background_removal import BackgroundRemover
from .steps.step1_analysis import GarmentAnalyzer
from .steps.step2_consolidation import ConsolidationEngine
from .steps.step3_renderer import GhostRenderer, RenderPromptBuilder
from .steps.step4_quality_review import QualityReviewer
from .utils.file_cache import FilesUploader, UploadCache
from .utils.retry import RetryPolicy

logger = logging.getLogger("ghoststudio.pipeline")

T = TypeVar("T")


@dataclass
class StageAdapters:
    """The external calls the orchestrator sequences."""

    remove_background: Callable[[str], BackgroundRemovalResult]
    analyze_structure: Callable[[str, str], StructuralAnalysis]
    analyze_enrichment: Callable[[str, str, Optional[str]], EnrichmentAnalysis]
    consolidate: Callable[[StructuralAnalysis, EnrichmentAnalysis, Sequence[str], str], ConsolidationOutput]
    synthesize_image: Callable[..., RenderResult]
    review_quality: Optional[Callable[[str, AnalysisFacts, str], QAReport]] = None
    upload_image: Optional[Callable[[str, str, str], str]] = None


def build_stage_adapters(config: PipelineConfig, clients: Optional[ServiceClients] = None) -> StageAdapters:
    clients = clients or build_clients(config)
    retry = config.retry
    models = config.models

    remover = BackgroundRemover(
        clients.fal_api_key,
        clients.http,
        models.fal_endpoint,
        config.timeouts.for_stage(Stage.BACKGROUND_REMOVAL),
        retry.policy_for(Stage.BACKGROUND_REMOVAL),
    )
    analyzer = GarmentAnalyzer(
        clients.genai,
        clients.http,
        analysis_model=models.analysis_model,
        enrichment_model=models.enrichment_model,
        temperature=models.analysis_temperature,
        max_dimension=models.analysis_max_dimension,
        retry=retry.policy_for(Stage.ANALYSIS),
        enrichment_retry=retry.policy_for(Stage.ENRICHMENT),
    )
    engine = ConsolidationEngine(
        clients.genai, config.consolidation, models.consolidation_model, retry.policy_for(Stage.CONSOLIDATION)
    )
    renderer = GhostRenderer(
        clients.genai,
        clients.http,
        model_name=models.rendering_model,
        output_dir=Path(config.output_dir),
        temperature=models.rendering_temperature,
        prompt_builder=RenderPromptBuilder(Path(config.style_config_path) if config.style_config_path else None),
        retry=retry.policy_for(Stage.RENDERING),
    )
    reviewer = QualityReviewer(
        clients.genai, clients.http, model_name=models.qa_model, retry=retry.policy_for(Stage.QA)
    )
    uploader = FilesUploader(clients.genai, UploadCache(config.upload_cache_size))

    def upload_image(ref: str, role: str, session_id: str) -> str:
        return uploader.upload_ref(ref, role, session_id, clients.http, config.timeouts.upload)

    return StageAdapters(
        remove_background=remover.remove_background,
        analyze_structure=analyzer.analyze_structure,
        analyze_enrichment=analyzer.analyze_enrichment,
        consolidate=engine.consolidate,
        synthesize_image=renderer.synthesize_image,
        review_quality=reviewer.review_quality,
        upload_image=upload_image,
    )


class GhostMannequinPipeline:
    def __init__(
        self,
        config: PipelineConfig,
        adapters: StageAdapters,
        quota_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.adapters = adapters
        self.quota_policy = quota_policy or config.retry.quota_policy()

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "GhostMannequinPipeline":
        return cls(config, build_stage_adapters(config))

    # -----------------------------
    # Entry point
    # -----------------------------
    def process(
        self,
        request: Union[GhostRequest, Dict[str, Any]],
        session_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GhostResult:
        """Run one request. Invalid requests raise VALIDATION before any stage starts."""
        if not isinstance(request, GhostRequest):
            request = GhostRequest.from_dict(request)

        session = PipelineSession(session_id=session_id or str(uuid.uuid4()))
        if cancel_event is not None:
            session.cancel_event = cancel_event
        logger.info(f"🚀 [{session.session_id}] Starting ghost-mannequin pipeline")

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"ghost-{session.session_id[:8]}")
        try:
            self._run(session, request, executor)
            session.transition(PipelineState.COMPLETED)
            logger.info(f"✅ [{session.session_id}] Completed in {session.elapsed_ms:.0f}ms")
        except GhostPipelineError as e:
            session.error = e
            session.transition(PipelineState.FAILED)
            logger.error(
                f"❌ [{session.session_id}] Failed at {e.stage.value if e.stage else 'unknown'} "
                f"({e.kind.value}): {e.message}"
            )
        finally:
            # timed-out calls keep running; never block on them
            executor.shutdown(wait=False)

        self._log_summary(session)
        return self._build_result(session)

    # -----------------------------
    # Stage execution
    # -----------------------------
    def run_stage(
        self,
        session: PipelineSession,
        stage: Stage,
        fn: Callable[[], T],
        timeout_s: float,
        executor: ThreadPoolExecutor,
    ) -> T:
        """Run ``fn`` under a deadline, recording status and one timing record."""
        if session.cancel_event.is_set():
            raise GhostPipelineError(f"Session cancelled before {stage.value}", ErrorKind.CANCELLED, stage)

        target = STAGE_STATES[stage]
        if session.state is not target:
            session.transition(target)
        session.stage_status[stage] = StageStatus.RUNNING

        error: Optional[GhostPipelineError] = None
        start = time.perf_counter()
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeout as e:
            future.cancel()
            error = GhostPipelineError(
                f"{stage.value} exceeded its {timeout_s:g}s deadline", ErrorKind.TIMEOUT, stage
            )
            raise error from e
        except GhostPipelineError as e:
            error = e.with_stage(stage)
            raise
        except Exception as e:
            logger.exception(f"[{session.session_id}] Unexpected error in {stage.value}")
            error = GhostPipelineError(
                f"Unexpected error in {stage.value}: {e}", ErrorKind.TRANSPORT, stage, UNEXPECTED_ERROR
            )
            raise error from e
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            session.stage_timings[stage] += duration_ms
            session.stage_status[stage] = StageStatus.FAILED if error else StageStatus.SUCCEEDED
            record = {
                "session_id": session.session_id,
                "stage": stage.value,
                "duration_ms": round(duration_ms, 3),
                "status": "failed" if error else "succeeded",
                "error_code": error.kind.value if error else None,
            }
            session.timing_records.append(record)
            logger.info(f"stage_timing {json.dumps(record)}")

    def _run(self, session: PipelineSession, request: GhostRequest, executor: ThreadPoolExecutor) -> None:
        sid = session.session_id
        timeouts = self.config.timeouts
        adapters = self.adapters

        cleaned = self.run_stage(
            session, Stage.BACKGROUND_REMOVAL,
            lambda: adapters.remove_background(request.flatlay),
            timeouts.for_stage(Stage.BACKGROUND_REMOVAL), executor,
        )
        session.cleaned_image_url = cleaned.cleaned_image_url

        image_ref = session.cleaned_image_url
        if self.config.enable_early_upload and adapters.upload_image is not None:
            image_ref = self._early_upload(session, image_ref, executor)

        session.analysis = self.run_stage(
            session, Stage.ANALYSIS,
            lambda: adapters.analyze_structure(image_ref, sid),
            timeouts.for_stage(Stage.ANALYSIS), executor,
        )
        session.enrichment = self.run_stage(
            session, Stage.ENRICHMENT,
            lambda: adapters.analyze_enrichment(image_ref, f"{sid}_enrichment", sid),
            timeouts.for_stage(Stage.ENRICHMENT), executor,
        )

        image_refs = [image_ref] + ([request.on_model] if request.on_model else [])
        session.consolidation = self.run_stage(
            session, Stage.CONSOLIDATION,
            lambda: adapters.consolidate(session.analysis, session.enrichment, image_refs, sid),
            timeouts.for_stage(Stage.CONSOLIDATION), executor,
        )

        session.render = self._render(session, request, image_ref, (), executor)
        if self.config.qa.enabled and adapters.review_quality is not None:
            self._qa_loop(session, request, image_ref, executor)

    def _render(
        self,
        session: PipelineSession,
        request: GhostRequest,
        image_ref: str,
        corrections: Sequence[str],
        executor: ThreadPoolExecutor,
    ) -> RenderResult:
        def attempt() -> RenderResult:
            session.render_attempts += 1
            number = session.render_attempts
            return self.run_stage(
                session, Stage.RENDERING,
                lambda: self.adapters.synthesize_image(
                    image_ref, session.consolidation, request.on_model, tuple(corrections), request.options,
                    attempt=number,
                ),
                self.config.timeouts.for_stage(Stage.RENDERING), executor,
            )

        try:
            return attempt()
        except GhostPipelineError as e:
            delay = self.quota_policy.delay_for(1, e)
            if delay is None:
                raise
            logger.warning(f"[{session.session_id}] Rendering quota exceeded; retrying once in {delay:.1f}s")
            # a cancel during the wait wakes us; run_stage then refuses to start
            session.cancel_event.wait(delay)
            return attempt()

    def _qa_loop(
        self, session: PipelineSession, request: GhostRequest, image_ref: str, executor: ThreadPoolExecutor
    ) -> None:
        max_iterations = self.config.qa.max_iterations
        facts = session.consolidation.facts
        best_render, best_report = session.render, None

        while True:
            render = session.render
            report = self.run_stage(
                session, Stage.QA,
                lambda: self.adapters.review_quality(render.render_url, facts, session.session_id),
                self.config.timeouts.for_stage(Stage.QA), executor,
            )
            session.qa_report = report
            if best_report is None or report.overall_score >= best_report.overall_score:
                best_render, best_report = render, report

            if report.passed:
                break
            if session.qa_iterations >= max_iterations:
                logger.warning(
                    f"[{session.session_id}] QA cap of {max_iterations} iteration(s) reached; "
                    f"keeping best render (score {best_report.overall_score:.2f})"
                )
                break

            session.qa_iterations += 1
            logger.info(
                f"[{session.session_id}] QA iteration {session.qa_iterations}/{max_iterations}: "
                f"re-rendering with {len(report.correction_prompts)} correction(s)"
            )
            session.render = self._render(session, request, image_ref, report.correction_prompts, executor)

        session.render, session.qa_report = best_render, best_report

    def _early_upload(self, session: PipelineSession, image_ref: str, executor: ThreadPoolExecutor) -> str:
        """Best-effort Files-API upload; the URL is used when it fails or stalls."""
        future = executor.submit(self.adapters.upload_image, image_ref, "cleaned", session.session_id)
        try:
            uri = future.result(timeout=self.config.timeouts.upload)
        except FuturesTimeout:
            logger.warning(f"[{session.session_id}] Early Files API upload timed out; continuing with URL")
            return image_ref
        except Exception as e:
            logger.warning(f"[{session.session_id}] Early Files API upload failed ({e}); continuing with URL")
            return image_ref
        logger.info(f"[{session.session_id}] Using Files API URI for downstream stages")
        return uri

    # -----------------------------
    # Result assembly
    # -----------------------------
    def _log_summary(self, session: PipelineSession) -> None:
        summary = {
            "session_id": session.session_id,
            "state": session.state.value,
            "total_ms": round(session.elapsed_ms, 3),
            "stages": {stage.value: round(ms, 3) for stage, ms in session.stage_timings.items()},
            "render_attempts": session.render_attempts,
            "qa_iterations": session.qa_iterations,
        }
        logger.info(f"pipeline_timing {json.dumps(summary)}")

    def _build_result(self, session: PipelineSession) -> GhostResult:
        return GhostResult(
            session_id=session.session_id,
            status="completed" if session.state is PipelineState.COMPLETED else "failed",
            processing_time_ms=session.elapsed_ms,
            stage_timings=dict(session.stage_timings),
            cleaned_image_url=session.cleaned_image_url,
            render_url=session.render.render_url if session.render else None,
            error=session.error,
            analysis=session.analysis,
            enrichment=session.enrichment,
            consolidation=session.consolidation,
            qa_report=session.qa_report,
            qa_iterations=session.qa_iterations,
        )
