"""
Pipeline Steps Module
=====================

Contains the stage adapters and the consolidation engine:
- step0_background_removal: FAL Bria background removal
- step1_analysis: structural + enrichment analysis (Gemini JSON mode)
- step2_consolidation: reconciliation, repair, fallback, control block
- step3_renderer: sectioned render instruction + Gemini image synthesis
- step4_quality_review: QA scoring and correction prompts
"""

from .step0_background_removal import BackgroundRemover
from .step1_analysis import GarmentAnalyzer
from .step2_consolidation import ConsolidationEngine
from .step3_renderer import GhostRenderer, RenderPromptBuilder
from .step4_quality_review import QualityReviewer

__all__ = [
    "BackgroundRemover",
    "ConsolidationEngine",
    "GarmentAnalyzer",
    "GhostRenderer",
    "QualityReviewer",
    "RenderPromptBuilder",
]
