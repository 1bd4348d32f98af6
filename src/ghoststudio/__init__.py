"""
Ghoststudio Ghost-Mannequin Pipeline
====================================

Turns a flat product photo of a garment into a studio ghost-mannequin render by
chaining external AI calls and reconciling their outputs into one consistent
garment specification.

Core Pipeline:
0. Background Removal (FAL Bria)
1. Structural & Enrichment Analysis (Gemini)
2. Consolidation (facts + control block, deterministic fallback)
3. Rendering (Gemini image model)
4. QA Review & Re-render loop (optional)

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Ghoststudio"

from .control_block import derive_control_block
from .errors import ErrorKind, GhostPipelineError, Stage, http_status_for
from .models import AnalysisFacts, ConsolidationOutput, ControlBlock, GhostRequest, GhostResult
from .pipeline import GhostMannequinPipeline, StageAdapters
from .steps.step2_consolidation import ConsolidationEngine

__all__ = [
    "AnalysisFacts",
    "ConsolidationEngine",
    "ConsolidationOutput",
    "ControlBlock",
    "ErrorKind",
    "GhostMannequinPipeline",
    "GhostPipelineError",
    "GhostRequest",
    "GhostResult",
    "Stage",
    "StageAdapters",
    "derive_control_block",
    "http_status_for",
]
