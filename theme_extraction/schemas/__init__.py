"""
Schemas package — all data models for the theme extraction engine.

Models are organized by domain in submodules:
  - base.py: Enums (SourceType, ResearchPurpose, RunState, ...)
  - themes.py: SourceContent, Code, EmbeddingVector, ThemeCluster, Theme, ThemeSource,
    CacheEntry, SaturationSnapshot/Analysis, ProvenanceReport, DiversityMetrics
  - events.py: ExtractionRequest/Options, ProgressEvent, ExtractionResult, RunOutcome
  - llm_outputs.py: *LLM structured-output models
"""

# base.py — enums
from theme_extraction.schemas.base import (
    SourceType, ResearchPurpose, ExpertiseLevel, RunState, SaturationLevel,
)

# themes.py — domain models
from theme_extraction.schemas.themes import (
    SourceContent, ThemeCountRange, EmbeddingVector, Code, ThemeCluster,
    ThemeSource, Theme, CacheEntry,
    SaturationSnapshot, EmergencePoint, SaturationAnalysis,
    ProvenanceReport, DiversityMetrics,
)

# events.py — run contracts
from theme_extraction.schemas.events import (
    ExtractionOptions, ExtractionRequest, ProgressStats, ProgressEvent,
    ExtractionResult, RunOutcome,
)

# llm_outputs.py — LLM output models
from theme_extraction.schemas.llm_outputs import (
    CodeLLM, CodeBatchLLM, ThemeLabelLLM, AtomicStatementLLM, CodeSplitLLM, CodeSplitBatchLLM,
)

__all__ = [
    # base
    "SourceType", "ResearchPurpose", "ExpertiseLevel", "RunState",
    "SaturationLevel",
    # themes
    "SourceContent", "ThemeCountRange", "EmbeddingVector", "Code", "ThemeCluster",
    "ThemeSource", "Theme", "CacheEntry",
    "SaturationSnapshot", "EmergencePoint", "SaturationAnalysis",
    "ProvenanceReport", "DiversityMetrics",
    # events
    "ExtractionOptions", "ExtractionRequest", "ProgressStats", "ProgressEvent",
    "ExtractionResult", "RunOutcome",
    # llm outputs
    "CodeLLM", "CodeBatchLLM", "ThemeLabelLLM", "AtomicStatementLLM", "CodeSplitLLM",
    "CodeSplitBatchLLM",
]
