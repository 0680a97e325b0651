"""
Common enums used across the theme extraction engine.

These define the vocabulary of the system: source kinds, research purposes,
pipeline states and the priority levels purposes assign to full-text content.
"""

from enum import Enum


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS - Classification Types
# ══════════════════════════════════════════════════════════════════════════════

class SourceType(str, Enum):
    """Kind of normalized content a source carries."""
    PAPER = "paper"
    VIDEO_TRANSCRIPT = "video_transcript"
    PODCAST_TRANSCRIPT = "podcast_transcript"


class ResearchPurpose(str, Enum):
    """
    Declared research methodology for a run.

    WHY five: each one expects a different shape of result. Q-methodology
    wants a wide, diverse statement set (30-80), survey construction wants a
    handful of coherent constructs, qualitative analysis runs until
    saturation, literature synthesis translates themes across sources, and
    hypothesis generation looks for core categories.
    """
    Q_METHODOLOGY = "q_methodology"
    SURVEY_CONSTRUCTION = "survey_construction"
    QUALITATIVE_ANALYSIS = "qualitative_analysis"
    LITERATURE_SYNTHESIS = "literature_synthesis"
    HYPOTHESIS_GENERATION = "hypothesis_generation"


class ExpertiseLevel(str, Enum):
    """Caller's self-declared expertise; controls message verbosity only."""
    NOVICE = "novice"
    RESEARCHER = "researcher"
    EXPERT = "expert"


class RunState(str, Enum):
    """Orchestrator states. FAILED, CANCELLED and COMPLETE are terminal."""
    IDLE = "idle"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    CLUSTERING = "clustering"
    LABELING = "labeling"
    ATTRIBUTING = "attributing"
    ANALYZING_SATURATION = "analyzing_saturation"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETE, RunState.FAILED, RunState.CANCELLED)


class SaturationLevel(str, Enum):
    """Recommendation tier from the saturation analysis."""
    HIGH = "high"
    MODERATE = "moderate"
    WEAK = "weak"
    NONE = "none"
