"""
Run-level contracts: request, progress events, completion envelopes.

Transport is not defined here, only the payloads a transport layer ships.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from theme_extraction.schemas.base import ExpertiseLevel, ResearchPurpose, RunState
from theme_extraction.schemas.themes import (
    DiversityMetrics, SaturationAnalysis, SaturationSnapshot, SourceContent, Theme,
)


class ExtractionOptions(BaseModel):
    """Per-run overrides. None means "use settings"."""
    max_retries: Optional[int] = Field(default=None, ge=1, le=10)
    cache_ttl_seconds: Optional[int] = Field(default=None, ge=0)
    user_expertise_level: ExpertiseLevel = ExpertiseLevel.RESEARCHER
    # New-theme counts from earlier iterations of the same study
    prior_theme_counts: List[int] = Field(default_factory=list)
    use_cache: bool = True

    def cache_fields(self) -> Dict[str, Any]:
        """Options that change the result, hence part of the cache key."""
        return {
            "prior_theme_counts": list(self.prior_theme_counts),
        }


class ExtractionRequest(BaseModel):
    sources: List[SourceContent]
    purpose: ResearchPurpose
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)


class ProgressStats(BaseModel):
    sources_analyzed: int = 0
    codes_generated: int = 0
    themes_identified: int = 0


class ProgressEvent(BaseModel):
    """One progress update. percentage is non-decreasing within a run."""
    stage: int = Field(ge=1, le=6)
    stage_name: str
    percentage: float = Field(ge=0.0, le=100.0)
    message: str = ""
    description: str = ""
    stats: ProgressStats = Field(default_factory=ProgressStats)
    state: RunState = RunState.IDLE
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExtractionResult(BaseModel):
    """Success envelope. themes is never empty."""
    themes: List[Theme] = Field(min_length=1)
    purpose: ResearchPurpose
    saturation: Optional[SaturationSnapshot] = None
    saturation_analysis: Optional[SaturationAnalysis] = None
    diversity: Optional[DiversityMetrics] = None
    from_cache: bool = False
    cache_key: str = ""
    warnings: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)


class RunOutcome(BaseModel):
    """Terminal state of a run: result on COMPLETE, error payload otherwise."""
    run_id: str
    state: RunState
    result: Optional[ExtractionResult] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.state == RunState.COMPLETE and self.result is not None
