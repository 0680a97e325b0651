"""
Theme extraction data models.

Flow of entities through a run:
  SourceContent  (caller-supplied, immutable)
    → Code       (one per atomic statement, immutable, run-scoped)
    → ThemeCluster (transient, lives inside clustering + labeling)
    → Theme      (the only entity that outlives a run)

Theme ↔ source is modelled one way: Theme.sources holds ThemeSource records.
The reverse index (source → themes) is built on demand by the provenance
tracker, never stored as back-pointers.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator

from theme_extraction.schemas.base import SaturationLevel, SourceType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ══════════════════════════════════════════════════════════════════════════════
# INPUT
# ══════════════════════════════════════════════════════════════════════════════

class SourceContent(BaseModel):
    """One normalized source: paper text, or a video/podcast transcript."""
    id: str = Field(min_length=1)
    type: SourceType = SourceType.PAPER
    text: str = ""
    title: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def display_title(self) -> str:
        return self.title or self.metadata.get("title") or self.id


class ThemeCountRange(BaseModel):
    """Inclusive bounds on the number of themes a purpose expects."""
    min: int = Field(ge=1)
    max: int = Field(ge=1)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _ordered(self):
        if self.min > self.max:
            raise ValueError(f"min ({self.min}) must be <= max ({self.max})")
        return self

    def contains(self, n: int) -> bool:
        return self.min <= n <= self.max


# ══════════════════════════════════════════════════════════════════════════════
# EMBEDDINGS + CODES
# ══════════════════════════════════════════════════════════════════════════════

class EmbeddingVector(BaseModel):
    """
    Fixed-length vector with its L2 norm computed once.

    Pairwise similarity divides by the stored norms instead of recomputing
    them, so a cluster of n codes costs n norm computations, not n².
    """
    values: List[float]
    norm: float
    dimensions: int
    model: str = ""

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.dimensions != len(self.values):
            raise ValueError(
                f"dimensions ({self.dimensions}) != len(values) ({len(self.values)})"
            )
        if not math.isfinite(self.norm) or self.norm <= 0:
            raise ValueError(f"norm must be finite and > 0, got {self.norm}")
        return self

    @classmethod
    def from_values(cls, values: Sequence[float], model: str = "") -> "EmbeddingVector":
        arr = np.asarray(values, dtype=np.float64)
        return cls(
            values=arr.tolist(),
            norm=float(np.linalg.norm(arr)),
            dimensions=int(arr.shape[0]),
            model=model,
        )

    def as_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float64)


class Code(BaseModel):
    """Atomic semantic unit extracted from one source."""
    id: str
    source_id: str
    text: str
    description: str = ""
    excerpts: List[str] = Field(default_factory=list)
    embedding: Optional[EmbeddingVector] = None
    # Set when this code was produced by splitting a longer parent code
    parent_id: Optional[str] = None

    class Config:
        frozen = True

    def with_embedding(self, embedding: EmbeddingVector) -> "Code":
        return self.model_copy(update={"embedding": embedding})


@dataclass
class ThemeCluster:
    """Transient grouping of code ids produced during clustering."""
    id: str
    code_ids: List[str]
    centroid: np.ndarray
    coherence: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.code_ids)


# ══════════════════════════════════════════════════════════════════════════════
# OUTPUT
# ══════════════════════════════════════════════════════════════════════════════

class ThemeSource(BaseModel):
    """Per-source contribution record for one theme."""
    source_id: str
    source_title: str = ""
    source_type: SourceType = SourceType.PAPER
    influence: float = Field(ge=0.0, le=1.0)
    keyword_matches: int = Field(ge=0, default=0)
    code_count: int = Field(ge=0, default=0)
    excerpts: List[str] = Field(default_factory=list)

    class Config:
        frozen = True


class Theme(BaseModel):
    """A labeled cluster of codes with provenance."""
    id: str
    label: str
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    weight: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    controversial: bool = False
    sources: List[ThemeSource]
    code_ids: List[str] = Field(default_factory=list)
    extracted_at: datetime = Field(default_factory=_utcnow)
    extraction_model: str = ""

    class Config:
        frozen = True

    @field_validator("sources")
    @classmethod
    def _sources_non_empty(cls, v: List[ThemeSource]) -> List[ThemeSource]:
        if not v:
            raise ValueError("a theme must have at least one contributing source")
        return v

    @field_validator("label", mode="before")
    @classmethod
    def _clean_label(cls, v):
        v = str(v or "").strip()
        if not v:
            raise ValueError("theme label must not be empty")
        return v[:120]


class CacheEntry(BaseModel):
    """One cached result set, keyed by content fingerprint."""
    key: str
    data: List[Theme]
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


# ══════════════════════════════════════════════════════════════════════════════
# SATURATION
# ══════════════════════════════════════════════════════════════════════════════

class SaturationSnapshot(BaseModel):
    """State of saturation after one batch (iteration) of sources."""
    iteration: int = Field(ge=1)
    new_theme_count: int = Field(ge=0)
    posterior_saturation_probability: float = Field(ge=0.0, le=1.0, default=0.0)
    is_saturated: bool = False


class EmergencePoint(BaseModel):
    """Theme emergence after adding one more source."""
    source_index: int
    source_id: str = ""
    new_themes: int
    cumulative_themes: int
    percentage_new: float


class SaturationAnalysis(BaseModel):
    """Full report behind a SaturationSnapshot."""
    snapshots: List[SaturationSnapshot] = Field(default_factory=list)
    # Bayesian posterior Beta(alpha, beta) over P(new theme in next batch)
    alpha: float = 1.0
    beta: float = 1.0
    posterior_mean: float = 0.5
    credible_interval: Tuple[float, float] = (0.0, 1.0)
    probability_saturated: float = 0.0
    saturation_point: Optional[int] = None
    bayesian_saturated: bool = False
    # Power law new(i) ≈ a * i^-b
    power_law_a: float = 0.0
    power_law_b: float = 0.0
    power_law_r_squared: float = 0.0
    power_law_saturated: bool = False
    # Permutation sensitivity
    robustness_score: float = 0.0
    saturation_point_variance: float = 0.0
    is_robust: bool = False
    confidence: float = 0.0
    is_saturated: bool = False
    level: SaturationLevel = SaturationLevel.NONE
    recommendation: str = ""
    emergence_curve: List[EmergencePoint] = Field(default_factory=list)

    def latest_snapshot(self) -> Optional[SaturationSnapshot]:
        return self.snapshots[-1] if self.snapshots else None


# ══════════════════════════════════════════════════════════════════════════════
# PROVENANCE + DIVERSITY REPORTS
# ══════════════════════════════════════════════════════════════════════════════

class ProvenanceReport(BaseModel):
    """Per-theme breakdown of where a theme came from."""
    theme_id: str
    theme_label: str
    paper_influence: float = 0.0
    video_influence: float = 0.0
    podcast_influence: float = 0.0
    paper_count: int = 0
    video_count: int = 0
    podcast_count: int = 0
    influential_sources: List[ThemeSource] = Field(default_factory=list)
    citation_chain: List[str] = Field(default_factory=list)
    average_confidence: float = 0.0


class DiversityMetrics(BaseModel):
    """Redundancy and coverage of a final cluster set."""
    avg_pairwise_similarity: float = 0.0
    max_pairwise_similarity: float = 0.0
    redundant_pairs: int = 0
    davies_bouldin: float = 0.0
    source_coverage: float = 100.0
