"""
Purpose strategy selector — maps a research purpose to its parameters.

Each purpose fixes:
  - target theme count range (the clustering engine's k bounds)
  - minimum number of sources and minimum characters per source
  - quality thresholds applied to the finished themes
  - clustering flavour (bisecting refinement, diversity enforcement)

REF (method grounding, per purpose):
  Q-methodology ........ Stephenson (1953), Watts & Stenner (2012): broad concourse
  Survey construction .. Churchill (1979), DeVellis (2016): few coherent constructs
  Qualitative analysis . Braun & Clarke (2006, 2019): saturation-driven
  Literature synthesis . Noblit & Hare (1988): reciprocal translation across sources
  Hypothesis generation  Glaser & Strauss (1967): core categories

validate_sources() runs before anything expensive and returns every issue it
finds (one per offending source) so the caller can report them all at once.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from pydantic import BaseModel, Field

from theme_extraction.errors import SourceIssue
from theme_extraction.schemas.base import ResearchPurpose
from theme_extraction.schemas.themes import SourceContent, Theme, ThemeCountRange

logger = logging.getLogger(__name__)


class QualityThresholds(BaseModel):
    min_sources_per_theme: int = Field(ge=1)
    min_coherence: float = Field(ge=0.0, le=1.0)
    min_distinctiveness: float = Field(ge=0.0, le=1.0)


class PurposeConfig(BaseModel):
    purpose: ResearchPurpose
    description: str
    target_themes: ThemeCountRange
    min_source_count: int = Field(ge=1)
    min_content_length: int = Field(ge=0)
    thresholds: QualityThresholds
    bisecting: bool = True
    diversity_required: bool = True
    saturation_driven: bool = False
    split_long_codes: bool = False

    class Config:
        frozen = True


PURPOSE_CONFIGS: Dict[ResearchPurpose, PurposeConfig] = {
    ResearchPurpose.Q_METHODOLOGY: PurposeConfig(
        purpose=ResearchPurpose.Q_METHODOLOGY,
        description="Breadth-focused statement generation for Q-sort studies",
        target_themes=ThemeCountRange(min=30, max=80),
        min_source_count=1,
        min_content_length=50,
        thresholds=QualityThresholds(min_sources_per_theme=1, min_coherence=0.5, min_distinctiveness=0.10),
        bisecting=True,
        diversity_required=True,
        split_long_codes=True,
    ),
    ResearchPurpose.SURVEY_CONSTRUCTION: PurposeConfig(
        purpose=ResearchPurpose.SURVEY_CONSTRUCTION,
        description="Psychometrically coherent constructs for item development",
        target_themes=ThemeCountRange(min=5, max=15),
        min_source_count=2,
        min_content_length=100,
        thresholds=QualityThresholds(min_sources_per_theme=3, min_coherence=0.7, min_distinctiveness=0.25),
        bisecting=False,
        diversity_required=True,
    ),
    ResearchPurpose.QUALITATIVE_ANALYSIS: PurposeConfig(
        purpose=ResearchPurpose.QUALITATIVE_ANALYSIS,
        description="Reflexive thematic analysis until saturation",
        target_themes=ThemeCountRange(min=5, max=20),
        min_source_count=1,
        min_content_length=50,
        thresholds=QualityThresholds(min_sources_per_theme=2, min_coherence=0.6, min_distinctiveness=0.15),
        bisecting=True,
        diversity_required=False,
        saturation_driven=True,
    ),
    ResearchPurpose.LITERATURE_SYNTHESIS: PurposeConfig(
        purpose=ResearchPurpose.LITERATURE_SYNTHESIS,
        description="Meta-ethnographic synthesis across sources",
        target_themes=ThemeCountRange(min=10, max=25),
        min_source_count=3,
        min_content_length=100,
        thresholds=QualityThresholds(min_sources_per_theme=3, min_coherence=0.7, min_distinctiveness=0.20),
        bisecting=True,
        diversity_required=True,
    ),
    ResearchPurpose.HYPOTHESIS_GENERATION: PurposeConfig(
        purpose=ResearchPurpose.HYPOTHESIS_GENERATION,
        description="Grounded-theory core categories for hypotheses",
        target_themes=ThemeCountRange(min=8, max=15),
        min_source_count=2,
        min_content_length=100,
        thresholds=QualityThresholds(min_sources_per_theme=2, min_coherence=0.6, min_distinctiveness=0.20),
        bisecting=True,
        diversity_required=False,
    ),
}


def get_purpose_config(purpose) -> PurposeConfig:
    """Config for a ResearchPurpose (or its string value)."""
    try:
        key = purpose if isinstance(purpose, ResearchPurpose) else ResearchPurpose(str(purpose))
    except ValueError:
        valid = ", ".join(p.value for p in ResearchPurpose)
        raise ValueError(f"Unknown research purpose '{purpose}' (expected one of: {valid})") from None
    return PURPOSE_CONFIGS[key]


def validate_sources(sources: Sequence[SourceContent], purpose) -> List[SourceIssue]:
    """Every reason the source set is insufficient for `purpose` (empty list = OK)."""
    config = get_purpose_config(purpose)
    issues: List[SourceIssue] = []
    seen = set()
    usable = 0

    for source in sources:
        text = (source.text or "").strip()
        if source.id in seen:
            issues.append(SourceIssue(source_id=source.id, reason="duplicate source id"))
            continue
        seen.add(source.id)
        if not text:
            issues.append(SourceIssue(
                source_id=source.id,
                reason="has no text content",
                content_length=0,
                required_length=config.min_content_length,
            ))
            continue
        if len(text) < config.min_content_length:
            issues.append(SourceIssue(
                source_id=source.id,
                reason=(
                    f"has {len(text)} characters, needs at least "
                    f"{config.min_content_length} for {config.purpose.value}"
                ),
                content_length=len(text),
                required_length=config.min_content_length,
            ))
            continue
        usable += 1

    # Per-source issues already explain a shortfall caused by bad sources
    if len(seen) < config.min_source_count:
        issues.append(SourceIssue(
            reason=(
                f"{config.purpose.value} needs at least {config.min_source_count} "
                f"source(s), got {len(seen)}"
            ),
        ))
    logger.debug(f"Source validation: {usable}/{len(sources)} usable")

    if issues:
        logger.warning(f"Source validation for {config.purpose.value}: {len(issues)} issue(s)")
    return issues


def theme_quality_failures(theme: Theme, coherence: float, distinctiveness: float,
                           thresholds: QualityThresholds) -> List[str]:
    """Names of the thresholds a finished theme misses."""
    failures = []
    if len(theme.sources) < thresholds.min_sources_per_theme:
        failures.append(f"sources {len(theme.sources)} < {thresholds.min_sources_per_theme}")
    if coherence < thresholds.min_coherence:
        failures.append(f"coherence {coherence:.2f} < {thresholds.min_coherence}")
    if distinctiveness < thresholds.min_distinctiveness:
        failures.append(f"distinctiveness {distinctiveness:.2f} < {thresholds.min_distinctiveness}")
    return failures


DEMOTION_FACTOR = 0.5


def validate_themes(
    themes: Sequence[Theme],
    coherence: Dict[str, float],
    distinctiveness: Dict[str, float],
    config: PurposeConfig,
) -> Tuple[List[Theme], List[str]]:
    """Apply the purpose's quality thresholds.

    Failing themes keep their place but lose confidence; the set itself is
    never shrunk, so a run cannot fall below target_themes.min here.
    """
    checked: List[Theme] = []
    warnings: List[str] = []
    for theme in themes:
        failures = theme_quality_failures(
            theme,
            coherence.get(theme.id, 1.0),
            distinctiveness.get(theme.id, 1.0),
            config.thresholds,
        )
        if failures:
            demoted = round(theme.confidence * DEMOTION_FACTOR, 4)
            warnings.append(f"Theme '{theme.label}' below {config.purpose.value} thresholds: {', '.join(failures)}")
            logger.debug(f"Demoting '{theme.label}' confidence {theme.confidence:.2f} → {demoted:.2f}: {failures}")
            theme = theme.model_copy(update={"confidence": demoted})
        checked.append(theme)
    if warnings:
        logger.info(f"Quality check: {len(warnings)}/{len(themes)} theme(s) demoted for {config.purpose.value}")
    return checked, warnings
