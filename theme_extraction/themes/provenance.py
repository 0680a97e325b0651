"""
Provenance — which sources a theme came from, and how much.

Per theme, each contributing source gets a ThemeSource record:
  influence        = codes from that source / codes in the cluster
  keyword_matches  = how many of the theme's keywords occur in the source text
  excerpts         = up to 3 excerpts from that source's codes

Theme → source is the only stored direction. index_by_source() builds the
reverse lookup in one pass when a caller needs it.

A theme whose cluster resolves to zero source records is an error, never an
empty provenance list.
"""

import logging
import re
from collections import defaultdict
from typing import Dict, List, Mapping, Sequence

from theme_extraction.errors import ClusteringError
from theme_extraction.schemas.base import SourceType
from theme_extraction.schemas.themes import (
    Code, ProvenanceReport, SourceContent, Theme, ThemeCluster, ThemeSource,
)

logger = logging.getLogger(__name__)

MAX_EXCERPTS_PER_SOURCE = 3
MAX_INFLUENTIAL_SOURCES = 10

# Opposing stance markers; a theme is controversial when different sources take both sides
OPPOSING_PATTERNS = (
    ("support", "oppose"),
    ("confirm", "refute"),
    ("validate", "challenge"),
    ("agree", "disagree"),
    ("consistent", "inconsistent"),
)


def _word_pattern(word: str) -> "re.Pattern":
    return re.compile(rf"\b{re.escape(word)}\w*", re.IGNORECASE)


class ProvenanceTracker:
    """Builds ThemeSource records and provenance reports."""

    def attribute(
        self,
        cluster: ThemeCluster,
        codes: Mapping[str, Code],
        sources: Mapping[str, SourceContent],
        keywords: Sequence[str] = (),
    ) -> List[ThemeSource]:
        """ThemeSource per contributing source, most influential first."""
        members = [codes[cid] for cid in cluster.code_ids if cid in codes]
        by_source: Dict[str, List[Code]] = defaultdict(list)
        for code in members:
            if code.source_id in sources:
                by_source[code.source_id].append(code)
            else:
                logger.warning(f"Code {code.id} references unknown source {code.source_id}")
        if not by_source:
            raise ClusteringError(
                f"cluster {cluster.id} has no codes that resolve to a source", stage_name="attributing",
            )

        total = len(members)
        records = []
        for source_id, source_codes in by_source.items():
            source = sources[source_id]
            text = source.text.lower()
            matches = sum(1 for k in keywords if k and k.lower() in text)
            excerpts: List[str] = []
            for code in source_codes:
                for excerpt in code.excerpts:
                    if excerpt not in excerpts:
                        excerpts.append(excerpt)
            records.append(ThemeSource(
                source_id=source_id,
                source_title=source.display_title,
                source_type=source.type,
                influence=round(len(source_codes) / total, 4),
                keyword_matches=matches,
                code_count=len(source_codes),
                excerpts=excerpts[:MAX_EXCERPTS_PER_SOURCE],
            ))
        records.sort(key=lambda r: (-r.influence, -r.keyword_matches, r.source_id))
        return records

    def is_controversial(self, cluster: ThemeCluster, codes: Mapping[str, Code]) -> bool:
        """True when distinct sources in the cluster use opposing stance words."""
        texts_by_source: Dict[str, str] = defaultdict(str)
        for cid in cluster.code_ids:
            code = codes.get(cid)
            if code is not None:
                texts_by_source[code.source_id] += " " + " ".join([code.text, code.description, *code.excerpts])
        if len(texts_by_source) < 2:
            return False
        for positive, negative in OPPOSING_PATTERNS:
            pos_re, neg_re = _word_pattern(positive), _word_pattern(negative)
            pro = {s for s, t in texts_by_source.items() if pos_re.search(t)}
            con = {s for s, t in texts_by_source.items() if neg_re.search(t)}
            # One source on each side, not the same source hedging both ways
            if pro and con and (pro - con) and (con - pro):
                return True
        return False

    def build_report(self, theme: Theme) -> ProvenanceReport:
        """Source-type breakdown, influential sources and citation chain for one theme."""
        influence = {t: 0.0 for t in SourceType}
        counts = {t: 0 for t in SourceType}
        for s in theme.sources:
            influence[s.source_type] += s.influence
            counts[s.source_type] += 1
        total = sum(influence.values()) or 1.0

        ranked = sorted(theme.sources, key=lambda s: -s.influence)[:MAX_INFLUENTIAL_SOURCES]
        chain = [
            f"{s.source_title} ({s.source_type.value}, {s.influence:.0%} of codes)"
            for s in ranked
        ]
        return ProvenanceReport(
            theme_id=theme.id,
            theme_label=theme.label,
            paper_influence=round(influence[SourceType.PAPER] / total, 4),
            video_influence=round(influence[SourceType.VIDEO_TRANSCRIPT] / total, 4),
            podcast_influence=round(influence[SourceType.PODCAST_TRANSCRIPT] / total, 4),
            paper_count=counts[SourceType.PAPER],
            video_count=counts[SourceType.VIDEO_TRANSCRIPT],
            podcast_count=counts[SourceType.PODCAST_TRANSCRIPT],
            influential_sources=ranked,
            citation_chain=chain,
            average_confidence=theme.confidence,
        )


def index_by_source(themes: Sequence[Theme]) -> Dict[str, List[str]]:
    """source_id → ids of the themes it contributed to (built once, not stored on themes)."""
    index: Dict[str, List[str]] = defaultdict(list)
    for theme in themes:
        for s in theme.sources:
            index[s.source_id].append(theme.id)
    return dict(index)
