"""
Theme labeling — ThemeCluster → label, description, keywords.

LOCAL PATH (default, zero cost, no external calls):
  1. Tokenize the cluster's code texts + descriptions (stop words, noise
     filter, research-term whitelist), top 7 keywords by term frequency
  2. Label = most frequent phrase (bigram or unigram) across code texts,
     title-cased; falls back to the top 3 keywords joined
  3. Description = up to 3 distinct code descriptions (> 10 chars), or a
     keyword summary when none qualify

The local path is CPU-bound, so label_all() fans it out across clusters with a
ThreadPoolExecutor bounded by core count.

LLM PATH (labeling_mode="llm"): one call per cluster through the
RateLimitedExecutor, strict ThemeLabelLLM parsing. The returned label must
be GROUNDED: at least one of its content words appears in the cluster's
code text (anti-hallucination). Any failure (rate limit, bad JSON, ungrounded
label) falls back to the local label for that cluster. Labeling never
aborts a run.

Theme objects are built by LabeledCluster.to_theme() once provenance is known,
since a Theme without sources is invalid.
"""

import asyncio
import logging
import os
import re
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from theme_extraction.config import get_settings
from theme_extraction.schemas.llm_outputs import ThemeLabelLLM
from theme_extraction.schemas.themes import Code, Theme, ThemeCluster, ThemeSource
from theme_extraction.shared.stopwords import STOP_WORDS, is_noise_word, tokenize
from theme_extraction.tools.json_repair import parse_model
from theme_extraction.tools.rate_limiter import RateLimitedExecutor

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 7
KEYWORDS_FOR_LABEL = 3
KEYWORDS_FOR_DEFINITION = 5
MAX_DESCRIPTIONS_FOR_THEME = 3
MIN_DESCRIPTION_LENGTH = 10
MIN_PHRASE_WORD_LENGTH = 3

LOCAL_MODEL_NAME = "local-tf"

LABEL_SYSTEM_PROMPT = """You name themes in qualitative research.
Use words that actually appear in the codes. Respond with valid JSON only."""

LABEL_PROMPT_TEMPLATE = """These {count} research codes were grouped into one theme.

KEYWORDS: {keywords}

CODES:
{codes}

Write a 2-6 word theme label, a one-sentence description and up to 7 keywords.
Return JSON:
{{"label": "<label>", "description": "<description>", "keywords": ["<keyword>"]}}"""

MAX_CODES_IN_PROMPT = 15


@dataclass
class LabeledCluster:
    """Label output for one cluster, before provenance is attached."""
    cluster: ThemeCluster
    label: str
    description: str
    keywords: List[str]
    definition: str
    weight: float
    confidence: float
    model: str = LOCAL_MODEL_NAME
    notes: List[str] = field(default_factory=list)

    def to_theme(self, sources: Sequence[ThemeSource], controversial: bool = False) -> Theme:
        return Theme(
            id=f"theme_{uuid.uuid4().hex[:16]}",
            label=self.label,
            description=self.description,
            keywords=self.keywords,
            weight=self.weight,
            confidence=self.confidence,
            controversial=controversial,
            sources=list(sources),
            code_ids=list(self.cluster.code_ids),
            extraction_model=self.model,
        )


def capitalize_label(label: str) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in label.split())


def extract_keywords(texts: Sequence[str], limit: int = MAX_KEYWORDS) -> List[str]:
    """Top `limit` content words by frequency (ties keep first-seen order)."""
    counts = Counter()
    for text in texts:
        counts.update(tokenize(text))
    return [w for w, _ in counts.most_common(limit)]


def phrase_frequencies(labels: Sequence[str]) -> Counter:
    """Unigram (> 3 chars) and bigram counts over code labels, stop words excluded."""
    counts = Counter()
    for label in labels:
        words = [w.strip(".,;:!?()[]\"'") for w in label.lower().split()]
        words = [w for w in words if w]
        for w in words:
            if w not in STOP_WORDS and len(w) > MIN_PHRASE_WORD_LENGTH and not is_noise_word(w):
                counts[w] += 1
        for a, b in zip(words, words[1:]):
            if (a not in STOP_WORDS and b not in STOP_WORDS
                    and not is_noise_word(a) and not is_noise_word(b)):
                counts[f"{a} {b}"] += 1
    return counts


def confidence_from(coherence: float, size: int) -> float:
    """Coherence scaled down for very small clusters."""
    base = max(0.0, min(1.0, coherence))
    size_factor = 0.5 + 0.5 * min(1.0, size / 3)
    return round(base * size_factor, 4)


class ThemeLabeler:
    """Names clusters locally (TF) or via the LLM with local fallback."""

    def __init__(self, settings=None, llm=None, executor: Optional[RateLimitedExecutor] = None,
                 mode: Optional[str] = None):
        self.settings = settings or get_settings()
        self.mode = (mode or self.settings.labeling_mode).lower()
        if self.mode not in ("local", "llm"):
            raise ValueError(f"Unknown labeling mode '{self.mode}'")
        self.llm = llm
        if self.mode == "llm" and llm is None:
            logger.warning("LLM labeling requested without an llm client, using local labels")
            self.mode = "local"
        self.executor = executor
        if self.llm is not None and self.executor is None:
            self.executor = RateLimitedExecutor(settings=self.settings)
        workers = self.settings.labeling_workers or (os.cpu_count() or 1)
        self.workers = max(1, workers)
        self.fallbacks = 0

    # ── Local ────────────────────────────────────────────────────────

    def label(self, cluster: ThemeCluster, codes: Mapping[str, Code], total_codes: int,
              index: int = 0) -> LabeledCluster:
        """Local TF label for one cluster."""
        members = [codes[cid] for cid in cluster.code_ids if cid in codes]
        texts = [c.text for c in members]
        descriptions = [c.description or c.text for c in members]

        keywords = extract_keywords(texts + descriptions)
        phrases = phrase_frequencies(texts)
        if phrases:
            # Most frequent; longer phrase wins ties
            raw = max(phrases.items(), key=lambda kv: (kv[1], len(kv[0].split())))[0]
        else:
            raw = " ".join(keywords[:KEYWORDS_FOR_LABEL])
        label = capitalize_label(raw) or f"Theme {index + 1}"

        return LabeledCluster(
            cluster=cluster,
            label=label,
            description=self._description(descriptions, len(members), keywords),
            keywords=keywords,
            definition=self._definition(len(members), keywords),
            weight=self._weight(cluster, total_codes),
            confidence=confidence_from(cluster.coherence, cluster.size),
        )

    @staticmethod
    def _weight(cluster: ThemeCluster, total_codes: int) -> float:
        if total_codes <= 0:
            return 0.0
        return round(min(1.0, cluster.size / total_codes), 4)

    @staticmethod
    def _description(descriptions: Sequence[str], code_count: int, keywords: Sequence[str]) -> str:
        unique = []
        for d in descriptions:
            d = d.strip()
            if len(d) > MIN_DESCRIPTION_LENGTH and d not in unique:
                unique.append(d)
            if len(unique) >= MAX_DESCRIPTIONS_FOR_THEME:
                break
        lead = ", ".join(keywords[:KEYWORDS_FOR_LABEL])
        if unique and lead:
            return f"{lead.capitalize()}: " + "; ".join(unique)
        if unique:
            return "; ".join(unique)
        return f"Theme encompassing {code_count} related codes focusing on {lead or 'a shared topic'}"

    @staticmethod
    def _definition(code_count: int, keywords: Sequence[str]) -> str:
        plural = "s" if code_count != 1 else ""
        return (
            f"A cluster of {code_count} semantically related research code{plural} "
            f"characterized by the concepts: {', '.join(keywords[:KEYWORDS_FOR_DEFINITION])}."
        )

    def label_all(self, clusters: Sequence[ThemeCluster], codes: Mapping[str, Code]) -> List[LabeledCluster]:
        """Local labels for every cluster, in input order, parallel across clusters."""
        if not clusters:
            return []
        total = sum(c.size for c in clusters)
        workers = min(self.workers, len(clusters))
        if workers == 1:
            labeled = [self.label(c, codes, total, i) for i, c in enumerate(clusters)]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                labeled = list(pool.map(
                    lambda args: self.label(args[1], codes, total, args[0]),
                    enumerate(clusters),
                ))
        logger.info(
            f"Labeled {len(labeled)} clusters locally "
            f"(avg {sum(len(l.keywords) for l in labeled) / len(labeled):.1f} keywords/theme)"
        )
        return labeled

    # ── LLM (optional) ───────────────────────────────────────────────

    async def label_all_async(self, clusters: Sequence[ThemeCluster], codes: Mapping[str, Code],
                              max_retries: Optional[int] = None) -> List[LabeledCluster]:
        """Labels for every cluster; LLM mode refines the local labels one cluster at a time."""
        # label_all joins its worker pool; keep that off the event loop
        local = await asyncio.to_thread(self.label_all, clusters, codes)
        if self.mode != "llm":
            return local
        self.fallbacks = 0
        refined = []
        for item in local:
            refined.append(await self._refine_with_llm(item, codes, max_retries))
        if self.fallbacks:
            logger.warning(f"LLM labeling fell back to local labels for {self.fallbacks}/{len(local)} clusters")
        return refined

    async def _refine_with_llm(self, item: LabeledCluster, codes: Mapping[str, Code],
                               max_retries: Optional[int]) -> LabeledCluster:
        members = [codes[cid] for cid in item.cluster.code_ids if cid in codes]
        listing = "\n".join(f"- {c.text}" for c in members[:MAX_CODES_IN_PROMPT])
        prompt = LABEL_PROMPT_TEMPLATE.format(
            count=len(members), keywords=", ".join(item.keywords), codes=listing,
        )
        try:
            raw = await self.executor.execute(
                lambda: self.llm.complete(prompt, LABEL_SYSTEM_PROMPT),
                context=f"labeling {item.cluster.id}",
                max_retries=max_retries,
                provider=getattr(self.llm, "provider_name", "llm"),
            )
        except Exception as e:
            # Includes RateLimitError: labels are optional, the local one stands
            self.fallbacks += 1
            item.notes.append(f"llm labeling failed: {type(e).__name__}")
            logger.warning(f"LLM labeling of {item.cluster.id} failed, keeping local label: {e}")
            return item

        parsed = parse_model(raw, ThemeLabelLLM)
        if not parsed.is_ok:
            self.fallbacks += 1
            item.notes.append("llm label unparseable")
            logger.warning(f"LLM label for {item.cluster.id} rejected: {parsed.error}")
            return item

        result = parsed.value
        corpus = " ".join(c.text + " " + c.description for c in members)
        if not self._is_grounded(result.label, corpus):
            self.fallbacks += 1
            item.notes.append("llm label not grounded in codes")
            logger.warning(f"LLM label '{result.label}' not grounded in {item.cluster.id}, keeping local label")
            return item

        keywords = [k.strip().lower() for k in result.keywords if k and k.strip()][:MAX_KEYWORDS]
        item.label = capitalize_label(result.label.strip())
        item.description = result.description.strip() or item.description
        item.keywords = keywords or item.keywords
        item.model = getattr(self.llm, "model_name", "llm")
        return item

    @staticmethod
    def _is_grounded(label: str, corpus: str) -> bool:
        label_words = set(tokenize(label))
        if not label_words:
            return False
        corpus_words = set(tokenize(corpus))
        # Crude stemming: "barriers" grounds "barrier"
        stems = {re.sub(r"(ies|es|s)$", "", w) for w in corpus_words}
        return any(w in corpus_words or re.sub(r"(ies|es|s)$", "", w) in stems for w in label_words)
