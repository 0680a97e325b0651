"""
Code extraction — sources → atomic codes.

LLM mode (default): sources are grouped into batches; each batch is one LLM
call through the RateLimitedExecutor asking for strict JSON
{"codes": [{"sourceId", "label", "description", "excerpts"}]}. The response
is validated against CodeBatchLLM; anything that fails validation is
logged and that batch's sources contribute no codes.

Local mode: no external calls. Keywords and bigrams are picked by frequency
and kept as codes only where a sentence in the source actually contains them
(the sentence becomes the code's excerpt).

FAILURE POLICY:
- One batch failing → logged, run continues with the other batches
- Every batch failing → NoContentProducedError (never an empty code list)
- RateLimitError, CircuitOpenError → not absorbed; they carry the retry time the user needs
- Cancellation → checked before each batch, finished results discarded
"""

import asyncio
import hashlib
import logging
import re
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence

from theme_extraction.config import get_settings
from theme_extraction.errors import (
    CircuitOpenError, ExtractionCancelled, NoContentProducedError, RateLimitError,
)
from theme_extraction.schemas.llm_outputs import CodeBatchLLM
from theme_extraction.schemas.themes import Code, SourceContent
from theme_extraction.shared.stopwords import tokenize
from theme_extraction.themes.run_manager import CancellationToken
from theme_extraction.tools.json_repair import parse_model
from theme_extraction.tools.rate_limiter import RateLimitedExecutor

logger = logging.getLogger(__name__)

# ══════════════════════════════════════════════════════════════════════════════
# PROMPTS
# ══════════════════════════════════════════════════════════════════════════════

CODE_SYSTEM_PROMPT = """You are a qualitative research analyst performing initial coding.
Extract atomic codes: short, single-idea statements grounded in the source text.
Respond with valid JSON only. No markdown, no explanation."""

CODE_PROMPT_TEMPLATE = """Extract initial codes from each source below.

RULES:
1. Each code is ONE idea, 3-20 words, stated plainly
2. Every code must be supported by a verbatim excerpt from its own source
3. Use the exact source id shown in the header as "sourceId"
4. 3-{max_codes} codes per source; skip sources with nothing substantive

{source_blocks}
=== END ===

Return JSON:
{{"codes": [{{"sourceId": "<id>", "label": "<code>", "description": "<one sentence>", "excerpts": ["<verbatim excerpt>"]}}]}}"""

MAX_CODES_PER_SOURCE = 8

# Local extraction
MIN_SENTENCE_LENGTH = 20
MAX_EXCERPT_LENGTH = 300
EXCERPTS_PER_CODE = 3
TOP_KEYWORDS_COUNT = 10
TOP_BIGRAMS_COUNT = 5
KEYWORDS_TO_USE = 3

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _code_id(source_id: str, label: str, index: int) -> str:
    digest = hashlib.md5(f"{source_id}|{index}|{label}".encode("utf-8")).hexdigest()[:12]
    return f"code_{digest}"


def _truncate(text: str, limit: int = MAX_EXCERPT_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def build_code_prompt(sources: Sequence[SourceContent], char_limit: int) -> str:
    blocks = []
    for source in sources:
        header = f"=== SOURCE {source.id} ==="
        title = f"Title: {source.title}\n" if source.title else ""
        blocks.append(f"{header}\n{title}{source.text[:char_limit]}")
    return CODE_PROMPT_TEMPLATE.format(
        max_codes=MAX_CODES_PER_SOURCE, source_blocks="\n".join(blocks),
    )


# ══════════════════════════════════════════════════════════════════════════════
# LOCAL (frequency-based) EXTRACTION
# ══════════════════════════════════════════════════════════════════════════════

class LocalCodeExtractor:
    """Keyword/bigram codes backed by verbatim excerpts. No external calls."""

    def extract_from_source(self, source: SourceContent) -> List[Code]:
        sentences = [
            s.strip() for s in _SENTENCE_SPLIT.split(source.text or "")
            if len(s.strip()) > MIN_SENTENCE_LENGTH
        ]
        if not sentences:
            return []
        words = tokenize(source.text)
        if not words:
            return []

        keywords = [w for w, _ in Counter(words).most_common(TOP_KEYWORDS_COUNT)]
        bigram_counts = Counter(
            f"{a} {b}" for a, b in zip(words, words[1:]) if a != b
        )
        bigrams = [bg for bg, n in bigram_counts.most_common(TOP_BIGRAMS_COUNT) if n >= 2]

        codes: List[Code] = []
        for label in bigrams + keywords[:KEYWORDS_TO_USE]:
            excerpts = self._find_excerpts(label, sentences)
            if not excerpts:
                # No verbatim evidence, no code
                continue
            title_label = " ".join(w.capitalize() for w in label.split())
            codes.append(Code(
                id=_code_id(source.id, label, len(codes)),
                source_id=source.id,
                text=f"{title_label}: {excerpts[0]}",
                description=(
                    f'Pattern identified through frequency analysis: "{title_label}" '
                    f'in "{source.display_title[:50]}"'
                ),
                excerpts=excerpts,
            ))
        return codes

    @staticmethod
    def _find_excerpts(label: str, sentences: Sequence[str]) -> List[str]:
        needle = label.lower()
        found = []
        for sentence in sentences:
            if needle in sentence.lower():
                found.append(_truncate(sentence))
                if len(found) >= EXCERPTS_PER_CODE:
                    break
        return found


# ══════════════════════════════════════════════════════════════════════════════
# EXTRACTOR
# ══════════════════════════════════════════════════════════════════════════════

class CodeExtractor:
    """Sources → Codes, via the LLM (batched, rate-limited) or locally."""

    def __init__(
        self,
        llm=None,
        executor: Optional[RateLimitedExecutor] = None,
        settings=None,
        mode: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.mode = (mode or self.settings.code_extraction_mode).lower()
        if self.mode not in ("llm", "local"):
            raise ValueError(f"Unknown code extraction mode '{self.mode}'")
        if self.mode == "llm" and llm is None:
            raise ValueError("LLM code extraction needs an llm client")
        self.llm = llm
        self.executor = executor or RateLimitedExecutor(settings=self.settings)
        self.local = LocalCodeExtractor()
        self.batch_size = max(1, self.settings.extraction_batch_size)
        self.concurrency = max(1, self.settings.extraction_concurrency)
        self.metrics: Dict[str, int] = {}

    def _batches(self, sources: Sequence[SourceContent]) -> List[List[SourceContent]]:
        return [list(sources[i:i + self.batch_size]) for i in range(0, len(sources), self.batch_size)]

    async def extract_codes(
        self,
        sources: Sequence[SourceContent],
        cancel: Optional[CancellationToken] = None,
        progress: Optional[Callable[[int, int], None]] = None,
        max_retries: Optional[int] = None,
    ) -> List[Code]:
        """Extract codes for all sources. Raises NoContentProducedError if nothing came back."""
        if not sources:
            raise NoContentProducedError(0, ["no sources supplied"])
        if self.mode == "local":
            return self._extract_local(sources, cancel, progress)
        return await self._extract_llm(sources, cancel, progress, max_retries)

    def _extract_local(self, sources, cancel, progress) -> List[Code]:
        codes: List[Code] = []
        empty = []
        for i, source in enumerate(sources, 1):
            if cancel is not None:
                cancel.raise_if_cancelled("extracting")
            found = self.local.extract_from_source(source)
            if not found:
                empty.append(f"{source.id}: no frequent terms with supporting excerpts")
            codes.extend(found)
            if progress:
                progress(i, len(sources))
        self.metrics = {"batches": len(sources), "failed_batches": len(empty), "codes": len(codes)}
        logger.info(f"Local extraction: {len(codes)} codes from {len(sources)} sources")
        if not codes:
            raise NoContentProducedError(len(sources), empty)
        return codes

    async def _extract_llm(self, sources, cancel, progress, max_retries) -> List[Code]:
        batches = self._batches(sources)
        total = len(batches)
        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0
        failures: List[str] = []

        async def _run(index: int, batch: List[SourceContent]) -> List[Code]:
            nonlocal done
            async with semaphore:
                if cancel is not None and cancel.cancelled:
                    raise ExtractionCancelled("extracting")
                try:
                    return await self._extract_batch(batch, index, total, max_retries)
                finally:
                    done += 1
                    if progress:
                        progress(done, total)

        logger.info(f"Extracting codes: {len(sources)} sources in {total} batch(es)")
        outcomes = await asyncio.gather(
            *(_run(i, b) for i, b in enumerate(batches, 1)), return_exceptions=True,
        )

        if cancel is not None and cancel.cancelled:
            raise ExtractionCancelled("extracting")

        codes: List[Code] = []
        for index, outcome in enumerate(outcomes, 1):
            if isinstance(outcome, (RateLimitError, CircuitOpenError, ExtractionCancelled)):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                reason = f"batch {index}/{total}: {type(outcome).__name__}: {outcome}"
                failures.append(reason)
                logger.warning(f"Code extraction {reason}, skipping its sources")
                continue
            codes.extend(outcome)

        self.metrics = {"batches": total, "failed_batches": len(failures), "codes": len(codes)}
        if not codes:
            logger.error(f"Code extraction produced nothing: {len(failures)}/{total} batches failed")
            raise NoContentProducedError(total, failures or ["every batch returned zero codes"])
        logger.info(
            f"Extracted {len(codes)} codes from {len(sources)} sources "
            f"({total - len(failures)}/{total} batches ok)"
        )
        return codes

    async def _extract_batch(
        self, batch: List[SourceContent], index: int, total: int, max_retries: Optional[int],
    ) -> List[Code]:
        prompt = build_code_prompt(batch, self.settings.extraction_char_limit)
        raw = await self.executor.execute(
            lambda: self.llm.complete(prompt, CODE_SYSTEM_PROMPT),
            context=f"code extraction batch {index}/{total}",
            max_retries=max_retries,
            provider=getattr(self.llm, "provider_name", "llm"),
        )
        parsed = parse_model(raw, CodeBatchLLM, list_key="codes")
        if not parsed.is_ok:
            raise ValueError(parsed.error)

        by_id = {s.id: s for s in batch}
        codes: List[Code] = []
        seen = set()
        dropped = 0
        for item in parsed.value.codes:
            source = by_id.get(item.source_id)
            key = (item.source_id, item.label.lower())
            if source is None or key in seen:
                dropped += 1
                continue
            seen.add(key)
            excerpts = [_truncate(e.strip()) for e in item.excerpts if e and e.strip()]
            codes.append(Code(
                id=_code_id(source.id, item.label, len(codes)),
                source_id=source.id,
                text=item.label,
                description=item.description or item.label,
                excerpts=excerpts[:EXCERPTS_PER_CODE],
            ))
        if dropped:
            logger.debug(f"Batch {index}: dropped {dropped} code(s) with unknown source ids or duplicates")
        return codes
