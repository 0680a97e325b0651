"""
Code splitting — long codes → atomic sub-statements, before clustering.

Q-methodology needs a wide statement concourse, so a code that packs several
claims into one long sentence is broken up. Two splitters:

  1. LLM splitter (when an LLM client is configured): one call per batch of
     long codes through the RateLimitedExecutor, strict CodeSplitBatchLLM
     parsing.
  2. Clause splitter: sentence ends, semicolons and coordinating joints
     (", and ", " but ", " whereas ", " while ").

Every split must be GROUNDED in its parent: token coverage or in-order word
overlap (rapidfuzz LCS over words) ≥ split_grounding_threshold (0.65),
otherwise it is dropped. At most max_splits_per_code survive. If nothing
survives, the parent is kept as-is, so splitting can only add codes, never
lose one.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from rapidfuzz.distance import LCSseq

from theme_extraction.config import get_settings
from theme_extraction.errors import RateLimitError
from theme_extraction.schemas.llm_outputs import CodeSplitBatchLLM
from theme_extraction.schemas.themes import Code
from theme_extraction.shared.stopwords import tokenize
from theme_extraction.tools.json_repair import parse_model
from theme_extraction.tools.rate_limiter import RateLimitedExecutor

logger = logging.getLogger(__name__)

SPLIT_SYSTEM_PROMPT = """You split compound research codes into atomic statements.
Each statement must express exactly one idea using wording from the original.
Respond with valid JSON only."""

SPLIT_PROMPT_TEMPLATE = """Split each code below into 2-{max_splits} atomic statements.
Keep the original wording; do not add ideas that are not in the code.

{code_blocks}
=== END ===

Return JSON:
{{"splits": [{{"originalCodeId": "<id>", "atomicStatements": [{{"label": "<statement>", "description": "", "groundingExcerpt": "<words from the code>"}}]}}]}}"""

SPLIT_BATCH_SIZE = 10
MIN_CLAUSE_CHARS = 15
MIN_CLAUSE_TOKENS = 2

_WORD = re.compile(r"[a-z0-9']+")
_CLAUSE_BOUNDARY = re.compile(
    r"(?<=[.!?])\s+|;\s*|,\s+and\s+|\s+but\s+|,\s+whereas\s+|,\s+while\s+",
    re.IGNORECASE,
)


def grounding_score(statement: str, parent: str) -> float:
    """How much of `statement` is backed by `parent` (0-1)."""
    statement_tokens = set(tokenize(statement))
    if statement_tokens:
        coverage = len(statement_tokens & set(tokenize(parent))) / len(statement_tokens)
    else:
        coverage = 0.0
    words = _WORD.findall(statement.lower())
    if not words:
        return 0.0
    # Share of statement words found in the same order in the parent
    in_order = LCSseq.similarity(words, _WORD.findall(parent.lower())) / len(words)
    return max(coverage, in_order)


def split_clauses(text: str) -> List[str]:
    """Clause-level split used when no LLM splitter is available."""
    clauses = []
    for part in _CLAUSE_BOUNDARY.split(text or ""):
        clause = part.strip(" ,.;:")
        if len(clause) >= MIN_CLAUSE_CHARS and len(tokenize(clause)) >= MIN_CLAUSE_TOKENS:
            clauses.append(clause[0].upper() + clause[1:])
    return clauses


class CodeSplitter:
    """Splits codes longer than `code_split_max_chars` into grounded sub-codes."""

    def __init__(self, llm=None, executor: Optional[RateLimitedExecutor] = None, settings=None):
        self.settings = settings or get_settings()
        self.llm = llm
        self.executor = executor
        if self.llm is not None and self.executor is None:
            self.executor = RateLimitedExecutor(settings=self.settings)
        self.max_chars = self.settings.code_split_max_chars
        self.threshold = self.settings.split_grounding_threshold
        self.max_splits = self.settings.max_splits_per_code
        self.stats: Dict[str, int] = {"long_codes": 0, "split": 0, "dropped_ungrounded": 0, "kept_parent": 0}

    def _needs_split(self, code: Code) -> bool:
        return len(code.text) > self.max_chars

    async def split_codes(self, codes: Sequence[Code], max_retries: Optional[int] = None) -> List[Code]:
        """Replace each long code by its grounded splits; order of codes is preserved."""
        long_codes = [c for c in codes if self._needs_split(c)]
        self.stats = {"long_codes": len(long_codes), "split": 0, "dropped_ungrounded": 0, "kept_parent": 0}
        if not long_codes:
            return list(codes)

        candidates: Dict[str, List[str]] = {}
        if self.llm is not None:
            candidates = await self._llm_candidates(long_codes, max_retries)
        for code in long_codes:
            if not candidates.get(code.id):
                candidates[code.id] = split_clauses(code.text)

        result: List[Code] = []
        for code in codes:
            if not self._needs_split(code):
                result.append(code)
                continue
            children = self._grounded_children(code, candidates.get(code.id, []))
            if children:
                self.stats["split"] += 1
                result.extend(children)
            else:
                self.stats["kept_parent"] += 1
                result.append(code)

        logger.info(
            f"Code splitting: {len(long_codes)} long code(s), {self.stats['split']} split, "
            f"{self.stats['kept_parent']} kept whole, {self.stats['dropped_ungrounded']} "
            f"ungrounded statement(s) dropped → {len(result)} codes"
        )
        return result

    def _grounded_children(self, parent: Code, statements: Sequence[str]) -> List[Code]:
        grounded: List[str] = []
        seen = set()
        for statement in statements:
            statement = " ".join(statement.split())
            key = statement.lower()
            if not statement or key in seen or key == parent.text.lower():
                continue
            seen.add(key)
            if grounding_score(statement, parent.text) < self.threshold:
                self.stats["dropped_ungrounded"] += 1
                logger.debug(f"Dropped ungrounded split of {parent.id}: {statement[:60]!r}")
                continue
            grounded.append(statement)
            if len(grounded) >= self.max_splits:
                break
        # A single surviving split is just a paraphrase of the parent
        if len(grounded) < 2:
            return []
        return [
            Code(
                id=f"{parent.id}_s{i}",
                source_id=parent.source_id,
                text=statement,
                description=parent.description,
                excerpts=list(parent.excerpts),
                parent_id=parent.id,
            )
            for i, statement in enumerate(grounded, 1)
        ]

    async def _llm_candidates(self, long_codes: Sequence[Code], max_retries: Optional[int]) -> Dict[str, List[str]]:
        candidates: Dict[str, List[str]] = {}
        known = {c.id for c in long_codes}
        for start in range(0, len(long_codes), SPLIT_BATCH_SIZE):
            batch = long_codes[start:start + SPLIT_BATCH_SIZE]
            blocks = "\n".join(f"=== CODE {c.id} ===\n{c.text}" for c in batch)
            prompt = SPLIT_PROMPT_TEMPLATE.format(max_splits=self.max_splits, code_blocks=blocks)
            try:
                raw = await self.executor.execute(
                    lambda: self.llm.complete(prompt, SPLIT_SYSTEM_PROMPT),
                    context=f"code splitting batch {start // SPLIT_BATCH_SIZE + 1}",
                    max_retries=max_retries,
                    provider=getattr(self.llm, "provider_name", "llm"),
                )
            except RateLimitError:
                raise
            except Exception as e:
                logger.warning(f"LLM code splitting failed, using clause splits: {type(e).__name__}: {e}")
                continue
            parsed = parse_model(raw, CodeSplitBatchLLM, list_key="splits")
            if not parsed.is_ok:
                logger.warning(f"Unparseable split response, using clause splits: {parsed.error}")
                continue
            for split in parsed.value.splits:
                if split.original_code_id in known:
                    candidates[split.original_code_id] = [s.label for s in split.atomic_statements]
        return candidates
