"""
ThemeExtractionPipeline — sources → validated, labeled, attributed themes.

Stages (Braun & Clarke's six phases, as reported in progress events):

  1 Familiarization   validate sources against the purpose, check the cache
  2 Initial Coding    extract codes (LLM or local), split long codes, embed
  3 Theme Generation  adaptive k-means++ → bisecting → diversity merge
  4 Theme Review      label clusters (local TF, optional LLM refinement)
  5 Theme Definition  provenance per theme, quality thresholds
  6 Report            saturation analysis (iterative / saturation-driven runs)

State machine: IDLE → VALIDATING → EXTRACTING → EMBEDDING → CLUSTERING →
LABELING → ATTRIBUTING → (ANALYZING_SATURATION) → COMPLETE. Any stage can
end in FAILED (typed error) or CANCELLED. A cache hit goes VALIDATING →
COMPLETE directly.

GUARANTEES:
- Validation runs before any LLM call; invalid input costs nothing
- A zero-theme outcome is never COMPLETE
- RateLimitError always surfaces with retry timing, even if some batches worked
- Cache failures are logged and ignored; they never fail a run
- Cancellation is honored at every stage boundary and between extraction batches
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from theme_extraction.config import get_settings
from theme_extraction.errors import (
    CacheError, ClusteringError, EmbeddingError, ExtractionCancelled,
    ThemeExtractionError, ValidationError,
)
from theme_extraction.schemas.base import RunState
from theme_extraction.schemas.events import (
    ExtractionRequest, ExtractionResult, ProgressEvent, RunOutcome,
)
from theme_extraction.schemas.themes import Code, SaturationAnalysis, SaturationSnapshot, Theme
from theme_extraction.themes.clustering import ClusteringEngine
from theme_extraction.themes.code_extractor import CodeExtractor
from theme_extraction.themes.diversity import centroid_similarities, diversity_metrics
from theme_extraction.themes.labeling import ThemeLabeler
from theme_extraction.themes.provenance import ProvenanceTracker
from theme_extraction.themes.purposes import get_purpose_config, validate_sources, validate_themes
from theme_extraction.themes.run_manager import CancellationToken, ProgressTracker, RunManager, RunRecord
from theme_extraction.themes.saturation import SaturationAnalyzer
from theme_extraction.themes.splitting import CodeSplitter
from theme_extraction.tools.embeddings import EmbeddingProvider, unit_matrix
from theme_extraction.tools.rate_limiter import RateLimitedExecutor, RateLimitTracker
from theme_extraction.tools.theme_cache import ThemeCache, content_fingerprint, fingerprint

logger = logging.getLogger(__name__)

MIN_SOURCES_FOR_EMERGENCE = 3

ProgressCallback = Callable[[ProgressEvent], Any]


class ThemeExtractionPipeline:
    """Runs one extraction per call to run(); shared pieces (cache, tracker) live on the instance."""

    def __init__(
        self,
        settings=None,
        llm=None,
        executor: Optional[RateLimitedExecutor] = None,
        embedder: Optional[EmbeddingProvider] = None,
        cache: Optional[ThemeCache] = None,
        tracker: Optional[RateLimitTracker] = None,
        run_manager: Optional[RunManager] = None,
        mock_mode: bool = False,
    ):
        self.settings = settings or get_settings()
        self.mock_mode = mock_mode or self.settings.mock_mode
        self._llm = llm
        self.executor = executor or RateLimitedExecutor(tracker=tracker, settings=self.settings)
        self.embedder = embedder or EmbeddingProvider(settings=self.settings, executor=self.executor)
        self.cache = cache or ThemeCache(
            max_entries=self.settings.cache_max_entries,
            default_ttl=self.settings.cache_ttl_seconds,
        )
        self.run_manager = run_manager or RunManager()
        self.clustering = ClusteringEngine(settings=self.settings)
        self.provenance = ProvenanceTracker()
        self.saturation = SaturationAnalyzer(settings=self.settings)

    @property
    def llm(self):
        """Lazy-load the LLM client (only LLM extraction/labeling needs one)."""
        if self._llm is None:
            from theme_extraction.tools.llm_service import LLMService
            self._llm = LLMService(settings=self.settings, mock_mode=self.mock_mode)
        return self._llm

    def _needs_llm(self) -> bool:
        return (
            self.settings.code_extraction_mode == "llm"
            or self.settings.labeling_mode == "llm"
        )

    def cache_key(self, request: ExtractionRequest) -> str:
        """Fingerprint of everything that changes the themes a request produces."""
        options = {
            **request.options.cache_fields(),
            "content": content_fingerprint([s.text for s in sorted(request.sources, key=lambda s: s.id)]),
            "extraction_mode": self.settings.code_extraction_mode,
            "labeling_mode": self.settings.labeling_mode,
            "embedding_model": self.embedder.model_name,
        }
        return fingerprint([s.id for s in request.sources], request.purpose, options)

    # ════════════════════════════════════════════════════════════════════
    # MAIN PIPELINE
    # ════════════════════════════════════════════════════════════════════

    async def run(
        self,
        request: ExtractionRequest,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ExtractionResult:
        """Run the pipeline. Raises a ThemeExtractionError subclass on failure."""
        run = self.run_manager.create_run(purpose=request.purpose.value)
        return await self._run_tracked(run, request, on_progress, cancel)

    async def run_safe(
        self,
        request: ExtractionRequest,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RunOutcome:
        """Like run(), but every outcome comes back as a RunOutcome envelope."""
        run = self.run_manager.create_run(purpose=request.purpose.value)
        try:
            result = await self._run_tracked(run, request, on_progress, cancel)
        except ThemeExtractionError as e:
            return RunOutcome(run_id=run.run_id, state=run.state, error=e.to_dict())
        except Exception as e:
            logger.exception(f"Run {run.run_id} failed unexpectedly")
            return RunOutcome(
                run_id=run.run_id,
                state=run.state,
                error={"type": "internal_error", "stage": "", "message": f"{type(e).__name__}: {e}"},
            )
        return RunOutcome(run_id=run.run_id, state=run.state, result=result)

    async def _run_tracked(
        self,
        run: RunRecord,
        request: ExtractionRequest,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> ExtractionResult:
        tracker = ProgressTracker(on_progress, expertise_level=request.options.user_expertise_level)
        run.events = tracker.events
        cancel = cancel or CancellationToken()
        try:
            return await self._execute(run, request, tracker, cancel)
        except ExtractionCancelled as e:
            e.stage = e.stage or run.state.value
            run.error = e.to_dict()
            run.transition(RunState.CANCELLED)
            logger.info(f"Run {run.run_id} cancelled during {e.stage}")
            raise
        except ThemeExtractionError as e:
            e.stage = e.stage or run.state.value
            run.error = e.to_dict()
            run.transition(RunState.FAILED)
            logger.error(f"Run {run.run_id} failed at {e.stage}: {e.message}")
            raise
        except Exception as e:
            run.error = {"type": "internal_error", "stage": run.state.value, "message": str(e)}
            run.transition(RunState.FAILED)
            raise

    def _advance(self, run: RunRecord, tracker: ProgressTracker, cancel: CancellationToken,
                 state: RunState, message: str) -> None:
        cancel.raise_if_cancelled(run.state.value)
        run.transition(state)
        tracker.emit(state, message)

    async def _execute(
        self,
        run: RunRecord,
        request: ExtractionRequest,
        tracker: ProgressTracker,
        cancel: CancellationToken,
    ) -> ExtractionResult:
        total_start = time.time()
        phase_times: Dict[str, float] = {}
        options = request.options
        sources = request.sources
        config = get_purpose_config(request.purpose)
        logger.info(
            f"=== Theme extraction START | run={run.run_id} | {len(sources)} sources | "
            f"purpose={config.purpose.value} | target={config.target_themes.min}-{config.target_themes.max} ==="
        )

        # ── Stage 1: Familiarization (validation + cache) ───────────────
        self._advance(run, tracker, cancel, RunState.VALIDATING, f"Validating {len(sources)} sources")
        issues = validate_sources(sources, config.purpose)
        if issues:
            raise ValidationError(config.purpose.value, issues)
        tracker.update_stats(sources_analyzed=len(sources))

        key = ""
        try:
            key = self.cache_key(request)
        except CacheError as e:
            logger.warning(f"Cache key unavailable, running uncached: {e.message}")
        if key and options.use_cache:
            cached = self._cache_get(key)
            if cached:
                result = ExtractionResult(
                    themes=cached, purpose=config.purpose, from_cache=True, cache_key=key,
                    metrics={"total_seconds": round(time.time() - total_start, 3)},
                )
                tracker.update_stats(themes_identified=len(cached))
                run.themes_count = len(cached)
                self._advance(run, tracker, cancel, RunState.COMPLETE, f"Loaded {len(cached)} cached themes")
                logger.info(f"Cache hit {key[:12]}: {len(cached)} themes")
                return result

        llm = self.llm if self._needs_llm() else None

        # ── Stage 2: Initial coding ─────────────────────────────────────
        t = time.time()
        self._advance(run, tracker, cancel, RunState.EXTRACTING, "Extracting initial codes")
        extractor = CodeExtractor(llm=llm, executor=self.executor, settings=self.settings)

        def _on_batch(done: int, total: int) -> None:
            tracker.emit_within(RunState.EXTRACTING, 0.9 * done / max(1, total),
                                f"Coded batch {done}/{total}")

        codes = await extractor.extract_codes(
            sources, cancel=cancel, progress=_on_batch, max_retries=options.max_retries,
        )
        split_stats: Dict[str, int] = {}
        if config.split_long_codes:
            cancel.raise_if_cancelled("extracting")
            splitter = CodeSplitter(
                llm=llm if extractor.mode == "llm" else None, executor=self.executor, settings=self.settings,
            )
            codes = await splitter.split_codes(codes, max_retries=options.max_retries)
            split_stats = dict(splitter.stats)
        tracker.update_stats(codes_generated=len(codes))
        run.codes_count = len(codes)
        phase_times["extracting"] = round(time.time() - t, 3)

        t = time.time()
        self._advance(run, tracker, cancel, RunState.EMBEDDING, f"Embedding {len(codes)} codes")
        embedded = await self.embedder.embed_codes(codes)
        if not embedded:
            raise EmbeddingError(f"none of {len(codes)} codes could be embedded")
        codes_by_id: Dict[str, Code] = {c.id: c for c in embedded}
        phase_times["embedding"] = round(time.time() - t, 3)

        # ── Stage 3: Theme generation ───────────────────────────────────
        t = time.time()
        self._advance(run, tracker, cancel, RunState.CLUSTERING, f"Clustering {len(embedded)} codes")
        clusters = await asyncio.to_thread(
            self.clustering.cluster,
            embedded,
            config.target_themes,
            config.bisecting and self.settings.bisecting_enabled,
            config.diversity_required,
        )
        if not clusters:
            raise ClusteringError("clustering produced no clusters")
        phase_times["clustering"] = round(time.time() - t, 3)

        # ── Stage 4: Theme review (labels) ──────────────────────────────
        t = time.time()
        self._advance(run, tracker, cancel, RunState.LABELING, f"Labeling {len(clusters)} themes")
        labeler = ThemeLabeler(settings=self.settings, llm=llm, executor=self.executor)
        labeled = await labeler.label_all_async(clusters, codes_by_id, max_retries=options.max_retries)
        phase_times["labeling"] = round(time.time() - t, 3)

        # ── Stage 5: Theme definition (provenance + quality) ────────────
        t = time.time()
        self._advance(run, tracker, cancel, RunState.ATTRIBUTING, "Attributing themes to sources")
        sources_by_id = {s.id: s for s in sources}
        themes: List[Theme] = []
        for item in labeled:
            theme_sources = self.provenance.attribute(item.cluster, codes_by_id, sources_by_id, item.keywords)
            controversial = self.provenance.is_controversial(item.cluster, codes_by_id)
            themes.append(item.to_theme(theme_sources, controversial=controversial))
        if not themes:
            raise ClusteringError("no themes survived attribution", stage_name="attributing")

        coherence = {th.id: item.cluster.coherence for th, item in zip(themes, labeled)}
        distinctiveness = self._distinctiveness(themes, labeled)
        themes, warnings = validate_themes(themes, coherence, distinctiveness, config)
        if not config.target_themes.contains(len(themes)):
            warnings.append(
                f"{len(themes)} themes outside the {config.purpose.value} target range "
                f"{config.target_themes.min}-{config.target_themes.max} "
                f"({len(embedded)} codes available)"
            )
        tracker.update_stats(themes_identified=len(themes))
        run.themes_count = len(themes)

        unit = unit_matrix([c.embedding for c in embedded])
        vectors = {c.id: unit[i] for i, c in enumerate(embedded)}
        diversity = diversity_metrics(
            clusters, vectors, {c.id: c.source_id for c in embedded}, len(sources),
            threshold=self.settings.diversity_similarity_threshold,
        )
        phase_times["attributing"] = round(time.time() - t, 3)

        # ── Stage 6: Saturation (optional) ──────────────────────────────
        snapshot: Optional[SaturationSnapshot] = None
        analysis: Optional[SaturationAnalysis] = None
        run_saturation = bool(options.prior_theme_counts) or (
            config.saturation_driven and len(sources) >= MIN_SOURCES_FOR_EMERGENCE
        )
        if run_saturation:
            self._advance(run, tracker, cancel, RunState.ANALYZING_SATURATION, "Analyzing saturation")
            analysis = await asyncio.to_thread(self._analyze_saturation, options.prior_theme_counts, themes, sources)
            snapshot = analysis.latest_snapshot()
            if not analysis.is_saturated:
                warnings.append(analysis.recommendation)

        # ── Cache write + complete ──────────────────────────────────────
        if key and options.use_cache:
            self._cache_set(key, themes, options.cache_ttl_seconds)

        total_time = time.time() - total_start
        metrics = {
            "total_seconds": round(total_time, 3),
            "phase_times": phase_times,
            "extraction": dict(extractor.metrics),
            "splitting": split_stats,
            "clustering": dict(self.clustering.metrics),
            "labeling_fallbacks": labeler.fallbacks,
            "codes_embedded": len(embedded),
            "rate_limit_wait_seconds": round(self.executor.total_wait_seconds, 3),
        }
        logger.info(
            f"Theme extraction complete: {len(sources)} sources → {len(embedded)} codes → "
            f"{len(themes)} themes in {total_time:.1f}s"
        )
        result = ExtractionResult(
            themes=themes,
            purpose=config.purpose,
            saturation=snapshot,
            saturation_analysis=analysis,
            diversity=diversity,
            cache_key=key,
            warnings=warnings,
            metrics=metrics,
        )
        self._advance(run, tracker, cancel, RunState.COMPLETE, f"Extracted {len(themes)} themes")
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _distinctiveness(themes: List[Theme], labeled) -> Dict[str, float]:
        if len(themes) < 2:
            return {th.id: 1.0 for th in themes}
        sims = centroid_similarities([item.cluster for item in labeled])
        np.fill_diagonal(sims, -1.0)
        nearest = sims.max(axis=1)
        return {th.id: float(max(0.0, 1.0 - nearest[i])) for i, th in enumerate(themes)}

    def _analyze_saturation(self, prior_counts: List[int], themes: List[Theme], sources) -> SaturationAnalysis:
        if prior_counts:
            # Themes this run adds beyond everything counted in earlier iterations
            current = max(0, len(themes) - sum(prior_counts))
            return self.saturation.analyze_full(list(prior_counts) + [current])
        theme_sets = [
            {th.id for th in themes if any(s.source_id == source.id for s in th.sources)}
            for source in sources
        ]
        return self.saturation.analyze_full([], theme_sets=theme_sets, source_ids=[s.id for s in sources])

    def _cache_get(self, key: str) -> Optional[List[Theme]]:
        try:
            return self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Cache read failed, running uncached: {e.message}")
            return None

    def _cache_set(self, key: str, themes: List[Theme], ttl: Optional[int]) -> None:
        try:
            self.cache.set(key, themes, ttl=ttl)
        except CacheError as e:
            logger.warning(f"Cache write failed (result still returned): {e.message}")
