"""Run bookkeeping: cancellation, ordered progress emission, in-memory run registry.

Progress percentages are emitted in non-decreasing order even though the work
behind them is concurrent: ProgressTracker serializes emission under a lock
and clamps any late, lower percentage up to the last one sent.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from theme_extraction.errors import ExtractionCancelled
from theme_extraction.schemas.base import ExpertiseLevel, RunState
from theme_extraction.schemas.events import ProgressEvent, ProgressStats

logger = logging.getLogger(__name__)


# Stage boundaries → (stage number, stage name, percentage at stage start)
STAGE_PROGRESS: Dict[RunState, tuple] = {
    RunState.VALIDATING: (1, "Familiarization", 0),
    RunState.EXTRACTING: (2, "Initial Coding", 5),
    RunState.EMBEDDING: (2, "Initial Coding", 45),
    RunState.CLUSTERING: (3, "Theme Generation", 55),
    RunState.LABELING: (4, "Theme Review", 70),
    RunState.ATTRIBUTING: (5, "Theme Definition", 82),
    RunState.ANALYZING_SATURATION: (6, "Report Production", 92),
    RunState.COMPLETE: (6, "Report Production", 100),
}

# Per-stage description templates by caller expertise. Filled from ProgressStats.
STAGE_DESCRIPTIONS: Dict[int, Dict[ExpertiseLevel, str]] = {
    1: {
        ExpertiseLevel.NOVICE: "Reading all {sources} sources together and checking there is enough text to work with.",
        ExpertiseLevel.RESEARCHER: "Familiarization: validating content length for {sources} sources against the purpose's minimums.",
        ExpertiseLevel.EXPERT: "Corpus validation: per-source and total length thresholds, {sources} sources, blocking on any shortfall.",
    },
    2: {
        ExpertiseLevel.NOVICE: "Looking for interesting ideas across all {sources} sources. Found {codes} initial ideas so far.",
        ExpertiseLevel.RESEARCHER: "Initial coding across the corpus: {codes} codes from {sources} sources, then semantic embeddings.",
        ExpertiseLevel.EXPERT: "Batched code extraction, grounded atomic splitting and embedding with locked dimension: {codes} codes.",
    },
    3: {
        ExpertiseLevel.NOVICE: "Grouping related ideas into bigger themes. Building themes from {codes} ideas.",
        ExpertiseLevel.RESEARCHER: "Clustering {codes} codes into candidate themes by semantic similarity.",
        ExpertiseLevel.EXPERT: "Purpose-specific clustering of {codes} unit vectors: k-means++ with k selection, coherence and overlap checks.",
    },
    4: {
        ExpertiseLevel.NOVICE: "Checking the {themes} themes make sense and giving each a clear name.",
        ExpertiseLevel.RESEARCHER: "Reviewing {themes} candidate themes: labels, descriptions and keywords from their codes.",
        ExpertiseLevel.EXPERT: "Theme review: TF phrase labeling (bigram/unigram), optional grounded LLM refinement, {themes} themes.",
    },
    5: {
        ExpertiseLevel.NOVICE: "Working out which sources shaped each of the {themes} themes.",
        ExpertiseLevel.RESEARCHER: "Calculating how much each source contributed to each of the {themes} themes.",
        ExpertiseLevel.EXPERT: "Provenance: per-source influence weights, controversy detection and reverse index for {themes} themes.",
    },
    6: {
        ExpertiseLevel.NOVICE: "Wrapping up: {themes} themes found in {sources} sources.",
        ExpertiseLevel.RESEARCHER: "Report production: {themes} themes, diversity metrics and saturation where the purpose needs it.",
        ExpertiseLevel.EXPERT: "Report: {themes} themes from {codes} codes, diversity metrics, Bayesian and power-law saturation checks.",
    },
}

# Allowed state machine transitions (FAILED / CANCELLED reachable from any non-terminal)
TRANSITIONS: Dict[RunState, tuple] = {
    RunState.IDLE: (RunState.VALIDATING,),
    RunState.VALIDATING: (RunState.EXTRACTING, RunState.COMPLETE),  # COMPLETE = cache hit
    RunState.EXTRACTING: (RunState.EMBEDDING,),
    RunState.EMBEDDING: (RunState.CLUSTERING,),
    RunState.CLUSTERING: (RunState.LABELING,),
    RunState.LABELING: (RunState.ATTRIBUTING,),
    RunState.ATTRIBUTING: (RunState.ANALYZING_SATURATION, RunState.COMPLETE),
    RunState.ANALYZING_SATURATION: (RunState.COMPLETE,),
}


class CancellationToken:
    """Cooperative cancellation flag, safe to set from any thread."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise ExtractionCancelled(stage)


class ProgressTracker:
    """Serializes progress events and keeps percentages monotonic."""

    def __init__(self, callback: Optional[Callable[[ProgressEvent], Any]] = None,
                 expertise_level: ExpertiseLevel = ExpertiseLevel.RESEARCHER):
        self._callback = callback
        self.expertise_level = ExpertiseLevel(expertise_level)
        self._lock = threading.Lock()
        self._last_pct = 0.0
        self.stats = ProgressStats()
        self.events: List[ProgressEvent] = []

    def update_stats(self, **kwargs) -> None:
        with self._lock:
            self.stats = self.stats.model_copy(update=kwargs)

    def emit(self, state: RunState, message: str = "", percentage: Optional[float] = None) -> ProgressEvent:
        stage, stage_name, stage_pct = STAGE_PROGRESS.get(state, (1, state.value, self._last_pct))
        with self._lock:
            pct = stage_pct if percentage is None else percentage
            pct = max(self._last_pct, min(100.0, float(pct)))
            self._last_pct = pct
            event = ProgressEvent(
                stage=stage,
                stage_name=stage_name,
                percentage=round(pct, 1),
                message=message,
                description=self.describe(stage),
                stats=self.stats.model_copy(),
                state=state,
            )
            self.events.append(event)
            if self._callback is not None:
                try:
                    self._callback(event)
                except Exception as e:
                    # A broken progress sink must not take the run down
                    logger.warning(f"Progress callback failed: {type(e).__name__}: {e}")
        return event

    def describe(self, stage: int) -> str:
        """Stage description worded for the caller's expertise level."""
        templates = STAGE_DESCRIPTIONS.get(stage)
        if not templates:
            return ""
        s = self.stats
        return templates[self.expertise_level].format(
            sources=s.sources_analyzed, codes=s.codes_generated, themes=s.themes_identified,
        )

    def emit_within(self, state: RunState, fraction: float, message: str = "") -> ProgressEvent:
        """Progress part-way through `state`, interpolated toward the next stage start."""
        _, _, start = STAGE_PROGRESS.get(state, (1, "", self._last_pct))
        following = [p for _, _, p in STAGE_PROGRESS.values() if p > start]
        end = min(following) if following else 100
        fraction = max(0.0, min(1.0, fraction))
        return self.emit(state, message, start + (end - start) * fraction)


@dataclass
class RunRecord:
    """State for a single extraction run."""
    run_id: str
    purpose: str = ""
    state: RunState = RunState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    history: List[RunState] = field(default_factory=lambda: [RunState.IDLE])
    events: List[ProgressEvent] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    themes_count: int = 0
    codes_count: int = 0

    def transition(self, new_state: RunState) -> None:
        """Move to `new_state`, rejecting moves the state machine does not allow."""
        if self.state.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is already {self.state.value}")
        allowed = TRANSITIONS.get(self.state, ())
        if new_state not in allowed and new_state not in (RunState.FAILED, RunState.CANCELLED):
            raise RuntimeError(
                f"Illegal transition {self.state.value} → {new_state.value} for run {self.run_id}"
            )
        self.state = new_state
        self.history.append(new_state)
        if new_state.is_terminal:
            self.completed_at = datetime.now(timezone.utc)


class RunManager:
    """Tracks recent extraction runs in memory (bounded)."""

    def __init__(self, max_runs: int = 50):
        self.max_runs = max_runs
        self._runs: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def create_run(self, purpose: str = "", run_id: Optional[str] = None) -> RunRecord:
        run = RunRecord(run_id=run_id or uuid.uuid4().hex[:12], purpose=purpose)
        with self._lock:
            self._runs[run.run_id] = run
            if len(self._runs) > self.max_runs:
                oldest = min(self._runs.values(), key=lambda r: r.started_at)
                self._runs.pop(oldest.run_id, None)
        return run

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        with self._lock:
            runs = sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    @property
    def is_running(self) -> bool:
        with self._lock:
            return any(not r.state.is_terminal and r.state != RunState.IDLE for r in self._runs.values())
