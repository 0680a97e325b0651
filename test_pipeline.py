"""
End-to-end pipeline runs: validation before any LLM call, rate-limit
escalation, successful extraction, caching, progress ordering,
cancellation and saturation reporting.
"""

import asyncio
import logging

import pytest

from conftest import FakeLLM, RateLimitedLLM, make_sources
from theme_extraction import configure_logging
from theme_extraction.errors import RateLimitError, ValidationError
from theme_extraction.schemas.base import ExpertiseLevel, ResearchPurpose, RunState
from theme_extraction.schemas.events import ExtractionOptions, ExtractionRequest
from theme_extraction.themes.engine import ThemeExtractionPipeline
from theme_extraction.themes.run_manager import CancellationToken, ProgressTracker


def _request(sources, purpose=ResearchPurpose.LITERATURE_SYNTHESIS, **options):
    return ExtractionRequest(sources=sources, purpose=purpose, options=ExtractionOptions(**options))


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def pipeline(settings, executor, llm):
    return ThemeExtractionPipeline(settings=settings, llm=llm, executor=executor)


# ── Validation ───────────────────────────────────────────────────────

def test_insufficient_content_fails_before_any_llm_call(pipeline, llm):
    sources = make_sources({f"s{i}": "tiny text!" for i in range(3)})
    request = _request(sources, ResearchPurpose.QUALITATIVE_ANALYSIS)

    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(pipeline.run(request))
    assert len(exc_info.value.issues) == 3
    assert llm.calls == 0

    outcome = asyncio.run(pipeline.run_safe(request))
    assert outcome.state == RunState.FAILED
    assert not outcome.ok
    assert outcome.error["type"] == "validation_error"
    assert outcome.error["stage"] == "validating"
    assert llm.calls == 0


# ── Rate limits ──────────────────────────────────────────────────────

def test_rate_limit_surfaces_with_retry_time_and_usage(settings, executor):
    llm = RateLimitedLLM()
    pipeline = ThemeExtractionPipeline(settings=settings, llm=llm, executor=executor)
    request = _request(make_sources()[:3], ResearchPurpose.QUALITATIVE_ANALYSIS)

    with pytest.raises(RateLimitError) as exc_info:
        asyncio.run(pipeline.run(request))
    err = exc_info.value
    assert err.retry_after_seconds == 120
    assert (err.usage.limit, err.usage.used, err.usage.requested) == (100000, 99996, 400)
    assert err.stage == "extracting"
    assert llm.calls == settings.rate_limit_max_retries


def test_rate_limit_outcome_is_failed(settings, executor):
    pipeline = ThemeExtractionPipeline(settings=settings, llm=RateLimitedLLM(), executor=executor)
    outcome = asyncio.run(pipeline.run_safe(_request(make_sources()[:3], ResearchPurpose.QUALITATIVE_ANALYSIS)))
    assert outcome.state == RunState.FAILED
    assert outcome.error["type"] == "rate_limit_error"
    assert outcome.error["retry_after_seconds"] == 120


# ── Successful runs ──────────────────────────────────────────────────

def test_literature_synthesis_produces_attributed_themes(pipeline, sources):
    result = asyncio.run(pipeline.run(_request(sources)))

    assert 10 <= len(result.themes) <= 25
    assert not result.from_cache
    source_ids = {s.id for s in sources}
    for theme in result.themes:
        assert theme.sources
        assert {s.source_id for s in theme.sources} <= source_ids
        assert 0.0 <= theme.weight <= 1.0
        assert 0.0 <= theme.confidence <= 1.0
        assert sum(s.influence for s in theme.sources) == pytest.approx(1.0, abs=0.01)
    assert result.metrics["extraction"]["codes"] == 30
    assert result.diversity is not None
    assert result.saturation_analysis is None


def test_second_identical_run_is_served_from_cache(pipeline, llm, sources):
    first = asyncio.run(pipeline.run(_request(sources)))
    calls_after_first = llm.calls

    events = []
    second = asyncio.run(pipeline.run(_request(sources), on_progress=events.append))
    assert second.from_cache
    assert [t.id for t in second.themes] == [t.id for t in first.themes]
    assert llm.calls == calls_after_first
    assert [e.state for e in events] == [RunState.VALIDATING, RunState.COMPLETE]

    third = asyncio.run(pipeline.run(_request(sources, use_cache=False)))
    assert not third.from_cache
    assert llm.calls > calls_after_first


def test_progress_is_monotonic_and_ends_complete(pipeline, sources):
    events = []
    asyncio.run(pipeline.run(_request(sources), on_progress=events.append))

    percentages = [e.percentage for e in events]
    assert percentages == sorted(percentages)
    assert events[-1].percentage == 100.0
    assert events[-1].state == RunState.COMPLETE
    assert {e.stage for e in events} == {1, 2, 3, 4, 5, 6}
    assert events[-1].stats.themes_identified >= 10
    assert events[-1].stats.codes_generated == 30


def test_progress_descriptions_follow_expertise_level(pipeline, sources):
    descriptions = {}
    for level in (ExpertiseLevel.NOVICE, ExpertiseLevel.EXPERT):
        events = []
        asyncio.run(pipeline.run(
            _request(sources, user_expertise_level=level, use_cache=False), on_progress=events.append,
        ))
        descriptions[level] = {e.state: e.description for e in events}

    novice, expert = descriptions[ExpertiseLevel.NOVICE], descriptions[ExpertiseLevel.EXPERT]
    assert novice.keys() == expert.keys()
    for state in novice:
        assert novice[state] and expert[state]
        assert novice[state] != expert[state]


def test_progress_description_uses_current_stats():
    tracker = ProgressTracker(expertise_level="novice")
    tracker.update_stats(sources_analyzed=5, codes_generated=30)
    event = tracker.emit(RunState.EXTRACTING)
    assert event.description == "Looking for interesting ideas across all 5 sources. Found 30 initial ideas so far."
    assert ProgressTracker().expertise_level == ExpertiseLevel.RESEARCHER


def test_run_history_follows_the_state_machine(pipeline, sources):
    outcome = asyncio.run(pipeline.run_safe(_request(sources)))
    assert outcome.ok
    record = pipeline.run_manager.get_run(outcome.run_id)
    assert record.history == [
        RunState.IDLE, RunState.VALIDATING, RunState.EXTRACTING, RunState.EMBEDDING,
        RunState.CLUSTERING, RunState.LABELING, RunState.ATTRIBUTING, RunState.COMPLETE,
    ]
    assert record.themes_count == len(outcome.result.themes)
    assert [r.run_id for r in pipeline.run_manager.list_runs()] == [outcome.run_id]
    assert not pipeline.run_manager.is_running


def test_mock_mode_runs_without_network(settings, executor, sources):
    pipeline = ThemeExtractionPipeline(settings=settings, executor=executor, mock_mode=True)
    outcome = asyncio.run(pipeline.run_safe(_request(sources, ResearchPurpose.HYPOTHESIS_GENERATION)))
    assert outcome.ok, outcome.error
    assert pipeline.llm.provider_name == "mock"


# ── Failure and cancellation ─────────────────────────────────────────

def test_empty_llm_output_is_never_a_success(settings, executor, sources):
    pipeline = ThemeExtractionPipeline(settings=settings, llm=FakeLLM(lambda p: "{}"), executor=executor)
    outcome = asyncio.run(pipeline.run_safe(_request(sources)))
    assert outcome.state == RunState.FAILED
    assert outcome.result is None
    assert outcome.error["type"] == "no_content_produced"
    assert outcome.error["stage"] == "extracting"


def test_cancel_from_progress_callback(pipeline, sources):
    token = CancellationToken()

    def _on_progress(event):
        if event.state == RunState.EMBEDDING:
            token.cancel("user navigated away")

    outcome = asyncio.run(pipeline.run_safe(_request(sources), on_progress=_on_progress, cancel=token))
    assert outcome.state == RunState.CANCELLED
    assert outcome.error["type"] == "cancelled"
    assert outcome.error["stage"] == "embedding"
    assert outcome.result is None


def test_pre_cancelled_run_does_no_work(pipeline, llm, sources):
    token = CancellationToken()
    token.cancel()
    outcome = asyncio.run(pipeline.run_safe(_request(sources), cancel=token))
    assert outcome.state == RunState.CANCELLED
    assert llm.calls == 0


# ── Saturation ───────────────────────────────────────────────────────

def test_qualitative_run_reports_theme_emergence(pipeline):
    sources = make_sources()[:4]
    result = asyncio.run(pipeline.run(_request(sources, ResearchPurpose.QUALITATIVE_ANALYSIS)))

    analysis = result.saturation_analysis
    assert analysis is not None
    assert [p.source_id for p in analysis.emergence_curve] == [s.id for s in sources]
    assert analysis.emergence_curve[-1].cumulative_themes <= len(result.themes)
    assert result.saturation == analysis.latest_snapshot()


def test_prior_theme_counts_extend_the_history(pipeline, sources):
    result = asyncio.run(pipeline.run(_request(sources, prior_theme_counts=[8, 3, 1])))
    analysis = result.saturation_analysis
    assert len(analysis.snapshots) == 4
    assert result.saturation.iteration == 4
    assert analysis.alpha >= 1.0 and analysis.beta >= 1.0
    assert result.saturation.is_saturated == analysis.is_saturated


def test_configure_logging_quiets_http_clients():
    configure_logging("debug")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING
