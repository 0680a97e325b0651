"""
Theme labeling (local TF and LLM refinement with fallback) and provenance.
"""

import asyncio
import json
import threading

import numpy as np
import pytest

from conftest import FakeLLM, RateLimitedLLM, make_theme
from theme_extraction.errors import ClusteringError
from theme_extraction.schemas.base import SourceType
from theme_extraction.schemas.themes import Code, SourceContent, ThemeCluster, ThemeSource
from theme_extraction.themes.labeling import (
    LOCAL_MODEL_NAME,
    ThemeLabeler,
    capitalize_label,
    confidence_from,
    extract_keywords,
)
from theme_extraction.themes.provenance import ProvenanceTracker, index_by_source

BROADBAND_TEXTS = [
    "Broadband outages interrupt live lectures",
    "Rural pupils lose lessons during broadband outages",
    "Broadband outages worsen attendance gaps",
]
FAMILY_TEXTS = [
    "Parents supervise schoolwork while working from home",
    "Grandparents lack digital skills for school portals",
    "Crowded apartments leave no quiet study space",
]


def _codes(texts, prefix, source_ids=None):
    source_ids = source_ids or ["s1"] * len(texts)
    return [
        Code(id=f"{prefix}{i}", source_id=sid, text=text, excerpts=[text])
        for i, (text, sid) in enumerate(zip(texts, source_ids))
    ]


def _cluster(cluster_id, codes, coherence=0.8):
    return ThemeCluster(id=cluster_id, code_ids=[c.id for c in codes], centroid=np.zeros(3), coherence=coherence)


@pytest.fixture
def labeled_setup():
    broadband = _codes(BROADBAND_TEXTS, "b")
    family = _codes(FAMILY_TEXTS, "f")
    codes = {c.id: c for c in broadband + family}
    clusters = [_cluster("cluster_0", broadband), _cluster("cluster_1", family, coherence=0.6)]
    return clusters, codes


# ── Local labeling ───────────────────────────────────────────────────

def test_helpers():
    assert capitalize_label("broadband outages") == "Broadband Outages"
    assert extract_keywords(["broadband broadband outages", "outages broadband"], limit=2) == ["broadband", "outages"]
    assert confidence_from(0.8, 3) == 0.8
    assert confidence_from(0.8, 1) == pytest.approx(0.5333, abs=1e-4)
    assert confidence_from(1.5, 10) == 1.0
    assert confidence_from(-0.2, 3) == 0.0


def test_local_label_uses_most_frequent_phrase(settings, labeled_setup):
    clusters, codes = labeled_setup
    labeler = ThemeLabeler(settings=settings)
    item = labeler.label(clusters[0], codes, total_codes=6)

    assert item.label == "Broadband Outages"
    assert item.keywords[:2] == ["broadband", "outages"]
    assert "Broadband outages interrupt live lectures" in item.description
    assert item.weight == 0.5
    assert item.confidence == 0.8
    assert item.model == LOCAL_MODEL_NAME
    assert "3 semantically related research codes" in item.definition


def test_label_all_keeps_cluster_order(settings, labeled_setup):
    clusters, codes = labeled_setup
    labeled = ThemeLabeler(settings=settings).label_all(clusters, codes)
    assert [l.cluster.id for l in labeled] == ["cluster_0", "cluster_1"]
    assert sum(l.weight for l in labeled) == pytest.approx(1.0)
    assert ThemeLabeler(settings=settings).label_all([], codes) == []


def test_async_labeling_runs_off_the_event_loop_thread(settings, labeled_setup, monkeypatch):
    clusters, codes = labeled_setup
    labeler = ThemeLabeler(settings=settings)
    threads = {}
    label_all = labeler.label_all

    def _recording(*args):
        threads["labeling"] = threading.get_ident()
        return label_all(*args)

    monkeypatch.setattr(labeler, "label_all", _recording)

    async def _run():
        threads["loop"] = threading.get_ident()
        return await labeler.label_all_async(clusters, codes)

    labeled = asyncio.run(_run())
    assert [l.cluster.id for l in labeled] == ["cluster_0", "cluster_1"]
    assert threads["labeling"] != threads["loop"]


def test_labeler_modes(settings):
    with pytest.raises(ValueError):
        ThemeLabeler(settings=settings, mode="oracle")
    # LLM mode without a client degrades to local labels
    assert ThemeLabeler(settings=settings, mode="llm").mode == "local"


def test_to_theme_requires_sources(settings, labeled_setup):
    clusters, codes = labeled_setup
    item = ThemeLabeler(settings=settings).label(clusters[0], codes, total_codes=6)
    theme = item.to_theme([ThemeSource(source_id="s1", influence=1.0)])
    assert theme.id.startswith("theme_")
    assert theme.code_ids == ["b0", "b1", "b2"]
    assert theme.extraction_model == LOCAL_MODEL_NAME
    with pytest.raises(ValueError):
        item.to_theme([])


# ── LLM labeling ─────────────────────────────────────────────────────

def test_llm_label_replaces_local_label_when_grounded(settings, executor, labeled_setup):
    clusters, codes = labeled_setup
    llm = FakeLLM()
    labeler = ThemeLabeler(settings=settings, llm=llm, executor=executor, mode="llm")
    labeled = asyncio.run(labeler.label_all_async(clusters, codes))

    assert llm.calls == 2
    assert labeler.fallbacks == 0
    assert labeled[0].label.startswith("Broadband Outages")
    assert labeled[0].model == "fake-llm"


def test_ungrounded_llm_label_falls_back(settings, executor, labeled_setup):
    clusters, codes = labeled_setup

    def _hallucinate(prompt):
        return json.dumps({"label": "Quantum Gravity Effects", "description": "x", "keywords": ["quantum"]})

    labeler = ThemeLabeler(settings=settings, llm=FakeLLM(_hallucinate), executor=executor, mode="llm")
    labeled = asyncio.run(labeler.label_all_async(clusters[:1], codes))
    assert labeled[0].label == "Broadband Outages"
    assert labeled[0].model == LOCAL_MODEL_NAME
    assert labeler.fallbacks == 1
    assert "llm label not grounded in codes" in labeled[0].notes


def test_unparseable_llm_label_falls_back(settings, executor, labeled_setup):
    clusters, codes = labeled_setup
    labeler = ThemeLabeler(settings=settings, llm=FakeLLM(lambda p: "no json here"), executor=executor, mode="llm")
    labeled = asyncio.run(labeler.label_all_async(clusters[:1], codes))
    assert labeled[0].label == "Broadband Outages"
    assert labeler.fallbacks == 1


def test_rate_limited_labeling_keeps_local_labels(settings, executor, labeled_setup):
    clusters, codes = labeled_setup
    llm = RateLimitedLLM()
    labeler = ThemeLabeler(settings=settings, llm=llm, executor=executor, mode="llm")
    labeled = asyncio.run(labeler.label_all_async(clusters[:1], codes))
    assert labeled[0].label == "Broadband Outages"
    assert labeler.fallbacks == 1
    assert llm.calls == settings.rate_limit_max_retries


# ── Provenance ───────────────────────────────────────────────────────

@pytest.fixture
def source_map():
    return {
        "s1": SourceContent(id="s1", title="Rural Access Study", text="Broadband outages and rural pupils."),
        "s2": SourceContent(id="s2", type=SourceType.VIDEO_TRANSCRIPT, text="Lectures and attendance gaps."),
    }


def test_attribute_computes_influence(source_map):
    codes = _codes(BROADBAND_TEXTS, "b", ["s1", "s1", "s2"])
    by_id = {c.id: c for c in codes}
    records = ProvenanceTracker().attribute(_cluster("cluster_0", codes), by_id, source_map, ["broadband", "lectures"])

    assert [r.source_id for r in records] == ["s1", "s2"]
    assert records[0].influence == pytest.approx(0.6667, abs=1e-4)
    assert sum(r.influence for r in records) == pytest.approx(1.0, abs=1e-3)
    assert records[0].code_count == 2
    assert records[0].keyword_matches == 1
    assert records[0].source_title == "Rural Access Study"
    assert records[1].source_title == "s2"
    assert records[1].source_type == SourceType.VIDEO_TRANSCRIPT
    assert len(records[0].excerpts) == 2


def test_attribute_without_resolvable_source_is_an_error(source_map):
    codes = _codes(BROADBAND_TEXTS, "b", ["ghost"] * 3)
    with pytest.raises(ClusteringError) as exc_info:
        ProvenanceTracker().attribute(_cluster("cluster_0", codes), {c.id: c for c in codes}, source_map)
    assert exc_info.value.stage == "attributing"


def test_controversy_needs_opposing_sources():
    tracker = ProvenanceTracker()
    split = _codes(
        ["Surveys confirm blended schedules improve engagement", "Later cohorts refute the engagement gains"],
        "c", ["s1", "s2"],
    )
    assert tracker.is_controversial(_cluster("k", split), {c.id: c for c in split})

    hedging = _codes(
        ["Surveys confirm blended schedules improve engagement", "Later cohorts refute the engagement gains"],
        "h", ["s1", "s1"],
    )
    assert not tracker.is_controversial(_cluster("k", hedging), {c.id: c for c in hedging})

    neutral = _codes(BROADBAND_TEXTS[:2], "n", ["s1", "s2"])
    assert not tracker.is_controversial(_cluster("k", neutral), {c.id: c for c in neutral})


def test_provenance_report_and_reverse_index():
    theme = make_theme("Broadband Outages", source_ids=("s1", "s2"))
    theme = theme.model_copy(update={"sources": [
        ThemeSource(source_id="s1", source_title="Rural Access Study", influence=0.75, code_count=3),
        ThemeSource(source_id="s2", source_title="Parent Interviews", source_type=SourceType.VIDEO_TRANSCRIPT,
                    influence=0.25, code_count=1),
    ]})
    report = ProvenanceTracker().build_report(theme)

    assert report.paper_influence == 0.75
    assert report.video_influence == 0.25
    assert report.podcast_influence == 0.0
    assert (report.paper_count, report.video_count) == (1, 1)
    assert report.citation_chain == [
        "Rural Access Study (paper, 75% of codes)",
        "Parent Interviews (video_transcript, 25% of codes)",
    ]

    other = make_theme("Family Burden", source_ids=("s2",))
    index = index_by_source([theme, other])
    assert index == {"s1": [theme.id], "s2": [theme.id, other.id]}
