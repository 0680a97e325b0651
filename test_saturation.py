"""
Saturation analyzer: Beta posterior, power-law fit, permutation robustness
and the recommendation tiers.
"""

import pytest

from theme_extraction.schemas.base import SaturationLevel
from theme_extraction.schemas.themes import SaturationSnapshot
from theme_extraction.themes.saturation import (
    SaturationAnalyzer,
    emergence_curve,
    fit_power_law,
    new_theme_counts,
)

# Three productive batches, then a long tail without new themes
SATURATING = [8, 5, 3, 1] + [0] * 28
STILL_EMERGING = [5, 4, 6, 5, 3]


@pytest.fixture
def analyzer(settings):
    return SaturationAnalyzer(settings=settings, permutations=20, seed=42)


def test_power_law_recovers_exponent():
    counts = [10.0 / x for x in range(1, 9)]
    a, b, r_squared = fit_power_law(counts)
    assert a == pytest.approx(10.0, rel=1e-6)
    assert b == pytest.approx(1.0, rel=1e-6)
    assert r_squared == pytest.approx(1.0, abs=1e-9)


def test_power_law_needs_three_points():
    assert fit_power_law([4, 2]) == (0.0, 0.0, 0.0)


def test_new_theme_counts_and_emergence_curve():
    sets = [{"a", "b"}, {"b", "c"}, {"a"}, {"d"}]
    assert new_theme_counts(sets) == [2, 1, 0, 1]

    curve = emergence_curve([("s1", sets[0]), ("s2", sets[1])])
    assert [p.source_id for p in curve] == ["s1", "s2"]
    assert curve[1].new_themes == 1
    assert curve[1].cumulative_themes == 3
    assert curve[1].percentage_new == pytest.approx(33.33)


def test_analyze_returns_latest_snapshot(analyzer):
    snapshot = analyzer.analyze(SATURATING)
    assert snapshot.iteration == len(SATURATING)
    assert snapshot.is_saturated
    assert snapshot.posterior_saturation_probability > 0.8

    mixed = analyzer.analyze([SaturationSnapshot(iteration=1, new_theme_count=4), 3])
    assert mixed.iteration == 2
    assert not mixed.is_saturated


def test_analyze_rejects_bad_history(analyzer):
    with pytest.raises(ValueError):
        analyzer.analyze([])
    with pytest.raises(ValueError):
        analyzer.analyze([3, -1])


def test_still_emerging_history_is_not_saturated(analyzer):
    analysis = analyzer.analyze_full(STILL_EMERGING)

    assert (analysis.alpha, analysis.beta) == (6.0, 1.0)
    assert analysis.probability_saturated < 0.01
    assert not analysis.bayesian_saturated
    assert analysis.saturation_point is None
    assert not analysis.is_saturated
    assert analysis.level == SaturationLevel.NONE
    assert analysis.recommendation.startswith("NO SATURATION")
    assert "Target: 8 total sources" in analysis.recommendation
    # Every ordering of the same counts reaches the same verdict
    assert analysis.robustness_score == 1.0
    assert analysis.saturation_point_variance == 0.0
    assert len(analysis.snapshots) == len(STILL_EMERGING)


def test_saturating_history(analyzer):
    analysis = analyzer.analyze_full(SATURATING)

    assert (analysis.alpha, analysis.beta) == (4.0, 30.0)
    assert analysis.bayesian_saturated
    assert analysis.probability_saturated > 0.8
    assert 1 <= analysis.saturation_point <= len(SATURATING)
    assert analysis.power_law_b > 0.5
    assert 0.0 <= analysis.robustness_score <= 1.0
    assert 0.0 <= analysis.confidence <= 1.0
    low, high = analysis.credible_interval
    assert 0.0 <= low < analysis.posterior_mean < high <= 1.0
    assert analysis.level != SaturationLevel.NONE


def test_robustness_is_reproducible(settings):
    first = SaturationAnalyzer(settings=settings, permutations=20, seed=7).analyze_full(SATURATING)
    second = SaturationAnalyzer(settings=settings, permutations=20, seed=7).analyze_full(SATURATING)
    assert first.robustness_score == second.robustness_score
    assert first.saturation_point_variance == second.saturation_point_variance


def test_theme_sets_drive_emergence(analyzer):
    sets = [{"t1", "t2", "t3"}, {"t2", "t4"}, {"t1"}, {"t3"}]
    analysis = analyzer.analyze_full([], theme_sets=sets, source_ids=["a", "b", "c", "d"])
    assert [s.new_theme_count for s in analysis.snapshots] == [3, 1, 0, 0]
    assert [p.source_id for p in analysis.emergence_curve] == ["a", "b", "c", "d"]
    assert analysis.emergence_curve[-1].cumulative_themes == 4


def test_recommendation_tiers():
    level, text = SaturationAnalyzer._recommend(True, True, True, 0.9, 0.95, 0.9, 10)
    assert level == SaturationLevel.HIGH
    assert text.startswith("HIGH CONFIDENCE SATURATION (90%)")

    level, text = SaturationAnalyzer._recommend(True, True, False, 0.6, 0.9, 0.5, 10)
    assert level == SaturationLevel.MODERATE
    assert "Robustness score: 50%" in text

    level, text = SaturationAnalyzer._recommend(True, False, False, 0.3, 0.85, 0.4, 10)
    assert level == SaturationLevel.WEAK

    level, text = SaturationAnalyzer._recommend(False, False, False, 0.1, 0.05, 1.0, 10)
    assert level == SaturationLevel.NONE
    assert "Target: 15 total sources" in text


def test_latest_snapshot_carries_the_overall_verdict(analyzer):
    # Flat history: the posterior says saturated, the power law does not
    analysis = analyzer.analyze_full([1] * 8)
    assert analysis.bayesian_saturated
    assert not analysis.power_law_saturated
    assert not analysis.is_saturated
    assert analysis.latest_snapshot().is_saturated == analysis.is_saturated
    # The Bayesian-only view is still available per batch
    assert analyzer.analyze([1] * 8).is_saturated


def test_snapshots_from_batches(analyzer):
    sets = [{"t1", "t2", "t3"}, {"t2", "t4"}, {"t1"}, {"t3"}]
    snapshots = analyzer.snapshots_from_batches(sets)
    assert [s.iteration for s in snapshots] == [1, 2, 3, 4]
    assert [s.new_theme_count for s in snapshots] == [3, 1, 0, 0]
    assert snapshots[-1] == analyzer.analyze([3, 1, 0, 0])
    assert analyzer.snapshots_from_batches([]) == []
