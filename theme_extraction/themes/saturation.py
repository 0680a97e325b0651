"""
Saturation analysis — are more sources likely to yield new themes?

Input is a sequence of batches (iterations or individual sources), each
with a count of themes that first appeared in that batch. Three signals:

1. BAYESIAN (Beta-Bernoulli)
   Each batch is a trial: "success" = more than NEW_THEME_THRESHOLD new
   themes. Prior Beta(1, 1); success → α += 1, otherwise β += 1.
     p_saturated = P(p < 0.2 | data) = BetaCDF(0.2; α, β)
     posterior mean = α / (α + β), 95% credible interval from beta.ppf
   Saturated when the posterior mean is below 0.1 with an interval narrower
   than 0.5, or p_saturated > 0.8. The saturation point is the first batch
   at which that holds.

2. POWER LAW
   new(i) ≈ a · i^(-b), fitted by OLS in log-log space (zeros floored at 0.1).
   Saturating iff b > 0.5 and R² > 0.7. Needs ≥ 3 batches.

3. ORDER INDEPENDENCE
   Batch order is permuted (seeded) N times. A permutation agrees when its
   Bayesian conclusion matches the observed one and its saturation point lies
   within a tolerance of the observed point. robustness = share agreeing;
   robust iff > 0.75. Saturation-point variance is reported alongside, so
   an unstable point is visible rather than hidden.

Confidence = geometric mean(p_saturated, R², robustness). The overall verdict
requires all three signals.

REF: Guest, Bunce & Johnson (2006); Francis et al. (2010) on stopping
criteria; Fusch & Ness (2015) on data saturation.
"""

import logging
import math
from typing import List, Optional, Sequence, Set, Tuple, Union

import numpy as np
from scipy.stats import beta as beta_dist

from theme_extraction.config import get_settings
from theme_extraction.schemas.base import SaturationLevel
from theme_extraction.schemas.themes import EmergencePoint, SaturationAnalysis, SaturationSnapshot

logger = logging.getLogger(__name__)

LOW_PROBABILITY_THRESHOLD = 0.2
NEW_THEME_PROBABILITY_THRESHOLD = 0.1
MAX_CREDIBLE_INTERVAL_WIDTH = 0.5
CREDIBLE_MASS = 0.95
POWER_LAW_THRESHOLD = 0.5
R_SQUARED_THRESHOLD = 0.7
ROBUSTNESS_THRESHOLD = 0.75
MIN_POWER_LAW_POINTS = 3
ZERO_FLOOR = 0.1

HistoryItem = Union[SaturationSnapshot, int]


def new_theme_counts(theme_sets: Sequence[Set[str]]) -> List[int]:
    """Themes seen for the first time in each batch, in order."""
    seen: Set[str] = set()
    counts = []
    for themes in theme_sets:
        fresh = set(themes) - seen
        counts.append(len(fresh))
        seen |= fresh
    return counts


def emergence_curve(theme_sets: Sequence[Tuple[str, Set[str]]]) -> List[EmergencePoint]:
    """Per-source emergence: new, cumulative and % new themes as sources are added."""
    points = []
    seen: Set[str] = set()
    for index, (source_id, themes) in enumerate(theme_sets):
        fresh = set(themes) - seen
        seen |= fresh
        cumulative = len(seen)
        points.append(EmergencePoint(
            source_index=index,
            source_id=source_id,
            new_themes=len(fresh),
            cumulative_themes=cumulative,
            percentage_new=round(100.0 * len(fresh) / cumulative, 2) if cumulative else 0.0,
        ))
    return points


def fit_power_law(counts: Sequence[int]) -> Tuple[float, float, float]:
    """(a, b, R²) for counts[i] ≈ a · (i+1)^(-b). Zeros for fewer than 3 points."""
    if len(counts) < MIN_POWER_LAW_POINTS:
        return 0.0, 0.0, 0.0
    x = np.log(np.arange(1, len(counts) + 1, dtype=np.float64))
    y = np.log(np.maximum(np.asarray(counts, dtype=np.float64), ZERO_FLOOR))
    slope, intercept = np.polyfit(x, y, 1)
    predicted = intercept + slope * x
    ss_total = float(((y - y.mean()) ** 2).sum())
    ss_residual = float(((y - predicted) ** 2).sum())
    r_squared = 1.0 - ss_residual / ss_total if ss_total > 0 else 0.0
    return float(math.exp(intercept)), float(-slope), float(r_squared)


class SaturationAnalyzer:
    """Bayesian + power-law saturation detection with permutation robustness."""

    def __init__(self, settings=None, permutations: Optional[int] = None, seed: Optional[int] = None):
        self.settings = settings or get_settings()
        self.permutations = self.settings.saturation_permutations if permutations is None else permutations
        self.seed = self.settings.clustering_random_state if seed is None else seed
        self.new_theme_threshold = self.settings.saturation_new_theme_threshold
        self.probability_threshold = self.settings.saturation_probability_threshold

    # ── Bayesian ─────────────────────────────────────────────────────

    def _posterior_saturated(self, alpha: float, beta: float) -> Tuple[bool, float]:
        p_saturated = float(beta_dist.cdf(LOW_PROBABILITY_THRESHOLD, alpha, beta))
        mean = alpha / (alpha + beta)
        low, high = beta_dist.ppf([(1 - CREDIBLE_MASS) / 2, 1 - (1 - CREDIBLE_MASS) / 2], alpha, beta)
        tight_and_low = mean < NEW_THEME_PROBABILITY_THRESHOLD and (high - low) < MAX_CREDIBLE_INTERVAL_WIDTH
        return bool(tight_and_low or p_saturated > self.probability_threshold), p_saturated

    def _bayesian(self, counts: Sequence[int]):
        alpha, beta = 1.0, 1.0
        snapshots: List[SaturationSnapshot] = []
        saturation_point = None
        for i, count in enumerate(counts, 1):
            if count > self.new_theme_threshold:
                alpha += 1
            else:
                beta += 1
            saturated, p_saturated = self._posterior_saturated(alpha, beta)
            if saturated and saturation_point is None:
                saturation_point = i
            snapshots.append(SaturationSnapshot(
                iteration=i,
                new_theme_count=int(count),
                posterior_saturation_probability=round(min(1.0, max(0.0, p_saturated)), 6),
                is_saturated=saturated,
            ))
        return alpha, beta, snapshots, saturation_point

    # ── Public API ───────────────────────────────────────────────────

    @staticmethod
    def _counts(history: Sequence[HistoryItem]) -> List[int]:
        counts = []
        for item in history:
            count = item.new_theme_count if isinstance(item, SaturationSnapshot) else int(item)
            if count < 0:
                raise ValueError(f"new theme count must be >= 0, got {count}")
            counts.append(count)
        return counts

    def analyze(self, history: Sequence[HistoryItem]) -> SaturationSnapshot:
        """Latest snapshot for a history of batches (Bayesian signal only)."""
        counts = self._counts(history)
        if not counts:
            raise ValueError("saturation analysis needs at least one batch")
        _, _, snapshots, _ = self._bayesian(counts)
        return snapshots[-1]

    def snapshots_from_batches(self, theme_sets: Sequence[Set[str]]) -> List[SaturationSnapshot]:
        """One Bayesian snapshot per batch of theme ids, counting first appearances."""
        return self._bayesian(new_theme_counts(theme_sets))[2]

    def analyze_full(
        self,
        history: Sequence[HistoryItem],
        theme_sets: Optional[Sequence[Set[str]]] = None,
        source_ids: Optional[Sequence[str]] = None,
    ) -> SaturationAnalysis:
        """All three signals, confidence, level and recommendation.

        When per-batch theme sets are given, permutations reshuffle the sets
        and recount emergence; otherwise the counts themselves are reshuffled.
        """
        if theme_sets is not None:
            counts = new_theme_counts(theme_sets)
        else:
            counts = self._counts(history)
        if not counts:
            raise ValueError("saturation analysis needs at least one batch")

        alpha, beta, snapshots, saturation_point = self._bayesian(counts)
        bayes_saturated, p_saturated = self._posterior_saturated(alpha, beta)
        mean = alpha / (alpha + beta)
        low, high = beta_dist.ppf([(1 - CREDIBLE_MASS) / 2, 1 - (1 - CREDIBLE_MASS) / 2], alpha, beta)

        a, b, r_squared = fit_power_law(counts)
        power_law_saturated = b > POWER_LAW_THRESHOLD and r_squared > R_SQUARED_THRESHOLD

        robustness, point_variance = self._robustness(counts, theme_sets, bayes_saturated, saturation_point)
        is_robust = robustness > ROBUSTNESS_THRESHOLD

        confidence = (max(0.0, p_saturated) * max(0.0, r_squared) * max(0.0, robustness)) ** (1 / 3)
        is_saturated = bayes_saturated and power_law_saturated and is_robust
        # The latest snapshot reports the overall verdict, not the Bayesian one alone
        snapshots[-1] = snapshots[-1].model_copy(update={"is_saturated": is_saturated})
        level, recommendation = self._recommend(
            bayes_saturated, power_law_saturated, is_robust, confidence, p_saturated, robustness, len(counts),
        )

        curve = []
        if theme_sets is not None:
            ids = list(source_ids) if source_ids else [str(i) for i in range(len(theme_sets))]
            curve = emergence_curve(list(zip(ids, theme_sets)))

        analysis = SaturationAnalysis(
            snapshots=snapshots,
            alpha=alpha,
            beta=beta,
            posterior_mean=round(mean, 6),
            credible_interval=(round(float(low), 6), round(float(high), 6)),
            probability_saturated=round(p_saturated, 6),
            saturation_point=saturation_point,
            bayesian_saturated=bayes_saturated,
            power_law_a=round(a, 6),
            power_law_b=round(b, 6),
            power_law_r_squared=round(r_squared, 6),
            power_law_saturated=power_law_saturated,
            robustness_score=round(robustness, 4),
            saturation_point_variance=round(point_variance, 4),
            is_robust=is_robust,
            confidence=round(confidence, 4),
            is_saturated=is_saturated,
            level=level,
            recommendation=recommendation,
            emergence_curve=curve,
        )
        logger.info(
            f"Saturation: {level.value} (p_saturated={p_saturated:.3f}, b={b:.3f}, "
            f"R²={r_squared:.3f}, robustness={robustness:.2f}, point={saturation_point})"
        )
        return analysis

    def _robustness(
        self,
        counts: Sequence[int],
        theme_sets: Optional[Sequence[Set[str]]],
        observed_saturated: bool,
        observed_point: Optional[int],
    ) -> Tuple[float, float]:
        if self.permutations <= 0 or len(counts) < 2:
            return 1.0, 0.0
        rng = np.random.default_rng(self.seed)
        tolerance = max(1, round(0.2 * len(counts)))
        agree = 0
        points = []
        for _ in range(self.permutations):
            order = rng.permutation(len(counts))
            if theme_sets is not None:
                shuffled = new_theme_counts([theme_sets[i] for i in order])
            else:
                shuffled = [counts[i] for i in order]
            alpha, beta, _, point = self._bayesian(shuffled)
            saturated, _ = self._posterior_saturated(alpha, beta)
            if point is not None:
                points.append(point)
            if saturated != observed_saturated:
                continue
            if observed_point is None and point is None:
                agree += 1
            elif observed_point is not None and point is not None and abs(point - observed_point) <= tolerance:
                agree += 1
        variance = float(np.var(points)) if points else 0.0
        return agree / self.permutations, variance

    @staticmethod
    def _recommend(bayes, power, robust, confidence, p_saturated, robustness, n) -> Tuple[SaturationLevel, str]:
        pct = f"{confidence * 100:.0f}%"
        if bayes and power and robust:
            return SaturationLevel.HIGH, (
                f"HIGH CONFIDENCE SATURATION ({pct}): All 3 signals converge. "
                f"Collecting additional sources is unlikely to yield new themes. "
                f"Recommendation: Proceed to analysis."
            )
        if bayes and power:
            return SaturationLevel.MODERATE, (
                f"MODERATE SATURATION ({pct}): Bayesian and power law signals agree. "
                f"Robustness score: {robustness * 100:.0f}%. "
                f"Recommendation: Consider collecting 2-3 more sources to confirm saturation."
            )
        if bayes:
            return SaturationLevel.WEAK, (
                f"WEAK SATURATION SIGNAL ({pct}): Only the Bayesian signal is present. "
                f"Recommendation: Collect 5-10 more sources to reach robust saturation."
            )
        return SaturationLevel.NONE, (
            f"NO SATURATION ({pct}): New themes are still emerging. "
            f"Posterior probability: {p_saturated * 100:.0f}%. "
            f"Recommendation: Continue data collection. "
            f"Target: {math.ceil(n * 1.5)} total sources."
        )
