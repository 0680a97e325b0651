"""
Clustering engine — embedded codes → ThemeClusters.

Pipeline: unit vectors → adaptive k → k-means++ → bisecting refinement
          → diversity enforcement (clique merging)

WHY k-means on unit vectors: for L2-normalized rows, squared Euclidean
distance is 2 - 2·cos, so k-means minimizes cosine dispersion directly
without a custom metric.

ADAPTIVE K: the purpose fixes a range [min, max]. Candidates are scanned
with step max(5, (max - min) // 10), always including the upper bound.
Each candidate is scored three ways:
  - elbow (largest second difference of inertia)
  - silhouette (cosine, higher is better)
  - Davies-Bouldin (lower is better)
  k = round(0.4·elbow + 0.4·silhouette_best + 0.2·db_best), clamped to range.

ROBUSTNESS:
- k never exceeds the number of codes; fewer codes than min → one cluster per code
- Deterministic: fixed random_state for every KMeans fit
- Bisecting refinement stops at target.max, so it cannot overshoot the range
- Diversity merging stops at target.min, so it cannot undershoot it
"""

import logging
import warnings
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import davies_bouldin_score, silhouette_score

from theme_extraction.config import get_settings
from theme_extraction.errors import ClusteringError
from theme_extraction.schemas.themes import Code, ThemeCluster, ThemeCountRange
from theme_extraction.themes.diversity import build_cluster, enforce_diversity
from theme_extraction.tools.embeddings import unit_matrix

logger = logging.getLogger(__name__)

# Adaptive-k weights (elbow, silhouette, Davies-Bouldin)
K_WEIGHT_ELBOW = 0.4
K_WEIGHT_SILHOUETTE = 0.4
K_WEIGHT_DAVIES_BOULDIN = 0.2
MIN_K_STEP = 5


def kmeans_plus_plus(
    vectors: np.ndarray,
    k: int,
    max_iter: int = 100,
    tol: float = 0.001,
    random_state: int = 42,
) -> Tuple[np.ndarray, float]:
    """k-means with k-means++ seeding. Returns (labels, inertia)."""
    n = vectors.shape[0]
    if n == 0:
        raise ClusteringError("cannot run k-means on zero vectors")
    k = max(1, min(k, n))
    model = KMeans(
        n_clusters=k, init="k-means++", n_init=1,
        max_iter=max_iter, tol=tol, random_state=random_state,
    )
    # Duplicate codes give fewer distinct points than k; labels stay valid
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        labels = model.fit_predict(vectors)
    return labels, float(model.inertia_)


def candidate_ks(k_min: int, k_max: int) -> List[int]:
    step = max(MIN_K_STEP, (k_max - k_min) // 10)
    ks = list(range(k_min, k_max + 1, step))
    if ks[-1] != k_max:
        ks.append(k_max)
    return ks


def _elbow_k(ks: Sequence[int], inertias: Sequence[float]) -> int:
    if len(ks) < 3:
        return ks[0]
    drops = np.diff(-np.asarray(inertias))  # marginal inertia reduction
    second = drops[:-1] - drops[1:]
    return ks[int(np.argmax(second)) + 1]


def select_optimal_k(
    vectors: np.ndarray,
    target: ThemeCountRange,
    max_iter: int = 50,
    random_state: int = 42,
) -> int:
    """Pick k within target (and ≤ n) by weighted elbow / silhouette / Davies-Bouldin."""
    n = vectors.shape[0]
    k_min = min(target.min, n)
    k_max = min(target.max, n)
    if k_min >= k_max:
        return k_max

    ks = candidate_ks(k_min, k_max)
    inertias, silhouettes, dbs = [], [], []
    for k in ks:
        labels, inertia = kmeans_plus_plus(vectors, k, max_iter=max_iter, random_state=random_state)
        inertias.append(inertia)
        distinct = len(set(labels.tolist()))
        if 2 <= distinct <= n - 1:
            silhouettes.append(float(silhouette_score(vectors, labels, metric="cosine")))
            dbs.append(float(davies_bouldin_score(vectors, labels)))
        else:
            silhouettes.append(float("-inf"))
            dbs.append(float("inf"))

    elbow = _elbow_k(ks, inertias)
    best_sil = ks[int(np.argmax(silhouettes))] if np.isfinite(max(silhouettes)) else elbow
    best_db = ks[int(np.argmin(dbs))] if np.isfinite(min(dbs)) else elbow
    k = round(K_WEIGHT_ELBOW * elbow + K_WEIGHT_SILHOUETTE * best_sil + K_WEIGHT_DAVIES_BOULDIN * best_db)
    k = int(max(k_min, min(k_max, k)))
    logger.info(
        f"Adaptive k: candidates={ks}, elbow={elbow}, silhouette={best_sil}, "
        f"davies_bouldin={best_db} → k={k}"
    )
    return k


class ClusteringEngine:
    """Groups embedded codes into theme clusters for a target count range."""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        self.random_state = self.settings.clustering_random_state
        self.metrics: Dict[str, float] = {}

    def cluster(
        self,
        codes: Sequence[Code],
        target: ThemeCountRange,
        bisecting: Optional[bool] = None,
        diversity: bool = True,
    ) -> List[ThemeCluster]:
        """Cluster `codes` into roughly target.min..target.max clusters."""
        if not codes:
            raise ClusteringError("no codes to cluster")
        embedded = [c for c in codes if c.embedding is not None]
        if not embedded:
            raise ClusteringError(f"none of {len(codes)} codes has an embedding")
        if len(embedded) < len(codes):
            logger.warning(f"Clustering {len(embedded)}/{len(codes)} codes (rest have no embedding)")

        ids = [c.id for c in embedded]
        unit = unit_matrix([c.embedding for c in embedded])
        vectors = {cid: unit[i] for i, cid in enumerate(ids)}
        n = len(ids)

        if n < target.min:
            logger.info(f"Only {n} codes for a minimum of {target.min} themes: one cluster per code")
            clusters = [build_cluster(f"cluster_{i}", [cid], vectors) for i, cid in enumerate(ids)]
            self.metrics = {"codes": n, "k": n, "bisected": 0, "merged": 0}
            return clusters

        k = select_optimal_k(
            unit, target,
            max_iter=self.settings.k_selection_max_iterations,
            random_state=self.random_state,
        )
        labels, inertia = kmeans_plus_plus(
            unit, k,
            max_iter=self.settings.kmeans_max_iterations,
            tol=self.settings.kmeans_tolerance,
            random_state=self.random_state,
        )
        groups: Dict[int, List[str]] = {}
        for cid, label in zip(ids, labels.tolist()):
            groups.setdefault(label, []).append(cid)
        clusters = [build_cluster(f"cluster_{i}", members, vectors) for i, members in enumerate(groups.values())]
        logger.info(f"k-means++: k={k}, {len(clusters)} non-empty clusters, inertia={inertia:.3f}")

        use_bisecting = self.settings.bisecting_enabled if bisecting is None else bisecting
        before = len(clusters)
        if use_bisecting:
            clusters = self.bisect(clusters, vectors, target.max)
        bisected = len(clusters) - before

        before = len(clusters)
        if diversity:
            clusters = enforce_diversity(
                clusters, vectors,
                threshold=self.settings.diversity_similarity_threshold,
                min_clusters=target.min,
            )
        merged = before - len(clusters)

        # Stable ids, largest cluster first
        clusters.sort(key=lambda c: (-c.size, c.code_ids[0]))
        for i, c in enumerate(clusters):
            c.id = f"cluster_{i}"

        self.metrics = {
            "codes": n,
            "k": k,
            "bisected": bisected,
            "merged": merged,
            "clusters": len(clusters),
            "avg_coherence": round(float(np.mean([c.coherence for c in clusters])), 4),
        }
        return clusters

    def bisect(
        self,
        clusters: List[ThemeCluster],
        vectors: Dict[str, np.ndarray],
        max_clusters: int,
    ) -> List[ThemeCluster]:
        """Split the least coherent cluster in two until all are coherent or max is reached."""
        min_coherence = self.settings.bisecting_min_coherence
        current = list(clusters)
        unsplittable = set()
        next_id = len(current)

        while len(current) < max_clusters:
            splittable = [
                c for c in current
                if c.size >= 2 and c.coherence < min_coherence and c.id not in unsplittable
            ]
            if not splittable:
                break
            worst = min(splittable, key=lambda c: c.coherence)
            member_vectors = np.vstack([vectors[cid] for cid in worst.code_ids])
            labels, _ = kmeans_plus_plus(
                member_vectors, 2,
                max_iter=self.settings.kmeans_max_iterations,
                tol=self.settings.kmeans_tolerance,
                random_state=self.random_state,
            )
            left = [cid for cid, lab in zip(worst.code_ids, labels.tolist()) if lab == 0]
            right = [cid for cid, lab in zip(worst.code_ids, labels.tolist()) if lab == 1]
            if not left or not right:
                unsplittable.add(worst.id)
                continue
            halves = [
                build_cluster(worst.id, left, vectors, {"bisected_from": worst.id}),
                build_cluster(f"cluster_{next_id}", right, vectors, {"bisected_from": worst.id}),
            ]
            next_id += 1
            logger.debug(
                f"Bisected {worst.id} (coherence {worst.coherence:.3f}) → "
                f"{halves[0].size}/{halves[1].size} codes "
                f"(coherence {halves[0].coherence:.3f}/{halves[1].coherence:.3f})"
            )
            current = [c for c in current if c is not worst] + halves
        return current
