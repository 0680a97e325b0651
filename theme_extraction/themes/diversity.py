"""
Cluster geometry + diversity enforcement.

Shared helpers for ThemeCluster construction (centroid, coherence) and the
redundancy pass that runs after k-means:

  centroid similarity graph (edge iff cosine > threshold)
    → maximal cliques (networkx.find_cliques)
    → merge each clique into one cluster, largest cliques first
    → repeat until no edge is left or the floor (target.min) is reached

A clique is merged rather than a single pair so that a group of three
near-identical themes collapses in one step instead of chaining.

All vectors handled here are unit-normalized rows (see tools.embeddings.unit_matrix),
so cosine similarity is a plain dot product.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import networkx as nx
import numpy as np
from sklearn.metrics import davies_bouldin_score

from theme_extraction.schemas.themes import DiversityMetrics, ThemeCluster

logger = logging.getLogger(__name__)

# Safety bound on merge rounds
MAX_MERGE_ROUNDS = 100


def coherence_of(unit_vectors: np.ndarray) -> float:
    """Mean pairwise cosine similarity of unit rows. Singletons are fully coherent."""
    n = unit_vectors.shape[0]
    if n < 2:
        return 1.0
    sims = unit_vectors @ unit_vectors.T
    upper = sims[np.triu_indices(n, k=1)]
    return float(np.clip(upper.mean(), -1.0, 1.0))


def build_cluster(
    cluster_id: str,
    code_ids: Sequence[str],
    vectors: Mapping[str, np.ndarray],
    metadata: Optional[Dict] = None,
) -> ThemeCluster:
    members = np.vstack([vectors[cid] for cid in code_ids])
    return ThemeCluster(
        id=cluster_id,
        code_ids=list(code_ids),
        centroid=members.mean(axis=0),
        coherence=coherence_of(members),
        metadata=dict(metadata or {}),
    )


def centroid_similarities(clusters: Sequence[ThemeCluster]) -> np.ndarray:
    """Pairwise cosine similarity of cluster centroids."""
    if not clusters:
        return np.zeros((0, 0))
    centroids = np.vstack([c.centroid for c in clusters])
    norms = np.linalg.norm(centroids, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    unit = centroids / norms
    return unit @ unit.T


def _similarity_graph(sims: np.ndarray, threshold: float) -> nx.Graph:
    graph = nx.Graph()
    n = sims.shape[0]
    graph.add_nodes_from(range(n))
    for i in range(n):
        for j in range(i + 1, n):
            if sims[i, j] > threshold:
                graph.add_edge(i, j, weight=float(sims[i, j]))
    return graph


def enforce_diversity(
    clusters: Sequence[ThemeCluster],
    vectors: Mapping[str, np.ndarray],
    threshold: float = 0.7,
    min_clusters: int = 1,
) -> List[ThemeCluster]:
    """Merge cliques of near-duplicate clusters, never going below `min_clusters`."""
    current = list(clusters)
    merges = 0
    for _ in range(MAX_MERGE_ROUNDS):
        budget = len(current) - min_clusters
        if budget <= 0 or len(current) < 2:
            break
        sims = centroid_similarities(current)
        graph = _similarity_graph(sims, threshold)
        if graph.number_of_edges() == 0:
            break

        def _clique_strength(clique):
            pairs = [sims[a, b] for i, a in enumerate(clique) for b in clique[i + 1:]]
            return float(np.mean(pairs)) if pairs else 0.0

        cliques = [sorted(c) for c in nx.find_cliques(graph) if len(c) >= 2]
        cliques.sort(key=lambda c: (-len(c), -_clique_strength(c), c))
        clique = cliques[0]

        # Merging k clusters removes k-1; trim the clique to stay at or above the floor
        if len(clique) - 1 > budget:
            anchor = clique[0]
            rest = sorted(clique[1:], key=lambda j: -sims[anchor, j])
            clique = [anchor] + rest[:budget]

        members = [current[i] for i in clique]
        code_ids = [cid for m in members for cid in m.code_ids]
        merged = build_cluster(
            members[0].id,
            code_ids,
            vectors,
            metadata={**members[0].metadata, "merged_from": [m.id for m in members]},
        )
        logger.debug(
            f"Diversity merge: {[m.id for m in members]} "
            f"(similarity {_clique_strength(clique):.3f}) → {len(code_ids)} codes"
        )
        keep = set(clique)
        current = [c for i, c in enumerate(current) if i not in keep] + [merged]
        merges += len(clique) - 1

    if merges:
        logger.info(f"Diversity enforcement merged {merges} redundant cluster(s) → {len(current)} clusters")
    return current


def diversity_metrics(
    clusters: Sequence[ThemeCluster],
    vectors: Mapping[str, np.ndarray],
    code_sources: Mapping[str, str],
    sources_total: int,
    threshold: float = 0.7,
) -> DiversityMetrics:
    """Redundancy and coverage summary for a final cluster set."""
    if not clusters:
        return DiversityMetrics(source_coverage=0.0)

    sims = centroid_similarities(clusters)
    n = len(clusters)
    if n > 1:
        upper = sims[np.triu_indices(n, k=1)]
        avg_sim = float(upper.mean())
        max_sim = float(upper.max())
        redundant = int((upper > threshold).sum())
    else:
        avg_sim = max_sim = 0.0
        redundant = 0

    code_ids = [cid for c in clusters for cid in c.code_ids]
    labels = [i for i, c in enumerate(clusters) for _ in c.code_ids]
    db = 0.0
    if 2 <= n < len(code_ids):
        db = float(davies_bouldin_score(np.vstack([vectors[cid] for cid in code_ids]), labels))

    covered = {code_sources[cid] for cid in code_ids if cid in code_sources}
    coverage = 100.0 * len(covered) / sources_total if sources_total else 0.0

    return DiversityMetrics(
        avg_pairwise_similarity=round(avg_sim, 4),
        max_pairwise_similarity=round(max_sim, 4),
        redundant_pairs=redundant,
        davies_bouldin=round(db, 4),
        source_coverage=round(min(coverage, 100.0), 2),
    )
