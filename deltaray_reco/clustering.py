from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Type

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .cluster_helper import get_closest_distance
from .event_store import EventStore, hit_list_name
from .objects import Hit

__all__ = [
    "ProximityClusteringAlgorithm",
    "CLUSTERING_MAP",
    "build_clustering_algorithms",
    "recluster_remnant",
]

logger = logging.getLogger(__name__)


class ProximityClusteringAlgorithm:
    r"""
    Group hits into connected components of a fixed-radius neighbour graph.

    Two hits are linked when their positions are within ``max_hit_separation``
    (Euclidean). Groups are returned in a deterministic order: each group's
    hits sorted by ``(z, x, hit_id)`` and groups sorted by their first hit.

    Parameters
    ----------
    max_hit_separation : float, optional
        Linking radius (cm).
    """

    __slots__ = ("max_hit_separation",)

    def __init__(self, max_hit_separation: float = 1.5) -> None:
        self.max_hit_separation = float(max_hit_separation)

    def run(self, hits: Sequence[Hit]) -> List[List[Hit]]:
        hits = sorted(hits, key=lambda h: h.sort_key)
        n = len(hits)
        if n == 0:
            return []
        pos = np.array([(h.x + h.x0, h.z) for h in hits], dtype=np.float64)
        pairs = cKDTree(pos).query_pairs(r=self.max_hit_separation, output_type="ndarray").reshape(-1, 2)
        graph = coo_matrix(
            (np.ones(pairs.shape[0], dtype=np.int8), (pairs[:, 0], pairs[:, 1])), shape=(n, n)
        )
        n_comp, labels = connected_components(graph, directed=False)
        groups: Dict[int, List[Hit]] = {}
        # hits are already sorted, so groups come out ordered by their first hit
        for h, lab in zip(hits, labels):
            groups.setdefault(int(lab), []).append(h)
        logger.debug("Proximity clustering: %d hits -> %d groups", n, n_comp)
        return list(groups.values())


CLUSTERING_MAP: Dict[str, Type[ProximityClusteringAlgorithm]] = {
    "proximity": ProximityClusteringAlgorithm,
}


def build_clustering_algorithms(cfg: Dict[str, Dict]) -> Dict[str, ProximityClusteringAlgorithm]:
    r"""
    Instantiate the reclustering routines named in a config block.

    Parameters
    ----------
    cfg : dict
        ``{name: kwargs}``; ``name`` must be a key of :data:`CLUSTERING_MAP`.
    """
    algorithms = {}
    for name, kwargs in (cfg or {"proximity": {}}).items():
        if name not in CLUSTERING_MAP:
            raise KeyError(f"Unknown clustering algorithm '{name}'. Available: {', '.join(CLUSTERING_MAP)}")
        algorithms[name] = CLUSTERING_MAP[name](**(kwargs or {}))
    return algorithms


def recluster_remnant(
    store: EventStore,
    algorithm_name: str,
    remnant_id: int,
    attach_to: Optional[int] = None,
    min_cluster_size: int = 3,
    max_merge_distance: float = 2.0,
) -> List[int]:
    r"""
    Recluster the hits of a remnant cluster and fold small fragments back.

    The remnant is deleted and its hits are regrouped with the store's
    clustering routine ``algorithm_name``. A fragment with fewer than
    ``min_cluster_size`` hits whose closest distance to ``attach_to`` is below
    ``max_merge_distance`` is merged into ``attach_to``; the other fragments
    stay as standalone clusters.

    Parameters
    ----------
    store : EventStore
        Owner of the remnant. ``attach_to`` must live in the same cluster list.
    algorithm_name : str
        Name registered in ``store.clustering_algorithms``.
    remnant_id : int
        Available cluster to break up.
    attach_to : int, optional
        Cluster that absorbs small nearby fragments (the muon or main track).

    Returns
    -------
    list of int
        Handles of the fragments kept as clusters, in reclustering order.
    """
    remnant = store.cluster(remnant_id)
    store.replace_current_hit_list(hit_list_name(remnant.view))
    store.replace_current_list(store.list_of(remnant_id))
    hits = list(remnant.ordered_hits)
    store.delete_cluster(remnant_id)
    kept: List[int] = []
    for fid in store.run_clustering_algorithm(algorithm_name, hits):
        fragment = store.cluster(fid)
        if (
            attach_to is not None
            and fragment.n_hits < min_cluster_size
            and get_closest_distance(fragment, store.cluster(attach_to)) < max_merge_distance
        ):
            store.merge_and_delete_clusters(attach_to, fid)
            continue
        kept.append(fid)
    logger.debug("Remnant %d (%d hits) reclustered, %d fragment(s) kept", remnant_id, len(hits), len(kept))
    return kept
