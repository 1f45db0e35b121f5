from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .clustering import recluster_remnant
from .cluster_helper import (
    distances_to_line,
    get_closest_distance,
    get_length_squared,
    sort_by_n_hits,
)
from .event_store import EventStore
from .geometry import DetectorGeometry
from .objects import Hit
from .sliding_fit import TwoDSlidingFitResult

__all__ = [
    "ClusterAssociation",
    "ClusterEndpointAssociation",
    "SlidingFitCache",
    "TrackRefinementBase",
]

HitsByCluster = Dict[int, List[Hit]]


@dataclass(frozen=True, slots=True)
class ClusterAssociation:
    r"""
    Directed pairing of an upstream and a downstream merge point.

    "Upstream" is the end with the smaller longitudinal coordinate of the
    track. Each end carries a merge position and the local direction pointing
    away from its own cluster, towards the other end.
    """
    upstream_merge_point: np.ndarray
    upstream_merge_direction: np.ndarray
    downstream_merge_point: np.ndarray
    downstream_merge_direction: np.ndarray

    @property
    def connecting_line_direction(self) -> np.ndarray:
        """Unit vector from the upstream to the downstream merge point."""
        d = self.downstream_merge_point - self.upstream_merge_point
        norm = float(np.linalg.norm(d))
        if norm < 1e-9:
            return self.upstream_merge_direction / np.linalg.norm(self.upstream_merge_direction)
        return d / norm

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.downstream_merge_point - self.upstream_merge_point))


@dataclass(frozen=True, slots=True)
class ClusterEndpointAssociation(ClusterAssociation):
    r"""
    Association between an end of a main track cluster and a point extrapolated
    from it to a drift-volume boundary.

    If ``is_end_upstream`` the main track's merge point is the downstream
    point (the track continues upstream towards the boundary), otherwise it is
    the upstream point.
    """
    main_track_cluster: int = -1
    is_end_upstream: bool = False

    @property
    def cluster_merge_point(self) -> np.ndarray:
        return self.downstream_merge_point if self.is_end_upstream else self.upstream_merge_point

    @property
    def cluster_merge_direction(self) -> np.ndarray:
        """Direction from the main track's merge point towards the boundary."""
        return self.downstream_merge_direction if self.is_end_upstream else self.upstream_merge_direction

    @property
    def extrapolated_point(self) -> np.ndarray:
        return self.upstream_merge_point if self.is_end_upstream else self.downstream_merge_point

    def with_extrapolated_point(self, point: np.ndarray) -> "ClusterEndpointAssociation":
        point = np.asarray(point, dtype=np.float64)
        if self.is_end_upstream:
            return replace(self, upstream_merge_point=point)
        return replace(self, downstream_merge_point=point)


class SlidingFitCache:
    """Micro and macro sliding fits per live cluster."""

    __slots__ = ("micro", "macro")

    def __init__(self) -> None:
        self.micro: Dict[int, TwoDSlidingFitResult] = {}
        self.macro: Dict[int, TwoDSlidingFitResult] = {}

    def __contains__(self, cluster_id: object) -> bool:
        return cluster_id in self.micro

    def discard(self, cluster_id: int) -> None:
        self.micro.pop(cluster_id, None)
        self.macro.pop(cluster_id, None)


class TrackRefinementBase:
    r"""
    Shared machinery for algorithms that grow a main track cluster by
    absorbing hits from neighbouring clusters.

    It keeps a working vector of candidate clusters together with a cache of
    their sliding fits (:meth:`initialise_containers`,
    :meth:`update_containers`), finds stable merge points at cluster ends
    (:meth:`get_cluster_merging_coordinates`), checks the continuity of
    collected hits (:meth:`is_track_continuous`), and commits a new main track
    (:meth:`remove_off_axis_hits_from_track`, :meth:`add_hits_to_main_track`,
    :meth:`process_remnant_clusters`).

    Parameters
    ----------
    store : EventStore
        Event arena.
    geometry : DetectorGeometry
        Provides the layer pitch and drift-volume edges.
    min_cluster_length : float
        Clusters shorter than this (cm) are never main tracks.
    micro_sliding_fit_window, macro_sliding_fit_window : int
        Layer half-windows of the local and global fits.
    stable_region_cluster_fraction : float
        Fraction of a cluster's layers that must show a stable direction
        before a merge point is accepted.
    merge_point_min_cos_angle_deviation : float
        Minimum cosine between local and global direction for a stable layer.
    min_hit_fraction_for_hit_removal : float
        Off-axis hits are only removed if at least this fraction of the
        cluster is affected.
    max_distance_from_main_track : float
        Off-axis threshold (cm).
    max_hit_distance_from_cluster : float
        Single-hit remnants within this distance (cm) join the nearest cluster.
    max_hit_separation_for_connected_cluster : float
        Consecutive-hit gap (cm) above which a remnant is disconnected.
    max_track_gaps : int
        Maximum consecutive empty segments in a continuous track.
    line_segment_length : float
        Length (cm) of the segments used by :meth:`is_track_continuous`.
    clustering_algorithm_name : str
        Store clustering routine used to break up disconnected remnants.
    min_remnant_cluster_size : int
        Remnant fragments smaller than this that lie within
        ``max_remnant_merge_distance`` of the main track join the main track.
    max_remnant_merge_distance : float
        See ``min_remnant_cluster_size`` (cm).
    """

    def __init__(
        self,
        store: EventStore,
        geometry: DetectorGeometry,
        *,
        min_cluster_length: float = 15.0,
        micro_sliding_fit_window: int = 20,
        macro_sliding_fit_window: int = 1000,
        stable_region_cluster_fraction: float = 0.05,
        merge_point_min_cos_angle_deviation: float = 0.999,
        min_hit_fraction_for_hit_removal: float = 0.05,
        max_distance_from_main_track: float = 0.75,
        max_hit_distance_from_cluster: float = 4.0,
        max_hit_separation_for_connected_cluster: float = 4.0,
        max_track_gaps: int = 3,
        line_segment_length: float = 3.0,
        clustering_algorithm_name: str = "proximity",
        min_remnant_cluster_size: int = 3,
        max_remnant_merge_distance: float = 2.0,
    ) -> None:
        self.store = store
        self.geometry = geometry
        self.min_cluster_length = float(min_cluster_length)
        self.micro_sliding_fit_window = int(micro_sliding_fit_window)
        self.macro_sliding_fit_window = int(macro_sliding_fit_window)
        self.stable_region_cluster_fraction = float(stable_region_cluster_fraction)
        self.merge_point_min_cos_angle_deviation = float(merge_point_min_cos_angle_deviation)
        self.min_hit_fraction_for_hit_removal = float(min_hit_fraction_for_hit_removal)
        self.max_distance_from_main_track = float(max_distance_from_main_track)
        self.max_hit_distance_from_cluster = float(max_hit_distance_from_cluster)
        self.max_hit_separation_for_connected_cluster = float(max_hit_separation_for_connected_cluster)
        self.max_track_gaps = int(max_track_gaps)
        self.line_segment_length = float(line_segment_length)
        self.clustering_algorithm_name = clustering_algorithm_name
        self.min_remnant_cluster_size = int(min_remnant_cluster_size)
        self.max_remnant_merge_distance = float(max_remnant_merge_distance)
        self.log = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------- containers
    def fit(self, points, window: int) -> Optional[TwoDSlidingFitResult]:
        return TwoDSlidingFitResult.try_fit(points, window, self.geometry.wire_pitch)

    def initialise_containers(self, cluster_ids: Sequence[int], cluster_vector: List[int], cache: SlidingFitCache) -> None:
        r"""
        Fit and append every live, long-enough cluster not already cached.
        """
        min_length2 = self.min_cluster_length ** 2
        for cid in cluster_ids:
            if not self.store.alive(cid) or cid in cache:
                continue
            cluster = self.store.cluster(cid)
            if get_length_squared(cluster) < min_length2:
                continue
            micro = self.fit(cluster, self.micro_sliding_fit_window)
            macro = self.fit(cluster, self.macro_sliding_fit_window)
            if micro is None or macro is None:
                continue
            cache.micro[cid] = micro
            cache.macro[cid] = macro
            cluster_vector.append(cid)

    def update_containers(
        self,
        clusters_to_add: Sequence[int],
        clusters_to_delete: Sequence[int],
        cluster_vector: List[int],
        cache: SlidingFitCache,
    ) -> None:
        r"""
        Drop stale entries for deleted or modified clusters, then fit new ones.

        The cache never holds a cluster that no longer exists afterwards.
        """
        stale = set(clusters_to_delete)
        cluster_vector[:] = [c for c in cluster_vector if c not in stale and self.store.alive(c)]
        for cid in list(cache.micro):
            if cid in stale or not self.store.alive(cid):
                cache.discard(cid)
        self.initialise_containers(clusters_to_add, cluster_vector, cache)

    # -------------------------------------------------------- merge points
    def get_cluster_merging_coordinates(
        self, micro: TwoDSlidingFitResult, macro: TwoDSlidingFitResult, is_end_upstream: bool
    ) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        r"""
        Merge position and direction at one end of a cluster.

        Walking inwards from the chosen end, the first layer is accepted after
        ``ceil(n_layers * stable_region_cluster_fraction)`` consecutive layers
        whose local direction agrees with the global one (cosine above
        ``merge_point_min_cos_angle_deviation``). The merge position is the
        local fit position of the first layer of that run; the direction is
        the global one, oriented along increasing ``L``.

        Returns
        -------
        (position, direction) or None
        """
        average = macro.get_global_direction(macro.first_gradient)
        layers = sorted(micro.layer_fit_results)
        if not is_end_upstream:
            layers.reverse()
        window = max(1, int(math.ceil(len(layers) * self.stable_region_cluster_fraction)))
        good = 0
        start: Optional[int] = None
        for layer in layers:
            direction = micro.layer_direction(layer)
            if float(direction @ average) > self.merge_point_min_cos_angle_deviation:
                if good == 0:
                    start = layer
                good += 1
                if good >= window:
                    return micro.layer_position(start), average
            else:
                good = 0
                start = None
        return None

    # ----------------------------------------------------------- continuity
    def is_track_continuous(self, association: ClusterAssociation, hits: Sequence[Hit]) -> bool:
        r"""
        Whether ``hits`` cover the association without long gaps.

        The association is cut into segments of ``line_segment_length``; the
        track is broken when more than ``max_track_gaps`` consecutive segments
        hold no hit. ``hits`` must be ordered from upstream to downstream.
        """
        if not hits:
            return True
        direction = association.connecting_line_direction
        origin = association.upstream_merge_point
        t = np.array([(h.position - origin) @ direction for h in hits])
        n_segments = int(math.floor(association.length / self.line_segment_length))
        gaps = 0
        for i in range(n_segments):
            lo, hi = i * self.line_segment_length, (i + 1) * self.line_segment_length
            if np.any((t >= lo) & (t <= hi)):
                gaps = 0
                continue
            gaps += 1
            if gaps > self.max_track_gaps:
                return False
        return True

    # --------------------------------------------------------------- commit
    def remove_off_axis_hits_from_track(
        self,
        cluster_id: int,
        split_position: np.ndarray,
        is_end_upstream: bool,
        hits_by_cluster: HitsByCluster,
        remnant_clusters: List[int],
        cache: SlidingFitCache,
    ) -> int:
        r"""
        Split off main-track hits beyond the merge point that stray from the track axis.

        Returns
        -------
        int
            Handle of the main track after the operation (a new handle if the
            cluster was fragmented).
        """
        cluster = self.store.cluster(cluster_id)
        if not cluster.available:
            return cluster_id
        micro = cache.micro.get(cluster_id) or self.fit(cluster, self.micro_sliding_fit_window)
        macro = cache.macro.get(cluster_id) or self.fit(cluster, self.macro_sliding_fit_window)
        if micro is None or macro is None:
            return cluster_id
        split_l, _ = micro.get_local_position(split_position)
        axis = macro.get_global_direction(macro.first_gradient)
        extrapolated = {h.hit_id for h in hits_by_cluster.get(cluster_id, ())}

        hits = cluster.ordered_hits
        distance = np.abs(distances_to_line(cluster.positions, split_position, axis))
        to_remove = []
        for h, d in zip(hits, distance):
            l, _ = micro.get_local_position(h.position)
            beyond = l < split_l if is_end_upstream else l > split_l
            if not beyond or h.hit_id in extrapolated:
                continue
            if d > self.max_distance_from_main_track:
                to_remove.append(h)
        if not to_remove or len(to_remove) == len(hits):
            return cluster_id
        if len(to_remove) / len(hits) < self.min_hit_fraction_for_hit_removal:
            return cluster_id

        removed = {h.hit_id for h in to_remove}
        self.store.replace_current_list(self.store.list_of(cluster_id))
        with self.store.fragmentation([cluster_id]) as frag:
            main = frag.create([h for h in hits if h.hit_id not in removed])
            remnant = frag.create(to_remove)
        remnant_clusters.append(remnant)
        self.log.debug("Removed %d off-axis hits from cluster %d -> %d", len(to_remove), cluster_id, main)
        return main

    def add_hits_to_main_track(
        self,
        main_track: int,
        shower_cluster: int,
        extrapolated_hits: Sequence[Hit],
        association: ClusterAssociation,
        remnant_clusters: List[int],
    ) -> None:
        r"""
        Move the extrapolated hits of ``shower_cluster`` onto the main track.

        If every hit of the shower cluster was collected the clusters are
        merged. Otherwise the collected hits move to the main track and the
        rest are split into two remnants, above and below the connecting line.
        """
        shower = self.store.cluster(shower_cluster)
        self.store.replace_current_list(self.store.list_of(shower_cluster))
        collected = {h.hit_id for h in extrapolated_hits}
        if len(collected) == shower.n_hits:
            self.store.merge_and_delete_clusters(main_track, shower_cluster)
            return
        hits = shower.ordered_hits
        side = distances_to_line(
            shower.positions, association.upstream_merge_point, association.connecting_line_direction
        )
        above: Optional[int] = None
        below: Optional[int] = None
        with self.store.fragmentation([shower_cluster]) as frag:
            for h, s in zip(hits, side):
                if h.hit_id in collected:
                    frag.add(main_track, h)
                elif s > 0.0:
                    above = frag.add_or_create(above, h)
                else:
                    below = frag.add_or_create(below, h)
        remnant_clusters.extend(c for c in (above, below) if c is not None)

    def is_cluster_remnant_disconnected(self, cluster_id: int) -> bool:
        pos = self.store.cluster(cluster_id).positions
        if pos.shape[0] < 2:
            return False
        gaps = np.linalg.norm(np.diff(pos, axis=0), axis=1)
        return bool(np.any(gaps > self.max_hit_separation_for_connected_cluster))

    def fragment_remnant_cluster(self, cluster_id: int, main_track: Optional[int] = None) -> List[int]:
        r"""
        Break a disconnected remnant up with the store's clustering routine.

        Small fragments close to ``main_track`` are folded into it, exactly
        as the cosmic-ray removal does with muon remnants
        (:func:`~deltaray_reco.clustering.recluster_remnant`).
        """
        return recluster_remnant(
            self.store,
            self.clustering_algorithm_name,
            cluster_id,
            attach_to=main_track,
            min_cluster_size=self.min_remnant_cluster_size,
            max_merge_distance=self.max_remnant_merge_distance,
        )

    def add_to_nearest_cluster(self, cluster_id: int) -> Optional[int]:
        r"""
        Merge a single-hit remnant into the closest cluster of its list.

        Returns
        -------
        int or None
            Handle of the enlarged cluster, ``None`` if nothing is close enough.
        """
        list_name = self.store.list_of(cluster_id)
        remnant = self.store.cluster(cluster_id)
        best, best_d = None, math.inf
        for cid in self.store.get_list(list_name):
            if cid == cluster_id:
                continue
            d = get_closest_distance(remnant, self.store.cluster(cid))
            if d < best_d:
                best, best_d = cid, d
        if best is None or best_d > self.max_hit_distance_from_cluster:
            return None
        self.store.replace_current_list(list_name)
        self.store.merge_and_delete_clusters(best, cluster_id)
        return best

    def process_remnant_clusters(
        self, remnant_clusters: Sequence[int], main_track: Optional[int] = None
    ) -> Tuple[List[int], List[int]]:
        r"""
        Clean up remnants: fragment disconnected ones and re-home single hits.

        Disconnected remnants go through :meth:`fragment_remnant_cluster`, so
        small fragments near ``main_track`` rejoin it.

        Returns
        -------
        created : list of int
            Remnant clusters that survive as clusters.
        enlarged : list of int
            Existing clusters that absorbed a single-hit remnant.
        """
        fragments: List[int] = []
        for rid in remnant_clusters:
            if not self.store.alive(rid):
                continue
            if self.is_cluster_remnant_disconnected(rid):
                fragments.extend(self.fragment_remnant_cluster(rid, main_track))
            else:
                fragments.append(rid)
        created: List[int] = []
        enlarged: List[int] = []
        for fid in fragments:
            if self.store.cluster(fid).n_hits == 1:
                target = self.add_to_nearest_cluster(fid)
                if target is not None:
                    enlarged.append(target)
                    continue
            created.append(fid)
        return created, [c for c in enlarged if self.store.alive(c)]

    def sort_by_n_hits(self, cluster_ids: Sequence[int]) -> List[int]:
        return sorted(cluster_ids, key=lambda c: sort_by_n_hits(self.store.cluster(c)))
