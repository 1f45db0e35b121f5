from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import numpy as np

from .cluster_helper import distances_to_line, points_in_line_segment, sort_by_n_hits
from .event_store import EventStore
from .geometry import DetectorGeometry
from .objects import Hit
from .refinement import (
    ClusterEndpointAssociation,
    HitsByCluster,
    SlidingFitCache,
    TrackRefinementBase,
)

__all__ = ["TrackExtensionRefinementAlgorithm"]


class TrackExtensionRefinementAlgorithm(TrackRefinementBase):
    r"""
    Extend track clusters towards the drift-volume boundaries.

    For each of the two drift-axis edges of the active volume (edges that are
    also detector edges are skipped) the algorithm repeatedly

    1. takes the not-yet-considered long clusters, furthest from the edge first,
       and builds a :class:`ClusterEndpointAssociation` from the end facing the
       edge to the point where its direction crosses the edge;
    2. grows a line from the merge point in short segments, refitting the
       direction each time, and collects hits of other clusters close to it;
    3. validates that the collected hits reach the edge and are continuous;
    4. on success splices the collected hits into the main track and cleans up
       the remnants.

    Each edge is processed for at most ``max_iterations`` rounds.

    Parameters
    ----------
    store, geometry
        Collaborators, see :class:`TrackRefinementBase`.
    max_iterations : int
        Round cap per edge.
    growing_fit_initial_length : float
        Length (cm) of main-track hits behind the merge point that seed the
        growing fit.
    growing_fit_segment_length : float
        Length (cm) of each extrapolated segment.
    furthest_distance_to_line : float
        Hits whose edges lie further than this (cm) from the segment line are
        never collected.
    closest_distance_to_line : float
        Hits that do not straddle the line must have an edge within this
        distance (cm) of it.
    boundary_tolerance : float
        Maximum drift-axis distance (cm) between the extrapolated end and the
        edge.
    max_merge_point_separation : float
        Maximum distance (cm) between the merge point and the first collected hit.
    **kwargs
        Forwarded to :class:`TrackRefinementBase`.
    """

    def __init__(
        self,
        store: EventStore,
        geometry: DetectorGeometry,
        *,
        max_iterations: int = 10,
        growing_fit_initial_length: float = 20.0,
        growing_fit_segment_length: float = 5.0,
        furthest_distance_to_line: float = 10.0,
        closest_distance_to_line: float = 0.5,
        boundary_tolerance: float = 2.0,
        max_merge_point_separation: float = 2.0,
        **kwargs,
    ) -> None:
        super().__init__(store, geometry, **kwargs)
        self.max_iterations = int(max_iterations)
        self.growing_fit_initial_length = float(growing_fit_initial_length)
        self.growing_fit_segment_length = float(growing_fit_segment_length)
        self.furthest_distance_to_line = float(furthest_distance_to_line)
        self.closest_distance_to_line = float(closest_distance_to_line)
        self.boundary_tolerance = float(boundary_tolerance)
        self.max_merge_point_separation = float(max_merge_point_separation)

    # ------------------------------------------------------------------ run
    def run(self) -> int:
        """Process every cluster list; return the number of extended tracks."""
        n_extended = 0
        for name in self.store.cluster_list_names:
            n_extended += self._run_on_list(name)
        if n_extended:
            self.log.info("Extended %d track(s) to the drift-volume edges", n_extended)
        return n_extended

    def _run_on_list(self, list_name: str) -> int:
        self.store.replace_current_list(list_name)
        cluster_vector: List[int] = []
        cache = SlidingFitCache()
        self.initialise_containers(self.store.get_list(list_name), cluster_vector, cache)

        lo, hi = self.geometry.tpc_edges()
        n_extended = 0
        for is_higher_x in (False, True):
            boundary_x = hi if is_higher_x else lo
            if self.geometry.is_detector_edge(boundary_x):
                self.log.debug("Skipping %s edge x=%.2f (detector edge)", list_name, boundary_x)
                continue
            considered: List[int] = []
            for _ in range(self.max_iterations):
                cluster_vector.sort(key=lambda c: self._sort_key(c, boundary_x, cache))
                association = self.find_best_cluster_association(cluster_vector, cache, boundary_x)
                if association is None:
                    break
                self.consider_cluster(association, cluster_vector)
                hits_by_cluster = self.get_extrapolated_calo_hits(association)
                validated = self.validate_extrapolation(association, hits_by_cluster, boundary_x)
                if validated is None:
                    self.log.debug("Rejected extension of cluster %d", association.main_track_cluster)
                    continue
                if not hits_by_cluster:
                    # already reaches this edge; refit for the other one
                    cache.discard(association.main_track_cluster)
                    considered.append(association.main_track_cluster)
                    continue
                considered.append(self.create_main_track(validated, hits_by_cluster, cluster_vector, cache))
                n_extended += 1
            if not is_higher_x:
                self.initialise_containers(considered, cluster_vector, cache)
        return n_extended

    def _sort_key(self, cluster_id: int, boundary_x: float, cache: SlidingFitCache):
        micro = cache.micro[cluster_id]
        inner_x = micro.get_global_min_layer_position()[0]
        outer_x = micro.get_global_max_layer_position()[0]
        return -max(abs(inner_x - boundary_x), abs(outer_x - boundary_x)), cluster_id

    def consider_cluster(self, association: ClusterEndpointAssociation, cluster_vector: List[int]) -> None:
        cluster_vector.remove(association.main_track_cluster)

    # ---------------------------------------------------------- association
    def find_best_cluster_association(
        self, cluster_vector: Sequence[int], cache: SlidingFitCache, boundary_x: float
    ) -> Optional[ClusterEndpointAssociation]:
        r"""
        First cluster, in the current order, whose edge-facing end extrapolates onto the edge.
        """
        for cid in cluster_vector:
            association = self.build_endpoint_association(cid, cache, boundary_x)
            if association is not None:
                return association
        return None

    def build_endpoint_association(
        self, cluster_id: int, cache: SlidingFitCache, boundary_x: float
    ) -> Optional[ClusterEndpointAssociation]:
        micro, macro = cache.micro[cluster_id], cache.macro[cluster_id]
        inner_x = micro.get_global_min_layer_position()[0]
        outer_x = micro.get_global_max_layer_position()[0]
        is_end_upstream = abs(inner_x - boundary_x) < abs(outer_x - boundary_x)

        coordinates = self.get_cluster_merging_coordinates(micro, macro, is_end_upstream)
        if coordinates is None:
            return None
        merge_point, direction = coordinates
        outward = -direction if is_end_upstream else direction
        if abs(outward[0]) < 1e-6:
            return None
        t = (boundary_x - merge_point[0]) / outward[0]
        if t < 0.0:
            return None
        extrapolated = merge_point + t * outward

        if is_end_upstream:
            return ClusterEndpointAssociation(
                upstream_merge_point=extrapolated,
                upstream_merge_direction=-outward,
                downstream_merge_point=merge_point,
                downstream_merge_direction=outward,
                main_track_cluster=cluster_id,
                is_end_upstream=True,
            )
        return ClusterEndpointAssociation(
            upstream_merge_point=merge_point,
            upstream_merge_direction=outward,
            downstream_merge_point=extrapolated,
            downstream_merge_direction=-outward,
            main_track_cluster=cluster_id,
            is_end_upstream=False,
        )

    # --------------------------------------------------------- extrapolation
    def _hits_in_region(self, association: ClusterEndpointAssociation) -> Dict[int, List[Hit]]:
        region: Dict[int, List[Hit]] = {}
        for cid in self.store.get_current_list():
            if cid == association.main_track_cluster or not self.store.is_available(cid):
                continue
            cluster = self.store.cluster(cid)
            mask = points_in_line_segment(
                cluster.positions, association.upstream_merge_point, association.downstream_merge_point
            )
            if mask.any():
                region[cid] = [h for h, m in zip(cluster.ordered_hits, mask) if m]
        return region

    def _is_close_to_line(self, hit: Hit, start: np.ndarray, direction: np.ndarray) -> bool:
        half = 0.5 * hit.cell_width
        edges = np.array(((hit.x + hit.x0 - half, hit.z), (hit.x + hit.x0 + half, hit.z)))
        signed = distances_to_line(edges, start, direction)
        distance = np.abs(signed)
        if np.any(distance > self.furthest_distance_to_line):
            return False
        if signed[0] * signed[1] > 0.0:
            return bool(np.any(distance < self.closest_distance_to_line))
        return True

    def get_extrapolated_calo_hits(self, association: ClusterEndpointAssociation) -> HitsByCluster:
        r"""
        Collect hits of other clusters along a line grown from the merge point.

        The line is seeded by the main-track hits within
        ``growing_fit_initial_length`` behind the merge point. Each step fits
        the seed plus the hits collected so far, moves the segment start to
        the fit end facing the edge and collects hits inside the next
        ``growing_fit_segment_length``. Growth stops once a step collects
        nothing or the fit fails.

        Returns
        -------
        dict[int, list[Hit]]
            Collected hits per source cluster.
        """
        region = self._hits_in_region(association)
        clusters_in_region = sorted(region, key=lambda c: sort_by_n_hits(self.store.cluster(c)))

        start = association.cluster_merge_point
        direction = association.cluster_merge_direction
        back = start - direction * self.growing_fit_initial_length
        lo, hi = np.minimum(start, back), np.maximum(start, back)
        main = self.store.cluster(association.main_track_cluster).positions
        inside = np.all((main >= lo) & (main <= hi), axis=1)
        fit_points: List[np.ndarray] = list(main[inside])

        collected: HitsByCluster = {}
        seen = set()
        first = True
        while True:
            fit = self.fit(np.array(fit_points).reshape(-1, 2), self.micro_sliding_fit_window)
            if fit is None:
                break
            if not first:
                if association.is_end_upstream:
                    start = fit.get_global_min_layer_position()
                    direction = -fit.get_global_min_layer_direction()
                else:
                    start = fit.get_global_max_layer_position()
                    direction = fit.get_global_max_layer_direction()
            first = False
            end = start + direction * self.growing_fit_segment_length

            n_collected = 0
            for cid in clusters_in_region:
                for hit in region[cid]:
                    if hit.hit_id in seen:
                        continue
                    position = hit.position
                    if not points_in_line_segment(position.reshape(1, 2), start, end)[0]:
                        continue
                    if not self._is_close_to_line(hit, start, direction):
                        continue
                    seen.add(hit.hit_id)
                    collected.setdefault(cid, []).append(hit)
                    fit_points.append(position)
                    n_collected += 1
            if n_collected == 0:
                break
        return collected

    # ------------------------------------------------------------ validation
    def validate_extrapolation(
        self, association: ClusterEndpointAssociation, hits_by_cluster: HitsByCluster, boundary_x: float
    ) -> Optional[ClusterEndpointAssociation]:
        r"""
        Check that the collected hits reach the edge and leave no long gaps.

        Returns
        -------
        ClusterEndpointAssociation or None
            The association with its extrapolated end moved onto the furthest
            collected hit, or ``None`` if the extrapolation is rejected.
        """
        merge_point = association.cluster_merge_point
        hits = [h for hs in hits_by_cluster.values() for h in hs]
        if not hits:
            if abs(merge_point[0] - boundary_x) > self.boundary_tolerance:
                return None
            return association

        origin = association.upstream_merge_point
        direction = association.connecting_line_direction
        hits.sort(key=lambda h: (float((h.position - origin) @ direction), h.hit_id))
        closest, furthest = (hits[-1], hits[0]) if association.is_end_upstream else (hits[0], hits[-1])

        if abs(furthest.position[0] - boundary_x) > self.boundary_tolerance:
            return None
        if float(np.linalg.norm(merge_point - closest.position)) > self.max_merge_point_separation:
            return None

        updated = association.with_extrapolated_point(furthest.position)
        if not self.is_track_continuous(updated, hits):
            return None
        return updated

    def are_extrapolated_hits_good(
        self, association: ClusterEndpointAssociation, hits_by_cluster: HitsByCluster, boundary_x: float
    ) -> bool:
        return self.validate_extrapolation(association, hits_by_cluster, boundary_x) is not None

    # ---------------------------------------------------------------- commit
    def create_main_track(
        self,
        association: ClusterEndpointAssociation,
        hits_by_cluster: HitsByCluster,
        cluster_vector: List[int],
        cache: SlidingFitCache,
    ) -> int:
        r"""
        Commit an accepted extension.

        Returns
        -------
        int
            Handle of the extended main track.
        """
        original = association.main_track_cluster
        shower_clusters = sorted(
            (c for c in hits_by_cluster if c != original),
            key=lambda c: sort_by_n_hits(self.store.cluster(c)),
        )
        remnants: List[int] = []
        main_track = self.remove_off_axis_hits_from_track(
            original, association.cluster_merge_point, association.is_end_upstream, hits_by_cluster, remnants, cache
        )
        for cid in shower_clusters:
            self.add_hits_to_main_track(main_track, cid, hits_by_cluster[cid], association, remnants)

        created, enlarged = self.process_remnant_clusters(remnants, main_track)
        enlarged = [c for c in enlarged if c != main_track]
        self.update_containers(created + enlarged, shower_clusters + enlarged + [original, main_track], cluster_vector, cache)
        self.log.debug(
            "Extended cluster %d -> %d with %d shower cluster(s), %d remnant(s)",
            original, main_track, len(shower_clusters), len(created),
        )
        return main_track
