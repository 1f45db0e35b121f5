from __future__ import annotations

import math
from typing import List, Optional, Sequence, Set, Tuple

import numpy as np

from ..cluster_helper import (
    distances_to_line,
    distances_to_set,
    get_closest_distance,
    get_closest_positions,
    get_cluster_span_x,
    get_cluster_span_z,
    points_in_line_segment,
)
from ..clustering import recluster_remnant
from ..objects import Hit, View, VIEWS
from ..overlap_tensor import Element, OverlapTensor
from ..sliding_fit import TwoDSlidingFitResult
from .tool import TensorTool, ToolKind

__all__ = ["CosmicRayRemovalTool"]


class CosmicRayRemovalTool(TensorTool):
    r"""
    Strip muon hits that were clustered into a delta-ray candidate.

    For every connected group of elements, each view of each element is
    examined in ``U, V, W`` order. A candidate cluster is split when

    1. it lies within ``min_separation`` of its muon cluster;
    2. it is contaminated (:meth:`is_contaminated`);
    3. its element is the best one proposing to modify it
       (:meth:`is_best_element`);
    4. a non-empty seed of genuine delta-ray hits exists (:meth:`create_seed`)
       and growing it (:meth:`grow_seed`) does not reclaim the whole cluster.

    The split (:meth:`split_cluster`) hands the seed to a new delta-ray
    cluster, the ambiguous far-from-muon hits to reclustered remnants and the
    rest to the muon. A cluster is modified at most once per pass.

    Parameters
    ----------
    min_separation : float
        Maximum candidate-muon distance (cm) for the candidate to be examined.
    contamination_line_distance : float
        Distance (cm) from the fitted muon line within which a candidate hit
        counts as lying along the muon.
    min_contamination_length : float
        Minimum reach (cm) along the muon line for the extension test.
    max_transverse_angle_deg : float
        Muons within this angle of the drift axis are *transverse*; the
        extension test is not applied to them.
    macro_sliding_fit_window : int
        Layer half-window of the global muon fit.
    max_seed_distance_to_delta_ray : float
        Seed hits lie within this distance (cm) of the projected delta ray.
    min_seed_distance_to_muon : float
        ...and at least this far (cm) from the projected muon.
    min_projected_hits_fraction : float
        Below this ratio of projected muon positions to muon hits, muon
        distances are measured to a local fit line instead.
    growth_sliding_fit_window : int
        Layer half-window of that local fit.
    min_growth_distance_to_muon : float
        Hits closer than this (cm) to the muon never join the delta ray.
    min_remnant_distance_to_muon : float
        Unclaimed hits further than this (cm) from the muon become remnants.
    min_remnant_cluster_size : int
        Remnant fragments smaller than this...
    max_remnant_merge_distance : float
        ...and closer than this (cm) to the muon are merged into the muon.
    """

    kind = ToolKind.REMOVAL

    def __init__(
        self,
        min_separation: float = 2.0,
        contamination_line_distance: float = 0.5,
        min_contamination_length: float = 3.0,
        max_transverse_angle_deg: float = 10.0,
        macro_sliding_fit_window: int = 10000,
        max_seed_distance_to_delta_ray: float = 1.0,
        min_seed_distance_to_muon: float = 1.0,
        min_projected_hits_fraction: float = 0.8,
        growth_sliding_fit_window: int = 40,
        min_growth_distance_to_muon: float = 0.5,
        min_remnant_distance_to_muon: float = 1.0,
        min_remnant_cluster_size: int = 3,
        max_remnant_merge_distance: float = 2.0,
    ) -> None:
        super().__init__()
        self.min_separation = float(min_separation)
        self.contamination_line_distance = float(contamination_line_distance)
        self.min_contamination_length = float(min_contamination_length)
        self.max_transverse_angle_deg = float(max_transverse_angle_deg)
        self.macro_sliding_fit_window = int(macro_sliding_fit_window)
        self.max_seed_distance_to_delta_ray = float(max_seed_distance_to_delta_ray)
        self.min_seed_distance_to_muon = float(min_seed_distance_to_muon)
        self.min_projected_hits_fraction = float(min_projected_hits_fraction)
        self.growth_sliding_fit_window = int(growth_sliding_fit_window)
        self.min_growth_distance_to_muon = float(min_growth_distance_to_muon)
        self.min_remnant_distance_to_muon = float(min_remnant_distance_to_muon)
        self.min_remnant_cluster_size = int(min_remnant_cluster_size)
        self.max_remnant_merge_distance = float(max_remnant_merge_distance)

    def apply(self, tensor: OverlapTensor) -> bool:
        changed = False
        for elements in self.connected_element_groups():
            changed |= self.remove_muon_hits(elements)
        return changed

    def remove_muon_hits(self, elements: Sequence[Element]) -> bool:
        modified: Set[int] = set()
        checked: Set[int] = set()
        for element in elements:
            for view in VIEWS:
                cid = element.cluster(view)
                if cid in checked:
                    continue
                if any(c in modified for c in element.clusters):
                    break
                if not self.pass_element_checks(element, view):
                    continue
                if not self.is_contaminated(element, view):
                    continue
                if not self.is_best_element(element, view, elements, modified):
                    continue
                checked.add(cid)
                seed = self.create_seed(element, view)
                if not seed:
                    continue
                grown = self.grow_seed(element, view, seed)
                if grown is None:
                    continue
                delta_ray_hits, remnant_hits = grown
                if len(delta_ray_hits) == self.store.cluster(cid).n_hits:
                    continue
                modified.add(cid)
                self.log.debug(
                    "Splitting cluster %d (%s): %d delta-ray, %d remnant hits",
                    cid, view.name, len(delta_ray_hits), len(remnant_hits),
                )
                self.split_cluster(element, view, delta_ray_hits, remnant_hits)
        return bool(modified)

    # ----------------------------------------------------------------- checks
    def pass_element_checks(self, element: Element, view: View) -> bool:
        muon = self.algorithm.get_muon_cluster(element.common_muon_pfos, view)
        if muon is None:
            return False
        distance = get_closest_distance(self.store.cluster(element.cluster(view)), self.store.cluster(muon))
        return distance <= self.min_separation

    def _is_contained(self, cluster_id: int, muon_id: int) -> bool:
        cluster, muon = self.store.cluster(cluster_id), self.store.cluster(muon_id)
        cx, mx = get_cluster_span_x(cluster), get_cluster_span_x(muon)
        if cx[0] < mx[0] or cx[1] > mx[1]:
            return False
        cz = get_cluster_span_z(cluster, *cx)
        mz = get_cluster_span_z(muon, *mx)
        return not (cz[0] < mz[0] or cz[1] > mz[1])

    def is_transverse(self, direction: np.ndarray) -> bool:
        """``True`` if ``direction`` lies within ``max_transverse_angle_deg`` of the drift axis."""
        angle = math.degrees(math.atan2(abs(float(direction[1])), abs(float(direction[0]))))
        return angle < self.max_transverse_angle_deg

    def is_contaminated(self, element: Element, view: View) -> bool:
        r"""
        Whether the candidate in ``view`` carries muon hits.

        Containment: in both other views the candidate's drift span, and its
        z span over that range, sit inside the muon's. Extension: for a muon
        that is not transverse, some candidate hit lying along the fitted muon
        line reaches at least ``min_contamination_length`` from the muon, with
        no muon hit between the candidate and that point.
        """
        muons = element.common_muon_pfos
        if self.algorithm.get_muon_cluster(muons, view) is None:
            return False

        contained = True
        for other in view.others():
            other_muon = self.algorithm.get_muon_cluster(muons, other)
            if other_muon is None or not self._is_contained(element.cluster(other), other_muon):
                contained = False
                break
        if contained:
            return True

        cluster = self.store.cluster(element.cluster(view))
        muon = self.store.cluster(self.algorithm.get_muon_cluster(muons, view))
        delta_ray_vertex, muon_vertex = get_closest_positions(cluster, muon)
        fit = TwoDSlidingFitResult.try_fit(muon, self.macro_sliding_fit_window, self.algorithm.geometry.wire_pitch)
        if fit is None:
            return False
        direction = fit.get_global_direction(fit.first_gradient)
        if self.is_transverse(direction):
            return False

        pos = cluster.positions
        along = np.abs(distances_to_line(pos, muon_vertex, direction)) < self.contamination_line_distance
        if not along.any():
            return False
        separation = np.where(along, np.linalg.norm(pos - muon_vertex, axis=1), -1.0)
        i = int(np.argmax(separation))
        if separation[i] < self.min_contamination_length:
            return False
        return not points_in_line_segment(muon, delta_ray_vertex, pos[i]).any()

    def is_best_element(self, element: Element, view: View, elements: Sequence[Element], modified: Set[int]) -> bool:
        r"""
        Whether ``element`` outranks every other unmodified element sharing its
        ``view`` cluster.

        Ranking: larger drift overlap span, then larger total hit count, then
        smaller reduced :math:`\chi^2`, then lower key.
        """
        def rank(e: Element):
            r = e.overlap_result
            hit_sum = sum(self.store.cluster(c).n_hits for c in e.clusters)
            return (-r.x_overlap.x_overlap_span, -hit_sum, r.reduced_chi2, e.key)

        mine = rank(element)
        for other in elements:
            if other.key == element.key or other.cluster(view) != element.cluster(view):
                continue
            if any(c in modified for c in other.clusters):
                continue
            if rank(other) < mine:
                return False
        return True

    # ------------------------------------------------------------ seed growth
    def project_delta_ray_positions(self, element: Element, view: View) -> Optional[np.ndarray]:
        c1, c2 = (self.store.cluster(element.cluster(v)) for v in view.others())
        return self.algorithm.get_projected_positions(c1, c2)

    def create_seed(self, element: Element, view: View) -> List[Hit]:
        r"""
        Candidate hits near the projected delta ray and away from the projected muon.
        """
        muon_proj = self.algorithm.project_muon_positions(view, element.common_muon_pfos[0])
        if muon_proj is None:
            return []
        delta_proj = self.project_delta_ray_positions(element, view)
        if delta_proj is None:
            return []
        cluster = self.store.cluster(element.cluster(view))
        near_delta = distances_to_set(cluster.positions, delta_proj) < self.max_seed_distance_to_delta_ray
        far_muon = distances_to_set(cluster.positions, muon_proj) >= self.min_seed_distance_to_muon
        return [h for h, keep in zip(cluster.ordered_hits, near_delta & far_muon) if keep]

    def _muon_distances(self, element: Element, view: View, muon_id: int, positions: np.ndarray) -> Optional[np.ndarray]:
        muon = self.store.cluster(muon_id)
        projected = self.algorithm.project_muon_positions(view, element.common_muon_pfos[0])
        n_projected = 0 if projected is None else projected.shape[0]
        if n_projected / muon.n_hits >= self.min_projected_hits_fraction:
            return distances_to_set(positions, projected)
        fit = TwoDSlidingFitResult.try_fit(muon, self.growth_sliding_fit_window, self.algorithm.geometry.wire_pitch)
        if fit is None:
            return None
        cluster = self.store.cluster(element.cluster(view))
        _, on_muon = get_closest_positions(cluster, muon)
        rL, _ = fit.get_local_position(on_muon)
        direction = fit.get_global_fit_direction(rL)
        return np.abs(distances_to_line(positions, on_muon, direction))

    def grow_seed(self, element: Element, view: View, seed: Sequence[Hit]) -> Optional[Tuple[List[Hit], List[Hit]]]:
        r"""
        Grow ``seed`` into the delta-ray hit set and collect remnant hits.

        First pass, repeated until stable: an unclaimed hit joins when it is at
        least ``min_growth_distance_to_muon`` from the muon and closer to the
        collected hits than to the muon. Second pass: unclaimed hits further
        than ``min_remnant_distance_to_muon`` from the muon are remnants.

        Returns
        -------
        (delta_ray_hits, remnant_hits) or None
            ``None`` when the muon cluster cannot be found.
        """
        muon_id = self.algorithm.get_muon_cluster(element.common_muon_pfos, view)
        if muon_id is None:
            return None
        cluster = self.store.cluster(element.cluster(view))
        hits = cluster.ordered_hits
        pos = cluster.positions
        muon_distance = self._muon_distances(element, view, muon_id, pos)
        if muon_distance is None:
            return None

        collected = np.zeros(len(hits), dtype=bool)
        seed_ids = {h.hit_id for h in seed}
        for i, h in enumerate(hits):
            collected[i] = h.hit_id in seed_ids

        added = True
        while added:
            added = False
            for i in range(len(hits)):
                if collected[i] or muon_distance[i] < self.min_growth_distance_to_muon:
                    continue
                d = distances_to_set(pos[i:i + 1], pos[collected])[0]
                if d < muon_distance[i]:
                    collected[i] = True
                    added = True

        delta_ray = [h for h, c in zip(hits, collected) if c]
        remnant = [
            h for h, c, d in zip(hits, collected, muon_distance)
            if not c and d > self.min_remnant_distance_to_muon
        ]
        return delta_ray, remnant

    # ------------------------------------------------------------------ split
    def split_cluster(
        self, element: Element, view: View, delta_ray_hits: Sequence[Hit], remnant_hits: Sequence[Hit]
    ) -> None:
        r"""
        Partition the candidate into delta ray, remnant and muon hits.

        Follows notice, mutate, re-index: both clusters are withdrawn from the
        algorithm's indices, the candidate is fragmented, remnant hits are
        reclustered, and the survivors are re-registered.
        """
        algorithm = self.algorithm
        muon_pfo = element.common_muon_pfos[0]
        muon_id = algorithm.get_muon_cluster(element.common_muon_pfos, view)
        if muon_id is None:
            return
        cid = element.cluster(view)
        algorithm.update_upon_deletion(muon_id)
        algorithm.update_upon_deletion(cid)

        self.store.replace_current_list(algorithm.cluster_list_name(view))
        delta_ids = {h.hit_id for h in delta_ray_hits}
        remnant_ids = {h.hit_id for h in remnant_hits}
        delta_ray_cluster: Optional[int] = None
        remnant_cluster: Optional[int] = None
        hits = self.store.cluster(cid).ordered_hits
        with self.store.fragmentation([cid]) as frag:
            for h in hits:
                if h.hit_id in delta_ids:
                    delta_ray_cluster = frag.add_or_create(delta_ray_cluster, h)
                elif h.hit_id in remnant_ids:
                    remnant_cluster = frag.add_or_create(remnant_cluster, h)
                else:
                    frag.add(muon_id, h)

        new_clusters: List[int] = []
        new_pfos: List[Optional[int]] = []
        if remnant_cluster is not None:
            self.fragment_remnant(muon_id, remnant_cluster, new_clusters, new_pfos)
        new_clusters += [muon_id, delta_ray_cluster]
        new_pfos += [muon_pfo, None]
        algorithm.update_for_new_clusters(new_clusters, new_pfos)

    def fragment_remnant(
        self, muon_id: int, remnant_id: int, new_clusters: List[int], new_pfos: List[Optional[int]]
    ) -> None:
        r"""
        Recluster the remnant hits and fold small fragments near the muon back into it.
        """
        kept = recluster_remnant(
            self.store,
            self.algorithm.clustering_algorithm_name,
            remnant_id,
            attach_to=muon_id,
            min_cluster_size=self.min_remnant_cluster_size,
            max_merge_distance=self.max_remnant_merge_distance,
        )
        new_clusters.extend(kept)
        new_pfos.extend([None] * len(kept))
