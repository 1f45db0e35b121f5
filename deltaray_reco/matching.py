from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np
from scipy.spatial import cKDTree

from .cluster_helper import (
    as_positions,
    get_closest_distance,
    get_cluster_span_x,
    get_cluster_span_z,
    sort_by_n_hits,
)
from .event_store import EventStore, cluster_list_name
from .exceptions import InvalidParameterError
from .geometry import DetectorGeometry
from .objects import Cluster, Hit, ProtoParticle, View, VIEWS
from .overlap_tensor import Element, OverlapResult, OverlapTensor, XOverlap

__all__ = ["DeltaRayMatchingAlgorithm"]

logger = logging.getLogger(__name__)

HitCollection = Union[Cluster, Sequence[Hit]]


class DeltaRayMatchingAlgorithm:
    r"""
    Three-view matching of delta-ray clusters hanging off cosmic-ray muons.

    The algorithm owns the overlap tensor for one pass over an event and the
    indices needed to fill it:

    - ``hit -> cluster`` maps and a per-view :class:`scipy.spatial.cKDTree`
      over every clustered hit;
    - a proximity map linking clusters whose hits lie within a box of
      half-side ``search_region_1d`` of each other;
    - a ``cluster -> muon pfo`` map built from the muon pfo list.

    Available clusters with at least ``min_cluster_calo_hits`` hits are
    matched; smaller ones are kept aside as *stray* clusters and absorbed into
    the final delta rays by :meth:`create_pfos`. An element enters the tensor
    only if its clusters agree in three-view sampling
    (:meth:`perform_three_view_matching`) and share at least one nearby muon.

    The registered tools are then applied in order; any change restarts the
    chain from the first tool (:meth:`examine_overlap_container`).

    Every structural change made by a tool must follow the notice-then-mutate
    order: :meth:`update_upon_deletion` for each cluster about to disappear or
    change, then the store mutation, then :meth:`update_for_new_clusters`.

    Parameters
    ----------
    store : EventStore
        Event arena.
    geometry : DetectorGeometry
        Wire-angle and pitch service.
    tools : sequence of TensorTool, optional
        Tools applied to the tensor, in order.
    muon_pfo_list_name, delta_ray_pfo_list_name : str
        Pfo list names to read muons from and write delta rays to.
    clustering_algorithm_name : str
        Store reclustering routine used by tools for remnant hits.
    n_max_tensor_tool_repeats : int
        Cap on tool-chain restarts.
    min_cluster_calo_hits : int
        Minimum hits for a cluster to be matched.
    search_region_1d : float
        Half-side (cm) of the proximity box.
    pseudo_chi2_cut : float
        Per-sample pseudo-:math:`\chi^2` acceptance.
    x_overlap_window : float
        Width (cm) of the drift windows used for sampling.
    min_matched_fraction, min_matched_points : float, int
        Acceptance of a three-view match.
    min_projected_positions : int
        Minimum samples for a two-view projection to be usable.
    stray_cluster_separation : float
        Maximum distance (cm) for a stray cluster to be absorbed.
    delta_ray_pdg : int
        Particle code given to created pfos.
    """

    def __init__(
        self,
        store: EventStore,
        geometry: DetectorGeometry,
        tools: Sequence[object] = (),
        *,
        muon_pfo_list_name: str = "MuonPfos",
        delta_ray_pfo_list_name: str = "DeltaRayPfos",
        clustering_algorithm_name: str = "proximity",
        n_max_tensor_tool_repeats: int = 1000,
        min_cluster_calo_hits: int = 3,
        search_region_1d: float = 3.0,
        pseudo_chi2_cut: float = 1.5,
        x_overlap_window: float = 1.0,
        min_matched_fraction: float = 0.5,
        min_matched_points: int = 3,
        min_projected_positions: int = 3,
        stray_cluster_separation: float = 2.0,
        delta_ray_pdg: int = 11,
    ) -> None:
        self.store = store
        self.geometry = geometry
        self.muon_pfo_list_name = muon_pfo_list_name
        self.delta_ray_pfo_list_name = delta_ray_pfo_list_name
        self.clustering_algorithm_name = clustering_algorithm_name
        self.n_max_tensor_tool_repeats = int(n_max_tensor_tool_repeats)
        self.min_cluster_calo_hits = int(min_cluster_calo_hits)
        self.search_region_1d = float(search_region_1d)
        self.pseudo_chi2_cut = float(pseudo_chi2_cut)
        self.x_overlap_window = float(x_overlap_window)
        self.min_matched_fraction = float(min_matched_fraction)
        self.min_matched_points = int(min_matched_points)
        self.min_projected_positions = int(min_projected_positions)
        self.stray_cluster_separation = float(stray_cluster_separation)
        self.delta_ray_pdg = int(delta_ray_pdg)
        self.log = logging.getLogger(self.__class__.__name__)

        self.tools: List[object] = []
        for tool in tools:
            self.add_tool(tool)

        self._tensor = OverlapTensor()
        self._input_clusters: Dict[View, Dict[int, None]] = {v: {} for v in VIEWS}
        self._stray_clusters: Dict[View, Dict[int, None]] = {v: {} for v in VIEWS}
        self._hit_to_cluster: Dict[View, Dict[int, int]] = {v: {} for v in VIEWS}
        self._cluster_view: Dict[int, View] = {}
        self._kd_trees: Dict[View, Optional[Tuple[cKDTree, np.ndarray]]] = {v: None for v in VIEWS}
        self._proximity: Dict[int, Set[int]] = {}
        self._cluster_to_pfo: Dict[int, int] = {}

    def add_tool(self, tool) -> None:
        tool.attach(self)
        self.tools.append(tool)

    @property
    def tensor(self) -> OverlapTensor:
        return self._tensor

    def cluster_list_name(self, view: View) -> str:
        return cluster_list_name(view)

    def get_input_clusters(self, view: View) -> List[int]:
        return list(self._input_clusters[view])

    def get_stray_clusters(self, view: View) -> List[int]:
        return list(self._stray_clusters[view])

    # ----------------------------------------------------------------- driver
    def run(self) -> Dict[str, int]:
        r"""
        Prepare the indices, fill the tensor and apply the tools.

        Returns
        -------
        dict
            ``initial_elements``, ``tool_repeats`` and ``delta_ray_pfos`` counters.
        """
        n_before = len(self.store.get_pfo_list(self.delta_ray_pfo_list_name))
        self.prepare_input_clusters()
        self.populate_tensor()
        n_elements = len(self._tensor)
        repeats = self.examine_overlap_container()
        n_created = len(self.store.get_pfo_list(self.delta_ray_pfo_list_name)) - n_before
        self.log.info(
            "Delta-ray matching: %d initial elements, %d tool restarts, %d pfos created",
            n_elements, repeats, n_created,
        )
        self.tidy_up()
        return {"initial_elements": n_elements, "tool_repeats": repeats, "delta_ray_pfos": n_created}

    def tidy_up(self) -> None:
        self._tensor.clear()
        for v in VIEWS:
            self._input_clusters[v].clear()
            self._stray_clusters[v].clear()
            self._hit_to_cluster[v].clear()
            self._kd_trees[v] = None
        self._cluster_view.clear()
        self._proximity.clear()
        self._cluster_to_pfo.clear()

    def examine_overlap_container(self) -> int:
        r"""
        Apply the tools until none of them changes anything.

        After a tool reports a change the chain restarts from the first tool.
        The number of restarts is capped by ``n_max_tensor_tool_repeats``.

        Returns
        -------
        int
            Number of restarts performed.
        """
        repeats = 0
        i = 0
        while i < len(self.tools):
            if self.tools[i].apply(self._tensor):
                i = 0
                repeats += 1
                if repeats > self.n_max_tensor_tool_repeats:
                    self.log.warning("Tool chain still changing after %d repeats, stopping", repeats - 1)
                    break
            else:
                i += 1
        return repeats

    # ---------------------------------------------------------------- indices
    def prepare_input_clusters(self) -> None:
        self.tidy_up()
        for view in VIEWS:
            for cid in self.store.get_list(self.cluster_list_name(view)):
                self._register_cluster(cid)
                if not self.store.is_available(cid):
                    continue
                if self.store.cluster(cid).n_hits >= self.min_cluster_calo_hits:
                    self._input_clusters[view][cid] = None
                else:
                    self._stray_clusters[view][cid] = None
        for pid in self.store.get_pfo_list(self.muon_pfo_list_name):
            for cid in self.store.pfo(pid).all_clusters:
                if self.store.alive(cid):
                    self._cluster_to_pfo[cid] = pid
        for view in VIEWS:
            for cid in self.store.get_list(self.cluster_list_name(view)):
                self._proximity[cid] = set(self._nearby_clusters(cid))

    def _register_cluster(self, cluster_id: int) -> None:
        cluster = self.store.cluster(cluster_id)
        self._cluster_view[cluster_id] = cluster.view
        hit_map = self._hit_to_cluster[cluster.view]
        for h in cluster.ordered_hits:
            hit_map[h.hit_id] = cluster_id
        self._kd_trees[cluster.view] = None

    def _kd_tree(self, view: View) -> Optional[Tuple[cKDTree, np.ndarray]]:
        if self._kd_trees[view] is None:
            hit_map = self._hit_to_cluster[view]
            if not hit_map:
                return None
            ids = np.fromiter(sorted(hit_map), dtype=np.int64, count=len(hit_map))
            pos = as_positions([self.store.hit(int(i)) for i in ids])
            self._kd_trees[view] = (cKDTree(pos), ids)
        return self._kd_trees[view]

    def _nearby_clusters(self, cluster_id: int) -> List[int]:
        cluster = self.store.cluster(cluster_id)
        entry = self._kd_tree(cluster.view)
        if entry is None:
            return []
        tree, ids = entry
        hit_map = self._hit_to_cluster[cluster.view]
        near: Set[int] = set()
        # box search: Chebyshev ball of radius search_region_1d
        for idx in tree.query_ball_point(cluster.positions, r=self.search_region_1d, p=np.inf):
            for i in idx:
                other = hit_map[int(ids[i])]
                if other != cluster_id:
                    near.add(other)
        return sorted(near)

    def _update_proximity(self, cluster_id: int) -> None:
        near = self._nearby_clusters(cluster_id)
        self._proximity[cluster_id] = set(near)
        for n in near:
            self._proximity.setdefault(n, set()).add(cluster_id)

    def get_nearby_muon_pfos(self, cluster_id: int) -> List[int]:
        r"""
        Muon pfos reachable from ``cluster_id`` through the proximity map.

        The walk stops at muon clusters; it only continues through clusters
        that do not belong to a muon.
        """
        considered = {cluster_id}
        stack = [cluster_id]
        muons: Set[int] = set()
        while stack:
            cid = stack.pop()
            pfo = self._cluster_to_pfo.get(cid)
            if pfo is not None:
                muons.add(pfo)
                continue
            for n in sorted(self._proximity.get(cid, ()), reverse=True):
                if n not in considered:
                    considered.add(n)
                    stack.append(n)
        return sorted(muons)

    def find_common_muon_pfos(self, cluster_u: int, cluster_v: int, cluster_w: int) -> Tuple[int, ...]:
        common = set(self.get_nearby_muon_pfos(cluster_u))
        for cid in (cluster_v, cluster_w):
            if not common:
                break
            common &= set(self.get_nearby_muon_pfos(cid))
        return tuple(sorted(common))

    # ----------------------------------------------------------------- tensor
    def populate_tensor(self) -> None:
        for u in self.get_input_clusters(View.U):
            for v in self.get_input_clusters(View.V):
                for w in self.get_input_clusters(View.W):
                    self._calculate_and_store(u, v, w)

    def _calculate_and_store(self, u: int, v: int, w: int) -> None:
        result = self.calculate_overlap_result(u, v, w)
        if result is not None:
            self._tensor.set_overlap_result(u, v, w, result)

    def calculate_overlap_result(self, cluster_u: int, cluster_v: int, cluster_w: int) -> Optional[OverlapResult]:
        r"""
        Overlap result for one cluster triple, or ``None``.

        The triple is rejected when the clusters share no nearby muon or when
        :meth:`perform_three_view_matching` rejects it.
        """
        muons = self.find_common_muon_pfos(cluster_u, cluster_v, cluster_w)
        if not muons:
            return None
        result = self.perform_three_view_matching(
            self.store.cluster(cluster_u), self.store.cluster(cluster_v), self.store.cluster(cluster_w)
        )
        if result is None:
            return None
        return dataclasses.replace(result, common_muon_pfos=muons)

    @staticmethod
    def _view_of(hits: HitCollection) -> View:
        if isinstance(hits, Cluster):
            return hits.view
        hits = list(hits)
        if not hits:
            raise InvalidParameterError("Three-view matching on an empty hit collection")
        return hits[0].view

    def perform_three_view_matching(
        self, hits_a: HitCollection, hits_b: HitCollection, hits_c: HitCollection
    ) -> Optional[OverlapResult]:
        r"""
        Sample three single-view hit collections along their common drift range.

        Method
        ------
        With :math:`\delta = w/2` (``w`` the ``x_overlap_window``), the common
        range :math:`[x_0, x_1]` of the three drift spans is widened by
        :math:`\delta` on each side and sampled at
        :math:`N = 1 + \lfloor (x_1 - x_0 + 2\delta)/\delta \rfloor` points.
        At each sample :math:`x` every view contributes the mid-point
        :math:`z_v` and width :math:`\Delta z_v` of its hits in
        :math:`[x-\delta, x+\delta]`; samples where a view has no hits are
        skipped. The other two views predict :math:`\hat z_v` and

        .. math::
            \chi^2_{\text{pseudo}} =
            \frac{\tfrac13 \sum_v (z_v - \hat z_v)^2}
                 {\sum_v \Delta z_v^2 + p^2},

        with :math:`p` the wire pitch. A sample matches when
        :math:`\chi^2_{\text{pseudo}}` is below ``pseudo_chi2_cut``; the
        result keeps the sum over matched samples.

        Parameters
        ----------
        hits_a, hits_b, hits_c : Cluster or sequence of Hit
            One collection per view, in any order.

        Returns
        -------
        OverlapResult or None
            ``None`` when the drift spans do not overlap or fewer than
            ``min_matched_points`` samples (or ``min_matched_fraction`` of them)
            match. ``common_muon_pfos`` is left empty.

        Raises
        ------
        InvalidParameterError
            If two collections come from the same view or one is empty.
        """
        by_view: Dict[View, np.ndarray] = {}
        for hits in (hits_a, hits_b, hits_c):
            view = self._view_of(hits)
            if view in by_view:
                raise InvalidParameterError(f"Two hit collections from view {view.name}")
            by_view[view] = as_positions(hits)
        spans = {v: get_cluster_span_x(by_view[v]) for v in VIEWS}
        x_min_centre = max(s[0] for s in spans.values())
        x_max_centre = min(s[1] for s in spans.values())
        x_centre_overlap = x_max_centre - x_min_centre
        if x_centre_overlap < np.finfo(np.float32).eps:
            return None

        x_pitch = 0.5 * self.x_overlap_window
        x_min = x_min_centre - x_pitch
        x_max = x_max_centre + x_pitch
        n_points = 1 + int((x_max - x_min) / x_pitch)
        pitch2 = self.geometry.wire_pitch ** 2

        chi2_sum = 0.0
        n_sampling = 0
        n_matched = 0
        for n in range(n_points):
            x = x_min + (x_max - x_min) * (n + 0.5) / n_points
            z_mid: Dict[View, float] = {}
            dz: Dict[View, float] = {}
            for v in VIEWS:
                span = get_cluster_span_z(by_view[v], x - x_pitch, x + x_pitch)
                if span is None:
                    break
                z_mid[v] = 0.5 * (span[0] + span[1])
                dz[v] = span[1] - span[0]
            if len(z_mid) < 3:
                continue
            z_proj = {v: self.geometry.merge_two_positions(*v.others(), *(z_mid[o] for o in v.others())) for v in VIEWS}
            n_sampling += 1
            delta2 = sum((z_mid[v] - z_proj[v]) ** 2 for v in VIEWS) / 3.0
            sigma2 = sum(dz[v] ** 2 for v in VIEWS) + pitch2
            pseudo_chi2 = delta2 / sigma2
            if pseudo_chi2 < self.pseudo_chi2_cut:
                n_matched += 1
                chi2_sum += pseudo_chi2

        if n_sampling == 0:
            return None
        if n_matched < self.min_matched_points or n_matched / n_sampling < self.min_matched_fraction:
            return None
        x_overlap = XOverlap(
            spans[View.U][0], spans[View.U][1],
            spans[View.V][0], spans[View.V][1],
            spans[View.W][0], spans[View.W][1],
            x_centre_overlap,
        )
        return OverlapResult(n_matched, n_sampling, chi2_sum, x_overlap)

    def get_projected_positions(self, cluster_1: HitCollection, cluster_2: HitCollection) -> Optional[np.ndarray]:
        r"""
        Positions implied in the third view by two clusters of different views.

        The common drift range is sampled as in
        :meth:`perform_three_view_matching`; each sample with hits in both
        views yields ``(x, z3)``.

        Returns
        -------
        ndarray, shape (M, 2), or None
            ``None`` if fewer than ``min_projected_positions`` samples exist.
        """
        v1, v2 = self._view_of(cluster_1), self._view_of(cluster_2)
        if v1 is v2:
            raise InvalidParameterError(f"Projection needs two different views, got {v1.name} twice")
        p1, p2 = as_positions(cluster_1), as_positions(cluster_2)
        s1, s2 = get_cluster_span_x(p1), get_cluster_span_x(p2)
        if s1 is None or s2 is None:
            return None
        x_min_centre, x_max_centre = max(s1[0], s2[0]), min(s1[1], s2[1])
        if x_max_centre < x_min_centre:
            return None
        x_pitch = 0.5 * self.x_overlap_window
        x_min, x_max = x_min_centre - x_pitch, x_max_centre + x_pitch
        n_points = 1 + int((x_max - x_min) / x_pitch)
        out: List[Tuple[float, float]] = []
        for n in range(n_points):
            x = x_min + (x_max - x_min) * (n + 0.5) / n_points
            span1 = get_cluster_span_z(p1, x - x_pitch, x + x_pitch)
            if span1 is None:
                continue
            span2 = get_cluster_span_z(p2, x - x_pitch, x + x_pitch)
            if span2 is None:
                continue
            z3 = self.geometry.merge_two_positions(v1, v2, 0.5 * (span1[0] + span1[1]), 0.5 * (span2[0] + span2[1]))
            out.append((x, z3))
        if len(out) < self.min_projected_positions:
            return None
        return np.array(out, dtype=np.float64)

    def project_muon_positions(self, view: View, muon_pfo: int) -> Optional[np.ndarray]:
        """Muon trajectory in ``view`` projected from its clusters in the other two views."""
        c1, c2 = (self.get_muon_cluster((muon_pfo,), v) for v in view.others())
        if c1 is None or c2 is None:
            return None
        return self.get_projected_positions(self.store.cluster(c1), self.store.cluster(c2))

    def get_muon_cluster(self, common_muon_pfos: Sequence[int], view: View) -> Optional[int]:
        r"""
        The single muon cluster of ``view``.

        Returns ``None`` unless there is exactly one common muon pfo owning
        exactly one live cluster in ``view``.
        """
        if len(common_muon_pfos) != 1:
            return None
        clusters = [c for c in self.store.pfo(common_muon_pfos[0]).clusters_in_view(view) if self.store.alive(c)]
        if len(clusters) != 1:
            return None
        return clusters[0]

    # ---------------------------------------------------------------- updates
    def update_for_new_clusters(self, cluster_ids: Sequence[int], pfo_ids: Sequence[Optional[int]]) -> None:
        r"""
        Index new or changed clusters and compute their tensor elements.

        Parameters
        ----------
        cluster_ids : sequence of int
            Clusters created or modified by the last mutation.
        pfo_ids : sequence of int or None
            Owning muon pfo per cluster (``None`` for candidate clusters).
        """
        if len(cluster_ids) != len(pfo_ids):
            raise InvalidParameterError("cluster_ids and pfo_ids must have the same length")
        pairs = [(c, p) for c, p in zip(cluster_ids, pfo_ids) if self.store.alive(c)]
        for cid, pfo in pairs:
            self._register_cluster(cid)
            if pfo is not None:
                self._cluster_to_pfo[cid] = pfo
        for cid, _ in pairs:
            self._update_proximity(cid)
        for cid, pfo in pairs:
            if pfo is not None or not self.store.is_available(cid):
                continue
            view = self._cluster_view[cid]
            if self.store.cluster(cid).n_hits < self.min_cluster_calo_hits:
                self._stray_clusters[view][cid] = None
                continue
            self._input_clusters[view][cid] = None
            self._add_overlaps(cid, view)

    def _add_overlaps(self, cluster_id: int, view: View) -> None:
        o1, o2 = view.others()
        for a in self.get_input_clusters(o1):
            for b in self.get_input_clusters(o2):
                key = {view: cluster_id, o1: a, o2: b}
                self._calculate_and_store(key[View.U], key[View.V], key[View.W])

    def update_upon_deletion(self, cluster_id: int) -> None:
        r"""
        Forget ``cluster_id`` before it is deleted, merged away or modified.

        Its hits leave the hit maps, it leaves the proximity, muon and
        input/stray lists, and every tensor element referencing it is purged.
        """
        view = self._cluster_view.pop(cluster_id, None)
        if view is None:
            return
        hit_map = self._hit_to_cluster[view]
        for hid in [h for h, c in hit_map.items() if c == cluster_id]:
            del hit_map[hid]
        self._kd_trees[view] = None
        for n in self._proximity.pop(cluster_id, ()):
            self._proximity.get(n, set()).discard(cluster_id)
        self._cluster_to_pfo.pop(cluster_id, None)
        self._input_clusters[view].pop(cluster_id, None)
        self._stray_clusters[view].pop(cluster_id, None)
        self._tensor.remove_cluster(cluster_id)

    def _remove_from_matching(self, cluster_id: int) -> None:
        view = self._cluster_view.get(cluster_id)
        if view is not None:
            self._input_clusters[view].pop(cluster_id, None)
            self._stray_clusters[view].pop(cluster_id, None)
        self._tensor.remove_cluster(cluster_id)

    # ------------------------------------------------------------ tool hooks
    def get_connected_elements(
        self, key_cluster: int, ignore_unavailable: bool, checked_clusters: Set[int]
    ) -> List[Element]:
        return self._tensor.get_connected_elements(
            key_cluster, ignore_unavailable, checked_clusters, self.store.is_available
        )

    def get_sorted_key_clusters(self) -> List[int]:
        return self._tensor.get_sorted_key_clusters(lambda c: sort_by_n_hits(self.store.cluster(c)))

    # ------------------------------------------------------------ pfo output
    def create_pfos(self, proto_particles: Iterable[ProtoParticle]) -> bool:
        r"""
        Turn proto particles into delta-ray pfos.

        Protos are handled largest first. Stray clusters lying within the
        longest drift span of a proto and close to one of its clusters are
        merged into that cluster before the pfo is made. Each pfo is attached
        to its parent muon and its clusters leave the tensor.

        Returns
        -------
        bool
            ``True`` if at least one pfo was created.
        """
        protos = sorted(
            proto_particles, key=lambda p: -sum(self.store.cluster(c).n_hits for c in p.clusters)
        )
        if not protos:
            return False
        for proto in protos:
            spans = [get_cluster_span_x(self.store.cluster(c)) for c in proto.clusters]
            x_min, x_max = max(spans, key=lambda s: s[1] - s[0])
            for cid in proto.clusters:
                strays = self.collect_stray_clusters(cid, x_min, x_max)
                if strays:
                    self.add_in_stray_clusters(cid, strays)
        for proto in protos:
            for cid in proto.clusters:
                self._remove_from_matching(cid)
            pid = self.store.create_pfo(
                list(proto.clusters), self.delta_ray_pfo_list_name, self.delta_ray_pdg, parent=proto.parent_pfo
            )
            self.log.debug("Created delta-ray pfo %d from clusters %s (parent %s)", pid, proto.clusters, proto.parent_pfo)
        return True

    def collect_stray_clusters(self, cluster_id: int, x_min: float, x_max: float) -> List[int]:
        view = self._cluster_view.get(cluster_id, self.store.cluster(cluster_id).view)
        cluster = self.store.cluster(cluster_id)
        collected = []
        for sid in self.get_stray_clusters(view):
            if sid == cluster_id or not self.store.is_available(sid):
                continue
            s_min, s_max = get_cluster_span_x(self.store.cluster(sid))
            if s_min < x_min or s_max > x_max:
                continue
            if get_closest_distance(self.store.cluster(sid), cluster) < self.stray_cluster_separation:
                collected.append(sid)
        return collected

    def add_in_stray_clusters(self, cluster_id: int, stray_ids: Sequence[int]) -> None:
        view = self.store.cluster(cluster_id).view
        self.update_upon_deletion(cluster_id)
        for sid in stray_ids:
            self.update_upon_deletion(sid)
        self.store.replace_current_list(self.cluster_list_name(view))
        for sid in stray_ids:
            self.store.merge_and_delete_clusters(cluster_id, sid)
        self.update_for_new_clusters([cluster_id], [None])
