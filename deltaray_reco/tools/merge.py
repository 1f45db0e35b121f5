from __future__ import annotations

import abc
from typing import List, Optional, Sequence

from ..cluster_helper import distances_to_set, get_closest_distance
from ..objects import Hit, View, VIEWS
from ..overlap_tensor import Element, OverlapTensor
from .tool import TensorTool, ToolKind

__all__ = ["DeltaRayMergeTool", "TwoViewMergeTool", "OneViewMergeTool"]


class DeltaRayMergeTool(TensorTool):
    r"""
    Shared association logic for the delta-ray merge tools.

    Two candidate clusters of the same view, taken from two elements, are
    *associated* when the elements share a muon pfo and either

    - one of them is not touching any shared muon and the two clusters are
      closer than ``max_cluster_separation`` (a clean break), or
    - both touch a shared muon and the muon hits near each cluster are within
      ``max_vertex_separation`` of each other (a break hidden by the track).

    Parameters
    ----------
    max_dr_separation_from_track : float
        Distance (cm) under which a cluster touches the muon.
    max_vertex_separation : float
        Maximum distance (cm) between the touching regions on the muon.
    max_cluster_separation : float
        Maximum gap (cm) for a clean break, compared strictly.
    """

    def __init__(
        self,
        max_dr_separation_from_track: float = 1.5,
        max_vertex_separation: float = 10.0,
        max_cluster_separation: float = 3.0,
    ) -> None:
        super().__init__()
        self.max_dr_separation_from_track = float(max_dr_separation_from_track)
        self.max_vertex_separation = float(max_vertex_separation)
        self.max_cluster_separation = float(max_cluster_separation)

    def apply(self, tensor: OverlapTensor) -> bool:
        changed = False
        while True:
            merged = False
            for elements in self.connected_element_groups():
                if len(elements) < 2:
                    continue
                if self.make_merges(elements):
                    merged = True
                    break
            if not merged:
                return changed
            changed = True

    @abc.abstractmethod
    def make_merges(self, elements: Sequence[Element]) -> bool:
        """Make at most one merge in a connected group; return whether one was made."""

    # ------------------------------------------------------------ association
    def _muon_cluster(self, muon_pfo: int, view: View) -> Optional[int]:
        return self.algorithm.get_muon_cluster((muon_pfo,), view)

    def is_connected(self, muon_pfo: int, cluster_id: int, view: View) -> bool:
        muon = self._muon_cluster(muon_pfo, view)
        if muon is None:
            return False
        distance = get_closest_distance(self.store.cluster(cluster_id), self.store.cluster(muon))
        return distance < self.max_dr_separation_from_track

    def is_broken_cluster(self, cluster_1: int, cluster_2: int) -> bool:
        distance = get_closest_distance(self.store.cluster(cluster_1), self.store.cluster(cluster_2))
        return distance < self.max_cluster_separation

    def is_hidden_track(self, muon_pfo: int, cluster_1: int, cluster_2: int, view: View) -> bool:
        r"""
        Whether the muon hits touching each cluster lie within ``max_vertex_separation``.
        """
        muon_id = self._muon_cluster(muon_pfo, view)
        if muon_id is None:
            return False
        muon = self.store.cluster(muon_id).positions
        near = []
        for cid in (cluster_1, cluster_2):
            d = distances_to_set(muon, self.store.cluster(cid).positions)
            near.append(muon[d < self.max_dr_separation_from_track])
        if near[0].shape[0] == 0 or near[1].shape[0] == 0:
            return False
        return get_closest_distance(near[0], near[1]) < self.max_vertex_separation

    def are_associated(self, element_1: Element, element_2: Element, view: View) -> bool:
        common = [p for p in element_1.common_muon_pfos if p in element_2.common_muon_pfos]
        if not common:
            return False
        cluster_1, cluster_2 = element_1.cluster(view), element_2.cluster(view)
        connected_1 = [p for p in element_1.common_muon_pfos if self.is_connected(p, cluster_1, view)]
        connected_2 = [p for p in element_2.common_muon_pfos if self.is_connected(p, cluster_2, view)]
        if (not connected_1 or not connected_2) and self.is_broken_cluster(cluster_1, cluster_2):
            return True
        for p in connected_1:
            if p in connected_2 and self.is_hidden_track(p, cluster_1, cluster_2, view):
                return True
        return False

    # ----------------------------------------------------------------- merge
    def merge(self, view: View, enlarge: int, delete: int) -> None:
        r"""
        Merge ``delete`` into ``enlarge``: notice both, mutate, re-index the survivor.
        """
        algorithm = self.algorithm
        algorithm.update_upon_deletion(enlarge)
        algorithm.update_upon_deletion(delete)
        self.store.replace_current_list(algorithm.cluster_list_name(view))
        self.store.merge_and_delete_clusters(enlarge, delete)
        algorithm.update_for_new_clusters([enlarge], [None])
        self.log.debug("Merged cluster %d into %d (%s)", delete, enlarge, view.name)


class TwoViewMergeTool(DeltaRayMergeTool):
    r"""
    Merge the third-view clusters of two elements that share two views.
    """

    kind = ToolKind.MERGE_TWO_VIEW

    def make_merges(self, elements: Sequence[Element]) -> bool:
        for i, element_1 in enumerate(elements):
            for element_2 in elements[i + 1:]:
                shared = [v for v in VIEWS if element_1.cluster(v) == element_2.cluster(v)]
                if len(shared) != 2:
                    continue
                (merge_view,) = (v for v in VIEWS if v not in shared)
                if not self.are_associated(element_1, element_2, merge_view):
                    continue
                self.merge(merge_view, element_1.cluster(merge_view), element_2.cluster(merge_view))
                return True
        return False


class OneViewMergeTool(DeltaRayMergeTool):
    r"""
    Merge the two other-view cluster pairs of elements that share one view.

    Both pairs must be associated, and the combined clusters must still match
    the shared cluster with a reduced :math:`\chi^2` below ``max_reduced_chi2``.
    """

    kind = ToolKind.MERGE_ONE_VIEW

    def __init__(self, max_reduced_chi2: float = 1.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.max_reduced_chi2 = float(max_reduced_chi2)

    def make_merges(self, elements: Sequence[Element]) -> bool:
        for i, element_1 in enumerate(elements):
            for element_2 in elements[i + 1:]:
                shared = [v for v in VIEWS if element_1.cluster(v) == element_2.cluster(v)]
                if len(shared) != 1:
                    continue
                view_1, view_2 = shared[0].others()
                if not self.are_associated(element_1, element_2, view_1):
                    continue
                if not self.are_associated(element_1, element_2, view_2):
                    continue
                hits_1 = self._combined_hits(element_1.cluster(view_1), element_2.cluster(view_1))
                hits_2 = self._combined_hits(element_1.cluster(view_2), element_2.cluster(view_2))
                shared_hits = list(self.store.cluster(element_1.cluster(shared[0])).ordered_hits)
                result = self.algorithm.perform_three_view_matching(hits_1, hits_2, shared_hits)
                if result is None or not result.reduced_chi2 < self.max_reduced_chi2:
                    continue
                self.merge(view_1, element_1.cluster(view_1), element_2.cluster(view_1))
                self.merge(view_2, element_1.cluster(view_2), element_2.cluster(view_2))
                return True
        return False

    def _combined_hits(self, cluster_1: int, cluster_2: int) -> List[Hit]:
        return list(self.store.cluster(cluster_1).ordered_hits) + list(self.store.cluster(cluster_2).ordered_hits)
