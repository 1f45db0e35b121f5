from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

import networkx as nx

from .objects import View

__all__ = ["XOverlap", "OverlapResult", "Element", "OverlapTensor", "ElementKey"]

logger = logging.getLogger(__name__)

ElementKey = Tuple[int, int, int]


@dataclass(frozen=True, slots=True)
class XOverlap:
    r"""
    Drift-coordinate extents of the three clusters and of their common range.

    ``x_overlap_span`` is :math:`\min_v x_{\max,v} - \max_v x_{\min,v}`.
    """
    x_min_u: float
    x_max_u: float
    x_min_v: float
    x_max_v: float
    x_min_w: float
    x_max_w: float
    x_overlap_span: float

    @property
    def x_span_u(self) -> float:
        return self.x_max_u - self.x_min_u

    @property
    def x_span_v(self) -> float:
        return self.x_max_v - self.x_min_v

    @property
    def x_span_w(self) -> float:
        return self.x_max_w - self.x_min_w


@dataclass(frozen=True, slots=True)
class OverlapResult:
    r"""
    Quality of a three-view match.

    Attributes
    ----------
    n_matched_sampling_points : int
        Samples whose pseudo-:math:`\chi^2` passed the cut.
    n_sampling_points : int
        Samples where all three views had hits.
    chi2 : float
        Sum of pseudo-:math:`\chi^2` over the matched samples.
    x_overlap : XOverlap
        Drift extents.
    common_muon_pfos : tuple of int
        Muon pfos found near all three clusters, ascending.
    """
    n_matched_sampling_points: int
    n_sampling_points: int
    chi2: float
    x_overlap: XOverlap
    common_muon_pfos: Tuple[int, ...] = ()

    @property
    def reduced_chi2(self) -> float:
        return self.chi2 / self.n_sampling_points if self.n_sampling_points > 0 else float("inf")

    @property
    def matched_fraction(self) -> float:
        return self.n_matched_sampling_points / self.n_sampling_points if self.n_sampling_points > 0 else 0.0


@dataclass(frozen=True, slots=True)
class Element:
    """One tensor entry: a cluster per view and their overlap result."""
    cluster_u: int
    cluster_v: int
    cluster_w: int
    overlap_result: OverlapResult = field(compare=False)

    @property
    def key(self) -> ElementKey:
        return (self.cluster_u, self.cluster_v, self.cluster_w)

    @property
    def clusters(self) -> ElementKey:
        return self.key

    def cluster(self, view: View) -> int:
        return self.key[view.value]

    @property
    def common_muon_pfos(self) -> Tuple[int, ...]:
        return self.overlap_result.common_muon_pfos


class OverlapTensor:
    r"""
    Sparse map ``(cluster_u, cluster_v, cluster_w) -> OverlapResult``.

    Alongside the entries the tensor keeps an undirected :mod:`networkx`
    graph whose nodes are cluster handles and whose edges join the clusters
    of every element (``u-v``, ``v-w``, ``u-w``). Each edge records the set of
    elements that justify it, so removing an element only drops the edges no
    other element still needs. Elements sharing a cluster in any view are then
    in the same connected component of the graph.
    """

    __slots__ = ("_elements", "_graph")

    def __init__(self) -> None:
        self._elements: Dict[ElementKey, OverlapResult] = {}
        self._graph = nx.Graph()

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, key: object) -> bool:
        return key in self._elements

    def __iter__(self) -> Iterator[Element]:
        for k in sorted(self._elements):
            yield Element(*k, self._elements[k])

    @staticmethod
    def _edges(key: ElementKey):
        u, v, w = key
        return ((u, v), (v, w), (u, w))

    def set_overlap_result(self, u: int, v: int, w: int, result: OverlapResult) -> None:
        key = (u, v, w)
        self._elements[key] = result
        for a, b in self._edges(key):
            if self._graph.has_edge(a, b):
                self._graph[a][b]["elements"].add(key)
            else:
                self._graph.add_edge(a, b, elements={key})

    def get_overlap_result(self, u: int, v: int, w: int) -> Optional[OverlapResult]:
        return self._elements.get((u, v, w))

    def remove_element(self, key: ElementKey) -> None:
        if self._elements.pop(key, None) is None:
            return
        for a, b in self._edges(key):
            refs = self._graph[a][b]["elements"]
            refs.discard(key)
            if not refs:
                self._graph.remove_edge(a, b)
        for n in set(key):
            if n in self._graph and self._graph.degree(n) == 0:
                self._graph.remove_node(n)

    def remove_cluster(self, cluster_id: int) -> int:
        r"""
        Drop every element that references ``cluster_id``.

        Returns
        -------
        int
            Number of elements removed.
        """
        if cluster_id not in self._graph:
            return 0
        keys = {k for _, _, refs in self._graph.edges(cluster_id, data="elements") for k in refs}
        for k in sorted(keys):
            self.remove_element(k)
        return len(keys)

    def clear(self) -> None:
        self._elements.clear()
        self._graph.clear()

    def clusters(self) -> Set[int]:
        return set(self._graph.nodes)

    def get_connected_elements(
        self,
        key_cluster: int,
        ignore_unavailable: bool,
        checked_clusters: Set[int],
        is_available: Optional[Callable[[int], bool]] = None,
    ) -> List[Element]:
        r"""
        All elements transitively linked to ``key_cluster`` by shared clusters.

        Parameters
        ----------
        key_cluster : int
            Start of the traversal.
        ignore_unavailable : bool
            Drop elements with a cluster for which ``is_available`` is false.
        checked_clusters : set of int
            Clusters already explored. Updated in place; a key cluster already
            in the set yields an empty list, so a sweep over all key clusters
            visits every component once.
        is_available : callable, optional
            Availability predicate used with ``ignore_unavailable``.

        Returns
        -------
        list of Element
            Sorted by ``(cluster_u, cluster_v, cluster_w)``.
        """
        if key_cluster in checked_clusters or key_cluster not in self._graph:
            return []
        component = nx.node_connected_component(self._graph, key_cluster)
        checked_clusters.update(component)
        keys = {k for _, _, refs in self._graph.edges(component, data="elements") for k in refs}
        elements = [Element(*k, self._elements[k]) for k in sorted(keys)]
        if ignore_unavailable and is_available is not None:
            elements = [e for e in elements if all(is_available(c) for c in e.clusters)]
        return elements

    def get_sorted_key_clusters(self, sort_key: Optional[Callable[[int], object]] = None) -> List[int]:
        r"""
        Distinct U clusters keying at least one element, in a deterministic order.

        Parameters
        ----------
        sort_key : callable, optional
            Key on cluster handles; ties and the default fall back to the handle.
        """
        keys = {k[0] for k in self._elements}
        if sort_key is None:
            return sorted(keys)
        return sorted(keys, key=lambda c: (sort_key(c), c))
