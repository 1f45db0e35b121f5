from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

__all__ = ["View", "VIEWS", "Hit", "Cluster", "Pfo", "ProtoParticle"]


class View(Enum):
    """Wire-plane view of a 2D hit."""
    U = 0
    V = 1
    W = 2

    @classmethod
    def parse(cls, value) -> "View":
        if isinstance(value, View):
            return value
        if isinstance(value, str):
            return cls[value.strip().upper()]
        return cls(int(value))

    def others(self) -> Tuple["View", "View"]:
        r"""
        The two remaining views, in canonical ``U, V, W`` order.

        Returns
        -------
        tuple of View
        """
        first, second = (v for v in VIEWS if v is not self)
        return first, second


VIEWS: Tuple[View, View, View] = (View.U, View.V, View.W)


@dataclass(frozen=True, slots=True)
class Hit:
    r"""
    Immutable calorimetric measurement in one view.

    Attributes
    ----------
    hit_id : int
        Event-unique identifier.
    view : View
        Wire plane the hit was recorded in.
    x : float
        Drift coordinate (cm) before the ``x0`` correction.
    z : float
        Wire coordinate (cm) in the view's own frame.
    energy : float
        Deposited energy (arbitrary units, only used for ordering).
    cell_width : float
        Extent of the hit along the drift axis. The hit covers
        :math:`[x - w/2,\; x + w/2]`.
    x0 : float
        Drift-time offset added to ``x``.
    """
    hit_id: int
    view: View
    x: float
    z: float
    energy: float = 0.0
    cell_width: float = 0.5
    x0: float = 0.0

    @property
    def position(self) -> np.ndarray:
        """Corrected 2D position ``(x + x0, z)``."""
        return np.array((self.x + self.x0, self.z), dtype=np.float64)

    @property
    def sort_key(self) -> Tuple[float, float, int]:
        return (self.z, self.x + self.x0, self.hit_id)


class Cluster:
    r"""
    Mutable set of hits from a single view.

    Membership is owned by :class:`~deltaray_reco.event_store.EventStore`;
    only the store calls the underscore mutators so that the hit-ownership
    bookkeeping stays in one place. Spatial ordering and the position array
    are derived lazily and dropped on every mutation.
    """

    __slots__ = ("cluster_id", "view", "_hits", "_ordered", "_positions", "available")

    def __init__(self, cluster_id: int, view: View, hits: Iterable[Hit] = ()) -> None:
        self.cluster_id = int(cluster_id)
        self.view = view
        self._hits: Dict[int, Hit] = {}
        self._ordered: Optional[Tuple[Hit, ...]] = None
        self._positions: Optional[np.ndarray] = None
        self.available = True
        for h in hits:
            self._add(h)

    def __repr__(self) -> str:
        return f"Cluster(id={self.cluster_id}, view={self.view.name}, n_hits={len(self._hits)})"

    def __len__(self) -> int:
        return len(self._hits)

    def __contains__(self, hit: object) -> bool:
        if isinstance(hit, Hit):
            return hit.hit_id in self._hits
        return hit in self._hits

    def _add(self, hit: Hit) -> None:
        self._hits[hit.hit_id] = hit
        self._ordered = None
        self._positions = None

    def _remove(self, hit: Hit) -> None:
        del self._hits[hit.hit_id]
        self._ordered = None
        self._positions = None

    def _clear(self) -> List[Hit]:
        hits = list(self._hits.values())
        self._hits.clear()
        self._ordered = None
        self._positions = None
        return hits

    @property
    def n_hits(self) -> int:
        return len(self._hits)

    @property
    def hit_ids(self) -> frozenset:
        return frozenset(self._hits)

    @property
    def ordered_hits(self) -> Tuple[Hit, ...]:
        """Hits sorted by ``(z, x, hit_id)``; the iteration order used everywhere."""
        if self._ordered is None:
            self._ordered = tuple(sorted(self._hits.values(), key=lambda h: h.sort_key))
        return self._ordered

    @property
    def positions(self) -> np.ndarray:
        r"""
        Hit positions as a ``(N, 2)`` ``float64`` array in :attr:`ordered_hits` order.
        """
        if self._positions is None:
            hits = self.ordered_hits
            pos = np.empty((len(hits), 2), dtype=np.float64)
            for i, h in enumerate(hits):
                pos[i, 0] = h.x + h.x0
                pos[i, 1] = h.z
            self._positions = pos
        return self._positions

    @property
    def energy(self) -> float:
        return float(sum(h.energy for h in self._hits.values()))


@dataclass(slots=True)
class Pfo:
    r"""
    Particle-flow object: a particle hypothesis owning clusters in each view.

    Attributes
    ----------
    pfo_id : int
        Store handle.
    pdg : int
        Particle hypothesis code (13 for muons, 11 for delta rays).
    clusters : dict[View, list[int]]
        Cluster handles per view.
    parent : int or None
        Handle of the parent pfo, if any.
    daughters : list[int]
        Handles of daughter pfos, in creation order.
    list_name : str
        Name of the pfo list that holds this pfo.
    """
    pfo_id: int
    pdg: int
    clusters: Dict[View, List[int]] = field(default_factory=dict)
    parent: Optional[int] = None
    daughters: List[int] = field(default_factory=list)
    list_name: str = ""

    def clusters_in_view(self, view: View) -> List[int]:
        return list(self.clusters.get(view, ()))

    @property
    def all_clusters(self) -> List[int]:
        return [c for v in sorted(self.clusters, key=lambda v: v.value) for c in self.clusters[v]]


@dataclass(slots=True)
class ProtoParticle:
    """One cluster per view plus the muon the candidate hangs off."""
    clusters: Tuple[int, ...]
    parent_pfo: Optional[int] = None
