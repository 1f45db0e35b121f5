from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Union

from .exceptions import TransactionError
from .objects import Cluster, Hit, Pfo, View, VIEWS

__all__ = ["EventStore", "Fragmentation", "cluster_list_name", "hit_list_name"]

logger = logging.getLogger(__name__)

HitLike = Union[Hit, int]


def cluster_list_name(view: View) -> str:
    return f"Clusters{view.name}"


def hit_list_name(view: View) -> str:
    return f"CaloHitList{view.name}"


@dataclass(slots=True)
class Fragmentation:
    r"""
    Open fragmentation transaction.

    Attributes
    ----------
    originals : list[int]
        Handles of the clusters being broken up. They are detached from their
        list for the duration of the transaction and tombstoned at the end.
    pending : set[int]
        Ids of hits taken from the originals and not yet reassigned.
    created : list[int]
        Handles of the clusters created inside the transaction.
    original_hits : dict[int, list[Hit]]
        Hits each original held when the transaction opened, for rollback.
    """
    originals: List[int]
    pending: Set[int] = field(default_factory=set)
    created: List[int] = field(default_factory=list)
    original_hits: Dict[int, List[Hit]] = field(default_factory=dict)
    store: Optional["EventStore"] = None

    def create(self, hits: Iterable[HitLike]) -> int:
        """Create a fragment cluster in the store's current list."""
        return self.store.create_cluster(hits)

    def add(self, cluster_id: int, hit: HitLike) -> None:
        """Move an in-transit hit into an existing cluster."""
        self.store.add_to_cluster(cluster_id, hit)

    def add_or_create(self, cluster_id: Optional[int], hit: HitLike) -> int:
        if cluster_id is None:
            return self.create([hit])
        self.add(cluster_id, hit)
        return cluster_id


class EventStore:
    r"""
    Arena that owns every hit, cluster and pfo of one event.

    Objects are addressed by integer handles that are handed out in increasing
    order and never reused, so a stale handle can always be told apart from a
    live one. Hits are registered once and never copied; the store keeps the
    single ``hit -> cluster`` ownership map that every mutation goes through.

    List model
    ----------
    Clusters live in named lists (``ClustersU``, ``ClustersV``, ``ClustersW`` by
    default) and pfos in named pfo lists. Mutating calls act on the *current*
    cluster list, selected with :meth:`replace_current_list`; asking to mutate
    a cluster that is not in the current list is refused with
    :class:`~deltaray_reco.exceptions.TransactionError`.

    Ownership rules
    ---------------
    - a hit belongs to at most one cluster;
    - a cluster belongs to exactly one view and one list;
    - a cluster owned by a pfo is *unavailable*: it can still be enlarged but
      it can no longer be deleted, merged away or fragmented.

    Parameters
    ----------
    clustering_algorithms : mapping[str, object], optional
        Named reclustering routines for :meth:`run_clustering_algorithm`. Each
        must expose ``run(hits) -> list[list[Hit]]``.
    """

    __slots__ = (
        "_hits", "_hit_owner", "_hit_lists", "_clusters", "_cluster_list_of",
        "_cluster_lists", "_pfos", "_pfo_lists", "_pfo_of_cluster",
        "_current_list", "_current_hit_list", "_next_cluster_id", "_next_pfo_id",
        "_fragmentation", "_in_transit", "clustering_algorithms",
    )

    def __init__(self, clustering_algorithms: Optional[Mapping[str, object]] = None) -> None:
        self._hits: Dict[int, Hit] = {}
        self._hit_owner: Dict[int, int] = {}
        self._hit_lists: Dict[str, List[int]] = {hit_list_name(v): [] for v in VIEWS}
        self._clusters: Dict[int, Cluster] = {}
        self._cluster_list_of: Dict[int, str] = {}
        # dicts used as insertion-ordered sets
        self._cluster_lists: Dict[str, Dict[int, None]] = {cluster_list_name(v): {} for v in VIEWS}
        self._pfos: Dict[int, Pfo] = {}
        self._pfo_lists: Dict[str, Dict[int, None]] = {}
        self._pfo_of_cluster: Dict[int, int] = {}
        self._current_list = cluster_list_name(View.W)
        self._current_hit_list = hit_list_name(View.W)
        self._next_cluster_id = 0
        self._next_pfo_id = 0
        self._fragmentation: Optional[Fragmentation] = None
        self._in_transit: Set[int] = set()
        self.clustering_algorithms: Dict[str, object] = dict(clustering_algorithms or {})

    # ------------------------------------------------------------------ hits
    def add_hits(self, hits: Iterable[Hit]) -> None:
        r"""
        Register input hits in the hit list of their view.

        Raises
        ------
        TransactionError
            If a hit id is registered twice.
        """
        for h in hits:
            if h.hit_id in self._hits:
                raise TransactionError(f"Hit {h.hit_id} registered twice")
            self._hits[h.hit_id] = h
            self._hit_lists[hit_list_name(h.view)].append(h.hit_id)

    def hit(self, hit_id: int) -> Hit:
        try:
            return self._hits[hit_id]
        except KeyError:
            raise TransactionError(f"Unknown hit {hit_id}") from None

    def get_hit_list(self, name: str) -> List[Hit]:
        if name not in self._hit_lists:
            raise TransactionError(f"Unknown hit list '{name}'")
        return [self._hits[i] for i in self._hit_lists[name]]

    def owner_of(self, hit: HitLike) -> Optional[int]:
        """Handle of the cluster owning ``hit``, or ``None`` for a free hit."""
        return self._hit_owner.get(self._hit_id(hit))

    def replace_current_hit_list(self, name: str) -> None:
        if name not in self._hit_lists:
            raise TransactionError(f"Unknown hit list '{name}'")
        self._current_hit_list = name

    @property
    def current_hit_list_name(self) -> str:
        return self._current_hit_list

    # -------------------------------------------------------------- clusters
    def __contains__(self, cluster_id: object) -> bool:
        return cluster_id in self._clusters

    def alive(self, cluster_id: int) -> bool:
        return cluster_id in self._clusters

    def cluster(self, cluster_id: int) -> Cluster:
        try:
            return self._clusters[cluster_id]
        except KeyError:
            raise TransactionError(f"Cluster {cluster_id} does not exist") from None

    def is_available(self, cluster_id: int) -> bool:
        c = self._clusters.get(cluster_id)
        return c is not None and c.available

    @property
    def current_list_name(self) -> str:
        return self._current_list

    @property
    def cluster_list_names(self) -> List[str]:
        return list(self._cluster_lists)

    def replace_current_list(self, name: str) -> None:
        if name not in self._cluster_lists:
            raise TransactionError(f"Unknown cluster list '{name}'")
        self._current_list = name

    def get_list(self, name: str) -> List[int]:
        if name not in self._cluster_lists:
            raise TransactionError(f"Unknown cluster list '{name}'")
        return list(self._cluster_lists[name])

    def get_current_list(self) -> List[int]:
        return list(self._cluster_lists[self._current_list])

    def list_of(self, cluster_id: int) -> str:
        return self._cluster_list_of[cluster_id]

    def _hit_id(self, hit: HitLike) -> int:
        return hit.hit_id if isinstance(hit, Hit) else int(hit)

    def _check_in_current_list(self, cluster_id: int) -> Cluster:
        cluster = self.cluster(cluster_id)
        if self._fragmentation is not None and cluster_id in self._fragmentation.originals:
            raise TransactionError(f"Cluster {cluster_id} is being fragmented")
        if self._cluster_list_of[cluster_id] != self._current_list:
            raise TransactionError(
                f"Cluster {cluster_id} is in '{self._cluster_list_of[cluster_id]}', "
                f"not in the current list '{self._current_list}'"
            )
        return cluster

    def _list_view(self, name: str) -> View:
        for v in VIEWS:
            if name == cluster_list_name(v):
                return v
        raise TransactionError(f"Cluster list '{name}' has no view")

    def _claim(self, hit_id: int, view: View) -> Hit:
        h = self.hit(hit_id)
        if h.view is not view:
            raise TransactionError(f"Hit {hit_id} is in view {h.view.name}, cluster is {view.name}")
        if hit_id in self._hit_owner:
            raise TransactionError(f"Hit {hit_id} already belongs to cluster {self._hit_owner[hit_id]}")
        self._in_transit.discard(hit_id)
        if self._fragmentation is not None:
            self._fragmentation.pending.discard(hit_id)
        return h

    def create_cluster(self, hits: Iterable[HitLike]) -> int:
        r"""
        Create a cluster in the current list from free hits.

        Returns
        -------
        int
            Handle of the new cluster.

        Raises
        ------
        TransactionError
            If the hit set is empty, mixes views or contains owned hits.
        """
        view = self._list_view(self._current_list)
        ids = [self._hit_id(h) for h in hits]
        if not ids:
            raise TransactionError("Cannot create an empty cluster")
        if len(set(ids)) != len(ids):
            raise TransactionError("Duplicate hits in cluster creation request")
        claimed = [self._claim(i, view) for i in ids]
        cid = self._next_cluster_id
        self._next_cluster_id += 1
        cluster = Cluster(cid, view, claimed)
        self._clusters[cid] = cluster
        self._cluster_list_of[cid] = self._current_list
        self._cluster_lists[self._current_list][cid] = None
        for i in ids:
            self._hit_owner[i] = cid
        if self._fragmentation is not None:
            self._fragmentation.created.append(cid)
        return cid

    def add_to_cluster(self, cluster_id: int, hit: HitLike) -> None:
        cluster = self._check_in_current_list(cluster_id)
        hid = self._hit_id(hit)
        h = self._claim(hid, cluster.view)
        cluster._add(h)
        self._hit_owner[hid] = cluster_id

    def merge_and_delete_clusters(self, enlarge: int, delete: int) -> None:
        r"""
        Move every hit of ``delete`` into ``enlarge`` and tombstone ``delete``.

        Both clusters must be in the current list; ``delete`` must be available.
        """
        if enlarge == delete:
            raise TransactionError(f"Cannot merge cluster {enlarge} with itself")
        target = self._check_in_current_list(enlarge)
        source = self._check_in_current_list(delete)
        if not source.available:
            raise TransactionError(f"Cluster {delete} is owned by a pfo and cannot be merged away")
        for h in source._clear():
            target._add(h)
            self._hit_owner[h.hit_id] = enlarge
        self._tombstone(delete)

    def delete_cluster(self, cluster_id: int) -> None:
        """Delete an available cluster; its hits become free."""
        cluster = self._check_in_current_list(cluster_id)
        if not cluster.available:
            raise TransactionError(f"Cluster {cluster_id} is owned by a pfo and cannot be deleted")
        for h in cluster._clear():
            del self._hit_owner[h.hit_id]
        self._tombstone(cluster_id)

    def _tombstone(self, cluster_id: int) -> None:
        name = self._cluster_list_of.pop(cluster_id)
        self._cluster_lists[name].pop(cluster_id, None)
        del self._clusters[cluster_id]

    # --------------------------------------------------------- fragmentation
    def initialize_fragmentation(self, cluster_ids: Sequence[int]) -> Fragmentation:
        r"""
        Open a fragmentation transaction over ``cluster_ids``.

        Every hit of the original clusters is released and marked *in transit*;
        the caller must place each of them into exactly one cluster (new or
        existing, same view) before :meth:`end_fragmentation`.

        Raises
        ------
        TransactionError
            On nested fragmentation, unknown/unavailable clusters, or clusters
            outside the current list.
        """
        if self._fragmentation is not None:
            raise TransactionError("A fragmentation is already in progress")
        originals = list(dict.fromkeys(int(c) for c in cluster_ids))
        if not originals:
            raise TransactionError("Fragmentation needs at least one cluster")
        for cid in originals:
            c = self._check_in_current_list(cid)
            if not c.available:
                raise TransactionError(f"Cluster {cid} is owned by a pfo and cannot be fragmented")
        frag = Fragmentation(originals=originals, store=self)
        for cid in originals:
            frag.original_hits[cid] = self._clusters[cid]._clear()
            for h in frag.original_hits[cid]:
                del self._hit_owner[h.hit_id]
                frag.pending.add(h.hit_id)
                self._in_transit.add(h.hit_id)
            self._cluster_lists[self._cluster_list_of[cid]].pop(cid, None)
        self._fragmentation = frag
        return frag

    def end_fragmentation(self, frag: Fragmentation) -> List[int]:
        r"""
        Close the transaction and tombstone the original clusters.

        Returns
        -------
        list of int
            Handles of the clusters created inside the transaction that are
            still alive.

        Raises
        ------
        TransactionError
            If ``frag`` is not the open transaction or some hits were never
            reassigned (the partition would lose hits).
        """
        if frag is not self._fragmentation:
            raise TransactionError("Fragmentation handle does not match the open transaction")
        if frag.pending:
            raise TransactionError(
                f"Fragmentation left {len(frag.pending)} hit(s) unassigned: {sorted(frag.pending)[:5]}"
            )
        for cid in frag.originals:
            self._cluster_list_of.pop(cid, None)
            self._clusters.pop(cid, None)
        self._fragmentation = None
        return [c for c in frag.created if c in self._clusters]

    def abort_fragmentation(self, frag: Fragmentation) -> None:
        r"""
        Roll back the open transaction.

        Clusters created inside it are deleted (their hits become free) and
        every original gets its hits back, wherever they had been placed.

        Raises
        ------
        TransactionError
            If ``frag`` is not the open transaction.
        """
        if frag is not self._fragmentation:
            raise TransactionError("Fragmentation handle does not match the open transaction")
        for cid in frag.created:
            cluster = self._clusters.get(cid)
            if cluster is None:
                continue
            for h in cluster._clear():
                del self._hit_owner[h.hit_id]
            self._tombstone(cid)
        for cid, hits in frag.original_hits.items():
            cluster = self._clusters[cid]
            for h in hits:
                owner = self._hit_owner.pop(h.hit_id, None)
                if owner is not None:
                    self._clusters[owner]._remove(h)
                cluster._add(h)
                self._hit_owner[h.hit_id] = cid
                self._in_transit.discard(h.hit_id)
            self._cluster_lists[self._cluster_list_of[cid]][cid] = None
        self._fragmentation = None
        logger.debug("Rolled back fragmentation of clusters %s", frag.originals)

    @contextmanager
    def fragmentation(self, cluster_ids: Sequence[int]) -> Iterator[Fragmentation]:
        r"""
        ``with store.fragmentation([cid]) as frag: ...`` around initialize/end.

        If the body or the closing :meth:`end_fragmentation` raises, the
        transaction is rolled back with :meth:`abort_fragmentation` and the
        error propagates.
        """
        frag = self.initialize_fragmentation(cluster_ids)
        try:
            yield frag
            self.end_fragmentation(frag)
        finally:
            if self._fragmentation is frag:
                self.abort_fragmentation(frag)

    def run_clustering_algorithm(self, name: str, hits: Sequence[HitLike]) -> List[int]:
        r"""
        Recluster free hits with the registered algorithm ``name``.

        The resulting clusters are created in the current list.

        Returns
        -------
        list of int
            Handles of the new clusters, in the algorithm's output order.
        """
        try:
            algorithm = self.clustering_algorithms[name]
        except KeyError:
            raise TransactionError(f"No clustering algorithm registered as '{name}'") from None
        hit_objs = [self.hit(self._hit_id(h)) for h in hits]
        for h in hit_objs:
            if h.hit_id in self._hit_owner:
                raise TransactionError(f"Hit {h.hit_id} is owned by cluster {self._hit_owner[h.hit_id]}")
        new_ids = [self.create_cluster(group) for group in algorithm.run(hit_objs) if group]
        logger.debug("Reclustered %d hits into %d clusters with '%s'", len(hit_objs), len(new_ids), name)
        return new_ids

    # ------------------------------------------------------------------ pfos
    def pfo(self, pfo_id: int) -> Pfo:
        try:
            return self._pfos[pfo_id]
        except KeyError:
            raise TransactionError(f"Pfo {pfo_id} does not exist") from None

    def get_pfo_list(self, name: str) -> List[int]:
        return list(self._pfo_lists.get(name, ()))

    @property
    def pfo_list_names(self) -> List[str]:
        return list(self._pfo_lists)

    def pfo_of_cluster(self, cluster_id: int) -> Optional[int]:
        return self._pfo_of_cluster.get(cluster_id)

    def create_pfo(
        self,
        cluster_ids: Sequence[int],
        list_name: str,
        pdg: int,
        parent: Optional[int] = None,
    ) -> int:
        r"""
        Create a pfo owning ``cluster_ids`` and append it to ``list_name``.

        The clusters become unavailable. If ``parent`` is given the new pfo is
        linked as its daughter.
        """
        clusters: Dict[View, List[int]] = {}
        for cid in cluster_ids:
            c = self.cluster(cid)
            if not c.available:
                raise TransactionError(f"Cluster {cid} is already owned by pfo {self._pfo_of_cluster.get(cid)}")
            clusters.setdefault(c.view, []).append(cid)
        if parent is not None and parent not in self._pfos:
            raise TransactionError(f"Parent pfo {parent} does not exist")
        pid = self._next_pfo_id
        self._next_pfo_id += 1
        for cid in cluster_ids:
            self._clusters[cid].available = False
            self._pfo_of_cluster[cid] = pid
        self._pfos[pid] = Pfo(pfo_id=pid, pdg=int(pdg), clusters=clusters, parent=parent, list_name=list_name)
        self._pfo_lists.setdefault(list_name, {})[pid] = None
        if parent is not None:
            self._pfos[parent].daughters.append(pid)
        return pid

    def add_cluster_to_pfo(self, pfo_id: int, cluster_id: int) -> None:
        pfo = self.pfo(pfo_id)
        c = self.cluster(cluster_id)
        if not c.available:
            raise TransactionError(f"Cluster {cluster_id} is already owned by a pfo")
        c.available = False
        self._pfo_of_cluster[cluster_id] = pfo_id
        pfo.clusters.setdefault(c.view, []).append(cluster_id)
