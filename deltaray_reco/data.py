from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .event_store import EventStore, cluster_list_name, hit_list_name
from .objects import Hit, View, VIEWS

__all__ = [
    "MUON_PFO_LIST", "INPUT_PFO_LIST", "HIT_COLUMNS", "PFO_COLUMNS", "PARTITION_COLUMNS",
    "read_hits", "read_pfos", "iter_events", "build_event_store", "partition_frame", "write_partition",
]

logger = logging.getLogger(__name__)

MUON_PFO_LIST = "MuonPfos"
INPUT_PFO_LIST = "InputPfos"

HIT_COLUMNS = ("event_id", "hit_id", "view", "x", "z")
HIT_DEFAULTS = {"energy": 0.0, "cell_width": 0.5, "x0": 0.0, "cluster_id": -1, "pfo_id": -1}
PFO_COLUMNS = ("event_id", "pfo_id", "pdg", "parent_id")
PARTITION_COLUMNS = ("event_id", "hit_id", "view", "cluster", "pfo", "pfo_list", "pdg", "parent_pfo")


def _require_columns(df: pd.DataFrame, columns: Iterable[str], what: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing column(s): {', '.join(missing)}")


def read_hits(path) -> pd.DataFrame:
    r"""
    Read a hits CSV and fill the optional columns.

    Required columns are ``event_id, hit_id, view, x, z``. Missing optional
    columns get their defaults (``energy=0``, ``cell_width=0.5``, ``x0=0``,
    ``cluster_id=-1``, ``pfo_id=-1``).

    Raises
    ------
    ValueError
        If a required column is missing.
    """
    df = pd.read_csv(path)
    _require_columns(df, HIT_COLUMNS, "Hits")
    for col, default in HIT_DEFAULTS.items():
        if col not in df.columns:
            df[col] = default
    df["view"] = df["view"].astype(str).str.strip().str.upper()
    df = df.astype({"event_id": np.int64, "hit_id": np.int64, "cluster_id": np.int64, "pfo_id": np.int64})
    logger.debug("Read %d hits from %s", len(df), path)
    return df


def read_pfos(path) -> pd.DataFrame:
    """Read a pfo CSV (``event_id, pfo_id, pdg, parent_id``; ``parent_id=-1`` for none)."""
    df = pd.read_csv(path)
    _require_columns(df, PFO_COLUMNS, "Pfo")
    return df.astype({"event_id": np.int64, "pfo_id": np.int64, "pdg": np.int64, "parent_id": np.int64})


def iter_events(
    hits: pd.DataFrame,
    pfos: Optional[pd.DataFrame] = None,
    n_events: Optional[int] = None,
) -> Iterator[Tuple[int, pd.DataFrame, Optional[pd.DataFrame]]]:
    r"""
    Yield ``(event_id, hits, pfos)`` per event in increasing ``event_id`` order.

    Parameters
    ----------
    hits : DataFrame
        All hits, as returned by :func:`read_hits`.
    pfos : DataFrame, optional
        All pfos; events without pfos get an empty frame.
    n_events : int, optional
        Stop after this many events.
    """
    pfo_groups: Dict[int, pd.DataFrame] = {}
    if pfos is not None:
        pfo_groups = {int(k): g for k, g in pfos.groupby("event_id", sort=True)}
    for i, (event_id, group) in enumerate(hits.groupby("event_id", sort=True)):
        if n_events is not None and i >= n_events:
            return
        event_pfos = None
        if pfos is not None:
            event_pfos = pfo_groups.get(int(event_id), pfos.iloc[0:0])
        yield int(event_id), group, event_pfos


def _pfo_creation_order(pfo_rows: Mapping[int, Tuple[int, int]]) -> list:
    """Pfo ids ordered so that every parent comes before its daughters."""
    order, placed = [], set()
    pending = sorted(pfo_rows)
    while pending:
        progressed = False
        rest = []
        for pid in pending:
            parent = pfo_rows[pid][1]
            if parent < 0 or parent in placed or parent not in pfo_rows:
                order.append(pid)
                placed.add(pid)
                progressed = True
            else:
                rest.append(pid)
        if not progressed:
            raise ValueError(f"Cyclic pfo hierarchy among pfo ids {rest}")
        pending = rest
    return order


def build_event_store(
    hits: pd.DataFrame,
    pfos: Optional[pd.DataFrame] = None,
    clustering_algorithms: Optional[Mapping[str, object]] = None,
) -> EventStore:
    r"""
    Populate an :class:`EventStore` from one event's tables.

    - every row becomes a :class:`~deltaray_reco.objects.Hit`;
    - hits sharing a ``cluster_id >= 0`` form one cluster per view, created
      in the view's cluster list;
    - each ``pfo_id >= 0`` referenced by a hit becomes a pfo owning the
      clusters of its hits. Pfos with ``|pdg| == 13`` go to
      :data:`MUON_PFO_LIST`, the others to :data:`INPUT_PFO_LIST`. Without a pfo
      table every referenced pfo is taken to be a muon.

    Raises
    ------
    ValueError
        If a hit carries a ``pfo_id`` but no ``cluster_id``, or if the pfo
        hierarchy is cyclic.
    """
    _require_columns(hits, HIT_COLUMNS, "Hits")
    hits = hits.copy()
    for col, default in HIT_DEFAULTS.items():
        if col not in hits.columns:
            hits[col] = default
    hits = hits.sort_values("hit_id", kind="stable")

    store = EventStore(clustering_algorithms)
    store.add_hits(
        Hit(
            hit_id=int(r.hit_id),
            view=View.parse(r.view),
            x=float(r.x),
            z=float(r.z),
            energy=float(r.energy),
            cell_width=float(r.cell_width),
            x0=float(r.x0),
        )
        for r in hits.itertuples(index=False)
    )

    orphan = hits[(hits["pfo_id"] >= 0) & (hits["cluster_id"] < 0)]
    if len(orphan):
        raise ValueError(f"{len(orphan)} hit(s) belong to a pfo but to no cluster, e.g. hit {int(orphan['hit_id'].iloc[0])}")

    clustered = hits[hits["cluster_id"] >= 0]
    pfo_clusters: Dict[int, list] = {}
    for (cluster_id, view), group in clustered.groupby(["cluster_id", "view"], sort=True):
        store.replace_current_list(cluster_list_name(View.parse(view)))
        handle = store.create_cluster(int(h) for h in group["hit_id"])
        pfo_ids = group["pfo_id"].unique()
        pfo_id = int(pfo_ids.max())
        if len(pfo_ids) > 1:
            logger.warning("Cluster %d (%s) spans pfos %s; assigning it to %d", cluster_id, view, list(pfo_ids), pfo_id)
        if pfo_id >= 0:
            pfo_clusters.setdefault(pfo_id, []).append(handle)

    if pfos is not None and len(pfos):
        rows = {int(r.pfo_id): (int(r.pdg), int(r.parent_id)) for r in pfos.itertuples(index=False)}
    else:
        rows = {pid: (13, -1) for pid in pfo_clusters}
    handles: Dict[int, int] = {}
    for pid in _pfo_creation_order(rows):
        pdg, parent = rows[pid]
        list_name = MUON_PFO_LIST if abs(pdg) == 13 else INPUT_PFO_LIST
        handles[pid] = store.create_pfo(pfo_clusters.get(pid, []), list_name, pdg, handles.get(parent))

    logger.debug(
        "Built event store: %d hits, %d clusters, %d pfos",
        len(hits), sum(len(store.get_list(cluster_list_name(v))) for v in VIEWS), len(handles),
    )
    return store


def partition_frame(store: EventStore, event_id: int) -> pd.DataFrame:
    r"""
    Flatten the final hit partition of one event.

    Returns
    -------
    DataFrame
        One row per hit with :data:`PARTITION_COLUMNS`; unclustered hits get
        ``cluster=-1``, hits outside pfos ``pfo=-1``, ``pfo_list=""``,
        ``pdg=0`` and ``parent_pfo=-1``.
    """
    records = []
    for view in VIEWS:
        for hit in store.get_hit_list(hit_list_name(view)):
            cluster = store.owner_of(hit)
            pfo_id = store.pfo_of_cluster(cluster) if cluster is not None else None
            pfo = store.pfo(pfo_id) if pfo_id is not None else None
            records.append((
                event_id,
                hit.hit_id,
                view.name,
                -1 if cluster is None else cluster,
                -1 if pfo is None else pfo.pfo_id,
                "" if pfo is None else pfo.list_name,
                0 if pfo is None else pfo.pdg,
                -1 if pfo is None or pfo.parent is None else pfo.parent,
            ))
    df = pd.DataFrame.from_records(records, columns=list(PARTITION_COLUMNS))
    return df.sort_values(["event_id", "hit_id"], kind="stable").reset_index(drop=True)


def write_partition(frames: Iterable[pd.DataFrame], path) -> pd.DataFrame:
    """Concatenate per-event partitions, sort by ``(event_id, hit_id)`` and write a CSV."""
    frames = list(frames)
    if frames:
        out = pd.concat(frames, ignore_index=True)
    else:
        out = pd.DataFrame(columns=list(PARTITION_COLUMNS))
    out = out.sort_values(["event_id", "hit_id"], kind="stable").reset_index(drop=True)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    out.to_csv(path, index=False)
    logger.info("Wrote %d partition rows to %s", len(out), path)
    return out
