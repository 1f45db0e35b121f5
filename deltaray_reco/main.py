#!/usr/bin/env python3
r"""
Delta-ray / cosmic-ray separation runner.

Reads a table of 2D hits (and optionally a table of input pfos), then, event
by event,

1. builds an :class:`~deltaray_reco.event_store.EventStore`;
2. extends track clusters to the drift-volume edges;
3. matches delta-ray candidates across the three views and cleans them with
   the configured tensor tools;
4. appends the resulting hit partition to the output table.

An event whose object store refuses a structural mutation is abandoned with
an error message; the remaining events are still processed.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   deltaray-reco --hits hits.csv --pfos pfos.csv --config config.json --output partition.csv
"""

from __future__ import annotations

import argparse
import copy
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, MutableMapping, Optional, Sequence

import numpy as np
import orjson

from .clustering import build_clustering_algorithms
from .data import build_event_store, iter_events, partition_frame, read_hits, read_pfos, write_partition
from .exceptions import TransactionError
from .geometry import DetectorGeometry
from .profiling import prof
from .reco_chain import run_event
from .tools import DEFAULT_TOOL_ORDER

DEFAULT_CONFIG: Dict[str, Any] = {
    "geometry": {
        "wire_angles_deg": {"U": 60.0, "V": -60.0, "W": 0.0},
        "wire_pitch": 0.3,
        "tpcs": [{"center_x": 128.0, "width_x": 256.0, "drift_positive": True}],
        "active_tpc": 0,
    },
    "clustering": {"proximity": {"max_hit_separation": 1.5}},
    "track_extension": {"enabled": True},
    "delta_ray_matching": {},
    "tools": {"order": list(DEFAULT_TOOL_ORDER)},
}


def build_parser() -> argparse.ArgumentParser:
    r"""
    Create the CLI argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Parser with options:

        - ``--hits`` : hits CSV (required).
        - ``--pfos`` : input pfo CSV.
        - ``--config`` : JSON configuration merged over :data:`DEFAULT_CONFIG`.
        - ``--output`` : partition CSV to write.
        - ``--n-events`` : process at most this many events.
        - ``--profile``, ``--profile-out`` : cProfile each event.
        - ``-v/--verbose`` : DEBUG logging.
    """
    p = argparse.ArgumentParser(description="Separate delta rays from cosmic-ray muon tracks.")
    p.add_argument("--hits", type=str, required=True,
                   help="CSV of 2D hits (event_id, hit_id, view, x, z, ...).")
    p.add_argument("--pfos", type=str, default=None,
                   help="CSV of input pfos (event_id, pfo_id, pdg, parent_id).")
    p.add_argument("--config", type=str, default=None,
                   help="JSON config merged over the built-in defaults.")
    p.add_argument("--output", type=str, default="partition.csv",
                   help="Output CSV of the final hit partition (default: partition.csv).")
    p.add_argument("-n", "--n-events", type=int, default=None,
                   help="Process at most N events.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Profile each event with cProfile.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="Append profiling reports to this file instead of logging them.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with
    ``%H:%M:%S`` timestamps, at ``DEBUG`` when ``verbose`` else ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def load_config(config_path: Path) -> MutableMapping[str, Any]:
    r"""
    Load a JSON configuration with :mod:`orjson`.

    Raises
    ------
    ValueError
        If the file cannot be read or parsed.
    """
    try:
        return orjson.loads(Path(config_path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e


def _deep_update(d: dict, u: dict) -> dict:
    r"""
    Recursively merge dictionaries without side effects.

    Nested dicts are merged; any other value in ``u`` replaces the one in ``d``.
    """
    out = dict(d)
    for k, v in u.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_update(out[k], v)
        else:
            out[k] = v
    return out


def resolve_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Defaults, overridden by the file at ``config_path`` when given."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is None:
        return config
    logging.info("Reading config from %s", config_path)
    return _deep_update(config, load_config(Path(config_path)))


def main(argv: Optional[Sequence[str]] = None) -> int:
    r"""
    End-to-end pipeline: **read → build store → extend → match → write**.

    Returns
    -------
    int
        Number of abandoned events.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    config = resolve_config(args.config)
    geometry = DetectorGeometry.from_config(config["geometry"])

    hits = read_hits(args.hits)
    pfos = read_pfos(args.pfos) if args.pfos else None
    logging.info("Read %d hits from %s", len(hits), args.hits)

    frames = []
    failed: List[int] = []
    timings: List[float] = []
    for event_id, event_hits, event_pfos in iter_events(hits, pfos, args.n_events):
        logging.info("=== Event %d: %d hits ===", event_id, len(event_hits))
        t0 = time.time()
        store = build_event_store(event_hits, event_pfos, build_clustering_algorithms(config["clustering"]))
        try:
            with prof(args.profile, out_path=args.profile_out):
                stats = run_event(store, geometry, config)
        except TransactionError as e:
            logging.error("Event %d abandoned: %s", event_id, e)
            failed.append(event_id)
            continue
        timings.append(time.time() - t0)
        for k, v in stats.items():
            logging.info("  %s: %s", k, v)
        frames.append(partition_frame(store, event_id))

    write_partition(frames, args.output)
    if timings:
        logging.info("Processed %d event(s), mean %.3fs per event", len(timings), float(np.mean(timings)))
    if failed:
        logging.warning("Abandoned %d event(s): %s", len(failed), failed)
    return len(failed)


if __name__ == "__main__":
    raise SystemExit(main())
