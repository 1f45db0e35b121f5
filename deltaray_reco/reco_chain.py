from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from .event_store import EventStore
from .geometry import DetectorGeometry
from .matching import DeltaRayMatchingAlgorithm
from .tools import build_tools
from .track_extension import TrackExtensionRefinementAlgorithm

__all__ = ["run_event"]

logger = logging.getLogger(__name__)


def run_event(store: EventStore, geometry: DetectorGeometry, config: Mapping[str, Any]) -> Dict[str, int]:
    r"""
    Run the reconstruction stages on one populated event store.

    1. track-extension refinement, unless ``track_extension.enabled`` is false;
    2. delta-ray matching with the tools listed in ``tools.order``.

    A :class:`~deltaray_reco.exceptions.TransactionError` raised by either
    stage propagates to the caller; the store is then in an undefined state
    and the event must be abandoned.

    Returns
    -------
    dict
        ``extended_tracks`` plus the counters of
        :meth:`DeltaRayMatchingAlgorithm.run`.
    """
    stats: Dict[str, int] = {"extended_tracks": 0}

    extension_cfg = dict(config.get("track_extension") or {})
    if extension_cfg.pop("enabled", True):
        stats["extended_tracks"] = TrackExtensionRefinementAlgorithm(store, geometry, **extension_cfg).run()

    tools_cfg = dict(config.get("tools") or {})
    tools = build_tools(tools_cfg.pop("order", None), tools_cfg)
    matching = DeltaRayMatchingAlgorithm(store, geometry, tools, **(config.get("delta_ray_matching") or {}))
    stats.update(matching.run())
    return stats
