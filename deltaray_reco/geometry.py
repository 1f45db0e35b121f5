from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .exceptions import InvalidParameterError
from .objects import View, VIEWS

__all__ = ["TPCVolume", "DetectorGeometry"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TPCVolume:
    r"""
    One drift volume.

    Attributes
    ----------
    center_x : float
        Drift-axis centre (cm).
    width_x : float
        Full drift-axis width (cm).
    drift_positive : bool
        ``True`` when electrons drift towards increasing ``x``. The cathode
        then sits at the low-``x`` edge, otherwise at the high-``x`` edge.
    """
    center_x: float
    width_x: float
    drift_positive: bool = True

    @property
    def min_x(self) -> float:
        return self.center_x - 0.5 * self.width_x

    @property
    def max_x(self) -> float:
        return self.center_x + 0.5 * self.width_x


class DetectorGeometry:
    r"""
    Wire-plane and drift-volume description used by the reconstruction.

    View coordinates
    ----------------
    A view with wire angle :math:`\theta` measures the transverse coordinate

    .. math::
        p_\theta(y, z) = z\cos\theta - y\sin\theta ,

    and shares the drift coordinate :math:`x` with the other views. Two
    measurements in different views fix :math:`(y, z)` and hence the position
    expected in the third view (:meth:`merge_two_positions`).

    Parameters
    ----------
    wire_angles_deg : mapping, optional
        Wire angle per view in degrees (keys ``View`` or ``"U"``/``"V"``/``"W"``).
        Defaults to ``U=+60, V=-60, W=0``.
    wire_pitch : float, optional
        Wire spacing (cm). Also used as the sliding-fit layer pitch and as the
        irreducible position uncertainty in three-view matching.
    tpcs : sequence of TPCVolume, optional
        Drift volumes. Defaults to a single 256 cm volume starting at ``x=0``.
    active_tpc : int, optional
        Index of the volume whose edges bound track extension.
    """

    __slots__ = ("wire_angles", "wire_pitch", "tpcs", "active_tpc")

    def __init__(
        self,
        wire_angles_deg: Optional[Mapping[Any, float]] = None,
        wire_pitch: float = 0.3,
        tpcs: Optional[Sequence[TPCVolume]] = None,
        active_tpc: int = 0,
    ) -> None:
        angles = {View.U: 60.0, View.V: -60.0, View.W: 0.0}
        for k, v in (wire_angles_deg or {}).items():
            angles[View.parse(k)] = float(v)
        self.wire_angles: Dict[View, float] = {k: math.radians(v) for k, v in angles.items()}
        if wire_pitch <= 0.0:
            raise InvalidParameterError(f"wire_pitch must be positive, got {wire_pitch}")
        self.wire_pitch = float(wire_pitch)
        self.tpcs: List[TPCVolume] = list(tpcs) if tpcs else [TPCVolume(128.0, 256.0, True)]
        if not 0 <= active_tpc < len(self.tpcs):
            raise InvalidParameterError(f"active_tpc {active_tpc} out of range for {len(self.tpcs)} volume(s)")
        self.active_tpc = int(active_tpc)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "DetectorGeometry":
        tpcs = [
            TPCVolume(float(t["center_x"]), float(t["width_x"]), bool(t.get("drift_positive", True)))
            for t in cfg.get("tpcs", ())
        ]
        return cls(
            wire_angles_deg=cfg.get("wire_angles_deg"),
            wire_pitch=float(cfg.get("wire_pitch", 0.3)),
            tpcs=tpcs or None,
            active_tpc=int(cfg.get("active_tpc", 0)),
        )

    # ------------------------------------------------------------ projections
    def project(self, view: View, y: float, z: float) -> float:
        """Transverse coordinate of the 3D point ``(y, z)`` in ``view``."""
        theta = self.wire_angles[view]
        return z * math.cos(theta) - y * math.sin(theta)

    def yz_from_two_views(self, view1: View, view2: View, p1: float, p2: float) -> Tuple[float, float]:
        r"""
        Solve :math:`p_{\theta_1}(y,z)=p_1,\ p_{\theta_2}(y,z)=p_2` for :math:`(y, z)`.

        Raises
        ------
        InvalidParameterError
            If the two views are identical or their wires are parallel.
        """
        if view1 is view2:
            raise InvalidParameterError(f"Cannot merge two positions from the same view {view1.name}")
        t1, t2 = self.wire_angles[view1], self.wire_angles[view2]
        det = math.sin(t1 - t2)
        if abs(det) < 1e-9:
            raise InvalidParameterError(f"Views {view1.name} and {view2.name} have parallel wires")
        s1, c1, s2, c2 = math.sin(t1), math.cos(t1), math.sin(t2), math.cos(t2)
        z = (s1 * p2 - s2 * p1) / det
        y = (c1 * p2 - c2 * p1) / det
        return y, z

    def merge_two_positions(self, view1: View, view2: View, p1: float, p2: float) -> float:
        """Transverse coordinate expected in the third view."""
        y, z = self.yz_from_two_views(view1, view2, p1, p2)
        (view3,) = (v for v in VIEWS if v is not view1 and v is not view2)
        return self.project(view3, y, z)

    # -------------------------------------------------------------- volumes
    @property
    def detector_min_x(self) -> float:
        return min(t.min_x for t in self.tpcs)

    @property
    def detector_max_x(self) -> float:
        return max(t.max_x for t in self.tpcs)

    def find_closest_tpc(self, tpc: TPCVolume, check_positive: bool) -> Optional[TPCVolume]:
        r"""
        Nearest neighbouring volume on the requested side of ``tpc``.

        Parameters
        ----------
        tpc : TPCVolume
            Reference volume.
        check_positive : bool
            Look towards increasing ``x`` when ``True``.

        Returns
        -------
        TPCVolume or None
        """
        best: Optional[TPCVolume] = None
        best_dx = math.inf
        for other in self.tpcs:
            if other is tpc:
                continue
            dx = other.center_x - tpc.center_x
            if (dx > 0.0) != check_positive or dx == 0.0:
                continue
            if abs(dx) < best_dx:
                best, best_dx = other, abs(dx)
        return best

    def tpc_edges(self, tpc_index: Optional[int] = None) -> Tuple[float, float]:
        r"""
        Drift-axis edges of a volume, with the cathode edge moved into the gap.

        The cathode side of a volume faces a neighbouring volume across an
        uninstrumented gap; that edge is shifted by half of the gap so that
        tracks crossing the cathode are extrapolated to the gap centre.
        """
        tpc = self.tpcs[self.active_tpc if tpc_index is None else tpc_index]
        lo, hi = tpc.min_x, tpc.max_x
        neighbour = self.find_closest_tpc(tpc, check_positive=not tpc.drift_positive)
        if neighbour is not None:
            gap = abs(neighbour.center_x - tpc.center_x) - 0.5 * (tpc.width_x + neighbour.width_x)
            if tpc.drift_positive:
                lo -= 0.5 * gap
            else:
                hi += 0.5 * gap
        return lo, hi

    def is_detector_edge(self, x: float, tolerance: float = 1e-6) -> bool:
        return abs(x - self.detector_min_x) < tolerance or abs(x - self.detector_max_x) < tolerance
