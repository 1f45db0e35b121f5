from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from .cluster_helper import PointSet, as_positions
from .exceptions import InvalidParameterError

__all__ = ["LayerFitResult", "TwoDSlidingFitResult"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LayerFitResult:
    """Local straight-line fit around one layer: ``T(L) = fit_t + gradient (L - l)``."""
    l: float
    fit_t: float
    gradient: float
    n_points: int


class TwoDSlidingFitResult:
    r"""
    Sliding linear fit of a 2D point set along its principal axis.

    Coordinates
    -----------
    The points are expressed in a local frame with origin at their centroid
    :math:`c`, longitudinal axis :math:`\hat a` (the leading principal
    component, oriented so that :math:`a_z > 0`; or :math:`a_x > 0` for a
    cluster at constant ``z``) and transverse axis
    :math:`\hat n = (-a_z, a_x)`:

    .. math::
        L = (p - c)\cdot\hat a ,\qquad T = \hat a \times (p - c).

    Layers
    ------
    Longitudinal coordinates are binned into layers of width ``layer_pitch``,
    :math:`\ell = \lfloor L / \Delta \rfloor`. For every layer between the
    first and last occupied one, an ordinary least-squares line
    :math:`T = \alpha + \beta L` is fitted to the points of the layers
    :math:`[\ell - w, \ell + w]` and evaluated at the layer centre
    :math:`L_\ell = (\ell + \tfrac12)\Delta`. Windows with fewer than two
    points or no spread in :math:`L` are left out.

    Parameters
    ----------
    points : Cluster, sequence of Hit or ndarray
        Input point set.
    layer_fit_half_window : int
        :math:`w`, in layers. Small windows follow local curvature ("micro"),
        very large ones give a global straight line ("macro").
    layer_pitch : float
        :math:`\Delta` (cm).

    Raises
    ------
    InvalidParameterError
        Fewer than two distinct points, or no layer could be fitted.
    """

    __slots__ = ("positions", "origin", "axis", "normal", "layer_pitch", "half_window", "_layers", "_keys")

    def __init__(self, points: PointSet, layer_fit_half_window: int, layer_pitch: float) -> None:
        pos = as_positions(points)
        if pos.shape[0] < 2:
            raise InvalidParameterError(f"Sliding fit needs at least 2 points, got {pos.shape[0]}")
        if layer_pitch <= 0.0:
            raise InvalidParameterError(f"layer_pitch must be positive, got {layer_pitch}")
        self.positions = pos
        self.layer_pitch = float(layer_pitch)
        self.half_window = int(layer_fit_half_window)
        self.origin = pos.mean(axis=0)

        centred = pos - self.origin
        _, s, vt = np.linalg.svd(centred, full_matrices=False)
        if s[0] < 1e-9:
            raise InvalidParameterError("Sliding fit on coincident points")
        axis = vt[0]
        if axis[1] < -1e-9 or (abs(axis[1]) <= 1e-9 and axis[0] < 0.0):
            axis = -axis
        self.axis = axis / np.linalg.norm(axis)
        self.normal = np.array((-self.axis[1], self.axis[0]))

        ls = centred @ self.axis
        ts = centred @ self.normal
        self._layers = self._fit_layers(ls, ts)
        if not self._layers:
            raise InvalidParameterError("Sliding fit produced no layer fits")
        self._keys = sorted(self._layers)

    @classmethod
    def try_fit(cls, points: PointSet, layer_fit_half_window: int, layer_pitch: float) -> Optional["TwoDSlidingFitResult"]:
        """Like the constructor but returns ``None`` instead of raising."""
        try:
            return cls(points, layer_fit_half_window, layer_pitch)
        except InvalidParameterError as e:
            logger.debug("Sliding fit skipped: %s", e)
            return None

    def _fit_layers(self, ls: np.ndarray, ts: np.ndarray) -> Dict[int, LayerFitResult]:
        layer = np.floor(ls / self.layer_pitch).astype(np.int64)
        lo, hi = int(layer.min()), int(layer.max())
        n_layers = hi - lo + 1
        idx = layer - lo
        # per-layer sums, then windowed sums from cumulative totals
        sums = np.zeros((5, n_layers), dtype=np.float64)
        sums[0] = np.bincount(idx, minlength=n_layers)
        sums[1] = np.bincount(idx, weights=ls, minlength=n_layers)
        sums[2] = np.bincount(idx, weights=ts, minlength=n_layers)
        sums[3] = np.bincount(idx, weights=ls * ls, minlength=n_layers)
        sums[4] = np.bincount(idx, weights=ls * ts, minlength=n_layers)
        cum = np.concatenate((np.zeros((5, 1)), np.cumsum(sums, axis=1)), axis=1)

        w = max(self.half_window, 0)
        out: Dict[int, LayerFitResult] = {}
        for k in range(n_layers):
            a = max(k - w, 0)
            b = min(k + w, n_layers - 1) + 1
            n, sl, st, sll, slt = cum[:, b] - cum[:, a]
            if n < 2:
                continue
            denom = n * sll - sl * sl
            if denom <= 1e-12 * max(1.0, n * sll):
                continue
            beta = (n * slt - sl * st) / denom
            alpha = (st - beta * sl) / n
            l_centre = (k + lo + 0.5) * self.layer_pitch
            out[k + lo] = LayerFitResult(l=l_centre, fit_t=alpha + beta * l_centre, gradient=beta, n_points=int(n))
        return out

    # ----------------------------------------------------------------- frames
    @property
    def layer_fit_results(self) -> Dict[int, LayerFitResult]:
        return self._layers

    @property
    def min_layer(self) -> int:
        return self._keys[0]

    @property
    def max_layer(self) -> int:
        return self._keys[-1]

    @property
    def n_layers(self) -> int:
        return len(self._keys)

    @property
    def first_gradient(self) -> float:
        """Gradient of the lowest layer; the global slope for a macro fit."""
        return self._layers[self._keys[0]].gradient

    def get_layer(self, rL: float) -> int:
        return int(math.floor(rL / self.layer_pitch))

    def get_local_position(self, position: np.ndarray) -> Tuple[float, float]:
        d = np.asarray(position, dtype=np.float64) - self.origin
        return float(d @ self.axis), float(d @ self.normal)

    def get_global_position(self, rL: float, rT: float) -> np.ndarray:
        return self.origin + rL * self.axis + rT * self.normal

    def get_global_direction(self, dTdL: float) -> np.ndarray:
        """Unit vector along increasing ``L`` for a local slope ``dT/dL``."""
        d = self.axis + dTdL * self.normal
        return d / np.linalg.norm(d)

    def _nearest_layer(self, rL: float) -> LayerFitResult:
        layer = min(max(self.get_layer(rL), self._keys[0]), self._keys[-1])
        if layer in self._layers:
            return self._layers[layer]
        i = int(np.searchsorted(self._keys, layer))
        below, above = self._keys[max(i - 1, 0)], self._keys[min(i, len(self._keys) - 1)]
        return self._layers[below if layer - below <= above - layer else above]

    def layer_position(self, layer: int) -> np.ndarray:
        r = self._layers[layer]
        return self.get_global_position(r.l, r.fit_t)

    def layer_direction(self, layer: int) -> np.ndarray:
        return self.get_global_direction(self._layers[layer].gradient)

    def get_global_min_layer_position(self) -> np.ndarray:
        return self.layer_position(self._keys[0])

    def get_global_max_layer_position(self) -> np.ndarray:
        return self.layer_position(self._keys[-1])

    def get_global_min_layer_direction(self) -> np.ndarray:
        return self.layer_direction(self._keys[0])

    def get_global_max_layer_direction(self) -> np.ndarray:
        return self.layer_direction(self._keys[-1])

    def get_global_fit_direction(self, rL: float) -> np.ndarray:
        r"""
        Fitted direction at longitudinal coordinate ``rL``.

        Outside the fitted range the end layers are used.
        """
        return self.get_global_direction(self._nearest_layer(rL).gradient)

    def get_global_fit_position(self, rL: float) -> np.ndarray:
        r"""
        Fitted position at ``rL``, interpolating between neighbouring layers.

        Outside the fitted range the end-layer lines are extrapolated.
        """
        keys = self._keys
        ls = np.array([self._layers[k].l for k in keys])
        i = int(np.searchsorted(ls, rL))
        if i == 0 or i == len(keys):
            r = self._layers[keys[0] if i == 0 else keys[-1]]
            return self.get_global_position(rL, r.fit_t + r.gradient * (rL - r.l))
        r0, r1 = self._layers[keys[i - 1]], self._layers[keys[i]]
        f = (rL - r0.l) / (r1.l - r0.l)
        return self.get_global_position(rL, r0.fit_t + f * (r1.fit_t - r0.fit_t))
