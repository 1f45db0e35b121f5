from __future__ import annotations

import numpy as np
from numba import njit

__all__ = [
    "window_z_span",
    "in_segment_mask",
    "signed_line_distances",
    "min_distances_to_set",
]


@njit(cache=True)
def window_z_span(xs: np.ndarray, zs: np.ndarray, xmin: float, xmax: float):
    r"""
    Z extent of the points whose drift coordinate lies in :math:`[x_\min, x_\max]`.

    Parameters
    ----------
    xs, zs : ndarray, shape (N,)
        Point coordinates.
    xmin, xmax : float
        Inclusive drift window.

    Returns
    -------
    found : bool
        ``False`` when no point falls in the window.
    zmin, zmax : float
        Extent of the selected points (``+inf``/``-inf`` when not found).
    """
    found = False
    zmin = np.inf
    zmax = -np.inf
    for i in range(xs.shape[0]):
        if xs[i] < xmin or xs[i] > xmax:
            continue
        found = True
        if zs[i] < zmin:
            zmin = zs[i]
        if zs[i] > zmax:
            zmax = zs[i]
    return found, zmin, zmax


@njit(cache=True)
def in_segment_mask(points: np.ndarray, start: np.ndarray, end: np.ndarray) -> np.ndarray:
    r"""
    Mask of points lying between the normals of a segment at its two ends.

    A point :math:`p` is inside when its projection parameter

    .. math::
        t = \frac{(p - a)\cdot(b - a)}{\|b - a\|^2}

    satisfies :math:`0 \le t \le 1`. A degenerate segment contains nothing.
    """
    n = points.shape[0]
    out = np.zeros(n, dtype=np.bool_)
    dx = end[0] - start[0]
    dz = end[1] - start[1]
    length2 = dx * dx + dz * dz
    if length2 < 1e-12:
        return out
    for i in range(n):
        t = (points[i, 0] - start[0]) * dx + (points[i, 1] - start[1]) * dz
        out[i] = t >= 0.0 and t <= length2
    return out


@njit(cache=True)
def signed_line_distances(points: np.ndarray, origin: np.ndarray, direction: np.ndarray) -> np.ndarray:
    r"""
    Signed perpendicular distances of ``points`` from a line.

    .. math::
        d_i = \frac{u_x (p_{i,z} - o_z) - u_z (p_{i,x} - o_x)}{\|u\|}

    Positive values lie to the left of ``direction`` in the ``(x, z)`` plane.
    """
    n = points.shape[0]
    out = np.zeros(n, dtype=np.float64)
    ux = direction[0]
    uz = direction[1]
    norm = np.sqrt(ux * ux + uz * uz)
    if norm < 1e-12:
        return out
    for i in range(n):
        out[i] = (ux * (points[i, 1] - origin[1]) - uz * (points[i, 0] - origin[0])) / norm
    return out


@njit(cache=True)
def min_distances_to_set(points: np.ndarray, targets: np.ndarray) -> np.ndarray:
    """Euclidean distance from each point to its nearest target (``inf`` if no targets)."""
    n = points.shape[0]
    m = targets.shape[0]
    out = np.full(n, np.inf)
    for i in range(n):
        best = np.inf
        for j in range(m):
            dx = points[i, 0] - targets[j, 0]
            dz = points[i, 1] - targets[j, 1]
            d2 = dx * dx + dz * dz
            if d2 < best:
                best = d2
        out[i] = np.sqrt(best)
    return out
