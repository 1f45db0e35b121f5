from __future__ import annotations

from typing import Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial import cKDTree

from .exceptions import InvalidParameterError
from .kernels import in_segment_mask, min_distances_to_set, signed_line_distances, window_z_span
from .objects import Cluster, Hit

__all__ = [
    "as_positions",
    "get_cluster_span_x",
    "get_cluster_span_z",
    "get_closest_distance",
    "get_closest_positions",
    "get_closest_position",
    "get_extremal_coordinates",
    "get_length_squared",
    "get_length",
    "get_average_z",
    "is_in_line_segment",
    "points_in_line_segment",
    "distances_to_line",
    "distances_to_set",
    "sort_by_n_hits",
]

PointSet = Union[Cluster, Sequence[Hit], np.ndarray]


def as_positions(obj: PointSet) -> np.ndarray:
    r"""
    Normalise a cluster, a hit sequence or an array to a ``(N, 2)`` ``float64`` array.
    """
    if isinstance(obj, Cluster):
        return obj.positions
    if isinstance(obj, np.ndarray):
        return np.asarray(obj, dtype=np.float64).reshape(-1, 2)
    hits = list(obj)
    if not hits:
        return np.empty((0, 2), dtype=np.float64)
    if isinstance(hits[0], Hit):
        return np.array([(h.x + h.x0, h.z) for h in hits], dtype=np.float64)
    return np.asarray(hits, dtype=np.float64).reshape(-1, 2)


def get_cluster_span_x(obj: PointSet) -> Optional[Tuple[float, float]]:
    """``(xmin, xmax)`` of a point set, ``None`` if it is empty."""
    pos = as_positions(obj)
    if pos.shape[0] == 0:
        return None
    return float(pos[:, 0].min()), float(pos[:, 0].max())


def get_cluster_span_z(obj: PointSet, xmin: float, xmax: float) -> Optional[Tuple[float, float]]:
    r"""
    Z extent of the hits inside the drift window :math:`[x_\min, x_\max]`.

    Parameters
    ----------
    obj : Cluster, sequence of Hit or ndarray
        Point set.
    xmin, xmax : float
        Inclusive window.

    Returns
    -------
    (zmin, zmax) or None
        ``None`` when no hit falls inside the window.

    Raises
    ------
    InvalidParameterError
        If ``xmin > xmax``.
    """
    if xmin > xmax:
        raise InvalidParameterError(f"Invalid span: xmin={xmin} > xmax={xmax}")
    pos = as_positions(obj)
    found, zmin, zmax = window_z_span(pos[:, 0], pos[:, 1], float(xmin), float(xmax))
    if not found:
        return None
    return float(zmin), float(zmax)


def _require_points(pos: np.ndarray) -> None:
    if pos.shape[0] == 0:
        raise InvalidParameterError("Closest-distance query on an empty point set")


def get_closest_distance(a: PointSet, b: PointSet) -> float:
    r"""
    Smallest Euclidean distance between two point sets.

    Raises
    ------
    InvalidParameterError
        If either set is empty.
    """
    pa, pb = as_positions(a), as_positions(b)
    _require_points(pa)
    _require_points(pb)
    d, _ = cKDTree(pb).query(pa, k=1)
    return float(np.min(d))


def get_closest_positions(a: PointSet, b: PointSet) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    The pair of points, one from each set, realising :func:`get_closest_distance`.

    Ties resolve to the lowest index in ``a`` (ordered-hit order for clusters).
    """
    pa, pb = as_positions(a), as_positions(b)
    _require_points(pa)
    _require_points(pb)
    d, idx = cKDTree(pb).query(pa, k=1)
    i = int(np.argmin(d))
    return pa[i].copy(), pb[int(idx[i])].copy()


def get_closest_position(point: np.ndarray, obj: PointSet) -> np.ndarray:
    pos = as_positions(obj)
    _require_points(pos)
    _, idx = cKDTree(pos).query(np.asarray(point, dtype=np.float64), k=1)
    return pos[int(idx)].copy()


def get_extremal_coordinates(obj: PointSet) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    The two end points of a point set along its longer axis-aligned extent.

    Returns ``(inner, outer)`` where ``inner`` has the smaller coordinate on
    that axis.
    """
    pos = as_positions(obj)
    _require_points(pos)
    span = pos.max(axis=0) - pos.min(axis=0)
    axis = 0 if span[0] > span[1] else 1
    return pos[int(np.argmin(pos[:, axis]))].copy(), pos[int(np.argmax(pos[:, axis]))].copy()


def get_length_squared(obj: PointSet) -> float:
    inner, outer = get_extremal_coordinates(obj)
    d = outer - inner
    return float(d @ d)


def get_length(obj: PointSet) -> float:
    return float(np.sqrt(get_length_squared(obj)))


def get_average_z(obj: PointSet, xmin: float, xmax: float) -> Optional[float]:
    if xmin > xmax:
        raise InvalidParameterError(f"Invalid span: xmin={xmin} > xmax={xmax}")
    pos = as_positions(obj)
    sel = (pos[:, 0] >= xmin) & (pos[:, 0] <= xmax)
    if not sel.any():
        return None
    return float(pos[sel, 1].mean())


def points_in_line_segment(points: PointSet, start: np.ndarray, end: np.ndarray) -> np.ndarray:
    """Boolean mask of the points between the end normals of ``start -> end``."""
    return in_segment_mask(
        as_positions(points), np.asarray(start, dtype=np.float64), np.asarray(end, dtype=np.float64)
    )


def is_in_line_segment(start: np.ndarray, end: np.ndarray, point: np.ndarray) -> bool:
    return bool(points_in_line_segment(np.asarray(point, dtype=np.float64).reshape(1, 2), start, end)[0])


def distances_to_line(points: PointSet, origin: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """Signed perpendicular distances from the line through ``origin`` along ``direction``."""
    return signed_line_distances(
        as_positions(points), np.asarray(origin, dtype=np.float64), np.asarray(direction, dtype=np.float64)
    )


def distances_to_set(points: PointSet, targets: PointSet) -> np.ndarray:
    return min_distances_to_set(as_positions(points), as_positions(targets))


def sort_by_n_hits(cluster: Cluster) -> Tuple[int, float, float, int]:
    r"""
    Sort key giving a deterministic "biggest first" cluster order.

    Hit count descending, then z extent descending, then energy descending,
    then handle ascending.
    """
    pos = cluster.positions
    z_span = float(pos[:, 1].max() - pos[:, 1].min()) if pos.shape[0] else 0.0
    return (-cluster.n_hits, -z_span, -cluster.energy, cluster.cluster_id)
