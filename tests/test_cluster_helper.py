import numpy as np
import pytest

from deltaray_reco.cluster_helper import (
    distances_to_line,
    distances_to_set,
    get_average_z,
    get_closest_distance,
    get_closest_positions,
    get_cluster_span_x,
    get_cluster_span_z,
    get_length,
    is_in_line_segment,
    points_in_line_segment,
    sort_by_n_hits,
)
from deltaray_reco.exceptions import InvalidParameterError
from deltaray_reco.objects import View


def test_spans(builder):
    cid = builder.cluster(View.W, [(float(x), 2.0 * x) for x in range(10)])
    cluster = builder.store.cluster(cid)
    assert get_cluster_span_x(cluster) == (0.0, 9.0)
    assert get_cluster_span_z(cluster, 2.0, 4.0) == (4.0, 8.0)
    assert get_cluster_span_z(cluster, 20.0, 30.0) is None
    assert get_average_z(cluster, 0.0, 2.0) == pytest.approx(2.0)
    with pytest.raises(InvalidParameterError):
        get_cluster_span_z(cluster, 5.0, 1.0)
    assert get_length(cluster) == pytest.approx(np.hypot(9.0, 18.0))


def test_closest_points():
    a = np.array([[0.0, 0.0], [1.0, 0.0]])
    b = np.array([[4.0, 0.0], [4.0, 3.0]])
    assert get_closest_distance(a, b) == pytest.approx(3.0)
    pa, pb = get_closest_positions(a, b)
    assert np.allclose(pa, (1.0, 0.0))
    assert np.allclose(pb, (4.0, 0.0))
    assert np.allclose(distances_to_set(a, b), (4.0, 3.0))
    with pytest.raises(InvalidParameterError):
        get_closest_distance(a, np.empty((0, 2)))


def test_line_segment_and_line_distance():
    start, end = np.array((0.0, 0.0)), np.array((10.0, 0.0))
    pts = np.array([[-0.1, 1.0], [0.0, 5.0], [5.0, -2.0], [10.0, 0.0], [10.1, 0.0]])
    assert points_in_line_segment(pts, start, end).tolist() == [False, True, True, True, False]
    assert not is_in_line_segment(start, start, np.array((0.0, 0.0)))
    assert np.allclose(distances_to_line(pts, start, np.array((2.0, 0.0))), (1.0, 5.0, -2.0, 0.0, 0.0))


def test_sort_by_n_hits_orders_biggest_first(builder):
    small = builder.cluster(View.W, [(0.0, 0.0), (1.0, 0.0)])
    big = builder.cluster(View.W, [(0.0, 10.0), (1.0, 11.0), (2.0, 12.0)])
    tall = builder.cluster(View.W, [(5.0, 20.0), (5.0, 30.0)])
    store = builder.store
    order = sorted((small, big, tall), key=lambda c: sort_by_n_hits(store.cluster(c)))
    assert order == [big, tall, small]
