import math

import pytest

from deltaray_reco.exceptions import InvalidParameterError
from deltaray_reco.geometry import DetectorGeometry, TPCVolume
from deltaray_reco.objects import View


def test_projection_of_default_views(geometry):
    assert geometry.project(View.W, 2.0, 10.0) == pytest.approx(10.0)
    assert geometry.project(View.U, 2.0, 10.0) == pytest.approx(5.0 - math.sqrt(3.0))
    assert geometry.project(View.V, 2.0, 10.0) == pytest.approx(5.0 + math.sqrt(3.0))


@pytest.mark.parametrize("view1,view2", [(View.U, View.V), (View.V, View.W), (View.U, View.W), (View.W, View.U)])
def test_merge_two_positions_recovers_third_view(geometry, view1, view2):
    y, z = -3.5, 42.0
    p1 = geometry.project(view1, y, z)
    p2 = geometry.project(view2, y, z)
    (view3,) = (v for v in View if v not in (view1, view2))
    assert geometry.merge_two_positions(view1, view2, p1, p2) == pytest.approx(geometry.project(view3, y, z))


def test_merge_two_positions_rejects_degenerate_views(geometry):
    with pytest.raises(InvalidParameterError):
        geometry.merge_two_positions(View.U, View.U, 1.0, 2.0)
    parallel = DetectorGeometry(wire_angles_deg={"U": 0.0, "W": 0.0})
    with pytest.raises(InvalidParameterError):
        parallel.merge_two_positions(View.U, View.W, 1.0, 2.0)


def test_invalid_construction():
    with pytest.raises(InvalidParameterError):
        DetectorGeometry(wire_pitch=0.0)
    with pytest.raises(InvalidParameterError):
        DetectorGeometry(active_tpc=3)


def test_tpc_edges_single_volume(geometry):
    assert geometry.tpc_edges() == (0.0, 256.0)
    assert geometry.is_detector_edge(0.0)
    assert geometry.is_detector_edge(256.0)
    assert not geometry.is_detector_edge(128.0)


def test_tpc_edges_move_cathode_into_gap():
    geometry = DetectorGeometry(tpcs=[TPCVolume(50.0, 100.0, False), TPCVolume(160.0, 100.0, True)])
    assert geometry.tpc_edges(0) == pytest.approx((0.0, 105.0))
    assert geometry.tpc_edges(1) == pytest.approx((105.0, 210.0))
    assert geometry.find_closest_tpc(geometry.tpcs[0], check_positive=True) is geometry.tpcs[1]
    assert geometry.find_closest_tpc(geometry.tpcs[0], check_positive=False) is None
    assert not geometry.is_detector_edge(105.0)


def test_from_config():
    geometry = DetectorGeometry.from_config({
        "wire_angles_deg": {"U": 35.7, "V": -35.7},
        "wire_pitch": 0.5,
        "tpcs": [{"center_x": 128.0, "width_x": 256.0, "drift_positive": False}],
    })
    assert geometry.wire_pitch == 0.5
    assert geometry.wire_angles[View.U] == pytest.approx(math.radians(35.7))
    assert geometry.wire_angles[View.W] == 0.0
    assert not geometry.tpcs[0].drift_positive
