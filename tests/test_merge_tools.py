import pytest

from deltaray_reco.matching import DeltaRayMatchingAlgorithm
from deltaray_reco.objects import View
from deltaray_reco.overlap_tensor import Element, OverlapResult, XOverlap
from deltaray_reco.tools import DeltaRayMergeTool, OneViewMergeTool, TwoViewMergeTool

FIRST_XS = [20.0 + 0.3 * i for i in range(9)]
SECOND_XS = [24.5 + 0.3 * i for i in range(6)]
FULL_XS = [20.0 + 0.3 * i for i in range(21)]


def _muon(builder):
    return builder.muon(builder.line3d(range(101), lambda x: 0.0, lambda x: x + 10.0))


def _cluster(builder, view, xs, z=30.0):
    return builder.cluster(view, [(x, builder.geometry.project(view, 0.0, z)) for x in xs])


@pytest.mark.parametrize("gap,expected", [(3.0 - 1e-3, True), (3.0 + 1e-3, False)])
def test_clean_break_association_threshold(builder, geometry, gap, expected):
    a = builder.cluster(View.W, [(10.0 + i, 10.0) for i in range(6)])
    b = builder.cluster(View.W, [(15.0 + gap + i, 10.0) for i in range(5)])
    muon = builder.muon({View.W: builder.cluster(View.W, [(float(x), 60.0) for x in range(30)])})
    tool = TwoViewMergeTool()
    DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])

    result = OverlapResult(5, 5, 0.0, XOverlap(0.0, 1.0, 0.0, 1.0, 0.0, 1.0, 1.0), (muon,))
    e1, e2 = Element(1000, 1001, a, result), Element(1000, 1001, b, result)
    assert not tool.is_connected(muon, a, View.W)
    assert tool.are_associated(e1, e2, View.W) is expected

    lonely = Element(1000, 1001, b, OverlapResult(5, 5, 0.0, result.x_overlap, ()))
    assert not tool.are_associated(e1, lonely, View.W)


def test_hidden_track_association(builder, geometry):
    muon_w = builder.cluster(View.W, [(float(x), 10.0) for x in range(40)])
    muon = builder.muon({View.W: muon_w})
    a = builder.cluster(View.W, [(5.0, 11.0 + i) for i in range(5)])
    b = builder.cluster(View.W, [(12.0, 11.0 + i) for i in range(5)])
    far = builder.cluster(View.W, [(30.0, 11.0 + i) for i in range(5)])
    tool = TwoViewMergeTool()
    DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])

    assert tool.is_connected(muon, a, View.W)
    assert tool.is_hidden_track(muon, a, b, View.W)
    assert not tool.is_hidden_track(muon, a, far, View.W)
    result = OverlapResult(5, 5, 0.0, XOverlap(0.0, 1.0, 0.0, 1.0, 0.0, 1.0, 1.0), (muon,))
    assert tool.are_associated(Element(1000, 1001, a, result), Element(1000, 1001, b, result), View.W)
    assert not tool.are_associated(Element(1000, 1001, a, result), Element(1000, 1001, far, result), View.W)


def test_two_view_merge_joins_broken_third_view(builder, geometry):
    u = _cluster(builder, View.U, FULL_XS)
    v = _cluster(builder, View.V, FULL_XS)
    w1 = _cluster(builder, View.W, FIRST_XS)
    w2 = _cluster(builder, View.W, SECOND_XS)
    _muon(builder)
    tool = TwoViewMergeTool()
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()
    assert [e.key for e in algorithm.tensor] == [(u, v, w1), (u, v, w2)]

    assert tool.apply(algorithm.tensor)
    store = builder.store
    assert store.cluster(w1).n_hits == 15
    assert not store.alive(w2)
    assert [e.key for e in algorithm.tensor] == [(u, v, w1)]
    assert not tool.apply(algorithm.tensor)


def test_one_view_merge_joins_two_broken_views(builder, geometry):
    u1 = _cluster(builder, View.U, FIRST_XS)
    u2 = _cluster(builder, View.U, SECOND_XS)
    v1 = _cluster(builder, View.V, FIRST_XS)
    v2 = _cluster(builder, View.V, SECOND_XS)
    w = _cluster(builder, View.W, FULL_XS)
    _muon(builder)
    tool = OneViewMergeTool()
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()
    assert [e.key for e in algorithm.tensor] == [(u1, v1, w), (u2, v2, w)]

    assert tool.apply(algorithm.tensor)
    store = builder.store
    assert store.cluster(u1).n_hits == 15
    assert store.cluster(v1).n_hits == 15
    assert not store.alive(u2) and not store.alive(v2)
    assert [e.key for e in algorithm.tensor] == [(u1, v1, w)]
    assert not tool.apply(algorithm.tensor)


def test_merge_tool_is_abstract():
    with pytest.raises(TypeError):
        DeltaRayMergeTool()
