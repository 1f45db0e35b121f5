import pytest

from deltaray_reco.matching import DeltaRayMatchingAlgorithm
from deltaray_reco.objects import View
from deltaray_reco.tools import GoodMatchSelectionTool, build_tools
from deltaray_reco.tools.tool import ToolKind

DR_XS = [20.0 + 0.3 * i for i in range(10)]


def _event(builder):
    delta_ray = builder.line3d(DR_XS, lambda x: 0.0, lambda x: 30.0)
    muon = builder.muon(builder.line3d(range(101), lambda x: 0.0, lambda x: x + 12.5))
    return delta_ray, muon


def test_selection_creates_pfo_with_parent(builder, geometry):
    delta_ray, muon = _event(builder)
    tool = GoodMatchSelectionTool()
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()

    assert tool.apply(algorithm.tensor)
    store = builder.store
    (pfo_id,) = store.get_pfo_list("DeltaRayPfos")
    pfo = store.pfo(pfo_id)
    assert pfo.parent == muon
    assert sorted(pfo.all_clusters) == sorted(delta_ray.values())
    assert not any(store.is_available(c) for c in delta_ray.values())
    assert len(algorithm.tensor) == 0
    assert not tool.apply(algorithm.tensor)


def test_selection_respects_chi2_cut(builder, geometry):
    _event(builder)
    tool = GoodMatchSelectionTool(max_good_match_reduced_chi2=-1.0)
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()
    assert not tool.apply(algorithm.tensor)
    assert builder.store.get_pfo_list("DeltaRayPfos") == []
    assert len(algorithm.tensor) == 1


def test_build_tools_order_and_settings():
    tools = build_tools(["selection", "removal"], {"selection": {"max_good_match_reduced_chi2": 2.5}})
    assert [t.kind for t in tools] == [ToolKind.SELECTION, ToolKind.REMOVAL]
    assert tools[0].max_good_match_reduced_chi2 == 2.5
    assert [t.kind for t in build_tools()] == list(ToolKind)
    with pytest.raises(KeyError):
        build_tools(["no_such_tool"])
