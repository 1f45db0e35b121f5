import numpy as np
import pytest

from deltaray_reco.event_store import cluster_list_name
from deltaray_reco.geometry import DetectorGeometry, TPCVolume
from deltaray_reco.objects import Hit, View
from deltaray_reco.refinement import ClusterAssociation, ClusterEndpointAssociation, SlidingFitCache, TrackRefinementBase
from deltaray_reco.track_extension import TrackExtensionRefinementAlgorithm

W_LIST = cluster_list_name(View.W)


@pytest.fixture
def two_volumes():
    # active volume spans x in [0, 100]; only its high-x edge faces another volume
    return DetectorGeometry(tpcs=[TPCVolume(50.0, 100.0, False), TPCVolume(150.0, 100.0, True)])


def _on_line(xs):
    return [(float(x), 0.5 * x) for x in xs]


def test_track_reaching_edge_needs_no_extension(builder, two_volumes):
    cid = builder.cluster(View.W, _on_line(range(60, 100)))
    algorithm = TrackExtensionRefinementAlgorithm(builder.store, two_volumes)
    vector, cache = [], SlidingFitCache()
    algorithm.initialise_containers(builder.store.get_list(W_LIST), vector, cache)
    assert vector == [cid]

    association = algorithm.find_best_cluster_association(vector, cache, 100.0)
    assert association.main_track_cluster == cid
    assert not association.is_end_upstream
    assert association.extrapolated_point == pytest.approx((100.0, 50.0), abs=1e-6)
    assert algorithm.get_extrapolated_calo_hits(association) == {}
    assert algorithm.are_extrapolated_hits_good(association, {}, 100.0)

    assert algorithm.run() == 0
    assert builder.store.cluster(cid).n_hits == 40


def test_track_is_extended_through_shower_cluster(builder, two_volumes):
    main = builder.cluster(View.W, _on_line(range(50, 81)))
    shower = builder.cluster(View.W, _on_line(range(81, 100)) + [(90.0, 55.0), (91.0, 56.0), (92.0, 57.0)])
    store = builder.store
    algorithm = TrackExtensionRefinementAlgorithm(store, two_volumes)

    assert algorithm.run() == 1
    assert store.cluster(main).n_hits == 50
    assert not store.alive(shower)
    clusters = store.get_list(W_LIST)
    assert main in clusters
    assert len(clusters) == 2
    (remnant,) = [c for c in clusters if c != main]
    assert store.cluster(remnant).n_hits == 3
    assert sum(store.cluster(c).n_hits for c in clusters) == 53


def test_detector_edges_are_skipped(builder, geometry):
    cid = builder.cluster(View.W, _on_line(range(50, 81)))
    builder.cluster(View.W, _on_line(range(81, 100)))
    algorithm = TrackExtensionRefinementAlgorithm(builder.store, DetectorGeometry(tpcs=[TPCVolume(50.0, 100.0)]))
    assert algorithm.run() == 0
    assert builder.store.cluster(cid).n_hits == 31


def test_rejects_extrapolation_that_stops_short(builder, two_volumes):
    builder.cluster(View.W, _on_line(range(40, 71)))
    algorithm = TrackExtensionRefinementAlgorithm(builder.store, two_volumes)
    vector, cache = [], SlidingFitCache()
    algorithm.initialise_containers(builder.store.get_list(W_LIST), vector, cache)
    association = algorithm.find_best_cluster_association(vector, cache, 100.0)
    assert association is not None
    # nothing collected and the track ends far from the edge
    assert algorithm.validate_extrapolation(association, {}, 100.0) is None


def test_short_clusters_are_not_main_tracks(builder, two_volumes):
    builder.cluster(View.W, _on_line(range(90, 100)))
    algorithm = TrackExtensionRefinementAlgorithm(builder.store, two_volumes)
    vector, cache = [], SlidingFitCache()
    algorithm.initialise_containers(builder.store.get_list(W_LIST), vector, cache)
    assert vector == []


def test_endpoint_association_geometry():
    a = ClusterEndpointAssociation(
        upstream_merge_point=np.array((0.0, 0.0)),
        upstream_merge_direction=np.array((1.0, 0.0)),
        downstream_merge_point=np.array((10.0, 0.0)),
        downstream_merge_direction=np.array((-1.0, 0.0)),
        main_track_cluster=7,
        is_end_upstream=False,
    )
    assert np.allclose(a.cluster_merge_point, (0.0, 0.0))
    assert np.allclose(a.extrapolated_point, (10.0, 0.0))
    assert np.allclose(a.connecting_line_direction, (1.0, 0.0))
    moved = a.with_extrapolated_point((6.0, 0.0))
    assert moved.length == pytest.approx(6.0)
    assert a.length == pytest.approx(10.0)


def _hits(xs):
    return [Hit(i, View.W, float(x), 0.0) for i, x in enumerate(xs)]


def test_track_continuity(builder, geometry):
    base = TrackRefinementBase(builder.store, geometry)
    association = ClusterAssociation(
        np.array((0.0, 0.0)), np.array((1.0, 0.0)), np.array((30.0, 0.0)), np.array((-1.0, 0.0))
    )
    assert base.is_track_continuous(association, _hits(range(0, 31, 2)))
    assert not base.is_track_continuous(association, _hits([1.0, 2.0, 28.0]))
    assert base.is_track_continuous(association, [])


def test_merging_coordinates_on_straight_track(builder, geometry):
    base = TrackRefinementBase(builder.store, geometry)
    points = np.array(_on_line(range(0, 40)))
    micro, macro = base.fit(points, 20), base.fit(points, 1000)
    position, direction = base.get_cluster_merging_coordinates(micro, macro, True)
    assert np.allclose(direction, np.array((2.0, 1.0)) / np.sqrt(5.0))
    assert position[0] < 1.0
    assert position[1] == pytest.approx(0.5 * position[0])
    position, _ = base.get_cluster_merging_coordinates(micro, macro, False)
    assert position[0] > 38.0


def test_remnant_processing(builder, geometry):
    store = builder.store
    base = TrackRefinementBase(store, geometry)
    target = builder.cluster(View.W, [(float(x), 0.0) for x in range(5)])
    split = builder.cluster(View.W, [(20.0, 0.0), (21.0, 0.0), (30.0, 0.0), (31.0, 0.0)])
    single = builder.cluster(View.W, [(7.0, 0.0)])

    assert base.is_cluster_remnant_disconnected(split)
    assert not base.is_cluster_remnant_disconnected(target)
    created, enlarged = base.process_remnant_clusters([split, single])
    assert sorted(store.cluster(c).n_hits for c in created) == [2, 2]
    assert enlarged == [target]
    assert store.cluster(target).n_hits == 6
    assert not store.alive(split) and not store.alive(single)


def test_track_at_low_edge_is_extended_at_high_edge(builder):
    # middle of three volumes: neither edge of the active volume is a detector edge
    geometry = DetectorGeometry(
        tpcs=[TPCVolume(50.0, 100.0), TPCVolume(150.0, 100.0), TPCVolume(250.0, 100.0)],
        active_tpc=1,
    )
    assert geometry.tpc_edges() == pytest.approx((100.0, 200.0))
    main = builder.cluster(View.W, _on_line(range(101, 186)))
    shower = builder.cluster(View.W, _on_line(range(186, 200)))
    store = builder.store
    algorithm = TrackExtensionRefinementAlgorithm(store, geometry)

    # the shower is too short to be a main track itself
    vector, cache = [], SlidingFitCache()
    algorithm.initialise_containers(store.get_list(W_LIST), vector, cache)
    assert vector == [main]

    assert algorithm.run() == 1
    assert store.cluster(main).n_hits == 99
    assert not store.alive(shower)
    assert store.get_list(W_LIST) == [main]
