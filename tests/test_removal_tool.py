import numpy as np

from deltaray_reco.event_store import cluster_list_name, hit_list_name
from deltaray_reco.matching import DeltaRayMatchingAlgorithm
from deltaray_reco.objects import View, VIEWS
from deltaray_reco.tools import CosmicRayRemovalTool

BRANCH_XS = [31.0 + 0.5 * i for i in range(11)]
SHARED_XS = [26.0, 27.0, 28.0, 29.0]


def _event(builder, extra_w=()):
    r"""
    A muon along ``z = x`` whose W hits at ``x = 26..29`` were clustered into
    a delta ray branching off along ``z = 60 - x``.
    """
    geometry = builder.geometry
    muon_clusters = {
        view: builder.cluster(view, [(x, geometry.project(view, 0.0, x)) for x in range(101)])
        for view in (View.U, View.V)
    }
    muon_clusters[View.W] = builder.cluster(View.W, [(x, x) for x in range(101) if not 26 <= x <= 29])
    muon = builder.muon(muon_clusters)

    delta_ray = {
        view: builder.cluster(view, [(x, geometry.project(view, 0.0, 60.0 - x)) for x in BRANCH_XS])
        for view in (View.U, View.V)
    }
    shared = builder.hits(View.W, [(x, x) for x in SHARED_XS])
    branch = builder.hits(View.W, [(x, 60.0 - x) for x in BRANCH_XS])
    extra = builder.hits(View.W, extra_w)
    builder.store.replace_current_list(cluster_list_name(View.W))
    delta_ray[View.W] = builder.store.create_cluster(shared + branch + extra)
    return muon, muon_clusters, delta_ray, branch, extra


def _setup(builder, geometry, extra_w=()):
    event = _event(builder, extra_w)
    tool = CosmicRayRemovalTool()
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()
    return (tool, algorithm) + event


def test_contaminated_cluster_seed_and_growth(builder, geometry):
    tool, algorithm, muon, _, delta_ray, branch, _ = _setup(builder, geometry)
    (element,) = list(algorithm.tensor)
    assert element.cluster_w == delta_ray[View.W]
    assert element.common_muon_pfos == (muon,)
    assert tool.pass_element_checks(element, View.W)
    assert tool.is_contaminated(element, View.W)
    assert tool.is_best_element(element, View.W, [element], set())

    seed = tool.create_seed(element, View.W)
    assert sorted(h.hit_id for h in seed) == sorted(h.hit_id for h in branch)
    delta_ray_hits, remnant_hits = tool.grow_seed(element, View.W, seed)
    assert sorted(h.hit_id for h in delta_ray_hits) == sorted(h.hit_id for h in branch)
    assert remnant_hits == []


def test_apply_returns_muon_hits_to_muon(builder, geometry):
    tool, algorithm, muon, muon_clusters, delta_ray, branch, _ = _setup(builder, geometry)
    store = builder.store
    n_w_hits = len(store.get_hit_list(hit_list_name(View.W)))

    assert tool.apply(algorithm.tensor)
    assert store.cluster(muon_clusters[View.W]).n_hits == 101
    assert not store.alive(delta_ray[View.W])
    owners = {store.owner_of(h) for h in branch}
    assert len(owners) == 1
    (new_w,) = owners
    assert store.cluster(new_w).n_hits == len(branch)
    assert store.is_available(new_w)
    assert sum(store.cluster(c).n_hits for c in store.get_list(cluster_list_name(View.W))) == n_w_hits

    (element,) = list(algorithm.tensor)
    assert element.cluster_w == new_w
    assert element.common_muon_pfos == (muon,)
    assert not tool.apply(algorithm.tensor)


def test_far_remnant_hits_are_kept_apart(builder, geometry):
    extra = [(33.0, 40.0), (33.5, 40.5)]
    tool, algorithm, _, muon_clusters, delta_ray, branch, extra_hits = _setup(builder, geometry, extra)
    store = builder.store
    (element,) = list(algorithm.tensor)
    seed = tool.create_seed(element, View.W)
    delta_ray_hits, remnant_hits = tool.grow_seed(element, View.W, seed)
    assert sorted(h.hit_id for h in remnant_hits) == sorted(h.hit_id for h in extra_hits)

    assert tool.apply(algorithm.tensor)
    remnant_owners = {store.owner_of(h) for h in extra_hits}
    assert len(remnant_owners) == 1
    (remnant,) = remnant_owners
    assert remnant not in (muon_clusters[View.W], store.owner_of(branch[0]))
    assert store.cluster(remnant).n_hits == 2
    assert store.cluster(muon_clusters[View.W]).n_hits == 101
    assert sum(store.cluster(c).n_hits for c in store.get_list(cluster_list_name(View.W))) == len(
        store.get_hit_list(hit_list_name(View.W))
    )


def test_transverse_directions():
    tool = CosmicRayRemovalTool(max_transverse_angle_deg=10.0)
    assert tool.is_transverse((1.0, 0.1))
    assert not tool.is_transverse((1.0, 0.5))
    assert not tool.is_transverse((0.0, 1.0))


def test_candidate_inside_muon_span_is_contaminated_by_containment(builder, geometry):
    muon_clusters = {
        view: builder.cluster(view, [(x, geometry.project(view, 0.0, x)) for x in range(101)])
        for view in VIEWS
    }
    muon = builder.muon(muon_clusters)
    # hugs the muon line for x in [20, 40], within 0.3 in every view
    candidate = builder.line3d(range(20, 41), lambda x: 0.0, lambda x: x + 0.2)

    # a transverse threshold of 90 degrees turns the extension test off
    tool = CosmicRayRemovalTool(max_transverse_angle_deg=90.0)
    algorithm = DeltaRayMatchingAlgorithm(builder.store, geometry, [tool])
    algorithm.prepare_input_clusters()
    algorithm.populate_tensor()
    (element,) = list(algorithm.tensor)
    assert element.common_muon_pfos == (muon,)
    assert tool.is_transverse(np.array((1.0, 1.0)))
    for view in VIEWS:
        assert tool.pass_element_checks(element, view)
        assert tool.is_contaminated(element, view)
        # nothing lies a seed distance away from the muon
        assert tool.create_seed(element, view) == []

    store = builder.store
    n_hits = {view: len(store.get_hit_list(hit_list_name(view))) for view in VIEWS}
    assert not tool.apply(algorithm.tensor)
    for view in VIEWS:
        clusters = store.get_list(cluster_list_name(view))
        assert sorted(clusters) == sorted((muon_clusters[view], candidate[view]))
        assert sum(store.cluster(c).n_hits for c in clusters) == n_hits[view]
        assert store.cluster(candidate[view]).n_hits == 21
        assert all(store.owner_of(h) is not None for h in store.get_hit_list(hit_list_name(view)))
