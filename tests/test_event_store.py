import pytest

from deltaray_reco.event_store import EventStore, cluster_list_name, hit_list_name
from deltaray_reco.exceptions import TransactionError
from deltaray_reco.objects import View


def _line(n, z=10.0, x0=0.0):
    return [(x0 + i, z) for i in range(n)]


def test_create_cluster_takes_ownership(builder):
    cid = builder.cluster(View.W, _line(5))
    store = builder.store
    cluster = store.cluster(cid)
    assert cluster.n_hits == 5
    assert store.list_of(cid) == cluster_list_name(View.W)
    assert all(store.owner_of(h) == cid for h in cluster.ordered_hits)
    assert store.is_available(cid)


def test_hit_cannot_belong_to_two_clusters(builder):
    hits = builder.hits(View.W, _line(3))
    store = builder.store
    store.replace_current_list(cluster_list_name(View.W))
    store.create_cluster(hits[:2])
    with pytest.raises(TransactionError):
        store.create_cluster(hits[1:])


def test_mutation_outside_current_list_is_refused(builder):
    cid = builder.cluster(View.U, _line(3))
    store = builder.store
    free = builder.hits(View.U, [(10.0, 3.0)])[0]
    store.replace_current_list(cluster_list_name(View.W))
    with pytest.raises(TransactionError):
        store.add_to_cluster(cid, free)
    with pytest.raises(TransactionError):
        store.delete_cluster(cid)
    store.replace_current_list(cluster_list_name(View.U))
    store.add_to_cluster(cid, free)
    assert store.cluster(cid).n_hits == 4


def test_hit_view_must_match_cluster_view(builder):
    cid = builder.cluster(View.W, _line(3))
    u_hit = builder.hits(View.U, [(0.0, 0.0)])[0]
    builder.store.replace_current_list(cluster_list_name(View.W))
    with pytest.raises(TransactionError):
        builder.store.add_to_cluster(cid, u_hit)


def test_merge_and_delete_moves_hits(builder):
    a = builder.cluster(View.W, _line(4))
    b = builder.cluster(View.W, _line(3, x0=10.0))
    store = builder.store
    store.merge_and_delete_clusters(a, b)
    assert store.cluster(a).n_hits == 7
    assert not store.alive(b)
    assert b not in store.get_list(cluster_list_name(View.W))
    assert all(store.owner_of(h) == a for h in store.get_hit_list(hit_list_name(View.W)))


def test_handles_are_never_reused(builder):
    a = builder.cluster(View.W, _line(3))
    builder.store.delete_cluster(a)
    b = builder.cluster(View.W, _line(3, x0=5.0))
    assert b > a
    with pytest.raises(TransactionError):
        builder.store.cluster(a)


def test_pfo_owned_clusters_are_protected(builder):
    muon = builder.muon({View.W: builder.cluster(View.W, _line(5))})
    store = builder.store
    cid = store.pfo(muon).clusters_in_view(View.W)[0]
    other = builder.cluster(View.W, _line(2, x0=20.0))
    assert not store.is_available(cid)
    with pytest.raises(TransactionError):
        store.delete_cluster(cid)
    with pytest.raises(TransactionError):
        store.merge_and_delete_clusters(other, cid)
    with pytest.raises(TransactionError):
        store.initialize_fragmentation([cid])
    # an owned cluster can still be enlarged
    store.merge_and_delete_clusters(cid, other)
    assert store.cluster(cid).n_hits == 7


def test_fragmentation_reassigns_every_hit(builder):
    cid = builder.cluster(View.W, _line(6))
    store = builder.store
    hits = store.cluster(cid).ordered_hits
    with store.fragmentation([cid]) as frag:
        first = frag.create(hits[:3])
        second = frag.create(hits[3:5])
        frag.add(second, hits[5])
    assert not store.alive(cid)
    assert store.cluster(first).n_hits == 3
    assert store.cluster(second).n_hits == 3
    assert set(store.get_list(cluster_list_name(View.W))) == {first, second}


def test_fragmentation_with_unassigned_hits_fails(builder):
    cid = builder.cluster(View.W, _line(4))
    store = builder.store
    hits = store.cluster(cid).ordered_hits
    frag = store.initialize_fragmentation([cid])
    frag.create(hits[:2])
    with pytest.raises(TransactionError):
        store.end_fragmentation(frag)
    with pytest.raises(TransactionError):
        store.initialize_fragmentation([cid])


def test_fragmentation_context_rolls_back_on_error(builder):
    cid = builder.cluster(View.W, _line(5))
    other = builder.cluster(View.W, _line(2, x0=20.0))
    store = builder.store
    hits = store.cluster(cid).ordered_hits
    with pytest.raises(RuntimeError):
        with store.fragmentation([cid]) as frag:
            frag.create(hits[:2])
            frag.add(other, hits[2])
            raise RuntimeError("interrupted")
    assert store.alive(cid)
    assert store.cluster(cid).n_hits == 5
    assert store.cluster(other).n_hits == 2
    assert set(store.get_list(cluster_list_name(View.W))) == {cid, other}
    assert all(store.owner_of(h) == cid for h in hits)
    # the store accepts a new transaction afterwards
    with store.fragmentation([cid]) as frag:
        frag.create(hits)
    assert not store.alive(cid)


def test_fragmentation_context_rolls_back_unassigned_hits(builder):
    cid = builder.cluster(View.W, _line(4))
    store = builder.store
    hits = store.cluster(cid).ordered_hits
    with pytest.raises(TransactionError):
        with store.fragmentation([cid]) as frag:
            frag.create(hits[:2])
    assert store.cluster(cid).n_hits == 4
    assert len(store.get_list(cluster_list_name(View.W))) == 1
    store.initialize_fragmentation([cid])


def test_run_clustering_algorithm_groups_free_hits(builder):
    store = builder.store
    hits = builder.hits(View.V, [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0), (20.0, 0.0), (21.0, 0.0)])
    store.replace_current_list(cluster_list_name(View.V))
    new_ids = store.run_clustering_algorithm("proximity", hits)
    assert sorted(store.cluster(c).n_hits for c in new_ids) == [2, 3]
    with pytest.raises(TransactionError):
        store.run_clustering_algorithm("missing", [])


def test_pfo_hierarchy(builder):
    store = builder.store
    muon = builder.muon({View.W: builder.cluster(View.W, _line(5))})
    dr_cluster = builder.cluster(View.W, _line(3, z=30.0))
    delta = store.create_pfo([dr_cluster], "DeltaRayPfos", 11, parent=muon)
    assert store.pfo(delta).parent == muon
    assert store.pfo(muon).daughters == [delta]
    assert store.pfo_of_cluster(dr_cluster) == delta
    assert store.get_pfo_list("DeltaRayPfos") == [delta]
    with pytest.raises(TransactionError):
        store.create_pfo([dr_cluster], "DeltaRayPfos", 11)


def test_duplicate_hit_registration_fails():
    from deltaray_reco.objects import Hit

    store = EventStore()
    store.add_hits([Hit(0, View.W, 0.0, 0.0)])
    with pytest.raises(TransactionError):
        store.add_hits([Hit(0, View.W, 1.0, 0.0)])
