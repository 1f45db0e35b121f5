import orjson
import pandas as pd
import pytest

from deltaray_reco.main import DEFAULT_CONFIG, _deep_update, build_parser, load_config, main, resolve_config


def _event_rows(event_id):
    r"""
    Hits of one event: a muon along ``z = x + 12.5`` (cluster 0, pfo 0), a
    delta ray at ``z = 30`` (cluster 1) and a two-hit W fragment of it (cluster 2).
    """
    rows = []

    def add(view, x, z, cluster_id, pfo_id=-1):
        rows.append((event_id, len(rows), view, x, z, cluster_id, pfo_id))

    for x in range(101):
        z = x + 12.5
        add("U", float(x), 0.5 * z, 0, 0)
        add("V", float(x), 0.5 * z, 0, 0)
        add("W", float(x), z, 0, 0)
    for i in range(10):
        x = 20.0 + 0.3 * i
        add("U", x, 15.0, 1)
        add("V", x, 15.0, 1)
        add("W", x, 30.0, 1)
    add("W", 21.0, 30.5, 2)
    add("W", 21.3, 30.5, 2)
    return rows


@pytest.fixture
def hits_csv(tmp_path):
    rows = _event_rows(0) + _event_rows(3)
    path = tmp_path / "hits.csv"
    pd.DataFrame(rows, columns=["event_id", "hit_id", "view", "x", "z", "cluster_id", "pfo_id"]).to_csv(
        path, index=False
    )
    return path


def test_deep_update_merges_nested_dicts():
    base = {"a": {"b": 1, "c": 2}, "d": [1]}
    merged = _deep_update(base, {"a": {"c": 3}, "d": [2], "e": 4})
    assert merged == {"a": {"b": 1, "c": 3}, "d": [2], "e": 4}
    assert base == {"a": {"b": 1, "c": 2}, "d": [1]}


def test_config_loading(tmp_path):
    assert resolve_config(None) == DEFAULT_CONFIG
    assert resolve_config(None) is not DEFAULT_CONFIG

    good = tmp_path / "config.json"
    good.write_bytes(orjson.dumps({"delta_ray_matching": {"min_cluster_calo_hits": 5}}))
    config = resolve_config(str(good))
    assert config["delta_ray_matching"]["min_cluster_calo_hits"] == 5
    assert config["geometry"] == DEFAULT_CONFIG["geometry"]

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(bad)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")


def test_parser_defaults():
    args = build_parser().parse_args(["--hits", "h.csv"])
    assert args.output == "partition.csv"
    assert args.pfos is None and args.n_events is None
    assert not args.profile and not args.verbose


def test_main_writes_partition(hits_csv, tmp_path):
    out = tmp_path / "partition.csv"
    assert main(["--hits", str(hits_csv), "--output", str(out)]) == 0

    df = pd.read_csv(out, keep_default_na=False)
    assert sorted(df.event_id.unique().tolist()) == [0, 3]
    assert len(df) == 2 * (303 + 32)
    for _, event in df.groupby("event_id"):
        delta_ray = event[event.pfo_list == "DeltaRayPfos"]
        assert len(delta_ray) == 32
        assert set(delta_ray.pdg) == {11}
        muon = event[event.pfo_list == "MuonPfos"]
        assert len(muon) == 303
        assert set(delta_ray.parent_pfo) == set(muon.pfo)


def test_main_respects_event_limit_and_profiling(hits_csv, tmp_path):
    out = tmp_path / "partition.csv"
    report = tmp_path / "prof.txt"
    argv = ["--hits", str(hits_csv), "--output", str(out), "-n", "1", "--profile", "--profile-out", str(report)]
    assert main(argv) == 0
    assert pd.read_csv(out).event_id.unique().tolist() == [0]
    assert "[prof]" in report.read_text()
