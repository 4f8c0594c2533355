import json

import pytest

from pbr_lut_gen.config import ClusterConfig, RunMode, load_config
from pbr_lut_gen.errors import ConfigError


def test_defaults_are_valid():
    cfg = ClusterConfig().validate()
    assert cfg.max_clusters == 256
    assert cfg.min_radius == 64.0
    assert cfg.max_radius == 65000.0


@pytest.mark.parametrize("overrides", [
    {"min_visible_fraction": 0.0},
    {"min_visible_fraction": 1.5},
    {"lut_sample_count": 1},
    {"negligibility_threshold": 1.0},
    {"max_clusters": 0},
    {"min_radius": 100.0, "max_radius": 50.0},
    {"point_epsilon": float("nan")},
])
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ConfigError):
        ClusterConfig(**overrides).validate()


def test_from_dict_casts_and_rejects_unknown_keys():
    cfg = ClusterConfig.from_dict({"lut_sample_count": "32", "clustering_radius_scale": 1})
    assert cfg.lut_sample_count == 32
    assert isinstance(cfg.lut_sample_count, int)
    assert cfg.clustering_radius_scale == 1.0

    with pytest.raises(ConfigError, match="cluster_radius"):
        ClusterConfig.from_dict({"cluster_radius": 3})


def test_round_trip_and_load(tmp_path):
    cfg = ClusterConfig(max_clusters=64, min_visible_fraction=0.75)
    path = tmp_path / "pbr.json"
    path.write_text(json.dumps(cfg.to_dict()))
    assert load_config(path) == cfg

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_config(bad)


def test_run_modes():
    assert RunMode("analyze-only") is RunMode.ANALYZE_ONLY
    assert not RunMode.ANALYZE_ONLY.bakes
    assert RunMode.UPDATE_ASSETS.bakes and RunMode.FINAL.bakes
