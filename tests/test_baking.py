import json

import numpy as np
import pytest
from PIL import Image

from pbr_lut_gen.baking import build_bake_result
from pbr_lut_gen.clustering import cluster_lights
from pbr_lut_gen.config import ClusterConfig
from pbr_lut_gen.errors import BakeError, ClusterCountExceeded
from pbr_lut_gen.scoring import score_all


def _far_apart(make_light, count, cfg=None):
    return [make_light(f"l{i}", (i * 2000.0, 0.0, 0.0), cfg=cfg) for i in range(count)]


def test_bake_rows_follow_cluster_ids(make_light, config, open_geometry):
    lights = _far_apart(make_light, 3)
    clusters = cluster_lights(lights, open_geometry, config)
    _, cluster_scores = score_all(lights, clusters, config)
    bake = build_bake_result(clusters, cluster_scores, config)

    assert bake.samples.shape == (3, config.lut_sample_count)
    assert bake.samples.dtype == np.float32
    for cluster in clusters:
        assert np.array_equal(bake.samples[cluster.cluster_id], cluster.samples)
        info = bake.infos[cluster.cluster_id]
        assert info.member_ids == cluster.member_ids
        assert info.score == pytest.approx(1.0, rel=1e-5)
        assert info.peak == pytest.approx(float(cluster.samples[0]))


def test_texture_is_padded_to_capacity(make_light, open_geometry):
    cfg = ClusterConfig(max_clusters=8, lut_sample_count=16)
    lights = _far_apart(make_light, 3, cfg)
    clusters = cluster_lights(lights, open_geometry, cfg)
    bake = build_bake_result(clusters, None, cfg)

    texture = bake.texture()
    assert texture.shape == (8, 16)
    assert np.all(texture[3:] == 0.0)
    assert np.array_equal(texture[:3], bake.samples)
    assert all(info.score is None for info in bake.infos)

    image = bake.lut_image()
    assert isinstance(image, Image.Image)
    assert image.mode == "F"
    assert image.size == (16, 8)


def test_too_many_clusters_is_rejected(make_light, open_geometry):
    cfg = ClusterConfig(max_clusters=2)
    clusters = cluster_lights(_far_apart(make_light, 3, cfg), open_geometry, cfg)
    with pytest.raises(ClusterCountExceeded) as exc:
        build_bake_result(clusters, None, cfg)
    assert isinstance(exc.value, BakeError)
    assert (exc.value.actual, exc.value.maximum) == (3, 2)
    assert "3 clusters" in str(exc.value)


def test_save_writes_metadata_and_lut(make_light, config, open_geometry, tmp_path):
    lights = _far_apart(make_light, 2)
    clusters = cluster_lights(lights, open_geometry, config)
    bake = build_bake_result(clusters, None, config)

    json_path, lut_path = bake.save(tmp_path / "out", "level")
    assert json_path.name == "level_clusters.json"
    assert lut_path.exists()

    data = json.loads(json_path.read_text())
    assert data["cluster_count"] == 2
    assert data["capacity"] == config.max_clusters
    assert data["clusters"][1]["member_ids"] == ["l1"]

    with Image.open(lut_path) as img:
        assert img.size == (config.lut_sample_count, config.max_clusters)


def test_bake_carries_member_light_records(make_light, config, open_geometry, tmp_path):
    lights = [make_light("lamp", (0.0, 0.0, 0.0), color=(1.0, 0.5, 0.25)),
              make_light("switched", (20.0, 0.0, 0.0), initially_dark=True)]
    clusters = cluster_lights(lights, open_geometry, config)
    bake = build_bake_result(clusters, None, config)

    (info,) = bake.infos
    lamp, switched = info.members
    assert (lamp.id, switched.id) == ("lamp", "switched")
    assert lamp.color == (1.0, 0.5, 0.25)
    assert lamp.shape == "point"
    assert lamp.intensity == lights[0].intensity
    assert lamp.effective_radius == lights[0].effective_radius
    assert not lamp.initially_dark
    assert switched.initially_dark

    json_path, _ = bake.save(tmp_path, "level")
    members = json.loads(json_path.read_text())["clusters"][0]["members"]
    assert [m["id"] for m in members] == ["lamp", "switched"]
    assert members[0]["color"] == [1.0, 0.5, 0.25]
    assert members[1]["initially_dark"] is True
