import json

import pytest

from pbr_lut_gen.cli import dump_json, main


@pytest.fixture
def level_vmf(tmp_path, box_solid_text):
    def entity(pairs, body=""):
        lines = ["entity", "{"] + [f'\t"{k}" "{v}"' for k, v in pairs]
        if body:
            lines.append(body)
        return "\n".join(lines + ["}"])

    text = "\n".join([
        "world", "{", '\t"id" "1"', '\t"classname" "worldspawn"',
        # Wall between the two lamp groups
        box_solid_text((-8, -512, -64), (8, 512, 512), solid_id=2),
        "}",
        entity([("id", "10"), ("classname", "light"), ("origin", "-48 0 64"),
                ("pbr_enabled", "1")]),
        entity([("id", "11"), ("classname", "light"), ("origin", "-40 30 64"),
                ("pbr_enabled", "1")]),
        entity([("id", "12"), ("classname", "light"), ("origin", "20 0 64"),
                ("pbr_enabled", "1")]),
        entity([("id", "13"), ("classname", "func_ggx_area"), ("angles", "90 0 0")],
               box_solid_text((100, -16, 200), (164, 16, 202), solid_id=3)),
    ]) + "\n"
    path = tmp_path / "level.vmf"
    path.write_text(text)
    return path


def test_analyze_only_writes_nothing(level_vmf, tmp_path, capsys):
    out_dir = tmp_path / "out"
    assert main([str(level_vmf), "--output-dir", str(out_dir)]) == 0
    assert not out_dir.exists()
    assert "Cluster 0:" in capsys.readouterr().out


def test_final_mode_writes_assets_and_stripped_vmf(level_vmf, tmp_path):
    out_dir = tmp_path / "out"
    code = main([str(level_vmf), "--mode", "final", "-o", str(out_dir),
                 "--workers", "1", "--samples", "32"])
    assert code == 0
    assert (out_dir / "level_lut.tiff").exists()
    assert "func_ggx_area" not in (out_dir / "level_pbr.vmf").read_text()

    data = json.loads((out_dir / "level_clusters.json").read_text())
    assert data["sample_count"] == 32
    members = sorted(tuple(c["member_ids"]) for c in data["clusters"])
    # The wall keeps light 12 out of the 10/11 cluster
    assert ("10", "11") in members
    assert ("12",) in members


def test_capacity_error_exits_with_status_one(level_vmf, tmp_path, capsys):
    code = main([str(level_vmf), "--mode", "update-assets", "-o", str(tmp_path),
                 "--max-clusters", "1"])
    assert code == 1
    assert "ClusterCountExceeded" in capsys.readouterr().err


def test_missing_vmf(tmp_path, capsys):
    assert main([str(tmp_path / "nope.vmf")]) == 1
    assert "not found" in capsys.readouterr().err


def test_dump_json(level_vmf, capsys):
    assert dump_json([str(level_vmf)]) == 0
    records = json.loads(capsys.readouterr().out)
    assert [r["cluster_id"] for r in records] == list(range(len(records)))
