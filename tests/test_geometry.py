import pytest

from pbr_lut_gen.geometry import (
    BrushGeometry, build_brush_faces, emitter_sample_points, is_occluding_material,
    light_basis, vec_dot, vec_length,
)
from pbr_lut_gen.lights import LightShape


def test_box_brush_builds_six_bounded_faces(box_brush):
    faces = build_brush_faces(box_brush((-64, -64, -64), (64, 64, 64)))
    assert len(faces) == 6
    for face in faces:
        assert len(face.vertices) >= 4
        for v in face.vertices:
            assert all(abs(c) <= 64.0 + 1e-3 for c in v)
    normals = sorted(tuple(round(c) for c in f.plane.normal) for f in faces)
    assert normals == sorted([(0, 0, -1), (0, 0, 1), (1, 0, 0), (-1, 0, 0),
                              (0, 1, 0), (0, -1, 0)])


def test_segment_through_brush_is_occluded(box_brush):
    world = BrushGeometry.from_brushes([box_brush((-64, -64, -64), (64, 64, 64))])
    assert world.test_occluded((-200.0, 10.0, -20.0), (200.0, 10.0, -20.0))
    assert world.test_occluded((200.0, 10.0, -20.0), (-200.0, 10.0, -20.0))


def test_segment_beside_or_short_of_brush_is_clear(box_brush):
    world = BrushGeometry.from_brushes([box_brush((-64, -64, -64), (64, 64, 64))])
    assert not world.test_occluded((-200.0, 100.0, 0.0), (200.0, 100.0, 0.0))
    assert not world.test_occluded((-200.0, 10.0, -20.0), (-100.0, 10.0, -20.0))
    assert not world.test_occluded((5.0, 5.0, 200.0), (5.0, 5.0, 200.0))


def test_glass_and_tool_faces_do_not_occlude(box_brush):
    glass = BrushGeometry.from_brushes(
        [box_brush((-64, -64, -64), (64, 64, 64), material="GLASS/WINDOW001")])
    clip = BrushGeometry.from_brushes(
        [box_brush((-64, -64, -64), (64, 64, 64), material="TOOLS/TOOLSCLIP")])
    nodraw = BrushGeometry.from_brushes(
        [box_brush((-64, -64, -64), (64, 64, 64), material="TOOLS/TOOLSNODRAW")])

    a, b = (-200.0, 10.0, -20.0), (200.0, 10.0, -20.0)
    assert not glass.test_occluded(a, b)
    assert not clip.test_occluded(a, b)
    assert nodraw.test_occluded(a, b)


@pytest.mark.parametrize("material,expected", [
    ("BRICK/BRICKWALL001", True),
    ("glass/glasswindow", False),
    ("tools/toolstrigger", False),
    ("tools/toolsnodraw", True),
    ("tools/pbr_block", True),
])
def test_is_occluding_material(material, expected):
    assert is_occluding_material(material) is expected


def test_non_finite_query_raises(box_brush):
    world = BrushGeometry.from_brushes([box_brush((-64, -64, -64), (64, 64, 64))])
    with pytest.raises(ValueError):
        world.test_occluded((float("nan"), 0.0, 0.0), (0.0, 0.0, 0.0))


@pytest.mark.parametrize("direction", [
    (0.0, 0.0, -1.0), (1.0, 0.0, 0.0), (0.3, -0.4, 0.5),
])
def test_light_basis_is_orthonormal(direction):
    fwd, right, up = light_basis(direction)
    for v in (fwd, right, up):
        assert vec_length(v) == pytest.approx(1.0)
    assert vec_dot(fwd, right) == pytest.approx(0.0, abs=1e-9)
    assert vec_dot(fwd, up) == pytest.approx(0.0, abs=1e-9)
    assert vec_dot(right, up) == pytest.approx(0.0, abs=1e-9)


def test_emitter_sample_points_by_shape(make_light):
    point = make_light("p", (0.0, 0.0, 0.0))
    spot = make_light("s", (0.0, 0.0, 0.0), shape=LightShape.SPOT,
                      direction=(0.0, 0.0, -1.0))
    area = make_light("a", (0.0, 0.0, 100.0), shape=LightShape.AREA,
                      direction=(0.0, 0.0, -1.0), width=64.0, height=32.0)

    assert emitter_sample_points(point) == [(0.0, 0.0, 0.0)]
    assert len(emitter_sample_points(spot)) == 2

    samples = emitter_sample_points(area)
    assert len(samples) == 5
    # Nudged off the emitter plane, toward the lit side
    assert all(p[2] < 100.0 for p in samples)
    xs = [p[0] for p in samples]
    ys = [p[1] for p in samples]
    spans = sorted([max(xs) - min(xs), max(ys) - min(ys)])
    assert spans[0] == pytest.approx(32.0 * 0.9)
    assert spans[1] == pytest.approx(64.0 * 0.9)
