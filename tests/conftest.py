import pytest

from pbr_lut_gen.config import ClusterConfig
from pbr_lut_gen.lights import LightEntity, unify_light
from pbr_lut_gen.vmf_parser import VMFBrush, VMFSide


class OpenGeometry:
    """Empty level: nothing ever occludes."""

    def test_occluded(self, a, b):
        return False

    def sample_surface(self, light):
        return [light.position]


class WallGeometry:
    """An infinite opaque plane at x = wall_x."""

    def __init__(self, wall_x=0.0):
        self.wall_x = wall_x

    def test_occluded(self, a, b):
        return (a[0] - self.wall_x) * (b[0] - self.wall_x) < 0.0

    def sample_surface(self, light):
        return [light.position]


class FailingGeometry:
    """Accessor whose occlusion queries always blow up."""

    def test_occluded(self, a, b):
        raise RuntimeError("BVH not built")

    def sample_surface(self, light):
        return [light.position]


@pytest.fixture
def config():
    return ClusterConfig()


@pytest.fixture
def make_entity():
    def _make(light_id, position, brightness=200.0, **kwargs):
        return LightEntity(id=light_id, position=position,
                           brightness=brightness, **kwargs)
    return _make


@pytest.fixture
def make_light(config):
    def _make(light_id, position, brightness=200.0, cfg=None, **kwargs):
        entity = LightEntity(id=light_id, position=position,
                             brightness=brightness, **kwargs)
        return unify_light(entity, cfg or config)
    return _make


@pytest.fixture
def open_geometry():
    return OpenGeometry()


@pytest.fixture
def wall_geometry():
    return WallGeometry(0.0)


@pytest.fixture
def failing_geometry():
    return FailingGeometry()


def box_planes(mins, maxs):
    """Hammer-style three-point planes for an axis-aligned box."""
    x0, y0, z0 = mins
    x1, y1, z1 = maxs
    return [
        [(x0, y1, z1), (x1, y1, z1), (x1, y0, z1)],  # top
        [(x0, y0, z0), (x1, y0, z0), (x1, y1, z0)],  # bottom
        [(x0, y1, z1), (x0, y0, z1), (x0, y0, z0)],  # -x
        [(x1, y1, z0), (x1, y0, z0), (x1, y0, z1)],  # +x
        [(x1, y1, z1), (x0, y1, z1), (x0, y1, z0)],  # +y
        [(x1, y0, z0), (x0, y0, z0), (x0, y0, z1)],  # -y
    ]


@pytest.fixture
def box_brush():
    def _make(mins, maxs, material="BRICK/BRICKWALL001", brush_id=1):
        sides = [VMFSide(id=brush_id * 10 + i, plane_points=pts, material=material)
                 for i, pts in enumerate(box_planes(mins, maxs))]
        return VMFBrush(id=brush_id, sides=sides)
    return _make


@pytest.fixture
def box_solid_text():
    def _make(mins, maxs, material="BRICK/BRICKWALL001", solid_id=1, indent="\t"):
        def fmt(p):
            return "(" + " ".join(f"{c:g}" for c in p) + ")"
        lines = [f"{indent}solid", f"{indent}{{", f'{indent}\t"id" "{solid_id}"']
        for i, pts in enumerate(box_planes(mins, maxs)):
            lines += [
                f"{indent}\tside",
                f"{indent}\t{{",
                f'{indent}\t\t"id" "{solid_id * 10 + i}"',
                f'{indent}\t\t"plane" "{" ".join(fmt(p) for p in pts)}"',
                f'{indent}\t\t"material" "{material}"',
                f"{indent}\t}}",
            ]
        lines.append(f"{indent}}}")
        return "\n".join(lines)
    return _make
