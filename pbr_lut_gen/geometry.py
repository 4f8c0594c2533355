"""
Geometry Accessor — occlusion queries against static level brushes.

VMF brushes are turned into face polygons (vertices_plus when present,
otherwise an oversized winding clipped by the other brush planes) and rays
are tested against the fan-triangulated faces. The accessor is read-only
after construction, so a single instance is shared by all clustering workers.

Anything exposing ``test_occluded(a, b)`` and ``sample_surface(light)`` can
stand in for BrushGeometry.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .vmf_parser import VMFBrush

Vec3 = Tuple[float, float, float]

# ─── Vector math utilities ────────────────────────────────────────────────────

def vec_sub(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])

def vec_add(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])

def vec_scale(v: Vec3, s: float) -> Vec3:
    return (v[0] * s, v[1] * s, v[2] * s)

def vec_dot(a: Vec3, b: Vec3) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]

def vec_cross(a: Vec3, b: Vec3) -> Vec3:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )

def vec_length(v: Vec3) -> float:
    return math.sqrt(v[0] ** 2 + v[1] ** 2 + v[2] ** 2)

def vec_normalize(v: Vec3) -> Vec3:
    l = vec_length(v)
    if l < 1e-10:
        return (0.0, 0.0, 0.0)
    return (v[0] / l, v[1] / l, v[2] / l)

def vec_lerp(a: Vec3, b: Vec3, t: float) -> Vec3:
    return (
        a[0] + (b[0] - a[0]) * t,
        a[1] + (b[1] - a[1]) * t,
        a[2] + (b[2] - a[2]) * t,
    )

def vec_is_finite(v: Sequence[float]) -> bool:
    return len(v) == 3 and all(math.isfinite(c) for c in v)


def light_basis(direction: Vec3) -> Tuple[Vec3, Vec3, Vec3]:
    """(forward, right, up) frame for an emitter facing *direction*.

    Same construction the LUT shader uses, so area light width runs along
    ``right`` and height along ``up``.
    """
    fwd = vec_normalize(direction)
    if fwd == (0.0, 0.0, 0.0):
        fwd = (1.0, 0.0, 0.0)
    up_base = (1.0, 0.0, 0.0) if abs(fwd[2]) > 0.99 else (0.0, 0.0, 1.0)
    right = vec_normalize(vec_cross(fwd, up_base))
    up = vec_normalize(vec_cross(right, fwd))
    return fwd, right, up


# ─── Plane / bounds ───────────────────────────────────────────────────────────

@dataclass
class Plane:
    """A plane defined by normal · point = dist."""
    normal: Vec3
    dist: float

    @staticmethod
    def from_three_points(p0: Vec3, p1: Vec3, p2: Vec3) -> Plane:
        """Create a plane from three points (VMF winding order)."""
        e1 = vec_sub(p1, p0)
        e2 = vec_sub(p2, p0)
        normal = vec_normalize(vec_cross(e1, e2))
        return Plane(normal=normal, dist=vec_dot(normal, p0))

    def distance_to(self, point: Vec3) -> float:
        """Signed distance from point to plane."""
        return vec_dot(self.normal, point) - self.dist


@dataclass
class AABB:
    """Axis-aligned bounding box for fast ray rejection."""
    mins: Vec3
    maxs: Vec3

    @staticmethod
    def from_points(points: Sequence[Vec3]) -> AABB:
        if not points:
            return AABB((0.0, 0.0, 0.0), (0.0, 0.0, 0.0))
        return AABB(
            (min(p[0] for p in points), min(p[1] for p in points),
             min(p[2] for p in points)),
            (max(p[0] for p in points), max(p[1] for p in points),
             max(p[2] for p in points)),
        )

    @property
    def center(self) -> Vec3:
        return vec_scale(vec_add(self.mins, self.maxs), 0.5)

    @property
    def extent(self) -> Vec3:
        return vec_sub(self.maxs, self.mins)

    def ray_intersects(self, origin: Vec3, inv_dir: Vec3,
                       max_dist: float) -> bool:
        """Slab-method ray-AABB test. inv_dir = 1/direction per component."""
        t_min = 0.0
        t_max = max_dist
        for i in range(3):
            if abs(inv_dir[i]) > 1e30:  # ray parallel to slab
                if origin[i] < self.mins[i] or origin[i] > self.maxs[i]:
                    return False
            else:
                t1 = (self.mins[i] - origin[i]) * inv_dir[i]
                t2 = (self.maxs[i] - origin[i]) * inv_dir[i]
                if t1 > t2:
                    t1, t2 = t2, t1
                t_min = max(t_min, t1)
                t_max = min(t_max, t2)
                if t_min > t_max:
                    return False
        return True


@dataclass
class Face:
    """An occluding face polygon."""
    vertices: List[Vec3]
    plane: Plane
    material: str
    side_id: int
    brush_id: int
    bbox: Optional[AABB] = None


# ─── Winding clip (CSG) ──────────────────────────────────────────────────────

CLIP_EPSILON = 0.01


def clip_winding_by_plane(winding: List[Vec3], plane: Plane) -> List[Vec3]:
    """Clip a convex polygon by a plane, keeping the brush interior side.

    VMF plane normals point into the brush, so the kept side is where
    distance_to >= 0.
    """
    if not winding:
        return []

    dists = [plane.distance_to(v) for v in winding]
    n = len(winding)
    result: List[Vec3] = []

    for i in range(n):
        j = (i + 1) % n
        di = dists[i]
        dj = dists[j]

        if di >= -CLIP_EPSILON:
            result.append(winding[i])

        if (di > CLIP_EPSILON and dj < -CLIP_EPSILON) or \
           (di < -CLIP_EPSILON and dj > CLIP_EPSILON):
            t = max(0.0, min(1.0, di / (di - dj)))
            result.append(vec_lerp(winding[i], winding[j], t))

    return result


def _make_base_winding(plane: Plane, size: float = 65536.0) -> List[Vec3]:
    """Create a large quad on the given plane for subsequent clipping."""
    n = plane.normal
    if abs(n[2]) >= abs(n[0]) and abs(n[2]) >= abs(n[1]):
        up = (1.0, 0.0, 0.0)
    else:
        up = (0.0, 0.0, 1.0)

    t_axis = vec_normalize(vec_cross(up, n))
    tangent = vec_scale(t_axis, size)
    bitangent = vec_scale(vec_cross(n, t_axis), size)
    center = vec_scale(n, plane.dist)

    return [
        vec_sub(vec_add(center, tangent), bitangent),
        vec_add(vec_add(center, tangent), bitangent),
        vec_add(vec_sub(center, tangent), bitangent),
        vec_sub(vec_sub(center, tangent), bitangent),
    ]


def build_brush_faces(brush: VMFBrush) -> List[Face]:
    """Convert a VMF brush into a list of Face polygons."""
    planes: List[Plane] = []
    for side in brush.sides:
        if len(side.plane_points) >= 3:
            planes.append(Plane.from_three_points(*side.plane_points[:3]))
        else:
            planes.append(Plane(normal=(0.0, 0.0, 1.0), dist=0.0))

    faces: List[Face] = []
    for i, side in enumerate(brush.sides):
        if side.vertices and len(side.vertices) >= 3:
            verts = list(side.vertices)
        else:
            verts = _make_base_winding(planes[i])
            for j, other_plane in enumerate(planes):
                if i == j:
                    continue
                verts = clip_winding_by_plane(verts, other_plane)
                if len(verts) < 3:
                    break

        if len(verts) < 3:
            continue

        faces.append(Face(
            vertices=verts,
            plane=planes[i],
            material=side.material,
            side_id=side.id,
            brush_id=brush.id,
            bbox=AABB.from_points(verts),
        ))

    return faces


def build_all_faces(brushes: List[VMFBrush]) -> List[Face]:
    """Build face polygons for all brushes."""
    all_faces: List[Face] = []
    for brush in brushes:
        all_faces.extend(build_brush_faces(brush))
    return all_faces


# ─── Ray intersection ────────────────────────────────────────────────────────

def ray_triangle_intersect(origin: Vec3, direction: Vec3,
                           v0: Vec3, v1: Vec3, v2: Vec3,
                           max_dist: float = 1e30) -> Optional[float]:
    """Möller–Trumbore ray-triangle intersection.

    Returns the distance t if hit, or None if no intersection.
    """
    e1 = vec_sub(v1, v0)
    e2 = vec_sub(v2, v0)
    h = vec_cross(direction, e2)
    a = vec_dot(e1, h)

    if -1e-8 < a < 1e-8:
        return None  # Parallel

    f = 1.0 / a
    s = vec_sub(origin, v0)
    u = f * vec_dot(s, h)
    if u < 0.0 or u > 1.0:
        return None

    q = vec_cross(s, e1)
    v = f * vec_dot(direction, q)
    if v < 0.0 or u + v > 1.0:
        return None

    t = f * vec_dot(e2, q)
    if 1e-6 < t < max_dist:
        return t
    return None


def ray_faces_intersect(origin: Vec3, direction: Vec3,
                        faces: List[Face],
                        max_dist: float = 1e30,
                        first_hit: bool = False) -> Optional[float]:
    """Test a ray against face polygons (fan-triangulated).

    Returns the nearest hit distance, or None if no hit. With
    ``first_hit`` the search stops at any hit, which is all an occlusion
    test needs.
    """
    nearest = max_dist
    hit = False

    inv_dir = (
        1.0 / direction[0] if abs(direction[0]) > 1e-10 else 1e31,
        1.0 / direction[1] if abs(direction[1]) > 1e-10 else 1e31,
        1.0 / direction[2] if abs(direction[2]) > 1e-10 else 1e31,
    )

    for face in faces:
        if face.bbox is not None and not face.bbox.ray_intersects(
                origin, inv_dir, nearest):
            continue
        verts = face.vertices
        for i in range(1, len(verts) - 1):
            t = ray_triangle_intersect(
                origin, direction, verts[0], verts[i], verts[i + 1], nearest)
            if t is not None and t < nearest:
                nearest = t
                hit = True
                if first_hit:
                    return nearest

    return nearest if hit else None


# ─── Geometry accessor ───────────────────────────────────────────────────────

# Segments shorter than this are never occluded
MIN_TRACE_DISTANCE = 0.001

# Distance sample points are pushed off an emitter surface
SURFACE_NUDGE = 1.0

# Area-light corner samples are pulled this far toward the centre
CORNER_INSET = 0.1


def is_occluding_material(material: str) -> bool:
    """Glass and tool textures do not block light; nodraw still does."""
    mat = material.lower()
    if 'glass' in mat:
        return False
    if 'tools' in mat and 'nodraw' not in mat and 'pbr_block' not in mat:
        return False
    return True


class BrushGeometry:
    """Read-only occlusion world built from static brush faces."""

    def __init__(self, faces: List[Face], verbose: bool = False):
        self.faces = [f for f in faces if is_occluding_material(f.material)]
        if verbose:
            print(f"  BrushGeometry: {len(self.faces)} occluding faces "
                  f"({len(faces) - len(self.faces)} non-blocking skipped)",
                  flush=True)

    @classmethod
    def from_brushes(cls, brushes: List[VMFBrush],
                     verbose: bool = False) -> BrushGeometry:
        return cls(build_all_faces(brushes), verbose=verbose)

    def test_occluded(self, point_a: Vec3, point_b: Vec3) -> bool:
        """True when an opaque face blocks the segment a→b."""
        if not (vec_is_finite(point_a) and vec_is_finite(point_b)):
            raise ValueError(
                f"non-finite occlusion query {point_a!r} -> {point_b!r}")
        diff = vec_sub(point_b, point_a)
        dist = vec_length(diff)
        if dist < MIN_TRACE_DISTANCE:
            return False
        direction = vec_scale(diff, 1.0 / dist)
        hit = ray_faces_intersect(point_a, direction, self.faces,
                                  max_dist=dist - MIN_TRACE_DISTANCE,
                                  first_hit=True)
        return hit is not None

    def sample_surface(self, light) -> List[Vec3]:
        """Representative emitter points for a unified light."""
        return emitter_sample_points(light)


def emitter_sample_points(light) -> List[Vec3]:
    """Sample points for a light by shape.

    Point lights sample their position. Spots add a point nudged along the
    cone axis. Area lights sample the centre plus inset corners, nudged off
    the emitting face so the emitter's own brush does not occlude them.
    """
    pos = tuple(light.position)
    shape = light.shape.value
    if shape == 'point':
        return [pos]

    fwd, right, up = light_basis(light.direction)
    if shape == 'spot':
        return [pos, vec_add(pos, vec_scale(fwd, SURFACE_NUDGE))]

    half_w = light.width * 0.5 * (1.0 - CORNER_INSET)
    half_h = light.height * 0.5 * (1.0 - CORNER_INSET)
    center = vec_add(pos, vec_scale(fwd, SURFACE_NUDGE))
    points = [center]
    for sw, sh in ((-1, -1), (1, -1), (1, 1), (-1, 1)):
        offset = vec_add(vec_scale(right, sw * half_w), vec_scale(up, sh * half_h))
        points.append(vec_add(center, offset))
    return points
