"""
VMF KeyValues reader/writer plus light and occluder extraction.

VMF files use Valve's KeyValues format: nested blocks of quoted key-value
pairs. The tree is kept lossless so a level can be read, stripped of its
PBR helper entities and written back.

Light entities handled:
    light, light_spot   point and spot lights, opted in with pbr_enabled
    func_ggx_area       brush entity whose bounds define a rectangular emitter

Example entity:
    entity
    {
        "id" "12"
        "classname" "light"
        "origin" "0 0 64"
        "_light" "255 240 200 300"
        "pbr_enabled" "1"
    }
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .geometry import AABB, Vec3, light_basis, vec_dot
from .lights import LightEntity, LightShape

# func_ggx_area emitters are never thinner than this along either axis
MIN_AREA_EXTENT = 1.0

# Direction components this close to zero are snapped to zero
DIRECTION_SNAP = 1e-4

DEFAULT_LIGHT_VALUE = "255 255 255 200"


@dataclass
class KVNode:
    """A block in the KeyValues tree (world, entity, solid, side, ...).

    Children keep file order and are either KVPair or nested KVNode.
    """
    name: str
    children: List[Union[KVPair, KVNode]] = field(default_factory=list)

    def get_property(self, key: str) -> Optional[str]:
        """Value of the first pair named *key* (case-insensitive)."""
        key_lower = key.lower()
        for child in self.children:
            if isinstance(child, KVPair) and child.key.lower() == key_lower:
                return child.value
        return None

    def set_property(self, key: str, value: str) -> None:
        """Set *key*, appending a new pair when it is not present yet."""
        key_lower = key.lower()
        for child in self.children:
            if isinstance(child, KVPair) and child.key.lower() == key_lower:
                child.value = value
                return
        self.children.append(KVPair(key, value))

    def get_children_by_name(self, name: str) -> List[KVNode]:
        return [c for c in self.children
                if isinstance(c, KVNode) and c.name == name]

    @property
    def classname(self) -> str:
        return (self.get_property('classname') or '').lower()


@dataclass
class KVPair:
    """A "key" "value" line."""
    key: str
    value: str


class VMFParseError(Exception):
    """Raised when the VMF text is not valid KeyValues."""
    pass


class VMFParser:
    """Line-oriented KeyValues parser producing a KVNode tree."""

    _pair_re = re.compile(r'"([^"]*)"\s+"([^"]*)"')

    def parse_file(self, filepath: Union[str, Path]) -> KVNode:
        filepath = Path(filepath)
        text = filepath.read_text(encoding='utf-8', errors='replace')
        return self.parse_string(text, str(filepath))

    def parse_string(self, text: str, source: str = "<string>") -> KVNode:
        """Parse VMF text into a synthetic ``__root__`` node."""
        root = KVNode(name="__root__")
        stack: List[KVNode] = [root]
        pending: Optional[Tuple[str, int]] = None

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith('//'):
                continue

            if pending is not None and line != '{':
                raise VMFParseError(
                    f"{source}:{lineno}: expected '{{' after block "
                    f"'{pending[0]}' (line {pending[1]})")

            if line == '{':
                if pending is None:
                    raise VMFParseError(
                        f"{source}:{lineno}: '{{' without a block name")
                node = KVNode(name=pending[0])
                stack[-1].children.append(node)
                stack.append(node)
                pending = None
                continue

            if line == '}':
                if len(stack) == 1:
                    raise VMFParseError(f"{source}:{lineno}: unbalanced '}}'")
                stack.pop()
                continue

            match = self._pair_re.match(line)
            if match:
                stack[-1].children.append(KVPair(match.group(1), match.group(2)))
                continue

            # Block header, either "name" alone or "name {"
            name = line.rstrip('{').strip().strip('"')
            if not name:
                raise VMFParseError(f"{source}:{lineno}: empty block name")
            if line.endswith('{'):
                node = KVNode(name=name)
                stack[-1].children.append(node)
                stack.append(node)
            else:
                pending = (name, lineno)

        if pending is not None:
            raise VMFParseError(
                f"{source}: block '{pending[0]}' (line {pending[1]}) "
                f"has no body")
        if len(stack) != 1:
            raise VMFParseError(
                f"{source}: unexpected end of file inside '{stack[-1].name}'")
        return root


class VMFWriter:
    """Serializes a KVNode tree back to VMF text (tab indented)."""

    def write_file(self, root: KVNode, filepath: Union[str, Path]) -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        filepath.write_text(self.write_string(root), encoding='utf-8')

    def write_string(self, root: KVNode) -> str:
        lines: List[str] = []
        top = root.children if root.name == "__root__" else [root]
        for child in top:
            self._write_element(child, lines, 0)
        return '\n'.join(lines) + '\n'

    def _write_element(self, element: Union[KVNode, KVPair],
                       lines: List[str], depth: int) -> None:
        indent = '\t' * depth
        if isinstance(element, KVPair):
            lines.append(f'{indent}"{element.key}" "{element.value}"')
            return
        lines.append(f'{indent}{element.name}')
        lines.append(f'{indent}{{')
        for child in element.children:
            self._write_element(child, lines, depth + 1)
        lines.append(f'{indent}}}')


# ─── Brushes ─────────────────────────────────────────────────────────────────

@dataclass
class VMFSide:
    """One side of a brush: plane points plus the material on it."""
    id: int
    plane_points: List[Vec3]
    material: str
    vertices: Optional[List[Vec3]] = None  # from vertices_plus


@dataclass
class VMFBrush:
    """A convex solid from the VMF."""
    id: int
    sides: List[VMFSide]

    @property
    def materials(self) -> List[str]:
        return [s.material for s in self.sides]


def _parse_vector(s: str) -> Vec3:
    """Parse a space-separated vector string like '128 64 32'."""
    parts = s.strip().split()
    if len(parts) < 3:
        raise ValueError(f"expected three components, got {s!r}")
    return (float(parts[0]), float(parts[1]), float(parts[2]))


def _parse_plane_points(s: str) -> List[Vec3]:
    """Parse a plane definition like '(0 0 0) (128 0 0) (128 128 0)'."""
    groups = re.findall(r'\(([^)]+)\)', s)
    return [_parse_vector(g) for g in groups[:3]]


def _parse_solid(solid: KVNode) -> Optional[VMFBrush]:
    sides = []
    for side in solid.get_children_by_name('side'):
        plane = side.get_property('plane') or ''
        vertices = None
        vp_nodes = side.get_children_by_name('vertices_plus')
        if vp_nodes:
            vertices = [_parse_vector(c.value) for c in vp_nodes[0].children
                        if isinstance(c, KVPair) and c.key == 'v']
        sides.append(VMFSide(
            id=int(side.get_property('id') or '0'),
            plane_points=_parse_plane_points(plane) if plane else [],
            material=side.get_property('material') or '',
            vertices=vertices,
        ))
    if not sides:
        return None
    return VMFBrush(id=int(solid.get_property('id') or '0'), sides=sides)


def _solids_of(node: KVNode) -> List[VMFBrush]:
    brushes = []
    for solid in node.get_children_by_name('solid'):
        brush = _parse_solid(solid)
        if brush is not None:
            brushes.append(brush)
    return brushes


def entities(root: KVNode) -> List[KVNode]:
    """Top-level entity blocks in file order."""
    return root.get_children_by_name('entity')


def extract_occluder_brushes(root: KVNode) -> List[VMFBrush]:
    """Static geometry that blocks light.

    World solids plus func_detail solids. A func_detail with any glass side
    is skipped entirely; other entities are treated as dynamic and ignored.
    """
    brushes: List[VMFBrush] = []
    for world in root.get_children_by_name('world'):
        brushes.extend(_solids_of(world))

    for ent in entities(root):
        if ent.classname != 'func_detail':
            continue
        for brush in _solids_of(ent):
            if any('glass' in m.lower() for m in brush.materials):
                continue
            brushes.append(brush)
    return brushes


def entity_bounds(ent: KVNode) -> Optional[AABB]:
    """Bounds of every plane point of a brush entity's solids."""
    points: List[Vec3] = []
    for brush in _solids_of(ent):
        for side in brush.sides:
            points.extend(side.plane_points)
    if not points:
        return None
    return AABB.from_points(points)


# ─── Light extraction ────────────────────────────────────────────────────────

def _float_key(ent: KVNode, key: str, default: Optional[float]) -> Optional[float]:
    raw = ent.get_property(key)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _vector_key(ent: KVNode, key: str, default: Vec3) -> Vec3:
    raw = ent.get_property(key)
    if raw is None:
        return default
    try:
        return _parse_vector(raw)
    except ValueError:
        return default


def _parse_light_value(s: str) -> Tuple[Vec3, float]:
    """'_light' value 'r g b brightness' to (color in 0..1, brightness)."""
    parts = []
    for token in s.split():
        try:
            parts.append(float(token))
        except ValueError:
            continue
    if len(parts) < 3:
        return (1.0, 1.0, 1.0), 200.0
    color = (parts[0] / 255.0, parts[1] / 255.0, parts[2] / 255.0)
    brightness = parts[3] if len(parts) >= 4 else 200.0
    return color, brightness


def _angles_to_direction(angles_str: str, pitch: Optional[str] = None) -> Vec3:
    """Convert Hammer 'pitch yaw roll' angles to a direction vector.

    Inside 'angles' a pitch of -90 points up, so it is negated. An explicit
    'pitch' key already uses -90 = down and replaces the angles pitch.
    """
    parts = angles_str.strip().split()
    try:
        ang_pitch = float(parts[0]) if len(parts) > 0 else 0.0
        ang_yaw = float(parts[1]) if len(parts) > 1 else 0.0
    except ValueError:
        ang_pitch, ang_yaw = 0.0, 0.0

    override = None
    if pitch is not None:
        try:
            override = float(pitch)
        except ValueError:
            override = None
    ang_pitch = override if override is not None else -ang_pitch

    pitch_rad = math.radians(ang_pitch)
    yaw_rad = math.radians(ang_yaw)
    direction = (math.cos(pitch_rad) * math.cos(yaw_rad),
                 math.cos(pitch_rad) * math.sin(yaw_rad),
                 math.sin(pitch_rad))
    return tuple(0.0 if abs(c) < DIRECTION_SNAP else c for c in direction)


def sanitize_name(name: str) -> str:
    """Strip characters that are not valid in generated script names."""
    return ''.join(c for c in name if c not in '.- ')


def _light_id(ent: KVNode) -> Tuple[str, bool]:
    targetname = ent.get_property('targetname')
    if targetname:
        return sanitize_name(targetname), True
    return ent.get_property('id') or '0', False


def _area_dimensions(ent: KVNode, direction: Vec3) -> Tuple[Optional[Vec3], float, float]:
    bounds = entity_bounds(ent)
    if bounds is None:
        return None, 0.0, 0.0
    _, right, up = light_basis(direction)
    extent = bounds.extent
    width = abs(vec_dot(extent, tuple(abs(c) for c in right)))
    height = abs(vec_dot(extent, tuple(abs(c) for c in up)))
    return bounds.center, max(width, MIN_AREA_EXTENT), max(height, MIN_AREA_EXTENT)


def _light_from_entity(ent: KVNode) -> LightEntity:
    classname = ent.classname
    light_id, named = _light_id(ent)
    origin = _vector_key(ent, 'origin', (0.0, 0.0, 0.0))
    color, brightness = _parse_light_value(
        ent.get_property('_light') or DEFAULT_LIGHT_VALUE)

    brightness *= _float_key(ent, 'pbr_intensity_scale', 1.0)
    color_override = ent.get_property('pbr_color_override')
    if color_override and color_override.split() != ['-1', '-1', '-1']:
        color, _ = _parse_light_value(color_override)

    try:
        spawnflags = int(ent.get_property('spawnflags') or '0')
    except ValueError:
        spawnflags = 0
    common = dict(
        id=light_id,
        color=color,
        brightness=brightness,
        range_override=_float_key(ent, 'pbr_range_override', None),
        initially_dark=bool(spawnflags & 1),
        named=named,
    )

    if classname == 'func_ggx_area':
        direction = _angles_to_direction(ent.get_property('angles') or '0 0 0')
        center, width, height = _area_dimensions(ent, direction)
        return LightEntity(
            position=center if center is not None else origin,
            shape=LightShape.AREA,
            direction=direction,
            width=width,
            height=height,
            # Area emitters always use plain inverse-square falloff
            constant=0.0, linear=0.0, quadratic=1.0,
            bidirectional=ent.get_property('pbr_bidirectional') == '1',
            **common,
        )

    # Missing keys take the FGD defaults; all zeros means constant only
    c = _float_key(ent, '_constant_attn', 0.0)
    l = _float_key(ent, '_linear_attn', 0.0)
    q = _float_key(ent, '_quadratic_attn', 1.0)
    if c == 0.0 and l == 0.0 and q == 0.0:
        c = 1.0

    fifty = _float_key(ent, '_fifty_percent_distance', None)
    zero = None
    if fifty is not None and fifty > 0.1:
        # Source fades to zero at five times the half distance by default
        zero = _float_key(ent, '_zero_percent_distance', fifty * 5.0)

    attenuation = dict(constant=c, linear=l, quadratic=q,
                       fifty_percent_distance=fifty,
                       zero_percent_distance=zero)

    if classname == 'light_spot':
        return LightEntity(
            position=origin,
            shape=LightShape.SPOT,
            direction=_angles_to_direction(ent.get_property('angles') or '0 0 0',
                                           ent.get_property('pitch')),
            inner_cone=_float_key(ent, '_inner_cone', 30.0),
            outer_cone=_float_key(ent, '_cone', 45.0),
            spot_exponent=_float_key(ent, '_exponent', 1.0),
            **attenuation,
            **common,
        )

    return LightEntity(position=origin, shape=LightShape.POINT,
                       **attenuation, **common)


def extract_light_entities(root: KVNode, verbose: bool = False) -> List[LightEntity]:
    """Build LightEntity records for every PBR-enabled light in the map.

    light and light_spot must opt in with ``pbr_enabled`` set to anything
    but "0"; func_ggx_area entities are always included.
    """
    lights: List[LightEntity] = []
    skipped = 0
    for ent in entities(root):
        classname = ent.classname
        if classname not in ('light', 'light_spot', 'func_ggx_area'):
            continue
        if classname != 'func_ggx_area' and \
                (ent.get_property('pbr_enabled') or '0') == '0':
            skipped += 1
            continue
        lights.append(_light_from_entity(ent))

    if verbose:
        print(f"  Extracted {len(lights)} PBR lights "
              f"({skipped} without pbr_enabled skipped)", flush=True)
    return lights


def strip_pbr_entities(root: KVNode) -> int:
    """Remove func_ggx_* helper entities in place. Returns the count removed."""
    kept = [c for c in root.children
            if not (isinstance(c, KVNode) and c.name == 'entity'
                    and 'func_ggx' in c.classname)]
    removed = len(root.children) - len(kept)
    root.children = kept
    return removed
