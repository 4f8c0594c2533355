"""
Physics Unification — map legacy light entities onto one PBR falloff model.

Legacy Source lights attenuate as

    brightness / (constant + linear·d + quadratic·d²)

The unified model is an inverse-square source with a finite core,

    intensity / (d² + ε)

where ε = point_epsilon + area/π. The two curves are matched at the
reference distance and the effective radius is the distance at which the
unified output drops to ``negligibility_threshold · peak_output``. A
zero-area emitter gets exactly the point-light ε, so area lights are
continuous with point lights as their dimensions shrink.

Unification is a pure function per light. Failures raise ConversionError;
unify_lights() turns them into diagnostics and keeps going.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import ClusterConfig
from .errors import (
    ConversionError, DegenerateGeometryError, DuplicateLightIdError,
    InvalidAttenuationError,
)
from .geometry import Vec3, vec_dot, vec_is_finite, vec_length, vec_normalize, vec_sub

# Source's _fifty_percent_distance below this is ignored
MIN_FIFTY_PERCENT_DISTANCE = 0.1

# Range overrides at or below this are ignored
MIN_RANGE_OVERRIDE = 0.1


class LightShape(enum.Enum):
    POINT = "point"
    SPOT = "spot"
    AREA = "area"


@dataclass(frozen=True)
class LightEntity:
    """A light as authored in the level editor.

    Cone angles are half-angles from the spot axis, in degrees. Width and
    height only matter for area lights.
    """
    id: str
    position: Vec3
    color: Vec3 = (1.0, 1.0, 1.0)
    brightness: float = 200.0
    constant: float = 0.0
    linear: float = 0.0
    quadratic: float = 1.0
    shape: LightShape = LightShape.POINT
    direction: Vec3 = (0.0, 0.0, -1.0)
    width: float = 0.0
    height: float = 0.0
    inner_cone: float = 30.0
    outer_cone: float = 45.0
    spot_exponent: float = 1.0
    bidirectional: bool = False
    fifty_percent_distance: Optional[float] = None
    zero_percent_distance: Optional[float] = None
    range_override: Optional[float] = None
    initially_dark: bool = False
    named: bool = False


@dataclass(frozen=True)
class UnifiedLight:
    """A light expressed in the unified physical model. Never mutated."""
    id: str
    position: Vec3
    direction: Vec3
    color: Vec3
    shape: LightShape
    intensity: float
    effective_radius: float
    source_epsilon: float
    area: float = 0.0
    width: float = 0.0
    height: float = 0.0
    # Share of ε coming from the emitter area; 0 for point-like sources
    area_fraction: float = 0.0
    falloff_exponent: float = 2.0
    inner_cos: float = 1.0
    outer_cos: float = -1.0
    spot_exponent: float = 1.0
    bidirectional: bool = False
    radius_clipped: bool = False
    brightness: float = 0.0
    legacy_coefficients: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    initially_dark: bool = False

    def falloff(self, distance):
        """Radial output at *distance*; accepts floats or numpy arrays."""
        d = np.asarray(distance, dtype=np.float64)
        return self.intensity / (np.power(d, self.falloff_exponent)
                                 + self.source_epsilon)

    def legacy_falloff(self, distance):
        """The authored legacy curve this light was fitted to."""
        c, l, q = self.legacy_coefficients
        d = np.asarray(distance, dtype=np.float64)
        return self.brightness / (c + l * d + q * d * d)

    @property
    def solid_angle(self) -> float:
        """Mean direction weight over the sphere (1.0 for a point light)."""
        if self.shape is LightShape.SPOT:
            # Linear penumbra, approximated by the mid-cone cap
            return (1.0 - 0.5 * (self.inner_cos + self.outer_cos)) * 0.5
        if self.shape is LightShape.AREA:
            lobe = 0.5 if self.bidirectional else 0.25
            return (1.0 - self.area_fraction) + self.area_fraction * lobe
        return 1.0

    def direction_weight(self, target: Vec3) -> float:
        """Emission weight toward *target* (cone or cosine lobe)."""
        to_target = vec_sub(target, self.position)
        dist = vec_length(to_target)
        if dist < 1e-6:
            return self.solid_angle
        cos_a = vec_dot(self.direction, to_target) / dist

        if self.shape is LightShape.SPOT:
            if cos_a >= self.inner_cos:
                return 1.0
            if cos_a <= self.outer_cos:
                return 0.0
            t = (cos_a - self.outer_cos) / (self.inner_cos - self.outer_cos)
            return t ** self.spot_exponent

        if self.shape is LightShape.AREA:
            lobe = abs(cos_a) if self.bidirectional else max(cos_a, 0.0)
            return (1.0 - self.area_fraction) + self.area_fraction * lobe

        return 1.0


def legacy_attenuation(entity: LightEntity, distance: float) -> float:
    """brightness / (c + l·d + q·d²) with the raw authored coefficients."""
    denom = (entity.constant + entity.linear * distance
             + entity.quadratic * distance * distance)
    if denom <= 0.0:
        raise InvalidAttenuationError(
            f"legacy denominator {denom!r} at d={distance}", subject=entity.id)
    return entity.brightness / denom


def _legacy_coefficients(entity: LightEntity) -> Tuple[float, float, float]:
    d50 = entity.fifty_percent_distance
    if d50 is not None and math.isfinite(d50) and d50 > MIN_FIFTY_PERCENT_DISTANCE:
        # Modern falloff: half brightness at d50
        return 1.0, 0.0, 1.0 / (d50 * d50)

    coeffs = (entity.constant, entity.linear, entity.quadratic)
    if not all(math.isfinite(c) for c in coeffs):
        raise InvalidAttenuationError(
            f"non-finite attenuation {coeffs!r}", subject=entity.id)
    if all(c <= 0.0 for c in coeffs):
        raise InvalidAttenuationError(
            f"all attenuation coefficients are zero or negative {coeffs!r}",
            subject=entity.id)
    c, l, q = (max(v, 0.0) for v in coeffs)
    return c, l, q


def _emitter_dimensions(entity: LightEntity,
                        config: ClusterConfig) -> Tuple[float, float]:
    dims = []
    for name, value in (("width", entity.width), ("height", entity.height)):
        if not math.isfinite(value) or value < 0.0:
            raise DegenerateGeometryError(
                f"area light {name} is {value!r}", subject=entity.id)
        if value <= 0.0:
            value = config.area_epsilon
        if value < config.min_area_dimension or value <= 0.0:
            raise DegenerateGeometryError(
                f"area light {name} {value!r} is below the minimum "
                f"{config.min_area_dimension!r} even after epsilon fallback",
                subject=entity.id)
        dims.append(value)
    return dims[0], dims[1]


def unify_light(entity: LightEntity, config: ClusterConfig) -> UnifiedLight:
    """Convert one LightEntity into a UnifiedLight.

    Raises:
        DegenerateGeometryError: position, direction or area dimensions
            cannot be represented
        InvalidAttenuationError: brightness or legacy coefficients give no
            usable falloff
    """
    if not vec_is_finite(entity.position):
        raise DegenerateGeometryError(
            f"non-finite position {entity.position!r}", subject=entity.id)
    if not math.isfinite(entity.brightness) or entity.brightness <= 0.0:
        raise InvalidAttenuationError(
            f"brightness must be positive, got {entity.brightness!r}",
            subject=entity.id)

    c, l, q = _legacy_coefficients(entity)

    direction = (0.0, 0.0, -1.0)
    if entity.shape is not LightShape.POINT:
        if not vec_is_finite(entity.direction) or \
                vec_length(entity.direction) < 1e-6:
            raise DegenerateGeometryError(
                f"{entity.shape.value} light needs a direction, got "
                f"{entity.direction!r}", subject=entity.id)
        direction = vec_normalize(entity.direction)

    width = height = area = 0.0
    if entity.shape is LightShape.AREA:
        width, height = _emitter_dimensions(entity, config)
        area = width * height

    area_term = area / math.pi
    eps = config.point_epsilon + area_term

    # Match legacy output at the reference distance
    ref = config.reference_distance
    legacy_ref = entity.brightness / (c + l * ref + q * ref * ref)
    intensity = legacy_ref * (ref * ref + eps)

    cutoff = config.negligibility_threshold * config.peak_output
    r_sq = intensity / cutoff - eps
    radius = math.sqrt(r_sq) if r_sq > 0.0 else 0.0

    zero_pct = entity.zero_percent_distance
    if zero_pct is not None and math.isfinite(zero_pct) and zero_pct > 0.0:
        radius = zero_pct
    override = entity.range_override
    if override is not None and math.isfinite(override) and \
            override > MIN_RANGE_OVERRIDE:
        radius = override

    clamped = min(max(radius, config.min_radius), config.max_radius)
    clipped = clamped != radius

    inner_cos, outer_cos, exponent = 1.0, -1.0, 1.0
    if entity.shape is LightShape.SPOT:
        cone = (entity.inner_cone, entity.outer_cone, entity.spot_exponent)
        if not all(math.isfinite(v) for v in cone):
            raise DegenerateGeometryError(
                f"non-finite spot cone {cone!r}", subject=entity.id)
        outer = min(max(entity.outer_cone, 0.0), 180.0)
        inner = min(max(entity.inner_cone, 0.0), outer)
        inner_cos = math.cos(math.radians(inner))
        outer_cos = math.cos(math.radians(outer))
        exponent = max(entity.spot_exponent, 0.0)

    return UnifiedLight(
        id=entity.id,
        position=tuple(float(v) for v in entity.position),
        direction=direction,
        color=tuple(float(v) for v in entity.color),
        shape=entity.shape,
        intensity=intensity,
        effective_radius=clamped,
        source_epsilon=eps,
        area=area,
        width=width,
        height=height,
        area_fraction=area_term / eps,
        inner_cos=inner_cos,
        outer_cos=outer_cos,
        spot_exponent=exponent,
        bidirectional=entity.bidirectional,
        radius_clipped=clipped,
        brightness=entity.brightness,
        legacy_coefficients=(c, l, q),
        initially_dark=entity.initially_dark,
    )


# ─── Batch conversion with diagnostics ───────────────────────────────────────

@dataclass(frozen=True)
class Diagnostic:
    """A recoverable problem recorded instead of aborting the run."""
    light_id: str
    stage: str
    kind: str
    message: str

    @staticmethod
    def from_error(err: ConversionError) -> Diagnostic:
        return Diagnostic(light_id=str(err.subject), stage=err.stage,
                          kind=err.kind, message=err.message)

    def __str__(self) -> str:
        return f"[{self.stage}] {self.kind}: {self.light_id}: {self.message}"


@dataclass
class UnificationResult:
    """Converted lights plus the diagnostics for every dropped light."""
    lights: List[UnifiedLight] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)


def unify_lights(entities: Sequence[LightEntity], config: ClusterConfig,
                 verbose: bool = False) -> UnificationResult:
    """Convert every entity, dropping (and reporting) the unusable ones."""
    result = UnificationResult()
    seen = set()
    for entity in entities:
        try:
            if entity.id in seen:
                raise DuplicateLightIdError(
                    "identifier already used by an earlier light",
                    subject=entity.id)
            light = unify_light(entity, config)
        except ConversionError as e:
            result.diagnostics.append(Diagnostic.from_error(e))
            if verbose:
                print(f"  ⚠ dropped light: {e}", flush=True)
            continue
        seen.add(entity.id)
        result.lights.append(light)

    if verbose:
        print(f"  Unified {len(result.lights)} lights "
              f"({len(result.diagnostics)} dropped)", flush=True)
    return result
