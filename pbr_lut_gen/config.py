"""
Run configuration for the unification and clustering stages.

Defaults mirror the engine conventions the LUT shader relies on: 100-unit
brightness normalisation, a 64..65000 range clamp and a 16x HDR overbright
cap. Every value can be overridden from a JSON file.
"""
from __future__ import annotations

import enum
import json
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Union

from .errors import ConfigError


class RunMode(enum.Enum):
    """Run mode selected by the operator."""
    ANALYZE_ONLY = "analyze-only"     # scoring and dumps, no assets
    UPDATE_ASSETS = "update-assets"   # bake LUTs, leave the level file alone
    FINAL = "final"                   # bake LUTs and patch the level file

    @property
    def bakes(self) -> bool:
        return self is not RunMode.ANALYZE_ONLY


@dataclass(frozen=True)
class ClusterConfig:
    """Tunable parameters for unification, clustering and baking."""
    # Multiplies each light's effective radius to bound the candidate search
    clustering_radius_scale: float = 0.5
    # Minimum unoccluded sample ratio for a cluster edge
    min_visible_fraction: float = 0.5
    # Samples per cluster attenuation curve (one LUT row)
    lut_sample_count: int = 64
    # Falloff cutoff, as a fraction of peak output, defining effective radius
    negligibility_threshold: float = 0.01
    # Hard cap matching the LUT texture height
    max_clusters: int = 256

    # Distance at which legacy and PBR curves are matched (world units)
    reference_distance: float = 100.0
    # ε in intensity / (d² + ε) for a point source (square units)
    point_epsilon: float = 1.0
    # Fallback for zero area-light width/height
    area_epsilon: float = 0.01
    # Below this even the fallback is unusable
    min_area_dimension: float = 1e-6
    # Output level treated as full brightness when solving the radius
    peak_output: float = 1.0
    min_radius: float = 64.0
    max_radius: float = 65000.0
    # Output at reference_distance above which a light or cluster is saturated
    saturation_level: float = 16.0
    # Pair tests dispatched between two cancellation checks
    pair_batch_size: int = 256

    def validate(self) -> "ClusterConfig":
        """Check value ranges. Returns self so calls can be chained."""
        for f in fields(self):
            value = getattr(self, f.name)
            if not math.isfinite(value):
                raise ConfigError(f"{f.name} must be finite, got {value!r}")
        if self.clustering_radius_scale < 0.0:
            raise ConfigError("clustering_radius_scale must be >= 0")
        if not 0.0 < self.min_visible_fraction <= 1.0:
            raise ConfigError("min_visible_fraction must be in (0, 1]")
        if self.lut_sample_count < 2:
            raise ConfigError("lut_sample_count must be at least 2")
        if not 0.0 < self.negligibility_threshold < 1.0:
            raise ConfigError("negligibility_threshold must be in (0, 1)")
        if self.max_clusters < 1:
            raise ConfigError("max_clusters must be at least 1")
        if self.reference_distance <= 0.0:
            raise ConfigError("reference_distance must be > 0")
        if self.point_epsilon <= 0.0:
            raise ConfigError("point_epsilon must be > 0")
        if self.area_epsilon < 0.0 or self.min_area_dimension < 0.0:
            raise ConfigError("area_epsilon and min_area_dimension must be >= 0")
        if self.peak_output <= 0.0:
            raise ConfigError("peak_output must be > 0")
        if not 0.0 < self.min_radius <= self.max_radius:
            raise ConfigError("need 0 < min_radius <= max_radius")
        if self.saturation_level <= 0.0:
            raise ConfigError("saturation_level must be > 0")
        if self.pair_batch_size < 1:
            raise ConfigError("pair_batch_size must be at least 1")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterConfig":
        """Build a validated config, rejecting unknown keys."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"unknown config option(s): {', '.join(unknown)}")
        values = {}
        for key, value in data.items():
            kind = int if known[key].type in (int, "int") else float
            try:
                values[key] = kind(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{key}: {e}") from e
        return cls(**values).validate()

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: Union[str, Path]) -> ClusterConfig:
    """Load a ClusterConfig from a JSON file of option overrides."""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return ClusterConfig.from_dict(data)
