"""
Baking Output Builder — lay finalized clusters out as LUT rows.

The LUT is a fixed-size float texture: one row per cluster (row index =
cluster_id), lut_sample_count columns of attenuation samples. Rows past the
last cluster are zero. The builder is pure: it either returns a complete
BakeResult or raises ClusterCountExceeded before producing anything.
"""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from .clustering import Cluster
from .config import ClusterConfig
from .errors import ClusterCountExceeded
from .geometry import Vec3
from .lights import UnifiedLight
from .scoring import ScoreRecord


@dataclass(frozen=True)
class MemberLightInfo:
    """Runtime parameters of one light inside a LUT row.

    Initially dark lights are listed but contribute nothing to the baked
    row; the runtime adds them when they are switched on.
    """
    id: str
    position: Vec3
    direction: Vec3
    color: Vec3
    shape: str
    intensity: float
    effective_radius: float
    source_epsilon: float    # ε in intensity / (d² + ε)
    inner_cos: float
    outer_cos: float
    spot_exponent: float
    width: float
    height: float
    bidirectional: bool
    initially_dark: bool

    @staticmethod
    def from_light(light: UnifiedLight) -> MemberLightInfo:
        return MemberLightInfo(
            id=light.id,
            position=light.position,
            direction=light.direction,
            color=light.color,
            shape=light.shape.value,
            intensity=light.intensity,
            effective_radius=light.effective_radius,
            source_epsilon=light.source_epsilon,
            inner_cos=light.inner_cos,
            outer_cos=light.outer_cos,
            spot_exponent=light.spot_exponent,
            width=light.width,
            height=light.height,
            bidirectional=light.bidirectional,
            initially_dark=light.initially_dark,
        )


@dataclass(frozen=True)
class ClusterBakeInfo:
    """Per-row metadata the shader side needs to decode a LUT row."""
    cluster_id: int
    member_ids: Tuple[str, ...]
    centroid: Vec3
    radius: float
    sample_spacing: float    # world units between adjacent samples
    max_distance: float      # distance of the last sample
    peak: float              # largest sample in the row
    score: Optional[float]
    members: Tuple[MemberLightInfo, ...] = ()


@dataclass(frozen=True, eq=False)
class BakeResult:
    """Sampled attenuation curves for every cluster, indexed by cluster_id."""
    samples: np.ndarray                # (cluster count, sample count) float32
    infos: Tuple[ClusterBakeInfo, ...]
    capacity: int                      # texture height (max_clusters)

    @property
    def cluster_count(self) -> int:
        return len(self.infos)

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[1])

    def texture(self) -> np.ndarray:
        """The full capacity × sample_count texture, zero padded."""
        tex = np.zeros((self.capacity, self.sample_count), dtype=np.float32)
        tex[:self.cluster_count] = self.samples
        return tex

    def lut_image(self) -> Image.Image:
        """The texture as a single-channel 32-bit float Pillow image."""
        return Image.fromarray(self.texture())

    def metadata(self) -> dict:
        return {
            "capacity": self.capacity,
            "sample_count": self.sample_count,
            "cluster_count": self.cluster_count,
            "clusters": [
                dict(asdict(info), member_ids=list(info.member_ids),
                     centroid=list(info.centroid))
                for info in self.infos
            ],
        }

    def save(self, output_dir: Union[str, Path], stem: str,
             verbose: bool = False) -> Tuple[Path, Path]:
        """Write <stem>_clusters.json and <stem>_lut.tiff into output_dir."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        json_path = output_dir / f"{stem}_clusters.json"
        lut_path = output_dir / f"{stem}_lut.tiff"

        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(self.metadata(), f, indent=2)
        self.lut_image().save(lut_path)

        if verbose:
            size_kb = os.path.getsize(lut_path) / 1024
            print(f"  Saved {json_path}", flush=True)
            print(f"  Saved {lut_path} ({size_kb:.1f} KB, "
                  f"{self.cluster_count}/{self.capacity} rows used)", flush=True)
        return json_path, lut_path


def build_bake_result(clusters: Sequence[Cluster],
                      scores: Optional[Sequence[ScoreRecord]],
                      config: ClusterConfig) -> BakeResult:
    """Assemble the LUT rows for *clusters*.

    Raises:
        ClusterCountExceeded: more clusters than config.max_clusters
    """
    if len(clusters) > config.max_clusters:
        raise ClusterCountExceeded(len(clusters), config.max_clusters)

    by_score: Dict[str, ScoreRecord] = {
        r.subject_id: r for r in scores or () if r.kind == 'cluster'}
    ordered = sorted(clusters, key=lambda c: c.cluster_id)

    count = config.lut_sample_count
    samples = np.zeros((len(ordered), count), dtype=np.float32)
    infos = []
    for row, cluster in enumerate(ordered):
        if cluster.cluster_id != row:
            raise ValueError(
                f"cluster ids must be 0..n-1 without gaps, got "
                f"{cluster.cluster_id} at row {row}")
        if len(cluster.samples) != count:
            raise ValueError(
                f"cluster {cluster.cluster_id} has {len(cluster.samples)} "
                f"samples, expected {count}")
        samples[row] = cluster.samples
        record = by_score.get(str(cluster.cluster_id))
        infos.append(ClusterBakeInfo(
            cluster_id=cluster.cluster_id,
            member_ids=cluster.member_ids,
            centroid=cluster.centroid,
            radius=cluster.radius,
            sample_spacing=cluster.sample_spacing,
            max_distance=cluster.max_distance,
            peak=float(cluster.samples.max()),
            score=record.score if record is not None else None,
            members=tuple(MemberLightInfo.from_light(m) for m in cluster.members),
        ))

    return BakeResult(samples=samples, infos=tuple(infos),
                      capacity=config.max_clusters)
