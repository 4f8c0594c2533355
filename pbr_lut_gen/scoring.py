"""
Scoring & Diagnostics — fidelity metrics for unified lights and clusters.

Each light is compared with the legacy curve it was fitted to, and each
cluster's baked LUT row with the ideal sum of its members' falloffs. Both
comparisons report:

  energy_error       relative difference of the radial energy ∫ f(d)·d² dd
  falloff_deviation  RMS of the per-sample relative difference
  clipped            effective radius was clamped to the configured range
  saturated          output at the reference distance exceeds the HDR cap

and a single score = 1 / (1 + energy_error + falloff_deviation) in (0, 1].

Nothing here mutates its inputs or touches the level file; the dump can be
produced without ever building a BakeResult.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .clustering import Cluster
from .config import ClusterConfig
from .lights import UnifiedLight

# Relative errors are measured against max(reference, this)
REFERENCE_FLOOR = 1e-12


@dataclass(frozen=True)
class ScoreRecord:
    """Read-only fidelity metrics for one light or one cluster."""
    subject_id: str
    kind: str  # 'light' or 'cluster'
    energy_error: float
    falloff_deviation: float
    clipped: bool
    saturated: bool
    score: float

    def to_dict(self) -> dict:
        return asdict(self)


def _radial_energy(distances: np.ndarray, values: np.ndarray) -> float:
    """Trapezoid integral of values·d² over the sample distances."""
    weighted = values * distances * distances
    steps = np.diff(distances)
    return float(np.sum(steps * (weighted[1:] + weighted[:-1]) * 0.5))


def _compare(distances: np.ndarray, actual: np.ndarray,
             reference: np.ndarray) -> Tuple[float, float]:
    e_ref = _radial_energy(distances, reference)
    e_act = _radial_energy(distances, actual)
    energy_error = abs(e_act - e_ref) / max(abs(e_ref), REFERENCE_FLOOR)

    rel = (actual - reference) / np.maximum(np.abs(reference), REFERENCE_FLOOR)
    deviation = float(np.sqrt(np.mean(rel * rel)))
    return energy_error, deviation


def _score(energy_error: float, deviation: float) -> float:
    total = energy_error + deviation
    if not math.isfinite(total):
        return 0.0
    return 1.0 / (1.0 + total)


def score_light(light: UnifiedLight, config: ClusterConfig) -> ScoreRecord:
    """Compare a unified light with its legacy curve out to its radius.

    Sampling starts one step away from the source because the legacy
    curve is singular at d = 0 when the constant term is zero.
    """
    count = config.lut_sample_count
    radius = light.effective_radius
    distances = np.linspace(radius / count, radius, count)
    unified = light.falloff(distances)
    legacy = light.legacy_falloff(distances)
    energy_error, deviation = _compare(distances, unified, legacy)

    at_ref = float(light.falloff(config.reference_distance))
    return ScoreRecord(
        subject_id=light.id,
        kind='light',
        energy_error=energy_error,
        falloff_deviation=deviation,
        clipped=light.radius_clipped,
        saturated=at_ref > config.saturation_level,
        score=_score(energy_error, deviation),
    )


def ideal_cluster_curve(members: Sequence[UnifiedLight], centroid,
                        distances: np.ndarray) -> np.ndarray:
    """Sum of lit member falloffs as if every member sat on the centroid."""
    total = np.zeros_like(distances, dtype=np.float64)
    for m in sorted(members, key=lambda l: l.id):
        if m.initially_dark:
            continue
        total += m.direction_weight(centroid) * m.falloff(distances)
    return total


def score_cluster(cluster: Cluster, members: Sequence[UnifiedLight],
                  config: ClusterConfig) -> ScoreRecord:
    """Compare a cluster's LUT row with the co-located ideal."""
    distances = np.linspace(0.0, cluster.max_distance, len(cluster.samples))
    row = cluster.samples.astype(np.float64)
    ideal = ideal_cluster_curve(members, cluster.centroid, distances)
    energy_error, deviation = _compare(distances, row, ideal)

    at_ref = float(np.interp(config.reference_distance, distances, row))
    return ScoreRecord(
        subject_id=str(cluster.cluster_id),
        kind='cluster',
        energy_error=energy_error,
        falloff_deviation=deviation,
        clipped=any(m.radius_clipped for m in members),
        saturated=at_ref > config.saturation_level,
        score=_score(energy_error, deviation),
    )


def score_all(lights: Sequence[UnifiedLight], clusters: Sequence[Cluster],
              config: ClusterConfig
              ) -> Tuple[List[ScoreRecord], List[ScoreRecord]]:
    """Score every light (id order) and every cluster (cluster_id order)."""
    by_id: Dict[str, UnifiedLight] = {l.id: l for l in lights}
    light_scores = [score_light(l, config)
                    for l in sorted(lights, key=lambda l: l.id)]
    cluster_scores = [
        score_cluster(c, [by_id[m] for m in c.member_ids], config)
        for c in sorted(clusters, key=lambda c: c.cluster_id)
    ]
    return light_scores, cluster_scores


# ─── Dumps ───────────────────────────────────────────────────────────────────

def _scores_by_subject(scores: Optional[Sequence[ScoreRecord]],
                       kind: str) -> Dict[str, ScoreRecord]:
    return {r.subject_id: r for r in scores or () if r.kind == kind}


def dump_clusters(clusters: Sequence[Cluster],
                  scores: Optional[Sequence[ScoreRecord]] = None) -> List[dict]:
    """Structured listing of every cluster, ordered by cluster_id.

    Records hold cluster_id, member_light_ids, centroid, radius and score
    (None when the cluster was not scored). Plain types only, so the result
    can go straight to json.dump.
    """
    cluster_scores = _scores_by_subject(scores, 'cluster')
    records = []
    for cluster in sorted(clusters, key=lambda c: c.cluster_id):
        record = cluster_scores.get(str(cluster.cluster_id))
        records.append({
            'cluster_id': cluster.cluster_id,
            'member_light_ids': list(cluster.member_ids),
            'centroid': list(cluster.centroid),
            'radius': cluster.radius,
            'score': record.score if record is not None else None,
        })
    return records


def format_cluster_dump(clusters: Sequence[Cluster],
                        scores: Optional[Sequence[ScoreRecord]] = None) -> str:
    """Human-readable version of dump_clusters() with per-light scores."""
    light_scores = _scores_by_subject(scores, 'light')
    lines = []
    for record in dump_clusters(clusters, scores):
        cx, cy, cz = record['centroid']
        score = record['score']
        score_str = f"{score:.4f}" if score is not None else "n/a"
        lines.append("---")
        lines.append(f"Cluster {record['cluster_id']}: "
                     f"centroid ({cx:.1f}, {cy:.1f}, {cz:.1f}) "
                     f"radius {record['radius']:.1f} | Score: {score_str}")
        lines.append(f"   Members (Count: {len(record['member_light_ids'])})")
        for light_id in record['member_light_ids']:
            ls = light_scores.get(light_id)
            if ls is None:
                lines.append(f"     + {light_id}")
                continue
            flags = []
            if ls.clipped:
                flags.append("clipped")
            if ls.saturated:
                flags.append("saturated")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            lines.append(f"     + {light_id:<25} | Score: {ls.score:.4f}{suffix}")
    lines.append("-" * 46)
    return '\n'.join(lines)
