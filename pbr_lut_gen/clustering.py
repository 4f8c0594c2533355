"""
Raytraced Clustering — group unified lights into LUT clusters.

Two lights close in space but separated by a wall must never share a
cluster, so candidate pairs from the spatial grid are gated by occlusion
queries against the level geometry before they are merged.

Stages:
  1. Candidate pairs: lights whose reach ratio, distance divided by the
     smaller effective radius, is at most clustering_radius_scale. They are
     found through a hashed grid over light indices.
  2. Visibility gating: each pair traces every (sample_a, sample_b)
     segment; the pair is eligible when the unoccluded fraction reaches
     min_visible_fraction. Pair tests run on a worker pool in batches.
  3. Merge: a single-threaded union-find walks the eligible pairs by
     ascending reach ratio (ties: sorted ids). Two groups merge only when
     every cross pair has already been walked, so every pair inside a
     cluster is an eligible pair and no extra occlusion queries are issued.
     Nothing is merged while tests are in flight.
  4. Ordering: clusters are indexed by centroid (x, y, z), then first id.
  5. Sampling: each cluster's combined falloff is sampled at
     lut_sample_count distances from its centroid, also on the pool.

The candidate set for a given scale is a prefix of the walk order, so a
larger scale only extends the walk and clusters never shrink.

A run either returns every cluster or raises; there is no partial output.
"""
from __future__ import annotations

import math
import os
import threading
import time
from dataclasses import dataclass, field
from multiprocessing.pool import ThreadPool
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from .config import ClusterConfig
from .errors import ClusteringCancelled, ClusteringError, GeometryQueryFailed
from .geometry import Vec3, vec_length, vec_sub
from .lights import UnifiedLight

# Below this many work items the pool is not worth the dispatch cost
SERIAL_THRESHOLD = 50

Pair = Tuple[int, int]


def default_worker_count() -> int:
    return max(1, (os.cpu_count() or 4) - 2)


# ─── Spatial grid over the light arena ───────────────────────────────────────

class SpatialGrid:
    """Spatial hash mapping grid cells to indices into a position list."""

    def __init__(self, positions: Sequence[Vec3], cell_size: float):
        self.cell_size = cell_size
        self.positions = positions
        self.cells: Dict[Tuple[int, int, int], List[int]] = {}

        for idx, pos in enumerate(positions):
            self.cells.setdefault(self._hash(pos), []).append(idx)

    def _hash(self, pos: Vec3) -> Tuple[int, int, int]:
        return (
            int(math.floor(pos[0] / self.cell_size)),
            int(math.floor(pos[1] / self.cell_size)),
            int(math.floor(pos[2] / self.cell_size)),
        )

    def query_nearby(self, pos: Vec3, radius: float) -> List[int]:
        """Return sorted indices of positions within *radius* of *pos*."""
        r_cells = int(math.ceil(radius / self.cell_size))
        cx, cy, cz = self._hash(pos)

        if (2 * r_cells + 1) ** 3 > len(self.cells):
            # Window larger than the occupied grid: walk occupied cells
            cells = [c for c in self.cells
                     if abs(c[0] - cx) <= r_cells and abs(c[1] - cy) <= r_cells
                     and abs(c[2] - cz) <= r_cells]
        else:
            cells = [(cx + dx, cy + dy, cz + dz)
                     for dx in range(-r_cells, r_cells + 1)
                     for dy in range(-r_cells, r_cells + 1)
                     for dz in range(-r_cells, r_cells + 1)]

        r_sq = radius * radius
        result = []
        for cell in cells:
            for idx in self.cells.get(cell, ()):
                p = self.positions[idx]
                dx = p[0] - pos[0]
                dy = p[1] - pos[1]
                dz = p[2] - pos[2]
                if dx * dx + dy * dy + dz * dz <= r_sq:
                    result.append(idx)
        result.sort()
        return result


# ─── Union-find ──────────────────────────────────────────────────────────────

class UnionFind:
    """Array-backed disjoint sets; the smaller index always becomes root."""

    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, x: int) -> int:
        parent = self.parent
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra

    def components(self) -> List[List[int]]:
        """Disjoint sets as sorted index lists, ordered by smallest member."""
        groups: Dict[int, List[int]] = {}
        for idx in range(len(self.parent)):
            groups.setdefault(self.find(idx), []).append(idx)
        return sorted(groups.values(), key=lambda g: g[0])


# ─── Cancellation ────────────────────────────────────────────────────────────

class CancellationToken:
    """Cooperative cancel flag shared between the operator and the engine."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise ClusteringCancelled("run cancelled by operator", stage=stage)


# ─── Data records ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VisibilitySample:
    """One occlusion test between two world positions."""
    occluded: bool
    distance: float


@dataclass(frozen=True)
class PairResult:
    """Aggregated visibility between two lights (indices into the arena)."""
    a: int
    b: int
    visible: int
    total: int

    @property
    def fraction(self) -> float:
        return self.visible / self.total if self.total else 0.0


@dataclass(frozen=True, eq=False)
class Cluster:
    """A finalized group of mutually visible, nearby lights."""
    cluster_id: int
    member_ids: Tuple[str, ...]
    centroid: Vec3
    radius: float
    # Combined falloff at sample_spacing steps from the centroid (one LUT row)
    samples: np.ndarray = field(repr=False)
    sample_spacing: float
    max_distance: float
    # Member lights in member_ids order
    members: Tuple[UnifiedLight, ...] = field(default=(), repr=False)

    @property
    def size(self) -> int:
        return len(self.member_ids)


def centroid_of(points: Sequence[Vec3]) -> Vec3:
    """Mean position, summed in the given order."""
    n = len(points)
    sx = sy = sz = 0.0
    for p in points:
        sx += p[0]
        sy += p[1]
        sz += p[2]
    return (sx / n, sy / n, sz / n)


def sample_cluster_attenuation(members: Sequence[UnifiedLight],
                               centroid: Vec3, radius: float,
                               count: int) -> Tuple[np.ndarray, float, float]:
    """Sample the combined falloff of *members* around *centroid*.

    Samples sit at ``count`` evenly spaced distances over
    [0, radius + largest member effective radius]. A member at offset o from
    the centroid contributes ``I·w / (s² + |o|² + ε)``: |o|² + s² is the
    mean squared distance from the member to the sphere of radius s around
    the centroid, and w is the member's emission weight toward the centroid.
    Initially dark members are switched on at runtime and add nothing to
    the baked curve.

    Returns (samples as float32, sample spacing, max distance).
    """
    max_distance = radius + max(m.effective_radius for m in members)
    distances = np.linspace(0.0, max_distance, count, dtype=np.float64)
    total = np.zeros(count, dtype=np.float64)
    for m in sorted(members, key=lambda l: l.id):
        if m.initially_dark:
            continue
        offset = vec_sub(m.position, centroid)
        offset_sq = offset[0] ** 2 + offset[1] ** 2 + offset[2] ** 2
        weight = m.direction_weight(centroid)
        total += weight * m.intensity / (
            np.power(distances, m.falloff_exponent) + offset_sq
            + m.source_epsilon)
    spacing = max_distance / (count - 1)
    return total.astype(np.float32), spacing, max_distance


# ─── Engine ──────────────────────────────────────────────────────────────────

class ClusteringEngine:
    """Partition unified lights into deterministic, visibility-gated clusters.

    ``geometry`` is any accessor with ``test_occluded(a, b)`` and
    ``sample_surface(light)``; it is shared read-only by all workers.
    """

    def __init__(self, geometry, config: ClusterConfig, workers: int = 0,
                 verbose: bool = False,
                 cancel: Optional[CancellationToken] = None):
        self.geometry = geometry
        self.config = config
        self.workers = workers if workers > 0 else default_worker_count()
        self.verbose = verbose
        self.cancel = cancel or CancellationToken()
        self._pool: Optional[ThreadPool] = None
        self._lights: List[UnifiedLight] = []
        self._samples: List[List[Vec3]] = []
        self.pair_results: Dict[Pair, PairResult] = {}

    # ─── Public entry point ──────────────────────────────────────────────

    def run(self, lights: Sequence[UnifiedLight]) -> Tuple[Cluster, ...]:
        """Cluster *lights* and sample every cluster's attenuation curve."""
        self.pair_results = {}
        if not lights:
            return ()

        t0 = time.perf_counter()
        arena = sorted(lights, key=lambda l: l.id)
        for prev, cur in zip(arena, arena[1:]):
            if prev.id == cur.id:
                raise ClusteringError("light id appears twice",
                                      stage="cluster", subject=cur.id)
        self._lights = arena

        try:
            self.cancel.raise_if_cancelled("cluster")
            self._samples = [self._surface_samples(l) for l in arena]

            pairs = self.candidate_pairs(arena)
            if self.verbose:
                print(f"  Clustering {len(arena)} lights: "
                      f"{len(pairs)} candidate pairs "
                      f"({self.workers} workers)", flush=True)

            results = self._test_pairs(pairs, stage="visibility")
            self.pair_results = results
            eligible = [pair for pair in pairs if self._eligible(results[pair])]
            groups = self._merge(eligible)

            ordered = self._order_groups(groups)
            clusters = self._map(self._sample_group, list(enumerate(ordered)))
            self.cancel.raise_if_cancelled("sampling")
        finally:
            self._close_pool()

        if self.verbose:
            singles = sum(1 for c in clusters if c.size == 1)
            print(f"  Formed {len(clusters)} clusters ({singles} singletons) "
                  f"in {time.perf_counter() - t0:.2f}s", flush=True)
        return tuple(clusters)

    # ─── Candidate generation ────────────────────────────────────────────

    def reach_ratio(self, a: UnifiedLight, b: UnifiedLight) -> float:
        """Distance between two lights over the smaller effective radius."""
        dist = vec_length(vec_sub(b.position, a.position))
        return dist / min(a.effective_radius, b.effective_radius)

    def candidate_pairs(self, lights: Sequence[UnifiedLight]) -> List[Pair]:
        """Index pairs with reach ratio <= scale, in merge walk order.

        The walk order is ascending reach ratio, then index pair. It does not
        depend on the scale, so the pairs for a smaller scale are always a
        prefix of the pairs for a larger one.
        """
        scale = self.config.clustering_radius_scale
        if scale <= 0.0 or len(lights) < 2:
            return []

        reach = [scale * l.effective_radius for l in lights]
        cell_size = max(float(np.median(reach)), 1.0)
        grid = SpatialGrid([l.position for l in lights], cell_size)

        keyed: List[Tuple[float, int, int]] = []
        for i, light in enumerate(lights):
            # Slightly wider query so rounding never hides a pair at the limit
            for j in grid.query_nearby(light.position, reach[i] * (1.0 + 1e-9)):
                if j <= i:
                    continue
                ratio = self.reach_ratio(light, lights[j])
                if ratio <= scale:
                    keyed.append((ratio, i, j))
        keyed.sort()
        return [(i, j) for _, i, j in keyed]

    # ─── Visibility ──────────────────────────────────────────────────────

    def _eligible(self, result: PairResult) -> bool:
        return result.total > 0 and \
            result.fraction >= self.config.min_visible_fraction

    def _surface_samples(self, light: UnifiedLight) -> List[Vec3]:
        try:
            points = [tuple(p) for p in self.geometry.sample_surface(light)]
        except Exception as e:
            raise GeometryQueryFailed(f"surface sampling failed: {e}",
                                      stage="visibility", subject=light.id) from e
        if not points:
            points = [light.position]
        return points

    def trace_pair(self, a: int, b: int) -> List[VisibilitySample]:
        """Occlusion samples for every (sample_a, sample_b) combination."""
        out: List[VisibilitySample] = []
        for pa in self._samples[a]:
            for pb in self._samples[b]:
                try:
                    occluded = bool(self.geometry.test_occluded(pa, pb))
                except Exception as e:
                    raise GeometryQueryFailed(
                        f"occlusion query {pa} -> {pb} failed: {e}",
                        stage="visibility",
                        subject=f"{self._lights[a].id}/{self._lights[b].id}",
                    ) from e
                out.append(VisibilitySample(occluded, vec_length(vec_sub(pb, pa))))
        return out

    def _pair_worker(self, pair: Pair) -> PairResult:
        samples = self.trace_pair(*pair)
        visible = sum(1 for s in samples if not s.occluded)
        return PairResult(pair[0], pair[1], visible, len(samples))

    def _test_pairs(self, pairs: List[Pair], stage: str) -> Dict[Pair, PairResult]:
        """Trace *pairs* in batches, checking for cancellation in between."""
        results: Dict[Pair, PairResult] = {}
        batch_size = self.config.pair_batch_size
        for start in range(0, len(pairs), batch_size):
            self.cancel.raise_if_cancelled(stage)
            for r in self._map(self._pair_worker, pairs[start:start + batch_size]):
                results[(r.a, r.b)] = r
        self.cancel.raise_if_cancelled(stage)
        return results

    # ─── Grouping ────────────────────────────────────────────────────────

    def _merge(self, eligible: List[Pair]) -> List[List[int]]:
        """Complete-linkage merge over eligible pairs in walk order.

        Two groups join only when every cross pair is an eligible pair
        already walked, so all members of a group are mutually visible.
        A light eligible for several groups joins the one it reaches first,
        which is the nearest relative to the lights' radii.
        """
        uf = UnionFind(len(self._lights))
        members: Dict[int, List[int]] = {}
        walked: Set[Pair] = set()
        for a, b in eligible:
            walked.add((a, b))
            ra, rb = uf.find(a), uf.find(b)
            if ra == rb:
                continue
            group_a = members.get(ra, [ra])
            group_b = members.get(rb, [rb])
            if not all((min(p, q), max(p, q)) in walked
                       for p in group_a for q in group_b):
                continue
            uf.union(ra, rb)
            members.pop(ra, None)
            members.pop(rb, None)
            members[uf.find(ra)] = sorted(group_a + group_b)
        return uf.components()

    def _order_groups(self, groups: List[List[int]]
                      ) -> List[Tuple[List[int], Vec3, float]]:
        lights = self._lights
        described = []
        for group in groups:
            positions = [lights[m].position for m in group]
            center = centroid_of(positions)
            radius = max(vec_length(vec_sub(p, center)) for p in positions)
            described.append((group, center, radius))
        described.sort(key=lambda d: (d[1][0], d[1][1], d[1][2],
                                      lights[d[0][0]].id))
        return described

    def _sample_group(self, item) -> Cluster:
        cluster_id, (group, center, radius) = item
        self.cancel.raise_if_cancelled("sampling")
        members = [self._lights[m] for m in group]
        samples, spacing, max_distance = sample_cluster_attenuation(
            members, center, radius, self.config.lut_sample_count)
        samples.setflags(write=False)
        return Cluster(
            cluster_id=cluster_id,
            member_ids=tuple(m.id for m in members),
            centroid=center,
            radius=radius,
            samples=samples,
            sample_spacing=spacing,
            max_distance=max_distance,
            members=tuple(members),
        )

    # ─── Worker pool ─────────────────────────────────────────────────────

    def _map(self, func: Callable, items: List) -> List:
        """Ordered map, on the pool unless the work is small or serial."""
        if self.workers == 1 or len(items) < SERIAL_THRESHOLD:
            return [func(item) for item in items]
        if self._pool is None:
            self._pool = ThreadPool(processes=self.workers)
        return self._pool.map(func, items)

    def _close_pool(self) -> None:
        if self._pool is not None:
            self._pool.terminate()
            self._pool.join()
            self._pool = None


def cluster_lights(lights: Sequence[UnifiedLight], geometry,
                   config: ClusterConfig, workers: int = 0,
                   verbose: bool = False,
                   cancel: Optional[CancellationToken] = None
                   ) -> Tuple[Cluster, ...]:
    """Convenience wrapper around ClusteringEngine.run()."""
    engine = ClusteringEngine(geometry, config, workers=workers,
                              verbose=verbose, cancel=cancel)
    return engine.run(lights)
