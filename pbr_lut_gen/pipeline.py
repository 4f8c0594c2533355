"""
Run orchestration: entities → unified lights → clusters → scores / bake.

    LightEntity list ──unify──▶ UnifiedLight list (+ diagnostics)
                     ──cluster──▶ Cluster tuple
                     ──score──▶ ScoreRecords       (every mode)
                     ──bake──▶ BakeResult          (update-assets, final)
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .baking import BakeResult, build_bake_result
from .clustering import CancellationToken, Cluster, ClusteringEngine
from .config import ClusterConfig, RunMode
from .lights import Diagnostic, LightEntity, UnifiedLight, unify_lights
from .scoring import ScoreRecord, score_all


@dataclass
class PipelineResult:
    """Everything one run produced. ``bake`` is None in analyze-only mode."""
    mode: RunMode
    unified: List[UnifiedLight] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    clusters: Tuple[Cluster, ...] = ()
    light_scores: List[ScoreRecord] = field(default_factory=list)
    cluster_scores: List[ScoreRecord] = field(default_factory=list)
    bake: Optional[BakeResult] = None
    elapsed: float = 0.0

    @property
    def scores(self) -> List[ScoreRecord]:
        return self.light_scores + self.cluster_scores


def run_pipeline(entities: Sequence[LightEntity], geometry,
                 config: Optional[ClusterConfig] = None,
                 mode: RunMode = RunMode.ANALYZE_ONLY,
                 workers: int = 0, verbose: bool = False,
                 cancel: Optional[CancellationToken] = None) -> PipelineResult:
    """Run unification, clustering, scoring and (unless analyzing) baking.

    Conversion problems end up in ``diagnostics``; clustering and bake
    failures propagate as exceptions and nothing partial is returned.
    """
    config = (config or ClusterConfig()).validate()
    t0 = time.perf_counter()

    if verbose:
        print(f"\n[1/4] Unifying {len(entities)} light entities...", flush=True)
    unification = unify_lights(entities, config, verbose=verbose)

    if verbose:
        print("\n[2/4] Raytraced clustering...", flush=True)
    engine = ClusteringEngine(geometry, config, workers=workers,
                              verbose=verbose, cancel=cancel)
    clusters = engine.run(unification.lights)

    if verbose:
        print("\n[3/4] Scoring...", flush=True)
    light_scores, cluster_scores = score_all(unification.lights, clusters, config)

    bake = None
    if mode.bakes:
        if verbose:
            print(f"\n[4/4] Building LUT ({len(clusters)}/{config.max_clusters} "
                  f"rows)...", flush=True)
        bake = build_bake_result(clusters, cluster_scores, config)
    elif verbose:
        print("\n[4/4] Analyze-only: skipping bake", flush=True)

    elapsed = time.perf_counter() - t0
    if verbose:
        print(f"\n  Pipeline finished in {elapsed:.2f}s", flush=True)

    return PipelineResult(
        mode=mode,
        unified=unification.lights,
        diagnostics=unification.diagnostics,
        clusters=clusters,
        light_scores=light_scores,
        cluster_scores=cluster_scores,
        bake=bake,
        elapsed=elapsed,
    )
