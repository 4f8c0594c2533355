"""
pbr-lut-gen — cluster PBR lights of a VMF and bake their attenuation LUT.

Usage:
    pbr-lut-gen maps/level.vmf --mode analyze-only --dump-clusters
    pbr-lut-gen maps/level.vmf --mode update-assets -o materials/pbr
    pbr-lut-gen maps/level.vmf --mode final --workers 8 --config pbr.json

Modes:
    analyze-only    unify, cluster and score; print diagnostics, write nothing
    update-assets   also write <map>_clusters.json and <map>_lut.tiff
    final           also write <map>_pbr.vmf with func_ggx_* helpers removed
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import os
import signal
import sys
import time

from .clustering import CancellationToken
from .config import ClusterConfig, RunMode, load_config
from .errors import ConfigError, PBRLightError
from .geometry import BrushGeometry
from .pipeline import run_pipeline
from .scoring import dump_clusters, format_cluster_dump
from .vmf_parser import (
    VMFParseError, VMFParser, VMFWriter, extract_light_entities,
    extract_occluder_brushes, strip_pbr_entities,
)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pbr-lut-gen",
        description="Unify Source lights into a PBR model, cluster them with "
                    "raytraced visibility and bake the attenuation LUT")
    parser.add_argument("vmf", help="Path to the source VMF")
    parser.add_argument("--mode", choices=[m.value for m in RunMode],
                        default=RunMode.ANALYZE_ONLY.value,
                        help="What to produce (default: analyze-only)")
    parser.add_argument("--config", default=None,
                        help="JSON file with ClusterConfig overrides")
    parser.add_argument("--workers", type=int, default=0,
                        help="Worker threads for ray queries (0 = auto, "
                             "1 = serial)")
    parser.add_argument("--output-dir", "-o", default=None,
                        help="Where assets are written (default: next to "
                             "the VMF)")
    parser.add_argument("--max-clusters", type=int, default=None,
                        help="Override max_clusters (LUT height)")
    parser.add_argument("--samples", type=int, default=None,
                        help="Override lut_sample_count (LUT width)")
    parser.add_argument("--dump-data", action="store_true",
                        help="Print every unified light")
    parser.add_argument("--dump-clusters", action="store_true",
                        help="Print clusters with members and scores")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print detailed progress")
    return parser


def _resolve_config(args) -> ClusterConfig:
    config = load_config(args.config) if args.config else ClusterConfig()
    overrides = {}
    if args.max_clusters is not None:
        overrides['max_clusters'] = args.max_clusters
    if args.samples is not None:
        overrides['lut_sample_count'] = args.samples
    return dataclasses.replace(config, **overrides).validate()


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    mode = RunMode(args.mode)

    if not os.path.exists(args.vmf):
        print(f"ERROR: VMF file not found: {args.vmf}", file=sys.stderr)
        return 1

    stem = os.path.splitext(os.path.basename(args.vmf))[0]
    output_dir = args.output_dir or os.path.dirname(os.path.abspath(args.vmf))

    print(f"\n{'='*60}")
    print(f"  PBR LUT generator — {os.path.basename(args.vmf)} ({mode.value})")
    print(f"{'='*60}\n")

    t0 = time.perf_counter()
    cancel = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel.cancel())
    try:
        config = _resolve_config(args)
        root = VMFParser().parse_file(args.vmf)
        entities = extract_light_entities(root, verbose=args.verbose)
        geometry = BrushGeometry.from_brushes(extract_occluder_brushes(root),
                                              verbose=args.verbose)
        result = run_pipeline(entities, geometry, config, mode=mode,
                              workers=args.workers, verbose=args.verbose,
                              cancel=cancel)
    except (ConfigError, VMFParseError, PBRLightError, OSError) as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    for diag in result.diagnostics:
        print(f"  ⚠ {diag}", file=sys.stderr)

    if args.dump_data:
        print("\n---------------- Unified lights ----------------")
        for light in result.unified:
            print(light)
        print("-" * 46)

    if args.dump_clusters or mode is RunMode.ANALYZE_ONLY:
        print()
        print(format_cluster_dump(result.clusters, result.scores))

    if result.bake is not None:
        try:
            result.bake.save(output_dir, stem, verbose=True)
            if mode is RunMode.FINAL:
                removed = strip_pbr_entities(root)
                out_vmf = os.path.join(output_dir, f"{stem}_pbr.vmf")
                VMFWriter().write_file(root, out_vmf)
                print(f"  Saved {out_vmf} ({removed} PBR helper entities "
                      f"stripped)")
        except OSError as e:
            print(f"\nERROR: {e}", file=sys.stderr)
            return 1

    elapsed = time.perf_counter() - t0
    print(f"\n  {len(result.unified)} lights → {len(result.clusters)} clusters, "
          f"{len(result.diagnostics)} dropped")
    print(f"  Total: {elapsed:.2f}s")
    print(f"{'='*60}\n")
    return 0


def dump_json(argv=None) -> int:
    """Analyze a VMF and print the cluster dump as JSON on stdout."""
    parser = argparse.ArgumentParser(
        prog="pbr-lut-dump",
        description="Print the cluster dump of a VMF as JSON")
    parser.add_argument("vmf", help="Path to the source VMF")
    parser.add_argument("--config", default=None,
                        help="JSON file with ClusterConfig overrides")
    parser.add_argument("--workers", type=int, default=0)
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config) if args.config else ClusterConfig()
        root = VMFParser().parse_file(args.vmf)
        geometry = BrushGeometry.from_brushes(extract_occluder_brushes(root))
        result = run_pipeline(extract_light_entities(root), geometry, config,
                              workers=args.workers)
    except (ConfigError, VMFParseError, PBRLightError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    json.dump(dump_clusters(result.clusters, result.scores), sys.stdout, indent=2)
    sys.stdout.write('\n')
    return 0


if __name__ == "__main__":
    sys.exit(main())
