"""PBR light unification, raytraced clustering and LUT baking for VMF levels."""

from .baking import BakeResult, ClusterBakeInfo, MemberLightInfo, build_bake_result
from .clustering import CancellationToken, Cluster, ClusteringEngine, cluster_lights
from .config import ClusterConfig, RunMode, load_config
from .errors import (
    BakeError, ClusterCountExceeded, ClusteringCancelled, ClusteringError,
    ConfigError, ConversionError, DegenerateGeometryError, DuplicateLightIdError,
    GeometryQueryFailed, InvalidAttenuationError, PBRLightError,
)
from .geometry import BrushGeometry
from .lights import (
    Diagnostic, LightEntity, LightShape, UnificationResult, UnifiedLight,
    unify_light, unify_lights,
)
from .pipeline import PipelineResult, run_pipeline
from .scoring import ScoreRecord, dump_clusters, format_cluster_dump, score_all

__version__ = "0.1.0"
