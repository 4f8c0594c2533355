"""
Error taxonomy for light unification, clustering and baking.

Per-light conversion errors are recoverable: the pipeline records them as
diagnostics and drops the light. Clustering and bake errors are structural
and abort the whole run.
"""
from __future__ import annotations

from typing import Optional


class PBRLightError(Exception):
    """Base class for all pipeline errors.

    ``stage`` names the pipeline stage that failed and ``subject`` the light
    or cluster identifier involved, so the message can be shown verbatim.
    """
    kind = "Error"

    def __init__(self, message: str, stage: str = "",
                 subject: Optional[str] = None):
        self.message = message
        self.stage = stage
        self.subject = subject
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        where = f"{self.subject}: " if self.subject is not None else ""
        return f"{prefix}{self.kind}: {where}{self.message}"


class ConfigError(ValueError):
    """Raised when a configuration value is out of range or unknown."""
    pass


# ─── Conversion (per light, recoverable) ─────────────────────────────────────

class ConversionError(PBRLightError):
    """Raised when a legacy light cannot be mapped to a unified light."""
    kind = "ConversionError"

    def __init__(self, message: str, subject: Optional[str] = None):
        super().__init__(message, stage="unify", subject=subject)


class DegenerateGeometryError(ConversionError):
    """Light shape or position cannot be represented physically."""
    kind = "DegenerateGeometry"


class InvalidAttenuationError(ConversionError):
    """Legacy attenuation or brightness produce no usable falloff."""
    kind = "InvalidAttenuation"


class DuplicateLightIdError(ConversionError):
    """A second light reuses an identifier already converted."""
    kind = "DuplicateLightId"


# ─── Clustering (fatal) ──────────────────────────────────────────────────────

class ClusteringError(PBRLightError):
    """Raised when clustering cannot complete for the current run."""
    kind = "ClusteringError"


class GeometryQueryFailed(ClusteringError):
    """The geometry accessor could not answer an occlusion query."""
    kind = "GeometryQueryFailed"


class ClusteringCancelled(ClusteringError):
    """The operator cancelled the run before clustering finished."""
    kind = "Cancelled"


# ─── Baking (fatal) ──────────────────────────────────────────────────────────

class BakeError(PBRLightError):
    """Raised when cluster data cannot be laid out into the LUT."""
    kind = "BakeError"


class ClusterCountExceeded(BakeError):
    """More clusters than the LUT texture has rows."""
    kind = "ClusterCountExceeded"

    def __init__(self, actual: int, maximum: int):
        self.actual = actual
        self.maximum = maximum
        super().__init__(
            f"{actual} clusters produced but the LUT holds at most {maximum}; "
            f"lower clustering_radius_scale or split the scene",
            stage="bake")
