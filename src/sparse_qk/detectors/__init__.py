"""Online detectors that infer pattern parameters from Q/K activity."""

from .ashape import AShapePatternDetector, AShapeResult
from .vertical_slash import (
    DetectorPhase,
    VerticalSlashOutputs,
    VerticalSlashResult,
    VerticalSlashState,
    VerticalSlashStrideDetector,
)

__all__ = [
    "AShapePatternDetector",
    "AShapeResult",
    "DetectorPhase",
    "VerticalSlashOutputs",
    "VerticalSlashResult",
    "VerticalSlashState",
    "VerticalSlashStrideDetector",
]
