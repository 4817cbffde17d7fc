"""
Sparse QK package: a tile-level Q x K^T attention engine that skips masked
score cells according to a selected sparsity pattern, folds the exposed
scores into a running (online) softmax, and infers pattern parameters from
activity signatures with the A-shape and vertical-slash detectors.
"""

from .kernels.patterns import PatternType, allowed, build_mask
from .kernels.softmax import AccumulatorState, accumulate, approx_exp
from .kernels.sparse_qk import (
    AttendResult,
    QKResult,
    SparseQKConfig,
    SparseQKEngine,
    tile_dot,
)
from .detectors import (
    AShapePatternDetector,
    AShapeResult,
    DetectorPhase,
    VerticalSlashResult,
    VerticalSlashState,
    VerticalSlashStrideDetector,
)
from .modules import PatternController, PatternParams, PatternSnapshot

__all__ = [
    "AccumulatorState",
    "AShapePatternDetector",
    "AShapeResult",
    "AttendResult",
    "DetectorPhase",
    "PatternController",
    "PatternParams",
    "PatternSnapshot",
    "PatternType",
    "QKResult",
    "SparseQKConfig",
    "SparseQKEngine",
    "VerticalSlashResult",
    "VerticalSlashState",
    "VerticalSlashStrideDetector",
    "accumulate",
    "allowed",
    "approx_exp",
    "build_mask",
    "tile_dot",
    "__version__",
]

__version__ = "0.1.0"
