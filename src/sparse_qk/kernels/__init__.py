"""Tile kernels: mask oracle, dot engine and running softmax."""

from .patterns import ASHAPE_INIT_WIDTH, PatternType, allowed, build_mask, resolve_pattern
from .softmax import AccumulatorState, accumulate, approx_exp
from .sparse_qk import AttendResult, QKResult, SparseQKConfig, SparseQKEngine, tile_dot

__all__ = [
    "ASHAPE_INIT_WIDTH",
    "AccumulatorState",
    "AttendResult",
    "PatternType",
    "QKResult",
    "SparseQKConfig",
    "SparseQKEngine",
    "accumulate",
    "allowed",
    "approx_exp",
    "build_mask",
    "resolve_pattern",
    "tile_dot",
]
