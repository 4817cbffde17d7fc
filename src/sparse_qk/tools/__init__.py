"""Utility helpers and CLI-facing tooling for Sparse QK."""

from .tile_bench import TileBenchConfig, TileBenchResult, TileBenchRunner, PatternTiming

__all__ = [
    "PatternTiming",
    "TileBenchConfig",
    "TileBenchResult",
    "TileBenchRunner",
]
