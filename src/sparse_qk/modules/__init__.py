"""
Glue that feeds detector output back into the tile engine.
"""

from .pattern_ctl import PatternController, PatternParams, PatternSnapshot

__all__ = [
    "PatternController",
    "PatternParams",
    "PatternSnapshot",
]
