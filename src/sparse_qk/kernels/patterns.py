"""
Sparsity pattern selectors and the mask oracle shared by the tile engine.

``allowed`` is the scalar contract used by tests and the detectors;
``build_mask`` produces the same answer for a whole ``(block_m, block_n)``
tile as a boolean tensor so the engine can gate every cell at once.
"""
from __future__ import annotations

from enum import Enum
from typing import Union

import torch

# Width of the left "sink" strip exposed by the A-shape pattern.
ASHAPE_INIT_WIDTH = 4


class PatternType(str, Enum):
    """Attention-head sparsity patterns understood by the engine."""

    DENSE = "dense"
    GRID = "grid"
    ASHAPE = "a_shape"
    VERTICAL_SLASH = "vertical_slash"
    NO_BOUNDARY = "no_boundary"
    K_BOUNDARY = "k_boundary"
    Q_BOUNDARY = "q_boundary"
    TWO_D_BOUNDARY = "2d_boundary"

    @property
    def is_boundary(self) -> bool:
        return self in _BOUNDARY_PATTERNS

    @property
    def uses_stride(self) -> bool:
        return self in (PatternType.GRID, PatternType.ASHAPE, PatternType.VERTICAL_SLASH)


_BOUNDARY_PATTERNS = frozenset(
    {
        PatternType.NO_BOUNDARY,
        PatternType.K_BOUNDARY,
        PatternType.Q_BOUNDARY,
        PatternType.TWO_D_BOUNDARY,
    }
)

PatternLike = Union[PatternType, str]


def resolve_pattern(pattern: PatternLike) -> PatternType:
    """Coerce a selector or its string value into a ``PatternType``."""

    if isinstance(pattern, PatternType):
        return pattern
    try:
        return PatternType(str(pattern).lower())
    except ValueError:
        choices = ", ".join(p.value for p in PatternType)
        raise ValueError(f"Unknown pattern '{pattern}'. Expected one of: {choices}.") from None


def _same_half(i: int, j: int, block_m: int, block_n: int) -> bool:
    return (i >= block_m // 2) == (j >= block_n // 2)


def allowed(
    pattern: PatternLike,
    i: int,
    j: int,
    stride: int,
    phase: int,
    *,
    block_m: int,
    block_n: int,
    init_width: int = ASHAPE_INIT_WIDTH,
) -> bool:
    """Return ``True`` when score cell ``(i, j)`` is exposed by ``pattern``."""

    pattern = resolve_pattern(pattern)
    if pattern in (PatternType.DENSE, PatternType.NO_BOUNDARY):
        return True
    if pattern is PatternType.GRID:
        return i % stride == phase and j % stride == phase
    if pattern is PatternType.ASHAPE:
        return j < init_width or (max(0, i - stride) <= j <= i)
    if pattern is PatternType.VERTICAL_SLASH:
        return j % stride == phase
    if pattern in (PatternType.K_BOUNDARY, PatternType.Q_BOUNDARY):
        return _same_half(i, j, block_m, block_n)
    # TWO_D_BOUNDARY
    half_m, half_n = block_m // 2, block_n // 2
    return (i < half_m and j < half_n) or (i >= half_m and j >= half_n)


def build_mask(
    pattern: PatternLike,
    block_m: int,
    block_n: int,
    stride: int,
    phase: int,
    *,
    init_width: int = ASHAPE_INIT_WIDTH,
    device: Union[torch.device, str, None] = None,
) -> torch.Tensor:
    """Vectorised ``allowed`` over a full tile, shape ``(block_m, block_n)``."""

    pattern = resolve_pattern(pattern)
    rows = torch.arange(block_m, device=device).unsqueeze(1)
    cols = torch.arange(block_n, device=device).unsqueeze(0)

    if pattern in (PatternType.DENSE, PatternType.NO_BOUNDARY):
        return torch.ones(block_m, block_n, dtype=torch.bool, device=device)
    if pattern is PatternType.GRID:
        return (rows % stride == phase) & (cols % stride == phase)
    if pattern is PatternType.ASHAPE:
        band = (cols >= rows - stride) & (cols <= rows)
        return (cols < init_width) | band
    if pattern is PatternType.VERTICAL_SLASH:
        return (cols % stride == phase).repeat(block_m, 1)
    if pattern in (PatternType.K_BOUNDARY, PatternType.Q_BOUNDARY):
        return (rows >= block_m // 2) == (cols >= block_n // 2)
    half_m, half_n = block_m // 2, block_n // 2
    upper = (rows < half_m) & (cols < half_n)
    lower = (rows >= half_m) & (cols >= half_n)
    return upper | lower
