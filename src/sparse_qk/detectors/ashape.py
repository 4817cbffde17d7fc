"""
A-shape pattern detection from activity signatures.

The detector never builds the full score matrix.  It only looks at which key
columns the last query row can reach (``Q[M-1, d] != 0 and K[d, j] != 0`` for
some depth ``d``) and then probes the diagonal-adjacent products
``Q[i, j] * K[j, j]`` inside the candidate strip and band.

The leading run of active columns on the last row is the single measurement
behind both guesses:

* ``stride_guess`` is the run clamped to ``max_stride`` (left strip width);
* ``init_guess`` is the run clamped to ``max_init`` (causal band width).

A cell ``(i, j)`` with ``j <= i`` is required to be active iff::

    j < stride_guess  or  j >= max(0, i - init_guess + 1)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import torch

from ..kernels.sparse_qk import check_tile

LOGGER = logging.getLogger(__name__)


@dataclass
class AShapeResult:
    """Detector verdict plus the intermediate measurements."""

    is_ashape: bool
    stride_guess: int
    init_guess: int
    bar_width: int
    bar_width_limited: int
    last_row_active: torch.Tensor


def leading_ones(bits: torch.Tensor) -> int:
    """Length of the run of ``True`` values starting at index 0."""

    inactive = torch.nonzero(~bits.to(torch.bool), as_tuple=True)[0]
    if inactive.numel() == 0:
        return int(bits.numel())
    return int(inactive[0].item())


class AShapePatternDetector:
    """Single-shot detector for causal "A-shape" sparsity."""

    def __init__(
        self,
        block_m: int,
        block_n: int,
        head_dim: int,
        max_stride: int,
        max_init: int,
        data_width: int = 8,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if block_m <= 0 or block_n <= 0 or head_dim <= 0:
            raise ValueError("block_m, block_n and head_dim must be positive.")
        if max_stride < 0 or max_init < 0:
            raise ValueError("max_stride and max_init must be non-negative.")
        if head_dim < min(block_m, block_n):
            raise ValueError(
                f"head_dim={head_dim} must be at least min(block_m, block_n)="
                f"{min(block_m, block_n)} for the diagonal probe."
            )
        self.block_m = block_m
        self.block_n = block_n
        self.head_dim = head_dim
        self.max_stride = max_stride
        self.max_init = max_init
        self.data_width = data_width
        self.logger = logger or LOGGER

    def last_row_activity(self, q: torch.Tensor, k: torch.Tensor) -> torch.Tensor:
        q_nz = q[self.block_m - 1] != 0
        k_nz = k != 0
        return (q_nz.unsqueeze(1) & k_nz).any(dim=0)

    def required_cells(self, stride_guess: int, init_guess: int) -> torch.Tensor:
        """Lower-triangular cells that must be active for the guesses to hold."""

        rows = torch.arange(self.block_m).unsqueeze(1)
        cols = torch.arange(self.block_n).unsqueeze(0)
        band_lo = torch.clamp(rows - init_guess + 1, min=0)
        in_strip = cols < stride_guess
        in_band = cols >= band_lo
        return (cols <= rows) & (in_strip | in_band)

    def detect(self, q: torch.Tensor, k: torch.Tensor) -> AShapeResult:
        q = check_tile(q, (self.block_m, self.head_dim), self.data_width, "q")
        k = check_tile(k, (self.head_dim, self.block_n), self.data_width, "k")

        active = self.last_row_activity(q, k)
        bar_width = leading_ones(active)
        bar_width_limited = min(bar_width, self.max_stride)
        band_width = min(bar_width, self.max_init)

        span = min(self.block_m, self.block_n)
        diag = torch.diagonal(k[:span, :span])
        probe = torch.zeros(self.block_m, self.block_n, dtype=torch.int64)
        probe[:, :span] = q[:, :span] * diag.unsqueeze(0)

        required = self.required_cells(bar_width_limited, band_width)
        violations = required & (probe == 0)
        valid = not bool(violations.any())

        if valid:
            self.logger.debug(
                "A-shape detected: strip=%d band=%d (run=%d)", bar_width_limited, band_width, bar_width
            )
        else:
            first = torch.nonzero(violations)[0].tolist()
            self.logger.debug(
                "A-shape rejected at cell %s (strip=%d band=%d)", tuple(first), bar_width_limited, band_width
            )

        return AShapeResult(
            is_ashape=valid,
            stride_guess=bar_width_limited if valid else 0,
            init_guess=band_width if valid else 0,
            bar_width=bar_width,
            bar_width_limited=bar_width_limited,
            last_row_active=active,
        )

    __call__ = detect
