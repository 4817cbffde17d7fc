"""
Pattern-aware Q x K^T tile engine.

The engine evaluates a ``(block_m, head_dim) x (head_dim, block_n)`` integer
tile product under one of the sparsity patterns from
:mod:`sparse_qk.kernels.patterns`.  Masked cells are never reported: the
output tile carries an exact zero there.  Two entry points are exposed:

* :meth:`SparseQKEngine.compute` returns the raw (masked) score tile.
* :meth:`SparseQKEngine.attend` additionally folds the exposed scores into a
  caller-owned :class:`~sparse_qk.kernels.softmax.AccumulatorState`.

Products are ``2 * data_width`` bits wide and the reduction adds
``ceil(log2(head_dim))`` guard bits, so integer sums never overflow the
nominal output width.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import torch

from .patterns import (
    ASHAPE_INIT_WIDTH,
    PatternLike,
    PatternType,
    build_mask,
    resolve_pattern,
)
from .softmax import AccumulatorState, accumulate

LOGGER = logging.getLogger(__name__)

# Widest element that keeps the exponent-sum register inside an int64 lane.
MAX_DATA_WIDTH = 29


def guard_bits(depth: int) -> int:
    """Extra high-order bits needed to sum ``depth`` products without overflow."""

    return int(math.ceil(math.log2(depth))) if depth > 1 else 0


def check_tile(tile: torch.Tensor, shape: Tuple[int, int], data_width: int, name: str) -> torch.Tensor:
    """Validate ``tile`` against ``shape`` and the signed ``data_width`` range."""

    if not isinstance(tile, torch.Tensor):
        tile = torch.as_tensor(tile)
    if tile.dim() != 2 or tuple(tile.shape) != tuple(shape):
        raise ValueError(f"{name} must have shape {tuple(shape)}; received {tuple(tile.shape)}")
    if tile.is_floating_point() or tile.is_complex() or tile.dtype == torch.bool:
        raise ValueError(f"{name} must be an integer tensor; received {tile.dtype}")
    tile = tile.to(torch.int64)
    if tile.numel():
        lo, hi = -(1 << (data_width - 1)), (1 << (data_width - 1)) - 1
        if int(tile.min()) < lo or int(tile.max()) > hi:
            raise ValueError(f"{name} values must fit a signed {data_width}-bit range [{lo}, {hi}]")
    return tile


def tile_dot(q: torch.Tensor, k: torch.Tensor) -> torch.Tensor:
    """Exact integer ``q @ k`` for ``q: (M, D)`` and ``k: (D, N)``."""

    q64 = q.to(torch.int64)
    k64 = k.to(torch.int64)
    return (q64.unsqueeze(2) * k64.unsqueeze(0)).sum(dim=1)


@dataclass
class SparseQKConfig:
    """Static geometry for a :class:`SparseQKEngine` instance."""

    block_m: int
    block_n: int
    head_dim: int
    data_width: int = 16
    stride: int = 4
    phase: int = 0
    init_width: int = ASHAPE_INIT_WIDTH

    @property
    def prod_width(self) -> int:
        return self.data_width * 2

    @property
    def sum_width(self) -> int:
        return self.prod_width + guard_bits(self.head_dim)

    @property
    def exp_sum_width(self) -> int:
        return self.sum_width + 4

    def validate(self) -> None:
        if self.block_m <= 0:
            raise ValueError("block_m must be positive.")
        if self.block_n <= 0:
            raise ValueError("block_n must be positive.")
        if self.head_dim <= 0:
            raise ValueError("head_dim must be positive.")
        if not (2 <= self.data_width <= MAX_DATA_WIDTH):
            raise ValueError(f"data_width must be within [2, {MAX_DATA_WIDTH}].")
        if self.exp_sum_width > 63:
            raise ValueError(
                f"head_dim={self.head_dim} with data_width={self.data_width} needs a "
                f"{self.exp_sum_width}-bit exponent sum, wider than a 64-bit lane."
            )
        if self.init_width < 0:
            raise ValueError("init_width must be non-negative.")
        self.check_stride(PatternType.GRID, self.stride, self.phase)

    def check_stride(self, pattern: PatternType, stride: int, phase: int) -> None:
        """Reject a stride/phase pair that ``pattern`` cannot use on this tile."""

        if stride <= 0:
            raise ValueError(f"stride must be positive; received {stride}.")
        if not (0 <= phase < stride):
            raise ValueError(f"phase must satisfy 0 <= phase < stride; received phase={phase}, stride={stride}.")
        if pattern is PatternType.GRID and (self.block_m % stride or self.block_n % stride):
            raise ValueError(
                f"Grid stride {stride} must evenly divide block_m={self.block_m} "
                f"and block_n={self.block_n}."
            )


@dataclass
class QKResult:
    """Output of the raw QK path."""

    qk_out: torch.Tensor
    valid: bool
    mask: torch.Tensor

    @property
    def exposed_cells(self) -> int:
        return int(self.mask.sum().item())


@dataclass
class AttendResult:
    """Output of the accumulating attention path."""

    qk_out: torch.Tensor
    valid: bool
    ready: bool
    mask: torch.Tensor
    rows_updated: int = 0


class SparseQKEngine:
    """Tile engine computing Q x K^T under a selected sparsity pattern."""

    def __init__(
        self,
        config: SparseQKConfig,
        *,
        device: Union[torch.device, str, None] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.config.validate()
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.logger = logger or LOGGER

    @property
    def tile_shape(self) -> Tuple[int, int]:
        return self.config.block_m, self.config.block_n

    def new_state(self) -> AccumulatorState:
        """Return a freshly reset accumulator sized for this engine."""

        cfg = self.config
        return AccumulatorState(cfg.block_m, cfg.block_n, sum_width=cfg.sum_width, device=self.device)

    def mask(
        self,
        pattern: PatternLike,
        *,
        stride: Optional[int] = None,
        phase: Optional[int] = None,
    ) -> torch.Tensor:
        pattern, stride, phase = self._resolve(pattern, stride, phase)
        cfg = self.config
        return build_mask(
            pattern,
            cfg.block_m,
            cfg.block_n,
            stride,
            phase,
            init_width=cfg.init_width,
            device=self.device,
        )

    def compute(
        self,
        pattern: PatternLike,
        q: torch.Tensor,
        k: torch.Tensor,
        *,
        enable: bool = True,
        stride: Optional[int] = None,
        phase: Optional[int] = None,
    ) -> QKResult:
        """Return the masked score tile for ``pattern``.

        With ``enable=False`` the tile is all zeros and ``valid`` is ``False``.
        """

        pattern, stride, phase = self._resolve(pattern, stride, phase)
        q, k = self._check_inputs(q, k)
        mask = self.mask(pattern, stride=stride, phase=phase)
        if not enable:
            zeros = torch.zeros(self.tile_shape, dtype=torch.int64, device=self.device)
            return QKResult(qk_out=zeros, valid=False, mask=mask)

        scores = self._masked_scores(q, k, mask)
        self.logger.debug(
            "compute pattern=%s stride=%s phase=%s exposed=%d/%d",
            pattern.value,
            stride,
            phase,
            int(mask.sum().item()),
            mask.numel(),
        )
        return QKResult(qk_out=scores, valid=True, mask=mask)

    def attend(
        self,
        state: AccumulatorState,
        pattern: PatternLike,
        q: torch.Tensor,
        k: torch.Tensor,
        *,
        enable: bool = True,
        flush: bool = False,
        stride: Optional[int] = None,
        phase: Optional[int] = None,
    ) -> AttendResult:
        """Compute the masked tile and fold it into ``state``.

        Boundary patterns produce their tile without touching ``state``.
        ``flush`` marks the weighted outputs as ready to read and forces
        ``valid``; it never clears the accumulator.
        """

        if (state.block_m, state.block_n) != self.tile_shape:
            raise ValueError(
                f"Accumulator shape {(state.block_m, state.block_n)} does not match "
                f"engine tile {self.tile_shape}."
            )
        pattern = resolve_pattern(pattern)
        raw = self.compute(pattern, q, k, enable=enable, stride=stride, phase=phase)

        rows_updated = 0
        if enable and not pattern.is_boundary:
            rows_updated = accumulate(state, raw.qk_out, raw.mask)
            self.logger.debug(
                "attend pattern=%s rows_updated=%d step=%d", pattern.value, rows_updated, state.steps
            )
        if flush:
            self.logger.debug("attend flush after %d accumulating steps", state.steps)

        return AttendResult(
            qk_out=raw.qk_out,
            valid=raw.valid or flush,
            ready=flush,
            mask=raw.mask,
            rows_updated=rows_updated,
        )

    # ------------------------------------------------------------------ Helpers

    def _resolve(
        self, pattern: PatternLike, stride: Optional[int], phase: Optional[int]
    ) -> Tuple[PatternType, int, int]:
        pattern = resolve_pattern(pattern)
        stride = self.config.stride if stride is None else int(stride)
        phase = self.config.phase if phase is None else int(phase)
        if pattern.uses_stride:
            self.config.check_stride(pattern, stride, phase)
        return pattern, stride, phase

    def _check_inputs(self, q: torch.Tensor, k: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        cfg = self.config
        q = check_tile(q, (cfg.block_m, cfg.head_dim), cfg.data_width, "q")
        k = check_tile(k, (cfg.head_dim, cfg.block_n), cfg.data_width, "k")
        return q.to(self.device), k.to(self.device)

    def _masked_scores(self, q: torch.Tensor, k: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
        scores = torch.zeros(self.tile_shape, dtype=torch.int64, device=self.device)
        rows = torch.nonzero(mask.any(dim=1), as_tuple=True)[0]
        cols = torch.nonzero(mask.any(dim=0), as_tuple=True)[0]
        if rows.numel() == 0:
            return scores
        # Only rows/columns touched by the mask reach the dot engine.
        partial = tile_dot(q.index_select(0, rows), k.index_select(1, cols))
        scores[rows.unsqueeze(1), cols.unsqueeze(0)] = partial
        return torch.where(mask, scores, torch.zeros_like(scores))
