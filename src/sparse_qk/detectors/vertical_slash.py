"""
Multi-step stride detector for vertical-slash sparsity.

The detector is an explicit four-phase state machine driven one step at a
time through :meth:`VerticalSlashStrideDetector.advance`::

    IDLE --start--> COMPUTE --(last_q * head_dim steps)--> STRIDE --> DONE --> IDLE

``COMPUTE`` performs one multiply-accumulate per key column per step, walking
the depth axis of each of the last ``last_q`` query rows.  The absolute value
of the finished last two rows is captured into ``row_buffers``.  ``STRIDE``
scans the last row one column per step; a column whose magnitude exceeds
``VERTICAL_THRESHOLD`` is vertical, and the distance between the first two
vertical columns is the stride.  ``DONE`` is visible for exactly one step.

The state machine has no fault state.  Bounding the wait for ``DONE`` is the
caller's job; :meth:`VerticalSlashStrideDetector.run` does so with a watchdog
and raises :class:`TimeoutError` when it expires.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import torch

from ..kernels.sparse_qk import check_tile, guard_bits

LOGGER = logging.getLogger(__name__)

VERTICAL_THRESHOLD = 1


def _resolve_watchdog_steps(default: int = 500) -> int:
    """Resolve the default step budget for :meth:`VerticalSlashStrideDetector.run`."""

    env_value = os.getenv("SPARSE_QK_WATCHDOG_STEPS")
    if env_value is None:
        return default
    try:
        parsed = int(env_value)
    except ValueError:
        warnings.warn(
            f"Invalid SPARSE_QK_WATCHDOG_STEPS value '{env_value}', using default {default}",
            RuntimeWarning,
        )
        return default
    if parsed <= 0:
        warnings.warn(
            f"SPARSE_QK_WATCHDOG_STEPS must be positive (got {parsed}), using default {default}",
            RuntimeWarning,
        )
        return default
    return parsed


WATCHDOG_STEPS = _resolve_watchdog_steps()

Row = Tuple[int, ...]


class DetectorPhase(Enum):
    IDLE = "idle"
    COMPUTE = "compute"
    STRIDE = "stride"
    DONE = "done"


@dataclass(frozen=True)
class VerticalSlashState:
    """Immutable snapshot of the detector registers."""

    phase: DetectorPhase
    row_cursor: int
    depth_cursor: int
    accumulator: Row
    row_buffers: Tuple[Row, Row]
    stride: int
    first_hit_column: int
    found_first: bool
    column_cursor: int

    @classmethod
    def reset(cls, block_n: int, phase: DetectorPhase = DetectorPhase.IDLE) -> "VerticalSlashState":
        zeros = (0,) * block_n
        return cls(
            phase=phase,
            row_cursor=0,
            depth_cursor=0,
            accumulator=zeros,
            row_buffers=(zeros, zeros),
            stride=0,
            first_hit_column=0,
            found_first=False,
            column_cursor=0,
        )


@dataclass(frozen=True)
class VerticalSlashOutputs:
    """Values visible after one step.  ``stride`` is meaningful when ``done``."""

    done: bool
    stride: int
    last2: Tuple[Row, Row]


@dataclass
class VerticalSlashResult:
    """Outcome of a complete detector run."""

    stride: int
    found: bool
    first_hit_column: int
    last2: Tuple[Row, Row]
    steps: int

    @property
    def phase(self) -> int:
        return self.first_hit_column % self.stride if self.found else 0


class VerticalSlashStrideDetector:
    """Stride detector over the last ``last_q`` query rows of a tile."""

    def __init__(
        self,
        block_m: int = 8,
        block_n: int = 8,
        head_dim: int = 32,
        last_q: int = 4,
        data_width: int = 8,
        acc_width: int = 32,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if block_m <= 0 or block_n <= 0 or head_dim <= 0:
            raise ValueError("block_m, block_n and head_dim must be positive.")
        if not (1 <= last_q <= block_m):
            raise ValueError(f"last_q must satisfy 1 <= last_q <= block_m; received {last_q}.")
        needed = 2 * data_width + guard_bits(head_dim) + 1
        if acc_width < needed:
            raise ValueError(
                f"acc_width={acc_width} cannot hold a {head_dim}-deep reduction of "
                f"{data_width}-bit values (needs {needed} bits)."
            )
        self.block_m = block_m
        self.block_n = block_n
        self.head_dim = head_dim
        self.last_q = last_q
        self.data_width = data_width
        self.acc_width = acc_width
        self.logger = logger or LOGGER

    @property
    def step_budget(self) -> int:
        """Worst-case steps from ``start`` to the ``done`` pulse."""

        return 1 + self.last_q * self.head_dim + self.block_n + 1

    def initial_state(self) -> VerticalSlashState:
        return VerticalSlashState.reset(self.block_n)

    def advance(
        self,
        state: VerticalSlashState,
        q: torch.Tensor,
        k: torch.Tensor,
        *,
        start: bool = False,
    ) -> Tuple[VerticalSlashState, VerticalSlashOutputs]:
        """Advance one step and return ``(next_state, outputs)``.

        ``start`` in any phase discards the current run and restarts.
        """

        if len(state.accumulator) != self.block_n or any(len(r) != self.block_n for r in state.row_buffers):
            raise ValueError(
                f"state registers must have shape ({self.block_n},); received "
                f"{len(state.accumulator)} accumulator columns"
            )
        if start or state.phase is DetectorPhase.COMPUTE:
            q = check_tile(q, (self.block_m, self.head_dim), self.data_width, "q")
            k = check_tile(k, (self.head_dim, self.block_n), self.data_width, "k")

        if start:
            nxt = VerticalSlashState.reset(self.block_n, DetectorPhase.COMPUTE)
        elif state.phase is DetectorPhase.COMPUTE:
            nxt = self._compute_step(state, q, k)
        elif state.phase is DetectorPhase.STRIDE:
            nxt = self._stride_step(state)
        elif state.phase is DetectorPhase.DONE:
            nxt = dataclasses.replace(state, phase=DetectorPhase.IDLE)
        else:
            nxt = state
        outputs = VerticalSlashOutputs(
            done=nxt.phase is DetectorPhase.DONE,
            stride=nxt.stride,
            last2=nxt.row_buffers,
        )
        return nxt, outputs

    def run(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        *,
        max_steps: Optional[int] = None,
    ) -> VerticalSlashResult:
        """Start the detector and step it until ``done`` or the watchdog expires."""

        q = check_tile(q, (self.block_m, self.head_dim), self.data_width, "q")
        k = check_tile(k, (self.head_dim, self.block_n), self.data_width, "k")
        limit = WATCHDOG_STEPS if max_steps is None else int(max_steps)

        state, outputs = self.advance(self.initial_state(), q, k, start=True)
        steps = 0
        while not outputs.done and steps < limit:
            state, outputs = self.advance(state, q, k)
            steps += 1
        if not outputs.done:
            raise TimeoutError(f"Vertical-slash detector did not finish (stalled {steps} steps)")

        result = VerticalSlashResult(
            stride=outputs.stride,
            found=outputs.stride > 0,
            first_hit_column=state.first_hit_column,
            last2=outputs.last2,
            steps=steps,
        )
        if result.found:
            self.logger.debug(
                "vertical-slash stride=%d phase=%d after %d steps", result.stride, result.phase, steps
            )
        else:
            self.logger.debug("vertical-slash found no stride after %d steps", steps)
        return result

    # ------------------------------------------------------------------ Helpers

    def _compute_step(self, state: VerticalSlashState, q: torch.Tensor, k: torch.Tensor) -> VerticalSlashState:
        row = self.block_m - self.last_q + state.row_cursor
        depth = state.depth_cursor
        q_val = int(q[row, depth])
        products = (k[depth].to(torch.int64) * q_val).tolist()
        acc = tuple(a + p for a, p in zip(state.accumulator, products))

        if depth < self.head_dim - 1:
            return dataclasses.replace(state, accumulator=acc, depth_cursor=depth + 1)

        magnitudes = tuple(abs(a) for a in acc)
        second_last, last = state.row_buffers
        if state.row_cursor == self.last_q - 2:
            second_last = magnitudes
        if state.row_cursor == self.last_q - 1:
            last = magnitudes
        cleared = (0,) * self.block_n

        if state.row_cursor == self.last_q - 1:
            return dataclasses.replace(
                state,
                phase=DetectorPhase.STRIDE,
                accumulator=cleared,
                row_buffers=(second_last, last),
                depth_cursor=0,
            )
        return dataclasses.replace(
            state,
            accumulator=cleared,
            row_buffers=(second_last, last),
            row_cursor=state.row_cursor + 1,
            depth_cursor=0,
        )

    def _stride_step(self, state: VerticalSlashState) -> VerticalSlashState:
        col = state.column_cursor
        if col >= self.block_n:
            return dataclasses.replace(state, phase=DetectorPhase.DONE)

        hit = state.row_buffers[1][col] > VERTICAL_THRESHOLD
        if hit and not state.found_first:
            return dataclasses.replace(
                state, found_first=True, first_hit_column=col, column_cursor=col + 1
            )
        if hit:
            return dataclasses.replace(
                state,
                stride=col - state.first_hit_column,
                phase=DetectorPhase.DONE,
                column_cursor=col + 1,
            )
        return dataclasses.replace(state, column_cursor=col + 1)
