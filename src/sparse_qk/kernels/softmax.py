"""
Running (online) softmax accumulator for the sparse tile engine.

Each accumulating step folds the exposed score cells of one pattern into a
caller-owned :class:`AccumulatorState`.  The exponential is a coarse
power-of-two approximation chosen to match the fixed-point datapath::

    approx_exp(x) = 1 << ((x + 4) & 31)   if x > -4
                    1                      otherwise

so the normalisation is deliberately not a faithful softmax.  Outputs are
scaled by ``1 << OUTPUT_SHIFT`` before the truncating division by the row's
exponent sum.
"""
from __future__ import annotations

from typing import Union

import torch

EXP_FLOOR_THRESHOLD = -4
EXP_SHIFT_MASK = 0x1F
OUTPUT_SHIFT = 8


def most_negative(width: int) -> int:
    """Smallest value representable in a signed ``width``-bit register."""

    return -(1 << (width - 1))


def approx_exp(shifted: torch.Tensor) -> torch.Tensor:
    """Shift-based exponential with a floor of one for deeply negative inputs."""

    shifted = shifted.to(torch.int64)
    ones = torch.ones_like(shifted)
    amount = (shifted - EXP_FLOOR_THRESHOLD) & EXP_SHIFT_MASK
    return torch.where(shifted > EXP_FLOOR_THRESHOLD, ones << amount, ones)


class AccumulatorState:
    """Per-row running max, running exponent sum and weighted output.

    The state outlives a single engine call so several patterns can be folded
    into one normalisation.  Only one step may update a given row at a time.
    """

    def __init__(
        self,
        block_m: int,
        block_n: int,
        *,
        sum_width: int,
        device: Union[torch.device, str, None] = None,
    ) -> None:
        self.block_m = int(block_m)
        self.block_n = int(block_n)
        self.sum_width = int(sum_width)
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.min_value = most_negative(self.sum_width)
        self.steps = 0
        self.reset()

    def reset(self) -> None:
        self.running_max = torch.full(
            (self.block_m,), self.min_value, dtype=torch.int64, device=self.device
        )
        self.running_exp_sum = torch.ones(self.block_m, dtype=torch.int64, device=self.device)
        self.weighted_output = torch.zeros(
            self.block_m, self.block_n, dtype=torch.int64, device=self.device
        )
        self.steps = 0

    def clone(self) -> "AccumulatorState":
        twin = AccumulatorState(
            self.block_m, self.block_n, sum_width=self.sum_width, device=self.device
        )
        twin.running_max = self.running_max.clone()
        twin.running_exp_sum = self.running_exp_sum.clone()
        twin.weighted_output = self.weighted_output.clone()
        twin.steps = self.steps
        return twin

    def __repr__(self) -> str:
        return (
            f"AccumulatorState(block_m={self.block_m}, block_n={self.block_n}, "
            f"sum_width={self.sum_width}, steps={self.steps})"
        )


def accumulate(
    state: AccumulatorState,
    scores: torch.Tensor,
    mask: torch.Tensor,
) -> int:
    """Fold one step of ``scores`` restricted to ``mask`` into ``state``.

    Every column update of a row uses the same ``new_max``/``row_exp_sum``
    snapshot.  Rows with no exposed column are skipped entirely.  Returns the
    number of rows that were updated.
    """

    expected = (state.block_m, state.block_n)
    if tuple(scores.shape) != expected or tuple(mask.shape) != expected:
        raise ValueError(
            f"scores and mask must have shape {expected}; received "
            f"{tuple(scores.shape)} and {tuple(mask.shape)}"
        )
    scores = scores.to(device=state.device, dtype=torch.int64)
    mask = mask.to(device=state.device, dtype=torch.bool)

    zeros = torch.zeros_like(scores)
    active_rows = mask.any(dim=1)

    floor = torch.full_like(scores, state.min_value)
    row_max = torch.where(mask, scores, floor).amax(dim=1)
    new_max = torch.maximum(state.running_max, row_max)

    weights = torch.where(mask, approx_exp(scores - new_max.unsqueeze(1)), zeros)
    row_exp_sum = weights.sum(dim=1)

    state.running_exp_sum += torch.where(active_rows, row_exp_sum, torch.zeros_like(row_exp_sum))
    state.running_max = torch.where(active_rows, new_max, state.running_max)

    divisor = torch.where(active_rows, row_exp_sum, torch.ones_like(row_exp_sum)).unsqueeze(1)
    update = torch.div(weights << OUTPUT_SHIFT, divisor, rounding_mode="trunc")
    state.weighted_output += torch.where(mask, update, zeros)
    state.steps += 1
    return int(active_rows.sum().item())
