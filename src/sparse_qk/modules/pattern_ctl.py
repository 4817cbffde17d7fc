"""
Pattern control helpers that connect the detectors to the tile engine.

The caller always chooses the pattern.  The controller only fills in the
pattern parameters: A-shape band width from :class:`AShapePatternDetector`
and vertical-slash stride/phase from :class:`VerticalSlashStrideDetector`.
When a detector reports no match the engine defaults are used instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import torch

from ..detectors.ashape import AShapePatternDetector
from ..detectors.vertical_slash import VerticalSlashStrideDetector
from ..kernels.patterns import PatternLike, PatternType, resolve_pattern
from ..kernels.softmax import AccumulatorState
from ..kernels.sparse_qk import AttendResult, SparseQKEngine

LOGGER = logging.getLogger(__name__)


@dataclass
class PatternParams:
    stride: int
    phase: int
    detected: bool
    detector_steps: int = 0


@dataclass
class PatternSnapshot:
    """Single record emitted after each controller step."""

    pattern: PatternType
    stride: int
    phase: int
    detected: bool
    valid: bool
    exposed_cells: int
    detector_steps: int
    step: int


class PatternController:
    """Drive one engine plus optional detectors across successive patterns."""

    def __init__(
        self,
        engine: SparseQKEngine,
        *,
        ashape: Optional[AShapePatternDetector] = None,
        vertical_slash: Optional[VerticalSlashStrideDetector] = None,
        watchdog_steps: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.ashape = ashape
        self.vertical_slash = vertical_slash
        self.watchdog_steps = watchdog_steps
        self.logger = logger or LOGGER
        self._step = 0
        self._history: List[PatternSnapshot] = []

    @property
    def last_snapshot(self) -> Optional[PatternSnapshot]:
        return self._history[-1] if self._history else None

    @property
    def history(self) -> List[PatternSnapshot]:
        return list(self._history)

    def reset(self) -> None:
        self._step = 0
        self._history.clear()

    def infer(self, pattern: PatternLike, q: torch.Tensor, k: torch.Tensor) -> PatternParams:
        """Return the stride/phase the engine should use for ``pattern``.

        A detected A-shape band of width ``W`` maps to ``stride = W - 1``, since
        the engine band ``i - stride <= j <= i`` spans ``stride + 1`` cells.
        ``W == 1`` still maps to ``stride = 1`` because stride must be positive.
        The left strip always uses the engine's fixed ``ASHAPE_INIT_WIDTH``,
        which covers any detected strip of that width or less.
        """

        pattern = resolve_pattern(pattern)
        cfg = self.engine.config
        default = PatternParams(stride=cfg.stride, phase=cfg.phase, detected=False)

        if pattern is PatternType.ASHAPE and self.ashape is not None:
            found = self.ashape.detect(q, k)
            if found.is_ashape and found.init_guess > 0:
                self.logger.info(
                    "A-shape band=%d strip=%d", found.init_guess, found.stride_guess
                )
                return PatternParams(stride=max(1, found.init_guess - 1), phase=0, detected=True)
            self.logger.warning(
                "A-shape detector found no match; using default stride=%d", cfg.stride
            )
            return default

        if pattern is PatternType.VERTICAL_SLASH and self.vertical_slash is not None:
            found = self.vertical_slash.run(q, k, max_steps=self.watchdog_steps)
            if found.found:
                self.logger.info(
                    "vertical-slash stride=%d phase=%d (%d steps)", found.stride, found.phase, found.steps
                )
                return PatternParams(
                    stride=found.stride, phase=found.phase, detected=True, detector_steps=found.steps
                )
            self.logger.warning(
                "vertical-slash detector found no stride; using default stride=%d phase=%d",
                cfg.stride,
                cfg.phase,
            )
            default.detector_steps = found.steps
            return default

        return default

    def step(
        self,
        state: AccumulatorState,
        pattern: PatternLike,
        q: torch.Tensor,
        k: torch.Tensor,
        *,
        enable: bool = True,
        flush: bool = False,
    ) -> AttendResult:
        """Infer parameters for ``pattern`` and fold one engine step into ``state``."""

        pattern = resolve_pattern(pattern)
        params = self.infer(pattern, q, k)
        result = self.engine.attend(
            state,
            pattern,
            q,
            k,
            enable=enable,
            flush=flush,
            stride=params.stride,
            phase=params.phase,
        )
        self._step += 1
        self._history.append(
            PatternSnapshot(
                pattern=pattern,
                stride=params.stride,
                phase=params.phase,
                detected=params.detected,
                valid=result.valid,
                exposed_cells=int(result.mask.sum().item()),
                detector_steps=params.detector_steps,
                step=self._step,
            )
        )
        return result
