"""
Single-reduction Conjugate Gradient (Chronopoulos & Gear, 1989).

Reformulates CG so the two inner products of a step, ``r^T u`` and
``w^T u`` with ``u = M r`` and ``w = A u``, are computed in one fused
reduction. This trades an extra vector update for one synchronization
point per step.
"""

import torch
from torch import Tensor
from dataclasses import dataclass
from typing import ClassVar, Optional

from .. import multivec as mvt
from ..check import PositiveDefiniteFailure
from .base import CGIteration, CGIterationStateBase


@dataclass
class CGSingleRedIterationState(CGIterationStateBase):
    """``Z`` holds ``u = M r`` and ``AP`` holds ``s = A p``"""
    kind: ClassVar[str] = 'single_reduction'

    W: Optional[Tensor] = None
    gamma: Optional[Tensor] = None
    delta: Optional[Tensor] = None
    alpha: Optional[Tensor] = None

    def initialize(self, R0: Tensor):
        reallocate = self.W is None or self.W.shape != R0.shape or self.W.dtype != R0.dtype
        super().initialize(R0)
        if reallocate:
            self.W = torch.empty_like(R0)


class SingleReductionCGIter(CGIteration):
    kind = 'single_reduction'
    state_type = CGSingleRedIterationState
    supports_fold_convergence_detection = True

    def set_block_size(self, block_size: int):
        if block_size != 1:
            raise ValueError(f"{type(self).__name__} can not use a block size of {block_size}, only 1")
        super().set_block_size(block_size)

    def _reduce(self):
        """``(r^T u, w^T u)`` in one reduction, plus ``r^T r`` when folding"""
        s = self._state
        lhs = torch.cat([s.R, s.W], dim=1)
        if self.fold_convergence_detection:
            G = mvt.trans_mv(1.0, lhs, torch.cat([s.Z, s.R], dim=1))
            self._native_norms = G[0, 1:2].abs().sqrt()
        else:
            G = mvt.trans_mv(1.0, lhs, s.Z)
        return G[0, 0:1], G[1, 0:1]

    def _check_curvature(self, value: Tensor, what: str):
        if self.assert_positive_definiteness and (value.real <= 0).any():
            raise PositiveDefiniteFailure(
                f"SingleReductionCGIter: {what} = {value.real.item():.3e} is not positive, "
                "the operator is not positive definite")

    def _setup(self):
        s = self._state
        s.Z.copy_(self._problem.apply_prec(s.R))
        s.W.copy_(self._problem.apply_op(s.Z))
        gamma, delta = self._reduce()
        s.gamma = gamma
        s.delta = delta
        s.alpha = gamma / delta
        s.P.copy_(s.Z)
        s.AP.copy_(s.W)

    def _step(self):
        s = self._state
        # s.delta is p^H A p of the current direction
        self._check_curvature(s.delta, "p^H A p")
        self._problem.update_solution(s.P * s.alpha, update_lp=True)
        s.R.sub_(s.AP * s.alpha)

        s.Z.copy_(self._problem.apply_prec(s.R))
        s.W.copy_(self._problem.apply_op(s.Z))
        gamma, delta = self._reduce()

        beta = gamma / s.gamma
        s.delta = delta - beta * gamma / s.alpha
        s.alpha = gamma / s.delta
        s.P.mul_(beta).add_(s.Z)
        s.AP.mul_(beta).add_(s.W)
        s.gamma = gamma
