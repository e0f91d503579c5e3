"""
Preconditioned Conjugate Gradient on a single right-hand side.
"""

import torch
from torch import Tensor
from dataclasses import dataclass
from typing import ClassVar, Optional

from .. import multivec as mvt
from ..check import PositiveDefiniteFailure
from .base import CGIteration, CGIterationStateBase


@dataclass
class CGIterationState(CGIterationStateBase):
    kind: ClassVar[str] = 'scalar'

    rz: Optional[Tensor] = None


class ScalarCGIter(CGIteration):
    """
    Textbook PCG. Two global reductions per step: ``p^T A p`` and ``r^T z``.
    With convergence detection folded in, ``r^T r`` rides along with ``r^T z``.
    """
    kind = 'scalar'
    state_type = CGIterationState
    supports_fold_convergence_detection = True

    def set_block_size(self, block_size: int):
        if block_size != 1:
            raise ValueError(f"{type(self).__name__} can not use a block size of {block_size}, only 1")
        super().set_block_size(block_size)

    def _reduce(self, R: Tensor, Z: Tensor):
        if self.fold_convergence_detection:
            G = mvt.trans_mv(1.0, R, torch.cat([Z, R], dim=1))
            self._native_norms = G[0, 1:2].abs().sqrt()
            return G[0, 0:1]
        return mvt.dot(R, Z)

    def _setup(self):
        s = self._state
        s.Z.copy_(self._problem.apply_prec(s.R))
        s.P.copy_(s.Z)
        s.rz = self._reduce(s.R, s.Z)

    def _step(self):
        s = self._state
        s.AP.copy_(self._problem.apply_op(s.P))
        pAp = mvt.dot(s.P, s.AP)
        if self.assert_positive_definiteness and (pAp.real <= 0).any():
            raise PositiveDefiniteFailure(
                f"ScalarCGIter: p^H A p = {pAp.real.item():.3e} is not positive, "
                "the operator is not positive definite")

        alpha = s.rz / pAp
        self._problem.update_solution(s.P * alpha, update_lp=True)
        s.R.sub_(s.AP * alpha)

        s.Z.copy_(self._problem.apply_prec(s.R))
        rz_new = self._reduce(s.R, s.Z)

        beta = rz_new / s.rz
        s.P.mul_(beta).add_(s.Z)
        s.rz = rz_new
