"""
Block Conjugate Gradient (O'Leary, 1980) with orthonormalized directions.

All right-hand sides of the block share one search space. Each step solves the
small ``[k, k]`` systems with ``P^H A P`` through a Cholesky factorization:

    alpha = (P^H A P)^{-1} P^H R
    X     = X + P alpha
    R     = R - A P alpha
    Z     = M R
    beta  = -(P^H A P)^{-1} (A P)^H Z
    P     = orth(Z + P beta)

Orthonormalizing the new direction block keeps it well conditioned; the
formulas above do not depend on the scaling of ``P``.
"""

import logging
import torch
from torch import Tensor
from dataclasses import dataclass
from typing import ClassVar

from .. import multivec as mvt
from ..check import NaNDetectedError, PositiveDefiniteFailure, OrthoFailure
from .base import CGIteration, CGIterationStateBase

logger = logging.getLogger(__name__)


@dataclass
class BlockCGIterationState(CGIterationStateBase):
    kind: ClassVar[str] = 'block'


class BlockCGIter(CGIteration):
    kind = 'block'
    state_type = BlockCGIterationState
    requires_ortho = True

    def _setup(self):
        s = self._state
        s.Z.copy_(self._problem.apply_prec(s.R))
        s.P.copy_(s.Z)

    def _gram_solver(self, pAp: Tensor):
        L, info = torch.linalg.cholesky_ex(pAp)
        if info.item() == 0:
            return lambda rhs: torch.cholesky_solve(rhs, L)
        if self.assert_positive_definiteness:
            raise PositiveDefiniteFailure(
                "BlockCGIter: unable to compute the Cholesky factorization of P^H A P, "
                "the operator is not positive definite or the direction block is singular")
        logger.debug("BlockCGIter: Cholesky of P^H A P failed at iteration %d, using LU", self._iter)
        return lambda rhs: torch.linalg.solve(pAp, rhs)

    def _step(self):
        s = self._state
        s.AP.copy_(self._problem.apply_op(s.P))
        pAp = mvt.trans_mv(1.0, s.P, s.AP)
        pAp = 0.5 * (pAp + pAp.mH)
        if torch.isnan(pAp).any():
            raise NaNDetectedError("BlockCGIter: NaN has been detected in P^H A P")
        solve = self._gram_solver(pAp)

        alpha = solve(mvt.trans_mv(1.0, s.P, s.R))
        self._problem.update_solution(s.P @ alpha, update_lp=True)
        mvt.times_mat_add_mv(-1.0, s.AP, alpha, 1.0, s.R)

        s.Z.copy_(self._problem.apply_prec(s.R))
        beta = -solve(mvt.trans_mv(1.0, s.AP, s.Z))
        P = s.Z + s.P @ beta

        rank = self._ortho.normalize(P)
        if rank != self._block_size:
            raise OrthoFailure(
                f"BlockCGIter: failed to compute a full rank block of orthonormal direction vectors "
                f"(rank {rank} of {self._block_size})")
        s.P.copy_(P)
