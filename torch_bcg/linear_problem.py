"""
Linear problem handle: A X = B with many right-hand sides.

The handle owns the operator, the full solution block ``X``, the right-hand
sides ``B`` and the initial residual ``R0 = B - A X``. Iteration kernels never
see the full problem: the solver manager selects the *current* linear systems
with :meth:`LinearProblem.set_active_columns`, the kernels update the current
solution block, and :meth:`LinearProblem.set_current_solved` writes it back.

Active column index ``-1`` marks a padded slot: it gets a zero solution column
and a random right-hand side, and is never written back.

Example
-------
>>> A = torch.diag(torch.arange(1.0, 11.0, dtype=torch.float64))
>>> B = torch.randn(10, 3, dtype=torch.float64)
>>> problem = LinearProblem(A, torch.zeros_like(B), B)
>>> problem.set_problem()
True
>>> problem.set_active_columns([0, 2])
>>> problem.get_curr_lhs().shape
torch.Size([10, 2])
"""

import torch
from torch import Tensor
from typing import List, Optional, Sequence, Callable

from . import multivec as mvt
from .check import check_multivec, ShapeException
from .operators import as_operator, OperatorLike


class LinearProblem:
    def __init__(self,
                 A: Optional[OperatorLike] = None,
                 X: Optional[Tensor] = None,
                 B: Optional[Tensor] = None,
                 M: Optional[Callable[[Tensor], Tensor]] = None,
                 generator: Optional[torch.Generator] = None):
        self._A = as_operator(A) if A is not None else None
        self._X = X
        self._B = B
        self._M = M
        self._generator = generator

        self._R0 = None
        self._PR0 = None
        self._is_set = False
        self._solution_updated = False

        self._ls_index: List[int] = []
        self._cur_X = None
        self._cur_B = None
        self._cur_R0 = None
        self._num_solved = 0

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    def set_operator(self, A: OperatorLike):
        self._A = as_operator(A)
        self._is_set = False

    def set_lhs(self, X: Tensor):
        self._X = X
        self._is_set = False

    def set_rhs(self, B: Tensor):
        self._B = B
        self._is_set = False

    def set_prec(self, M: Optional[Callable[[Tensor], Tensor]]):
        self._M = M
        self._is_set = False

    def set_problem(self, X: Optional[Tensor] = None, B: Optional[Tensor] = None) -> bool:
        """
        Finalize the problem and compute the initial residual.

        Parameters
        ----------
        X : Tensor, optional
            [n, k] new initial guess, replaces the current one
        B : Tensor, optional
            [n, k] new right-hand sides, replaces the current ones

        Returns
        -------
        bool
            True once the problem is ready to be solved
        """
        if X is not None:
            self._X = X
        if B is not None:
            self._B = B

        self._is_set = False
        self._solution_updated = False
        self._ls_index = []
        self._cur_X = self._cur_B = self._cur_R0 = None
        self._num_solved = 0

        if self._A is None or self._B is None:
            return False

        check_multivec("B", self._B)
        n, k = self._B.shape
        if getattr(self._A, "n", None) not in (None, n):
            raise ShapeException("A", self._A.shape, f"({n},{n})")
        if self._X is None:
            self._X = mvt.clone(self._B, k)
        check_multivec("X", self._X, n, k)

        self._R0 = self._B - self._A(self._X)
        self._PR0 = self._M(self._R0) if self._M is not None else None
        self._is_set = True
        return True

    def is_ready(self) -> bool:
        return self._is_set

    # ------------------------------------------------------------------
    # full problem
    # ------------------------------------------------------------------

    def get_operator(self):
        return self._A

    def get_prec(self):
        return self._M

    def is_preconditioned(self) -> bool:
        return self._M is not None

    def get_lhs(self) -> Tensor:
        return self._X

    def get_rhs(self) -> Tensor:
        return self._B

    def get_init_residual(self) -> Tensor:
        return self._R0

    def get_init_prec_residual(self) -> Optional[Tensor]:
        return self._PR0

    @property
    def dtype(self):
        return self._B.dtype if self._B is not None else None

    @property
    def num_solved(self) -> int:
        """Number of times a block of linear systems was committed"""
        return self._num_solved

    # ------------------------------------------------------------------
    # current linear systems
    # ------------------------------------------------------------------

    @property
    def active_columns(self) -> List[int]:
        return list(self._ls_index)

    def set_active_columns(self, index: Sequence[int]):
        """
        Select the linear systems the kernels work on.

        Parameters
        ----------
        index : Sequence[int]
            global column of each slot of the current block, ``-1`` for padding
        """
        if not self._is_set:
            raise RuntimeError("set_active_columns() called before set_problem()")
        index = [int(i) for i in index]
        num_rhs = mvt.num_vecs(self._B)
        for i in index:
            if i < -1 or i >= num_rhs:
                raise IndexError(f"column {i} out of range for {num_rhs} right-hand sides")

        k = len(index)
        valid_pos = [p for p, i in enumerate(index) if i >= 0]
        valid_idx = [index[p] for p in valid_pos]
        padded_pos = [p for p, i in enumerate(index) if i < 0]

        self._ls_index = index
        if not padded_pos:
            self._cur_X = mvt.clone_copy(self._X, valid_idx)
            self._cur_B = mvt.clone_copy(self._B, valid_idx)
            self._cur_R0 = mvt.clone_copy(self._R0, valid_idx)
            return

        self._cur_X = mvt.clone(self._X, k)
        self._cur_B = mvt.clone(self._B, k)
        self._cur_R0 = mvt.clone(self._R0, k)
        if valid_pos:
            mvt.set_block(mvt.clone_copy(self._X, valid_idx), valid_pos, self._cur_X)
            mvt.set_block(mvt.clone_copy(self._B, valid_idx), valid_pos, self._cur_B)
            mvt.set_block(mvt.clone_copy(self._R0, valid_idx), valid_pos, self._cur_R0)
        padding = mvt.random(mvt.clone(self._B, len(padded_pos)), generator=self._generator)
        mvt.set_block(padding, padded_pos, self._cur_B)
        # zero solution in padded slots, so their initial residual is the rhs
        mvt.set_block(padding, padded_pos, self._cur_R0)

    def get_curr_lhs(self) -> Optional[Tensor]:
        return self._cur_X

    def get_curr_rhs(self) -> Optional[Tensor]:
        return self._cur_B

    def get_curr_init_residual(self) -> Optional[Tensor]:
        return self._cur_R0

    def update_solution(self, update: Optional[Tensor] = None,
                        update_lp: bool = False, scale: float = 1.0) -> Tensor:
        """
        Add ``scale * update`` to the current solution block.

        With ``update_lp=False`` the handle is left untouched and the updated
        block is returned as a new tensor.
        """
        if update is None:
            return self._cur_X
        if update_lp:
            self._cur_X.add_(update, alpha=scale)
            self._solution_updated = True
            return self._cur_X
        return self._cur_X + scale * update

    def set_current_solved(self):
        """Write the current solution block back and forget the current systems"""
        if self._cur_X is not None and self._ls_index:
            valid_pos = [p for p, i in enumerate(self._ls_index) if i >= 0]
            valid_idx = [self._ls_index[p] for p in valid_pos]
            if valid_pos:
                mvt.set_block(mvt.clone_view(self._cur_X, valid_pos), valid_idx, self._X)
            self._num_solved += 1
        self._ls_index = []
        self._cur_X = self._cur_B = self._cur_R0 = None

    # ------------------------------------------------------------------
    # operator application
    # ------------------------------------------------------------------

    def apply_op(self, X: Tensor) -> Tensor:
        return self._A(X)

    def apply_prec(self, X: Tensor) -> Tensor:
        if self._M is None:
            return X.clone()
        return self._M(X)

    def compute_curr_resid(self, X: Optional[Tensor] = None, B: Optional[Tensor] = None) -> Tensor:
        """Explicit residual ``B - A X`` of the current linear systems"""
        X = self._cur_X if X is None else X
        B = self._cur_B if B is None else B
        return B - self._A(X)

    def __repr__(self):
        shape = tuple(self._B.shape) if self._B is not None else None
        return f"LinearProblem(rhs_shape={shape}, ready={self._is_set}, active={self._ls_index})"
