import warnings
import torch
from torch import Tensor
from torch.autograd.function import Function
from typing import NamedTuple, Optional, Tuple, Callable

from .linear_problem import LinearProblem
from .operators import CachedSparseMatrix, OperatorLike, get_preconditioner
from .solver import BlockCGSolver, ReturnType


class SolveResult(NamedTuple):
    """Result of a block CG solve."""
    X: Tensor
    num_iters: int
    achieved_tol: float
    converged: bool


def block_cg_solve(A: OperatorLike,
                   B: Tensor,
                   X0: Optional[Tensor] = None,
                   M: Optional[Callable[[Tensor], Tensor]] = None,
                   **params) -> SolveResult:
    """
    Solve ``A X = B`` for a symmetric positive definite ``A`` with block CG

    Parameters
    ----------
    A : Tensor, CachedSparseMatrix or callable
        [n, n] operator, dense, torch sparse, or a callable on [n, k] blocks
    B : torch.Tensor
        [n] or [n, k] right-hand sides
    X0 : torch.Tensor, optional
        initial guess with the shape of B, zero by default
    M : callable, optional
        preconditioner ``R -> M^{-1} R`` on [n, k] blocks
    **params
        solver parameters, see :class:`torch_bcg.SolverParameters`

    Returns
    -------
    SolveResult
        X has the shape of B
    """
    was_1d = B.dim() == 1
    if was_1d:
        B = B.unsqueeze(1)
    if X0 is None:
        X = torch.zeros_like(B)
    else:
        X = (X0.unsqueeze(1) if X0.dim() == 1 else X0).clone()
    if B.dtype != torch.float64:
        warnings.warn("You'd better use float64 to maintain good precision")

    problem = LinearProblem(A, X, B, M=M)
    problem.set_problem()
    solver = BlockCGSolver(problem, **params)
    result = solver.solve()
    converged = result == ReturnType.CONVERGED
    if not converged:
        warnings.warn(f"Block CG did not converge in {solver.get_num_iters()} iterations "
                      f"(achieved tolerance={solver.achieved_tol():.2e})")

    X = problem.get_lhs()
    if was_1d:
        X = X.squeeze(1)
    return SolveResult(X, solver.get_num_iters(), solver.achieved_tol(), converged)


def _solve_coo(val, row, col, shape, B, preconditioner, params):
    A = CachedSparseMatrix(val, row, col, shape)
    M = get_preconditioner(A, preconditioner)
    return block_cg_solve(A, B, M=M, **params).X


class SparseLinearSolveBlockCG(Function):

    @staticmethod
    def forward(ctx,
                val: torch.Tensor,
                row: torch.Tensor,
                col: torch.Tensor,
                shape: Tuple[int, int],
                B: torch.Tensor,
                preconditioner: str,
                params: dict):
        X = _solve_coo(val, row, col, shape, B, preconditioner, params)
        ctx.save_for_backward(val, row, col, X)
        ctx.A_shape = shape
        ctx.preconditioner = preconditioner
        ctx.params = params
        return X

    @staticmethod
    def backward(ctx, gradX):
        val, row, col, X = ctx.saved_tensors
        m, n = ctx.A_shape
        # A^T G = gradX
        gradB = _solve_coo(val, col, row, (n, m), gradX.contiguous(), ctx.preconditioner, ctx.params)
        if X.dim() == 1:
            gradval = - gradB[row] * X[col]
        else:
            gradval = - (gradB[row] * X[col]).sum(dim=1)
        return gradval, None, None, None, gradB, None, None


def spsolve_block_cg(val: torch.Tensor,
                     row: torch.Tensor,
                     col: torch.Tensor,
                     shape: Tuple[int, int],
                     B: torch.Tensor,
                     preconditioner: str = 'none',
                     **params) -> torch.Tensor:
    """Solve the SPD sparse linear system represented in COO format with gradient support

    Only the val and B can receive gradient

    .. math::
        AX = B

    Parameters
    ----------
    val : torch.Tensor
        [nnz]
    row : torch.Tensor
        [nnz]
    col : torch.Tensor
        [nnz]
    shape : Tuple[int, int]
        (n, n)
    B : torch.Tensor
        [n] or [n, k]
    preconditioner : str, optional
        {'jacobi', 'block_jacobi', 'polynomial', 'none'}, by default "none"
    **params
        solver parameters, see :class:`torch_bcg.SolverParameters`

    Returns
    -------
    torch.Tensor
        [n] or [n, k]
    """
    assert val.dim() == 1, f"val must be 1D tensor, got {val.dim()}"
    assert row.dim() == 1, f"row must be 1D tensor, got {row.dim()}"
    assert col.dim() == 1, f"col must be 1D tensor, got {col.dim()}"
    assert B.dim() in (1, 2), f"B must be 1D or 2D tensor, got {B.dim()}"
    assert shape[0] == shape[1], f"A must be square, got {shape}"
    assert val.size(0) == row.size(0), f"val and row must have same size, got {val.size(0)} and {row.size(0)}"
    assert val.size(0) == col.size(0), f"val and col must have same size, got {val.size(0)} and {col.size(0)}"
    assert B.size(0) == shape[0], f"B and shape[0] must have same size, got {B.size(0)} and {shape[0]}"
    assert val.dtype == B.dtype, f"val and B must have same dtype, got {val.dtype} and {B.dtype}"

    return SparseLinearSolveBlockCG.apply(val, row, col, tuple(shape), B, preconditioner, dict(params))
