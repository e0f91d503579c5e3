"""
torch-bcg: Block Conjugate Gradient for PyTorch

Iterative solver manager for symmetric positive definite linear systems with
many right-hand sides, written on top of PyTorch tensors.

Kernels
-------
- 'scalar': preconditioned CG (block size 1)
- 'single_reduction': Chronopoulos-Gear CG, one fused reduction per step
- 'block': block CG with orthonormalized directions (DGKS, ICGS, IMGS)

Features
--------
- Right-hand sides solved in groups of ``block_size`` columns
- Deflation: converged columns leave the block, the rest keep iterating
- Residual tests on implicit or explicit residuals, several norms and scalings
- NaN detection: the solve returns Unconverged with a zero solution
- Works on any device and on matrix-free operators
- Gradient support for the COO entry point via torch.autograd

Usage
-----
>>> import torch
>>> from torch_bcg import LinearProblem, BlockCGSolver, ReturnType
>>>
>>> A = torch.diag(torch.arange(1.0, 101.0, dtype=torch.float64))
>>> B = torch.randn(100, 8, dtype=torch.float64)
>>>
>>> # Method 1: solver manager
>>> problem = LinearProblem(A, torch.zeros_like(B), B)
>>> problem.set_problem()
>>> solver = BlockCGSolver(problem, block_size=4, convergence_tolerance=1e-10)
>>> solver.solve() == ReturnType.CONVERGED
>>>
>>> # Method 2: functional
>>> from torch_bcg import block_cg_solve
>>> X, num_iters, achieved_tol, converged = block_cg_solve(A, B, block_size=4)
"""

from .check import (
    ShapeException,
    BlockCGError,
    InvalidParameterError,
    LinearProblemNotReady,
    InvariantViolation,
    NaNDetectedError,
    CGIterateFailure,
    PositiveDefiniteFailure,
    OrthoFailure,
)

from .operators import (
    CachedSparseMatrix,
    DenseOperator,
    FunctionOperator,
    as_operator,
    jacobi_preconditioner,
    block_jacobi_preconditioner,
    polynomial_preconditioner,
    get_preconditioner,
)

from .linear_problem import LinearProblem

from .ortho import (
    OrthoManager,
    DGKSOrthoManager,
    ICGSOrthoManager,
    IMGSOrthoManager,
    make_ortho_manager,
    ORTHO_TYPES,
)

from .status import (
    StatusType,
    StatusTest,
    MaxItersTest,
    ResNormTest,
    ComboTest,
    StatusTestOutput,
    ConvergenceRecord,
)

from .kernels import (
    select_kernel,
    make_kernel,
    ScalarCGIter,
    SingleReductionCGIter,
    BlockCGIter,
    KernelType,
)

from .parameters import SolverParameters, get_valid_parameters

from .solver import BlockCGSolver, ReturnType, NAN_ACHIEVED_TOL

from .linear_solve import (
    SolveResult,
    block_cg_solve,
    spsolve_block_cg,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ShapeException",
    "BlockCGError",
    "InvalidParameterError",
    "LinearProblemNotReady",
    "InvariantViolation",
    "NaNDetectedError",
    "CGIterateFailure",
    "PositiveDefiniteFailure",
    "OrthoFailure",
    # Operators
    "CachedSparseMatrix",
    "DenseOperator",
    "FunctionOperator",
    "as_operator",
    "jacobi_preconditioner",
    "block_jacobi_preconditioner",
    "polynomial_preconditioner",
    "get_preconditioner",
    # Problem
    "LinearProblem",
    # Orthogonalization
    "OrthoManager",
    "DGKSOrthoManager",
    "ICGSOrthoManager",
    "IMGSOrthoManager",
    "make_ortho_manager",
    "ORTHO_TYPES",
    # Status tests
    "StatusType",
    "StatusTest",
    "MaxItersTest",
    "ResNormTest",
    "ComboTest",
    "StatusTestOutput",
    "ConvergenceRecord",
    # Kernels
    "select_kernel",
    "make_kernel",
    "ScalarCGIter",
    "SingleReductionCGIter",
    "BlockCGIter",
    "KernelType",
    # Solver manager
    "SolverParameters",
    "get_valid_parameters",
    "BlockCGSolver",
    "ReturnType",
    "NAN_ACHIEVED_TOL",
    # Functional
    "SolveResult",
    "block_cg_solve",
    "spsolve_block_cg",
    # Version
    "__version__",
]
