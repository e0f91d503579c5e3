#!/usr/bin/env python
"""
Basic Usage Examples for torch-bcg

This example demonstrates:
1. Solving many right-hand sides with the solver manager
2. Block size, kernels and deflation
3. Preconditioning
4. Matrix-free operators
5. Status and progress logging
6. The functional API and gradients
"""

import logging
import torch
from torch_bcg import (
    LinearProblem,
    BlockCGSolver,
    ReturnType,
    CachedSparseMatrix,
    FunctionOperator,
    get_preconditioner,
    select_kernel,
    block_cg_solve,
    spsolve_block_cg,
)
from torch_bcg.gallery import poisson_2d, random_spd_coo


# =============================================================================
# 1. Solver manager
# =============================================================================

def example_1_solver_manager():
    """Solve a 2D Poisson problem with 8 right-hand sides, 4 at a time."""
    val, row, col, shape = poisson_2d(32)
    A = CachedSparseMatrix(val, row, col, shape)
    B = torch.rand(shape[0], 8, dtype=torch.float64)

    problem = LinearProblem(A, None, B)
    problem.set_problem()

    solver = BlockCGSolver(problem, block_size=4, convergence_tolerance=1e-10)
    result = solver.solve()

    X = problem.get_lhs()
    residual = torch.linalg.vector_norm(B - A(X), dim=0) / torch.linalg.vector_norm(B, dim=0)
    print(f"{solver.description()}: {result.value}")
    print(f"  groups: {solver.group_sizes}, iterations (last group): {solver.get_num_iters()}")
    print(f"  achieved tolerance: {solver.achieved_tol():.2e}, max residual: {residual.max():.2e}")
    return X


# =============================================================================
# 2. Block size and kernels
# =============================================================================

def example_2_block_sizes():
    """Compare iteration counts for several block sizes and kernels."""
    val, row, col, shape = poisson_2d(32)
    A = CachedSparseMatrix(val, row, col, shape)
    B = torch.rand(shape[0], 8, dtype=torch.float64)

    for block_size, single_reduction in [(1, False), (1, True), (2, False), (8, False)]:
        problem = LinearProblem(A, None, B)
        problem.set_problem()
        solver = BlockCGSolver(problem, block_size=block_size,
                               use_single_reduction=single_reduction,
                               convergence_tolerance=1e-10)
        solver.solve()
        kernel = select_kernel(block_size, single_reduction)
        print(f"  block size {block_size} ({kernel}): {solver.get_num_iters()} iterations")

    # padding: the last group keeps the block size, the empty slots get random rhs
    problem = LinearProblem(A, None, B[:, :5])
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=4, adaptive_block_size=False)
    solver.solve()
    print(f"  padded groups: {solver.group_sizes}")


# =============================================================================
# 3. Preconditioning
# =============================================================================

def example_3_preconditioners():
    """Jacobi and polynomial preconditioners on a badly scaled matrix."""
    val, row, col, shape = poisson_2d(32)
    scale = torch.logspace(0, 3, shape[0], dtype=torch.float64)
    val = val * scale[row].sqrt() * scale[col].sqrt()
    A = CachedSparseMatrix(val, row, col, shape)
    B = torch.rand(shape[0], 4, dtype=torch.float64)

    for name in ['none', 'jacobi', 'polynomial']:
        result = block_cg_solve(A, B, M=get_preconditioner(A, name), block_size=4,
                                convergence_tolerance=1e-8, maximum_iterations=5000)
        print(f"  {name:>10}: {result.num_iters} iterations, converged={result.converged}")


# =============================================================================
# 4. Matrix-free operators
# =============================================================================

def example_4_matrix_free():
    """Operator given as a function: 1D Laplacian with Dirichlet boundaries."""
    n = 500

    def laplacian(X):
        Y = 2.0 * X
        Y[1:] -= X[:-1]
        Y[:-1] -= X[1:]
        return Y

    A = FunctionOperator(laplacian, n)
    B = torch.rand(n, 3, dtype=torch.float64)
    problem = LinearProblem(A, None, B)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=3, maximum_iterations=2000)
    print(f"  matrix-free: {solver.solve().value} in {solver.get_num_iters()} iterations")


# =============================================================================
# 5. Logging
# =============================================================================

def example_5_logging():
    """Progress lines every 10 status checks, plus deflation events at DEBUG."""
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    logging.getLogger("torch_bcg.solver").setLevel(logging.DEBUG)

    val, row, col, shape = poisson_2d(16)
    A = CachedSparseMatrix(val, row, col, shape)
    B = torch.rand(shape[0], 2, dtype=torch.float64)
    problem = LinearProblem(A, None, B)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2, output_frequency=10,
                           show_max_res_norm_only=True, label="Poisson")
    if solver.solve() == ReturnType.CONVERGED:
        print(f"  timers: {solver.get_timers()}")

    logging.getLogger("torch_bcg").setLevel(logging.WARNING)


# =============================================================================
# 6. Gradients
# =============================================================================

def example_6_gradient():
    """Differentiate through the solve with respect to matrix values and rhs."""
    val, row, col, shape = random_spd_coo(100)
    val = val.requires_grad_()
    b = torch.rand(100, 4, dtype=torch.float64, requires_grad=True)

    x = spsolve_block_cg(val, row, col, shape, b, preconditioner='jacobi', block_size=4)
    loss = x.pow(2).sum()
    loss.backward()
    print(f"  loss={loss.item():.4e}, |grad val|={val.grad.norm():.4e}, |grad b|={b.grad.norm():.4e}")


if __name__ == "__main__":
    print("1. Solver manager")
    example_1_solver_manager()
    print("\n2. Block sizes")
    example_2_block_sizes()
    print("\n3. Preconditioners")
    example_3_preconditioners()
    print("\n4. Matrix-free operator")
    example_4_matrix_free()
    print("\n5. Logging")
    example_5_logging()
    print("\n6. Gradients")
    example_6_gradient()
