import logging
import pytest
import torch
from itertools import product
import sys
sys.path.append("..")
from torch_bcg import (
    LinearProblem,
    BlockCGSolver,
    ReturnType,
    SolverParameters,
    StatusType,
    FunctionOperator,
    LinearProblemNotReady,
    InvalidParameterError,
    InvariantViolation,
    PositiveDefiniteFailure,
    NAN_ACHIEVED_TOL,
    jacobi_preconditioner,
)
from torch_bcg.kernels import CGIterationState, BlockCGIterationState, make_state
from torch_bcg.gallery import random_spd, poisson_2d
from torch_bcg.operators import CachedSparseMatrix
import torch_bcg.solver


# ============================================================================
# Scripted kernel: convergence, NaN and failures at chosen iterations
# ============================================================================

UNCONVERGED_NORM = 1e6


class ScriptedKernel:
    """
    Kernel whose residual norms follow a script.

    ``converge_at[col]`` is the iteration at which global column ``col``
    reaches a zero residual. Every step adds one to the current solution, so
    after the solve ``X[:, col]`` holds the number of iterations the column
    spent in the block.
    """

    def __init__(self, kind, problem, status_test, block_size=1,
                 converge_at=None, nan_at=None, raise_at=None, skip_status=False):
        self.kind = kind
        self.problem = problem
        self.status_test = status_test
        self.block_size = block_size
        self.converge_at = converge_at or {}
        self.nan_at = nan_at
        self.raise_at = raise_at
        self.skip_status = skip_status
        self.iters = 0
        self.block_sizes = [block_size]
        self.active_history = []
        self.R = None

    def get_problem(self):
        return self.problem

    def get_num_iters(self):
        return self.iters

    def reset_num_iters(self, iters=0):
        self.iters = iters

    def set_block_size(self, block_size):
        self.block_size = block_size
        self.block_sizes.append(block_size)

    def initialize(self, state=None, R0=None):
        assert R0.shape[1] == self.block_size
        self.R = R0.clone()
        self.active_history.append(self.problem.active_columns)

    def iterate(self):
        if self.skip_status:
            return
        while self.status_test.check_status(self) != StatusType.PASSED:
            self.iters += 1
            if self.raise_at is not None and self.iters == self.raise_at:
                raise RuntimeError("scripted failure")
            X = self.problem.get_curr_lhs()
            self.problem.update_solution(torch.ones_like(X), update_lp=True)

    def get_native_residuals(self):
        norms = []
        for col in self.problem.active_columns:
            if self.nan_at is not None and col == self.nan_at[0] and self.iters >= self.nan_at[1]:
                norms.append(float('nan'))
            elif col >= 0 and self.iters >= self.converge_at.get(col, float('inf')):
                norms.append(0.0)
            else:
                norms.append(UNCONVERGED_NORM)
        return self.R, torch.tensor(norms, dtype=torch.float64)


@pytest.fixture
def scripted_kernels(monkeypatch):
    """
    Install scripted kernels in the solver.

    Returns a function taking the script and returning the list of kernels
    the solver creates, in order.
    """
    created = []
    script = {}

    def fake_make_kernel(kind, problem, status_test, conv_test=None, ortho=None, block_size=1, **kwargs):
        kernel = ScriptedKernel(kind, problem, status_test, block_size=block_size, **script)
        created.append(kernel)
        return kernel

    monkeypatch.setattr(torch_bcg.solver, "make_kernel", fake_make_kernel)

    def set_script(**kwargs):
        script.update(kwargs)
        return created

    return set_script


def make_problem(n=10, k=4, seed=0):
    g = torch.Generator().manual_seed(seed)
    A = torch.diag(torch.arange(1.0, n + 1, dtype=torch.float64))
    B = torch.randn(n, k, dtype=torch.float64, generator=g) + 2.0
    problem = LinearProblem(A, None, B, generator=g)
    problem.set_problem()
    return problem


# ============================================================================
# Scripted scenarios
# ============================================================================

def test_single_rhs(scripted_kernels):
    created = scripted_kernels(converge_at={0: 5})
    problem = make_problem(k=1)
    solver = BlockCGSolver(problem)
    assert solver.solve() == ReturnType.CONVERGED
    assert solver.get_num_iters() == 5
    assert solver.achieved_tol() <= 1e-8
    assert [k.kind for k in created] == ['scalar']
    assert torch.all(problem.get_lhs()[:, 0] == 5)


def test_deflation(scripted_kernels):
    created = scripted_kernels(converge_at={0: 3, 1: 3, 2: 7, 3: 7})
    problem = make_problem(k=4)
    solver = BlockCGSolver(problem, block_size=4)
    assert solver.solve() == ReturnType.CONVERGED
    assert len(created) == 1
    kernel = created[0]
    assert kernel.kind == 'block'
    assert kernel.block_sizes == [4, 2]
    assert kernel.active_history == [[0, 1, 2, 3], [2, 3]]
    assert solver.get_num_iters() == 7
    X = problem.get_lhs()
    assert torch.all(X[:, :2] == 3)
    assert torch.all(X[:, 2:] == 7)
    assert solver.group_sizes == [4]


def test_deflation_keeps_order(scripted_kernels):
    created = scripted_kernels(converge_at={0: 4, 1: 2, 2: 6, 3: 2, 4: 9})
    problem = make_problem(k=5)
    solver = BlockCGSolver(problem, block_size=5)
    assert solver.solve() == ReturnType.CONVERGED
    assert created[0].active_history == [[0, 1, 2, 3, 4], [0, 2, 4], [2, 4], [4]]
    assert created[0].block_sizes == [5, 3, 2, 1]
    X = problem.get_lhs()
    for col, iters in {0: 4, 1: 2, 2: 6, 3: 2, 4: 9}.items():
        assert torch.all(X[:, col] == iters)


def test_max_iters_partial(scripted_kernels):
    scripted_kernels(converge_at={0: 2, 1: 4})
    problem = make_problem(k=3)
    solver = BlockCGSolver(problem, block_size=3, maximum_iterations=10)
    assert solver.solve() == ReturnType.UNCONVERGED
    assert solver.get_num_iters() == 10
    X = problem.get_lhs()
    # converged columns and the best iterate of the others are written back
    assert torch.all(X[:, 0] == 2)
    assert torch.all(X[:, 1] == 4)
    assert torch.all(X[:, 2] == 10)
    scale = torch.linalg.vector_norm(problem.get_init_residual()[:, 2]).item()
    assert solver.achieved_tol() == pytest.approx(UNCONVERGED_NORM / scale)


def test_unconverged_group_does_not_stop_later_groups(scripted_kernels):
    created = scripted_kernels(converge_at={0: 3, 2: 5, 3: 5})
    problem = make_problem(k=4)
    solver = BlockCGSolver(problem, block_size=2, maximum_iterations=8)
    assert solver.solve() == ReturnType.UNCONVERGED
    assert solver.group_sizes == [2, 2]
    assert len(created) == 2
    X = problem.get_lhs()
    assert torch.all(X[:, 0] == 3)
    assert torch.all(X[:, 1] == 8)
    assert torch.all(X[:, 2:] == 5)
    # counter of the last group only
    assert solver.get_num_iters() == 5


def test_groups_and_kernel_selection(scripted_kernels):
    created = scripted_kernels(converge_at={c: 1 for c in range(5)})
    problem = make_problem(k=5)
    solver = BlockCGSolver(problem, block_size=2)
    assert solver.solve() == ReturnType.CONVERGED
    assert solver.group_sizes == [2, 2, 1]
    assert sum(solver.group_sizes) == 5
    assert [k.kind for k in created] == ['block', 'block', 'scalar']
    assert isinstance(solver.state, CGIterationState)


def test_single_reduction_selection(scripted_kernels):
    created = scripted_kernels(converge_at={c: 1 for c in range(3)})
    solver = BlockCGSolver(make_problem(k=3), block_size=2, use_single_reduction=True)
    solver.solve()
    assert [k.kind for k in created] == ['block', 'single_reduction']


def test_padded_last_group(scripted_kernels):
    created = scripted_kernels(converge_at={c: 2 for c in range(5)})
    problem = make_problem(k=5)
    solver = BlockCGSolver(problem, block_size=3, adaptive_block_size=False)
    assert solver.solve() == ReturnType.CONVERGED
    assert solver.group_sizes == [3, 2]
    assert [k.kind for k in created] == ['block', 'block']
    assert created[1].active_history == [[3, 4, -1]]
    assert created[1].block_sizes == [3]
    assert torch.all(problem.get_lhs() == 2)


def test_nan_aborts_solve(scripted_kernels):
    scripted_kernels(converge_at={0: 2, 1: 2, 2: 50, 3: 50}, nan_at=(3, 4))
    problem = make_problem(k=4)
    solver = BlockCGSolver(problem, block_size=2)
    with pytest.warns(UserWarning, match="NaN"):
        result = solver.solve()
    assert result == ReturnType.UNCONVERGED
    assert solver.achieved_tol() == NAN_ACHIEVED_TOL
    # every column is zeroed, including the group solved before the NaN
    assert torch.equal(problem.get_lhs(), torch.zeros(10, 4, dtype=torch.float64))
    assert solver.get_num_iters() == 4


def test_status_tests_not_passed(scripted_kernels):
    scripted_kernels(skip_status=True)
    solver = BlockCGSolver(make_problem(k=2), block_size=2)
    with pytest.raises(InvariantViolation):
        solver.solve()


def test_kernel_failure_propagates(scripted_kernels, caplog):
    scripted_kernels(raise_at=3)
    solver = BlockCGSolver(make_problem(k=2), block_size=2)
    with caplog.at_level(logging.ERROR, logger="torch_bcg.solver"):
        with pytest.raises(RuntimeError, match="scripted failure"):
            solver.solve()
    assert "at iteration 3" in caplog.text


def test_achieved_tol_is_max_of_record(scripted_kernels):
    scripted_kernels(converge_at={0: 1, 1: 2})
    solver = BlockCGSolver(make_problem(k=3), block_size=3, maximum_iterations=4)
    solver.solve()
    values = solver.conv_test.get_test_value()
    assert set(values) == {0, 1, 2}
    assert solver.achieved_tol() == max(values.values())
    assert solver.achieved_tol() == solver.conv_test.record.achieved


# ============================================================================
# Parameters and setup
# ============================================================================

def test_not_ready():
    with pytest.raises(LinearProblemNotReady):
        BlockCGSolver().solve()
    A = torch.eye(3, dtype=torch.float64)
    problem = LinearProblem(A, None, torch.ones(3, 1, dtype=torch.float64))
    solver = BlockCGSolver(problem)
    with pytest.raises(LinearProblemNotReady):
        solver.solve()
    problem.set_problem()
    assert solver.solve() == ReturnType.CONVERGED


@pytest.mark.parametrize(
    ['name', 'value'],
    [('block_size', 0), ('block_size', 2.5), ('maximum_iterations', -1),
     ('convergence_tolerance', 0.0), ('orthogonalization', 'MGS'),
     ('residual_norm', 'fro'), ('implicit_residual_scaling', 'initial'),
     ('no_such_parameter', 1)]
    )
def test_invalid_parameters(name, value):
    with pytest.raises(InvalidParameterError):
        BlockCGSolver(make_problem(), **{name: value})
    solver = BlockCGSolver(make_problem())
    with pytest.raises(InvalidParameterError):
        solver.set_parameters({name: value})


def test_parameters():
    defaults = BlockCGSolver().get_valid_parameters()
    assert defaults == SolverParameters()
    assert defaults.convergence_tolerance == 1e-8
    assert defaults.maximum_iterations == 1000
    assert defaults.block_size == 1
    assert defaults.adaptive_block_size
    assert defaults.orthogonalization == 'ICGS'

    solver = BlockCGSolver(make_problem(), SolverParameters(block_size=3), orthogonalization='DGKS')
    params = solver.get_current_parameters()
    assert params.block_size == 3
    assert params.orthogonalization == 'DGKS'
    assert solver.ortho.kind == 'DGKS'

    solver.set_parameters(convergence_tolerance=1e-4, orthogonalization_constant=0.3)
    assert solver.conv_test.get_tolerance() == 1e-4
    assert solver.ortho.dep_tol == 0.3
    solver.set_parameters(maximum_iterations=7)
    assert solver.max_iter_test.get_max_iters() == 7
    solver.set_parameters(implicit_residual_scaling='rhs')
    assert solver.conv_test.scale_type == 'rhs'


def test_description():
    solver = BlockCGSolver(make_problem(), block_size=4)
    assert solver.description() == "BlockCGSolver<float64>{Ortho Type='ICGS', Block Size=4}"
    assert repr(solver) == solver.description()


def test_timers():
    A = random_spd(100)
    problem = LinearProblem(A, None, torch.randn(100, 4, dtype=torch.float64))
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2, label="Run")
    solver.solve()
    timers = solver.get_timers()
    assert timers["Run: BlockCGSolver total solve time"] > 0


# ============================================================================
# Real solves
# ============================================================================

def relative_residual(A, X, B):
    return (torch.linalg.vector_norm(B - A @ X, dim=0) / torch.linalg.vector_norm(B, dim=0)).max().item()


@pytest.mark.parametrize(
    ['block_size', 'adaptive', 'ortho'],
    product([1, 2, 3, 7], [True, False], ['DGKS', 'ICGS', 'IMGS'])
    )
def test_solve_dense(block_size, adaptive, ortho):
    g = torch.Generator().manual_seed(1)
    A = random_spd(200, generator=g)
    B = torch.randn(200, 7, dtype=torch.float64, generator=g)
    problem = LinearProblem(A, None, B, generator=g)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=block_size, adaptive_block_size=adaptive,
                           orthogonalization=ortho, convergence_tolerance=1e-10)
    assert solver.solve() == ReturnType.CONVERGED
    assert sum(solver.group_sizes) == 7
    assert solver.achieved_tol() <= 1e-10
    assert relative_residual(A, problem.get_lhs(), B) < 1e-8


@pytest.mark.parametrize(
    ['use_single_reduction', 'fold'],
    product([False, True], [False, True])
    )
def test_solve_sparse_scalar(use_single_reduction, fold):
    val, row, col, shape = poisson_2d(8)
    A = CachedSparseMatrix(val, row, col, shape)
    A_dense = torch.sparse_coo_tensor(torch.stack([row, col]), val, shape).to_dense()
    B = torch.randn(shape[0], 3, dtype=torch.float64)
    problem = LinearProblem(A, None, B, M=jacobi_preconditioner(A))
    problem.set_problem()
    solver = BlockCGSolver(problem, use_single_reduction=use_single_reduction,
                           fold_convergence_detection_into_allreduce=fold,
                           convergence_tolerance=1e-10)
    assert solver.solve() == ReturnType.CONVERGED
    torch.testing.assert_close(problem.get_lhs(), torch.linalg.solve(A_dense, B), rtol=1e-6, atol=1e-6)


def test_solve_eigenvector_rhs_deflates():
    g = torch.Generator().manual_seed(2)
    n = 200
    Q, _ = torch.linalg.qr(torch.randn(n, n, dtype=torch.float64, generator=g))
    eigs = torch.linspace(1.0, 50.0, n, dtype=torch.float64)
    A = Q @ torch.diag(eigs) @ Q.T
    A = 0.5 * (A + A.T)
    B = torch.randn(n, 4, dtype=torch.float64, generator=g)
    B[:, 0] = 3.0 * Q[:, 0]
    B[:, 1] = -2.0 * Q[:, 5]

    history = []

    class RecordingProblem(LinearProblem):
        def set_active_columns(self, index):
            history.append(list(index))
            super().set_active_columns(index)

    problem = RecordingProblem(A, None, B)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=4, convergence_tolerance=1e-8)
    assert solver.solve() == ReturnType.CONVERGED
    assert history[0] == [0, 1, 2, 3]
    assert history[1] == [2, 3]
    assert relative_residual(A, problem.get_lhs(), B) < 1e-6


def test_solve_nan_operator():
    A = random_spd(20)
    calls = {'n': 0}

    def op(X):
        calls['n'] += 1
        Y = A @ X
        return Y * float('nan') if calls['n'] > 4 else Y

    B = torch.randn(20, 4, dtype=torch.float64)
    problem = LinearProblem(FunctionOperator(op, 20), torch.ones_like(B), B)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2)
    with pytest.warns(UserWarning):
        assert solver.solve() == ReturnType.UNCONVERGED
    assert solver.achieved_tol() == 1.0
    assert torch.equal(problem.get_lhs(), torch.zeros_like(B))


def test_solve_not_positive_definite(caplog):
    A = -torch.eye(10, dtype=torch.float64)
    problem = LinearProblem(A, None, torch.ones(10, 2, dtype=torch.float64))
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2)
    with pytest.raises(PositiveDefiniteFailure):
        solver.solve()
    assert "BlockCGIter.iterate()" in caplog.text


def test_zero_rhs_column_converges_immediately():
    A = random_spd(20)
    B = torch.randn(20, 1, dtype=torch.float64)
    problem = LinearProblem(A, None, torch.zeros_like(B))
    problem.set_problem()
    solver = BlockCGSolver(problem)
    assert solver.solve() == ReturnType.CONVERGED
    assert solver.get_num_iters() == 0
    assert torch.equal(problem.get_lhs(), torch.zeros_like(B))


def test_reset_problem_reuses_solution():
    g = torch.Generator().manual_seed(4)
    A = random_spd(100, generator=g)
    B = torch.randn(100, 2, dtype=torch.float64, generator=g)
    problem = LinearProblem(A, None, B)
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2, maximum_iterations=3)
    solver.solve()
    # restart from the current iterate
    solver.reset('problem')
    solver.set_parameters(maximum_iterations=500, convergence_tolerance=1e-6)
    assert solver.solve() == ReturnType.CONVERGED
    assert relative_residual(A, problem.get_lhs(), B) < 1e-5
    with pytest.raises(ValueError):
        solver.reset('everything')


def test_state_reused_between_solves():
    g = torch.Generator().manual_seed(5)
    A = random_spd(100, generator=g)
    problem = LinearProblem(A, None, torch.randn(100, 4, dtype=torch.float64, generator=g))
    problem.set_problem()
    solver = BlockCGSolver(problem, block_size=2)
    solver.solve()
    state = solver.state
    assert isinstance(state, BlockCGIterationState)
    problem.set_problem()
    solver.solve()
    assert solver.state is state
    assert make_state('block', state) is state
