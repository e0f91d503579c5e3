import pytest
import torch
from itertools import product
import sys
sys.path.append("..")
from torch_bcg import (
    LinearProblem,
    ResNormTest,
    MaxItersTest,
    ComboTest,
    StatusType,
    make_ortho_manager,
    jacobi_preconditioner,
    PositiveDefiniteFailure,
    ShapeException,
)
from torch_bcg.kernels import (
    select_kernel,
    make_kernel,
    make_state,
    ScalarCGIter,
    SingleReductionCGIter,
    BlockCGIter,
    CGIterationState,
    CGSingleRedIterationState,
    BlockCGIterationState,
)
from torch_bcg.gallery import random_spd


def make_problem(n=120, k=1, precond=False, seed=0):
    g = torch.Generator().manual_seed(seed)
    A = random_spd(n, generator=g)
    B = torch.randn(n, k, dtype=torch.float64, generator=g)
    M = jacobi_preconditioner(A) if precond else None
    problem = LinearProblem(A, None, B, M=M)
    problem.set_problem()
    problem.set_active_columns(list(range(k)))
    return problem, A, B


def make_tests(tol=1e-10, max_iters=200):
    conv = ResNormTest(tol, quorum=-1)
    maxit = MaxItersTest(max_iters)
    return ComboTest('or', conv, maxit), conv, maxit


def test_select_kernel():
    assert select_kernel(1) == 'scalar'
    assert select_kernel(1, use_single_reduction=True) == 'single_reduction'
    assert select_kernel(2) == 'block'
    assert select_kernel(7, use_single_reduction=True) == 'block'
    # deterministic
    assert all(select_kernel(3) == 'block' for _ in range(5))


def test_make_state_reuses_matching_kind():
    state = make_state('block')
    assert isinstance(state, BlockCGIterationState)
    assert make_state('block', state) is state
    assert isinstance(make_state('scalar', state), CGIterationState)
    assert isinstance(make_state('single_reduction', state), CGSingleRedIterationState)


@pytest.mark.parametrize(
    ['kind', 'precond', 'fold'],
    product(['scalar', 'single_reduction'], [False, True], [False, True])
    )
def test_scalar_kernels_converge(kind, precond, fold):
    problem, A, B = make_problem(precond=precond)
    status, conv, _ = make_tests()
    kernel = make_kernel(kind, problem, status, conv_test=conv, fold_convergence_detection=fold)
    kernel.initialize()
    kernel.iterate()
    assert conv.get_status() == StatusType.PASSED
    assert 0 < kernel.get_num_iters() < 200
    X = problem.get_curr_lhs()
    torch.testing.assert_close(X, torch.linalg.solve(A, B), rtol=1e-7, atol=1e-7)


@pytest.mark.parametrize(
    ['ortho', 'k', 'precond'],
    product(['DGKS', 'ICGS', 'IMGS'], [2, 5], [False, True])
    )
def test_block_kernel_converges(ortho, k, precond):
    problem, A, B = make_problem(k=k, precond=precond)
    status, conv, _ = make_tests()
    kernel = make_kernel('block', problem, status, conv_test=conv,
                         ortho=make_ortho_manager(ortho), block_size=k)
    kernel.initialize()
    kernel.iterate()
    assert conv.get_status() == StatusType.PASSED
    X = problem.get_curr_lhs()
    torch.testing.assert_close(X, torch.linalg.solve(A, B), rtol=1e-7, atol=1e-7)


def test_fold_native_norms():
    problem, _, _ = make_problem()
    status, conv, _ = make_tests(max_iters=5)
    kernel = ScalarCGIter(problem, status, conv_test=conv, fold_convergence_detection=True)
    kernel.initialize()
    kernel.iterate()
    R, norms = kernel.get_native_residuals()
    assert norms is not None
    torch.testing.assert_close(norms, torch.linalg.vector_norm(R, dim=0))

    kernel = ScalarCGIter(problem, status, conv_test=conv)
    kernel.initialize()
    assert kernel.get_native_residuals()[1] is None


def test_block_kernel_never_folds():
    problem, _, _ = make_problem(k=2)
    status, conv, _ = make_tests()
    kernel = BlockCGIter(problem, status, conv_test=conv, ortho=make_ortho_manager('ICGS'),
                         block_size=2, fold_convergence_detection=True)
    assert not kernel.fold_convergence_detection


def test_max_iters_stops_kernel():
    problem, _, _ = make_problem(k=3)
    status, conv, maxit = make_tests(tol=1e-14, max_iters=3)
    kernel = BlockCGIter(problem, status, conv_test=conv, ortho=make_ortho_manager('DGKS'), block_size=3)
    kernel.iterate()
    assert kernel.get_num_iters() == 3
    assert maxit.get_status() == StatusType.PASSED
    assert conv.get_status() == StatusType.FAILED


def test_block_size_checks():
    problem, _, _ = make_problem(k=2)
    status, conv, _ = make_tests()
    with pytest.raises(ValueError):
        ScalarCGIter(problem, status, block_size=2)
    with pytest.raises(ValueError):
        SingleReductionCGIter(problem, status, block_size=3)
    with pytest.raises(ValueError):
        BlockCGIter(problem, status, block_size=2)
    kernel = BlockCGIter(problem, status, ortho=make_ortho_manager('ICGS'), block_size=2)
    with pytest.raises(ValueError):
        kernel.set_block_size(0)
    # initial residual with the wrong number of columns
    with pytest.raises(ShapeException):
        kernel.initialize(R0=torch.zeros(120, 3, dtype=torch.float64))


def test_state_kind_mismatch():
    problem, _, _ = make_problem()
    status, _, _ = make_tests()
    kernel = ScalarCGIter(problem, status)
    with pytest.raises(TypeError):
        kernel.initialize(BlockCGIterationState())


def test_state_reinitialize_on_shrink():
    problem, _, _ = make_problem(k=3)
    status, conv, _ = make_tests()
    kernel = BlockCGIter(problem, status, conv_test=conv, ortho=make_ortho_manager('ICGS'), block_size=3)
    state = BlockCGIterationState()
    kernel.initialize(state)
    assert state.R.shape == (120, 3)
    problem.set_active_columns([0, 2])
    kernel.set_block_size(2)
    assert not kernel.is_initialized()
    kernel.initialize(state, problem.get_curr_init_residual())
    assert state.R.shape == (120, 2)
    assert kernel.get_state() is state


@pytest.mark.parametrize('kind', ['scalar', 'single_reduction', 'block'])
def test_not_positive_definite(kind):
    n = 20
    A = -torch.eye(n, dtype=torch.float64)
    B = torch.randn(n, 2 if kind == 'block' else 1, dtype=torch.float64)
    problem = LinearProblem(A, None, B)
    problem.set_problem()
    problem.set_active_columns(list(range(B.shape[1])))
    status, conv, _ = make_tests()
    kernel = make_kernel(kind, problem, status, conv_test=conv,
                         ortho=make_ortho_manager('ICGS') if kind == 'block' else None,
                         block_size=B.shape[1])
    with pytest.raises(PositiveDefiniteFailure):
        kernel.iterate()
