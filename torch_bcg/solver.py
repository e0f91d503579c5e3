"""
Solver manager driving the CG kernels over many right-hand sides.

The right-hand sides are solved in sequential groups of ``block_size``
columns. For each group the manager picks a kernel ('scalar',
'single_reduction' or 'block'), iterates until some columns converge, drops
the converged columns from the block (deflation) and keeps iterating on the
rest, until the whole group converged or hit the iteration cap.

Example
-------
>>> from torch_bcg import LinearProblem, BlockCGSolver
>>> problem = LinearProblem(A, X0, B)
>>> problem.set_problem()
>>> solver = BlockCGSolver(problem, block_size=4, convergence_tolerance=1e-10)
>>> result = solver.solve()
>>> result, solver.get_num_iters(), solver.achieved_tol()
"""

import time
import logging
import warnings
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from . import multivec as mvt
from .check import (
    LinearProblemNotReady,
    InvariantViolation,
    NaNDetectedError,
)
from .kernels import select_kernel, make_kernel, make_state
from .ortho import make_ortho_manager, DGKSOrthoManager
from .parameters import SolverParameters, get_valid_parameters
from .status import (
    StatusType,
    MaxItersTest,
    ResNormTest,
    ComboTest,
    StatusTestOutput,
)

logger = logging.getLogger(__name__)

# achieved tolerance reported after a NaN aborted the solve
NAN_ACHIEVED_TOL = 1.0


class ReturnType(Enum):
    CONVERGED = 'Converged'
    UNCONVERGED = 'Unconverged'


class BlockCGSolver:
    """
    Block CG solver manager.

    Parameters
    ----------
    problem : LinearProblem, optional
        problem to solve, may be set later with :meth:`set_problem`
    params : SolverParameters or mapping, optional
        parameters, defaults are applied at the first :meth:`solve` when omitted
    **overrides
        individual parameters, see :class:`SolverParameters`
    """

    def __init__(self, problem=None,
                 params: Union[None, SolverParameters, Mapping[str, Any]] = None,
                 **overrides):
        self._problem = problem
        self._params = get_valid_parameters()
        self._is_set = False

        self._ortho = None
        self._max_iter_test: Optional[MaxItersTest] = None
        self._conv_test: Optional[ResNormTest] = None
        self._status_test: Optional[ComboTest] = None
        self._output_test: Optional[StatusTestOutput] = None

        self._state = None
        self._kernel = None
        self._achieved_tol = 0.0
        self._num_iters = 0
        self._block_size = self._params.block_size
        self._timers: Dict[str, float] = {}
        self.group_sizes: List[int] = []

        if params is not None or overrides:
            self.set_parameters(params, **overrides)

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    def set_problem(self, problem):
        self._problem = problem

    def get_problem(self):
        return self._problem

    def get_valid_parameters(self) -> SolverParameters:
        return get_valid_parameters()

    def get_current_parameters(self) -> SolverParameters:
        return self._params.update()

    def set_parameters(self, params: Union[None, SolverParameters, Mapping[str, Any]] = None,
                       **overrides):
        """
        Update the parameters and rebuild the helpers that depend on them.

        Raises
        ------
        InvalidParameterError
            unknown parameter name or invalid value
        """
        old = self._params
        new = old.update(params, **overrides)
        first = not self._is_set
        self._params = new
        self._block_size = new.block_size

        ortho_changed = first or new.orthogonalization != old.orthogonalization
        if ortho_changed or new.orthogonalization_constant != old.orthogonalization_constant:
            if (not ortho_changed and isinstance(self._ortho, DGKSOrthoManager)
                    and new.orthogonalization_constant > 0):
                self._ortho.set_dep_tol(new.orthogonalization_constant)
            else:
                self._ortho = make_ortho_manager(new.orthogonalization,
                                                 new.orthogonalization_constant, label=new.label)
        if new.label != old.label and self._ortho is not None:
            self._ortho.set_label(new.label)

        if self._max_iter_test is None:
            self._max_iter_test = MaxItersTest(new.maximum_iterations)
        else:
            self._max_iter_test.set_max_iters(new.maximum_iterations)

        new_res_test = (self._conv_test is None
                        or new.residual_norm != old.residual_norm
                        or new.implicit_residual_scaling != old.implicit_residual_scaling)
        if new_res_test:
            # quorum 1: the test passes as soon as one column converged
            self._conv_test = ResNormTest(new.convergence_tolerance, quorum=1,
                                          show_max_res_norm_only=new.show_max_res_norm_only)
            self._conv_test.define_res_form('implicit', new.residual_norm)
            self._conv_test.define_scale_form(new.implicit_residual_scaling, 'two')
        else:
            self._conv_test.set_tolerance(new.convergence_tolerance)
            self._conv_test.show_max_res_norm_only = new.show_max_res_norm_only

        if self._status_test is None or new_res_test:
            self._status_test = ComboTest('or', self._conv_test, self._max_iter_test)
        if self._output_test is None or new_res_test:
            self._output_test = StatusTestOutput(self._status_test, new.output_frequency,
                                                 solver_desc=f"{new.label}: Block CG")
        else:
            self._output_test.set_output_frequency(new.output_frequency)
            self._output_test.set_solver_desc(f"{new.label}: Block CG")

        self._is_set = True

    def reset(self, what: str = 'problem'):
        """``'problem'``: recompute the problem's initial residual from its current solution"""
        if what != 'problem':
            raise ValueError(f"Unknown reset type: {what}")
        if self._problem is not None:
            self._problem.set_problem()

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------

    def achieved_tol(self) -> float:
        """Largest residual measure recorded over all right-hand sides by the last solve"""
        return self._achieved_tol

    def get_num_iters(self) -> int:
        """
        Iteration count of the last solve.

        This is the counter of the most recently run kernel, i.e. of the last
        group of right-hand sides, not a sum over groups.
        """
        return self._num_iters

    def get_timers(self) -> Dict[str, float]:
        return dict(self._timers)

    @property
    def conv_test(self) -> Optional[ResNormTest]:
        return self._conv_test

    @property
    def max_iter_test(self) -> Optional[MaxItersTest]:
        return self._max_iter_test

    @property
    def ortho(self):
        return self._ortho

    @property
    def state(self):
        """Iteration state of the last kernel variant used"""
        return self._state

    def description(self) -> str:
        dtype = getattr(self._problem, "dtype", None) if self._problem is not None else None
        name = str(dtype).replace("torch.", "") if dtype is not None else "unknown"
        return (f"BlockCGSolver<{name}>{{Ortho Type='{self._params.orthogonalization}', "
                f"Block Size={self._block_size}}}")

    def __repr__(self):
        return self.description()

    # ------------------------------------------------------------------
    # solve
    # ------------------------------------------------------------------

    def _make_kernel(self, block_size: int):
        p = self._params
        kind = select_kernel(block_size, p.use_single_reduction)
        kernel = make_kernel(
            kind, self._problem, self._output_test,
            conv_test=self._conv_test,
            ortho=self._ortho if kind == 'block' else None,
            block_size=block_size,
            assert_positive_definiteness=p.assert_positive_definiteness,
            fold_convergence_detection=p.fold_convergence_detection_into_allreduce,
        )
        self._state = make_state(kernel.kind, self._state)
        return kernel

    def _group_index(self, start: int, num_curr: int, block_size: int) -> List[int]:
        index = list(range(start, start + num_curr))
        return index + [-1] * (block_size - num_curr)

    def _abort_on_nan(self, kernel):
        mvt.init(self._problem.get_lhs(), 0.0)
        self._achieved_tol = NAN_ACHIEVED_TOL
        self._num_iters = kernel.get_num_iters()
        warnings.warn("BlockCGSolver.solve(): NaN has been detected, the solution was set to zero")

    def _solve_group(self, kernel, index: List[int]) -> Optional[bool]:
        """
        Iterate on one group until it is resolved.

        Returns
        -------
        Optional[bool]
            True if every column converged, False if the iteration cap was
            reached first, None if a NaN aborted the solve
        """
        problem = self._problem
        while True:
            try:
                kernel.iterate()

                if self._conv_test.get_status() == StatusType.PASSED:
                    conv = set(self._conv_test.conv_indices())
                    active = [pos for pos, col in enumerate(index) if col >= 0]
                    if len(conv) == len(active):
                        return True

                    # deflation: keep the unconverged columns, in order
                    problem.set_current_solved()
                    keep = [pos for pos in active if pos not in conv]
                    index = [index[pos] for pos in keep]
                    problem.set_active_columns(index)
                    R, _ = kernel.get_native_residuals()
                    R0 = mvt.clone_copy(R, keep)
                    logger.debug("deflation at iteration %d: %d -> %d active columns",
                                 kernel.get_num_iters(), len(active), len(keep))
                    kernel.set_block_size(len(keep))
                    kernel.initialize(self._state, R0)

                elif self._max_iter_test.get_status() == StatusType.PASSED:
                    return False

                else:
                    raise InvariantViolation(
                        "BlockCGSolver.solve(): neither the convergence test nor the "
                        "maximum iteration count test passed",
                        iteration=kernel.get_num_iters())

            except NaNDetectedError:
                self._abort_on_nan(kernel)
                return None
            except Exception:
                logger.error("BlockCGSolver.solve(): exception raised in %s.iterate() at iteration %d",
                             type(kernel).__name__, kernel.get_num_iters())
                raise

    def solve(self) -> ReturnType:
        """
        Solve every right-hand side of the problem.

        Returns
        -------
        ReturnType
            CONVERGED if every group converged, UNCONVERGED if a group hit the
            iteration cap or a NaN was detected (the solution is zero then)

        Raises
        ------
        LinearProblemNotReady
            no problem, or its ``set_problem()`` was not called
        InvariantViolation
            a kernel returned without any status test passing
        """
        if not self._is_set:
            self.set_parameters()
        if self._problem is None or not self._problem.is_ready():
            raise LinearProblemNotReady(
                "BlockCGSolver.solve(): linear problem is not ready, set_problem() has not been called")

        p = self._params
        problem = self._problem
        num_rhs = mvt.num_vecs(problem.get_rhs())
        block_size = p.block_size
        start = 0
        remaining = num_rhs

        self._output_test.reset()
        self.group_sizes = []
        self._achieved_tol = 0.0
        is_converged = True

        timer_name = f"{p.label}: BlockCGSolver total solve time"
        tic = time.perf_counter()
        try:
            while remaining > 0:
                num_curr = min(remaining, block_size)
                if p.adaptive_block_size:
                    block_size = num_curr
                index = self._group_index(start, num_curr, block_size)
                problem.set_active_columns(index)
                self._block_size = block_size
                self.group_sizes.append(num_curr)

                kernel = self._make_kernel(block_size)
                self._kernel = kernel
                kernel.reset_num_iters()
                self._output_test.reset_num_calls()
                logger.debug("group of columns %d..%d, %s, block size %d",
                             start, start + num_curr - 1, type(kernel).__name__, block_size)

                kernel.initialize(self._state, problem.get_curr_init_residual())
                resolved = self._solve_group(kernel, index)
                if resolved is None:
                    return ReturnType.UNCONVERGED
                if not resolved:
                    is_converged = False

                problem.set_current_solved()
                start += num_curr
                remaining -= num_curr
        finally:
            elapsed = time.perf_counter() - tic
            self._timers[timer_name] = self._timers.get(timer_name, 0.0) + elapsed

        logger.info("%s\n%s", self.description(), self._status_test.summary())
        logger.info("%s: %.6f s", timer_name, elapsed)

        self._num_iters = self._max_iter_test.get_num_iters()

        values = self._conv_test.get_test_value()
        if num_rhs > 0 and not values:
            raise InvariantViolation(
                "BlockCGSolver.solve(): the convergence test did not record any residual value")
        self._achieved_tol = max(values.values()) if values else 0.0

        return ReturnType.CONVERGED if is_converged else ReturnType.UNCONVERGED
