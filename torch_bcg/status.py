"""
Status tests deciding when an iteration kernel stops.

- ``MaxItersTest``: passes once the kernel's iteration counter reaches the cap
- ``ResNormTest``: per-column residual norm test against a scalar tolerance
- ``ComboTest``: OR / AND combination of tests
- ``StatusTestOutput``: pass-through wrapper that logs progress

A kernel calls ``check_status(kernel)`` on its status test after every step and
stops as soon as it returns ``StatusType.PASSED``. The solver manager then asks
the member tests for their cached status with ``get_status()``.
"""

import math
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Literal, Sequence

import torch

from . import multivec as mvt
from .check import NaNDetectedError, check_choice

logger = logging.getLogger(__name__)

ResForm = Literal['implicit', 'explicit']
ScaleType = Literal['initial_residual', 'preconditioned_initial_residual', 'rhs', 'none']
ComboType = Literal['or', 'and']

RES_FORMS = ('implicit', 'explicit')
SCALE_TYPES = ('initial_residual', 'preconditioned_initial_residual', 'rhs', 'none')
COMBO_TYPES = ('or', 'and')


class StatusType(Enum):
    PASSED = 'Passed'
    FAILED = 'Failed'
    UNDEFINED = 'Undefined'


class StatusTest:
    def __init__(self):
        self._status = StatusType.UNDEFINED

    def check_status(self, solver) -> StatusType:
        raise NotImplementedError

    def get_status(self) -> StatusType:
        return self._status

    def reset(self):
        self._status = StatusType.UNDEFINED

    def summary(self, indent: int = 0) -> str:
        return " " * indent + f"{type(self).__name__}: {self._status.value}"

    def __repr__(self):
        return self.summary()


class MaxItersTest(StatusTest):
    def __init__(self, max_iters: int):
        super().__init__()
        self._max_iters = max_iters
        self._n_iters = 0

    def set_max_iters(self, max_iters: int):
        self._max_iters = max_iters

    def get_max_iters(self) -> int:
        return self._max_iters

    def get_num_iters(self) -> int:
        """Iteration count seen at the last ``check_status``"""
        return self._n_iters

    def check_status(self, solver) -> StatusType:
        self._n_iters = solver.get_num_iters()
        self._status = StatusType.PASSED if self._n_iters >= self._max_iters else StatusType.FAILED
        return self._status

    def reset(self):
        super().reset()
        self._n_iters = 0

    def summary(self, indent: int = 0) -> str:
        return (" " * indent
                + f"Number of Iterations = {self._n_iters}"
                + (" == " if self._n_iters == self._max_iters else (" > " if self._n_iters > self._max_iters else " < "))
                + f"{self._max_iters}: {self._status.value}")


@dataclass
class ConvergenceRecord:
    """
    Last residual measure recorded for every column seen since the last reset.

    ``values`` maps global right-hand-side columns to their last test value.
    """
    tolerance: float
    values: Dict[int, float] = field(default_factory=dict)

    def record(self, column: int, value: float):
        self.values[column] = value

    @property
    def achieved(self) -> float:
        """Largest recorded value, ``0.0`` when nothing was recorded"""
        return max(self.values.values()) if self.values else 0.0

    def clear(self):
        self.values.clear()


class ResNormTest(StatusTest):
    """
    Residual norm test ``||r_j|| / scale_j <= tolerance`` for the current systems.

    Parameters
    ----------
    tolerance : float
        convergence tolerance
    quorum : int
        number of columns that must pass for the test to pass, ``-1`` for all
    show_max_res_norm_only : bool
        summarize only the worst column
    """

    def __init__(self, tolerance: float, quorum: int = -1, show_max_res_norm_only: bool = False):
        super().__init__()
        self._tolerance = tolerance
        self._quorum = quorum
        self.show_max_res_norm_only = show_max_res_norm_only

        self._res_form = 'implicit'
        self._res_norm = 'two'
        self._scale_type = 'initial_residual'
        self._scale_norm = 'two'

        self._record = ConvergenceRecord(tolerance)
        self._scale = None
        self._test_values: List[float] = []
        self._active: List[int] = []
        self._conv_positions: List[int] = []

    def define_res_form(self, res_form: ResForm = 'implicit', norm: mvt.NormType = 'two'):
        check_choice("res_form", res_form, RES_FORMS)
        check_choice("norm", norm, mvt.NORM_TYPES)
        self._res_form = res_form
        self._res_norm = norm

    def define_scale_form(self, scale_type: ScaleType = 'initial_residual', norm: mvt.NormType = 'two'):
        check_choice("scale_type", scale_type, SCALE_TYPES)
        check_choice("norm", norm, mvt.NORM_TYPES)
        self._scale_type = scale_type
        self._scale_norm = norm
        self._scale = None

    def set_tolerance(self, tolerance: float):
        self._tolerance = tolerance
        self._record.tolerance = tolerance

    def get_tolerance(self) -> float:
        return self._tolerance

    def set_quorum(self, quorum: int):
        self._quorum = quorum

    @property
    def res_form(self) -> str:
        return self._res_form

    @property
    def res_norm(self) -> str:
        return self._res_norm

    @property
    def scale_type(self) -> str:
        return self._scale_type

    @property
    def record(self) -> ConvergenceRecord:
        return self._record

    def conv_indices(self) -> List[int]:
        """Positions, in the current block, of the columns that passed"""
        return list(self._conv_positions)

    def get_test_value(self) -> Dict[int, float]:
        """Last test value of every column seen since the last reset"""
        return dict(self._record.values)

    def get_current_test_values(self) -> List[float]:
        """Test values of the current block, ``nan`` for padded slots"""
        return list(self._test_values)

    def _column_scale(self, problem) -> torch.Tensor:
        if self._scale is None:
            if self._scale_type == 'initial_residual':
                S = problem.get_init_residual()
            elif self._scale_type == 'preconditioned_initial_residual':
                S = problem.get_init_prec_residual()
                if S is None:
                    S = problem.get_init_residual()
            elif self._scale_type == 'rhs':
                S = problem.get_rhs()
            else:
                S = None
            if S is None:
                self._scale = torch.ones(mvt.num_vecs(problem.get_rhs()), dtype=torch.float64)
            else:
                self._scale = mvt.norm(S, self._scale_norm).detach().to('cpu', torch.float64)
        return self._scale

    def _residual_norms(self, solver) -> torch.Tensor:
        problem = solver.get_problem()
        if self._res_form == 'explicit':
            return mvt.norm(problem.compute_curr_resid(), self._res_norm)
        R, norms = solver.get_native_residuals()
        if norms is not None and self._res_norm == 'two':
            return norms
        return mvt.norm(R, self._res_norm)

    def check_status(self, solver) -> StatusType:
        problem = solver.get_problem()
        active = problem.active_columns
        scale = self._column_scale(problem)
        norms = self._residual_norms(solver).detach().to('cpu', torch.float64).reshape(-1).tolist()

        self._active = active
        self._test_values = []
        self._conv_positions = []
        for pos, col in enumerate(active):
            if col < 0:
                self._test_values.append(math.nan)
                continue
            s = scale[col].item()
            value = norms[pos] / s if s != 0 else norms[pos]
            if math.isnan(value):
                self._status = StatusType.FAILED
                raise NaNDetectedError(
                    f"ResNormTest::check_status(): NaN has been detected in column {col}")
            self._test_values.append(value)
            self._record.record(col, value)
            if value <= self._tolerance:
                self._conv_positions.append(pos)

        num_valid = sum(1 for col in active if col >= 0)
        quorum = num_valid if self._quorum == -1 else min(self._quorum, num_valid)
        passed = num_valid > 0 and len(self._conv_positions) >= quorum
        self._status = StatusType.PASSED if passed else StatusType.FAILED
        return self._status

    def reset(self):
        super().reset()
        self._record.clear()
        self._scale = None
        self._test_values = []
        self._active = []
        self._conv_positions = []

    def summary(self, indent: int = 0) -> str:
        pad = " " * indent
        res = "||r||" if self._res_form == 'implicit' else "||b-Ax||"
        scale = {
            'initial_residual': "||r0||",
            'preconditioned_initial_residual': "||Mr0||",
            'rhs': "||b||",
            'none': "1",
        }[self._scale_type]
        header = f"({self._res_norm} norm {res}) / {scale}"
        values = [(col, v) for col, v in zip(self._active, self._test_values) if col >= 0]
        if not values:
            return pad + f"{header}: {self._status.value}"
        if self.show_max_res_norm_only:
            col, v = max(values, key=lambda cv: cv[1])
            return pad + f"{header}: max {v:.3e} (rhs {col}) <= {self._tolerance:.3e}: {self._status.value}"
        lines = [pad + f"{header} <= {self._tolerance:.3e}: {self._status.value}"]
        for col, v in values:
            lines.append(pad + f"  rhs {col}: {v:.3e}")
        return "\n".join(lines)


class ComboTest(StatusTest):
    """
    Combination of status tests.

    Every member test is evaluated on each check, so each caches a fresh status.
    """

    def __init__(self, combo_type: ComboType, *tests: StatusTest):
        super().__init__()
        check_choice("combo_type", combo_type, COMBO_TYPES)
        self._combo_type = combo_type
        self._tests: List[StatusTest] = list(tests)

    @property
    def tests(self) -> Sequence[StatusTest]:
        return tuple(self._tests)

    def add_status_test(self, test: StatusTest):
        self._tests.append(test)

    def check_status(self, solver) -> StatusType:
        statuses = [test.check_status(solver) for test in self._tests]
        if self._combo_type == 'or':
            passed = any(s == StatusType.PASSED for s in statuses)
        else:
            passed = bool(statuses) and all(s == StatusType.PASSED for s in statuses)
        self._status = StatusType.PASSED if passed else StatusType.FAILED
        return self._status

    def reset(self):
        super().reset()
        for test in self._tests:
            test.reset()

    def summary(self, indent: int = 0) -> str:
        lines = [" " * indent + f"{self._combo_type.upper()} Combination -> {self._status.value}"]
        lines.extend(test.summary(indent + 2) for test in self._tests)
        return "\n".join(lines)


class StatusTestOutput(StatusTest):
    """
    Pass-through wrapper around a status test that logs progress.

    Parameters
    ----------
    test : StatusTest
        test every query is forwarded to
    output_frequency : int
        log every ``output_frequency`` checks, ``-1`` to log only when passed
    """

    def __init__(self, test: StatusTest, output_frequency: int = -1, solver_desc: str = ''):
        super().__init__()
        self._test = test
        self._output_frequency = output_frequency
        self._solver_desc = solver_desc
        self._num_calls = 0

    @property
    def test(self) -> StatusTest:
        return self._test

    @property
    def num_calls(self) -> int:
        return self._num_calls

    def set_output_frequency(self, output_frequency: int):
        self._output_frequency = output_frequency

    def set_solver_desc(self, solver_desc: str):
        self._solver_desc = solver_desc

    def reset_num_calls(self):
        self._num_calls = 0

    def check_status(self, solver) -> StatusType:
        self._status = self._test.check_status(solver)
        self._num_calls += 1
        periodic = self._output_frequency > 0 and self._num_calls % self._output_frequency == 0
        if periodic or (self._output_frequency != 0 and self._status == StatusType.PASSED):
            if logger.isEnabledFor(logging.INFO):
                logger.info("%s iteration %d\n%s", self._solver_desc, solver.get_num_iters(),
                            self._test.summary(indent=2))
        return self._status

    def get_status(self) -> StatusType:
        return self._test.get_status()

    def reset(self):
        super().reset()
        self._test.reset()
        self._num_calls = 0

    def summary(self, indent: int = 0) -> str:
        return self._test.summary(indent)
