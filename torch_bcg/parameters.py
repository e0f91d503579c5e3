"""
Solver parameters and their validation.
"""

from dataclasses import dataclass, fields, asdict, replace
from typing import Any, Dict, Mapping, Union

from . import multivec as mvt
from .check import InvalidParameterError, check_positive, check_choice
from .ortho import ORTHO_TYPES
from .status import SCALE_TYPES


@dataclass
class SolverParameters:
    """
    Parameters of :class:`torch_bcg.BlockCGSolver`

    Attributes
    ----------
    convergence_tolerance : float
        relative residual tolerance each right-hand side must reach
    maximum_iterations : int
        maximum number of iterations for each group of right-hand sides
    block_size : int
        number of right-hand sides iterated together
    adaptive_block_size : bool
        shrink the block to the number of right-hand sides left instead of
        padding the last group
    use_single_reduction : bool
        use the single-reduction CG kernel when the block size is 1
    orthogonalization : str
        {'DGKS', 'ICGS', 'IMGS'}, orthogonalization of the block directions
    orthogonalization_constant : float
        DGKS dependency tolerance, used when positive
    residual_norm : str
        {'two', 'one', 'inf'}
    implicit_residual_scaling : str
        {'initial_residual', 'preconditioned_initial_residual', 'rhs', 'none'}
    assert_positive_definiteness : bool
        fail when ``p^H A p`` is not positive
    fold_convergence_detection_into_allreduce : bool
        let scalar kernels compute the residual norm in their own reduction
    show_max_res_norm_only : bool
        progress output shows only the worst right-hand side
    output_frequency : int
        log progress every this many status checks, -1 for never
    label : str
        prefix of timer names and progress lines
    """
    convergence_tolerance: float = 1e-8
    maximum_iterations: int = 1000
    block_size: int = 1
    adaptive_block_size: bool = True
    use_single_reduction: bool = False
    orthogonalization: str = 'ICGS'
    orthogonalization_constant: float = -1.0
    residual_norm: str = 'two'
    implicit_residual_scaling: str = 'initial_residual'
    assert_positive_definiteness: bool = True
    fold_convergence_detection_into_allreduce: bool = False
    show_max_res_norm_only: bool = False
    output_frequency: int = -1
    label: str = 'torch_bcg'

    def validate(self) -> "SolverParameters":
        check_positive("convergence_tolerance", self.convergence_tolerance)
        check_positive("maximum_iterations", self.maximum_iterations, integer=True)
        check_positive("block_size", self.block_size, integer=True)
        check_choice("orthogonalization", self.orthogonalization, ORTHO_TYPES)
        check_choice("residual_norm", self.residual_norm, mvt.NORM_TYPES)
        check_choice("implicit_residual_scaling", self.implicit_residual_scaling, SCALE_TYPES)
        if isinstance(self.output_frequency, bool) or not isinstance(self.output_frequency, int):
            raise InvalidParameterError("output_frequency", self.output_frequency, "an integer")
        return self

    def update(self, params: Union[None, "SolverParameters", Mapping[str, Any]] = None,
               **overrides) -> "SolverParameters":
        """New validated parameters with ``params`` and ``overrides`` applied"""
        changes: Dict[str, Any] = {}
        if isinstance(params, SolverParameters):
            changes.update(asdict(params))
        elif params is not None:
            changes.update(params)
        changes.update(overrides)
        valid = set(parameter_names())
        for key in changes:
            if key not in valid:
                raise InvalidParameterError(key, changes[key], f"a known parameter ({', '.join(sorted(valid))})")
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parameter_names():
    return [f.name for f in fields(SolverParameters)]


def get_valid_parameters() -> SolverParameters:
    """Default parameters"""
    return SolverParameters()
