"""
Iteration kernels for the solver manager.

Kernels:
- 'scalar': preconditioned CG, one right-hand side
- 'single_reduction': Chronopoulos-Gear CG, one right-hand side, one fused
  reduction per step (fewer synchronization points, more vector updates)
- 'block': block CG over several right-hand sides, needs an
  orthogonalization manager

Selection:
- block size 1, single reduction off -> 'scalar'
- block size 1, single reduction on  -> 'single_reduction'
- block size > 1                     -> 'block'
"""

from typing import Dict, Literal, Optional

from ..check import check_positive
from .base import CGIteration, CGIterationStateBase
from .cg import ScalarCGIter, CGIterationState
from .single_reduction import SingleReductionCGIter, CGSingleRedIterationState
from .block_cg import BlockCGIter, BlockCGIterationState

KernelType = Literal['scalar', 'single_reduction', 'block']

KERNELS: Dict[str, type] = {
    'scalar': ScalarCGIter,
    'single_reduction': SingleReductionCGIter,
    'block': BlockCGIter,
}

KERNEL_STATES: Dict[str, type] = {
    'scalar': CGIterationState,
    'single_reduction': CGSingleRedIterationState,
    'block': BlockCGIterationState,
}


def select_kernel(block_size: int, use_single_reduction: bool = False) -> str:
    """
    Pick the kernel variant for a block of right-hand sides.

    Parameters
    ----------
    block_size : int
        number of right-hand sides iterated together
    use_single_reduction : bool
        prefer the single-reduction variant when the block size is 1

    Returns
    -------
    str
        'scalar', 'single_reduction' or 'block'
    """
    check_positive("block_size", block_size, integer=True)
    if block_size == 1:
        return 'single_reduction' if use_single_reduction else 'scalar'
    return 'block'


def make_kernel(kind: str,
                problem,
                status_test,
                conv_test=None,
                ortho=None,
                block_size: int = 1,
                assert_positive_definiteness: bool = True,
                fold_convergence_detection: bool = False) -> CGIteration:
    if kind not in KERNELS:
        raise ValueError(f"Unknown kernel: {kind}. Available: {', '.join(KERNELS)}")
    return KERNELS[kind](
        problem, status_test, conv_test=conv_test, ortho=ortho,
        block_size=block_size,
        assert_positive_definiteness=assert_positive_definiteness,
        fold_convergence_detection=fold_convergence_detection,
    )


def make_state(kind: str, state: Optional[CGIterationStateBase] = None) -> CGIterationStateBase:
    """Reuse ``state`` when it belongs to ``kind``, else allocate a fresh one"""
    if state is not None and state.matches(kind):
        return state
    return KERNEL_STATES[kind]()


__all__ = [
    "KernelType",
    "KERNELS",
    "KERNEL_STATES",
    "select_kernel",
    "make_kernel",
    "make_state",
    "CGIteration",
    "CGIterationStateBase",
    "ScalarCGIter",
    "CGIterationState",
    "SingleReductionCGIter",
    "CGSingleRedIterationState",
    "BlockCGIter",
    "BlockCGIterationState",
]
