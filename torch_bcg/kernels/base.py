import torch
from torch import Tensor
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple

from .. import multivec as mvt
from ..check import ShapeException
from ..status import StatusType


@dataclass
class CGIterationStateBase:
    """
    Vectors and scalars a CG kernel carries from one step to the next.

    ``kind`` tags the kernel variant the state belongs to; the solver manager
    only hands a state to a kernel of the same kind.
    """
    kind: ClassVar[str] = None

    R: Optional[Tensor] = None
    Z: Optional[Tensor] = None
    P: Optional[Tensor] = None
    AP: Optional[Tensor] = None

    def matches(self, kind: str) -> bool:
        return self.kind == kind

    def is_initialized(self) -> bool:
        return self.R is not None

    def initialize(self, R0: Tensor):
        """Copy ``R0`` into ``R``, reallocating the vectors when the block layout changed"""
        if self.R is None or self.R.shape != R0.shape or self.R.dtype != R0.dtype or self.R.device != R0.device:
            self.R = torch.empty_like(R0)
            self.Z = torch.empty_like(R0)
            self.P = torch.empty_like(R0)
            self.AP = torch.empty_like(R0)
        self.R.copy_(R0)


class CGIteration:
    """
    Common driver of the CG kernels.

    Subclasses implement ``_setup`` (work done once the state holds the
    initial residual) and ``_step`` (one CG step). ``iterate`` runs steps until
    the status test passes.
    """
    kind: ClassVar[str] = None
    state_type: ClassVar[type] = CGIterationStateBase
    supports_fold_convergence_detection: ClassVar[bool] = False
    requires_ortho: ClassVar[bool] = False

    def __init__(self,
                 problem,
                 status_test,
                 conv_test=None,
                 ortho=None,
                 block_size: int = 1,
                 assert_positive_definiteness: bool = True,
                 fold_convergence_detection: bool = False):
        if self.requires_ortho and ortho is None:
            raise ValueError(f"{type(self).__name__} requires an orthogonalization manager")
        self._problem = problem
        self._status_test = status_test
        self._conv_test = conv_test
        self._ortho = ortho
        self._block_size = 0
        self.set_block_size(block_size)
        self.assert_positive_definiteness = assert_positive_definiteness
        self.fold_convergence_detection = fold_convergence_detection and self.supports_fold_convergence_detection

        self._state = None
        self._iter = 0
        self._initialized = False
        self._native_norms = None

    def get_problem(self):
        return self._problem

    def get_num_iters(self) -> int:
        return self._iter

    def reset_num_iters(self, iters: int = 0):
        self._iter = iters

    def get_block_size(self) -> int:
        return self._block_size

    def set_block_size(self, block_size: int):
        if block_size <= 0:
            raise ValueError(f"block size must be strictly positive, got {block_size}")
        if block_size != self._block_size:
            self._initialized = False
        self._block_size = block_size

    def is_initialized(self) -> bool:
        return self._initialized

    def get_state(self):
        return self._state

    def initialize(self, state=None, R0: Optional[Tensor] = None):
        """
        Bind ``state`` to the kernel and load the initial residual into it.

        Parameters
        ----------
        state : CGIterationStateBase, optional
            state of the matching kind, a fresh one is allocated when None
        R0 : Tensor, optional
            [n, block_size] initial residual, defaults to the problem's
            current initial residual
        """
        if state is None:
            state = self.state_type()
        if not state.matches(self.kind):
            raise TypeError(f"{type(self).__name__} can not use a {type(state).__name__}")
        if R0 is None:
            R0 = self._problem.get_curr_init_residual()
        if mvt.num_vecs(R0) != self._block_size:
            raise ShapeException("R0", tuple(R0.shape), f"[n, {self._block_size}]")

        state.initialize(R0)
        self._state = state
        self._native_norms = None
        self._setup()
        self._initialized = True

    def iterate(self):
        """Take CG steps until the status test passes"""
        if not self._initialized:
            self.initialize()
        while self._status_test.check_status(self) != StatusType.PASSED:
            self._iter += 1
            self._step()

    def get_native_residuals(self) -> Tuple[Tensor, Optional[Tensor]]:
        """
        Residual block maintained by the recurrence.

        Returns
        -------
        Tuple[Tensor, Optional[Tensor]]
            residual [n, block_size] and, when convergence detection is folded
            into the iteration's reduction, its column 2-norms [block_size]
        """
        return self._state.R, self._native_norms

    def _setup(self):
        raise NotImplementedError

    def _step(self):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(block_size={self._block_size}, iters={self._iter})"
