import torch


class ShapeException(Exception):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")


class BlockCGError(Exception):
    """Base class of every error raised by torch_bcg"""


class InvalidParameterError(BlockCGError, ValueError):
    def __init__(self, name, value, expected):
        self.name = name
        self.value = value
        self.expected = expected
        super().__init__(f"parameter {name!r} got {value!r}, expected {expected}")


class LinearProblemNotReady(BlockCGError):
    """``solve()`` was called before the linear problem was finalized"""


class InvariantViolation(BlockCGError):
    """Internal logic defect of the status tests or of an iteration kernel"""

    def __init__(self, message, iteration=None):
        self.iteration = iteration
        if iteration is not None:
            message = f"{message} (iteration {iteration})"
        super().__init__(message)


class NaNDetectedError(BlockCGError):
    """A NaN showed up in the residual norms or in the iteration scalars"""


class CGIterateFailure(BlockCGError):
    """Unrecoverable failure inside a CG iteration step"""


class PositiveDefiniteFailure(CGIterateFailure):
    pass


class OrthoFailure(CGIterateFailure):
    pass


def check_multivec(name: str, X: torch.Tensor, n: int = None, k: int = None):
    """
    Check a multivector, i.e. a block of column vectors

    Parameters
    ----------
    name: str
        name reported in the exception
    X: torch.Tensor
        [n, k] block of k column vectors of length n
    n: int, optional
        expected number of rows
    k: int, optional
        expected number of columns
    """
    if not isinstance(X, torch.Tensor):
        raise TypeError(f"{name} must be a torch.Tensor, got {type(X).__name__}")
    if not X.ndim == 2:
        raise ShapeException(name, tuple(X.shape), "[n, k]")
    if n is not None and X.shape[0] != n:
        raise ShapeException(name, tuple(X.shape), f"[{n}, k]")
    if k is not None and X.shape[1] != k:
        raise ShapeException(name, tuple(X.shape), f"[n, {k}]")


def check_square(name: str, shape: tuple):
    """
    Check the shape of a linear operator

    Parameters
    ----------
    name: str
        name reported in the exception
    shape: tuple
        (m,n) shape of the operator, must be square and non-empty
    """
    if not (len(shape) == 2 and shape[0] > 0 and shape[0] == shape[1]):
        raise ShapeException(name, tuple(shape), "(n,n)")


def check_positive(name: str, value, integer: bool = False):
    if integer and (isinstance(value, bool) or not isinstance(value, int)):
        raise InvalidParameterError(name, value, "an integer")
    if not value > 0:
        raise InvalidParameterError(name, value, "a strictly positive value")


def check_choice(name: str, value, choices):
    if value not in choices:
        raise InvalidParameterError(name, value, f"one of {sorted(choices)}")
