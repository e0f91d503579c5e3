"""
Multivector operations used by the iteration kernels and the solver manager.

A multivector is a ``[n, k]`` tensor holding ``k`` column vectors. Every
operation here goes through plain torch calls, so it runs unchanged on CPU,
CUDA, or on tensors whose reductions are carried out by a process group.
"""

import torch
from typing import Sequence, Union, Literal

NormType = Literal['two', 'one', 'inf']

NORM_TYPES = ('two', 'one', 'inf')

Index = Union[Sequence[int], slice]


def num_vecs(X: torch.Tensor) -> int:
    return X.shape[1]


def vec_length(X: torch.Tensor) -> int:
    return X.shape[0]


def _as_index(index: Index, device) -> Union[slice, torch.Tensor]:
    if isinstance(index, slice):
        return index
    index = list(index)
    if index and index == list(range(index[0], index[0] + len(index))):
        # contiguous, so a slice keeps it a view
        return slice(index[0], index[0] + len(index))
    return torch.as_tensor(index, dtype=torch.long, device=device)


def clone(X: torch.Tensor, k: int) -> torch.Tensor:
    """New zero-filled multivector with the row layout of ``X`` and ``k`` columns"""
    return X.new_zeros((X.shape[0], k))


def clone_copy(X: torch.Tensor, index: Index = None) -> torch.Tensor:
    """Deep copy of ``X`` (or of the selected columns)"""
    if index is None:
        return X.clone()
    return X[:, _as_index(index, X.device)].clone()


def clone_view(X: torch.Tensor, index: Index) -> torch.Tensor:
    """
    Columns of ``X`` selected by ``index``.

    Contiguous selections are returned as views sharing storage with ``X``;
    scattered selections can not be expressed as strided views and come back
    as copies.
    """
    return X[:, _as_index(index, X.device)]


def set_block(A: torch.Tensor, index: Index, B: torch.Tensor) -> torch.Tensor:
    """Copy the columns of ``A`` into the columns of ``B`` selected by ``index``"""
    B[:, _as_index(index, B.device)] = A
    return B


def init(X: torch.Tensor, value: float = 0.0) -> torch.Tensor:
    return X.fill_(value)


def random(X: torch.Tensor, generator: torch.Generator = None) -> torch.Tensor:
    X.copy_(torch.rand(X.shape, dtype=X.dtype, device=X.device, generator=generator) * 2 - 1)
    return X


def trans_mv(alpha: float, A: torch.Tensor, B: torch.Tensor) -> torch.Tensor:
    """Dense ``alpha * A^H B``, one global reduction for the whole block"""
    return alpha * (A.mH @ B)


def times_mat_add_mv(alpha: float,
                     A: torch.Tensor,
                     M: torch.Tensor,
                     beta: float,
                     B: torch.Tensor) -> torch.Tensor:
    """In place ``B <- alpha * A @ M + beta * B``"""
    if beta == 0:
        return B.copy_(alpha * (A @ M))
    if beta != 1:
        B.mul_(beta)
    return B.add_(A @ M, alpha=alpha)


def add_mv(alpha: float, A: torch.Tensor, beta: float, B: torch.Tensor) -> torch.Tensor:
    return alpha * A + beta * B


def dot(A: torch.Tensor, B: torch.Tensor) -> torch.Tensor:
    """Column-wise inner products ``[k]``"""
    return (A.conj() * B).sum(dim=0)


def norm(X: torch.Tensor, kind: NormType = 'two') -> torch.Tensor:
    """
    Column norms of a multivector

    Parameters
    ----------
    X: torch.Tensor
        [n, k] multivector
    kind: str
        {'two', 'one', 'inf'}

    Returns
    -------
    torch.Tensor
        [k] real norms
    """
    if kind == 'two':
        return torch.linalg.vector_norm(X, ord=2, dim=0)
    elif kind == 'one':
        return torch.linalg.vector_norm(X, ord=1, dim=0)
    elif kind == 'inf':
        return torch.linalg.vector_norm(X, ord=float('inf'), dim=0)
    raise ValueError(f"Unknown norm type: {kind}")
