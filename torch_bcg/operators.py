"""
Linear operators and preconditioners acting on blocks of vectors.

Every operator here maps a ``[n, k]`` multivector to a ``[n, k]`` multivector,
so the same object serves the scalar kernels (``k = 1``) and the block kernel.

Operators:
- ``CachedSparseMatrix``: COO triplets converted once to CSR
- ``DenseOperator``: dense ``[n, n]`` tensor
- any callable ``X -> A @ X`` wrapped by ``FunctionOperator``

Preconditioners (return ``M^{-1}`` as a callable on blocks):
- 'jacobi': diagonal scaling
- 'block_jacobi': inverted diagonal blocks
- 'polynomial': truncated Neumann series around the diagonal
- 'none': identity
"""

import torch
from torch import Tensor
from typing import Tuple, Callable, Union, Optional

from .check import check_square


class CachedSparseMatrix:
    """
    Cached sparse matrix for repeated block products.
    Avoids repeated COO -> CSR conversion.
    """
    def __init__(self, val: Tensor, row: Tensor, col: Tensor, shape: Tuple[int, int]):
        check_square("shape", shape)
        self.val = val
        self.row = row
        self.col = col
        self.shape = tuple(shape)
        self.device = val.device
        self.dtype = val.dtype
        self.n = shape[0]

        indices = torch.stack([row, col], dim=0)
        coo = torch.sparse_coo_tensor(indices, val, self.shape, device=val.device, dtype=val.dtype)
        self._csr = coo.coalesce().to_sparse_csr()

        self._diag = None

    @classmethod
    def from_sparse(cls, A: Tensor) -> "CachedSparseMatrix":
        A = A.to_sparse_coo().coalesce()
        return cls(A.values(), A.indices()[0], A.indices()[1], tuple(A.shape))

    def matvec(self, x: Tensor) -> Tensor:
        """Sparse matrix-vector product y = A @ x"""
        return torch.mv(self._csr, x)

    def matmat(self, X: Tensor) -> Tensor:
        """Dispatch to SpMV for a single column, SpMM otherwise"""
        if X.shape[1] == 1:
            return torch.mv(self._csr, X.squeeze(1)).unsqueeze(1)
        return torch.mm(self._csr, X)

    def __call__(self, X: Tensor) -> Tensor:
        return self.matmat(X)

    @property
    def diagonal(self) -> Tensor:
        """Get diagonal elements (cached)"""
        if self._diag is None:
            self._diag = torch.zeros(self.n, dtype=self.dtype, device=self.device)
            diag_mask = self.row == self.col
            self._diag.scatter_add_(0, self.row[diag_mask], self.val[diag_mask])
        return self._diag

    def diagonal_block(self, start: int, end: int) -> Tensor:
        """Dense copy of ``A[start:end, start:end]``"""
        size = end - start
        mask = (self.row >= start) & (self.row < end) & (self.col >= start) & (self.col < end)
        block = torch.zeros((size, size), dtype=self.dtype, device=self.device)
        block.index_put_((self.row[mask] - start, self.col[mask] - start), self.val[mask], accumulate=True)
        return block

    def __repr__(self):
        return f"CachedSparseMatrix(shape={self.shape}, nnz={self.val.shape[0]}, dtype={self.dtype})"


class DenseOperator:
    def __init__(self, A: Tensor):
        check_square("A", tuple(A.shape))
        self.A = A
        self.shape = tuple(A.shape)
        self.n = A.shape[0]
        self.dtype = A.dtype
        self.device = A.device

    def __call__(self, X: Tensor) -> Tensor:
        return self.A @ X

    @property
    def diagonal(self) -> Tensor:
        return torch.diagonal(self.A)

    def diagonal_block(self, start: int, end: int) -> Tensor:
        return self.A[start:end, start:end].clone()

    def __repr__(self):
        return f"DenseOperator(shape={self.shape}, dtype={self.dtype})"


class FunctionOperator:
    """Matrix-free operator given by a callable on blocks"""
    def __init__(self, fn: Callable[[Tensor], Tensor], n: Optional[int] = None):
        self.fn = fn
        self.n = n
        self.shape = (n, n) if n is not None else None

    def __call__(self, X: Tensor) -> Tensor:
        return self.fn(X)

    def __repr__(self):
        return f"FunctionOperator(n={self.n})"


OperatorLike = Union[Tensor, CachedSparseMatrix, DenseOperator, FunctionOperator, Callable[[Tensor], Tensor]]


def as_operator(A: OperatorLike):
    """
    Wrap anything that can act as ``X -> A @ X``

    Parameters
    ----------
    A : Tensor, CachedSparseMatrix, DenseOperator, FunctionOperator or callable
        - torch sparse tensor (COO or CSR): cached as CSR
        - dense [n, n] tensor
        - callable mapping [n, k] blocks to [n, k] blocks
    """
    if isinstance(A, (CachedSparseMatrix, DenseOperator, FunctionOperator)):
        return A
    if isinstance(A, Tensor):
        if A.layout != torch.strided:
            return CachedSparseMatrix.from_sparse(A)
        return DenseOperator(A)
    if callable(A):
        return FunctionOperator(A)
    raise TypeError(f"Can not use {type(A).__name__} as a linear operator")


# ============================================================================
# Preconditioners
# ============================================================================

def _safe_inverse_diagonal(diag: Tensor) -> Tensor:
    eps = torch.finfo(diag.dtype).eps * 100
    return 1.0 / torch.where(torch.abs(diag) < eps, torch.ones_like(diag), diag)


def jacobi_preconditioner(A) -> Callable[[Tensor], Tensor]:
    """
    Jacobi (diagonal) preconditioner: M^{-1} = diag(A)^{-1}.

    Cost per iteration: O(n * k)
    """
    A = as_operator(A)
    D_inv = _safe_inverse_diagonal(A.diagonal).unsqueeze(1)

    def apply(R: Tensor) -> Tensor:
        return D_inv * R

    return apply


def block_jacobi_preconditioner(A, block_size: int = 32) -> Callable[[Tensor], Tensor]:
    """
    Block Jacobi preconditioner.

    Divides the matrix into blocks along the diagonal and inverts each block.
    Blocks that are numerically singular fall back to their diagonal.
    """
    A = as_operator(A)
    n = A.n
    num_blocks = (n + block_size - 1) // block_size

    block_inverses = []
    for i in range(num_blocks):
        start = i * block_size
        end = min((i + 1) * block_size, n)
        block = A.diagonal_block(start, end)
        block_inv, info = torch.linalg.inv_ex(block)
        if info != 0:
            block_inv = torch.diag(_safe_inverse_diagonal(torch.diagonal(block)))
        block_inverses.append(block_inv)

    def apply(R: Tensor) -> Tensor:
        Z = torch.zeros_like(R)
        for i, block_inv in enumerate(block_inverses):
            start = i * block_size
            end = min((i + 1) * block_size, n)
            Z[start:end] = block_inv @ R[start:end]
        return Z

    return apply


def polynomial_preconditioner(A, degree: int = 5) -> Callable[[Tensor], Tensor]:
    """
    Neumann series polynomial preconditioner.

    Uses M^{-1} ≈ (I + N + N^2 + ...) D^{-1} where N = I - D^{-1} A
    """
    A = as_operator(A)
    D_inv = _safe_inverse_diagonal(A.diagonal).unsqueeze(1)

    def apply(R: Tensor) -> Tensor:
        Z = D_inv * R
        Y = Z
        for _ in range(degree):
            Y = Y - D_inv * A(Y)
            Z = Z + Y
        return Z

    return apply


def get_preconditioner(A, name: str = 'jacobi') -> Optional[Callable[[Tensor], Tensor]]:
    """
    Get preconditioner by name.

    Parameters
    ----------
    A : operator
        must expose ``diagonal`` (and ``diagonal_block`` for 'block_jacobi')
    name : str
        {'jacobi', 'block_jacobi', 'polynomial', 'none'}

    Returns
    -------
    Callable or None
        None for 'none', so the linear problem runs unpreconditioned
    """
    if name == 'jacobi':
        return jacobi_preconditioner(A)
    elif name == 'block_jacobi':
        return block_jacobi_preconditioner(A)
    elif name == 'polynomial':
        return polynomial_preconditioner(A)
    elif name == 'none':
        return None
    raise ValueError(f"Unknown preconditioner: {name}. "
                     f"Available: jacobi, block_jacobi, polynomial, none")
