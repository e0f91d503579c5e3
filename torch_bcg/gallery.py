import torch
from typing import Tuple

COO = Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Tuple[int, int]]


def random_spd(n: int,
               density: float = 0.3,
               device=torch.device('cpu'),
               dtype=torch.float64,
               generator: torch.Generator = None) -> torch.Tensor:
    """
    random dense symmetric positive definite matrix

    Parameters
    ----------
    n : int
        size of the matrix
    density : float, optional
        fraction of the off-diagonal entries kept, by default 0.3
    device : torch.device, optional
        Device of the matrix, by default torch.device('cpu')
    dtype : torch.dtype, optional
        Data type of the matrix, by default torch.float64

    Returns
    -------
    torch.Tensor
        [n, n] symmetric, strictly diagonally dominant with positive diagonal
    """
    A = torch.rand(n, n, device=device, dtype=dtype, generator=generator)
    mask = torch.rand(n, n, device=device, generator=generator) < density
    A = torch.where(mask, A, torch.zeros_like(A))
    A = 0.5 * (A + A.T)
    A = A + torch.diag(A.abs().sum(dim=1) + 1.0)
    return A


def random_spd_coo(n: int,
                   density: float = 0.3,
                   device=torch.device('cpu'),
                   dtype=torch.float64,
                   generator: torch.Generator = None) -> COO:
    """
    random sparse symmetric positive definite matrix in COO format

    Returns
    -------
    Tuple[torch.Tensor, torch.Tensor, torch.Tensor, Tuple[int, int]]
        val: [nnz] values, row: [nnz] row indices, col: [nnz] column indices, shape (n, n)
    """
    A = random_spd(n, density, device=device, dtype=dtype, generator=generator).to_sparse_coo().coalesce()
    return A.values(), A.indices()[0], A.indices()[1], (n, n)


def tridiagonal(n: int, dtype=torch.float64, device='cpu') -> COO:
    """Tridiagonal SPD matrix with 4 on the diagonal and -1 off it."""
    idx = torch.arange(n, device=device)
    row = torch.cat([idx, idx[1:], idx[:-1]])
    col = torch.cat([idx, idx[:-1], idx[1:]])
    val = torch.cat([
        torch.full((n,), 4.0, dtype=dtype, device=device),
        torch.full((n - 1,), -1.0, dtype=dtype, device=device),
        torch.full((n - 1,), -1.0, dtype=dtype, device=device),
    ])
    return val, row, col, (n, n)


def poisson_2d(grid_n: int, dtype=torch.float64, device='cpu') -> COO:
    """2D Poisson matrix (5-point stencil) on a ``grid_n x grid_n`` grid."""
    N = grid_n * grid_n
    idx = torch.arange(N, device=device)
    i, j = idx // grid_n, idx % grid_n

    entries = [
        (idx, idx, torch.full((N,), 4.0, dtype=dtype, device=device)),
        (idx[j > 0], idx[j > 0] - 1, torch.full((int((j > 0).sum()),), -1.0, dtype=dtype, device=device)),
        (idx[j < grid_n - 1], idx[j < grid_n - 1] + 1, torch.full((int((j < grid_n - 1).sum()),), -1.0, dtype=dtype, device=device)),
        (idx[i > 0], idx[i > 0] - grid_n, torch.full((int((i > 0).sum()),), -1.0, dtype=dtype, device=device)),
        (idx[i < grid_n - 1], idx[i < grid_n - 1] + grid_n, torch.full((int((i < grid_n - 1).sum()),), -1.0, dtype=dtype, device=device)),
    ]

    rows = torch.cat([e[0] for e in entries])
    cols = torch.cat([e[1] for e in entries])
    vals = torch.cat([e[2] for e in entries])

    return vals, rows, cols, (N, N)
