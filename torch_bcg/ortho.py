"""
Orthogonalization managers for blocks of direction vectors.

All managers use the Euclidean inner product and work column by column on a
``[n, k]`` block, in place.

Methods:
- 'DGKS': classical Gram-Schmidt, re-orthogonalized when a column loses more
  than the dependency tolerance of its norm (Daniel, Gragg, Kaufman, Stewart)
- 'ICGS': iterated classical Gram-Schmidt, a fixed number of passes
- 'IMGS': iterated modified Gram-Schmidt, a fixed number of passes

``normalize`` returns the numerical rank of the block. Columns found to be
dependent are replaced by random vectors orthonormal to the others; they are
not counted in the rank.
"""

import math
import torch
from torch import Tensor
from typing import Dict, Literal, Optional, Tuple

OrthoType = Literal['DGKS', 'ICGS', 'IMGS']

ORTHO_TYPES = ('DGKS', 'ICGS', 'IMGS')


class OrthoManager:
    kind: str = None

    def __init__(self, max_ortho_steps: int = 2, sing_tol: float = 10.0, label: str = 'torch_bcg'):
        self.max_ortho_steps = max_ortho_steps
        self.sing_tol = sing_tol
        self.label = label

    def set_label(self, label: str):
        self.label = label

    def _sing_threshold(self, X: Tensor) -> float:
        return self.sing_tol * torch.finfo(X.dtype).eps

    def _orthogonalize_column(self, x: Tensor, Q: Tensor) -> Tuple[Tensor, bool]:
        """Remove from ``x`` its components along the orthonormal columns of ``Q``"""
        raise NotImplementedError

    def project(self, X: Tensor, Q: Tensor) -> Tensor:
        """
        Make ``X`` orthogonal to the orthonormal block ``Q``, in place

        Returns
        -------
        Tensor
            [q, k] coefficients removed, ``X_old = X_new + Q C``
        """
        C = X.new_zeros((Q.shape[1], X.shape[1]))
        for j in range(X.shape[1]):
            x0 = X[:, j].clone()
            x, _ = self._orthogonalize_column(X[:, j], Q)
            X[:, j] = x
            C[:, j] = Q.mH @ (x0 - x)
        return C

    def normalize(self, X: Tensor, generator: Optional[torch.Generator] = None) -> int:
        """
        Orthonormalize the columns of ``X`` in place

        Returns
        -------
        int
            numerical rank of the block
        """
        rank = 0
        threshold = self._sing_threshold(X)
        for j in range(X.shape[1]):
            x = X[:, j]
            norm_before = torch.linalg.vector_norm(x)
            x, _ = self._orthogonalize_column(x, X[:, :j])
            norm_after = torch.linalg.vector_norm(x)
            if norm_before > 0 and norm_after > threshold * norm_before:
                X[:, j] = x / norm_after
                rank += 1
                continue
            X[:, j] = self._random_orthonormal(X[:, :j], X.shape[0], X, generator)
        return rank

    def project_and_normalize(self, X: Tensor, Q: Tensor,
                              generator: Optional[torch.Generator] = None) -> Tuple[Tensor, int]:
        C = self.project(X, Q)
        return C, self.normalize(X, generator=generator)

    def _random_orthonormal(self, Q: Tensor, n: int, like: Tensor,
                            generator: Optional[torch.Generator]) -> Tensor:
        threshold = self._sing_threshold(like)
        for _ in range(10):
            x = torch.rand(n, dtype=like.dtype, device=like.device, generator=generator) * 2 - 1
            x, _ = self._orthogonalize_column(x, Q)
            x_norm = torch.linalg.vector_norm(x)
            if x_norm > threshold:
                return x / x_norm
        return torch.zeros(n, dtype=like.dtype, device=like.device)

    def orthonormal_error(self, X: Tensor) -> float:
        """``||X^H X - I||_F``"""
        gram = X.mH @ X
        eye = torch.eye(gram.shape[0], dtype=gram.dtype, device=gram.device)
        return torch.linalg.matrix_norm(gram - eye).item()

    def __repr__(self):
        return f"{type(self).__name__}(label={self.label!r})"


class ICGSOrthoManager(OrthoManager):
    kind = 'ICGS'

    def _orthogonalize_column(self, x, Q):
        if Q.shape[1] == 0:
            return x, False
        for _ in range(self.max_ortho_steps):
            x = x - Q @ (Q.mH @ x)
        return x, True


class IMGSOrthoManager(OrthoManager):
    kind = 'IMGS'

    def _orthogonalize_column(self, x, Q):
        if Q.shape[1] == 0:
            return x, False
        for _ in range(self.max_ortho_steps):
            for i in range(Q.shape[1]):
                q = Q[:, i]
                x = x - q * torch.dot(q.conj(), x)
        return x, True


class DGKSOrthoManager(OrthoManager):
    kind = 'DGKS'

    def __init__(self, dep_tol: float = 1.0 / math.sqrt(2.0), **kwargs):
        super().__init__(**kwargs)
        self.dep_tol = dep_tol

    def set_dep_tol(self, dep_tol: float):
        self.dep_tol = dep_tol

    def _orthogonalize_column(self, x, Q):
        if Q.shape[1] == 0:
            return x, False
        norm_before = torch.linalg.vector_norm(x)
        x = x - Q @ (Q.mH @ x)
        reorthogonalized = False
        if torch.linalg.vector_norm(x) < self.dep_tol * norm_before:
            x = x - Q @ (Q.mH @ x)
            reorthogonalized = True
        return x, reorthogonalized

    def __repr__(self):
        return f"DGKSOrthoManager(dep_tol={self.dep_tol}, label={self.label!r})"


ORTHO_MANAGERS: Dict[str, type] = {
    'DGKS': DGKSOrthoManager,
    'ICGS': ICGSOrthoManager,
    'IMGS': IMGSOrthoManager,
}


def make_ortho_manager(kind: str, tolerance: Optional[float] = None, label: str = 'torch_bcg') -> OrthoManager:
    """
    Create an orthogonalization manager

    Parameters
    ----------
    kind : str
        {'DGKS', 'ICGS', 'IMGS'}
    tolerance : float, optional
        dependency tolerance of DGKS, used only when positive
    label : str
        label used in diagnostics
    """
    if kind not in ORTHO_MANAGERS:
        raise ValueError(f"Unknown orthogonalization: {kind}. Available: {', '.join(ORTHO_TYPES)}")
    if kind == 'DGKS' and tolerance is not None and tolerance > 0:
        return DGKSOrthoManager(dep_tol=tolerance, label=label)
    return ORTHO_MANAGERS[kind](label=label)
