"""
Vector/constraint norms and small dense diagnostics.

Norms accept either `Matrix` columns or plain numpy arrays. The diagnostics
(explicit inverse, eigenvalues, Gershgorin bound) never raise on numerical
failure; they return a `LinalgResult` whose ``info`` is non-zero instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp

from .matrix import Matrix, SymMatrix

VectorLike = Union[Matrix, np.ndarray]


@dataclass
class LinalgResult:
    info: int
    value: Any

    @property
    def ok(self) -> bool:
        return self.info == 0


def _as_vector(v: VectorLike) -> np.ndarray:
    if isinstance(v, Matrix):
        if v.n != 1:
            raise ValueError(f"expected a column vector, got {v.m}x{v.n} matrix")
        return v.vec
    a = np.asarray(v, dtype=float)
    if a.ndim == 2 and a.shape[1] == 1:
        a = a[:, 0]
    if a.ndim != 1:
        raise ValueError(f"expected a vector, got array of shape {a.shape}")
    return a


# ---- vector norms ----
def l1_vector_norm(v: VectorLike) -> float:
    return float(np.sum(np.abs(_as_vector(v))))


def l2_vector_norm(v: VectorLike) -> float:
    return float(np.linalg.norm(_as_vector(v)))


def linf_vector_norm(v: VectorLike) -> float:
    a = _as_vector(v)
    return float(np.max(np.abs(a))) if a.size else 0.0


def adotb(a: VectorLike, b: VectorLike) -> float:
    a, b = _as_vector(a), _as_vector(b)
    if a.size != b.size:
        raise ValueError(f"adotb: length mismatch {a.size} vs {b.size}")
    return float(a @ b)


def a_times_b(A, b: VectorLike) -> np.ndarray:
    """Dense or sparse matrix-vector product."""
    b = _as_vector(b)
    if isinstance(A, Matrix):
        A = A.array
    if sp.issparse(A):
        return np.asarray(A @ b).ravel()
    return np.asarray(A, dtype=float) @ b


# ---- constraint norms ----
def _violations(xi: VectorLike, constr: VectorLike, bu: VectorLike, bl: VectorLike):
    x, c = _as_vector(xi), _as_vector(constr)
    bu, bl = _as_vector(bu), _as_vector(bl)
    n = x.size
    if bu.size != n + c.size or bl.size != n + c.size:
        raise ValueError(
            f"bounds must have length nVar+nCon={n + c.size}, got {bl.size}/{bu.size}"
        )
    # at most one of the two is positive when bl <= bu
    upper = np.maximum(0.0, np.concatenate([x, c]) - bu)
    lower = np.maximum(0.0, bl - np.concatenate([x, c]))
    return upper, lower


def _weights(weights: Optional[VectorLike], size: int) -> np.ndarray:
    if weights is None:
        return np.ones(size)
    w = _as_vector(weights)
    if w.size < size:
        raise ValueError(f"weight vector too short: {w.size} < {size}")
    return w[:size]


def l1_constraint_norm(xi, constr, bu, bl, weights: Optional[VectorLike] = None) -> float:
    """Σ w_i (violation of bounds on variables and constraints)."""
    upper, lower = _violations(xi, constr, bu, bl)
    w = _weights(weights, upper.size)
    return float(np.sum(w * (upper + lower)))


def l2_constraint_norm(xi, constr, bu, bl, weights: Optional[VectorLike] = None) -> float:
    """sqrt(Σ w_i violation_i²) over all variable and constraint bounds."""
    upper, lower = _violations(xi, constr, bu, bl)
    w = _weights(weights, upper.size)
    return float(np.sqrt(np.sum(w * (upper**2 + lower**2))))


def linf_constraint_norm(xi, constr, bu, bl) -> float:
    upper, lower = _violations(xi, constr, bu, bl)
    if upper.size == 0:
        return 0.0
    return float(max(upper.max(), lower.max()))


# ---- diagnostics ----
def inverse(A: Union[Matrix, np.ndarray]) -> LinalgResult:
    """Explicit inverse through an LU factorization; info>0 flags a zero pivot."""
    a = A.array if isinstance(A, Matrix) else np.asarray(A, dtype=float)
    n = a.shape[0]
    if a.ndim != 2 or a.shape[1] != n:
        raise ValueError(f"inverse needs a square matrix, got shape {a.shape}")
    if not np.all(np.isfinite(a)):
        logging.warning("[linalg] inverse: non-finite entries")
        return LinalgResult(-1, None)
    lu, piv = la.lu_factor(a, check_finite=False)
    zero = np.flatnonzero(np.diag(lu) == 0.0)
    if zero.size:
        logging.warning(f"[linalg] inverse: singular factor U({zero[0]},{zero[0]})")
        return LinalgResult(int(zero[0]) + 1, None)
    return LinalgResult(0, Matrix.from_array(la.lu_solve((lu, piv), np.eye(n))))


def calc_eigenvalues(B: SymMatrix) -> LinalgResult:
    """All eigenvalues of a symmetric block, ascending."""
    a = B.to_dense()
    if not np.all(np.isfinite(a)):
        logging.warning("[linalg] eigenvalues: non-finite entries")
        return LinalgResult(-1, None)
    try:
        ev = la.eigvalsh(a, check_finite=False)
    except la.LinAlgError as e:
        logging.warning(f"[linalg] eigenvalues failed: {e}")
        return LinalgResult(1, None)
    return LinalgResult(0, Matrix.from_array(ev))


def estimate_smallest_eigenvalue(B: SymMatrix) -> float:
    """Gershgorin lower bound, capped at 0."""
    a = B.to_dense()
    if a.size == 0:
        return 0.0
    radius = np.sum(np.abs(a), axis=1) - np.abs(np.diag(a))
    return float(min(0.0, np.min(np.diag(a) - radius)))
