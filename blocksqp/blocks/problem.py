"""
Nonlinear problem abstraction consumed by the SQP driver.

    min f(x)   s.t.   bl[:n] <= x <= bu[:n],   bl[n:] <= c(x) <= bu[n:]

A subclass implements `evaluate_sparse` and/or `evaluate_dense`; the driver
only calls `evaluate`, which tries the preferred Jacobian representation and
falls back to the other one. All evaluation routines report failures through
`Evaluation.status` instead of raising.

Derivative modes (``dmode``):
    < 0 : constraint residuals only
      0 : + objective value
      1 : + objective gradient and constraint Jacobian
      2 : + Hessian of the Lagrangian, last block only
      3 : + Hessian of the Lagrangian, all blocks
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from .aux import EvalStatus

Jacobian = Union[sp.csc_matrix, np.ndarray]


@dataclass
class Evaluation:
    status: EvalStatus = EvalStatus.OK
    obj: float = np.inf
    constr: Optional[np.ndarray] = None
    grad_obj: Optional[np.ndarray] = None
    jac: Optional[Jacobian] = None
    hess: Optional[List[Optional[np.ndarray]]] = None  # dense block per Hessian block

    @property
    def ok(self) -> bool:
        return self.status == EvalStatus.OK

    @classmethod
    def failed(cls, status: EvalStatus = EvalStatus.FAILED) -> "Evaluation":
        return cls(status=status)


def _as_block_index(idx, n_var: int) -> np.ndarray:
    idx = np.asarray(idx, dtype=int).ravel()
    if idx.size < 2 or idx[0] != 0 or idx[-1] != n_var or np.any(np.diff(idx) <= 0):
        raise ValueError(
            f"block index must be strictly increasing from 0 to nVar={n_var}, got {idx.tolist()}"
        )
    return idx


class Problemspec:
    """Base class for problems solved by `SQPMethod`."""

    def __init__(
        self,
        n_var: int,
        n_con: int,
        block_idx: Optional[Sequence[int]] = None,
        bl: Optional[Sequence[float]] = None,
        bu: Optional[Sequence[float]] = None,
        obj_lo: float = -np.inf,
        obj_up: float = np.inf,
    ):
        if n_var < 1 or n_con < 0:
            raise ValueError(f"need nVar >= 1 and nCon >= 0, got {n_var}, {n_con}")
        self.n_var = int(n_var)
        self.n_con = int(n_con)
        self.set_block_index([0, self.n_var] if block_idx is None else block_idx)
        n = self.n_var + self.n_con
        self.bl = np.full(n, -np.inf) if bl is None else np.asarray(bl, dtype=float).copy()
        self.bu = np.full(n, np.inf) if bu is None else np.asarray(bu, dtype=float).copy()
        self._check_bounds()
        self.obj_lo = float(obj_lo)
        self.obj_up = float(obj_up)

    # ---------------- structure ----------------
    @property
    def n_blocks(self) -> int:
        return self.block_idx.size - 1

    def set_block_index(self, idx: Sequence[int]) -> None:
        self.block_idx = _as_block_index(idx, self.n_var)

    def set_bounds(self, lb_var, ub_var, lb_con, ub_con) -> None:
        self.bl = np.concatenate([np.asarray(lb_var, float).ravel(), np.asarray(lb_con, float).ravel()])
        self.bu = np.concatenate([np.asarray(ub_var, float).ravel(), np.asarray(ub_con, float).ravel()])
        self._check_bounds()

    def _check_bounds(self) -> None:
        n = self.n_var + self.n_con
        if self.bl.size != n or self.bu.size != n:
            raise ValueError(f"bounds must have length nVar+nCon={n}, got {self.bl.size}/{self.bu.size}")
        if np.any(self.bl > self.bu):
            raise ValueError("lower bound exceeds upper bound")

    # ---------------- user hooks ----------------
    def initialize(self, xi: np.ndarray, lam: np.ndarray) -> EvalStatus:
        """Write the starting point into ``xi`` and ``lam`` (in place)."""
        return EvalStatus.OK

    def evaluate_sparse(self, xi: np.ndarray, lam: np.ndarray, dmode: int) -> Evaluation:
        return Evaluation.failed(EvalStatus.NOT_IMPLEMENTED)

    def evaluate_dense(self, xi: np.ndarray, lam: np.ndarray, dmode: int) -> Evaluation:
        return Evaluation.failed(EvalStatus.NOT_IMPLEMENTED)

    def reduce_constraint_violation(self, xi: np.ndarray) -> Tuple[EvalStatus, Optional[np.ndarray]]:
        """Problem-specific feasibility heuristic; returns (status, new point)."""
        return EvalStatus.NOT_IMPLEMENTED, None

    # ---------------- adapter ----------------
    def evaluate(
        self,
        xi: np.ndarray,
        lam: Optional[np.ndarray] = None,
        dmode: int = 0,
        prefer_sparse: bool = True,
    ) -> Evaluation:
        """Evaluate in the preferred Jacobian form, falling back to the other one."""
        if lam is None:
            lam = np.zeros(self.n_var + self.n_con)
        first, second = (
            (self.evaluate_sparse, self.evaluate_dense)
            if prefer_sparse
            else (self.evaluate_dense, self.evaluate_sparse)
        )
        ev = first(xi, lam, dmode)
        if ev.status == EvalStatus.NOT_IMPLEMENTED:
            ev = second(xi, lam, dmode)
        if not ev.ok:
            return ev
        if ev.constr is None:
            ev.constr = np.zeros(0)
        if ev.jac is not None:
            if prefer_sparse and not sp.issparse(ev.jac):
                ev.jac = sp.csc_matrix(np.asarray(ev.jac, dtype=float).reshape(self.n_con, self.n_var))
            elif not prefer_sparse and sp.issparse(ev.jac):
                ev.jac = ev.jac.toarray()
        return ev

    def describe(self, inf: float = 1e20) -> str:
        """One-line summary; lower bounds at or below -inf count as unbounded."""
        n_free = int(np.sum(self.bl <= -inf))
        return (
            f"{type(self).__name__}: nVar={self.n_var}, nCon={self.n_con}, "
            f"nBlocks={self.n_blocks}, blocks={self.block_idx.tolist()}, "
            f"unbounded-below entries={n_free}"
        )


class CallbackProblem(Problemspec):
    """
    Problem assembled from plain callables.

    Attributes set by the user before `complete()`:
        f(x) -> float, g(x) -> (nCon,), grad_f(x) -> (nVar,),
        jac_g(x) -> (nCon, nVar) dense or scipy sparse,
        hess(x, lam) -> list of dense blocks (optional, for second derivatives),
        x_start, lam_start.

    Callbacks raising ArithmeticError/ValueError mark the evaluation as failed.
    """

    def __init__(self, n_var: int, n_con: int, **kwargs):
        super().__init__(n_var, n_con, **kwargs)
        self.f: Optional[Callable] = None
        self.g: Optional[Callable] = None
        self.grad_f: Optional[Callable] = None
        self.jac_g: Optional[Callable] = None
        self.hess: Optional[Callable] = None
        self.x_start: Optional[np.ndarray] = None
        self.lam_start: Optional[np.ndarray] = None
        self._completed = False

    def complete(self) -> "CallbackProblem":
        for name in ("f", "g", "grad_f", "jac_g"):
            if self.n_con == 0 and name in ("g", "jac_g"):
                continue
            if getattr(self, name) is None:
                raise ValueError(f"CallbackProblem: callback '{name}' is not set")
        self.x_start = (
            np.zeros(self.n_var) if self.x_start is None else np.asarray(self.x_start, float).ravel()
        )
        if self.x_start.size != self.n_var:
            raise ValueError(f"x_start must have length {self.n_var}")
        n = self.n_var + self.n_con
        self.lam_start = (
            np.zeros(n) if self.lam_start is None else np.asarray(self.lam_start, float).ravel()
        )
        if self.lam_start.size != n:
            raise ValueError(f"lam_start must have length nVar+nCon={n}")
        self._completed = True
        return self

    def initialize(self, xi: np.ndarray, lam: np.ndarray) -> EvalStatus:
        if not self._completed:
            self.complete()
        xi[:] = self.x_start
        lam[:] = self.lam_start
        return EvalStatus.OK

    def _constraints(self, x: np.ndarray) -> np.ndarray:
        if self.n_con == 0:
            return np.zeros(0)
        return np.asarray(self.g(x), dtype=float).reshape(self.n_con)

    def _jacobian(self, x: np.ndarray):
        if self.n_con == 0:
            return sp.csc_matrix((0, self.n_var))
        J = self.jac_g(x)
        if sp.issparse(J):
            return J.tocsc()
        return np.asarray(J, dtype=float).reshape(self.n_con, self.n_var)

    def _evaluate(self, xi, lam, dmode) -> Evaluation:
        try:
            ev = Evaluation(constr=self._constraints(xi))
            if dmode >= 0:
                ev.obj = float(self.f(xi))
            if dmode >= 1:
                ev.grad_obj = np.asarray(self.grad_f(xi), dtype=float).reshape(self.n_var)
                ev.jac = self._jacobian(xi)
            if dmode >= 2 and self.hess is not None:
                ev.hess = [np.asarray(h, dtype=float) for h in self.hess(xi, lam)]
        except (ArithmeticError, ValueError) as e:
            logging.debug(f"[Problem] evaluation failed: {e}")
            return Evaluation.failed()
        vals = [ev.constr] + ([np.atleast_1d(ev.obj)] if dmode >= 0 else [])
        if ev.grad_obj is not None:
            vals.append(ev.grad_obj)
        if not all(np.all(np.isfinite(v)) for v in vals):
            return Evaluation.failed()
        return ev

    def evaluate_sparse(self, xi, lam, dmode) -> Evaluation:
        return self._evaluate(xi, lam, dmode)
