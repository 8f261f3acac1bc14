"""
QP subproblem for the SQP step.

    min_d  ½ dᵀ H d + gᵀ d
    s.t.   lb  <= d   <= ub
           lbA <= A d <= ubA

solved through cvxpy. Multipliers follow the convention

    H d + g = Aᵀ λ_c + λ_x,

with λ > 0 on active lower bounds and λ < 0 on active upper bounds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import cvxpy as cp
import numpy as np
import scipy.sparse as sp

from .aux import QPStatus, SQPOptions

Mat = Union[np.ndarray, sp.spmatrix]


@dataclass
class QPData:
    H: Mat
    g: np.ndarray
    A: Mat
    lb: np.ndarray
    ub: np.ndarray
    lbA: np.ndarray
    ubA: np.ndarray

    @property
    def n(self) -> int:
        return self.g.size

    @property
    def m(self) -> int:
        return self.lbA.size


@dataclass
class QPResult:
    status: QPStatus
    x: Optional[np.ndarray] = None
    lam: Optional[np.ndarray] = None  # (λ_x, λ_c), length n + m
    iterations: int = 0
    obj: float = np.nan
    info: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == QPStatus.OK


def _to_dense_if_needed(matrix: Mat, requires_dense: bool) -> Mat:
    if requires_dense and sp.issparse(matrix):
        return matrix.toarray()
    return matrix


_STATUS_MAP = {
    "optimal": QPStatus.OK,
    "optimal_inaccurate": QPStatus.OK,
    "infeasible": QPStatus.INFEASIBLE,
    "infeasible_inaccurate": QPStatus.INFEASIBLE,
    "unbounded": QPStatus.ERROR,
    "unbounded_inaccurate": QPStatus.ERROR,
    "user_limit": QPStatus.ITERATION_LIMIT,
}


class QPSolver:
    """cvxpy-backed QP solver; nonconvex H is reported as `QPStatus.NONCONVEX`."""

    # quad_form needs an explicit matrix for its PSD check
    requires_dense = True

    def __init__(self, param: SQPOptions):
        self.param = param

    def _solver_opts(self) -> dict:
        name = self.param.qp_solver.upper()
        if name in ("CLARABEL", "OSQP"):
            return {"max_iter": int(self.param.max_it_qp), "time_limit": float(self.param.max_time_qp)}
        return {}

    def solve(self, data: QPData) -> QPResult:
        p = self.param
        n, m = data.n, data.m
        H = _to_dense_if_needed(data.H, self.requires_dense)
        H = 0.5 * (H + H.T)
        A = _to_dense_if_needed(data.A, self.requires_dense) if m else np.zeros((0, n))

        d = cp.Variable(n)
        cons, duals = [], []

        def _add(con, kind, idx, sign):
            cons.append(con)
            duals.append((con, kind, idx, sign))

        fin_lb = np.flatnonzero(~p.is_infinite(data.lb))
        fin_ub = np.flatnonzero(~p.is_infinite(data.ub))
        if fin_lb.size:
            _add(d[fin_lb] >= data.lb[fin_lb], "x", fin_lb, 1.0)
        if fin_ub.size:
            _add(d[fin_ub] <= data.ub[fin_ub], "x", fin_ub, -1.0)

        if m:
            lo_fin, up_fin = ~p.is_infinite(data.lbA), ~p.is_infinite(data.ubA)
            is_eq = lo_fin & up_fin & (np.abs(data.ubA - data.lbA) <= 1e-14 * (1.0 + np.abs(data.lbA)))
            eq_rows = np.flatnonzero(is_eq)
            lo_rows = np.flatnonzero(lo_fin & ~is_eq)
            up_rows = np.flatnonzero(up_fin & ~is_eq)
            if eq_rows.size:
                # cvxpy duals of equalities carry the opposite sign
                _add(A[eq_rows] @ d == data.lbA[eq_rows], "c", eq_rows, -1.0)
            if lo_rows.size:
                _add(A[lo_rows] @ d >= data.lbA[lo_rows], "c", lo_rows, 1.0)
            if up_rows.size:
                _add(A[up_rows] @ d <= data.ubA[up_rows], "c", up_rows, -1.0)

        try:
            objective = cp.Minimize(0.5 * cp.quad_form(d, H) + data.g @ d)
            problem = cp.Problem(objective, cons)
            problem.solve(solver=p.qp_solver, **self._solver_opts())
        except cp.error.DCPError:
            logging.debug("[QP] Hessian is not positive semidefinite")
            return QPResult(QPStatus.NONCONVEX)
        except cp.error.SolverError as e:
            logging.debug(f"[QP] solver failure: {e}")
            return QPResult(QPStatus.ERROR)

        status = _STATUS_MAP.get(problem.status, QPStatus.ERROR)
        iters = int(getattr(problem.solver_stats, "num_iters", 0) or 0)
        info = {"cvxpy_status": problem.status}
        if status not in (QPStatus.OK, QPStatus.ITERATION_LIMIT):
            return QPResult(status, iterations=iters, info=info)
        if d.value is None:
            return QPResult(QPStatus.ERROR, iterations=iters, info=info)

        x = np.asarray(d.value, dtype=float).ravel()
        lam_x, lam_c = np.zeros(n), np.zeros(m)
        for con, kind, idx, sign in duals:
            if con.dual_value is None:
                continue
            dual = np.atleast_1d(np.asarray(con.dual_value, dtype=float)).ravel()
            (lam_x if kind == "x" else lam_c)[idx] += sign * dual

        return QPResult(
            status,
            x=x,
            lam=np.concatenate([lam_x, lam_c]),
            iterations=iters,
            obj=float(problem.value),
            info=info,
        )
