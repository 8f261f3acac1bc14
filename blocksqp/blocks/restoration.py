"""
Feasibility restoration subproblem.

For a parent problem with constraints bl <= c(x) <= bu the restoration problem
works on z = (x, s), one slack per constraint:

    min  0.5 ρ ‖s‖² + 0.5 ζ ‖D (x − x_ref)‖²
    s.t. bl <= c(x) − s <= bu,   parent bounds on x,   s free

with D = diag(d_i), d_i = 1 for |x_ref,i| <= 1 and 1/|x_ref,i| otherwise.
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp

from .aux import EvalStatus
from .problem import Evaluation, Problemspec


class RestorationProblem(Problemspec):
    ZETA = 1.0e-3  # proximal weight
    RHO = 1.0e3  # slack weight

    def __init__(self, parent: Problemspec, xi_ref: np.ndarray):
        self.parent = parent
        n, m = parent.n_var, parent.n_con
        block_idx = np.concatenate([parent.block_idx, n + np.arange(1, m + 1)])
        bl = np.concatenate([parent.bl[:n], np.full(m, -np.inf), parent.bl[n:]])
        bu = np.concatenate([parent.bu[:n], np.full(m, np.inf), parent.bu[n:]])
        super().__init__(n + m, m, block_idx=block_idx, bl=bl, bu=bu, obj_lo=0.0)
        self.xi_ref = np.asarray(xi_ref, dtype=float).copy()
        self.diag_scale = np.ones(n)

    def _split(self, xi: np.ndarray):
        n = self.parent.n_var
        return xi[:n], xi[n:]

    def initialize(self, xi: np.ndarray, lam: np.ndarray) -> EvalStatus:
        n = self.parent.n_var
        x, s = self._split(xi)
        # parent start values are overwritten by the reference point below
        self.parent.initialize(x, np.zeros(self.parent.n_var + self.parent.n_con))
        x[:] = self.xi_ref

        ev = self.parent.evaluate(x, dmode=-1)
        if not ev.ok:
            return ev.status
        c = ev.constr
        bl, bu = self.parent.bl[n:], self.parent.bu[n:]
        s[:] = np.where(c <= bl, c - bl, np.where(c > bu, c - bu, 0.0))

        ax = np.abs(self.xi_ref)
        self.diag_scale = np.where(ax > 1.0, 1.0 / np.maximum(ax, 1.0), 1.0)
        lam[:] = 0.0
        return EvalStatus.OK

    def _evaluate(self, xi, lam, dmode, prefer_sparse) -> Evaluation:
        x, s = self._split(xi)
        # second derivatives are never requested from the parent here
        ev = self.parent.evaluate(x, dmode=min(dmode, 1), prefer_sparse=prefer_sparse)
        if not ev.ok:
            return ev

        out = Evaluation(constr=ev.constr - s)
        if dmode < 0:
            return out

        diff = self.diag_scale * (x - self.xi_ref)
        out.obj = 0.5 * self.RHO * float(s @ s) + 0.5 * self.ZETA * float(diff @ diff)
        if dmode >= 1:
            out.grad_obj = np.concatenate(
                [self.ZETA * self.diag_scale * diff, self.RHO * s]
            )
            m = self.n_con
            if prefer_sparse:
                out.jac = sp.hstack([sp.csc_matrix(ev.jac), -sp.identity(m, format="csc")], format="csc")
            else:
                out.jac = np.hstack([np.asarray(ev.jac), -np.eye(m)])
        return out

    def evaluate_sparse(self, xi, lam, dmode) -> Evaluation:
        return self._evaluate(xi, lam, dmode, prefer_sparse=True)

    def evaluate_dense(self, xi, lam, dmode) -> Evaluation:
        return self._evaluate(xi, lam, dmode, prefer_sparse=False)
