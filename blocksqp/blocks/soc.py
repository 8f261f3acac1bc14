import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from ..aux.linalg import linf_constraint_norm
from .aux import QPStatus, SQPOptions


@dataclass
class SOCStep:
    delta_xi: np.ndarray
    lambda_qp: np.ndarray
    n_socs: int
    theta: float
    obj: float
    constr: np.ndarray


class SOCCorrector:
    """
    Second-order correction for a rejected full step.

    The QP is re-solved with the same Hessian and Jacobian but with the
    linearized constraint bounds shifted by c(x + d) − J d, which pulls the
    step back towards the constraint manifold (Maratos effect).
    """

    def __init__(
        self,
        cfg: SQPOptions,
        prob: "Problemspec",
        vars: "SQPIterate",
        stats: "SQPStats",
        solve_qp: Callable[..., QPStatus],
        update_step_bounds: Callable[..., None],
    ):
        self.cfg = cfg
        self.prob = prob
        self.vars = vars
        self.stats = stats
        self.solve_qp = solve_qp
        self.update_step_bounds = update_step_bounds

    def _valid(self, obj: float, theta: float) -> bool:
        return (
            np.isfinite(obj)
            and np.isfinite(theta)
            and self.prob.obj_lo <= obj <= self.prob.obj_up
        )

    def compute_correction(
        self,
        c_norm: float,
        c_norm_trial: float,
        trial_constr: np.ndarray,
        df_t_delta_xi: float,
        sw_cond: bool,
        it: int,
    ) -> Optional[SOCStep]:
        """Return an acceptable corrected step, or None if SOC does not apply or fails."""
        cfg, vars, prob = self.cfg, self.vars, self.prob
        # only on the first backtracking trial, and only if violation did not improve
        if it > 0 or c_norm_trial < c_norm:
            return None

        delta_soc = np.zeros(vars.n_var)
        lambda_soc = np.zeros(vars.n_var + vars.n_con)
        constr = trial_constr
        c_norm_old = c_norm
        flt = vars.filter
        prefer_sparse = not isinstance(vars.constr_jac, np.ndarray)

        for k in range(cfg.max_soc_iter):
            n_socs = k + 1
            self.update_step_bounds(soc=True, constr=constr)
            status = self.solve_qp(delta_soc, lambda_soc, matrices_changed=False)
            if status != QPStatus.OK:
                logging.debug(f"[SOC] QP failed with status {status.name}")
                return None

            trial_xi = vars.xi + delta_soc
            ev = prob.evaluate(trial_xi, dmode=0, prefer_sparse=prefer_sparse)
            self.stats.n_fun_calls += 1
            if not ev.ok:
                return None
            constr = ev.constr
            c_norm_soc = linf_constraint_norm(trial_xi, constr, prob.bu, prob.bl)
            obj_soc = ev.obj
            if not self._valid(obj_soc, c_norm_soc) or flt.contains(c_norm_soc, obj_soc):
                return None

            if c_norm <= cfg.theta_min and sw_cond:
                accepted = obj_soc <= vars.obj + cfg.eta * df_t_delta_xi
            else:
                accepted = (
                    c_norm_soc < (1.0 - cfg.gamma_theta) * c_norm
                    or obj_soc < vars.obj - cfg.gamma_f * c_norm
                )
            if accepted:
                logging.debug(f"[SOC] accepted after {n_socs} correction(s): θ={c_norm_soc:.3e}")
                return SOCStep(delta_soc, lambda_soc, n_socs, c_norm_soc, obj_soc, constr)

            # violation got worse through the correction
            if c_norm_soc > cfg.kappa_soc * c_norm_old:
                return None
            c_norm_old = c_norm_soc
        return None
