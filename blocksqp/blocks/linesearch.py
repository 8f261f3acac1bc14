import logging
from typing import Optional, Tuple

import numpy as np

from ..aux.linalg import linf_constraint_norm, linf_vector_norm
from .aux import QPMode, SQPOptions
from .iterate import lagrange_gradient
from .soc import SOCCorrector


class LineSearcher:
    """Filter line search (Wächter–Biegler) on the SQP step.

    - `filter_line_search()`: backtracking with filter acceptance, switching
      condition/Armijo, and second-order correction on the first trial.
    - `full_step()`: no globalization, only backs off failed evaluations.
    - `kkt_error_reduction()`: heuristic acceptance of the full step when it
      reduces the KKT error.
    All return True on success; the driver escalates on False.
    """

    def __init__(self, cfg: SQPOptions, prob: "Problemspec", vars: "SQPIterate", stats: "SQPStats", soc: SOCCorrector):
        self.cfg = cfg
        self.prob = prob
        self.vars = vars
        self.stats = stats
        self.soc = soc
        self.trial_constr = np.zeros(prob.n_con)
        self.prefer_sparse = cfg.qp_mode != QPMode.DENSE

    # ---------------- helpers ----------------
    def _evaluate_trial(self, trial_xi: np.ndarray) -> Tuple[bool, float, float, np.ndarray]:
        """Objective and violation at a trial point; ok=False on failure or NaN/out of range."""
        ev = self.prob.evaluate(trial_xi, dmode=0, prefer_sparse=self.prefer_sparse)
        self.stats.n_fun_calls += 1
        if not ev.ok:
            return False, np.nan, np.nan, self.trial_constr
        theta = linf_constraint_norm(trial_xi, ev.constr, self.prob.bu, self.prob.bl)
        obj = float(ev.obj)
        ok = (
            np.isfinite(obj)
            and np.isfinite(theta)
            and self.prob.obj_lo <= obj <= self.prob.obj_up
        )
        return ok, obj, theta, ev.constr

    def _switching(self, alpha: float, df_t_delta_xi: float, c_norm: float) -> bool:
        cfg = self.cfg
        return df_t_delta_xi < 0 and alpha * (-df_t_delta_xi) ** cfg.s_f > cfg.delta * c_norm**cfg.s_theta

    @staticmethod
    def reduce_stepsize(alpha: float) -> float:
        return 0.5 * alpha

    def accept_step(
        self,
        alpha: float,
        delta_xi: Optional[np.ndarray] = None,
        lambda_qp: Optional[np.ndarray] = None,
        n_socs: int = 0,
    ) -> None:
        """Move to ``trial_xi``; store the taken step α·d and blend the multipliers."""
        vars = self.vars
        d = vars.delta_xi.vec if delta_xi is None else delta_xi
        lq = vars.lambda_qp if lambda_qp is None else lambda_qp

        vars.alpha = alpha
        vars.n_socs = n_socs
        vars.xi[:] = vars.trial_xi
        vars.delta_xi.vec[:] = alpha * d
        vars.lambda_step_norm = linf_vector_norm(alpha * lq - alpha * vars.lam)
        vars.lam[:] = (1.0 - alpha) * vars.lam + alpha * lq
        vars.constr[:] = self.trial_constr
        if alpha < 1.0:
            vars.reduced_step_count += 1
        else:
            vars.reduced_step_count = 0

    # ---------------- strategies ----------------
    def full_step(self) -> bool:
        vars = self.vars
        alpha = 1.0
        for _ in range(10):
            vars.trial_xi[:] = vars.xi + alpha * vars.delta_xi.vec
            ok, obj, theta, constr = self._evaluate_trial(vars.trial_xi)
            if not ok:
                logging.debug(f"[LS] full step: evaluation failed at α={alpha:.3e}")
                alpha = self.reduce_stepsize(alpha)
                continue
            self.trial_constr = constr
            self.accept_step(alpha)
            return True
        return False

    def filter_line_search(self) -> bool:
        cfg, vars, prob, flt = self.cfg, self.vars, self.prob, self.vars.filter
        c_norm = linf_constraint_norm(vars.xi, vars.constr, prob.bu, prob.bl)
        df_t_delta_xi = float(vars.grad_obj @ vars.delta_xi.vec)
        alpha = 1.0
        accepted: Optional[Tuple[float, float]] = None

        for k in range(cfg.max_line_search):
            vars.trial_xi[:] = vars.xi + alpha * vars.delta_xi.vec
            ok, obj_trial, c_norm_trial, constr = self._evaluate_trial(vars.trial_xi)
            if not ok:
                alpha = self.reduce_stepsize(alpha)
                continue
            self.trial_constr = constr

            if flt.contains(c_norm_trial, obj_trial):
                logging.debug(f"[LS] α={alpha:.3e}: (θ={c_norm_trial:.3e}, f={obj_trial:.6e}) in filter")
                accepted = self._try_soc(c_norm, c_norm_trial, df_t_delta_xi, False, k)
                if accepted:
                    break
                alpha = self.reduce_stepsize(alpha)
                continue

            # case I: almost feasible and switching condition holds -> Armijo on f
            if c_norm <= cfg.theta_min and self._switching(alpha, df_t_delta_xi, c_norm):
                if obj_trial > vars.obj + cfg.eta * alpha * df_t_delta_xi:
                    accepted = self._try_soc(c_norm, c_norm_trial, df_t_delta_xi, True, k)
                    if accepted:
                        break
                    alpha = self.reduce_stepsize(alpha)
                    continue
                self.accept_step(alpha)
                accepted = (c_norm_trial, obj_trial)
                break

            # case II: sufficient decrease in θ or f
            if c_norm_trial < (1.0 - cfg.gamma_theta) * c_norm or obj_trial < vars.obj - cfg.gamma_f * c_norm:
                self.accept_step(alpha)
                accepted = (c_norm_trial, obj_trial)
                break

            accepted = self._try_soc(c_norm, c_norm_trial, df_t_delta_xi, False, k)
            if accepted:
                break
            alpha = self.reduce_stepsize(alpha)

        if not accepted:
            logging.debug(f"[LS] no acceptable step after {cfg.max_line_search} trials")
            return False
        flt.augment(*accepted)
        return True

    def _try_soc(self, c_norm, c_norm_trial, df_t_delta_xi, sw_cond, k) -> Optional[Tuple[float, float]]:
        step = self.soc.compute_correction(
            c_norm, c_norm_trial, self.trial_constr, df_t_delta_xi, sw_cond, k
        )
        if step is None:
            return None
        self.vars.trial_xi[:] = self.vars.xi + step.delta_xi
        self.trial_constr = step.constr
        self.accept_step(1.0, step.delta_xi, step.lambda_qp, step.n_socs)
        return step.theta, step.obj

    def kkt_error_reduction(self) -> bool:
        """Accept the full step if it reduces max(θ, tol) by the factor kappa_f."""
        cfg, vars = self.cfg, self.vars
        vars.trial_xi[:] = vars.xi + vars.delta_xi.vec
        ok, obj_trial, c_norm_trial, constr = self._evaluate_trial(vars.trial_xi)
        if not ok:
            return False
        # old derivatives with the new multipliers
        grad_l = lagrange_gradient(vars.lambda_qp, vars.grad_obj, vars.constr_jac, vars.n_var)
        trial_tol = linf_vector_norm(grad_l) / (1.0 + linf_vector_norm(vars.lambda_qp))
        if max(c_norm_trial, trial_tol) < cfg.kappa_f * max(vars.c_norm, vars.tol):
            self.trial_constr = constr
            self.accept_step(1.0)
            return True
        return False
