"""
Block-structured SQP method with filter line search.

Usage
-----
    stats = SQPStats("./")
    meth = SQPMethod(prob, SQPOptions(opt_tol=1e-8), stats)
    meth.init()
    status = meth.run(100)
    meth.finish()
    x, lam = meth.vars.xi, meth.vars.lam

Each major iteration:
    bounds for Δx  ->  QP (SR1 with BFGS fallback / identity reset)
                   ->  filter line search (+ SOC, KKT heuristic, restoration)
                   ->  derivatives at the new point, KKT test
                   ->  block quasi-Newton update, next ring-buffer column
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

import numpy as np

from .aux.linalg import a_times_b, linf_constraint_norm, linf_vector_norm
from .aux.matrix import SymMatrix
from .blocks.aux import (
    EvalStatus,
    HessUpdate,
    HessScaling,
    LineSearchPhase,
    QPMode,
    QPStatus,
    SecondDerivs,
    SolveStatus,
    SQPOptions,
    StepType,
)
from .blocks.hessian import HessianManager
from .blocks.iterate import SQPIterate, lagrange_gradient
from .blocks.linesearch import LineSearcher
from .blocks.problem import Problemspec
from .blocks.qp import QPData, QPSolver
from .blocks.restoration import RestorationProblem
from .blocks.soc import SOCCorrector
from .blocks.stats import SQPStats


class SQPMethod:
    def __init__(self, prob: Problemspec, param: Optional[SQPOptions] = None, stats: Optional[SQPStats] = None):
        self.prob = prob
        param = (param or SQPOptions()).consistent()
        self.vars = SQPIterate(prob, param, full=True)
        # the iterate may have switched off second derivatives / chosen the memory size
        self.param = replace(
            param, which_second_derv=self.vars.which_second_derv, hess_memsize=self.vars.hess_memsize
        )
        self.stats = stats if stats is not None else SQPStats(self.param.out_path)

        self.hess_manager = HessianManager(self.param, self.stats)
        self.qp = QPSolver(self.param)
        self.soc = SOCCorrector(
            self.param, prob, self.vars, self.stats, self.solve_qp, self.update_step_bounds
        )
        self.ls = LineSearcher(self.param, prob, self.vars, self.stats, self.soc)
        self.phase = LineSearchPhase.NORMAL
        self.init_called = False
        self._qp_hessian = None

    @property
    def prefer_sparse(self) -> bool:
        return self.param.qp_mode != QPMode.DENSE

    # ---------------- lifecycle ----------------
    def init(self) -> EvalStatus:
        p = self.param
        if p.print_level > 1:
            logging.info(f"[SQP] {self.prob.describe(p.inf)}")
            logging.info(f"[SQP] options: {p.summary()}")
        self.stats.init_stats(p)
        self.vars.init_iterate(p)
        self.vars.filter.initialize(p.theta_max, self.prob.obj_lo)
        status = self.prob.initialize(self.vars.xi, self.vars.lam)
        if status not in (EvalStatus.OK, EvalStatus.NOT_IMPLEMENTED):
            logging.warning(f"[SQP] problem initialization returned {status.name}")
        self.init_called = True
        return status

    def finish(self) -> None:
        self.stats.finish(self.vars)

    # ---------------- evaluation helpers ----------------
    def evaluate_derivatives(self) -> bool:
        """Objective, constraints, gradient, Jacobian (and exact Hessian blocks) at xi."""
        vars = self.vars
        dmode = 1 + int(self.param.which_second_derv)
        ev = self.prob.evaluate(vars.xi, vars.lam, dmode, prefer_sparse=self.prefer_sparse)
        self.stats.n_der_calls += 1
        if not ev.ok:
            logging.warning(f"[SQP] derivative evaluation failed ({ev.status.name})")
            return False
        vars.obj = float(ev.obj)
        vars.constr[:] = ev.constr
        vars.grad_obj[:] = ev.grad_obj
        vars.constr_jac = ev.jac
        if self.param.which_second_derv != SecondDerivs.NONE:
            vars.set_exact_blocks(ev.hess, self.param.which_second_derv)
        return True

    def calc_lagrange_gradient(self, out: np.ndarray, flag: int = 0) -> np.ndarray:
        vars = self.vars
        return lagrange_gradient(vars.lam, vars.grad_obj, vars.constr_jac, vars.n_var, out=out, flag=flag)

    def calc_opt_tol(self) -> bool:
        """Update tol, c_norm, c_norm_s; True when the KKT conditions hold."""
        vars, p = self.vars, self.param
        self.calc_lagrange_gradient(vars.grad_lagrange, 0)
        vars.grad_norm = linf_vector_norm(vars.grad_lagrange)
        vars.tol = vars.grad_norm / (1.0 + linf_vector_norm(vars.lam))
        vars.c_norm = linf_constraint_norm(vars.xi, vars.constr, self.prob.bu, self.prob.bl)
        vars.c_norm_s = vars.c_norm / (1.0 + linf_vector_norm(vars.xi))
        return vars.tol <= p.opt_tol and vars.c_norm_s <= p.feas_tol

    def update_step_bounds(self, soc: bool = False, constr: Optional[np.ndarray] = None) -> None:
        """Bounds of the QP step; with ``soc`` the constraint bounds are shifted by J·Δx."""
        vars, prob, p = self.vars, self.prob, self.param
        n = vars.n_var
        c = vars.constr if constr is None else constr
        x_and_c = np.concatenate([vars.xi, c])
        lo, up = vars.delta_bl.vec, vars.delta_bu.vec
        lo[:] = prob.bl - x_and_c
        up[:] = prob.bu - x_and_c
        if soc and vars.n_con:
            lo[n:] += vars.adelta_xi
            up[n:] += vars.adelta_xi
        lo[p.is_infinite(prob.bl)] = -np.inf
        up[p.is_infinite(prob.bu)] = np.inf

    # ---------------- QP ----------------
    def _next_hessian(self, l: int, max_qp: int) -> List[SymMatrix]:
        vars = self.vars
        if l == 1:
            self.hess_manager.compute_fallback_hessian(vars, self.stats.it_count - 1)
        if max_qp <= 2:
            return vars.hess2
        mu = l / (max_qp - 1.0)
        blended = []
        for h1, h2 in zip(vars.hess1, vars.hess2):
            blk = SymMatrix(h1.m)
            blk.packed[:] = (1.0 - mu) * h1.packed + mu * h2.packed
            blended.append(blk)
        return blended

    def solve_qp(self, delta_xi: np.ndarray, lambda_qp: np.ndarray, matrices_changed: bool = True) -> QPStatus:
        """
        Solve the QP subproblem into ``delta_xi``/``lambda_qp``.

        With SR1 the QP is first tried with hess1; a nonconvex or failed QP is
        retried with the BFGS fallback (or convex blends towards it).
        """
        p, vars, stats = self.param, self.vars, self.stats
        if p.globalization and p.hess_update == HessUpdate.SR1 and matrices_changed and stats.it_count > 1:
            max_qp = p.max_conv_qp + 1
        else:
            max_qp = 1

        n = vars.n_var
        res, data = None, None
        for l in range(max_qp):
            hess = vars.hess1
            if l > 0:
                stats.qp_resolve += 1
                hess = self._next_hessian(l, max_qp)
            vars.hess = hess
            if matrices_changed or self._qp_hessian is None:
                self._qp_hessian = vars.hessian_for_qp(p, hess)
            data = QPData(
                H=self._qp_hessian,
                g=vars.grad_obj,
                A=vars.constr_jac,
                lb=vars.delta_bl.vec[:n],
                ub=vars.delta_bu.vec[:n],
                lbA=vars.delta_bl.vec[n:],
                ubA=vars.delta_bu.vec[n:],
            )
            res = self.qp.solve(data)
            if l < max_qp - 1 and matrices_changed:
                if res.ok:
                    stats.qp_iterations += res.iterations
                    break
                stats.qp_iterations2 += res.iterations
                stats.rejected_sr1 += 1
                logging.debug(f"[SQP] QP with hessian {l} rejected ({res.status.name})")
            else:
                stats.qp_iterations += res.iterations
        vars.hess = vars.hess1

        if p.debug_level > 2 and matrices_changed and data is not None:
            stats.dump_qp(data, vars)

        if res.status in (QPStatus.OK, QPStatus.ITERATION_LIMIT) and res.x is not None:
            delta_xi[:] = res.x
            lambda_qp[:] = res.lam
            vars.adelta_xi = a_times_b(vars.constr_jac, delta_xi) if vars.n_con else np.zeros(0)
        return res.status

    # ---------------- feasibility restoration ----------------
    def _augment_current_pair(self) -> None:
        """Restored points must improve on the iterate they replace."""
        vars = self.vars
        if np.isfinite(vars.c_norm) and np.isfinite(vars.obj):
            vars.filter.augment(vars.c_norm, vars.obj)

    def feasibility_restoration_heuristic(self) -> bool:
        """Ask the problem for a less infeasible point; accept it if the filter does."""
        vars, prob, stats = self.vars, self.prob, self.stats
        stats.n_rest_heur_calls += 1
        self._augment_current_pair()
        status, x_new = prob.reduce_constraint_violation(vars.xi.copy())
        if status != EvalStatus.OK or x_new is None:
            return False
        vars.trial_xi[:] = x_new
        ev = prob.evaluate(vars.trial_xi, dmode=0, prefer_sparse=self.prefer_sparse)
        stats.n_fun_calls += 1
        if not ev.ok:
            return False
        c_norm_trial = linf_constraint_norm(vars.trial_xi, ev.constr, prob.bu, prob.bl)
        obj = float(ev.obj)
        if not (np.isfinite(obj) and np.isfinite(c_norm_trial) and prob.obj_lo <= obj <= prob.obj_up):
            return False
        if vars.filter.contains(c_norm_trial, obj):
            return False

        # the reset clears the ring-buffer rows delta_xi is a view of
        self.hess_manager.reset_hessian(vars)
        vars.alpha = 1.0
        vars.n_socs = 0
        vars.reduced_step_count = 0
        vars.lam[:] = 0.0
        vars.lambda_qp[:] = 0.0
        vars.delta_xi.vec[:] = vars.trial_xi - vars.xi
        vars.xi[:] = vars.trial_xi
        vars.obj = obj
        vars.constr[:] = ev.constr
        self.phase = LineSearchPhase.RESTORATION
        return True

    def _restoration_options(self) -> SQPOptions:
        p = self.param
        return SQPOptions(
            print_level=0,
            debug_level=p.debug_level,
            out_path=p.out_path,
            eps=p.eps,
            inf=p.inf,
            opt_tol=p.opt_tol,
            feas_tol=p.feas_tol,
            globalization=True,
            restore_feas=False,
            which_second_derv=SecondDerivs.NONE,
            hess_update=HessUpdate.BFGS,
            hess_lim_mem=True,
            hess_scaling=HessScaling.OREN_LUENBERGER,
            qp_mode=p.qp_mode,
            qp_solver=p.qp_solver,
            max_it_qp=p.max_it_qp,
            max_time_qp=p.max_time_qp,
        )

    def feasibility_restoration_phase(self) -> SolveStatus:
        """
        Minimize the violation from the current point until the filter accepts.

        The current (θ, f) pair enters the filter first, so a restored point
        has to improve on the iterate it replaces. Returns CONVERGED on
        success, LOCALLY_INFEASIBLE if the restoration problem converged to a
        point that is still infeasible and not acceptable, and
        RESTORATION_FAILED otherwise.
        """
        vars, prob, p, stats = self.vars, self.prob, self.param, self.stats
        if not p.restore_feas:
            return SolveStatus.RESTORATION_FAILED
        stats.n_rest_phase_calls += 1
        self.phase = LineSearchPhase.RESTORATION
        self._augment_current_pair()

        rest_prob = RestorationProblem(prob, vars.xi)
        rest_method = SQPMethod(rest_prob, self._restoration_options(), SQPStats(stats.out_path, tag="Rest"))
        if rest_method.init() not in (EvalStatus.OK, EvalStatus.NOT_IMPLEMENTED):
            return SolveStatus.RESTORATION_FAILED

        ret = SolveStatus.RESTORATION_FAILED
        n, m = vars.n_var, vars.n_con
        ev = None
        for it in range(p.max_rest_it):
            status = rest_method.run(1, warm_start=it > 0)
            if status < 0:
                logging.debug(f"[SQP] restoration solve stopped with {status.name}")
                break
            vars.trial_xi[:] = rest_method.vars.xi[:n]
            ev = prob.evaluate(vars.trial_xi, dmode=0, prefer_sparse=self.prefer_sparse)
            stats.n_fun_calls += 1
            c_norm_trial = np.inf
            if ev.ok:
                c_norm_trial = linf_constraint_norm(vars.trial_xi, ev.constr, prob.bu, prob.bl)
                obj = float(ev.obj)
                valid = np.isfinite(obj) and np.isfinite(c_norm_trial) and prob.obj_lo <= obj <= prob.obj_up
                if valid and vars.filter.is_acceptable(c_norm_trial, obj):
                    logging.info(f"[SQP] restoration found a point acceptable for the filter (θ={c_norm_trial:.3e})")
                    ret = SolveStatus.CONVERGED
                    break
            if status == SolveStatus.CONVERGED:
                # minimal violation reached without improving on the filter
                if np.isfinite(c_norm_trial) and c_norm_trial > p.feas_tol * (1.0 + linf_vector_norm(vars.trial_xi)):
                    ret = SolveStatus.LOCALLY_INFEASIBLE
                break

        if ret in (SolveStatus.CONVERGED, SolveStatus.LOCALLY_INFEASIBLE):
            # the reset clears the ring-buffer rows delta_xi is a view of
            self.hess_manager.reset_hessian(vars)
            rest_lam = rest_method.vars.lam
            # slack bound multipliers (rest_lam[n : n + m]) have no counterpart
            new_lam = np.concatenate([rest_lam[:n], rest_lam[rest_prob.n_var : rest_prob.n_var + m]])
            vars.lambda_step_norm = linf_vector_norm(new_lam - vars.lam)
            vars.lam[:] = new_lam
            vars.lambda_qp[:] = 0.0
            vars.delta_xi.vec[:] = vars.trial_xi - vars.xi
            vars.xi[:] = vars.trial_xi
            vars.obj = float(ev.obj)
            vars.constr[:] = ev.constr
            vars.alpha = 1.0
            vars.n_socs = 0
            vars.reduced_step_count = 0
        if ret == SolveStatus.RESTORATION_FAILED:
            logging.warning("[SQP] restoration phase failed")
        elif ret == SolveStatus.LOCALLY_INFEASIBLE:
            logging.warning("[SQP] restoration phase: problem appears locally infeasible")
        return ret

    def _restore(self, allow_heuristic: bool) -> SolveStatus:
        """Heuristic first (unless it was just used), then the restoration phase."""
        vars, p = self.vars, self.param
        if allow_heuristic and vars.steptype < StepType.RESTORATION_HEURISTIC:
            if self.feasibility_restoration_heuristic():
                vars.steptype = StepType.RESTORATION_HEURISTIC
                return SolveStatus.CONVERGED
        if p.restore_feas and vars.c_norm > 0.01 * p.feas_tol:
            logging.info("[SQP] starting feasibility restoration phase")
            vars.steptype = StepType.RESTORATION_PHASE
            return self.feasibility_restoration_phase()
        return SolveStatus.RESTORATION_FAILED

    def _line_search_fallback(self) -> Optional[SolveStatus]:
        """
        Escalate after a failed line search (or too many reduced steps).

        CONVERGED: a step was taken. None: the Hessian was reset to the
        identity and the QP must be solved again. Anything else aborts.
        """
        vars, p = self.vars, self.param

        if self.ls.kkt_error_reduction():
            vars.steptype = StepType.KKT_REDUCTION
            return SolveStatus.CONVERGED

        if vars.c_norm > 0.01 * p.feas_tol and vars.steptype < StepType.RESTORATION_HEURISTIC:
            if self.feasibility_restoration_heuristic():
                vars.steptype = StepType.RESTORATION_HEURISTIC
                return SolveStatus.CONVERGED

        # a step with the initial Hessian that already failed would loop forever
        if vars.steptype not in (StepType.IDENTITY_RESET, StepType.RESTORATION_HEURISTIC):
            logging.warning("[SQP] line search failed; retrying with identity Hessian")
            vars.steptype = StepType.IDENTITY_RESET
            self.hess_manager.reset_hessian(vars)
            return None

        if p.restore_feas and vars.c_norm > 0.01 * p.feas_tol:
            logging.info("[SQP] line search failed; starting feasibility restoration phase")
            vars.steptype = StepType.RESTORATION_PHASE
            return self.feasibility_restoration_phase()

        logging.error("[SQP] line search failed and restoration is not possible")
        return SolveStatus.LINE_SEARCH_ERROR

    # ---------------- main loop ----------------
    def run(self, max_it: int, warm_start: bool = False) -> SolveStatus:
        """Perform up to ``max_it`` SQP iterations."""
        if not self.init_called:
            logging.error("[SQP] init() must be called before run()")
            return SolveStatus.NOT_INITIALIZED
        p, vars, stats = self.param, self.vars, self.stats

        if not warm_start or stats.it_count == 0:
            self.hess_manager.calc_initial_hessian(vars)
            if not self.evaluate_derivatives():
                return SolveStatus.EVALUATION_ERROR
            has_converged = self.calc_opt_tol()
            stats.print_progress(self.prob, vars, p, has_converged)
            if has_converged:
                return SolveStatus.CONVERGED
            stats.it_count += 1

        for _ in range(max_it):
            skip_line_search = False
            self.phase = LineSearchPhase.NORMAL
            self.update_step_bounds(soc=False)
            info_qp = self.solve_qp(vars.delta_xi.vec, vars.lambda_qp)

            if info_qp == QPStatus.ITERATION_LIMIT:
                logging.warning("[SQP] maximum number of QP iterations exceeded")
            elif info_qp in (QPStatus.ERROR, QPStatus.NONCONVEX):
                logging.warning("[SQP] QP error; solving again with identity Hessian")
                self.hess_manager.reset_hessian(vars)
                info_qp = self.solve_qp(vars.delta_xi.vec, vars.lambda_qp)
                if info_qp != QPStatus.OK:
                    logging.error("[SQP] QP error, stopping")
                    return SolveStatus.QP_ERROR
                vars.steptype = StepType.IDENTITY_RESET
            elif info_qp == QPStatus.INFEASIBLE:
                logging.warning("[SQP] QP infeasible; trying to reduce constraint violation")
                skip_line_search = True
                rest = self._restore(allow_heuristic=True)
                if rest != SolveStatus.CONVERGED:
                    return rest

            if skip_line_search:
                pass
            elif not p.globalization or (p.skip_first_globalization and stats.it_count == 1):
                if not self.ls.full_step():
                    logging.error("[SQP] objective or constraints cannot be evaluated at the new point")
                    return SolveStatus.EVALUATION_ERROR
                vars.steptype = StepType.NORMAL
            else:
                ok = self.ls.filter_line_search()
                if ok and vars.reduced_step_count <= p.max_consec_reduced_steps:
                    vars.steptype = StepType.NORMAL
                    if vars.n_socs > 0:
                        self.phase = LineSearchPhase.SECOND_ORDER_CORRECTION
                else:
                    status = self._line_search_fallback()
                    if status is None:
                        continue
                    if status != SolveStatus.CONVERGED:
                        return status

            # "old" Lagrangian gradient with the new multipliers
            self.calc_lagrange_gradient(vars.gamma.vec, 0)
            if not self.evaluate_derivatives():
                return SolveStatus.EVALUATION_ERROR
            has_converged = self.calc_opt_tol()
            stats.print_progress(self.prob, vars, p, has_converged, self.phase)
            # a restored point has stale multipliers; take at least one more step
            if has_converged and self.phase is not LineSearchPhase.RESTORATION:
                stats.it_count += 1
                return SolveStatus.CONVERGED

            self.calc_lagrange_gradient(vars.gamma.vec, 1)
            self.hess_manager.update(vars, stats.it_count)
            vars.update_delta_gamma()
            stats.it_count += 1

        return SolveStatus.MAX_ITERATIONS
