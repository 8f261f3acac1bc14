"""
Run statistics and progress output for the block SQP method.

`SQPStats` is created by the caller, handed to `SQPMethod`, and opened and
closed by the method's `init()`/`finish()`. It keeps the counters updated by
the Hessian engine, line search and QP solves, plus one `IterationRecord`
per iteration in ``history``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import List, Optional

import numpy as np

from ..aux.linalg import calc_eigenvalues, estimate_smallest_eigenvalue, linf_vector_norm
from .aux import LineSearchPhase, SQPOptions


@dataclass
class IterationRecord:
    it: int
    qp_it: int
    qp_it2: int
    obj: float
    feas: float  # scaled violation c_norm_s
    opt: float  # tol
    grad_lagrange: float
    step: float
    lambda_step: float
    alpha: float
    n_socs: int
    hess_skipped: int
    hess_damped: int
    avg_sizing: float
    qp_resolve: int
    steptype: int
    converged: bool
    phase: str = LineSearchPhase.NORMAL.value


class SQPStats:
    def __init__(self, out_path: str = "./", tag: str = "SQP"):
        self.out_path = out_path
        self.tag = tag
        self.history: List[IterationRecord] = []
        self._reset()

    def _reset(self) -> None:
        self.it_count = 0
        self.qp_it_total = 0
        self.qp_iterations = 0
        self.qp_iterations2 = 0
        self.qp_resolve = 0
        self.rejected_sr1 = 0
        self.hess_skipped = 0
        self.hess_damped = 0
        self.average_sizing_factor = 0.0
        self.n_fun_calls = 0
        self.n_der_calls = 0
        self.n_rest_heur_calls = 0
        self.n_rest_phase_calls = 0
        self.n_total_updates = 0
        self.n_total_skipped_updates = 0
        self.n_qp_dumps = 0
        self._last_header = -1
        self.print_level = 0
        self.debug_level = 0

    # ---------------- lifecycle ----------------
    def init_stats(self, param: SQPOptions) -> None:
        self._reset()
        self.history = []
        self.print_level = param.print_level
        self.debug_level = param.debug_level
        self.out_path = param.out_path or self.out_path
        if self.debug_level > 2:
            os.makedirs(self.out_path, exist_ok=True)

    def finish(self, vars: Optional["SQPIterate"] = None) -> None:
        if self.print_level > 1:
            logging.info(
                f"[{self.tag}] finished: {self.it_count} iterations, {self.qp_it_total} QP iterations, "
                f"{self.n_fun_calls} function / {self.n_der_calls} derivative evaluations, "
                f"{self.n_total_updates} Hessian updates ({self.n_total_skipped_updates} skipped), "
                f"{self.n_rest_heur_calls} restoration heuristics, {self.n_rest_phase_calls} restoration phases"
            )
            if vars is not None:
                logging.info(f"[{self.tag}] final obj={vars.obj:.10e}, ||c||={vars.c_norm:.3e}, tol={vars.tol:.3e}")

    # ---------------- per-iteration output ----------------
    def print_progress(
        self,
        prob,
        vars,
        param: SQPOptions,
        has_converged: bool,
        phase: LineSearchPhase = LineSearchPhase.NORMAL,
    ) -> IterationRecord:
        """Record (and optionally log) one iteration; QP counters restart afterwards."""
        first = self.it_count == 0
        rec = IterationRecord(
            it=self.it_count,
            qp_it=self.qp_iterations,
            qp_it2=self.qp_iterations2,
            obj=float(vars.obj),
            feas=float(vars.c_norm_s),
            opt=float(vars.tol),
            grad_lagrange=float(vars.grad_norm),
            step=0.0 if first else linf_vector_norm(vars.delta_xi),
            lambda_step=float(vars.lambda_step_norm),
            alpha=float(vars.alpha),
            n_socs=int(vars.n_socs),
            hess_skipped=self.hess_skipped,
            hess_damped=self.hess_damped,
            avg_sizing=float(self.average_sizing_factor),
            qp_resolve=self.qp_resolve,
            steptype=int(vars.steptype),
            converged=bool(has_converged),
            phase=phase.value,
        )
        self.history.append(rec)
        self.qp_it_total += self.qp_iterations

        if self.print_level > 0:
            self._log_row(rec, first)
        if self.debug_level > 0:
            logging.debug(f"[{self.tag}] {asdict(rec)}")
        if self.debug_level > 1:
            self.log_hessian_spectrum(vars)

        self.qp_iterations = 0
        self.qp_iterations2 = 0
        self.qp_resolve = 0
        return rec

    def _log_row(self, r: IterationRecord, first: bool) -> None:
        HDR = (
            f"{'it':>5} {'qpIt':>6} {'qpIt2':>6} {'obj':>14} {'feas':>9} {'opt':>9} "
            f"{'|lgrd|':>9} {'|stp|':>9} {'|lstp|':>9} {'alpha':>9} {'nSOCS':>5} "
            f"{'sk, da, sca':>15} {'QPr':>4} {'type':>4}"
        )
        if self._last_header < 0 or (r.it - self._last_header) >= 20:
            self._last_header = r.it
            logging.info(f"[{self.tag}] {HDR}")
        if first:
            row = (
                f"{r.it:>5} {'':>6} {'':>6} {r.obj:>14.6e} {r.feas:>9.2e} {r.opt:>9.2e} "
                f"{r.grad_lagrange:>9.2e}"
            )
        else:
            row = (
                f"{r.it:>5} {r.qp_it:>6} {r.qp_it2:>6} {r.obj:>14.6e} {r.feas:>9.2e} {r.opt:>9.2e} "
                f"{r.grad_lagrange:>9.2e} {r.step:>9.2e} {r.lambda_step:>9.2e} {r.alpha:>9.2e} "
                f"{r.n_socs:>5} {f'{r.hess_skipped}, {r.hess_damped}, {r.avg_sizing:.2g}':>15} "
                f"{r.qp_resolve:>4} {r.steptype:>4}"
            )
        logging.info(f"[{self.tag}] {row}{' *' if r.converged else ''}")

    # ---------------- diagnostics ----------------
    def log_hessian_spectrum(self, vars) -> None:
        """Smallest eigenvalue per Hessian block (Gershgorin bound if eigvalsh fails)."""
        for b, blk in enumerate(vars.hess1):
            res = calc_eigenvalues(blk)
            if res.ok:
                logging.debug(f"[{self.tag}] block {b}: min eig {res.value.array.min():.3e}")
            else:
                logging.debug(
                    f"[{self.tag}] block {b}: eigenvalues unavailable (info={res.info}), "
                    f"Gershgorin bound {estimate_smallest_eigenvalue(blk):.3e}"
                )

    def dump_qp(self, data, vars, name: Optional[str] = None) -> str:
        """Write one QP subproblem to ``out_path`` as .npz for offline reproduction."""
        path = os.path.join(self.out_path, name or f"qp_{self.tag.lower()}_{self.it_count:04d}.npz")
        H = data.H.toarray() if hasattr(data.H, "toarray") else np.asarray(data.H)
        A = data.A.toarray() if hasattr(data.A, "toarray") else np.asarray(data.A)
        np.savez(
            path,
            H=H,
            g=data.g,
            A=A,
            lb=data.lb,
            ub=data.ub,
            lbA=data.lbA,
            ubA=data.ubA,
            xi=vars.xi,
            lam=vars.lam,
            block_idx=vars.block_idx,
        )
        self.n_qp_dumps += 1
        logging.debug(f"[{self.tag}] QP data written to {path}")
        return path
