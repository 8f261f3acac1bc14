"""
Block quasi-Newton Hessian approximation.

Each diagonal block B of the Lagrangian Hessian is updated independently from
the block parts (s, y) of the last step and Lagrangian-gradient difference:

- damped BFGS: Powell damping replaces y by θy + (1−θ)Bs whenever
  sᵀy < hess_damp_fac · sᵀBs / α, which keeps B positive definite;
- SR1: skipped when |(y − Bs)ᵀs| is tiny relative to ‖s‖‖y − Bs‖.

Initial/periodic sizing multiplies B by a scalar from the curvature ratios
(Shanno–Phua, Oren–Luenberger, geometric mean) or by the centered
Oren–Luenberger factor. With SR1 a BFGS "fallback" approximation is kept in
``vars.hess2`` for QPs that turn out nonconvex.

Limited memory: the blocks are rebuilt every iteration from the scaled
identity by replaying the pairs stored in the ring buffers, oldest first.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from ..aux.linalg import adotb
from ..aux.matrix import SymMatrix
from .aux import BlockHess, HessScaling, HessUpdate, SecondDerivs, SQPOptions
from .iterate import SQPIterate


class HessianManager:
    def __init__(self, param: SQPOptions, stats: "SQPStats"):
        self.param = param
        self.stats = stats
        self.my_eps_sizing = 1.0e3 * param.eps
        self.my_eps_update = 1.0e2 * param.eps
        self._force_damping = False

    # ---------------- helpers ----------------
    def _n_updated_blocks(self, vars: SQPIterate) -> int:
        # the exact last block is supplied by the problem
        if vars.which_second_derv == SecondDerivs.LAST_BLOCK and self.param.block_hess != BlockHess.SINGLE:
            return vars.n_blocks - 1
        return vars.n_blocks

    def _skip_block(self, vars: SQPIterate, i_block: int) -> bool:
        return (
            vars.which_second_derv == SecondDerivs.LAST_BLOCK
            and self.param.block_hess != BlockHess.SINGLE
            and i_block == vars.n_blocks - 1
        )

    def _hess_sets(self, vars: SQPIterate) -> List[List[SymMatrix]]:
        return [vars.hess1] if vars.hess2 is None else [vars.hess1, vars.hess2]

    # ---------------- initialization / reset ----------------
    def calc_initial_hessian(self, vars: SQPIterate, i_block: Optional[int] = None) -> None:
        """Set block(s) to ini_hess_diag · I (both Hessian sets)."""
        blocks = range(vars.n_blocks) if i_block is None else [i_block]
        for b in blocks:
            if i_block is None and self._skip_block(vars, b):
                continue
            for hess in self._hess_sets(vars):
                blk = hess[b].initialize(0.0)
                for i in range(blk.m):
                    blk[i, i] = self.param.ini_hess_diag

    def reset_hessian(self, vars: SQPIterate, i_block: Optional[int] = None) -> None:
        """Forget all curvature information of the block(s) and restart from the identity."""
        if i_block is None:
            for b in range(vars.n_blocks):
                if not self._skip_block(vars, b):
                    self.reset_hessian(vars, b)
            return
        s = vars.block_slice(i_block)
        n_loc = s.stop - s.start
        # clear the block rows of the stored pairs through views
        vars.gamma_mat.submatrix(n_loc, vars.gamma_mat.n, s.start, 0).initialize(0.0)
        vars.delta_mat.submatrix(n_loc, vars.delta_mat.n, s.start, 0).initialize(0.0)
        vars.delta_norm[i_block] = 1.0
        vars.delta_gamma[i_block] = 0.0
        vars.delta_norm_old[i_block] = 1.0
        vars.delta_gamma_old[i_block] = 0.0
        vars.no_update_counter[i_block] = -1
        self.calc_initial_hessian(vars, i_block)
        logging.debug(f"[Hess] block {i_block} reset to {self.param.ini_hess_diag}·I")

    # ---------------- sizing ----------------
    def size_initial_hessian(
        self, hess: List[SymMatrix], gamma: np.ndarray, delta: np.ndarray, i_block: int, option: HessScaling
    ) -> None:
        eps = self.my_eps_sizing
        if option == HessScaling.SHANNO_PHUA:
            scale = adotb(gamma, gamma) / max(adotb(delta, gamma), eps)
        elif option == HessScaling.OREN_LUENBERGER:
            scale = adotb(delta, gamma) / max(adotb(delta, delta), eps)
        elif option == HessScaling.GEOMETRIC_MEAN:
            scale = np.sqrt(adotb(gamma, gamma) / max(adotb(delta, delta), eps))
        else:
            return
        if 0.0 < scale < 1.0:
            hess[i_block].scale(scale)
            self.stats.average_sizing_factor += scale
        else:
            self.stats.average_sizing_factor += 1.0

    def size_hessian_col(
        self, vars: SQPIterate, hess: List[SymMatrix], gamma: np.ndarray, delta: np.ndarray, i_block: int
    ) -> None:
        """Centered Oren–Luenberger sizing."""
        p, eps = self.param, self.my_eps_sizing
        d_norm, d_norm_old = vars.delta_norm[i_block], vars.delta_norm_old[i_block]
        d_gamma, d_gamma_old = vars.delta_gamma[i_block], vars.delta_gamma_old[i_block]
        B = hess[i_block].to_dense()
        d_b_d = float(delta @ B @ delta)

        # first update after a reset: plain OL factor
        theta = 1.0 if vars.no_update_counter[i_block] == -1 else min(p.col_tau1, p.col_tau2 * d_norm)
        if d_norm > eps and d_norm_old > eps:
            scale = (1.0 - theta) * d_gamma_old / d_norm_old + theta * d_b_d / d_norm
            if scale > p.eps:
                scale = ((1.0 - theta) * d_gamma_old / d_norm_old + theta * d_gamma / d_norm) / scale
        else:
            scale = 1.0

        if 0.0 < scale < 1.0:
            scale = max(p.col_eps, scale)
            hess[i_block].scale(scale)
        else:
            scale = 1.0
        self.stats.average_sizing_factor += scale

    # ---------------- updates ----------------
    def calc_bfgs(
        self, vars: SQPIterate, hess: List[SymMatrix], gamma: np.ndarray, delta: np.ndarray, i_block: int
    ) -> bool:
        """Damped BFGS update of one block. Returns False if the update was skipped."""
        p = self.param
        blk = hess[i_block]
        B = blk.to_dense()
        # y is copied: the ring buffer must keep the undamped pair
        gamma2 = np.array(gamma, dtype=float)
        b_delta = B @ delta
        h1 = float(delta @ b_delta)
        h2 = float(delta @ gamma2)

        damped = False
        if (p.hess_damp or self._force_damping) and h2 < p.hess_damp_fac * h1 / vars.alpha and abs(h1 - h2) > 1.0e-12:
            theta_powell = (1.0 - p.hess_damp_fac) * h1 / (h1 - h2)
            gamma2 = theta_powell * gamma2 + (1.0 - theta_powell) * b_delta
            h2 = float(delta @ gamma2)
            damped = True

        if abs(h1) < self.my_eps_update or abs(h2) < self.my_eps_update:
            # bad conditioning, the update might introduce negative eigenvalues
            vars.no_update_counter[i_block] += 1
            self.stats.hess_skipped += 1
            self.stats.n_total_skipped_updates += 1
            return False

        blk.set_dense(B - np.outer(b_delta, b_delta) / h1 + np.outer(gamma2, gamma2) / h2)
        vars.no_update_counter[i_block] = 0
        self.stats.hess_damped += int(damped)
        return True

    def calc_sr1(
        self, vars: SQPIterate, hess: List[SymMatrix], gamma: np.ndarray, delta: np.ndarray, i_block: int
    ) -> bool:
        """Symmetric rank-one update of one block. Returns False if skipped."""
        r = 1.0e-8
        blk = hess[i_block]
        B = blk.to_dense()
        gm_b_delta = gamma - B @ delta
        h = float(gm_b_delta @ delta)

        if abs(h) < r * np.linalg.norm(delta) * np.linalg.norm(gm_b_delta) or abs(h) < self.my_eps_update:
            vars.no_update_counter[i_block] += 1
            self.stats.hess_skipped += 1
            self.stats.n_total_skipped_updates += 1
            return False

        blk.set_dense(B + np.outer(gm_b_delta, gm_b_delta) / h)
        vars.no_update_counter[i_block] = 0
        return True

    def _apply(self, vars, hess, update: HessUpdate, gamma, delta, i_block) -> None:
        if update == HessUpdate.SR1:
            self.calc_sr1(vars, hess, gamma, delta, i_block)
        elif update == HessUpdate.BFGS:
            self.calc_bfgs(vars, hess, gamma, delta, i_block)

    def _size(self, vars, hess, scaling: HessScaling, gamma, delta, i_block, first_iter: bool) -> None:
        if scaling == HessScaling.CENTERED_OL:
            self.size_hessian_col(vars, hess, gamma, delta, i_block)
        elif first_iter:
            self.size_initial_hessian(hess, gamma, delta, i_block, scaling)

    def _check_skipped(self, vars: SQPIterate, i_block: int) -> None:
        if vars.no_update_counter[i_block] > self.param.max_consec_skipped_updates:
            logging.warning(
                f"[Hess] {vars.no_update_counter[i_block]} consecutive skipped updates "
                f"in block {i_block}; resetting Hessian block"
            )
            self.reset_hessian(vars, i_block)

    def calc_hessian_update(self, vars: SQPIterate, update: HessUpdate, scaling: HessScaling) -> None:
        """Full-memory update of every quasi-Newton block with the newest (s, y) pair."""
        n_blocks = self._n_updated_blocks(vars)
        self.stats.hess_damped = 0
        self.stats.hess_skipped = 0
        self.stats.average_sizing_factor = 0.0

        for b in range(n_blocks):
            s = vars.block_slice(b)
            gamma, delta = vars.gamma.vec[s], vars.delta_xi.vec[s]
            first_iter = vars.no_update_counter[b] == -1

            vars.delta_norm_old[b] = vars.delta_norm[b]
            vars.delta_gamma_old[b] = vars.delta_gamma[b]
            vars.delta_norm[b] = adotb(delta, delta)
            vars.delta_gamma[b] = adotb(delta, gamma)

            self._size(vars, vars.hess1, scaling, gamma, delta, b, first_iter)
            self._apply(vars, vars.hess1, update, gamma, delta, b)
            if update == HessUpdate.SR1 and vars.hess2 is not None:
                self._size(vars, vars.hess2, self.param.fallback_scaling, gamma, delta, b, first_iter)
                self._apply(vars, vars.hess2, self.param.fallback_update, gamma, delta, b)
            self.stats.n_total_updates += 1
            self._check_skipped(vars, b)

        if n_blocks:
            self.stats.average_sizing_factor /= n_blocks

    def _rebuild_limited_memory(
        self, vars: SQPIterate, hess: List[SymMatrix], update: HessUpdate, scaling: HessScaling, it_count: int
    ) -> None:
        n_blocks = self._n_updated_blocks(vars)
        memsize = vars.hess_memsize
        if it_count > memsize:
            m = memsize
            pos_oldest = it_count % m
        else:
            m = it_count
            pos_oldest = 0
        if m == 0:
            return
        pos_newest = (pos_oldest + m - 1) % m

        for b in range(n_blocks):
            s = vars.block_slice(b)
            n_loc = s.stop - s.start
            # block rows of all stored pairs
            small_gamma = vars.gamma_mat.submatrix(n_loc, vars.gamma_mat.n, s.start, 0)
            small_delta = vars.delta_mat.submatrix(n_loc, vars.delta_mat.n, s.start, 0)

            blk = hess[b].initialize(0.0)
            for i in range(blk.m):
                blk[i, i] = self.param.ini_hess_diag
            vars.delta_norm[b] = 1.0
            vars.delta_norm_old[b] = 1.0
            vars.delta_gamma[b] = 0.0
            vars.delta_gamma_old[b] = 0.0
            vars.no_update_counter[b] = -1

            # size B_0 with the most recent pair
            self.size_initial_hessian(
                hess, small_gamma.array[:, pos_newest], small_delta.array[:, pos_newest], b, scaling
            )

            for i in range(m):
                pos = (pos_oldest + i) % m
                gamma_i = small_gamma.array[:, pos]
                delta_i = small_delta.array[:, pos]
                vars.delta_norm_old[b] = vars.delta_norm[b]
                vars.delta_gamma_old[b] = vars.delta_gamma[b]
                vars.delta_norm[b] = adotb(delta_i, delta_i)
                vars.delta_gamma[b] = adotb(gamma_i, delta_i)

                # statistics are kept for the most recent pair only
                saved = (self.stats.average_sizing_factor, self.stats.hess_damped, self.stats.hess_skipped)
                if scaling == HessScaling.CENTERED_OL:
                    self.size_hessian_col(vars, hess, gamma_i, delta_i, b)
                self._apply(vars, hess, update, gamma_i, delta_i, b)
                self.stats.n_total_updates += 1
                if pos != pos_newest:
                    self.stats.hess_damped, self.stats.hess_skipped = saved[1], saved[2]
                    if scaling == HessScaling.CENTERED_OL:
                        self.stats.average_sizing_factor = saved[0]

            self._check_skipped(vars, b)

        if n_blocks:
            self.stats.average_sizing_factor /= n_blocks

    def calc_hessian_update_limited_memory(
        self, vars: SQPIterate, update: HessUpdate, scaling: HessScaling, it_count: int
    ) -> None:
        self.stats.hess_damped = 0
        self.stats.hess_skipped = 0
        self.stats.average_sizing_factor = 0.0
        self._rebuild_limited_memory(vars, vars.hess1, update, scaling, it_count)

    def compute_fallback_hessian(self, vars: SQPIterate, it_count: int) -> List[SymMatrix]:
        """
        Make ``vars.hess2`` usable as the positive definite fallback.

        Full memory keeps hess2 updated every iteration; with limited memory it
        is rebuilt here, on demand, with damping always on.
        """
        if vars.which_second_derv == SecondDerivs.LAST_BLOCK:
            vars.hess2[-1] = vars.hess1[-1].copy()
        if self.param.hess_lim_mem:
            saved = (self.stats.average_sizing_factor, self.stats.hess_damped, self.stats.hess_skipped)
            self._force_damping = True
            try:
                self._rebuild_limited_memory(
                    vars, vars.hess2, self.param.fallback_update, self.param.fallback_scaling, it_count
                )
            finally:
                self._force_damping = False
            self.stats.average_sizing_factor, self.stats.hess_damped, self.stats.hess_skipped = saved
        return vars.hess2

    def update(self, vars: SQPIterate, it_count: int) -> None:
        """Dispatch the configured update after an accepted step."""
        p = self.param
        if p.hess_update not in (HessUpdate.SR1, HessUpdate.BFGS):
            return
        if p.hess_lim_mem:
            self.calc_hessian_update_limited_memory(vars, p.hess_update, p.hess_scaling, it_count)
        else:
            self.calc_hessian_update(vars, p.hess_update, p.hess_scaling)
