"""
Mutable state of one SQP solve.

`SQPIterate` owns the primal/dual vectors, the block Hessian approximation(s),
the limited-memory step/gradient-difference ring buffers and the filter. It
also flattens the block Hessian into the column-compressed (or dense) form the
QP solver consumes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import scipy.sparse as sp

from ..aux.matrix import Matrix, SymMatrix
from .aux import BlockHess, HessUpdate, QPMode, SecondDerivs, SQPOptions
from .filter import Filter
from .problem import Problemspec


@dataclass
class SparseHessian:
    """Column-compressed Hessian with both triangles stored."""

    nz: np.ndarray
    ind_row: np.ndarray
    ind_col: np.ndarray  # nVar + 1 column pointers
    ind_lo: np.ndarray  # per column: first index with row >= column

    @property
    def n(self) -> int:
        return self.ind_col.size - 1

    def tocsc(self) -> sp.csc_matrix:
        return sp.csc_matrix((self.nz, self.ind_row, self.ind_col), shape=(self.n, self.n))


@dataclass
class IterateSnapshot:
    xi: np.ndarray
    lam: np.ndarray
    constr: np.ndarray
    obj: float
    tol: float
    c_norm: float
    c_norm_s: float
    grad_norm: float
    alpha: float
    steptype: int


def lagrange_gradient(
    lam: np.ndarray, grad_obj: np.ndarray, jac, n_var: int, out: Optional[np.ndarray] = None, flag: int = 0
) -> np.ndarray:
    """
    ∇L = ∇f − Jᵀλ_c − λ_x.

    With ``flag == 1`` the previous content of ``out`` is subtracted, which
    turns an "old" Lagrangian gradient into the difference γ = ∇L_new − ∇L_old.
    """
    lam_x, lam_c = lam[:n_var], lam[n_var:]
    jt_lam = np.asarray(jac.T @ lam_c).ravel() if lam_c.size else np.zeros(n_var)
    grad = grad_obj - jt_lam - lam_x
    if out is None:
        return grad
    if flag == 1:
        out[:] = grad - out
    else:
        out[:] = grad
    return out


def block_structure(prob: Problemspec, block_hess: BlockHess) -> np.ndarray:
    """Hessian block boundaries for the requested strategy."""
    if block_hess == BlockHess.SINGLE or prob.n_blocks == 1:
        return np.array([0, prob.n_var])
    if block_hess == BlockHess.HYBRID:
        return np.array([0, prob.block_idx[-2], prob.n_var])
    return prob.block_idx.copy()


class SQPIterate:
    def __init__(self, prob: Problemspec, param: SQPOptions, full: bool = True):
        self.n_var, self.n_con = prob.n_var, prob.n_con

        # ---- block structure ----
        self.block_idx = block_structure(prob, param.block_hess)
        self.which_second_derv = param.which_second_derv
        if len(self.block_idx) == 2 and self.which_second_derv == SecondDerivs.LAST_BLOCK:
            # one lumped block would need the full exact Hessian
            self.which_second_derv = SecondDerivs.NONE
        self.hess_memsize = param.hess_memsize
        if param.hess_lim_mem and self.hess_memsize == 0:
            self.hess_memsize = int(np.max(np.diff(self.block_idx)))
        self.hess_memsize = max(1, self.hess_memsize)

        self._alloc_min()
        if full:
            self._alloc_hess(param)
            self._alloc_alg(param)

    @property
    def n_blocks(self) -> int:
        return self.block_idx.size - 1

    def block_slice(self, i_block: int) -> slice:
        return slice(int(self.block_idx[i_block]), int(self.block_idx[i_block + 1]))

    def block_size(self, i_block: int) -> int:
        return int(self.block_idx[i_block + 1] - self.block_idx[i_block])

    # ---------------- allocation ----------------
    def _alloc_min(self) -> None:
        n, m = self.n_var, self.n_con
        self.xi = np.zeros(n)
        self.lam = np.zeros(n + m)
        self.constr = np.zeros(m)
        self.grad_obj = np.zeros(n)
        self.grad_lagrange = np.zeros(n)
        self.obj = np.inf

    def _alloc_hess(self, param: SQPOptions) -> None:
        self.hess1: List[SymMatrix] = [SymMatrix(self.block_size(b)) for b in range(self.n_blocks)]
        self.hess2: Optional[List[SymMatrix]] = None
        if param.uses_fallback_hessian:
            self.hess2 = [SymMatrix(self.block_size(b)) for b in range(self.n_blocks)]
        self.hess = self.hess1

    def _alloc_alg(self, param: SQPOptions) -> None:
        n, m = self.n_var, self.n_con
        self.delta_mat = Matrix(n, self.hess_memsize)
        self.gamma_mat = Matrix(n, self.hess_memsize)
        self.dg_pos = 0
        self.delta_xi = self.delta_mat.column(0)
        self.gamma = self.gamma_mat.column(0)

        self.trial_xi = np.zeros(n)
        self.delta_bl = Matrix(n + m)
        self.delta_bu = Matrix(n + m)
        self.adelta_xi = np.zeros(m)
        self.lambda_qp = np.zeros(n + m)

        self.constr_jac = sp.csc_matrix((m, n)) if param.qp_mode != QPMode.DENSE else np.zeros((m, n))
        self.filter = Filter(param)

        nb = self.n_blocks
        self.no_update_counter = np.full(nb, -1, dtype=int)
        self.delta_norm = np.ones(nb)
        self.delta_norm_old = np.ones(nb)
        self.delta_gamma = np.zeros(nb)
        self.delta_gamma_old = np.zeros(nb)

    def init_iterate(self, param: SQPOptions) -> None:
        self.alpha = 1.0
        self.n_socs = 0
        self.reduced_step_count = 0
        self.steptype = 0
        self.obj = np.inf
        self.tol = np.inf
        self.c_norm = param.theta_max
        self.c_norm_s = param.theta_max
        self.grad_norm = np.inf
        self.lambda_step_norm = 0.0

    # ---------------- ring buffers ----------------
    def update_delta_gamma(self) -> None:
        """Advance to the next ring-buffer column; the oldest pair gets overwritten."""
        if self.hess_memsize == 1:
            return
        self.dg_pos = (self.dg_pos + 1) % self.hess_memsize
        self.delta_xi = self.delta_mat.column(self.dg_pos)
        self.gamma = self.gamma_mat.column(self.dg_pos)

    # ---------------- Hessian conversion ----------------
    def convert_hessian_dense(self, hess: Optional[List[SymMatrix]] = None) -> np.ndarray:
        hess = self.hess if hess is None else hess
        H = np.zeros((self.n_var, self.n_var))
        for b, blk in enumerate(hess):
            s = self.block_slice(b)
            H[s, s] = blk.to_dense()
        return H

    def convert_hessian_sparse(self, eps: float, hess: Optional[List[SymMatrix]] = None) -> SparseHessian:
        """
        Flatten the block Hessian into CSC arrays, dropping |h| <= eps.

        Rows within a column are ascending, so ``ind_lo[j]`` is the position
        of the first entry of column j on or below the diagonal.
        """
        hess = self.hess if hess is None else hess
        nz, rows, counts = [], [], np.zeros(self.n_var, dtype=int)
        for b, blk in enumerate(hess):
            off = int(self.block_idx[b])
            B = blk.to_dense()
            keep = np.abs(B) > eps
            # column-major sweep: nonzero() of the transposed mask walks columns
            cols_l, rows_l = np.nonzero(keep.T)
            nz.append(B[rows_l, cols_l])
            rows.append(rows_l + off)
            counts[off : off + blk.m] = keep.sum(axis=0)

        ind_col = np.zeros(self.n_var + 1, dtype=int)
        np.cumsum(counts, out=ind_col[1:])
        ind_row = np.concatenate(rows) if rows else np.zeros(0, dtype=int)
        values = np.concatenate(nz) if nz else np.zeros(0)

        ind_lo = np.empty(self.n_var, dtype=int)
        for j in range(self.n_var):
            lo, hi = ind_col[j], ind_col[j + 1]
            ind_lo[j] = lo + np.searchsorted(ind_row[lo:hi], j)
        return SparseHessian(values, ind_row.astype(int), ind_col, ind_lo)

    def hessian_for_qp(self, param: SQPOptions, hess: Optional[List[SymMatrix]] = None):
        if param.qp_mode == QPMode.DENSE:
            return self.convert_hessian_dense(hess)
        return self.convert_hessian_sparse(param.eps, hess).tocsc()

    # ---------------- exact Hessian blocks ----------------
    def set_exact_blocks(self, blocks, which: SecondDerivs) -> None:
        """Copy problem-supplied dense blocks into hess1."""
        if blocks is None:
            logging.warning("[Iterate] second derivatives requested but none returned")
            return
        if which == SecondDerivs.LAST_BLOCK:
            targets = [self.n_blocks - 1]
            blocks = [blocks[-1]]
        else:
            targets = list(range(self.n_blocks))
        for b, B in zip(targets, blocks):
            if B is not None:
                self.hess1[b].set_dense(B)

    # ---------------- snapshots ----------------
    def snapshot(self) -> IterateSnapshot:
        return IterateSnapshot(
            xi=self.xi.copy(),
            lam=self.lam.copy(),
            constr=self.constr.copy(),
            obj=float(self.obj),
            tol=float(self.tol),
            c_norm=float(self.c_norm),
            c_norm_s=float(self.c_norm_s),
            grad_norm=float(self.grad_norm),
            alpha=float(self.alpha),
            steptype=int(self.steptype),
        )
