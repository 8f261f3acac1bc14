# Options, selectors and status codes shared by the block SQP components.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass, fields, replace
from enum import Enum, IntEnum

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums
# ======================================
class QPMode(IntEnum):
    """How Hessian/Jacobian are handed to the QP subproblem."""

    DENSE = 0
    SPARSE = 1
    SCHUR = 2  # sparse, solver able to report nonconvexity (required for SR1)


class BlockHess(IntEnum):
    SINGLE = 0
    BLOCKWISE = 1
    HYBRID = 2


class SecondDerivs(IntEnum):
    NONE = 0
    LAST_BLOCK = 1
    ALL = 2


class HessUpdate(IntEnum):
    CONSTANT = 0
    SR1 = 1
    BFGS = 2
    EXACT = 4  # blocks supplied by the problem's evaluate


class HessScaling(IntEnum):
    NONE = 0
    SHANNO_PHUA = 1
    OREN_LUENBERGER = 2
    GEOMETRIC_MEAN = 3
    CENTERED_OL = 4


class EvalStatus(IntEnum):
    OK = 0
    FAILED = 1
    NOT_IMPLEMENTED = -1


class QPStatus(IntEnum):
    OK = 0
    ITERATION_LIMIT = 1
    ERROR = 2
    INFEASIBLE = 3
    NONCONVEX = 4


class SolveStatus(IntEnum):
    CONVERGED = 0
    MAX_ITERATIONS = 1
    RESTORATION_FAILED = -1
    QP_ERROR = -2
    LINE_SEARCH_ERROR = -3
    EVALUATION_ERROR = -4
    LOCALLY_INFEASIBLE = -5
    NOT_INITIALIZED = -6


class StepType(IntEnum):
    KKT_REDUCTION = -1
    NORMAL = 0
    IDENTITY_RESET = 1
    RESTORATION_HEURISTIC = 2
    RESTORATION_PHASE = 3


class LineSearchPhase(Enum):
    NORMAL = "normal"
    SECOND_ORDER_CORRECTION = "soc"
    RESTORATION = "restoration"


# ======================================
# Options
# ======================================
@dataclass(frozen=True)
class SQPOptions:
    """
    Tunable parameters of the block SQP method.

    Notes
    -----
    • Frozen: use `dataclasses.replace` (or `consistent()`) to derive variants.
    • Infinite bounds are any |b| >= `inf`; ±np.inf works as well.
    """

    # ---------------- Output ----------------
    print_level: int = 1  # 0: silent, 1: progress table, 2: + summary/problem info
    debug_level: int = 0  # 1: debug lines, 2: + Hessian spectra, 3: + QP dumps
    out_path: str = "./"

    # ---------------- Tolerances ----------------
    eps: float = 1e-16
    inf: float = 1e20
    opt_tol: float = 1e-6
    feas_tol: float = 1e-6

    # ---------------- Globalization ----------------
    globalization: bool = True
    restore_feas: bool = True
    skip_first_globalization: bool = False
    max_line_search: int = 20
    max_consec_reduced_steps: int = 100
    max_soc_iter: int = 3
    max_rest_it: int = 100

    # ---------------- Hessian approximation ----------------
    block_hess: BlockHess = BlockHess.BLOCKWISE
    which_second_derv: SecondDerivs = SecondDerivs.NONE
    hess_update: HessUpdate = HessUpdate.SR1
    fallback_update: HessUpdate = HessUpdate.BFGS
    hess_scaling: HessScaling = HessScaling.OREN_LUENBERGER
    fallback_scaling: HessScaling = HessScaling.CENTERED_OL
    ini_hess_diag: float = 1.0
    hess_damp: bool = True
    hess_damp_fac: float = 0.2
    hess_lim_mem: bool = True
    hess_memsize: int = 20
    max_consec_skipped_updates: int = 100
    col_eps: float = 0.1
    col_tau1: float = 0.5
    col_tau2: float = 1.0e4

    # ---------------- Convexification ----------------
    max_conv_qp: int = 1  # extra QPs; more than 1 tries convex blends of hess1 and hess2

    # ---------------- QP subproblem ----------------
    qp_mode: QPMode = QPMode.SCHUR
    qp_solver: str = "CLARABEL"
    max_it_qp: int = 5000
    max_time_qp: float = 10000.0

    # ---------------- Filter line search ----------------
    gamma_theta: float = 1.0e-5
    gamma_f: float = 1.0e-5
    kappa_soc: float = 0.99
    kappa_f: float = 0.999
    theta_max: float = 1.0e7
    theta_min: float = 1.0e-5
    delta: float = 1.0
    s_theta: float = 1.1
    s_f: float = 2.3
    eta: float = 1.0e-4

    def __post_init__(self):
        # coerce plain ints/strings into the enum selectors
        for name, enum in (
            ("qp_mode", QPMode),
            ("block_hess", BlockHess),
            ("which_second_derv", SecondDerivs),
            ("hess_update", HessUpdate),
            ("fallback_update", HessUpdate),
            ("hess_scaling", HessScaling),
            ("fallback_scaling", HessScaling),
        ):
            val = getattr(self, name)
            if isinstance(val, str):
                val = enum[val.upper()]
            object.__setattr__(self, name, enum(val))

        if self.opt_tol <= 0 or self.feas_tol <= 0:
            raise ValueError("opt_tol and feas_tol must be positive")
        if self.eps <= 0 or self.inf <= 0:
            raise ValueError("eps and inf must be positive")
        if self.hess_memsize < 0:
            raise ValueError("hess_memsize must be >= 0 (0: largest block size)")
        if self.ini_hess_diag <= 0:
            raise ValueError("ini_hess_diag must be positive")
        if not 0.0 < self.hess_damp_fac < 1.0:
            raise ValueError("hess_damp_fac must lie in (0, 1)")
        if self.max_line_search < 1 or self.max_soc_iter < 0 or self.max_rest_it < 1:
            raise ValueError("max_line_search/max_rest_it must be >= 1, max_soc_iter >= 0")
        if self.max_conv_qp < 0:
            raise ValueError("max_conv_qp must be >= 0")
        if self.fallback_update not in (HessUpdate.CONSTANT, HessUpdate.BFGS):
            raise ValueError("fallback_update must be CONSTANT or BFGS (positive definite)")
        if not 0.0 < self.col_eps < 1.0 or self.col_tau1 <= 0 or self.col_tau2 <= 0:
            raise ValueError("centered OL sizing needs 0 < col_eps < 1 and positive taus")
        if self.theta_min <= 0 or self.theta_max <= self.theta_min:
            raise ValueError("require 0 < theta_min < theta_max")

    def consistent(self) -> "SQPOptions":
        """Resolve combinations that cannot work together."""
        opts = self
        if opts.which_second_derv == SecondDerivs.ALL:
            opts = replace(opts, hess_update=HessUpdate.EXACT, block_hess=BlockHess.BLOCKWISE)
        if not opts.hess_lim_mem and opts.hess_memsize != 1:
            opts = replace(opts, hess_memsize=1)
        if opts.qp_mode != QPMode.SCHUR and opts.hess_update == HessUpdate.SR1:
            logging.warning(
                "[Options] SR1 needs qp_mode=SCHUR; using BFGS with the fallback scaling"
            )
            opts = replace(opts, hess_update=HessUpdate.BFGS, hess_scaling=opts.fallback_scaling)
        return opts

    @property
    def uses_fallback_hessian(self) -> bool:
        return self.hess_update == HessUpdate.SR1

    def is_infinite(self, bound) -> np.ndarray:
        return np.abs(np.asarray(bound, dtype=float)) >= self.inf

    def summary(self) -> str:
        return ", ".join(f"{f.name}={getattr(self, f.name)!r}" for f in fields(self))
