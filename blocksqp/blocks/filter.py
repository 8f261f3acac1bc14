"""
Filter acceptance mechanism for the SQP line search.

The filter keeps (θ, f) pairs, θ being the constraint violation and f the
objective. Entries are stored already shifted by the acceptance margins,

    ((1 − γ_θ) θ,  f − γ_f θ),

so that a trial pair is *in the filter* (rejected) exactly when it is not
strictly better than some stored entry in both coordinates.

Notes
-----
- A dominates B iff θ_A <= θ_B and f_A <= f_B with at least one strict.
- Entries dominated by a new entry are pruned on insertion; an entry that is
  already dominated by a stored one is not inserted. Retained entries are thus
  mutually non-dominated and, sorted by θ ascending, have f descending.
- Two pairs with θ below 0.01·feas_tol are compared on f alone, so tiny
  violations cannot block progress in the objective.
"""

from __future__ import annotations

import logging
from bisect import insort
from typing import List, Tuple

import numpy as np


def dominates(a: Tuple[float, float], b: Tuple[float, float]) -> bool:
    return a[0] <= b[0] and a[1] <= b[1] and (a[0] < b[0] or a[1] < b[1])


class Filter:
    """
    Parameters
    ----------
    cfg : SQPOptions
        Uses ``gamma_theta``, ``gamma_f`` and ``feas_tol``.

    Attributes
    ----------
    entries : List[Tuple[float, float]]
        Margin-shifted (θ, f) pairs sorted by θ.
    """

    def __init__(self, cfg: "SQPOptions"):
        self.cfg = cfg
        self.entries: List[Tuple[float, float]] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def reset(self) -> None:
        self.entries.clear()

    def initialize(self, theta_max: float, obj_lo: float = -np.inf) -> None:
        """Start with the single entry (θ_max, obj_lo): anything more infeasible is rejected."""
        self.entries = [self._shifted(theta_max, obj_lo)]
        logging.debug(f"[Filter] initialized with θ_max={theta_max:.3e}, f_lo={obj_lo:.3e}")

    def _shifted(self, theta: float, f: float) -> Tuple[float, float]:
        theta, f = float(theta), float(f)
        return (1.0 - self.cfg.gamma_theta) * theta, f - self.cfg.gamma_f * theta

    def contains(self, theta: float, f: float) -> bool:
        """True if (θ, f) lies in the region forbidden by any stored entry."""
        tiny = 0.01 * self.cfg.feas_tol
        for th_j, f_j in self.entries:
            if theta >= th_j and f >= f_j:
                return True
            if theta < tiny and th_j < tiny and f >= f_j:
                return True
        return False

    def is_acceptable(self, theta: float, f: float) -> bool:
        return not self.contains(theta, f)

    def augment(self, theta: float, f: float) -> bool:
        """Insert the margin-shifted pair for (θ, f); returns False if it adds nothing."""
        entry = self._shifted(theta, f)
        for old in self.entries:
            if dominates(old, entry) or old == entry:
                logging.debug(f"[Filter] skip dominated entry θ={entry[0]:.3e}, f={entry[1]:.6e}")
                return False
        before = len(self.entries)
        self.entries = [e for e in self.entries if not dominates(entry, e)]
        insort(self.entries, entry)
        logging.debug(
            f"[Filter] add θ={entry[0]:.3e}, f={entry[1]:.6e} "
            f"(pruned {before + 1 - len(self.entries)}), size={len(self.entries)}"
        )
        return True

    def is_consistent(self) -> bool:
        """No stored entry dominates another."""
        return not any(
            dominates(a, b) for i, a in enumerate(self.entries) for j, b in enumerate(self.entries) if i != j
        )
