"""
Dense column-major and packed symmetric containers.

`Matrix` keeps a flat float64 buffer addressed as ``buf[offset + i + j*ldim]``.
An instance either owns its buffer or is a *view* onto the buffer of another
matrix (same stride, shifted offset). Views are how the limited-memory ring
buffers hand out single columns and how block rows are cleared in place.

`SymMatrix` stores the lower triangle of an m×m symmetric matrix in
m(m+1)/2 slots; (i, j) and (j, i) share the slot
``i + j*m - j*(j+1)/2`` (i ≥ j).

Misuse of views (resizing, out-of-range submatrices) raises `MatrixViewError`.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Callable, Optional, Tuple, Union

import numpy as np


class MatrixViewError(RuntimeError):
    """Invalid operation on a matrix view (resize, out-of-bounds submatrix)."""


Init = Union[float, Callable[[int, int], float]]


class Matrix:
    """
    Dense m×n matrix in column-major order with leading dimension ``ldim``.

    Parameters
    ----------
    m, n : int
        Logical dimensions.
    ldim : int, optional
        Leading dimension of the storage; values below ``m`` are raised to ``m``.

    Notes
    -----
    ``array`` returns an (m, n) numpy view, so numpy code can read and write
    the entries directly. For column vectors ``vec`` gives the 1-D view.
    """

    __slots__ = ("m", "n", "ldim", "_buf", "_offset", "_owner")

    def __init__(self, m: int = 1, n: int = 1, ldim: int = -1):
        self.m = 0
        self.n = 0
        self.ldim = 0
        self._buf = np.zeros(0)
        self._offset = 0
        self._owner: Optional[Matrix] = None
        self._allocate(int(m), int(n), int(ldim))

    # ------------------------------------------------------------------ alloc
    def _allocate(self, m: int, n: int, ldim: int) -> None:
        if m < 0 or n < 0:
            raise ValueError(f"Matrix dimensions must be non-negative, got ({m}, {n})")
        self.m, self.n = m, n
        self.ldim = max(ldim, m)
        self._buf = np.zeros(self.ldim * n, dtype=float)
        self._offset = 0

    @classmethod
    def from_array(cls, a) -> "Matrix":
        """Owning copy of a 1-D (column vector) or 2-D array."""
        a = np.asarray(a, dtype=float)
        if a.ndim == 1:
            a = a[:, None]
        if a.ndim != 2:
            raise ValueError(f"Matrix.from_array expects 1-D or 2-D input, got ndim={a.ndim}")
        out = cls(a.shape[0], a.shape[1])
        out.array[:, :] = a
        return out

    @property
    def is_view(self) -> bool:
        return self._owner is not None

    @property
    def shape(self) -> Tuple[int, int]:
        return self.m, self.n

    # ----------------------------------------------------------- numpy views
    @property
    def array(self) -> np.ndarray:
        if self.n == 0 or self.ldim == 0:
            return np.zeros((self.m, self.n))
        grid = self._buf.reshape((self.ldim, -1), order="F")
        i0, j0 = self._offset % self.ldim, self._offset // self.ldim
        return grid[i0 : i0 + self.m, j0 : j0 + self.n]

    @property
    def vec(self) -> np.ndarray:
        return self.array[:, 0]

    # ---------------------------------------------------------------- access
    def _flat(self, k: int) -> int:
        if not 0 <= k < self.ldim * (self.n - 1) + self.m:
            raise IndexError(f"flat index {k} out of range for {self.m}x{self.n} matrix")
        return self._offset + k

    def _pos(self, i: int, j: int) -> int:
        if not (0 <= i < self.m and 0 <= j < self.n):
            raise IndexError(f"index ({i}, {j}) out of range for {self.m}x{self.n} matrix")
        return self._offset + i + j * self.ldim

    def __getitem__(self, key) -> float:
        if isinstance(key, tuple):
            return float(self._buf[self._pos(*key)])
        return float(self._buf[self._flat(key)])

    def __setitem__(self, key, value: float) -> None:
        if isinstance(key, tuple):
            self._buf[self._pos(*key)] = value
        else:
            self._buf[self._flat(key)] = value

    # ------------------------------------------------------------ operations
    def dimension(self, m: int, n: int = 1, ldim: int = -1) -> "Matrix":
        """Resize to m×n. Owners reallocate (entries reset to 0); views refuse."""
        if m == self.m and n == self.n and max(ldim, m) <= self.ldim:
            return self
        if self.is_view:
            raise MatrixViewError("Cannot resize a matrix view")
        self._allocate(int(m), int(n), int(ldim))
        return self

    def initialize(self, value: Init) -> "Matrix":
        """Fill with a constant or with ``value(i, j)`` for every entry."""
        if callable(value):
            a = self.array
            for j in range(self.n):
                for i in range(self.m):
                    a[i, j] = value(i, j)
        else:
            self.array[:, :] = value
        return self

    def submatrix(self, m: int, n: int, i0: int = 0, j0: int = 0) -> "Matrix":
        """Non-owning m×n view whose (0, 0) entry is this matrix's (i0, j0)."""
        if i0 < 0 or j0 < 0 or m < 0 or n < 0 or i0 + m > self.m or j0 + n > self.n:
            raise MatrixViewError(
                f"Cannot create {m}x{n} submatrix at ({i0}, {j0}) of {self.m}x{self.n} matrix"
            )
        view = Matrix.__new__(Matrix)
        view.m, view.n, view.ldim = m, n, self.ldim
        view._buf = self._buf
        view._offset = self._offset + i0 + j0 * self.ldim
        view._owner = self._owner if self._owner is not None else self
        return view

    def column(self, j: int) -> "Matrix":
        return self.submatrix(self.m, 1, 0, j)

    def assign(self, other: Union["Matrix", np.ndarray]) -> "Matrix":
        """Copy values from ``other``. Owners take its shape; views must match it."""
        src = other.array if isinstance(other, Matrix) else np.asarray(other, dtype=float)
        if src.ndim == 1:
            src = src[:, None]
        if src.shape != (self.m, self.n):
            if self.is_view:
                raise MatrixViewError(
                    f"Cannot assign {src.shape[0]}x{src.shape[1]} data to a "
                    f"{self.m}x{self.n} view"
                )
            self._allocate(src.shape[0], src.shape[1], -1)
        self.array[:, :] = src
        return self

    def copy(self) -> "Matrix":
        return Matrix.from_array(self.array)

    def __repr__(self) -> str:
        kind = "view" if self.is_view else "owner"
        return f"Matrix({self.m}x{self.n}, ldim={self.ldim}, {kind})"

    def __str__(self) -> str:
        return np.array2string(self.array, precision=6)


def transpose(A: Matrix) -> Matrix:
    """Return Aᵀ as a new owning matrix."""
    return Matrix.from_array(A.array.T)


# ======================================
# Packed symmetric storage
# ======================================
@lru_cache(maxsize=64)
def _packed_index_grid(m: int) -> np.ndarray:
    I, J = np.indices((m, m))
    hi, lo = np.maximum(I, J), np.minimum(I, J)
    grid = hi + lo * m - lo * (lo + 1) // 2
    grid.setflags(write=False)
    return grid


class SymMatrix:
    """Symmetric m×m matrix stored as its packed lower triangle."""

    __slots__ = ("m", "_packed")

    def __init__(self, m: int = 0):
        self.m = 0
        self._packed = np.zeros(0)
        self.dimension(m)

    @staticmethod
    def index(i: int, j: int, m: int) -> int:
        if i < j:
            i, j = j, i
        return i + j * m - j * (j + 1) // 2

    @classmethod
    def from_dense(cls, A: Union[Matrix, np.ndarray]) -> "SymMatrix":
        """Copy the lower triangle of a square matrix assumed symmetric."""
        a = A.array if isinstance(A, Matrix) else np.asarray(A, dtype=float)
        if a.ndim != 2 or a.shape[0] != a.shape[1]:
            raise ValueError(f"SymMatrix needs a square source, got shape {a.shape}")
        out = cls(a.shape[0])
        out.set_dense(a)
        return out

    @property
    def n(self) -> int:
        return self.m

    @property
    def packed(self) -> np.ndarray:
        return self._packed

    def dimension(self, m: int) -> "SymMatrix":
        m = int(m)
        if m < 0:
            raise ValueError(f"SymMatrix dimension must be non-negative, got {m}")
        if m != self.m or self._packed.size != m * (m + 1) // 2:
            self.m = m
            self._packed = np.zeros(m * (m + 1) // 2)
        return self

    def _pos(self, i: int, j: int) -> int:
        if not (0 <= i < self.m and 0 <= j < self.m):
            raise IndexError(f"index ({i}, {j}) out of range for {self.m}x{self.m} SymMatrix")
        return self.index(i, j, self.m)

    def __getitem__(self, key) -> float:
        if isinstance(key, tuple):
            return float(self._packed[self._pos(*key)])
        return float(self._packed[key])

    def __setitem__(self, key, value: float) -> None:
        if isinstance(key, tuple):
            self._packed[self._pos(*key)] = value
        else:
            self._packed[key] = value

    def initialize(self, value: Init) -> "SymMatrix":
        if callable(value):
            for j in range(self.m):
                for i in range(j, self.m):
                    self._packed[self.index(i, j, self.m)] = value(i, j)
        else:
            self._packed[:] = value
        return self

    def submatrix(self, *args, **kwargs):
        raise MatrixViewError("SymMatrix does not support submatrix views")

    def to_dense(self) -> np.ndarray:
        if self.m == 0:
            return np.zeros((0, 0))
        return self._packed[_packed_index_grid(self.m)]

    def set_dense(self, a: np.ndarray) -> "SymMatrix":
        a = np.asarray(a, dtype=float)
        if a.shape != (self.m, self.m):
            self.dimension(a.shape[0])
        rows, cols = np.tril_indices(self.m)
        self._packed[_packed_index_grid(self.m)[rows, cols]] = a[rows, cols]
        return self

    def scale(self, factor: float) -> "SymMatrix":
        self._packed *= factor
        return self

    def copy(self) -> "SymMatrix":
        out = SymMatrix(self.m)
        out._packed[:] = self._packed
        return out

    def __repr__(self) -> str:
        return f"SymMatrix({self.m}x{self.m})"
