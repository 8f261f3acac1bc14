import numpy as np
import pytest
import scipy.sparse as sp

from blocksqp.blocks.aux import QPStatus, SQPOptions
from blocksqp.blocks.qp import QPData, QPSolver


def _data(H, g, A=None, lb=None, ub=None, lbA=None, ubA=None):
    n = len(g)
    if A is None:
        A = np.zeros((0, n))
    elif not sp.issparse(A):
        A = np.asarray(A, dtype=float)
    m = A.shape[0]
    return QPData(
        H=H,
        g=np.asarray(g, dtype=float),
        A=A,
        lb=np.full(n, -np.inf) if lb is None else np.asarray(lb, dtype=float),
        ub=np.full(n, np.inf) if ub is None else np.asarray(ub, dtype=float),
        lbA=np.full(m, -np.inf) if lbA is None else np.asarray(lbA, dtype=float),
        ubA=np.full(m, np.inf) if ubA is None else np.asarray(ubA, dtype=float),
    )


@pytest.fixture
def solver():
    return QPSolver(SQPOptions())


def _stationarity(data, res):
    n = data.n
    A = data.A.toarray() if sp.issparse(data.A) else data.A
    H = data.H.toarray() if sp.issparse(data.H) else data.H
    return H @ res.x + data.g - A.T @ res.lam[n:] - res.lam[:n]


def test_unconstrained(solver):
    res = solver.solve(_data(2.0 * np.eye(2), [-2.0, 4.0]))
    assert res.ok
    np.testing.assert_allclose(res.x, [1.0, -2.0], atol=1e-6)
    assert res.lam.size == 2


def test_upper_bound_multiplier_is_negative(solver):
    data = _data(np.eye(2), [-1.0, -1.0], ub=[0.5, np.inf])
    res = solver.solve(data)
    assert res.ok
    np.testing.assert_allclose(res.x, [0.5, 1.0], atol=1e-6)
    assert res.lam[0] == pytest.approx(-0.5, abs=1e-5)
    np.testing.assert_allclose(_stationarity(data, res), 0.0, atol=1e-5)


def test_lower_bound_multiplier_is_positive(solver):
    data = _data(np.eye(2), [1.0, 0.0], lb=[0.0, -1.0])
    res = solver.solve(data)
    assert res.ok
    np.testing.assert_allclose(res.x, [0.0, 0.0], atol=1e-6)
    assert res.lam[0] == pytest.approx(1.0, abs=1e-5)


def test_equality_and_inequality_rows_sparse(solver):
    A = sp.csc_matrix(np.array([[1.0, 1.0], [1.0, -1.0]]))
    data = _data(sp.identity(2, format="csc"), [0.0, 0.0], A=A, lbA=[1.0, 0.5], ubA=[1.0, np.inf])
    res = solver.solve(data)
    assert res.ok
    np.testing.assert_allclose(res.x, [0.75, 0.25], atol=1e-6)
    np.testing.assert_allclose(_stationarity(data, res), 0.0, atol=1e-5)
    assert res.lam[3] > 0


def test_indefinite_hessian_reported(solver):
    res = solver.solve(_data(np.diag([1.0, -1.0]), [0.0, 0.0], lb=[-1, -1], ub=[1, 1]))
    assert res.status == QPStatus.NONCONVEX
    assert res.x is None


def test_infeasible(solver):
    data = _data(np.eye(2), [0.0, 0.0], A=[[1.0, 0.0]], lb=[1.0, -np.inf], ubA=[0.0])
    assert solver.solve(data).status == QPStatus.INFEASIBLE


def test_equality_multiplier_with_active_upper_bound(solver):
    data = _data(np.eye(2), [0.0, 0.0], A=[[1.0, 1.0]], ub=[0.5, np.inf], lbA=[2.0], ubA=[2.0])
    res = solver.solve(data)
    assert res.ok
    np.testing.assert_allclose(res.x, [0.5, 1.5], atol=1e-6)
    # x = Aᵀλ_c + λ_x
    np.testing.assert_allclose(res.lam, [-1.0, 0.0, 1.5], atol=1e-5)
