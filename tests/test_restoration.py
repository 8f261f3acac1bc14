import numpy as np
import pytest
import scipy.sparse as sp

from blocksqp.aux.linalg import linf_constraint_norm
from blocksqp.blocks.aux import EvalStatus
from blocksqp.blocks.restoration import RestorationProblem

from conftest import make_qp_problem


@pytest.fixture
def parent():
    return make_qp_problem(block_idx=[0, 1, 3])


def _start(rest):
    xi = np.zeros(rest.n_var)
    lam = np.ones(rest.n_var + rest.n_con)
    assert rest.initialize(xi, lam) == EvalStatus.OK
    return xi, lam


def test_structure(parent):
    rest = RestorationProblem(parent, np.zeros(3))
    assert rest.n_var == 5 and rest.n_con == 2
    np.testing.assert_array_equal(rest.block_idx, [0, 1, 3, 4, 5])
    np.testing.assert_array_equal(rest.bl[:3], parent.bl[:3])
    assert np.all(np.isinf(rest.bl[3:5])) and np.all(np.isinf(rest.bu[3:5]))
    np.testing.assert_array_equal(rest.bl[5:], parent.bl[3:])
    assert rest.obj_lo == 0.0


@pytest.mark.parametrize(
    "x_ref",
    [np.zeros(3), np.array([2.0, -1.0, 0.5]), np.array([31.0, 19.0, 1.0]) / 49.0],
)
def test_seeded_slacks_zero_the_violation(parent, x_ref):
    rest = RestorationProblem(parent, x_ref)
    xi, lam = _start(rest)
    np.testing.assert_array_equal(xi[:3], x_ref)
    np.testing.assert_array_equal(lam, 0.0)

    ev = rest.evaluate(xi, dmode=0)
    assert ev.ok
    # residual bounds only; the reference point may violate x >= 0
    n = parent.n_var
    assert linf_constraint_norm(xi[n:], ev.constr, rest.bu[n:], rest.bl[n:]) <= 1e-14


def test_slack_zero_for_feasible_parent(parent):
    x_feas = np.array([31.0, 19.0, 1.0]) / 49.0
    rest = RestorationProblem(parent, x_feas)
    xi, _ = _start(rest)
    np.testing.assert_allclose(xi[3:], 0.0, atol=1e-14)


def test_diagonal_scaling(parent):
    rest = RestorationProblem(parent, np.array([4.0, -0.5, -2.0]))
    _start(rest)
    np.testing.assert_allclose(rest.diag_scale, [0.25, 1.0, 0.5])


def test_objective_and_gradient(parent):
    x_ref = np.array([4.0, 0.0, 0.0])
    rest = RestorationProblem(parent, x_ref)
    _start(rest)
    z = np.array([6.0, 1.0, 0.0, 0.1, -0.2])
    ev = rest.evaluate(z, dmode=1)
    d = rest.diag_scale
    diff = d * (z[:3] - x_ref)
    s = z[3:]
    assert ev.obj == pytest.approx(0.5 * rest.RHO * s @ s + 0.5 * rest.ZETA * diff @ diff)
    np.testing.assert_allclose(ev.grad_obj[:3], rest.ZETA * d * diff)
    np.testing.assert_allclose(ev.grad_obj[3:], rest.RHO * s)

    # central differences
    h = 1e-6
    fd = np.array(
        [(rest.evaluate(z + h * e, dmode=0).obj - rest.evaluate(z - h * e, dmode=0).obj) / (2 * h) for e in np.eye(5)]
    )
    np.testing.assert_allclose(ev.grad_obj, fd, rtol=1e-5, atol=1e-6)


@pytest.mark.parametrize("prefer_sparse", [True, False])
def test_jacobian_slack_columns(parent, prefer_sparse):
    rest = RestorationProblem(parent, np.zeros(3))
    xi, _ = _start(rest)
    ev = rest.evaluate(xi, dmode=1, prefer_sparse=prefer_sparse)
    J = ev.jac.toarray() if sp.issparse(ev.jac) else ev.jac
    assert sp.issparse(ev.jac) == prefer_sparse
    assert J.shape == (2, 5)
    np.testing.assert_array_equal(J[:, :3], [[6.0, 3.0, 2.0], [1.0, 1.0, -1.0]])
    # first and last slack column: a single −1 in the matching row
    np.testing.assert_array_equal(J[:, 3], [-1.0, 0.0])
    np.testing.assert_array_equal(J[:, 4], [0.0, -1.0])


def test_parent_failure_propagates():
    prob = make_qp_problem()
    prob.g = lambda x: np.array([np.nan, 0.0])
    rest = RestorationProblem(prob, np.zeros(3))
    xi = np.zeros(rest.n_var)
    lam = np.zeros(rest.n_var + rest.n_con)
    assert rest.initialize(xi, lam) == EvalStatus.FAILED
