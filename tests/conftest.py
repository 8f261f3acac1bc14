import numpy as np
import pytest

from blocksqp.blocks.problem import CallbackProblem

# min x1² + x2² + x3²  s.t.  6x1 + 3x2 + 2x3 = 5,  x1 + x2 − x3 = 1,  x >= 0
QP_SOLUTION = np.array([31.0, 19.0, 1.0]) / 49.0

_A = np.array([[6.0, 3.0, 2.0], [1.0, 1.0, -1.0]])
_P = np.array([5.0, 1.0])


def make_qp_problem(block_idx=None, x_start=None):
    prob = CallbackProblem(3, 2, block_idx=block_idx)
    prob.f = lambda x: float(x @ x)
    prob.grad_f = lambda x: 2.0 * x
    prob.g = lambda x: _A @ x
    prob.jac_g = lambda x: _A
    prob.set_bounds(np.zeros(3), np.full(3, np.inf), _P, _P)
    prob.x_start = np.zeros(3) if x_start is None else x_start
    return prob.complete()


def make_circle_problem():
    """min x1 + x2  s.t.  x1² + x2² = 2; solution (−1, −1) with λ = −1/2."""
    prob = CallbackProblem(2, 1)
    prob.f = lambda x: float(x[0] + x[1])
    prob.grad_f = lambda x: np.ones(2)
    prob.g = lambda x: np.array([x @ x])
    prob.jac_g = lambda x: 2.0 * x[None, :]
    prob.set_bounds(np.full(2, -np.inf), np.full(2, np.inf), [2.0], [2.0])
    prob.x_start = np.array([-1.5, -0.5])
    return prob.complete()


@pytest.fixture
def qp_problem():
    return make_qp_problem()


@pytest.fixture
def circle_problem():
    return make_circle_problem()
