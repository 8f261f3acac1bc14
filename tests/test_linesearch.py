"""Filter line search, second-order correction and the fallback chain."""

import numpy as np
import pytest

from blocksqp.blocks.aux import SolveStatus, SQPOptions, StepType
from blocksqp.blocks.problem import CallbackProblem
from blocksqp.blocks.stats import SQPStats
from blocksqp.sqp import SQPMethod


def _diagonal_problem(x_start):
    """min x1² + x2²  s.t.  x1 − x2 = 0."""
    prob = CallbackProblem(2, 1)
    prob.f = lambda x: float(x @ x)
    prob.grad_f = lambda x: 2.0 * x
    prob.g = lambda x: np.array([x[0] - x[1]])
    prob.jac_g = lambda x: np.array([[1.0, -1.0]])
    prob.set_bounds(np.full(2, -np.inf), np.full(2, np.inf), [0.0], [0.0])
    prob.x_start = np.asarray(x_start, dtype=float)
    return prob.complete()


def _maratos_problem(t=0.5):
    """min 2(x1² + x2² − 1) − x1  s.t.  x1² + x2² = 1, started on the circle."""
    prob = CallbackProblem(2, 1)
    prob.f = lambda x: float(2.0 * (x @ x - 1.0) - x[0])
    prob.grad_f = lambda x: np.array([4.0 * x[0] - 1.0, 4.0 * x[1]])
    prob.g = lambda x: np.array([x @ x])
    prob.jac_g = lambda x: 2.0 * x[None, :]
    prob.set_bounds(np.full(2, -np.inf), np.full(2, np.inf), [1.0], [1.0])
    prob.x_start = np.array([np.cos(t), np.sin(t)])
    return prob.complete()


def _infeasible_problem():
    """x1 + x2² = 3 cannot hold on the box [0, 1]²; least violation at (1, 1)."""
    prob = CallbackProblem(2, 1)
    prob.f = lambda x: float(x @ x)
    prob.grad_f = lambda x: 2.0 * x
    prob.g = lambda x: np.array([x[0] + x[1] ** 2])
    prob.jac_g = lambda x: np.array([[1.0, 2.0 * x[1]]])
    prob.set_bounds(np.zeros(2), np.ones(2), [3.0], [3.0])
    prob.x_start = np.array([0.5, 0.5])
    return prob.complete()


def _started(prob, **kwargs):
    meth = SQPMethod(prob, SQPOptions(**kwargs), SQPStats())
    meth.init()
    assert meth.run(0) == SolveStatus.MAX_ITERATIONS
    return meth


def _set_step(meth, d, lambda_qp=None):
    vars = meth.vars
    vars.delta_xi.vec[:] = d
    vars.lambda_qp[:] = 0.0 if lambda_qp is None else lambda_qp


# ---------------- backtracking ----------------
def test_armijo_failure_halves_the_step():
    meth = _started(_diagonal_problem([1.0, 1.0]), max_soc_iter=0)
    _set_step(meth, [-3.0, -3.0])
    assert meth.ls.filter_line_search()
    vars = meth.vars
    assert vars.alpha == 0.5
    np.testing.assert_allclose(vars.xi, [-0.5, -0.5])
    np.testing.assert_allclose(vars.delta_xi.vec, [-1.5, -1.5])
    assert vars.reduced_step_count == 1
    # the accepted pair joins the initial entry
    assert len(vars.filter) == 2


def test_pair_in_filter_forces_further_backtracking():
    meth = _started(_diagonal_problem([1.0, 1.0]), max_soc_iter=0)
    meth.vars.filter.augment(0.0, 0.3)
    _set_step(meth, [-3.0, -3.0])
    assert meth.ls.filter_line_search()
    # α = 0.5 satisfies Armijo but f = 0.5 is blocked by the entry
    assert meth.vars.alpha == 0.25
    np.testing.assert_allclose(meth.vars.xi, [0.25, 0.25])
    # the new entry dominates the blocking one
    assert len(meth.vars.filter) == 2
    assert min(f for _, f in meth.vars.filter) == pytest.approx(0.125)


def test_violation_decrease_accepts_full_step():
    meth = _started(_diagonal_problem([1.0, 0.0]), max_soc_iter=0)
    assert meth.vars.c_norm == pytest.approx(1.0)
    _set_step(meth, [-0.5, 0.5])
    assert meth.ls.filter_line_search()
    assert meth.vars.alpha == 1.0
    assert meth.vars.reduced_step_count == 0
    np.testing.assert_allclose(meth.vars.xi, [0.5, 0.5])


def test_no_acceptable_step_leaves_iterate_alone():
    meth = _started(_diagonal_problem([1.0, 0.0]), max_soc_iter=0)
    _set_step(meth, [1.0, -1.0])
    assert not meth.ls.filter_line_search()
    np.testing.assert_array_equal(meth.vars.xi, [1.0, 0.0])
    assert len(meth.vars.filter) == 1


# ---------------- second-order correction ----------------
def test_second_order_correction_on_maratos_step():
    t = 0.5
    meth = SQPMethod(_maratos_problem(t), SQPOptions(), SQPStats())
    meth.init()
    assert meth.run(1) == SolveStatus.MAX_ITERATIONS

    rec = meth.stats.history[-1]
    assert rec.n_socs == 1
    assert rec.alpha == 1.0
    assert rec.phase == "soc"
    # the plain Newton step would have violated the constraint by sin²t
    assert meth.vars.c_norm < 0.5 * np.sin(t) ** 2
    assert len(meth.vars.filter) == 2


def test_maratos_problem_converges_and_filter_covers_accepted_steps():
    meth = SQPMethod(_maratos_problem(), SQPOptions(), SQPStats())
    meth.init()
    status = meth.run(1)
    while status == SolveStatus.MAX_ITERATIONS and meth.stats.it_count < 60:
        rec = meth.stats.history[-1]
        if rec.it > 0 and rec.steptype == StepType.NORMAL:
            # every accepted step leaves its pair inside the filter region
            assert meth.vars.filter.contains(meth.vars.c_norm, meth.vars.obj)
        status = meth.run(1, warm_start=True)

    assert status == SolveStatus.CONVERGED
    np.testing.assert_allclose(meth.vars.xi, [1.0, 0.0], atol=1e-5)
    assert any(r.n_socs > 0 for r in meth.stats.history)
    assert meth.vars.filter.is_consistent()


# ---------------- KKT error reduction ----------------
def test_kkt_error_reduction_accepts_improving_step():
    meth = _started(_diagonal_problem([1.0, 0.0]))
    vars = meth.vars
    assert max(vars.c_norm, vars.tol) == pytest.approx(2.0)
    _set_step(meth, [-0.5, 0.5], lambda_qp=[0.0, 0.0, 1.0])
    assert meth.ls.kkt_error_reduction()
    np.testing.assert_allclose(vars.xi, [0.5, 0.5])
    np.testing.assert_array_equal(vars.lam, [0.0, 0.0, 1.0])


def test_kkt_error_reduction_rejects_worse_step():
    meth = _started(_diagonal_problem([1.0, 0.0]))
    _set_step(meth, [1.0, -1.0])
    assert not meth.ls.kkt_error_reduction()
    np.testing.assert_array_equal(meth.vars.xi, [1.0, 0.0])


# ---------------- fallback chain ----------------
def _instrumented(monkeypatch, kkt, heuristic, rest_status=SolveStatus.LOCALLY_INFEASIBLE, **kwargs):
    meth = _started(_diagonal_problem([1.0, 0.0]), **kwargs)
    calls = []

    def _record(name, result):
        def call():
            calls.append(name)
            return result

        return call

    monkeypatch.setattr(meth.ls, "kkt_error_reduction", _record("kkt", kkt))
    monkeypatch.setattr(meth, "feasibility_restoration_heuristic", _record("heuristic", heuristic))
    monkeypatch.setattr(meth, "feasibility_restoration_phase", _record("phase", rest_status))
    return meth, calls


def test_fallback_tries_kkt_reduction_first(monkeypatch):
    meth, calls = _instrumented(monkeypatch, kkt=True, heuristic=True)
    assert meth._line_search_fallback() == SolveStatus.CONVERGED
    assert calls == ["kkt"]
    assert meth.vars.steptype == StepType.KKT_REDUCTION


def test_fallback_then_heuristic(monkeypatch):
    meth, calls = _instrumented(monkeypatch, kkt=False, heuristic=True)
    assert meth._line_search_fallback() == SolveStatus.CONVERGED
    assert calls == ["kkt", "heuristic"]
    assert meth.vars.steptype == StepType.RESTORATION_HEURISTIC


def test_fallback_then_identity_reset(monkeypatch):
    meth, calls = _instrumented(monkeypatch, kkt=False, heuristic=False)
    meth.vars.hess1[0].scale(5.0)
    assert meth._line_search_fallback() is None
    assert calls == ["kkt", "heuristic"]
    assert meth.vars.steptype == StepType.IDENTITY_RESET
    np.testing.assert_array_equal(meth.vars.hess1[0].to_dense(), np.eye(2))


def test_fallback_after_reset_starts_restoration(monkeypatch):
    meth, calls = _instrumented(monkeypatch, kkt=False, heuristic=False)
    meth.vars.steptype = StepType.IDENTITY_RESET
    assert meth._line_search_fallback() == SolveStatus.LOCALLY_INFEASIBLE
    assert calls == ["kkt", "heuristic", "phase"]
    assert meth.vars.steptype == StepType.RESTORATION_PHASE


def test_fallback_without_restoration_is_an_error(monkeypatch):
    meth, calls = _instrumented(monkeypatch, kkt=False, heuristic=False, restore_feas=False)
    meth.vars.steptype = StepType.IDENTITY_RESET
    assert meth._line_search_fallback() == SolveStatus.LINE_SEARCH_ERROR
    assert "phase" not in calls


# ---------------- restoration through the driver ----------------
def test_infeasible_problem_terminates_in_restoration():
    meth = SQPMethod(_infeasible_problem(), SQPOptions(), SQPStats())
    meth.init()
    status = meth.run(60)
    assert status in (SolveStatus.LOCALLY_INFEASIBLE, SolveStatus.RESTORATION_FAILED)
    stats = meth.stats
    assert stats.n_rest_phase_calls <= 3
    assert stats.it_count < 10
    np.testing.assert_allclose(meth.vars.xi, [1.0, 1.0], atol=1e-4)
    assert any(r.phase == "restoration" for r in stats.history)


def test_restoration_without_progress_is_not_accepted():
    meth = _started(_infeasible_problem())
    meth.vars.xi[:] = [1.0, 1.0]
    meth.evaluate_derivatives()
    meth.calc_opt_tol()
    assert meth.vars.c_norm == pytest.approx(1.0)
    status = meth.feasibility_restoration_phase()
    assert status in (SolveStatus.LOCALLY_INFEASIBLE, SolveStatus.RESTORATION_FAILED)
    # the entry for (1, 1) rejects the point it came from
    assert meth.vars.filter.contains(1.0, 2.0)
