import time

import numpy as np
import pytest
from scipy.optimize import rosen, rosen_der

from rebound_planner.planning.solver import SolverAdapter


def rosenbrock(x: np.ndarray) -> tuple[float, np.ndarray]:
    return rosen(x), rosen_der(x)


@pytest.mark.unit
def test_converges_on_a_quadratic():
    solver = SolverAdapter()
    target = np.array([1.0, -2.0, 3.0])
    result = solver.solve(np.zeros(3), lambda x: (float(np.sum((x - target) ** 2)), 2.0 * (x - target)))
    assert result.status == "converged"
    assert np.allclose(result.x, target, atol=1e-4)
    assert result.cost == pytest.approx(solver.min_cost_)
    assert result.evaluations == solver.iter_num_


@pytest.mark.unit
def test_returns_the_best_evaluation():
    solver = SolverAdapter()
    costs = []

    def objective(x: np.ndarray) -> tuple[float, np.ndarray]:
        cost, grad = rosenbrock(x)
        costs.append(cost)
        return cost, grad

    solver.set_terminate_cond(0, None)
    result = solver.solve(np.zeros(10), objective)
    assert result.status == "stopped"
    assert result.cost == pytest.approx(min(costs))
    assert rosen(result.x) == pytest.approx(result.cost)


@pytest.mark.unit
def test_invalid_evaluations_are_rejected():
    solver = SolverAdapter()
    calls = 0

    def objective(x: np.ndarray) -> tuple[float, np.ndarray]:
        nonlocal calls
        calls += 1
        if calls > 1:
            return np.nan, np.full_like(x, np.nan)
        return rosenbrock(x)

    x0 = np.full(4, 0.5)
    result = solver.solve(x0, objective)
    assert np.isfinite(result.cost)
    assert np.allclose(result.x, x0)


@pytest.mark.unit
def test_deadline_stops_the_solve():
    solver = SolverAdapter()

    def slow(x: np.ndarray) -> tuple[float, np.ndarray]:
        time.sleep(0.01)
        return rosenbrock(x)

    x0 = np.zeros(10)
    result = solver.solve(x0, slow, deadline=time.perf_counter() + 0.03)
    assert result.timed_out
    assert result.elapsed < 1.0
    assert result.cost <= rosen(x0)


@pytest.mark.unit
def test_time_table_limits_the_solve():
    solver = SolverAdapter(max_iteration_time=[0.02])

    def slow(x: np.ndarray) -> tuple[float, np.ndarray]:
        time.sleep(0.01)
        return rosenbrock(x)

    solver.set_terminate_cond(-1, 0)
    assert solver.max_time == 0.02
    assert solver.solve(np.zeros(10), slow).timed_out


@pytest.mark.unit
def test_empty_vector():
    result = SolverAdapter().solve(np.zeros(0), lambda x: (1.5, np.zeros(0)))
    assert result.status == "empty"
    assert result.cost == 1.5
    assert result.x.size == 0


@pytest.mark.unit
def test_terminate_cond():
    solver = SolverAdapter(max_iteration_num=[2, 300], max_iteration_time=[0.1])
    solver.set_terminate_cond(1, -1)
    assert solver.max_iterations == 300
    assert solver.max_time is None
    solver.set_terminate_cond(None, None)
    assert solver.max_iterations is None
    with pytest.raises(ValueError):
        solver.set_terminate_cond(2, 0)
    with pytest.raises(ValueError):
        solver.set_terminate_cond(0, 1)


@pytest.mark.unit
def test_pack_unpack(straight_line: np.ndarray):
    x = SolverAdapter.pack(straight_line, 3, 7)
    assert x.shape == (12,)
    q = SolverAdapter.unpack(x + 1.0, straight_line, 3, 7)
    assert np.allclose(q[3:7], straight_line[3:7] + 1.0)
    assert np.allclose(q[:3], straight_line[:3])
    assert np.allclose(q[7:], straight_line[7:])
