import numpy as np
import pytest

from rebound_planner.envs import SphereObstacleField
from rebound_planner.planning.bspline import knot_points
from rebound_planner.planning.control_points import ControlPointStore
from rebound_planner.planning.cost import CostEngine, CostFunction, CostWeights


def numeric_gradient(f, q: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    grad = np.zeros_like(q)
    for idx in np.ndindex(q.shape):
        dq = np.zeros_like(q)
        dq[idx] = eps
        grad[idx] = (f(q + dq) - f(q - dq)) / (2.0 * eps)
    return grad


@pytest.fixture
def engine() -> CostEngine:
    return CostEngine(order=3, dist0=0.5, max_vel=2.0, max_acc=2.0)


@pytest.fixture
def wiggly() -> np.ndarray:
    rng = np.random.default_rng(42)
    return np.linspace([0.0, 0.0, 0.0], [9.0, 0.0, 0.0], 10) + rng.normal(scale=0.3, size=(10, 3))


@pytest.mark.unit
@pytest.mark.parametrize("use_jerk", [True, False])
def test_straight_line_is_smooth(straight_line: np.ndarray, use_jerk: bool):
    engine = CostEngine(use_jerk=use_jerk)
    cost, grad = engine.smoothness_cost(straight_line)
    assert cost == pytest.approx(0.0)
    assert np.allclose(grad, 0.0)


@pytest.mark.unit
def test_smoothness_is_translation_invariant(engine: CostEngine, wiggly: np.ndarray):
    cost, grad = engine.smoothness_cost(wiggly)
    shifted_cost, shifted_grad = engine.smoothness_cost(wiggly + np.array([3.0, -1.0, 2.0]))
    assert cost > 0.0
    assert shifted_cost == pytest.approx(cost)
    assert np.allclose(shifted_grad, grad)


@pytest.mark.unit
def test_feasibility_within_limits(engine: CostEngine, straight_line: np.ndarray):
    cost, grad = engine.feasibility_cost(straight_line, 1.0)
    assert cost == 0.0
    assert not np.any(grad)


@pytest.mark.unit
def test_feasibility_grows_with_speed(engine: CostEngine, straight_line: np.ndarray):
    slow, _ = engine.feasibility_cost(straight_line, 0.4)
    fast, _ = engine.feasibility_cost(straight_line, 0.25)
    assert 0.0 < slow < fast


@pytest.mark.unit
def test_feasibility_is_per_axis(engine: CostEngine):
    # 1.8 m/s per axis is feasible although the speed is above the limit
    points = np.linspace([0.0, 0.0, 0.0], [16.2, 16.2, 0.0], 10)
    cost, _ = engine.feasibility_cost(points, 1.0)
    assert cost == 0.0


@pytest.mark.unit
def test_distance_cost(engine: CostEngine, sphere_field: SphereObstacleField):
    q = np.array([[0.0, 0.0, 0.0], [3.2, 0.0, 0.0], [3.0, 2.0, 0.0]])
    cost, grad = engine.distance_cost(q, sphere_field, 0, 3)
    assert cost == pytest.approx((0.3 - 0.5) ** 2)
    assert grad[1, 0] > 0.0
    assert not np.any(grad[[0, 2]])
    assert engine.distance_cost(q, None, 0, 3)[0] == 0.0


@pytest.mark.unit
def test_rebound_cost_vanishes_past_clearance(engine: CostEngine, straight_line: np.ndarray):
    store = ControlPointStore()
    store.set_control_points(straight_line, clearance=0.5)
    store[4].add_anchor(np.array([4.0, 1.0, 0.0]), np.array([0.0, 1.0, 0.0]))
    cost, grad = engine.rebound_distance_cost(store.points, store, 3, 7)
    assert cost > 0.0
    assert grad[4, 1] < 0.0
    q = store.get_control_points()
    q[4] = [4.0, 1.6, 0.0]
    cost, grad = engine.rebound_distance_cost(q, store, 3, 7)
    assert cost == 0.0
    assert not np.any(grad)


@pytest.mark.unit
def test_fitness_is_anisotropic(engine: CostEngine, straight_line: np.ndarray):
    reference = knot_points(straight_line, 3)
    assert engine.fitness_cost(straight_line, reference)[0] == pytest.approx(0.0)
    along = straight_line.copy()
    along[4:6, 0] += 0.2
    across = straight_line.copy()
    across[4:6, 1] += 0.2
    assert engine.fitness_cost(along, reference)[0] < engine.fitness_cost(across, reference)[0]


@pytest.mark.unit
def test_endpoint_cost(engine: CostEngine, straight_line: np.ndarray):
    assert engine.endpoint_cost(straight_line, np.array([8.0, 0.0, 0.0]))[0] == pytest.approx(0.0)
    assert engine.endpoint_cost(straight_line, None)[0] == 0.0
    cost, grad = engine.endpoint_cost(straight_line, np.array([9.0, 0.0, 0.0]))
    assert cost == pytest.approx(1.0)
    assert np.all(grad[-3:, 0] < 0.0)
    assert not np.any(grad[:-3])


def _gradient_cases(engine: CostEngine, q: np.ndarray):
    field = SphereObstacleField([[4.5, 0.2, 0.1]], [1.0])
    store = ControlPointStore()
    store.set_control_points(q, clearance=0.5)
    store.set_bspline_interval(0.3)
    store[4].add_anchor(np.array([4.0, 1.2, 0.0]), np.array([0.1, 1.0, 0.0]))
    store[5].add_anchor(np.array([5.0, -2.0, 0.0]), np.array([0.0, 1.0, 0.5]))
    reference = knot_points(q, 3) + 0.1
    guide = q[3:7] + np.array([0.0, 0.5, 0.0])
    waypoints = {4: np.array([4.0, 0.5, 0.5])}
    return {
        "smoothness": lambda x: engine.smoothness_cost(x),
        "acceleration": lambda x: CostEngine(use_jerk=False).smoothness_cost(x),
        "feasibility": lambda x: engine.feasibility_cost(x, 0.3),
        "distance": lambda x: engine.distance_cost(x, field, 3, 7),
        "rebound": lambda x: engine.rebound_distance_cost(x, store, 3, 7),
        "fitness": lambda x: engine.fitness_cost(x, reference),
        "guide": lambda x: engine.guide_cost(x, guide, 3, 7),
        "waypoints": lambda x: engine.waypoints_cost(x, waypoints),
        "endpoint": lambda x: engine.endpoint_cost(x, np.array([9.0, 0.5, 0.0])),
    }


@pytest.mark.unit
@pytest.mark.parametrize(
    "term",
    ["smoothness", "acceleration", "feasibility", "distance", "rebound", "fitness", "guide", "waypoints", "endpoint"],
)
def test_gradients(engine: CostEngine, wiggly: np.ndarray, term: str):
    cost_fn = _gradient_cases(engine, wiggly)[term]
    cost, grad = cost_fn(wiggly)
    assert cost > 0.0
    expected = numeric_gradient(lambda x: cost_fn(x)[0], wiggly)
    assert np.allclose(grad, expected, rtol=1e-4, atol=1e-5)


@pytest.mark.unit
def test_combine_weights_terms(engine: CostEngine, wiggly: np.ndarray):
    store = ControlPointStore()
    store.set_control_points(wiggly)
    store.set_bspline_interval(0.3)
    weights = CostWeights(lambda1=2.0, lambda3=0.5)
    cost, grad, terms = engine.combine(wiggly, CostFunction.NORMAL_PHASE, weights, store)
    assert set(terms) == {"smoothness", "distance", "feasibility"}
    assert terms["distance"] == 0.0
    assert cost == pytest.approx(2.0 * terms["smoothness"] + 0.5 * terms["feasibility"])
    assert grad.shape == wiggly.shape


@pytest.mark.unit
def test_fitness_needs_reference(engine: CostEngine, wiggly: np.ndarray):
    store = ControlPointStore()
    store.set_control_points(wiggly)
    store.set_bspline_interval(1.0)
    _, _, terms = engine.combine(wiggly, CostFunction.REFINE_PHASE, CostWeights(), store)
    assert "fitness" not in terms


@pytest.mark.unit
def test_phase_presets():
    assert CostFunction.REBOUND_PHASE & CostFunction.REBOUND
    assert not CostFunction.REBOUND_PHASE & CostFunction.DISTANCE
    assert CostFunction.REFINE_PHASE & CostFunction.FITNESS
    assert CostFunction.GUIDE_PHASE == CostFunction.SMOOTHNESS | CostFunction.GUIDE
