import numpy as np
import pytest

from rebound_planner.planning.bspline import UniformBspline, knot_points, knot_weights


@pytest.mark.unit
def test_knot_weights():
    assert np.allclose(knot_weights(3), np.array([1.0, 4.0, 1.0]) / 6.0)
    assert np.allclose(knot_weights(2), [0.5, 0.5])
    assert np.sum(knot_weights(5)) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        knot_weights(0)


@pytest.mark.unit
def test_knot_points_of_a_line(straight_line: np.ndarray):
    knots = knot_points(straight_line, 3)
    assert knots.shape == (8, 3)
    assert np.allclose(knots[:, 0], np.arange(1.0, 9.0))


@pytest.mark.unit
def test_curve_passes_through_knot_points():
    rng = np.random.default_rng(0)
    points = rng.normal(size=(9, 3))
    ts = 0.4
    curve = UniformBspline(points, 3, ts)
    t_start, t_end = curve.time_span()
    assert t_start == 0.0
    assert t_end == pytest.approx(6 * ts)
    knots = knot_points(points, 3)
    for s, knot in enumerate(knots):
        assert np.allclose(curve(s * ts), knot)


@pytest.mark.unit
def test_curve_is_clamped_to_its_time_span(straight_line: np.ndarray):
    curve = UniformBspline(straight_line, 3, 1.0)
    assert np.allclose(curve(100.0), curve(curve.time_span()[1]))
    assert np.allclose(curve(3.0, derivative=1), [1.0, 0.0, 0.0])


@pytest.mark.unit
def test_sample_spacing(straight_line: np.ndarray):
    samples = UniformBspline(straight_line, 3, 1.0).sample(0.1)
    assert np.max(np.linalg.norm(np.diff(samples, axis=0), axis=1)) <= 0.1 + 1e-9


@pytest.mark.unit
def test_too_few_points():
    with pytest.raises(ValueError):
        UniformBspline(np.zeros((3, 2)), 3, 1.0)
