"""Uniform B-spline helpers built on `scipy.interpolate.BSpline`."""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

import numpy as np
from scipy.interpolate import BSpline

if TYPE_CHECKING:
    from numpy.typing import NDArray


@lru_cache(maxsize=None)
def _knot_weights(order: int) -> tuple[float, ...]:
    basis = BSpline.basis_element(np.arange(order + 2, dtype=float), extrapolate=False)
    return tuple(float(w) for w in basis(np.arange(1, order + 1, dtype=float)))


def knot_weights(order: int) -> NDArray[np.floating]:
    """Weights mapping ``order`` consecutive control points to the curve point at a knot.

    For a cubic spline these are ``(1, 4, 1) / 6``.
    """
    if order < 1:
        raise ValueError("B-spline order must be at least 1.")
    return np.asarray(_knot_weights(order))


def knot_points(points: NDArray[np.floating], order: int) -> NDArray[np.floating]:
    """Curve points at the knots; window ``s`` uses control points ``s .. s+order-1``."""
    points = np.asarray(points, dtype=float)
    n_windows = len(points) - order + 1
    if n_windows <= 0:
        return np.zeros((0, points.shape[1]))
    w = knot_weights(order)
    return sum(w[m] * points[m : m + n_windows] for m in range(order))


class UniformBspline:
    """Uniform B-spline of degree ``order`` with knot span ``interval``.

    With ``N`` control points the knots are ``(i - order) * interval`` for ``i = 0 .. N+order`` and
    the curve is defined on ``[0, (N - order) * interval]``.
    """

    def __init__(self, points: NDArray[np.floating], order: int, interval: float):
        self.points = np.asarray(points, dtype=float)
        self.order = order
        self.interval = float(interval)
        n = len(self.points)
        if n <= order:
            raise ValueError(f"A degree {order} B-spline needs more than {order} control points.")
        knots = (np.arange(n + order + 1) - order) * self.interval
        self._spline = BSpline(knots, self.points, order)

    def time_span(self) -> tuple[float, float]:
        return 0.0, (len(self.points) - self.order) * self.interval

    def __call__(self, t, derivative: int = 0) -> NDArray[np.floating]:
        t_start, t_end = self.time_span()
        t = np.clip(t, t_start, t_end)
        if derivative == 0:
            return self._spline(t)
        return self._spline.derivative(derivative)(t)

    def sample(self, step: float) -> NDArray[np.floating]:
        """Sample the curve so that consecutive samples are at most about ``step`` apart."""
        t_start, t_end = self.time_span()
        length = float(np.sum(np.linalg.norm(np.diff(self.points, axis=0), axis=1)))
        n_samples = max(int(np.ceil(length / step)) + 1, 2 * len(self.points))
        return self(np.linspace(t_start, t_end, n_samples))
