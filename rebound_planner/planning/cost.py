"""Cost terms of the B-spline optimization and their analytic gradients.

Every term takes the full control point array ``q`` (N x dim) and returns a scalar cost and a
gradient with the same shape as ``q``. Rows of fixed control points are discarded by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntFlag
from typing import TYPE_CHECKING

import numpy as np

from rebound_planner.planning.bspline import knot_points, knot_weights
from rebound_planner.planning.control_points import to_3d

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField
    from rebound_planner.planning.control_points import ControlPointStore


logger = logging.getLogger(__name__)


class CostFunction(IntFlag):
    SMOOTHNESS = 1 << 0
    DISTANCE = 1 << 1  # fresh distance field query per control point
    FEASIBILITY = 1 << 2
    ENDPOINT = 1 << 3
    GUIDE = 1 << 4
    WAYPOINTS = 1 << 5
    REBOUND = 1 << 6  # recorded collision anchors only
    FITNESS = 1 << 7  # reference trajectory

    GUIDE_PHASE = SMOOTHNESS | GUIDE
    NORMAL_PHASE = SMOOTHNESS | DISTANCE | FEASIBILITY
    REBOUND_PHASE = SMOOTHNESS | REBOUND | FEASIBILITY
    REFINE_PHASE = SMOOTHNESS | FITNESS | FEASIBILITY


@dataclass(frozen=True)
class CostWeights:
    lambda1: float = 1.0  # smoothness
    lambda2: float = 1.0  # distance (field or anchors)
    lambda3: float = 0.1  # feasibility
    lambda4: float = 1.0  # fitting: reference, guide path, waypoints, endpoint


class CostEngine:
    """Evaluates the enabled cost terms for a control point sequence."""

    # Fitness ellipse: deviations along the reference are 25x cheaper than across it
    FITNESS_A2 = 25.0
    FITNESS_B2 = 1.0

    def __init__(
        self,
        order: int = 3,
        dist0: float = 0.5,
        max_vel: float = 2.0,
        max_acc: float = 2.0,
        use_jerk: bool = True,
    ):
        self.order = order
        self.dist0 = dist0
        self.max_vel = max_vel
        self.max_acc = max_acc
        self.use_jerk = use_jerk

    def smoothness_cost(self, q: NDArray[np.floating]) -> tuple[float, NDArray[np.floating]]:
        """Squared jerk (or acceleration) of the control polygon."""
        grad = np.zeros_like(q)
        if self.use_jerk:
            if len(q) < 4:
                return 0.0, grad
            jerk = q[3:] - 3.0 * q[2:-1] + 3.0 * q[1:-2] - q[:-3]
            temp_j = 2.0 * jerk
            grad[:-3] -= temp_j
            grad[1:-2] += 3.0 * temp_j
            grad[2:-1] -= 3.0 * temp_j
            grad[3:] += temp_j
            return float(np.sum(jerk**2)), grad

        if len(q) < 3:
            return 0.0, grad
        acc = q[2:] - 2.0 * q[1:-1] + q[:-2]
        temp_acc = 2.0 * acc
        grad[:-2] += temp_acc
        grad[1:-1] -= 2.0 * temp_acc
        grad[2:] += temp_acc
        return float(np.sum(acc**2)), grad

    def feasibility_cost(
        self, q: NDArray[np.floating], interval: float
    ) -> tuple[float, NDArray[np.floating]]:
        """Hinge-squared penalty on per-axis velocity and acceleration beyond the limits."""
        grad = np.zeros_like(q)
        cost = 0.0
        ts = interval
        ts_inv2 = 1.0 / ts / ts

        if len(q) >= 2:
            vel = (q[1:] - q[:-1]) / ts
            excess = _excess(vel, self.max_vel)
            # Scaled by ts_inv2 so velocity and acceleration terms have similar magnitude
            cost += float(np.sum(excess**2)) * ts_inv2
            g = 2.0 * excess / ts * ts_inv2
            grad[:-1] -= g
            grad[1:] += g

        if len(q) >= 3:
            acc = (q[2:] - 2.0 * q[1:-1] + q[:-2]) * ts_inv2
            excess = _excess(acc, self.max_acc)
            cost += float(np.sum(excess**2))
            g = 2.0 * excess * ts_inv2
            grad[:-2] += g
            grad[1:-1] -= 2.0 * g
            grad[2:] += g

        return cost, grad

    def distance_cost(
        self,
        q: NDArray[np.floating],
        environment: SignedDistanceField | None,
        start: int,
        end: int,
    ) -> tuple[float, NDArray[np.floating]]:
        """Penalty on free control points closer than ``dist0`` to the field's obstacles."""
        grad = np.zeros_like(q)
        if environment is None:
            return 0.0, grad
        cost = 0.0
        dim = q.shape[1]
        for i in range(start, end):
            dist, dist_grad = environment.get_distance_with_gradient(to_3d(q[i]))
            dist_grad = np.asarray(dist_grad, dtype=float)[:dim]
            norm = np.linalg.norm(dist_grad)
            if norm > 1e-4:
                dist_grad = dist_grad / norm
            if dist < self.dist0:
                cost += (dist - self.dist0) ** 2
                grad[i] += 2.0 * (dist - self.dist0) * dist_grad
        return cost, grad

    def rebound_distance_cost(
        self,
        q: NDArray[np.floating],
        store: ControlPointStore,
        start: int,
        end: int,
    ) -> tuple[float, NDArray[np.floating]]:
        """Penalty on free control points that are not yet ``clearance`` past their anchors.

        Cubic below the demarcation, quadratic above it, joined with a continuous derivative.
        """
        grad = np.zeros_like(q)
        cost = 0.0
        for i in range(start, min(end, len(store))):
            cp = store[i]
            if not cp.anchors:
                continue
            demarcation = cp.clearance
            a, b, c = 3.0 * demarcation, -3.0 * demarcation**2, demarcation**3
            directions = np.asarray(cp.directions)
            dist = np.einsum("ij,ij->i", q[i] - np.asarray(cp.anchors), directions)
            dist_err = cp.clearance - dist

            cubic = (dist_err >= 0.0) & (dist_err < demarcation)
            quadratic = dist_err >= demarcation
            e = dist_err[cubic]
            cost += float(np.sum(e**3))
            grad[i] -= (3.0 * e**2) @ directions[cubic]
            e = dist_err[quadratic]
            cost += float(np.sum(a * e**2 + b * e + c))
            grad[i] -= (2.0 * a * e + b) @ directions[quadratic]
        return cost, grad

    def fitness_cost(
        self, q: NDArray[np.floating], reference: NDArray[np.floating]
    ) -> tuple[float, NDArray[np.floating]]:
        """Anisotropic distance between the curve's knot points and the reference knot points."""
        grad = np.zeros_like(q)
        dim = q.shape[1]
        knots = knot_points(q, self.order)
        n = min(len(knots), len(reference))
        if n < 3:
            return 0.0, grad

        x = to_3d(knots[1 : n - 1] - reference[1 : n - 1])
        v = to_3d(reference[2:n] - reference[: n - 2])
        norms = np.linalg.norm(v, axis=1, keepdims=True)
        v = np.divide(v, norms, out=np.zeros_like(v), where=norms > 1e-9)

        xdotv = np.sum(x * v, axis=1)
        xcrossv = np.cross(x, v)
        cost = float(np.sum(xdotv**2 / self.FITNESS_A2 + np.sum(xcrossv**2, axis=1) / self.FITNESS_B2))
        df_dx = 2.0 * xdotv[:, None] / self.FITNESS_A2 * v + 2.0 / self.FITNESS_B2 * np.cross(v, xcrossv)
        df_dx = df_dx[:, :dim]

        w = knot_weights(self.order)
        for m in range(self.order):
            grad[1 + m : n - 1 + m] += w[m] * df_dx
        return cost, grad

    def guide_cost(
        self,
        q: NDArray[np.floating],
        guide_path: NDArray[np.floating],
        start: int,
        end: int,
    ) -> tuple[float, NDArray[np.floating]]:
        """Squared distance of free points to their guide point (by index, else the nearest one)."""
        grad = np.zeros_like(q)
        if len(guide_path) == 0 or end <= start:
            return 0.0, grad
        free = q[start:end]
        if len(guide_path) == len(free):
            targets = guide_path
        else:
            dists = np.linalg.norm(free[:, None, :] - guide_path[None, :, :], axis=2)
            targets = guide_path[np.argmin(dists, axis=1)]
        diff = free - targets
        grad[start:end] = 2.0 * diff
        return float(np.sum(diff**2)), grad

    def waypoints_cost(
        self, q: NDArray[np.floating], waypoints: dict[int, NDArray[np.floating]]
    ) -> tuple[float, NDArray[np.floating]]:
        grad = np.zeros_like(q)
        cost = 0.0
        for idx, waypoint in waypoints.items():
            diff = q[idx] - waypoint
            cost += float(diff @ diff)
            grad[idx] += 2.0 * diff
        return cost, grad

    def endpoint_cost(
        self, q: NDArray[np.floating], endpoint: NDArray[np.floating] | None
    ) -> tuple[float, NDArray[np.floating]]:
        grad = np.zeros_like(q)
        if endpoint is None or len(q) < self.order:
            return 0.0, grad
        w = knot_weights(self.order)
        tail = q[len(q) - self.order :]
        diff = w @ tail - endpoint
        grad[len(q) - self.order :] += 2.0 * w[:, None] * diff
        return float(diff @ diff), grad

    def combine(
        self,
        q: NDArray[np.floating],
        cost_function: CostFunction,
        weights: CostWeights,
        store: ControlPointStore,
        environment: SignedDistanceField | None = None,
        start: int | None = None,
        end: int | None = None,
    ) -> tuple[float, NDArray[np.floating], dict[str, float]]:
        """Weighted sum of the enabled terms.

        Args:
            q: All control points, fixed ones included.
            cost_function: Enabled terms.
            weights: Term weights.
            store: Side inputs (interval, anchors, guide path, waypoints, reference, endpoint).
            environment: Distance field for the ``DISTANCE`` term.
            start: First free control point index, ``order`` by default.
            end: One past the last free control point index, ``N - order`` by default.

        Returns:
            The combined cost, its gradient shaped like ``q`` and the unweighted cost per term.
        """
        start = self.order if start is None else start
        end = len(q) - self.order if end is None else end
        cost = 0.0
        grad = np.zeros_like(q)
        terms: dict[str, float] = {}

        def add(name: str, weight: float, term: tuple[float, NDArray[np.floating]]):
            nonlocal cost, grad
            terms[name] = term[0]
            cost += weight * term[0]
            grad += weight * term[1]

        if cost_function & CostFunction.SMOOTHNESS:
            add("smoothness", weights.lambda1, self.smoothness_cost(q))
        if cost_function & CostFunction.DISTANCE:
            add("distance", weights.lambda2, self.distance_cost(q, environment, start, end))
        if cost_function & CostFunction.REBOUND:
            add("rebound", weights.lambda2, self.rebound_distance_cost(q, store, start, end))
        if cost_function & CostFunction.FEASIBILITY:
            add("feasibility", weights.lambda3, self.feasibility_cost(q, store.interval))
        if cost_function & CostFunction.FITNESS and store.reference_points is not None:
            add("fitness", weights.lambda4, self.fitness_cost(q, store.reference_points))
        if cost_function & CostFunction.GUIDE:
            add("guide", weights.lambda4, self.guide_cost(q, store.guide_path, start, end))
        if cost_function & CostFunction.WAYPOINTS:
            add("waypoints", weights.lambda4, self.waypoints_cost(q, store.waypoints))
        if cost_function & CostFunction.ENDPOINT:
            add("endpoint", weights.lambda4, self.endpoint_cost(q, store.endpoint))

        return cost, grad, terms


def _excess(values: NDArray[np.floating], limit: float) -> NDArray[np.floating]:
    """Signed amount by which ``values`` leave ``[-limit, limit]``, zero inside."""
    return np.where(values > limit, values - limit, np.where(values < -limit, values + limit, 0.0))
