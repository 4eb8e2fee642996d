"""Gradient-based B-spline optimization with collision rebound.

Input: a signed distance field and a sequence of points (N x dim, one point per row).
Output: the optimized sequence of control points.

Typical use for one planning request::

    optimizer = BsplineOptimizer()
    optimizer.set_param(load_config("config/bspline_opt.toml"))
    optimizer.set_environment(field)
    optimizer.set_guide_search(GridAStar(field))
    success, points = optimizer.rebound_and_refine(initial_points, ts=0.5)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

from rebound_planner.planning.bspline import UniformBspline, knot_points
from rebound_planner.planning.control_points import ControlPointStore, to_3d
from rebound_planner.planning.cost import CostEngine, CostFunction, CostWeights
from rebound_planner.planning.initialization import InitializationStage
from rebound_planner.planning.rebound import CollisionReboundController
from rebound_planner.planning.solver import SolverAdapter, SolveResult
from rebound_planner.utils import config_value

if TYPE_CHECKING:
    from ml_collections import ConfigDict
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField
    from rebound_planner.planning.astar import GuideSearch


logger = logging.getLogger(__name__)


class Phase(Enum):
    REBOUND = "rebound"
    REFINE = "refine"


@dataclass(frozen=True)
class PhasePolicy:
    """Cost terms and stopping rule of one optimization phase."""

    cost_function: CostFunction
    max_num_id: int | None
    max_time_id: int | None
    gtol: float


class BsplineOptimizer:
    """Optimizes B-spline control points for smoothness, feasibility, clearance and fitting.

    One instance handles one planning request at a time. Environment, guide search and parameters
    are kept across requests, control points and anchors are replaced by every new request.
    """

    def __init__(self):
        self._store = ControlPointStore()
        self._environment: SignedDistanceField | None = None
        self._guide_search: GuideSearch | None = None
        self._cost_function = CostFunction.NORMAL_PHASE
        self._solver = SolverAdapter()

        self.order = 3
        self.dist0 = 0.5
        self.max_vel = 2.0
        self.max_acc = 2.0
        self.resolution = 0.1
        self.weights = CostWeights()
        self.rebound_time_limit = 0.5
        self.refine_time_limit = 0.5
        self.feasibility_tolerance = 0.1
        self._engine = CostEngine(self.order, self.dist0, self.max_vel, self.max_acc)
        self._init_stage = InitializationStage(self.order, self.resolution)
        self._phase_policy = {
            Phase.REBOUND: PhasePolicy(CostFunction.REBOUND_PHASE, 2, None, 1e-2),
            Phase.REFINE: PhasePolicy(CostFunction.REFINE_PHASE, 2, None, 1e-5),
        }

        self.rebound_controller: CollisionReboundController | None = None
        self._reference_derived = False
        self.start_time_ = 0.0

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def set_environment(self, environment: SignedDistanceField | None):
        self._environment = environment

    def set_guide_search(self, guide_search: GuideSearch | None):
        self._guide_search = guide_search

    def set_param(self, config: ConfigDict):
        """Read the optimization parameters.

        Args:
            config: The planner configuration or its ``optimization`` section.
        """
        if "optimization" in config:
            config = config["optimization"]
        self.order = int(config_value(config, "order"))
        self.dist0 = float(config_value(config, "dist0"))
        self.max_vel = float(config_value(config, "max_vel"))
        self.max_acc = float(config_value(config, "max_acc"))
        self.weights = CostWeights(
            lambda1=float(config_value(config, "lambda1")),
            lambda2=float(config_value(config, "lambda2")),
            lambda3=float(config_value(config, "lambda3")),
            lambda4=float(config_value(config, "lambda4")),
        )
        self.resolution = float(config.get("resolution", 0.1))
        self.rebound_time_limit = float(config.get("rebound_time_limit", 0.5))
        self.refine_time_limit = float(config.get("refine_time_limit", 0.5))
        self.feasibility_tolerance = float(config.get("feasibility_tolerance", 0.1))

        self._engine = CostEngine(
            self.order, self.dist0, self.max_vel, self.max_acc, bool(config.get("use_jerk", True))
        )
        self._init_stage = InitializationStage(
            self.order, self.resolution, float(config.get("check_horizon", 1.0))
        )
        self._solver = SolverAdapter(
            config.get("max_iteration_num", (2, 300, 200, 200)),
            config.get("max_iteration_time", (0.0001, 0.005, 0.05, 0.003)),
            int(config.get("mem_size", 16)),
        )
        rebound_ids = config.get("rebound_terminate", (2, -1))
        refine_ids = config.get("refine_terminate", (2, -1))
        self._phase_policy = {
            Phase.REBOUND: PhasePolicy(
                CostFunction.REBOUND_PHASE,
                rebound_ids[0],
                rebound_ids[1],
                float(config.get("rebound_gtol", 1e-2)),
            ),
            Phase.REFINE: PhasePolicy(
                CostFunction.REFINE_PHASE,
                refine_ids[0],
                refine_ids[1],
                float(config.get("refine_gtol", 1e-5)),
            ),
        }
        # Bad phase ids fail here, not mid-request
        for policy in self._phase_policy.values():
            self._solver.set_terminate_cond(policy.max_num_id, policy.max_time_id)
        self._solver.set_terminate_cond(None, None)

    def set_control_points(self, points: NDArray[np.floating]):
        self._drop_derived_reference()
        self._store.set_control_points(points, self.dist0)

    def set_bspline_interval(self, ts: float):
        self._store.set_bspline_interval(ts)

    def set_cost_function(self, cost_function: CostFunction | int):
        self._cost_function = CostFunction(cost_function)

    def set_terminate_cond(self, max_num_id: int | None, max_time_id: int | None):
        self._solver.set_terminate_cond(max_num_id, max_time_id)

    def set_guide_path(self, guide_path: NDArray[np.floating]):
        self._store.set_guide_path(guide_path)

    def set_waypoints(self, waypoints: NDArray[np.floating], waypoint_idx: list[int]):
        self._store.set_waypoints(waypoints, waypoint_idx)

    def set_reference_points(self, reference_points: NDArray[np.floating] | None):
        self._reference_derived = False
        self._store.set_reference_points(reference_points)

    def set_endpoint(self, endpoint: NDArray[np.floating] | None):
        self._store.set_endpoint(endpoint)

    def _drop_derived_reference(self):
        if self._reference_derived:
            self._store.set_reference_points(None)
            self._reference_derived = False

    def get_control_points(self) -> NDArray[np.floating]:
        return self._store.get_control_points()

    def get_order(self) -> int:
        return self.order

    @property
    def control_point_store(self) -> ControlPointStore:
        return self._store

    # ------------------------------------------------------------------
    # Generic optimization
    # ------------------------------------------------------------------

    def _free_range(self, cost_function: CostFunction) -> tuple[int, int]:
        n = len(self._store)
        end = n if cost_function & CostFunction.ENDPOINT else n - self.order
        return self.order, max(end, self.order)

    def _check_ready(self):
        if len(self._store) == 0:
            raise ValueError("No control points set.")
        if self._store.interval <= 0.0:
            raise ValueError("B-spline knot interval not set.")

    def _solve(
        self,
        cost_function: CostFunction,
        weights: CostWeights,
        deadline: float | None = None,
        gtol: float = 1e-5,
    ) -> SolveResult:
        """One solver run over the free control points; the best result is written to the store."""
        start, end = self._free_range(cost_function)
        base = self._store.get_control_points()
        engine, store, environment = self._engine, self._store, self._environment

        def objective(x: NDArray[np.floating]) -> tuple[float, NDArray[np.floating]]:
            q = SolverAdapter.unpack(x, base, start, end)
            cost, grad, _ = engine.combine(q, cost_function, weights, store, environment, start, end)
            return cost, grad[start:end].ravel()

        result = self._solver.solve(SolverAdapter.pack(base, start, end), objective, deadline, gtol)
        if end > start:
            self._store.update_positions(np.reshape(result.x, (end - start, self._store.dim)), start)
        return result

    def optimize(self) -> SolveResult:
        """Single solve with the configured cost function and termination condition."""
        self._check_ready()
        if self._cost_function & CostFunction.ENDPOINT and self._store.endpoint is None:
            self._store.set_endpoint(knot_points(self._store.points, self.order)[-1])
        result = self._solve(self._cost_function, self.weights)
        logger.debug("Optimize: %s after %d evaluations", result.status, result.evaluations)
        return result

    def bspline_optimize_traj(
        self,
        points: NDArray[np.floating],
        ts: float,
        cost_function: CostFunction | int,
        max_num_id: int | None,
        max_time_id: int | None,
    ) -> NDArray[np.floating]:
        """One-shot wrapper: set everything, run `optimize` and return the control points."""
        self.set_control_points(points)
        self.set_bspline_interval(ts)
        self.set_cost_function(cost_function)
        self.set_terminate_cond(max_num_id, max_time_id)
        self.optimize()
        return self.get_control_points()

    # ------------------------------------------------------------------
    # Rebound / refine
    # ------------------------------------------------------------------

    def init_control_points(
        self, init_points: NDArray[np.floating], reset_first: bool = True
    ) -> list[NDArray[np.floating]]:
        """Load initial points and anchor the stretches that cross obstacles.

        Returns:
            The guide paths found around each infeasible stretch.
        """
        return self._init_stage.init_control_points(
            self._store,
            init_points,
            self._environment,
            self._guide_search,
            reset_first=reset_first,
            clearance=self.dist0,
        )

    def _controller(self) -> CollisionReboundController:
        return CollisionReboundController(
            self._store, self._environment, self._init_stage, self._guide_search
        )

    def check_collision_and_rebound(self) -> bool:
        """Anchor collisions of the current control points; True if a new one was found."""
        return self._controller().check_collision_and_rebound()

    def bspline_optimize_traj_rebound(
        self,
        init_points: NDArray[np.floating] | None,
        ts: float,
        time_limit: float | None = None,
    ) -> tuple[bool, NDArray[np.floating]]:
        """Rebound phase: repair collisions until the trajectory is free or the budget is spent.

        Args:
            init_points: Initial points. None continues from the current control points and anchors.
            ts: Knot interval.
            time_limit: Wall-clock budget in seconds, ``rebound_time_limit`` by default.

        Returns:
            Success flag and the control points. On failure the points are the best found so far
            and may collide.
        """
        self.start_time_ = time.perf_counter()
        time_limit = self.rebound_time_limit if time_limit is None else time_limit
        deadline = self.start_time_ + time_limit
        self.set_bspline_interval(ts)
        if init_points is not None:
            self._drop_derived_reference()
            self._init_stage.init_control_points(
                self._store,
                init_points,
                self._environment,
                self._guide_search,
                reset_first=True,
                clearance=self.dist0,
                deadline=deadline,
            )
        self._check_ready()

        policy = self._phase_policy[Phase.REBOUND]
        weights = self.weights

        def solve() -> SolveResult:
            return self._solve(policy.cost_function, weights, deadline, policy.gtol)

        def on_restart():
            nonlocal weights
            weights = replace(weights, lambda2=2.0 * weights.lambda2)

        previous_ids = (self._solver.max_num_id, self._solver.max_time_id)
        self._solver.set_terminate_cond(policy.max_num_id, policy.max_time_id)
        try:
            self.rebound_controller = self._controller()
            success = self.rebound_controller.run(solve, deadline, on_restart)
        finally:
            self._solver.set_terminate_cond(*previous_ids)

        elapsed = time.perf_counter() - self.start_time_
        if success:
            logger.info(
                "Rebound succeeded after %d solves in %.2f ms",
                self.rebound_controller.solver_calls,
                elapsed * 1000.0,
            )
        else:
            logger.warning(
                "Rebound failed in state %s after %d solves in %.2f ms",
                self.rebound_controller.state.value,
                self.rebound_controller.solver_calls,
                elapsed * 1000.0,
            )
        return success, self.get_control_points()

    def bspline_optimize_traj_refine(
        self,
        init_points: NDArray[np.floating],
        ts: float,
        time_limit: float | None = None,
    ) -> tuple[bool, NDArray[np.floating]]:
        """Refine phase: smooth a collision-free trajectory while staying close to its reference.

        Without explicit reference points the knot points of ``init_points`` become the reference.
        That reference is kept until the next request (`set_control_points`, `set_reference_points`
        or a rebound with new points), so refining the output again returns it unchanged.

        Every solve starts from ``init_points``. While the refined curve collides, ``lambda4`` is
        doubled and the solve repeated until the phase deadline.

        Returns:
            Success flag and the refined control points. Refinement fails when it makes the cost
            worse, breaks the dynamic limits beyond tolerance, collides or runs out of time.
        """
        self.start_time_ = time.perf_counter()
        time_limit = self.refine_time_limit if time_limit is None else time_limit
        deadline = self.start_time_ + time_limit
        self._store.set_control_points(init_points, self.dist0)
        self.set_bspline_interval(ts)
        self._check_ready()

        policy = self._phase_policy[Phase.REFINE]
        if self._store.reference_points is None:
            self._store.set_reference_points(knot_points(self._store.points, self.order))
            self._reference_derived = True
        start, end = self._free_range(policy.cost_function)
        init_points = self._store.get_control_points()
        initial_cost, _, _ = self._engine.combine(
            init_points, policy.cost_function, self.weights, self._store, None, start, end
        )

        previous_ids = (self._solver.max_num_id, self._solver.max_time_id)
        self._solver.set_terminate_cond(policy.max_num_id, policy.max_time_id)
        weights = self.weights
        solves = 0
        try:
            while True:
                result = self._solve(policy.cost_function, weights, deadline, policy.gtol)
                solves += 1
                safe = self._curve_is_free()
                if safe or result.timed_out or time.perf_counter() > deadline:
                    break
                weights = replace(weights, lambda4=2.0 * weights.lambda4)
                logger.debug("Refined trajectory collides, lambda4=%.3g", weights.lambda4)
                self._store.update_positions(init_points)
            final_cost, _, _ = self._engine.combine(
                self._store.points, policy.cost_function, self.weights, self._store, None, start, end
            )
        finally:
            self._solver.set_terminate_cond(*previous_ids)

        improved = final_cost <= initial_cost + 1e-6 * max(1.0, abs(initial_cost))
        feasible = self.feasibility_violation(self._store.points) <= self.feasibility_tolerance
        success = improved and feasible and safe and not result.timed_out
        if success:
            logger.info("Refine succeeded after %d solves", solves)
        else:
            logger.warning(
                "Refine failed after %d solves: improved=%s feasible=%s safe=%s status=%s",
                solves,
                improved,
                feasible,
                safe,
                result.status,
            )
        return success, self.get_control_points()

    def rebound_and_refine(
        self,
        init_points: NDArray[np.floating],
        ts: float,
        time_limit: float | None = None,
    ) -> tuple[bool, NDArray[np.floating]]:
        """Both phases in sequence. A failed refine falls back to the collision-free rebound result."""
        success, points = self.bspline_optimize_traj_rebound(init_points, ts, time_limit)
        if not success:
            return False, points
        refined, refined_points = self.bspline_optimize_traj_refine(points, ts)
        if not refined:
            logger.info("Keeping the rebound result")
            self.set_control_points(points)
            return True, points
        return True, refined_points

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _curve_is_free(self) -> bool:
        if self._environment is None or len(self._store) <= self.order:
            return True
        curve = UniformBspline(self._store.points, self.order, self._store.interval)
        return not any(self._environment.is_occupied(to_3d(p)) for p in curve.sample(self.resolution))

    def feasibility_violation(self, points: NDArray[np.floating]) -> float:
        """Largest relative excess of per-axis velocity or acceleration over its limit."""
        points = np.asarray(points, dtype=float)
        ts = self._store.interval
        excess = 0.0
        if len(points) >= 2:
            vel = np.abs(np.diff(points, axis=0)) / ts
            excess = max(excess, float(np.max(vel)) / self.max_vel - 1.0)
        if len(points) >= 3:
            acc = np.abs(points[2:] - 2.0 * points[1:-1] + points[:-2]) / ts**2
            excess = max(excess, float(np.max(acc)) / self.max_acc - 1.0)
        return max(excess, 0.0)
