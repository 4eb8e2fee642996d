"""Rebound phase: alternate solves with collision checks that add new anchors."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable

import numpy as np

from rebound_planner.planning.anchors import attach_detour_anchors, attach_gradient_anchors
from rebound_planner.planning.bspline import UniformBspline
from rebound_planner.planning.control_points import to_3d

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField
    from rebound_planner.planning.astar import GuideSearch
    from rebound_planner.planning.control_points import ControlPointStore
    from rebound_planner.planning.initialization import InitializationStage
    from rebound_planner.planning.solver import SolveResult


logger = logging.getLogger(__name__)


class ReboundState(Enum):
    SOLVING = "solving"
    CHECKING = "checking"
    REBOUND = "rebound"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"  # trajectory end inside an obstacle


class CollisionReboundController:
    """Drives the rebound phase until the trajectory is collision free or the deadline passes.

    The solver sees the anchors as fixed. Between solves the controller checks the new control
    polygon, appends anchors for collisions it has not seen before and solves again. There is no
    iteration cap, only the deadline.
    """

    def __init__(
        self,
        store: ControlPointStore,
        environment: SignedDistanceField | None,
        init_stage: InitializationStage,
        guide_search: GuideSearch | None = None,
    ):
        self.store = store
        self.environment = environment
        self.init_stage = init_stage
        self.guide_search = guide_search
        self.state = ReboundState.SOLVING
        self.history: list[ReboundState] = []
        self.solver_calls = 0
        self.abort = False

    @property
    def order(self) -> int:
        return self.init_stage.order

    @property
    def resolution(self) -> float:
        return self.init_stage.resolution

    def _occupied(self, point: NDArray[np.floating]) -> bool:
        return self.environment.is_occupied(to_3d(point))

    def _edge_occupied(self, p0: NDArray[np.floating], p1: NDArray[np.floating]) -> bool:
        n_samples = int(np.ceil(np.linalg.norm(p1 - p0) / self.resolution))
        return any(self._occupied(p0 + t * (p1 - p0)) for t in np.linspace(0.0, 1.0, n_samples + 1)[1:-1])

    def check_collision_and_rebound(self, deadline: float | None = None) -> bool:
        """Look for collisions the current anchors do not cover and anchor them.

        A control point is a new violation when it is occupied and has escaped all its anchors. An
        edge between two free points is a new violation when it crosses an obstacle and one of its
        ends is not being pushed by an anchor.

        Returns:
            Whether a new violation was found.
        """
        self.abort = False
        if self.environment is None:
            return False
        points = self.store.points
        n = len(points)
        occupied = self.store.refresh_occupancy(self.environment)
        i_end = min(self.init_stage.check_end(n), n - 1)

        segments: list[tuple[int, int]] = []
        i = max(self.order - 1, 0)
        while i <= i_end:
            cp = self.store[i]
            if occupied[i] and not cp.is_escaping(self.resolution):
                before = [j for j in range(i - 1, -1, -1) if not occupied[j]]
                after = [j for j in range(i + 1, n) if not occupied[j]]
                if not after:
                    logger.warning("Terminal point of the trajectory is inside an obstacle")
                    self.abort = True
                    return False
                if not before:
                    logger.error("Start of the trajectory is inside an obstacle")
                segments.append((before[0] if before else 0, after[0]))
                i = after[0] + 1
                continue
            if (
                i + 1 < n
                and not occupied[i]
                and not occupied[i + 1]
                and self._edge_occupied(points[i], points[i + 1])
                and not (cp.is_escaping(self.resolution) and self.store[i + 1].is_escaping(self.resolution))
            ):
                segments.append((i, i + 1))
            i += 1

        if not segments:
            return False

        for in_id, out_id in segments:
            if self.guide_search is None:
                attach_gradient_anchors(self.store, points, in_id, out_id, self.environment, self.resolution)
                continue
            path = self.guide_search.search(points[in_id], points[out_id], deadline=deadline)
            if path is None:
                logger.warning("Guide search failed between control points %d and %d", in_id, out_id)
                continue
            attach_detour_anchors(self.store, points, in_id, out_id, path, self.environment, self.resolution)
        return True

    def curve_is_free(self) -> bool:
        """Sample the B-spline itself; the control polygon can be free while the curve is not."""
        if self.environment is None or len(self.store) <= self.order:
            return True
        curve = UniformBspline(self.store.points, self.order, self.store.interval)
        return not any(self._occupied(p) for p in curve.sample(self.resolution))

    def run(
        self,
        solve: Callable[[], SolveResult],
        deadline: float,
        on_restart: Callable[[], None] | None = None,
    ) -> bool:
        """Run the state machine.

        Args:
            solve: Runs one solve with the current anchors and writes the result to the store.
            deadline: Absolute `time.perf_counter` time of the phase budget.
            on_restart: Called when the curve collides although the polygon is anchored, before the
                initialization segmentation runs again.

        Returns:
            True when the phase reached ``CONVERGED``.
        """
        self.state = ReboundState.SOLVING
        self.history = []
        self.solver_calls = 0

        while True:
            self.history.append(self.state)
            if self.state is ReboundState.SOLVING:
                result = solve()
                self.solver_calls += 1
                logger.debug(
                    "Rebound solve %d: %s, cost=%.4f, anchors=%d",
                    self.solver_calls,
                    result.status,
                    result.cost,
                    self.store.anchor_count(),
                )
                self.state = ReboundState.CHECKING
            elif self.state is ReboundState.CHECKING:
                if self.check_collision_and_rebound(deadline):
                    self.state = ReboundState.REBOUND
                elif self.abort:
                    self.state = ReboundState.ABORTED
                elif not self.curve_is_free():
                    if on_restart is not None:
                        on_restart()
                    self.init_stage.init_control_points(
                        self.store,
                        self.store.points,
                        self.environment,
                        self.guide_search,
                        reset_first=False,
                        deadline=deadline,
                    )
                    self.state = ReboundState.REBOUND
                else:
                    self.state = ReboundState.CONVERGED
            elif self.state is ReboundState.REBOUND:
                self.state = ReboundState.TIMED_OUT if time.perf_counter() > deadline else ReboundState.SOLVING
            else:
                logger.debug("Rebound finished in state %s after %d solves", self.state.value, self.solver_calls)
                return self.state is ReboundState.CONVERGED
