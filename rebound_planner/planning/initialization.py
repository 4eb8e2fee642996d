"""Turn a raw initial path into control points and anchor the stretches that hit obstacles."""

from __future__ import annotations

import logging
import math
import time
from typing import TYPE_CHECKING

import numpy as np

from rebound_planner.planning.anchors import attach_detour_anchors, attach_gradient_anchors
from rebound_planner.planning.control_points import to_3d

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField
    from rebound_planner.planning.astar import GuideSearch
    from rebound_planner.planning.control_points import ControlPointStore


logger = logging.getLogger(__name__)


class InitializationStage:
    """Pads an initial point sequence and seeds collision anchors from a guide search."""

    # Free samples needed before an occupied stretch counts as finished
    ENOUGH_INTERVAL = 2

    def __init__(self, order: int = 3, resolution: float = 0.1, check_horizon: float = 1.0):
        self.order = order
        self.resolution = resolution
        self.check_horizon = check_horizon

    def pad(self, points: NDArray[np.floating]) -> NDArray[np.floating]:
        """Best effort padding to the ``2 * order + 1`` points a clamped spline needs."""
        points = np.asarray(points, dtype=float)
        n = len(points)
        if n < self.order + 1:
            logger.warning(
                "Only %d initial points for a degree %d spline, passing them through", n, self.order
            )
            return points.copy()
        n_min = 2 * self.order + 1
        if n >= n_min:
            return points.copy()
        s_old = np.linspace(0.0, 1.0, n)
        s_new = np.linspace(0.0, 1.0, n_min)
        return np.column_stack([np.interp(s_new, s_old, points[:, d]) for d in range(points.shape[1])])

    def check_end(self, n_points: int) -> int:
        """Last control point index inside the checked horizon."""
        free = n_points - 2 * self.order
        return self.order + int(math.ceil(free * self.check_horizon))

    def segment_collisions(
        self, points: NDArray[np.floating], environment: SignedDistanceField
    ) -> list[tuple[int, int]]:
        """Index pairs ``(in_id, out_id)`` of free control points around occupied stretches.

        The polygon edge ``q[i-1] -> q[i]`` is sampled from ``q[i-1]`` on, so a stretch starts at the
        point before the first occupied sample and ends at the first point after which at least
        ``ENOUGH_INTERVAL`` free samples follow.
        """
        n = len(points)
        if n < 2:
            return []
        spacing = float(np.linalg.norm(points[0] - points[-1])) / (n - 1)
        step = 0.5 * self.resolution / spacing if spacing > 1e-9 else 1.0
        step = min(step, 1.0)

        segments: list[tuple[int, int]] = []
        in_id = out_id = 0
        same_occ_state_times = self.ENOUGH_INTERVAL + 1
        last_occ = False
        got_start = got_end = got_end_maybe = False
        i_end = min(self.check_end(n), n - 1)

        for i in range(self.order, i_end + 1):
            for a in np.arange(1.0, -1e-9, -step):
                occ = environment.is_occupied(to_3d(a * points[i - 1] + (1 - a) * points[i]))

                if occ and not last_occ:
                    if same_occ_state_times > self.ENOUGH_INTERVAL or i == self.order:
                        in_id = i - 1
                        got_start = True
                    same_occ_state_times = 0
                    got_end_maybe = False
                elif not occ and last_occ:
                    out_id = i
                    got_end_maybe = True
                    same_occ_state_times = 0
                else:
                    same_occ_state_times += 1

                if got_end_maybe and (
                    same_occ_state_times > self.ENOUGH_INTERVAL or i == n - self.order
                ):
                    got_end_maybe = False
                    got_end = True

                last_occ = occ

                if got_start and got_end:
                    got_start = got_end = False
                    segments.append((in_id, out_id))
        return segments

    def init_control_points(
        self,
        store: ControlPointStore,
        raw_points: NDArray[np.floating],
        environment: SignedDistanceField | None,
        guide_search: GuideSearch | None = None,
        reset_first: bool = True,
        clearance: float = 0.0,
        deadline: float | None = None,
    ) -> list[NDArray[np.floating]]:
        """Load ``raw_points`` into the store and anchor every stretch that crosses an obstacle.

        Args:
            store: Control point store to fill.
            raw_points: Initial path, for example a guide path or the previous trajectory.
            environment: Distance field; without one no anchors are generated.
            guide_search: Search used to find a detour per stretch. Falls back to field gradients.
            reset_first: Replace the store's points and metadata; otherwise anchors are appended.
            clearance: Clearance assigned to the points on reset.
            deadline: Absolute `time.perf_counter` time after which no more searches start.

        Returns:
            One guide path per anchored stretch, in trajectory order.
        """
        points = self.pad(raw_points)
        if reset_first or len(store) != len(points):
            store.set_control_points(points, clearance)
        else:
            store.update_positions(points)
        points = store.points

        if environment is None or len(points) < 2 * self.order + 1:
            return []

        guide_paths: list[NDArray[np.floating]] = []
        for in_id, out_id in self.segment_collisions(points, environment):
            if deadline is not None and time.perf_counter() > deadline:
                logger.warning("Deadline reached while initializing collision anchors")
                break
            if guide_search is None:
                attach_gradient_anchors(store, points, in_id, out_id, environment, self.resolution)
                continue
            path = guide_search.search(points[in_id], points[out_id], deadline=deadline)
            if path is None:
                logger.error("Guide search failed between control points %d and %d", in_id, out_id)
                return guide_paths
            guide_paths.append(path)
            if not attach_detour_anchors(store, points, in_id, out_id, path, environment, self.resolution):
                logger.debug("Failed to generate anchor directions for %d..%d", in_id, out_id)
        return guide_paths
