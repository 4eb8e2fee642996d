"""Grid A* guide search used to find detours around newly discovered obstacles."""

from __future__ import annotations

import heapq
import logging
import math
import time
from itertools import product
from typing import TYPE_CHECKING, Protocol

import numpy as np

from rebound_planner.planning.control_points import to_3d

if TYPE_CHECKING:
    from ml_collections import ConfigDict
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField


logger = logging.getLogger(__name__)


class GuideSearch(Protocol):
    """Discrete search returning an ordered, collision-free polyline from start to goal."""

    def search(
        self, start: NDArray[np.floating], goal: NDArray[np.floating], deadline: float | None = None
    ) -> NDArray[np.floating] | None: ...


class GridAStar:
    """A* over a uniform grid anchored at the start point.

    Only grid nodes are checked against the environment, so ``resolution`` should be smaller than
    the thinnest obstacle. The search is restricted to the bounding box of start and goal grown by
    ``margin`` and gives up after ``max_expansions`` node expansions or at the deadline.
    """

    def __init__(
        self,
        environment: SignedDistanceField,
        resolution: float = 0.2,
        margin: float = 2.0,
        max_expansions: int = 50000,
        dim: int = 3,
    ):
        if resolution <= 0.0:
            raise ValueError("A* resolution must be positive.")
        self.environment = environment
        self.resolution = float(resolution)
        self.margin = float(margin)
        self.max_expansions = int(max_expansions)
        self.dim = dim
        self.neighbor_offsets = [
            offset + (0,) * (3 - dim) for offset in product((-1, 0, 1), repeat=dim) if any(offset)
        ]

    @classmethod
    def from_config(cls, environment: SignedDistanceField, config: ConfigDict, dim: int = 3) -> GridAStar:
        return cls(
            environment,
            resolution=config.get("resolution", 0.2),
            margin=config.get("margin", 2.0),
            max_expansions=config.get("max_expansions", 50000),
            dim=dim,
        )

    def search(
        self, start: NDArray[np.floating], goal: NDArray[np.floating], deadline: float | None = None
    ) -> NDArray[np.floating] | None:
        """Plan from ``start`` to ``goal``.

        Returns:
            The path as a K x dim array (start and goal included), or None if the search failed.
        """
        start = np.asarray(start, dtype=float)
        goal = np.asarray(goal, dtype=float)
        origin = to_3d(start)
        res = self.resolution

        def idx_to_point(idx: tuple[int, int, int]) -> NDArray[np.floating]:
            return origin + res * np.asarray(idx, dtype=float)

        goal_idx = tuple(int(round(v)) for v in (to_3d(goal) - origin) / res)
        pad = int(math.ceil(self.margin / res))
        min_idx = tuple(min(0, g) - pad for g in goal_idx)
        max_idx = tuple(max(0, g) + pad for g in goal_idx)

        free_cache: dict[tuple[int, int, int], bool] = {}

        def is_free_idx(idx: tuple[int, int, int]) -> bool:
            if idx not in free_cache:
                free_cache[idx] = not self.environment.is_occupied(idx_to_point(idx))
            return free_cache[idx]

        def heuristic(idx: tuple[int, int, int]) -> float:
            return res * math.dist(idx, goal_idx)

        start_idx = (0, 0, 0)
        open_heap = [(heuristic(start_idx), start_idx)]
        g_cost = {start_idx: 0.0}
        came_from: dict[tuple[int, int, int], tuple[int, int, int]] = {}
        closed = set()
        expansions = 0

        while open_heap:
            _, current_idx = heapq.heappop(open_heap)
            if current_idx in closed:
                continue
            if current_idx == goal_idx:
                break
            closed.add(current_idx)
            expansions += 1
            if expansions > self.max_expansions:
                logger.warning("A* gave up after %d expansions", self.max_expansions)
                return None
            if deadline is not None and time.perf_counter() > deadline:
                logger.debug("A* stopped at the deadline")
                return None

            current_g = g_cost[current_idx]
            for offset in self.neighbor_offsets:
                neighbor_idx = tuple(c + o for c, o in zip(current_idx, offset))
                if not all(lo <= v <= hi for lo, v, hi in zip(min_idx, neighbor_idx, max_idx)):
                    continue
                # The goal itself is free, its grid node may not be
                if neighbor_idx != goal_idx and not is_free_idx(neighbor_idx):
                    continue
                tentative_g = current_g + res * math.sqrt(sum(o * o for o in offset))
                if neighbor_idx not in g_cost or tentative_g < g_cost[neighbor_idx]:
                    g_cost[neighbor_idx] = tentative_g
                    came_from[neighbor_idx] = current_idx
                    heapq.heappush(open_heap, (tentative_g + heuristic(neighbor_idx), neighbor_idx))

        if goal_idx not in came_from and goal_idx != start_idx:
            logger.warning("A* found no path from %s to %s", start, goal)
            return None

        if goal_idx == start_idx:
            return np.vstack([start, goal])

        path_indices = [goal_idx]
        current = goal_idx
        while current != start_idx:
            current = came_from[current]
            path_indices.append(current)
        path_indices.reverse()

        path = np.asarray([idx_to_point(idx)[: len(start)] for idx in path_indices])
        path[0] = start
        path[-1] = goal
        return path
