"""Control points of the optimized B-spline and their collision metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField


@dataclass
class ControlPoint:
    """Collision metadata of one control point.

    ``anchors`` are points on obstacle surfaces ("base points") and ``directions`` the unit vectors
    pointing from each anchor toward free space. Both lists only grow during one optimization run.
    """

    position: NDArray[np.floating]
    anchors: list[NDArray[np.floating]] = field(default_factory=list)
    directions: list[NDArray[np.floating]] = field(default_factory=list)
    clearance: float = 0.0
    occupied: bool | None = None  # None until checked against the environment

    def add_anchor(self, anchor: NDArray[np.floating], direction: NDArray[np.floating]) -> bool:
        norm = np.linalg.norm(direction)
        if norm < 1e-9:
            return False
        self.anchors.append(np.asarray(anchor, dtype=float).copy())
        self.directions.append(np.asarray(direction, dtype=float) / norm)
        return True

    def anchor_distances(self) -> NDArray[np.floating]:
        """Signed distance of the point past each anchor, along the anchor direction."""
        if not self.anchors:
            return np.zeros(0)
        return np.einsum("ij,ij->i", self.position - np.asarray(self.anchors), np.asarray(self.directions))

    def is_escaping(self, margin: float) -> bool:
        """Whether an anchor still pushes the point, i.e. it is less than ``margin`` past it."""
        return bool(np.any(self.anchor_distances() < margin))


class ControlPointStore:
    """Control point sequence of one optimization request plus its read-only side inputs."""

    def __init__(self):
        self.points = np.zeros((0, 3))
        self.cps: list[ControlPoint] = []
        self.interval = 0.0
        self.guide_path = np.zeros((0, 3))
        self.waypoints: dict[int, NDArray[np.floating]] = {}
        self.reference_points: NDArray[np.floating] | None = None
        self.endpoint: NDArray[np.floating] | None = None

    def __len__(self) -> int:
        return len(self.cps)

    def __getitem__(self, idx: int) -> ControlPoint:
        return self.cps[idx]

    @property
    def dim(self) -> int:
        return self.points.shape[1]

    def set_control_points(self, points: NDArray[np.floating], clearance: float = 0.0):
        """Replace the whole sequence; all collision metadata is reset."""
        points = np.array(points, dtype=float)
        if points.ndim != 2 or points.shape[1] not in (1, 2, 3):
            raise ValueError("Control points must be an N x dim array with dim in {1, 2, 3}.")
        if any(not 0 <= idx < len(points) for idx in self.waypoints):
            raise ValueError(f"Waypoint index out of range for {len(points)} control points.")
        self.points = points
        # Rows of self.points back the positions, so updates are visible through the ControlPoints
        self.cps = [ControlPoint(position=self.points[i], clearance=clearance) for i in range(len(points))]

    def get_control_points(self) -> NDArray[np.floating]:
        return self.points.copy()

    def update_positions(self, points: NDArray[np.floating], start: int = 0):
        """Write solved positions back, keeping anchors; occupancy becomes unknown."""
        points = np.asarray(points, dtype=float)
        self.points[start : start + len(points)] = points
        for cp in self.cps:
            cp.occupied = None

    def refresh_occupancy(self, environment: SignedDistanceField) -> NDArray[np.bool_]:
        for cp in self.cps:
            cp.occupied = environment.is_occupied(to_3d(cp.position))
        return np.array([cp.occupied for cp in self.cps], dtype=bool)

    def set_bspline_interval(self, interval: float):
        if interval <= 0.0:
            raise ValueError("B-spline knot interval must be positive.")
        self.interval = float(interval)

    def set_guide_path(self, guide_path: NDArray[np.floating]):
        guide_path = np.asarray(guide_path, dtype=float)
        if guide_path.ndim != 2:
            raise ValueError("Guide path must be an M x dim array.")
        self.guide_path = guide_path.copy()

    def set_waypoints(self, waypoints: NDArray[np.floating], waypoint_idx: list[int]):
        waypoints = np.atleast_2d(np.asarray(waypoints, dtype=float))
        if len(waypoints) != len(waypoint_idx):
            raise ValueError("Every waypoint needs exactly one control point index.")
        if len(self) and len(waypoint_idx) > len(self) - 2:
            raise ValueError("At most N - 2 waypoint constraints are supported.")
        if len(self) and any(not 0 <= idx < len(self) for idx in waypoint_idx):
            raise ValueError("Waypoint index out of range.")
        self.waypoints = {int(idx): wp.copy() for idx, wp in zip(waypoint_idx, waypoints)}

    def set_reference_points(self, reference_points: NDArray[np.floating] | None):
        self.reference_points = None if reference_points is None else np.array(reference_points, dtype=float)

    def set_endpoint(self, endpoint: NDArray[np.floating] | None):
        self.endpoint = None if endpoint is None else np.array(endpoint, dtype=float)

    def anchor_count(self) -> int:
        return sum(len(cp.anchors) for cp in self.cps)


def to_3d(point: NDArray[np.floating]) -> NDArray[np.floating]:
    """Pad a 1D or 2D point with zeros for environment queries."""
    point = np.asarray(point, dtype=float)
    if point.shape[-1] == 3:
        return point
    pad = [(0, 0)] * (point.ndim - 1) + [(0, 3 - point.shape[-1])]
    return np.pad(point, pad)
