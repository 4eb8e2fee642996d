"""Signed distance field interface and an analytic sphere-obstacle implementation.

The optimizer only reads the field through `SignedDistanceField`. `SphereObstacleField` is the
field used by the scene script and the tests: a set of spheres with exact distances and gradients.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from ml_collections import ConfigDict
    from numpy.typing import NDArray


logger = logging.getLogger(__name__)


@runtime_checkable
class SignedDistanceField(Protocol):
    """Read-only distance queries at a 3D point."""

    def get_distance(self, point: NDArray[np.floating]) -> float: ...

    def get_distance_with_gradient(
        self, point: NDArray[np.floating]
    ) -> tuple[float, NDArray[np.floating]]: ...

    def is_occupied(self, point: NDArray[np.floating]) -> bool: ...


class SphereObstacleField:
    """Signed distance to the closest of a set of spheres.

    Distances are measured to the sphere surface, negative inside. Far away from every obstacle the
    distance saturates at ``max_distance`` with a zero gradient. A point is occupied when its
    distance does not exceed ``inflation``.
    """

    def __init__(
        self,
        centers: NDArray[np.floating] | list | None = None,
        radii: NDArray[np.floating] | list | None = None,
        inflation: float = 0.0,
        max_distance: float = 10.0,
    ):
        self.centers = np.zeros((0, 3)) if centers is None else np.atleast_2d(np.asarray(centers, dtype=float))
        self.radii = np.zeros(0) if radii is None else np.atleast_1d(np.asarray(radii, dtype=float))
        if self.centers.shape[0] and self.centers.shape[1] != 3:
            raise ValueError("Sphere centers must be an M x 3 array.")
        if len(self.centers) != len(self.radii):
            raise ValueError("Every sphere needs exactly one radius.")
        if np.any(self.radii <= 0.0):
            raise ValueError("Sphere radii must be positive.")
        self.inflation = float(inflation)
        self.max_distance = float(max_distance)

    @classmethod
    def from_config(cls, config: ConfigDict) -> SphereObstacleField:
        """Build the field from the ``[environment]`` section of the planner config."""
        obstacles = config.get("obstacles", None) or []
        centers = [obs["center"] for obs in obstacles]
        radii = [obs["radius"] for obs in obstacles]
        return cls(
            centers if centers else None,
            radii if radii else None,
            inflation=config.get("inflation", 0.0),
            max_distance=config.get("max_distance", 10.0),
        )

    def _closest(self, point: NDArray[np.floating]) -> tuple[float, int]:
        p = np.asarray(point, dtype=float)
        if len(self.radii) == 0:
            return self.max_distance, -1
        dists = np.linalg.norm(self.centers - p, axis=1) - self.radii
        idx = int(np.argmin(dists))
        return float(min(dists[idx], self.max_distance)), idx

    def get_distance(self, point: NDArray[np.floating]) -> float:
        return self._closest(point)[0]

    def get_distance_with_gradient(
        self, point: NDArray[np.floating]
    ) -> tuple[float, NDArray[np.floating]]:
        dist, idx = self._closest(point)
        grad = np.zeros(3)
        if idx < 0 or dist >= self.max_distance:
            return dist, grad
        offset = np.asarray(point, dtype=float) - self.centers[idx]
        norm = np.linalg.norm(offset)
        # The gradient is undefined at the sphere center
        if norm > 1e-9:
            grad = offset / norm
        return dist, grad

    def is_occupied(self, point: NDArray[np.floating]) -> bool:
        return self.get_distance(point) <= self.inflation
