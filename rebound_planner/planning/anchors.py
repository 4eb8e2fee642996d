"""Placement of collision anchors for control points that pass through an obstacle.

An anchor is a point on the obstacle surface plus the unit direction toward free space. The
rebound distance cost pushes a control point until it is ``clearance`` past each of its anchors.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from rebound_planner.planning.control_points import to_3d

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rebound_planner.envs import SignedDistanceField
    from rebound_planner.planning.control_points import ControlPointStore


logger = logging.getLogger(__name__)


def intersect_guide_path(
    origin: NDArray[np.floating], normal: NDArray[np.floating], path: NDArray[np.floating]
) -> NDArray[np.floating] | None:
    """Intersection of the plane through ``origin`` with normal ``normal`` and a polyline.

    The walk starts at the middle of the path and moves against the sign of the plane offset until
    the offset changes sign.
    """
    if len(path) < 2:
        return None
    idx = len(path) // 2
    val = float((path[idx] - origin) @ normal)
    while True:
        last_idx, last_val = idx, val
        idx += -1 if val >= 0 else 1
        if not 0 <= idx < len(path):
            return None
        val = float((path[idx] - origin) @ normal)
        # Both offsets zero means the segment lies in the plane
        if val * last_val <= 0 and (abs(val) > 0 or abs(last_val) > 0):
            seg = path[idx] - path[last_idx]
            t = float(normal @ (origin - path[idx])) / float(normal @ seg)
            return path[idx] + seg * t


def surface_anchor(
    origin: NDArray[np.floating],
    target: NDArray[np.floating],
    environment: SignedDistanceField,
    resolution: float,
) -> NDArray[np.floating] | None:
    """Last free point when walking from the free ``target`` back toward ``origin``."""
    length = float(np.linalg.norm(target - origin))
    if length <= 1e-5:
        return None
    a = length
    while a >= 0.0:
        occupied = environment.is_occupied(to_3d((a / length) * target + (1 - a / length) * origin))
        if occupied or a < resolution:
            if occupied:
                a += resolution
            return (a / length) * target + (1 - a / length) * origin
        a -= resolution
    return None


def attach_detour_anchors(
    store: ControlPointStore,
    points: NDArray[np.floating],
    in_id: int,
    out_id: int,
    guide_path: NDArray[np.floating],
    environment: SignedDistanceField,
    resolution: float,
) -> bool:
    """Anchor the colliding stretch ``in_id .. out_id`` against a collision-free guide path.

    Each interior point gets an anchor where the plane normal to the local tangent meets the guide
    path. Points left without one copy their neighbour's newest anchor.

    Returns:
        Whether at least one anchor was generated.
    """
    intersected: set[int] = set()
    last_hit = -1

    for j in range(in_id + 1, out_id):
        intersection = intersect_guide_path(points[j], points[j + 1] - points[j - 1], guide_path)
        if intersection is None:
            continue
        intersected.add(j)
        last_hit = j
        anchor = surface_anchor(points[j], intersection, environment, resolution)
        if anchor is not None:
            store[j].add_anchor(anchor, intersection - points[j])

    # Adjacent points: the control points may lie outside the guide path, use the midpoint instead
    if out_id - in_id == 1:
        middle = 0.5 * (points[in_id] + points[out_id])
        intersection = intersect_guide_path(middle, points[out_id] - points[in_id], guide_path)
        if intersection is not None:
            last_hit = in_id
            anchor = surface_anchor(middle, intersection, environment, resolution)
            for j in (in_id, out_id):
                intersected.add(j)
                if anchor is not None:
                    store[j].add_anchor(anchor, intersection - middle)

    if last_hit < 0:
        logger.debug("No anchor direction for control points %d..%d", in_id, out_id)
        return False
    _propagate_anchors(store, intersected, last_hit, in_id, out_id)
    return True


def attach_gradient_anchors(
    store: ControlPointStore,
    points: NDArray[np.floating],
    in_id: int,
    out_id: int,
    environment: SignedDistanceField,
    resolution: float,
    max_escape: float = 5.0,
) -> bool:
    """Anchor the colliding stretch from the distance field gradient.

    Used when no guide search is available. The escape direction is the field gradient with its
    component along the local tangent removed, so points are pushed sideways around the obstacle.
    """
    dim = points.shape[1]
    intersected: set[int] = set()
    last_hit = -1
    if out_id - in_id == 1:
        candidates = [(in_id, 0.5 * (points[in_id] + points[out_id]), points[out_id] - points[in_id])]
    else:
        candidates = [(j, points[j], points[j + 1] - points[j - 1]) for j in range(in_id + 1, out_id)]

    for j, origin, tangent in candidates:
        _, grad = environment.get_distance_with_gradient(to_3d(origin))
        direction = _sideways(np.asarray(grad, dtype=float)[:dim], tangent)
        if direction is None:
            continue
        anchor = origin.copy()
        a = 0.0
        while a <= max_escape:
            anchor = origin + a * direction
            if not environment.is_occupied(to_3d(anchor)):
                break
            a += resolution
        targets = (in_id, out_id) if out_id - in_id == 1 else (j,)
        for k in targets:
            store[k].add_anchor(anchor, direction)
            intersected.add(k)
        last_hit = j

    if last_hit < 0:
        logger.debug("No gradient direction for control points %d..%d", in_id, out_id)
        return False
    _propagate_anchors(store, intersected, last_hit, in_id, out_id)
    return True


def _sideways(grad: NDArray[np.floating], tangent: NDArray[np.floating]) -> NDArray[np.floating] | None:
    t_norm = np.linalg.norm(tangent)
    if len(grad) == 1 or t_norm < 1e-9:
        direction = grad
    else:
        t = tangent / t_norm
        direction = grad - (grad @ t) * t
        if np.linalg.norm(direction) < 1e-6:
            direction = _perpendicular(t)
    norm = np.linalg.norm(direction)
    return None if norm < 1e-9 else direction / norm


def _perpendicular(t: NDArray[np.floating]) -> NDArray[np.floating]:
    if len(t) == 2:
        return np.array([-t[1], t[0]])
    axis = np.zeros(3)
    axis[int(np.argmin(np.abs(t)))] = 1.0
    return np.cross(t, axis)


def _propagate_anchors(
    store: ControlPointStore, intersected: set[int], last_hit: int, in_id: int, out_id: int
):
    for j in range(last_hit + 1, out_id + 1):
        if j not in intersected and store[j - 1].anchors:
            store[j].add_anchor(store[j - 1].anchors[-1], store[j - 1].directions[-1])
    for j in range(last_hit - 1, in_id - 1, -1):
        if j not in intersected and store[j + 1].anchors:
            store[j].add_anchor(store[j + 1].anchors[-1], store[j + 1].directions[-1])
