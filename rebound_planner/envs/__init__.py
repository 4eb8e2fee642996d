"""Obstacle environments queried by the optimizer."""

from rebound_planner.envs.sphere_field import SignedDistanceField, SphereObstacleField

__all__ = ["SignedDistanceField", "SphereObstacleField"]
