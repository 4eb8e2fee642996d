"""Optimize a straight-line initial trajectory through a sphere scene and plot the result.

Run as:
    $ python scripts/optimize_scene.py --config bspline_opt.toml
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import fire
import matplotlib.pyplot as plt
import numpy as np

from rebound_planner.envs import SphereObstacleField
from rebound_planner.planning import BsplineOptimizer, GridAStar, UniformBspline
from rebound_planner.utils import load_config

if TYPE_CHECKING:
    from numpy.typing import NDArray


logger = logging.getLogger(__name__)


def visualize_trajectory(
    initial_points: NDArray[np.floating],
    points: NDArray[np.floating],
    ts: float,
    order: int,
    field: SphereObstacleField,
    output_path: str = "bspline_opt.png",
):
    """Plot the optimized curve, its control polygon and its speed profile."""
    curve = UniformBspline(points, order, ts)
    t_start, t_end = curve.time_span()
    t_vals = np.linspace(t_start, t_end, 500)
    pos = curve(t_vals)
    speed = np.linalg.norm(curve(t_vals, derivative=1), axis=1)

    fig = plt.figure(figsize=(16, 5))

    ax1 = fig.add_subplot(1, 3, 1, projection="3d")
    ax1.plot(pos[:, 0], pos[:, 1], pos[:, 2], "b-", linewidth=2, label="B-spline")
    ax1.plot(points[:, 0], points[:, 1], points[:, 2], "k.--", alpha=0.5, label="Control points")
    ax1.plot(
        initial_points[:, 0], initial_points[:, 1], initial_points[:, 2], "g:", label="Initial"
    )
    for center in field.centers:
        ax1.scatter(center[0], center[1], center[2], c="red", s=300, marker="x", linewidths=3)
    ax1.set_xlabel("X")
    ax1.set_ylabel("Y")
    ax1.set_zlabel("Z")
    ax1.set_title("3D View")
    ax1.legend(loc="upper right")

    ax2 = fig.add_subplot(1, 3, 2)
    ax2.plot(pos[:, 0], pos[:, 1], "b-", linewidth=2, label="B-spline")
    ax2.plot(points[:, 0], points[:, 1], "k.--", alpha=0.5, label="Control points")
    ax2.plot(initial_points[:, 0], initial_points[:, 1], "g:", label="Initial")
    for center, radius in zip(field.centers, field.radii):
        ax2.add_patch(plt.Circle((center[0], center[1]), radius, color="red", alpha=0.15))
    ax2.set_xlabel("X (m)")
    ax2.set_ylabel("Y (m)")
    ax2.set_title("Top View (Obstacle Check)")
    ax2.axis("equal")
    ax2.grid(True, alpha=0.3)
    ax2.legend()

    ax3 = fig.add_subplot(1, 3, 3)
    ax3.plot(t_vals, speed, "b-", linewidth=2, label="Speed")
    ax3.fill_between(t_vals, 0, speed, alpha=0.2, color="blue")
    ax3.set_xlabel("Time (s)")
    ax3.set_ylabel("Speed (m/s)")
    ax3.set_title("Speed Profile")
    ax3.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    logger.info(f"Trajectory plot saved to {output_path}")
    plt.close()


def optimize_scene(
    config: str = "bspline_opt.toml", plot: bool = True, output_path: str = "bspline_opt.png"
) -> bool:
    """Run rebound and refine on the scene of the config file."""
    config = load_config(Path(__file__).parents[1] / "config" / config)
    scene = config.scene

    field = SphereObstacleField.from_config(config.environment)
    optimizer = BsplineOptimizer()
    optimizer.set_param(config)
    optimizer.set_environment(field)
    optimizer.set_guide_search(GridAStar.from_config(field, config.guide_search))

    start, goal = np.asarray(scene.start, dtype=float), np.asarray(scene.goal, dtype=float)
    initial_points = np.linspace(start, goal, scene.num_points)
    success, points = optimizer.rebound_and_refine(
        initial_points, scene.interval, time_limit=scene.time_limit
    )

    curve = UniformBspline(points, optimizer.get_order(), scene.interval)
    samples = curve.sample(0.05)
    min_dist = min(field.get_distance(p) for p in samples)
    logger.info(
        f"Success: {success}, minimum clearance of the curve: {min_dist:.3f} m, "
        f"anchors: {optimizer.control_point_store.anchor_count()}"
    )
    if plot:
        visualize_trajectory(
            initial_points, points, scene.interval, optimizer.get_order(), field, output_path
        )
    return success


if __name__ == "__main__":
    logging.basicConfig()
    logging.getLogger("rebound_planner").setLevel(logging.INFO)
    logger.setLevel(logging.INFO)
    fire.Fire(optimize_scene, serialize=lambda _: None)
