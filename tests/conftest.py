from pathlib import Path

import numpy as np
import pytest

from rebound_planner.envs import SphereObstacleField
from rebound_planner.planning import BsplineOptimizer, GridAStar
from rebound_planner.utils import load_config

CONFIG_PATH = Path(__file__).parents[1] / "config" / "bspline_opt.toml"


@pytest.fixture
def config():
    return load_config(CONFIG_PATH)


@pytest.fixture
def empty_field():
    return SphereObstacleField()


@pytest.fixture
def sphere_field():
    """Unit sphere in the middle of the straight line from (0, 0, 0) to (9, 0, 0)."""
    return SphereObstacleField([[4.5, 0.0, 0.0]], [1.0])


@pytest.fixture
def straight_line():
    return np.linspace([0.0, 0.0, 0.0], [9.0, 0.0, 0.0], 10)


@pytest.fixture
def optimizer(config):
    optimizer = BsplineOptimizer()
    optimizer.set_param(config)
    return optimizer


@pytest.fixture
def sphere_optimizer(optimizer, sphere_field):
    optimizer.set_environment(sphere_field)
    optimizer.set_guide_search(GridAStar(sphere_field, resolution=0.2, margin=2.0))
    return optimizer
