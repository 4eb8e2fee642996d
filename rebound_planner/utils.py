"""Utility functions for the rebound planner."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import toml
from ml_collections import ConfigDict

if TYPE_CHECKING:
    from typing import Any


logger = logging.getLogger(__name__)


def load_config(config_path: Path | str) -> ConfigDict:
    """Load the planner configuration file.

    Args:
        config_path: Path to the planner TOML configuration file.

    Returns:
        The configuration.
    """
    config_path = Path(config_path)
    assert config_path.exists(), f"Configuration file not found: {config_path}"
    assert config_path.suffix == ".toml", f"Configuration file has to be a TOML file: {config_path}"

    with open(config_path, "r") as f:
        return ConfigDict(toml.load(f))


def config_value(config: ConfigDict | dict, key: str, default: Any = None) -> Any:
    """Read ``key`` from a config section, falling back to ``default``."""
    value = config.get(key, default)
    if value is None:
        raise ValueError(f"Missing required parameter '{key}'")
    return value
