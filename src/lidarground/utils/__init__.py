"""Utility functions for the ground classification pipeline."""

from .logging import get_logger
from .config import load_config
from .geometry import (
    TilingGrid,
    rotate,
    rotate_points,
    make_grid,
    make_rotated_grid,
    validate_polygon,
    polygon_from_bounds,
)

__all__ = [
    "get_logger",
    "load_config",
    "TilingGrid",
    "rotate",
    "rotate_points",
    "make_grid",
    "make_rotated_grid",
    "validate_polygon",
    "polygon_from_bounds",
]
