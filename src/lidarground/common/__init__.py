"""Shared data model, errors and I/O boundary adapters."""

from .errors import (
    LidarGroundError,
    InvalidGeometry,
    ConfigError,
    InsufficientData,
    KernelFailure,
    IOFailure,
    NonConvergence,
)
from .pointcloud import PointCloud, ClassificationLabel, NOISE, from_columns

__all__ = [
    "LidarGroundError",
    "InvalidGeometry",
    "ConfigError",
    "InsufficientData",
    "KernelFailure",
    "IOFailure",
    "NonConvergence",
    "PointCloud",
    "ClassificationLabel",
    "NOISE",
    "from_columns",
]
