"""Tiling package.

Builds buffered tiles from a rotated grid, clips point clouds into
them with a bucket index, and merges per-tile results back into one
cloud.
"""

from .spatial_index import GridIndex
from .tiler import Tile, TileCatalog, build_tiles, clip, clip_all, merge

__all__ = [
    "GridIndex",
    "Tile",
    "TileCatalog",
    "build_tiles",
    "clip",
    "clip_all",
    "merge",
]
