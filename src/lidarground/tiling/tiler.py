"""Tile catalog: build buffered tiles, clip a cloud into them, merge.

Tiles come from a rotated `TilingGrid`.  Each tile has a core polygon
(one grid cell) and a buffered polygon (the core expanded by a margin).
Kernels run on the points inside the buffered polygon so their edge
behaviour settles before the tile border; `merge` then keeps only the
points inside each core polygon, so every point is attributed exactly
once whatever the buffer width.

Tile summaries can be exported to Parquet for later inspection.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import shapely
from shapely.geometry import MultiPolygon, Polygon

from ..common.errors import InvalidGeometry
from ..common.pointcloud import PointCloud
from ..utils.geometry import TilingGrid, make_rotated_grid
from ..utils.logging import get_logger
from .spatial_index import GridIndex

logger = get_logger(__name__)


@dataclass
class Tile:
    """A grid cell with its buffer and, once clipped, its points."""
    tile_id: int
    idx: Tuple[int, int]
    core: Polygon
    buffered: Polygon
    points: Optional[PointCloud] = None

    @property
    def point_count(self) -> int:
        return 0 if self.points is None else len(self.points)

    def to_metadata_dict(self) -> Dict:
        """Convert tile metadata to dictionary (without points).

        Returns
        -------
        dict
            Metadata dictionary containing id, grid index, areas, point
            count and density over the buffered area.
        """
        x_min, y_min, x_max, y_max = self.core.bounds
        area = self.buffered.area
        return {
            "tile_id": self.tile_id,
            "tile_idx_row": self.idx[0],
            "tile_idx_col": self.idx[1],
            "bbox_x_min": x_min,
            "bbox_y_min": y_min,
            "bbox_x_max": x_max,
            "bbox_y_max": y_max,
            "core_area": self.core.area,
            "buffered_area": area,
            "point_count": self.point_count,
            "density": self.point_count / area if area > 0 else 0.0,
        }


def build_tiles(grid: TilingGrid, buffer_width: float) -> List[Tile]:
    """Create one tile per grid cell with sequential ids.

    Parameters
    ----------
    grid : TilingGrid
        Grid whose cells become the tile cores.
    buffer_width : float
        Outward margin of the buffered polygon.  0 disables buffering.

    Returns
    -------
    list of Tile
        Tiles in grid order, ids starting at 0.
    """
    if buffer_width < 0:
        raise InvalidGeometry(f"buffer width must be >= 0, got {buffer_width}")
    tiles = []
    for tile_id, (cell, idx) in enumerate(zip(grid.cells, grid.indices)):
        if buffer_width > 0:
            # Mitred joins keep rectangular cells rectangular
            buffered = cell.buffer(buffer_width, join_style="mitre")
        else:
            buffered = cell
        tiles.append(Tile(tile_id=tile_id, idx=idx, core=cell, buffered=buffered))
    return tiles


def _covered(polygon, cloud: PointCloud) -> np.ndarray:
    """Boolean mask of points lying in the closed polygon."""
    if len(cloud) == 0:
        return np.zeros(0, dtype=bool)
    return shapely.intersects_xy(polygon, cloud.x, cloud.y)


def clip(cloud: PointCloud, tile: Tile, index: Optional[GridIndex] = None) -> PointCloud:
    """Points of `cloud` whose XY position lies in the tile's buffered polygon.

    Parameters
    ----------
    cloud : PointCloud
        Full point cloud.
    tile : Tile
        Target tile.
    index : GridIndex, optional
        Bucket index over ``cloud``.  Pass one shared index when clipping
        many tiles; a throwaway index is built otherwise.

    Returns
    -------
    PointCloud
        Clipped points, in input order.
    """
    if index is None:
        x_min, y_min, x_max, y_max = tile.buffered.bounds
        index = GridIndex(cloud.xyz[:, :2], max(x_max - x_min, y_max - y_min))
    candidates = index.query_bounds(tile.buffered.bounds)
    subset = cloud.subset(candidates)
    return subset.subset(_covered(tile.buffered, subset))


def clip_all(cloud: PointCloud, tiles: List[Tile]) -> List[Tile]:
    """Clip a cloud into every tile using one shared bucket index."""
    if not tiles:
        return []
    x_min, y_min, x_max, y_max = tiles[0].core.bounds
    bucket = max(x_max - x_min, y_max - y_min) / 2.0
    index = GridIndex(cloud.xyz[:, :2], bucket)
    clipped = [replace(tile, points=clip(cloud, tile, index)) for tile in tiles]
    logger.info(
        f"Clipped {len(cloud):,} points into {len(tiles)} tiles "
        f"({sum(1 for t in clipped if t.point_count == 0)} empty)"
    )
    return clipped


def _drop_duplicate_ids(cloud: PointCloud) -> PointCloud:
    """Keep the first occurrence of each point identity."""
    _, first = np.unique(cloud.ids, return_index=True)
    if len(first) == len(cloud):
        return cloud
    return cloud.subset(np.sort(first))


def merge(
    results: Mapping[int, PointCloud],
    tiles: List[Tile],
    buffer_width: float,
) -> PointCloud:
    """Reassemble per-tile results into one cloud.

    For buffered runs each result is first truncated to its tile's core
    polygon, discarding buffer-only points.  Results are concatenated in
    tile-id order and points seen in more than one tile (e.g. on a shared
    core edge) are kept once, by identity, from the lowest tile id.

    Parameters
    ----------
    results : mapping of int to PointCloud
        Classified points per tile id.  Tiles without a result are
        simply absent from the merged cloud.
    tiles : list of Tile
        Tiles the results were computed on.
    buffer_width : float
        Buffer width used for the run.

    Returns
    -------
    PointCloud
        Merged cloud.
    """
    by_id = {tile.tile_id: tile for tile in tiles}
    pieces = []
    for tile_id in sorted(results):
        cloud = results[tile_id]
        if tile_id not in by_id:
            raise KeyError(f"result for unknown tile {tile_id}")
        if buffer_width > 0:
            cloud = cloud.subset(_covered(by_id[tile_id].core, cloud))
        pieces.append(cloud)
    merged = _drop_duplicate_ids(PointCloud.concat(pieces))
    logger.info(f"Merged {len(pieces)} tiles into {len(merged):,} points")
    return merged


@dataclass
class TileCatalog:
    """Tiling configuration plus the build / clip / merge operations."""

    cell_size: float = 50.0
    """Tile side length in map units."""

    rotation_degrees: float = 0.0
    """Orientation of the grid relative to the world x axis."""

    buffer_width: float = 0.0
    """Margin added around each tile core.  0 disables buffering."""

    def build(self, area, center: Optional[Tuple[float, float]] = None) -> List[Tile]:
        """Tile an area polygon.

        Parameters
        ----------
        area : Polygon or MultiPolygon
            Area of interest.
        center : (float, float), optional
            Rotation centre.  Defaults to the area centroid.

        Returns
        -------
        list of Tile
            Unclipped tiles.
        """
        if not isinstance(area, (Polygon, MultiPolygon)):
            raise InvalidGeometry(f"expected a polygon area, got {type(area).__name__}")
        grid = make_rotated_grid(area, self.cell_size, self.rotation_degrees, center)
        tiles = build_tiles(grid, self.buffer_width)
        logger.info(
            f"Built {len(tiles)} tiles of {self.cell_size:g} m "
            f"(rotation {self.rotation_degrees:g} deg, buffer {self.buffer_width:g} m)"
        )
        return tiles

    def clip_all(self, cloud: PointCloud, tiles: List[Tile]) -> List[Tile]:
        return clip_all(cloud, tiles)

    def merge(self, results: Mapping[int, PointCloud], tiles: List[Tile]) -> PointCloud:
        return merge(results, tiles, self.buffer_width)

    @staticmethod
    def summary(tiles: List[Tile]) -> pd.DataFrame:
        """Tile metadata as a DataFrame, one row per tile."""
        return pd.DataFrame([tile.to_metadata_dict() for tile in tiles])

    def export_metadata_to_parquet(self, tiles: List[Tile], output_dir: Path) -> Path:
        """Write tile metadata to ``tiles_metadata.parquet`` in a directory."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / "tiles_metadata.parquet"
        self.summary(tiles).to_parquet(output_path, index=False)
        return output_path
