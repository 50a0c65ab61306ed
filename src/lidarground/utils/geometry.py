"""Geometry helpers for oriented tiling.

The tiling grid is generated in a rotated frame: the area polygon is
rotated by ``-angle`` about a fixed centre, covered with axis-aligned
square cells, and the cells are rotated back by ``+angle``.  This keeps
cell generation to simple interval arithmetic while still producing a
grid oriented at any angle in the world frame.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from shapely import affinity
from shapely.geometry import MultiPolygon, Polygon, box
from shapely.ops import unary_union

from ..common.errors import InvalidGeometry

Area = Union[Polygon, MultiPolygon]


@dataclass
class TilingGrid:
    """Ordered set of square cells covering an area polygon."""

    cells: List[Polygon]
    """Cell polygons in row-major order of the rotated frame."""

    indices: List[Tuple[int, int]]
    """(row, col) of every cell in the rotated frame."""

    cell_size: float
    """Side length of each cell."""

    rotation_degrees: float = 0.0
    """Orientation of the cell edges relative to the world x axis."""

    center: Tuple[float, float] = field(default=(0.0, 0.0))
    """Centre of rotation used to build the grid."""

    def __len__(self) -> int:
        return len(self.cells)

    def union(self) -> Polygon:
        """Union of all cells."""
        return unary_union(self.cells)


def validate_polygon(polygon: Area) -> Area:
    """Check that a polygon is usable as a tiling area.

    Raises
    ------
    InvalidGeometry
        If the polygon is missing, empty, self-intersecting or has no
        area.
    """
    if polygon is None or not isinstance(polygon, (Polygon, MultiPolygon)):
        raise InvalidGeometry(f"expected a Polygon or MultiPolygon, got {type(polygon).__name__}")
    if polygon.is_empty:
        raise InvalidGeometry("area polygon is empty")
    if not polygon.is_valid:
        raise InvalidGeometry("area polygon is not valid (self-intersecting or malformed)")
    if polygon.area <= 0:
        raise InvalidGeometry("area polygon has zero area")
    return polygon


def default_center(geometry) -> Tuple[float, float]:
    """Centroid of the union of a geometry or a sequence of polygons.

    Raises
    ------
    InvalidGeometry
        If a sequence unions to nothing usable (e.g. it is empty).
    """
    if isinstance(geometry, TilingGrid):
        geometry = geometry.cells
    if isinstance(geometry, (list, tuple)):
        geometry = union_all(geometry)
    c = geometry.centroid
    return float(c.x), float(c.y)


def rotate(geometry, angle_deg: float, center: Optional[Tuple[float, float]] = None):
    """Rotate a polygon, a list of polygons or a grid about a centre.

    Parameters
    ----------
    geometry : Polygon, MultiPolygon, list of Polygon or TilingGrid
        What to rotate.
    angle_deg : float
        Counter-clockwise rotation angle in degrees.
    center : (float, float), optional
        Centre of rotation.  Defaults to the centroid of the union of
        the input.

    Returns
    -------
    Same type as the input, rotated.
    """
    if center is None:
        center = default_center(geometry)
    if isinstance(geometry, TilingGrid):
        cells = [affinity.rotate(c, angle_deg, origin=center) for c in geometry.cells]
        return TilingGrid(
            cells=cells,
            indices=list(geometry.indices),
            cell_size=geometry.cell_size,
            rotation_degrees=geometry.rotation_degrees + angle_deg,
            center=center,
        )
    if isinstance(geometry, (list, tuple)):
        return [affinity.rotate(g, angle_deg, origin=center) for g in geometry]
    return affinity.rotate(geometry, angle_deg, origin=center)


def rotate_points(xy: np.ndarray, angle_deg: float, center: Tuple[float, float]) -> np.ndarray:
    """Rotate an (N, 2) array of points counter-clockwise about a centre."""
    theta = math.radians(angle_deg)
    c, s = math.cos(theta), math.sin(theta)
    shifted = np.asarray(xy, dtype=np.float64) - np.asarray(center)
    rotated = np.column_stack([
        c * shifted[:, 0] - s * shifted[:, 1],
        s * shifted[:, 0] + c * shifted[:, 1],
    ])
    return rotated + np.asarray(center)


def make_grid(polygon: Area, cell_size: float) -> TilingGrid:
    """Cover a polygon with axis-aligned square cells.

    Cells are anchored at the lower-left corner of the polygon's
    bounding box.  Only cells whose intersection with the polygon has
    positive area are kept.

    Parameters
    ----------
    polygon : Polygon or MultiPolygon
        Area to cover.
    cell_size : float
        Side length of each cell.

    Returns
    -------
    TilingGrid
        Unrotated grid.
    """
    validate_polygon(polygon)
    if not cell_size > 0:
        raise InvalidGeometry(f"cell size must be positive, got {cell_size}")

    x_min, y_min, x_max, y_max = polygon.bounds
    n_cols = max(1, int(math.ceil((x_max - x_min) / cell_size)))
    n_rows = max(1, int(math.ceil((y_max - y_min) / cell_size)))

    cells: List[Polygon] = []
    indices: List[Tuple[int, int]] = []
    for row in range(n_rows):
        y0 = y_min + row * cell_size
        for col in range(n_cols):
            x0 = x_min + col * cell_size
            cell = box(x0, y0, x0 + cell_size, y0 + cell_size)
            if cell.intersection(polygon).area > 0:
                cells.append(cell)
                indices.append((row, col))
    if not cells:
        raise InvalidGeometry("grid does not intersect the area polygon")
    return TilingGrid(cells=cells, indices=indices, cell_size=cell_size,
                      center=default_center(polygon))


def make_rotated_grid(
    polygon: Area,
    cell_size: float,
    rotation_degrees: float = 0.0,
    center: Optional[Tuple[float, float]] = None,
) -> TilingGrid:
    """Build a grid whose cells are oriented at ``rotation_degrees``.

    The polygon is rotated by ``-rotation_degrees`` about ``center``,
    gridded with `make_grid`, and the resulting cells are rotated back.
    """
    validate_polygon(polygon)
    if center is None:
        center = default_center(polygon)
    aligned = rotate(polygon, -rotation_degrees, center)
    grid = make_grid(aligned, cell_size)
    grid.center = center
    return rotate(grid, rotation_degrees, center)


def polygon_from_bounds(x_min: float, y_min: float, x_max: float, y_max: float) -> Polygon:
    """Rectangle polygon from a bounding box."""
    if not (x_max > x_min and y_max > y_min):
        raise InvalidGeometry(f"degenerate bounds ({x_min}, {y_min}, {x_max}, {y_max})")
    return box(x_min, y_min, x_max, y_max)


def union_all(polygons: Sequence[Area]) -> Area:
    """Union of a sequence of polygons, validated."""
    return validate_polygon(unary_union(list(polygons)))
