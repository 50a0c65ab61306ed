"""Minimum-elevation rasters shared by the PMF and CSF kernels.

Cells are anchored at integer multiples of the cell size, so two tiles
rasterised with the same cell size share cell edges.  Each cell keeps
the lowest z of the points falling in it; cells without points hold
NaN until `fill_empty` copies the value of the nearest filled cell.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.ndimage import distance_transform_edt

from ..common.errors import InsufficientData


@dataclass
class Raster:
    """Regular grid of elevations over a tile's XY extent."""

    origin: Tuple[float, float]
    """World coordinates of the lower-left corner of cell (0, 0)."""

    cell_size: float
    """Cell side length."""

    values: np.ndarray
    """Array of shape (rows, cols); row follows y, col follows x."""

    rows: np.ndarray
    """Row index of every input point."""

    cols: np.ndarray
    """Column index of every input point."""

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def empty_mask(self) -> np.ndarray:
        return np.isnan(self.values)

    def sample(self, surface: Optional[np.ndarray] = None) -> np.ndarray:
        """Value of a surface (default: the raster) at every input point's cell."""
        surface = self.values if surface is None else surface
        return surface[self.rows, self.cols]


def rasterize_min(
    xyz: np.ndarray,
    cell_size: float,
    centered: bool = False,
) -> Raster:
    """Rasterise points to a per-cell minimum elevation surface.

    Parameters
    ----------
    xyz : numpy.ndarray
        Array of shape (N, 3).
    cell_size : float
        Cell side length in map units.
    centered : bool, optional
        If True, cell centres (rather than corners) sit on multiples of
        ``cell_size``, i.e. every point goes to its nearest grid node.

    Returns
    -------
    Raster
        Raster with NaN in empty cells.
    """
    if len(xyz) == 0:
        raise InsufficientData("cannot rasterise an empty point set")
    if not cell_size > 0:
        raise ValueError("cell_size must be positive")

    x, y, z = xyz[:, 0], xyz[:, 1], xyz[:, 2]
    shift = cell_size / 2.0 if centered else 0.0
    x0 = math.floor((x.min() + shift) / cell_size) * cell_size - shift
    y0 = math.floor((y.min() + shift) / cell_size) * cell_size - shift

    cols = np.floor((x - x0) / cell_size).astype(np.int64)
    rows = np.floor((y - y0) / cell_size).astype(np.int64)
    n_cols = int(cols.max()) + 1
    n_rows = int(rows.max()) + 1

    # Build minimum elevation grid
    grid = np.full((n_rows, n_cols), np.inf, dtype=np.float64)
    np.minimum.at(grid, (rows, cols), z)
    grid[np.isinf(grid)] = np.nan
    return Raster(origin=(x0, y0), cell_size=cell_size, values=grid, rows=rows, cols=cols)


def fill_empty(values: np.ndarray) -> np.ndarray:
    """Copy into every NaN cell the value of its nearest non-NaN cell."""
    empty = np.isnan(values)
    if not np.any(empty):
        return values.copy()
    if np.all(empty):
        raise InsufficientData("raster has no filled cells")
    _, nearest = distance_transform_edt(empty, return_distances=True, return_indices=True)
    return values[tuple(nearest)]
