"""Progressive morphological filter (PMF).

The tile is rasterised to a minimum-elevation surface which is then
opened (erosion followed by dilation) with flat square structuring
elements of growing size.  At every step, cells whose current
elevation stands more than the step threshold above the opened surface
are marked non-ground, and the opened surface becomes the input of the
next step.  A point is ground when its cell was never marked and it
lies within a small tolerance of the final surface.

Window sizes are half-widths in map units: a window ``w`` spans
``2 * ceil(w / cell_size) + 1`` cells.  Near the raster border the
structuring element is clamped to the cells that exist, which is why
tiles are processed with a buffer.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.ndimage import grey_dilation, grey_erosion

from ..common.errors import ConfigError, InsufficientData
from ..common.pointcloud import ClassificationLabel, PointCloud, label_counts
from ..utils.logging import get_logger
from .raster import fill_empty, rasterize_min

logger = get_logger(__name__)


@dataclass(frozen=True)
class PMFParams:
    """Parameters of the progressive morphological filter."""

    window_sizes: Tuple[float, ...] = (0.5, 1.0, 2.0, 4.0)
    """Strictly increasing structuring element half-widths (map units)."""

    thresholds: Tuple[float, ...] = (0.1, 0.2, 0.5, 1.0)
    """Non-decreasing elevation thresholds, one per window."""

    cell_size: float = 0.5
    """Raster resolution in map units."""

    ground_tolerance: Optional[float] = None
    """Maximum height above the final surface for a ground point.
    Defaults to the first threshold."""

    def __post_init__(self):
        object.__setattr__(self, "window_sizes", tuple(float(w) for w in self.window_sizes))
        object.__setattr__(self, "thresholds", tuple(float(t) for t in self.thresholds))
        if not self.window_sizes:
            raise ConfigError("window_sizes must not be empty")
        if len(self.window_sizes) != len(self.thresholds):
            raise ConfigError("window_sizes and thresholds must have the same length")
        if any(w <= 0 for w in self.window_sizes):
            raise ConfigError("window sizes must be positive")
        if any(b <= a for a, b in zip(self.window_sizes, self.window_sizes[1:])):
            raise ConfigError("window sizes must be strictly increasing")
        if any(b < a for a, b in zip(self.thresholds, self.thresholds[1:])):
            raise ConfigError("thresholds must be non-decreasing")
        if any(t < 0 for t in self.thresholds):
            raise ConfigError("thresholds must be non-negative")
        if not self.cell_size > 0:
            raise ConfigError("cell_size must be positive")

    @property
    def tolerance(self) -> float:
        if self.ground_tolerance is None:
            return self.thresholds[0]
        return self.ground_tolerance

    def element_cells(self, window: float) -> int:
        """Side length, in cells, of the structuring element for a window."""
        return 2 * int(math.ceil(window / self.cell_size - 1e-9)) + 1


def opening(surface: np.ndarray, size: int) -> np.ndarray:
    """Grey opening with a flat square element clamped at the border.

    Padding with +inf for the erosion and -inf for the dilation means
    cells outside the raster never take part in the min / max.
    """
    eroded = grey_erosion(surface, size=(size, size), mode="constant", cval=np.inf)
    return grey_dilation(eroded, size=(size, size), mode="constant", cval=-np.inf)


def pmf_step(surface: np.ndarray, size: int, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """One filter step.

    Returns
    -------
    (numpy.ndarray, numpy.ndarray)
        Opened surface and boolean mask of cells marked non-ground.
    """
    opened = opening(surface, size)
    return opened, (surface - opened) > threshold


def progressive_morphological_filter(xyz: np.ndarray, params: PMFParams) -> np.ndarray:
    """Classify points as ground or non-ground.

    Parameters
    ----------
    xyz : numpy.ndarray
        Array of shape (N, 3).
    params : PMFParams
        Filter parameters.

    Returns
    -------
    numpy.ndarray
        uint8 `ClassificationLabel` values, one per point.
    """
    if len(xyz) == 0:
        raise InsufficientData("PMF needs at least one point")
    raster = rasterize_min(xyz, params.cell_size)
    surface = fill_empty(raster.values)
    marked = np.zeros(surface.shape, dtype=bool)

    for window, threshold in zip(params.window_sizes, params.thresholds):
        size = params.element_cells(window)
        surface, step_marks = pmf_step(surface, size, threshold)
        marked |= step_marks
        logger.debug(f"window {window:g} ({size} cells): {int(step_marks.sum())} cells marked")

    z = xyz[:, 2]
    near_surface = (z - raster.sample(surface)) <= params.tolerance
    is_ground = near_surface & ~raster.sample(marked)
    return np.where(is_ground, ClassificationLabel.GROUND, ClassificationLabel.NON_GROUND).astype(np.uint8)


@dataclass(frozen=True)
class PMFKernel:
    """Tile kernel writing a ``classification`` column with the PMF."""

    params: PMFParams
    attribute: str = "classification"

    name = "pmf"

    def __call__(self, cloud: PointCloud) -> Tuple[PointCloud, List[str]]:
        if len(cloud) == 0:
            raise InsufficientData("empty tile")
        labels = progressive_morphological_filter(cloud.xyz, self.params)
        counts = label_counts(labels)
        diagnostics = [f"{counts['ground']} ground, {counts['non_ground']} non-ground"]
        return cloud.with_attribute(self.attribute, labels), diagnostics

