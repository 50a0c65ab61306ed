"""Ground classification using a cloth simulation filter (CSF).

Algorithm:
1. Invert the point cloud (negate z)
2. Drop a virtual cloth onto the inverted surface from just above its
   highest point
3. Nodes that reach the surface stick to it; springs between
   neighbouring nodes keep the rest of the cloth from sagging into
   the pits left by buildings and vegetation
4. Points close to the cloth are ground, points far from it are not

Reference:
Zhang et al. (2016) "An Easy-to-Use Airborne LiDAR Data Filtering Method
Based on Cloth Simulation" Remote Sensing, 8(6), 501.

This implementation keeps the simulation deterministic: nodes drop by a
constant gravity step, collisions fix a node for good, and each
iteration applies ``rigidness`` Jacobi relaxation passes in which every
movable node moves half way towards the mean height of its neighbours.
"""

from dataclasses import dataclass
from typing import List, Tuple
import warnings

import numpy as np

from ..common.errors import ConfigError, InsufficientData, NonConvergence
from ..common.pointcloud import ClassificationLabel, PointCloud, label_counts
from ..utils.logging import get_logger
from .raster import fill_empty, rasterize_min

logger = get_logger(__name__)

GRAVITY = 0.2
"""Gravity acceleration of the cloth, scaled by ``time_step ** 2``."""

CLOTH_OFFSET = 0.05
"""Initial height of the cloth above the highest inverted point."""

FOUR_NEIGHBORS = ((-1, 0), (1, 0), (0, -1), (0, 1))
DIAGONAL_NEIGHBORS = ((-1, -1), (-1, 1), (1, -1), (1, 1))


@dataclass(frozen=True)
class CSFParams:
    """Parameters for CSF algorithm"""

    # Cloth resolution - spacing of cloth nodes in metres
    cloth_resolution: float = 0.5

    # Rigidness of cloth (1=soft, 2=medium, 3=hard)
    rigidness: int = 2

    # Max distance from cloth for a ground point (metres)
    class_threshold: float = 0.5

    # Simulation parameters
    max_iterations: int = 500
    time_step: float = 0.65
    convergence_epsilon: float = 0.005

    # Post-processing of fixed node heights
    smooth_slope: bool = True

    # Add springs to the four diagonal neighbours
    diagonal_springs: bool = False

    def __post_init__(self):
        if self.rigidness not in (1, 2, 3):
            raise ConfigError(f"rigidness must be 1, 2 or 3, got {self.rigidness}")
        if not self.cloth_resolution > 0:
            raise ConfigError("cloth_resolution must be positive")
        if self.class_threshold < 0:
            raise ConfigError("class_threshold must be non-negative")
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be >= 1")
        if not self.time_step > 0:
            raise ConfigError("time_step must be positive")
        if not self.convergence_epsilon > 0:
            raise ConfigError("convergence_epsilon must be positive")

    @property
    def gravity_step(self) -> float:
        return GRAVITY * self.time_step ** 2


def _neighbor_mean(values: np.ndarray, offsets, include_self: bool = False) -> np.ndarray:
    """Mean of the non-NaN neighbours of every cell (NaN where none exist)."""
    rows, cols = values.shape
    padded = np.pad(values, 1, constant_values=np.nan)
    total = np.zeros_like(values)
    count = np.zeros(values.shape, dtype=np.int64)
    if include_self:
        offsets = tuple(offsets) + ((0, 0),)
    for dr, dc in offsets:
        shifted = padded[1 + dr:1 + dr + rows, 1 + dc:1 + dc + cols]
        valid = ~np.isnan(shifted)
        total += np.where(valid, shifted, 0.0)
        count += valid
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(count > 0, total / np.maximum(count, 1), np.nan)


@dataclass
class ClothGrid:
    """Cloth nodes over a tile, heights in inverted space."""

    origin: Tuple[float, float]
    """World XY of node (0, 0)."""

    resolution: float
    """Node spacing."""

    heights: np.ndarray
    """Current node heights, shape (rows, cols)."""

    terrain: np.ndarray
    """Inverted terrain height under each node."""

    movable: np.ndarray
    """False once a node has collided with the terrain."""

    @classmethod
    def drape_over(cls, terrain: np.ndarray, origin: Tuple[float, float], resolution: float) -> "ClothGrid":
        start = float(np.max(terrain)) + CLOTH_OFFSET
        return cls(
            origin=origin,
            resolution=resolution,
            heights=np.full(terrain.shape, start, dtype=np.float64),
            terrain=terrain,
            movable=np.ones(terrain.shape, dtype=bool),
        )

    def drop(self, step: float) -> None:
        self.heights[self.movable] -= step

    def collide(self) -> int:
        """Clamp nodes that crossed the terrain and fix them."""
        hit = self.movable & (self.heights <= self.terrain)
        self.heights[hit] = self.terrain[hit]
        self.movable[hit] = False
        return int(hit.sum())

    def relax(self, diagonal: bool = False) -> None:
        """One Jacobi pass pulling movable nodes towards their neighbours."""
        offsets = FOUR_NEIGHBORS + DIAGONAL_NEIGHBORS if diagonal else FOUR_NEIGHBORS
        mean = _neighbor_mean(self.heights, offsets)
        pull = self.movable & ~np.isnan(mean)
        self.heights[pull] += 0.5 * (mean[pull] - self.heights[pull])

    def smooth_fixed(self) -> None:
        """Replace fixed node heights by the mean of their fixed 3x3 neighbourhood."""
        fixed_only = np.where(self.movable, np.nan, self.heights)
        mean = _neighbor_mean(fixed_only, FOUR_NEIGHBORS + DIAGONAL_NEIGHBORS, include_self=True)
        fixed = ~self.movable
        self.heights[fixed] = mean[fixed]

    def original_heights(self) -> np.ndarray:
        """Cloth heights flipped back to the original orientation."""
        return -self.heights


@dataclass
class CSFResult:
    """Outcome of one cloth simulation."""
    labels: np.ndarray
    iterations: int
    converged: bool
    cloth: ClothGrid


def simulate(cloth: ClothGrid, params: CSFParams) -> Tuple[int, bool]:
    """Run the cloth until it settles or the iteration budget runs out.

    Returns
    -------
    (int, bool)
        Number of iterations executed and whether the maximum node
        displacement dropped below the convergence epsilon.
    """
    step = params.gravity_step
    for iteration in range(1, params.max_iterations + 1):
        before = cloth.heights.copy()
        cloth.drop(step)
        cloth.collide()
        for _ in range(params.rigidness):
            cloth.relax(params.diagonal_springs)
        displacement = float(np.max(np.abs(cloth.heights - before)))
        if displacement < params.convergence_epsilon:
            return iteration, True
    return params.max_iterations, False


def cloth_simulation_filter(xyz: np.ndarray, params: CSFParams) -> CSFResult:
    """Classify points as ground or non-ground with the cloth simulation.

    Parameters
    ----------
    xyz : numpy.ndarray
        Array of shape (N, 3).
    params : CSFParams
        Simulation parameters.

    Returns
    -------
    CSFResult
        Labels plus simulation diagnostics.
    """
    if len(xyz) == 0:
        raise InsufficientData("CSF needs at least one point")

    # Nearest cloth node per point; lowest original z becomes the highest inverted z
    raster = rasterize_min(xyz, params.cloth_resolution, centered=True)
    terrain = -fill_empty(raster.values)
    origin = (raster.origin[0] + params.cloth_resolution / 2.0,
              raster.origin[1] + params.cloth_resolution / 2.0)
    cloth = ClothGrid.drape_over(terrain, origin, params.cloth_resolution)

    iterations, converged = simulate(cloth, params)
    if not converged:
        warnings.warn(
            f"cloth did not converge within {params.max_iterations} iterations",
            NonConvergence,
            stacklevel=2,
        )
        logger.warning(f"CSF stopped at the iteration budget ({params.max_iterations})")
    if params.smooth_slope:
        cloth.smooth_fixed()

    cloth_z = raster.sample(cloth.original_heights())
    is_ground = np.abs(xyz[:, 2] - cloth_z) <= params.class_threshold
    labels = np.where(is_ground, ClassificationLabel.GROUND, ClassificationLabel.NON_GROUND).astype(np.uint8)
    return CSFResult(labels=labels, iterations=iterations, converged=converged, cloth=cloth)


@dataclass(frozen=True)
class CSFKernel:
    """Tile kernel writing a ``classification`` column with the CSF."""

    params: CSFParams
    attribute: str = "classification"

    name = "csf"

    def __call__(self, cloud: PointCloud) -> Tuple[PointCloud, List[str]]:
        if len(cloud) == 0:
            raise InsufficientData("empty tile")
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergence)
            result = cloth_simulation_filter(cloud.xyz, self.params)
        counts = label_counts(result.labels)
        diagnostics = [
            f"{counts['ground']} ground, {counts['non_ground']} non-ground "
            f"after {result.iterations} iterations"
        ]
        if not result.converged:
            diagnostics.append(
                f"NonConvergence: iteration budget of {self.params.max_iterations} reached"
            )
        return cloud.with_attribute(self.attribute, result.labels), diagnostics
