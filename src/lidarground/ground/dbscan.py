"""Density clustering of a tile for a sweep of neighbourhood radii.

For a fixed `min_pts`, every radius ``eps`` in the sweep produces one
label column.  A point is a core point when its closed ``eps``
neighbourhood holds at least `min_pts` points, itself included.  Core
points that are neighbours share a cluster; non-core points inside a
core point's neighbourhood join the first cluster that reaches them;
everything else is NOISE.

Neighbourhoods come from one `sklearn.neighbors.KDTree` built on
tile-local coordinates and reused for every radius.  Clusters are
expanded with an explicit frontier queue, so dense tiles cannot blow
the call stack.
"""

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
from sklearn.neighbors import KDTree

from ..common.errors import ConfigError, InsufficientData
from ..common.pointcloud import NOISE, PointCloud
from ..utils.logging import get_logger

logger = get_logger(__name__)

UNASSIGNED = -2


@dataclass(frozen=True)
class DBSCANParams:
    """Parameters of a DBSCAN sweep."""

    min_pts: int = 10
    """Minimum neighbourhood size (self included) for a core point."""

    eps_values: Tuple[float, ...] = (0.5, 1.0, 2.0)
    """Neighbourhood radii, processed in the given order."""

    use_z: bool = True
    """Cluster in 3D.  When False only XY positions are used."""

    def __post_init__(self):
        object.__setattr__(self, "eps_values", tuple(float(e) for e in self.eps_values))
        if self.min_pts < 1:
            raise ConfigError(f"min_pts must be >= 1, got {self.min_pts}")
        if not self.eps_values:
            raise ConfigError("eps_values must not be empty")
        if any(e <= 0 for e in self.eps_values):
            raise ConfigError("eps_values must all be positive")
        if len(set(self.eps_values)) != len(self.eps_values):
            raise ConfigError("eps_values must not contain duplicates")


def core_mask(neighborhoods: Sequence[np.ndarray], min_pts: int) -> np.ndarray:
    """Boolean mask of core points given closed neighbourhoods."""
    counts = np.fromiter((len(n) for n in neighborhoods), dtype=np.int64, count=len(neighborhoods))
    return counts >= min_pts


def dbscan_labels(neighborhoods: Sequence[np.ndarray], min_pts: int) -> np.ndarray:
    """Label points from precomputed closed neighbourhoods.

    Parameters
    ----------
    neighborhoods : sequence of numpy.ndarray
        ``neighborhoods[i]`` holds the indices of all points within
        ``eps`` of point ``i`` (``i`` included).
    min_pts : int
        Core point threshold.

    Returns
    -------
    numpy.ndarray
        int32 labels; clusters numbered from 0 in discovery order,
        NOISE (-1) elsewhere.
    """
    n = len(neighborhoods)
    core = core_mask(neighborhoods, min_pts)
    labels = np.full(n, UNASSIGNED, dtype=np.int32)
    cluster_id = 0
    for seed in range(n):
        if labels[seed] != UNASSIGNED or not core[seed]:
            continue
        labels[seed] = cluster_id
        frontier = deque([seed])
        while frontier:
            p = frontier.popleft()
            for q in neighborhoods[p]:
                if labels[q] != UNASSIGNED:
                    continue
                labels[q] = cluster_id
                # Only core points extend the cluster further
                if core[q]:
                    frontier.append(q)
        cluster_id += 1
    labels[labels == UNASSIGNED] = NOISE
    return labels


def _local_coordinates(xyz: np.ndarray, use_z: bool) -> np.ndarray:
    coords = xyz if use_z else xyz[:, :2]
    return coords - coords.min(axis=0)


def dbscan_sweep(
    xyz: np.ndarray,
    min_pts: int,
    eps_values: Sequence[float],
    use_z: bool = True,
) -> Dict[float, np.ndarray]:
    """Run DBSCAN once per radius on the same point set.

    Parameters
    ----------
    xyz : numpy.ndarray
        Array of shape (N, 3).
    min_pts : int
        Core point threshold.
    eps_values : sequence of float
        Radii to sweep.
    use_z : bool, optional
        Use 3D distances (default) or XY distances only.

    Returns
    -------
    dict
        Mapping from radius to label column, in sweep order.  Empty if
        the point set has fewer than `min_pts` points, since no core
        point can exist.
    """
    if len(xyz) < min_pts or len(xyz) == 0:
        return {}
    tree = KDTree(_local_coordinates(np.asarray(xyz, dtype=np.float64), use_z))
    coords = np.asarray(tree.data)
    columns: Dict[float, np.ndarray] = {}
    for eps in eps_values:
        neighborhoods = tree.query_radius(coords, r=eps)
        columns[float(eps)] = dbscan_labels(neighborhoods, min_pts)
    return columns


def cluster_summary(columns: Dict[float, np.ndarray]) -> List[str]:
    """One line per radius with cluster and noise counts."""
    lines = []
    for eps, labels in columns.items():
        n_clusters = len(np.unique(labels[labels != NOISE]))
        n_noise = int(np.sum(labels == NOISE))
        lines.append(f"eps={eps:g}: {n_clusters} clusters, {n_noise} noise points")
    return lines


@dataclass(frozen=True)
class DBSCANKernel:
    """Tile kernel attaching one cluster label column per radius."""

    params: DBSCANParams
    attribute: str = "cluster"

    name = "dbscan"

    def __call__(self, cloud: PointCloud) -> Tuple[PointCloud, List[str]]:
        if len(cloud) < self.params.min_pts:
            raise InsufficientData(
                f"{len(cloud)} points, fewer than min_pts={self.params.min_pts}"
            )
        columns = dbscan_sweep(cloud.xyz, self.params.min_pts, self.params.eps_values, self.params.use_z)
        diagnostics = cluster_summary(columns)
        for line in diagnostics:
            logger.debug(line)
        return cloud.with_columns(self.attribute, columns), diagnostics
