"""Uniform bucket index over 2D point positions.

Points are binned into square buckets by flooring their offset from the
lower-left corner of the cloud, exactly as the tiler bins points into
tiles.  A bounding-box query then only touches the buckets overlapping
the box, so clipping every tile costs O(points) overall instead of
O(points x tiles).
"""

import math
from typing import Tuple

import numpy as np


class GridIndex:
    """Bucket index answering bounding-box candidate queries."""

    def __init__(self, xy: np.ndarray, bucket_size: float):
        if not bucket_size > 0:
            raise ValueError("bucket_size must be positive")
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        self.bucket_size = float(bucket_size)
        self.n_points = len(xy)
        if self.n_points == 0:
            self.origin = np.zeros(2)
            self.shape = (0, 0)
            self._order = np.empty(0, dtype=np.int64)
            self._keys = np.empty(0, dtype=np.int64)
            return

        self.origin = xy.min(axis=0)
        ij = np.floor((xy - self.origin) / self.bucket_size).astype(np.int64)
        self.shape = (int(ij[:, 0].max()) + 1, int(ij[:, 1].max()) + 1)
        keys = ij[:, 0] * self.shape[1] + ij[:, 1]
        # Stable sort keeps input order inside each bucket
        self._order = np.argsort(keys, kind="stable")
        self._keys = keys[self._order]

    def query_bounds(self, bounds: Tuple[float, float, float, float]) -> np.ndarray:
        """Return sorted indices of points whose bucket overlaps a box.

        Parameters
        ----------
        bounds : (x_min, y_min, x_max, y_max)
            Query box.

        Returns
        -------
        numpy.ndarray
            Candidate point indices in input order.  The candidates
            are a superset of the points inside the box.
        """
        if self.n_points == 0:
            return np.empty(0, dtype=np.int64)
        x_min, y_min, x_max, y_max = bounds
        i0 = max(0, int(math.floor((x_min - self.origin[0]) / self.bucket_size)))
        j0 = max(0, int(math.floor((y_min - self.origin[1]) / self.bucket_size)))
        i1 = min(self.shape[0] - 1, int(math.floor((x_max - self.origin[0]) / self.bucket_size)))
        j1 = min(self.shape[1] - 1, int(math.floor((y_max - self.origin[1]) / self.bucket_size)))
        if i0 > i1 or j0 > j1:
            return np.empty(0, dtype=np.int64)

        chunks = []
        for i in range(i0, i1 + 1):
            lo = np.searchsorted(self._keys, i * self.shape[1] + j0, side="left")
            hi = np.searchsorted(self._keys, i * self.shape[1] + j1, side="right")
            if hi > lo:
                chunks.append(self._order[lo:hi])
        if not chunks:
            return np.empty(0, dtype=np.int64)
        return np.sort(np.concatenate(chunks))
