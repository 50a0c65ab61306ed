"""Point cloud container shared by the tiling code and the kernels.

A `PointCloud` keeps the XYZ coordinates in an `(N, 3)` float64 array
together with a stable integer identity per point and a dictionary of
per-point attribute columns.  Clouds are treated as immutable: adding a
column returns a new cloud that shares the coordinate array.

Two kinds of attribute columns are supported.  Plain columns are 1-D
arrays with one value per point (e.g. ``classification``).  Keyed
columns are 2-D arrays of shape ``(N, K)`` whose K columns are indexed
by a parameter value, which is how a DBSCAN sweep stores one label
column per neighbourhood radius.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

NOISE = -1
"""Cluster label assigned to points that belong to no cluster."""

COORDINATE_FIELDS = ("x", "y", "z")


class ClassificationLabel(IntEnum):
    """Ground classification per point.

    The numeric values match the ASPRS LAS classification codes so the
    column can be written to disk without remapping.
    """

    UNCLASSIFIED = 0
    NON_GROUND = 1
    GROUND = 2


@dataclass(frozen=True)
class PointCloud:
    """Ordered set of 3D points with attached attribute columns."""

    xyz: np.ndarray
    """Array of shape (N, 3) with the point coordinates."""

    ids: Optional[np.ndarray] = None
    """Stable point identities.  Defaults to the row numbers."""

    attributes: Dict[str, np.ndarray] = field(default_factory=dict)
    """Per-point attribute columns, 1-D or keyed 2-D."""

    attribute_keys: Dict[str, Tuple] = field(default_factory=dict)
    """Column keys for each 2-D attribute."""

    def __post_init__(self):
        xyz = np.asarray(self.xyz, dtype=np.float64).reshape(-1, 3)
        object.__setattr__(self, "xyz", xyz)
        if self.ids is None:
            ids = np.arange(len(xyz), dtype=np.int64)
        else:
            ids = np.asarray(self.ids, dtype=np.int64)
        if len(ids) != len(xyz):
            raise ValueError("ids must have one entry per point")
        object.__setattr__(self, "ids", ids)
        for name, values in self.attributes.items():
            if len(values) != len(xyz):
                raise ValueError(f"attribute {name!r} has {len(values)} values for {len(xyz)} points")

    def __len__(self) -> int:
        return len(self.xyz)

    @property
    def x(self) -> np.ndarray:
        return self.xyz[:, 0]

    @property
    def y(self) -> np.ndarray:
        return self.xyz[:, 1]

    @property
    def z(self) -> np.ndarray:
        return self.xyz[:, 2]

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """XY bounding box as ``(x_min, y_min, x_max, y_max)``."""
        if len(self) == 0:
            raise ValueError("empty point cloud has no bounds")
        x_min, y_min = self.xyz[:, :2].min(axis=0)
        x_max, y_max = self.xyz[:, :2].max(axis=0)
        return float(x_min), float(y_min), float(x_max), float(y_max)

    def density(self, area: Optional[float] = None) -> float:
        """Average number of points per unit area.

        Parameters
        ----------
        area : float, optional
            Area covered by the cloud.  When omitted the area of the XY
            bounding box is used.

        Returns
        -------
        float
            Points per square unit, or 0.0 for degenerate extents.
        """
        if len(self) == 0:
            return 0.0
        if area is None:
            x_min, y_min, x_max, y_max = self.bounds
            area = (x_max - x_min) * (y_max - y_min)
        return len(self) / area if area > 0 else 0.0

    def with_attribute(self, name: str, values: np.ndarray) -> "PointCloud":
        """Return a copy of the cloud with one more 1-D column."""
        values = np.asarray(values)
        if values.shape != (len(self),):
            raise ValueError(f"attribute {name!r} must have shape ({len(self)},)")
        attributes = dict(self.attributes)
        attributes[name] = values
        keys = {k: v for k, v in self.attribute_keys.items() if k != name}
        return PointCloud(self.xyz, self.ids, attributes, keys)

    def with_columns(self, name: str, columns: Mapping) -> "PointCloud":
        """Return a copy of the cloud with a keyed set of label columns.

        Parameters
        ----------
        name : str
            Attribute name for the whole column set.
        columns : mapping
            Mapping from parameter value to a column of length N.  The
            insertion order of the mapping is kept.
        """
        keys = tuple(columns.keys())
        if keys:
            stacked = np.column_stack([np.asarray(columns[k]) for k in keys])
        else:
            stacked = np.empty((len(self), 0), dtype=np.int32)
        if stacked.shape[0] != len(self):
            raise ValueError(f"columns of {name!r} must have {len(self)} rows")
        attributes = dict(self.attributes)
        attributes[name] = stacked
        attribute_keys = dict(self.attribute_keys)
        attribute_keys[name] = keys
        return PointCloud(self.xyz, self.ids, attributes, attribute_keys)

    def columns(self, name: str) -> Dict:
        """Return a keyed attribute as a mapping from key to column."""
        keys = self.attribute_keys.get(name)
        if keys is None:
            raise KeyError(f"{name!r} is not a keyed attribute")
        values = self.attributes[name]
        return {key: values[:, j] for j, key in enumerate(keys)}

    def subset(self, selection: np.ndarray) -> "PointCloud":
        """Return the points selected by a boolean mask or index array."""
        selection = np.asarray(selection)
        if selection.dtype != bool:
            selection = selection.astype(np.intp)
        attributes = {name: values[selection] for name, values in self.attributes.items()}
        return PointCloud(self.xyz[selection], self.ids[selection], attributes, dict(self.attribute_keys))

    def select(self, fields: Iterable[str]) -> "PointCloud":
        """Keep only the named attribute columns (coordinates always stay)."""
        wanted = [f for f in fields if f not in COORDINATE_FIELDS]
        missing = [f for f in wanted if f not in self.attributes]
        if missing:
            raise KeyError(f"unknown fields: {', '.join(missing)}")
        attributes = {name: self.attributes[name] for name in wanted}
        keys = {name: k for name, k in self.attribute_keys.items() if name in attributes}
        return PointCloud(self.xyz, self.ids, attributes, keys)

    @classmethod
    def concat(cls, clouds: Sequence["PointCloud"]) -> "PointCloud":
        """Concatenate clouds that carry the same attribute columns."""
        clouds = list(clouds)
        if not clouds:
            return cls(np.empty((0, 3)))
        names = set(clouds[0].attributes)
        for cloud in clouds[1:]:
            if set(cloud.attributes) != names:
                raise ValueError("cannot concatenate clouds with different attributes")
            if cloud.attribute_keys != clouds[0].attribute_keys:
                raise ValueError("cannot concatenate clouds with different column keys")
        attributes = {
            name: np.concatenate([c.attributes[name] for c in clouds]) for name in names
        }
        return cls(
            np.concatenate([c.xyz for c in clouds]),
            np.concatenate([c.ids for c in clouds]),
            attributes,
            dict(clouds[0].attribute_keys),
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Flatten the cloud into a DataFrame.

        Keyed columns are expanded to one DataFrame column per key,
        named ``<attribute>_<key>``.
        """
        data = {"id": self.ids, "x": self.x, "y": self.y, "z": self.z}
        for name, values in self.attributes.items():
            if values.ndim == 1:
                data[name] = values
                continue
            for j, key in enumerate(self.attribute_keys.get(name, range(values.shape[1]))):
                data[f"{name}_{key:g}" if isinstance(key, float) else f"{name}_{key}"] = values[:, j]
        return pd.DataFrame(data)


def from_columns(x: np.ndarray, y: np.ndarray, z: np.ndarray, **attributes: np.ndarray) -> PointCloud:
    """Build a cloud from separate coordinate arrays."""
    xyz = np.column_stack([x, y, z]).astype(np.float64)
    return PointCloud(xyz, attributes={k: np.asarray(v) for k, v in attributes.items()})


def label_counts(labels: np.ndarray) -> Dict[str, int]:
    """Count ground and non-ground labels in a classification column."""
    return {
        label.name.lower(): int(np.sum(labels == label))
        for label in ClassificationLabel
    }


def unique_clusters(labels: np.ndarray) -> List[int]:
    """Sorted cluster ids present in a label column, NOISE excluded."""
    return [int(c) for c in np.unique(labels) if c != NOISE]
