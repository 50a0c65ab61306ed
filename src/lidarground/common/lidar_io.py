"""Boundary adapters: LAS/LAZ point clouds and area polygons.

`LasSource` reads a LAS/LAZ file into a `PointCloud`, `LasSink` writes
a classified cloud back with a configurable coordinate scale, and
`read_polygon` loads the area of interest from any vector format
geopandas understands (or a plain WKT text file).  Every failure is
reported as `IOFailure`.
"""

from pathlib import Path
from typing import Iterable, Optional

import geopandas as gpd
import laspy
import numpy as np
import shapely
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union

from .errors import IOFailure
from .pointcloud import COORDINATE_FIELDS, PointCloud
from ..utils.logging import get_logger

logger = get_logger(__name__)

MAX_EXTRA_NAME = 32
"""LAS extra byte dimension names are limited to 32 characters."""


class LasSource:
    """Readable point cloud source backed by a LAS/LAZ file."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> laspy.LasData:
        if not self.path.is_file():
            raise IOFailure(f"point cloud not found: {self.path}")
        try:
            with laspy.open(self.path) as f:
                return f.read()
        except (OSError, laspy.errors.LaspyException) as exc:
            raise IOFailure(f"cannot read {self.path}: {exc}") from exc

    def select(self, fields: Optional[Iterable[str]] = None) -> PointCloud:
        """Read coordinates plus the requested dimensions.

        Parameters
        ----------
        fields : iterable of str, optional
            Dimension names such as ``classification`` or
            ``intensity``.  ``x``, ``y`` and ``z`` are always read.

        Returns
        -------
        PointCloud
            Cloud whose ids are the file's point order.
        """
        las = self._read()
        xyz = np.column_stack([np.asarray(las.x), np.asarray(las.y), np.asarray(las.z)])
        available = set(las.point_format.dimension_names)
        attributes = {}
        for name in fields or ():
            if name in COORDINATE_FIELDS:
                continue
            if name not in available:
                raise IOFailure(f"{self.path} has no dimension {name!r}")
            attributes[name] = np.asarray(las[name])
        logger.info(f"Read {len(xyz):,} points from {self.path.name}")
        return PointCloud(xyz, attributes=attributes)


def read_polygon(path) -> Polygon:
    """Read an area polygon from a vector file.

    All polygon features of the file are unioned.  Files with a
    ``.wkt`` suffix are parsed as well-known text.

    Raises
    ------
    IOFailure
        If the file cannot be read or holds no polygon.
    """
    path = Path(path)
    if not path.is_file():
        raise IOFailure(f"polygon file not found: {path}")
    try:
        if path.suffix.lower() == ".wkt":
            geometry = shapely.from_wkt(path.read_text(encoding="utf-8").strip())
        else:
            frame = gpd.read_file(path)
            geometry = unary_union(list(frame.geometry))
    except Exception as exc:
        raise IOFailure(f"cannot read polygon from {path}: {exc}") from exc
    if not isinstance(geometry, (Polygon, MultiPolygon)):
        raise IOFailure(f"{path} does not contain a polygon")
    return geometry


def _extra_name(name: str, key=None) -> str:
    if key is None:
        return name[:MAX_EXTRA_NAME]
    return f"{name}_{key}"[:MAX_EXTRA_NAME]


class LasSink:
    """Writable point cloud sink producing LAS/LAZ files."""

    def __init__(self, scale: float = 0.01, point_format: int = 6, version: str = "1.4"):
        if not scale > 0:
            raise ValueError("scale must be positive")
        self.scale = scale
        self.point_format = point_format
        self.version = version

    def write(self, cloud: PointCloud, destination) -> Path:
        """Write a cloud, keeping its attribute columns.

        ``classification`` goes into the standard dimension; every other
        1-D column becomes an extra byte dimension.  Keyed columns are
        flattened to ``<name>_<j>`` dimensions whose description holds
        the key.

        Returns
        -------
        Path
            The written file.
        """
        destination = Path(destination)
        header = laspy.LasHeader(point_format=self.point_format, version=self.version)
        header.scales = np.array([self.scale] * 3)
        if len(cloud):
            header.offsets = np.floor(cloud.xyz.min(axis=0))

        standard = set(header.point_format.dimension_names)
        extras = []
        for name, values in cloud.attributes.items():
            if name in standard:
                continue
            if values.ndim == 1:
                extras.append((_extra_name(name), values, ""))
                continue
            for j, key in enumerate(cloud.attribute_keys.get(name, range(values.shape[1]))):
                extras.append((_extra_name(name, j), values[:, j], f"{name}={key}"[:MAX_EXTRA_NAME]))
        for extra_name, values, description in extras:
            header.add_extra_dim(laspy.ExtraBytesParams(
                name=extra_name, type=values.dtype, description=description
            ))

        las = laspy.LasData(header)
        las.x = cloud.x
        las.y = cloud.y
        las.z = cloud.z
        for name, values in cloud.attributes.items():
            if name in standard:
                las[name] = values
        for extra_name, values, _ in extras:
            las[extra_name] = values

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            las.write(destination)
        except (OSError, laspy.errors.LaspyException) as exc:
            raise IOFailure(f"cannot write {destination}: {exc}") from exc
        logger.info(f"Wrote {len(cloud):,} points to {destination}")
        return destination


def write_cloud(cloud: PointCloud, destination, scale: float = 0.01) -> Path:
    """Write a cloud with the default sink settings."""
    return LasSink(scale=scale).write(cloud, destination)
