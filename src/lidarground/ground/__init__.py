"""Ground classification kernels.

Three interchangeable per-tile kernels: a DBSCAN sweep over
neighbourhood radii, a progressive morphological filter and a cloth
simulation filter.  Each kernel is a callable taking a `PointCloud`
and returning the cloud with its label column(s) attached plus a list
of diagnostic messages.
"""

from .dbscan import DBSCANKernel, DBSCANParams, dbscan_labels, dbscan_sweep
from .pmf import PMFKernel, PMFParams, progressive_morphological_filter
from .csf import CSFKernel, CSFParams, CSFResult, cloth_simulation_filter

__all__ = [
    "DBSCANKernel",
    "DBSCANParams",
    "dbscan_labels",
    "dbscan_sweep",
    "PMFKernel",
    "PMFParams",
    "progressive_morphological_filter",
    "CSFKernel",
    "CSFParams",
    "CSFResult",
    "cloth_simulation_filter",
]
