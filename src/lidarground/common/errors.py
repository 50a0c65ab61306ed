"""Exception taxonomy for the ground classification pipeline.

Geometry and configuration errors are raised at setup time and abort a
run before any tile work starts.  `InsufficientData` and
`KernelFailure` are per-tile conditions which the executor captures and
reports next to the successful tiles.  `NonConvergence` is a warning
category only: a cloth simulation that ran out of iterations still
produces a usable classification.
"""


class LidarGroundError(Exception):
    """Base class for all errors raised by lidarground."""


class InvalidGeometry(LidarGroundError, ValueError):
    """Degenerate polygon, grid or buffer definition."""


class ConfigError(LidarGroundError, ValueError):
    """Invalid or inconsistent configuration values."""


class InsufficientData(LidarGroundError):
    """A tile holds too few points for the kernel to do anything useful."""


class KernelFailure(LidarGroundError):
    """Unexpected error raised inside a kernel for a single tile."""


class IOFailure(LidarGroundError, OSError):
    """Reading from or writing to an external boundary failed."""


class NonConvergence(UserWarning):
    """The cloth simulation hit its iteration budget before converging."""
