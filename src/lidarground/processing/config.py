"""Typed pipeline configuration.

The configuration surface is split into tiling, execution, output and
one parameter block per kernel.  `PipelineConfig.from_dict` accepts the
mapping produced by `lidarground.utils.config.load_config`, e.g.::

    tiling:
      cell_size: 50
      rotation_degrees: 30
      buffer_width: 5
    pmf:
      window_sizes: [0.5, 1, 2, 4]
      thresholds: [0.1, 0.2, 0.5, 1.0]
    execution:
      max_workers: 4

Unknown sections or keys are rejected so typos fail at setup time.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping

from ..common.errors import ConfigError
from ..ground.csf import CSFParams
from ..ground.dbscan import DBSCANParams
from ..ground.pmf import PMFParams
from ..utils.config import load_config

BACKENDS = ("process", "thread")


@dataclass(frozen=True)
class TilingConfig:
    """Tiling grid parameters."""

    cell_size: float = 50.0
    rotation_degrees: float = 0.0
    buffer_width: float = 0.0

    def __post_init__(self):
        if not self.cell_size > 0:
            raise ConfigError(f"cell_size must be positive, got {self.cell_size}")
        if self.buffer_width < 0:
            raise ConfigError(f"buffer_width must be >= 0, got {self.buffer_width}")


@dataclass(frozen=True)
class ExecutionConfig:
    """Worker pool parameters."""

    max_workers: int = 4
    backend: str = "process"
    progress: bool = True

    def __post_init__(self):
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {BACKENDS}, got {self.backend!r}")


@dataclass(frozen=True)
class OutputConfig:
    """Output parameters."""

    scale: float = 0.01
    """Coordinate precision of written files (map units)."""

    def __post_init__(self):
        if not self.scale > 0:
            raise ConfigError(f"scale must be positive, got {self.scale}")


def _build(cls, values: Mapping[str, Any], section: str):
    if values is None:
        return cls()
    if not isinstance(values, Mapping):
        raise ConfigError(f"section {section!r} must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"unknown keys in {section!r}: {', '.join(sorted(unknown))}")
    kwargs = {}
    for key, value in values.items():
        # YAML lists become tuples so the frozen params stay hashable
        kwargs[key] = tuple(value) if isinstance(value, list) else value
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigError(f"invalid values in {section!r}: {exc}") from exc


@dataclass(frozen=True)
class PipelineConfig:
    """Complete configuration of a classification run."""

    tiling: TilingConfig = field(default_factory=TilingConfig)
    dbscan: DBSCANParams = field(default_factory=DBSCANParams)
    pmf: PMFParams = field(default_factory=PMFParams)
    csf: CSFParams = field(default_factory=CSFParams)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    SECTIONS = {
        "tiling": TilingConfig,
        "dbscan": DBSCANParams,
        "pmf": PMFParams,
        "csf": CSFParams,
        "execution": ExecutionConfig,
        "output": OutputConfig,
    }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        unknown = set(data) - set(cls.SECTIONS)
        if unknown:
            raise ConfigError(f"unknown configuration sections: {', '.join(sorted(unknown))}")
        return cls(**{
            name: _build(section_cls, data.get(name), name)
            for name, section_cls in cls.SECTIONS.items()
        })

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        return cls.from_dict(load_config(path))

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {f.name: getattr(getattr(self, name), f.name) for f in fields(section_cls)}
            for name, section_cls in self.SECTIONS.items()
        }
