"""Processing package: configuration, parallel tile execution and the
end-to-end classification pipeline."""

from .config import PipelineConfig, TilingConfig, ExecutionConfig, OutputConfig
from .executor import TileOutcome, run_over_tiles, run_tile
from .pipeline import GroundClassificationPipeline, RunReport, make_kernel

__all__ = [
    "PipelineConfig",
    "TilingConfig",
    "ExecutionConfig",
    "OutputConfig",
    "TileOutcome",
    "run_over_tiles",
    "run_tile",
    "GroundClassificationPipeline",
    "RunReport",
    "make_kernel",
]
