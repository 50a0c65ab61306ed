"""Tiled ground classification pipeline.

This module orchestrates a complete run: build the rotated tiling grid
over the area of interest, clip the point cloud into buffered tiles,
run one of the ground kernels over all tiles in parallel, and merge
the per-tile results into one classified cloud.  Geometry and
configuration problems abort the run before any tile work starts;
per-tile problems are collected in the returned `RunReport`.

Usage:
    lidarground --input scan.laz --boundary site.gpkg --output ground.laz --algorithm csf
"""

import argparse
from dataclasses import dataclass, field
from pathlib import Path
import sys
import threading
from typing import Dict, List, Optional, Tuple

import pandas as pd

from ..common.errors import ConfigError, InsufficientData, LidarGroundError
from ..common.lidar_io import LasSink, LasSource, read_polygon
from ..common.pointcloud import PointCloud
from ..ground.csf import CSFKernel
from ..ground.dbscan import DBSCANKernel
from ..ground.pmf import PMFKernel
from ..tiling.tiler import Tile, TileCatalog
from ..utils.geometry import polygon_from_bounds, validate_polygon
from ..utils.logging import get_logger, set_level
from .config import PipelineConfig
from .executor import CANCELLED, FAILED, OK, SKIPPED, Kernel, TileOutcome, run_over_tiles

logger = get_logger(__name__)

ALGORITHMS = ("dbscan", "pmf", "csf")


@dataclass
class RunReport:
    """Merged cloud plus the status of every tile."""

    cloud: PointCloud
    outcomes: Dict[int, TileOutcome]
    tiles: List[Tile] = field(default_factory=list)
    algorithm: str = ""

    def _ids(self, status: str) -> List[int]:
        return sorted(t for t, o in self.outcomes.items() if o.status == status)

    @property
    def succeeded(self) -> List[int]:
        return self._ids(OK)

    @property
    def skipped(self) -> List[Tuple[int, str]]:
        return [(t, self.outcomes[t].reason) for t in self._ids(SKIPPED)]

    @property
    def failed(self) -> List[Tuple[int, str]]:
        return [(t, self.outcomes[t].reason) for t in self._ids(FAILED)]

    @property
    def cancelled(self) -> List[int]:
        return self._ids(CANCELLED)

    @property
    def complete(self) -> bool:
        """True when every tile was classified."""
        return len(self.succeeded) == len(self.outcomes)

    @property
    def diagnostics(self) -> Dict[int, List[str]]:
        return {t: o.diagnostics for t, o in sorted(self.outcomes.items()) if o.diagnostics}

    def to_dataframe(self) -> pd.DataFrame:
        """One row per tile: metadata, status, reason and diagnostics."""
        rows = []
        for tile in self.tiles:
            outcome = self.outcomes.get(tile.tile_id)
            row = tile.to_metadata_dict()
            row["status"] = outcome.status if outcome else CANCELLED
            row["reason"] = outcome.reason if outcome else None
            row["diagnostics"] = "; ".join(outcome.diagnostics) if outcome else ""
            rows.append(row)
        return pd.DataFrame(rows)

    def export_report(self, path: Path) -> Path:
        """Write the per-tile table to Parquet."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_dataframe().to_parquet(path, index=False)
        return path


def recommended_buffer_width(algorithm: str, config: PipelineConfig) -> float:
    """Smallest buffer at which tile edges do not change a kernel's result.

    A PMF opening reaches `2 * window` across, so an object cut by the
    buffer edge survives unless the buffer is at least twice the largest
    window.  DBSCAN needs one radius of context.  The cloth has no fixed
    reach, so no minimum is enforced for CSF.
    """
    if algorithm == "pmf":
        return 2.0 * max(config.pmf.window_sizes)
    if algorithm == "dbscan":
        return max(config.dbscan.eps_values)
    return 0.0


def make_kernel(algorithm: str, config: PipelineConfig) -> Kernel:
    """Instantiate the tile kernel for an algorithm name."""
    if algorithm == "dbscan":
        return DBSCANKernel(config.dbscan)
    if algorithm == "pmf":
        return PMFKernel(config.pmf)
    if algorithm == "csf":
        return CSFKernel(config.csf)
    raise ConfigError(f"unknown algorithm {algorithm!r}, expected one of {ALGORITHMS}")


class GroundClassificationPipeline:
    """Tile, classify and merge a point cloud with one ground kernel."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        """Initialize the pipeline.

        Parameters
        ----------
        config : PipelineConfig, optional
            Run configuration.  Defaults are used when omitted.
        """
        self.config = config or PipelineConfig()
        self.catalog = TileCatalog(
            cell_size=self.config.tiling.cell_size,
            rotation_degrees=self.config.tiling.rotation_degrees,
            buffer_width=self.config.tiling.buffer_width,
        )

    def step_1_build_tiles(self, area, algorithm: Optional[str] = None) -> List[Tile]:
        """Validate the area polygon and build the buffered tiles.

        When `algorithm` is given, a warning is logged if the buffer is
        narrower than `recommended_buffer_width` for that kernel.
        """
        validate_polygon(area)
        if algorithm is not None:
            recommended = recommended_buffer_width(algorithm, self.config)
            if self.catalog.buffer_width < recommended:
                logger.warning(
                    f"Buffer width {self.catalog.buffer_width:g} is below {recommended:g} "
                    f"for {algorithm}: objects crossing tile edges may be classified as ground"
                )
        tiles = self.catalog.build(area)
        logger.info(f"Step 1: {len(tiles)} tiles")
        return tiles

    def step_2_clip(self, cloud: PointCloud, tiles: List[Tile]) -> List[Tile]:
        """Attach to every tile the points inside its buffered polygon."""
        if len(cloud) == 0:
            raise InsufficientData("input point cloud is empty")
        logger.info(f"Step 2: clipping {len(cloud):,} points "
                    f"(density {cloud.density():.1f} pts/unit^2)")
        return self.catalog.clip_all(cloud, tiles)

    def step_3_classify(
        self,
        tiles: List[Tile],
        kernel: Kernel,
        stop_event: Optional[threading.Event] = None,
    ) -> Dict[int, TileOutcome]:
        """Run the kernel over all tiles."""
        execution = self.config.execution
        logger.info(f"Step 3: running {getattr(kernel, 'name', 'kernel')} on {len(tiles)} tiles "
                    f"with {execution.max_workers} {execution.backend} workers")
        return run_over_tiles(
            tiles,
            kernel,
            max_workers=execution.max_workers,
            backend=execution.backend,
            stop_event=stop_event,
            progress=execution.progress,
        )

    def step_4_merge(self, tiles: List[Tile], outcomes: Dict[int, TileOutcome]) -> PointCloud:
        """Merge successful tiles into one cloud."""
        results = {t: o.result for t, o in outcomes.items() if o.ok}
        merged = self.catalog.merge(results, tiles)
        logger.info(f"Step 4: merged {len(results)}/{len(tiles)} tiles into {len(merged):,} points")
        return merged

    def step_5_export(self, report: RunReport, destination: Path, report_path: Optional[Path] = None) -> Path:
        """Write the merged cloud and, optionally, the tile report."""
        written = LasSink(scale=self.config.output.scale).write(report.cloud, destination)
        if report_path is not None:
            report.export_report(report_path)
            logger.info(f"Step 5: tile report written to {report_path}")
        return written

    def run(
        self,
        cloud: PointCloud,
        area,
        algorithm: str,
        stop_event: Optional[threading.Event] = None,
    ) -> RunReport:
        """Run the complete pipeline.

        Parameters
        ----------
        cloud : PointCloud
            Input points.
        area : Polygon or MultiPolygon
            Area of interest.
        algorithm : {"dbscan", "pmf", "csf"}
            Ground kernel to run.
        stop_event : threading.Event, optional
            Cancellation signal forwarded to the executor.

        Returns
        -------
        RunReport
            Merged cloud with the status of every tile.
        """
        # Fail fast on configuration and geometry before any tile work
        kernel = make_kernel(algorithm, self.config)
        tiles = self.step_1_build_tiles(area, algorithm)
        tiles = self.step_2_clip(cloud, tiles)
        outcomes = self.step_3_classify(tiles, kernel, stop_event)
        merged = self.step_4_merge(tiles, outcomes)
        report = RunReport(cloud=merged, outcomes=outcomes, tiles=tiles, algorithm=algorithm)

        logger.info(
            f"Run complete: {len(report.succeeded)} ok, {len(report.skipped)} skipped, "
            f"{len(report.failed)} failed, {len(report.cancelled)} cancelled"
        )
        for tile_id, reason in report.failed:
            logger.warning(f"  tile {tile_id}: {reason}")
        return report


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(
        description="Classify ground points of a LiDAR scan tile by tile"
    )
    parser.add_argument("--input", type=str, required=True, help="Path to input LAS/LAZ file")
    parser.add_argument("--output", type=str, required=True, help="Path of the classified LAS/LAZ file")
    parser.add_argument(
        "--boundary",
        type=str,
        default=None,
        help="Area of interest (any vector format or .wkt); defaults to the cloud's bounding box",
    )
    parser.add_argument("--algorithm", choices=ALGORITHMS, default="csf", help="Ground kernel (default: csf)")
    parser.add_argument("--config", type=str, default=None, help="YAML configuration file")
    parser.add_argument("--max-workers", type=int, default=None, help="Override execution.max_workers")
    parser.add_argument("--report", type=str, default=None, help="Write the per-tile report to this Parquet file")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (default: INFO)")

    args = parser.parse_args(argv)
    set_level(args.log_level)

    try:
        config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
        if args.max_workers is not None:
            data = config.to_dict()
            data["execution"]["max_workers"] = args.max_workers
            config = PipelineConfig.from_dict(data)

        cloud = LasSource(args.input).select()
        area = read_polygon(args.boundary) if args.boundary else polygon_from_bounds(*cloud.bounds)

        pipeline = GroundClassificationPipeline(config)
        report = pipeline.run(cloud, area, args.algorithm)
        pipeline.step_5_export(
            report,
            Path(args.output),
            Path(args.report) if args.report else None,
        )
    except LidarGroundError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 2

    if report.failed or report.skipped:
        logger.warning(
            f"Partial result: skipped tiles {[t for t, _ in report.skipped]}, "
            f"failed tiles {[t for t, _ in report.failed]}"
        )
    return 0 if not report.failed else 1


if __name__ == "__main__":
    sys.exit(main())
