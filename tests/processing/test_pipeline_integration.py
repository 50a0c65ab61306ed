"""End-to-end tests for the tiled ground classification pipeline."""

import logging
import tempfile
import threading
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml
from shapely.geometry import Polygon, box

from lidarground.common.errors import ConfigError, InsufficientData, InvalidGeometry
from lidarground.common.lidar_io import LasSource, write_cloud
from lidarground.common.pointcloud import ClassificationLabel, PointCloud
from lidarground.processing.config import PipelineConfig
from lidarground.processing.executor import SKIPPED
from lidarground.processing.pipeline import (
    GroundClassificationPipeline,
    RunReport,
    main,
    make_kernel,
    recommended_buffer_width,
)


def block_scene(block=(1.5, 3.5, 1.5, 3.5), n_flat=9600, n_block=400, seed=0):
    """Flat, slightly noisy ground on 10 x 10 m with one 1 m high block."""
    rng = np.random.default_rng(seed)
    x0, x1, y0, y1 = block
    candidates = rng.uniform(0, 10, (3 * n_flat, 2))
    outside = ~((candidates[:, 0] >= x0) & (candidates[:, 0] <= x1)
                & (candidates[:, 1] >= y0) & (candidates[:, 1] <= y1))
    flat = candidates[outside][:n_flat]
    roof = np.column_stack([rng.uniform(x0, x1, n_block), rng.uniform(y0, y1, n_block)])
    xyz = np.vstack([
        np.column_stack([flat, rng.uniform(-0.01, 0.01, n_flat)]),
        np.column_stack([roof, np.ones(n_block)]),
    ])
    return PointCloud(xyz), n_flat


def scenario_config(**sections):
    data = {
        "tiling": {"cell_size": 5.0, "rotation_degrees": 0.0, "buffer_width": 1.0},
        "pmf": {"window_sizes": [0.5, 1.0], "thresholds": [0.05, 0.1], "cell_size": 0.5},
        "csf": {"cloth_resolution": 0.5, "rigidness": 3, "class_threshold": 0.5},
        "dbscan": {"min_pts": 5, "eps_values": [0.3, 0.6]},
        "execution": {"max_workers": 2, "backend": "thread", "progress": False},
    }
    data.update(sections)
    return PipelineConfig.from_dict(data)


def labels_by_id(report: RunReport) -> np.ndarray:
    labels = np.zeros(report.cloud.ids.max() + 1, dtype=np.uint8)
    labels[report.cloud.ids] = report.cloud.attributes["classification"]
    return labels


class TestGroundClassificationPipeline:
    """Test suite for complete runs."""

    @pytest.mark.parametrize("algorithm", ["pmf", "csf"])
    def test_block_on_flat_ground(self, algorithm):
        """Test that tiled runs separate the block from the ground."""
        cloud, n_flat = block_scene()
        pipeline = GroundClassificationPipeline(scenario_config())
        report = pipeline.run(cloud, box(0, 0, 10, 10), algorithm)

        assert report.complete
        assert len(report.cloud) == len(cloud)
        assert len(np.unique(report.cloud.ids)) == len(cloud)

        labels = labels_by_id(report)
        assert np.mean(labels[:n_flat] == ClassificationLabel.GROUND) >= 0.99
        assert np.all(labels[n_flat:] == ClassificationLabel.NON_GROUND)

    @pytest.mark.parametrize("algorithm", ["pmf", "csf"])
    def test_block_on_tile_corner(self, algorithm, caplog):
        """Test a block straddling the corner shared by all four tiles."""
        cloud, n_flat = block_scene(block=(4.0, 6.0, 4.0, 6.0))
        config = scenario_config(tiling={"cell_size": 5.0, "rotation_degrees": 0.0, "buffer_width": 2.0})
        with caplog.at_level(logging.WARNING):
            report = GroundClassificationPipeline(config).run(cloud, box(0, 0, 10, 10), algorithm)

        assert report.complete
        assert len(report.cloud) == len(cloud)
        labels = labels_by_id(report)
        assert np.mean(labels[:n_flat] == ClassificationLabel.GROUND) >= 0.99
        assert np.all(labels[n_flat:] == ClassificationLabel.NON_GROUND)
        assert "Buffer width" not in caplog.text

    def test_narrow_buffer_keeps_corner_block(self, caplog):
        """Test that a buffer below twice the largest window warns and misses the block."""
        cloud, n_flat = block_scene(block=(4.0, 6.0, 4.0, 6.0))
        with caplog.at_level(logging.WARNING):
            report = GroundClassificationPipeline(scenario_config()).run(cloud, box(0, 0, 10, 10), "pmf")

        # Every buffered raster ends on the block, so the opening cannot remove it
        labels = labels_by_id(report)
        assert np.all(labels[n_flat:] == ClassificationLabel.GROUND)
        assert "Buffer width 1 is below 2 for pmf" in caplog.text

    def test_recommended_buffer_width(self):
        """Test the buffer each kernel needs."""
        config = scenario_config()
        assert recommended_buffer_width("pmf", config) == pytest.approx(2.0)
        assert recommended_buffer_width("dbscan", config) == pytest.approx(0.6)
        assert recommended_buffer_width("csf", config) == 0.0

    def test_rotated_tiling_keeps_every_point(self):
        """Test the point count with a rotated grid."""
        cloud, _ = block_scene()
        config = scenario_config(tiling={"cell_size": 4.0, "rotation_degrees": 30.0, "buffer_width": 1.0})
        report = GroundClassificationPipeline(config).run(cloud, box(0, 0, 10, 10), "pmf")

        assert len(report.cloud) == len(cloud)
        assert len(report.tiles) == len(report.outcomes)

    def test_dbscan_run(self):
        """Test that the DBSCAN kernel attaches one column per radius."""
        cloud, _ = block_scene()
        report = GroundClassificationPipeline(scenario_config()).run(cloud, box(0, 0, 10, 10), "dbscan")

        assert report.complete
        assert report.cloud.attribute_keys["cluster"] == (0.3, 0.6)
        assert report.cloud.attributes["cluster"].shape == (len(cloud), 2)
        assert all(len(lines) == 2 for lines in report.diagnostics.values())

    def test_empty_tiles_are_skipped(self):
        """Test an area larger than the data."""
        cloud, _ = block_scene()
        report = GroundClassificationPipeline(scenario_config()).run(cloud, box(0, 0, 20, 10), "pmf")

        assert len(report.outcomes) == 8
        assert [t for t, _ in report.skipped] == [3, 7]
        assert all(reason.startswith("InsufficientData") for _, reason in report.skipped)
        assert not report.complete
        assert len(report.cloud) == len(cloud)

    def test_stop_event(self):
        """Test that a pre-set stop event cancels every tile."""
        cloud, _ = block_scene()
        stop_event = threading.Event()
        stop_event.set()
        report = GroundClassificationPipeline(scenario_config()).run(
            cloud, box(0, 0, 10, 10), "pmf", stop_event=stop_event
        )

        assert report.cancelled == [0, 1, 2, 3]
        assert len(report.cloud) == 0

    def test_invalid_area_fails_fast(self):
        """Test that a bad polygon aborts before any tile work."""
        cloud, _ = block_scene()
        bowtie = Polygon([(0, 0), (10, 10), (10, 0), (0, 10)])
        with pytest.raises(InvalidGeometry):
            GroundClassificationPipeline(scenario_config()).run(cloud, bowtie, "pmf")

    def test_unknown_algorithm(self):
        """Test that an unknown kernel name is a configuration error."""
        with pytest.raises(ConfigError):
            make_kernel("tin", PipelineConfig())

    def test_empty_cloud(self):
        """Test that an empty input cloud is rejected."""
        with pytest.raises(InsufficientData):
            GroundClassificationPipeline(scenario_config()).run(
                PointCloud(np.empty((0, 3))), box(0, 0, 10, 10), "pmf"
            )

    def test_report_dataframe_and_export(self):
        """Test the per-tile report."""
        cloud, _ = block_scene()
        report = GroundClassificationPipeline(scenario_config()).run(cloud, box(0, 0, 20, 10), "csf")
        df = report.to_dataframe()

        assert list(df["tile_id"]) == list(range(8))
        assert (df["status"] == SKIPPED).sum() == 2
        assert {"status", "reason", "diagnostics", "point_count"} <= set(df.columns)

        with tempfile.TemporaryDirectory() as tmpdir:
            path = report.export_report(Path(tmpdir) / "reports" / "tiles.parquet")
            assert len(pd.read_parquet(path)) == 8


class TestCommandLine:
    """Test suite for the command-line entry point."""

    def test_main_writes_classified_file(self):
        """Test a complete run from LAS to LAS."""
        cloud, n_flat = block_scene()
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            write_cloud(cloud, tmpdir / "scan.las")
            (tmpdir / "area.wkt").write_text(box(0, 0, 10, 10).wkt, encoding="utf-8")
            config = scenario_config().to_dict()
            config = {name: {k: list(v) if isinstance(v, tuple) else v for k, v in section.items()}
                      for name, section in config.items()}
            (tmpdir / "run.yaml").write_text(yaml.safe_dump(config), encoding="utf-8")

            code = main([
                "--input", str(tmpdir / "scan.las"),
                "--output", str(tmpdir / "ground.las"),
                "--boundary", str(tmpdir / "area.wkt"),
                "--algorithm", "pmf",
                "--config", str(tmpdir / "run.yaml"),
                "--report", str(tmpdir / "tiles.parquet"),
            ])
            assert code == 0
            back = LasSource(tmpdir / "ground.las").select(["classification"])
            assert (tmpdir / "tiles.parquet").exists()

        assert len(back) == len(cloud)
        assert int(np.sum(back.attributes["classification"] == ClassificationLabel.NON_GROUND)) >= 400

    def test_main_reports_bad_input(self):
        """Test the exit code for a missing input file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            code = main(["--input", str(Path(tmpdir) / "missing.las"),
                         "--output", str(Path(tmpdir) / "out.las")])
        assert code == 2
