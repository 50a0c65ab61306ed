"""Unit tests for the tile catalog."""

import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import shapely
from shapely.geometry import box

from lidarground.common.errors import InvalidGeometry
from lidarground.common.pointcloud import PointCloud
from lidarground.tiling.tiler import Tile, TileCatalog, build_tiles, clip, clip_all, merge
from lidarground.utils.geometry import make_grid


def random_cloud(n=5000, size=20.0, seed=0):
    rng = np.random.default_rng(seed)
    xyz = np.column_stack([
        rng.uniform(0, size, n),
        rng.uniform(0, size, n),
        rng.normal(0, 0.1, n),
    ])
    return PointCloud(xyz)


def identity_results(tiles):
    """Per-tile results that just tag every point as processed."""
    return {
        tile.tile_id: tile.points.with_attribute("classification", np.full(tile.point_count, 2, np.uint8))
        for tile in tiles
    }


class TestBuildTiles:
    """Test suite for tile construction."""

    def test_ids_follow_grid_order(self):
        """Test sequential ids and matching grid indices."""
        grid = make_grid(box(0, 0, 20, 10), 5.0)
        tiles = build_tiles(grid, 0.0)

        assert [t.tile_id for t in tiles] == list(range(8))
        assert [t.idx for t in tiles] == grid.indices
        for tile in tiles:
            assert isinstance(tile, Tile)
            assert tile.points is None

    def test_no_buffer(self):
        """Test that the buffered polygon equals the core without buffer."""
        tiles = build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 0.0)
        for tile in tiles:
            assert tile.buffered.equals(tile.core)

    def test_mitre_buffer_stays_square(self):
        """Test that buffered tiles keep square corners."""
        tiles = build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 1.0)
        for tile in tiles:
            assert tile.buffered.area == pytest.approx(49.0)
            assert tile.buffered.contains(tile.core)

    def test_negative_buffer(self):
        """Test that a negative buffer is rejected."""
        with pytest.raises(InvalidGeometry):
            build_tiles(make_grid(box(0, 0, 10, 10), 5.0), -1.0)

    def test_catalog_rejects_non_polygon(self):
        """Test that the catalog validates its area."""
        with pytest.raises(InvalidGeometry):
            TileCatalog(cell_size=5.0).build("not a polygon")

    def test_catalog_rotated(self):
        """Test building a rotated catalog."""
        area = box(0, 0, 30, 20)
        tiles = TileCatalog(cell_size=6.0, rotation_degrees=20.0, buffer_width=1.0).build(area)
        cores = shapely.union_all([t.core for t in tiles])

        assert area.difference(cores).area < 1e-6
        for tile in tiles:
            assert tile.core.area == pytest.approx(36.0)


class TestClip:
    """Test suite for clipping."""

    def test_clip_matches_brute_force(self):
        """Test that clipping selects exactly the points in the buffered polygon."""
        cloud = random_cloud()
        tiles = build_tiles(make_grid(box(0, 0, 20, 20), 5.0), 1.5)
        for tile in tiles:
            clipped = clip(cloud, tile)
            expected = shapely.intersects_xy(tile.buffered, cloud.x, cloud.y)
            assert np.array_equal(clipped.ids, cloud.ids[expected])

    def test_clip_all_uses_shared_index(self):
        """Test that the shared index gives the same result as per-tile clipping."""
        cloud = random_cloud(seed=1)
        tiles = TileCatalog(cell_size=4.0, rotation_degrees=15.0, buffer_width=1.0).build(box(0, 0, 20, 20))
        clipped = clip_all(cloud, tiles)

        assert len(clipped) == len(tiles)
        for tile, with_points in zip(tiles, clipped):
            assert np.array_equal(with_points.points.ids, clip(cloud, tile).ids)

    def test_clip_keeps_attributes(self):
        """Test that attribute columns follow the points."""
        cloud = random_cloud(n=100).with_attribute("intensity", np.arange(100))
        tile = build_tiles(make_grid(box(0, 0, 20, 20), 10.0), 0.0)[0]
        clipped = clip(cloud, tile)

        assert np.array_equal(clipped.attributes["intensity"], clipped.ids)

    def test_clip_empty_tile(self):
        """Test a tile without points."""
        cloud = PointCloud(np.array([[1.0, 1.0, 0.0]]))
        tiles = clip_all(cloud, build_tiles(make_grid(box(0, 0, 20, 20), 10.0), 0.0))

        assert [t.point_count for t in tiles] == [1, 0, 0, 0]


class TestMerge:
    """Test suite for merging tile results."""

    @pytest.mark.parametrize("buffer_width", [0.0, 1.0, 2.5])
    def test_cardinality_independent_of_buffer(self, buffer_width):
        """Test that every point inside the tiled area is kept exactly once."""
        cloud = random_cloud(seed=2)
        catalog = TileCatalog(cell_size=5.0, rotation_degrees=10.0, buffer_width=buffer_width)
        tiles = catalog.clip_all(cloud, catalog.build(box(0, 0, 20, 20)))
        merged = catalog.merge(identity_results(tiles), tiles)

        cores = shapely.union_all([t.core for t in tiles])
        inside = shapely.intersects_xy(cores, cloud.x, cloud.y)
        assert len(merged) == int(inside.sum())
        assert len(np.unique(merged.ids)) == len(merged)
        assert set(merged.ids) == set(cloud.ids[inside])

    def test_shared_edge_points_kept_once(self):
        """Test points lying exactly on core edges and corners."""
        xyz = np.array([
            [5.0, 2.0, 0.0],
            [5.0, 5.0, 0.0],
            [2.0, 5.0, 0.0],
            [1.0, 1.0, 0.0],
        ])
        cloud = PointCloud(xyz)
        for buffer_width in (0.0, 1.0):
            catalog = TileCatalog(cell_size=5.0, buffer_width=buffer_width)
            tiles = catalog.clip_all(cloud, catalog.build(box(0, 0, 10, 10)))
            merged = catalog.merge(identity_results(tiles), tiles)

            assert sorted(merged.ids) == [0, 1, 2, 3]

    def test_single_tile_is_identity(self):
        """Test that merging the result of one tile's core returns it unchanged."""
        cloud = random_cloud(n=2000, size=10.0, seed=3)
        catalog = TileCatalog(cell_size=5.0, buffer_width=1.0)
        tiles = catalog.build(box(0, 0, 10, 10))
        core_points = cloud.subset(shapely.intersects_xy(tiles[0].core, cloud.x, cloud.y))

        clipped = catalog.clip_all(core_points, tiles)
        merged = catalog.merge(identity_results(clipped), clipped)

        assert np.array_equal(np.sort(merged.ids), np.sort(core_points.ids))

    def test_results_in_tile_order(self):
        """Test that merged points come out grouped by tile id."""
        cloud = random_cloud(n=500, size=10.0, seed=4)
        tiles = clip_all(cloud, build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 0.0))
        results = identity_results(tiles)
        reversed_results = {k: results[k] for k in sorted(results, reverse=True)}
        merged = merge(reversed_results, tiles, 0.0)

        first = tiles[0].points.ids
        assert np.array_equal(merged.ids[:len(first)], first)

    def test_missing_results_are_absent(self):
        """Test that tiles without a result contribute no points."""
        cloud = random_cloud(n=500, size=10.0, seed=5)
        tiles = clip_all(cloud, build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 1.0))
        results = identity_results(tiles)
        del results[3]
        merged = merge(results, tiles, 1.0)

        kept = shapely.union_all([t.core for t in tiles[:3]])
        allowed = cloud.ids[shapely.intersects_xy(kept, cloud.x, cloud.y)]
        assert set(merged.ids) <= set(allowed)
        assert len(merged) == len(allowed)

    def test_unknown_tile(self):
        """Test that a result for an unknown tile is an error."""
        tiles = build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 0.0)
        with pytest.raises(KeyError):
            merge({99: PointCloud(np.zeros((1, 3)))}, tiles, 0.0)


class TestMetadata:
    """Test suite for tile metadata export."""

    def test_metadata_dict(self):
        """Test the metadata fields of one tile."""
        cloud = random_cloud(n=1000, size=10.0, seed=6)
        tiles = clip_all(cloud, build_tiles(make_grid(box(0, 0, 10, 10), 5.0), 0.0))
        meta = tiles[0].to_metadata_dict()

        assert meta["tile_id"] == 0
        assert meta["bbox_x_min"] == 0.0
        assert meta["bbox_x_max"] == 5.0
        assert meta["core_area"] == pytest.approx(25.0)
        assert meta["point_count"] == tiles[0].point_count
        assert meta["density"] == pytest.approx(tiles[0].point_count / 25.0)

    def test_export_metadata_to_parquet(self):
        """Test exporting tile metadata to Parquet."""
        cloud = random_cloud(n=1000, size=10.0, seed=7)
        catalog = TileCatalog(cell_size=5.0)
        tiles = catalog.clip_all(cloud, catalog.build(box(0, 0, 10, 10)))

        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = catalog.export_metadata_to_parquet(tiles, Path(tmpdir))
            assert output_path.exists()

            df = pd.read_parquet(output_path)
            assert len(df) == 4
            assert "point_count" in df.columns
            assert df["point_count"].sum() >= 1000
