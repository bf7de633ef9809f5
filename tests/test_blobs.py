"""
Unit tests for downtown/blobs.py (dissolve, spatial join, scoring, selection).
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Polygon, box

from downtown.blobs import build_blobs, score_blobs, select_best_blob
from downtown.errors import GeometryError
from downtown.hexgrid import build_hex_grid

from conftest import CRS, make_pois


@pytest.fixture
def grid(rng):
    pois = make_pois(rng.uniform(0, 500, size=(30, 2)))
    return build_hex_grid(pois, cell_size=20)


def _retain_near(grid, centres, radius, z=1.0):
    """Mark cells within *radius* of any centre as retained with z-score *z*."""
    hexes = grid.copy()
    near = np.zeros(len(hexes), dtype=bool)
    for cx, cy in centres:
        near |= np.hypot(hexes["center_x"] - cx, hexes["center_y"] - cy) <= radius
    hexes["retained"] = near
    hexes["kde_z"] = z
    return hexes


def _scored(rows):
    """Blob table from (blob_id, n_hexes, mean_z) tuples."""
    ids, n, mz = zip(*rows)
    return gpd.GeoDataFrame(
        {
            "blob_id": list(ids),
            "n_hexes": list(n),
            "mean_z": list(mz),
            "score": [a * b for a, b in zip(n, mz)],
        },
        geometry=[box(i, 0, i + 1, 1) for i in ids],
        crs=CRS,
    )


class TestBuildBlobs:

    def test_separate_clusters_become_separate_blobs(self, grid):
        hexes = _retain_near(grid, [(100, 100), (400, 400)], radius=40)
        blobs, cells = build_blobs(hexes)
        assert len(blobs) == 2
        assert blobs["blob_id"].tolist() == [1, 2]
        assert all(isinstance(g, Polygon) for g in blobs.geometry)
        assert len(cells) == int(hexes["retained"].sum())

    def test_every_cell_lies_in_its_blob(self, grid):
        hexes = _retain_near(grid, [(100, 100), (400, 400)], radius=40)
        blobs, cells = build_blobs(hexes)
        lookup = dict(zip(blobs["blob_id"], blobs.geometry))
        for blob_id, cell in zip(cells["blob_id"], cells.geometry):
            assert lookup[blob_id].buffer(1e-6).covers(cell)

    def test_blob_area_equals_member_area(self, grid):
        hexes = _retain_near(grid, [(250, 250)], radius=60)
        blobs, cells = build_blobs(hexes)
        assert len(blobs) == 1
        assert blobs.geometry.iloc[0].area == pytest.approx(cells.geometry.area.sum())

    def test_touching_cells_form_one_blob(self, grid):
        hexes = grid.copy()
        row = grid[grid["row"] == 4].sort_values("col").head(6)
        hexes["retained"] = hexes.index.isin(row.index)
        hexes["kde_z"] = 1.0
        blobs, _ = build_blobs(hexes)
        assert len(blobs) == 1

    def test_no_retained_cells_raises(self, grid):
        hexes = grid.copy()
        hexes["retained"] = False
        hexes["kde_z"] = 0.0
        with pytest.raises(GeometryError):
            build_blobs(hexes, "t1")


class TestScoreBlobs:

    def test_metrics_per_blob(self, grid):
        hexes = _retain_near(grid, [(100, 100), (400, 400)], radius=40)
        hexes.loc[np.hypot(hexes["center_x"] - 400, hexes["center_y"] - 400) <= 40, "kde_z"] = 3.0
        blobs, cells = build_blobs(hexes)
        scored = score_blobs(blobs, cells)

        for _, blob in scored.iterrows():
            members = cells[cells["blob_id"] == blob["blob_id"]]
            assert blob["n_hexes"] == len(members)
            assert blob["mean_z"] == pytest.approx(members["kde_z"].mean())
            assert blob["score"] == pytest.approx(blob["n_hexes"] * blob["mean_z"])


class TestSelectBestBlob:

    def test_higher_mean_z_wins_at_equal_size(self):
        scored = _scored([(1, 10, 1.5), (2, 10, 2.0), (3, 10, 1.9)])
        assert select_best_blob(scored)["blob_id"] == 2

    def test_size_and_intensity_trade_off(self):
        # one extreme cell vs a large, moderately dense cluster
        scored = _scored([(1, 1, 4.0), (2, 12, 1.2), (3, 40, 0.05)])
        assert select_best_blob(scored)["blob_id"] == 2

    def test_exact_tie_goes_to_lowest_id(self):
        scored = _scored([(3, 4, 2.0), (1, 8, 1.0), (2, 2, 4.0)])
        assert select_best_blob(scored)["blob_id"] == 1

    def test_tie_break_is_stable_across_runs(self):
        scored = _scored([(2, 5, 1.0), (1, 5, 1.0), (3, 5, 1.0)])
        picks = {select_best_blob(scored.sample(frac=1, random_state=s))["blob_id"] for s in range(10)}
        assert picks == {1}

    def test_no_valid_blob_raises(self):
        scored = _scored([(1, 3, 1.0)])
        scored["score"] = np.nan
        with pytest.raises(GeometryError):
            select_best_blob(scored)
