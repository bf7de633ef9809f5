"""
End-to-end tests for downtown/pipeline.py

Pipeline properties:
1. A single tight cluster with a bandwidth below the cell spacing yields
   exactly the grid cell that contains the cluster
2. A dense corner cluster wins over scattered points
3. Failures are isolated: one town without POIs does not affect the rest
4. Results keep input order, sequentially or in a process pool
"""

import multiprocessing

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import LineString, Point, Polygon, box

from downtown.config import DowntownParams
from downtown.errors import InputError
from downtown.hexgrid import build_hex_grid
from downtown.pipeline import (
    BatchResult,
    TownLayers,
    TownResult,
    delineate_town,
    run_batch,
    run_town,
)

from conftest import CRS, make_pois


class TestRunTown:

    def test_single_cluster_gives_single_cell(self, rng, square_town):
        pois = make_pois(rng.uniform(496, 504, size=(20, 2)))
        params = DowntownParams(
            cell_size=100, bandwidth=10,
            buffer_distance=0, smoothness=None, post_buffer_distance=None,
        )
        result = run_town("t1", square_town, pois, params)
        assert result.ok

        grid = build_hex_grid(pois, cell_size=100)
        centroid = Point(pois.geometry.x.mean(), pois.geometry.y.mean())
        cell = grid[grid.geometry.covers(centroid)].geometry.iloc[0]
        assert result.polygon.symmetric_difference(cell).area == pytest.approx(0.0, abs=1e-6)
        assert result.stats["n_hexes"] == 1

    def test_dense_corner_wins(self, square_town, corner_pois, plain_params):
        result = run_town("t1", square_town, corner_pois, plain_params)
        assert result.ok
        assert isinstance(result.polygon, Polygon)
        assert box(0, 0, 100, 100).contains(result.polygon.centroid)

    def test_default_profile_still_centred_on_corner(self, square_town, corner_pois):
        result = run_town("t1", square_town, corner_pois, DowntownParams(post_buffer_distance=50))
        assert result.ok
        assert result.polygon.is_valid
        assert box(0, 0, 100, 100).contains(result.polygon.centroid)

    def test_stats_recorded(self, square_town, corner_pois, plain_params):
        result = run_town("t1", square_town, corner_pois, plain_params)
        stats = result.stats
        assert stats["n_points"] == len(corner_pois)
        assert stats["score"] == pytest.approx(stats["n_hexes"] * stats["mean_z"])
        assert stats["area"] == pytest.approx(result.polygon.area)
        assert stats["n_retained"] >= stats["n_hexes"]

    def test_no_pois_is_a_failure_result(self, square_town, plain_params):
        pois = make_pois([(5000, 5000), (5001, 5001)])
        result = run_town("t1", square_town, pois, plain_params)
        assert not result.ok
        assert result.error == "InputError"
        assert "No POIs" in result.reason
        assert "n_points" not in result.stats

    def test_single_poi_is_input_error(self, square_town, plain_params):
        result = run_town("t1", square_town, make_pois([(500, 500)]), plain_params)
        assert result.error == "InputError"
        assert result.stats["n_points"] == 1

    def test_coincident_pois_are_numeric_error(self, square_town, plain_params):
        result = run_town("t1", square_town, make_pois([(500, 500)] * 5), plain_params)
        assert result.error == "NumericError"

    def test_layers_kept_up_to_failure(self, square_town, plain_params):
        layers = TownLayers(town_id="t1")
        with pytest.raises(InputError):
            delineate_town("t1", square_town, make_pois([(2000, 2000)]), plain_params, layers)
        assert layers.boundary is not None
        assert layers.points is None


class TestTownResult:

    def test_failure_constructor(self):
        exc = InputError("No POIs inside town boundary.", "t7")
        result = TownResult.failure("t7", exc, {"n_points": 0})
        assert not result.ok
        assert result.error == "InputError"
        assert result.reason == "No POIs inside town boundary."
        assert result.stats == {"n_points": 0}


class TestRunBatch:

    def test_one_town_without_pois_is_isolated(self, ten_towns, plain_params):
        towns, pois = ten_towns
        batch = run_batch(towns, pois, plain_params)

        assert len(batch.results) == 10
        assert len(batch.downtowns) == 9
        assert len(batch.failures) == 1

        failure = batch.failures.iloc[0]
        assert failure["town_id"] == "t09"
        assert failure["error"] == "InputError"
        assert "No POIs" in failure["reason"]

    def test_each_downtown_lies_in_its_own_town(self, ten_towns, plain_params):
        towns, pois = ten_towns
        batch = run_batch(towns, pois, plain_params)
        lookup = dict(zip(towns["town_id"], towns.geometry))
        for town_id, geom in zip(batch.downtowns["town_id"], batch.downtowns.geometry):
            assert lookup[town_id].contains(geom.centroid)

    def test_outputs_follow_input_order(self, ten_towns, plain_params):
        towns, pois = ten_towns
        shuffled = towns.iloc[::-1]
        batch = run_batch(shuffled, pois, plain_params)
        assert [r.town_id for r in batch.results] == shuffled["town_id"].tolist()

    def test_process_pool_matches_sequential(self, ten_towns, plain_params):
        towns, pois = ten_towns
        seq = run_batch(towns, pois, plain_params, workers=1)
        par = run_batch(towns, pois, plain_params, workers=2)

        assert [r.town_id for r in par.results] == [r.town_id for r in seq.results]
        for a, b in zip(seq.successes, par.successes):
            assert a.polygon.symmetric_difference(b.polygon).area == pytest.approx(0.0, abs=1e-6)
        assert par.failures.equals(seq.failures)

    def test_worker_exception_shuts_pool_down(self, ten_towns, plain_params):
        towns, pois = ten_towns
        # a line among the POIs is not a typed per-town failure
        line = gpd.GeoDataFrame(
            {"poi_id": [-1]}, geometry=[LineString([(10, 10), (20, 20)])], crs=CRS
        )
        pois = gpd.GeoDataFrame(pd.concat([line, pois], ignore_index=True), crs=CRS)

        with pytest.raises(ValueError):
            run_batch(towns, pois, plain_params, workers=2)
        assert multiprocessing.active_children() == []

    def test_downtowns_frame_schema(self, ten_towns, plain_params):
        towns, pois = ten_towns
        downtowns = run_batch(towns, pois, plain_params).downtowns
        assert isinstance(downtowns, gpd.GeoDataFrame)
        assert downtowns.crs == towns.crs
        for col in ("town_id", "n_points", "n_hexes", "mean_z", "score", "area"):
            assert col in downtowns.columns
        assert downtowns["town_id"].is_unique

    def test_all_failed_batch_has_empty_downtowns(self, plain_params):
        towns = gpd.GeoDataFrame({"town_id": ["a", "b"]}, geometry=[box(0, 0, 1, 1)] * 2, crs=CRS)
        batch = run_batch(towns, make_pois([(50, 50), (60, 60)]), plain_params)
        assert batch.downtowns.empty
        assert "town_id" in batch.downtowns.columns
        assert len(batch.failures) == 2

    def test_town_id_column_on_pois_narrows_candidates(self, rng, plain_params):
        towns = gpd.GeoDataFrame(
            {"town_id": ["a", "b"]},
            geometry=[box(0, 0, 1000, 1000), box(0, 0, 1000, 1000)],
            crs=CRS,
        )
        pois = make_pois(rng.uniform(0, 100, size=(30, 2)), town_id="a")
        batch = run_batch(towns, pois, plain_params)
        assert [r.ok for r in batch.results] == [True, False]
        assert batch.failures.iloc[0]["reason"] == "No POIs associated with town."

    def test_empty_town_table(self, plain_params):
        towns = gpd.GeoDataFrame({"town_id": []}, geometry=gpd.GeoSeries([], crs=CRS), crs=CRS)
        batch = run_batch(towns, make_pois([(1, 1)]), plain_params)
        assert isinstance(batch, BatchResult)
        assert batch.results == []
        assert batch.failures.empty
