"""
Shared fixtures: synthetic towns and POI layers in a projected CRS.
"""

import numpy as np
import pytest
import geopandas as gpd
from shapely.geometry import Point, box

from downtown.config import DowntownParams

CRS = "EPSG:32610"   # UTM 10N, metres


def make_pois(coords, town_id=None, crs=CRS):
    """Build a POI GeoDataFrame from (x, y) pairs."""
    coords = np.asarray(coords, dtype=float).reshape(-1, 2)
    data = {"poi_id": np.arange(len(coords))}
    if town_id is not None:
        data["town_id"] = [town_id] * len(coords)
    return gpd.GeoDataFrame(
        data, geometry=[Point(x, y) for x, y in coords], crs=crs
    )


def dense_corner_coords(rng, x0=0.0, y0=0.0):
    """50 points in a 100 x 100 corner plus 5 scattered over a 1000 x 1000 town."""
    corner = rng.uniform(5, 95, size=(50, 2)) + [x0, y0]
    scattered = rng.uniform(250, 950, size=(5, 2)) + [x0, y0]
    return np.vstack([corner, scattered])


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def square_town():
    return box(0, 0, 1000, 1000)


@pytest.fixture
def corner_pois(rng):
    return make_pois(dense_corner_coords(rng))


@pytest.fixture
def plain_params():
    """No buffering or smoothing, so outputs are the raw blob geometry."""
    return DowntownParams(
        buffer_distance=0.0, smoothness=None, post_buffer_distance=None
    )


@pytest.fixture
def ten_towns(rng):
    """Ten square towns side by side; the last one has no POIs at all."""
    ids = [f"t{i:02d}" for i in range(10)]
    towns = gpd.GeoDataFrame(
        {"town_id": ids},
        geometry=[box(2000 * i, 0, 2000 * i + 1000, 1000) for i in range(10)],
        crs=CRS,
    )
    coords = np.vstack([dense_corner_coords(rng, x0=2000 * i) for i in range(9)])
    return towns, make_pois(coords)
