"""
Unit tests for downtown/validate.py
"""

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import MultiPolygon, Polygon, box

from downtown.errors import DowntownValidationError
from downtown.validate import validate_batch_output

from conftest import CRS


def _downtowns(ids, geoms, crs=CRS):
    return gpd.GeoDataFrame({"town_id": ids}, geometry=geoms, crs=crs)


def _failures(rows=()):
    return pd.DataFrame(list(rows), columns=["town_id", "error", "reason"])


class TestValidateBatchOutput:

    def test_clean_batch_passes(self):
        validate_batch_output(
            _downtowns(["a", "b"], [box(0, 0, 1, 1), box(2, 0, 3, 1)]),
            _failures([("c", "InputError", "No POIs inside town boundary.")]),
        )

    def test_empty_batch_passes(self):
        empty = gpd.GeoDataFrame({"town_id": []}, geometry=gpd.GeoSeries([]), crs=None)
        validate_batch_output(empty, _failures())

    def test_duplicate_ids(self):
        with pytest.raises(DowntownValidationError, match="V1"):
            validate_batch_output(_downtowns(["a", "a"], [box(0, 0, 1, 1)] * 2), _failures())

    def test_multipolygon_rejected(self):
        multi = MultiPolygon([box(0, 0, 1, 1), box(3, 3, 4, 4)])
        with pytest.raises(DowntownValidationError, match="V2"):
            validate_batch_output(_downtowns(["a"], [multi]), _failures())

    def test_invalid_polygon_rejected(self):
        bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
        with pytest.raises(DowntownValidationError, match="V2"):
            validate_batch_output(_downtowns(["a"], [bowtie]), _failures())

    def test_success_and_failure_overlap(self):
        with pytest.raises(DowntownValidationError, match="V4"):
            validate_batch_output(
                _downtowns(["a"], [box(0, 0, 1, 1)]),
                _failures([("a", "GeometryError", "No cells above threshold.")]),
            )

    def test_failure_without_reason(self):
        with pytest.raises(DowntownValidationError, match="V5"):
            validate_batch_output(
                _downtowns(["a"], [box(0, 0, 1, 1)]),
                _failures([("b", "InputError", " ")]),
            )

    def test_geographic_crs_rejected(self):
        with pytest.raises(DowntownValidationError, match="V6"):
            validate_batch_output(
                _downtowns(["a"], [box(0, 0, 1, 1)], crs="EPSG:4326"), _failures()
            )

    def test_all_problems_reported_together(self):
        with pytest.raises(DowntownValidationError) as excinfo:
            validate_batch_output(
                _downtowns(["a", "a"], [box(0, 0, 1, 1)] * 2, crs="EPSG:4326"),
                _failures([("a", "InputError", "")]),
            )
        message = str(excinfo.value)
        for check in ("V1", "V4", "V5", "V6"):
            assert check in message
