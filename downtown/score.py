"""
Density standardization and threshold selection.

All standardization is computed within a single town so that the cutoff
reflects relative density within that town, never a cross-town scale.
"""

from __future__ import annotations

import logging
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from downtown.config import DEFAULT_THRESHOLD
from downtown.errors import GeometryError, NumericError

logger = logging.getLogger(__name__)

# Spread below this fraction of the values' magnitude is treated as zero
_EPS: float = 1e-12


def zscore(series: pd.Series, town_id: Optional[str] = None) -> pd.Series:
    """
    Return ``(x - mean) / sd`` using the sample standard deviation.

    Raises
    ------
    NumericError
        If the values have no variance.
    """
    sd = series.std(ddof=1)
    if not np.isfinite(sd) or sd == 0 or sd <= _EPS * abs(series.mean()):
        raise NumericError("Density has zero variance across cells.", town_id)
    return (series - series.mean()) / sd


def minmax(series: pd.Series, town_id: Optional[str] = None) -> pd.Series:
    """
    Return ``(x - min) / (max - min)``.

    Raises
    ------
    NumericError
        If all values are equal.
    """
    lo, hi = series.min(), series.max()
    span = hi - lo
    if not np.isfinite(span) or span == 0 or span <= _EPS * max(abs(hi), abs(lo)):
        raise NumericError("Density has zero range across cells.", town_id)
    return (series - lo) / span


def standardize_density(
    hexes: gpd.GeoDataFrame,
    town_id: Optional[str] = None,
    column: str = "kde",
) -> gpd.GeoDataFrame:
    """Add ``kde_z`` and ``kde_minmax`` columns computed from *column*."""
    result = hexes.copy()
    result["kde_z"] = zscore(result[column], town_id)
    result["kde_minmax"] = minmax(result[column], town_id)
    return result


def select_cells(
    hexes: gpd.GeoDataFrame,
    threshold: float = DEFAULT_THRESHOLD,
    town_id: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Flag cells whose min-max score is strictly above *threshold*.

    Returns a copy of *hexes* with a boolean ``retained`` column.

    Raises
    ------
    GeometryError
        If no cell passes.
    """
    result = hexes.copy()
    result["retained"] = result["kde_minmax"] > threshold
    n_kept = int(result["retained"].sum())

    logger.info(
        "[%s] Threshold %.2f: %d of %d cells retained.",
        town_id, threshold, n_kept, len(result),
    )
    if n_kept == 0:
        raise GeometryError(
            f"No cells above min-max threshold {threshold}.", town_id
        )
    return result
