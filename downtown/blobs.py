"""
Blob construction and scoring.

A blob is a maximal connected cluster of retained hex cells. Blobs come
from dissolving the retained cells into one geometry and splitting it into
its single-part polygons; cells are then matched back to their blob with a
spatial join so per-cell z-scores can be aggregated.

Scoring
-------
``score = n_hexes * mean_z`` favours blobs that are both large and intense:
a single extreme cell and a wide diffuse cluster both score lower than a
compact dense core. The best blob is the one with the highest score; exact
ties go to the lowest ``blob_id``.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import geopandas as gpd
import pandas as pd
from shapely.ops import unary_union

from downtown.errors import GeometryError
from downtown.points import polygon_parts

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Blob builder
# ---------------------------------------------------------------------------

def build_blobs(
    hexes: gpd.GeoDataFrame,
    town_id: Optional[str] = None,
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    """
    Dissolve retained cells into blobs.

    Parameters
    ----------
    hexes:
        Hex GeoDataFrame with ``retained`` and ``kde_z`` columns.
    town_id:
        For logging and error messages.

    Returns
    -------
    (blobs, cells)
        *blobs* has one row per blob (``blob_id``, ``geometry``), ids
        numbered from 1 in the union's part order. *cells* is the retained
        subset of *hexes* with a ``blob_id`` column.

    Raises
    ------
    GeometryError
        If there are no retained cells or the union has no polygon parts.
    """
    cells = hexes[hexes["retained"]]
    if cells.empty:
        raise GeometryError("No retained cells to build blobs from.", town_id)

    dissolved = unary_union(list(cells.geometry))
    parts = [p for p in polygon_parts(dissolved) if not p.is_empty]
    if not parts:
        raise GeometryError("Retained cells dissolved to an empty blob set.", town_id)

    blobs = gpd.GeoDataFrame(
        {"blob_id": range(1, len(parts) + 1)},
        geometry=parts,
        crs=hexes.crs,
    )

    anchors = gpd.GeoDataFrame(
        cells.drop(columns="geometry"),
        geometry=cells.geometry.representative_point(),
        crs=hexes.crs,
    )
    joined = gpd.sjoin(anchors, blobs, how="left", predicate="within")
    joined = joined[~joined.index.duplicated(keep="first")]

    unmatched = int(joined["blob_id"].isna().sum())
    if unmatched:
        logger.warning("[%s] %d retained cells matched no blob.", town_id, unmatched)

    cells = cells.copy()
    cells["blob_id"] = joined["blob_id"].reindex(cells.index)
    cells = cells[cells["blob_id"].notna()].astype({"blob_id": int})

    logger.info(
        "[%s] Blobs: %d from %d retained cells.", town_id, len(blobs), len(cells)
    )
    return blobs, cells


# ---------------------------------------------------------------------------
# Blob scorer
# ---------------------------------------------------------------------------

def score_blobs(
    blobs: gpd.GeoDataFrame,
    cells: gpd.GeoDataFrame,
) -> gpd.GeoDataFrame:
    """
    Attach ``mean_z``, ``n_hexes`` and ``score`` to each blob.

    *cells* needs ``blob_id`` and ``kde_z`` columns.
    """
    metrics = (
        cells.groupby("blob_id")
        .agg(mean_z=("kde_z", "mean"), n_hexes=("kde_z", "size"))
        .reset_index()
    )
    result = blobs.merge(metrics, on="blob_id", how="left")
    result["n_hexes"] = result["n_hexes"].fillna(0).astype(int)
    result["score"] = result["n_hexes"] * result["mean_z"]
    return result


def select_best_blob(
    scored: gpd.GeoDataFrame,
    town_id: Optional[str] = None,
) -> pd.Series:
    """
    Return the row of the highest-scoring blob.

    Ties on the exact score are broken by the lowest ``blob_id``.

    Raises
    ------
    GeometryError
        If no blob has a finite score.
    """
    candidates = scored[scored["score"].notna() & (scored["n_hexes"] > 0)]
    if candidates.empty:
        raise GeometryError("No blob has a valid score.", town_id)

    ranked = candidates.sort_values(
        ["score", "blob_id"], ascending=[False, True], kind="mergesort"
    )
    best = ranked.iloc[0]

    n_tied = int((candidates["score"] == best["score"]).sum())
    if n_tied > 1:
        logger.info(
            "[%s] %d blobs tie at score %.4f; keeping lowest id %d.",
            town_id, n_tied, best["score"], best["blob_id"],
        )
    logger.info(
        "[%s] Best blob %d of %d: n_hexes=%d  mean_z=%.3f  score=%.3f",
        town_id, best["blob_id"], len(scored), best["n_hexes"],
        best["mean_z"], best["score"],
    )
    return best
