"""
Point filter: pick the town's main polygon part and the POIs inside it.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import geopandas as gpd
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from downtown.config import TOWN_ID_COL
from downtown.errors import GeometryError, InputError

logger = logging.getLogger(__name__)


def polygon_parts(geom: BaseGeometry) -> List[Polygon]:
    """Return the single-part polygons of *geom* in stored order."""
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, MultiPolygon):
        return list(geom.geoms)
    if hasattr(geom, "geoms"):
        return [g for g in geom.geoms if isinstance(g, Polygon)]
    return []


def select_largest_part(geom: BaseGeometry, town_id: Optional[str] = None) -> Polygon:
    """
    Return the polygon part of *geom* with the largest area.

    When two parts have exactly the same area the one stored first wins.

    Raises
    ------
    GeometryError
        If *geom* has no polygonal part with positive area.
    """
    parts = [p for p in polygon_parts(geom) if not p.is_empty]
    if not parts:
        raise GeometryError("Town boundary has no polygon parts.", town_id)

    best = parts[0]
    for part in parts[1:]:
        if part.area > best.area:
            best = part

    if best.area <= 0:
        raise GeometryError("Town boundary has zero area.", town_id)

    if len(parts) > 1:
        logger.debug(
            "[%s] Using largest of %d boundary parts (%.1f of %.1f area units).",
            town_id, len(parts), best.area, sum(p.area for p in parts),
        )
    return best


def filter_points(
    town_geom: BaseGeometry,
    pois: gpd.GeoDataFrame,
    town_id: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Return the POIs that fall inside the largest part of *town_geom*.

    Containment is boundary inclusive. If *pois* has a ``town_id`` column
    it is used to narrow the candidates before the geometric test.

    Parameters
    ----------
    town_geom:
        Polygon or MultiPolygon in the same projected CRS as *pois*.
    pois:
        GeoDataFrame of POI points.
    town_id:
        Town identifier (used for the attribute pre-filter and logging).

    Returns
    -------
    GeoDataFrame (a copy) of the retained POIs.

    Raises
    ------
    InputError
        If no POI lies inside the town.
    """
    part = select_largest_part(town_geom, town_id)

    candidates = pois
    if town_id is not None and TOWN_ID_COL in pois.columns:
        candidates = pois[pois[TOWN_ID_COL].astype(str) == str(town_id)]

    candidates = candidates[candidates.geometry.notna() & ~candidates.geometry.is_empty]
    if candidates.empty:
        raise InputError("No POIs associated with town.", town_id)

    inside = candidates.geometry.covered_by(part)
    kept = candidates[inside].copy()

    logger.info(
        "[%s] Point filter: %d of %d candidate POIs inside boundary.",
        town_id, len(kept), len(candidates),
    )
    if kept.empty:
        raise InputError("No POIs inside town boundary.", town_id)
    return kept
