"""
Input preparation: town part collection, declared geometry corrections, and
projection of towns and POIs into one metres-based CRS.

The algorithm itself never fixes up inputs. Known-bad boundaries are
corrected here, from an explicit override table, before a batch starts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import geopandas as gpd
from pyproj import CRS
from shapely.geometry import MultiPolygon

from downtown.config import GEOMETRY_OVERRIDES, TOWN_ID_COL
from downtown.errors import ConfigError
from downtown.points import polygon_parts

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Town parts
# ---------------------------------------------------------------------------

def collect_town_parts(
    towns: gpd.GeoDataFrame,
    id_col: str = TOWN_ID_COL,
) -> gpd.GeoDataFrame:
    """
    Return one row per town with all of its polygon parts as one geometry.

    Towns may arrive as several rows (one per part). Part order follows row
    order, then each row's own part order, so the first-stored tie-break of
    the point filter stays stable. Towns keep the order of first appearance.
    """
    if id_col not in towns.columns:
        raise ConfigError(f"Town layer has no {id_col!r} column.")

    records = []
    for town_id, group in towns.groupby(id_col, sort=False):
        parts = [p for geom in group.geometry if geom is not None for p in polygon_parts(geom)]
        if not parts:
            logger.warning("[%s] Town has no polygon parts; skipped.", town_id)
            continue
        geom = parts[0] if len(parts) == 1 else MultiPolygon(parts)
        records.append({id_col: str(town_id), "geometry": geom})

    if not records:
        return gpd.GeoDataFrame(
            {id_col: []}, geometry=gpd.GeoSeries([], crs=towns.crs), crs=towns.crs
        )
    return gpd.GeoDataFrame(records, geometry="geometry", crs=towns.crs)


# ---------------------------------------------------------------------------
# Geometry overrides
# ---------------------------------------------------------------------------

def load_overrides(path: Optional[Path] = None) -> Dict[str, int]:
    """
    Return the override table: built-in entries, updated from *path*.

    The file is a JSON object mapping town id to the index of the polygon
    part to keep, e.g. ``{"53045": 0}``.
    """
    overrides = dict(GEOMETRY_OVERRIDES)
    if path is None:
        return overrides

    try:
        with open(path) as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read overrides file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Overrides file {path} must hold a JSON object.")
    for town_id, part in raw.items():
        if not isinstance(part, int) or isinstance(part, bool):
            raise ConfigError(
                f"Override for town {town_id!r} must be an integer part index (got {part!r})."
            )
        overrides[str(town_id)] = part
    logger.info("Loaded %d geometry override(s) from %s", len(raw), path)
    return overrides


def apply_geometry_overrides(
    towns: gpd.GeoDataFrame,
    overrides: Mapping[str, int],
    id_col: str = TOWN_ID_COL,
) -> gpd.GeoDataFrame:
    """
    Replace each overridden town's geometry with the chosen polygon part.

    Raises
    ------
    ConfigError
        If a part index is out of range for its town.
    """
    result = towns.copy()
    ids = result[id_col].astype(str)
    geoms = list(result.geometry)

    for town_id, part_index in overrides.items():
        mask = (ids == str(town_id)).to_numpy()
        if not mask.any():
            logger.info("[%s] Override given but town not in input; ignored.", town_id)
            continue
        for pos in mask.nonzero()[0]:
            parts = polygon_parts(geoms[pos])
            if not 0 <= part_index < len(parts):
                raise ConfigError(
                    f"Override for town {town_id!r} selects part {part_index}, "
                    f"but the town has {len(parts)} part(s)."
                )
            geoms[pos] = parts[part_index]
            logger.info(
                "[%s] Override applied: keeping part %d of %d.",
                town_id, part_index, len(parts),
            )

    result["geometry"] = gpd.GeoSeries(geoms, index=result.index, crs=result.crs)
    return result


# ---------------------------------------------------------------------------
# CRS
# ---------------------------------------------------------------------------

def _estimate_utm_crs(lat: float, lon: float) -> str:
    """Return an EPSG code string for the UTM zone containing (lat, lon)."""
    zone = int((lon + 180) / 6) + 1
    if lat >= 0:
        return f"EPSG:{32600 + zone}"
    else:
        return f"EPSG:{32700 + zone}"


def choose_projected_crs(towns: gpd.GeoDataFrame) -> CRS:
    """
    Return a metres-based CRS for *towns*.

    A projected CRS is kept. A geographic one is replaced by the UTM zone
    containing the centre of the towns' extent.
    """
    if towns.crs is None:
        raise ConfigError("Town layer has no CRS.")
    crs = CRS.from_user_input(towns.crs)
    if crs.is_projected:
        return crs

    minx, miny, maxx, maxy = towns.to_crs("EPSG:4326").total_bounds
    utm = _estimate_utm_crs((miny + maxy) / 2, (minx + maxx) / 2)
    logger.info("Towns are in geographic CRS %s; projecting to %s.", crs.name, utm)
    return CRS.from_user_input(utm)


def prepare_inputs(
    towns: gpd.GeoDataFrame,
    pois: gpd.GeoDataFrame,
    crs: Optional[str] = None,
    overrides: Optional[Mapping[str, int]] = None,
    id_col: str = TOWN_ID_COL,
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    """
    Collect town parts, apply overrides and reproject both layers.

    Parameters
    ----------
    towns, pois:
        Raw town polygons and POI points.
    crs:
        Target CRS. ``None`` uses ``choose_projected_crs``.
    overrides:
        Override table (see ``load_overrides``).
    id_col:
        Town identifier column.

    Returns
    -------
    (towns, pois) in the same projected CRS, one row per town.
    """
    target = CRS.from_user_input(crs) if crs else choose_projected_crs(towns)
    if not target.is_projected:
        raise ConfigError(f"Target CRS {target.name} is not projected.")

    towns = collect_town_parts(towns, id_col)
    if overrides:
        towns = apply_geometry_overrides(towns, overrides, id_col)

    if pois.crs is None:
        raise ConfigError("POI layer has no CRS.")

    towns = towns.to_crs(target)
    pois = pois.to_crs(target)
    logger.info(
        "Inputs prepared: %d towns, %d POIs in %s", len(towns), len(pois), target.name
    )
    return towns, pois
