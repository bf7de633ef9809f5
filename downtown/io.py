"""
Input readers and output writers: towns, POIs, downtown GeoJSON, failure
log, summary statistics, per-town Parquet table, and diagnostic GeoPackage.

Batch outputs are published all-or-nothing: every artifact is first written
to a temporary file next to its destination, and only when all of them
succeeded are they moved into place with ``os.replace``. Files being
overwritten are moved aside first and restored if any move fails.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

import geopandas as gpd
import pandas as pd

from downtown.config import (
    DOWNTOWNS_FILENAME,
    FAILURES_FILENAME,
    POI_ID_COL,
    POI_WKT_COL,
    POI_WKT_CRS,
    SUMMARY_FILENAME,
    TOWN_ID_COL,
    TOWN_STATS_FILENAME,
)
from downtown.errors import ConfigError

if TYPE_CHECKING:
    from downtown.pipeline import BatchResult, TownLayers

logger = logging.getLogger(__name__)


class _SafeEncoder(json.JSONEncoder):
    """Convert numpy scalars and Python bools to plain JSON-serialisable types."""
    def default(self, obj):
        if isinstance(obj, bool):
            return bool(obj)
        if hasattr(obj, "item"):   # numpy scalar (int64, float64, bool_, …)
            return obj.item()
        return super().default(obj)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def read_towns(path: Path, id_col: str = TOWN_ID_COL) -> gpd.GeoDataFrame:
    """Read town polygons from any OGR-readable file; ids become strings."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Town file not found: {path}")
    towns = gpd.read_file(path)
    if id_col not in towns.columns:
        raise ConfigError(
            f"{path}: no {id_col!r} column (found {list(towns.columns)})."
        )
    towns[id_col] = towns[id_col].astype(str)
    logger.info("Read %d town rows from %s (CRS %s)", len(towns), path, towns.crs)
    return towns


def read_pois(path: Path, town_id_col: str = TOWN_ID_COL) -> gpd.GeoDataFrame:
    """
    Read POI points.

    ``.csv`` files must carry WKT point geometry in ``geometry_wkt``
    (lon/lat, EPSG:4326). Anything else is read with ``geopandas.read_file``.
    A ``poi_id`` column is added from the row number when missing.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"POI file not found: {path}")
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, dtype={town_id_col: str})
        if POI_WKT_COL not in df.columns:
            raise ConfigError(f"{path}: CSV has no {POI_WKT_COL!r} column.")
        geometry = gpd.GeoSeries.from_wkt(df[POI_WKT_COL], crs=POI_WKT_CRS)
        pois = gpd.GeoDataFrame(df.drop(columns=POI_WKT_COL), geometry=geometry)
    else:
        pois = gpd.read_file(path)
        if town_id_col in pois.columns:
            pois[town_id_col] = pois[town_id_col].astype(str)

    n_raw = len(pois)
    pois = pois[pois.geometry.notna() & (pois.geometry.geom_type == "Point")]
    if len(pois) < n_raw:
        logger.warning("%s: dropped %d non-point or empty rows.", path, n_raw - len(pois))

    if POI_ID_COL not in pois.columns:
        pois = pois.assign(**{POI_ID_COL: range(len(pois))})

    logger.info("Read %d POIs from %s (CRS %s)", len(pois), path, pois.crs)
    return pois


# ---------------------------------------------------------------------------
# Atomic publishing
# ---------------------------------------------------------------------------

def _temp_sibling(path: Path) -> Path:
    """Reserve a temporary path in the same directory as *path*."""
    fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=path.suffix, dir=path.parent)
    os.close(fd)
    # OGR drivers refuse to overwrite an existing file; let them create it.
    os.unlink(tmp)
    return Path(tmp)


def _commit(staged: List[Tuple[Path, Path]]) -> None:
    """
    Move every staged temp file onto its destination.

    Existing destinations are moved aside first. If any move fails, the
    files already published are removed and the originals put back.
    """
    for _, path in staged:
        if path.is_dir():
            raise IsADirectoryError(f"Cannot publish over directory {path}")

    moved: List[Tuple[Path, Optional[Path]]] = []
    try:
        for tmp, path in staged:
            backup = None
            if path.exists():
                backup = _temp_sibling(path)
                os.replace(path, backup)
            moved.append((path, backup))
            os.replace(tmp, path)
    except BaseException:
        for path, backup in reversed(moved):
            if backup is not None:
                os.replace(backup, path)
            elif path.exists():
                path.unlink()
        raise

    for _, backup in moved:
        if backup is not None:
            backup.unlink()


def publish(writers: List[Tuple[Path, Callable[[Path], None]]]) -> List[Path]:
    """
    Write several files all-or-nothing.

    Each ``(path, write)`` pair has ``write`` called with a temporary path.
    When every writer has succeeded the temporary files replace their
    destinations. If a writer or a replace fails, all temporary files are
    removed, every destination is left as it was, and the error propagates.
    """
    staged: List[Tuple[Path, Path]] = []
    try:
        for path, write in writers:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = _temp_sibling(path)
            staged.append((tmp, path))
            write(tmp)
        _commit(staged)
    except BaseException:
        for tmp, _ in staged:
            if tmp.exists():
                tmp.unlink()
        raise

    return [path for _, path in staged]


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def _write_geojson(gdf: gpd.GeoDataFrame, path: Path) -> None:
    if gdf.empty:
        # OGR cannot write a layer with no features and no schema
        with open(path, "w") as f:
            json.dump({"type": "FeatureCollection", "features": []}, f)
        return
    gdf.to_file(path, driver="GeoJSON")


def _write_failures(failures: pd.DataFrame, path: Path) -> None:
    failures.to_csv(path, index=False)


def _write_parquet(df: pd.DataFrame, path: Path) -> None:
    df = df.copy()
    # pandas serialises df.attrs as JSON Parquet metadata; keep it empty.
    df.attrs = {}
    df.to_parquet(path, index=False, engine="pyarrow")


def _write_json(payload: Dict[str, Any], path: Path) -> None:
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, cls=_SafeEncoder)


def build_summary(batch: BatchResult, profile: Optional[str] = None) -> Dict[str, Any]:
    """Run metadata: parameters, counts, failures by error kind."""
    failures = batch.failures
    return {
        "profile": profile,
        "parameters": batch.params.to_dict() if batch.params is not None else None,
        "crs": batch.crs.to_string() if batch.crs is not None else None,
        "n_towns": len(batch.results),
        "n_succeeded": len(batch.successes),
        "n_failed": len(batch.failed),
        "failures_by_error": {
            str(k): int(v) for k, v in failures["error"].value_counts().items()
        },
    }


def write_batch(
    batch: BatchResult,
    out_dir: Path,
    profile: Optional[str] = None,
    write_stats: bool = True,
) -> Dict[str, Path]:
    """
    Publish the batch artifacts to *out_dir*.

    Files
    -----
    ``downtowns.geojson``  one feature per successful town
    ``failures.csv``       ``town_id,error,reason``
    ``summary.json``       run metadata
    ``town_stats.parquet`` per-town diagnostics (optional)
    """
    out_dir = Path(out_dir)
    downtowns = batch.downtowns
    failures = batch.failures
    summary = build_summary(batch, profile)

    writers: List[Tuple[Path, Callable[[Path], None]]] = [
        (out_dir / DOWNTOWNS_FILENAME, lambda p: _write_geojson(downtowns, p)),
        (out_dir / FAILURES_FILENAME, lambda p: _write_failures(failures, p)),
        (out_dir / SUMMARY_FILENAME, lambda p: _write_json(summary, p)),
    ]
    if write_stats:
        stats = batch.stats
        writers.append(
            (out_dir / TOWN_STATS_FILENAME, lambda p: _write_parquet(stats, p))
        )

    paths = publish(writers)
    logger.info(
        "Batch outputs written to %s: %d downtowns, %d failures",
        out_dir, len(downtowns), len(failures),
    )
    return {p.name: p for p in paths}


def write_inspection(layers: TownLayers, path: Path, crs: Any = None) -> Optional[Path]:
    """
    Write every available intermediate layer of one town to a GeoPackage.

    Layers: ``boundary``, ``points``, ``hexes``, ``blobs``, ``best_blob``,
    ``downtown``. Layers not reached before a failure are skipped.
    """
    path = Path(path)
    if crs is None:
        for frame in (layers.points, layers.hexes, layers.blobs):
            if frame is not None:
                crs = frame.crs
                break

    def _single(geom, name):
        return gpd.GeoDataFrame(
            {TOWN_ID_COL: [layers.town_id], "layer": [name]}, geometry=[geom], crs=crs
        )

    frames: Dict[str, gpd.GeoDataFrame] = {}
    if layers.boundary is not None:
        frames["boundary"] = _single(layers.boundary, "boundary")
    if layers.points is not None:
        frames["points"] = layers.points
    if layers.hexes is not None:
        frames["hexes"] = layers.hexes
    if layers.blobs is not None:
        frames["blobs"] = layers.blobs
    if layers.best is not None:
        frames["best_blob"] = _single(layers.best["geometry"], "best_blob")
    if layers.downtown is not None:
        frames["downtown"] = _single(layers.downtown, "downtown")

    if not frames:
        logger.warning("[%s] No layers to write.", layers.town_id)
        return None

    def _write(tmp: Path) -> None:
        for name, frame in frames.items():
            frame.to_file(tmp, layer=name, driver="GPKG")

    publish([(path, _write)])
    logger.info("[%s] Inspection layers %s written to %s", layers.town_id, list(frames), path)
    return path
