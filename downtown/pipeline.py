"""
Main pipeline orchestrator.

Ties together point filter → hex grid → KDE → threshold → blobs → scoring →
boundary finishing for one town (``run_town``), and runs that unit of work
over many towns (``run_batch``).

Every town is processed independently and yields a ``TownResult``: either a
polygon or a failure record. Typed per-town failures never stop the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import geopandas as gpd
import pandas as pd
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.geometry.base import BaseGeometry

from downtown.blobs import build_blobs, score_blobs, select_best_blob
from downtown.config import (
    FAILURE_COLUMNS,
    OUTPUT_COLUMNS,
    TOWN_ID_COL,
    DowntownParams,
)
from downtown.density import estimate_density, select_bandwidth
from downtown.errors import DowntownError, GeometryError
from downtown.finish import finish_boundary
from downtown.hexgrid import build_hex_grid
from downtown.points import filter_points, select_largest_part
from downtown.score import select_cells, standardize_density

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class TownLayers:
    """Intermediate layers of one town's run, filled in as steps complete."""

    town_id: str
    boundary: Optional[Polygon] = None
    points: Optional[gpd.GeoDataFrame] = None
    hexes: Optional[gpd.GeoDataFrame] = None
    blobs: Optional[gpd.GeoDataFrame] = None
    best: Optional[pd.Series] = None
    downtown: Optional[Polygon] = None
    bandwidth: Optional[float] = None


@dataclass
class TownResult:
    """Outcome of one town: a polygon, or the reason there is none."""

    town_id: str
    polygon: Optional[Polygon] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.polygon is not None

    @classmethod
    def failure(cls, town_id: str, exc: DowntownError, stats: Dict[str, Any]) -> "TownResult":
        return cls(town_id=town_id, error=exc.kind, reason=exc.reason, stats=stats)


@dataclass
class BatchResult:
    """All town results of a batch, in input order."""

    results: List[TownResult]
    crs: Any = None
    params: Optional[DowntownParams] = None

    @property
    def successes(self) -> List[TownResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[TownResult]:
        return [r for r in self.results if not r.ok]

    @property
    def downtowns(self) -> gpd.GeoDataFrame:
        """One row per successful town with its polygon and diagnostics."""
        records = []
        for r in self.successes:
            row = {TOWN_ID_COL: r.town_id}
            row.update({c: r.stats.get(c) for c in OUTPUT_COLUMNS if c != TOWN_ID_COL})
            row["geometry"] = r.polygon
            records.append(row)
        if not records:
            return gpd.GeoDataFrame(
                columns=OUTPUT_COLUMNS + ["geometry"], geometry="geometry", crs=self.crs
            )
        return gpd.GeoDataFrame(records, geometry="geometry", crs=self.crs)

    @property
    def failures(self) -> pd.DataFrame:
        """Failure log: ``town_id``, ``error``, ``reason``."""
        return pd.DataFrame(
            [(r.town_id, r.error, r.reason) for r in self.failed],
            columns=FAILURE_COLUMNS,
        )

    @property
    def stats(self) -> pd.DataFrame:
        """Per-town diagnostics, successful or not."""
        rows = []
        for r in self.results:
            row = {TOWN_ID_COL: r.town_id, "ok": r.ok, "error": r.error}
            row.update(r.stats)
            rows.append(row)
        return pd.DataFrame(rows)


# ---------------------------------------------------------------------------
# One town
# ---------------------------------------------------------------------------

def delineate_town(
    town_id: str,
    town_geom: BaseGeometry,
    pois: gpd.GeoDataFrame,
    params: DowntownParams,
    layers: Optional[TownLayers] = None,
) -> TownLayers:
    """
    Run the full delineation for one town.

    Raises the typed per-town errors from ``downtown.errors``. Pass a
    *layers* object to keep whatever was computed before a failure.
    """
    if layers is None:
        layers = TownLayers(town_id=town_id)

    # Step 1: largest boundary part + POIs inside it
    layers.boundary = select_largest_part(town_geom, town_id)
    layers.points = filter_points(layers.boundary, pois, town_id)

    # Step 2: hex grid over the points + KDE
    layers.bandwidth = select_bandwidth(
        layers.points, params.bandwidth, params.bandwidth_adjust, town_id
    )
    hexes = build_hex_grid(
        layers.points, params.cell_size, params.cells_per_side, town_id
    )
    layers.hexes = estimate_density(hexes, layers.points, layers.bandwidth, town_id)

    # Step 3: standardize + threshold
    layers.hexes = standardize_density(layers.hexes, town_id)
    layers.hexes = select_cells(layers.hexes, params.threshold, town_id)

    # Step 4: blobs + scores
    blobs, cells = build_blobs(layers.hexes, town_id)
    layers.blobs = score_blobs(blobs, cells)
    layers.best = select_best_blob(layers.blobs, town_id)

    # Step 5: buffer + smooth
    layers.downtown = finish_boundary(layers.best["geometry"], params, town_id)
    return layers


def _layer_stats(layers: TownLayers) -> Dict[str, Any]:
    stats: Dict[str, Any] = {}
    if layers.points is not None:
        stats["n_points"] = int(len(layers.points))
    if layers.bandwidth is not None:
        stats["bandwidth"] = float(layers.bandwidth)
    if layers.hexes is not None:
        stats["n_cells"] = int(len(layers.hexes))
        stats["cell_size"] = layers.hexes.attrs.get("cell_size")
        if "retained" in layers.hexes.columns:
            stats["n_retained"] = int(layers.hexes["retained"].sum())
    if layers.blobs is not None:
        stats["n_blobs"] = int(len(layers.blobs))
    if layers.best is not None:
        stats["blob_id"] = int(layers.best["blob_id"])
        stats["n_hexes"] = int(layers.best["n_hexes"])
        stats["mean_z"] = float(layers.best["mean_z"])
        stats["score"] = float(layers.best["score"])
    if layers.downtown is not None:
        stats["area"] = float(layers.downtown.area)
    return stats


def run_town(
    town_id: str,
    town_geom: BaseGeometry,
    pois: gpd.GeoDataFrame,
    params: DowntownParams,
) -> TownResult:
    """
    Delineate one town and return its ``TownResult``.

    Typed per-town errors and GEOS errors become failure results; any other
    exception propagates.
    """
    layers = TownLayers(town_id=town_id)
    try:
        delineate_town(town_id, town_geom, pois, params, layers)
    except DowntownError as exc:
        logger.warning("[%s] %s: %s", town_id, exc.kind, exc.reason)
        return TownResult.failure(town_id, exc, _layer_stats(layers))
    except GEOSException as exc:
        err = GeometryError(f"GEOS error: {exc}", town_id)
        logger.warning("[%s] %s: %s", town_id, err.kind, err.reason)
        return TownResult.failure(town_id, err, _layer_stats(layers))

    return TownResult(
        town_id=town_id,
        polygon=layers.downtown,
        stats=_layer_stats(layers),
    )


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def _candidate_pois(
    town_id: str,
    town_geom: BaseGeometry,
    pois: gpd.GeoDataFrame,
) -> gpd.GeoDataFrame:
    """Narrow *pois* to the town's bounding box (and town_id, if present)."""
    if TOWN_ID_COL in pois.columns:
        pois = pois[pois[TOWN_ID_COL].astype(str) == str(town_id)]
    if pois.empty:
        return pois
    idx = pois.sindex.query(town_geom.envelope, predicate="intersects")
    return pois.iloc[sorted(idx)]


def run_batch(
    towns: gpd.GeoDataFrame,
    pois: gpd.GeoDataFrame,
    params: DowntownParams,
    workers: int = 1,
    id_col: str = TOWN_ID_COL,
) -> BatchResult:
    """
    Run ``run_town`` for every town in *towns*.

    Parameters
    ----------
    towns:
        One row per town (see ``provider.collect_town_parts``) with an
        *id_col* column, in a projected CRS.
    pois:
        POI points in the same CRS.
    params:
        Algorithm parameters (validated here).
    workers:
        ``1`` runs sequentially; more uses a process pool. Results keep the
        input order either way.
    id_col:
        Town identifier column.

    Returns
    -------
    BatchResult
    """
    params.validate()
    town_ids = [str(t) for t in towns[id_col]]
    logger.info("=" * 60)
    logger.info("Batch starting | towns=%d | workers=%d", len(town_ids), workers)
    logger.info("=" * 60)

    jobs = [
        (town_id, geom, _candidate_pois(town_id, geom, pois))
        for town_id, geom in zip(town_ids, towns.geometry)
    ]

    if workers <= 1:
        results = [run_town(tid, geom, cand, params) for tid, geom, cand in jobs]
    else:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(run_town, tid, geom, cand, params)
                for tid, geom, cand in jobs
            ]
            try:
                results = [f.result() for f in futures]
            except BaseException as exc:
                if isinstance(exc, KeyboardInterrupt):
                    logger.warning("Interrupted; cancelling towns not yet started.")
                else:
                    logger.error("Worker failed (%s); cancelling remaining towns.", exc)
                executor.shutdown(wait=True, cancel_futures=True)
                raise

    batch = BatchResult(results=results, crs=towns.crs, params=params)
    logger.info(
        "Batch complete: %d succeeded, %d failed.",
        len(batch.successes), len(batch.failed),
    )
    for r in batch.failed:
        logger.info("  [%s] %s: %s", r.town_id, r.error, r.reason)
    return batch
