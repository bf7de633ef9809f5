"""
Hexagonal grid generation in projected coordinates.

The grid covers the bounding box of a town's filtered POIs (padded by one
cell on every side), not the whole town boundary, so that empty land does
not dilute the density surface.

Cells are pointy-topped hexagons. ``cell_size`` is the across-flats width,
which is also the distance between neighbouring cell centres. All vertices
are placed on a shared lattice of half-widths (x) and half-radii (y), so
neighbouring cells have bit-identical shared edges and dissolve cleanly.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
from shapely.geometry import Polygon

from downtown.config import DEFAULT_CELLS_PER_SIDE, MAX_HEX_CELLS
from downtown.errors import NumericError

logger = logging.getLogger(__name__)

_SQRT3 = math.sqrt(3.0)

# Vertex offsets (in lattice units) around a cell, counter-clockwise from
# the bottom vertex.
_VERTEX_DK = np.array([0, 1, 1, 0, -1, -1])
_VERTEX_DJ = np.array([-2, -1, 1, 2, 1, -1])


# ---------------------------------------------------------------------------
# Cell size
# ---------------------------------------------------------------------------

def derive_cell_size(
    bounds: Tuple[float, float, float, float],
    cells_per_side: int = DEFAULT_CELLS_PER_SIDE,
    town_id: Optional[str] = None,
) -> float:
    """
    Return the default cell size for a point extent.

    The shorter side of the bounding box is split into *cells_per_side*
    cells. If the box is a line the longer side is used instead.

    Raises
    ------
    NumericError
        If the extent is a single point.
    """
    minx, miny, maxx, maxy = bounds
    width, height = maxx - minx, maxy - miny
    sides = [s for s in (width, height) if s > 0]
    if not sides:
        raise NumericError("Point extent has zero width and height.", town_id)
    return min(sides) / cells_per_side


def _estimated_cell_count(width: float, height: float, cell_size: float) -> int:
    radius = cell_size / _SQRT3
    n_cols = (width + 2 * cell_size) / cell_size + 2
    n_rows = (height + 2 * cell_size) / (1.5 * radius) + 2
    return int(n_cols * n_rows)


# ---------------------------------------------------------------------------
# Grid construction
# ---------------------------------------------------------------------------

def build_hex_grid(
    points: gpd.GeoDataFrame,
    cell_size: Optional[float] = None,
    cells_per_side: int = DEFAULT_CELLS_PER_SIDE,
    town_id: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Build a hexagonal grid over the bounding box of *points*.

    Parameters
    ----------
    points:
        GeoDataFrame of POI points in a projected CRS.
    cell_size:
        Across-flats cell width. ``None`` derives it with
        ``derive_cell_size``.
    cells_per_side:
        Used only when *cell_size* is ``None``.
    town_id:
        For logging and error messages.

    Returns
    -------
    GeoDataFrame with one row per cell and columns ``hex_id``, ``row``,
    ``col``, ``center_x``, ``center_y`` and ``geometry``, in the CRS of
    *points*.
    """
    bounds = tuple(float(b) for b in points.total_bounds)
    minx, miny, maxx, maxy = bounds

    if cell_size is None:
        cell_size = derive_cell_size(bounds, cells_per_side, town_id)
        estimate = _estimated_cell_count(maxx - minx, maxy - miny, cell_size)
        if estimate > MAX_HEX_CELLS:
            scale = math.sqrt(estimate / MAX_HEX_CELLS)
            logger.warning(
                "[%s] Derived cell size %.2f would give ~%d cells; widening to %.2f.",
                town_id, cell_size, estimate, cell_size * scale,
            )
            cell_size *= scale

    d = float(cell_size)
    radius = d / _SQRT3
    ux = d / 2.0        # lattice step in x
    uy = radius / 2.0   # lattice step in y

    # Padded extent the grid must cover
    pminx, pminy, pmaxx, pmaxy = minx - d, miny - d, maxx + d, maxy + d

    # Cell (0, 0) is centred on the lower-left corner of the point extent
    x0, y0 = minx, miny
    row_lo = math.floor((pminy - radius - y0) / (1.5 * radius)) - 1
    row_hi = math.ceil((pmaxy + radius - y0) / (1.5 * radius)) + 1
    col_lo = math.floor((pminx - x0) / d) - 1
    col_hi = math.ceil((pmaxx - x0) / d) + 1

    rows, cols = np.meshgrid(
        np.arange(row_lo, row_hi + 1), np.arange(col_lo, col_hi + 1), indexing="ij"
    )
    rows = rows.ravel()
    cols = cols.ravel()

    # Lattice coordinates of cell centres
    k = 2 * cols + (rows % 2)
    j = 3 * rows
    cx = x0 + k * ux
    cy = y0 + j * uy

    keep = (
        (cx + ux >= pminx) & (cx - ux <= pmaxx)
        & (cy + radius >= pminy) & (cy - radius <= pmaxy)
    )
    rows, cols, k, j, cx, cy = rows[keep], cols[keep], k[keep], j[keep], cx[keep], cy[keep]

    vx = x0 + (k[:, None] + _VERTEX_DK[None, :]) * ux
    vy = y0 + (j[:, None] + _VERTEX_DJ[None, :]) * uy
    polygons = [Polygon(np.column_stack([xs, ys])) for xs, ys in zip(vx, vy)]

    grid = gpd.GeoDataFrame(
        {
            "hex_id": np.arange(len(polygons)),
            "row": rows,
            "col": cols,
            "center_x": cx,
            "center_y": cy,
        },
        geometry=polygons,
        crs=points.crs,
    )
    grid.attrs["cell_size"] = d

    logger.info(
        "[%s] Hex grid: %d cells, cell size %.2f, cell area %.1f.",
        town_id, len(grid), d, 1.5 * _SQRT3 * radius ** 2,
    )
    return grid
