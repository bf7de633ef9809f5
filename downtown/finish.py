"""
Boundary finishing: turn a ragged hex-cluster outline into a downtown shape.

Steps
-----
1. Buffer with mitre joins and square caps, which fills the notches of the
   hex outline without rounding the blob's overall footprint.
2. Kernel-smooth every ring (Gaussian kernel along arc length).
3. Optional second, plain buffer for a steadier outline.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from shapely.errors import GEOSException
from shapely.geometry import LinearRing, Polygon
from shapely.geometry.base import BaseGeometry

from downtown.config import DowntownParams
from downtown.errors import GeometryError
from downtown.points import polygon_parts, select_largest_part

logger = logging.getLogger(__name__)

# R's ksmooth scales its bandwidth so the kernel quartiles sit at ±bw/4
_KSMOOTH_SD: float = 0.25 / 0.6744897501960817

# Evaluation points handled per block when smoothing long rings
_CHUNK: int = 2048


# ---------------------------------------------------------------------------
# Ring smoothing
# ---------------------------------------------------------------------------

def smooth_ring(coords: np.ndarray, smoothness: float, n: int = 10) -> np.ndarray:
    """
    Kernel-smooth a closed ring.

    The ring is parameterised by cumulative arc length and its vertices are
    repeated one or more periods on either side, so the smoothed curve has
    no seam at the start point. The result is sampled at ``n`` times the
    vertex count, equally spaced along the original arc length.

    Parameters
    ----------
    coords:
        (m, 2) array of ring coordinates; a repeated closing vertex is
        ignored.
    smoothness:
        Bandwidth as a multiple of the mean vertex spacing.
    n:
        Output density factor.

    Returns
    -------
    (k, 2) array of smoothed coordinates, closed (first == last).
    """
    pts = np.asarray(coords, dtype=float)[:, :2]
    if len(pts) > 1 and np.allclose(pts[0], pts[-1]):
        pts = pts[:-1]
    m = len(pts)
    if m < 3:
        return np.vstack([pts, pts[:1]])

    seg = np.sqrt(((np.roll(pts, -1, axis=0) - pts) ** 2).sum(axis=1))
    perimeter = float(seg.sum())
    if perimeter <= 0:
        return np.vstack([pts, pts[:1]])

    sigma = _KSMOOTH_SD * smoothness * float(seg.mean())
    t = np.concatenate([[0.0], np.cumsum(seg)[:-1]])

    wraps = max(1, int(math.ceil(4 * sigma / perimeter)))
    shifts = np.arange(-wraps, wraps + 1) * perimeter
    t_all = (t[None, :] + shifts[:, None]).ravel()
    xy_all = np.tile(pts, (len(shifts), 1))

    s = np.linspace(0.0, perimeter, n * m, endpoint=False)
    out = np.empty((len(s), 2))
    for start in range(0, len(s), _CHUNK):
        block = s[start:start + _CHUNK]
        z2 = ((block[:, None] - t_all[None, :]) / sigma) ** 2
        # Shift by the row minimum so the nearest sample never underflows
        w = np.exp(-0.5 * (z2 - z2.min(axis=1, keepdims=True)))
        out[start:start + len(block)] = (w @ xy_all) / w.sum(axis=1, keepdims=True)

    return np.vstack([out, out[:1]])


def smooth_polygon(poly: Polygon, smoothness: float, n: int = 10) -> BaseGeometry:
    """Smooth the exterior and interior rings of *poly*."""
    shell = smooth_ring(np.asarray(poly.exterior.coords), smoothness, n)
    holes = [
        smooth_ring(np.asarray(ring.coords), smoothness, n)
        for ring in poly.interiors
    ]
    holes = [h for h in holes if len(h) >= 4 and LinearRing(h).is_valid]
    smoothed = Polygon(shell, holes)
    if not smoothed.is_valid:
        smoothed = smoothed.buffer(0)
    return smoothed


# ---------------------------------------------------------------------------
# Finisher
# ---------------------------------------------------------------------------

def _largest_polygon(geom: BaseGeometry, town_id: Optional[str]) -> Polygon:
    if geom.is_empty:
        raise GeometryError("Downtown geometry collapsed to empty.", town_id)
    if len(polygon_parts(geom)) > 1:
        logger.warning(
            "[%s] Finished geometry has %d parts; keeping the largest.",
            town_id, len(polygon_parts(geom)),
        )
    return select_largest_part(geom, town_id)


def finish_boundary(
    blob: BaseGeometry,
    params: DowntownParams,
    town_id: Optional[str] = None,
) -> Polygon:
    """
    Buffer, smooth and optionally re-buffer the best blob.

    Parameters
    ----------
    blob:
        Blob polygon in projected coordinates.
    params:
        Uses ``buffer_distance``, ``smoothness``, ``smooth_points`` and
        ``post_buffer_distance``.
    town_id:
        For logging and error messages.

    Returns
    -------
    Single Polygon.

    Raises
    ------
    GeometryError
        If the geometry collapses or GEOS fails.
    """
    try:
        geom = blob
        if params.buffer_distance > 0:
            geom = geom.buffer(
                params.buffer_distance, join_style="mitre", cap_style="square"
            )
        geom = _largest_polygon(geom, town_id)

        if params.smoothness:
            geom = smooth_polygon(geom, params.smoothness, params.smooth_points)
            geom = _largest_polygon(geom, town_id)

        if params.post_buffer_distance:
            geom = geom.buffer(params.post_buffer_distance)
            geom = _largest_polygon(geom, town_id)
    except GEOSException as exc:
        raise GeometryError(f"Boundary finishing failed: {exc}", town_id) from exc

    logger.info(
        "[%s] Finished boundary: area %.1f → %.1f (buffer=%.1f, smoothness=%s, post_buffer=%s)",
        town_id, blob.area, geom.area, params.buffer_distance,
        params.smoothness, params.post_buffer_distance,
    )
    return geom
