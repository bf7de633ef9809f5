"""
Acceptance validation for a batch's downtown polygons.

Call ``validate_batch_output`` before publishing a batch. Raises
``DowntownValidationError`` listing all failed checks if any fail.
"""

from __future__ import annotations

import logging
from typing import List

import geopandas as gpd
import pandas as pd
from pyproj import CRS

from downtown.config import TOWN_ID_COL
from downtown.errors import DowntownValidationError

logger = logging.getLogger(__name__)


def validate_batch_output(
    downtowns: gpd.GeoDataFrame,
    failures: pd.DataFrame,
) -> None:
    """
    Run all acceptance checks against a completed batch.

    Checks
    ------
    V1  Town ids are unique among successes.
    V2  Every geometry is a non-empty, valid single Polygon.
    V3  Every polygon has positive area.
    V4  No town is both a success and a failure.
    V5  Every failure has a non-empty reason.
    V6  Output CRS is set and projected (when there are successes).

    Raises
    ------
    DowntownValidationError
        If any check fails. All failures are collected and reported together.
    """
    problems: List[str] = []

    # V1 — unique ids
    dupes = downtowns[TOWN_ID_COL][downtowns[TOWN_ID_COL].duplicated()].unique()
    if len(dupes) > 0:
        problems.append(f"V1: Duplicate town ids in output: {sorted(map(str, dupes))}.")

    # V2 / V3 — geometry checks
    if len(downtowns) > 0:
        geoms = downtowns.geometry
        bad_type = downtowns.loc[geoms.geom_type != "Polygon", TOWN_ID_COL].tolist()
        if bad_type:
            problems.append(f"V2: Non-polygon geometry for towns {bad_type}.")
        empty = downtowns.loc[geoms.is_empty | geoms.isna(), TOWN_ID_COL].tolist()
        if empty:
            problems.append(f"V2: Empty geometry for towns {empty}.")
        invalid = downtowns.loc[~geoms.is_valid, TOWN_ID_COL].tolist()
        if invalid:
            problems.append(f"V2: Invalid geometry for towns {invalid}.")
        zero_area = downtowns.loc[geoms.area <= 0, TOWN_ID_COL].tolist()
        if zero_area:
            problems.append(f"V3: Zero-area polygon for towns {zero_area}.")

    # V4 — disjoint success / failure sets
    both = set(downtowns[TOWN_ID_COL].astype(str)) & set(failures[TOWN_ID_COL].astype(str))
    if both:
        problems.append(f"V4: Towns both succeeded and failed: {sorted(both)}.")

    # V5 — failure reasons
    if len(failures) > 0:
        missing = failures.loc[
            failures["reason"].isna() | (failures["reason"].astype(str).str.strip() == ""),
            TOWN_ID_COL,
        ].tolist()
        if missing:
            problems.append(f"V5: Failures without a reason for towns {missing}.")

    # V6 — CRS
    if len(downtowns) > 0:
        if downtowns.crs is None:
            problems.append("V6: Output has no CRS.")
        elif not CRS.from_user_input(downtowns.crs).is_projected:
            problems.append(f"V6: Output CRS {downtowns.crs} is not projected.")

    if problems:
        msg = f"Batch validation failed ({len(problems)} issue(s)):\n" + "\n".join(
            f"  {p}" for p in problems
        )
        logger.error(msg)
        raise DowntownValidationError(msg)

    logger.info(
        "All validation checks passed (%d downtowns, %d failures).",
        len(downtowns), len(failures),
    )
