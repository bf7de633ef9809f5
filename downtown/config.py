"""
Configuration: constants, parameter profiles, input overrides, paths.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from downtown.errors import ConfigError

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
OUTPUT_DIR: Path = ROOT_DIR / "outputs"

DOWNTOWNS_FILENAME: str = "downtowns.geojson"
FAILURES_FILENAME: str = "failures.csv"
SUMMARY_FILENAME: str = "summary.json"
TOWN_STATS_FILENAME: str = "town_stats.parquet"

# ---------------------------------------------------------------------------
# Input columns
# ---------------------------------------------------------------------------

TOWN_ID_COL: str = "town_id"
POI_ID_COL: str = "poi_id"

# CSV exports of POIs carry WKT geometry in lon/lat
POI_WKT_COL: str = "geometry_wkt"
POI_WKT_CRS: str = "EPSG:4326"

# ---------------------------------------------------------------------------
# Hex grid
# ---------------------------------------------------------------------------

# When no fixed cell size is given, the across-flats cell width is the
# shorter side of the points' bounding box divided by this many cells.
DEFAULT_CELLS_PER_SIDE: int = 50

# Upper bound on grid size; a derived cell size is widened to stay below it.
MAX_HEX_CELLS: int = 250_000

# ---------------------------------------------------------------------------
# Algorithm defaults
# ---------------------------------------------------------------------------

DEFAULT_THRESHOLD: float = 0.75      # min-max cutoff, strictly greater than
DEFAULT_BUFFER_DISTANCE: float = 30.0
DEFAULT_SMOOTHNESS: float = 5.0
DEFAULT_SMOOTH_POINTS: int = 10      # resampling factor for ksmooth
DEFAULT_POST_BUFFER_DISTANCE: float = 50.0


@dataclass(frozen=True)
class DowntownParams:
    """Per-run parameters for the downtown delineation algorithm."""

    cell_size: Optional[float] = None       # None → derived from point extent
    cells_per_side: int = DEFAULT_CELLS_PER_SIDE
    bandwidth: Optional[float] = None       # None → normal reference rule
    bandwidth_adjust: float = 1.0
    threshold: float = DEFAULT_THRESHOLD
    buffer_distance: float = DEFAULT_BUFFER_DISTANCE
    smoothness: Optional[float] = DEFAULT_SMOOTHNESS   # None / 0 → no smoothing
    smooth_points: int = DEFAULT_SMOOTH_POINTS
    post_buffer_distance: Optional[float] = None

    def validate(self) -> "DowntownParams":
        problems = []
        if self.cell_size is not None and not self.cell_size > 0:
            problems.append(f"cell_size must be > 0 (got {self.cell_size})")
        if self.cells_per_side < 1:
            problems.append(f"cells_per_side must be >= 1 (got {self.cells_per_side})")
        if self.bandwidth is not None and not self.bandwidth > 0:
            problems.append(f"bandwidth must be > 0 (got {self.bandwidth})")
        if not self.bandwidth_adjust > 0:
            problems.append(f"bandwidth_adjust must be > 0 (got {self.bandwidth_adjust})")
        if not 0.0 <= self.threshold < 1.0:
            problems.append(f"threshold must be in [0, 1) (got {self.threshold})")
        if self.buffer_distance < 0:
            problems.append(f"buffer_distance must be >= 0 (got {self.buffer_distance})")
        if self.smoothness is not None and self.smoothness < 0:
            problems.append(f"smoothness must be >= 0 (got {self.smoothness})")
        if self.smooth_points < 1:
            problems.append(f"smooth_points must be >= 1 (got {self.smooth_points})")
        if self.post_buffer_distance is not None and self.post_buffer_distance < 0:
            problems.append(
                f"post_buffer_distance must be >= 0 (got {self.post_buffer_distance})"
            )
        if problems:
            raise ConfigError("Invalid parameters: " + "; ".join(problems))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Parameter profiles
# ---------------------------------------------------------------------------

# Pipeline variants differ in whether the smoothed outline gets a second,
# wider buffer. Each variant is a named profile rather than a code branch.
PARAMETER_PROFILES: Dict[str, DowntownParams] = {
    "v1": DowntownParams(),
    "v2": DowntownParams(post_buffer_distance=DEFAULT_POST_BUFFER_DISTANCE),
}

DEFAULT_PROFILE: str = "v2"


def get_profile(name: str) -> DowntownParams:
    try:
        return PARAMETER_PROFILES[name]
    except KeyError:
        raise ConfigError(
            f"Unknown parameter profile {name!r}. "
            f"Valid choices: {sorted(PARAMETER_PROFILES)}"
        ) from None


# ---------------------------------------------------------------------------
# Input corrections
# ---------------------------------------------------------------------------

# town_id → index of the polygon part to keep. Used for places whose
# multipart boundary is known to select the wrong part by area alone.
GEOMETRY_OVERRIDES: Dict[str, int] = {}

# ---------------------------------------------------------------------------
# Output schema
# ---------------------------------------------------------------------------

OUTPUT_COLUMNS = [
    TOWN_ID_COL,
    "n_points",
    "n_hexes",
    "mean_z",
    "score",
    "area",
]

FAILURE_COLUMNS = [TOWN_ID_COL, "error", "reason"]
