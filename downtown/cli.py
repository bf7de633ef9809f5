"""
CLI entrypoint for downtown delineation.

Usage
-----
    python -m downtown run --towns data/towns.geojson --pois data/pre_auto_poi.csv
    python -m downtown run --towns towns.gpkg --pois pois.gpkg --profile v1 \\
        --workers 4 --out outputs/wa

    # one town, all intermediate layers written to a GeoPackage
    python -m downtown inspect --towns towns.gpkg --pois pois.csv --town 5301990

or via the installed script:

    downtown run --towns towns.gpkg --pois pois.csv
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from shapely.errors import GEOSException

from downtown.config import (
    DEFAULT_PROFILE,
    OUTPUT_DIR,
    PARAMETER_PROFILES,
    TOWN_ID_COL,
    DowntownParams,
    get_profile,
)
from downtown.errors import ConfigError, DowntownError, DowntownValidationError
from downtown.io import read_pois, read_towns, write_batch, write_inspection
from downtown.pipeline import TownLayers, delineate_town, run_batch
from downtown.provider import load_overrides, prepare_inputs
from downtown.validate import validate_batch_output

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------

def _parse_town_ids(value: str) -> List[str]:
    """Parse a comma-separated list of town ids."""
    ids = [s.strip() for s in value.split(",") if s.strip()]
    if not ids:
        raise argparse.ArgumentTypeError("--town_ids needs at least one id")
    return ids


def _params_from_args(args: argparse.Namespace) -> DowntownParams:
    """Start from the named profile and apply any explicit overrides."""
    params = get_profile(args.profile)
    changes = {
        "cell_size": args.cell_size,
        "bandwidth": args.bandwidth,
        "bandwidth_adjust": args.bandwidth_adjust,
        "threshold": args.threshold,
        "buffer_distance": args.buffer,
        "smoothness": args.smoothness,
        "post_buffer_distance": args.post_buffer,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    return dataclasses.replace(params, **changes).validate()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)

    inputs = common.add_argument_group("inputs")
    inputs.add_argument("--towns", type=Path, required=True, metavar="PATH",
                        help="Town polygons (GeoJSON, GeoPackage, Shapefile).")
    inputs.add_argument("--pois", type=Path, required=True, metavar="PATH",
                        help="POI points: vector file, or CSV with a geometry_wkt column.")
    inputs.add_argument("--id_col", default=TOWN_ID_COL, metavar="NAME",
                        help=f"Town id column (default: {TOWN_ID_COL})")
    inputs.add_argument("--crs", default=None, metavar="CRS",
                        help="Projected working CRS, e.g. EPSG:6596. "
                             "Default: the towns' CRS if projected, else its UTM zone.")
    inputs.add_argument("--overrides", type=Path, default=None, metavar="JSON",
                        help="JSON object mapping town id to the polygon part index to keep.")

    algo = common.add_argument_group("algorithm")
    algo.add_argument("--profile", default=DEFAULT_PROFILE,
                      choices=sorted(PARAMETER_PROFILES),
                      help=f"Parameter profile (default: {DEFAULT_PROFILE})")
    algo.add_argument("--cell_size", type=float, default=None, metavar="UNITS",
                      help="Fixed hex cell width. Default: point extent / 50.")
    algo.add_argument("--bandwidth", type=float, default=None, metavar="UNITS",
                      help="Fixed kernel bandwidth. Default: normal reference rule.")
    algo.add_argument("--bandwidth_adjust", type=float, default=None, metavar="FLOAT",
                      help="Multiplier on the bandwidth (default: 1.0)")
    algo.add_argument("--threshold", type=float, default=None, metavar="FLOAT",
                      help="Min-max density cutoff (default: 0.75)")
    algo.add_argument("--buffer", type=float, default=None, metavar="UNITS",
                      help="Mitre buffer before smoothing (default: 30)")
    algo.add_argument("--smoothness", type=float, default=None, metavar="FLOAT",
                      help="Kernel smoothing strength, 0 disables (default: 5)")
    algo.add_argument("--post_buffer", type=float, default=None, metavar="UNITS",
                      help="Buffer after smoothing, 0 disables (profile default)")

    common.add_argument("--log_level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging verbosity (default: INFO)")
    return common


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="downtown",
        description=(
            "Delineate historical downtown cores from POI density "
            "(hex-grid KDE, thresholding, blob scoring, outline smoothing)."
        ),
    )
    sub = parser.add_subparsers(dest="command", required=True)
    common = _common_parser()

    run = sub.add_parser("run", parents=[common], help="Run the batch over all towns.")
    run.add_argument("--out", type=Path, default=OUTPUT_DIR, metavar="DIR",
                     help=f"Output directory (default: {OUTPUT_DIR})")
    run.add_argument("--town_ids", type=_parse_town_ids, default=None,
                     metavar="ID[,ID,...]", help="Only run these towns.")
    run.add_argument("--workers", type=int, default=1, metavar="INT",
                     help="Parallel worker processes (default: 1)")
    run.add_argument("--no_stats", action="store_true",
                     help="Skip the per-town Parquet table.")
    run.add_argument("--strict", action="store_true",
                     help="Exit with status 1 if any town failed.")

    inspect = sub.add_parser(
        "inspect", parents=[common],
        help="Run one town and write every intermediate layer to a GeoPackage.",
    )
    inspect.add_argument("--town", required=True, metavar="ID", help="Town id.")
    inspect.add_argument("--out", type=Path, default=None, metavar="GPKG",
                         help="Output GeoPackage (default: outputs/inspect_<town>.gpkg)")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _load_inputs(args: argparse.Namespace):
    towns = read_towns(args.towns, args.id_col)
    pois = read_pois(args.pois)
    overrides = load_overrides(args.overrides)
    return prepare_inputs(towns, pois, args.crs, overrides, args.id_col)


def _cmd_run(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    towns, pois = _load_inputs(args)

    if args.town_ids:
        missing = sorted(set(args.town_ids) - set(towns[args.id_col]))
        if missing:
            logger.warning("Requested towns not in input: %s", missing)
        towns = towns[towns[args.id_col].isin(args.town_ids)]

    logger.info(
        "Pipeline starting | towns=%d | profile=%s | params=%s | workers=%d",
        len(towns), args.profile, params.to_dict(), args.workers,
    )
    batch = run_batch(towns, pois, params, workers=args.workers, id_col=args.id_col)

    validate_batch_output(batch.downtowns, batch.failures)
    write_batch(batch, args.out, profile=args.profile, write_stats=not args.no_stats)

    if batch.failed:
        logger.warning(
            "Pipeline completed with %d failed town(s): %s",
            len(batch.failed), [r.town_id for r in batch.failed],
        )
        return 1 if args.strict else 0
    logger.info("Pipeline completed successfully for all towns.")
    return 0


def _cmd_inspect(args: argparse.Namespace) -> int:
    params = _params_from_args(args)
    towns, pois = _load_inputs(args)

    match = towns[towns[args.id_col] == args.town]
    if match.empty:
        raise ConfigError(f"Town {args.town!r} not found in {args.towns}.")

    layers = TownLayers(town_id=args.town)
    status = 0
    try:
        delineate_town(args.town, match.geometry.iloc[0], pois, params, layers)
    except (DowntownError, GEOSException) as exc:
        # Keep whatever was computed so the failing step can be looked at.
        logger.error("[%s] Failed: %s", args.town, exc)
        status = 1

    out = args.out or OUTPUT_DIR / f"inspect_{args.town}.gpkg"
    write_inspection(layers, out, crs=towns.crs)
    return status


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("fiona").setLevel(logging.WARNING)
    logging.getLogger("pyogrio").setLevel(logging.WARNING)

    commands = {"run": _cmd_run, "inspect": _cmd_inspect}
    try:
        status = commands[args.command](args)
    except (ConfigError, DowntownValidationError) as exc:
        logger.error("%s", exc)
        sys.exit(2)
    except OSError as exc:
        logger.error("I/O error: %s", exc, exc_info=True)
        sys.exit(2)

    sys.exit(status)


if __name__ == "__main__":
    main()
