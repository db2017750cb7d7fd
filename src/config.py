"""
333 m → 1 km Resampling — Central Configuration
===============================================

Scope
-----
This module centralizes:
- Logging (timestamped INFO logger)
- Project paths (inputs/outputs, canonical output name helpers)
- Product families (cell size, lattice origin, full-globe detection, edge trims)
- Reducer naming policy (string → canonical reducer name)
- Run parameters (aggregation factor, minimum valid count, cutoffs, tolerances, families)

Usage (from any step):
    from config import PATHS, PARAMS, FAMILY_333M, FAMILY_1KM
    from config import out_r, out_t, get_logger, REDUCER_NAME

Design notes
------------
- Lattice origins are grid *edges*, not pixel centres. Both families are
  pixel-centred on whole degrees, so edges sit half a cell off the integer
  degree lines (e.g. -180 - 1/672 for 333 m, -180 - 1/224 for 1 km).
- PARAMS is a frozen dataclass (immutable) so a batch run cannot drift
  between rasters.
"""

from __future__ import annotations

# stdlib
from dataclasses import dataclass
from pathlib import Path
import math
import os
import sys
import logging


# ======================================================================
# 1) Logging
# ======================================================================

def get_logger(name: str = "resample") -> logging.Logger:
    """
    Return a timestamped, INFO-level logger that writes to stdout.

    Example:
        from config import get_logger
        log = get_logger(__name__)
        log.info("message")
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(logging.INFO)
        h = logging.StreamHandler(stream=sys.stdout)
        h.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S",
        ))
        logger.addHandler(h)
        logger.propagate = False
    return logger


# ======================================================================
# 2) Project root & paths
# ======================================================================

def _detect_project_root() -> Path:
    """
    Detect project root assuming this file lives in `<root>/src/config.py`.
    If env var PROJECT_ROOT is set, it wins.
    """
    env = os.environ.get("PROJECT_ROOT")
    if env:
        return Path(env).expanduser().resolve()
    return Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class Paths:
    """Container for commonly used directories and files."""

    ROOT: Path
    DATA: Path
    RAW: Path          # 333 m inputs (GeoTIFF / netCDF subdatasets)
    REF: Path | None   # optional 1 km reference raster used to pick the AOI
    OUT: Path
    OUT_R: Path
    OUT_T: Path


def _build_paths() -> Paths:
    root = _detect_project_root()
    data = root / "data"
    out = root / "outputs"
    ref = os.environ.get("RESAMPLE_REFERENCE")
    return Paths(
        ROOT=root,
        DATA=data,
        RAW=data / "raw_333m",
        REF=Path(ref).expanduser() if ref else None,
        OUT=out,
        OUT_R=out / "rasters",
        OUT_T=out / "tables",
    )

PATHS = _build_paths()


def ensure_output_dirs(paths: Paths = PATHS) -> None:
    """Create output folders (called by steps, not at import)."""
    for p in (paths.OUT, paths.OUT_R, paths.OUT_T):
        p.mkdir(parents=True, exist_ok=True)


def out_r(stem: str, ext: str = ".tif") -> Path:
    """Raster output path → outputs/rasters/{stem}.tif"""
    return PATHS.OUT_R / f"{stem}{ext}"

def out_t(stem: str, ext: str = ".csv") -> Path:
    """Table output path → outputs/tables/{stem}.csv"""
    return PATHS.OUT_T / f"{stem}{ext}"


# ======================================================================
# 3) Product families (grid geometry per resolution)
# ======================================================================

@dataclass(frozen=True)
class GlobalTrim:
    """Cells removed per edge when a full-globe raster is cropped."""
    west: int = 0
    east: int = 0
    south: int = 0
    north: int = 0


@dataclass(frozen=True)
class ProductFamily:
    """
    Grid geometry for one product resolution.

    `global_bounds` holds the (xmin, xmax, ymin, ymax) detection thresholds:
    a raster is "full globe" when its extent lies beyond all four of them.
    """
    name: str
    cell_size: float
    x_origin: float
    y_origin: float
    global_bounds: tuple[float, float, float, float]
    global_trim: GlobalTrim = GlobalTrim()


FAMILY_333M = ProductFamily(
    name="333m",
    cell_size=1.0 / 336.0,
    x_origin=-180.0 - 1.0 / 672.0,
    y_origin=80.0 + 1.0 / 672.0,
    global_bounds=(-179.997, 179.997, -59.997, 79.997),
    # W/N edges sit 1 fine cell inward of a 1 km line (next line is 2 cells in);
    # E/S edges sit 1 fine cell outward of one.
    global_trim=GlobalTrim(west=2, east=1, south=1, north=2),
)

FAMILY_1KM = ProductFamily(
    name="1km",
    cell_size=1.0 / 112.0,
    x_origin=-180.0 - 1.0 / 224.0,
    y_origin=80.0 + 1.0 / 224.0,
    global_bounds=(-179.991, 179.991, -59.991, 79.991),
)

FAMILIES: dict[str, ProductFamily] = {f.name: f for f in (FAMILY_333M, FAMILY_1KM)}


def family(name: str) -> ProductFamily:
    """Look up a product family by name ("333m", "1km")."""
    key = str(name).lower().strip()
    try:
        return FAMILIES[key]
    except KeyError:
        raise KeyError(f"Unknown product family {name!r}. Valid: {sorted(FAMILIES)}") from None


def aggregation_factor(fine: ProductFamily, coarse: ProductFamily) -> int:
    """Integer ratio coarse/fine cell size (3 for 333 m → 1 km)."""
    return int(round(coarse.cell_size / fine.cell_size))


# ======================================================================
# 4) Reducer naming (centralized policy)
# ======================================================================

REDUCER_NAMES: tuple[str, ...] = ("mean_w_cond", "closest_to_mean", "uncert_propag")

REDUCER_ALIASES = {
    "mean": "mean_w_cond",
    "mean_w_cond": "mean_w_cond",
    "conditional_mean": "mean_w_cond",
    "closest": "closest_to_mean",
    "closest_to_mean": "closest_to_mean",
    "uncert": "uncert_propag",
    "uncert_propag": "uncert_propag",
    "rms": "uncert_propag",
}

def REDUCER_NAME(name: str) -> str:
    """
    Normalize a reducer name ("Mean", "closest", "RMS", ...) to its canonical name.
    Names not in the alias table pass through so custom reducers stay addressable.
    """
    key = str(name).lower().strip().replace("-", "_")
    return REDUCER_ALIASES.get(key, key)


def cutoff_from_dn(dn: float, scale: float, offset: float = 0.0) -> float:
    """Physical cutoff from a raw flag DN: dn * scale + offset."""
    return float(dn) * float(scale) + float(offset)


# ======================================================================
# 5) Parameters / knobs (frozen dataclass)
# ======================================================================

def _env_float(key: str, default: float | None) -> float | None:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() in ("none", "null"):
        return None
    return float(raw)


@dataclass(frozen=True)
class Params:
    """All knobs in one place for repeatability."""

    # Aggregation policy
    AGG_FACTOR: int
    MIN_VALID_COUNT: int       # n_valid <= this → no data (4 → need 5 of 9)
    REDUCER: str

    # Flagged-pixel cutoffs (physical units, already scaled)
    CUTOFF_HIGH: float
    CUTOFF_LOW: float | None

    # Tolerances (degrees)
    LATTICE_TOL: float
    RESOLUTION_TOL: float

    # Product families (keys of FAMILIES)
    FINE_FAMILY: str
    COARSE_FAMILY: str

    # Batch inputs
    INPUT_GLOB: str

    # Output nodata written to GeoTIFF
    NODATA_OUT: float = math.nan


PARAMS = Params(
    AGG_FACTOR=aggregation_factor(FAMILY_333M, FAMILY_1KM),
    MIN_VALID_COUNT=4,
    REDUCER=REDUCER_NAME(os.environ.get("RESAMPLE_REDUCER", "mean_w_cond")),

    # NDVI 300 m: DN > 250 flagged, scale 0.004, offset -0.08 → 0.92
    CUTOFF_HIGH=_env_float("RESAMPLE_CUTOFF_HIGH", cutoff_from_dn(250, 0.004, -0.08)),
    CUTOFF_LOW=_env_float("RESAMPLE_CUTOFF_LOW", None),

    LATTICE_TOL=1e-7,
    RESOLUTION_TOL=1e-10,

    FINE_FAMILY=os.environ.get("RESAMPLE_FINE_FAMILY", "333m"),
    COARSE_FAMILY=os.environ.get("RESAMPLE_COARSE_FAMILY", "1km"),

    INPUT_GLOB=os.environ.get("RESAMPLE_INPUT_GLOB", "*.tif"),
)


# Canonical output names
SUMMARY_CSV = out_t("resample_summary")
