"""
Step 00 — Resample 333 m rasters to the 1 km grid (area-based aggregation).

Reads
-----
- PATHS.RAW / PARAMS.INPUT_GLOB     (333 m rasters, physical values after scale/offset)
- PATHS.REF                         (optional 1 km reference raster; sets the AOI)

Writes
------
- outputs/rasters/{stem}_1km.tif    (one per input)
- SUMMARY_CSV = outputs/tables/resample_summary.csv

Notes
-----
- Flagged pixels: value > PARAMS.CUTOFF_HIGH (or < PARAMS.CUTOFF_LOW) → NaN.
- Full-globe inputs are trimmed per edge; subsets are snapped to the 1 km lattice.
- A raster that fails a precondition or cannot be read is logged and recorded;
  the batch continues.
"""

from __future__ import annotations
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from rasterio.errors import RasterioIOError

from config import (
    PATHS, PARAMS, SUMMARY_CSV,
    ensure_output_dirs, family, out_r, get_logger,
)
from errors import GridError
from reducers import ReducerConfig
from aggregation import resample_to_coarse
from utils_geo import Grid, open_grid, write_gtiff

log = get_logger(__name__)


def _discover_inputs() -> list[Path]:
    files = sorted(PATHS.RAW.glob(PARAMS.INPUT_GLOB))
    if not files:
        log.warning("No inputs matching %s in %s", PARAMS.INPUT_GLOB, PATHS.RAW)
    return files


def _row(path: Path, status: str, grid: Grid | None = None, error: str = "") -> dict:
    return {
        "input": str(path),
        "status": status,
        "rows": grid.rows if grid is not None else np.nan,
        "cols": grid.cols if grid is not None else np.nan,
        "cell_size": grid.cell_size if grid is not None else np.nan,
        "valid_fraction": grid.valid_fraction() if grid is not None else np.nan,
        "error": error,
    }


def resample_file(
    path: Path,
    out_path: Path,
    *,
    reference: Optional[Grid] = None,
    reducer: str = PARAMS.REDUCER,
) -> Grid:
    """Open one 333 m raster, resample to 1 km and write it as GeoTIFF."""
    fine = open_grid(path)
    coarse = resample_to_coarse(
        fine,
        cutoff_high=PARAMS.CUTOFF_HIGH,
        cutoff_low=PARAMS.CUTOFF_LOW,
        reducer=reducer,
        reference=reference,
        fine=family(PARAMS.FINE_FAMILY),
        coarse=family(PARAMS.COARSE_FAMILY),
        config=ReducerConfig(min_valid_count=PARAMS.MIN_VALID_COUNT),
    )
    write_gtiff(coarse, out_path, nodata=PARAMS.NODATA_OUT)
    return coarse


def main(inputs: Optional[Iterable[Path]] = None, reference_path: Optional[Path] = None) -> pd.DataFrame:
    """Resample every input raster; return (and write) the per-raster summary table."""
    ensure_output_dirs()
    files = [Path(p) for p in inputs] if inputs is not None else _discover_inputs()

    ref_path = reference_path if reference_path is not None else PATHS.REF
    reference = open_grid(ref_path) if ref_path else None

    log.info(
        "Resampling %d raster(s) | reducer=%s | min_valid=%d | cutoff_high=%s | cutoff_low=%s | reference=%s",
        len(files), PARAMS.REDUCER, PARAMS.MIN_VALID_COUNT,
        PARAMS.CUTOFF_HIGH, PARAMS.CUTOFF_LOW, ref_path.name if ref_path else None,
    )

    rows: list[dict] = []
    for path in files:
        out_path = out_r(f"{path.stem}_1km")
        try:
            coarse = resample_file(path, out_path, reference=reference)
        except (GridError, RasterioIOError) as e:
            log.warning("Skipped %s: %s", path.name, e)
            rows.append(_row(path, "failed", error=f"{type(e).__name__}: {e}"))
            continue
        log.info("Wrote %s | size=%dx%d", out_path.name, coarse.rows, coarse.cols)
        rows.append(_row(path, "ok", coarse))

    summary = pd.DataFrame(rows, columns=["input", "status", "rows", "cols", "cell_size", "valid_fraction", "error"])
    summary.to_csv(SUMMARY_CSV, index=False)
    n_ok = int((summary["status"] == "ok").sum()) if len(summary) else 0
    log.info("Wrote %s | ok=%d failed=%d", SUMMARY_CSV.name, n_ok, len(summary) - n_ok)
    log.info("Step 00 complete.")
    return summary


if __name__ == "__main__":
    main()
