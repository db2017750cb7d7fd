"""
Block aggregation (N x N → 1) and the full 333 m → 1 km pipeline.

Pipeline:
    raw grid → mask_flagged_pixels
             → crop_if_global (full globe) | align_and_crop (subset)
             → aggregate_blocks(reducer)
"""

from __future__ import annotations
from typing import Optional, Union

import numpy as np

from config import FAMILY_1KM, FAMILY_333M, PARAMS, ProductFamily, aggregation_factor, get_logger
from errors import NonIntegerAggregationFactor
from reducers import Reducer, ReducerConfig, get_reducer
from alignment import align_and_crop, crop_if_global, extent_from_reference, is_full_globe
from utils_geo import Extent, Grid, mask_flagged_pixels

log = get_logger(__name__)


def _resolve_reducer(reducer: Union[str, Reducer]) -> Reducer:
    return get_reducer(reducer) if isinstance(reducer, str) else reducer


def aggregate_blocks(
    grid: Grid,
    factor: int,
    reducer: Union[str, Reducer],
    config: Optional[ReducerConfig] = None,
) -> Grid:
    """
    Reduce each factor x factor block of `grid` to one coarse cell.

    `factor` must divide rows and cols exactly; crop first (crop_if_global /
    align_and_crop). Blocks are passed to the reducer in row-major scan order.
    Output keeps the input extent with cell_size * factor.
    """
    if isinstance(factor, bool) or int(factor) != factor or factor < 1:
        raise NonIntegerAggregationFactor(f"Aggregation factor must be a positive integer; got {factor!r}")
    f = int(factor)
    if grid.rows % f or grid.cols % f:
        raise NonIntegerAggregationFactor(
            f"Factor {f} does not divide grid shape {grid.shape} "
            f"(remainder rows={grid.rows % f}, cols={grid.cols % f}); crop to the coarse lattice first"
        )

    fn = _resolve_reducer(reducer)
    cfg = config or ReducerConfig(min_valid_count=PARAMS.MIN_VALID_COUNT)

    R, C = grid.rows // f, grid.cols // f
    # (R, f, C, f) → (R, C, f*f): last axis is one block, row-major
    blocks = grid.values.reshape(R, f, C, f).transpose(0, 2, 1, 3).reshape(R, C, f * f)
    out = np.asarray(fn(blocks, cfg), dtype="float64").reshape(R, C)
    if not np.isnan(cfg.nodata):
        # Grid holds no data as NaN; the sentinel is only applied on write
        out = np.where(out == cfg.nodata, np.nan, out)

    log.info(
        "Aggregated %dx%d → %dx%d | factor=%d | reducer=%s | valid=%.3f",
        grid.rows, grid.cols, R, C, f, getattr(fn, "__name__", repr(fn)),
        float(np.isfinite(out).mean()),
    )
    return Grid(out, grid.extent, grid.cell_size * f, dict(grid.meta))


def resample_to_coarse(
    grid: Grid,
    *,
    cutoff_high: float,
    cutoff_low: Optional[float] = None,
    reducer: Union[str, Reducer] = PARAMS.REDUCER,
    extent: Optional[Extent] = None,
    reference: Optional[Grid] = None,
    fine: ProductFamily = FAMILY_333M,
    coarse: ProductFamily = FAMILY_1KM,
    config: Optional[ReducerConfig] = None,
) -> Grid:
    """
    Mask, align and aggregate a fine-resolution grid onto the coarse lattice.

    The area of interest is taken from `extent`, or from a coarse `reference`
    grid (resolution-checked), or else from the grid itself. Full-globe
    grids ignore it and use the fixed per-edge trim.
    """
    if extent is not None and reference is not None:
        raise ValueError("Pass either `extent` or `reference`, not both.")

    masked = mask_flagged_pixels(grid, cutoff_high, cutoff_low)

    if is_full_globe(masked, fine.global_bounds):
        cropped = crop_if_global(masked, fine.global_bounds, fine.global_trim)
    else:
        if reference is not None:
            extent = extent_from_reference(reference, coarse)
        cropped = align_and_crop(masked, coarse, extent)

    return aggregate_blocks(cropped, aggregation_factor(fine, coarse), reducer, config)
