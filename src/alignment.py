"""
Alignment of 333 m rasters onto the 1 km lattice.

Two paths:
- Full-globe rasters: edges sit a fraction of a coarse cell off the 1 km
  lattice by construction, so a fixed number of fine cells is trimmed per
  edge (ProductFamily.global_trim).
- Subsets: the requested extent (explicit, or from a 1 km reference raster)
  is snapped onto the 1 km lattice and the fine grid is cropped to it.
"""

from __future__ import annotations
from typing import Optional, Tuple

from config import GlobalTrim, ProductFamily, PARAMS, get_logger
from errors import ExtentOutOfBounds, InvalidGeometry, ResolutionMismatch
from utils_geo import (
    Extent, Grid, GridLattice,
    crop_to_extent, is_on_lattice, snap_to_lattice,
)

log = get_logger(__name__)


# ======================================================================
# Full-globe path
# ======================================================================

def is_full_globe(grid: Grid, bounds: Tuple[float, float, float, float]) -> bool:
    """True if the grid extends beyond all four (xmin, xmax, ymin, ymax) detection bounds."""
    bxmin, bxmax, bymin, bymax = bounds
    e = grid.extent
    return e.xmin < bxmin and e.xmax > bxmax and e.ymin < bymin and e.ymax > bymax


def crop_if_global(
    grid: Grid,
    full_extent_bounds: Tuple[float, float, float, float],
    trim_cells: GlobalTrim,
) -> Grid:
    """
    Trim `trim_cells` fine cells off each edge when the grid is full-globe.
    Anything else is returned unchanged; callers align subsets with align_extent().
    """
    if not is_full_globe(grid, full_extent_bounds):
        return grid

    t = trim_cells
    if min(t.west, t.east, t.south, t.north) < 0:
        raise InvalidGeometry(f"Trim cells must be non-negative; got {t}")
    r0, r1 = t.north, grid.rows - t.south
    c0, c1 = t.west, grid.cols - t.east
    if r0 >= r1 or c0 >= c1:
        raise InvalidGeometry(f"Trim {t} removes the whole grid of shape {grid.shape}")

    out = grid.window(r0, r1, c0, c1)
    log.info(
        "Full-globe raster detected; trimmed W=%d E=%d S=%d N=%d cells | %dx%d → %dx%d",
        t.west, t.east, t.south, t.north, grid.rows, grid.cols, out.rows, out.cols,
    )
    return out


# ======================================================================
# Subset path
# ======================================================================

def align_extent(
    requested_extent: Extent,
    coarse_lattice: GridLattice,
    tolerance: float = PARAMS.LATTICE_TOL,
) -> Tuple[Extent, bool]:
    """
    Snap an extent onto the coarse lattice.

    Returns (extent, False) when all four components already lie on the
    lattice within `tolerance`; otherwise each X component is snapped to the
    nearest X node and each Y component to the nearest Y node → (snapped, True).
    """
    e = requested_extent
    xs = coarse_lattice.x_nodes(e.xmin, e.xmax)
    ys = coarse_lattice.y_nodes(e.ymin, e.ymax)

    on = (
        is_on_lattice(e.xmin, xs, tolerance),
        is_on_lattice(e.xmax, xs, tolerance),
        is_on_lattice(e.ymin, ys, tolerance),
        is_on_lattice(e.ymax, ys, tolerance),
    )
    if all(on):
        return e, False

    try:
        snapped = Extent(
            xmin=snap_to_lattice(e.xmin, xs),
            xmax=snap_to_lattice(e.xmax, xs),
            ymin=snap_to_lattice(e.ymin, ys),
            ymax=snap_to_lattice(e.ymax, ys),
        )
    except InvalidGeometry as err:
        raise InvalidGeometry(
            f"Requested extent {e.as_tuple()} collapses when snapped to the lattice "
            f"(step={coarse_lattice.step!r}): {err}"
        ) from err

    log.warning(
        "Extent not on the %.7f° lattice; adjusted %s → %s",
        coarse_lattice.step, _fmt(e), _fmt(snapped),
    )
    return snapped, True


def check_reference_resolution(
    reference: Grid,
    expected_cell_size: float,
    tolerance: float = PARAMS.RESOLUTION_TOL,
) -> None:
    """Raise ResolutionMismatch if the reference grid is not at the expected resolution."""
    if abs(reference.cell_size - expected_cell_size) > tolerance:
        raise ResolutionMismatch(
            f"Reference grid cell size {reference.cell_size!r} does not match expected "
            f"{expected_cell_size!r} (tolerance {tolerance})"
        )


def extent_from_reference(reference: Grid, family: ProductFamily) -> Extent:
    """Extent of a coarse reference raster, after checking its resolution."""
    check_reference_resolution(reference, family.cell_size)
    return reference.extent


def clamp_to_grid(
    aligned: Extent,
    bounds: Extent,
    coarse_lattice: GridLattice,
    tolerance: float = PARAMS.LATTICE_TOL,
) -> Extent:
    """
    Pull any edge of a lattice-aligned extent that lies outside `bounds` back to
    the nearest lattice node inside `bounds`. Edges already inside are kept.
    """
    xs = coarse_lattice.x_nodes(bounds.xmin, bounds.xmax)
    ys = coarse_lattice.y_nodes(bounds.ymin, bounds.ymax)
    xs = xs[(xs >= bounds.xmin - tolerance) & (xs <= bounds.xmax + tolerance)]
    ys = ys[(ys >= bounds.ymin - tolerance) & (ys <= bounds.ymax + tolerance)]
    if xs.size < 2 or ys.size < 2:
        raise ExtentOutOfBounds(
            f"Grid extent {bounds.as_tuple()} holds no whole {coarse_lattice.step!r}° lattice cell"
        )

    xmin = float(xs[0]) if aligned.xmin < bounds.xmin - tolerance else aligned.xmin
    xmax = float(xs[-1]) if aligned.xmax > bounds.xmax + tolerance else aligned.xmax
    ymin = float(ys[0]) if aligned.ymin < bounds.ymin - tolerance else aligned.ymin
    ymax = float(ys[-1]) if aligned.ymax > bounds.ymax + tolerance else aligned.ymax
    clamped = Extent(xmin=xmin, xmax=xmax, ymin=ymin, ymax=ymax)
    if clamped != aligned:
        log.warning("Aligned extent %s exceeds the grid; clamped to %s", _fmt(aligned), _fmt(clamped))
    return clamped


def align_and_crop(
    grid: Grid,
    coarse: ProductFamily,
    extent: Optional[Extent] = None,
) -> Grid:
    """
    Snap `extent` to the coarse lattice and crop the fine grid to it.

    With no `extent`, the grid's own extent is used and any edge that snaps
    outward past the grid is clamped to the nearest node inside it.
    """
    requested = grid.extent if extent is None else extent
    lattice = GridLattice.for_family(coarse)
    aligned, adjusted = align_extent(requested, lattice)
    if not adjusted:
        log.info("Extent %s already on the %s lattice", _fmt(aligned), coarse.name)
    if extent is None:
        aligned = clamp_to_grid(aligned, grid.extent, lattice)
    return crop_to_extent(grid, aligned)


def _fmt(e: Extent) -> str:
    return "(" + ", ".join(f"{v:.7f}" for v in e.as_tuple()) + ")"
