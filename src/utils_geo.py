"""
Grid geometry and raster helpers for the 333 m → 1 km resampling core.

Grids are immutable values: every helper returns a new Grid. No-data is NaN
throughout; rioxarray adapters translate file nodata to NaN on read and back
on write.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional
import math

import numpy as np
import rioxarray as rxr
import xarray as xr
from affine import Affine
from rasterio.crs import CRS

from config import ProductFamily, get_logger
from errors import ExtentOutOfBounds, InvalidCutoff, InvalidGeometry

log = get_logger(__name__)

# Grid/extent consistency tolerance (degrees)
GEOM_TOL = 1e-7
WGS84 = CRS.from_epsg(4326)


# ======================================================================
# Extent / Grid value types
# ======================================================================

@dataclass(frozen=True)
class Extent:
    """Axis-aligned bounding box in decimal degrees: (xmin, xmax, ymin, ymax)."""
    xmin: float
    xmax: float
    ymin: float
    ymax: float

    def __post_init__(self):
        vals = (self.xmin, self.xmax, self.ymin, self.ymax)
        if not all(math.isfinite(float(v)) for v in vals):
            raise InvalidGeometry(f"Extent has non-finite component: {vals}")
        if not (self.xmin < self.xmax and self.ymin < self.ymax):
            raise InvalidGeometry(
                f"Extent must satisfy xmin < xmax and ymin < ymax; got {vals}"
            )

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.xmax, self.ymin, self.ymax)

    def overlaps(self, other: "Extent") -> bool:
        return (self.xmin < other.xmax and other.xmin < self.xmax and
                self.ymin < other.ymax and other.ymin < self.ymax)


@dataclass(frozen=True, eq=False)
class Grid:
    """
    2-D float grid, row-major, north→south / west→east, NaN = no data.

    The values array is copied to float64 and frozen (read-only) on
    construction; `cell_size` must agree with extent/shape within GEOM_TOL.
    """
    values: np.ndarray
    extent: Extent
    cell_size: float
    meta: dict = field(default_factory=dict)

    def __post_init__(self):
        arr = np.array(self.values, dtype="float64", copy=True)
        if arr.ndim != 2 or arr.size == 0:
            raise InvalidGeometry(f"Grid values must be a non-empty 2-D array; got shape {arr.shape}")
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)

        cs = float(self.cell_size)
        if not math.isfinite(cs) or cs <= 0:
            raise InvalidGeometry(f"cell_size must be positive and finite; got {self.cell_size!r}")
        object.__setattr__(self, "cell_size", cs)

        rows, cols = arr.shape
        csx = self.extent.width / cols
        csy = self.extent.height / rows
        if abs(csx - cs) > GEOM_TOL or abs(csy - cs) > GEOM_TOL:
            raise InvalidGeometry(
                f"cell_size {cs!r} inconsistent with extent {self.extent.as_tuple()} "
                f"and shape {arr.shape} (x={csx!r}, y={csy!r})"
            )

    @property
    def rows(self) -> int:
        return self.values.shape[0]

    @property
    def cols(self) -> int:
        return self.values.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    @property
    def transform(self) -> Affine:
        """North-up affine transform (upper-left corner origin)."""
        return Affine(self.cell_size, 0.0, self.extent.xmin, 0.0, -self.cell_size, self.extent.ymax)

    def x_centres(self) -> np.ndarray:
        return self.extent.xmin + (np.arange(self.cols) + 0.5) * self.cell_size

    def y_centres(self) -> np.ndarray:
        return self.extent.ymax - (np.arange(self.rows) + 0.5) * self.cell_size

    def valid_fraction(self) -> float:
        return float(np.isfinite(self.values).mean())

    def with_values(self, values: np.ndarray) -> "Grid":
        """Same geometry, new samples."""
        return Grid(values, self.extent, self.cell_size, dict(self.meta))

    def window(self, row_start: int, row_stop: int, col_start: int, col_stop: int) -> "Grid":
        """Sub-grid by index range (stop exclusive); extent follows cell edges."""
        if not (0 <= row_start < row_stop <= self.rows and 0 <= col_start < col_stop <= self.cols):
            raise InvalidGeometry(
                f"Window rows[{row_start}:{row_stop}] cols[{col_start}:{col_stop}] "
                f"outside grid of shape {self.shape}"
            )
        cs = self.cell_size
        ext = Extent(
            xmin=self.extent.xmin + col_start * cs,
            xmax=self.extent.xmin + col_stop * cs,
            ymin=self.extent.ymax - row_stop * cs,
            ymax=self.extent.ymax - row_start * cs,
        )
        return Grid(self.values[row_start:row_stop, col_start:col_stop], ext, cs, dict(self.meta))


# ======================================================================
# Lattice snapping
# ======================================================================

@dataclass(frozen=True)
class GridLattice:
    """
    Canonical grid-line coordinates for one resolution: origin + k * step.

    Read-only; `x_nodes`/`y_nodes` return finite ascending windows used for
    snapping lookups.
    """
    x_origin: float
    y_origin: float
    step: float

    def __post_init__(self):
        vals = (self.x_origin, self.y_origin, self.step)
        if not all(math.isfinite(float(v)) for v in vals) or self.step <= 0:
            raise InvalidGeometry(f"Malformed lattice (x_origin, y_origin, step) = {vals}")

    @classmethod
    def for_family(cls, family: ProductFamily) -> "GridLattice":
        return cls(family.x_origin, family.y_origin, family.cell_size)

    def _nodes(self, origin: float, lo: float, hi: float) -> np.ndarray:
        if not (math.isfinite(lo) and math.isfinite(hi)):
            raise InvalidGeometry(f"Lattice window bounds must be finite; got ({lo!r}, {hi!r})")
        lo, hi = min(lo, hi), max(lo, hi)
        k0 = math.floor((lo - origin) / self.step) - 1
        k1 = math.ceil((hi - origin) / self.step) + 1
        return origin + np.arange(k0, k1 + 1, dtype="float64") * self.step

    def x_nodes(self, lo: float, hi: float | None = None) -> np.ndarray:
        return self._nodes(self.x_origin, lo, lo if hi is None else hi)

    def y_nodes(self, lo: float, hi: float | None = None) -> np.ndarray:
        return self._nodes(self.y_origin, lo, lo if hi is None else hi)


def _lattice_array(lattice_values: Iterable[float]) -> np.ndarray:
    if not isinstance(lattice_values, np.ndarray):
        lattice_values = list(lattice_values)
    vals = np.asarray(lattice_values, dtype="float64").ravel()
    if vals.size == 0:
        raise InvalidGeometry("Lattice is empty.")
    if np.isnan(vals).any():
        raise InvalidGeometry("Lattice contains NaN values.")
    return np.sort(vals, kind="stable")


def _check_coordinate(coordinate: float) -> float:
    try:
        c = float(coordinate)
    except (TypeError, ValueError) as e:
        raise InvalidGeometry(f"Coordinate is not a number: {coordinate!r}") from e
    if not math.isfinite(c):
        raise InvalidGeometry(f"Coordinate must be finite; got {coordinate!r}")
    return c


def snap_to_lattice(coordinate: float, lattice_values: Iterable[float]) -> float:
    """
    Return the lattice value closest to `coordinate`.
    Ties go to the first node in ascending lattice order.
    """
    c = _check_coordinate(coordinate)
    vals = _lattice_array(lattice_values)
    idx = int(np.argmin(np.abs(vals - c)))  # argmin → first minimum
    return float(vals[idx])


def is_on_lattice(coordinate: float, lattice_values: Iterable[float], tolerance: float = GEOM_TOL) -> bool:
    """True if some lattice node lies within `tolerance` of `coordinate`."""
    c = _check_coordinate(coordinate)
    vals = _lattice_array(lattice_values)
    return bool(np.min(np.abs(vals - c)) <= tolerance)


# ======================================================================
# Flagged pixel masking
# ======================================================================

def mask_flagged_pixels(grid: Grid, cutoff_high: float, cutoff_low: Optional[float] = None) -> Grid:
    """
    Set samples > cutoff_high (and < cutoff_low, if given) to NaN.

    Cutoffs are physical values (dn * scale + offset, see config.cutoff_from_dn);
    the masker itself is scale-agnostic.
    """
    hi = _check_cutoff(cutoff_high, "cutoff_high")
    lo = None if cutoff_low is None else _check_cutoff(cutoff_low, "cutoff_low")
    if lo is not None and hi <= lo:
        raise InvalidCutoff(f"cutoff_high ({hi}) must be greater than cutoff_low ({lo})")

    v = grid.values
    with np.errstate(invalid="ignore"):
        flagged = v > hi
        if lo is not None:
            flagged |= v < lo
    out = np.where(flagged, np.nan, v)

    n_flag = int(flagged.sum())
    if n_flag:
        log.info("Masked %d flagged pixels (%.2f%%) | cutoff_high=%s cutoff_low=%s",
                 n_flag, 100.0 * n_flag / v.size, hi, lo)
    return grid.with_values(out)


def _check_cutoff(value, label: str) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidCutoff(f"{label} is not a number: {value!r}") from e
    if math.isnan(f):
        raise InvalidCutoff(f"{label} must not be NaN")
    return f


# ======================================================================
# Cropping
# ======================================================================

def crop_to_extent(grid: Grid, extent: Extent, tol: float = 1e-9) -> Grid:
    """
    Keep the pixels whose centres fall inside `extent` (edges inclusive).
    Raises ExtentOutOfBounds if nothing overlaps.
    """
    if not grid.extent.overlaps(extent):
        raise ExtentOutOfBounds(
            f"Extent {extent.as_tuple()} does not overlap grid extent {grid.extent.as_tuple()}"
        )
    xc, yc = grid.x_centres(), grid.y_centres()
    cols = np.nonzero((xc >= extent.xmin - tol) & (xc <= extent.xmax + tol))[0]
    rows = np.nonzero((yc >= extent.ymin - tol) & (yc <= extent.ymax + tol))[0]
    if cols.size == 0 or rows.size == 0:
        raise ExtentOutOfBounds(
            f"Extent {extent.as_tuple()} contains no pixel centres of grid {grid.extent.as_tuple()}"
        )
    return grid.window(int(rows[0]), int(rows[-1]) + 1, int(cols[0]), int(cols[-1]) + 1)


# ======================================================================
# xarray / rioxarray adapters
# ======================================================================

def grid_from_dataarray(da: xr.DataArray) -> Grid:
    """
    Build a Grid from a georeferenced 2-D DataArray (rioxarray accessor).
    South-up arrays are flipped so rows run north→south.
    """
    arr = da.squeeze(drop=True)
    if arr.ndim != 2:
        raise InvalidGeometry(f"Expected a single-band 2-D raster; got dims {arr.dims}")
    arr = arr.transpose(arr.rio.y_dim, arr.rio.x_dim)

    resx, resy = arr.rio.resolution()
    if abs(abs(resx) - abs(resy)) > GEOM_TOL:
        raise InvalidGeometry(f"Non-square pixels are not supported (res={resx}, {resy})")
    left, bottom, right, top = arr.rio.bounds()

    crs = arr.rio.crs
    if crs is not None and not crs.is_geographic:
        log.warning("Raster CRS %s is not geographic; extents are treated as degrees.", crs)

    vals = np.asarray(arr.values, dtype="float64")
    if resy > 0:
        vals = vals[::-1, :]
    return Grid(vals, Extent(left, right, bottom, top), abs(resx), dict(arr.attrs))


def grid_to_dataarray(grid: Grid, name: str | None = None) -> xr.DataArray:
    """Georeferenced (EPSG:4326) DataArray with pixel-centre y/x coords."""
    da = xr.DataArray(
        np.array(grid.values),
        coords={"y": grid.y_centres(), "x": grid.x_centres()},
        dims=("y", "x"),
        name=name,
        attrs={k: v for k, v in grid.meta.items() if k not in ("_FillValue", "scale_factor", "add_offset")},
    )
    da.rio.write_crs(WGS84, inplace=True)
    da.rio.write_transform(grid.transform, inplace=True)
    return da


def open_grid(path: str | Path) -> Grid:
    """
    Open a single-band raster as a Grid. Nodata becomes NaN and any
    scale_factor/add_offset is applied, so values are physical.
    Accepts GDAL subdataset strings (e.g. 'netcdf:file.nc:NDVI').
    """
    da = rxr.open_rasterio(path, masked=True, mask_and_scale=True).squeeze()
    grid = grid_from_dataarray(da)
    log.info("Opened %s | size=%dx%d | cell=%.7f", Path(str(path)).name, grid.rows, grid.cols, grid.cell_size)
    return grid


def write_gtiff(
    grid: Grid,
    path: str | Path,
    nodata: float = np.nan,
    compress: str = "LZW",
    dtype: str = "float32",
) -> None:
    """Write a Grid as GeoTIFF with nodata and compression."""
    da = grid_to_dataarray(grid).astype(dtype)
    if not (isinstance(nodata, float) and math.isnan(nodata)):
        da = da.fillna(nodata)
    da = da.rio.write_nodata(nodata, inplace=True)
    da.rio.to_raster(path, compress=compress, dtype=dtype)
