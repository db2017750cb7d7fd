"""
Tests for block aggregation and the end-to-end 333 m → 1 km pipeline.
"""

import math

import numpy as np
import pytest

from config import FAMILY_1KM, FAMILY_333M, ProductFamily
from errors import InvalidCutoff, NonIntegerAggregationFactor, ResolutionMismatch
from aggregation import aggregate_blocks, resample_to_coarse
from reducers import ReducerConfig
from utils_geo import Extent, Grid, GridLattice, is_on_lattice

FINE = 1.0 / 336.0
COARSE = 1.0 / 112.0
CFG = ReducerConfig(min_valid_count=4)

TILE = Extent(10.0 - 1 / 672, 11.0 - 1 / 672, 4.0 + 1 / 672, 5.0 + 1 / 672)
AOI = Extent(10.0 + 3 / 672, 10.5 + 3 / 672, 4.5 + 3 / 672, 5.0 - 3 / 672)


def _grid(vals, cs=1.0):
    rows, cols = vals.shape
    return Grid(vals, Extent(0, cols * cs, 0, rows * cs), cs)


# --- BlockAggregator -------------------------------------------------------

def test_output_dimensions_and_geometry():
    g = _grid(np.ones((9, 12)))
    out = aggregate_blocks(g, 3, "mean_w_cond", CFG)
    assert out.shape == (3, 4)
    assert out.cell_size == 3.0
    assert out.extent == g.extent


def test_non_divisible_factor_raises():
    g = _grid(np.ones((10, 9)))
    with pytest.raises(NonIntegerAggregationFactor):
        aggregate_blocks(g, 3, "mean_w_cond", CFG)


@pytest.mark.parametrize("factor", [0, -3, 2.5])
def test_invalid_factor_raises(factor):
    with pytest.raises(NonIntegerAggregationFactor):
        aggregate_blocks(_grid(np.ones((6, 6))), factor, "mean_w_cond", CFG)


@pytest.mark.parametrize("name", ["mean_w_cond", "closest_to_mean"])
def test_constant_grid_is_preserved(name):
    g = _grid(np.full((6, 9), 0.37))
    out = aggregate_blocks(g, 3, name, CFG)
    np.testing.assert_allclose(out.values, 0.37)


def test_blocks_follow_row_major_scan():
    vals = np.arange(36, dtype=float).reshape(6, 6)
    out = aggregate_blocks(_grid(vals), 3, "mean_w_cond", CFG)
    expected = np.array([[vals[r:r + 3, c:c + 3].mean() for c in (0, 3)] for r in (0, 3)])
    np.testing.assert_allclose(out.values, expected)

    seen = []

    def first_sample(blocks, config):
        seen.append(blocks.shape)
        return blocks[..., 0]

    out = aggregate_blocks(_grid(vals), 3, first_sample, CFG)
    assert seen == [(2, 2, 9)]
    np.testing.assert_array_equal(out.values, vals[::3, ::3])


def test_min_valid_count_applies_per_block():
    vals = np.ones((3, 6))
    vals[0, :] = np.nan          # left block: 6 valid
    vals[:, 3:5] = np.nan        # right block: 2 valid
    out = aggregate_blocks(_grid(vals), 3, "mean_w_cond", CFG)
    assert out.values[0, 0] == 1.0
    assert math.isnan(out.values[0, 1])


def test_input_grid_not_modified():
    vals = np.arange(9, dtype=float).reshape(3, 3)
    g = _grid(vals)
    aggregate_blocks(g, 3, "uncert_propag", CFG)
    np.testing.assert_array_equal(g.values, vals)


def test_nodata_sentinel_becomes_nan_in_output_grid():
    vals = np.full((3, 3), np.nan)
    vals[0, 0] = 1.0
    out = aggregate_blocks(_grid(vals), 3, "mean_w_cond", ReducerConfig(nodata=-999.0))
    assert math.isnan(out.values[0, 0])
    assert out.valid_fraction() == 0.0

    ok = aggregate_blocks(_grid(np.ones((3, 3))), 3, "mean_w_cond", ReducerConfig(nodata=-999.0))
    assert ok.values[0, 0] == 1.0


# --- Pipeline ------------------------------------------------------------------

def _tile(fill=0.5):
    return Grid(np.full((336, 336), fill), TILE, FINE)


def _assert_km_extent(ext):
    km = GridLattice.for_family(FAMILY_1KM)
    xs, ys = km.x_nodes(ext.xmin, ext.xmax), km.y_nodes(ext.ymin, ext.ymax)
    assert is_on_lattice(ext.xmin, xs) and is_on_lattice(ext.xmax, xs)
    assert is_on_lattice(ext.ymin, ys) and is_on_lattice(ext.ymax, ys)


def test_resample_subset_with_explicit_extent():
    out = resample_to_coarse(_tile(), cutoff_high=0.92, extent=AOI)
    assert out.shape == (55, 56)
    assert out.cell_size == pytest.approx(COARSE)
    _assert_km_extent(out.extent)
    np.testing.assert_allclose(out.values, 0.5)


def test_resample_snaps_off_lattice_extent():
    req = Extent(AOI.xmin + 0.001, AOI.xmax + 0.001, AOI.ymin - 0.001, AOI.ymax - 0.001)
    out = resample_to_coarse(_tile(), cutoff_high=0.92, extent=req)
    assert out.shape == (55, 56)
    np.testing.assert_allclose(out.extent.as_tuple(), AOI.as_tuple(), atol=1e-9)


def test_resample_defaults_to_own_extent_on_product_tile():
    out = resample_to_coarse(_tile(), cutoff_high=0.92)
    assert out.shape == (111, 111)
    _assert_km_extent(out.extent)
    assert out.extent.xmin > TILE.xmin and out.extent.ymax < TILE.ymax
    np.testing.assert_allclose(out.values, 0.5)


def test_resample_with_reference_grid():
    ref = Grid(np.zeros((55, 56)), AOI, COARSE)
    out = resample_to_coarse(_tile(), cutoff_high=0.92, reference=ref, reducer="closest_to_mean")
    assert out.shape == (55, 56)

    bad_ref = Grid(np.zeros((165, 168)), AOI, FINE)
    with pytest.raises(ResolutionMismatch):
        resample_to_coarse(_tile(), cutoff_high=0.92, reference=bad_ref)


def test_resample_rejects_extent_and_reference_together():
    ref = Grid(np.zeros((55, 56)), AOI, COARSE)
    with pytest.raises(ValueError):
        resample_to_coarse(_tile(), cutoff_high=0.92, extent=AOI, reference=ref)


def test_resample_masks_flagged_pixels_before_aggregation():
    vals = np.full((336, 336), 0.5)
    # First AOI block starts at row 2, col 2 of the tile
    vals[2, 2:5] = 0.99
    vals[3, 2:4] = 0.99          # 5 flagged → 4 valid → no data
    vals[5, 5] = 0.99            # one flagged in block (1, 1) → still valid
    out = resample_to_coarse(Grid(vals, TILE, FINE), cutoff_high=0.92, extent=AOI)
    assert math.isnan(out.values[0, 0])
    assert out.values[0, 1] == pytest.approx(0.5)
    assert np.isfinite(out.values).sum() == out.values.size - 1


def test_resample_invalid_cutoff():
    with pytest.raises(InvalidCutoff):
        resample_to_coarse(_tile(), cutoff_high=0.1, cutoff_low=0.5, extent=AOI)


def test_resample_full_globe_uses_trim():
    tile_family = ProductFamily(
        name="333m_tile",
        cell_size=FAMILY_333M.cell_size,
        x_origin=FAMILY_333M.x_origin,
        y_origin=FAMILY_333M.y_origin,
        global_bounds=(10.003, 10.997, 4.003, 4.997),
        global_trim=FAMILY_333M.global_trim,
    )
    out = resample_to_coarse(_tile(), cutoff_high=0.92, fine=tile_family, coarse=FAMILY_1KM)
    assert out.shape == (111, 111)
    _assert_km_extent(out.extent)
