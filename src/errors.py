"""
Error taxonomy for the resampling core.

All errors are terminal for the raster being processed. They subclass
ValueError so callers that already guard bad inputs with `except ValueError`
keep working; batch runners catch `GridError` per raster and continue.
"""

from __future__ import annotations


class GridError(ValueError):
    """Base class for every precondition failure in the resampling core."""


class InvalidGeometry(GridError):
    """NaN/empty coordinates, inconsistent extent/cell size, malformed lattice."""


class InvalidCutoff(GridError):
    """cutoff_high <= cutoff_low, or a cutoff that is not a finite number."""


class ExtentOutOfBounds(GridError):
    """Requested crop extent does not overlap the source grid."""


class ResolutionMismatch(GridError):
    """Reference grid cell size differs from the expected coarse resolution."""


class NonIntegerAggregationFactor(GridError):
    """Aggregation factor does not evenly divide the grid's rows/cols."""
