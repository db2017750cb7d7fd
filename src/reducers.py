"""
Block statistics for area-based aggregation.

Each reducer takes an array whose last axis holds the samples of one block
(shape (..., n); a single block is the 1-D case) plus a ReducerConfig, and
returns one value per block. Samples equal to `config.nodata` or NaN are
excluded. Blocks with n_valid <= min_valid_count come back as `config.nodata`.

Reducers are looked up by name ("mean_w_cond", "closest_to_mean",
"uncert_propag"); new ones can be added with @register_reducer.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict
import math

import numpy as np

from config import REDUCER_NAME


@dataclass(frozen=True)
class ReducerConfig:
    """Minimum-valid-count policy and the no-data sentinel."""
    min_valid_count: int = 4
    nodata: float = math.nan

    def __post_init__(self):
        if int(self.min_valid_count) != self.min_valid_count or self.min_valid_count < 0:
            raise ValueError(f"min_valid_count must be a non-negative integer; got {self.min_valid_count!r}")


Reducer = Callable[[np.ndarray, ReducerConfig], np.ndarray]

REDUCERS: Dict[str, Reducer] = {}


def register_reducer(name: str):
    """Decorator: register a reducer under a stable identifier."""
    def _wrap(fn: Reducer) -> Reducer:
        REDUCERS[name] = fn
        return fn
    return _wrap


def get_reducer(name: str) -> Reducer:
    key = REDUCER_NAME(name)
    try:
        return REDUCERS[key]
    except KeyError:
        raise KeyError(f"Unknown reducer {name!r}. Valid: {sorted(REDUCERS)}") from None


def _valid_mask(blocks: np.ndarray, config: ReducerConfig) -> np.ndarray:
    valid = np.isfinite(blocks)
    if not math.isnan(config.nodata):
        valid &= blocks != config.nodata
    return valid


def _prepare(blocks, config: ReducerConfig):
    b = np.asarray(blocks, dtype="float64")
    valid = _valid_mask(b, config)
    n_valid = np.asarray(valid.sum(axis=-1))
    enough = n_valid > config.min_valid_count
    return b, valid, n_valid, enough


def _conditional_mean(b: np.ndarray, valid: np.ndarray, n_valid: np.ndarray) -> np.ndarray:
    total = np.where(valid, b, 0.0).sum(axis=-1)
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.asarray(total / n_valid)


def _finish(out: np.ndarray, enough: np.ndarray, config: ReducerConfig):
    out = np.where(enough, out, config.nodata)
    return out[()] if out.ndim == 0 else out


@register_reducer("mean_w_cond")
def mean_w_cond(blocks, config: ReducerConfig = ReducerConfig()):
    """Mean of the valid samples."""
    b, valid, n_valid, enough = _prepare(blocks, config)
    return _finish(_conditional_mean(b, valid, n_valid), enough, config)


@register_reducer("closest_to_mean")
def closest_to_mean(blocks, config: ReducerConfig = ReducerConfig()):
    """
    Valid sample nearest to the conditional mean.

    Returns an observed sample, not a smoothed one. Ties resolve to the
    first sample in block scan order.
    """
    b, valid, n_valid, enough = _prepare(blocks, config)
    mean = _conditional_mean(b, valid, n_valid)
    dist = np.where(valid, np.abs(b - mean[..., None]), np.inf)
    idx = np.asarray(np.argmin(dist, axis=-1))
    picked = np.take_along_axis(b, idx[..., None], axis=-1)[..., 0]
    return _finish(picked, enough, config)


@register_reducer("uncert_propag")
def uncert_propag(blocks, config: ReducerConfig = ReducerConfig()):
    """sqrt(sum of squared valid samples) / n_valid, for per-pixel uncertainty layers."""
    b, valid, n_valid, enough = _prepare(blocks, config)
    sq = np.where(valid, b * b, 0.0).sum(axis=-1)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = np.sqrt(sq) / n_valid
    return _finish(out, enough, config)
