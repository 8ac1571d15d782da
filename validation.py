"""
Numerical validation helpers.

The tick never raises on bad numbers. Instead the engine calls these at a
few checkpoints (post-expansion, post-force, post-integration) and bad values
are skipped or reset to a safe default of zero.
"""

import math

import numpy as np


def is_finite_scalar(value) -> bool:
    """True for a finite int/float (NaN and +-inf rejected)."""
    try:
        return math.isfinite(value)
    except TypeError:
        return False


def is_valid_factor(factor) -> bool:
    """A multiplicative scaling factor must be finite and strictly positive."""
    return is_finite_scalar(factor) and factor > 0


def finite_rows(values: np.ndarray) -> np.ndarray:
    """
    Boolean mask of rows whose components are all finite.

    Args:
        values: (N, 3) vectors or (N,) scalars

    Returns:
        (N,) boolean mask
    """
    finite = np.isfinite(values)
    if finite.ndim > 1:
        return finite.all(axis=-1)
    return finite


def sanitize_rows(values: np.ndarray, mask: np.ndarray = None) -> int:
    """
    Reset non-finite components to zero in place.

    Args:
        values: Array to clean (modified in place)
        mask: Optional (N,) row mask; rows outside it are left untouched

    Returns:
        Number of components that were reset
    """
    bad = ~np.isfinite(values)
    if mask is not None:
        if bad.ndim > 1:
            bad &= mask[:, None]
        else:
            bad &= mask
    count = int(bad.sum())
    if count:
        values[bad] = 0.0
    return count


def clamp_components(values: np.ndarray, limit: float) -> np.ndarray:
    """Clamp every component to [-limit, limit]."""
    return np.clip(values, -limit, limit)
