"""NaN-aware reductions and feature preprocessing on numpy arrays.

All reductions keep the reduced axis with length one, so their results
broadcast directly against the input they were computed from.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np

_EPSILON = 1e-16


def _as_float(x: np.ndarray) -> np.ndarray:
    arr = np.asarray(x)
    if not np.issubdtype(arr.dtype, np.floating):
        arr = arr.astype(np.float64)
    return arr


def _leading_slice(x: np.ndarray, positions: Optional[int]) -> np.ndarray:
    """Return the first ``positions`` rows along axis 0 when that is a proper prefix."""
    if positions is not None and 0 < positions < x.shape[0]:
        return x[:positions]
    return x


def torch_nansum(
    x: np.ndarray, axis: Optional[int] = None, keepdim: bool = False
) -> np.ndarray:
    """Sum ``x`` along ``axis`` (or over every axis) treating NaNs as zero.

    The reduced axes are always kept with length one; ``keepdim`` is
    accepted for call compatibility and does not change the result shape.
    """
    arr = _as_float(x)
    masked = np.where(np.isnan(arr), 0.0, arr).astype(arr.dtype, copy=False)
    if axis is None:
        return masked.sum(axis=tuple(range(arr.ndim)), keepdims=True)
    return masked.sum(axis=axis, keepdims=True)


def torch_nanmean(
    x: np.ndarray,
    axis: int = 0,
    return_nanshare: bool = False,
    include_inf: bool = False,
) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
    """Mean of ``x`` along ``axis`` ignoring NaNs (and infinities if asked).

    A slice made only of ignored values has mean 0. With
    ``return_nanshare`` the share of ignored values is returned as well.
    """
    arr = _as_float(x)
    invalid = np.isnan(arr)
    if include_inf:
        invalid |= np.isinf(arr)

    num = (~invalid).sum(axis=axis, keepdims=True).astype(arr.dtype)
    value = np.where(invalid, 0.0, arr).sum(axis=axis, keepdims=True).astype(arr.dtype)
    mean = value / np.maximum(num, 1.0)

    if return_nanshare:
        nanshare = 1.0 - num / arr.shape[axis]
        return mean, nanshare
    return mean


def torch_nanstd(x: np.ndarray, axis: int = 0) -> np.ndarray:
    """Sample standard deviation of ``x`` along ``axis`` ignoring NaNs.

    The denominator ``n - 1`` is clipped to at least one, so a slice with a
    single valid value has standard deviation 0.
    """
    arr = _as_float(x)
    nan_mask = np.isnan(arr)
    num = (~nan_mask).sum(axis=axis, keepdims=True).astype(arr.dtype)
    value = np.where(nan_mask, 0.0, arr).sum(axis=axis, keepdims=True)
    mean = value / np.maximum(num, 1.0)

    squared = np.where(nan_mask, 0.0, (arr - mean) ** 2)
    var = squared.sum(axis=axis, keepdims=True) / np.maximum(num - 1.0, 1.0)
    return np.sqrt(var).astype(arr.dtype, copy=False)


def normalize_data(
    data: np.ndarray,
    normalize_positions: Optional[int] = None,
    return_scaling: bool = False,
    clip: bool = False,
    std_only: bool = False,
    mean: Optional[np.ndarray] = None,
    std: Optional[np.ndarray] = None,
) -> Union[np.ndarray, Tuple[np.ndarray, Tuple[np.ndarray, np.ndarray]]]:
    """Normalise ``data`` along axis 0 to mean 0 and standard deviation 1.

    Constant features (std 0) and single-sample normalisation use a std of
    1; a small epsilon guards the division. When ``normalize_positions`` is
    a proper prefix length, only those leading rows are used for the
    statistics. Given ``mean`` and ``std`` are used instead of computing
    them and must be given together.

    Returns the normalised data, or ``(data, (mean, std))`` when
    ``return_scaling`` is true.
    """
    if (mean is None) != (std is None):
        raise ValueError("Either both or none of mean and std must be given")

    arr = _as_float(data)
    if mean is None:
        reference = _leading_slice(arr, normalize_positions)
        mean = torch_nanmean(reference, axis=0)
        std = torch_nanstd(reference, axis=0)
    else:
        mean = _as_float(mean)
        std = _as_float(std)

    std = np.where(std == 0.0, 1.0, std).astype(std.dtype, copy=False)
    if arr.shape[0] == 1 or normalize_positions == 1:
        std = np.ones_like(std)

    centre = np.zeros_like(mean) if std_only else mean
    normalized = (arr - centre) / (std + _EPSILON)
    normalized = normalized.astype(arr.dtype, copy=False)

    if clip:
        normalized = np.clip(normalized, -100.0, 100.0)

    if return_scaling:
        return normalized, (mean, std)
    return normalized


def select_features(x: np.ndarray, sel: np.ndarray) -> np.ndarray:
    """Keep the features chosen by ``sel`` and pack them to the front.

    ``x`` has shape (sequence, batch, features) and ``sel`` has shape
    (batch, features). With a batch of one only the selected features are
    returned; otherwise the result keeps the full feature width and the
    unused trailing positions are zero.
    """
    arr = np.asarray(x)
    mask = np.asarray(sel).astype(bool)
    if arr.ndim != 3 or mask.ndim != 2:
        raise ValueError("x must be 3-dimensional and sel 2-dimensional")
    seq_len, batch_size, total_features = arr.shape
    if mask.shape[0] != batch_size:
        raise ValueError("Batch sizes must match")
    if mask.shape[1] != total_features:
        raise ValueError("Feature dimensions must match")

    if batch_size == 1:
        return arr[:, :, mask[0]].copy()

    result = np.zeros_like(arr)
    for b, row in enumerate(mask):
        chosen = np.flatnonzero(row)
        result[:, b, : chosen.size] = arr[:, b, chosen]
    return result


def remove_outliers(
    x: np.ndarray,
    n_sigma: float = 4.0,
    normalize_positions: Optional[int] = None,
    lower: Optional[np.ndarray] = None,
    upper: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
    """Softly pull values of ``x`` towards outlier bounds.

    The bounds are ``mean -/+ n_sigma * std`` along axis 0 (over the leading
    ``normalize_positions`` rows when that is a proper prefix) unless both
    ``lower`` and ``upper`` are given. Returns the processed array and the
    ``(lower, upper)`` bounds.
    """
    if (lower is None) != (upper is None):
        raise ValueError(
            "Either both or none of lower and upper bounds must be provided"
        )

    arr = _as_float(x)
    if lower is None:
        reference = _leading_slice(arr, normalize_positions)
        mean = torch_nanmean(reference, axis=0)
        cut_off = torch_nanstd(reference, axis=0) * n_sigma
        lower = mean - cut_off
        upper = mean + cut_off
    else:
        lower = _as_float(lower)
        upper = _as_float(upper)

    floored = np.maximum(-np.log1p(np.abs(arr)) + lower, arr)
    processed = np.minimum(np.log1p(np.abs(floored)) + upper, arr)
    return processed.astype(arr.dtype, copy=False), (lower, upper)