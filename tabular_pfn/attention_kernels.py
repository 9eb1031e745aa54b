"""Array kernels used by multi-head attention.

Attention tensors are laid out as ``(..., sequence, head, feature)``. Stacked
projections insert an extra axis before the head axis: ``(..., sequence, 2,
head, feature)`` for keys and values, and ``(..., sequence, 3, head, feature)``
for queries, keys and values.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Sequence

import numpy as np


def _rng(rng: Optional[np.random.Generator]) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def newly_initialized_input_weight(
    dims: Sequence[int],
    nhead: int,
    init_gain: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Draw a projection weight uniformly with a Xavier-like scale.

    ``dims`` has 3 or 4 entries ending in ``(head_dim, input_size)``. The
    values are drawn from ``U(-a, a)`` with
    ``a = sqrt(3) * sqrt(2 / (nhead * head_dim + input_size)) * init_gain``.
    """
    shape = tuple(int(d) for d in dims)
    if not 3 <= len(shape) <= 4:
        raise ValueError("dims must have 3 or 4 entries")
    if nhead <= 0:
        raise ValueError("nhead must be positive")
    head_dim, input_size = shape[-2], shape[-1]
    std = np.sqrt(2.0 / (nhead * head_dim + input_size)) * init_gain
    bound = np.sqrt(3.0) * std
    return _rng(rng).uniform(-bound, bound, size=shape)


def dropout(
    x: np.ndarray, p: float, rng: Optional[np.random.Generator] = None
) -> np.ndarray:
    """Zero each element with probability ``p`` and rescale the rest by ``1 / (1 - p)``."""
    if not 0.0 <= p <= 1.0:
        raise ValueError("dropout probability must be between 0 and 1")
    arr = np.asarray(x)
    if p == 0.0:
        return arr
    if p == 1.0:
        return np.zeros_like(arr)
    keep = _rng(rng).random(arr.shape) >= p
    return np.where(keep, arr / (1.0 - p), 0.0).astype(arr.dtype, copy=False)


def broadcast_kv_across_heads(
    kv: np.ndarray, share_kv_across_n_heads: int
) -> np.ndarray:
    """Repeat every key/value head ``share_kv_across_n_heads`` times in place.

    A tensor with heads ``[h0, h1]`` shared across two heads becomes
    ``[h0, h0, h1, h1]`` along the head axis (the second to last).
    """
    if share_kv_across_n_heads <= 0:
        raise ValueError("share_kv_across_n_heads must be positive")
    arr = np.asarray(kv)
    if arr.ndim < 2:
        raise ValueError("kv must have a head and a feature axis")
    if share_kv_across_n_heads == 1:
        return arr
    return np.repeat(arr, share_kv_across_n_heads, axis=-2)


def _softmax(logits: np.ndarray, axis: int) -> np.ndarray:
    shifted = logits - logits.max(axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=axis, keepdims=True)


def compute_attention_heads(
    q: Optional[np.ndarray] = None,
    k: Optional[np.ndarray] = None,
    v: Optional[np.ndarray] = None,
    kv: Optional[np.ndarray] = None,
    qkv: Optional[np.ndarray] = None,
    dropout_p: Optional[float] = None,
    softmax_scale: Optional[float] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Scaled dot-product attention for every head.

    Exactly one of ``qkv``, ``kv`` or the pair ``k``/``v`` must be given, and
    ``q`` must be given exactly when ``qkv`` is not. Keys and values with fewer
    heads than the queries are shared across groups of query heads. Returns
    an array of shape ``(..., seq_q, nhead, d_v)``.
    """
    if (k is None) != (v is None):
        raise ValueError("k and v must both be given or both be omitted")
    provided = sum(item is not None for item in (qkv, kv, k))
    if provided != 1:
        raise ValueError("exactly one of qkv, kv or k/v must be given")
    if (qkv is None) == (q is None):
        raise ValueError("q must be given exactly when qkv is not")

    if qkv is not None:
        stacked = np.asarray(qkv)
        if stacked.ndim < 4 or stacked.shape[-3] != 3:
            raise ValueError("qkv must have shape (..., seq, 3, nhead, d)")
        q_arr, k_arr, v_arr = stacked[..., 0, :, :], stacked[..., 1, :, :], stacked[..., 2, :, :]
    elif kv is not None:
        stacked = np.asarray(kv)
        if stacked.ndim < 4 or stacked.shape[-3] != 2:
            raise ValueError("kv must have shape (..., seq, 2, nhead_kv, d)")
        q_arr = np.asarray(q)
        k_arr, v_arr = stacked[..., 0, :, :], stacked[..., 1, :, :]
    else:
        q_arr, k_arr, v_arr = np.asarray(q), np.asarray(k), np.asarray(v)

    nhead, d_k = q_arr.shape[-2], q_arr.shape[-1]
    nhead_kv = v_arr.shape[-2]
    if nhead_kv == 0 or nhead % nhead_kv != 0:
        raise ValueError("number of query heads must be a multiple of key/value heads")
    if k_arr.shape[-1] != d_k:
        raise ValueError("queries and keys must have the same feature size")
    share = nhead // nhead_kv
    k_arr = broadcast_kv_across_heads(k_arr, share)
    v_arr = broadcast_kv_across_heads(v_arr, share)

    scale = softmax_scale if softmax_scale is not None else 1.0 / np.sqrt(d_k)
    logits = np.einsum("...qhd,...khd->...qkh", q_arr, k_arr) * scale
    weights = _softmax(logits, axis=-2)
    if dropout_p is not None:
        weights = dropout(weights, dropout_p, rng)
    return np.einsum("...qkh,...khd->...qhd", weights, v_arr)


def convert_torch_nn_multihead_attention_state_dict(
    state_dict: Mapping[str, np.ndarray],
    nhead: int,
    disable_stacked_w_qkv: bool = False,
) -> Dict[str, np.ndarray]:
    """Convert a standard multi-head attention state dict to per-head weights.

    ``in_proj_weight`` of shape ``(3E, E)`` becomes ``_w_qkv`` of shape
    ``(3, nhead, E // nhead, E)``, or ``_w_q`` and ``_w_kv`` when stacking is
    disabled. ``out_proj.weight`` is transposed into ``_w_out`` of shape
    ``(1, nhead, E // nhead, E)``.
    """
    if "in_proj_weight" not in state_dict:
        raise KeyError("Missing in_proj_weight in state_dict")
    if "out_proj.weight" not in state_dict:
        raise KeyError("Missing out_proj.weight in state_dict")
    in_proj = np.asarray(state_dict["in_proj_weight"])
    out_proj = np.asarray(state_dict["out_proj.weight"])
    if in_proj.ndim != 2:
        raise ValueError("in_proj_weight must be 2-dimensional")
    if nhead <= 0:
        raise ValueError("nhead must be positive")

    embed_dim = in_proj.shape[1]
    if embed_dim % nhead != 0:
        raise ValueError(f"embed_dim {embed_dim} not divisible by nhead {nhead}")
    if in_proj.shape[0] != 3 * embed_dim:
        raise ValueError(
            f"Expected in_proj_weight shape [{3 * embed_dim}, {embed_dim}], "
            f"got {list(in_proj.shape)}"
        )
    if out_proj.shape != (embed_dim, embed_dim):
        raise ValueError(
            f"Expected out_proj_weight shape [{embed_dim}, {embed_dim}], "
            f"got {list(out_proj.shape)}"
        )

    head_dim = embed_dim // nhead
    w_qkv = in_proj.reshape(3, nhead, head_dim, embed_dim)
    result: Dict[str, np.ndarray] = {}
    if disable_stacked_w_qkv:
        result["_w_q"] = w_qkv[0:1].copy()
        result["_w_kv"] = w_qkv[1:3].copy()
    else:
        result["_w_qkv"] = w_qkv.copy()
    result["_w_out"] = out_proj.T.reshape(1, nhead, head_dim, embed_dim).copy()
    return result