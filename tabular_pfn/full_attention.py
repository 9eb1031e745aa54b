"""Multi-head attention with optional key/value caching."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

import numpy as np

from tabular_pfn.attention_kernels import (
    compute_attention_heads,
    newly_initialized_input_weight,
)
from tabular_pfn.config import ModelConfig

_Projections = Tuple[
    Optional[np.ndarray],
    Optional[np.ndarray],
    Optional[np.ndarray],
    Optional[np.ndarray],
    Optional[np.ndarray],
]


class Attention(ABC):
    """Interface of an attention layer."""

    @abstractmethod
    def forward(
        self,
        x: np.ndarray,
        x_kv: Optional[np.ndarray] = None,
        cache_kv: bool = False,
        use_cached_kv: bool = False,
        reuse_first_head_kv: bool = False,
        only_cache_first_head_kv: bool = False,
        save_peak_mem_factor: Optional[int] = None,
        add_input: bool = False,
        allow_inplace: bool = False,
    ) -> np.ndarray:
        """Attend from ``x`` to ``x_kv`` (or to ``x`` itself) and return the result."""


def _check_trailing(
    tensor: Optional[np.ndarray], expected: Sequence[Optional[int]], name: str
) -> None:
    """Check the shape of ``tensor``; ``None`` entries match any size."""
    if tensor is None:
        return
    shape = np.shape(tensor)
    if len(shape) != len(expected):
        raise ValueError(
            f"{name} shape rank mismatch: expected {len(expected)}, got {len(shape)}"
        )
    for i, (actual, wanted) in enumerate(zip(shape, expected)):
        if wanted is not None and actual != wanted:
            raise ValueError(
                f"{name} shape mismatch at dimension {i}: expected {wanted}, got {actual}"
            )


def _expand_heads(t: np.ndarray, heads: int) -> np.ndarray:
    return np.repeat(t, heads, axis=-2)


def _store_cache(cache: np.ndarray, computed: np.ndarray, name: str) -> np.ndarray:
    """Return the value to keep in ``cache``; a one-head cache keeps the first head."""
    if cache.shape[-2] == 1 and computed.shape[-2] != 1:
        computed = computed[..., :1, :]
    if cache.shape != computed.shape:
        raise RuntimeError(
            f"Cache shape mismatch: {name} {list(cache.shape)} vs computed "
            f"{list(computed.shape)}"
        )
    return computed.copy()


class MultiHeadAttention(Attention):
    """Standard quadratic multi-head attention.

    Inputs have shape ``(..., sequence, emsize)``. Queries, keys and values
    are projected with per-head weights of shape ``(head, head_dim, emsize)``;
    stacked variants carry an extra leading axis of 2 (keys/values) or 3
    (queries/keys/values). The output projection ``w_out`` has shape
    ``(nhead, d_v, emsize)``.
    """

    def __init__(
        self,
        d_k: int,
        d_v: int,
        config: ModelConfig,
        share_kv_across_n_heads: int = 1,
        dropout_p: Optional[float] = None,
        softmax_scale: Optional[float] = None,
        initialize_output_to_zero: bool = False,
        precomputed_k: Optional[np.ndarray] = None,
        precomputed_v: Optional[np.ndarray] = None,
        precomputed_kv: Optional[np.ndarray] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if share_kv_across_n_heads <= 0 or config.nhead % share_kv_across_n_heads != 0:
            raise ValueError("nhead must be divisible by share_kv_across_n_heads")
        self._rng = rng if rng is not None else np.random.default_rng()

        self.input_size = config.emsize
        self.output_size = config.emsize
        self.nhead = config.nhead
        self.nhead_kv = config.nhead // share_kv_across_n_heads
        self.d_k = d_k
        self.d_v = d_v
        self.share_kv_across_n_heads = share_kv_across_n_heads
        self.dropout_p = dropout_p
        self.softmax_scale = softmax_scale
        self.init_gain = config.attention_init_gain
        self.recompute_attn = config.recompute_attn

        if initialize_output_to_zero:
            self.w_out = np.zeros((self.nhead, d_v, self.output_size))
        else:
            limit = math.sqrt(6.0 / (d_v + self.output_size))
            self.w_out = (
                self._rng.standard_normal((self.nhead, d_v, self.output_size)) * limit
            )

        self.k_cache: Optional[np.ndarray] = precomputed_k
        self.v_cache: Optional[np.ndarray] = precomputed_v
        self.kv_cache: Optional[np.ndarray] = precomputed_kv

        self.w_q: Optional[np.ndarray] = None
        self.w_k: Optional[np.ndarray] = None
        self.w_v: Optional[np.ndarray] = None
        self.w_kv: Optional[np.ndarray] = None
        self.w_qkv: Optional[np.ndarray] = None

        has_precomputed = precomputed_kv is not None or precomputed_k is not None
        if d_k == d_v and self.nhead == self.nhead_kv and not has_precomputed:
            self.w_qkv = self._init_weight((3, self.nhead, d_k, self.input_size))
        else:
            self.w_q = self._init_weight((1, self.nhead, d_k, self.input_size))
            if not has_precomputed:
                if d_k == d_v:
                    self.w_kv = self._init_weight(
                        (2, self.nhead_kv, d_k, self.input_size)
                    )
                else:
                    self.w_k = self._init_weight((self.nhead_kv, d_k, self.input_size))
                    self.w_v = self._init_weight((self.nhead_kv, d_v, self.input_size))

    def _init_weight(self, dims: Tuple[int, ...]) -> np.ndarray:
        return newly_initialized_input_weight(dims, self.nhead, self.init_gain, self._rng)

    def has_cached_kv(self) -> bool:
        """Whether keys and values are cached."""
        return (
            self.k_cache is not None and self.v_cache is not None
        ) or self.kv_cache is not None

    def empty_kv_cache(self) -> None:
        """Drop every cached key and value."""
        self.k_cache = None
        self.v_cache = None
        self.kv_cache = None

    def set_parameters(
        self,
        w_out: np.ndarray,
        w_q: Optional[np.ndarray] = None,
        w_k: Optional[np.ndarray] = None,
        w_v: Optional[np.ndarray] = None,
        w_kv: Optional[np.ndarray] = None,
        w_qkv: Optional[np.ndarray] = None,
        precomputed_k: Optional[np.ndarray] = None,
        precomputed_v: Optional[np.ndarray] = None,
        precomputed_kv: Optional[np.ndarray] = None,
    ) -> None:
        """Replace the weights and caches after checking their consistency.

        Raises ValueError and leaves the module unchanged if the combination
        or any shape is invalid.
        """
        if (precomputed_k is None) != (precomputed_v is None):
            raise ValueError(
                "precomputed_k and precomputed_v must both be given or both be None"
            )
        if precomputed_kv is not None and precomputed_k is not None:
            raise ValueError(
                "precomputed_kv cannot coexist with precomputed_k/precomputed_v"
            )
        has_precomputed = precomputed_kv is not None or precomputed_k is not None
        has_weights = (
            w_qkv is not None
            or w_kv is not None
            or (w_k is not None and w_v is not None)
        )
        if has_precomputed == has_weights:
            raise ValueError(
                "Must have either precomputed values or weight parameters, but not both"
            )
        if (w_qkv is None) == (w_q is None):
            raise ValueError("Exactly one of w_qkv and w_q must be given")
        if w_qkv is not None and (w_kv is not None or w_k is not None or w_v is not None):
            raise ValueError("When w_qkv is provided, w_kv, w_k, w_v must be None")
        if w_kv is not None and (w_k is not None or w_v is not None):
            raise ValueError("w_kv cannot coexist with w_k or w_v")
        if (w_k is None) != (w_v is None):
            raise ValueError("w_k and w_v must both be given or both be None")

        _check_trailing(precomputed_k, (None, None, self.nhead_kv, self.d_k), "precomputed_k")
        _check_trailing(precomputed_v, (None, None, self.nhead_kv, self.d_v), "precomputed_v")
        _check_trailing(
            precomputed_kv, (None, None, 2, self.nhead_kv, self.d_k), "precomputed_kv"
        )
        _check_trailing(w_q, (1, self.nhead, self.d_k, self.input_size), "w_q")
        _check_trailing(w_k, (self.nhead_kv, self.d_k, self.input_size), "w_k")
        _check_trailing(w_v, (self.nhead_kv, self.d_v, self.input_size), "w_v")
        _check_trailing(w_kv, (2, self.nhead_kv, self.d_k, self.input_size), "w_kv")
        _check_trailing(w_qkv, (3, self.nhead, self.d_k, self.input_size), "w_qkv")
        expected_out = (self.nhead, self.d_v, self.output_size)
        if np.shape(w_out) != expected_out:
            raise ValueError(
                f"w_out shape mismatch: expected {list(expected_out)}, "
                f"got {list(np.shape(w_out))}"
            )

        def _arr(t: Optional[np.ndarray]) -> Optional[np.ndarray]:
            return None if t is None else np.asarray(t)

        self.w_out = np.asarray(w_out)
        self.w_q = _arr(w_q)
        self.w_k = _arr(w_k)
        self.w_v = _arr(w_v)
        self.w_kv = _arr(w_kv)
        self.w_qkv = _arr(w_qkv)
        self.k_cache = _arr(precomputed_k)
        self.v_cache = _arr(precomputed_v)
        self.kv_cache = _arr(precomputed_kv)

    def _check_input(self, x: np.ndarray, name: str) -> np.ndarray:
        arr = np.asarray(x, dtype=np.float64)
        if arr.ndim < 2:
            raise ValueError(f"{name} must have a sequence and a feature axis")
        if arr.shape[-1] != self.input_size:
            raise ValueError(
                f"{name} must have {self.input_size} features, got {arr.shape[-1]}"
            )
        return arr

    def _project_kv_stacked(
        self, x_kv: np.ndarray, w_kv: np.ndarray, reuse_first_head_kv: bool
    ) -> np.ndarray:
        heads = w_kv.shape[1]
        if reuse_first_head_kv:
            w_kv = w_kv[:, :1]
        kv = np.einsum("...s,jhds->...jhd", x_kv, w_kv)
        if reuse_first_head_kv:
            kv = _expand_heads(kv, heads)
        return kv

    def _compute_qkv(
        self,
        x: np.ndarray,
        x_kv: Optional[np.ndarray],
        cache_kv: bool,
        use_cached_kv: bool,
        reuse_first_head_kv: bool,
    ) -> _Projections:
        if cache_kv and use_cached_kv:
            raise ValueError("Cannot both cache new KV and use cached KV at once")

        k = v = kv = None
        if use_cached_kv:
            if not self.has_cached_kv():
                raise RuntimeError(
                    "Trying to use cached keys and values but cache is empty"
                )
            k, v, kv = self.k_cache, self.v_cache, self.kv_cache

        nothing_cached = k is None and v is None and kv is None
        self_attention = x_kv is None
        source = x if x_kv is None else x_kv

        if self.w_qkv is not None:
            if self_attention and nothing_cached and not cache_kv:
                qkv = np.einsum("...s,jhds->...jhd", x, self.w_qkv)
                return None, None, None, None, qkv
            q = np.einsum("...s,hds->...hd", x, self.w_qkv[0])
        elif self.w_q is not None:
            q = np.einsum("...s,hds->...hd", x, self.w_q[0])
        else:
            raise RuntimeError("No query weights available")

        if nothing_cached:
            if self.w_qkv is not None:
                kv = self._project_kv_stacked(source, self.w_qkv[1:3], reuse_first_head_kv)
            elif self.w_kv is not None:
                kv = self._project_kv_stacked(source, self.w_kv, reuse_first_head_kv)
            elif self.w_k is not None and self.w_v is not None:
                w_k, w_v = self.w_k, self.w_v
                heads = w_k.shape[0]
                if reuse_first_head_kv:
                    w_k, w_v = w_k[:1], w_v[:1]
                k = np.einsum("...s,hds->...hd", source, w_k)
                v = np.einsum("...s,hds->...hd", source, w_v)
                if reuse_first_head_kv:
                    k = _expand_heads(k, heads)
                    v = _expand_heads(v, heads)

        if cache_kv:
            if self.k_cache is not None and k is not None:
                self.k_cache = _store_cache(self.k_cache, k, "k_cache")
            if self.v_cache is not None and v is not None:
                self.v_cache = _store_cache(self.v_cache, v, "v_cache")
            if self.kv_cache is not None and kv is not None:
                self.kv_cache = _store_cache(self.kv_cache, kv, "kv_cache")

        return q, k, v, kv, None

    def _compute(
        self,
        x: np.ndarray,
        x_kv: Optional[np.ndarray],
        cache_kv: bool,
        use_cached_kv: bool,
        reuse_first_head_kv: bool,
    ) -> np.ndarray:
        q, k, v, kv, qkv = self._compute_qkv(
            x, x_kv, cache_kv, use_cached_kv, reuse_first_head_kv
        )
        heads = compute_attention_heads(
            q, k, v, kv, qkv, self.dropout_p, self.softmax_scale, self._rng
        )
        return np.einsum("...hd,hds->...s", heads, self.w_out)

    def _compute_chunked(
        self,
        x: np.ndarray,
        x_kv: Optional[np.ndarray],
        cache_kv: bool,
        use_cached_kv: bool,
        reuse_first_head_kv: bool,
        save_peak_mem_factor: int,
    ) -> np.ndarray:
        """Process the queries in chunks of the sequence to lower peak memory."""
        seq_len = x.shape[-2]
        factor = max(int(save_peak_mem_factor), 1)
        chunk_size = math.ceil(seq_len / math.sqrt(factor))
        chunk_size = min(max(chunk_size, 1), max(seq_len, 1))
        if chunk_size >= seq_len:
            return self._compute(x, x_kv, cache_kv, use_cached_kv, reuse_first_head_kv)

        keys_source = x if x_kv is None else x_kv
        chunks = [
            self._compute(
                x[..., start : start + chunk_size, :],
                keys_source,
                cache_kv and start == 0,
                use_cached_kv,
                reuse_first_head_kv,
            )
            for start in range(0, seq_len, chunk_size)
        ]
        return np.concatenate(chunks, axis=-2)

    def forward(
        self,
        x: np.ndarray,
        x_kv: Optional[np.ndarray] = None,
        cache_kv: bool = False,
        use_cached_kv: bool = False,
        reuse_first_head_kv: bool = False,
        only_cache_first_head_kv: bool = False,
        save_peak_mem_factor: Optional[int] = None,
        add_input: bool = False,
        allow_inplace: bool = False,
    ) -> np.ndarray:
        """Attend from ``x`` to ``x_kv`` (self-attention when ``x_kv`` is None).

        With ``cache_kv`` the computed keys and values are kept for later calls
        with ``use_cached_kv``. ``reuse_first_head_kv`` computes keys and values
        from the first head only and shares them across all heads. With
        ``add_input`` the input is added to the result.
        """
        if cache_kv and use_cached_kv:
            raise ValueError(
                "Cannot cache and use cached keys and values at the same time"
            )
        x_arr = self._check_input(x, "x")
        kv_arr = None if x_kv is None else self._check_input(x_kv, "x_kv")
        if kv_arr is not None and kv_arr.shape[:-2] != x_arr.shape[:-2]:
            raise ValueError("x and x_kv must have the same batch dimensions")

        if cache_kv:
            self.empty_kv_cache()
            reference = x_arr if kv_arr is None else kv_arr
            batch_shape = reference.shape[:-1]
            nhead_kv = 1 if reuse_first_head_kv else self.nhead_kv
            if self.w_kv is not None or self.w_qkv is not None:
                cache_heads = 1 if only_cache_first_head_kv else nhead_kv
                self.kv_cache = np.zeros((*batch_shape, 2, cache_heads, self.d_k))
            else:
                self.k_cache = np.zeros((*batch_shape, nhead_kv, self.d_k))
                self.v_cache = np.zeros((*batch_shape, nhead_kv, self.d_v))

        if self.recompute_attn and save_peak_mem_factor is not None:
            output = self._compute_chunked(
                x_arr,
                kv_arr,
                cache_kv,
                use_cached_kv,
                reuse_first_head_kv,
                save_peak_mem_factor,
            )
        else:
            output = self._compute(
                x_arr, kv_arr, cache_kv, use_cached_kv, reuse_first_head_kv
            )

        if add_input:
            output = output + x_arr
        return output