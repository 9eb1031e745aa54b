# tabular_pfn

Building blocks of a prior-fitted transformer for tabular data. It is written
on top of NumPy arrays.

## Modules

- `tabular_pfn.config`
  - `ModelConfig` is a dataclass that holds the architecture configuration
    and its defaults, for example `emsize=192`, `nhead=6` and
    `features_per_group=2`.
  - `ModelConfig.upgrade_config(config)` rewrites an old checkpoint config
    for the current schema. It raises `ValueError` for settings that are not
    supported.
  - `validate_consistent()` checks the config for internal consistency.
  - `to_dict()` and `ModelConfig.from_dict(data)` convert the config to and
    from a dictionary.
  - `get_unused_config(unparsed_config)` and `get_unused_items(full, used)`
    report the keys that the config does not use.
  - `FeaturePositionalEmbedding` enumerates the kinds of feature embedding.
- `tabular_pfn.tensor_ops`
  - The NaN-aware reductions `torch_nansum`, `torch_nanmean` and
    `torch_nanstd` keep the reduced axis with length one.
  - `normalize_data` normalises along axis 0. It can use only a leading
    prefix of rows to compute the statistics, and it can take a given mean
    and standard deviation.
  - `select_features` packs the selected features to the front of the
    feature axis.
  - `remove_outliers` softly pulls values towards bounds of
    `mean ± n_sigma * std`.
- `tabular_pfn.attention_kernels`
  - `newly_initialized_input_weight` draws projection weights with a
    Xavier-like uniform scale.
  - `dropout` applies dropout to an array.
  - `broadcast_kv_across_heads` repeats shared key and value heads.
  - `compute_attention_heads` performs scaled dot-product attention. It
    accepts separate `q`/`k`/`v`, stacked `kv` or stacked `qkv` inputs.
  - `convert_torch_nn_multihead_attention_state_dict` converts a standard
    `in_proj_weight` / `out_proj.weight` state dict into per-head weights.
- `tabular_pfn.full_attention`
  - `Attention` is the abstract interface of an attention layer.
  - `MultiHeadAttention` implements it. It supports key/value caching
    (`cache_kv`, `use_cached_kv`, `only_cache_first_head_kv`),
    cross-attention through `x_kv`, key/value heads shared across query
    heads, `reuse_first_head_kv`, and a residual through `add_input`.
  - When the config has `recompute_attn` and `save_peak_mem_factor` is
    given, the queries are processed in chunks.
  - `set_parameters` replaces the weights and caches after it has validated
    their combination and shapes.
  - `has_cached_kv` and `empty_kv_cache` inspect and clear the cache.

## Installation

```
pip install .
```

## Example

```python
import numpy as np

from tabular_pfn.config import ModelConfig
from tabular_pfn.full_attention import MultiHeadAttention
from tabular_pfn.tensor_ops import normalize_data

config = ModelConfig(emsize=64, nhead=4)
config.validate_consistent()

rng = np.random.default_rng(0)
attention = MultiHeadAttention(d_k=16, d_v=16, config=config, rng=rng)
x = rng.normal(size=(2, 8, 64))

out = attention.forward(x, cache_kv=True)
assert out.shape == (2, 8, 64)
assert attention.has_cached_kv()

again = attention.forward(x, use_cached_kv=True)
attention.empty_kv_cache()

table = rng.normal(size=(10, 1, 3))
normalized, (mean, std) = normalize_data(table, return_scaling=True)
```

Attention inputs have the shape `(..., sequence, emsize)`. The
preprocessing functions reduce along axis 0, which is the sequence of rows.
Invalid configurations and inconsistent arguments raise `ValueError`.

## What this package does not provide

The package provides components, not a complete model. It has no input or
target encoder pipeline, no transformer layers or model assembly, no
loading of trained checkpoints, no training or prediction, and no
command-line tool.

## Running the tests

```
pip install .[test]
pytest
```