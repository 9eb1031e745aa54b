"""Configuration, NaN-aware preprocessing and multi-head attention for a prior-fitted tabular transformer."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "tensor_ops",
    "attention_kernels",
    "full_attention",
]