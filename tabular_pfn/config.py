"""Model architecture configuration and checkpoint-config upgrades."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("max_num_classes", "num_buckets")


class FeaturePositionalEmbedding(str, Enum):
    """Kinds of positional embedding added to feature groups."""

    NORMAL_RAND_VEC = "normal_rand_vec"
    UNI_RAND_VEC = "uni_rand_vec"
    LEARNED = "learned"
    SUBSPACE = "subspace"


@dataclass
class ModelConfig:
    """Configuration of the base per-feature transformer architecture."""

    max_num_classes: int = 0
    num_buckets: int = 0

    # The embedding dimension.
    emsize: int = 192
    # If > 1, features are grouped into groups of this size (1 or 2).
    features_per_group: int = 2
    # Attention heads for both between-item and between-feature attention.
    nhead: int = 6
    remove_duplicate_features: bool = False

    dropout: float = 0.0
    encoder_use_bias: bool = False
    feature_positional_embedding: Optional[FeaturePositionalEmbedding] = (
        FeaturePositionalEmbedding.SUBSPACE
    )
    multiquery_item_attention: bool = False
    nan_handling_enabled: bool = True
    nan_handling_y_encoder: bool = True
    # Hidden dimension in the MLP layers is emsize * nhid_factor.
    nhid_factor: int = 4
    nlayers: int = 12
    normalize_by_used_features: bool = True
    normalize_on_train_only: bool = True
    normalize_to_ranking: bool = False
    normalize_x: bool = True
    recompute_attn: bool = False
    recompute_layer: bool = True
    remove_empty_features: bool = True
    remove_outliers: bool = False
    use_separate_decoder: bool = False
    multiquery_item_attention_for_test_set: bool = True
    attention_init_gain: float = 1.0
    dag_pos_enc_dim: Optional[int] = None
    item_attention_type: str = "full"
    feature_attention_type: str = "full"
    seed: int = 0

    @staticmethod
    def upgrade_config(config: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of an old config rewritten for the current schema.

        Raises ValueError when the config cannot be supported.
        """
        upgraded = dict(config)

        if "use_flash_attention" in upgraded:
            del upgraded["use_flash_attention"]
            logger.debug(
                "`use_flash_attention` was specified in the config. This will be "
                "ignored and the attention implementation selected automatically."
            )

        if "attention_init_gain" in upgraded and upgraded["attention_init_gain"] is None:
            upgraded["attention_init_gain"] = 1.0

        if "attention_type" in upgraded:
            attention_type = upgraded.pop("attention_type")
            if "item_attention_type" in upgraded or "feature_attention_type" in upgraded:
                raise ValueError("Can't have both old and new attention types set")
            upgraded["item_attention_type"] = attention_type
            upgraded["feature_attention_type"] = attention_type

        if "canonical_y_encoder" in upgraded and upgraded["canonical_y_encoder"] is not False:
            raise ValueError("Current version only supports canonical_y_encoder=False")
        if "bias" in upgraded and upgraded["bias"] is not False:
            raise ValueError("Current version only supports bias=False")

        if upgraded.pop("two_sets_of_queries", False) is True:
            raise ValueError("`two_sets_of_queries` is no longer supported in config")

        return upgraded

    def validate_consistent(self) -> None:
        """Raise ValueError if the configuration is internally inconsistent."""
        if self.nhead <= 0:
            raise ValueError("nhead must be positive")
        if self.emsize % self.nhead != 0:
            raise ValueError("emsize must be divisible by nhead")
        if self.features_per_group not in (1, 2):
            raise ValueError("features_per_group must be 1 or 2")

    def get_unused_config(self, unparsed_config: Mapping[str, Any]) -> dict[str, Any]:
        """Return the items of ``unparsed_config`` that this config does not use."""
        return get_unused_items(unparsed_config, self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dictionary."""
        result: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelConfig":
        """Build a config from a dictionary, ignoring unknown keys.

        ``max_num_classes`` and ``num_buckets`` are required. A missing
        ``feature_positional_embedding`` is read as no embedding.
        """
        missing = [name for name in _REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")

        kwargs: dict[str, Any] = {"feature_positional_embedding": None}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name == "feature_positional_embedding":
                kwargs[f.name] = _parse_embedding(value)
            elif f.name == "dag_pos_enc_dim":
                kwargs[f.name] = None if value is None else _coerce(f.name, value, 0)
            else:
                kwargs[f.name] = _coerce(f.name, value, f.default)
        return cls(**kwargs)


def _parse_embedding(value: Any) -> Optional[FeaturePositionalEmbedding]:
    if value is None:
        return None
    if isinstance(value, FeaturePositionalEmbedding):
        return value
    try:
        return FeaturePositionalEmbedding(value)
    except ValueError:
        raise ValueError(f"unknown feature_positional_embedding: {value!r}") from None


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{name} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string, got {value!r}")
        return value
    return value


def get_unused_items(
    full_config: Mapping[str, Any], used_config: Mapping[str, Any]
) -> dict[str, Any]:
    """Return the items of ``full_config`` not present in ``used_config``.

    Nested dictionaries are compared recursively; only their unused parts
    are reported.
    """
    unused: dict[str, Any] = {}
    for key, value in full_config.items():
        if key not in used_config:
            unused[key] = value
            continue
        used_value = used_config[key]
        if isinstance(value, Mapping) and isinstance(used_value, Mapping):
            sub_unused = get_unused_items(value, used_value)
            if sub_unused:
                unused[key] = sub_unused
    return unused