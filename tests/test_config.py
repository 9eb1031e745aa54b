import json

import pytest

from tabular_pfn.config import (
    FeaturePositionalEmbedding,
    ModelConfig,
    get_unused_items,
)


def test_default_config():
    config = ModelConfig()
    assert config.emsize == 192
    assert config.features_per_group == 2
    assert config.nhead == 6
    assert not config.remove_duplicate_features
    assert config.dropout == 0.0
    assert not config.encoder_use_bias
    assert config.feature_positional_embedding == FeaturePositionalEmbedding.SUBSPACE
    assert not config.multiquery_item_attention
    assert config.nan_handling_enabled
    assert config.nan_handling_y_encoder
    assert config.nhid_factor == 4
    assert config.nlayers == 12
    assert config.normalize_by_used_features
    assert config.normalize_on_train_only
    assert not config.normalize_to_ranking
    assert config.normalize_x
    assert not config.recompute_attn
    assert config.recompute_layer
    assert config.remove_empty_features
    assert not config.remove_outliers
    assert not config.use_separate_decoder
    assert config.multiquery_item_attention_for_test_set
    assert config.attention_init_gain == 1.0
    assert config.dag_pos_enc_dim is None
    assert config.item_attention_type == "full"
    assert config.feature_attention_type == "full"
    assert config.seed == 0
    assert config.max_num_classes == 0
    assert config.num_buckets == 0


def test_validate_consistent_valid():
    config = ModelConfig(emsize=192, nhead=6)
    assert config.validate_consistent() is None


def test_validate_consistent_bad_ratio():
    config = ModelConfig(emsize=193, nhead=6)
    with pytest.raises(ValueError, match="divisible"):
        config.validate_consistent()


def test_validate_consistent_bad_features_per_group():
    config = ModelConfig(emsize=192, features_per_group=3)
    with pytest.raises(ValueError, match="features_per_group"):
        config.validate_consistent()


def test_upgrade_config():
    config = {"use_flash_attention": True, "attention_init_gain": None}
    upgraded = ModelConfig.upgrade_config(config)
    assert "use_flash_attention" not in upgraded
    assert upgraded["attention_init_gain"] == 1.0


def test_upgrade_config_does_not_mutate_input():
    config = {"use_flash_attention": True, "attention_type": "full"}
    ModelConfig.upgrade_config(config)
    assert config == {"use_flash_attention": True, "attention_type": "full"}


def test_upgrade_config_attention_type():
    upgraded = ModelConfig.upgrade_config({"attention_type": "full"})
    assert "attention_type" not in upgraded
    assert upgraded["item_attention_type"] == "full"
    assert upgraded["feature_attention_type"] == "full"


@pytest.mark.parametrize(
    "config",
    [
        {"canonical_y_encoder": True},
        {"bias": True},
        {"two_sets_of_queries": True},
        {"attention_type": "full", "item_attention_type": "full"},
        {"canonical_y_encoder": "no"},
    ],
)
def test_upgrade_config_errors(config):
    with pytest.raises(ValueError):
        ModelConfig.upgrade_config(config)


def test_upgrade_config_accepts_false_flags():
    upgraded = ModelConfig.upgrade_config(
        {"canonical_y_encoder": False, "bias": False, "two_sets_of_queries": False}
    )
    assert upgraded == {"canonical_y_encoder": False, "bias": False}


def test_serialization():
    config = ModelConfig(max_num_classes=10, num_buckets=5000)
    text = json.dumps(config.to_dict())
    restored = ModelConfig.from_dict(json.loads(text))
    assert restored.emsize == config.emsize
    assert restored.nhead == config.nhead
    assert restored.feature_positional_embedding == config.feature_positional_embedding
    assert restored == config


def test_to_dict_uses_snake_case_enum():
    data = ModelConfig().to_dict()
    assert data["feature_positional_embedding"] == "subspace"
    assert data["dag_pos_enc_dim"] is None


def test_from_dict_requires_fields():
    with pytest.raises(ValueError, match="num_buckets"):
        ModelConfig.from_dict({"max_num_classes": 10})


def test_from_dict_missing_embedding_is_none():
    config = ModelConfig.from_dict({"max_num_classes": 2, "num_buckets": 3})
    assert config.feature_positional_embedding is None
    assert config.emsize == 192


def test_from_dict_rejects_unknown_embedding():
    with pytest.raises(ValueError):
        ModelConfig.from_dict(
            {"max_num_classes": 2, "num_buckets": 3, "feature_positional_embedding": "bogus"}
        )


def test_from_dict_rejects_wrong_type():
    with pytest.raises(ValueError):
        ModelConfig.from_dict({"max_num_classes": 2, "num_buckets": 3, "emsize": "big"})


def test_get_unused_config():
    config = ModelConfig()
    unused = config.get_unused_config({"emsize": 192, "extra": 1, "other": {"a": 2}})
    assert unused == {"extra": 1, "other": {"a": 2}}


def test_get_unused_items_nested():
    full = {"a": {"x": 1, "y": 2}, "b": {"z": 3}, "c": 4}
    used = {"a": {"x": 0}, "b": {"z": 0}, "c": 0}
    assert get_unused_items(full, used) == {"a": {"y": 2}}