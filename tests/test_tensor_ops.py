import math

import numpy as np
import pytest

from tabular_pfn.tensor_ops import (
    normalize_data,
    remove_outliers,
    select_features,
    torch_nanmean,
    torch_nansum,
    torch_nanstd,
)

NAN = float("nan")


def test_torch_nansum_basic_shape():
    x = np.array([[1.0, NAN, 3.0], [4.0, 5.0, 6.0]], dtype=np.float32)
    result = torch_nansum(x, 0, False)
    assert result.shape == (1, 3)


def test_torch_nansum_values():
    x = np.array([[1.0, NAN, 3.0], [4.0, 5.0, 6.0]])
    np.testing.assert_allclose(torch_nansum(x, 0, False), [[5.0, 5.0, 9.0]])


def test_torch_nansum_all_axes():
    x = np.array([[1.0, NAN], [2.0, 3.0]])
    result = torch_nansum(x)
    assert result.shape == (1, 1)
    assert result[0, 0] == pytest.approx(6.0)


def test_torch_nanmean_basic_shape():
    x = np.array([[1.0, NAN, 3.0], [4.0, 5.0, 6.0]], dtype=np.float32)
    result = torch_nanmean(x, 0, False, False)
    assert result.shape == (1, 3)


def test_torch_nanmean_values():
    x = np.array([[1.0, NAN, 3.0], [4.0, 5.0, 6.0]])
    np.testing.assert_allclose(torch_nanmean(x, 0), [[2.5, 5.0, 4.5]])


def test_torch_nanmean_all_nan_is_zero():
    x = np.array([[NAN], [NAN]])
    np.testing.assert_allclose(torch_nanmean(x, 0), [[0.0]])


def test_torch_nanmean_nanshare():
    x = np.array([[1.0, NAN], [3.0, NAN], [5.0, 2.0], [NAN, 4.0]])
    mean, nanshare = torch_nanmean(x, 0, return_nanshare=True)
    np.testing.assert_allclose(mean, [[3.0, 3.0]])
    np.testing.assert_allclose(nanshare, [[0.25, 0.5]])


def test_torch_nanmean_include_inf():
    x = np.array([[1.0], [math.inf], [3.0]])
    np.testing.assert_allclose(torch_nanmean(x, 0, include_inf=True), [[2.0]])
    assert np.isinf(torch_nanmean(x, 0)[0, 0])


def test_torch_nanstd_values():
    x = np.array([[1.0, 2.0], [3.0, NAN]])
    result = torch_nanstd(x, 0)
    assert result.shape == (1, 2)
    assert result[0, 0] == pytest.approx(math.sqrt(2.0))
    assert result[0, 1] == pytest.approx(0.0)


def test_torch_nanstd_matches_sample_std_without_nans():
    rng = np.random.default_rng(0)
    x = rng.normal(size=(10, 4))
    np.testing.assert_allclose(
        torch_nanstd(x, 0), np.std(x, axis=0, ddof=1, keepdims=True)
    )


def test_normalize_data_basic():
    data = np.array([1.0, 2.0, 3.0]).reshape(3, 1, 1)
    result = normalize_data(data)
    np.testing.assert_allclose(result.ravel(), [-1.0, 0.0, 1.0], atol=1e-6)


def test_normalize_data_constant_feature_maps_to_zero():
    data = np.full((4, 1, 1), 7.0)
    result = normalize_data(data)
    np.testing.assert_allclose(result, np.zeros_like(data))


def test_normalize_data_single_sample_uses_unit_std():
    data = np.array([[[5.0, -3.0]]])
    result, (mean, std) = normalize_data(data, return_scaling=True)
    np.testing.assert_allclose(result, np.zeros_like(data))
    np.testing.assert_allclose(std, np.ones((1, 1, 2)))
    np.testing.assert_allclose(mean, data)


def test_normalize_data_on_prefix():
    data = np.array([1.0, 2.0, 10.0]).reshape(3, 1, 1)
    result, (mean, std) = normalize_data(data, normalize_positions=2, return_scaling=True)
    assert mean.ravel()[0] == pytest.approx(1.5)
    assert std.ravel()[0] == pytest.approx(math.sqrt(0.5))
    assert result.ravel()[2] == pytest.approx((10.0 - 1.5) / math.sqrt(0.5))


def test_normalize_data_positions_one_forces_unit_std():
    data = np.array([1.0, 2.0, 3.0]).reshape(3, 1, 1)
    result = normalize_data(data, normalize_positions=1)
    np.testing.assert_allclose(result.ravel(), [0.0, 1.0, 2.0], atol=1e-6)


def test_normalize_data_given_scaling_and_clip():
    data = np.array([0.0, 1000.0, -1000.0]).reshape(3, 1, 1)
    mean = np.zeros((1, 1, 1))
    std = np.ones((1, 1, 1))
    result = normalize_data(data, clip=True, mean=mean, std=std)
    np.testing.assert_allclose(result.ravel(), [0.0, 100.0, -100.0])


def test_normalize_data_std_only_keeps_offset():
    data = np.array([1.0, 3.0]).reshape(2, 1, 1)
    mean = np.full((1, 1, 1), 2.0)
    std = np.full((1, 1, 1), 2.0)
    result = normalize_data(data, std_only=True, mean=mean, std=std)
    np.testing.assert_allclose(result.ravel(), [0.5, 1.5])


def test_normalize_data_requires_both_mean_and_std():
    data = np.ones((2, 1, 1))
    with pytest.raises(ValueError):
        normalize_data(data, mean=np.zeros((1, 1, 1)))


def test_normalize_data_keeps_nan():
    data = np.array([1.0, NAN, 3.0]).reshape(3, 1, 1)
    result = normalize_data(data)
    assert np.isnan(result.ravel()[1])
    assert result.ravel()[0] == pytest.approx(-1.0 / math.sqrt(2.0))


def test_select_features_single_batch():
    x = np.arange(6, dtype=float).reshape(2, 1, 3)
    sel = np.array([[True, False, True]])
    result = select_features(x, sel)
    assert result.shape == (2, 1, 2)
    np.testing.assert_allclose(result[:, 0, :], [[0.0, 2.0], [3.0, 5.0]])


def test_select_features_single_batch_none_selected():
    x = np.ones((3, 1, 2))
    result = select_features(x, np.array([[False, False]]))
    assert result.shape == (3, 1, 0)


def test_select_features_multi_batch_pads_with_zeros():
    x = np.arange(12, dtype=float).reshape(2, 2, 3)
    sel = np.array([[False, True, True], [True, False, False]])
    result = select_features(x, sel)
    assert result.shape == (2, 2, 3)
    np.testing.assert_allclose(result[:, 0, :], [[1.0, 2.0, 0.0], [7.0, 8.0, 0.0]])
    np.testing.assert_allclose(result[:, 1, :], [[3.0, 0.0, 0.0], [9.0, 0.0, 0.0]])


def test_select_features_shape_mismatch():
    x = np.ones((2, 2, 3))
    with pytest.raises(ValueError):
        select_features(x, np.ones((3, 3), dtype=bool))
    with pytest.raises(ValueError):
        select_features(x, np.ones((2, 4), dtype=bool))


def test_remove_outliers_bounds():
    x = np.array([1.0, 2.0, 3.0]).reshape(3, 1, 1)
    _, (lower, upper) = remove_outliers(x, n_sigma=4.0)
    assert lower.ravel()[0] == pytest.approx(-2.0)
    assert upper.ravel()[0] == pytest.approx(6.0)


def test_remove_outliers_never_increases_values():
    rng = np.random.default_rng(1)
    x = rng.normal(scale=5.0, size=(20, 2, 3))
    processed, _ = remove_outliers(x, n_sigma=2.0)
    assert processed.shape == x.shape
    assert np.all(processed <= x + 1e-12)


def test_remove_outliers_pulls_large_values_down():
    x = np.array([0.0, 100.0]).reshape(2, 1, 1)
    lower = np.full((1, 1, 1), -1.0)
    upper = np.full((1, 1, 1), 1.0)
    processed, (lo, up) = remove_outliers(x, lower=lower, upper=upper)
    assert processed.ravel()[0] == pytest.approx(0.0)
    assert processed.ravel()[1] < 10.0
    np.testing.assert_allclose(lo, lower)
    np.testing.assert_allclose(up, upper)


def test_remove_outliers_requires_both_bounds():
    x = np.ones((2, 1, 1))
    with pytest.raises(ValueError):
        remove_outliers(x, lower=np.zeros((1, 1, 1)))