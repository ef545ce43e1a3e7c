"""
Tests for surrogate variable estimation and removal.
"""

import numpy as np
import pandas as pd
import pytest

from trap_dea.errors import InsufficientDataError
from trap_dea.sva import (
    edge_lfdr, estimate_n_sv, estimate_surrogate_variables, f_pvalue,
    remove_surrogate_effects)


@pytest.fixture(scope="module")
def confounded_data():
    """Log-scale data with a primary group effect and one hidden batch."""
    rng = np.random.default_rng(11)
    n, m = 12, 600
    group = np.repeat([0.0, 1.0], n // 2)
    batch = rng.normal(size=n)
    batch -= batch.mean()

    base = rng.uniform(3, 8, size=m)
    primary = np.zeros(m)
    primary[:60] = rng.choice([-1.5, 1.5], size=60)
    loading = np.zeros(m)
    loading[100:300] = rng.normal(0, 1.0, size=200)

    Y = (base[:, None] + primary[:, None] * group[None, :]
         + loading[:, None] * batch[None, :] + rng.normal(0, 0.3, size=(m, n)))
    samples = [f"s{j}" for j in range(n)]
    dat = pd.DataFrame(Y, index=[f"g{i}" for i in range(m)], columns=samples)
    mod = np.column_stack([np.ones(n), group])
    return dat, mod, pd.Series(batch, index=samples)


# ------------------------------------------------------------------------------
# Building blocks
# ------------------------------------------------------------------------------


def test_f_pvalue_separates_groups():
    group = np.array([0, 0, 0, 1, 1, 1], dtype=float)
    mod = np.column_stack([np.ones(6), group])
    mod0 = np.ones((6, 1))
    dat = np.array([
        [1.0, 1.1, 0.9, 5.0, 5.1, 4.9],
        [1.0, 5.0, 3.0, 1.2, 4.8, 3.1],
        [2.0, 2.0, 2.0, 2.0, 2.0, 2.0],
    ])
    p = f_pvalue(dat, mod, mod0)
    assert p[0] < 1e-4
    assert p[1] > 0.5
    assert p[2] == pytest.approx(1.0)


def test_edge_lfdr_bounds_and_monotone():
    rng = np.random.default_rng(1)
    p = np.concatenate([rng.uniform(size=900), rng.uniform(0, 1e-4, size=100)])
    lfdr = edge_lfdr(p)
    assert np.all((lfdr >= 0) & (lfdr <= 1))
    order = np.argsort(p)
    assert np.all(np.diff(lfdr[order]) >= -1e-12)
    assert lfdr[p < 1e-4].mean() < lfdr[p > 0.5].mean()


def test_edge_lfdr_degenerate_input():
    out = edge_lfdr(np.full(5, 0.9))
    assert np.all(np.isfinite(out))
    assert np.all(out <= 1)


# ------------------------------------------------------------------------------
# Estimation
# ------------------------------------------------------------------------------


def test_recovers_planted_confounder(confounded_data):
    dat, mod, batch = confounded_data
    result = estimate_surrogate_variables(dat, mod, n_sv=1)
    assert list(result.sv.columns) == ["SV1"]
    assert result.sv.index.equals(dat.columns)
    corr = np.corrcoef(result.sv["SV1"], batch)[0, 1]
    assert abs(corr) > 0.8
    assert result.n_iter >= 1
    # batch genes should outweigh primary-effect genes
    assert result.weights.iloc[100:300].mean() > result.weights.iloc[:60].mean()


def test_estimates_are_reproducible(confounded_data):
    dat, mod, _ = confounded_data
    a = estimate_surrogate_variables(dat, mod, n_sv=2)
    b = estimate_surrogate_variables(dat, mod, n_sv=2)
    pd.testing.assert_frame_equal(a.sv, b.sv)


def test_estimate_n_sv_finds_batch(confounded_data):
    dat, mod, _ = confounded_data
    assert estimate_n_sv(dat, mod, n_perm=20, seed=0) >= 1


def test_n_sv_is_clamped_to_residual_df(caplog):
    rng = np.random.default_rng(2)
    dat = pd.DataFrame(rng.normal(size=(50, 4)), columns=list("abcd"))
    mod = np.column_stack([np.ones(4), [0, 0, 1, 1]])
    with caplog.at_level("WARNING", logger="trap_dea.sva"):
        result = estimate_surrogate_variables(dat, mod, n_sv=3)
    assert result.n_sv == 2
    assert result.n_requested == 3
    assert result.n_iter == 0
    assert "residual degrees" in caplog.text


def test_zero_surrogate_variables(confounded_data):
    dat, mod, _ = confounded_data
    result = estimate_surrogate_variables(dat, mod, n_sv=0)
    assert result.n_sv == 0
    assert result.sv.index.equals(dat.columns)
    assert (result.weights == 1).all()


def test_empty_matrix(confounded_data):
    dat, mod, _ = confounded_data
    empty = dat.iloc[:0]
    with pytest.raises(InsufficientDataError):
        estimate_surrogate_variables(empty, mod, n_sv=2)
    with pytest.raises(InsufficientDataError):
        estimate_surrogate_variables(empty, mod, n_sv=None)
    assert estimate_surrogate_variables(empty, mod, n_sv=0).n_sv == 0


def test_requires_frame():
    with pytest.raises(TypeError):
        estimate_surrogate_variables(np.zeros((5, 4)), np.ones((4, 1)), n_sv=1)


def test_design_rows_must_match_samples(confounded_data):
    dat, _, _ = confounded_data
    with pytest.raises(ValueError):
        estimate_surrogate_variables(dat, np.ones((5, 1)), n_sv=1)


# ------------------------------------------------------------------------------
# Removal
# ------------------------------------------------------------------------------


def test_corrected_counts_keep_sample_totals(confounded_data):
    dat, mod, batch = confounded_data
    counts = np.round(np.expm1(dat.clip(lower=0)))
    sv = pd.DataFrame({"SV1": batch})
    corrected = remove_surrogate_effects(counts, mod, sv)
    assert corrected.shape == counts.shape
    assert (corrected.to_numpy() >= 0).all()
    np.testing.assert_allclose(corrected.sum(axis=0).to_numpy(),
                               counts.sum(axis=0).to_numpy(), rtol=1e-10)


def test_no_surrogate_variables_returns_copy(confounded_data):
    dat, mod, _ = confounded_data
    counts = np.round(np.expm1(dat.clip(lower=0)))
    out = remove_surrogate_effects(counts, mod, pd.DataFrame(index=counts.columns))
    pd.testing.assert_frame_equal(out, counts.astype(float))
    assert out is not counts
