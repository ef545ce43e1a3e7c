"""
Shared test fixtures for trap_dea tests.

Synthetic TRAP experiments: every mouse line has each condition/day level
with alternating sexes, and counts are negative binomial draws with a
planted injury effect in a known set of genes.
"""

import numpy as np
import pandas as pd
import pytest

from trap_dea.covariates import COND_DAY_LEVELS, coerce_col_metadata, derive_cond_day


def make_col_metadata(lines=("Calca",), reps=2, processing="IP"):
    """Sample table with ``reps`` samples per condition/day level and line."""
    rows = {}
    for line in lines:
        for level in COND_DAY_LEVELS:
            condition, day = level.split("_")
            for r in range(reps):
                sex = "F" if r % 2 == 0 else "M"
                name = f"{line}_{sex}_{condition}_D{day}_{r}"
                rows[name] = {
                    "mouseline": line,
                    "sex": sex,
                    "condition": condition,
                    "day": int(day),
                    "processing": processing,
                }
    meta = pd.DataFrame.from_dict(rows, orient="index")
    meta.index.name = "sample"
    return derive_cond_day(coerce_col_metadata(meta))


def simulate_counts(col_metadata, n_genes=200, n_de=20, log2_fc=2.0, dispersion=0.05,
                    seed=0):
    """
    Negative binomial counts; the first ``n_de`` genes change in SNI samples
    (first half up, second half down).
    """
    rng = np.random.default_rng(seed)
    n = len(col_metadata)
    base = np.exp(rng.uniform(np.log(100), np.log(3000), n_genes))
    lib = rng.uniform(0.8, 1.25, n)

    fold = np.ones((n_genes, n))
    sni = (col_metadata["condition"].astype(str) == "SNI").to_numpy()
    half = n_de // 2
    fold[:half, sni] = 2.0 ** log2_fc
    fold[half:n_de, sni] = 2.0 ** -log2_fc

    mu = base[:, None] * lib[None, :] * fold
    r = 1.0 / dispersion
    counts = rng.negative_binomial(r, r / (r + mu))
    genes = [f"gene{i:04d}" for i in range(n_genes)]
    return pd.DataFrame(counts, index=pd.Index(genes, name="gene"), columns=col_metadata.index)


# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def col_metadata():
    return make_col_metadata(reps=2)


@pytest.fixture(scope="session")
def injury_experiment():
    """One line, three samples per level, 20 planted DE genes."""
    meta = make_col_metadata(reps=3)
    counts = simulate_counts(meta, n_genes=200, n_de=20, seed=1)
    return counts, meta


@pytest.fixture(scope="session")
def two_line_experiment():
    meta = make_col_metadata(lines=("Calca", "Mrgprd"), reps=2)
    counts = simulate_counts(meta, n_genes=80, n_de=10, seed=2)
    return counts, meta
