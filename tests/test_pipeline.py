"""
Tests for the stratified per-lineage pipeline.
"""

import numpy as np
import pandas as pd
import pytest

from conftest import make_col_metadata, simulate_counts
from trap_dea.annotated import AnnotatedMatrix
from trap_dea.config import ContrastSpec, default_config
from trap_dea.errors import (
    InsufficientDataError, RankDeficientDesignError, UnknownCovariateError)
from trap_dea.pipeline import (
    _effective_n_jobs, result_key, run_group_analysis, run_stratified)
from trap_dea.qltest import ql_f_test


def mixed_experiment():
    """
    Three IP lines plus Input samples of Calca:

    - Calca: complete;
    - Mrgprd: no day-2 SNI samples;
    - Bad: sex confounded with the Sham day-2 level.
    """
    meta = make_col_metadata(lines=("Bad", "Calca", "Mrgprd"), reps=2)
    bad = meta["mouseline"] == "Bad"
    sham2 = meta["cond_day"] == "Sham_2"
    meta.loc[bad & sham2, "sex"] = "M"
    meta.loc[bad & ~sham2, "sex"] = "F"
    meta = meta[~((meta["mouseline"] == "Mrgprd") & (meta["cond_day"] == "SNI_2"))]

    inputs = make_col_metadata(lines=("Calca",), reps=2, processing="Input")
    inputs.index = [f"{s}_Input" for s in inputs.index]
    meta = pd.concat([meta, inputs])
    meta.index.name = "sample"

    counts = simulate_counts(meta, n_genes=80, n_de=10, seed=3)
    return AnnotatedMatrix(counts, meta)


@pytest.fixture(scope="module")
def stratified():
    am = mixed_experiment()
    return am, run_stratified(am, default_config(n_sv=1))


# ------------------------------------------------------------------------------
# Stratified runs
# ------------------------------------------------------------------------------


def test_rank_deficient_group_is_reported(stratified):
    _, result = stratified
    assert set(result.groups) == {"Calca", "Mrgprd"}
    assert set(result.failures) == {"Bad"}
    assert isinstance(result.failures["Bad"], RankDeficientDesignError)


def test_missing_level_skips_contrasts(stratified):
    _, result = stratified
    mrgprd = result.groups["Mrgprd"]
    assert set(mrgprd.skipped) == {"SNI_vs_Sham_D2", "Injury_global"}
    assert set(mrgprd.tables) == {"SNI_vs_Sham_D7", "Sham_vs_Naive"}
    assert set(result.groups["Calca"].tables) == {
        "SNI_vs_Sham_D2", "SNI_vs_Sham_D7", "Sham_vs_Naive", "Injury_global"}


def test_results_are_merged_by_key(stratified):
    am, result = stratified
    keys = result.matrix.row_keys(prefix="DEA.")
    assert result_key("Calca", "SNI_vs_Sham_D7") == "DEA.Calca.SNI_vs_Sham_D7"
    assert "DEA.Calca.SNI_vs_Sham_D7" in keys
    assert "DEA.Mrgprd.SNI_vs_Sham_D7" in keys
    assert "DEA.Mrgprd.SNI_vs_Sham_D2" not in keys
    assert not any(k.startswith("DEA.Bad.") for k in keys)

    table = result.matrix.row_entry("DEA.Calca.SNI_vs_Sham_D7")
    pd.testing.assert_frame_equal(table, result.table("Calca", "SNI_vs_Sham_D7"))
    assert "logFC" in table.columns
    assert "logFC" not in result.matrix.row_entry("DEA.Calca.Injury_global").columns
    assert set(table.index) <= set(am.genes)
    assert result.matrix.version > am.version
    assert am.row_keys() == []


def test_corrected_assay_and_surrogates(stratified):
    am, result = stratified
    meta = result.matrix.col_metadata
    corrected = result.matrix.assay("corrected")
    analysed = meta["mouseline"].isin(["Calca", "Mrgprd"]) & (meta["processing"] == "IP")

    assert corrected.shape == am.shape
    assert np.isfinite(corrected.loc[:, analysed.to_numpy()].to_numpy()).all()
    assert corrected.loc[:, ~analysed.to_numpy()].isna().all().all()
    assert meta.loc[analysed, "SV1"].notna().all()
    assert meta.loc[~analysed, "SV1"].isna().all()

    counts = am.assay("counts").loc[:, analysed.to_numpy()]
    np.testing.assert_allclose(corrected.loc[:, analysed.to_numpy()].sum(axis=0),
                               counts.sum(axis=0), rtol=1e-8)


def test_planted_injury_genes_are_found(stratified):
    _, result = stratified
    table = result.table("Calca", "Injury_global")
    planted = {f"gene{i:04d}" for i in range(10)}
    assert len(set(table.index[:10]) & planted) >= 6


def test_parallel_matches_serial(stratified):
    am, serial = stratified
    parallel = run_stratified(am, default_config(n_sv=1, n_jobs=2))
    assert set(parallel.groups) == set(serial.groups)
    for group, res in serial.groups.items():
        for name, table in res.tables.items():
            pd.testing.assert_frame_equal(parallel.table(group, name), table)


def test_line_without_reference_level():
    meta = make_col_metadata(lines=("Calca", "Nefl"), reps=2)
    meta = meta[~((meta["mouseline"] == "Nefl") & (meta["cond_day"] == "Naive_7"))]
    am = AnnotatedMatrix(simulate_counts(meta, n_genes=80, n_de=10, seed=4), meta)
    result = run_stratified(am, default_config(n_sv=0))

    nefl = result.groups["Nefl"]
    assert nefl.design.reference_levels["cond_day"] == "Naive_7"
    assert nefl.design.shifted_references["cond_day"].baseline == "Sham_2"
    assert set(nefl.skipped) == {"Sham_vs_Naive"}
    assert set(nefl.tables) == {"SNI_vs_Sham_D2", "SNI_vs_Sham_D7", "Injury_global"}
    pd.testing.assert_frame_equal(nefl.tables["SNI_vs_Sham_D2"],
                                  ql_f_test(nefl.qlfit, coef="cond_daySNI_2"))
    assert "DEA.Nefl.Sham_vs_Naive" not in result.matrix.row_keys()
    assert "Sham_vs_Naive" in result.groups["Calca"].tables


def test_line_without_expressed_genes_fails_alone():
    meta = make_col_metadata(lines=("Calca", "Low"), reps=2)
    counts = simulate_counts(meta, n_genes=80, n_de=10, seed=5)
    low = (meta["mouseline"] == "Low").to_numpy()
    rng = np.random.default_rng(6)
    counts.loc[:, low] = rng.integers(0, 2, size=(len(counts), int(low.sum())))
    am = AnnotatedMatrix(counts, meta)

    result = run_stratified(am, default_config(n_sv=1))
    assert set(result.groups) == {"Calca"}
    assert isinstance(result.failures["Low"], InsufficientDataError)
    keys = result.matrix.row_keys(prefix="DEA.")
    assert "DEA.Calca.SNI_vs_Sham_D7" in keys
    assert not any(k.startswith("DEA.Low.") for k in keys)
    assert result.matrix.assay("corrected").loc[:, low].isna().all().all()


def test_unknown_covariate_propagates():
    am = mixed_experiment()
    with pytest.raises(UnknownCovariateError):
        run_stratified(am, default_config(formula="~ batch + cond_day", n_sv=0))


# ------------------------------------------------------------------------------
# Single group
# ------------------------------------------------------------------------------


def test_group_analysis_without_surrogates(two_line_experiment):
    counts, meta = two_line_experiment
    calca = meta.index[meta["mouseline"] == "Calca"]
    spec = ContrastSpec("SNI_vs_Sham_D7", "cond_daySNI_7 - cond_daySham_7")
    res = run_group_analysis(counts[calca], meta.loc[calca], [spec], n_sv=0, group="Calca")

    assert res.sv.shape == (len(calca), 0)
    pd.testing.assert_frame_equal(res.corrected, counts[calca].astype(float))
    assert res.design.columns[-1] == "cond_daySNI_7"
    assert list(res.tables) == ["SNI_vs_Sham_D7"]


def test_surrogates_extend_test_design(two_line_experiment):
    counts, meta = two_line_experiment
    calca = meta.index[meta["mouseline"] == "Calca"]
    spec = ContrastSpec("SNI_vs_Sham_D7", "cond_daySNI_7 - cond_daySham_7")
    res = run_group_analysis(counts[calca], meta.loc[calca], [spec], n_sv=2)
    assert res.design.columns[-2:] == ("SV1", "SV2")
    assert res.design.df_residual >= 1


def test_group_analysis_checks_sample_order(two_line_experiment):
    counts, meta = two_line_experiment
    with pytest.raises(ValueError):
        run_group_analysis(counts, meta.iloc[::-1], [])


@pytest.mark.parametrize("n_jobs, expected", [(None, 1), (1, 1), (3, 3)])
def test_effective_n_jobs(n_jobs, expected):
    assert _effective_n_jobs(n_jobs) == expected


def test_effective_n_jobs_all_cpus():
    assert _effective_n_jobs(0) >= 1
    assert _effective_n_jobs(-1) >= 1
