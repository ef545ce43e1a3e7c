"""
Stratified differential expression pipeline.

For each stratum (by default each mouse line) an independent analysis is
run on a private copy of that stratum's samples:

1. design matrix from the model formula (levels absent from the stratum
   are dropped; contrasts that depend on an absent reference level are
   skipped);
2. expression filtering and TMM normalization;
3. surrogate variable estimation and the SV-corrected count assay;
4. NB GLM fit with the SVs as extra covariates, QL dispersion;
5. one QL F-test per configured contrast.

Strata run concurrently in a thread pool. When all have finished their
tables are merged into the row metadata of a new AnnotatedMatrix under
``DEA.<group>.<contrast>``, together with the SV coordinates and the
corrected assay.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .config import AnalysisConfig, default_config
from .design import DesignMatrix, build_design
from .errors import TrapDEAError, UnknownCovariateError, UnknownTermError
from .filtering import FilteredCounts, normalize_and_filter
from .qltest import QLFit, glm_ql_fit, ql_f_test
from .results import summarize_results
from .sva import estimate_surrogate_variables, remove_surrogate_effects

logger = logging.getLogger(__name__)

ALL_SAMPLES = "all"


def _effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


@dataclass
class GroupResult:
    """
    Outputs of one stratum.

    Attributes
    ----------
    group : object
        Stratum value, e.g. the mouse line.
    tables : dict of str to pd.DataFrame
        Result table per contrast name.
    skipped : dict of str to str
        Contrasts that could not be tested here, with the reason.
    sv : pd.DataFrame
        Surrogate variables (stratum samples x SVs).
    corrected : pd.DataFrame
        SV-corrected counts (all genes x stratum samples).
    design : DesignMatrix
        Design used for testing (including SV columns).
    filtered : FilteredCounts
    qlfit : QLFit
    """

    group: object
    tables: Dict[str, pd.DataFrame]
    skipped: Dict[str, str]
    sv: pd.DataFrame
    corrected: pd.DataFrame
    design: DesignMatrix
    filtered: FilteredCounts
    qlfit: QLFit


def _design_with_sv(mod, sv):
    """Append SV columns, dropping trailing ones until residual df remain."""
    n_keep = sv.shape[1]
    while n_keep > 0 and mod.df_residual - n_keep < 1:
        n_keep -= 1
    if n_keep < sv.shape[1]:
        logger.warning("Only %d of %d surrogate variables fit in the test design",
                       n_keep, sv.shape[1])
    if n_keep == 0:
        return mod
    return mod.append_columns(sv.iloc[:, :n_keep])


def run_group_analysis(counts, col_metadata, contrasts, formula="~ sex + cond_day",
                       null_formula="~ 1", n_sv=2, schema=None, normalization="TMM",
                       min_count=10, min_total_count=15, sva_iterations=5,
                       dispersion_trend="local", seed=0, group=ALL_SAMPLES):
    """
    Differential expression for one set of samples.

    Parameters
    ----------
    counts : pd.DataFrame
        Raw counts (genes x samples).
    col_metadata : pd.DataFrame
        Sample table, same samples as ``counts``.
    contrasts : sequence of ContrastSpec
    formula : str
        Model of interest.
    null_formula : str
        Null model for surrogate variable estimation.
    n_sv : int or None
        Surrogate variables (None: estimated, 0: none).
    group : object
        Label used in log records.

    Returns
    -------
    GroupResult

    Raises
    ------
    RankDeficientDesignError
        If the model cannot be estimated on these samples.
    InsufficientDataError
        If no gene passes the expression filter or no residual degrees of
        freedom remain.
    UnknownCovariateError
        If the formula names a column not in ``col_metadata``.
    """
    if list(counts.columns) != list(col_metadata.index):
        raise ValueError("counts columns and col_metadata index must match")

    mod = build_design(col_metadata, formula, schema=schema, drop_unused_levels=True)
    mod0 = build_design(col_metadata, null_formula, schema=schema, drop_unused_levels=True)
    logger.info("[%s] %d samples, design %s: %s", group, counts.shape[1],
                mod.formula, ", ".join(mod.columns))

    filtered = normalize_and_filter(counts, design=mod, method=normalization,
                                    min_count=min_count, min_total_count=min_total_count)

    if n_sv == 0:
        sv = pd.DataFrame(index=counts.columns, dtype=float)
    else:
        logdat = np.log1p(filtered.normalized())
        sv = estimate_surrogate_variables(logdat, mod, mod0, n_sv=n_sv,
                                          max_iter=sva_iterations, seed=seed).sv
    corrected = remove_surrogate_effects(counts, mod, sv)

    design = _design_with_sv(mod, sv)
    qlfit = glm_ql_fit(filtered.counts, design, filtered.log_offset, fit_type=dispersion_trend)

    tables = {}
    skipped = {}
    for spec in contrasts:
        try:
            table = ql_f_test(qlfit, spec.contrast)
        except UnknownTermError as exc:
            logger.warning("[%s] Skipping contrast '%s': %s", group, spec.name, exc)
            skipped[spec.name] = str(exc)
            continue
        summarize_results(table, fdr=spec.policy.fdr, name=f"{group}/{spec.name}")
        tables[spec.name] = table

    return GroupResult(
        group=group,
        tables=tables,
        skipped=skipped,
        sv=sv,
        corrected=corrected,
        design=design,
        filtered=filtered,
        qlfit=qlfit,
    )


@dataclass
class StratifiedResult:
    """
    Attributes
    ----------
    matrix : AnnotatedMatrix
        Input matrix augmented with ``DEA.*`` row entries, SV columns and
        the ``corrected`` assay.
    groups : dict
        GroupResult per stratum that completed.
    failures : dict
        Exception per stratum that could not be analysed.
    """

    matrix: object
    groups: Dict[object, GroupResult] = field(default_factory=dict)
    failures: Dict[object, Exception] = field(default_factory=dict)

    def table(self, group, contrast):
        return self.groups[group].tables[contrast]


def result_key(group, contrast):
    return f"DEA.{group}.{contrast}"


def _strata(col_metadata, config):
    meta = col_metadata
    if config.processing is not None and "processing" in meta.columns:
        meta = meta[meta["processing"].astype(str) == str(config.processing)]
    if config.group_by is None:
        return {ALL_SAMPLES: list(meta.index)}
    if config.group_by not in meta.columns:
        raise KeyError(f"group_by column '{config.group_by}' not in col_metadata")
    strata = {}
    for value in sorted(pd.unique(meta[config.group_by].dropna()), key=str):
        strata[value] = list(meta.index[meta[config.group_by] == value])
    return strata


def run_stratified(matrix, config=None, schema=None):
    """
    Run the analysis in every stratum and merge the results.

    Parameters
    ----------
    matrix : AnnotatedMatrix
        Must carry a ``counts`` assay.
    config : AnalysisConfig, optional
        Defaults to :func:`trap_dea.config.default_config`.
    schema : CovariateSchema, optional

    Returns
    -------
    StratifiedResult
        Strata that cannot be analysed (rank-deficient design, no residual
        degrees of freedom, no expressed genes, numerical failure) are
        listed in ``failures``; the others proceed. An unknown covariate
        is a configuration error and propagates.
    """
    config = config or default_config()
    if not isinstance(config, AnalysisConfig):
        raise TypeError("config must be an AnalysisConfig")
    strata = _strata(matrix.col_metadata, config)
    logger.info("Running %d strata: %s", len(strata), ", ".join(map(str, strata)))

    def compute(group, samples):
        sub = matrix.subset(samples=samples)
        return run_group_analysis(
            sub.assay("counts"), sub.col_metadata, config.contrasts,
            formula=config.formula, null_formula=config.null_formula,
            n_sv=config.n_sv, schema=schema, normalization=config.normalization,
            min_count=config.min_count, min_total_count=config.min_total_count,
            sva_iterations=config.sva_iterations,
            dispersion_trend=config.dispersion_trend, seed=config.seed, group=group)

    groups = {}
    failures = {}

    def record(group, fn, *args):
        try:
            groups[group] = fn(*args)
        except UnknownCovariateError:
            raise
        except (TrapDEAError, ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            logger.error("[%s] Analysis failed: %s", group, exc)
            failures[group] = exc

    start_time = time.time()
    workers = _effective_n_jobs(config.n_jobs)
    if workers == 1 or len(strata) <= 1:
        for group, samples in strata.items():
            record(group, compute, group, samples)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {
                executor.submit(compute, group, samples): group
                for group, samples in strata.items()
            }
            for future in as_completed(future_map):
                record(future_map[future], future.result)
    logger.info("Done in %.1f seconds.", time.time() - start_time)

    merged = merge_group_results(matrix, groups, order=list(strata))
    return StratifiedResult(matrix=merged, groups={g: groups[g] for g in strata if g in groups},
                            failures=failures)


def merge_group_results(matrix, groups, order=None):
    """
    Fold per-stratum outputs into a new AnnotatedMatrix.

    Result tables become ``DEA.<group>.<contrast>`` row entries over the
    genes each stratum tested. SV coordinates become ``SV1..SVn`` columns
    (NaN for samples of strata with fewer SVs or no analysis), and the
    corrected counts of all strata form the ``corrected`` assay.
    """
    order = order or list(groups)
    out = matrix
    corrected_parts = []
    sv_parts = []
    for group in order:
        if group not in groups:
            continue
        res = groups[group]
        for name, table in res.tables.items():
            out = out.with_row_metadata(result_key(group, name), table,
                                        stage=f"dea:{group}:{name}")
        corrected_parts.append(res.corrected)
        if res.sv.shape[1]:
            sv_parts.append(res.sv)

    if sv_parts:
        out = out.with_col_metadata(pd.concat(sv_parts, axis=0), stage="surrogate_variables")
    if corrected_parts:
        corrected = pd.concat(corrected_parts, axis=1)
        out = out.with_assay("corrected", corrected, stage="corrected")
    return out
