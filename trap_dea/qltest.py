"""
Quasi-likelihood F-tests for negative binomial GLMs.

The NB fit of each gene is paired with a quasi-likelihood dispersion
``s2 = deviance / df_residual`` that is squeezed toward a common (or
abundance-trended) prior. A contrast, or a set of ``k`` contrasts tested
jointly, is tested by comparing the full fit with a reduced fit in which
the contrasts are constrained to zero:

    F = (deviance_reduced - deviance_full) / k / s2_post

referred to an F distribution on ``k`` and ``df_prior + df_residual``
degrees of freedom.

References:
    - Lund SP, Nettleton D, McCarthy DJ, Smyth GK (2012). Detecting
      differential expression in RNA-sequence data using quasi-likelihood
      with shrunken dispersion estimates. SAGMB 11:5
    - Lun ATL, Chen Y, Smyth GK (2016). It's DE-licious: a recipe for
      differential expression analyses of RNA-seq experiments using
      quasi-likelihood methods in edgeR. Methods Mol Biol 1418:391-416
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import f as f_dist

from .contrasts import as_contrast_matrix, design_contrast_matrix
from .design import DesignMatrix
from .dispersion import DispersionEstimates, estimate_dispersions
from .ebayes import squeeze_var
from .errors import InsufficientDataError, UnknownTermError
from .glm import NBGLMFit, fit_nb_glm
from .normalization import average_log_cpm
from .results import build_results_table

logger = logging.getLogger(__name__)


@dataclass
class QLFit:
    """
    Quasi-likelihood fit of every gene.

    Attributes
    ----------
    counts : pd.DataFrame
        Counts the model was fitted to.
    fit : NBGLMFit
        Negative binomial GLM fits.
    s2 : np.ndarray
        Raw QL dispersions (deviance / residual df).
    s2_prior : float or np.ndarray
        Prior QL dispersion.
    s2_post : np.ndarray
        Squeezed QL dispersions.
    df_prior : float
    df_total : np.ndarray
        Denominator degrees of freedom for F-tests.
    ave_log_cpm : np.ndarray
    dispersions : DispersionEstimates, optional
        NB dispersion estimates, when estimated here.
    design : DesignMatrix, optional
        Named design, when one was passed to :func:`glm_ql_fit`.
    """

    counts: pd.DataFrame
    fit: NBGLMFit
    s2: np.ndarray
    s2_prior: object
    s2_post: np.ndarray
    df_prior: float
    df_total: np.ndarray
    ave_log_cpm: np.ndarray
    dispersions: Optional[DispersionEstimates] = None
    design: Optional[DesignMatrix] = None

    @property
    def columns(self):
        return self.fit.columns

    @property
    def genes(self):
        return self.counts.index


def glm_ql_fit(counts, design, offset, dispersion=None, ave_log_cpm=None,
               abundance_trend=True, fit_type="local"):
    """
    Fit NB GLMs and estimate squeezed quasi-likelihood dispersions.

    Parameters
    ----------
    counts : pd.DataFrame
        Filtered counts (genes x samples).
    design : DesignMatrix or np.ndarray
        Full-rank design (samples x parameters).
    offset : np.ndarray
        Log effective library sizes.
    dispersion : float or array-like, optional
        NB dispersions. Estimated with :func:`estimate_dispersions` when
        omitted.
    ave_log_cpm : np.ndarray, optional
        Average log2-CPM per gene.
    abundance_trend : bool, default True
        Let the QL prior follow a trend in average abundance.
    fit_type : str, default "local"
        Dispersion trend type passed to :func:`estimate_dispersions`.

    Returns
    -------
    QLFit

    Raises
    ------
    InsufficientDataError
        If the design leaves no residual degrees of freedom.
    """
    if isinstance(design, DesignMatrix):
        X, columns = design.values, design.columns
    else:
        X, columns = np.asarray(design, dtype=float), None
    if X.shape[0] != counts.shape[1]:
        raise ValueError("design must have same number of rows as samples")
    offset = np.asarray(offset, dtype=float)
    df_resid = X.shape[0] - X.shape[1]
    if df_resid < 1:
        raise InsufficientDataError("Design leaves no residual degrees of freedom for QL dispersion")

    if ave_log_cpm is None:
        ave_log_cpm = average_log_cpm(counts, lib_size=np.exp(offset))
    ave_log_cpm = np.asarray(ave_log_cpm, dtype=float)

    estimates = None
    if dispersion is None:
        estimates = estimate_dispersions(counts, X, offset, ave_log_cpm=ave_log_cpm,
                                         fit_type=fit_type)
        dispersion = estimates.shrunken

    fit = fit_nb_glm(counts, X, dispersion, offset, columns=columns, ave_log_cpm=ave_log_cpm)

    s2 = fit.deviance / df_resid
    squeezed = squeeze_var(s2, df_resid, covariate=ave_log_cpm if abundance_trend else None)
    n_ok = int(np.isfinite(s2).sum())
    df_total = np.minimum(df_resid + squeezed.df_prior, max(n_ok, 1) * df_resid)
    df_total = np.full(len(s2), df_total, dtype=float)
    logger.info("QL fit: %d genes, residual df %d, prior df %.2f",
                len(s2), df_resid, squeezed.df_prior)

    return QLFit(
        counts=counts,
        fit=fit,
        s2=s2,
        s2_prior=squeezed.var_prior,
        s2_post=squeezed.var_post,
        df_prior=squeezed.df_prior,
        df_total=df_total,
        ave_log_cpm=ave_log_cpm,
        dispersions=estimates,
        design=design if isinstance(design, DesignMatrix) else None,
    )


def reduced_design(X, contrast):
    """
    Design with the tested contrasts removed.

    The design is rotated by the complete QR basis of the contrast matrix
    so the first ``k`` rotated coefficients span the contrasts; the
    remaining columns form the null model.

    Parameters
    ----------
    X : np.ndarray
        Full design (samples x p).
    contrast : np.ndarray
        Contrast matrix (p x k), full column rank.

    Returns
    -------
    np.ndarray
        Reduced design (samples x (p - k)).
    """
    C = np.asarray(contrast, dtype=float)
    k = C.shape[1]
    Q, _ = np.linalg.qr(C, mode="complete")
    return (np.asarray(X, dtype=float) @ Q)[:, k:]


def ql_f_test(qlfit, contrast=None, coef=None):
    """
    Quasi-likelihood F-test of one contrast or a joint set of contrasts.

    Parameters
    ----------
    qlfit : QLFit
        Output of :func:`glm_ql_fit`.
    contrast : str, list of str, array-like or pd.DataFrame, optional
        One contrast (vector or expression) for a 1-df test, or several
        (matrix columns or a list of expressions) for a joint test.
    coef : str or int, optional
        Test a single design coefficient instead.

    Returns
    -------
    pd.DataFrame
        Result table with ``logFC`` (single contrast only), ``F``,
        ``PValue``, ``FDR`` and ``AveExpr``, ranked by p-value. Genes that
        could not be fitted have NaN statistics and are ranked last.

    Raises
    ------
    UnknownTermError
        If the contrast or ``coef`` names a column the design lacks, or
        the contrast depends on a reference level with no samples.
    """
    fit = qlfit.fit
    columns = list(fit.columns)
    if coef is not None:
        if isinstance(coef, str):
            if coef not in columns:
                raise UnknownTermError(coef, columns)
            idx = columns.index(coef)
        else:
            idx = int(coef)
        C = np.zeros((len(columns), 1))
        C[idx, 0] = 1.0
    elif contrast is not None and qlfit.design is not None:
        C = design_contrast_matrix(contrast, qlfit.design)
    elif contrast is not None:
        C = as_contrast_matrix(contrast, columns)
    else:
        raise ValueError("Either contrast or coef must be given")

    k = C.shape[1]
    X0 = reduced_design(fit.design, C)
    null_fit = fit_nb_glm(qlfit.counts, X0, fit.dispersion, fit.offset)

    with np.errstate(invalid="ignore", divide="ignore"):
        stat = (null_fit.deviance - fit.deviance) / k / qlfit.s2_post
    stat = np.where(np.isfinite(stat), np.maximum(stat, 0.0), np.nan)
    pvalue = np.where(np.isfinite(stat), f_dist.sf(stat, k, qlfit.df_total), np.nan)

    log_fc = None
    if k == 1:
        log_fc = fit.coefficients.to_numpy() @ C[:, 0] / np.log(2.0)

    return build_results_table(qlfit.genes, stat, pvalue, qlfit.ave_log_cpm, log_fc=log_fc)
