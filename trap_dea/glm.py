"""
Per-gene negative binomial GLM fitting.

Each gene is fitted separately with ``statsmodels`` (NegativeBinomial
family, log link) against the shared design matrix, with the log effective
library size as offset and a gene-specific, fixed dispersion. Genes whose
fit cannot be identified come back with NaN coefficients and deviance
instead of stopping the batch.

References:
    - McCarthy DJ, Chen Y, Smyth GK (2012). Differential expression analysis
      of multifactor RNA-Seq experiments with respect to biological
      variation. Nucleic Acids Research 40:4288-4297
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.special import gammaln
from statsmodels.tools.sm_exceptions import PerfectSeparationError

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-8


def nbinom_loglikelihood(y, mu, alpha):
    """
    Calculate negative binomial log-likelihood.

    Parameters
    ----------
    y : np.ndarray
        Observed counts.
    mu : np.ndarray
        Fitted mean values.
    alpha : float
        Dispersion parameter (variance = mu + alpha * mu^2).

    Returns
    -------
    float
        Log-likelihood value.
    """
    alpha = max(alpha, 1e-10)
    r = 1.0 / alpha
    mu = np.maximum(mu, 1e-8)

    prob = r / (r + mu)
    ll = (gammaln(y + r) - gammaln(r) - gammaln(y + 1) +
          r * np.log(prob) + y * np.log(1.0 - prob))
    return np.sum(ll)


def nb_deviance(y, mu, alpha):
    """Total negative binomial deviance of one gene."""
    y = np.asarray(y, dtype=float)
    mu = np.maximum(np.asarray(mu, dtype=float), 1e-300)
    alpha = max(alpha, MIN_DISPERSION)
    with np.errstate(divide="ignore", invalid="ignore"):
        term1 = np.where(y > 0, y * np.log(y / mu), 0.0)
        term2 = (y + 1.0 / alpha) * np.log((1.0 + alpha * y) / (1.0 + alpha * mu))
    return float(2.0 * np.sum(term1 - term2))


def fit_nb_gene(y, X, alpha, offset=None, maxiter=100):
    """
    Fit a negative binomial GLM for one gene.

    Parameters
    ----------
    y : np.ndarray
        Counts for one gene (samples,).
    X : np.ndarray
        Design matrix (samples x parameters).
    alpha : float
        Dispersion parameter.
    offset : np.ndarray, optional
        Log effective library sizes.

    Returns
    -------
    beta : np.ndarray
        Coefficients (natural log scale), NaN on failure.
    mu : np.ndarray
        Fitted means, NaN on failure.
    deviance : float
    converged : bool
    """
    S, P = X.shape
    if not np.isfinite(alpha) or alpha <= 0:
        alpha = MIN_DISPERSION
    if offset is None:
        offset = np.zeros(S)

    if P == 0:
        mu = np.exp(offset)
        return np.zeros(0), mu, nb_deviance(y, mu, alpha), True

    if y.sum() == 0:
        return np.full(P, np.nan), np.full(S, np.nan), np.nan, False

    fam = sm.families.NegativeBinomial(alpha=alpha)
    try:
        with warnings.catch_warnings():
            # separation and convergence problems are reported through the
            # converged flag rather than one warning per gene
            warnings.simplefilter("ignore")
            res = sm.GLM(y, X, family=fam, offset=offset).fit(maxiter=maxiter)
    except (np.linalg.LinAlgError, ValueError, FloatingPointError,
            PerfectSeparationError) as exc:
        logger.debug("NB GLM fit failed: %s", exc)
        return np.full(P, np.nan), np.full(S, np.nan), np.nan, False

    beta = np.asarray(res.params, dtype=float)
    mu = np.asarray(res.mu, dtype=float)
    if not np.all(np.isfinite(beta)) or not np.all(np.isfinite(mu)):
        return np.full(P, np.nan), np.full(S, np.nan), np.nan, False
    return beta, mu, nb_deviance(y, mu, alpha), bool(getattr(res, "converged", True))


@dataclass
class NBGLMFit:
    """
    Negative binomial GLM fits for every gene.

    Attributes
    ----------
    coefficients : pd.DataFrame
        Genes x design columns, natural log scale.
    fitted : np.ndarray
        Fitted means (genes x samples).
    deviance : np.ndarray
        Per-gene deviance.
    df_residual : int
        Residual degrees of freedom (samples - coefficients).
    converged : np.ndarray of bool
    dispersion : np.ndarray
        Dispersion used for each gene.
    offset : np.ndarray
        Log effective library sizes.
    design : np.ndarray
    columns : tuple of str
    """

    coefficients: pd.DataFrame
    fitted: np.ndarray
    deviance: np.ndarray
    df_residual: int
    converged: np.ndarray
    dispersion: np.ndarray
    offset: np.ndarray
    design: np.ndarray
    columns: Tuple[str, ...]
    ave_log_cpm: Optional[np.ndarray] = None

    @property
    def genes(self):
        return self.coefficients.index

    @property
    def identifiable(self):
        return np.isfinite(self.deviance)


def fit_nb_glm(counts, design, dispersion, offset, columns=None, ave_log_cpm=None):
    """
    Fit a negative binomial GLM to every gene.

    Parameters
    ----------
    counts : pd.DataFrame
        Counts (genes x samples).
    design : np.ndarray
        Design matrix (samples x parameters).
    dispersion : float or array-like
        Dispersion per gene (or one shared value).
    offset : np.ndarray
        Log effective library sizes (samples,).
    columns : sequence of str, optional
        Names of the design columns.

    Returns
    -------
    NBGLMFit
    """
    Y = counts.to_numpy(dtype=float)
    X = np.asarray(design, dtype=float)
    offset = np.asarray(offset, dtype=float)
    G, S = Y.shape
    if X.shape[0] != S:
        raise ValueError("design must have same number of rows as samples")
    if offset.shape[0] != S:
        raise ValueError("offset length must equal number of samples")

    disp = np.broadcast_to(np.asarray(dispersion, dtype=float), (G,)).copy()
    P = X.shape[1]
    if columns is None:
        columns = tuple(f"coef{j}" for j in range(P))

    beta = np.full((G, P), np.nan)
    mu = np.full((G, S), np.nan)
    dev = np.full(G, np.nan)
    conv = np.zeros(G, dtype=bool)

    for g in range(G):
        beta[g], mu[g], dev[g], conv[g] = fit_nb_gene(Y[g], X, disp[g], offset)

    n_failed = int(np.sum(~np.isfinite(dev)))
    if n_failed:
        logger.debug("%d of %d genes could not be fitted", n_failed, G)

    return NBGLMFit(
        coefficients=pd.DataFrame(beta, index=counts.index, columns=list(columns)),
        fitted=mu,
        deviance=dev,
        df_residual=S - P,
        converged=conv,
        dispersion=disp,
        offset=offset,
        design=X,
        columns=tuple(columns),
        ave_log_cpm=ave_log_cpm,
    )
