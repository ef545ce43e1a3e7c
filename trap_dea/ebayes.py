"""
Empirical Bayes moderation of gene-wise variances.

The quasi-likelihood dispersions of all genes are modelled as scaled
chi-square draws around a prior value ``s0^2`` with ``d0`` prior degrees of
freedom. ``d0`` and ``s0^2`` are estimated by matching moments of
``log(s^2)``; the prior may follow a trend in average abundance. Each
gene's posterior variance is the df-weighted mean of its own estimate and
the prior.

References:
    - Smyth GK (2004). Linear models and empirical Bayes methods for
      assessing differential expression in microarray experiments.
      Statistical Applications in Genetics and Molecular Biology 3:3
    - Lund SP, Nettleton D, McCarthy DJ, Smyth GK (2012). Detecting
      differential expression in RNA-sequence data using quasi-likelihood
      with shrunken dispersion estimates. SAGMB 11:5
"""

import logging
from dataclasses import dataclass
from typing import Union

import numpy as np
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

logger = logging.getLogger(__name__)


def logmdigamma(x):
    """log(x) - digamma(x)."""
    x = np.asarray(x, dtype=float)
    return np.log(x) - digamma(x)


def trigamma_inverse(x):
    """
    Inverse of the trigamma function by Newton iteration.

    Parameters
    ----------
    x : float
        Positive value.

    Returns
    -------
    float
        ``y`` such that ``trigamma(y) == x``.
    """
    x = float(x)
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1 - tri / x) / float(polygamma(2, y))
        y = y + dif
        if -dif / y < 1e-8:
            break
    return y


@dataclass
class FDistFit:
    """
    Attributes
    ----------
    scale : float or np.ndarray
        Prior variance ``s0^2`` (per gene when trended).
    df2 : float
        Prior degrees of freedom ``d0`` (may be ``inf``).
    """

    scale: Union[float, np.ndarray]
    df2: float


def fit_f_dist(x, df1, covariate=None, frac=0.5):
    """
    Moment estimation of a scaled F-distribution.

    Parameters
    ----------
    x : np.ndarray
        Gene-wise variances.
    df1 : float or np.ndarray
        Their degrees of freedom.
    covariate : np.ndarray, optional
        If given, ``log(s0^2)`` follows a LOWESS trend in the covariate.
    frac : float, default 0.5
        LOWESS span for the trended prior.

    Returns
    -------
    FDistFit
    """
    x = np.asarray(x, dtype=float)
    n = len(x)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), (n,))

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15) & (x > -1e-15)
    nok = int(ok.sum())
    if nok <= 1:
        scale = float(x[ok][0]) if nok == 1 else np.nan
        return FDistFit(scale=scale, df2=0.0)

    x_ok = np.maximum(x[ok], 0.0)
    m = np.median(x_ok)
    if m == 0:
        m = 1.0
    x_ok = np.maximum(x_ok, 1e-5 * m)
    d_ok = df1[ok]

    e = np.log(x_ok) + logmdigamma(d_ok / 2)
    if covariate is not None and len(np.unique(np.asarray(covariate)[ok])) >= 3 and nok >= 10:
        cov = np.asarray(covariate, dtype=float)
        emean_ok = lowess(e, cov[ok], frac=frac, it=0, return_sorted=False)
        evar = np.sum((e - emean_ok) ** 2) / (nok - 2)
        order = np.argsort(cov[ok])
        emean = np.interp(cov, cov[ok][order], emean_ok[order])
    else:
        emean = float(np.mean(e))
        evar = np.sum((e - emean) ** 2) / (nok - 1)

    evar = evar - np.mean(polygamma(1, d_ok / 2))
    if evar > 0:
        df2 = 2.0 * trigamma_inverse(evar)
        if df2 > 1e15:
            df2 = np.inf
            scale = np.exp(emean)
        else:
            scale = np.exp(emean - logmdigamma(df2 / 2))
    else:
        df2 = np.inf
        scale = np.exp(emean)
    return FDistFit(scale=scale, df2=df2)


def posterior_var(var, df, var_prior, df_prior):
    """``(df * var + df_prior * var_prior) / (df + df_prior)``."""
    var = np.asarray(var, dtype=float)
    var_prior = np.broadcast_to(np.asarray(var_prior, dtype=float), var.shape)
    if np.isinf(df_prior):
        return var_prior.copy()
    df = np.broadcast_to(np.asarray(df, dtype=float), var.shape)
    total = df + df_prior
    with np.errstate(invalid="ignore", divide="ignore"):
        post = (df * var + df_prior * var_prior) / np.where(total == 0, 1, total)
    return np.where(total > 0, post, var)


@dataclass
class SqueezedVar:
    var_post: np.ndarray
    var_prior: Union[float, np.ndarray]
    df_prior: float


def squeeze_var(var, df, covariate=None):
    """
    Squeeze gene-wise variances toward a common (or trended) prior.

    Parameters
    ----------
    var : np.ndarray
        Gene-wise variances. Non-finite entries stay non-finite.
    df : float or np.ndarray
        Residual degrees of freedom.
    covariate : np.ndarray, optional
        Average abundance for a trended prior.

    Returns
    -------
    SqueezedVar
    """
    var = np.asarray(var, dtype=float)
    n = len(var)
    if n < 3:
        return SqueezedVar(var_post=var.copy(), var_prior=var.copy(), df_prior=0.0)

    fit = fit_f_dist(var, df, covariate=covariate)
    logger.debug("Prior degrees of freedom: %s", fit.df2)
    var_post = posterior_var(var, df, fit.scale, fit.df2)
    var_post = np.where(np.isfinite(var), var_post, np.nan)
    return SqueezedVar(var_post=var_post, var_prior=fit.scale, df_prior=fit.df2)
