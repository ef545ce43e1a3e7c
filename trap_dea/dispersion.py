"""
Negative binomial dispersion estimation with empirical Bayes shrinkage.

Three steps:

1. gene-wise Cox-Reid adjusted profile likelihood (CR-APL) estimates, with
   means taken from a per-gene GLM fit of the full design;
2. a trend of dispersion against abundance, by local regression (LOWESS)
   with a parametric ``a / mean + b`` curve and a constant as fallbacks;
3. shrinkage of the log gene-wise estimates toward the trend, weighted by
   the prior variance against the sampling variance ``trigamma(df / 2)``.

Genes whose likelihood cannot be maximized, or whose estimate hits the
upper bound, keep the (inflated) upper bound rather than a shrunken value.

References:
    - Cox DR, Reid N (1987). Parameter orthogonality and approximate
      conditional inference. JRSS B 49:1-39
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Cleveland WS (1979). Robust Locally Weighted Regression and Smoothing
      Scatterplots. JASA 74:829-836
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.optimize import minimize, minimize_scalar
from scipy.special import polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from .glm import fit_nb_glm, nbinom_loglikelihood
from .normalization import average_log_cpm

logger = logging.getLogger(__name__)

MIN_DISP = 1e-8
MAX_DISP = 10.0


def cox_reid_adjustment(mu, alpha, X):
    """
    Cox-Reid bias adjustment: -0.5 * log(det(X^T W X))
    """
    alpha = max(alpha, 1e-10)
    w = mu / (1.0 + alpha * mu)
    XtWX = (X.T * w) @ X

    sign, logdet = np.linalg.slogdet(XtWX)
    if sign <= 0:
        return -np.inf
    return -0.5 * logdet


def _cr_apl_objective(y, X, mu_hat):
    """Negative adjusted profile likelihood as a function of log(alpha)."""
    def objective(log_alpha):
        alpha = np.exp(log_alpha)
        ll = nbinom_loglikelihood(y, mu_hat, alpha)
        cr = cox_reid_adjustment(mu_hat, alpha, X)
        value = -(ll + cr)
        return value if np.isfinite(value) else 1e300
    return objective


def _initial_dispersion(normalized):
    """Method-of-moments common dispersion, used to seed the mean fits."""
    mean = normalized.mean(axis=1)
    var = normalized.var(axis=1, ddof=1)
    ok = mean > 0
    with np.errstate(divide="ignore", invalid="ignore"):
        raw = (var[ok] - mean[ok]) / mean[ok] ** 2
    raw = raw[np.isfinite(raw)]
    if raw.size == 0:
        return 0.1
    return float(np.clip(np.median(raw), 0.01, 1.0))


def estimate_gene_wise_dispersion(counts, design, offset, min_disp=MIN_DISP,
                                  max_disp=MAX_DISP):
    """
    Maximum CR-APL estimate of dispersion for each gene.

    Parameters
    ----------
    counts : pd.DataFrame
        Counts (genes x samples).
    design : np.ndarray
        Design matrix (samples x parameters).
    offset : np.ndarray
        Log effective library sizes.

    Returns
    -------
    disp_gw : np.ndarray
        Gene-wise dispersions. Genes that cannot be fitted, or whose
        estimate reaches the upper bound, are set to ``max_disp``.
    failed : np.ndarray of bool
        Genes set to ``max_disp``.
    """
    X = np.asarray(design, dtype=float)
    Y = counts.to_numpy(dtype=float)
    G = Y.shape[0]
    eff = np.exp(offset)

    alpha0 = _initial_dispersion(Y / (eff / np.mean(eff)))
    init = fit_nb_glm(counts, X, alpha0, offset)

    disp_gw = np.full(G, max_disp)
    failed = np.ones(G, dtype=bool)
    lo, hi = np.log(min_disp), np.log(max_disp)

    logger.info("Running Cox-Reid APL for %d genes...", G)
    for g in range(G):
        if g and g % 5000 == 0:
            logger.info("  ... processing gene %d/%d", g, G)
        mu_hat = init.fitted[g]
        if not np.all(np.isfinite(mu_hat)):
            continue
        mu_hat = np.maximum(mu_hat, 1e-8)
        res = minimize_scalar(_cr_apl_objective(Y[g], X, mu_hat),
                              bounds=(lo, hi), method="bounded")
        if not res.success or not np.isfinite(res.x):
            continue
        if res.x >= hi - 1e-3:
            continue
        disp_gw[g] = max(np.exp(res.x), min_disp)
        failed[g] = False

    if failed.any():
        logger.info("%d genes kept the upper dispersion bound", int(failed.sum()))
    return disp_gw, failed


def fit_parametric_trend(base_means, disp_gw):
    """
    Fit ``disp = a / mean + b`` by a gamma-family deviance.

    Returns
    -------
    callable or None
        Trend function, or None if too few genes are usable.
    """
    mask = (base_means > 2.0) & (disp_gw > 1e-6) & (disp_gw < MAX_DISP)
    x = base_means[mask]
    y = disp_gw[mask]
    if len(x) < 10:
        return None

    def gamma_deviance(params):
        a, b = params
        pred = a / x + b
        return np.sum((y - pred) / pred - np.log(y / pred))

    res = minimize(gamma_deviance, x0=[1.0, 0.01],
                   bounds=[(0.0, None), (1e-8, None)], method="L-BFGS-B")
    if not res.success:
        return None
    a, b = res.x
    logger.info("Trend coefficients: a=%.4f, b=%.4f", a, b)

    def trend_fn(means):
        return a / np.maximum(np.asarray(means, dtype=float), 1e-8) + b
    return trend_fn


def fit_local_trend(ave_log_cpm, disp_gw, frac=0.3, it=3):
    """
    LOWESS of log10 dispersion on average log2-CPM.

    Returns
    -------
    callable or None
        Trend function of average log2-CPM, or None if too few genes are
        usable.
    """
    mask = (disp_gw > MIN_DISP) & (disp_gw < MAX_DISP)
    mask &= np.isfinite(ave_log_cpm) & np.isfinite(disp_gw)
    if mask.sum() < 10:
        return None

    x = ave_log_cpm[mask]
    y = np.log10(disp_gw[mask])
    smoothed = lowess(y, x, frac=frac, it=it, return_sorted=True)
    x_smooth = smoothed[:, 0]
    y_smooth = smoothed[:, 1]
    if not np.all(np.isfinite(y_smooth)):
        return None

    def trend_fn(abundance):
        log_disp = np.interp(np.asarray(abundance, dtype=float), x_smooth, y_smooth,
                             left=y_smooth[0], right=y_smooth[-1])
        return 10 ** log_disp
    return trend_fn


def fit_mean_trend(disp_gw):
    """Constant trend at the geometric mean of the usable estimates."""
    mask = (disp_gw > MIN_DISP) & (disp_gw < MAX_DISP) & np.isfinite(disp_gw)
    mean_disp = float(np.exp(np.mean(np.log(disp_gw[mask])))) if mask.any() else 0.1

    def trend_fn(means):
        return np.full(np.shape(means), mean_disp)
    return trend_fn


def fit_dispersion_trend(base_means, ave_log_cpm, disp_gw, fit_type="local"):
    """
    Fit the dispersion-abundance trend.

    Parameters
    ----------
    base_means : np.ndarray
        Mean normalized counts per gene (parametric trend).
    ave_log_cpm : np.ndarray
        Average log2-CPM per gene (local trend).
    disp_gw : np.ndarray
        Gene-wise dispersions; NaN entries are ignored.
    fit_type : {"local", "parametric", "mean"}
        Preferred trend. ``local`` falls back to ``parametric``, and both
        fall back to ``mean`` when the fit is not possible.

    Returns
    -------
    np.ndarray
        Trend evaluated at every gene.
    str
        The trend type actually fitted.
    """
    chain = {"local": ["local", "parametric", "mean"],
             "parametric": ["parametric", "mean"],
             "mean": ["mean"]}
    if fit_type not in chain:
        raise ValueError(f"Unknown fit_type: {fit_type}")

    logger.info("Fitting dispersion trend on %d genes...", int(np.isfinite(disp_gw).sum()))
    for kind in chain[fit_type]:
        if kind == "local":
            trend_fn, x = fit_local_trend(ave_log_cpm, disp_gw), ave_log_cpm
        elif kind == "parametric":
            trend_fn, x = fit_parametric_trend(base_means, disp_gw), base_means
        else:
            trend_fn, x = fit_mean_trend(disp_gw), base_means
        if trend_fn is not None:
            if kind != fit_type:
                logger.warning("Dispersion trend '%s' could not be fitted; using '%s'",
                               fit_type, kind)
            return trend_fn(x), kind
    raise RuntimeError("no dispersion trend could be fitted")


def estimate_prior_variance(disp_gw, disp_trend, df, usable):
    """
    Prior variance of log dispersion around the trend.

    The robust (MAD) variance of the log residuals minus the expected
    sampling variance ``trigamma(df / 2)``, floored at ``0.25 ** 2``.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        resid = np.log(disp_gw) - np.log(disp_trend)
    valid = usable & np.isfinite(resid)
    if valid.sum() < 10:
        return 1.0
    r = resid[valid]
    mad = np.median(np.abs(r - np.median(r))) * 1.4826
    var_prior = mad ** 2 - polygamma(1, df / 2.0)
    return float(max(var_prior, 0.25 ** 2))


@dataclass
class DispersionEstimates:
    """
    Attributes
    ----------
    gene_wise : np.ndarray
        CR-APL estimates.
    trend : np.ndarray
        Trend evaluated at each gene.
    shrunken : np.ndarray
        Final (empirical Bayes) dispersions.
    prior_var : float
        Prior variance of log dispersion.
    is_outlier : np.ndarray of bool
        Genes kept at their gene-wise estimate.
    trend_type : str
    """

    gene_wise: np.ndarray
    trend: np.ndarray
    shrunken: np.ndarray
    prior_var: float
    is_outlier: np.ndarray
    trend_type: str


def shrink_dispersions(disp_gw, disp_trend, prior_var, df, failed=None,
                       outlier_sd=2.0):
    """
    Shrink log gene-wise dispersions toward the trend.

    Genes more than ``outlier_sd`` prior standard deviations above the
    trend keep their gene-wise estimate. Failed genes keep theirs too.
    """
    var_obs = polygamma(1, df / 2.0)
    weight = prior_var / (prior_var + var_obs)

    log_map = weight * np.log(disp_gw) + (1.0 - weight) * np.log(disp_trend)
    disp_final = np.exp(log_map)

    resid_z = (np.log(disp_gw) - np.log(disp_trend)) / np.sqrt(prior_var)
    is_outlier = resid_z > outlier_sd
    if failed is not None:
        is_outlier |= failed
    disp_final[is_outlier] = disp_gw[is_outlier]
    return np.clip(disp_final, MIN_DISP, MAX_DISP), is_outlier


def estimate_dispersions(counts, design, offset, ave_log_cpm=None, fit_type="local"):
    """
    Full dispersion pipeline: gene-wise, trend, shrinkage.

    Parameters
    ----------
    counts : pd.DataFrame
        Filtered counts (genes x samples).
    design : np.ndarray
        Design matrix (samples x parameters).
    offset : np.ndarray
        Log effective library sizes.
    ave_log_cpm : np.ndarray, optional
        Average log2-CPM; computed from ``counts`` and ``offset`` if omitted.
    fit_type : str, default "local"

    Returns
    -------
    DispersionEstimates
    """
    X = np.asarray(design, dtype=float)
    df = max(X.shape[0] - X.shape[1], 1)
    eff = np.exp(offset)
    base_means = (counts.to_numpy(dtype=float) / (eff / np.mean(eff))).mean(axis=1)
    if ave_log_cpm is None:
        ave_log_cpm = average_log_cpm(counts, lib_size=eff)

    disp_gw, failed = estimate_gene_wise_dispersion(counts, X, offset)
    disp_trend, used = fit_dispersion_trend(
        base_means, np.asarray(ave_log_cpm, dtype=float),
        np.where(failed, np.nan, disp_gw), fit_type=fit_type)
    disp_trend = np.clip(disp_trend, MIN_DISP, MAX_DISP)

    prior_var = estimate_prior_variance(disp_gw, disp_trend, df,
                                        usable=~failed & (base_means > 1))
    logger.info("Estimating MAP (shrinkage) with prior width: %.4f...", np.sqrt(prior_var))
    shrunken, is_outlier = shrink_dispersions(disp_gw, disp_trend, prior_var, df, failed)

    return DispersionEstimates(
        gene_wise=disp_gw,
        trend=disp_trend,
        shrunken=shrunken,
        prior_var=prior_var,
        is_outlier=is_outlier,
        trend_type=used,
    )
