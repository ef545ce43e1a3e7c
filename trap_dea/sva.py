"""
Surrogate variable analysis for count data.

Surrogate variables are estimated on ``log(normalized counts + 1)`` with
the iteratively re-weighted algorithm: starting from the leading
eigenvectors of the residuals of the model of interest, genes are weighted
by the posterior probability that they are associated with the surrogate
variables but not with the primary variables, and the weighted data are
re-decomposed. The corrected assay has the fitted surrogate-variable
effect removed on the log scale.

References:
    - Leek JT, Storey JD (2008). A general framework for multiple testing
      dependence. PNAS 105:18718-18723
    - Leek JT (2014). svaseq: removing batch effects and other unwanted
      noise from sequencing data. Nucleic Acids Research 42:e161
    - Buja A, Eyuboglu N (1992). Remarks on parallel analysis.
      Multivariate Behavioral Research 27:509-540
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import f as f_dist
from scipy.stats import gaussian_kde, norm

from .design import DesignMatrix
from .errors import InsufficientDataError

logger = logging.getLogger(__name__)


def _as_design_array(mod, n):
    if mod is None:
        return np.ones((n, 1))
    if isinstance(mod, DesignMatrix):
        return mod.values
    if isinstance(mod, pd.DataFrame):
        return mod.to_numpy(dtype=float)
    return np.asarray(mod, dtype=float)


def _residualize(dat, mod):
    """Residuals of every row of ``dat`` after least squares on ``mod``."""
    beta, *_ = np.linalg.lstsq(mod, dat.T, rcond=None)
    return dat - (mod @ beta).T


def _leading_vectors(mat, n):
    """Leading ``n`` eigenvectors of ``mat.T @ mat`` with a fixed sign."""
    vals, vecs = np.linalg.eigh(mat.T @ mat)
    order = np.argsort(vals)[::-1][:n]
    vecs = vecs[:, order]
    # largest-magnitude entry positive
    flip = np.sign(vecs[np.argmax(np.abs(vecs), axis=0), np.arange(vecs.shape[1])])
    flip[flip == 0] = 1.0
    return vecs * flip


def f_pvalue(dat, mod, mod0):
    """
    Gene-wise F-test p-values for nested linear models.

    Parameters
    ----------
    dat : np.ndarray
        Genes x samples.
    mod, mod0 : np.ndarray
        Full and null design matrices (samples x parameters).

    Returns
    -------
    np.ndarray
    """
    n = dat.shape[1]
    df1 = mod.shape[1]
    df0 = mod0.shape[1]
    rss1 = np.sum(_residualize(dat, mod) ** 2, axis=1)
    rss0 = np.sum(_residualize(dat, mod0) ** 2, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        fstats = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    fstats = np.where(np.isnan(fstats), 0.0, np.maximum(fstats, 0.0))
    return f_dist.sf(fstats, df1 - df0, n - df1)


def edge_lfdr(p, lam=0.8, adj=1.5, eps=1e-8):
    """
    Local false discovery rate from p-values.

    Probit-transformed p-values, Gaussian kernel density (bandwidth
    ``adj`` times Silverman's rule), ``pi0`` estimated at ``lam``. The
    result is truncated at 1 and made monotone in ``p``.
    """
    p = np.asarray(p, dtype=float)
    n = len(p)
    pi0 = min(np.mean(p >= lam) / (1.0 - lam), 1.0)

    x = norm.ppf(np.clip(p, eps, 1.0 - eps))
    sd = np.std(x, ddof=1) if n > 1 else 0.0
    if n < 2 or sd == 0:
        return np.full(n, pi0)

    iqr = np.subtract(*np.percentile(x, [75, 25]))
    bw = 0.9 * min(sd, iqr / 1.34 if iqr > 0 else sd) * n ** (-0.2) * adj
    kde = gaussian_kde(x, bw_method=bw / sd)
    with np.errstate(divide="ignore", invalid="ignore"):
        lfdr = np.minimum(pi0 * norm.pdf(x) / kde(x), 1.0)
    lfdr = np.where(np.isnan(lfdr), 1.0, lfdr)

    order = np.argsort(p, kind="mergesort")
    out = np.empty(n)
    out[order] = np.maximum.accumulate(lfdr[order])
    return out


@dataclass
class SurrogateVariables:
    """
    Attributes
    ----------
    sv : pd.DataFrame
        Samples x surrogate variables (``SV1..SVn``).
    weights : pd.Series
        Final gene weights (posterior probability of association with the
        surrogate variables and not with the primary variables).
    n_iter : int
        Re-weighting iterations run.
    n_requested : int or None
        Number of surrogate variables asked for before clamping.
    """

    sv: pd.DataFrame
    weights: pd.Series
    n_iter: int
    n_requested: object = None

    @property
    def n_sv(self):
        return self.sv.shape[1]


def estimate_n_sv(dat, mod, n_perm=20, sv_sig=0.10, seed=0):
    """
    Number of surrogate variables by permutation (Buja-Eyuboglu).

    Parameters
    ----------
    dat : pd.DataFrame or np.ndarray
        Log-scale data (genes x samples).
    mod : DesignMatrix or np.ndarray
        Model of interest.
    n_perm : int, default 20
        Permutations.
    sv_sig : float, default 0.10
        Significance level for each component.
    seed : int, default 0

    Returns
    -------
    int
    """
    Y = dat.to_numpy(dtype=float) if isinstance(dat, pd.DataFrame) else np.asarray(dat, dtype=float)
    n = Y.shape[1]
    X = _as_design_array(mod, n)
    ndf = n - np.linalg.matrix_rank(X)
    if ndf <= 0:
        return 0

    rng = np.random.default_rng(seed)
    res = _residualize(Y, X)
    d = np.linalg.svd(res, compute_uv=False)[:ndf]
    dstat = d ** 2 / np.sum(d ** 2)

    dstat0 = np.zeros((n_perm, ndf))
    for b in range(n_perm):
        res0 = rng.permuted(res, axis=1)
        res0 = _residualize(res0, X)
        d0 = np.linalg.svd(res0, compute_uv=False)[:ndf]
        dstat0[b] = d0 ** 2 / np.sum(d0 ** 2)

    psv = np.mean(dstat0 >= dstat, axis=0)
    psv = np.maximum.accumulate(psv)
    n_sv = int(np.sum(psv <= sv_sig))
    logger.info("Estimated %d surrogate variables", n_sv)
    return n_sv


def estimate_surrogate_variables(dat, mod, mod0=None, n_sv=None, max_iter=5,
                                 tol=1e-6, seed=0):
    """
    Iteratively re-weighted surrogate variable estimation.

    Parameters
    ----------
    dat : pd.DataFrame
        Log-scale data (genes x samples), e.g. ``log1p`` normalized counts.
    mod : DesignMatrix or np.ndarray
        Model of interest (samples x parameters).
    mod0 : DesignMatrix or np.ndarray, optional
        Null model. Defaults to an intercept.
    n_sv : int, optional
        Number of surrogate variables. Estimated with
        :func:`estimate_n_sv` when None. Values above the residual degrees
        of freedom are clamped to the maximum.
    max_iter : int, default 5
        Maximum re-weighting iterations.
    tol : float
        Stop when no gene weight changes by more than this.
    seed : int, default 0
        Seed for the permutation estimate of ``n_sv``.

    Returns
    -------
    SurrogateVariables

    Raises
    ------
    InsufficientDataError
        If surrogate variables are requested from an empty matrix.
    """
    if not isinstance(dat, pd.DataFrame):
        raise TypeError("dat must be a pandas DataFrame")
    Y = dat.to_numpy(dtype=float)
    m, n = Y.shape
    X = _as_design_array(mod, n)
    X0 = _as_design_array(mod0, n)
    if X.shape[0] != n or X0.shape[0] != n:
        raise ValueError("design must have same number of rows as samples")
    if m == 0 and n_sv != 0:
        raise InsufficientDataError("No genes to estimate surrogate variables from")

    requested = n_sv
    if n_sv is None:
        n_sv = estimate_n_sv(dat, X, seed=seed)
    max_sv = n - np.linalg.matrix_rank(X)
    if n_sv > max_sv:
        logger.warning("Requested %d surrogate variables but only %d residual degrees "
                       "of freedom; using %d", n_sv, max_sv, max_sv)
        n_sv = max(max_sv, 0)

    names = [f"SV{i + 1}" for i in range(n_sv)]
    weights = pd.Series(np.ones(m), index=dat.index, name="sv_weight")
    if n_sv == 0:
        return SurrogateVariables(pd.DataFrame(index=dat.columns, columns=[], dtype=float),
                                  weights, 0, requested)

    resid = _residualize(Y, X)
    vv = _leading_vectors(resid, n_sv)

    n_iter = 0
    if X.shape[1] + n_sv >= n:
        logger.warning("No residual degrees of freedom left for re-weighting; "
                       "using unweighted residual components")
    else:
        pprob = np.ones(m)
        for n_iter in range(1, max_iter + 1):
            mod_b = np.column_stack([X, vv])
            mod0_b = np.column_stack([X0, vv])
            pprob_b = 1.0 - edge_lfdr(f_pvalue(Y, mod_b, mod0_b))

            pprob_gam = 1.0 - edge_lfdr(f_pvalue(Y, mod0_b, X0))
            new = pprob_gam * (1.0 - pprob_b)

            dats = Y * new[:, None]
            dats = dats - dats.mean(axis=1, keepdims=True)
            vv = _leading_vectors(dats, n_sv)

            delta = np.max(np.abs(new - pprob))
            pprob = new
            logger.debug("SVA iteration %d: max weight change %.3g", n_iter, delta)
            if delta < tol:
                break
        weights[:] = pprob

    sv = pd.DataFrame(vv, index=dat.columns, columns=names)
    return SurrogateVariables(sv, weights, n_iter, requested)


def remove_surrogate_effects(counts, mod, sv):
    """
    Counts with the linear surrogate-variable effect removed.

    ``log1p(counts)`` is regressed on ``[mod, sv]``, the surrogate-variable
    part of the fit is subtracted and the result is mapped back with
    ``expm1`` (clipped at zero). Each sample is then rescaled to its
    original total count.

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples.
    mod : DesignMatrix or np.ndarray
    sv : pd.DataFrame or SurrogateVariables
        Samples x surrogate variables.

    Returns
    -------
    pd.DataFrame
    """
    if isinstance(sv, SurrogateVariables):
        sv = sv.sv
    if sv.shape[1] == 0:
        return counts.astype(float).copy()

    Y = np.log1p(counts.to_numpy(dtype=float))
    X = _as_design_array(mod, Y.shape[1])
    S = sv.loc[counts.columns].to_numpy(dtype=float)
    full = np.column_stack([X, S])
    beta, *_ = np.linalg.lstsq(full, Y.T, rcond=None)
    beta_sv = beta[X.shape[1]:]

    corrected = np.clip(np.expm1(Y - (S @ beta_sv).T), 0.0, None)
    totals = counts.to_numpy(dtype=float).sum(axis=0)
    new_totals = corrected.sum(axis=0)
    scale = np.divide(totals, new_totals, out=np.ones_like(totals), where=new_totals > 0)
    return pd.DataFrame(corrected * scale, index=counts.index, columns=counts.columns)
