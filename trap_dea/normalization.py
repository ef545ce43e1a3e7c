"""
Library-size normalization for TRAP count data.

Provides per-sample normalization factors (TMM, upper-quartile, and the
median-of-ratios "RLE" size factors), counts-per-million and average log
expression. Effective library size is ``lib_size * norm_factors``.

References:
    - Robinson MD, Oshlack A (2010). A scaling normalization method for
      differential expression analysis of RNA-seq data. Genome Biology
      11:R25
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import logging

import numpy as np
import pandas as pd
from scipy.stats import rankdata

logger = logging.getLogger(__name__)


def _as_array(counts):
    if isinstance(counts, pd.DataFrame):
        return counts.to_numpy(dtype=float)
    return np.asarray(counts, dtype=float)


def _rle_factors(counts):
    """Median-of-ratios size factors relative to the per-gene geometric mean."""
    with np.errstate(divide="ignore"):
        log_geomeans = np.mean(np.log(counts), axis=1)
    if np.all(np.isinf(log_geomeans)):
        raise ValueError("every gene contains at least one zero; cannot compute RLE factors")

    S = counts.shape[1]
    factors = np.zeros(S)
    for j in range(S):
        c = counts[:, j]
        mask = np.isfinite(log_geomeans) & (c > 0)
        factors[j] = np.exp(np.median(np.log(c[mask]) - log_geomeans[mask]))
    return factors


def _upper_quartile(counts, lib_size, p=0.75):
    expressed = np.any(counts > 0, axis=1)
    y = counts[expressed] / lib_size
    return np.quantile(y, p, axis=0)


def _tmm_pair(obs, ref, lib_obs, lib_ref, logratio_trim, sum_trim,
              do_weighting, a_cutoff):
    """TMM log2 scale factor of one sample against the reference sample."""
    if lib_obs <= 0 or lib_ref <= 0:
        return 0.0
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0:
        return 0.0
    if np.max(np.abs(log_r)) < 1e-6:
        return 0.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not np.any(keep):
        return 0.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        return 0.0
    return f


def calc_norm_factors(counts, lib_size=None, method="TMM", ref_column=None,
                      logratio_trim=0.3, sum_trim=0.05, do_weighting=True,
                      a_cutoff=-1e10):
    """
    Per-sample normalization factors.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw counts (genes x samples).
    lib_size : array-like, optional
        Library sizes; defaults to column sums.
    method : {"TMM", "upperquartile", "RLE", "none"}
        Normalization method.
    ref_column : int, optional
        Reference sample for TMM. Defaults to the sample whose upper
        quartile is closest to the mean upper quartile.
    logratio_trim : float, default 0.3
        Fraction of M values (log ratios) trimmed, split over both tails.
    sum_trim : float, default 0.05
        Fraction of A values (average log expression) trimmed.
    do_weighting : bool, default True
        Use precision weights (inverse asymptotic variance) for the mean.
    a_cutoff : float
        Genes with A value below this are ignored.

    Returns
    -------
    np.ndarray
        Factors scaled to have geometric mean 1.

    Notes
    -----
    TMM is robust to a minority of genes that are extremely abundant in
    one sample (e.g. strongly induced transcripts), which would otherwise
    distort total-count normalization.
    """
    x = _as_array(counts)
    if np.any(~np.isfinite(x)) or np.any(x < 0):
        raise ValueError("counts must be finite and non-negative")
    G, S = x.shape
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)
    if lib.shape[0] != S:
        raise ValueError("lib_size length must equal number of samples")

    key = method.lower()
    # Drop genes with no counts anywhere
    x = x[np.any(x > 0, axis=1)]

    if key == "none" or S < 2 or x.shape[0] == 0:
        return np.ones(S)

    if key == "tmm":
        if ref_column is None:
            uq = _upper_quartile(x, lib)
            if np.median(uq) < 1e-20:
                ref_column = int(np.argmax(np.sum(np.sqrt(x), axis=0)))
            else:
                ref_column = int(np.argmin(np.abs(uq - np.mean(uq))))
        ref = x[:, ref_column]
        log_f = np.array([
            _tmm_pair(x[:, j], ref, lib[j], lib[ref_column], logratio_trim,
                      sum_trim, do_weighting, a_cutoff)
            for j in range(S)
        ])
        factors = 2.0 ** log_f
    elif key == "upperquartile":
        factors = _upper_quartile(x, lib)
    elif key == "rle":
        factors = _rle_factors(x) / lib
    else:
        raise ValueError(f"Unknown normalization method: {method}")

    factors = factors / np.exp(np.mean(np.log(factors)))
    logger.debug("Normalization factors (%s): %s", method, np.round(factors, 4))
    return factors


def effective_lib_size(counts, norm_factors=None):
    x = _as_array(counts)
    lib = x.sum(axis=0)
    if norm_factors is None:
        return lib
    return lib * np.asarray(norm_factors, dtype=float)


def cpm(counts, lib_size=None, log=False, prior_count=2.0):
    """
    Counts per million.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    lib_size : array-like, optional
        (Effective) library sizes. Defaults to column sums.
    log : bool, default False
        Return log2-CPM. A prior count, scaled by relative library size, is
        added to avoid taking the log of zero.
    prior_count : float, default 2.0
        Average count added to each observation when ``log`` is True.

    Returns
    -------
    np.ndarray or pd.DataFrame
        Same shape and type as ``counts``.
    """
    is_df = isinstance(counts, pd.DataFrame)
    x = _as_array(counts)
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)

    if log:
        prior = prior_count * lib / np.mean(lib)
        values = np.log2((x + prior) / (lib + 2.0 * prior) * 1e6)
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            values = x / lib * 1e6

    if is_df:
        return pd.DataFrame(values, index=counts.index, columns=counts.columns)
    return values


def average_log_cpm(counts, lib_size=None, prior_count=2.0):
    """
    Average log2 counts-per-million of each gene.

    The mean is taken on the CPM scale before the log, so genes with a few
    zero counts keep a finite abundance.
    """
    x = _as_array(counts)
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)
    prior = prior_count * lib / np.mean(lib)
    scaled = (x + prior) / (lib + 2.0 * prior) * 1e6
    return np.log2(np.mean(scaled, axis=1))
