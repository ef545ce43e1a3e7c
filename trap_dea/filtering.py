"""
Design-aware filtering of lowly expressed genes.

A gene is kept when it reaches a minimum count-per-million in at least as
many samples as the smallest group the design can distinguish, and a
minimum total count overall. The CPM cut-off is derived from a count
threshold at the median library size, so the rule means roughly "at least
``min_count`` reads in each sample of the smallest group".

Filtering depends on the samples and the design, so it is re-run for every
stratified subset; a gene kept in one lineage may be dropped in another.

References:
    - Chen Y, Lun ATL, Smyth GK (2016). From reads to genes to pathways:
      differential expression analysis of RNA-Seq experiments using
      Rsubread and the edgeR quasi-likelihood pipeline. F1000Research 5:1438
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .design import DesignMatrix
from .errors import InsufficientDataError
from .normalization import calc_norm_factors, cpm

logger = logging.getLogger(__name__)


def hat_values(design):
    """Leverages (diagonal of the hat matrix) of a design matrix."""
    Q, _ = np.linalg.qr(np.asarray(design, dtype=float))
    return np.sum(Q ** 2, axis=1)


def min_group_size(design=None, group=None, n_samples=None):
    """
    Smallest group size implied by a design matrix or a grouping vector.

    For a design matrix this is ``1 / max(leverage)``, which equals the
    smallest group size for a one-way layout and generalizes it otherwise.
    """
    if group is not None:
        _, sizes = np.unique(np.asarray(group), return_counts=True)
        sizes = sizes[sizes > 0]
        return float(np.min(sizes))
    if design is not None:
        X = design.values if isinstance(design, DesignMatrix) else design
        return 1.0 / float(np.max(hat_values(X)))
    return float(n_samples)


def filter_by_expr(counts, design=None, group=None, lib_size=None,
                   min_count=10, min_total_count=15, large_n=10, min_prop=0.7):
    """
    Filter low-expressed genes.

    Parameters
    ----------
    counts : np.ndarray or pd.DataFrame
        Raw count matrix (genes x samples).
    design : DesignMatrix or np.ndarray, optional
        Design matrix used to determine the minimum group size.
    group : array-like, optional
        Group labels; takes precedence over ``design``.
    lib_size : array-like, optional
        Library sizes. Defaults to column sums.
    min_count : float, default 10
        Minimum count required in at least the minimum group size of
        samples (converted to a CPM cut-off at the median library size).
    min_total_count : float, default 15
        Minimum total count across all samples.
    large_n : int, default 10
        Groups larger than this only need ``min_prop`` of their samples
        above the cut-off.
    min_prop : float, default 0.7
        Proportion used for large groups.

    Returns
    -------
    np.ndarray of bool
        True for genes to keep.
    """
    x = counts.to_numpy(dtype=float) if isinstance(counts, pd.DataFrame) else np.asarray(counts, dtype=float)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)

    n_min = min_group_size(design=design, group=group, n_samples=x.shape[1])
    if n_min > large_n:
        n_min = large_n + (n_min - large_n) * min_prop

    cpm_cutoff = min_count / np.median(lib) * 1e6
    cpm_vals = cpm(x, lib_size=lib)

    tol = 1e-14
    keep_cpm = np.sum(cpm_vals >= cpm_cutoff, axis=1) >= (n_min - tol)
    keep_total = np.sum(x, axis=1) >= (min_total_count - tol)
    return keep_cpm & keep_total


@dataclass
class FilteredCounts:
    """
    Counts after expression filtering, with normalization.

    Attributes
    ----------
    counts : pd.DataFrame
        Retained genes x samples.
    lib_size : np.ndarray
        Column sums of the retained counts.
    norm_factors : np.ndarray
        Normalization factors computed on the retained genes.
    keep : pd.Series
        Boolean mask over the input genes.
    """

    counts: pd.DataFrame
    lib_size: np.ndarray
    norm_factors: np.ndarray
    keep: pd.Series

    @property
    def effective_lib_size(self):
        return self.lib_size * self.norm_factors

    @property
    def log_offset(self):
        return np.log(self.effective_lib_size)

    def normalized(self):
        """Counts scaled to the mean effective library size."""
        eff = self.effective_lib_size
        return self.counts * (np.mean(eff) / eff)


def normalize_and_filter(counts, design=None, group=None, method="TMM",
                         min_count=10, min_total_count=15, large_n=10,
                         min_prop=0.7):
    """
    Filter lowly expressed genes, then compute normalization factors.

    Library sizes and normalization factors are recomputed on the retained
    genes.

    Returns
    -------
    FilteredCounts

    Raises
    ------
    InsufficientDataError
        If no gene passes the filter.
    """
    if not isinstance(counts, pd.DataFrame):
        raise TypeError("counts must be a pandas DataFrame")
    lib = counts.sum(axis=0).to_numpy(dtype=float)
    keep = filter_by_expr(counts, design=design, group=group, lib_size=lib,
                          min_count=min_count, min_total_count=min_total_count,
                          large_n=large_n, min_prop=min_prop)
    kept = counts.loc[keep]
    lib = kept.sum(axis=0).to_numpy(dtype=float)
    logger.info("Expression filter kept %d of %d genes", int(keep.sum()), len(keep))
    if kept.shape[0] == 0:
        raise InsufficientDataError("No gene passes the expression filter")

    factors = calc_norm_factors(kept, lib_size=lib, method=method)
    return FilteredCounts(
        counts=kept.astype(float),
        lib_size=lib,
        norm_factors=factors,
        keep=pd.Series(keep, index=counts.index),
    )
