"""
Result tables for differential expression tests.

One table per (group, contrast): indexed by ``gene`` with columns ``logFC``
(single contrasts only), ``F``, ``PValue``, ``FDR`` and ``AveExpr``, sorted
by ascending p-value with untestable genes (NaN p-value) last.
"""

import logging

import numpy as np
import pandas as pd

from .multitest import benjamini_hochberg

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ("logFC", "F", "PValue", "FDR", "AveExpr")


def build_results_table(genes, stat, pvalue, ave_expr, log_fc=None):
    """
    Assemble and rank a result table.

    Parameters
    ----------
    genes : array-like
        Gene identifiers.
    stat : np.ndarray
        F statistics.
    pvalue : np.ndarray
        Raw p-values; NaN for untestable genes.
    ave_expr : np.ndarray
        Average log2-CPM.
    log_fc : np.ndarray, optional
        Log2 fold changes. Omitted for joint tests.

    Returns
    -------
    pd.DataFrame
    """
    pvalue = np.asarray(pvalue, dtype=float)
    data = {}
    if log_fc is not None:
        data["logFC"] = np.asarray(log_fc, dtype=float)
    data["F"] = np.asarray(stat, dtype=float)
    data["PValue"] = pvalue
    data["FDR"] = benjamini_hochberg(pvalue)
    data["AveExpr"] = np.asarray(ave_expr, dtype=float)

    table = pd.DataFrame(data, index=pd.Index(genes, name="gene"))
    return table.sort_values("PValue", ascending=True, na_position="last", kind="mergesort")


def summarize_results(table, fdr=0.05, name=None):
    """
    Count tested and significant genes in a result table.

    Parameters
    ----------
    table : pd.DataFrame
        Table from :func:`build_results_table`.
    fdr : float, default 0.05
        FDR threshold.
    name : str, optional
        Label used in the log record.

    Returns
    -------
    dict
        Summary statistics.
    """
    padj = table["FDR"].to_numpy(dtype=float)
    valid = np.isfinite(padj)
    significant = valid & (padj < fdr)

    summary_dict = {
        "total_genes": len(table),
        "genes_tested": int(valid.sum()),
        "significant": int(significant.sum()),
        "fdr": fdr,
    }
    if "logFC" in table.columns:
        lfc = table["logFC"].to_numpy(dtype=float)
        summary_dict["upregulated"] = int(np.sum(significant & (lfc > 0)))
        summary_dict["downregulated"] = int(np.sum(significant & (lfc < 0)))

    logger.info(
        "%s: %d genes, %d tested, %d significant (FDR < %g)%s",
        name or "Results", summary_dict["total_genes"], summary_dict["genes_tested"],
        summary_dict["significant"], fdr,
        "" if "upregulated" not in summary_dict else
        f", {summary_dict['upregulated']} up / {summary_dict['downregulated']} down")
    return summary_dict
