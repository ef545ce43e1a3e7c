"""
Selection of differentially expressed genes under threshold policies.

A result table with a ``logFC`` column is thresholded on both FDR and
absolute log2 fold change. Joint tests have no ``logFC``; for those the
policy falls back to a stricter FDR cut-off alone.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdPolicy:
    """
    Parameters
    ----------
    fdr : float, default 0.05
        FDR cut-off used together with the fold-change cut-off.
    fold : float, default 2.0
        Fold-change cut-off (linear scale); genes need
        ``|logFC| > log2(fold)``.
    strict_fdr : float, default 0.01
        FDR cut-off used alone when a table has no ``logFC``. Must be
        smaller than ``fdr``.
    """

    fdr: float = 0.05
    fold: float = 2.0
    strict_fdr: float = 0.01

    def __post_init__(self):
        if not 0 < self.fdr <= 1:
            raise ValueError(f"fdr must be in (0, 1], got {self.fdr}")
        if not 0 < self.strict_fdr < self.fdr:
            raise ValueError(
                f"strict_fdr ({self.strict_fdr}) must be positive and below fdr ({self.fdr})")
        if self.fold < 1:
            raise ValueError(f"fold must be >= 1, got {self.fold}")

    @property
    def log2_fold(self):
        return float(np.log2(self.fold))

    def mask(self, table):
        """Boolean Series over the table's genes."""
        fdr = table["FDR"].to_numpy(dtype=float)
        with np.errstate(invalid="ignore"):
            if "logFC" in table.columns:
                lfc = table["logFC"].to_numpy(dtype=float)
                keep = (fdr < self.fdr) & (np.abs(lfc) > self.log2_fold)
            else:
                keep = fdr < self.strict_fdr
        keep &= np.isfinite(fdr)
        return pd.Series(keep, index=table.index)


# gene-level ("local") and pooled-sample ("global") questions
LOCAL = ThresholdPolicy(fdr=0.05, fold=2.0, strict_fdr=0.01)
GLOBAL = ThresholdPolicy(fdr=0.001, fold=9.0, strict_fdr=0.0002)


def select_degs(table, policy=LOCAL):
    """
    Genes selected from one result table.

    Parameters
    ----------
    table : pd.DataFrame
        Result table (``FDR`` and optionally ``logFC``), indexed by gene.
    policy : ThresholdPolicy

    Returns
    -------
    set
        Selected gene ids.
    """
    mask = policy.mask(table)
    return set(table.index[mask.to_numpy()])


def union_degs(tables, policies=LOCAL):
    """
    Union of selections over several result tables.

    Parameters
    ----------
    tables : mapping of name to pd.DataFrame, or sequence of pd.DataFrame
    policies : ThresholdPolicy or mapping of name to ThresholdPolicy
        One policy for all tables, or one per table name.

    Returns
    -------
    set
    """
    items = tables.items() if isinstance(tables, dict) else enumerate(tables)
    selected = set()
    for name, table in items:
        policy = policies.get(name, LOCAL) if isinstance(policies, dict) else policies
        genes = select_degs(table, policy)
        logger.debug("%s: %d genes selected", name, len(genes))
        selected |= genes
    return selected


def select_from_matrix(matrix, keys, policy=LOCAL):
    """
    Union of selections over result entries stored in an AnnotatedMatrix.

    Parameters
    ----------
    matrix : AnnotatedMatrix
    keys : str or sequence of str
        Row metadata keys, e.g. ``"DEA.Calca.SNI_vs_Sham_D7"``. A key
        ending in ``"*"`` matches every entry with that prefix.
    policy : ThresholdPolicy or mapping of key to ThresholdPolicy

    Returns
    -------
    set
    """
    if isinstance(keys, str):
        keys = [keys]
    tables = {}
    for key in keys:
        if key.endswith("*"):
            for k in matrix.row_keys(prefix=key[:-1]):
                tables[k] = matrix.row_entry(k)
        else:
            tables[key] = matrix.row_entry(key)
    return union_degs(tables, policy)
