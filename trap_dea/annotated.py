"""
Annotated gene x sample matrix shared by all analysis stages.

An :class:`AnnotatedMatrix` holds one or more assays (gene x sample
frames with identical labels), a sample table and gene-level annotation
entries such as differential expression results. Stages never modify a
matrix in place: ``with_assay``, ``with_col_metadata`` and
``with_row_metadata`` return a new matrix with an incremented ``version``
and the stage appended to ``history``.
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class AnnotatedMatrix:
    """
    Container for counts, derived assays and annotations.

    Parameters
    ----------
    assays : dict of str to pd.DataFrame, or pd.DataFrame
        Gene x sample matrices. A single frame is stored as ``"counts"``.
    col_metadata : pd.DataFrame
        Sample table indexed by sample id, in the same order as the assay
        columns.
    row_metadata : dict of str to pd.DataFrame, optional
        Gene-indexed annotation entries, e.g. ``"DEA.Calca.SNI_vs_Sham_D7"``.
        An entry may cover only a subset of the genes.
    version : int, default 0
    history : tuple of str, optional

    Examples
    --------
    >>> am = AnnotatedMatrix(counts_df, coldata_df)
    >>> am2 = am.with_assay("log2FC", lfc_df, stage="log2_fold_change")
    >>> am2.version, am2.history
    (1, ('log2_fold_change',))
    """

    def __init__(self, assays, col_metadata, row_metadata=None, version=0, history=()):
        if isinstance(assays, pd.DataFrame):
            assays = {"counts": assays}
        if not assays:
            raise ValueError("at least one assay is required")
        if not isinstance(col_metadata, pd.DataFrame):
            raise TypeError("col_metadata must be a pandas DataFrame")

        first = next(iter(assays.values()))
        genes, samples = first.index, first.columns
        if genes.has_duplicates:
            raise ValueError("gene ids must be unique")
        if samples.has_duplicates:
            raise ValueError("sample ids must be unique")
        for name, frame in assays.items():
            if not (frame.index.equals(genes) and frame.columns.equals(samples)):
                raise ValueError(f"assay '{name}' does not match the gene/sample labels")
        if not col_metadata.index.equals(samples):
            raise ValueError(f"Number of samples in col_metadata ({len(col_metadata)}) "
                             f"doesn't match assays ({len(samples)}) or ids differ")

        self._assays = dict(assays)
        self._col_metadata = col_metadata
        self._row_metadata = dict(row_metadata or {})
        self.version = int(version)
        self.history = tuple(history)

    # ------------------------------------------------------------------
    # Accessors

    @property
    def genes(self):
        return next(iter(self._assays.values())).index

    @property
    def samples(self):
        return next(iter(self._assays.values())).columns

    @property
    def shape(self):
        return len(self.genes), len(self.samples)

    @property
    def assay_names(self):
        return list(self._assays)

    @property
    def col_metadata(self):
        return self._col_metadata.copy()

    @property
    def row_metadata(self):
        return {k: v.copy() for k, v in self._row_metadata.items()}

    def assay(self, name="counts"):
        """Return a copy of an assay."""
        if name not in self._assays:
            raise KeyError(f"No assay '{name}' (available: {', '.join(self._assays)})")
        return self._assays[name].copy()

    def row_entry(self, key):
        if key not in self._row_metadata:
            raise KeyError(f"No row metadata entry '{key}'")
        return self._row_metadata[key].copy()

    def row_keys(self, prefix=None):
        keys = list(self._row_metadata)
        if prefix is not None:
            keys = [k for k in keys if k.startswith(prefix)]
        return keys

    def row_record(self, gene):
        """
        Every annotation of one gene.

        Returns
        -------
        dict of str to pd.Series
            Entry key -> the gene's row, for entries that contain the gene.
        """
        if gene not in self.genes:
            raise KeyError(gene)
        return {k: v.loc[gene].copy() for k, v in self._row_metadata.items() if gene in v.index}

    # ------------------------------------------------------------------
    # Augmentation

    def _derive(self, stage, assays=None, col_metadata=None, row_metadata=None):
        return AnnotatedMatrix(
            assays=self._assays if assays is None else assays,
            col_metadata=self._col_metadata if col_metadata is None else col_metadata,
            row_metadata=self._row_metadata if row_metadata is None else row_metadata,
            version=self.version + 1,
            history=self.history + (stage,),
        )

    def with_assay(self, name, frame, stage=None):
        """
        Return a new matrix with an assay added or replaced.

        ``frame`` is aligned to this matrix's genes and samples; labels it
        lacks are filled with NaN.
        """
        frame = frame.reindex(index=self.genes, columns=self.samples)
        assays = dict(self._assays)
        assays[name] = frame
        return self._derive(stage or f"assay:{name}", assays=assays)

    def with_col_metadata(self, columns, stage=None):
        """
        Return a new matrix with sample-level columns added or replaced.

        Parameters
        ----------
        columns : pd.DataFrame or pd.Series
            Sample-indexed; samples absent from it get NaN.
        """
        if isinstance(columns, pd.Series):
            columns = columns.to_frame()
        columns = columns.reindex(self.samples)
        meta = self._col_metadata.copy()
        for name in columns.columns:
            meta[name] = columns[name]
        return self._derive(stage or "col_metadata", col_metadata=meta)

    def with_row_metadata(self, key, frame, stage=None):
        """Return a new matrix with a gene-level annotation entry set."""
        unknown = frame.index.difference(self.genes)
        if len(unknown):
            raise KeyError(f"row metadata '{key}' has {len(unknown)} genes not in the matrix")
        rows = dict(self._row_metadata)
        rows[key] = frame.copy()
        return self._derive(stage or f"row_metadata:{key}", row_metadata=rows)

    # ------------------------------------------------------------------
    # Copies and subsets

    def copy(self):
        """Deep copy, keeping version and history."""
        return AnnotatedMatrix(
            assays={k: v.copy() for k, v in self._assays.items()},
            col_metadata=self._col_metadata.copy(),
            row_metadata={k: v.copy() for k, v in self._row_metadata.items()},
            version=self.version,
            history=self.history,
        )

    def subset(self, genes=None, samples=None):
        """
        Materialized subset; nothing is shared with the parent.

        Parameters
        ----------
        genes : array-like of labels or bool mask, optional
        samples : array-like of labels or bool mask, optional
        """
        g = self.genes if genes is None else self._labels(self.genes, genes)
        s = self.samples if samples is None else self._labels(self.samples, samples)
        assays = {k: v.loc[g, s].copy() for k, v in self._assays.items()}
        rows = {k: v.loc[v.index.intersection(g)].copy() for k, v in self._row_metadata.items()}
        return AnnotatedMatrix(
            assays=assays,
            col_metadata=self._col_metadata.loc[s].copy(),
            row_metadata=rows,
            version=self.version,
            history=self.history,
        )

    @staticmethod
    def _labels(index, selector):
        sel = np.asarray(selector)
        if sel.dtype == bool:
            if len(sel) != len(index):
                raise ValueError("boolean mask length does not match")
            return index[sel]
        missing = pd.Index(sel).difference(index)
        if len(missing):
            raise KeyError(f"unknown labels: {list(missing)[:5]}")
        return pd.Index(sel)

    # ------------------------------------------------------------------
    # Serialization

    def to_pickle(self, path):
        pd.to_pickle(self, path)

    @classmethod
    def read_pickle(cls, path):
        obj = pd.read_pickle(path)
        if not isinstance(obj, cls):
            raise TypeError(f"{path} does not contain an {cls.__name__}")
        return obj

    def __repr__(self):
        G, S = self.shape
        return (f"AnnotatedMatrix with {G} genes and {S} samples "
                f"(assays: {', '.join(self._assays)}; "
                f"{len(self._row_metadata)} row entries; version {self.version})")
