"""
Per-sample log2 fold change relative to a baseline group.

For every gene and sample, ``log2(x + pseudocount)`` minus the mean of the
same quantity over the baseline samples (e.g. Naive animals) of the
sample's stratum (e.g. its mouse line). Results are written to new assays
of the :class:`~trap_dea.annotated.AnnotatedMatrix`; the source assay is
never changed.
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def baseline_mask(col_metadata, baseline):
    """
    Boolean Series marking baseline samples.

    Parameters
    ----------
    col_metadata : pd.DataFrame
    baseline : mapping or callable
        ``{column: value}`` (a list value matches any of its items; all
        columns must match), or a function of ``col_metadata`` returning
        a boolean Series or array.
    """
    if callable(baseline):
        mask = baseline(col_metadata)
        return pd.Series(np.asarray(mask, dtype=bool), index=col_metadata.index)

    mask = pd.Series(True, index=col_metadata.index)
    for column, value in dict(baseline).items():
        if column not in col_metadata.columns:
            raise KeyError(f"baseline column '{column}' not in col_metadata")
        if isinstance(value, (list, tuple, set)):
            mask &= col_metadata[column].isin(list(value))
        else:
            mask &= col_metadata[column] == value
    return mask.fillna(False).astype(bool)


def log2_fold_change(matrix, assay="counts", baseline=None, group_by="mouseline",
                     pseudocount=1.0, name="log2FC"):
    """
    Add a log2 fold-change assay relative to baseline samples.

    Parameters
    ----------
    matrix : AnnotatedMatrix
    assay : str, default "counts"
        Source assay, e.g. ``"counts"`` or ``"corrected"``.
    baseline : mapping or callable, optional
        Baseline predicate (see :func:`baseline_mask`). Defaults to
        ``{"condition": "Naive"}``.
    group_by : str or None, default "mouseline"
        Stratifying column; each stratum is compared with its own
        baseline samples. None uses all samples as one stratum.
    pseudocount : float, default 1.0
    name : str, default "log2FC"
        Name of the new assay.

    Returns
    -------
    AnnotatedMatrix
        New matrix with the assay added. Strata without baseline samples
        (and samples without a stratum) are NaN.

    Examples
    --------
    >>> am = log2_fold_change(am, baseline={"condition": "Naive"})
    >>> am.assay("log2FC").loc["Atf3"]
    """
    if baseline is None:
        baseline = {"condition": "Naive"}
    values = matrix.assay(assay)
    meta = matrix.col_metadata
    is_base = baseline_mask(meta, baseline).to_numpy()

    logv = np.log2(values.to_numpy(dtype=float) + pseudocount)
    out = np.full(logv.shape, np.nan)

    if group_by is None:
        strata = pd.Series("all", index=meta.index)
    else:
        if group_by not in meta.columns:
            raise KeyError(f"group_by column '{group_by}' not in col_metadata")
        strata = meta[group_by]

    for stratum in pd.unique(strata.dropna()):
        in_stratum = (strata == stratum).to_numpy()
        base = in_stratum & is_base
        if not base.any():
            logger.warning("No baseline samples in %s=%s; fold changes left NaN",
                           group_by, stratum)
            continue
        ref = logv[:, base].mean(axis=1)
        out[:, in_stratum] = logv[:, in_stratum] - ref[:, None]

    frame = pd.DataFrame(out, index=values.index, columns=values.columns)
    return matrix.with_assay(name, frame, stage="log2_fold_change")


def scale_fold_change(matrix, source="log2FC", limit=2.0, center=False, name="scaledLFC"):
    """
    Add a display-scaled copy of a fold-change assay.

    Parameters
    ----------
    source : str, default "log2FC"
    limit : float, default 2.0
        Values are clipped to ``[-limit, limit]``.
    center : bool, default False
        Subtract each gene's median across samples before clipping.
    name : str, default "scaledLFC"

    Returns
    -------
    AnnotatedMatrix
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    values = matrix.assay(source)
    if center:
        values = values.sub(values.median(axis=1, skipna=True), axis=0)
    scaled = values.clip(lower=-limit, upper=limit)
    return matrix.with_assay(name, scaled, stage="scale_fold_change")
