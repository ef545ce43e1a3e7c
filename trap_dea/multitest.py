import numpy as np


def benjamini_hochberg(pvals):
    """
    Benjamini-Hochberg FDR correction.

    Missing p-values (NaN) are left out of the adjustment and come back as
    NaN; the number of tests is the number of finite p-values.

    Parameters
    ----------
    pvals : array-like

    Returns
    -------
    padj : np.ndarray
        Adjusted p-values, ``padj >= pvals`` and monotone in ``pvals``.
    """
    pvals = np.asarray(pvals, dtype=float)
    padj = np.full(pvals.shape, np.nan)
    ok = np.isfinite(pvals)
    m = int(ok.sum())
    if m == 0:
        return padj

    p = pvals[ok]
    order = np.argsort(p, kind="mergesort")
    ranked_p = p[order]

    # compute adjusted p-values
    adj = ranked_p * m / (np.arange(1, m + 1))
    # enforce monotone non-decreasing when going backwards
    adj_rev = np.minimum.accumulate(adj[::-1])[::-1]

    out = np.empty(m)
    out[order] = np.clip(adj_rev, 0, 1)
    padj[ok] = out
    return padj
