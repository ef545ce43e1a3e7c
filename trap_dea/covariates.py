"""
Typed covariate schema for TRAP sample metadata.

Every covariate used in a model formula is either categorical, with an
explicit level ordering whose first level is the reference, or continuous.
The schema decides how the design builder codes a column of the sample
table; covariates not declared in the schema are typed from their dtype.
"""

from dataclasses import dataclass, field
from typing import Mapping, Tuple

import numpy as np
import pandas as pd


COND_DAY_LEVELS = ("Naive_7", "Sham_2", "Sham_7", "SNI_2", "SNI_7")
CONDITION_LEVELS = ("Naive", "Sham", "SNI")
SEX_LEVELS = ("F", "M")
PROCESSING_LEVELS = ("IP", "Input")
DAY_LEVELS = (2, 7)

METADATA_FIELDS = ("mouseline", "sex", "condition", "day", "processing")


@dataclass(frozen=True)
class Categorical:
    """Categorical covariate; an empty ``levels`` tuple means infer from data."""

    levels: Tuple = ()

    @property
    def reference(self):
        return self.levels[0] if self.levels else None


@dataclass(frozen=True)
class Continuous:
    """Numeric covariate entered into the design as-is."""


@dataclass(frozen=True)
class CovariateSchema:
    covariates: Mapping[str, object] = field(default_factory=dict)

    def __contains__(self, name):
        return name in self.covariates

    def get(self, name, values=None):
        """
        Return the declared type for ``name``.

        Undeclared covariates are continuous when ``values`` is numeric
        (but not boolean) and categorical otherwise.
        """
        if name in self.covariates:
            return self.covariates[name]
        if values is not None:
            if isinstance(values.dtype, pd.CategoricalDtype):
                return Categorical()
            if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
                return Continuous()
        return Categorical()

    def levels(self, name, values, drop_unused=False):
        """
        Ordered levels of a categorical covariate.

        Declared levels are kept even when no sample carries them, unless
        ``drop_unused`` is set; the design builder then reports such a
        level as an empty (rank deficient) column.
        """
        spec = self.get(name, values)
        if not isinstance(spec, Categorical):
            raise TypeError(f"Covariate '{name}' is not categorical")

        if spec.levels:
            levels = list(spec.levels)
        elif isinstance(values.dtype, pd.CategoricalDtype):
            levels = list(values.cat.categories)
        else:
            levels = sorted(pd.unique(values.dropna()).tolist(), key=str)

        if drop_unused:
            present = set(values.dropna().tolist())
            levels = [lev for lev in levels if lev in present]
        return levels

    def with_covariate(self, name, spec):
        merged = dict(self.covariates)
        merged[name] = spec
        return CovariateSchema(merged)


def default_schema():
    """Schema for the injury time-course experiment."""
    return CovariateSchema({
        "mouseline": Categorical(),
        "sex": Categorical(SEX_LEVELS),
        "condition": Categorical(CONDITION_LEVELS),
        "day": Categorical(DAY_LEVELS),
        "processing": Categorical(PROCESSING_LEVELS),
        "cond_day": Categorical(COND_DAY_LEVELS),
    })


def derive_cond_day(col_metadata, levels=COND_DAY_LEVELS):
    """
    Add the ``cond_day`` categorical (condition x day) to a sample table.

    Parameters
    ----------
    col_metadata : pd.DataFrame
        Sample table with ``condition`` and ``day`` columns.
    levels : sequence of str
        Level ordering; the first level is the model baseline.

    Returns
    -------
    pd.DataFrame
        A copy of ``col_metadata`` with ``cond_day`` added.

    Raises
    ------
    ValueError
        If a sample's condition/day combination is not a declared level
        (e.g. a day-2 Naive sample).
    """
    if not isinstance(col_metadata, pd.DataFrame):
        raise TypeError("col_metadata must be a pandas DataFrame")
    missing = [c for c in ("condition", "day") if c not in col_metadata.columns]
    if missing:
        raise KeyError(f"col_metadata lacks columns required for cond_day: {missing}")

    out = col_metadata.copy()
    day = out["day"].astype(str).astype(int)
    combined = out["condition"].astype(str) + "_" + day.astype(str)
    unexpected = sorted(set(combined) - set(levels))
    if unexpected:
        raise ValueError(f"Unexpected condition/day combinations: {unexpected}")
    out["cond_day"] = pd.Categorical(combined, categories=list(levels))
    return out


def coerce_col_metadata(col_metadata, schema=None):
    """
    Cast declared categorical covariates to pandas categoricals.

    Only columns that are both present and declared with explicit levels
    are touched. Values outside the declared levels raise ``ValueError``.
    """
    schema = schema or default_schema()
    out = col_metadata.copy()
    for name, spec in schema.covariates.items():
        if name not in out.columns or not isinstance(spec, Categorical) or not spec.levels:
            continue
        col = out[name]
        if isinstance(spec.levels[0], (int, np.integer)):
            col = pd.to_numeric(col, errors="raise").astype(int)
        else:
            col = col.astype(str)
        bad = sorted(set(col.dropna()) - set(spec.levels), key=str)
        if bad:
            raise ValueError(f"Column '{name}' has values outside {list(spec.levels)}: {bad}")
        out[name] = pd.Categorical(col, categories=list(spec.levels))
    return out
