"""
Design matrix construction for TRAP differential expression.

Formulas are expanded term by term against a typed covariate schema rather
than handed to a free-form formula parser, so the generated column names
follow a fixed contract:

- intercept: ``(Intercept)``
- categorical main effect: ``<covariate><level>`` for every non-reference
  level, e.g. ``sexM`` or ``cond_daySNI_2``
- continuous covariate: ``<covariate>``, e.g. ``SV1``
- interaction: ``<left column>.<right column>``, e.g. ``sexM.cond_daySham_2``

Contrasts are later written against these names.

References:
    - Wilkinson GN, Rogers CE (1973). Symbolic description of factorial
      models for analysis of variance. Applied Statistics 22:392-399
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np
import pandas as pd
from patsy.contrasts import Treatment

from .covariates import Categorical, default_schema
from .errors import RankDeficientDesignError, UnknownCovariateError

logger = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"


@dataclass(frozen=True)
class Term:
    """A main effect (one covariate) or an interaction (two covariates)."""

    factors: Tuple[str, ...]

    def __post_init__(self):
        if not 1 <= len(self.factors) <= 2:
            raise ValueError("A term is a main effect or a two-way interaction")

    @property
    def is_interaction(self):
        return len(self.factors) == 2

    def __str__(self):
        return ":".join(self.factors)


@dataclass(frozen=True)
class Formula:
    terms: Tuple[Term, ...]
    intercept: bool = True

    def __str__(self):
        parts = [str(t) for t in self.terms]
        if not self.intercept:
            parts = ["0"] + parts
        return "~ " + (" + ".join(parts) if parts else "1")

    def covariates(self):
        seen = []
        for term in self.terms:
            for name in term.factors:
                if name not in seen:
                    seen.append(name)
        return seen

    def extend(self, *names):
        """Return a formula with extra main-effect terms appended."""
        extra = tuple(Term((n,)) for n in names)
        return Formula(self.terms + extra, self.intercept)


@dataclass(frozen=True)
class ReferenceShift:
    """
    A declared reference level that no sample carries.

    The first present level (``baseline``) takes its place in the coding,
    so the level columns of ``covariate`` measure differences from
    ``baseline`` instead of ``declared``. A contrast written against the
    declared coding is estimable only when its weight on the covariate's
    levels (``baseline`` included) equals its weight on the anchor
    columns the levels are measured from.
    """

    covariate: str
    declared: object
    baseline: object
    level_columns: Tuple[str, ...]
    anchor_columns: Tuple[str, ...]

    @property
    def column(self):
        return f"{self.covariate}{self.baseline}"

    @property
    def declared_column(self):
        return f"{self.covariate}{self.declared}"


@dataclass(frozen=True)
class DesignMatrix:
    """
    Numeric model design with named columns.

    Attributes
    ----------
    values : np.ndarray
        Samples x parameters matrix.
    columns : tuple of str
        Column names (see module docstring for the naming contract).
    samples : tuple
        Sample identifiers, one per row.
    reference_levels : dict
        Declared reference level of each categorical covariate.
    formula : Formula
        The formula the design was expanded from.
    shifted_references : dict of str to ReferenceShift
        Covariates whose declared reference level is absent from the
        samples.
    """

    values: np.ndarray
    columns: Tuple[str, ...]
    samples: Tuple
    reference_levels: Dict[str, object]
    formula: Formula
    shifted_references: Dict[str, ReferenceShift] = field(default_factory=dict)

    @property
    def shape(self):
        return self.values.shape

    @property
    def n_coef(self):
        return self.values.shape[1]

    @property
    def df_residual(self):
        return self.values.shape[0] - self.values.shape[1]

    def column_index(self, name):
        return self.columns.index(name)

    def as_frame(self):
        return pd.DataFrame(self.values, index=list(self.samples), columns=list(self.columns))

    def append_columns(self, frame):
        """
        Return a design with continuous columns (e.g. surrogate variables)
        appended. ``frame`` is sample indexed.
        """
        frame = frame.loc[list(self.samples)]
        values = np.column_stack([self.values, frame.to_numpy(dtype=float)])
        names = self.columns + tuple(str(c) for c in frame.columns)
        formula = self.formula.extend(*[str(c) for c in frame.columns])
        design = DesignMatrix(values, names, self.samples, dict(self.reference_levels), formula,
                              dict(self.shifted_references))
        check_full_rank(design)
        return design


def parse_formula(formula):
    """
    Parse an R-style formula string into a :class:`Formula`.

    Handles formulas like:
    - "~ condition"
    - "~ sex + cond_day"
    - "~ sex * cond_day" (main effects plus interaction)
    - "~ sex:cond_day" (interaction only)
    - "~ 0 + cond_day" (no intercept)

    Parameters
    ----------
    formula : str
        R-style formula string.

    Returns
    -------
    Formula

    Examples
    --------
    >>> str(parse_formula("~ sex * cond_day"))
    '~ sex + cond_day + sex:cond_day'
    """
    text = formula.strip()
    if text.startswith("~"):
        text = text[1:].strip()

    intercept = True
    terms = []
    for part in [p.strip() for p in text.split("+")]:
        if not part or part == "1":
            continue
        if part in ("0", "-1"):
            intercept = False
            continue
        if part.endswith("-1") or part.endswith("- 1"):
            intercept = False
            part = part.rsplit("-", 1)[0].strip()
        if "*" in part:
            names = [t.strip() for t in part.split("*")]
            terms.extend(Term((n,)) for n in names)
            for a, b in itertools.combinations(names, 2):
                terms.append(Term((a, b)))
        elif ":" in part:
            terms.append(Term(tuple(t.strip() for t in part.split(":"))))
        else:
            terms.append(Term((part,)))

    # Remove duplicates while preserving order
    unique = []
    for t in terms:
        if t not in unique:
            unique.append(t)
    return Formula(tuple(unique), intercept)


def as_formula(formula):
    """Coerce a string, a sequence of term strings or a Formula."""
    if isinstance(formula, Formula):
        return formula
    if isinstance(formula, str):
        return parse_formula(formula)
    terms = []
    for item in formula:
        if isinstance(item, Term):
            terms.append(item)
        else:
            terms.append(Term(tuple(s.strip() for s in str(item).split(":"))))
    return Formula(tuple(terms))


def _main_effect_columns(name, values, schema, full_coding, drop_unused):
    """
    Coded columns of one main effect.

    Returns the column names, the block, the declared reference level and,
    when ``drop_unused`` removed that reference, the level coded in its
    place (None otherwise).
    """
    spec = schema.get(name, values)
    if not isinstance(spec, Categorical):
        numeric = pd.to_numeric(values, errors="raise").to_numpy(dtype=float)
        return [name], numeric[:, None], None, None

    declared = schema.levels(name, values)
    levels = schema.levels(name, values, drop_unused=drop_unused)
    if isinstance(values.dtype, pd.CategoricalDtype):
        values = values.astype(object)
    codes = pd.Categorical(values, categories=levels).codes
    if np.any(codes < 0):
        bad = sorted(set(values[codes < 0].astype(str)))
        raise ValueError(f"Covariate '{name}' has missing or undeclared values: {bad}")

    coding = Treatment()
    if full_coding:
        contrast = coding.code_with_intercept(levels)
        kept = levels
    else:
        contrast = coding.code_without_intercept(levels)
        kept = levels[1:]
    block = np.asarray(contrast.matrix, dtype=float)[codes]
    names = [f"{name}{lev}" for lev in kept]

    reference = declared[0] if declared else None
    baseline = None
    if not full_coding and levels and levels[0] != reference:
        baseline = levels[0]
    return names, block, reference, baseline


def build_design(col_metadata, formula, schema=None, drop_unused_levels=False,
                 check_rank=True):
    """
    Expand a formula into a numeric design matrix.

    Parameters
    ----------
    col_metadata : pd.DataFrame
        Sample metadata, one row per sample.
    formula : str, Formula or sequence of str
        Model formula, e.g. ``"~ sex + cond_day"`` or ``["sex", "cond_day"]``.
    schema : CovariateSchema, optional
        Covariate types and level orderings. Defaults to
        :func:`trap_dea.covariates.default_schema`.
    drop_unused_levels : bool, default False
        Drop declared categorical levels that no sample carries. When False
        such a level produces an empty column and the design is rejected.
        A dropped reference level is recorded in ``shifted_references``;
        ``reference_levels`` keeps the declared one.
    check_rank : bool, default True
        Raise :class:`RankDeficientDesignError` unless the design has full
        column rank.

    Returns
    -------
    DesignMatrix

    Raises
    ------
    UnknownCovariateError
        If a term names a column absent from ``col_metadata``.
    RankDeficientDesignError
        If columns are empty or collinear.

    Notes
    -----
    Categorical terms use treatment (dummy) coding relative to the first
    level in the schema's ordering. With no intercept, the first
    categorical main effect is coded with one column per level
    (cell-means parametrization).
    """
    if not isinstance(col_metadata, pd.DataFrame):
        raise TypeError("col_metadata must be a pandas DataFrame")
    schema = schema or default_schema()
    formula = as_formula(formula)

    missing = [n for n in formula.covariates() if n not in col_metadata.columns]
    if missing:
        raise UnknownCovariateError(
            f"Formula '{formula}' references columns not in col_metadata: {missing}")

    n = len(col_metadata)
    names = []
    blocks = []
    references = {}
    main_cache = {}

    if formula.intercept:
        names.append(INTERCEPT)
        blocks.append(np.ones((n, 1)))

    anchor = (INTERCEPT,) if formula.intercept else ()
    shifted = {}
    interacting = {name for term in formula.terms if term.is_interaction
                   for name in term.factors}

    full_pending = not formula.intercept
    for term in formula.terms:
        if not term.is_interaction:
            name = term.factors[0]
            is_cat = isinstance(schema.get(name, col_metadata[name]), Categorical)
            full = full_pending and is_cat
            cols, block, ref, baseline = _main_effect_columns(
                name, col_metadata[name], schema, full, drop_unused_levels)
            if full:
                full_pending = False
                anchor = tuple(cols)
            else:
                main_cache[name] = (cols, block)
            if ref is not None:
                references[name] = ref
            if baseline is not None:
                shifted[name] = ReferenceShift(name, ref, baseline, tuple(cols), anchor)
            names.extend(cols)
            blocks.append(block)
            continue

        parts = []
        for name in term.factors:
            if name not in main_cache:
                cols, block, ref, baseline = _main_effect_columns(
                    name, col_metadata[name], schema, False, drop_unused_levels)
                main_cache[name] = (cols, block)
                if ref is not None:
                    references.setdefault(name, ref)
                if baseline is not None:
                    shifted[name] = ReferenceShift(name, ref, baseline, tuple(cols), anchor)
            parts.append(main_cache[name])
        (left_names, left), (right_names, right) = parts
        for (i, a), (j, b) in itertools.product(enumerate(left_names), enumerate(right_names)):
            names.append(f"{a}.{b}")
            blocks.append((left[:, i] * right[:, j])[:, None])

    for name, shift in shifted.items():
        if name in interacting:
            raise RankDeficientDesignError(
                f"Reference level '{shift.declared}' of '{name}' has no samples and "
                f"'{name}' enters an interaction", columns=[shift.declared_column])
        logger.warning("Reference level '%s' of '%s' has no samples; levels are coded "
                       "against '%s'", shift.declared, name, shift.baseline)

    values = np.hstack(blocks) if blocks else np.zeros((n, 0))
    design = DesignMatrix(
        values=np.ascontiguousarray(values, dtype=float),
        columns=tuple(names),
        samples=tuple(col_metadata.index),
        reference_levels=references,
        formula=formula,
        shifted_references=shifted,
    )
    if check_rank:
        check_full_rank(design)
    return design


def model_matrix(col_metadata, formula="~ condition", schema=None):
    """Convenience wrapper returning the design as a labelled DataFrame."""
    return build_design(col_metadata, formula, schema=schema).as_frame()


def dependent_columns(values, tol=None):
    """
    Indices of columns that are all zero or a linear combination of the
    columns before them.
    """
    X = np.asarray(values, dtype=float)
    bad = []
    kept = []
    for j in range(X.shape[1]):
        col = X[:, j]
        if not np.any(col):
            bad.append(j)
            continue
        trial = X[:, kept + [j]]
        if np.linalg.matrix_rank(trial, tol=tol) <= len(kept):
            bad.append(j)
        else:
            kept.append(j)
    return bad


def check_full_rank(design):
    """
    Raise unless a design has full column rank.

    A full-rank design matrix is required for unique parameter estimation
    in GLMs.

    Parameters
    ----------
    design : DesignMatrix

    Raises
    ------
    RankDeficientDesignError
    """
    X = design.values
    if X.shape[1] == 0:
        return
    if X.shape[1] > X.shape[0]:
        raise RankDeficientDesignError(
            f"Design has {X.shape[1]} columns but only {X.shape[0]} samples",
            columns=list(design.columns[X.shape[0]:]))
    if np.linalg.matrix_rank(X) == X.shape[1]:
        return
    bad = [design.columns[j] for j in dependent_columns(X)]
    raise RankDeficientDesignError(
        f"Design '{design.formula}' is not of full rank; empty or collinear columns: {bad}",
        columns=bad)
