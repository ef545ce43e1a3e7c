"""
Contrast algebra over named design columns.

A contrast is written as a linear expression in design column names, for
example ``"cond_daySNI_2 - cond_daySham_2"`` or
``"(cond_daySNI_7 + cond_daySNI_2) / 2 - cond_daySham_7"``. Interaction
columns may be written with their dotted names (``sexM.cond_daySham_2``).
Column names that are not Python identifiers, such as ``(Intercept)``,
can be quoted with backticks.

Expressions are parsed with :mod:`ast`; only ``+``, ``-``, multiplication
and division by numbers, and parentheses are accepted.
"""

import ast
import re

import numpy as np
import pandas as pd

from .errors import ContrastError, UnknownTermError

_QUOTED = re.compile(r"`([^`]+)`")


def _dotted_name(node):
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        raise ContrastError("Malformed column reference")
    parts.append(node.id)
    return ".".join(reversed(parts))


class _LinearEvaluator:
    """Evaluate an expression tree to ``(coefficients, constant)``."""

    def __init__(self, columns, aliases):
        self.columns = list(columns)
        self.aliases = aliases
        self.index = {c: i for i, c in enumerate(self.columns)}

    def zero(self):
        return np.zeros(len(self.columns))

    def lookup(self, name):
        name = self.aliases.get(name, name)
        if name not in self.index and f"({name})" in self.index:
            # "(Intercept)" parses as a parenthesized name
            name = f"({name})"
        if name not in self.index:
            raise UnknownTermError(name, self.columns)
        vec = self.zero()
        vec[self.index[name]] = 1.0
        return vec, 0.0

    def visit(self, node):
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise ContrastError(f"Unsupported constant: {node.value!r}")
            return self.zero(), float(node.value)
        if isinstance(node, (ast.Name, ast.Attribute)):
            return self.lookup(_dotted_name(node))
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
            vec, const = self.visit(node.operand)
            sign = -1.0 if isinstance(node.op, ast.USub) else 1.0
            return sign * vec, sign * const
        if isinstance(node, ast.BinOp):
            lv, lc = self.visit(node.left)
            rv, rc = self.visit(node.right)
            if isinstance(node.op, ast.Add):
                return lv + rv, lc + rc
            if isinstance(node.op, ast.Sub):
                return lv - rv, lc - rc
            if isinstance(node.op, ast.Mult):
                if not np.any(lv):
                    return lc * rv, lc * rc
                if not np.any(rv):
                    return rc * lv, rc * lc
                raise ContrastError("Product of two column terms is not linear")
            if isinstance(node.op, ast.Div):
                if np.any(rv):
                    raise ContrastError("Division by a column term is not linear")
                if rc == 0:
                    raise ContrastError("Division by zero in contrast")
                return lv / rc, lc / rc
        raise ContrastError(f"Unsupported syntax in contrast: {ast.dump(node)}")


def parse_contrast(expr, columns):
    """
    Turn a contrast expression into a coefficient vector.

    Parameters
    ----------
    expr : str
        Linear expression over design column names.
    columns : sequence of str
        Design column names.

    Returns
    -------
    np.ndarray
        One coefficient per design column.

    Raises
    ------
    UnknownTermError
        If the expression names a column not in ``columns``.
    ContrastError
        If the expression is malformed, non-linear, has a constant term or
        is identically zero.

    Examples
    --------
    >>> parse_contrast("cond_daySNI_2 - cond_daySham_2",
    ...                ["(Intercept)", "cond_daySham_2", "cond_daySNI_2"])
    array([ 0., -1.,  1.])
    """
    columns = list(columns)
    aliases = {}

    def _quote(match):
        key = f"__q{len(aliases)}__"
        aliases[key] = match.group(1)
        return key

    text = _QUOTED.sub(_quote, expr.strip())
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise ContrastError(f"Cannot parse contrast '{expr}': {exc.msg}") from exc

    vec, const = _LinearEvaluator(columns, aliases).visit(tree)
    if const != 0:
        raise ContrastError(f"Contrast '{expr}' has a constant term")
    if not np.any(vec):
        raise ContrastError(f"Contrast '{expr}' is identically zero")
    return vec


def make_contrasts(columns, contrasts=None, **named):
    """
    Build a contrast matrix from named expressions.

    Parameters
    ----------
    columns : sequence of str
        Design column names.
    contrasts : mapping of str to str, optional
        Contrast name -> expression. Combined with keyword arguments.

    Returns
    -------
    pd.DataFrame
        Design columns x contrasts.

    Examples
    --------
    >>> cm = make_contrasts(design.columns,
    ...                     SNI_vs_Sham_D2="cond_daySNI_2 - cond_daySham_2")
    """
    items = dict(contrasts or {})
    items.update(named)
    if not items:
        raise ContrastError("No contrasts given")
    columns = list(columns)
    data = {name: parse_contrast(expr, columns) for name, expr in items.items()}
    frame = pd.DataFrame(data, index=pd.Index(columns, name="column"))
    return frame


def as_contrast_matrix(contrast, columns):
    """
    Coerce a contrast specification to a ``(n_columns, k)`` array.

    Accepts an expression, a list of expressions (joint test), a numeric
    vector, a numeric matrix, or a frame from :func:`make_contrasts`.
    """
    columns = list(columns)
    if isinstance(contrast, str):
        mat = parse_contrast(contrast, columns)[:, None]
    elif isinstance(contrast, pd.DataFrame):
        missing = [c for c in contrast.index if c not in columns]
        if missing:
            raise UnknownTermError(missing[0], columns)
        mat = contrast.reindex(columns, fill_value=0.0).to_numpy(dtype=float)
    elif isinstance(contrast, pd.Series):
        return as_contrast_matrix(contrast.to_frame(), columns)
    elif isinstance(contrast, (list, tuple)) and contrast and all(isinstance(c, str) for c in contrast):
        mat = np.column_stack([parse_contrast(c, columns) for c in contrast])
    else:
        mat = np.asarray(contrast, dtype=float)
        if mat.ndim == 1:
            mat = mat[:, None]

    if mat.ndim != 2 or mat.shape[0] != len(columns):
        raise ContrastError(
            f"Contrast must have one row per design column ({len(columns)}), got shape {mat.shape}")
    if mat.shape[1] == 0:
        raise ContrastError("Contrast matrix has no columns")
    if np.linalg.matrix_rank(mat) < mat.shape[1]:
        raise ContrastError("Contrasts in a joint test must be linearly independent")
    return mat


def _names_columns(contrast):
    if isinstance(contrast, (str, pd.DataFrame, pd.Series)):
        return True
    return (isinstance(contrast, (list, tuple)) and len(contrast) > 0
            and all(isinstance(c, str) for c in contrast))


def design_contrast_matrix(contrast, design, tol=1e-8):
    """
    Contrast matrix against a :class:`~trap_dea.design.DesignMatrix`.

    Named contrasts are read in the declared coding of the design. When a
    covariate's declared reference level has no samples its level columns
    are measured from another baseline; a named contrast is then rewritten
    onto the actual columns, and one that depends on the missing reference
    raises :class:`UnknownTermError` for the missing level's column.

    Numeric contrasts are taken as given over the actual design columns.

    Examples
    --------
    With ``Naive_7`` absent and ``Sham_2`` as baseline,
    ``"cond_daySNI_2 - cond_daySham_2"`` becomes the ``cond_daySNI_2``
    column, while ``"cond_daySham_7"`` (Sham_7 vs Naive_7) is rejected.
    """
    columns = list(design.columns)
    shifts = list(getattr(design, "shifted_references", {}).values())
    if not shifts or not _names_columns(contrast):
        return as_contrast_matrix(contrast, columns)

    extended = columns + [s.column for s in shifts]
    mat = as_contrast_matrix(contrast, extended)
    index = {c: i for i, c in enumerate(extended)}
    for shift in shifts:
        levels = [index[c] for c in shift.level_columns + (shift.column,)]
        anchors = [index[c] for c in shift.anchor_columns]
        weight = mat[levels].sum(axis=0) - mat[anchors].sum(axis=0)
        if np.any(np.abs(weight) > tol):
            raise UnknownTermError(shift.declared_column, columns)
    return as_contrast_matrix(mat[:len(columns)], columns)


def reference_columns(design):
    """Reference (baseline) level of each categorical covariate in a design."""
    return dict(design.reference_levels)
