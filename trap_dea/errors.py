"""
Exceptions raised by the differential expression engine.

A formula term with no matching covariate is a misconfigured analysis and
propagates to the caller. Errors local to one stratified group are caught
by the pipeline and logged: a group whose model cannot be estimated is
recorded as failed, and a contrast naming a level the group does not have
is skipped.
"""


class TrapDEAError(Exception):
    """Base class for all errors raised by trap_dea."""


class RankDeficientDesignError(TrapDEAError, ValueError):
    """
    The design matrix is not of full column rank.

    Parameters
    ----------
    message : str
        Human readable description.
    columns : list of str, optional
        Design columns that are empty or linearly dependent on earlier
        columns.
    """

    def __init__(self, message, columns=None):
        super().__init__(message)
        self.columns = list(columns or [])


class UnknownCovariateError(TrapDEAError, KeyError):
    """A formula term references a covariate absent from the column metadata."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class UnknownTermError(TrapDEAError, KeyError):
    """
    A contrast references a design column that does not exist.

    This happens legitimately when a stratified subset lacks a factor
    level; callers skip the contrast for that group.
    """

    def __init__(self, term, available=None):
        self.term = term
        self.available = list(available or [])
        super().__init__(term)

    def __str__(self):
        avail = ", ".join(self.available) or "none"
        return f"Unknown design column '{self.term}' (available: {avail})"


class ContrastError(TrapDEAError, ValueError):
    """A contrast expression is malformed or not linear in the design columns."""


class SampleNameError(TrapDEAError, ValueError):
    """A sample identifier does not follow the expected naming pattern."""


class InsufficientDataError(TrapDEAError, ValueError):
    """Too few samples left to estimate the residual variation of a model."""
