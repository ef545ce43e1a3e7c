"""
Analysis configuration.

An :class:`AnalysisConfig` collects everything the stratified runner needs:
the model formula, the null model for surrogate variable estimation,
filtering and normalization settings, and the contrasts to test, each with
its own selection policy.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from .selection import GLOBAL, LOCAL, ThresholdPolicy


@dataclass(frozen=True)
class ContrastSpec:
    """
    A named test.

    Parameters
    ----------
    name : str
        Used in result keys, ``DEA.<group>.<name>``.
    expressions : tuple of str
        One expression for a 1-df test, several for a joint test.
    policy : ThresholdPolicy
        Selection thresholds for this test.
    """

    name: str
    expressions: Tuple[str, ...]
    policy: ThresholdPolicy = LOCAL

    def __post_init__(self):
        if isinstance(self.expressions, str):
            object.__setattr__(self, "expressions", (self.expressions,))
        else:
            object.__setattr__(self, "expressions", tuple(self.expressions))
        if not self.expressions:
            raise ValueError(f"Contrast '{self.name}' has no expressions")

    @property
    def is_joint(self):
        return len(self.expressions) > 1

    @property
    def contrast(self):
        return self.expressions[0] if not self.is_joint else list(self.expressions)


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Parameters
    ----------
    formula : str
        Model of interest, e.g. ``"~ sex + cond_day"``.
    null_formula : str
        Null model for surrogate variable estimation.
    contrasts : tuple of ContrastSpec
    group_by : str or None
        Column defining the analysis strata (one model per value).
    processing : str or None
        Keep only samples with this ``processing`` value (e.g. ``"IP"``).
    n_sv : int or None
        Surrogate variables per group; None estimates the number, 0 skips
        the step.
    sva_iterations : int
    normalization : str
        Normalization method (``"TMM"``, ``"upperquartile"``, ``"RLE"``).
    min_count, min_total_count : float
        Expression filter thresholds.
    dispersion_trend : str
        ``"local"``, ``"parametric"`` or ``"mean"``.
    n_jobs : int or None
        Groups fitted in parallel (None: 1, 0: all CPUs, negative: all but).
    seed : int
    """

    formula: str = "~ sex + cond_day"
    null_formula: str = "~ 1"
    contrasts: Tuple[ContrastSpec, ...] = field(default_factory=tuple)
    group_by: Optional[str] = "mouseline"
    processing: Optional[str] = "IP"
    n_sv: Optional[int] = 2
    sva_iterations: int = 5
    normalization: str = "TMM"
    min_count: float = 10
    min_total_count: float = 15
    dispersion_trend: str = "local"
    n_jobs: Optional[int] = None
    seed: int = 0

    def __post_init__(self):
        names = [c.name for c in self.contrasts]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate contrast names: {dupes}")
        if self.n_sv is not None and self.n_sv < 0:
            raise ValueError("n_sv must be non-negative")

    def with_options(self, **changes):
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, mapping):
        """
        Build a config from a plain mapping (e.g. parsed JSON).

        Contrasts are given as ``{"name": ..., "expressions": [...] or str,
        "policy": {"fdr": ..., "fold": ..., "strict_fdr": ...} or
        "local"/"global"}``.
        """
        data = dict(mapping)
        presets = {"local": LOCAL, "global": GLOBAL}
        contrasts = []
        for item in data.pop("contrasts", []):
            item = dict(item)
            policy = item.pop("policy", LOCAL)
            if isinstance(policy, str):
                if policy.lower() not in presets:
                    raise ValueError(f"Unknown policy preset '{policy}'")
                policy = presets[policy.lower()]
            elif isinstance(policy, dict):
                policy = ThresholdPolicy(**policy)
            contrasts.append(ContrastSpec(item.pop("name"), item.pop("expressions"), policy))
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(contrasts=tuple(contrasts), **data)


def default_contrasts():
    """Injury time-course contrasts against the ``~ sex + cond_day`` design."""
    return (
        ContrastSpec("SNI_vs_Sham_D2", ("cond_daySNI_2 - cond_daySham_2",)),
        ContrastSpec("SNI_vs_Sham_D7", ("cond_daySNI_7 - cond_daySham_7",)),
        ContrastSpec("Sham_vs_Naive", ("cond_daySham_7",)),
        ContrastSpec(
            "Injury_global",
            ("cond_daySNI_2 - cond_daySham_2", "cond_daySNI_7 - cond_daySham_7"),
            GLOBAL,
        ),
    )


def default_config(**changes):
    """Configuration of the standard injury time-course analysis."""
    return AnalysisConfig(contrasts=default_contrasts(), **changes)
