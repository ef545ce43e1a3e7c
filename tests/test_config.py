"""
Tests for analysis configuration.
"""

import pytest

from trap_dea.config import AnalysisConfig, ContrastSpec, default_config
from trap_dea.selection import GLOBAL, LOCAL, ThresholdPolicy


def test_default_config():
    config = default_config()
    assert config.formula == "~ sex + cond_day"
    assert [c.name for c in config.contrasts] == [
        "SNI_vs_Sham_D2", "SNI_vs_Sham_D7", "Sham_vs_Naive", "Injury_global"]
    joint = config.contrasts[-1]
    assert joint.is_joint
    assert joint.policy is GLOBAL
    assert isinstance(joint.contrast, list)
    assert config.contrasts[0].contrast == "cond_daySNI_2 - cond_daySham_2"


def test_contrast_spec_coerces_expressions():
    spec = ContrastSpec("D7", "cond_daySNI_7 - cond_daySham_7")
    assert spec.expressions == ("cond_daySNI_7 - cond_daySham_7",)
    assert not spec.is_joint
    assert spec.policy is LOCAL
    with pytest.raises(ValueError):
        ContrastSpec("empty", ())


def test_duplicate_contrast_names():
    spec = ContrastSpec("D7", "cond_daySNI_7")
    with pytest.raises(ValueError):
        AnalysisConfig(contrasts=(spec, spec))


def test_negative_n_sv():
    with pytest.raises(ValueError):
        AnalysisConfig(n_sv=-1)


def test_with_options_returns_copy():
    config = default_config()
    changed = config.with_options(n_sv=0, group_by=None)
    assert changed.n_sv == 0
    assert changed.group_by is None
    assert config.n_sv == 2
    assert changed.contrasts == config.contrasts


def test_from_dict():
    config = AnalysisConfig.from_dict({
        "formula": "~ cond_day",
        "n_sv": None,
        "contrasts": [
            {"name": "D2", "expressions": "cond_daySNI_2 - cond_daySham_2"},
            {"name": "global", "expressions": ["cond_daySNI_2", "cond_daySNI_7"],
             "policy": "global"},
            {"name": "custom", "expressions": "cond_daySNI_7",
             "policy": {"fdr": 0.1, "fold": 1.5, "strict_fdr": 0.02}},
        ],
    })
    assert config.formula == "~ cond_day"
    assert config.n_sv is None
    assert config.contrasts[0].policy is LOCAL
    assert config.contrasts[1].policy is GLOBAL
    assert config.contrasts[1].is_joint
    assert config.contrasts[2].policy == ThresholdPolicy(0.1, 1.5, 0.02)


@pytest.mark.parametrize("mapping", [
    {"formula": "~ cond_day", "colour": "red"},
    {"contrasts": [{"name": "x", "expressions": "cond_daySNI_7", "policy": "lenient"}]},
])
def test_from_dict_rejects_unknown_values(mapping):
    with pytest.raises(ValueError):
        AnalysisConfig.from_dict(mapping)
