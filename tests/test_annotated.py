"""
Tests for the versioned annotated matrix.
"""

import numpy as np
import pandas as pd
import pytest

from trap_dea.annotated import AnnotatedMatrix


@pytest.fixture
def matrix():
    genes = pd.Index(["g1", "g2", "g3"], name="gene")
    counts = pd.DataFrame(np.arange(12).reshape(3, 4), index=genes,
                          columns=["s1", "s2", "s3", "s4"])
    meta = pd.DataFrame({"mouseline": ["Calca", "Calca", "Mrgprd", "Mrgprd"]},
                        index=counts.columns)
    return AnnotatedMatrix(counts, meta)


# ------------------------------------------------------------------------------
# Construction
# ------------------------------------------------------------------------------


def test_single_frame_is_counts(matrix):
    assert matrix.assay_names == ["counts"]
    assert matrix.shape == (3, 4)
    assert matrix.version == 0
    assert matrix.history == ()


def test_rejects_mismatched_metadata(matrix):
    counts = matrix.assay()
    with pytest.raises(ValueError):
        AnnotatedMatrix(counts, matrix.col_metadata.iloc[:3])
    with pytest.raises(ValueError):
        AnnotatedMatrix(counts, matrix.col_metadata.iloc[::-1])


def test_rejects_duplicate_ids(matrix):
    counts = matrix.assay()
    counts.index = ["g1", "g1", "g3"]
    with pytest.raises(ValueError):
        AnnotatedMatrix(counts, matrix.col_metadata)


def test_rejects_misaligned_assays(matrix):
    counts = matrix.assay()
    with pytest.raises(ValueError):
        AnnotatedMatrix({"counts": counts, "other": counts.iloc[:2]}, matrix.col_metadata)


# ------------------------------------------------------------------------------
# Augmentation
# ------------------------------------------------------------------------------


def test_with_assay_returns_new_version(matrix):
    extra = matrix.assay() * 2.0
    out = matrix.with_assay("doubled", extra, stage="double")
    assert out.version == 1
    assert out.history == ("double",)
    assert "doubled" not in matrix.assay_names
    assert matrix.version == 0


def test_with_assay_aligns_labels(matrix):
    partial = matrix.assay().loc[["g2"], ["s1", "s2"]].astype(float)
    out = matrix.with_assay("partial", partial)
    frame = out.assay("partial")
    assert frame.index.equals(matrix.genes)
    assert frame.columns.equals(matrix.samples)
    assert frame.loc["g2", "s1"] == 4
    assert np.isnan(frame.loc["g1", "s1"])


def test_accessors_return_copies(matrix):
    counts = matrix.assay()
    counts.iloc[0, 0] = -1
    meta = matrix.col_metadata
    meta["mouseline"] = "changed"
    assert matrix.assay().iloc[0, 0] == 0
    assert (matrix.col_metadata["mouseline"] != "changed").all()


def test_row_metadata_entries(matrix):
    table = pd.DataFrame({"FDR": [0.01, 0.2]}, index=["g1", "g3"])
    out = matrix.with_row_metadata("DEA.Calca.D7", table)
    out = out.with_row_metadata("DEA.Mrgprd.D7", table.iloc[:1])
    assert out.row_keys(prefix="DEA.Calca") == ["DEA.Calca.D7"]
    assert set(out.row_record("g1")) == {"DEA.Calca.D7", "DEA.Mrgprd.D7"}
    assert set(out.row_record("g3")) == {"DEA.Calca.D7"}
    assert out.row_record("g2") == {}
    with pytest.raises(KeyError):
        out.with_row_metadata("bad", pd.DataFrame({"FDR": [0.1]}, index=["g9"]))


def test_with_col_metadata(matrix):
    sv = pd.Series([0.1, -0.1], index=["s1", "s2"], name="SV1")
    out = matrix.with_col_metadata(sv)
    assert out.col_metadata["SV1"].iloc[:2].tolist() == [0.1, -0.1]
    assert out.col_metadata["SV1"].iloc[2:].isna().all()
    assert "SV1" not in matrix.col_metadata.columns


# ------------------------------------------------------------------------------
# Subsets and serialization
# ------------------------------------------------------------------------------


def test_subset_is_independent(matrix):
    table = pd.DataFrame({"FDR": [0.01, 0.2]}, index=["g1", "g3"])
    am = matrix.with_row_metadata("DEA.x", table)
    sub = am.subset(genes=["g1", "g2"], samples=am.col_metadata["mouseline"] == "Calca")
    assert sub.shape == (2, 2)
    assert list(sub.row_entry("DEA.x").index) == ["g1"]

    sub._assays["counts"].iloc[0, 0] = 999
    assert am.assay().iloc[0, 0] == 0


def test_subset_unknown_labels(matrix):
    with pytest.raises(KeyError):
        matrix.subset(genes=["g1", "nope"])


def test_pickle_round_trip(matrix, tmp_path):
    am = matrix.with_row_metadata("DEA.x", pd.DataFrame({"FDR": [0.5]}, index=["g2"]))
    path = tmp_path / "am.pkl"
    am.to_pickle(path)
    back = AnnotatedMatrix.read_pickle(path)
    pd.testing.assert_frame_equal(back.assay(), am.assay())
    assert back.version == am.version
    assert back.history == am.history
    assert back.row_keys() == ["DEA.x"]


def test_read_pickle_checks_type(tmp_path):
    path = tmp_path / "frame.pkl"
    pd.to_pickle(pd.DataFrame({"a": [1]}), path)
    with pytest.raises(TypeError):
        AnnotatedMatrix.read_pickle(path)
