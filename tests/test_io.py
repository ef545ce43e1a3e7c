"""
Tests for sample-name parsing and quantification loading.
"""

import gzip

import numpy as np
import pandas as pd
import pytest

from trap_dea.errors import SampleNameError
from trap_dea.io import (
    aggregate_transcripts, build_col_metadata, parse_sample_name, read_quant_directory,
    read_tx2gene, strip_version, tx2gene_from_gtf)

# ------------------------------------------------------------------------------
# Sample names
# ------------------------------------------------------------------------------


def test_parse_sample_name_defaults_processing():
    fields = parse_sample_name("Calca_F_SNI_D7.txt")
    assert fields == {"mouseline": "Calca", "sex": "F", "condition": "SNI",
                      "day": 7, "processing": "IP"}


def test_parse_sample_name_with_processing():
    fields = parse_sample_name("quants/Mrgprd_M_Naive_D7_Input.sf")
    assert fields["mouseline"] == "Mrgprd"
    assert fields["processing"] == "Input"


@pytest.mark.parametrize("name", [
    "Calca_X_SNI_D7.txt",
    "Calca_F_Crush_D7.txt",
    "Calca_F_SNI_7.txt",
    "Calca_F_SNI_D7_Total.txt",
])
def test_bad_sample_names(name):
    with pytest.raises(SampleNameError):
        parse_sample_name(name)


def test_build_col_metadata():
    meta = build_col_metadata(["Calca_F_SNI_D2.txt", "Calca_M_Naive_D7.txt",
                               "Calca_M_Sham_D7_Input.txt"])
    assert list(meta.index) == ["Calca_F_SNI_D2", "Calca_M_Naive_D7", "Calca_M_Sham_D7_Input"]
    assert meta["cond_day"].astype(str).tolist() == ["SNI_2", "Naive_7", "Sham_7"]
    assert list(meta["cond_day"].cat.categories)[0] == "Naive_7"
    assert meta["processing"].astype(str).tolist() == ["IP", "IP", "Input"]


# ------------------------------------------------------------------------------
# Transcript maps and aggregation
# ------------------------------------------------------------------------------


def test_strip_version():
    assert list(strip_version(["ENSMUST01.4", "ENSMUST02"])) == ["ENSMUST01", "ENSMUST02"]


def test_read_tx2gene(tmp_path):
    path = tmp_path / "tx2gene.txt"
    path.write_text("ENSMUST01.1 Atf3\nENSMUST02.3 Atf3\nENSMUST03.1 Sprr1a\n")
    tx2gene = read_tx2gene(path)
    assert tx2gene.to_dict() == {"ENSMUST01": "Atf3", "ENSMUST02": "Atf3",
                                 "ENSMUST03": "Sprr1a"}


def test_tx2gene_from_gtf(tmp_path):
    lines = [
        "##description: test",
        "chr1\tHAVANA\tgene\t1\t100\t.\t+\t.\tgene_id \"G1.1\"; gene_name \"Atf3\";",
        "chr1\tHAVANA\ttranscript\t1\t100\t.\t+\t.\t"
        "gene_id \"G1.1\"; transcript_id \"ENSMUST01.2\"; gene_name \"Atf3\";",
        "chr1\tHAVANA\texon\t1\t50\t.\t+\t.\t"
        "gene_id \"G1.1\"; transcript_id \"ENSMUST01.2\"; gene_name \"Atf3\";",
        "chr2\tHAVANA\ttranscript\t1\t100\t.\t-\t.\t"
        "gene_id \"G2.1\"; transcript_id \"ENSMUST09.1\"; gene_name \"Gal\";",
    ]
    path = tmp_path / "annotation.gtf.gz"
    with gzip.open(path, "wt") as handle:
        handle.write("\n".join(lines) + "\n")
    tx2gene = tx2gene_from_gtf(path)
    assert tx2gene.to_dict() == {"ENSMUST01": "Atf3", "ENSMUST09": "Gal"}


def test_aggregate_transcripts():
    tx_counts = pd.DataFrame({"s1": [10.4, 5.0, 3.0, 7.0], "s2": [0.0, 1.6, 2.0, 9.0]},
                             index=["T1.1", "T2.1", "T3.2", "T4.1"])
    tx2gene = pd.Series({"T1": "Atf3", "T2": "Atf3", "T3": "Gal"})
    genes = aggregate_transcripts(tx_counts, tx2gene)
    assert list(genes.index) == ["Atf3", "Gal"]
    assert genes.index.name == "gene"
    assert genes.loc["Atf3"].tolist() == [15, 2]
    assert genes.loc["Gal"].tolist() == [3, 2]
    assert genes.dtypes.eq(np.int64).all()


# ------------------------------------------------------------------------------
# Directory loading
# ------------------------------------------------------------------------------


def write_quant(path, reads):
    table = pd.DataFrame({"Name": list(reads), "Length": 1000, "NumReads": list(reads.values())})
    table.to_csv(path, sep="\t", index=False)


def test_read_quant_directory(tmp_path):
    write_quant(tmp_path / "Calca_F_Naive_D7.txt", {"T1.1": 10, "T2.1": 5, "T3.1": 1})
    write_quant(tmp_path / "Calca_M_SNI_D7.txt", {"T1.1": 20, "T3.1": 4})
    tx2gene = pd.Series({"T1": "Atf3", "T2": "Atf3", "T3": "Gal"})

    am = read_quant_directory(tmp_path, tx2gene)
    counts = am.assay("counts")
    assert list(am.samples) == ["Calca_F_Naive_D7", "Calca_M_SNI_D7"]
    assert counts.loc["Atf3"].tolist() == [15, 20]
    assert counts.loc["Gal"].tolist() == [1, 4]
    assert am.col_metadata["condition"].astype(str).tolist() == ["Naive", "SNI"]


def test_read_quant_directory_requires_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_quant_directory(tmp_path, pd.Series(dtype=str))
