"""
Loading TRAP quantifications into an AnnotatedMatrix.

Per-sample transcript quantifications (salmon ``quant.sf`` style tables
with ``Name`` and ``NumReads`` columns) are summed to genes through a
transcript-to-gene map. Sample covariates are parsed from file names of
the form ``{lineage}_{sex}_{condition}_D{day}[_{processing}]``, e.g.
``Calca_F_SNI_D7_Input.txt``; ``processing`` defaults to ``IP``.
"""

import gzip
import logging
import re
from pathlib import Path

import numpy as np
import pandas as pd

from .annotated import AnnotatedMatrix
from .covariates import coerce_col_metadata, derive_cond_day
from .errors import SampleNameError

logger = logging.getLogger(__name__)

SAMPLE_NAME_RE = re.compile(
    r"^(?P<mouseline>[^_]+)_(?P<sex>[MF])_(?P<condition>Naive|Sham|SNI)"
    r"_D(?P<day>\d+)(?:_(?P<processing>IP|Input))?$"
)
_GTF_ATTR_RE = re.compile(r'(\w+) "([^"]*)"')


def strip_version(ids):
    """Drop Ensembl version suffixes (``ENSMUST00000000001.4`` -> ``ENSMUST00000000001``)."""
    return pd.Index([str(i).split(".", 1)[0] for i in ids])


def read_tx2gene(path):
    """
    Read a two-column transcript -> gene table (whitespace separated, no header).

    Returns
    -------
    pd.Series
        Gene name indexed by version-stripped transcript id.
    """
    table = pd.read_csv(path, sep=r"\s+", header=None, names=["transcript", "gene"],
                        usecols=[0, 1], dtype=str)
    table["transcript"] = strip_version(table["transcript"])
    table = table.drop_duplicates("transcript")
    return pd.Series(table["gene"].to_numpy(), index=pd.Index(table["transcript"], name="transcript"),
                     name="gene")


def tx2gene_from_gtf(path):
    """
    Build the transcript -> gene map from a GENCODE GTF (optionally gzipped).

    Only ``transcript`` records with both ``transcript_id`` and
    ``gene_name`` attributes are used.
    """
    opener = gzip.open if str(path).endswith(".gz") else open
    pairs = {}
    with opener(path, "rt") as handle:
        for line in handle:
            if line.startswith("#"):
                continue
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 9 or fields[2] != "transcript":
                continue
            attrs = dict(_GTF_ATTR_RE.findall(fields[8]))
            tx, gene = attrs.get("transcript_id"), attrs.get("gene_name")
            if tx and gene:
                pairs.setdefault(tx.split(".", 1)[0], gene)
    logger.info("Read %d transcripts from %s", len(pairs), path)
    return pd.Series(pairs, name="gene").rename_axis("transcript")


def aggregate_transcripts(tx_counts, tx2gene, round_counts=True):
    """
    Sum transcript-level counts to genes.

    Parameters
    ----------
    tx_counts : pd.DataFrame
        Transcripts x samples.
    tx2gene : pd.Series
        Gene name indexed by (version-stripped) transcript id.
    round_counts : bool, default True
        Round summed estimated counts to integers.

    Returns
    -------
    pd.DataFrame
        Genes x samples, gene ids sorted.
    """
    counts = tx_counts.copy()
    counts.index = strip_version(counts.index)
    counts = counts.groupby(level=0).sum()
    genes = tx2gene.reindex(counts.index)
    unmapped = int(genes.isna().sum())
    if unmapped:
        logger.info("%d of %d transcripts have no gene mapping and are dropped",
                    unmapped, len(genes))
    counts = counts.loc[genes.notna().to_numpy()]
    gene_counts = counts.groupby(genes.dropna().to_numpy()).sum()
    gene_counts.index = strip_version(gene_counts.index).rename("gene")
    gene_counts = gene_counts.groupby(level=0).sum().sort_index()
    if round_counts:
        gene_counts = gene_counts.round().astype(np.int64)
    return gene_counts


def parse_sample_name(name):
    """
    Parse covariates from a sample name.

    Parameters
    ----------
    name : str
        Sample name or file name (extension is ignored).

    Returns
    -------
    dict
        ``mouseline``, ``sex``, ``condition``, ``day`` (int) and
        ``processing``.

    Raises
    ------
    SampleNameError
        If the name does not follow the pattern.

    Examples
    --------
    >>> parse_sample_name("Calca_F_SNI_D7.txt")["processing"]
    'IP'
    """
    stem = Path(str(name)).name
    for suffix in (".txt", ".sf", ".tsv"):
        if stem.endswith(suffix):
            stem = stem[: -len(suffix)]
            break
    match = SAMPLE_NAME_RE.match(stem)
    if match is None:
        raise SampleNameError(
            f"Sample name '{name}' does not match "
            "{lineage}_{sex}_{condition}_D{day}[_{processing}]")
    fields = match.groupdict()
    fields["day"] = int(fields["day"])
    fields["processing"] = fields["processing"] or "IP"
    return fields


def sample_id(name):
    """Sample id used as column label: the file name without extension."""
    stem = Path(str(name)).name
    return stem.rsplit(".", 1)[0] if "." in stem else stem


def build_col_metadata(names, with_cond_day=True):
    """
    Sample table from sample (or file) names.

    Returns
    -------
    pd.DataFrame
        Indexed by sample id, with typed categorical covariates and, when
        requested, ``cond_day``.
    """
    records = {sample_id(n): parse_sample_name(n) for n in names}
    meta = pd.DataFrame.from_dict(records, orient="index")
    meta.index.name = "sample"
    meta = coerce_col_metadata(meta)
    if with_cond_day:
        meta = derive_cond_day(meta)
    return meta


def read_quant_file(path, name_col="Name", count_col="NumReads"):
    """One sample's transcript counts as a Series."""
    table = pd.read_csv(path, sep="\t", usecols=[name_col, count_col])
    return pd.Series(table[count_col].to_numpy(dtype=float),
                     index=table[name_col].astype(str), name=sample_id(path))


def read_quant_directory(directory, tx2gene, pattern="*.txt", round_counts=True):
    """
    Load every quantification file in a directory.

    Parameters
    ----------
    directory : str or Path
    tx2gene : pd.Series or str or Path
        Transcript -> gene map, or a path passed to :func:`read_tx2gene`
        (or :func:`tx2gene_from_gtf` for ``.gtf``/``.gtf.gz``).
    pattern : str, default "*.txt"
        Glob for quantification files.

    Returns
    -------
    AnnotatedMatrix
        ``counts`` assay (genes x samples) and the parsed sample table.
    """
    directory = Path(directory)
    files = sorted(directory.glob(pattern))
    if not files:
        raise FileNotFoundError(f"No files matching '{pattern}' in {directory}")

    if not isinstance(tx2gene, pd.Series):
        path = str(tx2gene)
        tx2gene = tx2gene_from_gtf(path) if ".gtf" in path else read_tx2gene(path)

    meta = build_col_metadata([f.name for f in files])
    logger.info("Loading %d quantification files from %s", len(files), directory)
    tx_counts = pd.concat([read_quant_file(f) for f in files], axis=1).fillna(0.0)
    counts = aggregate_transcripts(tx_counts, tx2gene, round_counts=round_counts)
    counts = counts[list(meta.index)]
    return AnnotatedMatrix({"counts": counts}, meta)
