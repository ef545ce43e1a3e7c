import argparse
import json
import logging
import time
from pathlib import Path

import pandas as pd

from trap_dea import AnalysisConfig, AnnotatedMatrix, default_config, read_quant_directory, run_stratified
from trap_dea.covariates import derive_cond_day
from trap_dea.foldchange import log2_fold_change, scale_fold_change
from trap_dea.selection import select_degs

logger = logging.getLogger("run_trap_dea")


def load_data(args):
    if args.quant_dir:
        logger.info("Loading quantifications from %s...", args.quant_dir)
        return read_quant_directory(args.quant_dir, args.tx2gene)
    logger.info("Loading %s and %s...", args.counts, args.coldata)
    counts_df = pd.read_csv(args.counts, index_col=0)
    coldata_df = pd.read_csv(args.coldata, index_col=0)
    if "cond_day" not in coldata_df.columns:
        coldata_df = derive_cond_day(coldata_df)
    return AnnotatedMatrix({"counts": counts_df}, coldata_df.loc[counts_df.columns])


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="TRAP-seq differential expression per mouse line")
    src = parser.add_argument_group("input")
    src.add_argument("--quant-dir", help="directory of per-sample quantification files")
    src.add_argument("--tx2gene", help="transcript-to-gene table or GTF (with --quant-dir)")
    src.add_argument("--counts", default="data/counts.csv", help="gene x sample count CSV")
    src.add_argument("--coldata", default="data/coldata.csv", help="sample metadata CSV")
    parser.add_argument("--config", help="JSON analysis configuration")
    parser.add_argument("--out", default="results", help="output directory")
    parser.add_argument("--n-jobs", type=int, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)
    if args.quant_dir and not args.tx2gene:
        parser.error("--tx2gene is required with --quant-dir")
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    if args.config:
        with open(args.config) as handle:
            config = AnalysisConfig.from_dict(json.load(handle))
    else:
        config = default_config()
    if args.n_jobs is not None:
        config = config.with_options(n_jobs=args.n_jobs)

    matrix = load_data(args)
    logger.info("Running analysis on %d genes x %d samples...", *matrix.shape)
    start_time = time.time()
    result = run_stratified(matrix, config)
    logger.info("Done in %.1f seconds.", time.time() - start_time)

    am = log2_fold_change(result.matrix, assay="corrected" if "corrected" in result.matrix.assay_names
                          else "counts")
    am = scale_fold_change(am)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    policies = {spec.name: spec.policy for spec in config.contrasts}
    for key in am.row_keys(prefix="DEA."):
        table = am.row_entry(key)
        table.to_csv(out / f"{key}.csv")
        contrast = key.rsplit(".", 1)[-1]
        degs = select_degs(table, policies[contrast])
        logger.info("%s: %d DEGs", key, len(degs))
    for group, exc in result.failures.items():
        logger.error("Group %s failed: %s", group, exc)

    am.to_pickle(out / "trap_dea.pkl")
    logger.info("Saved results to %s", out)


if __name__ == "__main__":
    main()
