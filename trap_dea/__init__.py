"""
Differential expression and contrast engine for TRAP-seq experiments.

Counts of ribosome-associated transcripts are analysed per mouse line with
negative binomial GLMs, quasi-likelihood F-tests and surrogate variable
adjustment; gene sets are selected from the results under configurable
threshold policies.

Main Classes:
    AnnotatedMatrix : Versioned gene x sample container shared by all stages
    DesignMatrix : Named numeric design built from a covariate formula
    AnalysisConfig : Settings for a stratified analysis

Main Functions:
    run_stratified : Run the full pipeline per stratum and merge results
    build_design : Expand a formula into a design matrix
    glm_ql_fit, ql_f_test : Quasi-likelihood fit and F-test
    estimate_surrogate_variables : Iteratively re-weighted SVA
    select_degs, union_degs : Threshold-policy gene selection
    log2_fold_change : Per-sample fold change against baseline samples

References:
    Chen Y, Lun ATL, Smyth GK (2016). From reads to genes to pathways:
    differential expression analysis of RNA-Seq experiments using Rsubread
    and the edgeR quasi-likelihood pipeline. F1000Research 5:1438
"""

# Data container and io
from .annotated import AnnotatedMatrix
from .io import (
    read_quant_directory,
    read_tx2gene,
    tx2gene_from_gtf,
    aggregate_transcripts,
    parse_sample_name,
    build_col_metadata,
)

# Covariates and design
from .covariates import (
    Categorical,
    Continuous,
    CovariateSchema,
    default_schema,
    derive_cond_day,
)
from .design import DesignMatrix, build_design, parse_formula, model_matrix

# Normalization and filtering
from .normalization import calc_norm_factors, cpm, average_log_cpm
from .filtering import filter_by_expr, normalize_and_filter

# Surrogate variables
from .sva import estimate_surrogate_variables, estimate_n_sv, remove_surrogate_effects

# Model fitting and testing
from .dispersion import estimate_dispersions
from .glm import fit_nb_glm
from .ebayes import squeeze_var
from .qltest import glm_ql_fit, ql_f_test
from .contrasts import make_contrasts, parse_contrast
from .multitest import benjamini_hochberg
from .results import summarize_results

# Selection and fold change
from .selection import ThresholdPolicy, LOCAL, GLOBAL, select_degs, union_degs, select_from_matrix
from .foldchange import log2_fold_change, scale_fold_change

# Pipeline
from .config import AnalysisConfig, ContrastSpec, default_config
from .pipeline import run_group_analysis, run_stratified

# Errors
from .errors import (
    TrapDEAError,
    RankDeficientDesignError,
    UnknownCovariateError,
    UnknownTermError,
    ContrastError,
    SampleNameError,
    InsufficientDataError,
)

__version__ = "0.1.0"

__all__ = [
    # Data
    "AnnotatedMatrix",
    "read_quant_directory",
    "read_tx2gene",
    "tx2gene_from_gtf",
    "aggregate_transcripts",
    "parse_sample_name",
    "build_col_metadata",
    # Design
    "Categorical",
    "Continuous",
    "CovariateSchema",
    "default_schema",
    "derive_cond_day",
    "DesignMatrix",
    "build_design",
    "parse_formula",
    "model_matrix",
    # Normalization
    "calc_norm_factors",
    "cpm",
    "average_log_cpm",
    "filter_by_expr",
    "normalize_and_filter",
    # SVA
    "estimate_surrogate_variables",
    "estimate_n_sv",
    "remove_surrogate_effects",
    # Testing
    "estimate_dispersions",
    "fit_nb_glm",
    "squeeze_var",
    "glm_ql_fit",
    "ql_f_test",
    "make_contrasts",
    "parse_contrast",
    "benjamini_hochberg",
    "summarize_results",
    # Selection
    "ThresholdPolicy",
    "LOCAL",
    "GLOBAL",
    "select_degs",
    "union_degs",
    "select_from_matrix",
    "log2_fold_change",
    "scale_fold_change",
    # Pipeline
    "AnalysisConfig",
    "ContrastSpec",
    "default_config",
    "run_group_analysis",
    "run_stratified",
    # Errors
    "TrapDEAError",
    "RankDeficientDesignError",
    "UnknownCovariateError",
    "UnknownTermError",
    "ContrastError",
    "SampleNameError",
    "InsufficientDataError",
]
