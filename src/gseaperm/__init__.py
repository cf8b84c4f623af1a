"""
gseaperm
========

Differential expression, preranked GSEA and a class-label randomization
estimate of the false discovery rate, with optional Enrichment Maps.
"""

from .pipeline import RandomizedEnrichmentPipeline
from .config import PipelineConfig
from .data import (
    load_counts,
    load_classes,
    load_gmt,
    load_enrichment_report,
    load_gsea_results,
    filter_by_cpm,
    split_gene_ids,
    write_rnk,
    write_cls,
)
from .stats import (
    estimate_fdr,
    permute_labels,
    compute_rank_scores,
    empirical_fdr_table,
    compare_significance,
    RandomizationPopulation,
)
from .randomization import RandomizationRunner, collect_population
from .errors import (
    GseapermError,
    ValidationError,
    ReportSchemaError,
    MissingPopulationError,
    DependencyError,
    ExternalToolError,
    CytoscapeError,
)
from .utils import setup_logging, ensure_dir

__version__ = "0.1.0"

__all__ = [
    "RandomizedEnrichmentPipeline",
    "PipelineConfig",
    "load_counts",
    "load_classes",
    "load_gmt",
    "load_enrichment_report",
    "load_gsea_results",
    "filter_by_cpm",
    "split_gene_ids",
    "write_rnk",
    "write_cls",
    "estimate_fdr",
    "permute_labels",
    "compute_rank_scores",
    "empirical_fdr_table",
    "compare_significance",
    "RandomizationPopulation",
    "RandomizationRunner",
    "collect_population",
    "GseapermError",
    "ValidationError",
    "ReportSchemaError",
    "MissingPopulationError",
    "DependencyError",
    "ExternalToolError",
    "CytoscapeError",
    "setup_logging",
    "ensure_dir",
]
