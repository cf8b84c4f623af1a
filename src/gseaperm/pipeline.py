"""Main pipeline implementation for randomization-based enrichment analysis."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import polars as pl

from gseaperm.config import PipelineConfig
from gseaperm.cytoscape import CytoscapeClient
from gseaperm.data import (
    filter_by_cpm,
    load_classes,
    load_counts,
    load_gmt,
    load_gsea_results,
    sample_columns,
    split_gene_ids,
    validate_sample_order,
    write_cls,
    write_rnk,
)
from gseaperm.edger import EdgeRRunner
from gseaperm.gsea import GseaRunner, find_reports
from gseaperm.randomization import RandomizationRunner, collect_population
from gseaperm.stats import (
    RandomizationPopulation,
    compare_significance,
    compute_rank_scores,
    empirical_fdr_table,
)
from gseaperm.utils import ensure_dir
from gseaperm.visualise import (
    plot_fdr_comparison,
    plot_rank_distribution,
    plot_significance_venn,
    plot_top_distributions,
)


def clean_for_json(item):
    """Convert numpy scalars, arrays and NaN to JSON-serialisable values."""
    if isinstance(item, dict):
        return {k: clean_for_json(v) for k, v in item.items()}
    elif isinstance(item, (list, tuple)):
        return [clean_for_json(i) for i in item]
    elif isinstance(item, np.ndarray):
        return clean_for_json(item.tolist())
    elif isinstance(item, np.bool_):
        return bool(item)
    elif isinstance(item, np.integer):
        return int(item)
    elif isinstance(item, (float, np.floating)):
        return None if np.isnan(item) else float(item)
    elif isinstance(item, Path):
        return str(item)
    return item


class RandomizedEnrichmentPipeline:
    """Runs edgeR, GSEA and the label randomization loop from one configuration."""

    def __init__(self, config_path: str):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.output_path = self.config.get_output_path()

        self.edger = EdgeRRunner(
            rscript=self.config.edger['rscript'],
            timeout=self.config.edger['timeout'],
            install_missing=self.config.edger['install_missing'],
        )
        self.gsea = GseaRunner.from_config(self.config.gsea)

        self.population: Optional[RandomizationPopulation] = None
        self.failed_iterations: Dict[int, str] = {}
        self.observed: Optional[pl.DataFrame] = None
        self.fdr_table: Optional[pl.DataFrame] = None
        self.comparison: Optional[Dict[str, Any]] = None
        self.reports = None
        self.ranks: Optional[pl.DataFrame] = None
        self.rnk_path: Optional[Path] = None
        self.cls_path: Optional[Path] = None
        self.network_suid: Optional[int] = None

        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if isinstance(file_path, (str, bytes, os.PathLike)) and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        id_column = self.config.id_column
        self.counts_df = load_counts(self.config.input_files['counts_file'], id_column)
        self.classes_df = load_classes(self.config.input_files['classes_file'])

        # Fatal: labels must line up with count columns
        self.labels = validate_sample_order(self.counts_df, self.classes_df, id_column)
        self.samples = sample_columns(self.counts_df, id_column)

        self.gene_sets = load_gmt(self.config.input_files['gmt_file'])

        class_sizes = {c: self.labels.count(c) for c in dict.fromkeys(self.labels)}
        self.logger.info(f"Loaded {self.counts_df.height} genes across {len(self.samples)} samples")
        self.logger.info(
            "Classes: " + ", ".join(f"{c} (n={n})" for c, n in class_sizes.items())
        )
        self.logger.info(f"Loaded {len(self.gene_sets)} gene sets")
        if len(class_sizes) > 2:
            self.logger.warning("More than two classes; edgeR compares the first two in order of appearance")

        self.logger.debug("Finished loading input data files")

    def prepare_counts(self) -> pl.DataFrame:
        """Filter lowly expressed genes and reformat identifiers to gene symbols."""
        min_samples = self.config.min_samples
        if min_samples is None:
            min_samples = min(self.labels.count(c) for c in set(self.labels))

        filtered = filter_by_cpm(
            self.counts_df,
            id_column=self.config.id_column,
            min_cpm=self.config.min_cpm,
            min_samples=int(min_samples),
        )
        filtered = split_gene_ids(
            filtered,
            id_column=self.config.id_column,
            separator=self.config.id_separator,
            symbol_index=self.config.symbol_index,
        )
        if filtered.height == 0:
            raise RuntimeError("No genes left after expression filtering")

        return filtered

    def check_dependencies(self):
        """Fail early, with instructions, when an external tool is missing."""
        self.logger.info("Checking external dependencies")
        self.edger.check_available()
        self.gsea.check_available()
        if self.config.cytoscape['run']:
            self.cytoscape_client().ping()

    def cytoscape_client(self) -> CytoscapeClient:
        return CytoscapeClient(
            base_url=self.config.cytoscape['base_url'],
            timeout=self.config.cytoscape['timeout'],
        )

    def run(self):
        """Run the full analysis."""
        self.logger.info("Starting randomized enrichment pipeline")
        start_time = time.time()

        work_path = ensure_dir(self.output_path / 'work')

        self.logger.info("Step 1: Filtering genes")
        filtered = self.prepare_counts()
        counts_path = work_path / 'filtered_counts.tsv'
        filtered.write_csv(counts_path, separator='\t', quote_style='never')

        self.logger.info("Step 2: Checking external tools")
        self.check_dependencies()

        self.logger.info("Step 3: Differential expression on the real labels")
        de_table = self.edger.run(counts_path, self.samples, self.labels, work_path, 'real')
        self.ranks = compute_rank_scores(de_table)
        self.rnk_path = write_rnk(self.ranks, work_path / 'real.rnk')
        self.cls_path = write_cls(self.labels, work_path / 'real.cls')
        self.logger.info(f"Wrote {self.ranks.height} ranked genes to {self.rnk_path}")

        self.logger.info("Step 4: GSEA on the real ranking")
        self.reports = self.gsea.run(
            self.rnk_path,
            self.config.input_files['gmt_file'],
            ensure_dir(self.output_path / 'gsea'),
            'real',
            permutations=int(self.config.gsea['permutations']),
            seed=self.config.seed,
        )
        self.observed = load_gsea_results(self.reports)
        self.logger.info(f"GSEA reported {self.observed.height} gene sets")

        random_path = self.output_path / 'randomizations'
        if self.config.randomization['run']:
            self.logger.info(f"Step 5: Running {self.config.iterations} label randomizations")
            runner = RandomizationRunner(
                counts_path=counts_path,
                samples=self.samples,
                labels=self.labels,
                gmt_path=self.config.input_files['gmt_file'],
                out_dir=random_path,
                edger_settings=self.config.edger,
                gsea_settings=self.config.gsea,
                gsea_permutations=int(self.config.randomization['gsea_permutations']),
                iteration_timeout=self.config.randomization['timeout'],
                seed=self.config.seed,
                num_workers=self.config.num_threads,
                keep_work=bool(self.config.output_config.get('save_intermediate', False)),
            )
            outcome = runner.run(self.config.iterations)
            self.population = outcome.population
            self.failed_iterations = outcome.failed
        else:
            self.logger.info("Step 5: Collecting existing randomization results")
            self.population, self.failed_iterations = collect_population(random_path, self.config.iterations)
            if self.population.n_runs == 0:
                raise RuntimeError(f"No randomization results found in {random_path}")

        self.compute_fdr()

        self.logger.info("Saving results")
        self.save_results()

        if self.config.cytoscape['run']:
            self.logger.info("Building Enrichment Map in Cytoscape")
            self.build_enrichment_map()

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")

    def aggregate(self, observed_reports: Optional[List[Path]] = None):
        """
        Recompute the FDR table from files left by an earlier run.

        Args:
            observed_reports: Reports of the real GSEA run; located under output/gsea if omitted
        """
        if observed_reports is None:
            observed_reports = list(find_reports(self.output_path / 'gsea', 'real'))
        self.reports = tuple(observed_reports)
        self.observed = load_gsea_results(self.reports)

        rnk_path = self.output_path / 'work' / 'real.rnk'
        if rnk_path.is_file():
            self.rnk_path = rnk_path
            self.ranks = pl.read_csv(rnk_path, separator='\t', quote_char=None)
        cls_path = self.output_path / 'work' / 'real.cls'
        if cls_path.is_file():
            self.cls_path = cls_path

        self.population, self.failed_iterations = collect_population(
            self.output_path / 'randomizations', self.config.iterations
        )
        if self.population.n_runs == 0:
            raise RuntimeError("No randomization results found to aggregate")

        self.compute_fdr()
        self.save_results()

    def compute_fdr(self):
        """Empirical FDR table and comparison against the GSEA FDR."""
        denominator = self.config.fdr_denominator
        if self.population.n_runs < denominator:
            self.logger.warning(
                f"Only {self.population.n_runs} randomizations available for a denominator of {denominator}; "
                "empirical FDR values will be biased low"
            )
        elif self.population.n_runs > denominator:
            self.logger.warning(
                f"{self.population.n_runs} randomizations exceed the denominator of {denominator}; "
                "empirical FDR values can exceed 1"
            )

        self.fdr_table = empirical_fdr_table(self.observed, self.population, denominator)
        self.comparison = compare_significance(self.fdr_table, self.config.fdr_threshold)
        self.logger.info(
            f"Significant at FDR < {self.config.fdr_threshold}: "
            f"{len(self.comparison['gsea_significant'])} by GSEA, "
            f"{len(self.comparison['empirical_significant'])} empirically, "
            f"{len(self.comparison['both'])} by both"
        )

    def build_enrichment_map(self) -> int:
        """Build, cluster, annotate and export an Enrichment Map of the real GSEA run."""
        settings = self.config.cytoscape
        client = self.cytoscape_client()
        client.ping()

        classes = list(dict.fromkeys(self.labels))
        expression_file = self.config.input_files.get('expression_file')
        suid = client.build_enrichment_map(
            gmt_file=self.config.input_files['gmt_file'],
            positive_report=self.reports[0],
            negative_report=self.reports[1],
            ranks_file=self.rnk_path,
            expression_file=expression_file,
            class_file=self.cls_path if expression_file else None,
            phenotypes=(classes[0], classes[1]) if expression_file else None,
            pvalue=settings['pvalue'],
            qvalue=settings['qvalue'],
            similarity_cutoff=settings['similarity_cutoff'],
            coefficients=settings['coefficients'],
        )
        client.cluster_network(suid, algorithm=settings['cluster_algorithm'])
        client.annotate_clusters(suid, algorithm=settings['cluster_algorithm'], max_words=settings['max_words'])
        client.apply_layout(suid)
        client.export_image(suid, ensure_dir(self.output_path / 'plots') / 'enrichment_map.png')

        self.network_suid = suid
        return suid

    def save_results(self, output_dir: Optional[str] = None):
        """Save analysis results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if self.fdr_table is None:
            self.logger.warning("No results to save. Run the pipeline first.")
            return

        output_path = Path(output_dir) if output_dir else self.output_path
        data_path = ensure_dir(output_path / 'data')
        plots_path = ensure_dir(output_path / 'plots')

        # 1. Empirical FDR table
        fdr_file = data_path / 'empirical_fdr.tsv'
        self.fdr_table.write_csv(fdr_file, separator='\t')
        self.logger.info(f"Saved empirical FDR table to {fdr_file}")

        # 2. Randomization population summary
        population_file = data_path / 'randomization_summary.tsv'
        self.population.summary().write_csv(population_file, separator='\t')

        # 3. Summary statistics
        summary = {
            'iterations_requested': self.config.iterations,
            'iterations_successful': self.population.n_runs,
            'failed_iterations': {str(k): v for k, v in sorted(self.failed_iterations.items())},
            'fdr_denominator': self.config.fdr_denominator,
            'gene_sets_in_gmt': len(self.gene_sets),
            'gene_sets_reported': self.observed.height,
            'comparison': self.comparison,
        }
        summary_file = data_path / 'summary.json'
        with open(summary_file, 'w') as f:
            json.dump(clean_for_json(summary), f, indent=2)
        self.logger.info(f"Saved summary to {summary_file}")

        # 4. Plots
        plot_fdr_comparison(self.fdr_table, plots_path / 'fdr_comparison.png', self.config.fdr_threshold)
        plot_significance_venn(self.comparison, plots_path / 'significance_venn.png')
        plot_top_distributions(self.fdr_table, self.population, plots_path / 'distributions')
        if self.ranks is not None:
            plot_rank_distribution(self.ranks, plots_path / 'rank_distribution.png')

        # 5. Effective configuration
        config_file = data_path / 'pipeline_config.toml'
        self.config.save_config(config_file)
        self.logger.info(f"Saved configuration to {config_file}")

        # 6. README describing the outputs
        readme_file = output_path / 'README.md'
        with open(readme_file, 'w') as f:
            f.write("# Randomized Gene Set Enrichment Results\n\n")
            f.write(f"Analysis completed on {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            f.write(f"{self.population.n_runs} of {self.config.iterations} randomizations succeeded; "
                    f"empirical FDR denominator: {self.config.fdr_denominator}.\n\n")

            f.write("## Files\n\n")
            f.write("- `data/empirical_fdr.tsv`: GSEA ES/NES/FDR with empirical FDR per gene set\n")
            f.write("- `data/randomization_summary.tsv`: Randomized ES distribution per gene set\n")
            f.write("- `data/summary.json`: Run statistics and GSEA vs empirical comparison\n")
            f.write("- `data/pipeline_config.toml`: Configuration used for this analysis\n")
            f.write("- `plots/`: FDR comparison, Venn diagram, ES distributions, rank histogram\n")
            f.write("- `randomizations/random_<index>.tsv`: ES and NES of each randomized run\n")

        self.logger.info(f"Saved README to {readme_file}")
