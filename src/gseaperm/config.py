"""Configuration handling for the randomized enrichment pipeline."""

import tomli
import tomli_w
from pathlib import Path
from typing import Any, Dict, Optional, Union

from gseaperm.utils import default_worker_count


DEFAULT_ITERATIONS = 1000

GSEA_DEFAULTS = {
    'java': 'java',
    'memory': '4g',
    'permutations': 1000,
    'permute': 'gene_set',
    'scoring_scheme': 'weighted',
    'set_min': 15,
    'set_max': 200,
    'timeout': 1800,
    'main_class': 'xtools.gsea.GseaPreranked',
    'collapse': 'false',
}

EDGER_DEFAULTS = {
    'rscript': 'Rscript',
    'install_missing': False,
    'timeout': 600,
}

RANDOMIZATION_DEFAULTS = {
    'run': True,
    'iterations': DEFAULT_ITERATIONS,
    'gsea_permutations': 100,
    'timeout': 3600,
}

CYTOSCAPE_DEFAULTS = {
    'run': False,
    'base_url': 'http://localhost:1234/v1',
    'timeout': 30,
    'pvalue': 1.0,
    'qvalue': 0.05,
    'similarity_cutoff': 0.375,
    'coefficients': 'COMBINED',
    'cluster_algorithm': 'MCL',
    'max_words': 3,
}


class PipelineConfig:
    """Configuration class for the randomized enrichment pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['counts_file', 'classes_file', 'gmt_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})

        # Missing keys fall back to the defaults, so every consumer sees the same values
        self.edger = {**EDGER_DEFAULTS, **self.config.get("edger", {})}
        self.gsea = {**GSEA_DEFAULTS, **self.config.get("gsea", {})}
        self.randomization = {**RANDOMIZATION_DEFAULTS, **self.config.get("randomization", {})}
        self.cytoscape = {**CYTOSCAPE_DEFAULTS, **self.config.get("cytoscape", {})}

        self.id_column = self.analysis_params.get("id_column", "gene")
        self.id_separator = self.analysis_params.get("id_separator", "|")
        self.symbol_index = self.analysis_params.get("symbol_index", 0)
        self.min_cpm = float(self.analysis_params.get("min_cpm", 1.0))
        self.min_samples = self.analysis_params.get("min_samples", None)
        self.seed = int(self.analysis_params.get("seed", 42))
        self.fdr_threshold = float(self.analysis_params.get("fdr_threshold", 0.05))
        self.num_threads = default_worker_count(self.analysis_params.get("num_threads"))

        if int(self.randomization['iterations']) < 1:
            raise ValueError("randomization.iterations must be at least 1")

    @property
    def iterations(self) -> int:
        """Number of class-label randomizations to run."""
        return int(self.randomization['iterations'])

    @property
    def fdr_denominator(self) -> int:
        """Denominator of the empirical FDR.

        Equal to the number of randomizations unless explicitly overridden.
        """
        return int(self.randomization.get('denominator', self.iterations))

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("directory", self.output_config.get("output_dir", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def to_dict(self) -> Dict[str, Any]:
        """Effective configuration, with defaults filled in."""
        effective = dict(self.config)
        effective['edger'] = dict(self.edger)
        effective['gsea'] = dict(self.gsea)
        effective['randomization'] = dict(self.randomization)
        effective['cytoscape'] = dict(self.cytoscape)
        return effective

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.to_dict(), f)
