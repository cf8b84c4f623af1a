"""
Differential expression with edgeR, run through Rscript.

The statistics are left entirely to edgeR. Python writes the class labels,
runs a fixed R script on the filtered count table and reads back the
topTags table.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence, Union

import polars as pl

from gseaperm.errors import DependencyError, ExternalToolError
from gseaperm.utils import run_command

logger = logging.getLogger(__name__)

DE_COLUMNS = ['gene', 'logFC', 'logCPM', 'PValue', 'FDR']

EXACT_TEST_SCRIPT = """\
args <- commandArgs(trailingOnly = TRUE)
counts_file <- args[1]
classes_file <- args[2]
output_file <- args[3]

suppressPackageStartupMessages(library(edgeR))

counts <- read.delim(counts_file, row.names = 1, check.names = FALSE)
classes <- read.delim(classes_file, colClasses = "character")
if (!identical(colnames(counts), classes$sample)) {
    stop("Sample columns do not match the class file")
}

group <- factor(classes$class, levels = unique(classes$class))
d <- DGEList(counts = as.matrix(counts), group = group)
d <- calcNormFactors(d)
design <- model.matrix(~group)
d <- estimateDisp(d, design)
et <- exactTest(d, pair = levels(group)[1:2])
tt <- topTags(et, n = nrow(d), sort.by = "none")$table

out <- data.frame(gene = rownames(tt), tt, check.names = FALSE)
write.table(out, output_file, sep = "\\t", quote = FALSE, row.names = FALSE)
"""

CHECK_SCRIPT = 'cat(requireNamespace("edgeR", quietly = TRUE))'

INSTALL_SCRIPT = """\
if (!requireNamespace("BiocManager", quietly = TRUE)) {
    install.packages("BiocManager", repos = "https://cloud.r-project.org")
}
BiocManager::install("edgeR", ask = FALSE, update = FALSE)
"""


class EdgeRRunner:
    """Runs an edgeR exact test on a count table file."""

    def __init__(
        self,
        rscript: str = 'Rscript',
        timeout: Optional[float] = 600,
        install_missing: bool = False,
    ):
        self.rscript = rscript
        self.timeout = timeout
        self.install_missing = install_missing

    def _edger_loadable(self) -> bool:
        result = run_command([self.rscript, '-e', CHECK_SCRIPT], 'edgeR check', timeout=120)
        return result.stdout.strip().endswith('TRUE')

    def check_available(self) -> None:
        """
        Make sure Rscript and edgeR can be used, installing edgeR if allowed.

        Raises:
            DependencyError: With instructions when edgeR cannot be used
        """
        try:
            if self._edger_loadable():
                logger.debug("edgeR is available")
                return
        except DependencyError:
            raise DependencyError(
                f"Rscript executable '{self.rscript}' not found. Install R or set edger.rscript in the configuration."
            )

        if not self.install_missing:
            raise DependencyError(
                "The edgeR R package is not installed. Run BiocManager::install('edgeR') in R, "
                "or set edger.install_missing = true to let the pipeline try."
            )

        logger.warning("edgeR not found; attempting installation through BiocManager")
        try:
            run_command([self.rscript, '-e', INSTALL_SCRIPT], 'edgeR installation', timeout=3600)
        except ExternalToolError as e:
            raise DependencyError(f"Could not install edgeR: {e}")

        if not self._edger_loadable():
            raise DependencyError("edgeR installation finished but the package still cannot be loaded")
        logger.info("Installed edgeR")

    def run(
        self,
        counts_path: Union[str, Path],
        samples: Sequence[str],
        labels: Sequence[str],
        work_dir: Union[str, Path],
        name: str = 'real',
    ) -> pl.DataFrame:
        """
        Run the exact test for one labelling of the samples.

        Args:
            counts_path: Tab-separated count table (gene ids in the first column)
            samples: Sample names in column order
            labels: Class label of each sample
            work_dir: Directory for the class file, script and result table
            name: Prefix for files written to work_dir

        Returns:
            DataFrame with gene, logFC, logCPM, PValue and FDR columns

        Raises:
            ExternalToolError: If Rscript fails, times out or writes no table
        """
        if len(samples) != len(labels):
            raise ValueError(f"{len(samples)} samples but {len(labels)} labels")

        work_dir = Path(work_dir)
        classes_path = work_dir / f"{name}_classes.tsv"
        output_path = work_dir / f"{name}_edger.tsv"
        script_path = work_dir / f"{name}_exact_test.R"

        pl.DataFrame({'sample': list(samples), 'class': [str(label) for label in labels]}).write_csv(
            classes_path, separator='\t', quote_style='never'
        )
        script_path.write_text(EXACT_TEST_SCRIPT)

        command = [self.rscript, script_path, counts_path, classes_path, output_path]
        run_command(command, f'edgeR ({name})', timeout=self.timeout)

        if not output_path.is_file():
            raise ExternalToolError(f"edgeR ({name}) did not write {output_path}", command=command)

        return load_de_table(output_path)


def load_de_table(file_path: Union[str, Path]) -> pl.DataFrame:
    """Load an edgeR result table written by the exact test script."""
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        quote_char=None,
        null_values=['NA'],
    )
    missing = [col for col in DE_COLUMNS if col not in df.columns]
    if missing:
        raise ExternalToolError(f"edgeR table {file_path} is missing columns: {', '.join(missing)}")

    return df.select(
        pl.col('gene').cast(pl.Utf8),
        *[pl.col(col).cast(pl.Float64) for col in DE_COLUMNS[1:]],
    )
