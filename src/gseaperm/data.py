"""
Utility functions for reading and writing the pipeline's tabular files.

Every exchange with the external tools goes through plain files: count
tables and class labels in, `.rnk`/`.cls` files to GSEA, and GSEA's
tab-separated enrichment reports back out.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Union
import logging

import numpy as np
import polars as pl

from gseaperm.errors import ReportSchemaError, ValidationError

logger = logging.getLogger(__name__)

# Required and optional columns of an enrichment report, after header normalisation
REPORT_REQUIRED_COLUMNS = {
    'NAME': pl.Utf8,
    'ES': pl.Float64,
    'NES': pl.Float64,
    'FDR.q.val': pl.Float64,
}
REPORT_OPTIONAL_COLUMNS = {
    'SIZE': pl.Int64,
    'NOM.p.val': pl.Float64,
    'FWER.p.val': pl.Float64,
}
# GSEA leaves these in cells it could not compute
REPORT_NULL_TOKENS = ['', '---', 'NaN', 'nan', 'NA']

POPULATION_COLUMNS = ['NAME', 'ES', 'NES']


@dataclass(frozen=True)
class GeneSet:
    """A named gene set from a GMT file."""

    name: str
    description: str
    genes: FrozenSet[str]

    def __len__(self):
        return len(self.genes)


def load_counts(file_path: Union[str, Path], id_column: str = 'gene') -> pl.DataFrame:
    """
    Load a gene x sample count table.

    Args:
        file_path: Path to a tab-separated count table with a header row
        id_column: Name of the gene identifier column

    Returns:
        DataFrame with the identifier column followed by one column per sample
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
    )

    if id_column not in df.columns:
        raise ValidationError(
            f"Count table {file_path} has no '{id_column}' column. "
            f"Found: {', '.join(df.columns[:5])}"
        )
    df = df.with_columns(pl.col(id_column).cast(pl.Utf8))

    samples = [col for col in df.columns if col != id_column]
    if not samples:
        raise ValidationError(f"Count table {file_path} has no sample columns")

    non_numeric = [col for col in samples if not df.schema[col].is_numeric()]
    if non_numeric:
        raise ValidationError(f"Non-numeric sample columns in count table: {', '.join(non_numeric)}")

    return df.select([id_column] + samples)


def load_classes(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load per-sample class labels.

    Args:
        file_path: Tab-separated file with 'sample' and 'class' columns

    Returns:
        DataFrame with 'sample' and 'class' columns, in file order
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        infer_schema_length=0,
    )

    missing = [col for col in ('sample', 'class') if col not in df.columns]
    if missing:
        raise ValidationError(f"Class file {file_path} is missing columns: {', '.join(missing)}")

    return df.select(['sample', 'class'])


def sample_columns(counts: pl.DataFrame, id_column: str = 'gene') -> List[str]:
    """Sample column names of a count table, in order."""
    return [col for col in counts.columns if col != id_column]


def validate_sample_order(
    counts: pl.DataFrame,
    classes: pl.DataFrame,
    id_column: str = 'gene',
) -> List[str]:
    """
    Check that count table columns and class labels describe the same samples in the same order.

    Args:
        counts: Count table
        classes: Class labels from load_classes
        id_column: Gene identifier column of the count table

    Returns:
        The class labels, in sample order

    Raises:
        ValidationError: On any mismatch, or if fewer than two classes are present
    """
    count_samples = sample_columns(counts, id_column)
    class_samples = classes['sample'].to_list()

    if len(count_samples) != len(class_samples):
        raise ValidationError(
            f"Count table has {len(count_samples)} samples but class file has {len(class_samples)}"
        )

    mismatched = [
        (i, c, s) for i, (c, s) in enumerate(zip(count_samples, class_samples)) if c != s
    ]
    if mismatched:
        i, c, s = mismatched[0]
        raise ValidationError(
            f"Sample order mismatch at position {i}: count column '{c}' vs class sample '{s}' "
            f"({len(mismatched)} mismatched positions)"
        )

    labels = classes['class'].to_list()
    if len(set(labels)) < 2:
        raise ValidationError("At least two distinct classes are required")

    return labels


def split_gene_ids(
    df: pl.DataFrame,
    id_column: str = 'gene',
    separator: Optional[str] = '|',
    symbol_index: int = 0,
) -> pl.DataFrame:
    """
    Reformat compound gene identifiers (e.g. 'SYMBOL|ENTREZ') into gene symbols.

    Rows whose symbol is empty or '?' are dropped and duplicated symbols keep
    their first occurrence.

    Args:
        df: Table with an identifier column
        id_column: Identifier column to rewrite
        separator: Separator inside identifiers; None or '' leaves ids unchanged
        symbol_index: Position of the symbol within the split identifier

    Returns:
        DataFrame with the identifier column replaced by gene symbols
    """
    if separator:
        symbols = (
            pl.col(id_column)
            .str.split(separator)
            .list.get(symbol_index, null_on_oob=True)
            .str.strip_chars()
        )
        df = df.with_columns(symbols.alias(id_column))

    before = df.height
    df = df.filter(
        pl.col(id_column).is_not_null()
        & (pl.col(id_column) != '')
        & (pl.col(id_column) != '?')
    ).unique(subset=[id_column], keep='first', maintain_order=True)

    dropped = before - df.height
    if dropped:
        logger.info(f"Dropped {dropped} rows with missing or duplicated gene symbols")

    return df


def calculate_cpm(counts: np.ndarray) -> np.ndarray:
    """
    Counts per million for a genes x samples matrix.

    Args:
        counts: 2D array of raw counts

    Returns:
        2D array of the same shape
    """
    counts = np.asarray(counts, dtype=np.float64)
    library_sizes = counts.sum(axis=0)
    library_sizes[library_sizes == 0] = 1.0
    return counts / library_sizes * 1e6


def filter_by_cpm(
    counts: pl.DataFrame,
    id_column: str = 'gene',
    min_cpm: float = 1.0,
    min_samples: int = 1,
) -> pl.DataFrame:
    """
    Keep genes expressed above a CPM threshold in enough samples.

    Args:
        counts: Count table
        id_column: Gene identifier column
        min_cpm: CPM a sample must exceed to count as expressed
        min_samples: Number of samples that must express the gene

    Returns:
        Filtered count table
    """
    samples = sample_columns(counts, id_column)
    cpm = calculate_cpm(counts.select(samples).to_numpy())
    keep = (cpm > min_cpm).sum(axis=1) >= min_samples

    filtered = counts.filter(pl.Series(keep))
    logger.info(
        f"Kept {filtered.height}/{counts.height} genes with CPM > {min_cpm} in at least {min_samples} samples"
    )
    return filtered


def write_rnk(ranks: pl.DataFrame, file_path: Union[str, Path]) -> Path:
    """
    Write a GSEA rank file.

    Args:
        ranks: DataFrame with 'GeneName' and 'rank' columns
        file_path: Output path

    Returns:
        The output path
    """
    file_path = Path(file_path)
    (
        ranks.select(['GeneName', 'rank'])
        .sort('rank', descending=True, maintain_order=True)
        .write_csv(file_path, separator='\t', quote_style='never')
    )
    return file_path


def write_cls(labels: Sequence[str], file_path: Union[str, Path]) -> Path:
    """
    Write a GSEA categorical class file.

    Args:
        labels: One class label per sample, in sample order
        file_path: Output path

    Returns:
        The output path
    """
    file_path = Path(file_path)
    labels = [str(label) for label in labels]
    classes = list(dict.fromkeys(labels))

    with open(file_path, 'w') as f:
        f.write(f"{len(labels)} {len(classes)} 1\n")
        f.write("# " + " ".join(classes) + " \n")
        f.write("\t".join(labels) + "\n")

    return file_path


def load_gmt(file_path: Union[str, Path]) -> Dict[str, GeneSet]:
    """
    Load gene set definitions from a GMT file.

    Args:
        file_path: Path to the GMT file

    Returns:
        Dictionary mapping gene set name to GeneSet
    """
    gene_sets = {}
    with open(file_path) as f:
        for line_number, line in enumerate(f, start=1):
            fields = line.rstrip('\n').rstrip('\r').split('\t')
            if not fields[0]:
                continue
            if len(fields) < 3:
                raise ValidationError(f"{file_path}:{line_number}: expected name, description and genes")
            name, description = fields[0], fields[1]
            genes = frozenset(g for g in fields[2:] if g)
            if name in gene_sets:
                logger.warning(f"Duplicate gene set '{name}' in {file_path}; keeping the last definition")
            gene_sets[name] = GeneSet(name, description, genes)

    return gene_sets


def _normalise_header(name: str) -> str:
    return name.strip().replace(' ', '.').replace('-', '.')


def _parse_column(df: pl.DataFrame, column: str, dtype, file_path) -> pl.Series:
    raw = pl.col(column).str.strip_chars()
    if dtype == pl.Utf8:
        return df.select(raw.alias(column)).to_series()

    missing = raw.is_null() | raw.is_in(REPORT_NULL_TOKENS)
    parsed = raw.cast(pl.Float64, strict=False)
    checked = df.select(
        pl.when(missing).then(None).otherwise(parsed).alias(column),
        (parsed.is_null() & ~missing).alias('bad'),
        raw.alias('raw'),
    )

    if checked['bad'].any():
        examples = checked.filter(pl.col('bad'))['raw'].head(3).to_list()
        raise ReportSchemaError(f"Unparseable values in column {column} of {file_path}: {examples}")

    values = checked[column]
    if dtype == pl.Int64:
        return values.cast(pl.Int64, strict=False)
    return values


def load_enrichment_report(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load a GSEA enrichment report with an explicit schema.

    Header names are normalised the way R's read.table does it, so both
    'FDR q-val' and 'FDR.q.val' are accepted.

    Args:
        file_path: Path to a tab-separated report (.tsv or .xls)

    Returns:
        DataFrame with NAME, ES, NES and FDR.q.val plus any optional columns present

    Raises:
        ReportSchemaError: If required columns are missing or values do not parse
    """
    try:
        df = pl.read_csv(
            file_path,
            separator='\t',
            has_header=True,
            infer_schema_length=0,
            quote_char=None,
            truncate_ragged_lines=True,
        )
    except pl.exceptions.NoDataError:
        raise ReportSchemaError(f"Enrichment report {file_path} is empty")

    df = df.rename({col: _normalise_header(col) for col in df.columns})
    # GSEA ends each line with a tab, which shows up as an unnamed column
    df = df.select([col for col in df.columns if col and not col.startswith('_')])

    missing = [col for col in REPORT_REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ReportSchemaError(f"Enrichment report {file_path} is missing columns: {', '.join(missing)}")

    schema = dict(REPORT_REQUIRED_COLUMNS)
    schema.update({col: dtype for col, dtype in REPORT_OPTIONAL_COLUMNS.items() if col in df.columns})

    report = pl.DataFrame([_parse_column(df, col, dtype, file_path) for col, dtype in schema.items()])

    if report['NAME'].is_null().any() or report['ES'].is_null().any():
        raise ReportSchemaError(f"Enrichment report {file_path} has rows without NAME or ES")

    return report


def load_gsea_results(report_paths: Iterable[Union[str, Path]]) -> pl.DataFrame:
    """
    Combine the reports of one GSEA run (positive and negative tails).

    Args:
        report_paths: Report files to combine

    Returns:
        Single DataFrame with one row per gene set
    """
    reports = [load_enrichment_report(path) for path in report_paths]
    if not reports:
        raise ReportSchemaError("No enrichment reports to load")

    combined = pl.concat(reports, how='diagonal')
    duplicated = combined.filter(pl.col('NAME').is_duplicated())['NAME'].unique().to_list()
    if duplicated:
        logger.warning(f"{len(duplicated)} gene sets appear in more than one report; keeping the first")
        combined = combined.unique(subset=['NAME'], keep='first', maintain_order=True)

    return combined


def write_population_table(records: pl.DataFrame, file_path: Union[str, Path]) -> Path:
    """
    Write one randomized run's enrichment scores.

    Args:
        records: DataFrame with NAME, ES and NES columns
        file_path: Output path

    Returns:
        The output path
    """
    file_path = Path(file_path)
    records.select(POPULATION_COLUMNS).write_csv(file_path, separator='\t', quote_style='never')
    return file_path


def load_population_table(file_path: Union[str, Path]) -> pl.DataFrame:
    """
    Load one randomized run's enrichment scores.

    Raises:
        ReportSchemaError: If the file does not have the expected columns or a row lacks NAME or ES
    """
    try:
        df = pl.read_csv(
            file_path,
            separator='\t',
            has_header=True,
            quote_char=None,
        )
        missing = [col for col in POPULATION_COLUMNS if col not in df.columns]
        if missing:
            raise ReportSchemaError(f"Population table {file_path} is missing columns: {', '.join(missing)}")
        df = df.select(
            pl.col('NAME').cast(pl.Utf8),
            pl.col('ES').cast(pl.Float64),
            pl.col('NES').cast(pl.Float64),
        )
        if df['NAME'].is_null().any() or df['ES'].is_null().any() or df['ES'].is_nan().any():
            raise ReportSchemaError(f"Population table {file_path} has rows without NAME or ES")
        return df
    except pl.exceptions.PolarsError as e:
        raise ReportSchemaError(f"Malformed population table {file_path}: {e}")
