"""
Statistical functions for randomization-based enrichment analysis.

The enrichment scores themselves come from GSEA; this module only compares
the observed scores with the scores collected under label randomization.
"""

from typing import Any, Dict, Iterable, List, Sequence, Union
import logging

import numba as nb
import numpy as np
import polars as pl
from scipy import stats
from statsmodels.stats.multitest import multipletests

from gseaperm.errors import MissingPopulationError

logger = logging.getLogger(__name__)

DEFAULT_RANDOMIZATIONS = 1000


@nb.njit
def _count_more_extreme(observed: float, population) -> int:
    """
    Count population members beyond the observed score, on the observed score's side of zero.

    Strictly less than a negative score, strictly greater otherwise.
    """
    count = 0
    if observed < 0:
        for i in range(len(population)):
            if population[i] < observed:
                count += 1
    else:
        for i in range(len(population)):
            if population[i] > observed:
                count += 1
    return count


def estimate_fdr(
    observed_es: float,
    random_es_population: Sequence[float],
    n_randomizations: int = DEFAULT_RANDOMIZATIONS,
) -> float:
    """
    Empirical FDR of an observed enrichment score against its randomization population.

    The count of more extreme randomized scores is divided by n_randomizations,
    not by the population size. When the two differ the result is not a true
    proportion and can exceed 1.

    Args:
        observed_es: Observed enrichment score (any finite value, zero included)
        random_es_population: Scores of the same gene set under randomized labels
        n_randomizations: Denominator, normally the configured number of randomizations

    Returns:
        Empirical FDR estimate
    """
    population = np.asarray(random_es_population, dtype=np.float64)
    if population.size == 0:
        raise ValueError("Randomization population cannot be empty")
    if n_randomizations <= 0:
        raise ValueError("Number of randomizations must be positive")
    if not np.isfinite(observed_es):
        raise ValueError(f"Observed enrichment score must be finite, got {observed_es}")

    count = _count_more_extreme(float(observed_es), population)
    return count / n_randomizations


def permute_labels(
    labels: Sequence[Any],
    rng: Union[np.random.Generator, int, None] = None,
) -> List[Any]:
    """
    Uniformly random reordering of class labels.

    The labels are shuffled, not redrawn, so every class keeps its size.

    Args:
        labels: Per-sample class labels
        rng: numpy Generator or seed

    Returns:
        Permuted labels
    """
    if not isinstance(rng, np.random.Generator):
        rng = np.random.default_rng(rng)
    order = rng.permutation(len(labels))
    return [labels[i] for i in order]


class RandomizationPopulation:
    """
    Enrichment scores of each gene set across randomized runs.

    Built one run at a time, then frozen before FDR estimation.
    """

    def __init__(self):
        self._es: Dict[str, List[float]] = {}
        self._nes: Dict[str, List[float]] = {}
        self._iterations = set()
        self._frozen = False

    def add_run(self, iteration: int, records: pl.DataFrame) -> None:
        """Add the NAME/ES/NES rows of one randomized run."""
        if self._frozen:
            raise RuntimeError("Randomization population is frozen")
        if iteration in self._iterations:
            raise ValueError(f"Iteration {iteration} already added")

        self._iterations.add(iteration)
        for name, es, nes in records.select(['NAME', 'ES', 'NES']).iter_rows():
            self._es.setdefault(name, []).append(es)
            self._nes.setdefault(name, []).append(float('nan') if nes is None else nes)

    def freeze(self) -> "RandomizationPopulation":
        """Make the population read-only."""
        if not self._frozen:
            self._es = {k: np.asarray(v, dtype=np.float64) for k, v in self._es.items()}
            self._nes = {k: np.asarray(v, dtype=np.float64) for k, v in self._nes.items()}
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def n_runs(self) -> int:
        return len(self._iterations)

    @property
    def iterations(self) -> List[int]:
        return sorted(self._iterations)

    @property
    def gene_sets(self) -> List[str]:
        return sorted(self._es)

    def __contains__(self, name: str) -> bool:
        return name in self._es

    def __len__(self) -> int:
        return len(self._es)

    def es(self, name: str) -> np.ndarray:
        if name not in self._es:
            raise MissingPopulationError(name)
        return np.asarray(self._es[name], dtype=np.float64)

    def nes(self, name: str) -> np.ndarray:
        if name not in self._nes:
            raise MissingPopulationError(name)
        return np.asarray(self._nes[name], dtype=np.float64)

    def size(self, name: str) -> int:
        return len(self.es(name))

    def fdr(self, name: str, observed_es: float, n_randomizations: int = DEFAULT_RANDOMIZATIONS) -> float:
        """Empirical FDR for a named gene set; raises MissingPopulationError if absent."""
        return estimate_fdr(observed_es, self.es(name), n_randomizations)

    @classmethod
    def merge(cls, populations: Iterable["RandomizationPopulation"]) -> "RandomizationPopulation":
        """Combine populations built independently (e.g. one per worker)."""
        merged = cls()
        for population in populations:
            overlap = merged._iterations & population._iterations
            if overlap:
                raise ValueError(f"Iterations present in more than one population: {sorted(overlap)}")
            merged._iterations |= population._iterations
            for name, values in population._es.items():
                merged._es.setdefault(name, []).extend(values)
            for name, values in population._nes.items():
                merged._nes.setdefault(name, []).extend(values)
        return merged

    def summary(self) -> pl.DataFrame:
        """Per gene set size, mean, standard deviation and range of the randomized ES."""
        rows = []
        for name in self.gene_sets:
            values = self.es(name)
            rows.append({
                'NAME': name,
                'n': len(values),
                'mean_es': float(np.nanmean(values)),
                'sd_es': float(np.nanstd(values, ddof=1)) if len(values) > 1 else float('nan'),
                'min_es': float(np.nanmin(values)),
                'max_es': float(np.nanmax(values)),
            })
        return pl.DataFrame(rows, schema={
            'NAME': pl.Utf8, 'n': pl.Int64, 'mean_es': pl.Float64,
            'sd_es': pl.Float64, 'min_es': pl.Float64, 'max_es': pl.Float64,
        })


def compute_rank_scores(de_table: pl.DataFrame, id_column: str = 'gene') -> pl.DataFrame:
    """
    Signed ranking statistic from a differential expression table.

    rank = sign(logFC) * -log10(PValue). P-values of zero are clipped to the
    smallest positive double so the rank stays finite.

    Args:
        de_table: Table with the identifier column, logFC and PValue
        id_column: Gene identifier column

    Returns:
        DataFrame with GeneName and rank columns
    """
    tiny = float(np.finfo(np.float64).tiny)
    return de_table.select(
        pl.col(id_column).alias('GeneName'),
        (
            pl.col('logFC').sign()
            * -pl.col('PValue').clip(lower_bound=tiny).log10()
        ).alias('rank'),
    ).drop_nulls()


def empirical_fdr_table(
    observed: pl.DataFrame,
    population: RandomizationPopulation,
    n_randomizations: int = DEFAULT_RANDOMIZATIONS,
) -> pl.DataFrame:
    """
    Empirical FDR for every gene set of an observed GSEA run.

    Gene sets without a randomization population get null FDR values and
    missing_population = True rather than an FDR of zero.

    Args:
        observed: GSEA results of the real comparison (NAME, ES, NES, FDR.q.val)
        population: Randomization population
        n_randomizations: Denominator for estimate_fdr

    Returns:
        DataFrame sorted by empirical FDR
    """
    rows = []
    missing = 0
    for name, es, nes, gsea_fdr in observed.select(['NAME', 'ES', 'NES', 'FDR.q.val']).iter_rows():
        row = {
            'NAME': name,
            'ES': es,
            'NES': nes,
            'gsea_fdr': gsea_fdr,
            'population_size': 0,
            'empirical_fdr': None,
            'empirical_fdr_nes': None,
            'missing_population': False,
        }
        try:
            row['empirical_fdr'] = population.fdr(name, es, n_randomizations)
            row['population_size'] = population.size(name)
            random_nes = population.nes(name)
            random_nes = random_nes[~np.isnan(random_nes)]
            if nes is not None and np.isfinite(nes) and random_nes.size > 0:
                row['empirical_fdr_nes'] = estimate_fdr(nes, random_nes, n_randomizations)
        except MissingPopulationError:
            row['missing_population'] = True
            missing += 1
        rows.append(row)

    if missing:
        logger.warning(f"{missing} gene sets have no randomization population")

    table = pl.DataFrame(rows, schema={
        'NAME': pl.Utf8,
        'ES': pl.Float64,
        'NES': pl.Float64,
        'gsea_fdr': pl.Float64,
        'population_size': pl.Int64,
        'empirical_fdr': pl.Float64,
        'empirical_fdr_nes': pl.Float64,
        'missing_population': pl.Boolean,
    })

    return table.with_columns(
        adjust_fdr(table['empirical_fdr']).alias('empirical_fdr_bh')
    ).sort('empirical_fdr', nulls_last=True, maintain_order=True)


def adjust_fdr(values: pl.Series) -> pl.Series:
    """
    Benjamini-Hochberg adjustment of empirical values, ignoring nulls.

    Values above 1 (possible when the population outgrows the denominator)
    are clipped to 1 first.
    """
    adjusted = np.full(len(values), np.nan)
    present = values.is_not_null().to_numpy()
    if present.any():
        raw = np.clip(values.to_numpy()[present].astype(np.float64), 0.0, 1.0)
        _, corrected, _, _ = multipletests(raw, method='fdr_bh')
        adjusted[present] = corrected
    return pl.Series(values.name, adjusted).fill_nan(None)


def compare_significance(
    table: pl.DataFrame,
    threshold: float = 0.05,
    empirical_column: str = 'empirical_fdr',
) -> Dict[str, Any]:
    """
    Compare gene sets called significant by GSEA FDR and by empirical FDR.

    Args:
        table: Output of empirical_fdr_table
        threshold: FDR cutoff applied to both columns
        empirical_column: Which empirical column to use

    Returns:
        Dictionary with the significant sets, their overlap and agreement statistics
    """
    gsea_sig = set(table.filter(pl.col('gsea_fdr') < threshold)['NAME'].to_list())
    empirical_sig = set(table.filter(pl.col(empirical_column) < threshold)['NAME'].to_list())

    both = gsea_sig & empirical_sig
    either = gsea_sig | empirical_sig
    jaccard = len(both) / len(either) if either else float('nan')

    paired = table.select(['gsea_fdr', empirical_column]).drop_nulls()
    if paired.height >= 3:
        rho, p_value = stats.spearmanr(paired['gsea_fdr'].to_numpy(), paired[empirical_column].to_numpy())
        rho, p_value = float(rho), float(p_value)
    else:
        rho, p_value = float('nan'), float('nan')

    return {
        'threshold': threshold,
        'gsea_significant': sorted(gsea_sig),
        'empirical_significant': sorted(empirical_sig),
        'both': sorted(both),
        'gsea_only': sorted(gsea_sig - empirical_sig),
        'empirical_only': sorted(empirical_sig - gsea_sig),
        'n_gene_sets': table.height,
        'n_missing_population': int(table['missing_population'].sum()),
        'jaccard': jaccard,
        'spearman_rho': rho,
        'spearman_p': p_value,
    }
