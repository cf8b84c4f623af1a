"""
Plots of randomization results: null ES distributions, agreement between
GSEA and empirical FDR, and the overlap of significant gene sets.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union
import re

import numpy as np
import pandas as pd
import polars as pl
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib_venn import venn2

from gseaperm.stats import RandomizationPopulation


def _safe_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', name)[:100]


def plot_es_distribution(
    name: str,
    observed_es: float,
    population_es: Sequence[float],
    output_path: Union[str, Path],
    empirical_fdr: Optional[float] = None,
) -> Path:
    """
    Histogram of a gene set's randomized ES with the observed ES marked.

    Args:
        name: Gene set name
        observed_es: ES of the real comparison
        population_es: ES values under randomized labels
        output_path: Image file to write
        empirical_fdr: Shown in the title when given

    Returns:
        The image path
    """
    values = np.asarray(population_es, dtype=float)
    values = values[np.isfinite(values)]
    if values.size == 0:
        raise ValueError(f"No finite randomized scores for {name}")

    output_path = Path(output_path)
    plt.figure(figsize=(8, 5))
    plt.hist(values, bins=min(50, max(10, values.size // 10)), color="grey", alpha=0.7, label="Randomized ES")
    plt.axvline(observed_es, color="red", linestyle="--", linewidth=2, label=f"Observed ES = {observed_es:.3f}")

    title = name
    if empirical_fdr is not None:
        title += f" (empirical FDR = {empirical_fdr:.3g})"
    plt.title(title)
    plt.xlabel("Enrichment score")
    plt.ylabel("Randomized runs")
    plt.legend()
    plt.tight_layout()
    plt.savefig(output_path, bbox_inches="tight")
    plt.close()
    return output_path


def plot_top_distributions(
    table: pl.DataFrame,
    population: RandomizationPopulation,
    output_dir: Union[str, Path],
    n: int = 10,
) -> list:
    """ES distribution plots for the n gene sets with the lowest empirical FDR."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    top = table.filter(~pl.col('missing_population')).head(n)
    paths = []
    for name, es, fdr in top.select(['NAME', 'ES', 'empirical_fdr']).iter_rows():
        paths.append(plot_es_distribution(
            name, es, population.es(name), output_dir / f"es_distribution_{_safe_name(name)}.png", fdr
        ))
    return paths


def plot_fdr_comparison(
    table: pl.DataFrame,
    output_path: Union[str, Path],
    threshold: float = 0.05,
    empirical_column: str = 'empirical_fdr',
) -> Path:
    """Scatter plot of GSEA FDR against empirical FDR, one point per gene set."""
    output_path = Path(output_path)
    data = (
        table.select(['NAME', 'NES', 'gsea_fdr', empirical_column])
        .drop_nulls(['gsea_fdr', empirical_column])
        .with_columns(
            pl.when(pl.col('NES') >= 0).then(pl.lit('positive')).otherwise(pl.lit('negative')).alias('direction')
        )
    )
    data = pd.DataFrame(data.to_dict(as_series=False))

    plt.figure(figsize=(7, 7))
    if len(data) > 0:
        sns.scatterplot(data=data, x='gsea_fdr', y=empirical_column, hue='direction', alpha=0.7, s=25)
    plt.axhline(threshold, color="grey", linestyle=":")
    plt.axvline(threshold, color="grey", linestyle=":")
    plt.plot([0, 1], [0, 1], color="black", linewidth=0.8)
    plt.xlabel("GSEA FDR q-value")
    plt.ylabel("Empirical FDR")
    plt.title("GSEA vs randomization FDR")
    plt.tight_layout()
    plt.savefig(output_path, bbox_inches="tight")
    plt.close()
    return output_path


def plot_significance_venn(
    comparison: Dict[str, Any],
    output_path: Union[str, Path],
    labels: Sequence[str] = ("GSEA FDR", "Empirical FDR"),
) -> Path:
    """
    Venn diagram of gene sets significant by GSEA FDR and by empirical FDR.

    Args:
        comparison: Output of stats.compare_significance
        output_path: Image file to write
        labels: Names of the two circles

    Returns:
        The image path
    """
    output_path = Path(output_path)
    subsets = (
        len(comparison['gsea_only']),
        len(comparison['empirical_only']),
        len(comparison['both']),
    )

    set_sizes = (subsets[0] + subsets[2], subsets[1] + subsets[2])

    plt.figure(figsize=(6, 6))
    if min(set_sizes) > 0:
        venn2(subsets=subsets, set_labels=tuple(labels))
    else:
        # venn2 cannot place a circle of zero area
        text = "\n".join(f"{label}: {size}" for label, size in zip(labels, set_sizes))
        plt.text(0.5, 0.5, text, ha="center", va="center")
        plt.axis("off")
    plt.title(f"Significant gene sets (FDR < {comparison['threshold']})")
    plt.tight_layout()
    plt.savefig(output_path, bbox_inches="tight")
    plt.close()
    return output_path


def plot_rank_distribution(ranks: pl.DataFrame, output_path: Union[str, Path]) -> Path:
    """Histogram of the signed ranking statistic."""
    output_path = Path(output_path)
    values = ranks['rank'].to_numpy()

    plt.figure(figsize=(8, 5))
    sns.histplot(values, bins=100, color="steelblue")
    plt.xlabel("sign(logFC) * -log10(p)")
    plt.ylabel("Genes")
    plt.title(f"Rank distribution ({len(values)} genes)")
    plt.tight_layout()
    plt.savefig(output_path, bbox_inches="tight")
    plt.close()
    return output_path
