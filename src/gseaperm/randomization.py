"""
Class-label randomization loop.

Each iteration permutes the sample labels, reruns edgeR and GSEA on the
permuted labelling and records the enrichment score of every gene set.
Iterations share nothing but the read-only inputs; each writes its own
'random_<index>.tsv', and the per-iteration results are merged into a
RandomizationPopulation only after all workers have finished.
"""

import logging
import multiprocessing
import platform
import shutil
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import polars as pl
from tqdm.auto import tqdm

from gseaperm.data import (
    POPULATION_COLUMNS,
    load_gsea_results,
    load_population_table,
    write_cls,
    write_population_table,
    write_rnk,
)
from gseaperm.edger import EdgeRRunner
from gseaperm.errors import ExternalToolError, ReportSchemaError
from gseaperm.gsea import GseaRunner
from gseaperm.stats import RandomizationPopulation, compute_rank_scores, permute_labels
from gseaperm.utils import default_worker_count, ensure_dir

logger = logging.getLogger(__name__)

is_mac = platform.system() == 'Darwin'
tqdm_kwargs = {
    'position': 0,
    'leave': True,
    'dynamic_ncols': True,
    'ascii': is_mac,  # ASCII bars render better in the macOS terminal
}


def result_path(out_dir, iteration: int) -> Path:
    """Per-iteration output file; the name is unique to the iteration."""
    return Path(out_dir) / f"random_{iteration:04d}.tsv"


@dataclass
class RandomizationTask:
    """Everything a worker needs for one iteration. Must stay picklable."""

    iteration: int
    seed: int
    samples: List[str]
    labels: List[str]
    counts_path: str
    gmt_path: str
    out_dir: str
    edger: Dict = field(default_factory=dict)
    gsea: Dict = field(default_factory=dict)
    gsea_permutations: int = 100
    timeout: Optional[float] = 3600
    keep_work: bool = False


@dataclass
class IterationResult:
    """Outcome of one iteration, successful or not."""

    iteration: int
    path: Optional[Path] = None
    records: Optional[pl.DataFrame] = None
    labels: Optional[List[str]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.records is not None


@dataclass
class RandomizationOutcome:
    """Merged population plus a record of the iterations that failed."""

    population: RandomizationPopulation
    failed: Dict[int, str]
    requested: int

    @property
    def n_successful(self) -> int:
        return self.population.n_runs


def _remaining(deadline: Optional[float], step: str) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise ExternalToolError(f"Iteration timed out before {step}")
    return remaining


def _bounded(timeout: Optional[float], remaining: Optional[float]) -> Optional[float]:
    if timeout is None:
        return remaining
    if remaining is None:
        return timeout
    return min(timeout, remaining)


def run_iteration(task: RandomizationTask) -> IterationResult:
    """
    Run one randomization iteration.

    Runs in a worker process. Errors are returned in the result instead of
    being raised so that one failing iteration never stops the others.

    Args:
        task: Iteration description

    Returns:
        IterationResult with the NAME/ES/NES records or an error message
    """
    deadline = time.monotonic() + task.timeout if task.timeout else None
    name = f"random_{task.iteration:04d}"
    work_dir = Path(task.out_dir) / name

    try:
        rng = np.random.default_rng([task.seed, task.iteration])
        permuted = permute_labels(task.labels, rng)

        ensure_dir(work_dir)
        write_cls(permuted, work_dir / f"{name}.cls")

        edger = EdgeRRunner(
            rscript=task.edger.get('rscript', 'Rscript'),
            timeout=_bounded(task.edger.get('timeout'), _remaining(deadline, 'edgeR')),
        )
        de_table = edger.run(task.counts_path, task.samples, permuted, work_dir, name)

        rnk = write_rnk(compute_rank_scores(de_table), work_dir / f"{name}.rnk")

        gsea = GseaRunner.from_config(task.gsea)
        gsea.timeout = _bounded(gsea.timeout, _remaining(deadline, 'GSEA'))
        reports = gsea.run(
            rnk,
            task.gmt_path,
            work_dir,
            name,
            permutations=task.gsea_permutations,
            seed=task.seed + task.iteration,
        )

        records = load_gsea_results(reports).select(POPULATION_COLUMNS)
        path = write_population_table(records, result_path(task.out_dir, task.iteration))
        return IterationResult(task.iteration, path=path, records=records, labels=permuted)
    except Exception as e:
        return IterationResult(task.iteration, error=f"{type(e).__name__}: {e}")
    finally:
        if not task.keep_work:
            shutil.rmtree(work_dir, ignore_errors=True)


def reduce_results(results: Iterable[IterationResult]) -> Tuple[RandomizationPopulation, Dict[int, str]]:
    """
    Merge per-iteration results into one frozen population.

    Returns:
        Tuple of (population, {iteration: error} for failed iterations)
    """
    population = RandomizationPopulation()
    failed = {}
    for result in sorted(results, key=lambda r: r.iteration):
        if result.ok:
            population.add_run(result.iteration, result.records)
        else:
            failed[result.iteration] = result.error or "no records"
    return population.freeze(), failed


def collect_population(
    out_dir,
    n_iterations: int,
    start: int = 1,
) -> Tuple[RandomizationPopulation, Dict[int, str]]:
    """
    Rebuild the population from the per-iteration files in out_dir.

    Absent and malformed files are skipped and reported, never fatal.

    Args:
        out_dir: Directory holding random_<index>.tsv files
        n_iterations: Number of iterations expected
        start: Index of the first iteration

    Returns:
        Tuple of (population, {iteration: reason} for skipped iterations)
    """
    population = RandomizationPopulation()
    skipped = {}

    for iteration in range(start, start + n_iterations):
        path = result_path(out_dir, iteration)
        if not path.is_file():
            skipped[iteration] = f"missing {path.name}"
            continue
        try:
            records = load_population_table(path)
        except ReportSchemaError as e:
            skipped[iteration] = str(e)
            continue
        if records.height == 0:
            skipped[iteration] = f"empty {path.name}"
            continue
        population.add_run(iteration, records)

    if skipped:
        logger.warning(f"Skipped {len(skipped)}/{n_iterations} randomization results")
        for iteration, reason in sorted(skipped.items()):
            logger.debug(f"  iteration {iteration}: {reason}")

    return population.freeze(), skipped


class RandomizationRunner:
    """Distributes randomization iterations over a process pool."""

    def __init__(
        self,
        counts_path,
        samples: Sequence[str],
        labels: Sequence[str],
        gmt_path,
        out_dir,
        edger_settings: Optional[Dict] = None,
        gsea_settings: Optional[Dict] = None,
        gsea_permutations: int = 100,
        iteration_timeout: Optional[float] = 3600,
        seed: int = 42,
        num_workers: Optional[int] = None,
        keep_work: bool = False,
    ):
        self.counts_path = str(counts_path)
        self.samples = list(samples)
        self.labels = [str(label) for label in labels]
        self.gmt_path = str(gmt_path)
        self.out_dir = ensure_dir(Path(out_dir))
        self.edger_settings = dict(edger_settings or {})
        self.gsea_settings = dict(gsea_settings or {})
        self.gsea_permutations = gsea_permutations
        self.iteration_timeout = iteration_timeout
        self.seed = seed
        self.num_workers = default_worker_count(num_workers)
        self.keep_work = keep_work

    def make_tasks(self, n_iterations: int, start: int = 1) -> List[RandomizationTask]:
        return [
            RandomizationTask(
                iteration=i,
                seed=self.seed,
                samples=self.samples,
                labels=self.labels,
                counts_path=self.counts_path,
                gmt_path=self.gmt_path,
                out_dir=str(self.out_dir),
                edger=self.edger_settings,
                gsea=self.gsea_settings,
                gsea_permutations=self.gsea_permutations,
                timeout=self.iteration_timeout,
                keep_work=self.keep_work,
            )
            for i in range(start, start + n_iterations)
        ]

    def _run_sequential(self, tasks: List[RandomizationTask]) -> List[IterationResult]:
        results = []
        with tqdm(total=len(tasks), desc="Randomizations", unit="run", **tqdm_kwargs) as pbar:
            for task in tasks:
                results.append(run_iteration(task))
                pbar.update(1)
        return results

    def _run_parallel(self, tasks: List[RandomizationTask]) -> List[IterationResult]:
        results = []
        # Spawned workers do not inherit the parent's polars thread-pool locks
        context = multiprocessing.get_context('spawn')
        with ProcessPoolExecutor(max_workers=self.num_workers, mp_context=context) as executor:
            futures = {executor.submit(run_iteration, task): task.iteration for task in tasks}
            with tqdm(total=len(futures), desc="Randomizations", unit="run", **tqdm_kwargs) as pbar:
                for future in as_completed(futures):
                    iteration = futures[future]
                    try:
                        results.append(future.result())
                    except Exception as e:
                        # The worker process itself died; run_iteration never raises
                        results.append(IterationResult(iteration, error=f"{type(e).__name__}: {e}"))
                    finally:
                        pbar.update(1)
        return results

    def run(self, n_iterations: int, start: int = 1) -> RandomizationOutcome:
        """
        Run the iterations and merge their results.

        Args:
            n_iterations: Number of randomizations
            start: Index of the first iteration

        Returns:
            RandomizationOutcome with the frozen population and failed iterations

        Raises:
            RuntimeError: If every iteration failed
        """
        tasks = self.make_tasks(n_iterations, start)
        workers = min(self.num_workers, len(tasks))
        logger.info(f"Running {len(tasks)} randomizations with {workers} workers")

        if workers > 1:
            results = self._run_parallel(tasks)
        else:
            results = self._run_sequential(tasks)

        population, failed = reduce_results(results)

        if failed:
            logger.warning(f"{len(failed)}/{len(tasks)} randomizations failed")
            for iteration, error in sorted(failed.items()):
                logger.warning(f"  iteration {iteration}: {error}")
        if population.n_runs == 0:
            raise RuntimeError("All randomizations failed. Check the logs for details.")

        logger.info(f"Completed {population.n_runs}/{len(tasks)} randomizations successfully")
        return RandomizationOutcome(population=population, failed=failed, requested=len(tasks))
