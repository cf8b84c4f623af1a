"""Tests for the class-label randomization loop."""

import stat
import sys
from collections import Counter
from pathlib import Path
from unittest.mock import patch

import pytest
import polars as pl

from gseaperm.errors import ExternalToolError
from gseaperm.randomization import (
    IterationResult,
    RandomizationRunner,
    RandomizationTask,
    collect_population,
    reduce_results,
    result_path,
    run_iteration,
)
from gseaperm.data import write_population_table

LABELS = ['A', 'A', 'A', 'B', 'B', 'B']
SAMPLES = ['S1', 'S2', 'S3', 'S4', 'S5', 'S6']

DE_TABLE = pl.DataFrame({
    'gene': ['G1', 'G2', 'G3'],
    'logFC': [1.0, -2.0, 0.5],
    'logCPM': [5.0, 6.0, 7.0],
    'PValue': [0.01, 0.001, 0.5],
    'FDR': [0.05, 0.01, 0.6],
})

def fake_gsea_run(self, rnk, gmt, out_dir, label, permutations, seed):
    """Write a pair of reports whose ES depends on the run label."""
    offset = int(label.split('_')[-1]) / 100
    pos = Path(out_dir) / f"{label}_pos.tsv"
    neg = Path(out_dir) / f"{label}_neg.tsv"
    pos.write_text(f"NAME\tES\tNES\tFDR q-val\nSET_A\t{0.2 + offset}\t{1.0 + offset}\t0.5\n")
    neg.write_text(f"NAME\tES\tNES\tFDR q-val\nSET_B\t{-0.3 - offset}\t---\t0.4\n")
    return pos, neg

@pytest.fixture
def task(tmp_path):
    return RandomizationTask(
        iteration=3,
        seed=42,
        samples=SAMPLES,
        labels=LABELS,
        counts_path=str(tmp_path / "counts.tsv"),
        gmt_path=str(tmp_path / "sets.gmt"),
        out_dir=str(tmp_path / "randomizations"),
        edger={'rscript': 'Rscript', 'timeout': 60},
        gsea={'jar': 'gsea.jar'},
        gsea_permutations=10,
        timeout=600,
        keep_work=True,
    )

def test_result_path(tmp_path):
    assert result_path(tmp_path, 7) == tmp_path / "random_0007.tsv"
    assert result_path(tmp_path, 1000).name == "random_1000.tsv"

def test_run_iteration(task):
    with patch("gseaperm.randomization.EdgeRRunner.run", return_value=DE_TABLE) as mock_edger, \
         patch("gseaperm.randomization.GseaRunner.run", fake_gsea_run):
        result = run_iteration(task)

    assert result.ok, result.error
    assert result.iteration == 3
    assert result.path == Path(task.out_dir) / "random_0003.tsv"
    assert result.records.columns == ['NAME', 'ES', 'NES']
    assert result.records['NAME'].to_list() == ['SET_A', 'SET_B']
    assert result.records['NES'].to_list()[1] is None
    assert Counter(result.labels) == Counter(LABELS)

    # edgeR sees the permuted labels, not the original ones
    args = mock_edger.call_args[0]
    assert args[1] == SAMPLES
    assert args[2] == result.labels

    work_dir = Path(task.out_dir) / "random_0003"
    assert (work_dir / "random_0003.cls").is_file()
    assert (work_dir / "random_0003.rnk").read_text().startswith("GeneName\trank\n")

def test_run_iteration_is_reproducible(task):
    with patch("gseaperm.randomization.EdgeRRunner.run", return_value=DE_TABLE), \
         patch("gseaperm.randomization.GseaRunner.run", fake_gsea_run):
        first = run_iteration(task)
        second = run_iteration(task)
    assert first.labels == second.labels

def test_run_iteration_reports_errors(task):
    error = ExternalToolError("edgeR (random_0003) failed", returncode=1)
    with patch("gseaperm.randomization.EdgeRRunner.run", side_effect=error):
        result = run_iteration(task)

    assert not result.ok
    assert result.error.startswith("ExternalToolError: edgeR (random_0003) failed")
    assert not result_path(task.out_dir, 3).exists()

def test_run_iteration_timeout(task):
    task.timeout = 1e-9
    result = run_iteration(task)
    assert not result.ok
    assert "timed out" in result.error

def test_reduce_results():
    records = pl.DataFrame({'NAME': ['SET_A'], 'ES': [0.4], 'NES': [1.2]})
    results = [
        IterationResult(2, records=records),
        IterationResult(1, records=records),
        IterationResult(3, error="GSEA failed"),
    ]
    population, failed = reduce_results(results)

    assert population.frozen
    assert population.iterations == [1, 2]
    assert population.size('SET_A') == 2
    assert failed == {3: "GSEA failed"}

def test_collect_population(tmp_path):
    records = pl.DataFrame({'NAME': ['SET_A', 'SET_B'], 'ES': [0.4, -0.2], 'NES': [1.2, -0.9]})
    write_population_table(records, result_path(tmp_path, 1))
    write_population_table(records, result_path(tmp_path, 3))
    result_path(tmp_path, 4).write_text("garbage\n1\n")
    result_path(tmp_path, 5).write_text("NAME\tES\tNES\n")

    population, skipped = collect_population(tmp_path, 5)

    assert population.iterations == [1, 3]
    assert population.size('SET_B') == 2
    assert sorted(skipped) == [2, 4, 5]
    assert "missing random_0002.tsv" == skipped[2]

def test_runner_sequential(tmp_path):
    runner = RandomizationRunner(
        counts_path=tmp_path / "counts.tsv",
        samples=SAMPLES,
        labels=LABELS,
        gmt_path=tmp_path / "sets.gmt",
        out_dir=tmp_path / "randomizations",
        gsea_settings={'jar': 'gsea.jar'},
        num_workers=1,
    )
    with patch("gseaperm.randomization.EdgeRRunner.run", return_value=DE_TABLE), \
         patch("gseaperm.randomization.GseaRunner.run", fake_gsea_run):
        outcome = runner.run(4)

    assert outcome.requested == 4
    assert outcome.n_successful == 4
    assert outcome.failed == {}
    assert outcome.population.es('SET_A').tolist() == pytest.approx([0.21, 0.22, 0.23, 0.24])
    for i in range(1, 5):
        assert result_path(tmp_path / "randomizations", i).is_file()

    # The files left behind rebuild the same population
    collected, skipped = collect_population(tmp_path / "randomizations", 4)
    assert skipped == {}
    assert collected.es('SET_B').tolist() == outcome.population.es('SET_B').tolist()

def test_runner_partial_failure(tmp_path):
    runner = RandomizationRunner(
        counts_path=tmp_path / "counts.tsv",
        samples=SAMPLES,
        labels=LABELS,
        gmt_path=tmp_path / "sets.gmt",
        out_dir=tmp_path / "randomizations",
        num_workers=1,
    )

    def flaky_gsea(self, rnk, gmt, out_dir, label, permutations, seed):
        if label == "random_0002":
            raise ExternalToolError("GSEA (random_0002) failed", returncode=1)
        return fake_gsea_run(self, rnk, gmt, out_dir, label, permutations, seed)

    with patch("gseaperm.randomization.EdgeRRunner.run", return_value=DE_TABLE), \
         patch("gseaperm.randomization.GseaRunner.run", flaky_gsea):
        outcome = runner.run(3)

    assert outcome.n_successful == 2
    assert list(outcome.failed) == [2]
    assert outcome.population.iterations == [1, 3]

def test_runner_all_failed(tmp_path):
    runner = RandomizationRunner(
        counts_path=tmp_path / "counts.tsv",
        samples=SAMPLES,
        labels=LABELS,
        gmt_path=tmp_path / "sets.gmt",
        out_dir=tmp_path / "randomizations",
        num_workers=1,
    )
    with patch("gseaperm.randomization.EdgeRRunner.run", side_effect=ExternalToolError("edgeR failed")):
        with pytest.raises(RuntimeError, match="All randomizations failed"):
            runner.run(2)

def test_make_tasks(tmp_path):
    runner = RandomizationRunner(
        counts_path="counts.tsv",
        samples=SAMPLES,
        labels=LABELS,
        gmt_path="sets.gmt",
        out_dir=tmp_path,
        seed=7,
        num_workers=1,
    )
    tasks = runner.make_tasks(3, start=11)
    assert [t.iteration for t in tasks] == [11, 12, 13]
    assert all(t.seed == 7 for t in tasks)

def test_run_iteration_removes_work_dir(task):
    task.keep_work = False
    with patch("gseaperm.randomization.EdgeRRunner.run", return_value=DE_TABLE), \
         patch("gseaperm.randomization.GseaRunner.run", fake_gsea_run):
        result = run_iteration(task)

    assert result.ok
    assert result.path.is_file()
    assert not (Path(task.out_dir) / "random_0003").exists()

def test_run_iteration_removes_work_dir_on_failure(task):
    task.keep_work = False
    with patch("gseaperm.randomization.EdgeRRunner.run", side_effect=ExternalToolError("edgeR failed")):
        result = run_iteration(task)

    assert not result.ok
    assert not (Path(task.out_dir) / "random_0003").exists()

def test_collect_population_skips_missing_scores(tmp_path):
    write_population_table(pl.DataFrame({'NAME': ['SET_A'], 'ES': [0.4], 'NES': [1.2]}), result_path(tmp_path, 1))
    result_path(tmp_path, 2).write_text("NAME\tES\tNES\nSET_A\t\t1.0\n")

    population, skipped = collect_population(tmp_path, 2)

    assert population.iterations == [1]
    assert population.es('SET_A').tolist() == [0.4]
    assert list(skipped) == [2]
    assert "without NAME or ES" in skipped[2]

# Worker processes are spawned, so mock patches do not reach them; these
# stand-ins are put where the Rscript and java executables would be.
FAKE_RSCRIPT = """\
import sys
with open(sys.argv[4], "w") as f:
    f.write("gene\\tlogFC\\tlogCPM\\tPValue\\tFDR\\n")
    f.write("G1\\t1.0\\t5.0\\t0.01\\t0.05\\n")
    f.write("G2\\t-2.0\\t6.0\\t0.001\\t0.01\\n")
    f.write("G3\\t0.5\\t7.0\\t0.5\\t0.6\\n")
"""

FAKE_JAVA = """\
import sys
from pathlib import Path
args = sys.argv[1:]
label = args[args.index("-rpt_label") + 1]
if label == "random_0002":
    sys.stderr.write("java.lang.OutOfMemoryError\\n")
    sys.exit(1)
offset = int(label.split("_")[-1]) / 100
run_dir = Path(args[args.index("-out") + 1]) / f"{label}.GseaPreranked.1700000000000"
run_dir.mkdir(parents=True)
(run_dir / "gsea_report_for_na_pos_1.tsv").write_text(
    f"NAME\\tES\\tNES\\tFDR q-val\\nSET_A\\t{0.2 + offset}\\t{1.0 + offset}\\t0.5\\n"
)
(run_dir / "gsea_report_for_na_neg_1.tsv").write_text(
    f"NAME\\tES\\tNES\\tFDR q-val\\nSET_B\\t{-0.3 - offset}\\t-1.0\\t0.4\\n"
)
"""

def write_executable(path, source):
    path.write_text(f"#!{sys.executable}\n{source}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path

def test_runner_parallel(tmp_path):
    counts = tmp_path / "counts.tsv"
    counts.write_text("gene\tS1\tS2\tS3\tS4\tS5\tS6\nG1\t1\t2\t3\t4\t5\t6\n")
    # Polars I/O in the parent before the pool starts
    assert pl.read_csv(counts, separator='\t').height == 1

    rscript = write_executable(tmp_path / "Rscript", FAKE_RSCRIPT)
    java = write_executable(tmp_path / "java", FAKE_JAVA)
    runner = RandomizationRunner(
        counts_path=counts,
        samples=SAMPLES,
        labels=LABELS,
        gmt_path=tmp_path / "sets.gmt",
        out_dir=tmp_path / "randomizations",
        edger_settings={'rscript': str(rscript), 'timeout': 60},
        gsea_settings={'jar': str(tmp_path / "gsea.jar"), 'java': str(java), 'timeout': 60},
        iteration_timeout=120,
        num_workers=2,
    )
    outcome = runner.run(4)

    assert outcome.requested == 4
    assert outcome.n_successful == 3
    assert list(outcome.failed) == [2]
    assert "GSEA (random_0002) failed" in outcome.failed[2]
    assert outcome.population.iterations == [1, 3, 4]
    assert outcome.population.es('SET_A').tolist() == pytest.approx([0.21, 0.23, 0.24])
    assert outcome.population.es('SET_B').tolist() == pytest.approx([-0.31, -0.33, -0.34])

    out_dir = tmp_path / "randomizations"
    assert sorted(p.name for p in out_dir.iterdir()) == ["random_0001.tsv", "random_0003.tsv", "random_0004.tsv"]
