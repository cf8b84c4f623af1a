"""Preranked GSEA, run as an external Java process."""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from gseaperm.errors import DependencyError, ExternalToolError
from gseaperm.utils import run_command

logger = logging.getLogger(__name__)

REPORT_PATTERNS = {
    'pos': ('gsea_report_for_na_pos_*.tsv', 'gsea_report_for_na_pos_*.xls'),
    'neg': ('gsea_report_for_na_neg_*.tsv', 'gsea_report_for_na_neg_*.xls'),
}


def _first_match(directory: Path, patterns) -> Optional[Path]:
    for pattern in patterns:
        matches = sorted(directory.glob(pattern))
        if matches:
            return matches[-1]
    return None


def run_directories(out_dir: Union[str, Path], label: str) -> List[Path]:
    """GSEA run folders for this label, oldest first."""
    return sorted(
        (d for d in Path(out_dir).glob(f"{label}.GseaPreranked*") if d.is_dir()),
        key=lambda d: d.stat().st_mtime,
    )


def find_reports(
    out_dir: Union[str, Path],
    label: str,
    exclude: Iterable[Path] = (),
) -> Tuple[Path, Path]:
    """
    Locate the positive and negative reports of the newest run with this label.

    GSEA writes each run into '<out_dir>/<label>.GseaPreranked.<timestamp>/'.
    Run folders listed in exclude are ignored.

    Returns:
        Tuple of (positive report, negative report)

    Raises:
        ExternalToolError: If no run directory or either report is missing
    """
    out_dir = Path(out_dir)
    exclude = set(exclude)
    run_dirs = [d for d in run_directories(out_dir, label) if d not in exclude]
    if not run_dirs:
        raise ExternalToolError(f"No {'new ' if exclude else ''}GSEA output directory for '{label}' in {out_dir}")

    run_dir = run_dirs[-1]
    pos = _first_match(run_dir, REPORT_PATTERNS['pos'])
    neg = _first_match(run_dir, REPORT_PATTERNS['neg'])
    missing = [tail for tail, path in (('pos', pos), ('neg', neg)) if path is None]
    if missing:
        raise ExternalToolError(f"GSEA run {run_dir} has no report for: {', '.join(missing)}")

    return pos, neg


class GseaRunner:
    """Builds and runs GseaPreranked command lines."""

    def __init__(
        self,
        jar: Union[str, Path],
        java: str = 'java',
        memory: str = '4g',
        permute: str = 'gene_set',
        scoring_scheme: str = 'weighted',
        set_min: int = 15,
        set_max: int = 200,
        timeout: Optional[float] = 1800,
        main_class: str = 'xtools.gsea.GseaPreranked',
        collapse: str = 'false',
    ):
        self.jar = Path(jar) if jar else None
        self.java = java
        self.memory = memory
        self.permute = permute
        self.scoring_scheme = scoring_scheme
        self.set_min = set_min
        self.set_max = set_max
        self.timeout = timeout
        self.main_class = main_class
        self.collapse = collapse

    @classmethod
    def from_config(cls, settings: dict) -> "GseaRunner":
        """Create a runner from the [gsea] configuration section."""
        keys = ('java', 'memory', 'permute', 'scoring_scheme', 'set_min',
                'set_max', 'timeout', 'main_class', 'collapse')
        return cls(settings.get('jar'), **{k: settings[k] for k in keys if k in settings})

    def check_available(self) -> None:
        """
        Raises:
            DependencyError: If the jar is not configured or java cannot run
        """
        if self.jar is None or not self.jar.is_file():
            raise DependencyError(
                f"GSEA jar not found at '{self.jar}'. Download it from gsea-msigdb.org and set gsea.jar."
            )
        try:
            run_command([self.java, '-version'], 'java version check', timeout=60)
        except DependencyError:
            raise DependencyError(f"Java executable '{self.java}' not found. Install a JRE or set gsea.java.")

    def build_command(
        self,
        rnk: Union[str, Path],
        gmt: Union[str, Path],
        out_dir: Union[str, Path],
        label: str,
        permutations: int,
        seed: int,
    ) -> List[str]:
        """
        GseaPreranked invocation for one rank file.

        Args:
            rnk: Rank file
            gmt: Gene set file
            out_dir: Directory GSEA writes its run folder into
            label: Report label, also the prefix of the run folder
            permutations: Number of GSEA permutations
            seed: Random seed passed to GSEA

        Returns:
            Command as a list of strings
        """
        return [
            self.java, f"-Xmx{self.memory}", '-cp', str(self.jar), self.main_class,
            '-rnk', str(rnk),
            '-gmx', str(gmt),
            '-collapse', self.collapse,
            '-nperm', str(permutations),
            '-permute', self.permute,
            '-scoring_scheme', self.scoring_scheme,
            '-rpt_label', label,
            '-set_min', str(self.set_min),
            '-set_max', str(self.set_max),
            '-rnd_seed', str(seed),
            '-zip_report', 'false',
            '-gui', 'false',
            '-out', str(out_dir),
        ]

    def run(
        self,
        rnk: Union[str, Path],
        gmt: Union[str, Path],
        out_dir: Union[str, Path],
        label: str,
        permutations: int,
        seed: int,
    ) -> Tuple[Path, Path]:
        """
        Run GSEA and return the paths of its two reports.

        A zero exit code alone is not trusted; the run must leave a new run
        folder holding both report files.

        Raises:
            ExternalToolError: On failure, timeout or missing reports
        """
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        previous = run_directories(out_dir, label)
        command = self.build_command(rnk, gmt, out_dir, label, permutations, seed)
        run_command(command, f'GSEA ({label})', timeout=self.timeout)

        reports = find_reports(out_dir, label, exclude=previous)
        logger.debug(f"GSEA ({label}) reports: {reports[0].name}, {reports[1].name}")
        return reports
