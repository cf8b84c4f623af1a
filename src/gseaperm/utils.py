"""Utility functions for the randomized enrichment pipeline."""

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from gseaperm.errors import DependencyError, ExternalToolError

logger = logging.getLogger(__name__)


def setup_logging(log_dir=None, level=logging.INFO):
    """Set up logging configuration.

    Args:
        log_dir: Directory to store log files
        level: Logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'pipeline.log'

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        # Write immediately so the file exists even if nothing else is logged
        root_logger.info("Logging initialized")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    return logging.getLogger('gseaperm')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_worker_count(requested: Optional[int] = None) -> int:
    """Number of worker processes to use.

    Defaults to one less than the available processors, never below one.
    """
    if requested is not None and requested > 0:
        return int(requested)
    return max(1, (os.cpu_count() or 1) - 1)


def tail(text: Optional[str], lines: int = 20) -> str:
    """Return the last few lines of captured process output."""
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


def run_command(
    command: Sequence[str],
    description: str,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Run an external tool and fail loudly if it does not succeed.

    Args:
        command: Command and arguments
        description: Short name of the step, used in messages
        timeout: Seconds before the process is killed
        cwd: Working directory

    Returns:
        The completed process

    Raises:
        DependencyError: If the executable cannot be found
        ExternalToolError: On timeout or non-zero exit
    """
    logger.debug(f"Running {description}: {' '.join(map(str, command))}")
    try:
        result = subprocess.run(
            [str(part) for part in command],
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except FileNotFoundError:
        raise DependencyError(f"{description}: executable '{command[0]}' not found on PATH")
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr.decode(errors='replace') if isinstance(e.stderr, bytes) else e.stderr
        raise ExternalToolError(
            f"{description} timed out after {timeout} seconds",
            command=command,
            stderr=tail(stderr),
        )

    if result.returncode != 0:
        raise ExternalToolError(
            f"{description} failed",
            command=command,
            returncode=result.returncode,
            stderr=tail(result.stderr),
        )

    return result
