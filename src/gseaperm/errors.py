"""Exception types raised by the randomized enrichment pipeline."""

from typing import Optional, Sequence


class GseapermError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(GseapermError, ValueError):
    """Input data does not have the expected shape or format."""


class ReportSchemaError(ValidationError):
    """An enrichment report is missing columns or has unparseable values."""


class MissingPopulationError(GseapermError, KeyError):
    """No randomization population exists for the requested gene set."""

    def __init__(self, gene_set: str):
        self.gene_set = gene_set
        super().__init__(gene_set)

    def __str__(self):
        return f"No randomization population for gene set '{self.gene_set}'"


class DependencyError(GseapermError, RuntimeError):
    """A required external tool or service is not available."""


class ExternalToolError(GseapermError, RuntimeError):
    """An external process failed, timed out or produced no output."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.command = list(command) if command is not None else None
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)

    def __str__(self):
        message = self.args[0]
        if self.returncode is not None:
            message += f" (exit code {self.returncode})"
        if self.stderr:
            message += f"\n{self.stderr}"
        return message


class CytoscapeError(ExternalToolError):
    """A CyREST call failed or reported errors."""
