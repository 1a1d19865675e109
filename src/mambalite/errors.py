"""Error taxonomy shared by the solver, fetchers and the transaction engine.

The core raises these and never terminates the process; the CLI boundary maps
each type onto an exit code (see ``cli.EXIT_CODE_FOR``).
"""
from __future__ import annotations

from typing import Any, Optional, Sequence


class MambaliteError(Exception):
    """Base class for all errors raised by mambalite."""


class ConfigError(MambaliteError):
    """Missing or invalid root/target prefix or configuration value."""


class FetchError(MambaliteError):
    """A remote resource could not be fetched after all retries."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class IntegrityError(MambaliteError):
    """A downloaded artifact does not match its expected size or hash."""

    def __init__(self, message: str, *, path: Optional[str] = None, expected: Optional[str] = None,
                 actual: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.actual = actual


class ConflictError(MambaliteError):
    """The requested jobs cannot be satisfied together.

    Args:
        conflict: ``solve.solver.Conflict`` describing the incompatible
            constraints.
    """

    def __init__(self, conflict: Any):
        super().__init__(conflict.explain())
        self.conflict = conflict


class ExecutionError(MambaliteError):
    """A transaction step failed after execution started.

    Steps in ``committed`` were fully applied and stay applied; ``failed`` is
    the step that raised; ``pending`` never ran.
    """

    def __init__(self, failed: Any, committed: Sequence[Any], pending: Sequence[Any], cause: BaseException):
        self.failed = failed
        self.committed = list(committed)
        self.pending = list(pending)
        self.cause = cause
        super().__init__(f"{failed} failed: {cause}")

    def report_lines(self):
        """Human-readable lines describing what was and was not changed."""
        lines = [f"Transaction failed at step: {self.failed}", f"  reason: {self.cause}"]
        if self.committed:
            lines.append("  already applied:")
            lines.extend(f"    {step}" for step in self.committed)
        else:
            lines.append("  no step was applied")
        if self.pending:
            lines.append("  not applied:")
            lines.extend(f"    {step}" for step in self.pending)
        return lines
