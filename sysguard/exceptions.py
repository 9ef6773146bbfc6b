"""
sysguard Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for sysguard, organized by domain.
Every distinct failure mode of a host mutation has its own exception type.

**Structured Error Messages**

Errors that leave the host needing an operator's attention provide three
structured fields:
- ``what_happened``: Clear plain-English description
- ``backup_location``: Where the captured prior state lives
- ``how_to_fix``: Concrete, actionable steps
"""

from __future__ import annotations

__all__ = [
    # Base
    "SysguardError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # Detection
    "DetectionError",
    "DetectionAmbiguousError",
    # Candidates
    "CandidateError",
    # Backends
    "BackendError",
    "BackendNotFoundError",
    "ApplyError",
    # Backup
    "BackupError",
    "RestoreError",
    "SnapshotNotFoundError",
    # Transaction
    "InvalidTransitionError",
    # Operations
    "OperationError",
    "UnknownOperationError",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(
    title: str,
    what_happened: str,
    backup_location: str,
    how_to_fix: str,
) -> str:
    """Build a rich, structured error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What happened:",
        *[f"    {line}" for line in what_happened.strip().splitlines()],
        "",
        "  Backup location:",
        f"    {backup_location}",
        "",
        "  How to fix:",
        *[f"    {line}" for line in how_to_fix.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class SysguardError(Exception):
    """Base exception for all sysguard errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(SysguardError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


# ── Detection Exceptions ─────────────────────────────────────────────────────


class DetectionError(SysguardError):
    """Base exception for environment detection problems."""


class DetectionAmbiguousError(DetectionError):
    """
    Raised by a single probe that could not decide.

    Never fatal: the detector catches it, records the note and falls back
    to the generic value for that field.
    """


# ── Candidate Exceptions ─────────────────────────────────────────────────────


class CandidateError(SysguardError):
    """
    Raised when a candidate state fails format or range validation.

    An invalid candidate never reaches ``Backend.apply()``.
    """

    def __init__(
        self,
        message: str = "Invalid candidate",
        field: str = "",
        value: object = None,
        details: dict | None = None,
    ) -> None:
        self.field = field
        self.value = value
        super().__init__(message, details)


# ── Backend Exceptions ───────────────────────────────────────────────────────


class BackendError(SysguardError):
    """Base exception for backend errors."""


class BackendNotFoundError(BackendError):
    """Raised when no backend is registered for a backend kind."""


class ApplyError(BackendError):
    """
    Raised when a backend fails while mutating host state.

    Triggers an immediate restore of the transaction's snapshots.
    """

    def __init__(
        self,
        message: str = "Apply failed",
        command: list[str] | None = None,
        output: str = "",
        unsupported_keys: list[str] | None = None,
        details: dict | None = None,
    ) -> None:
        self.command = command or []
        self.output = output
        self.unsupported_keys = unsupported_keys or []
        super().__init__(message, details)


# ── Backup Exceptions ────────────────────────────────────────────────────────


class BackupError(SysguardError):
    """
    Raised when prior state cannot be captured.

    Fatal for the transaction: it aborts before any mutation.
    """

    def __init__(
        self,
        message: str = "Backup failed",
        source: str = "",
        details: dict | None = None,
    ) -> None:
        self.source = source
        super().__init__(message, details)


class RestoreError(SysguardError):
    """
    Raised when captured state cannot be written back.

    Restores are best-effort and never retried; this error is surfaced to
    the operator as requiring manual intervention.

    Structured fields:
    - ``what_happened``: which source could not be restored and why
    - ``backup_location``: the captured copy to restore from by hand
    - ``how_to_fix``: concrete recovery steps
    """

    def __init__(
        self,
        message: str = "Restore failed",
        source: str = "",
        backup_path: str = "",
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.source = source
        self.backup_path = backup_path
        self.what_happened = what_happened or (
            f'Could not restore "{source}" from its snapshot: {message}'
        )
        self.how_to_fix = how_to_fix or (
            f"1. Inspect the captured copy at {backup_path or '(query snapshot)'}\n"
            f'2. Copy it back over "{source}" as root, or re-run:\n'
            f"   sysguard restore <backup directory>\n"
            f"3. Reload the affected service or run 'sysctl -p' afterwards"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"RestoreError: {self.args[0]}",
            what_happened=self.what_happened,
            backup_location=self.backup_path or "(no file copy)",
            how_to_fix=self.how_to_fix,
        )


class SnapshotNotFoundError(SysguardError):
    """Raised when a backup directory or its manifest cannot be found."""


# ── Transaction Exceptions ───────────────────────────────────────────────────


class InvalidTransitionError(SysguardError):
    """Raised when the transaction state machine is driven out of order."""


# ── Operation Exceptions ─────────────────────────────────────────────────────


class OperationError(SysguardError):
    """Base exception for operation catalog errors."""


class UnknownOperationError(OperationError):
    """Raised when an operation keyword is not in the catalog."""
