"""
sysguard Data Models
~~~~~~~~~~~~~~~~~~~~

The value types that flow through a MutationTransaction: what gets
captured (Snapshot), what validation flags (Advisory), what apply did
(ApplyOutcome), what verification observed (CheckResult,
VerificationReport), and the final TransactionResult.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sysguard.core.environment import Environment
from sysguard.core.outcome import CheckStatus, ErrorKind, Outcome, Verdict

__all__ = [
    "SnapshotKind",
    "SnapshotTarget",
    "Snapshot",
    "Advisory",
    "ApplyOutcome",
    "CheckResult",
    "VerificationReport",
    "TransactionError",
    "TransactionResult",
]

Argv = tuple[str, ...]


class SnapshotKind(StrEnum):
    FILE = "file"
    QUERY = "query"


@dataclass(frozen=True)
class SnapshotTarget:
    """
    A piece of state a backend asks to have captured before apply.

    For ``file`` targets only ``source`` is used. For ``query`` targets
    ``argv`` is run and ``reapply`` turns its output into the commands
    that put the observed value back.
    """

    kind: SnapshotKind
    source: str
    argv: Argv = ()
    reapply: Callable[[str], list[Argv]] | None = field(default=None, compare=False)

    @classmethod
    def file(cls, path: str) -> SnapshotTarget:
        return cls(SnapshotKind.FILE, path)

    @classmethod
    def query(
        cls,
        label: str,
        argv: Argv,
        reapply: Callable[[str], list[Argv]] | None = None,
    ) -> SnapshotTarget:
        return cls(SnapshotKind.QUERY, label, tuple(argv), reapply)


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable record of prior state, written before any mutation.

    Attributes:
        id: Unique, timestamp-derived identifier.
        kind: ``file`` or ``query``.
        source: Captured path, or a label for a query.
        backup_path: Where the file copy lives inside the backup directory.
        existed: Whether the source file existed at capture time.
        captured: Raw captured bytes (file content or query output).
        mode: Permission bits of the original file.
        symlink_target: Link target when the source was a symlink.
        query: Command whose output was captured.
        reapply: Commands that restore the captured value.
        created_at: Capture time.
    """

    id: str
    kind: SnapshotKind
    source: str
    backup_path: str = ""
    existed: bool = True
    captured: bytes = b""
    mode: int | None = None
    symlink_target: str | None = None
    query: Argv = ()
    reapply: tuple[Argv, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def restorable(self) -> bool:
        """Query snapshots without reapply commands are informational only."""
        return self.kind is SnapshotKind.FILE or bool(self.reapply)

    @property
    def text(self) -> str:
        return self.captured.decode("utf-8", errors="replace")

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the backup manifest. File bytes stay in ``backup_path``."""
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source,
            "backup_path": self.backup_path,
            "existed": self.existed,
            "mode": self.mode,
            "symlink_target": self.symlink_target,
            "query": list(self.query),
            "reapply": [list(argv) for argv in self.reapply],
            "created_at": self.created_at.isoformat(),
        }
        if self.kind is SnapshotKind.QUERY:
            data["output"] = self.text
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], captured: bytes = b"") -> Snapshot:
        kind = SnapshotKind(data["kind"])
        if kind is SnapshotKind.QUERY:
            captured = str(data.get("output", "")).encode("utf-8")
        return cls(
            id=data["id"],
            kind=kind,
            source=data["source"],
            backup_path=data.get("backup_path", ""),
            existed=bool(data.get("existed", True)),
            captured=captured,
            mode=data.get("mode"),
            symlink_target=data.get("symlink_target"),
            query=tuple(data.get("query", ())),
            reapply=tuple(tuple(argv) for argv in data.get("reapply", ())),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class Advisory:
    """
    A soft-policy finding from candidate validation.

    Attributes:
        code: Stable machine-readable identifier, e.g. "port_in_use".
        message: Operator-facing explanation.
        requires_confirmation: Whether the transaction must ask before applying.
    """

    code: str
    message: str
    requires_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass(frozen=True)
class ApplyOutcome:
    """What a backend's apply() actually did."""

    changed: bool
    detail: str = ""
    applied: Mapping[str, str] = field(default_factory=dict)
    skipped: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "detail": self.detail,
            "applied": dict(self.applied),
            "skipped": list(self.skipped),
        }


@dataclass(frozen=True)
class CheckResult:
    """One observation made during verification."""

    name: str
    status: CheckStatus
    detail: str = ""
    mandatory: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "detail": self.detail,
            "mandatory": self.mandatory,
        }


@dataclass(frozen=True)
class VerificationReport:
    """
    Ordered collection of check results with an aggregate verdict.

    A report with no checks cannot say anything about the host, so it is
    rejected at construction.
    """

    results: tuple[CheckResult, ...]

    def __post_init__(self) -> None:
        if not self.results:
            raise ValueError("VerificationReport requires at least one check")

    @property
    def verdict(self) -> Verdict:
        statuses = [r.status for r in self.results]
        if any(r.status is CheckStatus.FAIL and r.mandatory for r in self.results):
            return Verdict.FAIL
        if CheckStatus.PENDING_REBOOT in statuses:
            return Verdict.PENDING_REBOOT
        if any(
            s in (CheckStatus.FAIL, CheckStatus.WARN, CheckStatus.SKIPPED)
            for s in statuses
        ):
            return Verdict.DEGRADED
        return Verdict.PASS

    def failures(self) -> list[CheckResult]:
        return [r for r in self.results if r.status is not CheckStatus.PASS]

    def get(self, name: str) -> CheckResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "checks": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class TransactionError:
    """A classified failure recorded against a transaction step."""

    kind: ErrorKind
    step: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "step": self.step, "message": self.message}


@dataclass(frozen=True)
class TransactionResult:
    """
    Terminal record of one MutationTransaction run.

    Attributes:
        operation: Operation keyword the run belonged to.
        backend: Name of the backend that was driven.
        outcome: Committed, RolledBack or Aborted.
        failed_step: Step that decided a non-committed outcome.
        snapshots: Everything captured before apply.
        backup_dir: Directory holding the snapshots and manifest.
        apply: What apply did, when it ran.
        report: Verification report, when verification ran.
        errors: Classified failures in the order they happened.
        advisories: Soft-policy findings from validation.
        rollback_succeeded: Whether restore completed, None if not attempted.
        environment: Host description used for the run.
        started_at: When the run began.
        finished_at: When the terminal state was reached.
    """

    operation: str
    backend: str
    outcome: Outcome
    failed_step: str | None = None
    snapshots: tuple[Snapshot, ...] = ()
    backup_dir: str | None = None
    apply: ApplyOutcome | None = None
    report: VerificationReport | None = None
    errors: tuple[TransactionError, ...] = ()
    advisories: tuple[Advisory, ...] = ()
    rollback_succeeded: bool | None = None
    environment: Environment | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def snapshot(self) -> Snapshot | None:
        return self.snapshots[0] if self.snapshots else None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.COMMITTED

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code()

    @property
    def verdict(self) -> Verdict | None:
        return self.report.verdict if self.report is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "operation": self.operation,
            "backend": self.backend,
            "outcome": self.outcome.value,
            "failed_step": self.failed_step,
            "verdict": self.verdict.value if self.verdict else None,
            "backup_dir": self.backup_dir,
            "snapshots": [
                {"id": s.id, "kind": s.kind.value, "source": s.source}
                for s in self.snapshots
            ],
            "apply": self.apply.to_dict() if self.apply else None,
            "report": self.report.to_dict() if self.report else None,
            "errors": [e.to_dict() for e in self.errors],
            "advisories": [a.to_dict() for a in self.advisories],
            "rollback_succeeded": self.rollback_succeeded,
            "environment": self.environment.to_dict() if self.environment else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }
