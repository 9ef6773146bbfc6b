"""
Base Backend
~~~~~~~~~~~~

Abstract base class for the subsystem adapters a MutationTransaction
drives. A backend knows how one piece of host state is read, captured,
changed and checked; the transaction decides when each of those happens.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import Any

from sysguard.core.environment import Environment
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget, VerificationReport
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.core.verifier import Check, Verifier

__all__ = ["BaseBackend", "BackendKind", "Check"]


class BackendKind(StrEnum):
    """The subsystem variants."""

    SYSCTL = "sysctl"
    STACK_TOGGLE = "stack_toggle"
    NETWORK = "network"
    SERVICE = "service"
    KERNEL = "kernel"
    LIMITS = "limits"


class BaseBackend(ABC):
    """
    Abstract base class for subsystem backends.

    Each backend is responsible for:
    1. Deciding whether it can manage its subsystem on this host
    2. Validating a candidate and reporting soft-policy advisories
    3. Naming the state that must be captured before apply
    4. Applying the candidate
    5. Describing the checks that prove the candidate is live

    Restoring captured state is the BackupStore's job. The
    ``before_restore``/``after_restore`` hooks let a backend undo side
    effects the raw bytes cannot (file attributes, daemon reloads).
    """

    kind: BackendKind
    name: str = "backend"

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()
        self._verifier = Verifier()

    @abstractmethod
    def detect_applicability(self, env: Environment) -> bool:
        """Return True if this backend can manage its subsystem on ``env``."""
        ...

    def not_applicable_reason(self, env: Environment) -> str:
        return f"{self.name} is not applicable on {env.os_family} {env.os_version}"

    @abstractmethod
    def validate(self, candidate: Any, env: Environment) -> list[Advisory]:
        """
        Check a candidate before anything is captured or changed.

        Returns:
            Soft-policy advisories. Empty when the candidate is clean.

        Raises:
            CandidateError: If the candidate is malformed or out of range.
        """
        ...

    def is_satisfied(self, candidate: Any, env: Environment) -> bool:
        """Return True if the host already meets the candidate without change."""
        return False

    def satisfied_checks(self, candidate: Any, env: Environment) -> list[Check]:
        """Checks reported when ``is_satisfied`` short-circuits the transaction."""
        return [
            Check(
                f"{self.name}.satisfied",
                lambda: (CheckStatus.PASS, "already satisfied"),
            )
        ]

    @abstractmethod
    def snapshot_targets(self, candidate: Any, env: Environment) -> list[SnapshotTarget]:
        """Name every file and queried value apply may change."""
        ...

    @abstractmethod
    def current_state(self) -> dict[str, Any]:
        """Read the live state this backend manages, for display."""
        ...

    @abstractmethod
    def apply(self, candidate: Any, env: Environment) -> ApplyOutcome:
        """
        Mutate the host towards the candidate.

        Raises:
            ApplyError: If the mutation could not be completed.
        """
        ...

    @abstractmethod
    def checks(self, candidate: Any, outcome: ApplyOutcome | None) -> list[Check]:
        """Describe the probes that confirm ``candidate`` is live."""
        ...

    def verify(
        self, expected: Any, outcome: ApplyOutcome | None = None
    ) -> VerificationReport:
        """Run this backend's checks through the Verifier."""
        return self._verifier.run(self.checks(expected, outcome))

    def before_restore(self) -> None:
        """Called before captured state is written back."""

    def after_restore(self) -> None:
        """Called after captured state has been written back."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} kind={self.kind.value!r}>"
