"""
Mutation Transaction
~~~~~~~~~~~~~~~~~~~~

The lifecycle every host change goes through:

    init -> detected -> snapshotted -> applied -> verified -> committed

with the failure edges ``detected|snapshotted -> aborted`` (nothing was
changed) and ``applied -> rolled_back`` (something was changed and the
snapshot was written back). ``init -> aborted`` covers a detector that
could not run, and ``detected -> verified`` is the shortcut taken when
the host already satisfies the candidate.

A run is a single linear pass. Each step executes at most once, every
run reads a fresh Environment, and a partially applied run is never
resumed: callers wanting a retry call ``run`` again. Every exception
raised inside a step is classified into an ErrorKind before it leaves.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sysguard.backends.base import BaseBackend
from sysguard.backup.store import BackupStore
from sysguard.core.detector import EnvironmentDetector
from sysguard.core.environment import Environment
from sysguard.core.models import (
    Advisory,
    ApplyOutcome,
    Snapshot,
    TransactionError,
    TransactionResult,
    VerificationReport,
)
from sysguard.core.outcome import ErrorKind, Outcome, TxState, Verdict
from sysguard.core.verifier import Verifier
from sysguard.exceptions import CandidateError, InvalidTransitionError
from sysguard.observability.journal import TransactionJournal

__all__ = [
    "MutationTransaction",
    "TransactionState",
    "ConfirmCallback",
    "StoreFactory",
    "decline_confirmation",
    "DEFAULT_BACKUP_DIR",
]

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = "/var/backups/sysguard"

ConfirmCallback = Callable[[Sequence[Advisory]], bool]
StoreFactory = Callable[[str], BackupStore]

_TRANSITIONS: dict[TxState, frozenset[TxState]] = {
    TxState.INIT: frozenset({TxState.DETECTED, TxState.ABORTED}),
    TxState.DETECTED: frozenset({TxState.SNAPSHOTTED, TxState.VERIFIED, TxState.ABORTED}),
    TxState.SNAPSHOTTED: frozenset({TxState.APPLIED, TxState.ABORTED}),
    TxState.APPLIED: frozenset({TxState.VERIFIED, TxState.ROLLED_BACK}),
    TxState.VERIFIED: frozenset({TxState.COMMITTED}),
}

_TERMINAL_OUTCOME = {
    TxState.COMMITTED: Outcome.COMMITTED,
    TxState.ROLLED_BACK: Outcome.ROLLED_BACK,
    TxState.ABORTED: Outcome.ABORTED,
}


def decline_confirmation(advisories: Sequence[Advisory]) -> bool:
    """Default confirmation callback: never proceed without an operator."""
    for advisory in advisories:
        logger.warning("Confirmation required but not given: %s", advisory.message)
    return False


class TransactionState:
    """Tracks the lifecycle state and rejects out-of-order transitions."""

    def __init__(self) -> None:
        self.current = TxState.INIT
        self.history: list[TxState] = [TxState.INIT]

    def advance(self, target: TxState) -> None:
        """
        Move to ``target``.

        Raises:
            InvalidTransitionError: If the edge is not part of the lifecycle.
        """
        if target not in _TRANSITIONS.get(self.current, frozenset()):
            raise InvalidTransitionError(
                f"Illegal transaction transition {self.current.value} -> {target.value}"
            )
        logger.debug("Transaction %s -> %s", self.current.value, target.value)
        self.current = target
        self.history.append(target)

    @property
    def terminal(self) -> bool:
        return self.current.is_terminal()


@dataclass
class _Attempt:
    """Mutable accumulator for one run, frozen into a TransactionResult at the end."""

    operation: str
    backend: BaseBackend
    state: TransactionState = field(default_factory=TransactionState)
    environment: Environment | None = None
    store: BackupStore | None = None
    snapshots: list[Snapshot] = field(default_factory=list)
    advisories: list[Advisory] = field(default_factory=list)
    errors: list[TransactionError] = field(default_factory=list)
    apply: ApplyOutcome | None = None
    report: VerificationReport | None = None
    failed_step: str | None = None
    rollback_succeeded: bool | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def error(self, kind: ErrorKind, step: str, message: str) -> None:
        self.errors.append(TransactionError(kind, step, message))
        if kind.is_fatal():
            self.failed_step = self.failed_step or step


class MutationTransaction:
    """
    Drives one backend through detect, snapshot, apply, verify and
    commit or rollback.

    Args:
        detector: Produces the Environment for each run.
        store_factory: Builds a fresh BackupStore for an operation keyword.
        verifier: Runs the checks of the already-satisfied shortcut.
        confirm: Asked before applying a candidate that has advisories
            requiring confirmation. Declines by default.
        journal: Receives every result.
    """

    def __init__(
        self,
        detector: EnvironmentDetector | None = None,
        store_factory: StoreFactory | None = None,
        verifier: Verifier | None = None,
        confirm: ConfirmCallback | None = None,
        journal: TransactionJournal | None = None,
    ) -> None:
        self._detector = detector or EnvironmentDetector()
        self._store_factory = store_factory or (
            lambda operation: BackupStore(DEFAULT_BACKUP_DIR, operation)
        )
        self._verifier = verifier or Verifier()
        self._confirm = confirm or decline_confirmation
        self._journal = journal

    def run(
        self,
        backend: BaseBackend,
        candidate: Any,
        operation: str | None = None,
    ) -> TransactionResult:
        """
        Run one transaction to a terminal outcome.

        Args:
            backend: The subsystem adapter to drive.
            candidate: The desired state, in the backend's candidate type.
            operation: Operation keyword used for backups and reporting.

        Returns:
            A TransactionResult whose outcome is exactly one of
            committed, rolled_back or aborted.
        """
        attempt = _Attempt(operation=operation or backend.name, backend=backend)
        logger.info("Starting %s via %s", attempt.operation, backend.name)

        self._execute(attempt, candidate)
        return self._finish(attempt)

    # ── Steps ───────────────────────────────────────────────────

    def _execute(self, attempt: _Attempt, candidate: Any) -> None:
        backend = attempt.backend
        state = attempt.state

        # Detect
        try:
            env = self._detector.detect()
        except Exception as exc:
            attempt.error(ErrorKind.DETECTION_AMBIGUOUS, "detect", str(exc))
            attempt.failed_step = "detect"
            state.advance(TxState.ABORTED)
            return
        attempt.environment = env
        for note in env.ambiguities:
            attempt.error(ErrorKind.DETECTION_AMBIGUOUS, "detect", note)
        state.advance(TxState.DETECTED)

        # Validate
        try:
            attempt.advisories = list(backend.validate(candidate, env))
        except CandidateError as exc:
            self._abort(attempt, ErrorKind.CANDIDATE_INVALID, "validate", str(exc))
            return
        except Exception as exc:
            self._abort(
                attempt, ErrorKind.CANDIDATE_INVALID, "validate", f"validation error: {exc}"
            )
            return

        # Confirm
        pending = [a for a in attempt.advisories if a.requires_confirmation]
        if pending:
            try:
                confirmed = bool(self._confirm(pending))
            except Exception as exc:
                logger.error("Confirmation callback failed: %s", exc)
                confirmed = False
            if not confirmed:
                self._abort(
                    attempt,
                    ErrorKind.CONFIRMATION_DECLINED,
                    "confirm",
                    "; ".join(a.message for a in pending),
                )
                return
            logger.warning(
                "Proceeding despite: %s", "; ".join(a.message for a in pending)
            )

        # Already satisfied
        try:
            satisfied = backend.is_satisfied(candidate, env)
        except Exception as exc:
            logger.debug("is_satisfied raised, treating as unsatisfied: %s", exc)
            satisfied = False
        if satisfied:
            attempt.report = self._verifier.run(backend.satisfied_checks(candidate, env))
            logger.info("%s already satisfied, nothing to change", backend.name)
            state.advance(TxState.VERIFIED)
            state.advance(TxState.COMMITTED)
            return

        # Applicability
        try:
            applicable = backend.detect_applicability(env)
            reason = "" if applicable else backend.not_applicable_reason(env)
        except Exception as exc:
            applicable, reason = False, f"applicability probe failed: {exc}"
        if not applicable:
            self._abort(attempt, ErrorKind.NOT_APPLICABLE, "applicability", reason)
            return

        # Snapshot
        try:
            store = attempt.store = self._store_factory(attempt.operation)
            for target in backend.snapshot_targets(candidate, env):
                attempt.snapshots.append(store.capture(target))
        except Exception as exc:
            self._abort(attempt, ErrorKind.BACKUP_FAILED, "snapshot", str(exc))
            return
        if not attempt.snapshots:
            self._abort(
                attempt, ErrorKind.BACKUP_FAILED, "snapshot", "no prior state was captured"
            )
            return
        state.advance(TxState.SNAPSHOTTED)

        # Apply
        state.advance(TxState.APPLIED)
        try:
            attempt.apply = backend.apply(candidate, env)
        except Exception as exc:
            logger.error("Apply of %s failed: %s", backend.name, exc)
            attempt.error(ErrorKind.APPLY_FAILED, "apply", str(exc))
            self._rollback(attempt, store)
            return

        # Verify
        try:
            attempt.report = backend.verify(candidate, attempt.apply)
        except Exception as exc:
            logger.error("Verification of %s raised: %s", backend.name, exc)
            attempt.error(ErrorKind.VERIFY_FAILED_HARD, "verify", str(exc))
            self._rollback(attempt, store)
            return

        verdict = attempt.report.verdict
        if verdict is Verdict.FAIL:
            failed = ", ".join(
                f"{r.name} ({r.detail})" for r in attempt.report.failures() if r.mandatory
            )
            attempt.error(ErrorKind.VERIFY_FAILED_HARD, "verify", failed or "verification failed")
            self._rollback(attempt, store)
            return

        if verdict is Verdict.DEGRADED:
            degraded = ", ".join(r.name for r in attempt.report.failures())
            attempt.error(ErrorKind.VERIFY_FAILED_DEGRADED, "verify", degraded)
            logger.warning("%s committed with degraded checks: %s", backend.name, degraded)
        state.advance(TxState.VERIFIED)
        state.advance(TxState.COMMITTED)

    def _abort(self, attempt: _Attempt, kind: ErrorKind, step: str, message: str) -> None:
        logger.warning("Aborting %s at %s: %s", attempt.operation, step, message)
        attempt.error(kind, step, message)
        attempt.failed_step = step
        attempt.state.advance(TxState.ABORTED)

    def _rollback(self, attempt: _Attempt, store: BackupStore) -> None:
        """Write every snapshot back, best-effort, and mark the run rolled back."""
        backend = attempt.backend
        logger.warning("Rolling back %s from %s", attempt.operation, store.directory)

        try:
            backend.before_restore()
        except Exception as exc:
            logger.error("before_restore hook of %s failed: %s", backend.name, exc)

        restore_errors = store.restore_all(attempt.snapshots)

        try:
            backend.after_restore()
        except Exception as exc:
            logger.error("after_restore hook of %s failed: %s", backend.name, exc)

        for exc in restore_errors:
            logger.error("Manual intervention required:\n%s", exc)
            attempt.error(ErrorKind.RESTORE_FAILED, "rollback", f"{exc.source}: {exc.args[0]}")
        attempt.rollback_succeeded = not restore_errors
        attempt.state.advance(TxState.ROLLED_BACK)

    def _finish(self, attempt: _Attempt) -> TransactionResult:
        if not attempt.state.terminal:
            raise InvalidTransitionError(
                f"Transaction ended in non-terminal state {attempt.state.current.value}"
            )
        outcome = _TERMINAL_OUTCOME[attempt.state.current]
        store = attempt.store
        if store is not None and store.directory is not None:
            try:
                store.mark(outcome.value)
            except OSError as exc:
                logger.warning("Could not record outcome in %s: %s", store.directory, exc)

        result = TransactionResult(
            operation=attempt.operation,
            backend=attempt.backend.name,
            outcome=outcome,
            failed_step=attempt.failed_step if outcome is not Outcome.COMMITTED else None,
            snapshots=tuple(attempt.snapshots),
            backup_dir=store.directory if store is not None else None,
            apply=attempt.apply,
            report=attempt.report,
            errors=tuple(attempt.errors),
            advisories=tuple(attempt.advisories),
            rollback_succeeded=attempt.rollback_succeeded,
            environment=attempt.environment,
            started_at=attempt.started_at,
            finished_at=datetime.now(UTC),
        )
        logger.info(
            "%s finished: %s%s",
            attempt.operation,
            outcome.value,
            f" (failed at {result.failed_step})" if result.failed_step else "",
        )
        if self._journal is not None:
            self._journal.write(result)
        return result
