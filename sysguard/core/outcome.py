"""
sysguard Outcome & Status Enums
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Core enums that define how a transaction ends, how individual checks and
whole verification reports resolve, and which lifecycle state a
transaction is in.
"""

from enum import StrEnum

__all__ = ["Outcome", "CheckStatus", "Verdict", "ErrorKind", "TxState"]


class Outcome(StrEnum):
    """
    Terminal outcome of a MutationTransaction.

    - COMMITTED: The candidate state is live and verification passed
      (fully, degraded, or pending a reboot).
    - ROLLED_BACK: A mutation happened but was reverted.
    - ABORTED: No mutation happened because a precondition failed.
    """

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    def exit_code(self) -> int:
        """Return the process exit code the CLI uses for this outcome."""
        return 0 if self is Outcome.COMMITTED else 1


class CheckStatus(StrEnum):
    """Result of one verification check."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    SKIPPED = "skipped"
    PENDING_REBOOT = "pending_reboot"


class Verdict(StrEnum):
    """
    Aggregate verdict of a VerificationReport.

    Only FAIL is a hard failure; the other three commit.
    """

    PASS = "pass"
    DEGRADED = "degraded"
    FAIL = "fail"
    PENDING_REBOOT = "pending_reboot"

    def is_acceptable(self) -> bool:
        """Return True if the transaction may commit with this verdict."""
        return self is not Verdict.FAIL


class ErrorKind(StrEnum):
    """Classification every backend failure is translated into."""

    DETECTION_AMBIGUOUS = "detection_ambiguous"
    CANDIDATE_INVALID = "candidate_invalid"
    CONFIRMATION_DECLINED = "confirmation_declined"
    NOT_APPLICABLE = "not_applicable"
    BACKUP_FAILED = "backup_failed"
    APPLY_FAILED = "apply_failed"
    VERIFY_FAILED_HARD = "verify_failed_hard"
    VERIFY_FAILED_DEGRADED = "verify_failed_degraded"
    RESTORE_FAILED = "restore_failed"

    def is_fatal(self) -> bool:
        """Return True if this kind prevents a commit."""
        return self not in (
            ErrorKind.DETECTION_AMBIGUOUS,
            ErrorKind.VERIFY_FAILED_DEGRADED,
        )


class TxState(StrEnum):
    """Lifecycle states of a MutationTransaction."""

    INIT = "init"
    DETECTED = "detected"
    SNAPSHOTTED = "snapshotted"
    APPLIED = "applied"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"

    def is_terminal(self) -> bool:
        return self in (TxState.COMMITTED, TxState.ROLLED_BACK, TxState.ABORTED)
