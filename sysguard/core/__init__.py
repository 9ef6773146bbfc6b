"""sysguard core — environment, data models, and the verification engine."""

from sysguard.core.environment import Environment
from sysguard.core.models import (
    Advisory,
    ApplyOutcome,
    CheckResult,
    Snapshot,
    TransactionResult,
    VerificationReport,
)
from sysguard.core.outcome import CheckStatus, ErrorKind, Outcome, TxState, Verdict

__all__ = [
    "Outcome",
    "Verdict",
    "CheckStatus",
    "ErrorKind",
    "TxState",
    "Environment",
    "Advisory",
    "ApplyOutcome",
    "CheckResult",
    "Snapshot",
    "TransactionResult",
    "VerificationReport",
]
