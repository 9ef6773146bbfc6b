"""
sysguard — Safe, reversible host configuration changes.

sysguard changes host-level OS configuration through one transactional
engine: detect the environment, snapshot the current state, validate the
candidate, apply it, verify it, then commit or roll back. It manages:

- Kernel network parameters (TCP tuning, BBR congestion control)
- The IPv6 stack toggle
- DNS resolution (systemd-resolved, NetworkManager, or resolv.conf)
- SSH daemon port and account credentials
- BBR-capable kernel installs

Quick Start::

    from sysguard import MutationEngine, OperationOptions

    engine = MutationEngine.default()

    summary = engine.run("dns", OperationOptions(dns_preset="google"))
    for result in summary.results:
        print(result.operation, result.outcome, result.backup_dir)

    for backup in engine.backups():
        print(backup.path, backup.outcome)
"""

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.engine import MutationEngine
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
from sysguard.core.transaction import MutationTransaction
from sysguard.operations.batch import BatchSummary
from sysguard.operations.catalog import OperationOptions

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "MutationEngine",
    "MutationTransaction",
    # Enums
    "Outcome",
    "Verdict",
    "CheckStatus",
    "ErrorKind",
    "TxState",
    "BackendKind",
    # Data models
    "Environment",
    "Advisory",
    "ApplyOutcome",
    "CheckResult",
    "Snapshot",
    "TransactionResult",
    "VerificationReport",
    "OperationOptions",
    "BatchSummary",
    # Extension bases
    "BaseBackend",
    "Check",
    # Metadata
    "__version__",
]
