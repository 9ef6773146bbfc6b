"""
MutationEngine — Main Entry Point
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Assembles the detector, backends, backup store, transaction and journal
from configuration and exposes the public API: run an operation, describe
the host, list backups and restore one by hand.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend
from sysguard.backends.network import DnsProbe
from sysguard.backends.registry import BackendRegistry
from sysguard.backends.service import PortProbe
from sysguard.backup.store import BackupInfo, BackupStore, list_backups
from sysguard.config.defaults import DEFAULT_CONFIG
from sysguard.config.loader import load_config, load_config_from_dict
from sysguard.config.schema import SysguardConfig
from sysguard.core.detector import EnvironmentDetector
from sysguard.core.environment import Environment
from sysguard.core.models import TransactionResult
from sysguard.core.outcome import Outcome
from sysguard.core.runner import CommandRunner
from sysguard.core.transaction import ConfirmCallback, MutationTransaction
from sysguard.exceptions import RestoreError
from sysguard.observability.exporters.file_exporter import FileExporter
from sysguard.observability.exporters.stdout_exporter import StdoutExporter
from sysguard.observability.journal import TransactionJournal
from sysguard.operations.batch import BatchRunner, BatchSummary
from sysguard.operations.catalog import OperationCatalog, OperationOptions

__all__ = ["MutationEngine", "BACKUP_BACKENDS"]

logger = logging.getLogger(__name__)

# Backup directories are named after the step that wrote them.
BACKUP_BACKENDS: dict[str, BackendKind] = {
    "tcp": BackendKind.SYSCTL,
    "bbr": BackendKind.SYSCTL,
    "ipv6": BackendKind.STACK_TOGGLE,
    "dns": BackendKind.NETWORK,
    "ssh": BackendKind.SERVICE,
    "kernel": BackendKind.KERNEL,
    "limits": BackendKind.LIMITS,
}


class MutationEngine:
    """
    Configuration Mutation Engine — entry point for every host change.

    Args:
        config: Validated configuration. Defaults are used when omitted.
        runner: Shared command runner.
        confirm: Called with advisories that need an operator's approval.
        detector: Replacement environment detector.
        dns_probe: Replacement DNS resolution probe.
        port_probe: Replacement port liveness probe.
    """

    def __init__(
        self,
        config: SysguardConfig | None = None,
        runner: CommandRunner | None = None,
        confirm: ConfirmCallback | None = None,
        detector: EnvironmentDetector | None = None,
        dns_probe: DnsProbe | None = None,
        port_probe: PortProbe | None = None,
    ) -> None:
        self._config = config or load_config_from_dict(DEFAULT_CONFIG)
        self._runner = runner or CommandRunner(
            default_timeout=self._config.probes.timeout_seconds * 6
        )

        # ── Subsystems ────────────────────────────────────────────
        self._detector = detector or EnvironmentDetector(
            self._runner, root=self._config.paths.root
        )
        self._registry = BackendRegistry.from_config(
            self._config, self._runner, dns_probe=dns_probe, port_probe=port_probe
        )
        self._journal = TransactionJournal()
        self._transaction = MutationTransaction(
            detector=self._detector,
            store_factory=self._new_store,
            confirm=confirm,
            journal=self._journal,
        )
        self._catalog = OperationCatalog(self._config, self._registry)
        self._batch = BatchRunner(self._catalog, self._transaction)

        self._setup_exporters()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def version(self) -> str:
        from sysguard import __version__

        return __version__

    @property
    def config(self) -> SysguardConfig:
        return self._config

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    @property
    def catalog(self) -> OperationCatalog:
        return self._catalog

    @property
    def journal(self) -> TransactionJournal:
        return self._journal

    # ── Class Methods (constructors) ──────────────────────────────

    @classmethod
    def from_config(cls, path: str, **kwargs: Any) -> MutationEngine:
        """
        Create an engine from a YAML config file.

        Args:
            path: Path to the YAML configuration.
            **kwargs: Passed through to the constructor.
        """
        return cls(config=load_config(path), **kwargs)

    @classmethod
    def default(cls, **kwargs: Any) -> MutationEngine:
        """Create an engine with the built-in defaults."""
        return cls(config=load_config_from_dict(DEFAULT_CONFIG), **kwargs)

    # ── Setup ─────────────────────────────────────────────────────

    def _setup_exporters(self) -> None:
        journal_cfg = self._config.journal
        if not journal_cfg.enabled:
            return
        if journal_cfg.path:
            self._journal.add_exporter(FileExporter(journal_cfg.path))
        if journal_cfg.stdout:
            self._journal.add_exporter(StdoutExporter())

    def _new_store(self, operation: str) -> BackupStore:
        return BackupStore(self._config.backup.directory, operation, self._runner)

    # ── Primary API ───────────────────────────────────────────────

    def run(self, operation: str, options: OperationOptions | None = None) -> BatchSummary:
        """
        Run an operation keyword (``tcp``, ``dns``, ``basic`` ...).

        Raises:
            UnknownOperationError: If the keyword is not known.
            CandidateError: If the options cannot form a plan.
        """
        return self._batch.run(operation, options)

    def apply(
        self, kind: BackendKind | str, candidate: Any, operation: str | None = None
    ) -> TransactionResult:
        """Drive one backend through a single transaction."""
        return self._transaction.run(self._registry.get(kind), candidate, operation)

    def detect(self) -> Environment:
        return self._detector.detect()

    def status(self) -> dict[str, dict[str, Any]]:
        """Current live state per backend."""
        state: dict[str, dict[str, Any]] = {}
        for backend in self._registry.backends:
            try:
                state[backend.name] = backend.current_state()
            except Exception as exc:
                logger.debug("current_state of %s failed: %s", backend.name, exc)
                state[backend.name] = {"error": str(exc)}
        return state

    def backups(self) -> list[BackupInfo]:
        return list_backups(self._config.backup.directory)

    def restore(self, directory: str) -> list[RestoreError]:
        """
        Write a backup directory back to the host.

        Args:
            directory: A backup directory as listed by ``backups()``.

        Returns:
            Restore errors; empty when every snapshot was written back.

        Raises:
            SnapshotNotFoundError: If ``directory`` is not a backup.
        """
        store = BackupStore.load(os.path.abspath(directory), self._runner)
        backend = self._backend_for(store.operation)
        if backend is not None:
            # Backends pick their restore hooks from the live environment.
            backend.detect_applicability(self._detector.detect())
            try:
                backend.before_restore()
            except Exception as exc:
                logger.error("before_restore hook of %s failed: %s", backend.name, exc)

        logger.info("Restoring %d snapshot(s) from %s", len(store.snapshots), directory)
        errors = store.restore_all()

        if backend is not None:
            try:
                backend.after_restore()
            except Exception as exc:
                logger.error("after_restore hook of %s failed: %s", backend.name, exc)

        store.mark("restored" if not errors else "restore_failed")
        return errors

    def add_exporter(self, exporter: Any) -> None:
        """Add a journal exporter implementing ``export(TransactionResult)``."""
        self._journal.add_exporter(exporter)

    def get_journal(
        self, operation: str | None = None, outcome: Outcome | None = None
    ) -> list[TransactionResult]:
        return self._journal.query(operation, outcome)

    def _backend_for(self, operation: str) -> BaseBackend | None:
        kind = BACKUP_BACKENDS.get(operation)
        if kind is None or not self._registry.has(kind):
            logger.warning("No backend hooks for backup operation %r", operation)
            return None
        return self._registry.get(kind)

    def __repr__(self) -> str:
        return f"<MutationEngine backends={len(self._registry.backends)}>"
