"""
Backup Store
~~~~~~~~~~~~

Captures prior host state before a mutation and writes it back on
rollback. Each store owns one directory,
``<base_dir>/<operation>/<timestamp>``, created exclusively on the first
capture and never reused. A ``manifest.json`` beside the copies records
every snapshot so a later ``sysguard restore <dir>`` can replay it.

File snapshots keep a byte-exact copy (mode 0600) plus the original
permission bits, existence and symlink target. Query snapshots keep the
output of a read-only command and the commands that put that value back.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from sysguard.core.models import Snapshot, SnapshotKind, SnapshotTarget
from sysguard.core.runner import CommandRunner, redact_argv
from sysguard.exceptions import BackupError, RestoreError, SnapshotNotFoundError

__all__ = ["BackupStore", "BackupInfo", "list_backups", "MANIFEST_NAME"]

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
_FILES_DIR = "files"
_STAMP_FORMAT = "%Y%m%dT%H%M%S_%f"
_QUERY_TIMEOUT = 10.0


@dataclass(frozen=True)
class BackupInfo:
    """Summary of one backup directory, as listed by ``sysguard backups``."""

    path: str
    operation: str
    created_at: str
    snapshot_count: int
    outcome: str | None = None


class BackupStore:
    """
    Snapshot capture and restore for one transaction.

    Args:
        base_dir: Root of the backup tree.
        operation: Operation keyword, used as the first directory level.
        runner: Command runner for query snapshots and reapply commands.
    """

    def __init__(
        self,
        base_dir: str,
        operation: str,
        runner: CommandRunner | None = None,
    ) -> None:
        self._base_dir = base_dir
        self._operation = operation
        self._runner = runner or CommandRunner()
        self._directory: str | None = None
        self._snapshots: list[Snapshot] = []
        self._created_at = datetime.now(UTC)
        self._outcome: str | None = None

    @property
    def directory(self) -> str | None:
        """The backup directory, or None before the first capture."""
        return self._directory

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def snapshots(self) -> list[Snapshot]:
        return list(self._snapshots)

    # ── Capture ─────────────────────────────────────────────────

    def capture(self, target: SnapshotTarget) -> Snapshot:
        """Capture one SnapshotTarget, dispatching on its kind."""
        if target.kind is SnapshotKind.FILE:
            return self.snapshot(target.source)
        return self.snapshot_query(target.source, target.argv, target.reapply)

    def snapshot(self, path: str) -> Snapshot:
        """
        Capture a file's bytes, mode and existence.

        Args:
            path: Absolute path of the file to capture.

        Returns:
            The recorded Snapshot.

        Raises:
            BackupError: If the source cannot be read or the store cannot
                be written.
        """
        directory = self._ensure_directory()
        snap_id = self._next_id()

        if os.path.islink(path):
            try:
                link_target = os.readlink(path)
            except OSError as exc:
                raise BackupError(
                    f"Cannot read symlink {path}: {exc}", source=path
                ) from exc
            snapshot = Snapshot(
                id=snap_id,
                kind=SnapshotKind.FILE,
                source=path,
                existed=True,
                symlink_target=link_target,
            )
            return self._record(snapshot)

        if not os.path.exists(path):
            snapshot = Snapshot(
                id=snap_id, kind=SnapshotKind.FILE, source=path, existed=False
            )
            return self._record(snapshot)

        try:
            with open(path, "rb") as f:
                content = f.read()
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except OSError as exc:
            raise BackupError(f"Cannot read {path}: {exc}", source=path) from exc

        backup_path = os.path.join(
            directory, _FILES_DIR, f"{snap_id}_{os.path.basename(path) or 'root'}"
        )
        try:
            os.makedirs(os.path.dirname(backup_path), exist_ok=True)
            fd = os.open(backup_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(content)
        except OSError as exc:
            raise BackupError(
                f"Cannot write backup copy of {path} to {backup_path}: {exc}",
                source=path,
            ) from exc

        snapshot = Snapshot(
            id=snap_id,
            kind=SnapshotKind.FILE,
            source=path,
            backup_path=backup_path,
            existed=True,
            captured=content,
            mode=mode,
        )
        return self._record(snapshot)

    def snapshot_query(
        self,
        label: str,
        argv: Sequence[str],
        reapply: Callable[[str], list[tuple[str, ...]]] | None = None,
    ) -> Snapshot:
        """
        Capture the output of a read-only command.

        Args:
            label: Human-readable name for the queried value.
            argv: Command to run.
            reapply: Turns the captured output into restore commands. The
                commands are computed now so a restore never depends on
                code that ran after the mutation.

        Raises:
            BackupError: If the query exits non-zero or the store cannot
                be written.
        """
        self._ensure_directory()
        result = self._runner.run(argv, timeout=_QUERY_TIMEOUT)
        if not result.ok:
            raise BackupError(
                f"Query for {label} failed ({result.returncode}): {result.output}",
                source=label,
            )
        output = result.stdout
        commands: tuple[tuple[str, ...], ...] = ()
        if reapply is not None:
            commands = tuple(tuple(cmd) for cmd in reapply(output))

        snapshot = Snapshot(
            id=self._next_id(),
            kind=SnapshotKind.QUERY,
            source=label,
            captured=output.encode("utf-8"),
            query=tuple(argv),
            reapply=commands,
        )
        return self._record(snapshot)

    # ── Restore ─────────────────────────────────────────────────

    def restore(self, snapshot: Snapshot) -> None:
        """
        Write one snapshot back to the host.

        Raises:
            RestoreError: If the prior state cannot be reinstated.
        """
        if snapshot.kind is SnapshotKind.QUERY:
            self._restore_query(snapshot)
        else:
            self._restore_file(snapshot)

    def restore_all(self, snapshots: Iterable[Snapshot] | None = None) -> list[RestoreError]:
        """
        Restore snapshots in reverse capture order.

        Best-effort: every snapshot is attempted once, failures are
        collected and returned, nothing is raised and nothing is retried.
        """
        pending = list(self._snapshots if snapshots is None else snapshots)
        errors: list[RestoreError] = []
        for snapshot in reversed(pending):
            try:
                self.restore(snapshot)
            except RestoreError as exc:
                logger.error("Restore of %s failed: %s", snapshot.source, exc.args[0])
                errors.append(exc)
        return errors

    def _restore_file(self, snapshot: Snapshot) -> None:
        path = snapshot.source
        try:
            if snapshot.symlink_target is not None:
                if os.path.lexists(path):
                    os.remove(path)
                os.symlink(snapshot.symlink_target, path)
                logger.debug("Restored symlink %s -> %s", path, snapshot.symlink_target)
                return

            if not snapshot.existed:
                if os.path.lexists(path):
                    os.remove(path)
                    logger.debug("Removed %s, which did not exist before", path)
                return

            content = snapshot.captured
            if snapshot.backup_path:
                if not os.path.exists(snapshot.backup_path) and not content:
                    raise RestoreError(
                        "backup copy is missing",
                        source=path,
                        backup_path=snapshot.backup_path,
                    )
                if os.path.exists(snapshot.backup_path):
                    with open(snapshot.backup_path, "rb") as f:
                        content = f.read()

            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            if os.path.islink(path):
                os.remove(path)
            tmp_path = f"{path}.sysguard-restore"
            with open(tmp_path, "wb") as f:
                f.write(content)
            if snapshot.mode is not None:
                os.chmod(tmp_path, snapshot.mode)
            os.replace(tmp_path, path)
            logger.debug("Restored %s (%d bytes)", path, len(content))
        except OSError as exc:
            raise RestoreError(
                str(exc), source=path, backup_path=snapshot.backup_path
            ) from exc

    def _restore_query(self, snapshot: Snapshot) -> None:
        if not snapshot.restorable:
            logger.debug("Snapshot %s is informational, nothing to restore", snapshot.source)
            return
        for argv in snapshot.reapply:
            result = self._runner.run(argv, timeout=_QUERY_TIMEOUT)
            if not result.ok:
                command = redact_argv(argv)
                if command != " ".join(argv):
                    captured = f"2. The previous value is in {MANIFEST_NAME} of this backup"
                else:
                    captured = f"2. Captured value was: {snapshot.text.strip()}"
                raise RestoreError(
                    f"{command} exited {result.returncode}: {result.output}",
                    source=snapshot.source,
                    backup_path=self._directory or "",
                    how_to_fix=f"1. Reapply the previous value by hand:\n   {command}\n{captured}",
                )

    # ── Manifest ────────────────────────────────────────────────

    def mark(self, outcome: str) -> None:
        """Record the transaction outcome in the manifest."""
        self._outcome = outcome
        if self._directory is not None:
            self._write_manifest(self._directory)

    @classmethod
    def load(cls, directory: str, runner: CommandRunner | None = None) -> BackupStore:
        """
        Reopen an existing backup directory for a manual restore.

        Raises:
            SnapshotNotFoundError: If the directory or manifest is missing
                or unreadable.
        """
        manifest_path = os.path.join(directory, MANIFEST_NAME)
        if not os.path.isfile(manifest_path):
            raise SnapshotNotFoundError(f"No backup manifest in {directory}")
        try:
            with open(manifest_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotNotFoundError(
                f"Cannot read backup manifest {manifest_path}: {exc}"
            ) from exc

        store = cls(
            os.path.dirname(os.path.dirname(os.path.abspath(directory))),
            data.get("operation", "unknown"),
            runner=runner,
        )
        store._directory = directory
        store._outcome = data.get("outcome")
        store._created_at = datetime.fromisoformat(data["created_at"])
        store._snapshots = [Snapshot.from_dict(item) for item in data.get("snapshots", [])]
        return store

    def _record(self, snapshot: Snapshot) -> Snapshot:
        self._snapshots.append(snapshot)
        try:
            self._write_manifest(self._ensure_directory())
        except OSError as exc:
            raise BackupError(
                f"Cannot write backup manifest: {exc}", source=snapshot.source
            ) from exc
        logger.debug("Captured %s snapshot of %s", snapshot.kind.value, snapshot.source)
        return snapshot

    def _write_manifest(self, directory: str) -> None:
        """Replace the manifest atomically. Mode 0600: query output may hold credentials."""
        data = {
            "operation": self._operation,
            "created_at": self._created_at.isoformat(),
            "outcome": self._outcome,
            "snapshots": [s.to_dict() for s in self._snapshots],
        }
        path = os.path.join(directory, MANIFEST_NAME)
        tmp_path = path + ".tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)

    def _ensure_directory(self) -> str:
        if self._directory is not None:
            return self._directory

        parent = os.path.join(self._base_dir, self._operation)
        stamp = self._created_at.astimezone().strftime(_STAMP_FORMAT)
        try:
            os.makedirs(parent, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Cannot create backup directory {parent}: {exc}") from exc

        suffix = 0
        while True:
            name = stamp if suffix == 0 else f"{stamp}-{suffix}"
            candidate = os.path.join(parent, name)
            try:
                os.mkdir(candidate, 0o700)
                break
            except FileExistsError:
                suffix += 1
            except OSError as exc:
                raise BackupError(
                    f"Cannot create backup directory {candidate}: {exc}"
                ) from exc

        self._directory = candidate
        logger.info("Backups for %s go to %s", self._operation, candidate)
        return candidate

    def _next_id(self) -> str:
        stamp = self._created_at.astimezone().strftime(_STAMP_FORMAT)
        return f"{stamp}-{len(self._snapshots):03d}"


def list_backups(base_dir: str) -> list[BackupInfo]:
    """Enumerate backup directories under ``base_dir``, newest first."""
    found: list[BackupInfo] = []
    if not os.path.isdir(base_dir):
        return found
    for operation in sorted(os.listdir(base_dir)):
        op_dir = os.path.join(base_dir, operation)
        if not os.path.isdir(op_dir):
            continue
        for name in os.listdir(op_dir):
            manifest = os.path.join(op_dir, name, MANIFEST_NAME)
            if not os.path.isfile(manifest):
                continue
            try:
                with open(manifest, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable manifest %s: %s", manifest, exc)
                continue
            found.append(
                BackupInfo(
                    path=os.path.join(op_dir, name),
                    operation=data.get("operation", operation),
                    created_at=data.get("created_at", ""),
                    snapshot_count=len(data.get("snapshots", [])),
                    outcome=data.get("outcome"),
                )
            )
    found.sort(key=lambda info: (info.created_at, info.path), reverse=True)
    return found
