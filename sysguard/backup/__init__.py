"""sysguard backups — snapshot capture, manifests and restore."""

from sysguard.backup.store import MANIFEST_NAME, BackupInfo, BackupStore, list_backups

__all__ = ["BackupStore", "BackupInfo", "list_backups", "MANIFEST_NAME"]
