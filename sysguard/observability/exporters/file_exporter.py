"""
File Exporter
~~~~~~~~~~~~~

Appends transaction results as JSON lines to a journal file.
"""

from __future__ import annotations

import json
import os

from sysguard.core.models import TransactionResult

__all__ = ["FileExporter"]


class FileExporter:
    """Append-only JSON-lines journal on disk. The file is opened per write."""

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def export(self, result: TransactionResult) -> None:
        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(json.dumps(result.to_dict(), default=str) + "\n")
