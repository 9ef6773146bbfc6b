"""sysguard observability — the transaction journal and its exporters."""

from sysguard.observability.exporters import FileExporter, StdoutExporter
from sysguard.observability.journal import TransactionJournal

__all__ = [
    "TransactionJournal",
    "StdoutExporter",
    "FileExporter",
]
