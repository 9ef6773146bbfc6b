"""
Transaction Journal
~~~~~~~~~~~~~~~~~~~

Structured record of every transaction result, forwarded to exporters.
"""

from __future__ import annotations

import logging
from typing import Any

from sysguard.core.models import TransactionResult
from sysguard.core.outcome import Outcome

__all__ = ["TransactionJournal"]

logger = logging.getLogger(__name__)


class TransactionJournal:
    """
    In-memory journal of transaction results with export support.

    Every result a MutationTransaction produces gets an entry here,
    whatever its outcome. Entries are forwarded to configured exporters;
    an exporter failure is logged and never interrupts the caller.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: list[TransactionResult] = []
        self._max_entries = max_entries
        self._exporters: list[Any] = []

    def add_exporter(self, exporter: Any) -> None:
        """Add an exporter to receive journal entries."""
        self._exporters.append(exporter)

    def write(self, result: TransactionResult) -> None:
        """
        Record a result and forward it to exporters.

        Args:
            result: The terminal transaction result.
        """
        self._entries.append(result)
        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries :]

        for exporter in self._exporters:
            try:
                exporter.export(result)
            except Exception as exc:
                logger.error(
                    "Exporter %s failed: %s",
                    type(exporter).__name__,
                    exc,
                )

    def query(
        self,
        operation: str | None = None,
        outcome: Outcome | None = None,
    ) -> list[TransactionResult]:
        """Return recorded results, optionally filtered."""
        return [
            entry
            for entry in self._entries
            if (operation is None or entry.operation == operation)
            and (outcome is None or entry.outcome is outcome)
        ]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
