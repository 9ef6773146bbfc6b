"""
Stdout Exporter
~~~~~~~~~~~~~~~

Prints one summary line per transaction result, for operators tailing a
run or a service log.
"""

from __future__ import annotations

import sys
from typing import TextIO

from sysguard.core.models import TransactionResult
from sysguard.core.outcome import Outcome

__all__ = ["StdoutExporter", "format_result_line"]


def format_result_line(result: TransactionResult) -> str:
    """
    Render a result as ``key=value`` fields on a single line.

    Example::

        sysguard dns outcome=rolled_back verdict=fail failed_step=verify
        rollback=succeeded backup=/var/backups/sysguard/dns/20250101T000000_000000
    """
    fields = [f"sysguard {result.operation}", f"outcome={result.outcome.value}"]
    if result.verdict is not None:
        fields.append(f"verdict={result.verdict.value}")
    if result.outcome is not Outcome.COMMITTED and result.failed_step:
        fields.append(f"failed_step={result.failed_step}")
    if result.rollback_succeeded is not None:
        fields.append("rollback=" + ("succeeded" if result.rollback_succeeded else "FAILED"))
    if result.errors:
        fields.append(f"error={result.errors[-1].kind.value}")
    if result.backup_dir:
        fields.append(f"backup={result.backup_dir}")
    return " ".join(fields)


class StdoutExporter:
    """Writes each result as a summary line; defaults to stdout."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    def export(self, result: TransactionResult) -> None:
        self._stream.write(format_result_line(result) + "\n")
        self._stream.flush()
