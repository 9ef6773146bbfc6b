"""
Batch Runner
~~~~~~~~~~~~

Runs an operation keyword to completion. Single operations run their
plan; ``basic`` and ``all`` run several plans in order, continuing past
failures, and report an aggregate summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sysguard.core.models import TransactionResult
from sysguard.core.outcome import Outcome, Verdict
from sysguard.core.transaction import MutationTransaction
from sysguard.operations.catalog import OperationCatalog, OperationOptions, Plan

__all__ = ["BatchRunner", "BatchSummary"]

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Aggregate of every transaction run for one operation keyword."""

    operation: str
    results: list[TransactionResult] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)

    @property
    def committed(self) -> list[TransactionResult]:
        return [r for r in self.results if r.outcome is Outcome.COMMITTED]

    @property
    def failed(self) -> list[TransactionResult]:
        return [r for r in self.results if r.outcome is not Outcome.COMMITTED]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def pending_reboot(self) -> bool:
        return any(r.verdict is Verdict.PENDING_REBOOT for r in self.committed)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "pending_reboot": self.pending_reboot,
            "results": [r.to_dict() for r in self.results],
            "skipped": [{"step": step, "reason": reason} for step, reason in self.skipped],
        }


class BatchRunner:
    """
    Expands an operation keyword and drives each step through a
    MutationTransaction.

    Args:
        catalog: Builds the plan for each operation.
        transaction: Runs each step.
    """

    def __init__(self, catalog: OperationCatalog, transaction: MutationTransaction) -> None:
        self._catalog = catalog
        self._transaction = transaction

    def run(self, operation: str, options: OperationOptions | None = None) -> BatchSummary:
        """
        Run every step of ``operation``.

        All plans are built before any step runs, so bad operator input
        fails before the host is touched.

        Raises:
            UnknownOperationError: If the keyword is not known.
            CandidateError: If operator input cannot form a plan.
        """
        batch = self._catalog.is_batch(operation)
        plans = [
            self._catalog.plan(name, options, batch=batch)
            for name in self._catalog.expand(operation)
        ]

        summary = BatchSummary(operation)
        for plan in plans:
            self._run_plan(plan, summary)

        if batch:
            logger.info(
                "%s finished: %d committed, %d failed, %d skipped",
                operation,
                len(summary.committed),
                len(summary.failed),
                len(summary.skipped),
            )
        return summary

    def _run_plan(self, plan: Plan, summary: BatchSummary) -> None:
        if plan.skip_reason:
            logger.info("Skipping %s: %s", plan.operation, plan.skip_reason)
            summary.skipped.append((plan.operation, plan.skip_reason))
            return

        halted = ""
        for step in plan.steps:
            if halted:
                logger.info("Not running %s: %s", step.name, halted)
                summary.skipped.append((step.name, halted))
                continue

            result = self._transaction.run(step.backend, step.candidate, operation=step.name)
            summary.results.append(result)

            if not plan.chained:
                continue
            if result.outcome is not Outcome.COMMITTED:
                halted = f"{step.name} was {result.outcome.value.replace('_', ' ')}"
            elif result.verdict is Verdict.PENDING_REBOOT:
                halted = f"reboot required after {step.name}, run {plan.operation} again afterwards"
