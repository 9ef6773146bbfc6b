"""
Verifier
~~~~~~~~

Runs a backend's checks against the live host and aggregates them into
a VerificationReport. Stateless; a probe that raises is recorded as a
failed check rather than escaping.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sysguard.core.models import CheckResult, VerificationReport
from sysguard.core.outcome import CheckStatus

__all__ = ["Check", "Verifier", "EMPTY_REPORT_CHECK"]

logger = logging.getLogger(__name__)

EMPTY_REPORT_CHECK = "report.nonempty"


@dataclass(frozen=True)
class Check:
    """
    A named verification probe.

    Attributes:
        name: Stable check identifier, e.g. "sysctl.net.core.somaxconn".
        probe: Callable returning a (status, detail) pair.
        mandatory: Whether a failure of this check fails the whole report.
    """

    name: str
    probe: Callable[[], tuple[CheckStatus, str]]
    mandatory: bool = True


class Verifier:
    """Executes checks and builds the aggregate report."""

    def run(self, checks: Sequence[Check]) -> VerificationReport:
        """
        Run every check in order.

        Args:
            checks: The probes to execute.

        Returns:
            A VerificationReport. An empty check list produces a failed
            report, since nothing was observed.
        """
        if not checks:
            logger.warning("No verification checks supplied")
            return VerificationReport(
                (
                    CheckResult(
                        EMPTY_REPORT_CHECK,
                        CheckStatus.FAIL,
                        "no checks were run",
                    ),
                )
            )

        results = [self._run_one(check) for check in checks]
        report = VerificationReport(tuple(results))
        logger.info(
            "Verification verdict %s (%d checks)", report.verdict.value, len(results)
        )
        return report

    def _run_one(self, check: Check) -> CheckResult:
        try:
            status, detail = check.probe()
        except Exception as exc:
            logger.warning("Check %s raised: %s", check.name, exc)
            return CheckResult(
                check.name, CheckStatus.FAIL, f"probe error: {exc}", check.mandatory
            )
        if status is not CheckStatus.PASS:
            logger.debug("Check %s: %s (%s)", check.name, status.value, detail)
        return CheckResult(check.name, status, detail, check.mandatory)
