"""
Limits Backend
~~~~~~~~~~~~~~

Per-login resource limits (open files, processes) kept in a marked
section of ``/etc/security/limits.conf``:

    # ===== sysguard:limits BEGIN =====
    * soft nofile 1048576
    * hard nofile 1048576
    # ===== sysguard:limits END =====

pam_limits reads the file when a session starts, so there is no live
value to compare against. Verification reads the section back.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.environment import Environment
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.core.validation import parse_limit_line
from sysguard.exceptions import ApplyError, CandidateError

__all__ = ["LimitsBackend", "LimitsCandidate", "replace_block", "read_block", "DEFAULT_SECTION"]

logger = logging.getLogger(__name__)

_BEGIN = "# ===== sysguard:{section} BEGIN ====="
_END = "# ===== sysguard:{section} END ====="
DEFAULT_SECTION = "limits"


@dataclass(frozen=True)
class LimitsCandidate:
    """
    Desired limit entries for one marked section.

    Attributes:
        section: Marker name.
        entries: ``domain type item value`` lines, whitespace-normalised.
    """

    section: str
    entries: tuple[str, ...]

    @classmethod
    def from_lines(cls, section: str, lines: Iterable[str]) -> LimitsCandidate:
        return cls(section, tuple(" ".join(line.split()) for line in lines))

    def keyed(self) -> dict[str, str]:
        """``"domain type item" -> value``, validating every entry."""
        result: dict[str, str] = {}
        for line in self.entries:
            domain, kind, item, value = parse_limit_line(line)
            key = f"{domain} {kind} {item}"
            if key in result:
                raise CandidateError(f"Duplicate limit entry {key!r}", field="limits", value=line)
            result[key] = value
        return result


def _bounds(lines: list[str], section: str) -> tuple[int, int] | None:
    begin, end = _BEGIN.format(section=section), _END.format(section=section)
    start = None
    for index, line in enumerate(lines):
        if line.strip() == begin and start is None:
            start = index
        elif line.strip() == end and start is not None:
            return start, index
    return None


def read_block(text: str, section: str) -> list[str]:
    """Entries inside a marked section, comments and blanks dropped."""
    lines = text.splitlines()
    bounds = _bounds(lines, section)
    if bounds is None:
        return []
    return [
        " ".join(line.split())
        for line in lines[bounds[0] + 1 : bounds[1]]
        if line.strip() and not line.strip().startswith("#")
    ]


def replace_block(text: str, section: str, entries: Iterable[str]) -> tuple[str, bool]:
    """
    Make the marked section hold exactly ``entries``.

    The section is appended when absent; lines outside it are left alone.

    Returns:
        The new text and whether it differs from ``text``.
    """
    entries = list(entries)
    lines = text.splitlines()
    bounds = _bounds(lines, section)
    if bounds is not None and read_block(text, section) == entries:
        return text, False

    block = [_BEGIN.format(section=section), *entries, _END.format(section=section)]
    if bounds is None:
        prefix = lines + [""] if lines and lines[-1].strip() else lines
        new_lines = prefix + block
    else:
        new_lines = lines[: bounds[0]] + block + lines[bounds[1] + 1 :]
    new_text = "\n".join(new_lines) + "\n"
    return new_text, new_text != text


class LimitsBackend(BaseBackend):
    """
    Resource limit backend for ``limits.conf``.

    Args:
        conf_path: The pam_limits configuration file.
        runner: Shared command runner.
    """

    kind = BackendKind.LIMITS
    name = "limits"

    def __init__(
        self,
        conf_path: str = "/etc/security/limits.conf",
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(runner)
        self.conf_path = conf_path

    def _read(self) -> str:
        if not os.path.exists(self.conf_path):
            return ""
        with open(self.conf_path, encoding="utf-8") as f:
            return f.read()

    def detect_applicability(self, env: Environment) -> bool:
        return os.path.isdir(os.path.dirname(self.conf_path))

    def not_applicable_reason(self, env: Environment) -> str:
        return f"{os.path.dirname(self.conf_path)} does not exist (pam_limits not installed)"

    def validate(self, candidate: LimitsCandidate, env: Environment) -> list[Advisory]:
        if not candidate.entries:
            raise CandidateError("No limit entries requested", field="limits")
        candidate.keyed()
        return []

    def snapshot_targets(
        self, candidate: LimitsCandidate, env: Environment
    ) -> list[SnapshotTarget]:
        return [SnapshotTarget.file(self.conf_path)]

    def current_state(self) -> dict[str, Any]:
        text = self._read()
        return {"file": self.conf_path, "entries": read_block(text, DEFAULT_SECTION)}

    def apply(self, candidate: LimitsCandidate, env: Environment) -> ApplyOutcome:
        try:
            text, changed = replace_block(self._read(), candidate.section, candidate.entries)
            if changed:
                with open(self.conf_path, "w", encoding="utf-8") as f:
                    f.write(text)
                logger.info("Updated section %r in %s", candidate.section, self.conf_path)
        except OSError as exc:
            raise ApplyError(f"Cannot update {self.conf_path}: {exc}") from exc
        return ApplyOutcome(
            changed=changed,
            detail=f"{len(candidate.entries)} limits set, effective for new sessions",
            applied=candidate.keyed(),
        )

    def checks(self, candidate: LimitsCandidate, outcome: ApplyOutcome | None) -> list[Check]:
        section = candidate.section
        return [
            Check(
                f"limits.{key.replace(' ', '.')}",
                lambda k=key, v=value: self._check_entry(section, k, v),
            )
            for key, value in candidate.keyed().items()
        ]

    def _check_entry(self, section: str, key: str, value: str) -> tuple[CheckStatus, str]:
        configured: dict[str, str] = {}
        for line in read_block(self._read(), section):
            fields = line.split()
            if len(fields) == 4:
                configured[" ".join(fields[:3])] = fields[3]
        if configured.get(key) != value:
            found = configured.get(key, "unset")
            return CheckStatus.FAIL, f"{key} is {found} in {self.conf_path}"
        return CheckStatus.PASS, f"{key} {value}"
