"""
Sysctl Backend
~~~~~~~~~~~~~~

Manages kernel network parameters through a marked section of the sysctl
configuration file:

    # ===== sysguard:tcp BEGIN =====
    net.core.somaxconn = 8192
    # ===== sysguard:tcp END =====

Apply merges the requested keys into the section (replace differing
values, append missing ones), writes the file only when it changes, and
reloads it with ``sysctl -p``. Keys the running kernel does not expose are
dropped from the section and the reload is retried once; those keys are
reported as skipped rather than failing the whole change.

Verification reads the live value under ``/proc/sys``, never the file.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.environment import Environment
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.exceptions import ApplyError, CandidateError

__all__ = [
    "SysctlBackend",
    "SysctlCandidate",
    "merge_section",
    "remove_section_keys",
    "parse_section",
    "list_sections",
    "parse_unsupported_keys",
    "normalise_value",
]

logger = logging.getLogger(__name__)

_BEGIN = "# ===== sysguard:{section} BEGIN ====="
_END = "# ===== sysguard:{section} END ====="
_MARKER_RE = re.compile(r"^# ===== sysguard:([\w-]+) (BEGIN|END) =====$")
_SECTION_RE = re.compile(r"^[a-z0-9_-]+$")
_KEY_RE = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)+$")

_UNSUPPORTED_PATTERNS = (
    re.compile(r"cannot stat /proc/sys/(\S+?):"),
    re.compile(r"unknown key ['\"]?([\w.\-/]+)"),
    re.compile(r"permission denied on key ['\"]?([\w.\-/]+)"),
)

_SYSCTL_TIMEOUT = 30.0


def normalise_value(value: Any) -> str:
    """Collapse internal whitespace so ``4096\\t87380`` equals ``4096 87380``."""
    return " ".join(str(value).split())


@dataclass(frozen=True)
class SysctlCandidate:
    """
    Desired kernel parameters for one marked section.

    Attributes:
        section: Marker name, e.g. "tcp" or "bbr".
        settings: Ordered ``(key, value)`` pairs.
    """

    section: str
    settings: tuple[tuple[str, str], ...]

    @classmethod
    def from_mapping(cls, section: str, settings: Mapping[str, Any]) -> SysctlCandidate:
        return cls(
            section,
            tuple((key, normalise_value(value)) for key, value in settings.items()),
        )

    @property
    def keys(self) -> list[str]:
        return [key for key, _ in self.settings]

    def as_dict(self) -> dict[str, str]:
        return dict(self.settings)


# ── Section editing ──────────────────────────────────────────────────────────


def _parse_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith(("#", ";")) or "=" not in stripped:
        return None
    key, _, value = stripped.partition("=")
    return key.strip(), normalise_value(value)


def _find_section(lines: list[str], section: str) -> tuple[int, int] | None:
    begin = _BEGIN.format(section=section)
    end = _END.format(section=section)
    start = None
    for index, line in enumerate(lines):
        if line.strip() == begin and start is None:
            start = index
        elif line.strip() == end and start is not None:
            return start, index
    return None


def parse_section(text: str, section: str) -> dict[str, str]:
    """Return the ``key -> value`` pairs inside a marked section."""
    lines = text.splitlines()
    bounds = _find_section(lines, section)
    if bounds is None:
        return {}
    values: dict[str, str] = {}
    for line in lines[bounds[0] + 1 : bounds[1]]:
        parsed = _parse_line(line)
        if parsed:
            values[parsed[0]] = parsed[1]
    return values


def list_sections(text: str) -> list[str]:
    """Names of every sysguard section present in ``text``."""
    names: list[str] = []
    for line in text.splitlines():
        match = _MARKER_RE.match(line.strip())
        if match and match.group(2) == "BEGIN" and match.group(1) not in names:
            names.append(match.group(1))
    return names


def merge_section(
    text: str, section: str, settings: Iterable[tuple[str, str]]
) -> tuple[str, bool]:
    """
    Merge settings into a marked section.

    Existing keys with a different value are rewritten in place, missing
    keys are appended before the end marker, and the section is created
    at the end of the file when absent. Lines outside the section are
    never touched.

    Returns:
        The new text and whether it differs from ``text``.
    """
    settings = list(settings)
    lines = text.splitlines()
    bounds = _find_section(lines, section)

    if bounds is None:
        block = [_BEGIN.format(section=section)]
        block += [f"{key} = {value}" for key, value in settings]
        block.append(_END.format(section=section))
        prefix = lines + [""] if lines and lines[-1].strip() else lines
        new_lines = prefix + block
    else:
        start, end = bounds
        body = lines[start + 1 : end]
        seen: set[str] = set()
        for key, value in settings:
            for index, line in enumerate(body):
                parsed = _parse_line(line)
                if parsed and parsed[0] == key:
                    seen.add(key)
                    if parsed[1] != normalise_value(value):
                        body[index] = f"{key} = {value}"
                    break
        body += [f"{key} = {value}" for key, value in settings if key not in seen]
        new_lines = lines[: start + 1] + body + lines[end:]

    new_text = "\n".join(new_lines) + "\n"
    return new_text, new_text != text


def remove_section_keys(text: str, section: str, keys: Iterable[str]) -> str:
    """Drop the given keys from a marked section, leaving everything else."""
    drop = set(keys)
    lines = text.splitlines()
    bounds = _find_section(lines, section)
    if bounds is None or not drop:
        return text
    start, end = bounds
    body = [
        line
        for line in lines[start + 1 : end]
        if not ((parsed := _parse_line(line)) and parsed[0] in drop)
    ]
    return "\n".join(lines[: start + 1] + body + lines[end:]) + "\n"


def parse_unsupported_keys(output: str, candidates: Iterable[str] | None = None) -> list[str]:
    """
    Extract the keys a ``sysctl -p`` run rejected.

    Recognises "cannot stat /proc/sys/...", "unknown key" and "permission
    denied on key" messages. When ``candidates`` is given only those keys
    are returned.
    """
    found: list[str] = []
    for pattern in _UNSUPPORTED_PATTERNS:
        for match in pattern.finditer(output):
            key = match.group(1).strip("'\"").replace("/", ".")
            if key not in found:
                found.append(key)
    if candidates is not None:
        allowed = set(candidates)
        found = [key for key in found if key in allowed]
    return found


# ── Backend ──────────────────────────────────────────────────────────────────


class SysctlBackend(BaseBackend):
    """
    Kernel parameter backend for TCP tuning and BBR settings.

    Args:
        conf_path: The sysctl configuration file holding the marked sections.
        proc_sys: Root of the live parameter tree.
        runner: Command runner for ``sysctl``.
    """

    kind = BackendKind.SYSCTL
    name = "sysctl"
    allow_skip = True

    def __init__(
        self,
        conf_path: str = "/etc/sysctl.conf",
        proc_sys: str = "/proc/sys",
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(runner)
        self.conf_path = conf_path
        self.proc_sys = proc_sys

    # ── Live values ─────────────────────────────────────────────

    def proc_path(self, key: str) -> str:
        return os.path.join(self.proc_sys, *key.split("."))

    def key_exists(self, key: str) -> bool:
        return os.path.exists(self.proc_path(key))

    def read_live(self, key: str) -> str | None:
        """Read a live parameter value, or None when the kernel lacks it."""
        path = self.proc_path(key)
        try:
            with open(path, encoding="utf-8") as f:
                return normalise_value(f.read())
        except OSError:
            return None

    def _read_conf(self) -> str:
        if not os.path.exists(self.conf_path):
            return ""
        with open(self.conf_path, encoding="utf-8") as f:
            return f.read()

    def _write_conf(self, text: str) -> None:
        with open(self.conf_path, "w", encoding="utf-8") as f:
            f.write(text)

    # ── Backend interface ───────────────────────────────────────

    def detect_applicability(self, env: Environment) -> bool:
        return os.path.isdir(self.proc_sys) and self._runner.which("sysctl") is not None

    def not_applicable_reason(self, env: Environment) -> str:
        return f"no sysctl binary or {self.proc_sys} tree on this host"

    def validate(self, candidate: SysctlCandidate, env: Environment) -> list[Advisory]:
        if not _SECTION_RE.match(candidate.section):
            raise CandidateError(
                f"Invalid section name {candidate.section!r}",
                field="section",
                value=candidate.section,
            )
        if not candidate.settings:
            raise CandidateError("No kernel parameters requested", field="settings")
        seen: set[str] = set()
        for key, value in candidate.settings:
            if not _KEY_RE.match(key):
                raise CandidateError(f"Invalid sysctl key {key!r}", field="key", value=key)
            if key in seen:
                raise CandidateError(f"Duplicate sysctl key {key!r}", field="key", value=key)
            seen.add(key)
            if not str(value).strip() or "\n" in str(value):
                raise CandidateError(
                    f"Invalid value for {key}: {value!r}", field=key, value=value
                )
        return []

    def snapshot_targets(
        self, candidate: SysctlCandidate, env: Environment
    ) -> list[SnapshotTarget]:
        targets = [SnapshotTarget.file(self.conf_path)]
        for key in candidate.keys:
            if not self.key_exists(key):
                continue
            targets.append(
                SnapshotTarget.query(
                    f"sysctl:{key}",
                    ("sysctl", "-n", key),
                    reapply=lambda out, k=key: [
                        ("sysctl", "-w", f"{k}={normalise_value(out)}")
                    ],
                )
            )
        return targets

    def current_state(self) -> dict[str, Any]:
        text = self._read_conf()
        sections = {name: parse_section(text, name) for name in list_sections(text)}
        live = {
            key: self.read_live(key)
            for values in sections.values()
            for key in values
        }
        return {"file": self.conf_path, "sections": sections, "live": live}

    def apply(self, candidate: SysctlCandidate, env: Environment) -> ApplyOutcome:
        try:
            original = self._read_conf()
            merged, changed = merge_section(original, candidate.section, candidate.settings)
            if changed:
                self._write_conf(merged)
                logger.info(
                    "Updated section %r in %s", candidate.section, self.conf_path
                )
            else:
                logger.info(
                    "Section %r in %s already up to date", candidate.section, self.conf_path
                )
        except OSError as exc:
            raise ApplyError(f"Cannot update {self.conf_path}: {exc}") from exc

        skipped = self._reload(candidate, merged)
        applied = {k: v for k, v in candidate.settings if k not in skipped}
        detail = f"{len(applied)} parameters applied"
        if skipped:
            detail += f", {len(skipped)} unsupported skipped"
        return ApplyOutcome(
            changed=changed,
            detail=detail,
            applied=applied,
            skipped=tuple(skipped),
        )

    def _reload(self, candidate: SysctlCandidate, text: str) -> list[str]:
        """
        Reload the file, retrying once without unsupported keys.

        When the file still fails to load because of lines outside the
        section, the section's keys are set one by one with ``sysctl -w``
        and verification judges the live values.
        """
        argv = ["sysctl", "-p", self.conf_path]
        result = self._runner.run(argv, timeout=_SYSCTL_TIMEOUT)
        if result.ok:
            return []

        unsupported = parse_unsupported_keys(result.output, candidate.keys)
        if unsupported and not self.allow_skip:
            raise ApplyError(
                f"sysctl reload failed: {result.output}",
                command=argv,
                output=result.output,
                unsupported_keys=unsupported,
            )

        if unsupported:
            logger.warning(
                "Kernel does not support %s; removing from section %r and retrying",
                ", ".join(unsupported),
                candidate.section,
            )
            try:
                self._write_conf(remove_section_keys(text, candidate.section, unsupported))
            except OSError as exc:
                raise ApplyError(f"Cannot update {self.conf_path}: {exc}") from exc
            result = self._runner.run(argv, timeout=_SYSCTL_TIMEOUT)
            if result.ok:
                return unsupported

        foreign = parse_unsupported_keys(result.output)
        logger.warning(
            "sysctl -p %s failed outside section %r (%s); setting its keys directly",
            self.conf_path,
            candidate.section,
            ", ".join(foreign) or result.output or "no output",
        )
        self._write_keys(candidate, skip=unsupported)
        return unsupported

    def _write_keys(self, candidate: SysctlCandidate, skip: Iterable[str] = ()) -> None:
        skipped = set(skip)
        for key, value in candidate.settings:
            if key in skipped:
                continue
            argv = ["sysctl", "-w", f"{key}={normalise_value(value)}"]
            result = self._runner.run(argv, timeout=_SYSCTL_TIMEOUT)
            if not result.ok:
                raise ApplyError(
                    f"sysctl -w {key} failed: {result.output}",
                    command=argv,
                    output=result.output,
                    unsupported_keys=parse_unsupported_keys(result.output, [key]),
                )

    def checks(
        self, candidate: SysctlCandidate, outcome: ApplyOutcome | None
    ) -> list[Check]:
        skipped = set(outcome.skipped) if outcome else set()
        result: list[Check] = []
        for key, value in candidate.settings:
            if key in skipped:
                result.append(
                    Check(
                        f"sysctl.{key}",
                        lambda: (CheckStatus.SKIPPED, "not supported by this kernel"),
                        mandatory=False,
                    )
                )
            else:
                result.append(
                    Check(f"sysctl.{key}", lambda k=key, v=value: self._check_live(k, v))
                )
        return result

    def _check_live(self, key: str, expected: str) -> tuple[CheckStatus, str]:
        actual = self.read_live(key)
        if actual is None:
            return CheckStatus.FAIL, f"{self.proc_path(key)} is not present"
        if actual != normalise_value(expected):
            return CheckStatus.FAIL, f"expected {expected!r}, live value is {actual!r}"
        return CheckStatus.PASS, actual
