"""
Service Backend
~~~~~~~~~~~~~~~

SSH daemon hardening: listening port and account credential.

The daemon configuration is syntax-checked with ``sshd -t`` after every
edit and before any restart, so a broken file is rolled back without the
daemon ever being restarted on it. Credentials change only through the
OS mechanisms (``chpasswd``, ``usermod -p``); the shadow file is never
edited directly.
"""

from __future__ import annotations

import logging
import os
import re
import socket
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.environment import Environment, ServiceManagerKind
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.core.validation import PasswordPolicy, parse_port
from sysguard.exceptions import ApplyError, BackupError, CandidateError

__all__ = [
    "ServiceBackend",
    "SshCandidate",
    "PortProbe",
    "port_in_use",
    "set_port",
    "current_port",
    "firewall_hints",
    "DEFAULT_SSH_PORT",
]

logger = logging.getLogger(__name__)

PortProbe = Callable[[int, float], bool]

_PORT_RE = re.compile(r"^\s*Port\s+(\d+)\s*(#.*)?$", re.IGNORECASE)
_MATCH_RE = re.compile(r"^\s*Match\s", re.IGNORECASE)
DEFAULT_SSH_PORT = 22
USABLE_PASSWORD_STATUSES = ("P", "PS")


@dataclass(frozen=True)
class SshCandidate:
    """
    Requested SSH changes. Either part may be omitted.

    Attributes:
        port: New listening port.
        username: Account whose password changes.
        password: The new password.
    """

    port: int | str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def changes_port(self) -> bool:
        return self.port is not None

    @property
    def changes_credential(self) -> bool:
        return bool(self.username) or bool(self.password)


def port_in_use(port: int, timeout: float) -> bool:
    """Return True if something accepts TCP connections on localhost:port."""
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=timeout):
            return True
    except OSError:
        return False


def current_port(text: str) -> int:
    for line in text.splitlines():
        match = _PORT_RE.match(line)
        if match:
            return int(match.group(1))
    return DEFAULT_SSH_PORT


def set_port(text: str, port: int) -> str:
    """
    Set the ``Port`` directive of an sshd_config.

    The first active ``Port`` line is replaced and later ones removed. When
    none exists the directive is added before the first ``Match`` block,
    where sshd still reads it as a global option.
    """
    lines = text.splitlines()
    out: list[str] = []
    replaced = False
    for line in lines:
        if _PORT_RE.match(line):
            if not replaced:
                out.append(f"Port {port}")
                replaced = True
            continue
        out.append(line)

    if not replaced:
        directive = f"Port {port}"
        for index, line in enumerate(out):
            if _MATCH_RE.match(line):
                out.insert(index, directive)
                break
        else:
            out.append(directive)
    return "\n".join(out) + "\n"


def firewall_hints(port: int, old_port: int, which: Callable[[str], str | None]) -> list[str]:
    """Commands an operator may need to open the new port."""
    hints: list[str] = []
    if which("ufw"):
        hints += [f"ufw allow {port}/tcp", f"ufw delete allow {old_port}/tcp"]
    if which("firewall-cmd"):
        hints += [f"firewall-cmd --permanent --add-port={port}/tcp", "firewall-cmd --reload"]
    if which("iptables"):
        hints += [
            f"iptables -A INPUT -p tcp --dport {port} -j ACCEPT",
            f"iptables -D INPUT -p tcp --dport {old_port} -j ACCEPT",
        ]
    return hints


class ServiceBackend(BaseBackend):
    """
    SSH daemon backend.

    Args:
        sshd_config: Path of the daemon configuration file.
        runner: Command runner for sshd, systemctl and the credential tools.
        port_probe: Liveness probe used to flag a port already bound.
        probe_timeout: Seconds allowed per liveness probe.
        port_range: Inclusive range of acceptable ports.
        password_policy: Credential strength policy.
    """

    kind = BackendKind.SERVICE
    name = "ssh"

    def __init__(
        self,
        sshd_config: str = "/etc/ssh/sshd_config",
        runner: CommandRunner | None = None,
        port_probe: PortProbe | None = None,
        probe_timeout: float = 5.0,
        port_range: tuple[int, int] = (1024, 65535),
        password_policy: PasswordPolicy | None = None,
    ) -> None:
        super().__init__(runner)
        self.sshd_config = sshd_config
        self._port_probe = port_probe or port_in_use
        self._probe_timeout = probe_timeout
        self._port_range = port_range
        self._policy = password_policy or PasswordPolicy()
        self._service_manager = ServiceManagerKind.SYSTEMD
        self._service_name: str | None = None
        self._restarted = False
        self.previous_port: int | None = None

    # ── Helpers ─────────────────────────────────────────────────

    def _read_config(self) -> str:
        with open(self.sshd_config, encoding="utf-8") as f:
            return f.read()

    def _syntax_check(self) -> tuple[bool, str]:
        result = self._runner.run(["sshd", "-t", "-f", self.sshd_config], timeout=15)
        return result.ok, result.output

    def service_name(self) -> str:
        """Discover whether the unit is called ``ssh`` or ``sshd``."""
        if self._service_name:
            return self._service_name
        name = "sshd"
        for candidate in ("ssh", "sshd"):
            if self._is_active(candidate):
                name = candidate
                break
        self._service_name = name
        return name

    def _is_active(self, unit: str) -> bool:
        if self._service_manager is ServiceManagerKind.SYSTEMD:
            argv = ["systemctl", "is-active", "--quiet", unit]
        else:
            argv = ["service", unit, "status"]
        return self._runner.run(argv, timeout=10).ok

    def _restart(self) -> None:
        unit = self.service_name()
        if self._service_manager is ServiceManagerKind.SYSTEMD:
            argv = ["systemctl", "restart", unit]
        else:
            argv = ["service", unit, "restart"]
        self._restarted = True
        result = self._runner.run(argv, timeout=60)
        if not result.ok:
            raise ApplyError(
                f"Restarting {unit} failed: {result.output}",
                command=argv,
                output=result.output,
            )
        logger.info("Restarted %s", unit)

    def _user_exists(self, username: str) -> bool:
        return self._runner.run(["getent", "passwd", username], timeout=10).ok

    # ── Backend interface ───────────────────────────────────────

    def detect_applicability(self, env: Environment) -> bool:
        self._service_manager = env.service_manager
        return os.path.exists(self.sshd_config) and self._runner.which("sshd") is not None

    def not_applicable_reason(self, env: Environment) -> str:
        return f"sshd or {self.sshd_config} is not present on this host"

    def validate(self, candidate: SshCandidate, env: Environment) -> list[Advisory]:
        if not candidate.changes_port and not candidate.changes_credential:
            raise CandidateError("Nothing to change: give a port and/or a credential")

        advisories: list[Advisory] = []
        if candidate.changes_port:
            low, high = self._port_range
            port = parse_port(candidate.port, low, high)
            existing = (
                current_port(self._read_config())
                if os.path.exists(self.sshd_config)
                else DEFAULT_SSH_PORT
            )
            if port != existing and self._port_probe(port, self._probe_timeout):
                advisories.append(
                    Advisory(
                        "port_in_use",
                        f"Port {port} is already accepting connections on this host",
                        requires_confirmation=True,
                    )
                )

        if candidate.changes_credential:
            if not candidate.username or not candidate.password:
                raise CandidateError(
                    "A credential change needs both a username and a password",
                    field="username" if not candidate.username else "password",
                )
            if ":" in candidate.username or "\n" in candidate.password:
                raise CandidateError(
                    "Username or password contains a forbidden character",
                    field="username",
                    value=candidate.username,
                )
            if not self._user_exists(candidate.username):
                raise CandidateError(
                    f"User {candidate.username!r} does not exist",
                    field="username",
                    value=candidate.username,
                )
            advisory = self._policy.assess(candidate.password, candidate.username)
            if advisory is not None:
                advisories.append(advisory)
        return advisories

    def snapshot_targets(self, candidate: SshCandidate, env: Environment) -> list[SnapshotTarget]:
        targets: list[SnapshotTarget] = []
        if candidate.changes_port:
            targets.append(SnapshotTarget.file(self.sshd_config))
        if candidate.changes_credential and candidate.username:
            user = candidate.username
            targets.append(
                SnapshotTarget.query(
                    f"credential:{user}",
                    ("getent", "shadow", user),
                    reapply=lambda out, u=user: _usermod_reapply(u, out),
                )
            )
        return targets

    def current_state(self) -> dict[str, Any]:
        state: dict[str, Any] = {"config": self.sshd_config}
        if os.path.exists(self.sshd_config):
            state["port"] = current_port(self._read_config())
        return state

    def apply(self, candidate: SshCandidate, env: Environment) -> ApplyOutcome:
        self._service_manager = env.service_manager
        self._restarted = False
        applied: dict[str, str] = {}

        if candidate.changes_port:
            low, high = self._port_range
            port = parse_port(candidate.port, low, high)
            try:
                text = self._read_config()
                self.previous_port = current_port(text)
                with open(self.sshd_config, "w", encoding="utf-8") as f:
                    f.write(set_port(text, port))
            except OSError as exc:
                raise ApplyError(f"Cannot update {self.sshd_config}: {exc}") from exc

            ok, output = self._syntax_check()
            if not ok:
                raise ApplyError(
                    f"sshd rejected the new configuration: {output}",
                    command=["sshd", "-t", "-f", self.sshd_config],
                    output=output,
                )
            applied["port"] = str(port)

        if candidate.changes_credential:
            argv = ["chpasswd"]
            result = self._runner.run(
                argv, timeout=30, input=f"{candidate.username}:{candidate.password}\n"
            )
            if not result.ok:
                raise ApplyError(
                    f"Changing the password of {candidate.username} failed: {result.output}",
                    command=argv,
                    output=result.output,
                )
            applied["user"] = str(candidate.username)
            logger.info("Changed password of %s", candidate.username)

        if candidate.changes_port:
            self._restart()

        return ApplyOutcome(
            changed=bool(applied),
            detail=", ".join(f"{k}={v}" for k, v in applied.items()),
            applied=applied,
        )

    def checks(self, candidate: SshCandidate, outcome: ApplyOutcome | None) -> list[Check]:
        checks: list[Check] = []
        if candidate.changes_port:
            port = parse_port(candidate.port, *self._port_range)
            checks += [
                Check("ssh.syntax", self._check_syntax),
                Check("ssh.port", lambda: self._check_port(port)),
                Check("ssh.service", self._check_service),
                Check("ssh.listening", lambda: self._check_listening(port), mandatory=False),
            ]
        if candidate.changes_credential and candidate.username:
            user = candidate.username
            checks.append(Check("ssh.credential", lambda: self._check_credential(user)))
        return checks

    def after_restore(self) -> None:
        if not self._restarted:
            return
        ok, output = self._syntax_check()
        if not ok:
            logger.error("Restored sshd configuration does not pass sshd -t: %s", output)
            return
        try:
            self._restart()
        except ApplyError as exc:
            logger.error("Restarting sshd after restore failed: %s", exc)

    # ── Probes ──────────────────────────────────────────────────

    def _check_syntax(self) -> tuple[CheckStatus, str]:
        ok, output = self._syntax_check()
        return (CheckStatus.PASS, "sshd -t ok") if ok else (CheckStatus.FAIL, output)

    def _check_port(self, port: int) -> tuple[CheckStatus, str]:
        configured = current_port(self._read_config())
        if configured != port:
            return CheckStatus.FAIL, f"configured port is {configured}"
        return CheckStatus.PASS, f"Port {port}"

    def _check_service(self) -> tuple[CheckStatus, str]:
        unit = self.service_name()
        if self._is_active(unit):
            return CheckStatus.PASS, f"{unit} active"
        return CheckStatus.FAIL, f"{unit} is not running"

    def _check_listening(self, port: int) -> tuple[CheckStatus, str]:
        if self._port_probe(port, self._probe_timeout):
            return CheckStatus.PASS, f"listening on {port}"
        return CheckStatus.WARN, f"nothing accepted a connection on {port}"

    def _check_credential(self, user: str) -> tuple[CheckStatus, str]:
        result = self._runner.run(["passwd", "-S", user], timeout=10)
        fields = result.stdout.split()
        # Debian prints P, the RHEL family PS.
        if result.ok and len(fields) > 1 and fields[1] in USABLE_PASSWORD_STATUSES:
            return CheckStatus.PASS, f"{user} has a usable password"
        return CheckStatus.FAIL, f"passwd -S {user}: {result.output or 'no status'}"


def _usermod_reapply(user: str, getent_output: str) -> list[tuple[str, ...]]:
    fields = getent_output.strip().split(":")
    if len(fields) < 2 or not fields[1]:
        raise BackupError(f"Unexpected shadow entry for {user}", source=f"credential:{user}")
    return [("usermod", "-p", fields[1], user)]
