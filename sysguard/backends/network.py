"""
Network Config Backend
~~~~~~~~~~~~~~~~~~~~~~

DNS resolver configuration. Exactly one mechanism owns resolution on a
host and exactly one is written:

- ``direct``: ``/etc/resolv.conf`` is rewritten, optionally locked with
  ``chattr +i`` so DHCP hooks cannot overwrite it.
- ``resolved``: the ``DNS=`` directive in ``resolved.conf``, then
  ``systemd-resolved`` is restarted.
- ``networkManager``: the active connection's ``ipv4.dns`` via ``nmcli``.

Before applying, each new server is asked for one test domain; a server
that does not answer is an advisory the operator must accept.

Verification resolves a few well-known domains with a bounded timeout per
attempt. All resolving is a full pass, some is a degraded pass, none is a
hard failure that rolls the change back.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.environment import DnsManagerKind, Environment
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget, VerificationReport
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.core.validation import parse_dns_servers
from sysguard.exceptions import ApplyError, BackupError

__all__ = [
    "NetworkConfigBackend",
    "DnsCandidate",
    "DnsProbe",
    "ServerProbe",
    "CommandDnsProbe",
    "render_resolv_conf",
    "set_resolved_dns",
    "parse_nameservers",
    "DEFAULT_TEST_DOMAINS",
]

logger = logging.getLogger(__name__)

DEFAULT_TEST_DOMAINS = ("google.com", "cloudflare.com", "github.com")
RESOLV_OPTIONS = "options timeout:2 attempts:3 rotate single-request-reopen"

DnsProbe = Callable[[str, float], bool]
# (server, domain, timeout) -> answered, or None when it cannot be tested.
ServerProbe = Callable[[str, str, float], bool | None]


@dataclass(frozen=True)
class DnsCandidate:
    """Resolver addresses to install, in priority order."""

    servers: tuple[str, ...]

    @classmethod
    def parse(cls, raw: str | Sequence[str]) -> DnsCandidate:
        """Validate and de-duplicate operator input."""
        return cls(parse_dns_servers(raw))


# ── File formats ─────────────────────────────────────────────────────────────


def render_resolv_conf(servers: Sequence[str], now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        f"# Generated by sysguard on {stamp}",
        "# The previous configuration is kept in the sysguard backup directory",
        "",
        *[f"nameserver {server}" for server in servers],
        "",
        RESOLV_OPTIONS,
    ]
    return "\n".join(lines) + "\n"


def parse_nameservers(text: str) -> list[str]:
    servers: list[str] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "nameserver":
            servers.append(parts[1])
    return servers


def set_resolved_dns(text: str, servers: Sequence[str]) -> str:
    """
    Replace the ``DNS=`` directive of a resolved.conf.

    Active and commented ``DNS=`` lines are dropped and a single new one
    is placed directly under ``[Resolve]``, which is added if missing.
    """
    directive = "DNS=" + " ".join(servers)
    lines = [
        line
        for line in text.splitlines()
        if not line.lstrip().startswith(("DNS=", "#DNS="))
    ]
    for index, line in enumerate(lines):
        if line.strip() == "[Resolve]":
            lines.insert(index + 1, directive)
            break
    else:
        if lines and lines[-1].strip():
            lines.append("")
        lines += ["[Resolve]", directive]
    return "\n".join(lines) + "\n"


def parse_resolved_dns(text: str) -> list[str]:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("DNS="):
            return stripped[len("DNS=") :].split()
    return []


# ── Probes ───────────────────────────────────────────────────────────────────


class CommandDnsProbe:
    """
    Resolves a name with whichever lookup tool the host has.

    Tries ``nslookup``, ``dig`` and ``host`` in that order, falling back to
    ``getaddrinfo`` in a worker thread when none is installed. Every
    attempt is bounded by the given timeout.
    """

    _TOOLS: tuple[tuple[str, Callable[[str, float], list[str]]], ...] = (
        ("nslookup", lambda d, t: ["nslookup", f"-timeout={max(1, int(t))}", d]),
        ("dig", lambda d, t: ["dig", f"+time={max(1, int(t))}", "+tries=1", "+short", d]),
        ("host", lambda d, t: ["host", "-W", str(max(1, int(t))), d]),
    )

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()

    def __call__(self, domain: str, timeout: float) -> bool:
        answered = self.query(domain, timeout)
        if answered is None:
            return _resolve_with_getaddrinfo(domain, timeout)
        return answered

    def query(self, domain: str, timeout: float, server: str | None = None) -> bool | None:
        """
        Look ``domain`` up, through ``server`` when given.

        Returns:
            Whether an answer came back, or None when no lookup tool is
            installed.
        """
        for tool, build in self._TOOLS:
            if not self._runner.which(tool):
                continue
            argv = build(domain, timeout)
            if server is not None:
                # dig takes the server as @addr, nslookup and host as a trailing argument.
                argv = [tool, f"@{server}", *argv[1:]] if tool == "dig" else [*argv, server]
            result = self._runner.run(argv, timeout=timeout + 1)
            if tool == "dig":
                return result.ok and bool(result.stdout.strip())
            return result.ok
        return None


def _resolve_with_getaddrinfo(domain: str, timeout: float) -> bool:
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(socket.getaddrinfo, domain, None)
    try:
        return bool(future.result(timeout=timeout))
    except (FutureTimeout, OSError):
        return False
    finally:
        pool.shutdown(wait=False)


# ── Backend ──────────────────────────────────────────────────────────────────


class NetworkConfigBackend(BaseBackend):
    """
    DNS backend dispatching on ``Environment.dns_manager``.

    Args:
        resolv_conf: Resolver file written in ``direct`` mode.
        resolved_conf: systemd-resolved configuration file.
        runner: Command runner for systemctl, nmcli and chattr.
        probe: Name resolution probe used by verification.
        server_probe: Per-server lookup used before applying. Defaults to
            the host lookup tools run through ``runner``.
        test_domains: Domains resolved during verification.
        probe_timeout: Seconds allowed per resolution attempt.
        settle_seconds: Pause before verification so the resolver reloads.
        lock_resolv_conf: Set the immutable attribute on a direct resolv.conf.
    """

    kind = BackendKind.NETWORK
    name = "dns"

    def __init__(
        self,
        resolv_conf: str = "/etc/resolv.conf",
        resolved_conf: str = "/etc/systemd/resolved.conf",
        runner: CommandRunner | None = None,
        probe: DnsProbe | None = None,
        server_probe: ServerProbe | None = None,
        test_domains: Sequence[str] = DEFAULT_TEST_DOMAINS,
        probe_timeout: float = 5.0,
        settle_seconds: float = 2.0,
        lock_resolv_conf: bool = True,
    ) -> None:
        super().__init__(runner)
        self.resolv_conf = resolv_conf
        self.resolved_conf = resolved_conf
        self._probe = probe or CommandDnsProbe(self._runner)
        self._server_probe = server_probe or self._query_server
        self._test_domains = tuple(test_domains)
        self._probe_timeout = probe_timeout
        self._settle_seconds = settle_seconds
        self._lock = lock_resolv_conf
        self._mode = DnsManagerKind.DIRECT
        self._connection: str | None = None

    @property
    def mode(self) -> DnsManagerKind:
        return self._mode

    # ── Backend interface ───────────────────────────────────────

    def detect_applicability(self, env: Environment) -> bool:
        self._mode = env.dns_manager
        if self._mode is DnsManagerKind.NETWORK_MANAGER:
            return self._runner.which("nmcli") is not None
        if self._mode is DnsManagerKind.RESOLVED:
            return (
                self._runner.which("systemctl") is not None
                and os.path.isdir(os.path.dirname(self.resolved_conf))
            )
        return os.path.isdir(os.path.dirname(self.resolv_conf) or "/")

    def not_applicable_reason(self, env: Environment) -> str:
        return f"DNS manager {env.dns_manager.value!r} has no usable control tool here"

    def validate(self, candidate: DnsCandidate, env: Environment) -> list[Advisory]:
        servers = parse_dns_servers(candidate.servers)
        advisories: list[Advisory] = []
        if len(servers) < len(candidate.servers):
            advisories.append(
                Advisory("dns_duplicates", "Duplicate DNS servers were removed")
            )
        domain = self._test_domains[0]
        for server in servers:
            answered = self._server_probe(server, domain, self._probe_timeout)
            if answered is None:
                logger.debug("No lookup tool to test %s against, not checked", server)
            elif not answered:
                advisories.append(
                    Advisory(
                        "dns_server_unreachable",
                        f"DNS server {server} did not answer a lookup of {domain} "
                        f"within {self._probe_timeout:g}s",
                        requires_confirmation=True,
                    )
                )
        return advisories

    def _query_server(self, server: str, domain: str, timeout: float) -> bool | None:
        return CommandDnsProbe(self._runner).query(domain, timeout, server)

    def snapshot_targets(self, candidate: DnsCandidate, env: Environment) -> list[SnapshotTarget]:
        self._mode = env.dns_manager
        if self._mode is DnsManagerKind.RESOLVED:
            return [SnapshotTarget.file(self.resolved_conf)]
        if self._mode is DnsManagerKind.NETWORK_MANAGER:
            connection = self._active_connection()
            if connection is None:
                raise BackupError("No active NetworkManager connection", source="nmcli")
            self._connection = connection
            return [
                SnapshotTarget.query(
                    f"nmcli:{connection}",
                    ("nmcli", "-g", "ipv4.dns,ipv4.ignore-auto-dns", "connection", "show", connection),
                    reapply=lambda out, c=connection: [_nm_reapply(c, out)],
                )
            ]
        return [SnapshotTarget.file(self.resolv_conf)]

    def current_state(self) -> dict[str, Any]:
        state: dict[str, Any] = {"mode": self._mode.value}
        if os.path.exists(self.resolv_conf):
            with open(self.resolv_conf, encoding="utf-8") as f:
                state["resolv_conf"] = parse_nameservers(f.read())
        if os.path.exists(self.resolved_conf):
            with open(self.resolved_conf, encoding="utf-8") as f:
                state["resolved_dns"] = parse_resolved_dns(f.read())
        return state

    def apply(self, candidate: DnsCandidate, env: Environment) -> ApplyOutcome:
        servers = parse_dns_servers(candidate.servers)
        self._mode = env.dns_manager
        logger.info("Setting DNS servers %s via %s", " ".join(servers), self._mode.value)
        if self._mode is DnsManagerKind.RESOLVED:
            self._apply_resolved(servers)
        elif self._mode is DnsManagerKind.NETWORK_MANAGER:
            self._apply_network_manager(servers)
        else:
            self._apply_direct(servers)
        return ApplyOutcome(
            changed=True,
            detail=f"{self._mode.value}: {' '.join(servers)}",
            applied={"mode": self._mode.value, "servers": " ".join(servers)},
        )

    def verify(
        self, expected: DnsCandidate, outcome: ApplyOutcome | None = None
    ) -> VerificationReport:
        if self._settle_seconds > 0:
            time.sleep(self._settle_seconds)
        return super().verify(expected, outcome)

    def checks(self, candidate: DnsCandidate, outcome: ApplyOutcome | None) -> list[Check]:
        servers = parse_dns_servers(candidate.servers)
        resolved: dict[str, bool] = {}

        def resolve(domain: str) -> tuple[CheckStatus, str]:
            ok = bool(self._probe(domain, self._probe_timeout))
            resolved[domain] = ok
            if ok:
                return CheckStatus.PASS, "resolved"
            return CheckStatus.FAIL, f"no answer within {self._probe_timeout:g}s"

        def reachability() -> tuple[CheckStatus, str]:
            good = sum(resolved.values())
            total = len(resolved)
            if good == 0:
                return CheckStatus.FAIL, f"0/{total} test domains resolved"
            if good < total:
                return CheckStatus.WARN, f"{good}/{total} test domains resolved"
            return CheckStatus.PASS, f"{good}/{total} test domains resolved"

        checks = [Check("dns.config", lambda: self._check_config(servers))]
        checks += [
            Check(f"dns.resolve.{domain}", lambda d=domain: resolve(d), mandatory=False)
            for domain in self._test_domains
        ]
        checks.append(Check("dns.reachability", reachability))
        return checks

    def before_restore(self) -> None:
        if self._mode is DnsManagerKind.DIRECT and self._lock:
            self._runner.run(["chattr", "-i", self.resolv_conf])

    def after_restore(self) -> None:
        if self._mode is DnsManagerKind.RESOLVED:
            result = self._runner.run(["systemctl", "restart", "systemd-resolved"])
            if not result.ok:
                logger.error("systemd-resolved restart after restore failed: %s", result.output)
        elif self._mode is DnsManagerKind.NETWORK_MANAGER and self._connection:
            result = self._runner.run(["nmcli", "connection", "up", self._connection])
            if not result.ok:
                logger.error("nmcli connection up after restore failed: %s", result.output)

    # ── Mode writers ────────────────────────────────────────────

    def _apply_direct(self, servers: Sequence[str]) -> None:
        if self._lock and os.path.exists(self.resolv_conf):
            self._runner.run(["chattr", "-i", self.resolv_conf])
        try:
            if os.path.islink(self.resolv_conf):
                os.remove(self.resolv_conf)
            with open(self.resolv_conf, "w", encoding="utf-8") as f:
                f.write(render_resolv_conf(servers))
        except OSError as exc:
            raise ApplyError(f"Cannot write {self.resolv_conf}: {exc}") from exc
        if self._lock:
            result = self._runner.run(["chattr", "+i", self.resolv_conf])
            if not result.ok:
                logger.warning(
                    "Could not lock %s against overwrites: %s", self.resolv_conf, result.output
                )

    def _apply_resolved(self, servers: Sequence[str]) -> None:
        try:
            text = ""
            if os.path.exists(self.resolved_conf):
                with open(self.resolved_conf, encoding="utf-8") as f:
                    text = f.read()
            with open(self.resolved_conf, "w", encoding="utf-8") as f:
                f.write(set_resolved_dns(text, servers))
        except OSError as exc:
            raise ApplyError(f"Cannot write {self.resolved_conf}: {exc}") from exc
        argv = ["systemctl", "restart", "systemd-resolved"]
        result = self._runner.run(argv)
        if not result.ok:
            raise ApplyError(
                f"systemd-resolved restart failed: {result.output}",
                command=argv,
                output=result.output,
            )

    def _apply_network_manager(self, servers: Sequence[str]) -> None:
        connection = self._connection or self._active_connection()
        if connection is None:
            raise ApplyError("No active NetworkManager connection")
        self._connection = connection
        for argv in (
            ["nmcli", "connection", "modify", connection, "ipv4.dns", ",".join(servers)],
            ["nmcli", "connection", "modify", connection, "ipv4.ignore-auto-dns", "yes"],
            ["nmcli", "connection", "up", connection],
        ):
            result = self._runner.run(argv)
            if not result.ok:
                raise ApplyError(
                    f"{' '.join(argv[:3])} failed: {result.output}",
                    command=argv,
                    output=result.output,
                )

    def _active_connection(self) -> str | None:
        result = self._runner.run(
            ["nmcli", "-t", "-f", "NAME", "connection", "show", "--active"], timeout=10
        )
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    def _check_config(self, servers: Sequence[str]) -> tuple[CheckStatus, str]:
        if self._mode is DnsManagerKind.NETWORK_MANAGER:
            result = self._runner.run(
                ["nmcli", "-g", "ipv4.dns", "connection", "show", self._connection or ""]
            )
            actual = [s for s in result.stdout.strip().replace(" ", ",").split(",") if s]
        else:
            path = (
                self.resolved_conf if self._mode is DnsManagerKind.RESOLVED else self.resolv_conf
            )
            with open(path, encoding="utf-8") as f:
                text = f.read()
            actual = (
                parse_resolved_dns(text)
                if self._mode is DnsManagerKind.RESOLVED
                else parse_nameservers(text)
            )
        if list(actual) != list(servers):
            return CheckStatus.FAIL, f"configured servers are {' '.join(actual) or 'empty'}"
        return CheckStatus.PASS, " ".join(actual)


def _nm_reapply(connection: str, output: str) -> tuple[str, ...]:
    lines = output.splitlines() + ["", ""]
    dns = lines[0].strip()
    ignore_auto = lines[1].strip() or "no"
    return (
        "nmcli",
        "connection",
        "modify",
        connection,
        "ipv4.dns",
        dns,
        "ipv4.ignore-auto-dns",
        ignore_auto,
    )
