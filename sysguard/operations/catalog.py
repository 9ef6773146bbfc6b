"""
Operation Catalog
~~~~~~~~~~~~~~~~~

Turns an operation keyword (``tcp``, ``bbr``, ``dns`` ...) into a Plan:
the ordered backend steps and their candidates. The catalog reads
configuration and a few live kernel facts but never mutates the host.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend
from sysguard.backends.kernel import KernelCandidate
from sysguard.backends.limits import LimitsCandidate
from sysguard.backends.network import DnsCandidate
from sysguard.backends.registry import BackendRegistry
from sysguard.backends.service import SshCandidate
from sysguard.backends.stack_toggle import StackToggleCandidate
from sysguard.backends.sysctl import SysctlCandidate
from sysguard.config.schema import SysguardConfig
from sysguard.exceptions import CandidateError, UnknownOperationError

__all__ = [
    "OperationCatalog",
    "OperationOptions",
    "Plan",
    "Step",
    "OPERATIONS",
    "BATCHES",
    "CONNTRACK_KEY",
    "CONGESTION_KEY",
]

logger = logging.getLogger(__name__)

OPERATIONS = ("tcp", "bbr", "ipv6", "dns", "ssh", "kernel")

BATCHES: dict[str, tuple[str, ...]] = {
    "basic": ("bbr", "tcp"),
    "all": ("ipv6", "tcp", "bbr", "dns", "ssh"),
}

CONGESTION_KEY = "net.ipv4.tcp_congestion_control"
CONNTRACK_KEY = "net.netfilter.nf_conntrack_max"
_AVAILABLE_CONGESTION = "net/ipv4/tcp_available_congestion_control"


@dataclass
class OperationOptions:
    """Operator input that parameterises the dns and ssh operations."""

    dns_preset: str | None = None
    dns_servers: list[str] = field(default_factory=list)
    ssh_port: str | int | None = None
    ssh_user: str | None = None
    ssh_password: str | None = None

    @property
    def has_ssh_changes(self) -> bool:
        return any(
            value is not None for value in (self.ssh_port, self.ssh_user, self.ssh_password)
        )


@dataclass(frozen=True)
class Step:
    """One transaction: a backend and the candidate it should reach."""

    name: str
    backend: BaseBackend
    candidate: Any


@dataclass(frozen=True)
class Plan:
    """
    The steps of one operation.

    Attributes:
        operation: Operation keyword.
        steps: Ordered steps.
        chained: When True, a step runs only if the previous one committed
            without a pending reboot.
        skip_reason: Set when the operation has nothing to do.
    """

    operation: str
    steps: tuple[Step, ...]
    chained: bool = False
    skip_reason: str = ""


class OperationCatalog:
    """
    Builds plans for operation keywords.

    Args:
        config: Validated configuration.
        registry: Backends to bind steps to.
    """

    def __init__(self, config: SysguardConfig, registry: BackendRegistry) -> None:
        self._config = config
        self._registry = registry

    @staticmethod
    def names() -> list[str]:
        return [*OPERATIONS, *BATCHES]

    @staticmethod
    def expand(operation: str) -> list[str]:
        """
        Resolve a keyword into the single operations it runs.

        Raises:
            UnknownOperationError: If the keyword is not known.
        """
        if operation in BATCHES:
            return list(BATCHES[operation])
        if operation in OPERATIONS:
            return [operation]
        raise UnknownOperationError(
            f"Unknown operation: {operation!r}",
            details={"known": OperationCatalog.names()},
        )

    @staticmethod
    def is_batch(operation: str) -> bool:
        return operation in BATCHES

    def plan(
        self,
        operation: str,
        options: OperationOptions | None = None,
        batch: bool = False,
    ) -> Plan:
        """
        Build the plan for a single operation.

        Inside a batch, ssh without any port or credential is skipped
        instead of failing validation.

        Raises:
            UnknownOperationError: For batch or unknown keywords.
            CandidateError: If operator input names an unknown DNS preset.
        """
        options = options or OperationOptions()
        builder = {
            "tcp": self._tcp,
            "bbr": self._bbr,
            "ipv6": self._ipv6,
            "dns": self._dns,
            "ssh": self._ssh,
            "kernel": self._kernel,
        }.get(operation)
        if builder is None:
            raise UnknownOperationError(f"Not a single operation: {operation!r}")
        if batch and operation == "ssh" and not options.has_ssh_changes:
            return Plan("ssh", (), skip_reason="no SSH port or credential given")
        return builder(options)

    # ── Builders ────────────────────────────────────────────────

    def _tcp(self, options: OperationOptions) -> Plan:
        tcp = self._config.tcp
        settings = dict(tcp.settings)
        if tcp.congestion_control:
            available = self._available_congestion()
            if tcp.congestion_control in available:
                settings[CONGESTION_KEY] = tcp.congestion_control
            else:
                logger.info(
                    "Congestion control %s not available (have: %s), leaving it unset",
                    tcp.congestion_control,
                    " ".join(available) or "none",
                )
        if tcp.conntrack_max is not None:
            if self._proc_exists(CONNTRACK_KEY):
                settings[CONNTRACK_KEY] = str(tcp.conntrack_max)
            else:
                logger.debug("%s not present, conntrack limit skipped", CONNTRACK_KEY)
        steps = [
            Step(
                "tcp",
                self._registry.get(BackendKind.SYSCTL),
                SysctlCandidate.from_mapping("tcp", settings),
            )
        ]
        if tcp.limits:
            steps.append(
                Step(
                    "limits",
                    self._registry.get(BackendKind.LIMITS),
                    LimitsCandidate.from_lines("limits", tcp.limits),
                )
            )
        return Plan("tcp", tuple(steps))

    def _bbr(self, options: OperationOptions) -> Plan:
        kernel = Step(
            "kernel",
            self._registry.get(BackendKind.KERNEL),
            KernelCandidate(self._config.kernel.min_version),
        )
        sysctl = Step(
            "bbr",
            self._registry.get(BackendKind.SYSCTL),
            SysctlCandidate.from_mapping("bbr", self._config.bbr.settings),
        )
        return Plan("bbr", (kernel, sysctl), chained=True)

    def _ipv6(self, options: OperationOptions) -> Plan:
        candidate = StackToggleCandidate(disabled=self._config.ipv6.disabled)
        return Plan(
            "ipv6", (Step("ipv6", self._registry.get(BackendKind.STACK_TOGGLE), candidate),)
        )

    def _dns(self, options: OperationOptions) -> Plan:
        if options.dns_servers:
            servers = tuple(
                server
                for raw in options.dns_servers
                for server in raw.replace(",", " ").split()
            )
        else:
            dns = self._config.dns
            preset = options.dns_preset or dns.default_preset
            if preset not in dns.presets:
                raise CandidateError(
                    f"Unknown DNS preset: {preset!r}",
                    field="dns_preset",
                    value=preset,
                    details={"presets": sorted(dns.presets)},
                )
            servers = tuple(dns.presets[preset])
            logger.info("Using DNS preset %s: %s", preset, ", ".join(servers))
        return Plan(
            "dns", (Step("dns", self._registry.get(BackendKind.NETWORK), DnsCandidate(servers)),)
        )

    def _ssh(self, options: OperationOptions) -> Plan:
        candidate = SshCandidate(
            port=options.ssh_port,
            username=options.ssh_user,
            password=options.ssh_password,
        )
        return Plan("ssh", (Step("ssh", self._registry.get(BackendKind.SERVICE), candidate),))

    def _kernel(self, options: OperationOptions) -> Plan:
        candidate = KernelCandidate(self._config.kernel.min_version)
        return Plan(
            "kernel", (Step("kernel", self._registry.get(BackendKind.KERNEL), candidate),)
        )

    # ── Live facts ──────────────────────────────────────────────

    def _proc_path(self, relative: str) -> str:
        return os.path.join(self._config.paths.proc_sys, relative)

    def _proc_exists(self, key: str) -> bool:
        return os.path.exists(self._proc_path(key.replace(".", "/")))

    def _available_congestion(self) -> list[str]:
        try:
            with open(self._proc_path(_AVAILABLE_CONGESTION), encoding="utf-8") as f:
                return f.read().split()
        except OSError:
            return []
