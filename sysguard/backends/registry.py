"""
Backend Registry
~~~~~~~~~~~~~~~~

Maps backend kinds to configured backend instances. Built once per
process from the configuration and passed to whatever needs a backend.
"""

from __future__ import annotations

import logging

from sysguard.backends.base import BackendKind, BaseBackend
from sysguard.backends.kernel import KernelBackend, KernelInstaller
from sysguard.backends.limits import LimitsBackend
from sysguard.backends.network import DnsProbe, NetworkConfigBackend
from sysguard.backends.service import PortProbe, ServiceBackend
from sysguard.backends.stack_toggle import StackToggleBackend
from sysguard.backends.sysctl import SysctlBackend
from sysguard.config.schema import SysguardConfig
from sysguard.core.runner import CommandRunner
from sysguard.core.validation import PasswordPolicy
from sysguard.exceptions import BackendNotFoundError

__all__ = ["BackendRegistry"]

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry of one backend per kind."""

    def __init__(self) -> None:
        self._backends: dict[BackendKind, BaseBackend] = {}

    @classmethod
    def from_config(
        cls,
        config: SysguardConfig,
        runner: CommandRunner | None = None,
        dns_probe: DnsProbe | None = None,
        port_probe: PortProbe | None = None,
    ) -> BackendRegistry:
        """
        Build every backend from configuration.

        Args:
            config: Validated configuration.
            runner: Shared command runner.
            dns_probe: Optional replacement for the DNS resolution probe.
            port_probe: Optional replacement for the port liveness probe.
        """
        runner = runner or CommandRunner(default_timeout=config.probes.timeout_seconds * 6)
        paths = config.paths
        registry = cls()
        registry.register(SysctlBackend(paths.sysctl_conf, paths.proc_sys, runner))
        registry.register(StackToggleBackend(paths.sysctl_conf, paths.proc_sys, runner))
        registry.register(
            NetworkConfigBackend(
                resolv_conf=paths.resolv_conf,
                resolved_conf=paths.resolved_conf,
                runner=runner,
                probe=dns_probe,
                test_domains=config.probes.dns_test_domains,
                probe_timeout=config.probes.timeout_seconds,
                settle_seconds=config.probes.dns_settle_seconds,
                lock_resolv_conf=config.dns.lock_resolv_conf,
            )
        )
        registry.register(
            ServiceBackend(
                sshd_config=paths.sshd_config,
                runner=runner,
                port_probe=port_probe,
                probe_timeout=config.probes.timeout_seconds,
                port_range=(config.ssh.port_min, config.ssh.port_max),
                password_policy=PasswordPolicy(
                    min_length=config.ssh.min_password_length,
                    min_classes=config.ssh.min_password_classes,
                    weak_passwords=tuple(config.ssh.weak_passwords),
                ),
            )
        )
        installer = KernelInstaller(
            config.kernel.install_commands,
            config.kernel.bootloader_commands,
            runner,
        )
        registry.register(KernelBackend(installer, paths.boot_dir, runner))
        registry.register(LimitsBackend(paths.limits_conf, runner))
        return registry

    def register(self, backend: BaseBackend) -> None:
        """Register a backend, replacing any previous one of the same kind."""
        self._backends[backend.kind] = backend
        logger.debug("Registered backend %s for %s", type(backend).__name__, backend.kind)

    def get(self, kind: BackendKind | str) -> BaseBackend:
        """
        Look up the backend for a kind.

        Raises:
            BackendNotFoundError: If no backend is registered for ``kind``.
        """
        try:
            return self._backends[BackendKind(kind)]
        except (KeyError, ValueError):
            raise BackendNotFoundError(f"No backend registered for kind: {kind}") from None

    def has(self, kind: BackendKind | str) -> bool:
        try:
            return BackendKind(kind) in self._backends
        except ValueError:
            return False

    @property
    def backends(self) -> list[BaseBackend]:
        return list(self._backends.values())

    def clear(self) -> None:
        self._backends.clear()
