"""
Host Environment Model
~~~~~~~~~~~~~~~~~~~~~~

The immutable description of the host a transaction runs against, and the
kind enums backends dispatch on.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

__all__ = [
    "Environment",
    "ServiceManagerKind",
    "PackageManagerKind",
    "DnsManagerKind",
    "UNKNOWN",
]

UNKNOWN = "unknown"

_DEBIAN_FAMILY = ("debian", "ubuntu", "mint", "linuxmint", "raspbian")
_REDHAT_FAMILY = ("centos", "rhel", "fedora", "rocky", "almalinux", "ol")


class ServiceManagerKind(StrEnum):
    SYSTEMD = "systemd"
    SYSV = "sysv"
    NONE = "none"


class PackageManagerKind(StrEnum):
    APT = "apt"
    YUM = "yum"
    DNF = "dnf"
    PACMAN = "pacman"
    ZYPPER = "zypper"
    UNKNOWN = "unknown"


class DnsManagerKind(StrEnum):
    """Which mechanism owns name resolution on the host."""

    RESOLVED = "resolved"
    NETWORK_MANAGER = "networkManager"
    DIRECT = "direct"


@dataclass(frozen=True)
class Environment:
    """
    Snapshot of what the detector learned about the host.

    Computed once per transaction run and never mutated. ``unknown`` values
    are valid results that tell backends to try their generic path.

    Attributes:
        os_family: Distribution id from os-release, e.g. "ubuntu".
        os_version: Distribution version, e.g. "22.04".
        kernel_version: Running kernel release, e.g. "5.15.0-91-generic".
        service_manager: Init system flavour.
        package_manager: Package manager flavour.
        dns_manager: Which mechanism manages resolver configuration.
        os_like: Parent distributions from ``ID_LIKE``.
        arch: Machine architecture.
        virtualization: Detected virtualization technology, "none" if bare.
        ambiguities: Notes from probes that fell back to a default.
    """

    os_family: str = UNKNOWN
    os_version: str = UNKNOWN
    kernel_version: str = UNKNOWN
    service_manager: ServiceManagerKind = ServiceManagerKind.NONE
    package_manager: PackageManagerKind = PackageManagerKind.UNKNOWN
    dns_manager: DnsManagerKind = DnsManagerKind.DIRECT
    os_like: tuple[str, ...] = ()
    arch: str = UNKNOWN
    virtualization: str = "none"
    ambiguities: tuple[str, ...] = field(default=(), compare=False)

    def is_debian_based(self) -> bool:
        return self.os_family in _DEBIAN_FAMILY or "debian" in self.os_like

    def is_redhat_based(self) -> bool:
        return self.os_family in _REDHAT_FAMILY or any(
            like in ("rhel", "fedora", "centos") for like in self.os_like
        )

    @property
    def uses_systemd(self) -> bool:
        return self.service_manager is ServiceManagerKind.SYSTEMD

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        data = asdict(self)
        data["service_manager"] = self.service_manager.value
        data["package_manager"] = self.package_manager.value
        data["dns_manager"] = self.dns_manager.value
        data["os_like"] = list(self.os_like)
        data["ambiguities"] = list(self.ambiguities)
        return data
