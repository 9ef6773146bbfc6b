"""
Environment Detector
~~~~~~~~~~~~~~~~~~~~

Read-only probing of the host: distribution, kernel, init system,
package manager, resolver manager and virtualization. Probes run from
most to least specific and the first match wins. A probe that errors
falls back to the generic value and leaves a note in
``Environment.ambiguities``; detection itself never fails.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable

from sysguard.core.environment import (
    UNKNOWN,
    DnsManagerKind,
    Environment,
    PackageManagerKind,
    ServiceManagerKind,
)
from sysguard.core.runner import CommandRunner
from sysguard.exceptions import DetectionAmbiguousError

__all__ = ["EnvironmentDetector", "host_path", "parse_os_release"]

logger = logging.getLogger(__name__)

_PACKAGE_MANAGERS: tuple[tuple[str, PackageManagerKind], ...] = (
    ("apt-get", PackageManagerKind.APT),
    ("dnf", PackageManagerKind.DNF),
    ("yum", PackageManagerKind.YUM),
    ("pacman", PackageManagerKind.PACMAN),
    ("zypper", PackageManagerKind.ZYPPER),
)

_PROBE_TIMEOUT = 5.0


def host_path(root: str, path: str) -> str:
    """Resolve an absolute host path under an alternate filesystem root."""
    if root in ("", "/"):
        return path
    return os.path.join(root, path.lstrip("/"))


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines from an os-release file, unquoting values."""
    fields: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key.strip()] = value.strip().strip("\"'")
    return fields


class EnvironmentDetector:
    """
    Builds an Environment from what the host exposes.

    Args:
        runner: Command runner used for probes that need a binary.
        root: Filesystem root to read host files from. Tests point this
            at a temporary tree.
    """

    def __init__(self, runner: CommandRunner | None = None, root: str = "/") -> None:
        self._runner = runner or CommandRunner()
        self._root = root

    def detect(self) -> Environment:
        """Probe the host once and return an immutable Environment."""
        notes: list[str] = []

        os_family, os_version, os_like = self._probe(
            "os", self._detect_os, (UNKNOWN, UNKNOWN, ()), notes
        )
        kernel = self._probe("kernel", self._detect_kernel, UNKNOWN, notes)
        service = self._probe(
            "service_manager",
            self._detect_service_manager,
            ServiceManagerKind.NONE,
            notes,
        )
        package = self._probe(
            "package_manager",
            self._detect_package_manager,
            PackageManagerKind.UNKNOWN,
            notes,
        )
        dns = self._probe(
            "dns_manager",
            lambda: self._detect_dns_manager(service),
            DnsManagerKind.DIRECT,
            notes,
        )
        virt = self._probe("virtualization", self._detect_virtualization, "none", notes)
        arch = self._probe("arch", self._detect_arch, UNKNOWN, notes)

        env = Environment(
            os_family=os_family,
            os_version=os_version,
            os_like=os_like,
            kernel_version=kernel,
            arch=arch,
            service_manager=service,
            package_manager=package,
            dns_manager=dns,
            virtualization=virt,
            ambiguities=tuple(notes),
        )
        logger.info(
            "Detected %s %s, kernel %s, %s/%s, dns=%s",
            env.os_family,
            env.os_version,
            env.kernel_version,
            env.service_manager.value,
            env.package_manager.value,
            env.dns_manager.value,
        )
        return env

    # ── Probe plumbing ──────────────────────────────────────────

    def _probe(self, name: str, fn: Callable, fallback, notes: list[str]):
        try:
            return fn()
        except (DetectionAmbiguousError, OSError, ValueError) as exc:
            logger.debug("Probe %s fell back to %r: %s", name, fallback, exc)
            notes.append(f"{name}: {exc}")
            return fallback

    def _path(self, path: str) -> str:
        return host_path(self._root, path)

    def _read(self, path: str) -> str | None:
        full = self._path(path)
        if not os.path.exists(full):
            return None
        with open(full, encoding="utf-8", errors="replace") as f:
            return f.read()

    # ── Individual probes ───────────────────────────────────────

    def _detect_os(self) -> tuple[str, str, tuple[str, ...]]:
        text = self._read("/etc/os-release")
        if text is not None:
            fields = parse_os_release(text)
            family = fields.get("ID", "").lower()
            if family:
                version = fields.get("VERSION_ID") or fields.get("VERSION") or UNKNOWN
                like = tuple(fields.get("ID_LIKE", "").lower().split())
                return family, version, like

        text = self._read("/etc/debian_version")
        if text is not None:
            return "debian", text.strip() or UNKNOWN, ()

        text = self._read("/etc/redhat-release")
        if text is not None:
            match = re.search(r"(\d+\.\d+)", text)
            return "rhel", match.group(1) if match else UNKNOWN, ()

        raise DetectionAmbiguousError("no os-release, debian_version or redhat-release")

    def _detect_kernel(self) -> str:
        text = self._read("/proc/sys/kernel/osrelease")
        if text and text.strip():
            return text.strip()
        result = self._runner.run(["uname", "-r"], timeout=_PROBE_TIMEOUT)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        raise DetectionAmbiguousError("kernel release unavailable")

    def _detect_arch(self) -> str:
        result = self._runner.run(["uname", "-m"], timeout=_PROBE_TIMEOUT)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        raise DetectionAmbiguousError("machine architecture unavailable")

    def _detect_service_manager(self) -> ServiceManagerKind:
        if os.path.isdir(self._path("/run/systemd/system")):
            return ServiceManagerKind.SYSTEMD
        if self._runner.which("service") or os.path.isdir(self._path("/etc/init.d")):
            return ServiceManagerKind.SYSV
        return ServiceManagerKind.NONE

    def _detect_package_manager(self) -> PackageManagerKind:
        for binary, kind in _PACKAGE_MANAGERS:
            if self._runner.which(binary):
                return kind
        raise DetectionAmbiguousError("no known package manager on PATH")

    def _service_active(self, unit: str) -> bool:
        result = self._runner.run(
            ["systemctl", "is-active", "--quiet", unit], timeout=_PROBE_TIMEOUT
        )
        return result.ok

    def _detect_dns_manager(self, service: ServiceManagerKind) -> DnsManagerKind:
        if service is not ServiceManagerKind.SYSTEMD:
            return DnsManagerKind.DIRECT

        resolv = self._path("/etc/resolv.conf")
        if (
            self._service_active("systemd-resolved")
            and os.path.islink(resolv)
            and "systemd" in os.readlink(resolv)
        ):
            return DnsManagerKind.RESOLVED

        if os.path.exists(
            self._path("/etc/NetworkManager/NetworkManager.conf")
        ) and self._service_active("NetworkManager"):
            return DnsManagerKind.NETWORK_MANAGER

        return DnsManagerKind.DIRECT

    def _detect_virtualization(self) -> str:
        if os.path.isdir(self._path("/proc/vz")) and not os.path.isdir(
            self._path("/proc/bc")
        ):
            return "openvz"
        result = self._runner.run(["systemd-detect-virt"], timeout=_PROBE_TIMEOUT)
        value = result.stdout.strip()
        if value:
            return value
        return "none"
