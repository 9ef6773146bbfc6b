"""
Kernel Backend
~~~~~~~~~~~~~~

Installs a BBR-capable kernel when the running one is too old.

This is the one backend whose apply cannot be fully undone: rollback puts
the bootloader files back, but an installed package stays installed.
Success can only be confirmed after a reboot, so a good install verifies
as ``pending_reboot`` and commits.
"""

from __future__ import annotations

import glob
import logging
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.core.environment import Environment, PackageManagerKind
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.core.outcome import CheckStatus
from sysguard.core.runner import CommandRunner
from sysguard.exceptions import ApplyError, CandidateError

__all__ = [
    "KernelBackend",
    "KernelCandidate",
    "KernelInstaller",
    "parse_kernel_version",
    "version_at_least",
    "MIN_KERNEL_VERSION",
    "UNSUPPORTED_VIRTUALIZATION",
]

logger = logging.getLogger(__name__)

MIN_KERNEL_VERSION = "4.9"
UNSUPPORTED_VIRTUALIZATION = ("lxc", "openvz")

_VERSION_RE = re.compile(r"^(\d+(?:\.\d+)*)")
_MIN_VERSION_RE = re.compile(r"^\d+(\.\d+){0,2}$")
_INSTALL_TIMEOUT = 1800.0


def parse_kernel_version(release: str) -> tuple[int, ...]:
    """
    Extract the numeric part of a kernel release.

    ``5.15.0-91-generic`` gives ``(5, 15, 0)``. Returns ``()`` when the
    string does not start with a version number.
    """
    match = _VERSION_RE.match(release.strip())
    if match is None:
        return ()
    return tuple(int(part) for part in match.group(1).split("."))


def version_at_least(release: str, minimum: str) -> bool:
    current = parse_kernel_version(release)
    wanted = parse_kernel_version(minimum)
    if not current:
        return False
    width = max(len(current), len(wanted))
    current += (0,) * (width - len(current))
    wanted += (0,) * (width - len(wanted))
    return current >= wanted


@dataclass(frozen=True)
class KernelCandidate:
    """Minimum kernel version the host should boot."""

    min_version: str = MIN_KERNEL_VERSION


class KernelInstaller:
    """
    Runs the package and bootloader commands for one package manager.

    Which package to install is configuration, not engine logic; the
    commands come straight from the ``kernel`` config section.
    """

    def __init__(
        self,
        install_commands: Mapping[str, Sequence[Sequence[str]]],
        bootloader_commands: Mapping[str, Sequence[Sequence[str]]],
        runner: CommandRunner | None = None,
    ) -> None:
        self._install = {k: [list(c) for c in v] for k, v in install_commands.items()}
        self._bootloader = {k: [list(c) for c in v] for k, v in bootloader_commands.items()}
        self._runner = runner or CommandRunner()

    def supports(self, package_manager: PackageManagerKind) -> bool:
        return bool(self._install.get(package_manager.value))

    def install(self, package_manager: PackageManagerKind) -> list[list[str]]:
        """
        Install the kernel package and point the bootloader at it.

        Returns:
            Every command that ran, in order.

        Raises:
            ApplyError: On the first command that fails.
        """
        commands = self._install.get(package_manager.value, []) + self._bootloader.get(
            package_manager.value, []
        )
        ran: list[list[str]] = []
        for argv in commands:
            logger.info("Running %s", " ".join(argv))
            result = self._runner.run(argv, timeout=_INSTALL_TIMEOUT)
            ran.append(argv)
            if not result.ok:
                raise ApplyError(
                    f"{' '.join(argv)} failed ({result.returncode}): {result.output}",
                    command=argv,
                    output=result.output,
                )
        return ran


class KernelBackend(BaseBackend):
    """
    Kernel install backend.

    Args:
        installer: Collaborator that runs the install commands.
        boot_dir: Directory holding ``vmlinuz-*`` images and grub files.
        runner: Command runner for read-only queries.
    """

    kind = BackendKind.KERNEL
    name = "kernel"

    def __init__(
        self,
        installer: KernelInstaller,
        boot_dir: str = "/boot",
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(runner)
        self._installer = installer
        self.boot_dir = boot_dir
        self._running = ""

    def installed_images(self) -> dict[str, str]:
        """Map each ``vmlinuz-*`` image path to its release string."""
        images: dict[str, str] = {}
        for path in sorted(glob.glob(os.path.join(self.boot_dir, "vmlinuz-*"))):
            images[path] = os.path.basename(path)[len("vmlinuz-") :]
        return images

    def _bootloader_files(self) -> list[str]:
        candidates = (
            os.path.join(self.boot_dir, "grub", "grubenv"),
            os.path.join(self.boot_dir, "grub", "grub.cfg"),
            os.path.join(self.boot_dir, "grub2", "grubenv"),
            os.path.join(self.boot_dir, "grub2", "grub.cfg"),
            os.path.join(self.boot_dir, "grub", "grub.conf"),
        )
        return [path for path in candidates if os.path.isfile(path)]

    # ── Backend interface ───────────────────────────────────────

    def detect_applicability(self, env: Environment) -> bool:
        return (
            env.package_manager is not PackageManagerKind.UNKNOWN
            and env.virtualization not in UNSUPPORTED_VIRTUALIZATION
            and self._installer.supports(env.package_manager)
        )

    def not_applicable_reason(self, env: Environment) -> str:
        if env.virtualization in UNSUPPORTED_VIRTUALIZATION:
            return f"{env.virtualization} containers share the host kernel and cannot install one"
        if env.package_manager is PackageManagerKind.UNKNOWN:
            return "no supported package manager was detected"
        return f"no kernel install commands configured for {env.package_manager.value}"

    def validate(self, candidate: KernelCandidate, env: Environment) -> list[Advisory]:
        if not _MIN_VERSION_RE.match(candidate.min_version or ""):
            raise CandidateError(
                f"Invalid minimum kernel version {candidate.min_version!r}",
                field="min_version",
                value=candidate.min_version,
            )
        self._running = env.kernel_version
        return []

    def is_satisfied(self, candidate: KernelCandidate, env: Environment) -> bool:
        return version_at_least(env.kernel_version, candidate.min_version)

    def satisfied_checks(self, candidate: KernelCandidate, env: Environment) -> list[Check]:
        detail = (
            f"already satisfied: running {env.kernel_version} >= {candidate.min_version}"
        )
        return [Check("kernel.version", lambda: (CheckStatus.PASS, detail))]

    def snapshot_targets(
        self, candidate: KernelCandidate, env: Environment
    ) -> list[SnapshotTarget]:
        targets = [SnapshotTarget.file(path) for path in self._bootloader_files()]
        targets.append(SnapshotTarget.query("kernel:running", ("uname", "-r")))
        return targets

    def current_state(self) -> dict[str, Any]:
        result = self._runner.run(["uname", "-r"], timeout=5)
        return {
            "running": result.stdout.strip() if result.ok else None,
            "installed": sorted(self.installed_images().values()),
        }

    def apply(self, candidate: KernelCandidate, env: Environment) -> ApplyOutcome:
        before = set(self.installed_images())
        ran = self._installer.install(env.package_manager)
        new_images = sorted(set(self.installed_images()) - before)
        logger.info(
            "Kernel install finished, new images: %s",
            ", ".join(new_images) or "none",
        )
        return ApplyOutcome(
            changed=True,
            detail=f"{len(ran)} commands run via {env.package_manager.value}",
            applied={
                "package_manager": env.package_manager.value,
                "new_images": " ".join(os.path.basename(p) for p in new_images),
            },
        )

    def checks(self, candidate: KernelCandidate, outcome: ApplyOutcome | None) -> list[Check]:
        return [
            Check("kernel.image", lambda: self._check_image(candidate.min_version)),
            Check("kernel.reboot", lambda: self._check_reboot(candidate.min_version)),
        ]

    def _best_image(self, minimum: str) -> str | None:
        eligible = [
            release
            for release in self.installed_images().values()
            if version_at_least(release, minimum)
        ]
        if not eligible:
            return None
        return max(eligible, key=parse_kernel_version)

    def _check_image(self, minimum: str) -> tuple[CheckStatus, str]:
        best = self._best_image(minimum)
        if best is None:
            return CheckStatus.FAIL, f"no kernel image >= {minimum} in {self.boot_dir}"
        return CheckStatus.PASS, f"vmlinuz-{best} installed"

    def _check_reboot(self, minimum: str) -> tuple[CheckStatus, str]:
        if self._running and version_at_least(self._running, minimum):
            return CheckStatus.PASS, f"running {self._running}"
        best = self._best_image(minimum) or "the new kernel"
        return CheckStatus.PENDING_REBOOT, f"reboot to boot {best}"
