"""Shared fixtures for sysguard tests: a fake host tree and a scripted runner."""

from __future__ import annotations

import copy
import os
from collections.abc import Callable

import pytest

from sysguard.config.defaults import DEFAULT_CONFIG
from sysguard.config.loader import load_config_from_dict
from sysguard.config.schema import SysguardConfig
from sysguard.core.engine import MutationEngine
from sysguard.core.environment import (
    DnsManagerKind,
    Environment,
    PackageManagerKind,
    ServiceManagerKind,
)
from sysguard.core.runner import CommandResult

RUNNING_KERNEL = "5.15.0-91-generic"

SSHD_CONFIG = """\
# OpenSSH server configuration
Port 22
PermitRootLogin prohibit-password
PasswordAuthentication yes

Match User backup
    ForceCommand internal-sftp
"""

SYSCTL_CONF = """\
# /etc/sysctl.conf - Configuration file for setting system variables
vm.swappiness = 10
"""

LIMITS_CONF = """\
# /etc/security/limits.conf
@backup hard nofile 4096
"""

RESOLV_CONF = "nameserver 10.0.0.2\nsearch example.internal\n"

RESOLVED_CONF = """\
[Resolve]
#DNS=
#FallbackDNS=
#DNSSEC=no
"""

# Live values before any change; deliberately different from the tuning defaults.
INITIAL_PROC = {
    "net.core.netdev_max_backlog": "1000",
    "net.core.somaxconn": "4096",
    "net.ipv4.tcp_max_syn_backlog": "512",
    "net.core.rmem_default": "212992",
    "net.core.wmem_default": "212992",
    "net.core.rmem_max": "212992",
    "net.core.wmem_max": "212992",
    "net.ipv4.tcp_rmem": "4096\t131072\t6291456",
    "net.ipv4.tcp_wmem": "4096\t16384\t4194304",
    "net.ipv4.tcp_mem": "94389\t125854\t188778",
    "net.core.default_qdisc": "fq_codel",
    "net.ipv4.tcp_notsent_lowat": "4294967295",
    "net.ipv4.tcp_tw_reuse": "2",
    "net.ipv4.tcp_fin_timeout": "60",
    "net.ipv4.tcp_max_tw_buckets": "65536",
    "net.ipv4.tcp_fastopen": "1",
    "net.ipv4.tcp_window_scaling": "1",
    "net.ipv4.tcp_timestamps": "1",
    "net.ipv4.tcp_congestion_control": "cubic",
    "net.ipv4.tcp_available_congestion_control": "reno cubic bbr",
    "net.netfilter.nf_conntrack_max": "262144",
    "net.ipv6.conf.all.disable_ipv6": "0",
    "net.ipv6.conf.default.disable_ipv6": "0",
    "net.ipv6.conf.lo.disable_ipv6": "0",
    "vm.swappiness": "10",
}


class Host:
    """A throwaway host filesystem under a temporary root."""

    def __init__(self, root: str) -> None:
        self.root = root
        self.proc_sys = os.path.join(root, "proc", "sys")
        self.sysctl_conf = os.path.join(root, "etc", "sysctl.conf")
        self.resolv_conf = os.path.join(root, "etc", "resolv.conf")
        self.resolved_conf = os.path.join(root, "etc", "systemd", "resolved.conf")
        self.sshd_config = os.path.join(root, "etc", "ssh", "sshd_config")
        self.limits_conf = os.path.join(root, "etc", "security", "limits.conf")
        self.boot_dir = os.path.join(root, "boot")
        self.backup_dir = os.path.join(root, "var", "backups", "sysguard")

        for key, value in INITIAL_PROC.items():
            self.set_proc(key, value)
        self.write(self.sysctl_conf, SYSCTL_CONF)
        self.write(self.resolv_conf, RESOLV_CONF)
        self.write(self.resolved_conf, RESOLVED_CONF)
        self.write(self.sshd_config, SSHD_CONFIG)
        self.write(self.limits_conf, LIMITS_CONF)
        self.write(os.path.join(self.boot_dir, f"vmlinuz-{RUNNING_KERNEL}"), "")
        self.write(os.path.join(self.boot_dir, "grub", "grub.cfg"), "set default=0\n")

    def proc_path(self, key: str) -> str:
        return os.path.join(self.proc_sys, *key.split("."))

    def set_proc(self, key: str, value: str) -> None:
        self.write(self.proc_path(key), f"{value}\n")

    def proc(self, key: str) -> str:
        return " ".join(self.read(self.proc_path(key)).split())

    def remove_proc(self, key: str) -> None:
        os.remove(self.proc_path(key))

    @staticmethod
    def write(path: str, text: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    @staticmethod
    def read(path: str) -> str:
        with open(path, encoding="utf-8") as f:
            return f.read()

    @staticmethod
    def read_bytes(path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()


DEFAULT_BINARIES = frozenset(
    {
        "sysctl",
        "sshd",
        "systemctl",
        "nmcli",
        "chpasswd",
        "usermod",
        "getent",
        "passwd",
        "chattr",
        "uname",
        "apt-get",
        "update-grub",
        "nslookup",
    }
)


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Emulates the host tools the backends call, over the fake ``/proc/sys``
    tree of a Host. Every call is recorded. ``respond`` overrides the
    result of any command whose argv starts with a given prefix.
    """

    def __init__(self, host: Host) -> None:
        self.host = host
        self.binaries = set(DEFAULT_BINARIES)
        self.calls: list[tuple[str, ...]] = []
        self.inputs: list[str | None] = []
        self._overrides: list[tuple[tuple[str, ...], Callable[[tuple[str, ...]], CommandResult]]] = []

        self.active_units = {"ssh", "systemd-resolved", "NetworkManager"}
        self.restarted: list[str] = []
        self.sshd_ok = True
        self.shadow = {"root": "$6$rootsalt$roothash", "deploy": "$6$oldsalt$oldhash"}
        self.passwd_format = "debian"
        self.nm_connection: str | None = "Wired connection 1"
        self.nm_dns = "10.0.0.2"
        self.nm_ignore_auto = "no"
        self.kernel_release = RUNNING_KERNEL
        self.virtualization = "none"
        self.on_install: Callable[[], None] | None = None
        self.dead_dns_servers: set[str] = set()

    # ── CommandRunner interface ─────────────────────────────────

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.binaries else None

    def run(self, argv, timeout=None, input=None) -> CommandResult:
        argv = tuple(argv)
        self.calls.append(argv)
        self.inputs.append(input)
        for prefix, respond in reversed(self._overrides):
            if argv[: len(prefix)] == prefix:
                return respond(argv)
        handler = getattr(self, "_" + argv[0].replace("-", "_"), None)
        if handler is None or argv[0] not in self.binaries | {"service", "systemd-detect-virt"}:
            return CommandResult(argv, 127, stderr=f"{argv[0]}: not found")
        return handler(argv, input)

    # ── Test helpers ────────────────────────────────────────────

    def respond(
        self, *prefix: str, returncode: int = 1, stdout: str = "", stderr: str = "failed"
    ) -> None:
        """Make every command starting with ``prefix`` return a fixed result."""
        self._overrides.append(
            (prefix, lambda argv: CommandResult(argv, returncode, stdout, stderr))
        )

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)

    # ── Emulated tools ──────────────────────────────────────────

    def _sysctl(self, argv, input):
        if argv[1] == "-n":
            path = self.host.proc_path(argv[2])
            if not os.path.exists(path):
                return self._cannot_stat(argv, [argv[2]])
            return CommandResult(argv, 0, self.host.read(path))
        if argv[1] == "-w":
            key, _, value = argv[2].partition("=")
            if not os.path.exists(self.host.proc_path(key)):
                return self._cannot_stat(argv, [key])
            self.host.set_proc(key, value)
            return CommandResult(argv, 0, f"{key} = {value}\n")
        if argv[1] == "-p":
            missing: list[str] = []
            applied: list[str] = []
            for line in self.host.read(argv[2]).splitlines():
                line = line.strip()
                if not line or line.startswith(("#", ";")) or "=" not in line:
                    continue
                key, _, value = line.partition("=")
                key, value = key.strip(), " ".join(value.split())
                if os.path.exists(self.host.proc_path(key)):
                    self.host.set_proc(key, value)
                    applied.append(f"{key} = {value}")
                else:
                    missing.append(key)
            if missing:
                return self._cannot_stat(argv, missing, "\n".join(applied))
            return CommandResult(argv, 0, "\n".join(applied) + "\n")
        return CommandResult(argv, 2, stderr="sysctl: bad usage")

    @staticmethod
    def _cannot_stat(argv, keys, stdout=""):
        stderr = "\n".join(
            f"sysctl: cannot stat /proc/sys/{key.replace('.', '/')}: No such file or directory"
            for key in keys
        )
        return CommandResult(argv, 255, stdout, stderr)

    def _sshd(self, argv, input):
        if self.sshd_ok:
            return CommandResult(argv, 0)
        return CommandResult(argv, 255, stderr="/etc/ssh/sshd_config line 2: Badly formatted port number.")

    def _systemctl(self, argv, input):
        if argv[1] == "is-active":
            return CommandResult(argv, 0 if argv[-1] in self.active_units else 3)
        if argv[1] == "restart":
            self.restarted.append(argv[2])
            return CommandResult(argv, 0)
        return CommandResult(argv, 0)

    def _service(self, argv, input):
        unit, action = argv[1], argv[2]
        if action == "status":
            return CommandResult(argv, 0 if unit in self.active_units else 3)
        self.restarted.append(unit)
        return CommandResult(argv, 0)

    def _nmcli(self, argv, input):
        if argv[1:4] == ("-t", "-f", "NAME"):
            if self.nm_connection is None:
                return CommandResult(argv, 0, "")
            return CommandResult(argv, 0, f"{self.nm_connection}\n")
        if argv[1] == "-g":
            if argv[-1] != self.nm_connection:
                return CommandResult(argv, 10, stderr="Error: no such connection profile.")
            if argv[2] == "ipv4.dns":
                return CommandResult(argv, 0, f"{self.nm_dns}\n")
            return CommandResult(argv, 0, f"{self.nm_dns}\n{self.nm_ignore_auto}\n")
        if argv[1:3] == ("connection", "modify"):
            pairs = argv[4:]
            for name, value in zip(pairs[::2], pairs[1::2]):
                if name == "ipv4.dns":
                    self.nm_dns = value
                elif name == "ipv4.ignore-auto-dns":
                    self.nm_ignore_auto = value
            return CommandResult(argv, 0)
        if argv[1:3] == ("connection", "up"):
            self.restarted.append(f"nm:{argv[3]}")
            return CommandResult(argv, 0, "Connection successfully activated")
        return CommandResult(argv, 2, stderr="nmcli: bad usage")

    def _chpasswd(self, argv, input):
        user, _, password = (input or "").rstrip("\n").partition(":")
        if user not in self.shadow:
            return CommandResult(argv, 1, stderr=f"chpasswd: user '{user}' does not exist")
        self.shadow[user] = f"$6$newsalt${abs(hash(password))}"
        return CommandResult(argv, 0)

    def _getent(self, argv, input):
        database, user = argv[1], argv[2]
        if user not in self.shadow:
            return CommandResult(argv, 2)
        if database == "passwd":
            return CommandResult(argv, 0, f"{user}:x:1000:1000::/home/{user}:/bin/bash\n")
        return CommandResult(argv, 0, f"{user}:{self.shadow[user]}:19700:0:99999:7:::\n")

    def _usermod(self, argv, input):
        self.shadow[argv[-1]] = argv[2]
        return CommandResult(argv, 0)

    def _passwd(self, argv, input):
        user = argv[-1]
        if user not in self.shadow:
            return CommandResult(argv, 1, stderr=f"passwd: user '{user}' does not exist")
        usable = self.shadow[user].startswith("$")
        if self.passwd_format == "redhat":
            status = "PS" if usable else "LK"
            return CommandResult(
                argv, 0, f"{user} {status} 2024-01-01 0 99999 7 -1 (Password set, SHA512 crypt.)\n"
            )
        status = "P" if usable else "L"
        return CommandResult(argv, 0, f"{user} {status} 01/01/2024 0 99999 7 -1\n")

    def _chattr(self, argv, input):
        return CommandResult(argv, 0)

    def _uname(self, argv, input):
        if argv[1] == "-m":
            return CommandResult(argv, 0, "x86_64\n")
        return CommandResult(argv, 0, f"{self.kernel_release}\n")

    def _systemd_detect_virt(self, argv, input):
        return CommandResult(argv, 0 if self.virtualization != "none" else 1, f"{self.virtualization}\n")

    def _apt_get(self, argv, input):
        if "install" in argv and self.on_install is not None:
            self.on_install()
        return CommandResult(argv, 0)

    def _update_grub(self, argv, input):
        grub = os.path.join(self.host.boot_dir, "grub", "grub.cfg")
        Host.write(grub, "set default=0\nmenuentry 'new kernel' {}\n")
        return CommandResult(argv, 0)

    def _nslookup(self, argv, input):
        if argv[-1] in self.dead_dns_servers:
            return CommandResult(
                argv, 1, ";; connection timed out; no servers could be reached\n"
            )
        return CommandResult(argv, 0, "Non-authoritative answer")


class StaticDetector:
    """Detector double returning a fixed Environment."""

    def __init__(self, env: Environment) -> None:
        self.env = env
        self.calls = 0

    def detect(self) -> Environment:
        self.calls += 1
        return self.env


class DnsProbeStub:
    """Resolution probe whose answer per domain is set by the test."""

    def __init__(self, resolves: bool = True) -> None:
        self.default = resolves
        self.answers: dict[str, bool] = {}
        self.asked: list[str] = []

    def __call__(self, domain: str, timeout: float) -> bool:
        self.asked.append(domain)
        return self.answers.get(domain, self.default)


class PortProbeStub:
    """Port liveness probe answering from a set of bound ports."""

    def __init__(self, bound: set[int] | None = None) -> None:
        self.bound = set(bound or ())

    def __call__(self, port: int, timeout: float) -> bool:
        return port in self.bound


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def host(tmp_path) -> Host:
    """A fresh fake host tree."""
    return Host(str(tmp_path / "host"))


@pytest.fixture
def runner(host) -> FakeRunner:
    return FakeRunner(host)


@pytest.fixture
def environment() -> Environment:
    """A systemd Ubuntu host with a directly managed resolv.conf."""
    return Environment(
        os_family="ubuntu",
        os_version="22.04",
        kernel_version=RUNNING_KERNEL,
        service_manager=ServiceManagerKind.SYSTEMD,
        package_manager=PackageManagerKind.APT,
        dns_manager=DnsManagerKind.DIRECT,
        os_like=("debian",),
        arch="x86_64",
    )


@pytest.fixture
def detector(environment) -> StaticDetector:
    return StaticDetector(environment)


@pytest.fixture
def dns_probe() -> DnsProbeStub:
    return DnsProbeStub()


@pytest.fixture
def port_probe() -> PortProbeStub:
    return PortProbeStub({22})


def host_config_dict(host: Host) -> dict:
    """DEFAULT_CONFIG pointed at the fake host, with fast probes."""
    data = copy.deepcopy(DEFAULT_CONFIG)
    data["paths"] = {
        "root": host.root,
        "sysctl_conf": host.sysctl_conf,
        "proc_sys": host.proc_sys,
        "resolv_conf": host.resolv_conf,
        "resolved_conf": host.resolved_conf,
        "sshd_config": host.sshd_config,
        "limits_conf": host.limits_conf,
        "boot_dir": host.boot_dir,
    }
    data["backup"] = {"directory": host.backup_dir}
    data["probes"] = {
        "timeout_seconds": 1.0,
        "dns_settle_seconds": 0.0,
        "dns_test_domains": ["google.com", "cloudflare.com", "github.com"],
    }
    data["kernel"]["min_version"] = "4.9"
    data["journal"] = {
        "enabled": True,
        "path": os.path.join(host.root, "var", "log", "sysguard", "journal.jsonl"),
        "stdout": False,
    }
    return data


@pytest.fixture
def config(host) -> SysguardConfig:
    return load_config_from_dict(host_config_dict(host))


@pytest.fixture
def engine(config, runner, detector, dns_probe, port_probe) -> MutationEngine:
    """An engine wired to the fake host that accepts every advisory."""
    return MutationEngine(
        config=config,
        runner=runner,
        confirm=lambda advisories: True,
        detector=detector,
        dns_probe=dns_probe,
        port_probe=port_probe,
    )
