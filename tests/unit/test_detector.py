"""Tests for environment detection over a fake filesystem root."""

import os

import pytest

from conftest import FakeRunner, Host
from sysguard.core.detector import EnvironmentDetector, host_path, parse_os_release
from sysguard.core.environment import (
    UNKNOWN,
    DnsManagerKind,
    PackageManagerKind,
    ServiceManagerKind,
)

UBUNTU_OS_RELEASE = """\
NAME="Ubuntu"
VERSION_ID="22.04"
ID=ubuntu
ID_LIKE=debian
PRETTY_NAME="Ubuntu 22.04.3 LTS"
"""


@pytest.fixture
def root(host) -> str:
    Host.write(os.path.join(host.root, "etc", "os-release"), UBUNTU_OS_RELEASE)
    Host.write(os.path.join(host.root, "proc", "sys", "kernel", "osrelease"), "5.15.0-91-generic\n")
    os.makedirs(os.path.join(host.root, "run", "systemd", "system"))
    return host.root


def detect(root: str, runner: FakeRunner):
    return EnvironmentDetector(runner, root=root).detect()


class TestHelpers:
    def test_host_path_joins_under_root(self):
        assert host_path("/tmp/r", "/etc/os-release") == "/tmp/r/etc/os-release"
        assert host_path("/", "/etc/os-release") == "/etc/os-release"

    def test_parse_os_release_unquotes(self):
        fields = parse_os_release(UBUNTU_OS_RELEASE + "# comment\n\n")
        assert fields["NAME"] == "Ubuntu"
        assert fields["VERSION_ID"] == "22.04"
        assert "PRETTY_NAME" in fields


class TestEnvironmentDetector:
    """Probe ordering and fallbacks."""

    def test_detects_ubuntu_systemd_apt(self, root, runner):
        env = detect(root, runner)
        assert env.os_family == "ubuntu"
        assert env.os_version == "22.04"
        assert env.os_like == ("debian",)
        assert env.is_debian_based()
        assert env.kernel_version == "5.15.0-91-generic"
        assert env.service_manager is ServiceManagerKind.SYSTEMD
        assert env.package_manager is PackageManagerKind.APT
        assert env.arch == "x86_64"
        assert env.virtualization == "none"

    def test_debian_version_fallback(self, host, runner):
        Host.write(os.path.join(host.root, "etc", "debian_version"), "12.4\n")
        env = detect(host.root, runner)
        assert (env.os_family, env.os_version) == ("debian", "12.4")

    def test_redhat_release_fallback(self, host, runner):
        Host.write(
            os.path.join(host.root, "etc", "redhat-release"),
            "CentOS Linux release 7.9.2009 (Core)\n",
        )
        runner.binaries.discard("apt-get")
        runner.binaries.add("yum")
        env = detect(host.root, runner)
        assert (env.os_family, env.os_version) == ("rhel", "7.9")
        assert env.is_redhat_based()
        assert env.package_manager is PackageManagerKind.YUM

    def test_unknown_os_is_noted_not_raised(self, host, runner):
        env = detect(host.root, runner)
        assert env.os_family == UNKNOWN
        assert any(note.startswith("os:") for note in env.ambiguities)

    def test_kernel_falls_back_to_uname(self, host, runner):
        runner.kernel_release = "6.1.0-18-amd64"
        env = detect(host.root, runner)
        assert env.kernel_version == "6.1.0-18-amd64"

    def test_package_manager_order(self, root, runner):
        runner.binaries -= {"apt-get"}
        runner.binaries |= {"dnf", "yum"}
        assert detect(root, runner).package_manager is PackageManagerKind.DNF

    def test_no_package_manager_is_ambiguous(self, root, runner):
        runner.binaries.discard("apt-get")
        env = detect(root, runner)
        assert env.package_manager is PackageManagerKind.UNKNOWN
        assert any(note.startswith("package_manager:") for note in env.ambiguities)

    def test_sysv_when_init_d_present(self, host, runner):
        os.makedirs(os.path.join(host.root, "etc", "init.d"))
        env = detect(host.root, runner)
        assert env.service_manager is ServiceManagerKind.SYSV
        assert env.dns_manager is DnsManagerKind.DIRECT

    def test_resolved_requires_symlinked_stub(self, root, runner):
        resolv = os.path.join(root, "etc", "resolv.conf")
        os.remove(resolv)
        os.symlink("../run/systemd/resolve/stub-resolv.conf", resolv)
        assert detect(root, runner).dns_manager is DnsManagerKind.RESOLVED

    def test_resolved_active_but_plain_file_is_not_resolved(self, root, runner):
        runner.active_units.discard("NetworkManager")
        assert detect(root, runner).dns_manager is DnsManagerKind.DIRECT

    def test_network_manager(self, root, runner):
        Host.write(
            os.path.join(root, "etc", "NetworkManager", "NetworkManager.conf"), "[main]\n"
        )
        assert detect(root, runner).dns_manager is DnsManagerKind.NETWORK_MANAGER

    def test_network_manager_inactive_falls_to_direct(self, root, runner):
        Host.write(
            os.path.join(root, "etc", "NetworkManager", "NetworkManager.conf"), "[main]\n"
        )
        runner.active_units.discard("NetworkManager")
        assert detect(root, runner).dns_manager is DnsManagerKind.DIRECT

    def test_openvz_detected_from_proc(self, root, runner):
        os.makedirs(os.path.join(root, "proc", "vz"))
        assert detect(root, runner).virtualization == "openvz"

    def test_virtualization_from_systemd_detect_virt(self, root, runner):
        runner.virtualization = "lxc"
        assert detect(root, runner).virtualization == "lxc"

    def test_each_detect_call_probes_afresh(self, root, runner):
        detector = EnvironmentDetector(runner, root=root)
        first = detector.detect()
        runner.virtualization = "kvm"
        second = detector.detect()
        assert first.virtualization == "none"
        assert second.virtualization == "kvm"
