"""sysguard backends — one adapter per host subsystem."""

from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.backends.kernel import KernelBackend, KernelCandidate, KernelInstaller
from sysguard.backends.limits import LimitsBackend, LimitsCandidate
from sysguard.backends.network import DnsCandidate, NetworkConfigBackend
from sysguard.backends.registry import BackendRegistry
from sysguard.backends.service import ServiceBackend, SshCandidate
from sysguard.backends.stack_toggle import StackToggleBackend, StackToggleCandidate
from sysguard.backends.sysctl import SysctlBackend, SysctlCandidate

__all__ = [
    "BackendKind",
    "BaseBackend",
    "BackendRegistry",
    "Check",
    "SysctlBackend",
    "SysctlCandidate",
    "StackToggleBackend",
    "StackToggleCandidate",
    "NetworkConfigBackend",
    "DnsCandidate",
    "ServiceBackend",
    "SshCandidate",
    "KernelBackend",
    "KernelCandidate",
    "KernelInstaller",
    "LimitsBackend",
    "LimitsCandidate",
]
