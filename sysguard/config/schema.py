"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating sysguard configuration.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator, model_validator

from sysguard.core.validation import parse_limit_line, validate_ipv4
from sysguard.exceptions import CandidateError

__all__ = [
    "SysguardConfig",
    "PathsConfig",
    "BackupConfig",
    "ProbeConfig",
    "TcpConfig",
    "BbrConfig",
    "Ipv6Config",
    "DnsConfig",
    "SshConfig",
    "KernelConfig",
    "LoggingConfig",
    "JournalConfig",
]


def _clean_settings(value: dict[str, object | None]) -> dict[str, str]:
    """Drop keys set to null and render values as sysctl text."""
    return {
        key: " ".join(str(v).split())
        for key, v in value.items()
        if v is not None
    }


class PathsConfig(BaseModel):
    """Host file locations."""

    root: str = "/"
    sysctl_conf: str = "/etc/sysctl.conf"
    proc_sys: str = "/proc/sys"
    resolv_conf: str = "/etc/resolv.conf"
    resolved_conf: str = "/etc/systemd/resolved.conf"
    sshd_config: str = "/etc/ssh/sshd_config"
    limits_conf: str = "/etc/security/limits.conf"
    boot_dir: str = "/boot"


class BackupConfig(BaseModel):
    """Where snapshots are kept."""

    directory: str = "/var/backups/sysguard"


class ProbeConfig(BaseModel):
    """Per-probe time limits."""

    timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    dns_settle_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    dns_test_domains: list[str] = Field(
        default_factory=lambda: ["google.com", "cloudflare.com", "github.com"],
        min_length=1,
    )


class TcpConfig(BaseModel):
    """TCP tuning parameters."""

    settings: dict[str, str | int | None] = Field(default_factory=dict)
    congestion_control: str | None = "bbr"
    conntrack_max: int | None = Field(default=1048576, ge=1)
    limits: list[str] = Field(default_factory=list)

    @field_validator("settings")
    @classmethod
    def clean_settings(cls, v: dict) -> dict[str, str]:
        return _clean_settings(v)

    @field_validator("limits")
    @classmethod
    def validate_limits(cls, v: list[str]) -> list[str]:
        """Each entry must read ``domain type item value``."""
        for line in v:
            try:
                parse_limit_line(line)
            except CandidateError as exc:
                raise ValueError(f"tcp.limits: {exc}") from exc
        return [" ".join(line.split()) for line in v]


class BbrConfig(BaseModel):
    """Sysctl lines that switch congestion control to BBR."""

    settings: dict[str, str | int | None] = Field(default_factory=dict)

    @field_validator("settings")
    @classmethod
    def clean_settings(cls, v: dict) -> dict[str, str]:
        cleaned = _clean_settings(v)
        if not cleaned:
            raise ValueError("bbr.settings must not be empty")
        return cleaned


class Ipv6Config(BaseModel):
    disabled: bool = True


class DnsConfig(BaseModel):
    """DNS presets and resolver handling."""

    presets: dict[str, list[str]] = Field(default_factory=dict)
    default_preset: str = "cloudflare"
    lock_resolv_conf: bool = True

    @field_validator("presets")
    @classmethod
    def validate_presets(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Every preset must be a non-empty list of IPv4 addresses."""
        for name, servers in v.items():
            if not servers:
                raise ValueError(f"DNS preset {name!r} has no servers")
            for server in servers:
                if not validate_ipv4(server):
                    raise ValueError(f"DNS preset {name!r}: invalid IPv4 {server!r}")
        return v

    @model_validator(mode="after")
    def check_default_preset(self) -> DnsConfig:
        if self.default_preset not in self.presets:
            raise ValueError(f"Unknown default DNS preset: {self.default_preset!r}")
        return self


class SshConfig(BaseModel):
    """SSH port range and password policy."""

    port_min: int = Field(default=1024, ge=1, le=65535)
    port_max: int = Field(default=65535, ge=1, le=65535)
    min_password_length: int = Field(default=8, ge=1)
    min_password_classes: int = Field(default=3, ge=1, le=4)
    weak_passwords: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_range(self) -> SshConfig:
        if self.port_min > self.port_max:
            raise ValueError("ssh.port_min must not exceed ssh.port_max")
        return self


class KernelConfig(BaseModel):
    """Kernel install commands, keyed by package manager."""

    min_version: str = "4.9"
    install_commands: dict[str, list[list[str]]] = Field(default_factory=dict)
    bootloader_commands: dict[str, list[list[str]]] = Field(default_factory=dict)

    @field_validator("min_version")
    @classmethod
    def validate_min_version(cls, v: str) -> str:
        parts = v.split(".")
        if not 1 <= len(parts) <= 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid kernel version: {v!r}")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v!r}")
        return level


class JournalConfig(BaseModel):
    """Transaction journal output."""

    enabled: bool = True
    path: str | None = "/var/log/sysguard/journal.jsonl"
    stdout: bool = False


class SysguardConfig(BaseModel):
    """
    Root configuration model for sysguard.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    paths: PathsConfig = Field(default_factory=PathsConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    probes: ProbeConfig = Field(default_factory=ProbeConfig)
    tcp: TcpConfig = Field(default_factory=TcpConfig)
    bbr: BbrConfig = Field(
        default_factory=lambda: BbrConfig(
            settings={
                "net.core.default_qdisc": "fq",
                "net.ipv4.tcp_congestion_control": "bbr",
            }
        )
    )
    ipv6: Ipv6Config = Field(default_factory=Ipv6Config)
    dns: DnsConfig = Field(
        default_factory=lambda: DnsConfig(presets={"cloudflare": ["1.1.1.1", "1.0.0.1"]})
    )
    ssh: SshConfig = Field(default_factory=SshConfig)
    kernel: KernelConfig = Field(default_factory=KernelConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
