"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Defaults used when no config file is provided. A user file is deep-merged
over this dictionary, so it only needs the keys it changes.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG", "DEFAULT_CONFIG_PATH"]

DEFAULT_CONFIG_PATH = "/etc/sysguard/config.yaml"

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "paths": {
        "root": "/",
        "sysctl_conf": "/etc/sysctl.conf",
        "proc_sys": "/proc/sys",
        "resolv_conf": "/etc/resolv.conf",
        "resolved_conf": "/etc/systemd/resolved.conf",
        "sshd_config": "/etc/ssh/sshd_config",
        "limits_conf": "/etc/security/limits.conf",
        "boot_dir": "/boot",
    },
    "backup": {
        "directory": "/var/backups/sysguard",
    },
    "probes": {
        "timeout_seconds": 5.0,
        "dns_settle_seconds": 2.0,
        "dns_test_domains": ["google.com", "cloudflare.com", "github.com"],
    },
    "tcp": {
        "settings": {
            "net.core.netdev_max_backlog": "100000",
            "net.core.somaxconn": "8192",
            "net.ipv4.tcp_max_syn_backlog": "8192",
            "net.core.rmem_default": "262144",
            "net.core.wmem_default": "262144",
            "net.core.rmem_max": "67108864",
            "net.core.wmem_max": "67108864",
            "net.ipv4.tcp_rmem": "4096 87380 67108864",
            "net.ipv4.tcp_wmem": "4096 65536 67108864",
            "net.ipv4.tcp_mem": "786432 1048576 1572864",
            "net.core.default_qdisc": "fq",
            "net.ipv4.tcp_notsent_lowat": "16384",
            "net.ipv4.tcp_tw_reuse": "1",
            "net.ipv4.tcp_fin_timeout": "30",
            "net.ipv4.tcp_max_tw_buckets": "200000",
            "net.ipv4.tcp_fastopen": "3",
            "net.ipv4.tcp_window_scaling": "1",
            "net.ipv4.tcp_timestamps": "1",
        },
        "congestion_control": "bbr",
        "conntrack_max": 1048576,
        "limits": [
            "* soft nofile 1048576",
            "* hard nofile 1048576",
            "root soft nofile 1048576",
            "root hard nofile 1048576",
            "* soft nproc 65536",
            "* hard nproc 65536",
            "root soft nproc 65536",
            "root hard nproc 65536",
        ],
    },
    "bbr": {
        "settings": {
            "net.core.default_qdisc": "fq",
            "net.ipv4.tcp_congestion_control": "bbr",
        },
    },
    "ipv6": {
        "disabled": True,
    },
    "dns": {
        "presets": {
            "google": ["8.8.8.8", "8.8.4.4"],
            "cloudflare": ["1.1.1.1", "1.0.0.1"],
            "ali": ["223.5.5.5", "223.6.6.6"],
            "tencent": ["119.29.29.29", "182.254.116.116"],
        },
        "default_preset": "cloudflare",
        "lock_resolv_conf": True,
    },
    "ssh": {
        "port_min": 1024,
        "port_max": 65535,
        "min_password_length": 8,
        "min_password_classes": 3,
        "weak_passwords": [
            "123456",
            "password",
            "123456789",
            "12345678",
            "12345",
            "1234567",
            "1234567890",
            "qwerty",
            "abc123",
            "111111",
            "password123",
            "admin",
            "root",
            "toor",
            "123123",
            "test",
            "guest",
            "user",
        ],
    },
    "kernel": {
        "min_version": "4.9",
        "install_commands": {
            "apt": [
                ["apt-get", "update"],
                ["apt-get", "install", "-y", "linux-image-generic"],
            ],
            "dnf": [["dnf", "install", "-y", "kernel"]],
            "yum": [["yum", "install", "-y", "kernel"]],
            "zypper": [["zypper", "--non-interactive", "install", "kernel-default"]],
            "pacman": [["pacman", "-S", "--noconfirm", "linux"]],
        },
        "bootloader_commands": {
            "apt": [["update-grub"]],
            "dnf": [["grub2-set-default", "0"]],
            "yum": [["grub2-set-default", "0"]],
        },
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
    "journal": {
        "enabled": True,
        "path": "/var/log/sysguard/journal.jsonl",
        "stdout": False,
    },
}
