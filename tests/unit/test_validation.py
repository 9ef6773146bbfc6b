"""Tests for candidate validation: addresses, ports and password policy."""

import pytest

from sysguard.core.validation import (
    PasswordPolicy,
    parse_dns_servers,
    parse_limit_line,
    parse_port,
    validate_ipv4,
)
from sysguard.exceptions import CandidateError


class TestValidateIpv4:
    """Dotted-quad validation."""

    @pytest.mark.parametrize(
        "address",
        ["8.8.8.8", "0.0.0.0", "255.255.255.255", "192.168.1.10", " 1.1.1.1 "],
    )
    def test_accepts_valid(self, address):
        assert validate_ipv4(address) is True

    @pytest.mark.parametrize(
        "address",
        [
            "256.1.1.1",
            "1.2.3",
            "1.2.3.4.5",
            "a.b.c.d",
            "1.2.3.04",
            "01.2.3.4",
            "",
            "1.2.3.-4",
            "::1",
        ],
    )
    def test_rejects_invalid(self, address):
        assert validate_ipv4(address) is False


class TestParseDnsServers:
    """Operator DNS input normalisation."""

    def test_splits_commas_and_whitespace(self):
        assert parse_dns_servers("8.8.8.8, 1.1.1.1  9.9.9.9") == (
            "8.8.8.8",
            "1.1.1.1",
            "9.9.9.9",
        )

    def test_removes_duplicates_keeping_order(self):
        assert parse_dns_servers(["1.1.1.1", "8.8.8.8", "1.1.1.1"]) == (
            "1.1.1.1",
            "8.8.8.8",
        )

    def test_duplicates_do_not_count_towards_limit(self):
        servers = ["1.1.1.1"] * 6 + ["8.8.8.8"]
        assert parse_dns_servers(servers) == ("1.1.1.1", "8.8.8.8")

    def test_empty_rejected(self):
        with pytest.raises(CandidateError, match="At least one"):
            parse_dns_servers("")

    def test_more_than_four_rejected(self):
        with pytest.raises(CandidateError, match="At most 4"):
            parse_dns_servers("1.1.1.1 1.0.0.1 8.8.8.8 8.8.4.4 9.9.9.9")

    def test_invalid_address_names_the_value(self):
        with pytest.raises(CandidateError) as exc_info:
            parse_dns_servers(["8.8.8.8", "300.1.1.1"])
        assert exc_info.value.value == "300.1.1.1"
        assert exc_info.value.field == "servers"


class TestParsePort:
    """Port range checks."""

    @pytest.mark.parametrize("value,expected", [("2222", 2222), (1024, 1024), ("65535", 65535)])
    def test_accepts_in_range(self, value, expected):
        assert parse_port(value) == expected

    @pytest.mark.parametrize("value", ["22", 1023, "65536", 0, "-1", "abc", "", "22.5", True])
    def test_rejects_out_of_range_or_malformed(self, value):
        with pytest.raises(CandidateError):
            parse_port(value)

    def test_custom_range(self):
        assert parse_port("22", low=1, high=100) == 22


class TestParseLimitLine:
    """limits.conf entries."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("* soft nofile 1048576", ("*", "soft", "nofile", "1048576")),
            ("root\thard   nproc 65536", ("root", "hard", "nproc", "65536")),
            ("@admins - memlock unlimited", ("@admins", "-", "memlock", "unlimited")),
            ("1000: soft priority -5", ("1000:", "soft", "priority", "-5")),
        ],
    )
    def test_accepts(self, line, expected):
        assert parse_limit_line(line) == expected

    @pytest.mark.parametrize(
        "line",
        [
            "* soft nofile",
            "* soft nofile 10 extra",
            "* medium nofile 10",
            "* soft openfiles 10",
            "* soft nofile lots",
            "a/b soft nofile 10",
        ],
    )
    def test_rejects(self, line):
        with pytest.raises(CandidateError) as exc_info:
            parse_limit_line(line)
        assert exc_info.value.field == "limits"


class TestPasswordPolicy:
    """Credential strength advisories."""

    def test_strong_password_has_no_advisory(self):
        assert PasswordPolicy().assess("Tr0ub4dor&3x", "deploy") is None

    def test_short_password_flagged(self):
        problems = PasswordPolicy().problems("Ab1!", "deploy")
        assert any("shorter than 8" in p for p in problems)

    def test_few_character_classes_flagged(self):
        problems = PasswordPolicy().problems("onlylowercaseletters")
        assert any("character classes" in p for p in problems)

    def test_username_in_password_flagged(self):
        problems = PasswordPolicy().problems("Deploy#2024x", "deploy")
        assert "contains the username" in problems

    def test_weak_list_is_case_insensitive(self):
        policy = PasswordPolicy(min_length=1, min_classes=1)
        assert "is a commonly used weak password" in policy.problems("PASSWORD")

    def test_weak_password_requires_confirmation(self):
        advisory = PasswordPolicy().assess("123456", "deploy")
        assert advisory is not None
        assert advisory.code == "weak_password"
        assert advisory.requires_confirmation is True

    def test_empty_password_is_invalid(self):
        with pytest.raises(CandidateError):
            PasswordPolicy().assess("", "deploy")
