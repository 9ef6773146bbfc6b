"""
Candidate Validation
~~~~~~~~~~~~~~~~~~~~

Format, range and policy checks applied to candidate values before any
backend is allowed to touch the host. Hard failures raise CandidateError;
soft-policy findings come back as Advisory objects.
"""

from __future__ import annotations

import re
import string
from collections.abc import Iterable
from dataclasses import dataclass, field

from sysguard.core.models import Advisory
from sysguard.exceptions import CandidateError

__all__ = [
    "validate_ipv4",
    "parse_dns_servers",
    "parse_port",
    "PasswordPolicy",
    "DEFAULT_WEAK_PASSWORDS",
    "MAX_DNS_SERVERS",
    "parse_limit_line",
    "LIMIT_TYPES",
    "LIMIT_ITEMS",
]

MAX_DNS_SERVERS = 4

_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_LIMIT_DOMAIN_RE = re.compile(r"^(\*|[@%]?[\w.\-]+|\d*:\d*)$")

# pam_limits(8) entry types and items.
LIMIT_TYPES = ("soft", "hard", "-")
LIMIT_ITEMS = frozenset(
    {
        "core", "data", "fsize", "memlock", "nofile", "rss", "stack", "cpu",
        "nproc", "as", "maxlogins", "maxsyslogins", "nonewprivs", "priority",
        "locks", "sigpending", "msgqueue", "nice", "rtprio",
    }
)

DEFAULT_WEAK_PASSWORDS: tuple[str, ...] = (
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
)


def validate_ipv4(address: str) -> bool:
    """
    Return True if ``address`` is a dotted-quad IPv4 address.

    Each octet must be in [0, 255] and carry no leading zero, so
    ``1.2.3.04`` and ``256.1.1.1`` are both rejected.
    """
    match = _IPV4_RE.match(address.strip()) if address else None
    if match is None:
        return False
    for octet in match.groups():
        if len(octet) > 1 and octet.startswith("0"):
            return False
        if int(octet) > 255:
            return False
    return True


def parse_dns_servers(
    servers: str | Iterable[str], limit: int = MAX_DNS_SERVERS
) -> tuple[str, ...]:
    """
    Normalise a DNS server list.

    Accepts a whitespace/comma separated string or an iterable. Duplicates
    are removed preserving first occurrence before the count is checked.

    Raises:
        CandidateError: If the list is empty, too long, or holds an
            invalid address.
    """
    if isinstance(servers, str):
        items = [s for s in re.split(r"[\s,]+", servers) if s]
    else:
        items = [str(s).strip() for s in servers if str(s).strip()]

    unique: list[str] = []
    for item in items:
        if not validate_ipv4(item):
            raise CandidateError(
                f"Invalid IPv4 address: {item!r}", field="servers", value=item
            )
        if item not in unique:
            unique.append(item)

    if not unique:
        raise CandidateError(
            "At least one DNS server is required", field="servers", value=servers
        )
    if len(unique) > limit:
        raise CandidateError(
            f"At most {limit} DNS servers are allowed, got {len(unique)}",
            field="servers",
            value=tuple(unique),
        )
    return tuple(unique)


def parse_port(value: str | int, low: int = 1024, high: int = 65535) -> int:
    """
    Parse and range-check a TCP port.

    Raises:
        CandidateError: If the value is not an integer in [low, high].
    """
    if isinstance(value, bool):
        raise CandidateError("Port must be an integer", field="port", value=value)
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise CandidateError(
                f"Port must be an integer, got {value!r}", field="port", value=value
            )
        port = int(text)
    else:
        port = int(value)
    if not low <= port <= high:
        raise CandidateError(
            f"Port {port} is outside the allowed range [{low}, {high}]",
            field="port",
            value=port,
        )
    return port


def parse_limit_line(line: str) -> tuple[str, str, str, str]:
    """
    Split a ``limits.conf`` entry into domain, type, item and value.

    Raises:
        CandidateError: If the line does not have four fields, or names an
            unknown type or item, or carries a non-numeric value.
    """
    fields = line.split()
    if len(fields) != 4:
        raise CandidateError(
            f"Limit entry needs 'domain type item value', got {line!r}",
            field="limits",
            value=line,
        )
    domain, kind, item, value = fields
    if not _LIMIT_DOMAIN_RE.match(domain):
        raise CandidateError(f"Invalid limit domain {domain!r}", field="limits", value=line)
    if kind not in LIMIT_TYPES:
        raise CandidateError(f"Invalid limit type {kind!r}", field="limits", value=line)
    if item not in LIMIT_ITEMS:
        raise CandidateError(f"Unknown limit item {item!r}", field="limits", value=line)
    if value not in ("unlimited", "infinity") and not re.fullmatch(r"-?\d+", value):
        raise CandidateError(f"Invalid limit value {value!r}", field="limits", value=line)
    return domain, kind, item, value


@dataclass
class PasswordPolicy:
    """
    Strength policy for account credentials.

    A password passes when it is at least ``min_length`` long, mixes at
    least ``min_classes`` of upper, lower, digit and symbol characters,
    does not contain the username and is not a well-known weak password.
    """

    min_length: int = 8
    min_classes: int = 3
    weak_passwords: tuple[str, ...] = field(default=DEFAULT_WEAK_PASSWORDS)

    def problems(self, password: str, username: str = "") -> list[str]:
        """Return a human-readable reason for every rule the password breaks."""
        issues: list[str] = []
        if len(password) < self.min_length:
            issues.append(f"shorter than {self.min_length} characters")

        classes = sum(
            (
                any(c.isupper() for c in password),
                any(c.islower() for c in password),
                any(c.isdigit() for c in password),
                any(c in string.punctuation for c in password),
            )
        )
        if classes < self.min_classes:
            issues.append(
                f"uses {classes} character classes, {self.min_classes} required"
            )

        if username and username.lower() in password.lower():
            issues.append("contains the username")

        if password.lower() in (w.lower() for w in self.weak_passwords):
            issues.append("is a commonly used weak password")
        return issues

    def assess(self, password: str, username: str = "") -> Advisory | None:
        """Return an advisory requiring confirmation if the password is weak."""
        if not password:
            raise CandidateError(
                "Password must not be empty", field="password", value=""
            )
        issues = self.problems(password, username)
        if not issues:
            return None
        return Advisory(
            code="weak_password",
            message="Password " + "; ".join(issues),
            requires_confirmation=True,
        )
