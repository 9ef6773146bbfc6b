"""
Stack Toggle Backend
~~~~~~~~~~~~~~~~~~~~

IPv6 enable/disable: a restricted SysctlBackend that only ever writes
the three ``disable_ipv6`` scopes and never skips a key. Every scope must
read back the requested value before the change is accepted.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from sysguard.backends.base import BackendKind, Check
from sysguard.backends.sysctl import SysctlBackend, SysctlCandidate
from sysguard.core.environment import Environment
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.exceptions import CandidateError

__all__ = ["StackToggleBackend", "StackToggleCandidate", "IPV6_SCOPES"]

IPV6_SCOPES = ("all", "default", "lo")
_SECTION = "ipv6"


@dataclass(frozen=True)
class StackToggleCandidate:
    """Whether the IPv6 stack should be disabled."""

    disabled: bool = True

    def to_sysctl(self) -> SysctlCandidate:
        value = "1" if self.disabled else "0"
        return SysctlCandidate(
            _SECTION,
            tuple((f"net.ipv6.conf.{scope}.disable_ipv6", value) for scope in IPV6_SCOPES),
        )


class StackToggleBackend(SysctlBackend):
    """IPv6 toggle over the fixed ``net.ipv6.conf.{all,default,lo}`` keys."""

    kind = BackendKind.STACK_TOGGLE
    name = "ipv6"
    allow_skip = False

    def detect_applicability(self, env: Environment) -> bool:
        return super().detect_applicability(env) and os.path.isdir(
            os.path.join(self.proc_sys, "net", "ipv6")
        )

    def not_applicable_reason(self, env: Environment) -> str:
        return "the kernel has no IPv6 stack (net/ipv6 missing under /proc/sys)"

    def validate(self, candidate: StackToggleCandidate, env: Environment) -> list[Advisory]:
        if not isinstance(candidate.disabled, bool):
            raise CandidateError(
                "disabled must be a boolean", field="disabled", value=candidate.disabled
            )
        return super().validate(candidate.to_sysctl(), env)

    def snapshot_targets(
        self, candidate: StackToggleCandidate, env: Environment
    ) -> list[SnapshotTarget]:
        return super().snapshot_targets(candidate.to_sysctl(), env)

    def current_state(self) -> dict[str, Any]:
        live = {
            scope: self.read_live(f"net.ipv6.conf.{scope}.disable_ipv6")
            for scope in IPV6_SCOPES
        }
        return {
            "file": self.conf_path,
            "disable_ipv6": live,
            "disabled": all(value == "1" for value in live.values()),
        }

    def apply(self, candidate: StackToggleCandidate, env: Environment) -> ApplyOutcome:
        return super().apply(candidate.to_sysctl(), env)

    def checks(
        self, candidate: StackToggleCandidate, outcome: ApplyOutcome | None
    ) -> list[Check]:
        sysctl = candidate.to_sysctl()
        return [
            Check(f"ipv6.{scope}", lambda k=key, v=value: self._check_live(k, v))
            for scope, (key, value) in zip(IPV6_SCOPES, sysctl.settings)
        ]
