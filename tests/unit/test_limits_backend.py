"""Tests for the limits.conf backend."""

import os

import pytest

from conftest import LIMITS_CONF
from sysguard.backends.limits import LimitsBackend, LimitsCandidate, read_block, replace_block
from sysguard.backup.store import BackupStore
from sysguard.core.outcome import CheckStatus, Verdict
from sysguard.exceptions import CandidateError

BEGIN = "# ===== sysguard:limits BEGIN ====="
END = "# ===== sysguard:limits END ====="
NOFILE = ["* soft nofile 1048576", "* hard nofile 1048576"]


@pytest.fixture
def backend(host, runner) -> LimitsBackend:
    return LimitsBackend(host.limits_conf, runner)


def limits(*lines) -> LimitsCandidate:
    return LimitsCandidate.from_lines("limits", lines or NOFILE)


class TestReplaceBlock:
    def test_appends_after_existing_entries(self):
        text, changed = replace_block(LIMITS_CONF, "limits", NOFILE)
        assert changed
        assert text == f"{LIMITS_CONF}\n{BEGIN}\n{NOFILE[0]}\n{NOFILE[1]}\n{END}\n"

    def test_replaces_whole_block(self):
        start = f"{BEGIN}\n* soft nofile 1024\n* soft nproc 10\n{END}\n@backup hard nofile 4096\n"
        text, _ = replace_block(start, "limits", NOFILE)
        assert read_block(text, "limits") == NOFILE
        assert text.endswith("@backup hard nofile 4096\n")

    def test_second_replace_is_a_no_op(self):
        once, _ = replace_block("", "limits", NOFILE)
        twice, changed = replace_block(once, "limits", NOFILE)
        assert not changed
        assert twice == once


class TestLimitsBackend:
    def test_applicable_when_directory_exists(self, backend, environment, host):
        assert backend.detect_applicability(environment)
        missing = LimitsBackend(os.path.join(host.root, "nowhere", "limits.conf"))
        assert not missing.detect_applicability(environment)
        assert "does not exist" in missing.not_applicable_reason(environment)

    @pytest.mark.parametrize(
        "candidate",
        [
            LimitsCandidate("limits", ()),
            LimitsCandidate("limits", ("* soft nofile",)),
            LimitsCandidate("limits", ("* soft nofile 10", "*  soft nofile 20")),
        ],
    )
    def test_validate_rejects(self, backend, environment, candidate):
        with pytest.raises(CandidateError):
            backend.validate(candidate, environment)

    def test_apply_writes_section_and_keeps_other_lines(self, backend, environment, host):
        outcome = backend.apply(limits(), environment)

        text = host.read(host.limits_conf)
        assert outcome.changed
        assert outcome.applied == {"* soft nofile": "1048576", "* hard nofile": "1048576"}
        assert "new sessions" in outcome.detail
        assert "@backup hard nofile 4096" in text
        assert read_block(text, "limits") == NOFILE

    def test_apply_twice_leaves_file_identical(self, backend, environment, host):
        backend.apply(limits(), environment)
        first = host.read_bytes(host.limits_conf)
        assert not backend.apply(limits(), environment).changed
        assert host.read_bytes(host.limits_conf) == first

    def test_verify_pass_after_apply(self, backend, environment):
        candidate = limits()
        report = backend.verify(candidate, backend.apply(candidate, environment))
        assert report.verdict is Verdict.PASS
        assert [r.name for r in report.results] == [
            "limits.*.soft.nofile",
            "limits.*.hard.nofile",
        ]

    def test_verify_fails_when_entry_was_edited(self, backend, environment, host):
        candidate = limits()
        outcome = backend.apply(candidate, environment)
        host.write(
            host.limits_conf,
            host.read(host.limits_conf).replace("* hard nofile 1048576", "* hard nofile 1024"),
        )
        report = backend.verify(candidate, outcome)
        assert report.verdict is Verdict.FAIL
        assert report.get("limits.*.hard.nofile").status is CheckStatus.FAIL
        assert "1024" in report.get("limits.*.hard.nofile").detail

    def test_restore_puts_original_file_back(self, backend, environment, host, runner):
        store = BackupStore(host.backup_dir, "limits", runner)
        for target in backend.snapshot_targets(limits(), environment):
            store.capture(target)
        backend.apply(limits(), environment)

        assert store.restore_all() == []
        assert host.read(host.limits_conf) == LIMITS_CONF

    def test_current_state(self, backend, environment, host):
        assert backend.current_state()["entries"] == []
        backend.apply(limits(), environment)
        assert backend.current_state() == {"file": host.limits_conf, "entries": NOFILE}
