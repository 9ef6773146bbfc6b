"""Tests for the transaction lifecycle, driven by a scripted backend."""

import dataclasses
import os

import pytest

from conftest import Host, StaticDetector
from sysguard.backends.base import BackendKind, BaseBackend, Check
from sysguard.backup.store import BackupStore, list_backups
from sysguard.core.models import Advisory, ApplyOutcome, SnapshotTarget
from sysguard.core.outcome import CheckStatus, ErrorKind, Outcome, TxState, Verdict
from sysguard.core.transaction import MutationTransaction, TransactionState
from sysguard.exceptions import ApplyError, CandidateError, InvalidTransitionError
from sysguard.observability.journal import TransactionJournal


class ScriptedBackend(BaseBackend):
    """Backend whose every step is controlled by attributes set in the test."""

    kind = BackendKind.SYSCTL
    name = "scripted"

    def __init__(self, path, runner):
        super().__init__(runner)
        self.path = path
        self.applicable = True
        self.satisfied = False
        self.advisories = []
        self.validate_error = None
        self.apply_error = None
        self.verify_error = None
        self.status = CheckStatus.PASS
        self.targets = None
        self.applied = 0
        self.hooks = []

    def detect_applicability(self, env):
        return self.applicable

    def not_applicable_reason(self, env):
        return "scripted backend switched off"

    def validate(self, candidate, env):
        if self.validate_error is not None:
            raise self.validate_error
        return list(self.advisories)

    def is_satisfied(self, candidate, env):
        return self.satisfied

    def snapshot_targets(self, candidate, env):
        if self.targets is not None:
            return self.targets
        return [SnapshotTarget.file(self.path)]

    def current_state(self):
        return {}

    def apply(self, candidate, env):
        self.applied += 1
        Host.write(self.path, f"{candidate}\n")
        if self.apply_error is not None:
            raise self.apply_error
        return ApplyOutcome(changed=True, detail="written")

    def checks(self, candidate, outcome):
        if self.verify_error is not None:
            raise self.verify_error
        return [Check("scripted.state", lambda: (self.status, "scripted"))]

    def before_restore(self):
        self.hooks.append("before")

    def after_restore(self):
        self.hooks.append("after")


class FailingDetector:
    def detect(self):
        raise OSError("/etc unreadable")


@pytest.fixture
def backend(host, runner) -> ScriptedBackend:
    return ScriptedBackend(host.sysctl_conf, runner)


@pytest.fixture
def journal() -> TransactionJournal:
    return TransactionJournal()


@pytest.fixture
def make_transaction(host, runner, detector, journal):
    def factory(**overrides) -> MutationTransaction:
        kwargs = {
            "detector": detector,
            "store_factory": lambda op: BackupStore(host.backup_dir, op, runner),
            "journal": journal,
        }
        kwargs.update(overrides)
        return MutationTransaction(**kwargs)

    return factory


class TestTransactionState:
    def test_happy_path(self):
        state = TransactionState()
        for target in (
            TxState.DETECTED,
            TxState.SNAPSHOTTED,
            TxState.APPLIED,
            TxState.VERIFIED,
            TxState.COMMITTED,
        ):
            state.advance(target)
        assert state.terminal
        assert state.history[0] is TxState.INIT

    @pytest.mark.parametrize(
        "path",
        [
            [TxState.APPLIED],
            [TxState.DETECTED, TxState.APPLIED],
            [TxState.DETECTED, TxState.SNAPSHOTTED, TxState.APPLIED, TxState.ABORTED],
            [TxState.DETECTED, TxState.ROLLED_BACK],
        ],
    )
    def test_illegal_edges_rejected(self, path):
        state = TransactionState()
        with pytest.raises(InvalidTransitionError):
            for target in path:
                state.advance(target)

    def test_terminal_states_have_no_exits(self):
        state = TransactionState()
        state.advance(TxState.ABORTED)
        with pytest.raises(InvalidTransitionError):
            state.advance(TxState.DETECTED)


class TestCommit:
    """Runs that end committed."""

    def test_commit_records_everything(self, make_transaction, backend, host, journal):
        result = make_transaction().run(backend, "net.core.somaxconn = 8192", "tcp")

        assert result.outcome is Outcome.COMMITTED
        assert result.failed_step is None
        assert result.verdict is Verdict.PASS
        assert len(result.snapshots) == 1
        assert result.backup_dir.startswith(os.path.join(host.backup_dir, "tcp"))
        assert host.read(host.sysctl_conf) == "net.core.somaxconn = 8192\n"
        assert journal.query(outcome=Outcome.COMMITTED) == [result]
        assert list_backups(host.backup_dir)[0].outcome == "committed"

    def test_operation_defaults_to_backend_name(self, make_transaction, backend):
        assert make_transaction().run(backend, "x").operation == "scripted"

    def test_degraded_commits_with_non_fatal_error(self, make_transaction, backend):
        backend.status = CheckStatus.WARN
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.COMMITTED
        assert result.verdict is Verdict.DEGRADED
        assert [e.kind for e in result.errors] == [ErrorKind.VERIFY_FAILED_DEGRADED]
        assert result.failed_step is None

    def test_pending_reboot_commits(self, make_transaction, backend):
        backend.status = CheckStatus.PENDING_REBOOT
        result = make_transaction().run(backend, "x")
        assert result.outcome is Outcome.COMMITTED
        assert result.verdict is Verdict.PENDING_REBOOT

    def test_already_satisfied_skips_snapshot_and_apply(self, make_transaction, backend, host):
        backend.satisfied = True
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.COMMITTED
        assert result.snapshots == ()
        assert result.backup_dir is None
        assert backend.applied == 0
        assert result.report.results[0].detail == "already satisfied"
        assert not os.path.exists(host.backup_dir)

    def test_ambiguous_detection_is_not_fatal(self, make_transaction, backend, environment):
        env = dataclasses.replace(environment, ambiguities=("os: no os-release",))
        result = make_transaction(detector=StaticDetector(env)).run(backend, "x")

        assert result.outcome is Outcome.COMMITTED
        assert result.errors[0].kind is ErrorKind.DETECTION_AMBIGUOUS
        assert result.errors[0].message == "os: no os-release"

    def test_confirmed_advisory_proceeds(self, make_transaction, backend):
        advisory = Advisory("port_in_use", "Port 2222 is taken", requires_confirmation=True)
        backend.advisories = [advisory]
        seen = []

        def confirm(advisories):
            seen.extend(advisories)
            return True

        result = make_transaction(confirm=confirm).run(backend, "x")

        assert result.outcome is Outcome.COMMITTED
        assert seen == [advisory]
        assert result.advisories == (advisory,)

    def test_informational_advisory_needs_no_confirmation(self, make_transaction, backend):
        backend.advisories = [Advisory("dns_duplicates", "Duplicates removed")]
        assert make_transaction().run(backend, "x").outcome is Outcome.COMMITTED


class TestAbort:
    """Runs that end before anything is changed."""

    def assert_untouched(self, host, backend):
        assert backend.applied == 0
        assert "vm.swappiness = 10" in host.read(host.sysctl_conf)

    def test_detector_failure(self, make_transaction, backend, host):
        result = make_transaction(detector=FailingDetector()).run(backend, "x")

        assert result.outcome is Outcome.ABORTED
        assert result.failed_step == "detect"
        assert result.environment is None
        self.assert_untouched(host, backend)

    def test_invalid_candidate(self, make_transaction, backend, host):
        backend.validate_error = CandidateError("port out of range", field="port")
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ABORTED
        assert result.failed_step == "validate"
        assert result.errors[-1].kind is ErrorKind.CANDIDATE_INVALID
        assert result.backup_dir is None
        self.assert_untouched(host, backend)

    def test_unexpected_validation_error_is_classified(self, make_transaction, backend):
        backend.validate_error = KeyError("servers")
        result = make_transaction().run(backend, "x")
        assert result.errors[-1].kind is ErrorKind.CANDIDATE_INVALID

    def test_declined_by_default(self, make_transaction, backend, host):
        backend.advisories = [Advisory("weak_password", "weak", requires_confirmation=True)]
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ABORTED
        assert result.failed_step == "confirm"
        assert result.errors[-1].kind is ErrorKind.CONFIRMATION_DECLINED
        self.assert_untouched(host, backend)

    def test_raising_confirm_counts_as_declined(self, make_transaction, backend):
        backend.advisories = [Advisory("weak_password", "weak", requires_confirmation=True)]

        def confirm(advisories):
            raise EOFError

        result = make_transaction(confirm=confirm).run(backend, "x")
        assert result.errors[-1].kind is ErrorKind.CONFIRMATION_DECLINED

    def test_not_applicable(self, make_transaction, backend, host):
        backend.applicable = False
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ABORTED
        assert result.errors[-1].kind is ErrorKind.NOT_APPLICABLE
        assert result.errors[-1].message == "scripted backend switched off"
        self.assert_untouched(host, backend)

    def test_snapshot_failure_never_applies(self, make_transaction, backend, host, runner):
        blocker = os.path.join(host.root, "blocker")
        Host.write(blocker, "")
        transaction = make_transaction(
            store_factory=lambda op: BackupStore(os.path.join(blocker, "b"), op, runner)
        )
        result = transaction.run(backend, "x")

        assert result.outcome is Outcome.ABORTED
        assert result.failed_step == "snapshot"
        assert result.errors[-1].kind is ErrorKind.BACKUP_FAILED
        self.assert_untouched(host, backend)

    def test_nothing_to_capture_is_a_backup_failure(self, make_transaction, backend, host):
        backend.targets = []
        result = make_transaction().run(backend, "x")
        assert result.errors[-1].kind is ErrorKind.BACKUP_FAILED
        self.assert_untouched(host, backend)


class TestRollback:
    """Runs that changed something and put it back."""

    def test_apply_failure_restores_bytes(self, make_transaction, backend, host, journal):
        original = host.read_bytes(host.sysctl_conf)
        backend.apply_error = ApplyError("sysctl reload failed")
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ROLLED_BACK
        assert result.failed_step == "apply"
        assert result.rollback_succeeded is True
        assert host.read_bytes(host.sysctl_conf) == original
        assert backend.hooks == ["before", "after"]
        assert list_backups(host.backup_dir)[0].outcome == "rolled_back"
        assert journal.query(outcome=Outcome.ROLLED_BACK) == [result]

    def test_rollback_uses_the_store_that_took_the_snapshots(
        self, make_transaction, backend, host, runner
    ):
        stores = []

        def store_factory(operation):
            stores.append(BackupStore(host.backup_dir, operation, runner))
            return stores[-1]

        backend.apply_error = ApplyError("sysctl reload failed")
        result = make_transaction(store_factory=store_factory).run(backend, "x")

        assert len(stores) == 1
        assert result.backup_dir == stores[0].directory
        assert result.rollback_succeeded is True
        assert BackupStore.load(stores[0].directory).snapshots

    def test_hard_verify_failure_rolls_back(self, make_transaction, backend, host):
        original = host.read_bytes(host.sysctl_conf)
        backend.status = CheckStatus.FAIL
        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ROLLED_BACK
        assert result.failed_step == "verify"
        assert result.errors[-1].kind is ErrorKind.VERIFY_FAILED_HARD
        assert "scripted.state" in result.errors[-1].message
        assert host.read_bytes(host.sysctl_conf) == original

    def test_verify_exception_rolls_back(self, make_transaction, backend):
        backend.verify_error = RuntimeError("probe crashed")
        result = make_transaction().run(backend, "x")
        assert result.outcome is Outcome.ROLLED_BACK
        assert result.errors[-1].kind is ErrorKind.VERIFY_FAILED_HARD

    def test_failed_restore_is_reported(self, make_transaction, backend, host, runner):
        backend.targets = [
            SnapshotTarget.file(host.sysctl_conf),
            SnapshotTarget.query(
                "sysctl:net.core.somaxconn",
                ("sysctl", "-n", "net.core.somaxconn"),
                reapply=lambda out: [("sysctl", "-w", f"net.core.somaxconn={out.strip()}")],
            ),
        ]
        backend.apply_error = ApplyError("boom")
        runner.respond("sysctl", "-w", returncode=255, stderr="read-only file system")

        result = make_transaction().run(backend, "x")

        assert result.outcome is Outcome.ROLLED_BACK
        assert result.rollback_succeeded is False
        restore_errors = [e for e in result.errors if e.kind is ErrorKind.RESTORE_FAILED]
        assert len(restore_errors) == 1
        assert restore_errors[0].message.startswith("sysctl:net.core.somaxconn")
        # The file snapshot is still written back.
        assert "vm.swappiness = 10" in host.read(host.sysctl_conf)


def test_exporter_failure_does_not_break_run(make_transaction, backend, journal):
    class Broken:
        def export(self, result):
            raise OSError("disk full")

    journal.add_exporter(Broken())
    result = make_transaction().run(backend, "x")

    assert result.outcome is Outcome.COMMITTED
    assert len(journal) == 1
