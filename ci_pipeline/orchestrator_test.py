"""Unit tests for the run orchestrator."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.errors import (
    ABORTED_REMARK,
    GENERIC_REMARK,
    CloneError,
    CommandError,
    ConfigError,
    PayloadError,
    RunCancelled,
    SecretError,
    StatusPersistError,
)
from ci_pipeline.lifecycle.status import StatusReporter, TaskStatus, TaskStatusRecord
from ci_pipeline.orchestrator import Orchestrator
from ci_pipeline.payload import JobDescriptor, JobFlags


class RecordingStore:
    def __init__(self, fail_on: int | None = None) -> None:
        self.updates: list[dict] = []
        self.fail_on = fail_on

    def update(self, record: TaskStatusRecord) -> None:
        if self.fail_on is not None and len(self.updates) + 1 == self.fail_on:
            raise StatusPersistError("store down")
        self.updates.append(record.to_dict())


class FakePayload:
    def __init__(
        self,
        descriptor: JobDescriptor,
        fetch_error: Exception | None = None,
        validate_error: Exception | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.fetch_error = fetch_error
        self.validate_error = validate_error

    def fetch(self, scope, address):
        if self.fetch_error:
            raise self.fetch_error
        return self.descriptor

    def validate(self, scope, descriptor):
        if self.validate_error:
            raise self.validate_error


class FakeSecrets:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def oauth_token(self):
        if self.error:
            raise self.error
        return "token"


class FakeRunner:
    """Phase runner fake: sets *verdict* or raises *error* with *remark*."""

    def __init__(
        self,
        verdict: TaskStatus | None = TaskStatus.PASSED,
        error: BaseException | None = None,
        remark: str = "",
        on_run=None,
    ) -> None:
        self.verdict = verdict
        self.error = error
        self.pending_remark = remark
        self.on_run = on_run
        self.remark = ""
        self.scope: CancelScope | None = None
        self.calls = 0

    def run(self, scope, descriptor, token, record):
        self.calls += 1
        self.scope = scope
        if self.on_run:
            self.on_run(scope)
        if self.error is not None:
            self.remark = self.pending_remark
            raise self.error
        if self.verdict is not None:
            record.status = self.verdict


class FakeGit:
    def __init__(self, path: Path, error: Exception | None = None) -> None:
        self.path = path
        self.error = error

    def clone_config_file(self, scope, descriptor, token):
        if self.error:
            raise self.error
        return self.path


class FakeParser:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.parsed: list[Path] = []

    def parse(self, path, descriptor):
        if self.error:
            raise self.error
        self.parsed.append(path)


class FakeCoverage:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    def merge_and_upload(self, scope, descriptor):
        self.calls += 1
        if self.error:
            raise self.error


def _descriptor(**flags) -> JobDescriptor:
    return JobDescriptor(
        task_id="task-1",
        build_id="build-1",
        org_id="org-1",
        repo_id="repo-1",
        repo_link="https://github.com/acme/widgets",
        target_commit="abc123",
        flags=JobFlags(**flags),
    )


def _orchestrator(
    runner: FakeRunner | None = None,
    store: RecordingStore | None = None,
    payload: FakePayload | None = None,
    secrets: FakeSecrets | None = None,
    git: FakeGit | None = None,
    parser: FakeParser | None = None,
    coverage: FakeCoverage | None = None,
) -> Orchestrator:
    return Orchestrator(
        config=RunnerConfig(overrides={"payload_address": "payload.json"}, environ={}),
        payload=payload or FakePayload(_descriptor()),
        secrets=secrets or FakeSecrets(),
        status=StatusReporter(store if store is not None else RecordingStore()),
        runner=runner or FakeRunner(),
        git=git or FakeGit(Path("/nonexistent/.tas.yml")),
        parser=parser or FakeParser(),
        coverage=coverage or FakeCoverage(),
    )


class TestFinalization:
    """Tests for the terminal status of a run."""

    def test_success_persists_twice(self):
        """A successful run persists running, then the runner's verdict."""
        store = RecordingStore()
        record = _orchestrator(store=store).run(CancelScope())

        assert [u["status"] for u in store.updates] == ["running", "passed"]
        assert record.status == TaskStatus.PASSED
        assert store.updates[1]["end_time"] is not None
        assert store.updates[1]["start_time"] == store.updates[0]["start_time"]

    def test_failed_verdict(self):
        store = RecordingStore()
        record = _orchestrator(
            runner=FakeRunner(verdict=TaskStatus.FAILED), store=store
        ).run(CancelScope())

        assert record.status == TaskStatus.FAILED
        assert record.remark == ""
        assert len(store.updates) == 2

    def test_phase_error_uses_remark(self):
        """A classified failure reports the failing phase's remark."""
        store = RecordingStore()
        runner = FakeRunner(
            error=CloneError("auth failed"),
            remark="Unable to clone repo: https://github.com/acme/widgets",
        )
        record = _orchestrator(runner=runner, store=store).run(CancelScope())

        assert record.status == TaskStatus.ERROR
        assert record.remark == "Unable to clone repo: https://github.com/acme/widgets"
        assert [u["status"] for u in store.updates] == ["running", "error"]

    def test_phase_error_without_remark_is_generic(self):
        runner = FakeRunner(error=CommandError("npm failed", 1))
        record = _orchestrator(runner=runner).run(CancelScope())

        assert record.status == TaskStatus.ERROR
        assert record.remark == GENERIC_REMARK

    def test_config_error_message_reaches_record(self):
        message = "Config file `.tas.yml` not found in repository"
        runner = FakeRunner(error=ConfigError(message), remark=message)
        record = _orchestrator(runner=runner).run(CancelScope())

        assert record.remark == message

    def test_crash_is_generic_error(self):
        """Unexpected exceptions never leak their text into the remark."""
        store = RecordingStore()
        runner = FakeRunner(error=ValueError("secret internal detail"))
        record = _orchestrator(runner=runner, store=store).run(CancelScope())

        assert record.status == TaskStatus.ERROR
        assert record.remark == GENERIC_REMARK
        assert len(store.updates) == 2
        assert "secret internal detail" not in str(store.updates)

    def test_cancellation_is_aborted(self):
        store = RecordingStore()
        runner = FakeRunner(
            error=RunCancelled(), remark="should not be used"
        )
        record = _orchestrator(runner=runner, store=store).run(CancelScope())

        assert record.status == TaskStatus.ABORTED
        assert record.remark == ABORTED_REMARK
        assert len(store.updates) == 2

    def test_parent_cancel_during_run_is_aborted(self):
        """Cancelling the parent scope mid-run aborts the task."""
        parent = CancelScope()

        def cancel_and_check(scope):
            parent.cancel()
            scope.raise_if_cancelled()

        runner = FakeRunner(on_run=cancel_and_check)
        record = _orchestrator(runner=runner).run(parent)

        assert record.status == TaskStatus.ABORTED

    def test_keyboard_interrupt_finalizes_then_reraises(self):
        store = RecordingStore()
        runner = FakeRunner(error=KeyboardInterrupt())
        with pytest.raises(KeyboardInterrupt):
            _orchestrator(runner=runner, store=store).run(CancelScope())

        assert [u["status"] for u in store.updates] == ["running", "aborted"]

    def test_no_verdict_is_error(self):
        record = _orchestrator(runner=FakeRunner(verdict=None)).run(CancelScope())

        assert record.status == TaskStatus.ERROR
        assert record.remark == GENERIC_REMARK

    def test_child_scope_cancelled_after_run(self):
        """The run's child scope is released when the run ends."""
        runner = FakeRunner()
        parent = CancelScope()
        _orchestrator(runner=runner).run(parent)

        assert runner.scope is not None
        assert runner.scope.cancelled
        assert not parent.cancelled

    def test_discover_mode_record_kind(self):
        store = RecordingStore()
        payload = FakePayload(_descriptor(discover_mode=True))
        _orchestrator(store=store, payload=payload).run(CancelScope())

        assert store.updates[0]["kind"] == "discover"

    def test_execution_record_kind(self):
        store = RecordingStore()
        _orchestrator(store=store).run(CancelScope())

        assert store.updates[0]["kind"] == "execute"
        assert store.updates[0]["commit_id"] == "abc123"


class TestStatusPersistence:
    """Tests for status store failures."""

    def test_start_failure_exits_before_runner(self):
        runner = FakeRunner()
        with pytest.raises(SystemExit) as exc:
            _orchestrator(runner=runner, store=RecordingStore(fail_on=1)).run(
                CancelScope()
            )

        assert exc.value.code == 1
        assert runner.calls == 0

    def test_finalize_failure_exits(self):
        with pytest.raises(SystemExit) as exc:
            _orchestrator(store=RecordingStore(fail_on=2)).run(CancelScope())

        assert exc.value.code == 1


class TestPreflight:
    """Tests for failures before a status record exists."""

    def test_payload_fetch_failure_exits(self):
        store = RecordingStore()
        payload = FakePayload(_descriptor(), fetch_error=PayloadError("missing"))
        with pytest.raises(SystemExit) as exc:
            _orchestrator(store=store, payload=payload).run(CancelScope())

        assert exc.value.code == 1
        assert store.updates == []

    def test_payload_validation_failure_exits(self):
        payload = FakePayload(
            _descriptor(), validate_error=PayloadError("unknown event type: tag")
        )
        with pytest.raises(SystemExit) as exc:
            _orchestrator(payload=payload).run(CancelScope())

        assert exc.value.code == 1

    def test_oauth_failure_exits_without_record(self):
        store = RecordingStore()
        runner = FakeRunner()
        with pytest.raises(SystemExit) as exc:
            _orchestrator(
                store=store, runner=runner, secrets=FakeSecrets(SecretError("no token"))
            ).run(CancelScope())

        assert exc.value.code == 1
        assert store.updates == []
        assert runner.calls == 0


class TestCoverageMode:
    """Tests for coverage-mode runs."""

    def test_coverage_success_exits_zero(self):
        store = RecordingStore()
        coverage = FakeCoverage()
        runner = FakeRunner()
        payload = FakePayload(_descriptor(coverage_mode=True))
        with pytest.raises(SystemExit) as exc:
            _orchestrator(
                store=store, coverage=coverage, runner=runner, payload=payload
            ).run(CancelScope())

        assert exc.value.code == 0
        assert coverage.calls == 1
        assert runner.calls == 0
        assert store.updates == []

    def test_coverage_runs_before_oauth(self):
        """Coverage mode needs no git credentials."""
        payload = FakePayload(_descriptor(coverage_mode=True))
        with pytest.raises(SystemExit) as exc:
            _orchestrator(
                payload=payload, secrets=FakeSecrets(SecretError("no token"))
            ).run(CancelScope())

        assert exc.value.code == 0

    def test_coverage_failure_exits_one(self):
        payload = FakePayload(_descriptor(coverage_mode=True))
        coverage = FakeCoverage(CommandError("merge failed", 1))
        with pytest.raises(SystemExit) as exc:
            _orchestrator(payload=payload, coverage=coverage).run(CancelScope())

        assert exc.value.code == 1


class TestParseMode:
    """Tests for parse-mode runs."""

    def test_parse_success_exits_zero(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / ".tas.yml"
            store = RecordingStore()
            parser = FakeParser()
            runner = FakeRunner()
            with pytest.raises(SystemExit) as exc:
                _orchestrator(
                    store=store,
                    runner=runner,
                    payload=FakePayload(_descriptor(parse_mode=True)),
                    git=FakeGit(path),
                    parser=parser,
                ).run(CancelScope())

            assert exc.value.code == 0
            assert parser.parsed == [path]
            assert runner.calls == 0
            assert store.updates == []

    def test_config_fetch_failure_exits_one(self):
        with pytest.raises(SystemExit) as exc:
            _orchestrator(
                payload=FakePayload(_descriptor(parse_mode=True)),
                git=FakeGit(Path(".tas.yml"), CloneError("fetch failed")),
            ).run(CancelScope())

        assert exc.value.code == 1

    def test_invalid_config_exits_one(self):
        with pytest.raises(SystemExit) as exc:
            _orchestrator(
                payload=FakePayload(_descriptor(parse_mode=True)),
                parser=FakeParser(ConfigError("`framework` is required")),
            ).run(CancelScope())

        assert exc.value.code == 1
