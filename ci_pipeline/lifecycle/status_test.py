"""Unit tests for the status lifecycle module."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import httpx
import pytest

from ci_pipeline.errors import (
    ABORTED_REMARK,
    GENERIC_REMARK,
    CloneError,
    RunCancelled,
    StatusPersistError,
)
from ci_pipeline.lifecycle.status import (
    FileStatusStore,
    HttpStatusStore,
    StatusReporter,
    TaskStatus,
    TaskStatusRecord,
    TaskType,
)


class RecordingStore:
    """Status store that keeps a snapshot of every update."""

    def __init__(self, fail_on: int | None = None) -> None:
        self.updates: list[dict] = []
        self.fail_on = fail_on

    def update(self, record: TaskStatusRecord) -> None:
        if self.fail_on is not None and len(self.updates) + 1 == self.fail_on:
            raise StatusPersistError("store down")
        self.updates.append(record.to_dict())


def _record(kind: TaskType = TaskType.EXECUTION) -> TaskStatusRecord:
    return TaskStatusRecord(
        task_id="task-1",
        build_id="build-1",
        org_id="org-1",
        repo_id="repo-1",
        kind=kind,
    )


class TestStatusReporterStart:
    """Tests for StatusReporter.start."""

    def test_start_persists_running(self):
        """start() writes the record in running state with a start time."""
        store = RecordingStore()
        reporter = StatusReporter(store)
        record = _record()
        reporter.start(record)

        assert len(store.updates) == 1
        assert store.updates[0]["status"] == "running"
        assert store.updates[0]["start_time"] is not None
        assert store.updates[0]["end_time"] is None

    def test_start_twice_raises(self):
        """A record is only started once."""
        reporter = StatusReporter(RecordingStore())
        record = _record()
        reporter.start(record)
        with pytest.raises(RuntimeError, match="already started"):
            reporter.start(record)

    def test_start_propagates_store_failure(self):
        """Store failures on start surface to the caller."""
        reporter = StatusReporter(RecordingStore(fail_on=1))
        with pytest.raises(StatusPersistError):
            reporter.start(_record())


class TestStatusReporterFinalize:
    """Tests for terminal status resolution."""

    def _finalize(self, outcome, remark="", preset=None):
        store = RecordingStore()
        reporter = StatusReporter(store)
        record = _record()
        reporter.start(record)
        if preset is not None:
            record.status = preset
        reporter.finalize(record, outcome, remark)
        return record, store

    def test_success_keeps_verdict(self):
        """With no error the phase verdict is kept."""
        record, store = self._finalize(None, preset=TaskStatus.FAILED)
        assert record.status == TaskStatus.FAILED
        assert record.remark == ""
        assert len(store.updates) == 2
        assert store.updates[1]["end_time"] is not None

    def test_success_without_verdict_is_error(self):
        """A run that never set a verdict does not stay running."""
        record, _ = self._finalize(None)
        assert record.status == TaskStatus.ERROR
        assert record.remark == GENERIC_REMARK

    def test_cancellation_aborts(self):
        """The cancellation sentinel yields aborted, overriding the remark."""
        record, _ = self._finalize(RunCancelled(), remark="Error occurred in pre-run steps")
        assert record.status == TaskStatus.ABORTED
        assert record.remark == ABORTED_REMARK

    def test_keyboard_interrupt_aborts(self):
        """An interrupt is treated as cancellation."""
        record, _ = self._finalize(KeyboardInterrupt())
        assert record.status == TaskStatus.ABORTED
        assert record.remark == ABORTED_REMARK

    def test_phase_error_uses_remark(self):
        """Pipeline errors carry the phase remark."""
        record, _ = self._finalize(
            CloneError("auth failed"), remark="Unable to clone repo: x"
        )
        assert record.status == TaskStatus.ERROR
        assert record.remark == "Unable to clone repo: x"

    def test_phase_error_without_remark_is_generic(self):
        """Pipeline errors with no remark fall back to the generic remark."""
        record, _ = self._finalize(CloneError("auth failed"))
        assert record.remark == GENERIC_REMARK

    def test_crash_is_generic(self):
        """Unexpected exceptions never leak their message."""
        record, _ = self._finalize(
            KeyError("secret internal detail"), remark="Error occurred in pre-run steps"
        )
        assert record.status == TaskStatus.ERROR
        assert record.remark == GENERIC_REMARK
        assert "secret" not in record.remark

    def test_finalize_twice_raises(self):
        """The terminal status is set exactly once."""
        store = RecordingStore()
        reporter = StatusReporter(store)
        record = _record()
        reporter.start(record)
        reporter.finalize(record, None)
        with pytest.raises(RuntimeError, match="already finalized"):
            reporter.finalize(record, None)
        assert len(store.updates) == 2

    def test_finalize_before_start_raises(self):
        """finalize() requires start()."""
        reporter = StatusReporter(RecordingStore())
        with pytest.raises(RuntimeError, match="never started"):
            reporter.finalize(_record(), None)


class TestTaskStatusRecord:
    """Tests for record serialization."""

    def test_to_dict(self):
        """Enums serialize to their string values."""
        data = _record(TaskType.DISCOVERY).to_dict()
        assert data["kind"] == "discover"
        assert data["status"] == "running"
        assert data["start_time"] is None
        json.dumps(data)


class TestFileStatusStore:
    """Tests for the local file store."""

    def test_update_writes_current_and_history(self):
        """Each update replaces current and appends history."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "sub" / "status.json"
            store = FileStatusStore(path)
            record = _record()
            store.update(record)
            record.status = TaskStatus.PASSED
            store.update(record)

            data = json.loads(path.read_text())
            assert data["current"]["status"] == "passed"
            assert [h["status"] for h in data["history"]] == ["running", "passed"]

    def test_corrupted_file_restarts_history(self):
        """A corrupted file is overwritten with fresh history."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "status.json"
            path.write_text("{ broken")
            FileStatusStore(path).update(_record())
            data = json.loads(path.read_text())
            assert len(data["history"]) == 1


class TestHttpStatusStore:
    """Tests for the HTTP store."""

    def test_put_record(self):
        """The record is PUT as JSON."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, json.loads(request.content)))
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        HttpStatusStore("http://neuron/task", client=client).update(_record())
        assert seen[0][0] == "PUT"
        assert seen[0][1]["task_id"] == "task-1"

    def test_non_200_raises(self):
        """A non-200 response is a StatusPersistError."""
        client = httpx.Client(
            transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )
        store = HttpStatusStore("http://neuron/task", client=client)
        with pytest.raises(StatusPersistError, match="500"):
            store.update(_record())

    def test_transport_error_raises(self):
        """Transport errors become StatusPersistError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        store = HttpStatusStore("http://neuron/task", client=client)
        with pytest.raises(StatusPersistError):
            store.update(_record())
