"""Task status lifecycle.

A run owns exactly one ``TaskStatusRecord``. The ``StatusReporter`` persists
it twice: once in ``running`` state before any phase starts, and once when the
run ends, after resolving the terminal status from the run's outcome.

Terminal status precedence on finalize:

1. a crash (an exception outside the pipeline error taxonomy) -> ``error``
   with the generic remark, never the raw exception text
2. the cancellation sentinel -> ``aborted`` with "Task aborted"
3. any other pipeline error -> ``error`` with the phase remark
4. no error -> whatever terminal status the phase runner already set
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import httpx

from ci_pipeline.errors import (
    ABORTED_REMARK,
    GENERIC_REMARK,
    PipelineError,
    RunCancelled,
    StatusPersistError,
)
from ci_pipeline.transport import request_with_deadline

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    ABORTED = "aborted"


class TaskType(str, Enum):
    DISCOVERY = "discover"
    EXECUTION = "execute"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class TaskStatusRecord:
    """Lifecycle record for the current task."""

    task_id: str
    build_id: str
    org_id: str
    repo_id: str
    kind: TaskType
    repo_slug: str = ""
    repo_link: str = ""
    commit_id: str = ""
    git_provider: str = ""
    status: TaskStatus = TaskStatus.RUNNING
    start_time: datetime.datetime | None = None
    end_time: datetime.datetime | None = None
    remark: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence; enums and times become strings."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


class StatusStore(Protocol):
    """Where status records are persisted."""

    def update(self, record: TaskStatusRecord) -> None: ...


class HttpStatusStore:
    """Persists the status record to the task endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 45.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def update(self, record: TaskStatusRecord) -> None:
        try:
            resp = request_with_deadline(
                self._client, "PUT", self.endpoint, self.timeout,
                json=record.to_dict(),
            )
        except httpx.HTTPError as e:
            raise StatusPersistError(f"error updating task status: {e}") from e
        if resp.status_code != 200:
            raise StatusPersistError(
                f"error updating task status, status code {resp.status_code}"
            )


class FileStatusStore:
    """Persists the status record to a local JSON file.

    Every update is also appended to the ``history`` list so local runs
    show both writes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def update(self, record: TaskStatusRecord) -> None:
        history: list[dict[str, Any]] = []
        if self.path.exists():
            try:
                history = json.loads(self.path.read_text()).get("history", [])
            except (json.JSONDecodeError, OSError, AttributeError):
                history = []
        entry = record.to_dict()
        history.append(entry)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump({"current": entry, "history": history}, f, indent=2)
                f.write("\n")
        except OSError as e:
            raise StatusPersistError(f"error writing status file: {e}") from e


class StatusReporter:
    """Owns the persistence of one run's status record."""

    def __init__(self, store: StatusStore) -> None:
        self.store = store
        self._started = False
        self._finalized = False

    def start(self, record: TaskStatusRecord) -> None:
        """Persist the record in running state.

        Raises:
            StatusPersistError: If the store rejects the record.
            RuntimeError: If called twice.
        """
        if self._started:
            raise RuntimeError("status record already started")
        record.status = TaskStatus.RUNNING
        if record.start_time is None:
            record.start_time = _now()
        self._started = True
        self.store.update(record)
        logger.info("Task %s marked %s", record.task_id, record.status.value)

    def finalize(
        self,
        record: TaskStatusRecord,
        outcome: BaseException | None,
        remark: str = "",
    ) -> TaskStatusRecord:
        """Resolve the terminal status and persist the record.

        Args:
            record: The record passed to ``start``.
            outcome: Exception that ended the run, or None on success.
            remark: Remark recorded by the failing phase, if any.

        Returns:
            The finalized record.

        Raises:
            StatusPersistError: If the store rejects the record.
            RuntimeError: If called before ``start`` or more than once.
        """
        if not self._started:
            raise RuntimeError("status record was never started")
        if self._finalized:
            raise RuntimeError("status record already finalized")
        self._finalized = True

        record.end_time = _now()
        resolve_status(record, outcome, remark)
        self.store.update(record)
        logger.info(
            "Task %s finalized as %s", record.task_id, record.status.value
        )
        return record


def resolve_status(
    record: TaskStatusRecord,
    outcome: BaseException | None,
    remark: str = "",
) -> None:
    """Apply the terminal status precedence to *record* in place."""
    if outcome is None:
        if record.status == TaskStatus.RUNNING:
            # The phase runner always sets a verdict on success.
            logger.warning("Run ended without a verdict; marking as error")
            record.status = TaskStatus.ERROR
            record.remark = GENERIC_REMARK
        return

    if isinstance(outcome, (RunCancelled, KeyboardInterrupt)):
        record.status = TaskStatus.ABORTED
        record.remark = ABORTED_REMARK
    elif isinstance(outcome, PipelineError):
        record.status = TaskStatus.ERROR
        record.remark = remark or GENERIC_REMARK
    else:
        record.status = TaskStatus.ERROR
        record.remark = GENERIC_REMARK
