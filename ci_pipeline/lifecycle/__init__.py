"""Task status lifecycle: the status record and its reporter."""

from ci_pipeline.lifecycle.status import (
    FileStatusStore,
    HttpStatusStore,
    StatusReporter,
    StatusStore,
    TaskStatus,
    TaskStatusRecord,
    TaskType,
    resolve_status,
)

__all__ = [
    "FileStatusStore",
    "HttpStatusStore",
    "StatusReporter",
    "StatusStore",
    "TaskStatus",
    "TaskStatusRecord",
    "TaskType",
    "resolve_status",
]
