"""Error taxonomy for a pipeline run.

Every failure a collaborator is expected to produce derives from
``PipelineError``. Anything else that escapes a phase is treated as a crash
and never shown to the user verbatim.
"""

from __future__ import annotations

GENERIC_REMARK = (
    "Oops! Something went wrong on our side. "
    "Please retry, or contact support if the issue persists."
)
ABORTED_REMARK = "Task aborted"


class PipelineError(Exception):
    """Base class for expected, classified pipeline failures."""


class PayloadError(PipelineError):
    """The job payload could not be fetched or is invalid."""


class SecretError(PipelineError):
    """A secret file could not be read or parsed."""


class RunCancelled(PipelineError):
    """The run's cancellation scope was cancelled."""

    def __init__(self, message: str = "run cancelled") -> None:
        super().__init__(message)


class CloneError(PipelineError):
    """Cloning the repository (or its config file) failed."""


class DiffError(PipelineError):
    """Computing the changed-file diff failed."""


class ConfigError(PipelineError):
    """The pipeline config file is missing or invalid.

    The message is user-facing and ends up in the task remark.
    """


class CommandError(PipelineError):
    """An internal or user-defined command exited unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class RuntimeInstallError(CommandError):
    """Installing the pinned language runtime failed."""


class CacheError(PipelineError):
    """Downloading or uploading the build cache failed."""


class BlocklistError(PipelineError):
    """Resolving blocklisted tests failed."""


class StatsDeliveryError(PipelineError):
    """Execution stats could not be delivered to the report endpoint."""


class StatusPersistError(PipelineError):
    """The task status record could not be persisted."""
