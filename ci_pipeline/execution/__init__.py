"""Run execution: command spawning and the execution context."""

from ci_pipeline.execution.commands import CommandExecutor, CommandKind, CommandResult
from ci_pipeline.execution.context import EnvironmentBuilder, ExecutionContext

__all__ = [
    "CommandExecutor",
    "CommandKind",
    "CommandResult",
    "EnvironmentBuilder",
    "ExecutionContext",
]
