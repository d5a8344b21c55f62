"""Command execution for internal tooling and user-defined steps.

Every command is spawned with an explicit environment built from the run's
``ExecutionContext``; the runner's own process environment is never
modified. While a command runs, the cancellation scope is polled and the
process is terminated once the scope is cancelled.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Sequence

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.errors import CommandError, RunCancelled

if TYPE_CHECKING:
    from ci_pipeline.execution.context import ExecutionContext
    from ci_pipeline.pipeline_config import Steps

logger = logging.getLogger(__name__)

# Grace period between terminate and kill for cancelled commands
TERMINATE_GRACE_SECONDS = 5.0

MASK = "****"


class CommandKind(str, Enum):
    GIT = "git"
    INSTALL_RUNTIME = "install-runtime"
    INSTALL_RUNNERS = "install-runners"
    PRE_RUN = "pre-run"
    POST_RUN = "post-run"
    DISCOVERY = "discovery"
    EXECUTION = "execution"
    COVERAGE = "coverage"


@dataclass
class CommandResult:
    """Outcome of a single spawned command."""

    kind: CommandKind
    argv: list[str]
    exit_code: int
    output: str = ""
    duration: float = 0.0


def mask_secrets(text: str, secrets: Mapping[str, str]) -> str:
    """Replace every secret value in *text* with a mask."""
    for value in secrets.values():
        if value:
            text = text.replace(value, MASK)
    return text


class CommandExecutor:
    """Spawns commands under a cancellation scope."""

    def __init__(self, poll_interval: float = 0.5) -> None:
        self.poll_interval = poll_interval

    def run_internal(
        self,
        scope: CancelScope,
        kind: CommandKind,
        argv: Sequence[str],
        cwd: Path | None = None,
        context: ExecutionContext | None = None,
        extra_env: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run one internal command given as an argv list.

        *secrets* are exported like *extra_env* and masked in the output.

        Raises:
            CommandError: If the command cannot start or exits non-zero.
            RunCancelled: If the scope is cancelled before or during the run.
        """
        secrets = secrets or {}
        env = _build_env(context, {**secrets, **(extra_env or {})})
        result = self._spawn(scope, kind, list(argv), cwd, env, secrets=secrets)
        if result.exit_code != 0:
            raise CommandError(
                f"{kind.value} command exited with status {result.exit_code}",
                exit_code=result.exit_code,
            )
        return result

    def run_user(
        self,
        scope: CancelScope,
        kind: CommandKind,
        steps: Steps,
        cwd: Path | None,
        context: ExecutionContext | None,
        secrets: Mapping[str, str],
    ) -> list[CommandResult]:
        """Run user-defined shell steps in order, stopping at the first failure.

        Repository secrets and the step's own env are exported to every step.
        Secret values are masked in logged output.

        Raises:
            CommandError: If a step exits non-zero.
            RunCancelled: If the scope is cancelled.
        """
        env = _build_env(context, {**secrets, **steps.env})
        results: list[CommandResult] = []
        for command in steps.commands:
            logger.info("Running %s step: %s", kind.value, mask_secrets(command, secrets))
            result = self._spawn(
                scope, kind, ["bash", "-c", command], cwd, env, secrets=secrets
            )
            results.append(result)
            if result.exit_code != 0:
                raise CommandError(
                    f"{kind.value} step exited with status {result.exit_code}",
                    exit_code=result.exit_code,
                )
        return results

    def _spawn(
        self,
        scope: CancelScope,
        kind: CommandKind,
        argv: list[str],
        cwd: Path | None,
        env: dict[str, str],
        secrets: Mapping[str, str],
    ) -> CommandResult:
        scope.raise_if_cancelled()
        start_time = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandError(f"executable not found: {argv[0]}") from e
        except OSError as e:
            raise CommandError(f"OS error running {kind.value} command: {e}") from e

        while True:
            try:
                output, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if scope.cancelled:
                    self._terminate(proc)
                    raise RunCancelled(f"{kind.value} command cancelled")

        # A command killed by the same signal that cancelled the run exits
        # non-zero before the next poll.
        if proc.returncode != 0 and scope.cancelled:
            raise RunCancelled(f"{kind.value} command cancelled")

        duration = time.monotonic() - start_time
        output = mask_secrets(output or "", secrets)
        for line in output.splitlines():
            logger.debug("[%s] %s", kind.value, line)
        return CommandResult(
            kind=kind,
            argv=argv,
            exit_code=proc.returncode,
            output=output,
            duration=duration,
        )

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.communicate(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()


def _build_env(
    context: ExecutionContext | None,
    extra: Mapping[str, str] | None,
) -> dict[str, str]:
    if context is None:
        env = dict(os.environ)
        env.update(extra or {})
        return env
    return context.as_env(extra)
