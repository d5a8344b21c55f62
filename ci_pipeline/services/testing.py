"""Test discovery and execution collaborators.

Both delegate the actual work to the installed test runner command. The
discovery runner posts the discovered test list to the test-list endpoint
itself; the execution runner writes its outcomes to a JSON results file that
is read back into an ``ExecutionResult``.

Results file layout::

    {
      "tests": [
        {"test_id": "...", "name": "...", "locator": "...",
         "status": "passed", "duration_ms": 12, "failure_message": ""}
      ],
      "coverage": {...}
    }
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.errors import CommandError
from ci_pipeline.execution.commands import CommandExecutor, CommandKind
from ci_pipeline.execution.context import ExecutionContext
from ci_pipeline.payload import JobDescriptor
from ci_pipeline.pipeline_config import PipelineConfig

logger = logging.getLogger(__name__)

# Valid individual test outcome statuses
VALID_TEST_STATUSES = frozenset({"passed", "failed", "skipped", "blocklisted", "quarantined"})


@dataclass(frozen=True)
class TestOutcome:
    """Outcome of one individual test."""

    __test__ = False

    test_id: str
    name: str
    status: str
    locator: str = ""
    duration_ms: int = 0
    failure_message: str = ""


@dataclass(frozen=True)
class ExecutionResult:
    """All outcomes of an execution phase plus coverage metadata."""

    task_id: str
    build_id: str
    org_id: str
    repo_id: str
    commit_id: str
    outcomes: tuple[TestOutcome, ...] = ()
    coverage: dict[str, Any] = field(default_factory=dict)

    @property
    def has_failures(self) -> bool:
        """True if any individual test failed."""
        return any(o.status == "failed" for o in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcomes"] = [asdict(o) for o in self.outcomes]
        return data


def _parse_outcome(raw: Any) -> TestOutcome:
    if not isinstance(raw, dict):
        raise ValueError("test outcome must be an object")
    status = str(raw.get("status", ""))
    if status not in VALID_TEST_STATUSES:
        raise ValueError(f"unknown test status: {status!r}")
    return TestOutcome(
        test_id=str(raw.get("test_id", "")),
        name=str(raw.get("name", "")),
        status=status,
        locator=str(raw.get("locator", "")),
        duration_ms=int(raw.get("duration_ms", 0)),
        failure_message=str(raw.get("failure_message", "")),
    )


def load_results(path: Path, descriptor: JobDescriptor) -> ExecutionResult:
    """Read the runner's results file.

    Raises:
        CommandError: If the file is missing or malformed.
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise CommandError(f"test runner wrote no results to {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise CommandError(f"unreadable test results {path}: {e}") from e
    if not isinstance(data, dict):
        raise CommandError("test results must be a JSON object")
    try:
        outcomes = tuple(_parse_outcome(t) for t in data.get("tests") or [])
    except (TypeError, ValueError) as e:
        raise CommandError(f"invalid test results: {e}") from e
    coverage = data.get("coverage") or {}
    return ExecutionResult(
        task_id=descriptor.task_id,
        build_id=descriptor.build_id,
        org_id=descriptor.org_id,
        repo_id=descriptor.repo_id,
        commit_id=descriptor.target_commit,
        outcomes=outcomes,
        coverage=coverage if isinstance(coverage, dict) else {},
    )


def _pattern_args(pipeline: PipelineConfig) -> list[str]:
    args: list[str] = []
    for pattern in pipeline.patterns:
        args.extend(["--pattern", pattern])
    return args


class TestDiscoveryService:
    """Runs test discovery over a changed-file diff."""

    __test__ = False

    def __init__(
        self, command: list[str], repo_dir: Path, commands: CommandExecutor
    ) -> None:
        self.command = command
        self.repo_dir = repo_dir
        self.commands = commands

    def discover(
        self,
        scope: CancelScope,
        pipeline: PipelineConfig,
        descriptor: JobDescriptor,
        context: ExecutionContext,
        secrets: Mapping[str, str],
        diff: list[str],
    ) -> None:
        """Run the discovery runner.

        Raises:
            CommandError: If the runner fails.
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            diff_file = Path(tmpdir) / "diff.json"
            diff_file.write_text(json.dumps(diff))
            argv = [*self.command, "--diff-file", str(diff_file), *_pattern_args(pipeline)]
            self.commands.run_internal(
                scope, CommandKind.DISCOVERY, argv,
                cwd=self.repo_dir, context=context, secrets=secrets,
            )
        logger.info("Discovery completed for %s", descriptor.target_commit)


class TestExecutionService:
    """Runs the selected tests and collects their outcomes."""

    __test__ = False

    def __init__(
        self,
        command: list[str],
        repo_dir: Path,
        results_file: Path,
        commands: CommandExecutor,
    ) -> None:
        self.command = command
        self.repo_dir = repo_dir
        self.results_file = results_file
        self.commands = commands

    def run(
        self,
        scope: CancelScope,
        pipeline: PipelineConfig,
        descriptor: JobDescriptor,
        context: ExecutionContext,
        coverage_dir: Path,
        secrets: Mapping[str, str],
    ) -> ExecutionResult:
        """Run the execution runner and read its results.

        Raises:
            CommandError: If the runner fails or writes no valid results.
        """
        self.results_file.unlink(missing_ok=True)
        argv = [*self.command, "--results-file", str(self.results_file)]
        if descriptor.collect_coverage:
            argv.extend(["--coverage-dir", str(coverage_dir)])
        argv.extend(_pattern_args(pipeline))
        self.commands.run_internal(
            scope, CommandKind.EXECUTION, argv,
            cwd=self.repo_dir, context=context, secrets=secrets,
        )
        result = load_results(self.results_file, descriptor)
        failed = sum(1 for o in result.outcomes if o.status == "failed")
        logger.info(
            "Executed %d tests, %d failed", len(result.outcomes), failed
        )
        return result
