"""Coverage merge for coverage-mode runs."""

from __future__ import annotations

import logging

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.execution.commands import CommandExecutor, CommandKind
from ci_pipeline.execution.context import ExecutionContext, coverage_dir_for
from ci_pipeline.payload import JobDescriptor

logger = logging.getLogger(__name__)


class CoverageService:
    """Merges per-task coverage for a commit and uploads the result."""

    def __init__(self, config: RunnerConfig, commands: CommandExecutor) -> None:
        self.config = config
        self.commands = commands

    def merge_and_upload(self, scope: CancelScope, descriptor: JobDescriptor) -> None:
        """Run the coverage merge command for the descriptor's commit.

        Raises:
            CommandError: If the merge command fails.
        """
        coverage_dir = coverage_dir_for(self.config, descriptor)
        context = ExecutionContext(variables={
            "ORG_ID": descriptor.org_id,
            "REPO_ID": descriptor.repo_id,
            "BUILD_ID": descriptor.build_id,
            "COMMIT_ID": descriptor.target_commit,
            "CODE_COVERAGE_DIR": str(coverage_dir),
            "ENV": self.config.env,
        })
        logger.info("Merging coverage in %s", coverage_dir)
        self.commands.run_internal(
            scope,
            CommandKind.COVERAGE,
            [*self.config.coverage_cmd, "--coverage-dir", str(coverage_dir)],
            context=context,
        )
