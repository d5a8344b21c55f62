"""Execution context for every command spawned during a run.

The ``EnvironmentBuilder`` derives the variables test runners and user
commands see (task and repository identifiers, coverage directory,
endpoints, parallelism) from the job descriptor and pipeline config. The
result is an immutable ``ExecutionContext`` that is passed explicitly to
each command instead of being written into the process environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.errors import CommandError, RuntimeInstallError
from ci_pipeline.execution.commands import CommandExecutor, CommandKind
from ci_pipeline.payload import JobDescriptor
from ci_pipeline.pipeline_config import PipelineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """Variables and PATH prefixes visible to spawned commands."""

    variables: Mapping[str, str] = field(default_factory=dict)
    path_prefixes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "variables", MappingProxyType(dict(self.variables))
        )

    def with_path_prefix(self, directory: str | Path) -> ExecutionContext:
        """Return a copy whose PATH starts with *directory*."""
        return ExecutionContext(
            variables=dict(self.variables),
            path_prefixes=(str(directory),) + self.path_prefixes,
        )

    def as_env(
        self,
        extra: Mapping[str, str] | None = None,
        base: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Build a full environment for a child process.

        Args:
            extra: Per-command variables (step env, secrets) layered on top.
            base: Base environment; defaults to the runner's own environment.
        """
        env = dict(os.environ if base is None else base)
        env.update(self.variables)
        if extra:
            env.update(extra)
        if self.path_prefixes:
            parts = list(self.path_prefixes)
            if env.get("PATH"):
                parts.append(env["PATH"])
            env["PATH"] = os.pathsep.join(parts)
        return env


def coverage_dir_for(config: RunnerConfig, descriptor: JobDescriptor) -> Path:
    """Per-commit coverage output directory."""
    return (
        config.coverage_parent_dir
        / descriptor.org_id
        / descriptor.repo_id
        / descriptor.target_commit
    )


def context_variables(
    config: RunnerConfig,
    descriptor: JobDescriptor,
    pipeline: PipelineConfig,
    coverage_dir: Path,
) -> dict[str, str]:
    """Variables exported to every command of the run."""
    return {
        "TASK_ID": descriptor.task_id,
        "ORG_ID": descriptor.org_id,
        "BUILD_ID": descriptor.build_id,
        "COMMIT_ID": descriptor.target_commit,
        "REPO_ID": descriptor.repo_id,
        "CODE_COVERAGE_DIR": str(coverage_dir),
        "BRANCH_NAME": descriptor.branch_name,
        "ENV": config.env,
        "TAS_PARALLELISM": str(pipeline.parallelism),
        "ENDPOINT_POST_TEST_LIST": config.test_list_endpoint,
        "ENDPOINT_POST_TEST_RESULTS": config.results_endpoint,
        "REPO_ROOT": str(config.repo_dir),
        "BLOCKLISTED_TESTS_FILE": str(config.blocklist_file),
    }


class EnvironmentBuilder:
    """Builds the run's execution context, installing a pinned runtime."""

    def __init__(self, config: RunnerConfig, commands: CommandExecutor) -> None:
        self.config = config
        self.commands = commands

    def build(
        self,
        scope: CancelScope,
        descriptor: JobDescriptor,
        pipeline: PipelineConfig,
        coverage_dir: Path,
    ) -> ExecutionContext:
        """Build the context, installing the pinned Node.js version if any.

        Raises:
            RuntimeInstallError: If installing the pinned version fails.
        """
        context = ExecutionContext(
            variables=context_variables(self.config, descriptor, pipeline, coverage_dir)
        )
        if pipeline.node_version is None:
            return context

        version = pipeline.node_version
        logger.info("Using user-defined node version: %s", version)
        # nvm refuses to source from a directory holding an .nvmrc, so run
        # outside the repository.
        script = f"source {self.config.nvm_dir / 'nvm.sh'} && nvm install {version}"
        try:
            self.commands.run_internal(
                scope,
                CommandKind.INSTALL_RUNTIME,
                ["bash", "-c", script],
                context=context,
            )
        except CommandError as e:
            raise RuntimeInstallError(
                f"unable to install node version {version}: {e}",
                exit_code=e.exit_code,
            ) from e
        return context.with_path_prefix(
            self.config.nvm_dir / "versions" / "node" / f"v{version}" / "bin"
        )
