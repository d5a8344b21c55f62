"""Phase sequencing for a single run.

The runner executes the phases of a task strictly in order and stops at the
first failure:

    clone -> load config -> build environment -> coverage directory
    -> blocklist -> repo secrets -> cache download -> pre-run
    -> install runners -> discovery | execution -> cache upload

Each phase that fails with a ``PipelineError`` records a user-facing remark
(the first remark of the run wins) and the error is re-raised unchanged so
the orchestrator can classify it. Exceptions outside the pipeline error
taxonomy pass through untouched and are treated as crashes upstream.

On success the runner leaves the verdict on the status record: ``passed``
for discovery, ``passed`` or ``failed`` for execution depending on the
individual test outcomes.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping, Union

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.errors import GENERIC_REMARK, PipelineError, RunCancelled
from ci_pipeline.execution.commands import CommandExecutor, CommandKind
from ci_pipeline.execution.context import (
    EnvironmentBuilder,
    ExecutionContext,
    coverage_dir_for,
)
from ci_pipeline.lifecycle.status import TaskStatus, TaskStatusRecord
from ci_pipeline.payload import JobDescriptor
from ci_pipeline.pipeline_config import ConfigLoader, PipelineConfig
from ci_pipeline.reporting.stats import StatsReporter
from ci_pipeline.services.blocklist import BlocklistService
from ci_pipeline.services.cache import CacheStore, cache_key
from ci_pipeline.services.git import DiffManager, GitManager
from ci_pipeline.services.secrets import SecretStore
from ci_pipeline.services.testing import TestDiscoveryService, TestExecutionService

logger = logging.getLogger(__name__)

PHASE_CLONE = "clone"
PHASE_LOAD_CONFIG = "load-config"
PHASE_ENVIRONMENT = "environment"
PHASE_COVERAGE_DIR = "coverage-dir"
PHASE_BLOCKLIST = "blocklist"
PHASE_SECRETS = "secrets"
PHASE_CACHE_DOWNLOAD = "cache-download"
PHASE_PRE_RUN = "pre-run"
PHASE_INSTALL_RUNNERS = "install-runners"
PHASE_DIFF = "diff"
PHASE_DISCOVERY = "discovery"
PHASE_EXECUTION = "execution"
PHASE_STATS = "stats"
PHASE_POST_RUN = "post-run"
PHASE_CACHE_UPLOAD = "cache-upload"

PRE_RUN_REMARK = "Error occurred in pre-run steps"
POST_RUN_REMARK = "Error occurred in post-run steps"
DISCOVERY_REMARK = "Error occurred in discovering tests"
EXECUTION_REMARK = "Error occurred in executing tests"
STATS_REMARK = "Error occurred in sending test results"

_PROVIDER_NAMES = {
    "github": "GitHub",
    "gitlab": "GitLab",
    "bitbucket": "Bitbucket",
}

Remark = Union[str, Callable[[PipelineError], str]]


def diff_remark(provider: str) -> str:
    name = _PROVIDER_NAMES.get(provider, provider or "the git provider")
    return f"Error occurred in fetching diff from {name}"


class PhaseRunner:
    """Runs the ordered phases of one task and assigns its verdict."""

    def __init__(
        self,
        config: RunnerConfig,
        commands: CommandExecutor,
        git: GitManager,
        diff: DiffManager,
        config_loader: ConfigLoader,
        environment: EnvironmentBuilder,
        blocklist: BlocklistService,
        secrets: SecretStore,
        cache: CacheStore,
        discovery: TestDiscoveryService,
        execution: TestExecutionService,
        stats: StatsReporter,
    ) -> None:
        self.config = config
        self.commands = commands
        self.git = git
        self.diff = diff
        self.config_loader = config_loader
        self.environment = environment
        self.blocklist = blocklist
        self.secrets = secrets
        self.cache = cache
        self.discovery = discovery
        self.execution = execution
        self.stats = stats
        self.remark = ""
        self.completed_phases: list[str] = []

    def _set_remark(self, remark: str) -> None:
        if not self.remark:
            self.remark = remark

    @contextmanager
    def _phase(
        self, scope: CancelScope, name: str, remark: Remark = GENERIC_REMARK
    ) -> Iterator[None]:
        """Run one phase: check cancellation, attribute a remark on failure."""
        scope.raise_if_cancelled()
        logger.info("Phase %s started", name)
        try:
            yield
        except RunCancelled:
            logger.warning("Phase %s cancelled", name)
            raise
        except PipelineError as e:
            logger.error("Phase %s failed: %s", name, e)
            self._set_remark(remark(e) if callable(remark) else remark)
            raise
        self.completed_phases.append(name)
        logger.debug("Phase %s completed", name)

    def run(
        self,
        scope: CancelScope,
        descriptor: JobDescriptor,
        oauth_token: str | None,
        record: TaskStatusRecord,
    ) -> None:
        """Run every phase for *descriptor*, setting the verdict on *record*.

        Raises:
            PipelineError: The first phase failure, unmodified.
        """
        coverage_dir = coverage_dir_for(self.config, descriptor)
        repo_dir = self.config.repo_dir

        with self._phase(scope, PHASE_CLONE, f"Unable to clone repo: {descriptor.repo_link}"):
            self.git.clone(scope, descriptor, oauth_token)

        with self._phase(scope, PHASE_LOAD_CONFIG, str):
            pipeline = self.config_loader.load(
                descriptor.tas_file_name, descriptor.event_type
            )
        logger.info("Pipeline config: %s", pipeline)

        with self._phase(scope, PHASE_ENVIRONMENT):
            context = self.environment.build(scope, descriptor, pipeline, coverage_dir)

        if descriptor.collect_coverage:
            with self._phase(scope, PHASE_COVERAGE_DIR):
                _ensure_dir(coverage_dir)

        with self._phase(scope, PHASE_BLOCKLIST):
            self.blocklist.resolve(scope, pipeline, descriptor.repo_id)

        with self._phase(scope, PHASE_SECRETS):
            secrets = self.secrets.repo_secrets()

        key = cache_key(descriptor, pipeline)
        with self._phase(scope, PHASE_CACHE_DOWNLOAD):
            self.cache.download(scope, key)

        if pipeline.prerun is not None:
            with self._phase(scope, PHASE_PRE_RUN, PRE_RUN_REMARK):
                self.commands.run_user(
                    scope, CommandKind.PRE_RUN, pipeline.prerun,
                    repo_dir, context, secrets,
                )

        with self._phase(scope, PHASE_INSTALL_RUNNERS):
            self.commands.run_internal(
                scope, CommandKind.INSTALL_RUNNERS, self.config.install_runner_cmd,
                cwd=repo_dir, context=context,
            )

        if descriptor.flags.discover_mode:
            self._discover(scope, descriptor, pipeline, context, secrets, record)
        else:
            self._execute(
                scope, descriptor, pipeline, context, coverage_dir, secrets, record
            )

        with self._phase(scope, PHASE_CACHE_UPLOAD):
            self.cache.upload(scope, key, pipeline.cache.paths)
        logger.info("Completed pipeline")

    def _discover(
        self,
        scope: CancelScope,
        descriptor: JobDescriptor,
        pipeline: PipelineConfig,
        context: ExecutionContext,
        secrets: Mapping[str, str],
        record: TaskStatusRecord,
    ) -> None:
        with self._phase(scope, PHASE_DIFF, diff_remark(descriptor.git_provider)):
            changed = self.diff.changed_files(scope, descriptor)

        with self._phase(scope, PHASE_DISCOVERY, DISCOVERY_REMARK):
            self.discovery.discover(
                scope, pipeline, descriptor, context, secrets, changed
            )
        record.status = TaskStatus.PASSED

    def _execute(
        self,
        scope: CancelScope,
        descriptor: JobDescriptor,
        pipeline: PipelineConfig,
        context: ExecutionContext,
        coverage_dir: Path,
        secrets: Mapping[str, str],
        record: TaskStatusRecord,
    ) -> None:
        with self._phase(scope, PHASE_EXECUTION, EXECUTION_REMARK):
            result = self.execution.run(
                scope, pipeline, descriptor, context, coverage_dir, secrets
            )

        with self._phase(scope, PHASE_STATS, STATS_REMARK):
            self.stats.send(result)

        record.status = TaskStatus.FAILED if result.has_failures else TaskStatus.PASSED

        if pipeline.postrun is not None:
            with self._phase(scope, PHASE_POST_RUN, POST_RUN_REMARK):
                self.commands.run_user(
                    scope, CommandKind.POST_RUN, pipeline.postrun,
                    self.config.repo_dir, context, secrets,
                )


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PipelineError(f"failed to create directory {path}: {e}") from e
