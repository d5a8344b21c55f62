"""Run orchestration: the entry point for one task.

``Orchestrator.run`` fetches the job payload, handles the two early-exit
modes (coverage merge and config parsing), creates the task status record
and drives the phase runner. The status record is finalized on every exit
path once it exists; failures before that point terminate the process
because there is no record to report them into.
"""

from __future__ import annotations

import datetime
import logging
import sys
from typing import NoReturn

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.errors import PipelineError
from ci_pipeline.execution.phases import PhaseRunner
from ci_pipeline.lifecycle.status import (
    StatusReporter,
    TaskStatusRecord,
    TaskType,
)
from ci_pipeline.payload import JobDescriptor, PayloadManager
from ci_pipeline.services.coverage import CoverageService
from ci_pipeline.services.git import GitManager
from ci_pipeline.services.parser import ParserService
from ci_pipeline.services.secrets import SecretStore

logger = logging.getLogger(__name__)


def _fatal(message: str, *args: object, exc_info: bool = False) -> NoReturn:
    logger.critical(message, *args, exc_info=exc_info)
    sys.exit(1)


class Orchestrator:
    """Drives a single run from payload to finalized status."""

    def __init__(
        self,
        config: RunnerConfig,
        payload: PayloadManager,
        secrets: SecretStore,
        status: StatusReporter,
        runner: PhaseRunner,
        git: GitManager,
        parser: ParserService,
        coverage: CoverageService,
    ) -> None:
        self.config = config
        self.payload = payload
        self.secrets = secrets
        self.status = status
        self.runner = runner
        self.git = git
        self.parser = parser
        self.coverage = coverage

    def run(self, parent: CancelScope) -> TaskStatusRecord:
        """Run one task under a child of *parent*.

        Returns:
            The finalized status record.

        Raises:
            SystemExit: For pre-flight failures (code 1), completed coverage
                or parse runs (code 0), and status persistence failures
                (code 1).
            KeyboardInterrupt: Re-raised after the record is finalized.
        """
        start_time = datetime.datetime.now(datetime.timezone.utc)
        with parent.child() as scope:
            logger.debug("Starting pipeline")
            descriptor = self._load_descriptor(scope)

            if descriptor.flags.coverage_mode:
                self._run_coverage(scope, descriptor)

            try:
                token = self.secrets.oauth_token()
            except Exception as e:
                _fatal("failed to get oauth secret: %s", e)

            if descriptor.flags.parse_mode:
                self._run_parse(scope, descriptor, token)

            record = TaskStatusRecord(
                task_id=descriptor.task_id,
                build_id=descriptor.build_id,
                org_id=descriptor.org_id,
                repo_id=descriptor.repo_id,
                repo_slug=descriptor.repo_slug,
                repo_link=descriptor.repo_link,
                commit_id=descriptor.target_commit,
                git_provider=descriptor.git_provider,
                kind=(
                    TaskType.DISCOVERY
                    if descriptor.flags.discover_mode
                    else TaskType.EXECUTION
                ),
                start_time=start_time,
            )
            try:
                self.status.start(record)
            except PipelineError as e:
                _fatal("failed to update task status: %s", e)

            outcome: BaseException | None = None
            try:
                self.runner.run(scope, descriptor, token, record)
            except BaseException as e:
                outcome = e
                if not isinstance(e, PipelineError):
                    logger.error("Unexpected failure in pipeline: %r", e, exc_info=True)
                if not isinstance(e, Exception):
                    raise
            finally:
                self._finalize(record, outcome)
            return record

    def _load_descriptor(self, scope: CancelScope) -> JobDescriptor:
        try:
            descriptor = self.payload.fetch(scope, self.config.payload_address)
        except Exception as e:
            _fatal("error while fetching payload: %s", e)
        try:
            self.payload.validate(scope, descriptor)
        except Exception as e:
            _fatal("error while validating payload: %s", e)
        return descriptor

    def _run_coverage(self, scope: CancelScope, descriptor: JobDescriptor) -> NoReturn:
        try:
            self.coverage.merge_and_upload(scope, descriptor)
        except Exception as e:
            _fatal("error while merging and uploading coverage files: %s", e)
        logger.info("Coverage merged for commit %s", descriptor.target_commit)
        sys.exit(0)

    def _run_parse(
        self, scope: CancelScope, descriptor: JobDescriptor, token: str
    ) -> NoReturn:
        try:
            path = self.git.clone_config_file(scope, descriptor, token)
        except Exception as e:
            _fatal(
                "failed to clone config file for build %s: %s",
                descriptor.build_id, e,
            )
        try:
            self.parser.parse(path, descriptor)
        except Exception as e:
            _fatal(
                "error while parsing config file for build %s: %s",
                descriptor.build_id, e,
            )
        sys.exit(0)

    def _finalize(
        self, record: TaskStatusRecord, outcome: BaseException | None
    ) -> None:
        try:
            self.status.finalize(record, outcome, self.runner.remark)
        except PipelineError as e:
            _fatal("failed to update task status: %s", e)
