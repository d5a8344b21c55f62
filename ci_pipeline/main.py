"""Entry point for the CI pipeline runner.

Parses command-line arguments, builds the runner configuration and every
collaborator, then runs a single task. SIGTERM and SIGINT cancel the run
cooperatively so the task is still finalized as aborted.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.execution.commands import CommandExecutor
from ci_pipeline.execution.context import EnvironmentBuilder
from ci_pipeline.execution.phases import PhaseRunner
from ci_pipeline.lifecycle.status import (
    FileStatusStore,
    HttpStatusStore,
    StatusReporter,
    StatusStore,
    TaskStatus,
)
from ci_pipeline.orchestrator import Orchestrator
from ci_pipeline.payload import PayloadManager
from ci_pipeline.pipeline_config import ConfigLoader
from ci_pipeline.reporting.stats import StatsReporter
from ci_pipeline.services.blocklist import BlocklistService
from ci_pipeline.services.cache import LocalCacheStore
from ci_pipeline.services.coverage import CoverageService
from ci_pipeline.services.git import DiffManager, GitManager
from ci_pipeline.services.parser import ParserService
from ci_pipeline.services.secrets import SecretStore
from ci_pipeline.services.testing import TestDiscoveryService, TestExecutionService

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="CI pipeline runner - discovers or executes tests for one task"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the runner JSON config file",
    )
    parser.add_argument(
        "--payload",
        type=str,
        default=None,
        help="Payload file path or URL (overrides config payload_address)",
    )
    parser.add_argument(
        "--env",
        type=str,
        default=None,
        help="Deployment environment tag exported to commands",
    )
    parser.add_argument(
        "--report-host",
        type=str,
        default=None,
        help="Base URL of the reporting service",
    )
    parser.add_argument(
        "--status-file",
        type=Path,
        default=None,
        help="Write task status to this file instead of the reporting service",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--discover",
        action="store_true",
        default=False,
        help="Run test discovery over the changed files",
    )
    mode.add_argument(
        "--coverage",
        action="store_true",
        default=False,
        help="Merge and upload coverage for the commit, then exit",
    )
    mode.add_argument(
        "--parse",
        action="store_true",
        default=False,
        help="Parse and validate the pipeline config, then exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> RunnerConfig:
    """Build the runner config, letting CLI flags override file and env."""
    overrides = {
        "payload_address": args.payload,
        "env": args.env,
        "report_host": args.report_host,
        "status_file": str(args.status_file) if args.status_file else None,
        # Only a set flag overrides; an unset one must not clear the config.
        "discover_mode": True if args.discover else None,
        "coverage_mode": True if args.coverage else None,
        "parse_mode": True if args.parse else None,
    }
    return RunnerConfig(args.config, overrides=overrides)


def build_orchestrator(config: RunnerConfig) -> Orchestrator:
    """Wire the default collaborators for *config*."""
    commands = CommandExecutor(poll_interval=config.command_poll_interval)
    git = GitManager(config.repo_dir, commands)

    store: StatusStore
    if config.status_file is not None:
        store = FileStatusStore(config.status_file)
    else:
        store = HttpStatusStore(config.status_endpoint, timeout=config.http_timeout)

    secrets = SecretStore(config.oauth_secret_path, config.repo_secret_path)
    runner = PhaseRunner(
        config=config,
        commands=commands,
        git=git,
        diff=DiffManager(config.repo_dir, commands),
        config_loader=ConfigLoader(config.repo_dir),
        environment=EnvironmentBuilder(config, commands),
        blocklist=BlocklistService(
            config.blocklist_file,
            endpoint=None if config.status_file else config.blocklist_endpoint,
            timeout=config.http_timeout,
        ),
        secrets=secrets,
        cache=LocalCacheStore(config.cache_dir, config.repo_dir),
        discovery=TestDiscoveryService(config.discover_cmd, config.repo_dir, commands),
        execution=TestExecutionService(
            config.execute_cmd, config.repo_dir, config.results_file, commands
        ),
        stats=StatsReporter(config.report_endpoint, timeout=config.http_timeout),
    )
    return Orchestrator(
        config=config,
        payload=PayloadManager(config),
        secrets=secrets,
        status=StatusReporter(store),
        runner=runner,
        git=git,
        parser=ParserService(),
        coverage=CoverageService(config, commands),
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    config = config_from_args(args)
    orchestrator = build_orchestrator(config)

    root = CancelScope()

    def _cancel(signum: int, frame: object) -> None:
        print(f"Received signal {signum}, cancelling run", file=sys.stderr)
        root.cancel()

    previous = {
        sig: signal.signal(sig, _cancel) for sig in (signal.SIGTERM, signal.SIGINT)
    }
    try:
        record = orchestrator.run(root)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print(f"Task {record.task_id}: {record.status.value}")
    if record.remark:
        print(f"  {record.remark}")
    return 0 if record.status == TaskStatus.PASSED else 1


if __name__ == "__main__":
    sys.exit(main())
