"""Job descriptor and the payload collaborator that produces it.

The payload is a JSON document describing one task: which repository and
commit to work on, which event triggered it and which mode to run in. It is
read either from a local file or from an ``http(s)`` URL.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.config import RunnerConfig
from ci_pipeline.errors import PayloadError
from ci_pipeline.transport import request_with_deadline

logger = logging.getLogger(__name__)

EVENT_PUSH = "push"
EVENT_PULL_REQUEST = "pull-request"
VALID_EVENTS = frozenset({EVENT_PUSH, EVENT_PULL_REQUEST})

DEFAULT_TAS_FILE = ".tas.yml"

_REQUIRED_FIELDS = (
    "task_id",
    "build_id",
    "org_id",
    "repo_id",
    "repo_link",
    "target_commit",
)


@dataclass(frozen=True)
class JobFlags:
    """Mode switches for a run."""

    coverage_mode: bool = False
    discover_mode: bool = False
    parse_mode: bool = False


@dataclass(frozen=True)
class JobDescriptor:
    """Immutable description of the task a run works on."""

    task_id: str
    build_id: str
    org_id: str
    repo_id: str
    repo_link: str
    target_commit: str
    repo_slug: str = ""
    git_provider: str = "github"
    base_commit: str | None = None
    event_type: str = EVENT_PUSH
    branch_name: str = ""
    tas_file_name: str = DEFAULT_TAS_FILE
    collect_coverage: bool = False
    flags: JobFlags = field(default_factory=JobFlags)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], flags: JobFlags | None = None
    ) -> JobDescriptor:
        """Build a descriptor from a parsed payload document.

        Args:
            data: Parsed payload JSON.
            flags: Mode flags to OR into the payload's own ``flags`` section.

        Raises:
            PayloadError: If a required field is missing.
        """
        missing = [name for name in _REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise PayloadError(f"payload missing fields: {', '.join(missing)}")

        raw_flags = data.get("flags") or {}
        extra = flags or JobFlags()
        merged = JobFlags(
            coverage_mode=bool(raw_flags.get("coverage_mode")) or extra.coverage_mode,
            discover_mode=bool(raw_flags.get("discover_mode")) or extra.discover_mode,
            parse_mode=bool(raw_flags.get("parse_mode")) or extra.parse_mode,
        )
        return cls(
            task_id=str(data["task_id"]),
            build_id=str(data["build_id"]),
            org_id=str(data["org_id"]),
            repo_id=str(data["repo_id"]),
            repo_link=str(data["repo_link"]),
            target_commit=str(data["target_commit"]),
            repo_slug=str(data.get("repo_slug", "")),
            git_provider=str(data.get("git_provider", "github")),
            base_commit=data.get("base_commit") or None,
            event_type=str(data.get("event_type", EVENT_PUSH)),
            branch_name=str(data.get("branch_name", "")),
            tas_file_name=str(data.get("tas_file_name") or DEFAULT_TAS_FILE),
            collect_coverage=bool(data.get("collect_coverage", False)),
            flags=merged,
        )


class PayloadManager:
    """Fetches and validates the job payload."""

    def __init__(
        self,
        config: RunnerConfig,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self._client = client

    def fetch(self, scope: CancelScope, address: str | None) -> JobDescriptor:
        """Read the payload from *address* and build a descriptor.

        Args:
            scope: Cancellation scope for the run.
            address: Local file path or ``http(s)`` URL.

        Raises:
            PayloadError: If the payload cannot be read or parsed.
        """
        scope.raise_if_cancelled()
        if not address:
            raise PayloadError("no payload address configured")

        if address.startswith(("http://", "https://")):
            data = self._fetch_remote(address)
        else:
            data = self._fetch_local(Path(address))

        if not isinstance(data, dict):
            raise PayloadError("payload is not a JSON object")

        flags = JobFlags(
            coverage_mode=self.config.coverage_mode,
            discover_mode=self.config.discover_mode,
            parse_mode=self.config.parse_mode,
        )
        return JobDescriptor.from_dict(data, flags)

    def _fetch_local(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except OSError as e:
            raise PayloadError(f"cannot read payload {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise PayloadError(f"invalid JSON in payload {path}: {e}") from e

    def _fetch_remote(self, url: str) -> Any:
        client = self._client or httpx.Client(timeout=self.config.http_timeout)
        try:
            resp = request_with_deadline(
                client, "GET", url, self.config.http_timeout
            )
        except httpx.HTTPError as e:
            raise PayloadError(f"cannot fetch payload from {url}: {e}") from e
        finally:
            if self._client is None:
                client.close()
        if resp.status_code != 200:
            raise PayloadError(
                f"payload endpoint {url} returned {resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise PayloadError(f"invalid JSON from {url}: {e}") from e

    def validate(self, scope: CancelScope, descriptor: JobDescriptor) -> None:
        """Check the descriptor is usable for a run.

        Raises:
            PayloadError: If the descriptor is inconsistent.
        """
        scope.raise_if_cancelled()
        if descriptor.event_type not in VALID_EVENTS:
            raise PayloadError(f"unknown event type: {descriptor.event_type}")
        if descriptor.event_type == EVENT_PULL_REQUEST and not descriptor.base_commit:
            raise PayloadError("pull-request payload has no base commit")
        if descriptor.flags.discover_mode and descriptor.flags.coverage_mode:
            raise PayloadError("discover and coverage modes are exclusive")
        logger.debug("Payload for current task: %s", descriptor)
