"""Runner configuration.

Reads the runner's JSON config file and merges it over built-in defaults.
``RUNNER_<KEY>`` environment variables override file values, and explicit
overrides (from the command line) win over both. The resulting object is
built once per run and passed to every component that needs a path, an
endpoint or a mode flag.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

# Fixed local endpoint the test runners post individual results to
RESULTS_ENDPOINT = "http://localhost:9876/results"

# Default configuration values
DEFAULT_CONFIG: dict[str, Any] = {
    "env": "dev",
    "payload_address": None,
    "report_host": "http://localhost:8080",
    "repo_dir": "/home/nucleus/repo",
    "coverage_parent_dir": "/home/nucleus/coverage",
    "blocklist_file": "/home/nucleus/blocklist.json",
    "oauth_secret_path": "/vault/secrets/oauth",
    "repo_secret_path": "/vault/secrets/reposecrets",
    "cache_dir": "/home/nucleus/cache",
    "nvm_dir": "/home/nucleus/.nvm",
    "install_runner_cmd": ["npm", "install", "--no-save", "tas-runner"],
    "discover_cmd": ["npx", "tas-runner", "discover"],
    "execute_cmd": ["npx", "tas-runner", "execute"],
    "coverage_cmd": ["npx", "tas-runner", "coverage", "merge"],
    "results_file": "/home/nucleus/results.json",
    "status_file": None,
    "http_timeout": 45.0,
    "command_poll_interval": 0.5,
    "coverage_mode": False,
    "discover_mode": False,
    "parse_mode": False,
}

_BOOL_KEYS = frozenset({"coverage_mode", "discover_mode", "parse_mode"})
_LIST_KEYS = frozenset({"install_runner_cmd", "discover_cmd", "execute_cmd", "coverage_cmd"})


def _coerce_env(key: str, raw: str) -> Any:
    """Convert an environment variable string to the type of *key*."""
    if key in _BOOL_KEYS:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if key in _LIST_KEYS:
        return raw.split()
    if key in ("http_timeout", "command_poll_interval"):
        return float(raw)
    return raw


class RunnerConfig:
    """Manages the runner's JSON configuration file."""

    def __init__(
        self,
        path: Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.path = path
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        if path is not None and path.exists():
            self._load()
        self._apply_environ(os.environ if environ is None else environ)
        if overrides:
            self._data.update(
                {k: v for k, v in overrides.items() if v is not None}
            )

    def _load(self) -> None:
        """Load config from the file."""
        assert self.path is not None
        try:
            data = json.loads(self.path.read_text())
            if isinstance(data, dict):
                self._data = {**DEFAULT_CONFIG, **data}
        except (json.JSONDecodeError, OSError):
            self._data = dict(DEFAULT_CONFIG)

    def _apply_environ(self, environ: Mapping[str, str]) -> None:
        for key in DEFAULT_CONFIG:
            raw = environ.get(f"RUNNER_{key.upper()}")
            if raw is not None:
                self._data[key] = _coerce_env(key, raw)

    @property
    def config(self) -> dict[str, Any]:
        """Get the full configuration dict."""
        return dict(self._data)

    @property
    def env(self) -> str:
        """Deployment environment tag (dev, stage, prod)."""
        return str(self._data["env"])

    @property
    def payload_address(self) -> str | None:
        return self._data.get("payload_address")

    @property
    def report_host(self) -> str:
        return str(self._data["report_host"]).rstrip("/")

    @property
    def report_endpoint(self) -> str:
        """Endpoint execution stats are posted to."""
        return f"{self.report_host}/report"

    @property
    def test_list_endpoint(self) -> str:
        """Endpoint test runners submit discovered test lists to."""
        return f"{self.report_host}/test-list"

    @property
    def status_endpoint(self) -> str:
        return f"{self.report_host}/task"

    @property
    def blocklist_endpoint(self) -> str:
        return f"{self.report_host}/blocktest"

    @property
    def results_endpoint(self) -> str:
        return RESULTS_ENDPOINT

    @property
    def repo_dir(self) -> Path:
        return Path(self._data["repo_dir"])

    @property
    def coverage_parent_dir(self) -> Path:
        return Path(self._data["coverage_parent_dir"])

    @property
    def blocklist_file(self) -> Path:
        return Path(self._data["blocklist_file"])

    @property
    def oauth_secret_path(self) -> Path:
        return Path(self._data["oauth_secret_path"])

    @property
    def repo_secret_path(self) -> Path:
        return Path(self._data["repo_secret_path"])

    @property
    def cache_dir(self) -> Path:
        return Path(self._data["cache_dir"])

    @property
    def nvm_dir(self) -> Path:
        return Path(self._data["nvm_dir"])

    @property
    def install_runner_cmd(self) -> list[str]:
        return list(self._data["install_runner_cmd"])

    @property
    def discover_cmd(self) -> list[str]:
        return list(self._data["discover_cmd"])

    @property
    def execute_cmd(self) -> list[str]:
        return list(self._data["execute_cmd"])

    @property
    def coverage_cmd(self) -> list[str]:
        return list(self._data["coverage_cmd"])

    @property
    def results_file(self) -> Path:
        return Path(self._data["results_file"])

    @property
    def status_file(self) -> Path | None:
        """Local status file; when set, status goes to disk instead of HTTP."""
        val = self._data.get("status_file")
        return Path(val) if val else None

    @property
    def http_timeout(self) -> float:
        """Upper bound in seconds for every reporting HTTP call."""
        return float(self._data["http_timeout"])

    @property
    def command_poll_interval(self) -> float:
        return float(self._data["command_poll_interval"])

    @property
    def coverage_mode(self) -> bool:
        return bool(self._data["coverage_mode"])

    @property
    def discover_mode(self) -> bool:
        return bool(self._data["discover_mode"])

    @property
    def parse_mode(self) -> bool:
        return bool(self._data["parse_mode"])
