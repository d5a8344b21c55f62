"""Repository pipeline configuration (the ``.tas.yml`` file).

Parses the YAML file a repository ships to describe how its tests are run:
framework, parallelism, an optional Node.js version pin, pre-run and post-run
steps, the build cache settings, blocklisted tests and the test file
patterns for each event type.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ci_pipeline.errors import ConfigError
from ci_pipeline.payload import EVENT_PULL_REQUEST

VALID_FRAMEWORKS = frozenset({"jest", "mocha", "jasmine"})

DEFAULT_CACHE_KEY = "default"

_VERSION_RE = re.compile(r"^v?(\d+)(\.\d+){0,2}$")


@dataclass(frozen=True)
class Steps:
    """User-defined commands run before or after the tests."""

    commands: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSpec:
    """Build cache key template and the paths to persist."""

    key: str = DEFAULT_CACHE_KEY
    paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineConfig:
    """Validated pipeline configuration for one run."""

    framework: str
    parallelism: int = 1
    node_version: str | None = None
    prerun: Steps | None = None
    postrun: Steps | None = None
    cache: CacheSpec = field(default_factory=CacheSpec)
    blocklist: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()


def _parse_steps(raw: Any, name: str) -> Steps | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError(f"`{name}` must be a mapping with a `command` list")
    commands = raw.get("command") or []
    if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
        raise ConfigError(f"`{name}.command` must be a list of strings")
    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"`{name}.env` must be a mapping")
    if not commands:
        return None
    return Steps(
        commands=tuple(commands),
        env={str(k): str(v) for k, v in env.items()},
    )


def _parse_cache(raw: Any) -> CacheSpec:
    if raw is None:
        return CacheSpec()
    if not isinstance(raw, dict):
        raise ConfigError("`cache` must be a mapping with `key` and `paths`")
    key = str(raw.get("key") or DEFAULT_CACHE_KEY)
    if key.startswith("/") or ".." in key.split("/"):
        raise ConfigError(f"invalid cache key: {key}")
    paths = raw.get("paths") or []
    if not isinstance(paths, list):
        raise ConfigError("`cache.paths` must be a list")
    paths = [str(p) for p in paths]
    for path in paths:
        if path.startswith("/") or ".." in path.split("/"):
            raise ConfigError(f"invalid cache path: {path}")
    return CacheSpec(key=key, paths=tuple(paths))


def _parse_patterns(raw: Any, name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = raw.get("pattern") or []
    if not isinstance(raw, list):
        raise ConfigError(f"`{name}.pattern` must be a list")
    return tuple(str(p) for p in raw)


def parse_config(text: str, event_type: str) -> PipelineConfig:
    """Parse and validate pipeline config YAML.

    Args:
        text: YAML document.
        event_type: Triggering event; selects ``premerge`` patterns for
            pull requests and ``postmerge`` patterns otherwise.

    Returns:
        The validated PipelineConfig.

    Raises:
        ConfigError: With a user-facing message if the document is invalid.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("Config file must be a YAML mapping")

    framework = data.get("framework")
    if framework not in VALID_FRAMEWORKS:
        raise ConfigError(
            f"Unsupported framework `{framework}`; "
            f"expected one of: {', '.join(sorted(VALID_FRAMEWORKS))}"
        )

    parallelism = data.get("parallelism", 1)
    if not isinstance(parallelism, int) or isinstance(parallelism, bool) or parallelism < 1:
        raise ConfigError("`parallelism` must be a positive integer")

    node_version = data.get("nodeVersion")
    # YAML reads an unquoted 16.10 as the float 16.1
    if isinstance(node_version, float):
        raise ConfigError(
            "`nodeVersion` must be a quoted string, e.g. nodeVersion: \"16.10\""
        )
    if node_version is not None:
        node_version = str(node_version).strip()
        if not _VERSION_RE.match(node_version):
            raise ConfigError(f"Invalid `nodeVersion`: {node_version}")
        node_version = node_version.lstrip("v")

    blocklist = data.get("blocklist") or []
    if not isinstance(blocklist, list):
        raise ConfigError("`blocklist` must be a list of test locators")

    section = "premerge" if event_type == EVENT_PULL_REQUEST else "postmerge"

    return PipelineConfig(
        framework=framework,
        parallelism=parallelism,
        node_version=node_version,
        prerun=_parse_steps(data.get("preRun"), "preRun"),
        postrun=_parse_steps(data.get("postRun"), "postRun"),
        cache=_parse_cache(data.get("cache")),
        blocklist=tuple(str(b) for b in blocklist),
        patterns=_parse_patterns(data.get(section), section),
    )


class ConfigLoader:
    """Loads the pipeline config file from the cloned repository."""

    def __init__(self, repo_dir: Path) -> None:
        self.repo_dir = repo_dir

    def load(self, file_name: str, event_type: str) -> PipelineConfig:
        path = self.repo_dir / file_name
        try:
            text = path.read_text()
        except FileNotFoundError as e:
            raise ConfigError(f"Config file `{file_name}` not found in repository") from e
        except OSError as e:
            raise ConfigError(f"Unable to read config file `{file_name}`") from e
        return parse_config(text, event_type)
