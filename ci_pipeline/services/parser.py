"""Parse-mode collaborator: validate a repository's pipeline config."""

from __future__ import annotations

import logging
from pathlib import Path

from ci_pipeline.errors import ConfigError
from ci_pipeline.payload import JobDescriptor
from ci_pipeline.pipeline_config import PipelineConfig, parse_config

logger = logging.getLogger(__name__)


class ParserService:
    """Parses the config file fetched for a parse-mode run."""

    def parse(self, path: Path, descriptor: JobDescriptor) -> PipelineConfig:
        """Parse and validate the config at *path*.

        Raises:
            ConfigError: If the file is unreadable or invalid.
        """
        try:
            text = path.read_text()
        except OSError as e:
            raise ConfigError(f"Unable to read config file `{path.name}`") from e
        config = parse_config(text, descriptor.event_type)
        logger.info(
            "Parsed %s for build %s: framework=%s parallelism=%d node=%s",
            descriptor.tas_file_name,
            descriptor.build_id,
            config.framework,
            config.parallelism,
            config.node_version or "default",
        )
        return config
