"""Blocklisted tests for a repository.

Combines the locators listed in the pipeline config with the ones the
report host keeps for the repository, and writes them to the blocklist file
the test runners read.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import httpx

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.errors import BlocklistError
from ci_pipeline.pipeline_config import PipelineConfig
from ci_pipeline.transport import request_with_deadline

logger = logging.getLogger(__name__)


class BlocklistService:
    """Resolves and writes blocklisted test locators."""

    def __init__(
        self,
        output_file: Path,
        endpoint: str | None = None,
        timeout: float = 45.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.output_file = output_file
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client

    def _fetch_remote(self, repo_id: str) -> list[str]:
        if not self.endpoint:
            return []
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            resp = request_with_deadline(
                client, "GET", self.endpoint, self.timeout,
                params={"repoID": repo_id},
            )
        except httpx.HTTPError as e:
            raise BlocklistError(f"error fetching blocklisted tests: {e}") from e
        finally:
            if self._client is None:
                client.close()
        if resp.status_code == 404:
            return []
        if resp.status_code != 200:
            raise BlocklistError(
                f"error fetching blocklisted tests, status code {resp.status_code}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise BlocklistError(f"invalid blocklist response: {e}") from e
        if not isinstance(data, list):
            raise BlocklistError("blocklist response must be a JSON list")
        return [str(item) for item in data]

    def resolve(
        self, scope: CancelScope, pipeline: PipelineConfig, repo_id: str
    ) -> list[str]:
        """Write the merged blocklist file and return its entries.

        Raises:
            BlocklistError: If the remote list cannot be fetched or the
                file cannot be written.
        """
        scope.raise_if_cancelled()
        merged = list(dict.fromkeys([*pipeline.blocklist, *self._fetch_remote(repo_id)]))
        try:
            self.output_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.output_file, "w") as f:
                json.dump(merged, f, indent=2)
                f.write("\n")
        except OSError as e:
            raise BlocklistError(f"error writing blocklist file: {e}") from e
        logger.info("Blocklisted %d tests", len(merged))
        return merged
