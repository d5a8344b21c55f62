"""Delivery of execution stats to the report endpoint."""

from __future__ import annotations

import logging

import httpx

from ci_pipeline.errors import StatsDeliveryError
from ci_pipeline.services.testing import ExecutionResult
from ci_pipeline.transport import request_with_deadline

logger = logging.getLogger(__name__)

# Upper bound in seconds for the report request
DEFAULT_TIMEOUT = 45.0


class StatsReporter:
    """Posts an ExecutionResult as JSON in a single bounded request."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._client = client

    def send(self, result: ExecutionResult) -> None:
        """Deliver *result*.

        Raises:
            StatsDeliveryError: On transport failure or any non-200 response.
        """
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            resp = request_with_deadline(
                client, "POST", self.endpoint, self.timeout, json=result.to_dict()
            )
        except httpx.HTTPError as e:
            logger.error("error while sending reports %s", e)
            raise StatsDeliveryError("error while sending test reports") from e
        finally:
            if self._client is None:
                client.close()

        if resp.status_code != 200:
            logger.error(
                "error while sending reports, status code %d", resp.status_code
            )
            raise StatsDeliveryError("error while sending test reports")
        logger.debug("Test reports sent to %s", self.endpoint)
