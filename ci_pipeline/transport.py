"""HTTP requests bounded by a total deadline.

``httpx`` timeouts apply to each connect, read and write separately, so a
server that trickles its body can hold a request open indefinitely. Every
reporting call goes through ``request_with_deadline`` instead, which streams
the response and gives up once the overall budget is spent.
"""

from __future__ import annotations

import time
from typing import Any

import httpx


def request_with_deadline(
    client: httpx.Client,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request and read its body within *timeout* seconds in total.

    Args:
        client: Client to send with; its own per-operation timeouts still apply.
        method: HTTP method.
        url: Target URL.
        timeout: Overall budget in seconds, from send to last body byte.
        **kwargs: Passed through to ``client.stream`` (``json``, ``params``...).

    Returns:
        A fully read response carrying the status code and decoded body.

    Raises:
        httpx.TimeoutException: If the budget runs out.
        httpx.HTTPError: On any other transport failure.
    """
    deadline = time.monotonic() + timeout
    with client.stream(method, url, **kwargs) as resp:
        chunks: list[bytes] = []
        _check_deadline(deadline, timeout, resp.request)
        for chunk in resp.iter_bytes():
            chunks.append(chunk)
            _check_deadline(deadline, timeout, resp.request)
        return httpx.Response(
            resp.status_code,
            content=b"".join(chunks),
            request=resp.request,
        )


def _check_deadline(deadline: float, timeout: float, request: httpx.Request) -> None:
    if time.monotonic() > deadline:
        raise httpx.ReadTimeout(
            f"no complete response within {timeout:g}s", request=request
        )
