"""HTTP transport for backend event streams."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from httpx_sse import aconnect_sse

from marginalia.exceptions import TransportError

if TYPE_CHECKING:
    from marginalia.streaming import StreamParseResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


@dataclass
class RequestConfig:
    """Everything needed to invoke one backend and read its stream.

    Built by a provider; the engine never looks inside ``body``.
    """

    url: str
    parse_event: Callable[[dict], StreamParseResult]
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None


async def iter_events(
    config: RequestConfig,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[dict]:
    """Send the request and yield each server-sent event's JSON payload.

    Keep-alive comments and data lines that are not JSON objects (such
    as ``[DONE]``) are skipped.

    Raises:
        TransportError: If the backend answers with status >= 400.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    try:
        async with aconnect_sse(
            client, config.method, config.url,
            headers=config.headers, json=config.body,
        ) as event_source:
            response = event_source.response
            if response.status_code >= 400:
                await response.aread()
                logger.error(
                    f"Request to {config.url} failed: {response.status_code}"
                )
                raise TransportError(response.status_code, response.text)

            async for sse in event_source.aiter_sse():
                if not sse.data or sse.data.strip() == "[DONE]":
                    continue
                try:
                    payload = json.loads(sse.data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping non-JSON event data: {sse.data!r}")
                    continue
                if isinstance(payload, dict):
                    yield payload
    finally:
        if owns_client:
            await client.aclose()
