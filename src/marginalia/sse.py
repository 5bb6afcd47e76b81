"""Server-Sent Events adapter for conversation events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

from pydantic import BaseModel

from marginalia.events import ConversationEvent


def _default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return str(obj)


async def sse_generator(
    event_stream: AsyncIterator[ConversationEvent],
) -> AsyncIterator[str]:
    """Convert a ConversationEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        data = json.dumps(asdict(event), default=_default)
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
