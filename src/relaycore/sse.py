"""Server-Sent Events decoding for provider streams."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass
class ServerSentEvent:
    """One ``data:`` payload with the ``event:`` name in effect for it."""

    data: str
    event: str | None = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Decode an async iterator of text lines into server-sent events.

    Every ``data:`` line is dispatched on its own: both provider families
    put one complete JSON document per line, so nothing is gained by
    joining multi-line payloads, and streams that omit the blank
    separator line still decode.  An ``event:`` field applies to the data
    lines that follow it until the next blank line.  Comments and
    unknown fields are ignored.
    """
    event_name: str | None = None
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            event_name = None
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value
        elif field == "data":
            yield ServerSentEvent(data=value, event=event_name)
