"""Server-sent event encoding and incremental decoding.

Wire format: one ``data: <json>`` line per event followed by a blank line;
the literal payload ``[DONE]`` terminates a stream. JSON payloads are one of
``{"content": ...}``, ``{"phase": ..., ...}`` or ``{"error": ...}``.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from pydantic import ValidationError

from ..errors import StreamError
from ..models import ContentEvent, DoneEvent, ErrorEvent, PhaseEvent, StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def format_sse(event: StreamEvent) -> str:
    """Serialise one event as an SSE ``data:`` frame."""
    if isinstance(event, DoneEvent):
        return f"{DATA_PREFIX}{DONE_SENTINEL}\n\n"
    payload = event.model_dump(exclude={"kind"})
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

@dataclass
class DecodeDiagnostics:
    """Counters for the lenient parts of decoding."""

    frames: int = 0
    ignored_lines: int = 0
    malformed: int = 0
    unknown_shape: int = 0


def parse_payload(payload: str) -> StreamEvent | None:
    """Decode one ``data:`` payload into a typed event.

    Returns ``None`` for payloads that are valid JSON objects but match no
    known event shape. Raises ``ValueError`` for malformed JSON.
    """
    if payload == DONE_SENTINEL:
        return DoneEvent()
    data = json.loads(payload)
    if not isinstance(data, dict):
        return None
    try:
        if "error" in data:
            return ErrorEvent(error=str(data["error"]))
        if "phase" in data:
            return PhaseEvent.model_validate(data)
        if "content" in data:
            return ContentEvent(content=str(data["content"]))
    except ValidationError as e:
        raise ValueError(str(e)) from e
    return None


class SSEDecoder:
    """Incremental decoder; partial trailing lines are carried to the next chunk."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.diagnostics = DecodeDiagnostics()

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[StreamEvent] = []
        for line in lines:
            event = self._decode_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left in the buffer at end of stream."""
        rest, self._buffer = self._buffer + self._utf8.decode(b"", final=True), ""
        event = self._decode_line(rest.rstrip("\r")) if rest.strip() else None
        return [event] if event is not None else []

    def _decode_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            if line.strip():
                self.diagnostics.ignored_lines += 1
            return None
        self.diagnostics.frames += 1
        payload = line[len(DATA_PREFIX):].strip()
        try:
            event = parse_payload(payload)
        except ValueError as e:
            self.diagnostics.malformed += 1
            logger.debug("Dropping malformed SSE payload %r: %s", payload[:120], e)
            return None
        if event is None:
            self.diagnostics.unknown_shape += 1
            logger.debug("Dropping SSE payload of unknown shape: %r", payload[:120])
        return event


def iter_events(chunks: Iterable[str | bytes], decoder: SSEDecoder | None = None) -> Iterator[StreamEvent]:
    """Yield events from a chunked byte/text stream."""
    decoder = decoder or SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


def consume_stream(
    events: Iterable[StreamEvent],
    *,
    on_phase: Callable[[PhaseEvent], None] | None = None,
    on_content: Callable[[str], None] | None = None,
) -> str:
    """Accumulate content until ``[DONE]``; raise ``StreamError`` on an error event."""
    parts: list[str] = []
    for event in events:
        if isinstance(event, ContentEvent):
            parts.append(event.content)
            if on_content is not None:
                on_content(event.content)
        elif isinstance(event, PhaseEvent):
            if on_phase is not None:
                on_phase(event)
        elif isinstance(event, ErrorEvent):
            raise StreamError(event.error)
        elif isinstance(event, DoneEvent):
            break
    return "".join(parts)
