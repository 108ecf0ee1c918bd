# chatprojects/providers/sse.py
from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class RawEvent:
    """One logical SSE event: the joined ``data:`` payload and optional ``event:`` type."""

    data: str
    event_type: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL

    def json(self) -> Optional[Dict[str, Any]]:
        """Decode the payload as a JSON object; anything else yields None."""
        if self.is_done:
            return None
        try:
            obj = json.loads(self.data)
        except json.JSONDecodeError:
            return None
        return obj if isinstance(obj, dict) else None


class SSEFrameParser:
    """Reassemble SSE events from byte chunks split at arbitrary offsets.

    One instance per upstream request. ``feed`` returns every event completed by
    the chunk and keeps the unterminated tail for the next call.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[RawEvent]:
        if not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        # A lone trailing "\r" may be the first half of "\r\n"
        if self._buffer.endswith("\r"):
            pending, tail = self._buffer[:-1], "\r"
        else:
            pending, tail = self._buffer, ""
        pending = pending.replace("\r\n", "\n").replace("\r", "\n")
        frames = pending.split("\n\n")
        self._buffer = frames.pop() + tail
        events: List[RawEvent] = []
        for frame in frames:
            ev = self._parse_frame(frame)
            if ev is not None:
                events.append(ev)
        return events

    def flush(self) -> List[RawEvent]:
        """Parse whatever is left once the upstream body has ended."""
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self.reset()
        rest = rest.replace("\r\n", "\n").replace("\r", "\n")
        events: List[RawEvent] = []
        for frame in rest.split("\n\n"):
            ev = self._parse_frame(frame)
            if ev is not None:
                events.append(ev)
        return events

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _parse_frame(frame: str) -> Optional[RawEvent]:
        data_lines: List[str] = []
        event_type: Optional[str] = None
        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data_lines.append(value)
            elif field == "event":
                event_type = value.strip() or None
        if not data_lines:
            return None
        return RawEvent(data="\n".join(data_lines), event_type=event_type)
