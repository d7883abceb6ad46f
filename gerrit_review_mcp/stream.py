"""
Parsing of the agent's ``stream-json`` output.

The agent writes one JSON record per line. LineDecoder reassembles lines from
arbitrary byte chunks and classify() turns each line into a progress status
and transcript text.
"""
import codecs
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

TOOL_OUTPUT_LIMIT = 200

# Checked in order, first match wins
_TOOL_STATUSES: Tuple[Tuple[str, str], ...] = (
    ("gerrit_get_changed_files", "Fetching changed files..."),
    ("gerrit_get_change", "Fetching change metadata..."),
    ("gerrit_get_file_content", "Reading file contents..."),
    ("gerrit_get_draft_comments", "Checking existing drafts..."),
    ("gerrit_get_comments", "Reading comments..."),
    ("gerrit_post_draft_comment", "Posting review comment..."),
    ("gerrit_reply_to_comment", "Posting reply..."),
)

STATUS_STARTED = "Agent started"
STATUS_FINISHED = "Agent finished"


class LineDecoder:
    """Incremental UTF-8 line splitter.

    feed() returns the complete lines seen so far and keeps the unterminated
    tail, so a record split over several chunks comes out as one line.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> Optional[str]:
        """Return whatever is left after the final chunk, or None."""
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return rest or None

    @property
    def pending(self) -> str:
        return self._buffer


class EventType(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    OTHER = "other"

    @classmethod
    def from_tag(cls, tag: Any) -> "EventType":
        try:
            event_type = cls(tag)
        except ValueError:
            return cls.OTHER
        return event_type


def _first_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, list) or not content:
        return ""
    first = content[0]
    if isinstance(first, dict) and isinstance(first.get("text"), str):
        return first["text"]
    return ""


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    raw: str
    subtype: Optional[str] = None
    model: Optional[str] = None
    text: str = ""
    duration_ms: Optional[float] = None
    is_error: bool = False
    result: Optional[str] = None

    @classmethod
    def parse(cls, line: str) -> Optional["StreamEvent"]:
        """Build an event from one line, or None when the line is not a JSON object."""
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        return cls.from_record(data, line)

    @classmethod
    def from_record(cls, data: Dict[str, Any], raw: str) -> "StreamEvent":
        duration = data.get("duration_ms")
        result = data.get("result")
        return cls(
            type=EventType.from_tag(data.get("type")),
            raw=raw,
            subtype=data.get("subtype") if isinstance(data.get("subtype"), str) else None,
            model=data.get("model") if isinstance(data.get("model"), str) else None,
            text=_first_text(data.get("message")),
            duration_ms=duration if _is_finite_number(duration) else None,
            is_error=data.get("is_error") is True,
            result=result if isinstance(result, str) else None,
        )


@dataclass(frozen=True)
class Classification:
    progress: Optional[str] = None
    # Transcript fragments, appended verbatim in order
    output: Tuple[str, ...] = field(default_factory=tuple)


def status_from_text(text: str) -> str:
    """Map a mention of a Gerrit tool to a human readable status, or ''."""
    if not text or len(text) < 5:
        return ""
    for tool_name, status in _TOOL_STATUSES:
        if tool_name in text:
            return status
    return ""


def classify_event(event: StreamEvent) -> Classification:
    if event.type is EventType.SYSTEM:
        if event.subtype != "init":
            return Classification()
        output = (f"Agent model: {event.model}\n",) if event.model else ()
        return Classification(progress=STATUS_STARTED, output=output + ("\n",))

    elif event.type is EventType.ASSISTANT:
        return Classification(
            progress=status_from_text(event.text) or None,
            output=(event.text,) if event.text else (),
        )

    elif event.type in (EventType.TOOL_CALL, EventType.TOOL_RESULT):
        output = (f"[tool] {event.text[:TOOL_OUTPUT_LIMIT]}\n",) if event.text else ()
        progress = status_from_text(event.raw) if event.type is EventType.TOOL_CALL else ""
        return Classification(progress=progress or None, output=output)

    elif event.type is EventType.RESULT:
        output = ["\n"]
        if event.duration_ms:
            output.append(f"Agent finished ({round(event.duration_ms / 1000)}s)\n")
        if event.is_error and event.result:
            output.append(f"[error] {event.result}\n")
        return Classification(progress=STATUS_FINISHED, output=tuple(output))

    else:
        return Classification(output=(event.raw + "\n",))


def classify(line: str) -> Classification:
    """Classify one output line. Lines that are not JSON records pass through as text."""
    event = StreamEvent.parse(line)
    if event is None:
        return Classification(output=(line + "\n",))
    return classify_event(event)


class StatusTracker:
    """Suppresses a status identical to the one reported just before it."""

    def __init__(self):
        self.last_status = ""

    def update(self, status: Optional[str]) -> bool:
        if not status or status == self.last_status:
            return False
        self.last_status = status
        return True
