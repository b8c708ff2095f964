"""Typed events emitted while a council session runs."""

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from eklavya.models import Synthesis


class EventType(str, Enum):
    ROUND_START = "round_start"
    SPEAKER_START = "speaker_start"
    TOKEN = "token"
    TURN_COMPLETE = "turn_complete"
    RETRY = "retry"
    ROUND_SUMMARY = "round_summary"
    SYNTHESIS = "synthesis"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    type: EventType
    speaker: str | None = None
    role: str | None = None
    round: int | None = None
    text: str | None = None
    content: str | None = None
    summary: str | None = None
    attempt: int | None = None
    record: Synthesis | None = None
    message: str | None = None
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping with unset fields dropped."""
        data: dict[str, Any] = {"type": self.type.value}
        for key in (
            "speaker", "role", "round", "text", "content", "summary", "attempt", "message", "session_id",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.record is not None:
            data["record"] = asdict(self.record)
        return data

    def to_sse(self) -> str:
        """Render as one server-sent-events ``data:`` frame."""
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


EventCallback = Callable[[StreamEvent], None]
