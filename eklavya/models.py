"""Pure dataclasses for the council debate pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Verbosity = Literal["brief", "medium", "detailed"]
Confidence = Literal["low", "medium", "high"]

VERBOSITY_LEVELS: tuple[str, ...] = ("brief", "medium", "detailed")
CONFIDENCE_LEVELS: tuple[str, ...] = ("low", "medium", "high")

OPENING_ROUND = 0
SYNTHESIS_ROUND = -1  # reserved marker, never used by a transcript message


class MessageKind(str, Enum):
    OPENING = "opening"
    TURN = "turn"
    SUMMARY = "summary"


class SessionStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    role: str
    expertise: tuple[str, ...]
    style: str
    contrarian_level: float        # 0.0 (agreeable) → 1.0 (challenges everything)
    verbosity: Verbosity = "medium"
    bias: str | None = None
    display_name: str | None = None
    provider: str | None = None    # backend override, e.g. "openai"
    model: str | None = None       # model override for that backend

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class Council:
    id: str
    name: str
    description: str
    persona_ids: tuple[str, ...]   # speaking order
    rounds: int
    focus: str | None = None


@dataclass
class ModelResponse:
    provider: str          # backend name: "anthropic", "openai", "google"
    model: str             # actual model string used
    content: str
    latency_sec: float
    token_count: int | None


@dataclass
class Message:
    speaker: str
    speaker_role: str
    content: str
    round: int             # 0 = opening, 1..N = debate rounds
    timestamp: str
    kind: MessageKind = MessageKind.TURN
    participant_id: str | None = None


@dataclass
class Synthesis:
    decisions: list[str] = field(default_factory=list)
    dissent: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    confidence: Confidence = "medium"
    summary: str = ""
    degraded: bool = False


@dataclass
class SessionMetadata:
    status: SessionStatus
    duration_sec: float
    turn_count: int
    expected_turns: int
    rounds: int
    rounds_completed: int
    persona_count: int
    provider_calls: int
    retries: int = 0
    model_versions: dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass
class Session:
    id: str
    question: str
    council_id: str
    council_name: str
    transcript: list[Message]
    synthesis: Synthesis
    created_at: str
    metadata: SessionMetadata
