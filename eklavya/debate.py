"""Council orchestration: moderator opening, sequential persona rounds, round
summaries, and one final synthesis.

Every generation call is awaited in schedule order. A round-r speaker sees the
moderator opening (round 1) or the summaries of earlier rounds (round 2+),
plus the turns already given earlier in round r.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from config.config_loader import ConfigError, GenerationConfig, RunOptions, TurnParams
from eklavya.adapter import BackendTarget, GenerationAdapter
from eklavya.events import EventCallback, EventType, StreamEvent
from eklavya.models import (
    OPENING_ROUND,
    Council,
    Message,
    MessageKind,
    Participant,
    Session,
    SessionMetadata,
    SessionStatus,
    Synthesis,
)
from eklavya.prompts import (
    MAX_NAME_LENGTH,
    MAX_ROLE_LENGTH,
    OpeningInput,
    PersonaTurnInput,
    PromptPair,
    SummaryInput,
    build_opening_prompt,
    build_persona_prompt,
    build_summary_prompt,
    contrarian_temperature,
    sanitize_field,
)
from eklavya.providers.base import ProviderAborted, ProviderError, StreamAborted
from eklavya.synthesis import degraded_synthesis, synthesize

logger = logging.getLogger(__name__)

MODERATOR = "Moderator"
MODERATOR_ROLE = "Council Moderator"
MODERATOR_KEY = "moderator"


class SessionState(str, Enum):
    OPENING = "opening"
    ROUND = "round"
    SUMMARY = "summary"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ContextWindow:
    opening: str | None
    prior_summaries: tuple[str, ...]
    live_turns: tuple[Message, ...]


class _Cancelled(Exception):
    pass


def expected_turns(rounds: int, participant_count: int) -> int:
    """Transcript length of a session that runs to completion."""
    return 1 + rounds * participant_count + (rounds - 1)


def context_window(transcript: list[Message], round_number: int) -> ContextWindow:
    """Select what a speaker in ``round_number`` gets to see.

    Round 1 gets the moderator opening; later rounds get one summary per
    earlier round instead of the raw transcript. Every round gets the turns
    already given in that round.
    """
    if round_number == 1:
        opening = next((m.content for m in transcript if m.kind == MessageKind.OPENING), None)
        summaries: tuple[str, ...] = ()
    else:
        opening = None
        summaries = tuple(
            m.content for m in transcript if m.kind == MessageKind.SUMMARY and m.round < round_number
        )
    live = tuple(m for m in transcript if m.kind == MessageKind.TURN and m.round == round_number)
    return ContextWindow(opening=opening, prior_summaries=summaries, live_turns=live)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CouncilRun:
    """Mutable state of one session. Never shared between sessions."""

    def __init__(
        self,
        question: str,
        council: Council,
        participants: list[Participant],
        adapter: GenerationAdapter,
        options: RunOptions,
        generation: GenerationConfig,
        on_event: EventCallback | None,
        cancel: asyncio.Event,
    ) -> None:
        self.question = question
        self.council = council
        self.participants = participants
        self.adapter = adapter
        self.options = options
        self.generation = generation
        self.on_event = on_event
        self.cancel = cancel

        self.session_id = str(uuid.uuid4())
        self.created_at = _now()
        self.rounds = options.rounds or council.rounds
        self.transcript: list[Message] = []
        self.state = SessionState.OPENING
        self.rounds_completed = 0
        self.provider_calls = 0
        self.retries = 0

        # Backend choice is a precondition: unavailable backends fail here,
        # before any call is made.
        self.moderator_target = adapter.resolve(options.provider)
        self.targets: dict[str, BackendTarget] = {
            p.id: adapter.resolve(p.provider or options.provider, p.model) for p in participants
        }

    def check_cancel(self) -> None:
        if self.cancel.is_set():
            raise _Cancelled()

    def emit(self, event: StreamEvent) -> None:
        if self.on_event:
            self.on_event(event)

    def _append(self, message: Message) -> None:
        self.transcript.append(message)

    def _retry_hook(self, speaker: str) -> Callable[[int, BaseException], None]:
        def on_retry(attempt: int, exc: BaseException) -> None:
            self.retries += 1
            message = exc.user_message() if isinstance(exc, ProviderError) else str(exc)
            self.emit(StreamEvent(EventType.RETRY, speaker=speaker, attempt=attempt, message=message))

        return on_retry

    async def _call(
        self,
        speaker: str,
        target: BackendTarget,
        prompt: PromptPair,
        params: TurnParams,
        stream: bool = False,
    ) -> str:
        self.check_cancel()

        def on_token(text: str) -> None:
            self.emit(StreamEvent(EventType.TOKEN, speaker=speaker, text=text))

        self.provider_calls += 1
        return await self.adapter.generate(
            target,
            prompt.system,
            prompt.user,
            max_tokens=params.max_tokens,
            temperature=params.temperature,
            on_token=on_token if stream else None,
            on_retry=self._retry_hook(speaker),
        )

    async def _opening(self) -> None:
        self.state = SessionState.OPENING
        prompt = build_opening_prompt(OpeningInput(
            question=self.question,
            council=self.council,
            participant_names=[p.label for p in self.participants],
        ))
        self.check_cancel()
        self.emit(StreamEvent(EventType.SPEAKER_START, speaker=MODERATOR, role=MODERATOR_ROLE, round=OPENING_ROUND))
        content = await self._call(
            MODERATOR, self.moderator_target, prompt, self.generation.opening, stream=True,
        )
        self._append(Message(
            speaker=MODERATOR,
            speaker_role=MODERATOR_ROLE,
            content=content,
            round=OPENING_ROUND,
            timestamp=_now(),
            kind=MessageKind.OPENING,
        ))
        self.emit(StreamEvent(EventType.TURN_COMPLETE, speaker=MODERATOR, round=OPENING_ROUND, content=content))

    async def _turn(self, participant: Participant, round_number: int) -> None:
        speaker = sanitize_field(participant.label, MAX_NAME_LENGTH)
        role = sanitize_field(participant.role, MAX_ROLE_LENGTH)
        window = context_window(self.transcript, round_number)
        prompt = build_persona_prompt(PersonaTurnInput(
            participant=participant,
            question=self.question,
            round_number=round_number,
            opening=window.opening,
            prior_summaries=window.prior_summaries,
            live_turns=window.live_turns,
            context=self.options.context,
        ))
        params = TurnParams(
            max_tokens=self.options.max_tokens_per_turn,
            temperature=contrarian_temperature(participant.contrarian_level),
        )

        self.check_cancel()
        self.emit(StreamEvent(EventType.SPEAKER_START, speaker=speaker, role=role, round=round_number))
        content = await self._call(speaker, self.targets[participant.id], prompt, params, stream=True)
        self._append(Message(
            speaker=speaker,
            speaker_role=role,
            content=content,
            round=round_number,
            timestamp=_now(),
            kind=MessageKind.TURN,
            participant_id=participant.id,
        ))
        self.emit(StreamEvent(EventType.TURN_COMPLETE, speaker=speaker, round=round_number, content=content))

    async def _summary(self, round_number: int) -> None:
        self.state = SessionState.SUMMARY
        turns = tuple(m for m in self.transcript if m.kind == MessageKind.TURN and m.round == round_number)
        prompt = build_summary_prompt(SummaryInput(question=self.question, round_number=round_number, turns=turns))
        content = await self._call(MODERATOR, self.moderator_target, prompt, self.generation.summary)
        self._append(Message(
            speaker=MODERATOR,
            speaker_role=MODERATOR_ROLE,
            content=content,
            round=round_number,
            timestamp=_now(),
            kind=MessageKind.SUMMARY,
        ))
        self.emit(StreamEvent(EventType.ROUND_SUMMARY, round=round_number, summary=content))

    async def _synthesis(self) -> Synthesis:
        self.state = SessionState.SYNTHESIZING
        self.check_cancel()
        self.provider_calls += 1
        return await synthesize(
            self.question,
            self.transcript,
            self.adapter,
            self.moderator_target,
            self.generation.synthesis,
            on_retry=self._retry_hook(MODERATOR),
        )

    async def _debate(self) -> None:
        await self._opening()
        for round_number in range(1, self.rounds + 1):
            self.state = SessionState.ROUND
            self.check_cancel()
            logger.info("Starting round %d/%d with %d participants", round_number, self.rounds, len(self.participants))
            self.emit(StreamEvent(EventType.ROUND_START, round=round_number))
            for participant in self.participants:
                await self._turn(participant, round_number)
            self.rounds_completed = round_number
            if round_number < self.rounds:
                await self._summary(round_number)

    def _stopped_early(self, reason: str) -> Synthesis:
        expected = expected_turns(self.rounds, len(self.participants))
        return degraded_synthesis(
            f"{reason} after {len(self.transcript)} of {expected} turns. "
            "No synthesis was produced; see the transcript for the debate so far."
        )

    def _failed(self, error: str) -> Synthesis:
        if self.state == SessionState.SYNTHESIZING:
            synthesis = degraded_synthesis(f"Synthesis failed ({error}). The full debate is in the transcript.")
        else:
            synthesis = self._stopped_early(f"Session stopped ({error})")
        self.state = SessionState.FAILED
        self._emit_quietly(StreamEvent(EventType.ERROR, message=error))
        return synthesis

    def _emit_quietly(self, event: StreamEvent) -> None:
        # the session is already decided; a failing consumer must not lose it
        try:
            self.emit(event)
        except Exception:
            logger.warning("Event consumer failed on %s event", event.type.value, exc_info=True)

    async def run(self) -> Session:
        start = time.monotonic()
        error: str | None = None

        try:
            await self._debate()
            synthesis = await self._synthesis()
            self.state = SessionState.COMPLETE
            self.emit(StreamEvent(EventType.SYNTHESIS, record=synthesis))
        except (_Cancelled, ProviderAborted):
            logger.info("Session %s cancelled during %s", self.session_id[:8], self.state.value)
            self.state = SessionState.CANCELLED
            synthesis = self._stopped_early("Session cancelled")
        except ProviderError as exc:
            error = exc.user_message()
            logger.warning("Session %s failed during %s: %s", self.session_id[:8], self.state.value, exc)
            synthesis = self._failed(error)
        except Exception as exc:
            logger.exception("Session %s crashed during %s", self.session_id[:8], self.state.value)
            error = f"internal error ({type(exc).__name__})"
            synthesis = self._failed(error)

        status = {
            SessionState.COMPLETE: SessionStatus.COMPLETE,
            SessionState.CANCELLED: SessionStatus.CANCELLED,
        }.get(self.state, SessionStatus.FAILED)

        metadata = SessionMetadata(
            status=status,
            duration_sec=round(time.monotonic() - start, 2),
            turn_count=len(self.transcript),
            expected_turns=expected_turns(self.rounds, len(self.participants)),
            rounds=self.rounds,
            rounds_completed=self.rounds_completed,
            persona_count=len(self.participants),
            provider_calls=self.provider_calls,
            retries=self.retries,
            model_versions={
                MODERATOR_KEY: self.moderator_target.label,
                **{pid: target.label for pid, target in self.targets.items()},
            },
            error=error,
        )
        logger.info(
            "Session %s %s: %d/%d turns, %d calls, %d retries, %.2fs",
            self.session_id[:8],
            status.value,
            metadata.turn_count,
            metadata.expected_turns,
            metadata.provider_calls,
            metadata.retries,
            metadata.duration_sec,
        )

        session = Session(
            id=self.session_id,
            question=self.question,
            council_id=self.council.id,
            council_name=self.council.name,
            transcript=list(self.transcript),
            synthesis=synthesis,
            created_at=self.created_at,
            metadata=metadata,
        )
        self._emit_quietly(StreamEvent(EventType.DONE, session_id=session.id))
        return session


async def run_council(
    question: str,
    council: Council,
    participants: list[Participant],
    adapter: GenerationAdapter,
    options: RunOptions,
    generation: GenerationConfig,
    on_event: EventCallback | None = None,
    cancel: asyncio.Event | None = None,
) -> Session:
    """Run one council session to completion, failure, or cancellation.

    Args:
        question: The question under debate.
        council: Council definition (focus, default round count).
        participants: Speakers in council order.
        adapter: Generation adapter shared across sessions.
        options: Validated run options; ``options.rounds`` overrides the council's.
        generation: Token budgets and temperatures for moderator calls.
        on_event: Receives every StreamEvent in schedule order.
        cancel: When set, no further generation call is started.

    Returns:
        The Session. On failure or cancellation it holds the partial
        transcript and a degraded synthesis; it is never discarded.

    Raises:
        ConfigError: No participants, or a backend that is not available.
            Raised before any generation call.
    """
    if not participants:
        raise ConfigError(f"Council '{council.id}' has no participants")
    run = _CouncilRun(
        question,
        council,
        participants,
        adapter,
        options,
        generation,
        on_event,
        cancel or asyncio.Event(),
    )
    return await run.run()


async def stream_council(
    question: str,
    council: Council,
    participants: list[Participant],
    adapter: GenerationAdapter,
    options: RunOptions,
    generation: GenerationConfig,
    cancel: asyncio.Event | None = None,
    on_complete: Callable[[Session], None] | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield a session's events as an append-only stream.

    Closing the generator early cancels the session: the in-flight streamed
    call is aborted at its next token and no further call is started.
    ``on_complete`` receives the finished (possibly partial) Session.
    """
    cancel = cancel or asyncio.Event()
    queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
    closed = False

    def on_event(event: StreamEvent) -> None:
        if closed:
            if event.type == EventType.TOKEN:
                raise StreamAborted()
            return
        queue.put_nowait(event)

    async def runner() -> Session:
        try:
            return await run_council(
                question, council, participants, adapter, options, generation,
                on_event=on_event, cancel=cancel,
            )
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(runner())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event
    finally:
        closed = True
        if not task.done():
            cancel.set()
        session = await task
        if on_complete:
            on_complete(session)
