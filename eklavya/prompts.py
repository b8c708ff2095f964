"""Prompt assembly for every turn type.

Each builder is a pure function from a typed input to a PromptPair. Persona
fields are sanitised before interpolation, and a persona's contrarian level
drives both its sampling temperature and its stance instruction.
"""

import re
from dataclasses import dataclass, replace
from enum import Enum

from eklavya.models import Council, Message, MessageKind, Participant

MAX_NAME_LENGTH = 100
MAX_ROLE_LENGTH = 150
MAX_STYLE_LENGTH = 500
MAX_BIAS_LENGTH = 300
MAX_EXPERTISE_LENGTH = 80
MAX_EXPERTISE_TAGS = 10
MAX_FOCUS_LENGTH = 300
MAX_CONTEXT_LENGTH = 2000

MIN_TEMPERATURE = 0.6
MAX_TEMPERATURE = 1.0

# C0/C1 controls except \t \n \r, plus zero-width and bidi override characters
_CONTROL_CHARS = re.compile(
    r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\u200b-\u200f\u2028-\u202e\u2060-\u2064\ufeff]"
)
_CODE_FENCE = re.compile(r"```")
_ROLE_HEADER = re.compile(
    r"^(?:[^\S\n]*(?:SYSTEM|USER|ASSISTANT|HUMAN)[^\S\n]*:)+",
    re.IGNORECASE | re.MULTILINE,
)

_WORD_RANGES = {
    "brief": "80–120",
    "medium": "150–200",
    "detailed": "200–280",
}

SAFETY_RULES = "\n".join([
    "IMPORTANT: You are an AI generating a debate perspective. Your output is a thinking tool, not authoritative advice.",
    "SAFETY RULES (non-negotiable):",
    "- Do NOT provide medical diagnoses, treatment recommendations, or drug dosage guidance.",
    "- Do NOT provide legal advice, financial advice, or investment recommendations presented as fact.",
    "- If the topic involves mental health, self-harm, suicidal ideation, or personal crisis: acknowledge the "
    "difficulty, state clearly that professional help is needed, and reference crisis resources (988 in the US; "
    "local emergency services). Do not act as a therapist or crisis counsellor.",
    "- If the topic involves domestic violence, abuse, or personal safety: direct the user to professional support "
    "immediately.",
    "- You may discuss these topics analytically (policy, research, frameworks) but must never substitute for "
    "qualified professional help.",
])

SYNTHESIS_SCHEMA = "\n".join([
    "{",
    '  "decisions": ["...", "..."],       // 2–4 clear recommendations or conclusions',
    '  "dissent": ["...", "..."],          // 1–3 minority views or unresolved disagreements',
    '  "open_questions": ["...", "..."],   // 1–3 questions the council did NOT resolve',
    '  "actions": ["...", "..."],          // 2–4 concrete next steps',
    '  "confidence": "low|medium|high",   // overall council confidence in its output',
    '  "summary": "..."                   // 2–3 sentence plain-English summary for a busy decision-maker',
    "}",
])


class Stance(str, Enum):
    CHALLENGE = "challenge aggressively"
    PUSH_BACK = "push back selectively"
    COMMON_GROUND = "seek common ground"


_STANCE_INSTRUCTIONS = {
    Stance.CHALLENGE: (
        "Challenge every assumption aggressively. Find the flaw or risk in every position stated. "
        "Do not agree unless you are genuinely compelled by evidence."
    ),
    Stance.PUSH_BACK: (
        "Push back selectively where you have genuine doubts. "
        "Do not accept claims at face value without scrutiny."
    ),
    Stance.COMMON_GROUND: (
        "Seek common ground and synthesis where the evidence supports it, "
        "but do not abandon your core position."
    ),
}


@dataclass(frozen=True)
class PromptPair:
    system: str
    user: str


@dataclass(frozen=True)
class ContrarianProfile:
    stance: Stance
    temperature: float
    instruction: str


@dataclass(frozen=True)
class OpeningInput:
    question: str
    council: Council
    participant_names: list[str]


@dataclass(frozen=True)
class PersonaTurnInput:
    participant: Participant
    question: str
    round_number: int
    opening: str | None = None
    prior_summaries: tuple[str, ...] = ()
    live_turns: tuple[Message, ...] = ()
    context: str | None = None


@dataclass(frozen=True)
class SummaryInput:
    question: str
    round_number: int
    turns: tuple[Message, ...]


@dataclass(frozen=True)
class SynthesisInput:
    question: str
    transcript: tuple[Message, ...]


# ─── Sanitisation ──────────────────────────────────────────────────────────────


def sanitize_field(value: str | None, max_length: int = 500) -> str:
    """Make a catalog-sourced string safe to interpolate into an instruction.

    Strips control characters, neutralises code fences, removes role headers
    at the start of any line, caps the length and trims. Idempotent.
    """
    if not value:
        return ""
    text = _CONTROL_CHARS.sub("", str(value))
    text = _CODE_FENCE.sub("'''", text)
    text = _ROLE_HEADER.sub("", text)
    return text[:max_length].strip()


def sanitize_participant(participant: Participant) -> Participant:
    return replace(
        participant,
        name=sanitize_field(participant.name, MAX_NAME_LENGTH),
        display_name=sanitize_field(participant.display_name, MAX_NAME_LENGTH) or None,
        role=sanitize_field(participant.role, MAX_ROLE_LENGTH),
        style=sanitize_field(participant.style, MAX_STYLE_LENGTH),
        bias=sanitize_field(participant.bias, MAX_BIAS_LENGTH) or None,
        expertise=tuple(
            tag
            for tag in (sanitize_field(e, MAX_EXPERTISE_LENGTH) for e in participant.expertise[:MAX_EXPERTISE_TAGS])
            if tag
        ),
    )


# ─── contrarian_level → temperature + instruction ─────────────────────────────


def contrarian_temperature(level: float) -> float:
    """Scale 0.6 (agreeable) → 1.0 (maximum contrarian)."""
    clamped = max(0.0, min(1.0, float(level)))
    return round(MIN_TEMPERATURE + clamped * (MAX_TEMPERATURE - MIN_TEMPERATURE), 4)


def contrarian_stance(level: float) -> Stance:
    if level >= 0.8:
        return Stance.CHALLENGE
    if level >= 0.5:
        return Stance.PUSH_BACK
    return Stance.COMMON_GROUND


def contrarian_profile(level: float) -> ContrarianProfile:
    stance = contrarian_stance(level)
    return ContrarianProfile(
        stance=stance,
        temperature=contrarian_temperature(level),
        instruction=_STANCE_INSTRUCTIONS[stance],
    )


# ─── Builders ────────────────────────────────────────────────────────────────


def build_opening_prompt(data: OpeningInput) -> PromptPair:
    system = "\n".join([
        "You are a neutral, incisive council moderator.",
        "Your job: open the session, set context, and frame the key questions.",
        "Be brief (60–80 words). Identify the 2–3 dimensions experts should address.",
        "Do NOT give opinions. Do NOT answer the question. Set the stage only.",
    ])
    focus = sanitize_field(data.council.focus, MAX_FOCUS_LENGTH) or "general analysis"
    names = [sanitize_field(n, MAX_NAME_LENGTH) for n in data.participant_names]
    user = "\n".join([
        f'Open this council session on: "{data.question}"',
        f"Council focus: {focus}",
        f"Experts attending: {', '.join(names)}.",
        "Frame the session in 2–3 sentences. Identify the key tensions or trade-offs to explore.",
    ])
    return PromptPair(system=system, user=user)


def build_persona_system_prompt(participant: Participant, context: str | None = None) -> str:
    persona = sanitize_participant(participant)
    profile = contrarian_profile(persona.contrarian_level)
    words = _WORD_RANGES.get(persona.verbosity, _WORD_RANGES["medium"])
    advising = sanitize_field(context, MAX_CONTEXT_LENGTH)

    lines = [
        f"You are a debate persona drawing on the expertise and style of: {persona.label}, {persona.role}.",
        "",
        f"YOUR EXPERTISE: {', '.join(persona.expertise)}.",
        f"YOUR COMMUNICATION STYLE: {persona.style}",
    ]
    if persona.bias:
        lines.append(f"YOUR KNOWN PERSPECTIVE: {persona.bias}")
    if advising:
        lines += [
            "",
            "PERSON YOU ARE ADVISING:",
            advising,
            "Speak directly to their specific situation, not a generic version of the question.",
        ]
    lines += [
        "",
        "COUNCIL RULES:",
        "- You are one voice in a multi-expert council debate.",
        "- Respond in character. Be specific and concrete. Avoid vague generalities.",
        f"- {profile.instruction}",
        "- Reference specific examples, failures, or patterns relevant to your expertise.",
        "- Do NOT simply agree with everything said. You are here to add distinct value.",
        f"- Keep response to {words} words.",
        "- Do NOT use markdown headers or bullet points. Speak naturally, as in a live debate.",
        '- Do NOT open with your own name or "As a [role]..." — just speak.',
        "",
        SAFETY_RULES,
    ]
    return "\n".join(lines)


def build_persona_user_prompt(data: PersonaTurnInput) -> str:
    label = sanitize_field(data.participant.label, MAX_NAME_LENGTH)
    parts: list[str] = [f"TOPIC: {data.question}", ""]

    if data.round_number == 1:
        if data.opening:
            parts += [f"MODERATOR FRAMING: {data.opening}", ""]
    elif data.prior_summaries:
        parts.append("PRIOR ROUND SUMMARIES:")
        parts += [f"Round {i}: {summary}" for i, summary in enumerate(data.prior_summaries, start=1)]
        parts.append("")

    if data.live_turns:
        parts.append("THIS ROUND SO FAR:")
        parts += [f"[{m.speaker}]: {m.content}" for m in data.live_turns]
        parts.append("")

    if data.round_number == 1:
        parts.append(f"ROUND 1: Give your core perspective on this topic from your area of expertise as {label}.")
    else:
        parts.append(
            f"ROUND {data.round_number}: Build on or challenge what has been said. "
            "Do not repeat points already made. Push the debate forward."
        )
    return "\n".join(parts)


def build_persona_prompt(data: PersonaTurnInput) -> PromptPair:
    return PromptPair(
        system=build_persona_system_prompt(data.participant, data.context),
        user=build_persona_user_prompt(data),
    )


def build_summary_prompt(data: SummaryInput) -> PromptPair:
    system = "\n".join([
        "You are a neutral council moderator.",
        "Summarise the key points from this debate round in 60–80 words.",
        "Capture: (1) key areas of agreement, (2) key disagreements, "
        "(3) one sharp focus question for the next round.",
        "Be factual. Do NOT add your own opinion.",
    ])
    user = "\n".join([
        f'Topic: "{data.question}"',
        "",
        f"Round {data.round_number} contributions:",
        "\n\n".join(f"[{m.speaker}]: {m.content}" for m in data.turns),
        "",
        f"Provide a compact summary. End with a sharp focus question for Round {data.round_number + 1}.",
    ])
    return PromptPair(system=system, user=user)


def _transcript_line(message: Message) -> str:
    if message.kind == MessageKind.SUMMARY:
        return f"[{message.speaker}, round {message.round} summary]: {message.content}"
    return f"[{message.speaker}]: {message.content}"


def build_synthesis_prompt(data: SynthesisInput) -> PromptPair:
    system = "\n".join([
        "You are a synthesis engine. You have observed a full expert council debate.",
        "Produce a structured synthesis. Be ruthlessly concise and specific.",
        "",
        "Output EXACTLY this JSON structure — nothing else:",
        SYNTHESIS_SCHEMA,
        "",
        "Output ONLY valid JSON. No markdown fences, no preamble, no explanation.",
        "",
        "IMPORTANT: These are AI-generated debate perspectives, not authoritative professional advice.",
        'SAFETY: If the topic involves mental health, self-harm, crisis, abuse, or medical/legal decisions, the '
        '"summary" field MUST include a sentence directing the user to seek qualified professional or emergency '
        "help. Include crisis line 988 (US) if mental health or crisis is involved.",
        "SAFETY: Never include specific medical dosages, diagnoses, investment recommendations, or legal opinions "
        "in the output.",
    ])
    user = "\n".join([
        f'Question debated: "{data.question}"',
        "",
        "Full transcript:",
        "\n\n".join(_transcript_line(m) for m in data.transcript),
    ])
    return PromptPair(system=system, user=user)
