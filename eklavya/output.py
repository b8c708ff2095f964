"""Rich console rendering of council events and markdown export of sessions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from eklavya.events import EventType, StreamEvent
from eklavya.models import OPENING_ROUND, SYNTHESIS_ROUND, Session, SessionStatus, Synthesis

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_CONFIDENCE_STYLES = {"high": "bold green", "medium": "bold yellow", "low": "bold red"}

DISCLAIMER = "\n".join([
    "---",
    "## Important Disclaimer",
    "",
    "**Eklavya Council** generates AI-simulated debate perspectives. All personas are AI-generated "
    "archetypes. They are not real people and do not represent the views of any individual or organisation.",
    "",
    "This output is a **thinking tool only**. It is **not** professional, legal, medical, financial, "
    "psychological, or crisis advice of any kind.",
    "",
    "**You must not rely on this output as a substitute for:**",
    "- Qualified medical, mental health, or therapeutic professional guidance",
    "- Legal counsel or regulated financial advice",
    "- Emergency services or crisis intervention",
    "",
    "**If you or someone you know is in crisis:**",
    "- **988 Suicide & Crisis Lifeline**: call or text **988** (US, available 24/7)",
    "- **Crisis Text Line**: text **HOME** to **741741** (US, UK, CA, IE)",
    "- **International resources**: findahelpline.com",
    "- **Emergency services**: call your local emergency number (911 / 999 / 112)",
    "",
    "User-defined persona content is the responsibility of the user who created it.",
])


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


class ConsoleRenderer:
    """Prints a live session: speaker headers, streamed tokens, round banners.

    With ``stream=False`` tokens are ignored and each turn is printed whole
    when it completes.
    """

    def __init__(self, out: Console | None = None, stream: bool = True) -> None:
        self._console = out or console
        self._stream = stream
        self._mid_line = False

    def _end_line(self) -> None:
        if self._mid_line:
            self._console.print()
            self._mid_line = False

    def __call__(self, event: StreamEvent) -> None:
        if event.type == EventType.ROUND_START:
            self._end_line()
            self._console.print(Rule(f"[bold cyan]Round {event.round}[/bold cyan]"))
        elif event.type == EventType.SPEAKER_START:
            self._end_line()
            header = Text(event.speaker or "", style="bold magenta")
            if event.role:
                header.append(f"  {event.role}", style="dim")
            self._console.print()
            self._console.print(header)
        elif event.type == EventType.TOKEN:
            if self._stream:
                self._console.print(event.text or "", end="", markup=False, highlight=False)
                self._mid_line = True
        elif event.type == EventType.TURN_COMPLETE:
            if self._stream:
                self._end_line()
            else:
                self._console.print(event.content or "", markup=False, highlight=False)
        elif event.type == EventType.RETRY:
            self._end_line()
            self._console.print(f"[yellow]Retrying {event.speaker} (attempt {event.attempt}): {event.message}[/yellow]")
        elif event.type == EventType.ROUND_SUMMARY:
            self._end_line()
            self._console.print(
                Panel(event.summary or "", title=f"Round {event.round} summary", border_style="dim")
            )
        elif event.type == EventType.ERROR:
            self._end_line()
            self._console.print(f"[bold red]Error:[/bold red] {event.message}")
        elif event.type == EventType.DONE:
            self._end_line()


def print_synthesis(synthesis: Synthesis, out: Console | None = None) -> None:
    """Print the decision record as panels, confidence coloured."""
    out = out or console
    out.print(Rule("[bold green]Council Synthesis[/bold green]"))
    if synthesis.summary:
        out.print(Panel(Markdown(synthesis.summary), title="Summary", border_style="green"))

    sections = [
        ("Decisions", synthesis.decisions, True),
        ("Dissent", synthesis.dissent, False),
        ("Open Questions", synthesis.open_questions, False),
        ("Actions", synthesis.actions, True),
    ]
    for title, items, numbered in sections:
        if not items:
            continue
        body = "\n".join(f"{i}. {item}" if numbered else f"- {item}" for i, item in enumerate(items, start=1))
        out.print(Panel(body, title=title, border_style="cyan"))

    style = _CONFIDENCE_STYLES.get(synthesis.confidence, "bold")
    confidence = Text("Confidence: ", style="dim")
    confidence.append(synthesis.confidence.upper(), style=style)
    if synthesis.degraded:
        confidence.append("  (degraded)", style="red")
    out.print(confidence)


def print_session_footer(session: Session, saved_to: Path | None = None, out: Console | None = None) -> None:
    out = out or console
    meta = session.metadata
    style = "green" if meta.status == SessionStatus.COMPLETE else "yellow"
    out.print(
        Text(
            f"Session {session.id[:8]} | {meta.status.value} | "
            f"{meta.turn_count}/{meta.expected_turns} turns | "
            f"{meta.provider_calls} calls | {meta.duration_sec:.1f}s",
            style=style,
        )
    )
    if meta.error:
        out.print(f"[red]{meta.error}[/red]")
    if saved_to:
        out.print(f"[dim]Saved: {saved_to}[/dim]")


def sessions_table(sessions: list[Session]) -> Table:
    table = Table(title="Recent Sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Date")
    table.add_column("Council")
    table.add_column("Status")
    table.add_column("Question")
    for s in sessions:
        question = s.question if len(s.question) <= 60 else s.question[:57] + "..."
        table.add_row(s.id[:8], s.created_at[:16].replace("T", " "), s.council_id, s.metadata.status.value, question)
    return table


def export_session_markdown(session: Session) -> str:
    """Render a session as markdown: header, transcript by round, synthesis, disclaimer."""
    meta = session.metadata
    lines: list[str] = [
        "# Eklavya Council Session",
        "",
        f"**Question:** {session.question}",
        f"**Council:** {session.council_name}",
        f"**Date:** {session.created_at}",
        f"**Duration:** {meta.duration_sec}s",
        f"**Personas:** {meta.persona_count} | **Rounds:** {meta.rounds}",
        f"**API calls:** {meta.provider_calls}",
    ]
    if meta.status != SessionStatus.COMPLETE:
        lines.append(f"**Status:** {meta.status.value} ({meta.turn_count}/{meta.expected_turns} turns)")
    lines += ["", "---", "", "## Transcript", ""]

    last_round: int | None = None
    for msg in session.transcript:
        if msg.round != last_round:
            if msg.round == OPENING_ROUND:
                lines.append("### Opening")
            elif msg.round == SYNTHESIS_ROUND:
                lines.append("### Synthesis")
            else:
                lines.append(f"### Round {msg.round}")
            lines.append("")
            last_round = msg.round
        lines.append(f"**{msg.speaker}** *({msg.speaker_role})*")
        lines.append("")
        lines.append(msg.content)
        lines.append("")

    synthesis = session.synthesis
    lines += ["---", "", "## Synthesis", ""]
    if synthesis.summary:
        lines += [f"> {synthesis.summary}", ""]
    if synthesis.decisions:
        lines.append("### Decisions")
        lines += [f"{i}. {d}" for i, d in enumerate(synthesis.decisions, start=1)]
        lines.append("")
    if synthesis.dissent:
        lines.append("### Dissent")
        lines += [f"- {d}" for d in synthesis.dissent]
        lines.append("")
    if synthesis.open_questions:
        lines.append("### Open Questions")
        lines += [f"- {q}" for q in synthesis.open_questions]
        lines.append("")
    if synthesis.actions:
        lines.append("### Actions")
        lines += [f"{i}. {a}" for i, a in enumerate(synthesis.actions, start=1)]
        lines.append("")

    lines += [f"*Confidence: {synthesis.confidence.upper()}*", "", DISCLAIMER, ""]
    return "\n".join(lines)


def save_to_file(session: Session, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the session as a markdown file.

    Args:
        session: The finished (or partial) session.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the question text. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(session.question)
    filepath = output_dir / f"{timestamp}_{slug}.md"
    filepath.write_text(export_session_markdown(session), encoding="utf-8")
    logger.info("Session exported to: %s", filepath)
    return filepath
