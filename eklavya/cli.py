"""Click CLI: runs council sessions and browses catalogs and stored sessions."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import NoReturn

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from config.config_loader import AppConfig, ConfigError, RunOptions, load_config, resolve_run_options
from eklavya.adapter import GenerationAdapter, build_all_providers
from eklavya.catalog import CatalogError, CouncilCatalog, ParticipantCatalog, load_catalogs, resolve_participants
from eklavya.debate import run_council
from eklavya.healthcheck import run_health_checks
from eklavya.inbox import archive_file, ensure_dirs, parse_file, scan_inbox
from eklavya.models import Session, SessionStatus
from eklavya.output import (
    ConsoleRenderer,
    export_session_markdown,
    print_session_footer,
    print_synthesis,
    save_to_file,
    sessions_table,
)
from eklavya.storage import SessionNotFoundError, SessionStore, session_to_dict

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    # Provider INFO lines would interleave with streamed tokens, so they need --verbose
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=Console(stderr=True))],
    )


def _fail(message: str, label: str = "Error") -> NoReturn:
    console.print(f"[bold red]{label}:[/bold red] {message}")
    sys.exit(1)


def _load_config() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ConfigError) as exc:
        _fail(str(exc), "Config error")


def _load_catalogs(config: AppConfig) -> tuple[ParticipantCatalog, CouncilCatalog]:
    try:
        return load_catalogs(config.catalog)
    except CatalogError as exc:
        _fail(str(exc), "Catalog error")


async def _run_session(
    question: str,
    options: RunOptions,
    config: AppConfig,
    participants: ParticipantCatalog,
    councils: CouncilCatalog,
    adapter: GenerationAdapter,
) -> Session:
    """Run one session, streaming to the console. Ctrl-C stops it after the in-flight call."""
    council = councils.get(options.council_id)
    speakers = resolve_participants(participants, options.persona_ids or council.persona_ids)
    rounds = options.rounds or council.rounds

    console.print(
        f"\n[bold cyan]Eklavya Council[/bold cyan]: {council.name} "
        f"({len(speakers)} personas, {rounds} rounds, {options.provider})"
    )
    console.print(f"Question: [italic]{question[:80]}{'...' if len(question) > 80 else ''}[/italic]")

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        if not cancel.is_set():
            console.print("\n[yellow]Interrupted: stopping after the current call...[/yellow]")
            cancel.set()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        return await run_council(
            question,
            council,
            speakers,
            adapter,
            options,
            config.generation,
            on_event=ConsoleRenderer(console, stream=options.stream),
            cancel=cancel,
        )
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _finish(session: Session, store: SessionStore, output_file: Path | None = None) -> Path:
    """Save, print, and optionally export a finished or partial session."""
    saved = store.save(session)
    print_synthesis(session.synthesis, console)
    if output_file:
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(export_session_markdown(session), encoding="utf-8")
        console.print(f"[dim]Exported: {output_file}[/dim]")
    print_session_footer(session, saved, console)
    return saved


async def _run_inbox(
    config: AppConfig,
    participants: ParticipantCatalog,
    councils: CouncilCatalog,
    store: SessionStore,
    overrides: dict,
    stream: bool | None,
) -> int:
    """Process all .md files in the inbox folder. Returns the number of failures.

    Precedence for per-file settings: CLI flag > frontmatter > config default.
    """
    ensure_dirs(config.inbox)
    files = scan_inbox(config.inbox.dir)
    if not files:
        click.echo("No files in inbox.")
        return 0

    failures = 0
    for file_path in files:
        try:
            item = parse_file(file_path)
            if not item.question:
                raise ConfigError("Question file is empty")
            # CLI flags always win; frontmatter only fills in when CLI flag not set
            merged = {**item.options, **{k: v for k, v in overrides.items() if v is not None}}
            options = resolve_run_options(config, stream=stream, **merged)
            adapter = GenerationAdapter.from_config(config, stream=options.stream)
            session = await _run_session(item.question, options, config, participants, councils, adapter)
            store.save(session)
            print_synthesis(session.synthesis, console)
            exported = save_to_file(session, config.defaults.output_dir, slug_override=file_path.stem)
            failed = session.metadata.status != SessionStatus.COMPLETE
            archived = archive_file(file_path, config.inbox.archive_dir, failed=failed)
            click.echo(f"Processed: {file_path.name} -> {exported} (archived: {archived.name})")
            if failed:
                failures += 1
            if session.metadata.status == SessionStatus.CANCELLED:
                break
        except Exception as exc:
            logger.error("Failed: %s -- %s", file_path.name, exc)
            console.print(f"[red]Failed:[/red] {file_path.name}: {exc}")
            archive_file(file_path, config.inbox.archive_dir, failed=True)
            failures += 1
    return failures


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(verbose: bool) -> None:
    """Eklavya Council -- multi-persona AI debate for decisions.

    \b
    Examples:
      eklavya ask "Should we migrate to microservices?"
      eklavya ask "Should I take the job offer?" --council career-decision --rounds 3
      eklavya ask --file question.md --output decision.md
      eklavya ask --inbox
      eklavya councils list
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)


@main.command()
@click.argument("question", required=False)
@click.option("--council", "-c", default=None, help="Council id (default: from config)")
@click.option("--rounds", "-r", default=None, type=int, help="Debate rounds, clamped to the configured range")
@click.option("--personas", "-p", default=None, help="Comma-separated persona ids, overrides the council's")
@click.option("--provider", default=None, help="Backend to use (default: from config)")
@click.option("--no-stream", is_flag=True, default=False, help="Print each turn when complete instead of streaming")
@click.option("--output", "-o", "output_file", default=None, type=click.Path(dir_okay=False),
              help="Also export the session as markdown to this file")
@click.option("--file", "question_file", type=click.Path(exists=True, dir_okay=False),
              help="Read the question from a .md file with optional frontmatter")
@click.option("--context", default=None, help="Who you are / your situation, given to every persona")
@click.option("--inbox", "use_inbox", is_flag=True, default=False, help="Process all .md files in the inbox folder")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def ask(
    question: str | None,
    council: str | None,
    rounds: int | None,
    personas: str | None,
    provider: str | None,
    no_stream: bool,
    output_file: str | None,
    question_file: str | None,
    context: str | None,
    use_inbox: bool,
    verbose: bool,
) -> None:
    """Convene a council on QUESTION."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    config = _load_config()
    participants, councils = _load_catalogs(config)
    store = SessionStore(config.defaults.sessions_dir)
    stream = False if no_stream else None
    overrides = {"council_id": council, "rounds": rounds, "personas": personas, "provider": provider, "context": context}

    if use_inbox:
        failures = asyncio.run(_run_inbox(config, participants, councils, store, overrides, stream))
        sys.exit(1 if failures else 0)

    if question_file:
        try:
            parsed = parse_file(Path(question_file))
        except (ValueError, yaml.YAMLError) as exc:
            _fail(f"{question_file}: {exc}")
        question = parsed.question
        overrides = {**parsed.options, **{k: v for k, v in overrides.items() if v is not None}}
    if not question:
        _fail("Provide a QUESTION argument, --file, or --inbox.")

    try:
        options = resolve_run_options(config, stream=stream, **overrides)
        adapter = GenerationAdapter.from_config(config, stream=options.stream)
        session = asyncio.run(_run_session(question, options, config, participants, councils, adapter))
    except (ConfigError, CatalogError) as exc:
        _fail(str(exc))

    _finish(session, store, Path(output_file) if output_file else None)
    if session.metadata.status == SessionStatus.FAILED:
        sys.exit(1)


@main.group()
def councils() -> None:
    """Browse council templates."""


@councils.command("list")
def councils_list() -> None:
    """List available councils."""
    config = _load_config()
    _, catalog = _load_catalogs(config)
    table = Table(title="Councils")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Rounds", justify="right")
    table.add_column("Personas")
    for c in catalog.list():
        table.add_row(c.id, c.name, str(c.rounds), ", ".join(c.persona_ids))
    console.print(table)


@main.group()
def personas() -> None:
    """Browse personas."""


@personas.command("list")
def personas_list() -> None:
    """List available personas."""
    config = _load_config()
    catalog, _ = _load_catalogs(config)
    table = Table(title="Personas")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Contrarian", justify="right")
    for p in catalog.list():
        table.add_row(p.id, p.label, p.role, f"{p.contrarian_level:.1f}")
    console.print(table)


@personas.command("show")
@click.argument("persona_id")
def personas_show(persona_id: str) -> None:
    """Show one persona in full."""
    config = _load_config()
    catalog, _ = _load_catalogs(config)
    try:
        p = catalog.get(persona_id)
    except CatalogError as exc:
        _fail(str(exc))
    console.print(f"[bold cyan]{p.label}[/bold cyan] ({p.id})")
    console.print(f"Role: {p.role}")
    console.print(f"Expertise: {', '.join(p.expertise)}")
    console.print(f"Style: {p.style}")
    if p.bias:
        console.print(f"Bias: {p.bias}")
    console.print(f"Contrarian level: {p.contrarian_level:.1f} | Verbosity: {p.verbosity}")
    if p.provider or p.model:
        console.print(f"Backend override: {p.provider or '-'} / {p.model or '-'}")


@main.group()
def sessions() -> None:
    """Browse stored sessions."""


@sessions.command("list")
@click.option("-n", "limit", default=20, show_default=True, help="Number of sessions to show")
def sessions_list(limit: int) -> None:
    """List recent sessions, newest first."""
    config = _load_config()
    stored = SessionStore(config.defaults.sessions_dir).list(limit)
    if not stored:
        click.echo("No sessions yet.")
        return
    console.print(sessions_table(stored))


@sessions.command("show")
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw session JSON")
def sessions_show(session_id: str, as_json: bool) -> None:
    """Show a session by id or 8-character prefix."""
    config = _load_config()
    try:
        session = SessionStore(config.defaults.sessions_dir).load(session_id)
    except SessionNotFoundError as exc:
        _fail(str(exc))
    if as_json:
        click.echo(json.dumps(session_to_dict(session), indent=2, ensure_ascii=False))
    else:
        console.print(Markdown(export_session_markdown(session)))


@sessions.command("export")
@click.argument("session_id")
@click.option("-o", "output_file", default=None, type=click.Path(dir_okay=False), help="Write to this file")
def sessions_export(session_id: str, output_file: str | None) -> None:
    """Export a session as markdown."""
    config = _load_config()
    try:
        session = SessionStore(config.defaults.sessions_dir).load(session_id)
    except SessionNotFoundError as exc:
        _fail(str(exc))
    markdown = export_session_markdown(session)
    if output_file:
        Path(output_file).write_text(markdown, encoding="utf-8")
        click.echo(f"Exported: {output_file}")
    else:
        click.echo(markdown)


@main.command()
@click.option("--check", is_flag=True, help="Ping every available backend")
def status(check: bool) -> None:
    """Show configured backends, defaults, and stored sessions."""
    config = _load_config()
    table = Table(title="Backends")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Model")
    table.add_column("Key", no_wrap=True)
    for name, model_cfg in sorted(config.models.items()):
        has_key = name in config.available_providers
        key_label = "[green]set[/green]" if has_key else f"[red]missing ({model_cfg.api_key_env})[/red]"
        table.add_row(name, model_cfg.model, key_label)
    console.print(table)

    d = config.defaults
    console.print(
        f"Defaults: provider={d.provider}, council={d.council}, "
        f"rounds={d.min_rounds}-{d.max_rounds}, stream={d.stream}, max_tokens_per_turn={d.max_tokens_per_turn}"
    )
    stored = SessionStore(d.sessions_dir).list(limit=10_000)
    console.print(f"Sessions: {len(stored)} in {d.sessions_dir}")

    if not check:
        return

    providers = build_all_providers(config)
    if not providers:
        _fail("No providers available. Check API keys in .env.")
    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(providers))
    for name in sorted(results):
        r = results[name]
        if r.ok:
            console.print(f"  [green]OK  [/green] {name} ({r.model}, {r.latency_sec:.1f}s)")
        else:
            console.print(f"  [red]FAIL[/red] {name}: {r.error.splitlines()[0][:120]}")
    if not all(r.ok for r in results.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()
