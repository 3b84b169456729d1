"""CLI entrypoint for flowrefine.

Workflows are JSON files. The conversation history is stored inside the
same file under ``conversationHistory``, so refining a file repeatedly
continues the same conversation.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .api.events import EventEmitter
from .config import RefinerConfig
from .conversation import ConversationHistory, load_workflow_file, save_workflow_file
from .coordinator import Cancelled, Clarification, Failed, Success
from .errors import RefinementError, SessionError
from .prompt_builder import build_refinement_prompt, estimate_tokens, format_token_count
from .schema import SchemaProvider
from .session import SessionController, SessionManager, build_coordinator
from .skills import FileSkillCatalog, filter_skills_by_relevance
from .validation import validate_workflow
from .workflow import Workflow

# Initialize Typer app
app = typer.Typer(
    name="flowrefine",
    help="Refine workflow documents through conversation with an AI agent.",
    add_completion=False,
)

console = Console()

# How often the CLI wakes up while waiting, so Ctrl+C is handled promptly
_POLL_INTERVAL = 0.2


def log_level_for(verbose: bool, level_name: str = "WARNING") -> int:
    """Logging level for the CLI; ``--verbose`` wins over the configured level."""
    if verbose:
        return logging.DEBUG
    return getattr(logging, level_name.upper(), logging.WARNING)


def setup_logging(verbose: bool = False, level_name: str = "WARNING") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level.
        level_name: Configured level used otherwise (``FLOWREFINE_LOG_LEVEL``).
    """
    level = log_level_for(verbose, level_name)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"flowrefine version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Refine workflow documents through conversation with an AI agent."""
    pass


def _load_config(
    project: Optional[Path],
    timeout: Optional[float] = None,
    no_skills: bool = False,
    mock: bool = False,
) -> RefinerConfig:
    config = RefinerConfig.from_env(project.resolve() if project else None)
    if timeout is not None:
        config.timeout = timeout
    if no_skills:
        config.use_skills = False
    if mock:
        config.mock_mode = True

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)
    return config


def _load_workflow(path: Path) -> tuple[Workflow, Optional[ConversationHistory]]:
    if not path.exists():
        console.print(f"[red]Error:[/red] Workflow file not found: {path}")
        raise typer.Exit(1)
    try:
        return load_workflow_file(path)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] {path} is not valid JSON: {e}")
        raise typer.Exit(1)
    except (RefinementError, ValueError, KeyError) as e:
        detail = f"{e.message}: {e.details}" if isinstance(e, RefinementError) and e.details else e
        console.print(f"[red]Error:[/red] Cannot load {path}: {detail}")
        raise typer.Exit(1)


def _open_session(config: RefinerConfig, path: Path) -> SessionController:
    workflow, history = _load_workflow(path)
    sessions = SessionManager(build_coordinator(config), config=config, emitter=EventEmitter())
    return sessions.open(workflow, history=history)


def _wait(session: SessionController) -> None:
    """Wait for the in-flight request; Ctrl+C cancels it."""
    try:
        while not session.wait(_POLL_INTERVAL):
            pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling...[/yellow]")
        session.cancel()
        session.wait()


def _display_outcome(session: SessionController) -> None:
    outcome = session.last_outcome
    history = session.history

    if isinstance(outcome, Success):
        workflow = outcome.refined_workflow
        console.print(f"[green]{outcome.agent_message.content}[/green]")
        console.print(
            f"[dim]{len(workflow.nodes)} nodes, {len(workflow.connections)} connections "
            f"({outcome.execution_time_ms / 1000:.1f}s)[/dim]"
        )
    elif isinstance(outcome, Clarification):
        console.print(Panel(outcome.agent_message.content, title="Agent asks", border_style="yellow"))
    elif isinstance(outcome, Failed):
        console.print(f"[red]{outcome.error_kind.value}:[/red] {outcome.message}")
        if outcome.retryable:
            console.print("[dim]This request can be retried.[/dim]")
    elif isinstance(outcome, Cancelled):
        console.print("[dim]Request cancelled.[/dim]")

    style = "yellow" if history.is_approaching_limit else "dim"
    console.print(
        f"[{style}]Iteration {history.current_iteration}/{history.max_iterations}"
        f" ({history.remaining_iterations} remaining)[/{style}]"
    )


def _save(session: SessionController, path: Path) -> None:
    save_workflow_file(path, session.workflow, session.history)
    console.print(f"[dim]Saved {path}[/dim]")


def _display_dry_run(config: RefinerConfig, path: Path, text: str) -> None:
    """Print the prompt that would be sent, with a token estimate."""
    workflow, history = _load_workflow(path)
    history = history or ConversationHistory.initialize(workflow.id, config.max_iterations)
    schema = SchemaProvider(config.schema_path).load_schema()
    skills = []
    if config.use_skills:
        catalog = FileSkillCatalog(project_dir=config.working_directory).list_available()
        skills = filter_skills_by_relevance(text, catalog)

    prompt = build_refinement_prompt(
        workflow, history, text, schema, skills=skills, history_window=config.history_window
    )
    console.print(Panel(prompt, title="Prompt preview", border_style="cyan"))
    console.print(f"Estimated tokens: [yellow]{format_token_count(estimate_tokens(prompt))}[/yellow]")
    console.print(f"Skills included: {len(skills)}")
    console.print(f"Timeout: {config.timeout:g}s")
    console.print()
    console.print("[dim]Note: Token estimates are approximate. Actual usage may vary by 10-20%.[/dim]")


@app.command()
def refine(
    workflow_file: Path = typer.Argument(..., help="Workflow JSON file to refine."),
    text: str = typer.Argument(..., help="What to change in the workflow."),
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project root (agent working directory, project skills, config/). Defaults to CWD.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds before the agent is stopped (default 90).",
    ),
    no_skills: bool = typer.Option(
        False,
        "--no-skills",
        help="Do not offer or resolve reusable skills.",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Run in mock mode (no agent process).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview the prompt and token estimate without running the agent.",
    ),
    write: bool = typer.Option(
        True,
        "--write/--no-write",
        help="Save the refined workflow and history back to the file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """Send one refinement request for a workflow file.

    Examples:
        flowrefine refine workflow.json "add a review step after drafting"

        flowrefine refine workflow.json "split the report by region" --timeout 120

        flowrefine refine workflow.json "add logging" --dry-run
    """
    config = _load_config(project, timeout=timeout, no_skills=no_skills, mock=mock)
    setup_logging(verbose, config.log_level)

    if dry_run:
        _display_dry_run(config, workflow_file, text)
        return

    session = _open_session(config, workflow_file)
    try:
        with console.status("Refining workflow..."):
            session.submit(text)
            _wait(session)
    except SessionError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    _display_outcome(session)
    if write:
        _save(session, workflow_file)

    if isinstance(session.last_outcome, Failed):
        raise typer.Exit(1)


@app.command()
def chat(
    workflow_file: Path = typer.Argument(..., help="Workflow JSON file to refine."),
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project root (agent working directory, project skills, config/). Defaults to CWD.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds before the agent is stopped (default 90).",
    ),
    no_skills: bool = typer.Option(False, "--no-skills", help="Do not offer or resolve reusable skills."),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run in mock mode (no agent process)."),
    write: bool = typer.Option(
        True,
        "--write/--no-write",
        help="Save the workflow and history after every exchange.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Refine a workflow interactively.

    Commands: /retry resends the last failed request, /clear empties the
    conversation, /quit exits. Ctrl+C cancels a running request.
    """
    config = _load_config(project, timeout=timeout, no_skills=no_skills, mock=mock)
    setup_logging(verbose, config.log_level)
    session = _open_session(config, workflow_file)

    history = session.history
    console.print(f"[bold cyan]flowrefine[/bold cyan] - {session.workflow.name or session.workflow.id}")
    console.print(
        f"[dim]Iteration {history.current_iteration}/{history.max_iterations}. "
        "Type /retry, /clear or /quit.[/dim]"
    )

    while True:
        try:
            line = console.input("[bold]you>[/bold] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break

        if not line:
            continue
        if line == "/quit":
            break

        try:
            if line == "/clear":
                session.clear()
                console.print("[dim]Conversation cleared.[/dim]")
            elif line == "/retry":
                failed = [m for m in session.history.messages if m.is_error]
                if not failed:
                    console.print("[yellow]Nothing to retry.[/yellow]")
                    continue
                with console.status("Retrying..."):
                    session.retry(failed[-1].id)
                    _wait(session)
                _display_outcome(session)
            else:
                with console.status("Refining workflow..."):
                    session.submit(line)
                    _wait(session)
                _display_outcome(session)
        except SessionError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            continue

        if write:
            _save(session, workflow_file)

    session.close()


@app.command()
def validate(
    workflow_file: Path = typer.Argument(..., help="Workflow JSON file to check."),
    schema_path: Optional[Path] = typer.Option(
        None,
        "--schema",
        "-s",
        help="Schema file (YAML or JSON). Defaults to the bundled schema.",
    ),
) -> None:
    """Check a workflow file against the structural rules."""
    workflow, history = _load_workflow(workflow_file)
    try:
        schema = SchemaProvider(schema_path).load_schema()
    except RefinementError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)

    result = validate_workflow(workflow, schema)
    if result.valid:
        console.print(
            f"[green]Valid:[/green] {workflow.id} "
            f"({len(workflow.nodes)} nodes, {len(workflow.connections)} connections)"
        )
        if history is not None:
            console.print(
                f"[dim]Conversation: {len(history.messages)} messages, "
                f"iteration {history.current_iteration}/{history.max_iterations}[/dim]"
            )
        return

    table = Table(title=f"{len(result.errors)} problem(s) in {workflow.id}")
    table.add_column("Code", style="red")
    table.add_column("Node", style="cyan")
    table.add_column("Message")
    for issue in result.errors:
        table.add_row(issue.code, issue.node_id or "-", issue.message)
    console.print(table)
    raise typer.Exit(1)


@app.command()
def schema(
    schema_path: Optional[Path] = typer.Option(
        None,
        "--schema",
        "-s",
        help="Schema file (YAML or JSON). Defaults to the bundled schema.",
    ),
) -> None:
    """Print the workflow schema embedded in refinement prompts."""
    try:
        data = SchemaProvider(schema_path).load_schema()
    except RefinementError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)
    console.print_json(json.dumps(data))


@app.command()
def serve(
    port: int = typer.Option(
        8765,
        "--port",
        "-p",
        help="Port to run the server on.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        "-h",
        help="Host to bind the server to.",
    ),
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        help="Project root (agent working directory, project skills, config/). Defaults to CWD.",
    ),
    mock: bool = typer.Option(False, "--mock", "-m", help="Run in mock mode (no agent process)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output."),
) -> None:
    """Run the HTTP/WebSocket server for refinement sessions.

    Examples:
        flowrefine serve

        flowrefine serve --port 9000 --mock
    """
    from .api.server import run_server

    config = _load_config(project, mock=mock)
    setup_logging(verbose, config.log_level)

    console.print("[bold cyan]flowrefine server[/bold cyan]")
    console.print(f"[dim]Starting server at http://{host}:{port}[/dim]")
    console.print("[dim]Press Ctrl+C to stop the server.[/dim]")
    console.print()

    try:
        run_server(config, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[dim]Server stopped.[/dim]")


if __name__ == "__main__":
    app()
