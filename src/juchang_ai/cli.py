"""
Juchang AI CLI - command-line interface for the orchestration engine.

Server and worker management plus a few commands for trying the
classifier and chat pipeline from a terminal.
"""

import json
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from juchang_ai.logging_config import setup_logging

app = typer.Typer(
    name="juchang-ai",
    help="Juchang AI - conversation orchestration for the meetup assistant",
    no_args_is_help=True,
)

console = Console()


def _init_logging() -> None:
    # Fall back to console logging if the log directory is not writable
    try:
        setup_logging(context="cli")
    except PermissionError:
        import logging

        logging.basicConfig(level=logging.INFO)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the FastAPI server.

    The background job worker starts with the server unless
    JUCHANG_WORKER_ENABLED=false.
    """
    import uvicorn

    console.print("[bold green]Starting Juchang AI server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload}")
    console.print(f"\n  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "juchang_ai.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def classify(
    message: str = typer.Argument(..., help="Message to classify"),
    model: bool = typer.Option(
        False, "--model", help="Fall back to the configured model when no rule matches"
    ),
    draft: bool = typer.Option(False, "--draft", help="Pretend a draft is open"),
) -> None:
    """Show which intent a message is classified as, and why."""
    from juchang_ai.intent.classifier import (
        ClassifyContext,
        IntentClassifier,
        classify_rules_only,
    )
    from juchang_ai.intent.router import route
    from juchang_ai.models.runtime import RouteFlags

    if model:
        from juchang_ai.llm import get_default_provider

        provider = get_default_provider()
        if provider is None:
            console.print("[bold red]Error:[/bold red] No model API key configured")
            raise typer.Exit(1)
        result = IntentClassifier(provider).classify(
            message, ClassifyContext(has_draft=draft)
        )
    else:
        result = classify_rules_only(message, has_draft=draft)

    decision = route(result.intent, RouteFlags(is_authenticated=True, has_draft=draft))

    table = Table(title="Classification", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Intent", result.intent.value)
    table.add_row("Confidence", f"{result.confidence:.2f}")
    table.add_row("Method", result.method.value)
    table.add_row("Rule", result.matched_rule or "-")
    table.add_row("Agent", decision.agent)
    table.add_row("Tools", ", ".join(decision.tools) or "-")
    console.print(table)


@app.command()
def chat(
    message: str = typer.Argument(..., help="Message to send"),
    user: Optional[str] = typer.Option(None, help="User UUID (omit for anonymous)"),
    lat: Optional[float] = typer.Option(None, help="Caller latitude"),
    lng: Optional[float] = typer.Option(None, help="Caller longitude"),
    thread: Optional[str] = typer.Option(None, help="Thread UUID to continue"),
    trace: bool = typer.Option(False, "--trace", help="Print the request trace"),
) -> None:
    """Send one message through the full chat pipeline and print the reply."""
    from juchang_ai.agent.chat import ChatRequest, ChatService
    from juchang_ai.exceptions import JuchangError
    from juchang_ai.models.runtime import ChatTurn, GeoLocation

    _init_logging()

    try:
        user_id = uuid.UUID(user) if user else None
        thread_id = uuid.UUID(thread) if thread else None
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] Invalid UUID: {e}")
        raise typer.Exit(1)

    location = GeoLocation(lat=lat, lng=lng) if lat is not None and lng is not None else None
    request = ChatRequest(
        messages=[ChatTurn(role="user", content=message)],
        location=location,
        thread_id=thread_id,
        trace=trace,
    )

    service = ChatService(parallel_fetch=False)
    try:
        stream = service.stream_chat(request, user_id=user_id, client_key="cli")
    except JuchangError as e:
        console.print(f"[bold red]{e.code}:[/bold red] {e.message}")
        raise typer.Exit(1)

    try:
        for chunk in stream:
            console.print(chunk, end="")
        console.print()
    finally:
        stream.close()

    trailer = stream.trailer()
    if trailer.get("widgets"):
        console.print(f"[cyan]Widgets:[/cyan] {[w['type'] for w in trailer['widgets']]}")
    if trace:
        console.print_json(json.dumps(trailer, ensure_ascii=False, default=str))


@app.command()
def worker(
    poll_interval: Optional[float] = typer.Option(None, help="Seconds between polls"),
) -> None:
    """Run the background job worker in the foreground until interrupted."""
    from juchang_ai.jobs.worker import JobWorker

    _init_logging()
    job_worker = JobWorker(poll_interval=poll_interval)
    console.print("[bold green]Job worker running[/bold green] (Ctrl+C to stop)")
    try:
        job_worker.run()
    except KeyboardInterrupt:
        job_worker.stop()
    console.print("Job worker stopped")


@app.command("init-db")
def init_db_command() -> None:
    """Create database tables (local development and SQLite deployments)."""
    from juchang_ai.db.connection import init_db

    init_db()
    console.print("[green]✓ Tables created[/green]")


@app.command()
def expire() -> None:
    """Expire lapsed partner intents and overdue matches now."""
    from juchang_ai.broker.partner import PartnerService
    from juchang_ai.db.connection import db_session

    with db_session() as session:
        intents, matches = PartnerService(session).expire_stale()

    console.print(f"Expired intents: {intents}")
    console.print(f"Expired matches: {matches}")


if __name__ == "__main__":
    app()
