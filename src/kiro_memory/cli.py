import asyncio
import json
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import AppConfig, load_config, validate_config
from .exceptions import ConfigurationError, KiroMemoryError
from .logging_config import setup_logging
from .memory import MemoryManager
from .models import SearchFilters
from .scoring import estimate_tokens

app = typer.Typer(help="Kiro Memory: persistent memory store for coding agents.")
embeddings_app = typer.Typer(help="Embedding backfill and coverage")
maintenance_app = typer.Typer(help="Consolidation and staleness jobs")
console = Console()

app.add_typer(embeddings_app, name="embeddings")
app.add_typer(maintenance_app, name="maintenance")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    setup_logging(load_config().logging, verbose=verbose)


def get_memory_manager(config: Optional[AppConfig] = None) -> MemoryManager:
    try:
        return MemoryManager(config)
    except Exception as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)


def _run_with_manager(handler) -> None:
    """Open a manager, run ``handler(manager)`` and always close it."""
    async def _run():
        manager = get_memory_manager()
        await manager.initialize()
        try:
            await handler(manager)
        finally:
            await manager.close()

    try:
        asyncio.run(_run())
    except KiroMemoryError as exc:
        console.print(f"[red]Error: {exc.message}[/red]")
        raise typer.Exit(1)


def _shorten(text: Optional[str], width: int = 80) -> str:
    text = (text or "").replace("\n", " ")
    return text if len(text) <= width else text[: width - 3] + "..."


@app.command(name="config-validate")
def config_validate(
    strict: bool = typer.Option(False, "--strict", help="Treat warnings as errors"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show errors, suppress warnings"),
):
    """Validate the current configuration."""
    try:
        config = load_config()
        is_valid, warnings = validate_config(config, strict=strict)

        if not quiet and warnings:
            console.print("[yellow]Warnings:[/yellow]")
            for warning in warnings:
                console.print(f"  • {warning}")

        console.print("[green]Configuration is valid.[/green]")

    except ConfigurationError as e:
        console.print("[red]Configuration validation failed:[/red]")
        if e.details:
            for error in e.details.get("errors", []):
                console.print(f"  [red]✗[/red] {error}")
            if not quiet:
                for warning in e.details.get("warnings", []):
                    console.print(f"  [yellow]![/yellow] {warning}")
        else:
            console.print(f"  {e}")
        raise typer.Exit(1)


@app.command(name="add-observation")
def add_observation(
    title: str = typer.Argument(..., help="Observation title"),
    project: str = typer.Option(..., "--project", "-p", help="Project name"),
    obs_type: str = typer.Option("manual", "--type", help="Observation type"),
    content: Optional[str] = typer.Option(None, "--content", "-c", help="Observation body"),
    concept: Optional[List[str]] = typer.Option(None, "--concept", help="Concept tags"),
    file: Optional[List[str]] = typer.Option(None, "--file", "-f", help="Files touched"),
    session_id: Optional[str] = typer.Option(None, help="Memory session id"),
):
    """Store a new observation."""
    async def _handler(manager: MemoryManager):
        obs_id = await manager.create_observation(
            project=project,
            obs_type=obs_type,
            title=title,
            content=content,
            concepts=concept or None,
            files=file or None,
            memory_session_id=session_id,
        )
        console.print(f"[green]Observation stored![/green] (ID: {obs_id})")

    _run_with_manager(_handler)


@app.command(name="add-summary")
def add_summary(
    project: str = typer.Option(..., "--project", "-p", help="Project name"),
    session_id: Optional[str] = typer.Option(None, help="Session id"),
    request: Optional[str] = typer.Option(None, help="What was asked"),
    learned: Optional[str] = typer.Option(None, help="What was learned"),
    completed: Optional[str] = typer.Option(None, help="What was completed"),
    next_steps: Optional[str] = typer.Option(None, help="Next steps"),
    notes: Optional[str] = typer.Option(None, help="Free-form notes"),
):
    """Store a session summary."""
    async def _handler(manager: MemoryManager):
        summary_id = await manager.create_summary(
            project=project,
            session_id=session_id,
            request=request,
            learned=learned,
            completed=completed,
            next_steps=next_steps,
            notes=notes,
        )
        console.print(f"[green]Summary stored![/green] (ID: {summary_id})")

    _run_with_manager(_handler)


@app.command()
def context(
    project: str = typer.Argument(..., help="Project name"),
    output: str = typer.Option("text", "--format", "-f", help="Output format: text, json"),
):
    """Show the context that would be injected for a project."""
    async def _handler(manager: MemoryManager):
        ctx = await manager.get_context(project)
        if output == "json":
            payload = {
                "project": ctx["project"],
                "observations": [o.model_dump() for o in ctx["observations"]],
                "summaries": [s.model_dump() for s in ctx["summaries"]],
                "prompts": [p.model_dump() for p in ctx["prompts"]],
            }
            print(json.dumps(payload, indent=2))
            return

        table = Table(title=f"Context for: {project}")
        table.add_column("ID", style="dim")
        table.add_column("Type", style="magenta")
        table.add_column("Title", style="cyan")
        table.add_column("Tokens", style="dim", justify="right")
        total_tokens = 0
        for obs in ctx["observations"]:
            tokens = estimate_tokens(obs.title) + estimate_tokens(obs.text)
            total_tokens += tokens
            title = obs.title + (" [stale]" if obs.is_stale else "")
            table.add_row(str(obs.id), obs.type, title, str(tokens))
        console.print(table)
        for summary in ctx["summaries"]:
            console.print(f"[bold]Summary {summary.id}[/bold]: {_shorten(summary.learned or summary.request)}")
        console.print(f"[dim]~{total_tokens} tokens of observations[/dim]")

    _run_with_manager(_handler)


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of results"),
    project: Optional[str] = typer.Option(None, help="Project filter"),
    obs_type: Optional[str] = typer.Option(None, "--type", help="Observation type filter"),
    output: str = typer.Option("text", "--format", "-f", help="Output format: text, json"),
):
    """Keyword search over observations and summaries."""
    async def _handler(manager: MemoryManager):
        results = await manager.search(query, SearchFilters(project=project, type=obs_type, limit=limit))
        if output == "json":
            payload = {
                "observations": [o.model_dump() for o in results["observations"]],
                "summaries": [s.model_dump() for s in results["summaries"]],
            }
            print(json.dumps(payload, indent=2))
            return

        table = Table(title=f"Search results for: {query}")
        table.add_column("ID", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Project", style="green")
        for obs in results["observations"]:
            table.add_row(str(obs.id), obs.title, obs.type, obs.project)
        console.print(table)
        if results["summaries"]:
            console.print(f"[dim]{len(results['summaries'])} matching summaries[/dim]")

    _run_with_manager(_handler)


@app.command(name="hybrid-search")
def hybrid_search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of results"),
    project: Optional[str] = typer.Option(None, help="Target project"),
    output: str = typer.Option("text", "--format", "-f", help="Output format: text, json"),
):
    """Ranked search combining keyword and semantic signals."""
    async def _handler(manager: MemoryManager):
        results = await manager.hybrid_search(query, project=project, limit=limit)
        if output == "json":
            print(json.dumps([r.model_dump() for r in results], indent=2))
            return

        table = Table(title=f"Hybrid results for: {query}")
        table.add_column("ID", style="dim")
        table.add_column("Score", justify="right")
        table.add_column("Source", style="magenta")
        table.add_column("Title", style="cyan")
        table.add_column("Project", style="green")
        for r in results:
            title = r.title + (" [stale]" if r.is_stale else "")
            table.add_row(str(r.id), f"{r.score:.3f}", r.source, title, r.project)
        console.print(table)

    _run_with_manager(_handler)


@app.command()
def timeline(
    anchor: int = typer.Argument(..., help="Anchor observation id"),
    depth_before: int = typer.Option(5, help="Observations before the anchor"),
    depth_after: int = typer.Option(5, help="Observations after the anchor"),
):
    """Show observations recorded around an anchor."""
    async def _handler(manager: MemoryManager):
        entries = await manager.timeline(anchor, depth_before, depth_after)
        if not entries:
            console.print(f"[yellow]Observation {anchor} not found.[/yellow]")
            return
        table = Table(title=f"Timeline around {anchor}")
        table.add_column("ID", style="dim")
        table.add_column("Created", style="green")
        table.add_column("Title", style="cyan")
        for entry in entries:
            style = "bold" if entry.id == anchor else None
            table.add_row(str(entry.id), entry.created_at, entry.title, style=style)
        console.print(table)

    _run_with_manager(_handler)


@app.command()
def stats(
    project: str = typer.Argument(..., help="Project name"),
):
    """Show record counts for a project."""
    async def _handler(manager: MemoryManager):
        project_stats = await manager.project_stats(project)
        table = Table(title=f"Stats for: {project}")
        table.add_column("Records", style="cyan")
        table.add_column("Count", justify="right")
        for name, count in project_stats.model_dump().items():
            table.add_row(name, str(count))
        console.print(table)

    _run_with_manager(_handler)


@app.command()
def projects():
    """List known projects and their display names."""
    async def _handler(manager: MemoryManager):
        names = await manager.list_projects()
        aliases = await manager.list_project_aliases()
        if not names:
            console.print("[yellow]No projects yet.[/yellow]")
            return
        table = Table(title="Projects")
        table.add_column("Project", style="green")
        table.add_column("Display name", style="cyan")
        for name in names:
            table.add_row(name, aliases.get(name, "-"))
        console.print(table)

    _run_with_manager(_handler)


@embeddings_app.command("backfill")
def embeddings_backfill(
    batch_size: int = typer.Option(50, "--batch-size", "-b", help="Observations per run (1-500)"),
):
    """Generate embeddings for observations that have none."""
    async def _handler(manager: MemoryManager):
        generated = await manager.backfill_embeddings(batch_size)
        console.print(f"[green]Generated {generated} embeddings.[/green]")

    _run_with_manager(_handler)


@embeddings_app.command("stats")
def embeddings_stats():
    """Show embedding coverage and the active provider."""
    async def _handler(manager: MemoryManager):
        stats = await manager.embedding_stats()
        console.print(f"Embedded: {stats.embedded}/{stats.total} ({stats.percentage}%)")
        if stats.available:
            console.print(f"Provider: {stats.provider} ({stats.dimensions}d)")
        else:
            console.print("[yellow]No embedding provider available; search is keyword-only.[/yellow]")

    _run_with_manager(_handler)


@maintenance_app.command("consolidate")
def maintenance_consolidate(
    project: Optional[str] = typer.Option(None, help="Project filter"),
    min_group_size: Optional[int] = typer.Option(None, help="Minimum observations per group"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without writing"),
):
    """Merge observations that touched the same files."""
    async def _handler(manager: MemoryManager):
        report = await manager.consolidate(project, min_group_size, dry_run)
        prefix = "[yellow]Dry run:[/yellow] " if dry_run else ""
        console.print(f"{prefix}merged {report.merged} groups, removed {report.removed} observations")
        if report.failed:
            console.print(f"[red]{report.failed} groups failed[/red]")

    _run_with_manager(_handler)


@maintenance_app.command("staleness")
def maintenance_staleness(
    project: Optional[str] = typer.Option(None, help="Project filter"),
    base_dir: Optional[str] = typer.Option(None, help="Directory relative file paths resolve against"),
    reset: bool = typer.Option(False, "--reset", help="Clear the flag on observations found fresh"),
):
    """Flag observations whose files changed after they were recorded."""
    async def _handler(manager: MemoryManager):
        report = await manager.detect_stale(project, base_dir, reset)
        console.print(
            f"Checked {report.checked}, marked {report.marked_stale} stale, "
            f"{report.missing_files} files missing"
        )

    _run_with_manager(_handler)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind (default from config)"),
    port: Optional[int] = typer.Option(None, help="Port to listen on (default from config)"),
):
    """Start the HTTP worker."""
    from .server import start_server

    config = load_config()
    host = host or config.server.host
    port = port or config.server.port
    console.print(f"[green]Starting kiro-memory worker at http://{host}:{port}[/green]")
    start_server(host=host, port=port)
