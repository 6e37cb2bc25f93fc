"""Control Tower CLI - main entry point."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from control_tower import __version__
from control_tower.env import load_environment

# Load environment variables from .env file at startup
load_environment()

app = typer.Typer(
    name="tower",
    help="Control Tower - ticket scheduler for AI agents",
    no_args_is_help=True,
)
agents_app = typer.Typer(help="Inspect agent definitions")
tickets_app = typer.Typer(help="Manage tickets")
app.add_typer(agents_app, name="agents")
app.add_typer(tickets_app, name="tickets")

console = Console()

BASE_DIR_OPTION = typer.Option(".", "--base-dir", "-d", help="Control Tower workspace directory")

STATUS_STYLES = {
    "open": "cyan",
    "in_review": "blue",
    "resolved": "green",
    "escalated": "red",
    "on_hold": "yellow",
}
PRIORITY_STYLES = {"P1": "red", "P2": "yellow", "P3": "green"}


def _run_async(coro):
    """Run an async coroutine from sync CLI context."""
    return asyncio.run(coro)


async def _open_store(base: Path):
    from control_tower.config import load_workspace_config
    from control_tower.store import TicketStore

    workspace = load_workspace_config(base)
    store = TicketStore(base / workspace.db_path)
    await store.initialize()
    return workspace, store


# ── Top-level commands ────────────────────────────────────────────────


@app.command()
def init(
    path: str = typer.Argument(".", help="Directory to initialize the workspace in"),
):
    """Initialize a new Control Tower workspace."""
    from control_tower.agents import create_default_agents

    base = Path(path).resolve()
    base.mkdir(parents=True, exist_ok=True)
    (base / "tickets").mkdir(exist_ok=True)

    created = create_default_agents(base / "agents")

    tower_yaml = base / "tower.yaml"
    if not tower_yaml.exists():
        tower_yaml.write_text(
            "agents_dir: ./agents\n"
            "tickets_dir: ./tickets\n"
            "db_path: ./control_tower.db\n"
            "config_path: ./scheduler.yaml\n"
        )

    scheduler_yaml = base / "scheduler.yaml"
    if not scheduler_yaml.exists():
        scheduler_yaml.write_text(
            "max_active_tickets: 10\n"
            "max_ticket_retries: 3\n"
            "max_parallel_tickets: 3\n"
            "clarity_auto_resolve_score: 85\n"
            "clarity_clarification_score: 70\n"
            "boss_idle_timeout_minutes: 5\n"
            "ai_mode: hybrid\n"
            "llm_provider: anthropic\n"
        )

    console.print(Panel(
        f"[bold green]Workspace initialized at:[/] {base}\n\n"
        f"  [dim]agents/[/]          - Agent definitions ({len(created)} created)\n"
        f"  [dim]tickets/[/]         - YAML tickets to import\n"
        f"  [dim]tower.yaml[/]       - Workspace layout\n"
        f"  [dim]scheduler.yaml[/]   - Scheduler options\n\n"
        f"Next steps:\n"
        f"  1. Add tickets with [bold cyan]tower tickets add[/] or YAML files in [bold]tickets/[/]\n"
        f"  2. Run [bold cyan]tower run[/]",
        title="[bold cyan]Control Tower[/]",
        border_style="cyan",
    ))


@app.command()
def run(
    base_dir: str = BASE_DIR_OPTION,
    until_idle: bool = typer.Option(False, "--until-idle", help="Exit once every queue has drained"),
    import_dir: bool = typer.Option(True, "--import/--no-import", help="Import YAML tickets before starting"),
):
    """Start the scheduler with the LLM-backed agent hub."""
    async def _run():
        from control_tower.agents import AgentManager, LLMAgentHub
        from control_tower.config import load_config_manager
        from control_tower.env import api_key_var, missing_keys
        from control_tower.events import EventBus
        from control_tower.log_sink import ConsoleLogSink
        from control_tower.scheduler import TicketScheduler
        from control_tower.ticket_sources import LocalYAMLTicketSource, import_tickets

        base = Path(base_dir).resolve()
        load_environment(base)
        workspace, store = await _open_store(base)

        try:
            config = load_config_manager(base, workspace)
            provider = config.get_config().llm_provider
            if missing_keys([provider]):
                env_var = api_key_var(provider) or f"{provider.upper()}_API_KEY"
                console.print(Panel(
                    f"[bold red]Error:[/] API key not set for {provider}\n\n"
                    f"Set [bold]{env_var}[/] in a [bold].env[/] file in the workspace\n"
                    f"or export it in your shell.",
                    title="[bold red]Missing API Key[/]",
                    border_style="red",
                ))
                raise typer.Exit(1)

            agent_manager = AgentManager(base / workspace.agents_dir)
            try:
                agent_manager.load_all()
            except FileNotFoundError:
                console.print("[red]Agents directory not found. Run 'tower init' first.[/]")
                raise typer.Exit(1)

            log = ConsoleLogSink(console)
            bus = EventBus(log=log)
            hub = LLMAgentHub(
                agent_manager,
                default_provider=provider,
                default_model=config.get_config().llm_model,
            )
            scheduler = TicketScheduler(store, hub, bus, config, log)

            console.print(f"[dim]✓ API key configured for {provider}[/]")
            await scheduler.start()
            try:
                if import_dir:
                    source = LocalYAMLTicketSource(base / workspace.tickets_dir)
                    imported = await import_tickets(source, store, bus)
                    if imported:
                        console.print(f"[dim]Imported {len(imported)} ticket(s)[/]")

                if until_idle:
                    await scheduler.wait_until_idle()
                else:
                    console.print("[dim]Scheduler running. Press Ctrl+C to stop.[/]")
                    await asyncio.Event().wait()
            finally:
                scheduler.dispose()
                await bus.drain()

            counts = await store.get_status_counts()
            console.print(Panel(
                "\n".join(f"[bold]{k}:[/] {v}" for k, v in sorted(counts.items())) or "No tickets",
                title="[bold cyan]Ticket Summary[/]",
                border_style="cyan",
            ))
        finally:
            await store.close()

    try:
        _run_async(_run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/]")


@app.command()
def status(
    base_dir: str = BASE_DIR_OPTION,
    audit: int = typer.Option(10, "--audit", "-a", help="Number of audit log entries to show"),
):
    """Show ticket counts and recent audit log entries."""
    async def _status():
        base = Path(base_dir).resolve()
        _, store = await _open_store(base)
        try:
            counts = await store.get_status_counts()
            if not counts:
                console.print("[yellow]No tickets yet.[/]")
                return

            counts_table = Table(title="Tickets by Status")
            counts_table.add_column("Status", style="bold")
            counts_table.add_column("Processing")
            counts_table.add_column("Count", justify="right")
            for key, count in sorted(counts.items()):
                s, p = key.split("/", 1)
                style = STATUS_STYLES.get(s, "white")
                counts_table.add_row(f"[{style}]{s}[/{style}]", p, str(count))
            console.print(counts_table)

            entries = await store.get_audit_log(limit=audit)
            if entries:
                log_table = Table(title="Recent Audit Log")
                log_table.add_column("Time", style="dim")
                log_table.add_column("Actor", style="cyan")
                log_table.add_column("Action")
                log_table.add_column("Detail", max_width=60)
                for entry in entries:
                    log_table.add_row(
                        entry["created_at"][:19],
                        entry["actor"],
                        entry["action"],
                        (entry["detail"] or "-").splitlines()[0] if entry["detail"] else "-",
                    )
                console.print(log_table)
        finally:
            await store.close()

    _run_async(_status())


@app.command()
def recover(base_dir: str = BASE_DIR_OPTION):
    """Reset tickets left mid-pipeline so the next run picks them up."""
    async def _recover():
        from control_tower.events import EventBus
        from control_tower.log_sink import ConsoleLogSink
        from control_tower.recovery import recover_stuck_tickets

        async def _leave_for_next_run(ticket, ticket_route):
            return True

        base = Path(base_dir).resolve()
        _, store = await _open_store(base)
        try:
            log = ConsoleLogSink(console)
            count = await recover_stuck_tickets(store, EventBus(log=log), log, _leave_for_next_run)
        finally:
            await store.close()

        if count:
            console.print(f"[green]✓[/] Recovered {count} ticket(s)")
        else:
            console.print("[dim]No stuck tickets found.[/]")

    _run_async(_recover())


@app.command()
def version():
    """Show Control Tower version."""
    console.print(f"[bold cyan]Control Tower[/] v{__version__}")


@app.command()
def clean(
    base_dir: str = BASE_DIR_OPTION,
    confirm: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Delete the ticket database."""
    from control_tower.config import load_workspace_config

    base = Path(base_dir).resolve()
    workspace = load_workspace_config(base)
    db_path = base / workspace.db_path

    if not db_path.exists():
        console.print(f"[yellow]No database found at {db_path}[/]")
        return

    if not confirm:
        response = typer.confirm(
            f"This will permanently delete every ticket in {db_path}. Continue?"
        )
        if not response:
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    db_path.unlink()
    console.print(f"[green]✓[/] Database deleted: {db_path}")
    console.print("[dim]The database will be recreated automatically on next run.[/]")


# ── Agents subcommands ────────────────────────────────────────────────


@agents_app.command("list")
def agents_list(base_dir: str = BASE_DIR_OPTION):
    """List the agent definitions in the workspace."""
    from control_tower.agents import AgentManager
    from control_tower.config import load_workspace_config

    base = Path(base_dir).resolve()
    workspace = load_workspace_config(base)
    manager = AgentManager(base / workspace.agents_dir)

    try:
        agents = manager.load_all()
    except FileNotFoundError:
        console.print("[red]Agents directory not found. Run 'tower init' first.[/]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if not agents:
        console.print("[yellow]No agents found.[/]")
        return

    table = Table(title="Agents")
    table.add_column("Agent", style="bold cyan")
    table.add_column("Role")
    table.add_column("LLM")
    table.add_column("File", style="dim")

    for definition in agents.values():
        llm = definition.llm_provider or "default"
        if definition.llm_model:
            llm += f" ({definition.llm_model})"
        table.add_row(definition.agent.value, definition.role, llm, Path(definition.source_path).name)

    console.print(table)


# ── Tickets subcommands ───────────────────────────────────────────────


@tickets_app.command("list")
def tickets_list(
    base_dir: str = BASE_DIR_OPTION,
    status_filter: str = typer.Option(None, "--status", "-s", help="Only show tickets with this status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum tickets to show"),
):
    """List tickets in the store."""
    async def _list():
        base = Path(base_dir).resolve()
        _, store = await _open_store(base)
        try:
            if status_filter:
                tickets = await store.get_tickets_by_status(status_filter)
            else:
                tickets = await store.list_tickets(limit=limit)
        finally:
            await store.close()

        if not tickets:
            console.print("[yellow]No tickets found.[/]")
            return

        table = Table(title="Tickets")
        table.add_column("ID", style="bold")
        table.add_column("Title")
        table.add_column("Priority")
        table.add_column("Type", style="dim")
        table.add_column("Status")
        table.add_column("Processing")
        table.add_column("Retries", justify="right")

        for ticket in tickets[:limit]:
            p_style = PRIORITY_STYLES.get(ticket.priority.value, "white")
            s_style = STATUS_STYLES.get(ticket.status.value, "white")
            table.add_row(
                ticket.id,
                ticket.title,
                f"[{p_style}]{ticket.priority.value}[/{p_style}]",
                ticket.operation_type.value,
                f"[{s_style}]{ticket.status.value}[/{s_style}]",
                ticket.processing_status.value,
                str(ticket.retry_count),
            )

        console.print(table)

    _run_async(_list())


@tickets_app.command("add")
def tickets_add(
    title: str = typer.Argument(..., help="Ticket title"),
    body: str = typer.Option("", "--body", "-b", help="Ticket body"),
    priority: str = typer.Option("P2", "--priority", "-p", help="P1, P2 or P3"),
    operation_type: str = typer.Option("user_created", "--type", "-t", help="Operation type"),
    criteria: str = typer.Option(None, "--criteria", "-c", help="Acceptance criteria"),
    parent: str = typer.Option(None, "--parent", help="Parent ticket id"),
    base_dir: str = BASE_DIR_OPTION,
):
    """Create a ticket. The scheduler admits it the next time it starts."""
    async def _add():
        from control_tower.models import OperationType
        from control_tower.ticket_sources import parse_priority

        try:
            ticket_priority = parse_priority(priority)
            op = OperationType(operation_type)
        except ValueError as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(1)

        base = Path(base_dir).resolve()
        _, store = await _open_store(base)
        try:
            ticket = await store.create_ticket(
                title=title,
                body=body,
                priority=ticket_priority,
                operation_type=op,
                acceptance_criteria=criteria,
                parent_ticket_id=parent,
            )
        finally:
            await store.close()

        console.print(f"[green]✓[/] Created [bold]{ticket.id}[/]: {ticket.title}")

    _run_async(_add())


@tickets_app.command("import")
def tickets_import(
    path: str = typer.Argument(None, help="YAML file or directory (defaults to the workspace tickets dir)"),
    base_dir: str = BASE_DIR_OPTION,
):
    """Import tickets from YAML."""
    async def _import():
        from control_tower.ticket_sources import LocalYAMLTicketSource, import_tickets

        base = Path(base_dir).resolve()
        workspace, store = await _open_store(base)
        source = LocalYAMLTicketSource(Path(path) if path else base / workspace.tickets_dir)
        try:
            created = await import_tickets(source, store)
        except ValueError as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(1)
        finally:
            await store.close()

        console.print(f"[green]✓[/] Imported {len(created)} ticket(s)")
        for ticket in created:
            console.print(f"  [dim]{ticket.id}[/] {ticket.title}")

    _run_async(_import())


@tickets_app.command("show")
def tickets_show(
    ticket_id: str = typer.Argument(..., help="Ticket id"),
    base_dir: str = BASE_DIR_OPTION,
):
    """Show a ticket and its replies."""
    async def _show():
        base = Path(base_dir).resolve()
        _, store = await _open_store(base)
        try:
            ticket = await store.require_ticket(ticket_id)
            replies = await store.get_replies(ticket_id)
        except KeyError as e:
            console.print(f"[red]{e.args[0]}[/]")
            raise typer.Exit(1)
        finally:
            await store.close()

        s_style = STATUS_STYLES.get(ticket.status.value, "white")
        console.print(Panel(
            f"[bold]Title:[/] {ticket.title}\n"
            f"[bold]Priority:[/] {ticket.priority.value}   [bold]Type:[/] {ticket.operation_type.value}\n"
            f"[bold]Status:[/] [{s_style}]{ticket.status.value}[/{s_style}] / {ticket.processing_status.value}\n"
            f"[bold]Retries:[/] {ticket.retry_count}   [bold]Agent:[/] {ticket.processing_agent or '-'}\n"
            f"[bold]Acceptance criteria:[/] {ticket.acceptance_criteria or '-'}\n"
            + (f"[bold]Last error:[/] {ticket.last_error}\n" if ticket.last_error else "")
            + (f"[bold]Escalation plan:[/] {ticket.escalation_plan_id}\n" if ticket.escalation_plan_id else "")
            + f"\n{ticket.body or ''}",
            title=f"[bold cyan]{ticket.id}[/]",
            border_style="cyan",
        ))

        for reply in replies:
            score = f" ({reply.clarity_score:g})" if reply.clarity_score is not None else ""
            console.print(f"[bold cyan]{reply.author}[/]{score} [dim]{reply.created_at[:19]}[/]")
            console.print(reply.body)
            console.print()

    _run_async(_show())


if __name__ == "__main__":
    app()
