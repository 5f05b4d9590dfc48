"""Main CLI entry point for beads-console."""

import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .beads import SqliteBeadStore
from .config import settings
from .db import MemoryDatabase
from .errors import BeadsConsoleError, MemoryStoreError
from .events import NOTIFICATIONS_CHANNEL, UpdateType
from .log import configure_logging
from .mcp_server import create_server
from .memory import (
    MemoryStore,
    action_stats,
    format_action_for_chat,
    format_action_summary,
    generate_memory_brief,
    mark_action_sent_to_chat,
    recent_action_reports,
    run_action,
)
from .models import MemoryKind
from .runner import TaskRunner
from .runs import RunMode
from .sessions import MessageRole, SessionManager, SessionStatus

console = Console()

project_option = click.option(
    "--project",
    "-P",
    "project_path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Project directory (the one holding .beads/)",
)


def _project_id(project_path: Path) -> str:
    return project_path.resolve().name


def _open_store(project_path: Path) -> tuple[MemoryDatabase, MemoryStore]:
    db = MemoryDatabase.for_project(project_path.resolve())
    return db, MemoryStore(db)


def _fail(exc: Exception) -> None:
    console.print(f"[red]{exc}[/red]")
    raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Log level (default from BEADS_CONSOLE_LOG_LEVEL)")
def main(log_level: str | None) -> None:
    """Beads console: project memory, agent sessions and task runs.

    Operates on the .beads/ directory of a project.
    """
    configure_logging(log_level or settings.log_level)


# =============================================================================
# Memory
# =============================================================================


@main.group(name="memory")
def memory_group() -> None:
    """Manage the project memory store."""
    pass


@memory_group.command(name="add")
@project_option
@click.argument("kind", type=click.Choice([k.value for k in MemoryKind]))
@click.argument("title")
@click.argument("content")
@click.option("--bead", "bead_id", default=None, help="Scope to a work item")
@click.option("--epic", "epic_id", default=None, help="Scope to an epic")
@click.option("--score", "relevance_score", type=float, default=None, help="Relevance score in [0, 1]")
@click.option("--no-expiry", is_flag=True, help="Do not apply the kind's default retention")
def memory_add(
    project_path: Path,
    kind: str,
    title: str,
    content: str,
    bead_id: str | None,
    epic_id: str | None,
    relevance_score: float | None,
    no_expiry: bool,
) -> None:
    """Record a memory entry."""

    async def do_add() -> None:
        db, store = _open_store(project_path)
        try:
            entry = await store.create_entry(
                project_id=_project_id(project_path),
                kind=kind,
                title=title,
                content=content,
                bead_id=bead_id,
                epic_id=epic_id,
                relevance_score=relevance_score,
                apply_retention=not no_expiry,
            )
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()
        expires = entry.expires_at.strftime("%Y-%m-%d") if entry.expires_at else "never"
        console.print(f"[green]Created {entry.kind} memory {entry.id}[/green] (expires: {expires})")

    asyncio.run(do_add())


@memory_group.command(name="list")
@project_option
@click.option("--bead", "bead_id", default=None, help="Filter by work item")
@click.option("--epic", "epic_id", default=None, help="Filter by epic")
@click.option("--kind", "kinds", multiple=True, type=click.Choice([k.value for k in MemoryKind]))
@click.option("--limit", default=settings.memory_limit, help="Number of entries to show")
@click.option("--all", "include_all", is_flag=True, help="Include deleted and expired entries")
def memory_list(
    project_path: Path,
    bead_id: str | None,
    epic_id: str | None,
    kinds: tuple[str, ...],
    limit: int,
    include_all: bool,
) -> None:
    """List memory entries, most relevant first."""

    async def list_all() -> None:
        db, store = _open_store(project_path)
        try:
            entries = await store.list_entries(
                _project_id(project_path),
                bead_id=bead_id,
                epic_id=epic_id,
                kinds=list(kinds) or None,
                limit=limit,
                include_deleted=include_all,
                include_expired=include_all,
            )
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()

        if not entries:
            console.print("[dim]No memory entries[/dim]")
            return

        table = Table(title=f"Memory ({len(entries)})")
        table.add_column("ID", style="cyan")
        table.add_column("Kind")
        table.add_column("Title")
        table.add_column("Scope")
        table.add_column("Score")
        table.add_column("Created")
        for entry in entries:
            title = entry.title if entry.deleted_at is None else f"[dim]{entry.title} (deleted)[/dim]"
            table.add_row(
                entry.id[:8],
                entry.kind,
                title,
                entry.scope_label or "project",
                f"{entry.relevance_score:.2f}",
                entry.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(list_all())


@memory_group.command(name="show")
@project_option
@click.argument("entry_id")
def memory_show(project_path: Path, entry_id: str) -> None:
    """Show one memory entry."""

    async def show() -> None:
        db, store = _open_store(project_path)
        try:
            entry = await store.require_entry(entry_id)
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()

        details = [
            f"Kind: [cyan]{entry.kind}[/cyan]",
            f"Scope: {entry.scope_label or 'project'}",
            f"Relevance: {entry.relevance_score:.2f}",
            f"Created: {entry.created_at.strftime('%Y-%m-%d %H:%M')}",
            f"Expires: {entry.expires_at.strftime('%Y-%m-%d') if entry.expires_at else 'never'}",
        ]
        if entry.deleted_at:
            details.append(f"[red]Deleted: {entry.deleted_at.strftime('%Y-%m-%d %H:%M')}[/red]")
        console.print(Panel("\n".join(details) + f"\n\n{entry.content}", title=entry.title))
        if entry.data:
            console.print_json(json.dumps(entry.data, default=str))

    asyncio.run(show())


@memory_group.command(name="search")
@project_option
@click.argument("query")
@click.option("--limit", default=20, help="Number of entries to show")
def memory_search(project_path: Path, query: str, limit: int) -> None:
    """Search titles and contents of live entries."""

    async def search() -> None:
        db, store = _open_store(project_path)
        try:
            entries = await store.search_entries(_project_id(project_path), query, limit=limit)
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()

        if not entries:
            console.print(f"[dim]No matches for {query!r}[/dim]")
            return
        for entry in entries:
            console.print(f"[cyan]{entry.id[:8]}[/cyan] [bold]{entry.title}[/bold] ({entry.kind})")

    asyncio.run(search())


@memory_group.command(name="delete")
@project_option
@click.argument("entry_id")
def memory_delete(project_path: Path, entry_id: str) -> None:
    """Soft-delete a memory entry."""

    async def do_delete() -> None:
        db, store = _open_store(project_path)
        try:
            deleted = await store.soft_delete_entry(entry_id)
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()
        if deleted:
            console.print(f"[green]Deleted {entry_id}[/green]")
        else:
            console.print(f"[yellow]No live entry {entry_id}[/yellow]")

    asyncio.run(do_delete())


@memory_group.command(name="brief")
@project_option
@click.option("--bead", "bead_id", default=None, help="Work item the brief is for")
@click.option("--epic", "epic_id", default=None, help="Epic of that work item")
@click.option("--tokens", "max_tokens", default=settings.memory_brief_tokens, help="Token budget")
def memory_brief(project_path: Path, bead_id: str | None, epic_id: str | None, max_tokens: int) -> None:
    """Render the memory brief an agent would receive."""

    async def show_brief() -> None:
        db, store = _open_store(project_path)
        try:
            brief = await generate_memory_brief(
                store,
                project_id=_project_id(project_path),
                bead_id=bead_id,
                epic_id=epic_id,
                max_tokens=max_tokens,
            )
        finally:
            await db.dispose()

        if not brief.text:
            console.print("[dim]No memories to brief[/dim]")
            return
        console.print(brief.text)
        console.print(
            f"[dim]{brief.included_count} entries, ~{brief.token_estimate} tokens, "
            f"{brief.truncated_count} omitted[/dim]"
        )

    asyncio.run(show_brief())


@memory_group.command(name="stats")
@project_option
def memory_stats(project_path: Path) -> None:
    """Entry counts by kind."""

    async def show_stats() -> None:
        db, store = _open_store(project_path)
        try:
            stats = await store.get_stats(_project_id(project_path))
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()

        table = Table(title="Memory Stats")
        table.add_column("Kind", style="cyan")
        table.add_column("Live", justify="right")
        for kind, count in sorted(stats["by_kind"].items()):
            table.add_row(kind, str(count))
        console.print(table)
        console.print(f"Total: {stats['total']}  Active: {stats['active']}  Deleted: {stats['deleted']}")

    asyncio.run(show_stats())


@memory_group.command(name="sweep")
@project_option
@click.option("--purge/--no-purge", default=True, help="Also hard-delete long soft-deleted entries")
def memory_sweep(project_path: Path, purge: bool) -> None:
    """Expire old entries and purge soft-deleted ones."""

    async def sweep() -> None:
        db, store = _open_store(project_path)
        try:
            expired = await store.expire_old_entries()
            purged = await store.purge_deleted_entries() if purge else 0
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()
        console.print(f"Expired {expired}, purged {purged}")

    asyncio.run(sweep())


@memory_group.command(name="action")
@project_option
@click.argument("label")
@click.argument("command")
@click.option("--bead", "bead_id", default=None, help="Work item the action belongs to")
@click.option("--profile", default="default", show_default=True, help="Profile name recorded with the report")
@click.option("--env", "env_pairs", multiple=True, help="Extra environment variable as KEY=VALUE")
def memory_action(
    project_path: Path, label: str, command: str, bead_id: str | None, profile: str, env_pairs: tuple[str, ...]
) -> None:
    """Run COMMAND in the project and keep its report in memory."""
    environment = {}
    for pair in env_pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        environment[key] = value

    async def do_run() -> None:
        db, store = _open_store(project_path)
        try:
            entry = await run_action(
                store,
                _project_id(project_path),
                label=label,
                command=command,
                working_directory=project_path.resolve(),
                profile=profile,
                environment=environment,
                bead_id=bead_id,
            )
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()
        style = "green" if entry.data.get("exit_code") == 0 else "red"
        console.print(format_action_summary(entry), style=style, markup=False)
        console.print(f"[dim]Report {entry.id}[/dim]")

    asyncio.run(do_run())


@memory_group.command(name="actions")
@project_option
@click.option("--bead", "bead_id", default=None, help="Filter by work item")
@click.option("--limit", default=20, help="Number of reports to show")
@click.option("--chat", "chat_entry_id", default=None, help="Print one report formatted for an agent chat")
def memory_actions(project_path: Path, bead_id: str | None, limit: int, chat_entry_id: str | None) -> None:
    """Recent action reports, or one report ready to paste into a chat."""

    async def show_actions() -> None:
        db, store = _open_store(project_path)
        try:
            if chat_entry_id:
                entry = await store.require_entry(chat_entry_id)
                console.print(format_action_for_chat(entry), markup=False, soft_wrap=True)
                await mark_action_sent_to_chat(store, entry.id)
                return
            project_id = _project_id(project_path)
            reports = await recent_action_reports(store, project_id, bead_id=bead_id, limit=limit)
            stats = await action_stats(store, project_id, bead_id=bead_id)
        except MemoryStoreError as exc:
            _fail(exc)
        finally:
            await db.dispose()

        if not reports:
            console.print("[dim]No action reports[/dim]")
            return
        table = Table(title=f"Actions ({len(reports)})")
        table.add_column("ID", style="cyan")
        table.add_column("Action")
        table.add_column("Exit", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Run at")
        for report in reports:
            data = report.data or {}
            table.add_row(
                report.id[:8],
                report.title,
                str(data.get("exit_code", "?")),
                f"{data.get('duration_ms', 0)}ms",
                report.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        console.print(
            f"{stats['success_count']} succeeded, {stats['failure_count']} failed, "
            f"average {stats['average_duration_ms']}ms"
        )

    asyncio.run(show_actions())


@memory_group.command(name="schema-check", help="Check memory DB schema readiness for current code.")
@project_option
def memory_schema_check(project_path: Path) -> None:
    async def check() -> None:
        db, _ = _open_store(project_path)
        try:
            if not db.exists():
                console.print(f"[yellow]No memory database at {db.path}[/yellow]")
                console.print("It is created on the first write, or run: `alembic upgrade head`")
                raise SystemExit(1)
            missing = await db.missing_tables()
        finally:
            await db.dispose()

        if missing:
            console.print(f"[red]Missing tables: {missing}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command(name="mcp")
@project_option
@click.option("--project-id", default=None, help="Project identifier (default: the directory name)")
def mcp_serve(project_path: Path, project_id: str | None) -> None:
    """Serve project memory to agents as MCP tools over stdio."""

    async def serve() -> None:
        db, store = _open_store(project_path)
        try:
            await create_server(store, project_id or _project_id(project_path)).run_stdio_async()
        finally:
            await db.dispose()

    asyncio.run(serve())


# =============================================================================
# Sessions
# =============================================================================


def _session_manager(project_path: Path, db: MemoryDatabase | None = None) -> SessionManager:
    memory_store = MemoryStore(db) if db is not None else None
    return SessionManager(project_path.resolve(), memory_store=memory_store)


@main.group(name="session")
def session_group() -> None:
    """Manage agent sessions."""
    pass


@session_group.command(name="create")
@project_option
@click.option("--bead", "bead_id", default=None, help="Work item the session is about")
@click.option("--agent", "agent_name", default=None, help="Agent name")
@click.option("--title", default=None, help="Session title")
def session_create(project_path: Path, bead_id: str | None, agent_name: str | None, title: str | None) -> None:
    """Create a draft session (with a memory brief when bound to a bead)."""

    async def do_create() -> None:
        db = MemoryDatabase.for_project(project_path.resolve())
        bead_store = SqliteBeadStore.for_project(project_path.resolve())
        manager = SessionManager(
            project_path.resolve(), memory_store=MemoryStore(db), bead_store=bead_store
        )
        try:
            session = await manager.create(
                _project_id(project_path), bead_id=bead_id, agent_name=agent_name, title=title
            )
        finally:
            await bead_store.dispose()
            await db.dispose()
        console.print(f"[green]Created session {session.id}[/green]")
        if session.memory_brief:
            console.print(f"[dim]Memory brief attached (~{session.memory_brief_tokens} tokens)[/dim]")

    asyncio.run(do_create())


@session_group.command(name="list")
@project_option
@click.option(
    "--status", "status_filter", type=click.Choice([s.value for s in SessionStatus]), default=None
)
def session_list(project_path: Path, status_filter: str | None) -> None:
    """List sessions, most recently active first."""
    manager = _session_manager(project_path)
    sessions = manager.list_sessions(status=status_filter)
    if not sessions:
        console.print("[dim]No sessions[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Bead")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    table.add_column("Last Activity")
    for session in sessions:
        table.add_row(
            session.id[:8],
            session.status.value,
            session.bead_id or "-",
            session.title or "-",
            str(session.metrics.message_count),
            session.last_activity_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@session_group.command(name="show")
@project_option
@click.argument("session_id")
@click.option("--messages", "message_limit", default=10, help="Number of recent messages to show")
def session_show(project_path: Path, session_id: str, message_limit: int) -> None:
    """Show a session and its latest messages."""
    manager = _session_manager(project_path)
    try:
        session = manager.require(session_id)
    except BeadsConsoleError as exc:
        _fail(exc)

    metrics = session.metrics
    console.print(
        Panel(
            f"Status: [cyan]{session.status.value}[/cyan]\n"
            f"Bead: {session.bead_id or '-'}\n"
            f"Agent: {session.agent_name or '-'}\n"
            f"Messages: {metrics.message_count} ({metrics.tool_call_count} tool calls)\n"
            f"Tokens: {metrics.total_input_tokens} in / {metrics.total_output_tokens} out\n"
            f"Cost: ${metrics.total_cost_usd:.4f}\n"
            f"Tags: {', '.join(session.tags) or '-'}",
            title=session.title or f"Session {session.id}",
        )
    )
    for message in manager.load_messages(session_id, limit=message_limit):
        console.print(f"[bold]{message.role.value}[/bold] {message.content}")


@session_group.command(name="append")
@project_option
@click.argument("session_id")
@click.argument("role", type=click.Choice([r.value for r in MessageRole]))
@click.argument("content")
def session_append(project_path: Path, session_id: str, role: str, content: str) -> None:
    """Append a message to a session."""

    async def do_append() -> None:
        manager = _session_manager(project_path)
        try:
            message = await manager.append_message(session_id, role, content)
        except BeadsConsoleError as exc:
            _fail(exc)
        console.print(f"[green]Appended message {message.id}[/green]")

    asyncio.run(do_append())


@session_group.command(name="pause")
@project_option
@click.argument("session_id")
def session_pause(project_path: Path, session_id: str) -> None:
    """Pause an active session."""

    async def do_pause() -> None:
        try:
            session = await _session_manager(project_path).pause(session_id)
        except BeadsConsoleError as exc:
            _fail(exc)
        console.print(f"Session {session.id} is {session.status.value}")

    asyncio.run(do_pause())


@session_group.command(name="resume")
@project_option
@click.argument("session_id")
def session_resume(project_path: Path, session_id: str) -> None:
    """Resume a paused session."""

    async def do_resume() -> None:
        try:
            session = await _session_manager(project_path).resume(session_id)
        except BeadsConsoleError as exc:
            _fail(exc)
        console.print(f"Session {session.id} is {session.status.value}")

    asyncio.run(do_resume())


@session_group.command(name="close")
@project_option
@click.argument("session_id")
@click.option("--summary", default=None, help="Summary stored with the session and its checkpoint")
def session_close(project_path: Path, session_id: str, summary: str | None) -> None:
    """Close a session, capturing a checkpoint memory."""

    async def do_close() -> None:
        db = MemoryDatabase.for_project(project_path.resolve())
        manager = _session_manager(project_path, db)
        try:
            session = await manager.close(session_id, summary)
        except BeadsConsoleError as exc:
            _fail(exc)
        finally:
            await db.dispose()
        console.print(f"[green]Closed session {session.id}[/green]")

    asyncio.run(do_close())


# =============================================================================
# Task runs
# =============================================================================

_UPDATE_STYLES = {
    UpdateType.STATUS.value: "cyan",
    UpdateType.AWAITING_INPUT.value: "yellow",
    UpdateType.EPIC_PROGRESS.value: "magenta",
    UpdateType.AUTH_EXPIRED.value: "red",
    UpdateType.NOTIFICATION.value: "bold green",
}


def _print_update(message: dict) -> None:
    kind = message["type"]
    data = message.get("data") or {}
    if kind == UpdateType.EVENT.value:
        event = data.get("event") or {}
        payload = event.get("data") or {}
        if event.get("type") == "output":
            console.print(payload.get("text", ""), end="" if payload.get("role") != "user" else "\n", markup=False)
        elif event.get("type") == "tool_use":
            console.print(f"\n[dim]> {payload.get('tool')}[/dim]")
        elif event.get("type") == "error":
            console.print(f"\n{payload.get('message')}", style="red", markup=False)
        return
    if kind == UpdateType.HEARTBEAT.value:
        return
    style = _UPDATE_STYLES.get(kind, "white")
    if kind == UpdateType.STATUS.value:
        text = f"{data.get('status')}: {data.get('reason') or ''}"
    elif kind == UpdateType.NOTIFICATION.value:
        text = f"{data.get('title')} - {data.get('body')}"
    elif kind == UpdateType.EPIC_PROGRESS.value:
        epic = data.get("epic") or {}
        text = f"epic {epic.get('current_index', 0)}/{epic.get('total_tasks', 0)}"
    else:
        text = data.get("message") or kind
    console.print(f"\n[{kind}] {text}", style=style, markup=False)


@main.group(name="run")
def run_group() -> None:
    """Drive agent task runs."""
    pass


@run_group.command(name="start")
@click.argument("project", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("work_item_id")
@click.option("--mode", type=click.Choice([m.value for m in RunMode]), default=RunMode.AUTONOMOUS.value)
@click.option(
    "--agent-profile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File with agent profile instructions",
)
@click.option("--redis/--no-redis", "use_redis", default=None, help="Mirror live updates to Redis")
def run_start(
    project: Path, work_item_id: str, mode: str, agent_profile: Path | None, use_redis: bool | None
) -> None:
    """Run an agent on a work item (or an epic's open children) in the foreground.

    In guided mode, type a reply when the agent waits for input. Ctrl-C stops the run.
    """

    async def drive() -> None:
        project_path = project.resolve()
        db = MemoryDatabase.for_project(project_path)
        bead_store = SqliteBeadStore.for_project(project_path)
        runner = TaskRunner(project_path, bead_store, memory_store=MemoryStore(db))
        if use_redis if use_redis is not None else settings.redis_mirror_enabled:
            from .redis_client import RedisMirror

            runner.hub.on_update(RedisMirror())
        runner.hub.start()

        profile = agent_profile.read_text() if agent_profile else None
        try:
            run = await runner.start(work_item_id, mode, agent_profile=profile)
            console.print(Panel(f"[bold]{run.issue_title}[/bold]\nMode: {run.mode.value}", title=f"Run {run.id}"))
            subscriber = runner.subscribe_run(run.id)
            notifications = runner.hub.subscribe(NOTIFICATIONS_CHANNEL)

            async for message in subscriber.messages():
                _print_update(message)
                while notifications.pending():
                    _print_update(json.loads(await notifications.get()))
                if run.is_terminal:
                    break
                if run.awaiting_user_input:
                    reply = await asyncio.to_thread(click.prompt, "\nReply (empty to stop)", default="")
                    if not reply:
                        await runner.stop(run.id)
                        break
                    await runner.send_message(run.id, reply)
            console.print(f"\nRun {run.status.value}: {run.completion_reason or '-'}")
        except BeadsConsoleError as exc:
            _fail(exc)
        finally:
            await runner.shutdown()
            await runner.hub.stop()
            await bead_store.dispose()
            await db.dispose()

    try:
        asyncio.run(drive())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; run stopped[/yellow]")


if __name__ == "__main__":
    main()
