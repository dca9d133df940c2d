"""
CLI for reading and patching project state, appending and verifying history,
managing leases, and moving snapshots in and out of the store.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from devstate.core.config import Settings
from devstate.core.errors import ConfigurationError, DevStateError, ValidationError
from devstate.engine import DevStateEngine

app = typer.Typer(
    name="devstate",
    help="Canonical project state with a tamper-evident, HMAC-chained history",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides DEVSTATE_DB_PATH env var)",
    ),
    schema: Optional[Path] = typer.Option(
        None,
        "--schema",
        help="Path to STATE.schema.json (overrides DEVSTATE_SCHEMA_PATH env var)",
    ),
    export_dir: Optional[Path] = typer.Option(
        None,
        "--export-dir",
        help="Directory for state.json / history.json (default: <repo>/.trae)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
):
    """Manage DevState project state and audit history."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
        )
    ctx.obj = {"db": db, "schema": schema, "export_dir": export_dir}


def _parse_json_arg(raw: str, what: str) -> Any:
    """Accept inline JSON or @path/to/file.json."""
    try:
        if raw.startswith("@"):
            return json.loads(Path(raw[1:]).read_text(encoding="utf-8"))
        return json.loads(raw)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid {what} JSON: {e}") from e


def _run(ctx: typer.Context, action: Callable[[DevStateEngine], Any]) -> Any:
    """
    Open the engine, run one request, print its JSON result.
    Exit codes: 0 ok, 1 request error (typed), 2 configuration error.
    """
    opts = ctx.obj or {}
    try:
        settings = Settings.from_env(
            db_path=opts.get("db"),
            schema_path=opts.get("schema"),
            export_dir=opts.get("export_dir"),
        )
        engine = DevStateEngine.open(settings)
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration error: {e.message}[/]")
        console.print_json(data=e.to_dict())
        raise typer.Exit(2)

    try:
        result = action(engine)
    except DevStateError as e:
        console.print_json(data=e.to_dict())
        raise typer.Exit(1)
    finally:
        engine.close()

    if result is not None:
        console.print_json(data=result)
    return result


@app.command("state")
def get_state(ctx: typer.Context):
    """Show the current state document and its checksum."""
    _run(ctx, lambda eng: eng.get_state().to_dict())


@app.command()
def seed(
    ctx: typer.Context,
    document: str = typer.Argument("{}", help="Initial state as JSON or @file.json"),
):
    """Provision the singleton state document (no-op if already seeded)."""
    _run(ctx, lambda eng: eng.seed_state(_parse_json_arg(document, "state")).to_dict())


@app.command()
def update(
    ctx: typer.Context,
    patch: str = typer.Argument(..., help="Top-level patch as JSON or @file.json"),
    actor: str = typer.Option("cli", "--actor", help="Actor recorded in the history entry"),
):
    """Shallow-merge a patch into the state (nested objects are replaced, not merged)."""
    def action(eng: DevStateEngine):
        doc = eng.update_state(_parse_json_arg(patch, "patch"), actor=actor)
        return {"ok": True, "new_checksum": doc.checksum}

    _run(ctx, action)


@app.command()
def append(
    ctx: typer.Context,
    entry: str = typer.Argument(..., help='{"actor", "action", "cp_from"?, "cp_to"?, "state_checksum"?, "metadata"?}'),
):
    """Append a history entry to the chain."""
    def action(eng: DevStateEngine):
        stored = eng.append_history(_parse_json_arg(entry, "entry"))
        return {"ok": True, "id": stored.id, "new_hmac": stored.hmac}

    _run(ctx, action)


@app.command()
def tombstone(
    ctx: typer.Context,
    entry_id: int = typer.Argument(..., help="History entry id to mark deleted"),
    actor: str = typer.Option("cli", "--actor"),
):
    """Soft-delete a history entry by appending a delete_history marker."""
    def action(eng: DevStateEngine):
        marker = eng.tombstone_history(entry_id, actor=actor)
        return {"ok": True, "tombstoned": entry_id, "marker_id": marker.id}

    _run(ctx, action)


@app.command()
def search(
    ctx: typer.Context,
    actor: Optional[str] = typer.Option(None, "--actor"),
    action_name: Optional[str] = typer.Option(None, "--action"),
    since: Optional[str] = typer.Option(None, "--since", help="ISO timestamp (inclusive)"),
    until: Optional[str] = typer.Option(None, "--until", help="ISO timestamp (inclusive)"),
    limit: int = typer.Option(1000, "--limit", "-n"),
    hide_tombstoned: bool = typer.Option(False, "--hide-tombstoned"),
):
    """Search history, newest first."""
    _run(ctx, lambda eng: [
        e.to_dict() for e in eng.search_history(
            actor=actor,
            action=action_name,
            since=since,
            until=until,
            limit=limit,
            include_tombstoned=not hide_tombstoned,
        )
    ])


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent entries to show"),
):
    """Show the most recent history entries as a table."""
    def action(eng: DevStateEngine):
        entries = eng.ledger.entries(limit)
        tombstoned = eng.ledger.tombstoned_ids()
        if not entries:
            console.print("[yellow]No history entries yet.[/]")
            return None

        table = Table(title="History")
        table.add_column("ID", justify="right")
        table.add_column("Timestamp")
        table.add_column("Actor")
        table.add_column("Action")
        table.add_column("HMAC")
        for e in entries:
            action_label = f"[strike]{e.action}[/]" if e.id in tombstoned else e.action
            table.add_row(str(e.id), e.ts, e.actor, action_label, e.hmac[:12] + "…")
        console.print(table)
        return None

    _run(ctx, action)


@app.command()
def verify(
    ctx: typer.Context,
    limit: int = typer.Argument(0, help="Verify only the last N entries (0 = all)"),
):
    """Verify the HMAC chain. Exits 1 when a mismatch is found."""
    result = _run(ctx, lambda eng: eng.verify(limit).to_dict())
    if not result["ok"]:
        raise typer.Exit(1)


@app.command("export")
def export_files(
    ctx: typer.Context,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Directory (default: export dir)"),
):
    """Write state.json and history.json snapshots."""
    _run(ctx, lambda eng: {"ok": True, "files_written": [str(p) for p in eng.export_files(output)]})


@app.command("import")
def import_files(
    ctx: typer.Context,
    source: Optional[Path] = typer.Option(None, "--from", help="Directory (default: export dir)"),
):
    """Replace state and history from snapshots. Rejects any chain that does not verify."""
    _run(ctx, lambda eng: eng.import_files(source))


@app.command()
def lock(
    ctx: typer.Context,
    scope: str = typer.Argument("global"),
    ttl: float = typer.Argument(30, help="Lease lifetime in seconds"),
    actor: str = typer.Option("cli", "--actor"),
    exclusive: bool = typer.Option(False, "--exclusive", help="Fail if the scope already has a live lease"),
):
    """Acquire an advisory lease on a scope."""
    _run(ctx, lambda eng: eng.lock(scope, ttl, actor=actor, exclusive=exclusive).to_dict())


@app.command()
def unlock(ctx: typer.Context, lock_id: str = typer.Argument(...)):
    """Release a lease (no-op if it is already gone)."""
    _run(ctx, lambda eng: {"ok": True, "released": eng.unlock(lock_id)})


@app.command("cleanup-locks")
def cleanup_locks(ctx: typer.Context):
    """Delete expired leases."""
    _run(ctx, lambda eng: {"ok": True, "removed": eng.cleanup_locks()})


@app.command("rotate-key")
def rotate_key(
    ctx: typer.Context,
    key_id: str = typer.Argument(...),
    secret: str = typer.Option(..., "--secret", prompt=True, hide_input=True),
):
    """Install a new active signing key. Past entries keep their original key."""
    _run(ctx, lambda eng: {"ok": True, "active_key": eng.rotate_key(key_id, secret).id})


@app.command()
def archive(
    ctx: typer.Context,
    cutoff: str = typer.Argument(..., help="Archive entries with ts earlier than this ISO timestamp"),
    actor: str = typer.Option("cli", "--actor"),
):
    """Move old history entries into cold storage."""
    _run(ctx, lambda eng: eng.archive(cutoff, actor=actor).to_dict())


@app.command("verify-archive")
def verify_archive(ctx: typer.Context, path: Path = typer.Argument(...)):
    """Re-verify an archived history segment offline."""
    result = _run(ctx, lambda eng: eng.verify_archive(path).to_dict())
    if not result["ok"]:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
