#!/usr/bin/env python3
"""
Extractor - turn-based entity extraction through a chat web UI

Usage:
    python extractor.py auth                  # Log in to the chat UI (saves browser profile)
    python extractor.py ingest FILE [FILE..]  # Add JSON batch files to the queue
    python extractor.py start                 # Start (or resume) processing
    python extractor.py stop                  # Stop processing
    python extractor.py status                # Show queue, lock and results
    python extractor.py reset [BATCH_ID]      # Reset one batch, or all of them
    python extractor.py delete BATCH_ID       # Remove a batch
    python extractor.py clear-completed       # Remove completed batches
    python extractor.py export                # Write results to CSV
    python extractor.py clear-results         # Delete all stored results
    python extractor.py log [N]               # Show the last N operator log lines

The control process (python run_control.py) and worker process
(python run_worker.py) must be running for everything except auth.
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

import httpx
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from shared.config import ControlConfig, SurfaceConfig, load_config

console = Console()


def _client() -> httpx.Client:
    control = ControlConfig.from_dict(load_config())
    return httpx.Client(base_url=f"http://{control.host}:{control.port}", timeout=30.0)


def _call(method: str, path: str, **kwargs) -> dict:
    """Call the control API; exits with a message on failure."""
    try:
        with _client() as client:
            response = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[red]Control process not reachable: {e}[/red]")
        console.print("Start it with: python run_control.py")
        sys.exit(1)

    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        console.print(f"[red]Error {response.status_code}: {escape(str(detail))}[/red]")
        sys.exit(1)
    return response.json()


def cmd_auth(args):
    """Open the browser profile for manual login."""
    from browser.base import authenticate

    config = SurfaceConfig.from_dict(load_config())
    console.print("\n[bold]Starting authentication...[/bold]\n")
    asyncio.run(authenticate(config))
    console.print("\n[green]✓ Session saved![/green]\n")


def cmd_ingest(args):
    """Add one batch per JSON file."""
    if not args:
        console.print("Usage: extractor.py ingest FILE [FILE ...]", style="red", markup=False)
        sys.exit(1)

    files = []
    for name in args:
        path = Path(name)
        try:
            tasks = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            console.print(f"[red]✗ Error reading {path.name}: {e}[/red]")
            continue
        if not isinstance(tasks, list):
            console.print(f"[red]✗ {path.name} is not a JSON array[/red]")
            continue
        files.append({"filename": path.name, "tasks": tasks})
        console.print(f"[green]✓[/green] {path.name} ({len(tasks)} tasks)")

    if not files:
        return
    result = _call("POST", "/batches", json=files)
    console.print(f"\nQueued {len(result['batch_ids'])} batches.")


def cmd_start(args):
    result = _call("POST", "/start")
    if result["status"] == "busy":
        console.print("[yellow]A turn is already in flight.[/yellow]")
    else:
        console.print("[green]Processing started.[/green]")


def cmd_stop(args):
    _call("POST", "/stop")
    console.print("[yellow]Processing stopped.[/yellow]")


def cmd_status(args):
    """Show queue, lock and results."""
    status = _call("GET", "/status")
    state = status["state"]

    lock = "free"
    if state["is_typing"]:
        age = status.get("lock_age") or 0
        lock = f"[yellow]held[/yellow] for {age:.0f}s"
        if state.get("current_batch_id"):
            lock += f" (task {state['current_task_index'] + 1} of {state['current_batch_id']})"
    console.print(Panel(
        f"[bold]Phase:[/bold] {status['phase']}\n"
        f"[bold]Lock:[/bold] {lock}\n"
        f"[bold]Surface:[/bold] {state.get('surface_handle') or '-'}\n"
        f"[bold]Results:[/bold] {status['results_count']}"
    ))

    table = Table(title="Batches")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("File")
    table.add_column("Progress", justify="right")
    table.add_column("Status")
    colors = {"pending": "white", "processing": "cyan", "complete": "green"}
    for batch in status["batches"]:
        table.add_row(
            batch["id"],
            batch["name"],
            batch["filename"],
            f"{batch['processed_count']}/{batch['total_count']}",
            f"[{colors.get(batch['status'], 'white')}]{batch['status']}[/]",
        )
    console.print(table)

    for name, fire_at in status["timers"].items():
        if fire_at:
            when = datetime.fromtimestamp(fire_at).strftime("%H:%M:%S")
            console.print(f"  • timer {name}: fires at {when}")


def cmd_reset(args):
    if args:
        batch = _call("POST", f"/batches/{args[0]}/reset")
        console.print(f"Reset batch '{batch['name']}'.")
    else:
        result = _call("POST", "/reset")
        console.print(f"Reset {result['reset']} batches.")


def cmd_delete(args):
    if not args:
        console.print("Usage: extractor.py delete BATCH_ID", style="red", markup=False)
        sys.exit(1)
    _call("DELETE", f"/batches/{args[0]}")
    console.print(f"Deleted batch {args[0]}.")


def cmd_clear_completed(args):
    result = _call("POST", "/batches/clear-completed")
    console.print(f"Removed {len(result['removed'])} completed batches.")


def cmd_export(args):
    result = _call("POST", "/export")
    if result["path"]:
        console.print(f"[green]Exported {result['rows']} rows to {result['path']}[/green]")
    else:
        console.print("[yellow]No results to export.[/yellow]")


def cmd_clear_results(args):
    _call("DELETE", "/results")
    console.print("Results cleared.")


def cmd_log(args):
    limit = int(args[0]) if args else 50
    for line in _call("GET", "/log", params={"limit": limit})["lines"]:
        style = "cyan" if line["source"] == "worker" else "white"
        console.print(f"[dim]{line['timestamp']}[/dim] [{style}]{escape(line['message'])}[/]")


def cmd_help(args=None):
    """Show help."""
    console.print(__doc__, markup=False)


COMMANDS = {
    "auth": cmd_auth,
    "ingest": cmd_ingest,
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "reset": cmd_reset,
    "delete": cmd_delete,
    "clear-completed": cmd_clear_completed,
    "export": cmd_export,
    "clear-results": cmd_clear_results,
    "log": cmd_log,
    "help": cmd_help,
    "--help": cmd_help,
    "-h": cmd_help,
}


def main():
    if len(sys.argv) < 2:
        cmd_help()
        return

    cmd = sys.argv[1].lower()

    if cmd in COMMANDS:
        COMMANDS[cmd](sys.argv[2:])
    else:
        console.print(f"[red]Unknown command: {cmd}[/red]")
        cmd_help()


if __name__ == "__main__":
    main()
