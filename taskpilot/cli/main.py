"""
SOLE RESPONSIBILITY: Defines all Typer CLI commands (run, status, logs, exec, ...),
handles user input, and makes HTTP requests to the server's REST API.
"""

import time
from typing import Annotated, Optional

import typer
import httpx
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .config import get_server_url

app = typer.Typer(
    name="taskpilot",
    help="""
[bold cyan]TaskPilot[/bold cyan] - plan and run goals with a local model

[bold yellow]Quick Start[/bold yellow]
  $ taskpilot server
  $ taskpilot run "collect the release notes of the last three versions" --watch
  $ taskpilot sessions
""",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

console = Console()

TERMINAL_STATUSES = {"COMPLETED", "FAILED", "CANCELLED"}
STATUS_COLORS = {
    "PENDING": "yellow",
    "IN_PROGRESS": "blue",
    "COMPLETED": "green",
    "FAILED": "red",
    "CANCELLED": "dim",
}


def version_callback(value: bool):
    if value:
        from taskpilot import __version__

        console.print(f"[bold green]TaskPilot[/bold green] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
):
    """TaskPilot command line client."""


def _client() -> httpx.Client:
    return httpx.Client(base_url=get_server_url(), timeout=30.0)


def _request(method: str, path: str, **kwargs):
    """
    Perform one API call and return the decoded JSON body.
    Connection problems and error responses end the command with exit code 1.
    """
    try:
        with _client() as client:
            response = client.request(method, path, **kwargs)
    except httpx.ConnectError:
        console.print(f"[red]❌ Cannot reach the server at {get_server_url()}[/red]")
        console.print("[dim]Start it with:[/dim] [bright_white]taskpilot server[/bright_white]")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]Request failed: {e}[/red]")
        raise typer.Exit(1)

    if response.is_error:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        prefix = "❌" if response.status_code == 404 else f"Error ({response.status_code}):"
        console.print(f"[red]{prefix} {detail}[/red]")
        raise typer.Exit(1)
    return response.json()


def _status_text(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _task_table(task: dict) -> Table:
    table = Table(title=f"Task {task['id']}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Sub-task", style="white")
    table.add_column("Status")

    for sub_task in task.get("sub_tasks", []):
        table.add_row(str(sub_task["order"] + 1), sub_task["title"], _status_text(sub_task["status"]))

    table.caption = f"{task['title']} - {task['status']}"
    return table


# Tasks


@app.command(rich_help_panel="Tasks")
def run(
    goal: Annotated[str, typer.Argument(help="What you want done")],
    description: Annotated[Optional[str], typer.Option("--description", "-d", help="Extra details for the planner")] = None,
    watch: Annotated[bool, typer.Option("--watch", "-w", help="Follow progress until the task finishes")] = False,
):
    """Submit a goal; the server plans and runs it in the background."""
    task = _request("POST", "/api/v1/tasks", json={"title": goal, "description": description})

    console.print(f"\n[green]✓[/green] Task created with ID: [bold cyan]{task['id']}[/bold cyan]")
    console.print(f"Status: {_status_text(task['status'])}")

    if watch:
        watch_status(task["id"])
    else:
        console.print(f"\n[dim]💡 Check progress with:[/dim] [bright_white]taskpilot status {task['id']}[/bright_white]")


def watch_status(task_id: str, interval: float = 2.0):
    """Live view of a task until it reaches a terminal status."""
    with Live(console=console, refresh_per_second=2) as live:
        while True:
            task = _request("GET", f"/api/v1/tasks/{task_id}")
            live.update(_task_table(task))
            if task["status"] in TERMINAL_STATUSES:
                break
            time.sleep(interval)


@app.command(rich_help_panel="Tasks")
def status(task_id: Annotated[str, typer.Argument(help="Task ID")]):
    """Show a task and its sub-tasks."""
    task = _request("GET", f"/api/v1/tasks/{task_id}")
    console.print(_task_table(task))

    if task.get("description"):
        console.print(Panel(task["description"], title="Description", border_style="dim"))
    if task.get("sandbox_session_id"):
        console.print(f"[dim]Sandbox session: {task['sandbox_session_id']}[/dim]")


@app.command("list", rich_help_panel="Tasks")
def list_tasks(
    status_filter: Annotated[Optional[str], typer.Option("--status", "-s", help="Only tasks with this status")] = None,
):
    """List tasks, newest first."""
    params = {"status": status_filter.upper()} if status_filter else None
    tasks = _request("GET", "/api/v1/tasks", params=params)

    if not tasks:
        console.print("\n[yellow]📭 No tasks found yet![/yellow]")
        console.print('[dim]Create one with:[/dim] taskpilot run "your goal"\n')
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="bold cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created", style="green")
    table.add_column("Title", style="white")

    for task in tasks:
        sub_tasks = task.get("sub_tasks", [])
        done = sum(1 for s in sub_tasks if s["status"] == "COMPLETED")
        title = task["title"]
        table.add_row(
            task["id"],
            _status_text(task["status"]),
            f"{done}/{len(sub_tasks)}",
            task["created_at"][:19],
            title[:60] + "..." if len(title) > 60 else title,
        )

    console.print(table)


@app.command(rich_help_panel="Tasks")
def logs(task_id: Annotated[str, typer.Argument(help="Task ID")]):
    """Show the audit log of a task, newest first."""
    entries = _request("GET", f"/api/v1/tasks/{task_id}/logs")

    table = Table(title=f"Logs for task {task_id}")
    table.add_column("Time", style="green")
    table.add_column("Level")
    table.add_column("Message", style="white")

    for entry in entries:
        level = entry["level"]
        style = "red" if level in ("ERROR", "CRITICAL") else "yellow" if level == "WARNING" else "cyan"
        table.add_row(entry["created_at"][:19], f"[{style}]{level}[/{style}]", entry["message"])

    console.print(table)


@app.command(rich_help_panel="Tasks")
def cancel(task_id: Annotated[str, typer.Argument(help="Task ID")]):
    """Cancel a running or pending task."""
    task = _request("POST", f"/api/v1/tasks/{task_id}/cancel")
    console.print(f"[green]✓[/green] Task {task['id']} is now {_status_text(task['status'])}")


# Sandbox


@app.command(rich_help_panel="Sandbox")
def sessions():
    """List sandbox sessions."""
    items = _request("GET", "/api/v1/sandbox/sessions")
    if not items:
        console.print("\n[yellow]No sandbox sessions.[/yellow]\n")
        return

    table = Table(title="Sandbox sessions")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name", style="white")
    table.add_column("Status")
    table.add_column("Isolated", justify="center")
    table.add_column("Working directory", style="dim")

    for item in items:
        color = "green" if item["status"] == "active" else "dim"
        table.add_row(
            item["id"],
            item["name"],
            f"[{color}]{item['status']}[/{color}]",
            "✓" if item["is_isolated"] else "",
            item["working_directory"],
        )

    console.print(table)


@app.command("exec", rich_help_panel="Sandbox")
def exec_command(
    session_id: Annotated[str, typer.Argument(help="Sandbox session ID")],
    command: Annotated[str, typer.Argument(help="Command line to run")],
    timeout: Annotated[Optional[float], typer.Option("--timeout", "-t", help="Seconds before the command is killed")] = None,
):
    """Run a command inside a sandbox session and print its output."""
    payload = {"command": command}
    if timeout:
        payload["timeout"] = timeout
    result = _request("POST", f"/api/v1/sandbox/sessions/{session_id}/execute", json=payload, timeout=None)

    if result["stdout"]:
        console.print(result["stdout"], end="", markup=False, highlight=False)
    if result["stderr"]:
        console.print(f"[red]{result['stderr']}[/red]", end="" if result["stderr"].endswith("\n") else "\n")

    color = "green" if result["success"] else "red"
    console.print(f"[{color}]exit {result['exit_code']}[/{color}] [dim]in {result['execution_time']:.0f} ms[/dim]")
    if not result["success"]:
        raise typer.Exit(1)


@app.command(rich_help_panel="Sandbox")
def cleanup(
    days: Annotated[Optional[int], typer.Option("--days", "-d", help="Remove sessions idle for more than this many days")] = None,
):
    """Remove stale sandbox sessions and their files."""
    params = {"older_than_days": days} if days is not None else None
    result = _request("POST", "/api/v1/sandbox/cleanup", params=params)

    console.print(
        f"[green]✓[/green] Removed {result['deleted_sessions']} sessions "
        f"({result['deleted_files']} files)"
    )
    for error in result["errors"]:
        console.print(f"[red]  • {error}[/red]")


# Server


@app.command(rich_help_panel="Server")
def server(
    host: Annotated[Optional[str], typer.Option("--host", "-h", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Port")] = None,
):
    """Run the API server in the foreground."""
    import uvicorn

    from taskpilot.server.config import get_config

    config = get_config()
    host = host or config.server.host
    port = port or config.server.port

    console.print("\n[bold cyan]🚀 TaskPilot Server[/bold cyan]")
    console.print(f"[dim]Listening on http://{host}:{port} - model {config.model.name} at {config.model.host}[/dim]\n")
    uvicorn.run("taskpilot.server.main:app", host=host, port=port, log_level=config.server.log_level.lower())


if __name__ == "__main__":
    app()
