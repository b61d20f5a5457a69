"""Task manager CLI using Typer."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .client import TaskManagerClient, TaskManagerError
from .config import ManagerConfig

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(
    name="task-manager",
    help="Lifecycle control plane for Twitter client sessions",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", help="Path to a YAML config file"),
]
UrlOption = Annotated[
    Optional[str],
    typer.Option("--url", help="Task manager base URL (default: from config)"),
]


def _configure_logging(verbose: bool) -> None:
    log_format = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=log_format)


def _client(config: ManagerConfig, url: str | None) -> TaskManagerClient:
    base_url = url or f"http://127.0.0.1:{config.port}"
    return TaskManagerClient(base_url, admin_api_key=config.admin_api_key)


def _call(config: ManagerConfig, url: str | None, method: str, *args: Any) -> Any:
    async def _run() -> Any:
        client = _client(config, url)
        try:
            return await getattr(client, method)(*args)
        finally:
            await client.close()

    try:
        return asyncio.run(_run())
    except TaskManagerError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None


def _print_task(task: dict[str, Any]) -> None:
    table = Table(show_header=False, box=None)
    table.add_column(style="cyan")
    table.add_column()
    for key in ("id", "title", "agent_id", "owner_id", "action", "status", "created_by"):
        table.add_row(key, str(task.get(key, "")))
    table.add_row("updated_at", str(task.get("updated_at", "")))
    if task.get("pause_until"):
        table.add_row("pause_until", str(task["pause_until"]))
    if task.get("tags"):
        table.add_row("tags", ", ".join(task["tags"]))
    if task.get("running_signal", {}).get("start_failed_for_multiple_times"):
        table.add_row("breaker", "[red]start failed for multiple times[/red]")
    if task.get("last_error"):
        table.add_row("last_error", task["last_error"]["message"])
    console.print(table)


@app.command()
def serve(
    config_path: ConfigOption = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Port")] = None,
    no_watcher: Annotated[
        bool, typer.Option("--no-watcher", help="Serve the API without reconciliation")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Run the control-plane API and this worker's watcher."""
    import uvicorn

    from .web.app import create_app

    _configure_logging(verbose)
    config = ManagerConfig.load(config_path)
    if host:
        config.host = host
    if port:
        config.port = port
    if no_watcher:
        config.watcher_enabled = False

    console.print(f"[cyan]Worker {config.worker_id}[/cyan] on {config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


@app.command()
def status(
    title: Annotated[str, typer.Argument(help="Task title (username-owner)")],
    config_path: ConfigOption = None,
    url: UrlOption = None,
) -> None:
    """Show a task's stored state."""
    config = ManagerConfig.load(config_path)
    _print_task(_call(config, url, "get_task_status", title))


@app.command()
def stop(
    title: Annotated[str, typer.Argument(help="Task title (username-owner)")],
    config_path: ConfigOption = None,
    url: UrlOption = None,
) -> None:
    """Set a task's desired action to stop."""
    config = ManagerConfig.load(config_path)
    task = _call(config, url, "stop_task", title)
    console.print(f"[green]v[/green] {task['title']} action set to {task['action']}")


@app.command()
def reset(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    action: Annotated[
        Optional[str], typer.Option("--action", "-a", help="New action: start/stop/restart")
    ] = None,
    config_path: ConfigOption = None,
    url: UrlOption = None,
) -> None:
    """Clear a task's start-failure flag, optionally changing its action."""
    config = ManagerConfig.load(config_path)
    data = {"action": action} if action else {}
    task = _call(config, url, "update_task", task_id, data)
    console.print(f"[green]v[/green] {task['title']} reset")
    _print_task(task)


@app.command("add-proxies")
def add_proxies(
    path: Annotated[Path, typer.Argument(help="JSON file with a list of proxies")],
    config_path: ConfigOption = None,
    url: UrlOption = None,
) -> None:
    """Add HTTP proxies to the shared pool."""
    config = ManagerConfig.load(config_path)
    try:
        proxies = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}:[/red] {e}")
        raise typer.Exit(1) from None

    inserted = _call(config, url, "add_http_proxies", proxies)
    console.print(f"[green]v[/green] {inserted} new proxies added")


if __name__ == "__main__":
    app()
