import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cloudvault.models import REDACTED

console = Console()
err_console = Console(stderr=True)


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    err_console.print(f"[red]✗[/red] {message}", style="red")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {message}", style="yellow")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def _preview(value: Any, width: int = 50) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:width] + "..." if len(text) > width else text


def _format_tags(tags: dict[str, str]) -> str:
    return ", ".join(f"{k}={v}" for k, v in tags.items())


def create_configurations_table(configurations: list[Any]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")

    table.add_column("Key", style="cyan", no_wrap=False)
    table.add_column("Type", style="blue")
    table.add_column("Version", justify="right", style="yellow")
    table.add_column("Value", style="green")
    table.add_column("Tags", style="magenta")
    table.add_column("Updated", style="dim")

    for config in configurations:
        value = "•" * 8 if config.is_secret and config.value == REDACTED else _preview(config.value)
        table.add_row(
            config.key,
            config.type.value,
            str(config.version),
            value,
            _format_tags(config.tags),
            config.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    return table


def create_secrets_table(secrets: list[Any]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")

    table.add_column("Name", style="cyan")
    table.add_column("Path", style="dim", no_wrap=False)
    table.add_column("Type", style="blue")
    table.add_column("Version", justify="right", style="yellow")
    table.add_column("Rotation", style="green")
    table.add_column("Updated", style="dim")

    for secret in secrets:
        rotation = secret.rotation_config
        rotation_label = (
            f"{rotation.type} / {rotation.interval:g}d" if rotation and rotation.enabled else "-"
        )
        table.add_row(
            secret.name,
            secret.path,
            secret.type.value,
            str(secret.version),
            rotation_label,
            secret.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    return table


def create_history_table(versions: list[Any]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")

    table.add_column("Version", justify="right", style="yellow")
    table.add_column("Created", style="cyan")
    table.add_column("Created By", style="blue")
    table.add_column("Change", style="dim")
    table.add_column("Value Preview", style="dim")

    for version in versions:
        table.add_row(
            str(version.version),
            version.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            version.created_by or "unknown",
            version.change_description or "",
            _preview(version.value),
        )

    return table


def create_audit_table(entries: list[Any]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")

    table.add_column("#", justify="right", style="dim")
    table.add_column("Time", style="cyan")
    table.add_column("Action", style="blue")
    table.add_column("Principal", style="magenta")
    table.add_column("Result")

    for entry in entries:
        result = "[green]ok[/green]" if entry.success else f"[red]{entry.error_message or 'failed'}[/red]"
        table.add_row(
            str(entry.id),
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            entry.principal_id,
            result,
        )

    return table


def print_panel(title: str, content: str, style: str = "blue") -> None:
    panel = Panel(content, title=title, border_style=style)
    console.print(panel)
