"""Terminal output helpers using Rich."""

from rich.console import Console
from rich.table import Table

from .consumer import ModelInfo

# Global console instance
console = Console()


def print_success(message: str):
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str):
    """Print an error message."""
    console.print(f"[red]✗[/red] {message}")


def print_info(message: str):
    """Print an info message."""
    console.print(f"[cyan]→[/cyan] {message}")


def print_warning(message: str):
    """Print a warning message."""
    console.print(f"[yellow]![/yellow] {message}")


def print_token(token: str):
    """Print a streamed fragment as-is (no markup, no newline)."""
    console.print(token, end="", markup=False, highlight=False, soft_wrap=True)


def models_table(models: list[ModelInfo]) -> Table:
    """Table of published models."""
    table = Table(show_header=True, header_style="bold magenta", box=None)
    table.add_column("MODEL", style="cyan")
    table.add_column("OWNER")
    table.add_column("ID", style="dim")
    for m in models:
        table.add_row(m.id, m.owned_by, m.object)
    return table
