"""Terminal output for jenkins-kube.

Everything the tool prints goes through the shared Rich console below: stage
headers, one-line status messages, spinners for slow calls and the tables
printed when a run ends. Secrets never pass through here unmasked.
"""

from collections.abc import Generator, Iterable
from contextlib import contextmanager

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.theme import Theme

console = Console(
    theme=Theme(
        {
            "info": "cyan",
            "success": "green",
            "warning": "yellow",
            "error": "red bold",
            "highlight": "cyan bold",
            "muted": "dim",
            "stage": "magenta bold",
        }
    )
)


def _emit(style: str, symbol: str, message: str) -> None:
    console.print(f"[{style}]{symbol}[/{style}] {message}")


def info(message: str) -> None:
    """Print a neutral status line.

    Args:
        message: Text after the info symbol; may contain Rich markup.

    """
    _emit("info", "ℹ", message)


def success(message: str) -> None:
    """Print a line for something that converged or completed.

    Args:
        message: Text after the check mark; may contain Rich markup.

    """
    _emit("success", "✓", message)


def warning(message: str) -> None:
    """Print a line for a condition the run tolerates but the operator should see.

    Args:
        message: Text after the warning sign; may contain Rich markup.

    """
    _emit("warning", "⚠", message)


def error(message: str) -> None:
    """Print a failure line.

    Args:
        message: Text after the cross symbol; may contain Rich markup.

    """
    _emit("error", "✗", message)


def action(message: str) -> None:
    """Print a line for a change the run is about to make.

    Args:
        message: Text after the arrow symbol; may contain Rich markup.

    """
    _emit("info", "→", message)


def step(message: str) -> None:
    """Print a dimmed detail line under the current stage.

    Args:
        message: Text after the bullet symbol; may contain Rich markup.

    """
    _emit("muted", "•", message)


def stage(number: int, title: str) -> None:
    """Print the header rule for a pipeline stage.

    Args:
        number: 1-based position of the stage.
        title: Stage title, e.g. 'Apply objects'.

    """
    console.print(Rule(f"[stage]{number}. {title}[/stage]", align="left", style="muted"))


def highlight(text: str) -> str:
    """Wrap text in highlight markup for use inside another message."""
    return f"[highlight]{text}[/highlight]"


@contextmanager
def spinner(message: str) -> Generator[None, None, None]:
    """Show a spinner with message for the duration of the block."""
    with console.status(f"[info]{message}[/info]", spinner="dots"):
        yield


def applied_table(title: str, rows: Iterable[tuple[str, str]]) -> None:
    """Print objects and their apply outcome.

    Args:
        title: Table title.
        rows: (object identity, outcome) pairs; outcome may contain markup.

    """
    table = Table(title=title, title_justify="left", show_edge=False)
    table.add_column("Object", style="bold")
    table.add_column("Outcome", style="cyan")
    for identity, outcome in rows:
        table.add_row(identity, outcome)
    console.print(table)


def summary_panel(title: str, items: dict[str, str], *, failed: bool = False) -> None:
    """Print the end-of-run panel.

    Args:
        title: Panel title.
        items: Label -> value rows.
        failed: Draw the border in red instead of green.

    """
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column(style="cyan")
    for label, value in items.items():
        grid.add_row(f"{label}:", value)

    console.print(Panel(grid, title=f"[bold]{title}[/bold]", border_style="red" if failed else "green"))


def newline() -> None:
    """Print an empty line between output sections."""
    console.print()
