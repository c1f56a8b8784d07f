"""Console output and operator prompts for the CLI."""
import os
import shutil
from typing import Any, List, Optional, cast

from InquirerPy import inquirer
from rich.console import Console

# cron and `ssh -T` sessions report a (0, 0) terminal, which breaks rich layout
os.environ.setdefault("COLUMNS", "120")
os.environ.setdefault("LINES", "40")

_get_terminal_size = shutil.get_terminal_size


def _terminal_size(fallback: tuple[int, int] = (120, 40)) -> os.terminal_size:
    try:
        size = _get_terminal_size(fallback)
        return os.terminal_size((max(size.columns, 80), max(size.lines, 24)))
    except (OSError, ValueError):
        return os.terminal_size(fallback)


shutil.get_terminal_size = _terminal_size

console = Console()
err_console = Console(stderr=True)


def print_section(title: str) -> None:
    console.print(f"[bold cyan]=== {title} ===[/bold cyan]")


def ask_text(prompt_text: str, default: Optional[str] = None) -> str:
    return cast(
        str, inquirer.text(message=prompt_text, default=default or "").execute()
    )


def ask_confirm(prompt_text: str, default: bool = False) -> bool:
    return cast(bool, inquirer.confirm(message=prompt_text, default=default).execute())


def ask_typed_confirmation(prompt_text: str, word: str = "yes") -> bool:
    """Destructive actions need the word typed out, a bare Enter never confirms."""
    answer = ask_text(f"{prompt_text} Type '{word}' to proceed:")
    return answer.strip() == word


def ask_choice(message: str, choices: List[Any], default: Any = None) -> Any:
    return inquirer.select(
        message=message, choices=choices, default=default, pointer=">"
    ).execute()


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    err_console.print(f"[bold red]ERROR:[/bold red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[bold yellow]WARNING:[/bold yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]{message}[/blue]")
