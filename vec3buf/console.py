"""Console output for buffer diagnostics.

Usage:
    from vec3buf.console import console

    with console.spinner("Uploading..."):
        buf = Vector3Buffer.from_host(ctx, queue, MemFlags.READ_WRITE, xs, ys, zs)

    console.success("Done", detail="2048 vectors")
    console.warn("Fill primitive unavailable")
    console.debug("alloc", detail="49152 bytes")
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.text import Text

from vec3buf.config import BUILD

__all__ = ["Console", "console"]


class Console:
    """Minimal logging interface with rich output."""

    __slots__ = ("_console", "_verbose", "_warned")

    def __init__(self, *, verbose: bool = False, stderr: bool = True) -> None:
        self._console = RichConsole(stderr=stderr)
        self._verbose = bool(verbose)
        self._warned: set[str] = set()

    @contextmanager
    def spinner(self, message: str) -> Iterator[None]:
        """Show a spinner while work is in progress."""
        with self._console.status(f"[bold cyan]{message}", spinner="dots"):
            yield

    def success(self, message: str, *, detail: Optional[str] = None, title: Optional[str] = None) -> None:
        """Green success message."""
        if title:
            text = Text(message, style="bold green")
            if detail:
                text.append(f"\n{detail}", style="dim")
            self._console.print(Panel(text, title=f"[cyan]{title}[/cyan]", border_style="green"))
            return
        self._console.print(f"[bold green]✓[/bold green] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def warn(self, message: str, *, detail: Optional[str] = None) -> None:
        """Yellow warning message."""
        self._console.print(f"[yellow]⚠[/yellow] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def warn_once(self, key: str, message: str, *, detail: Optional[str] = None) -> None:
        """Warning that is printed at most once per key for the process."""
        if key in self._warned:
            return
        self._warned.add(key)
        self.warn(message, detail=detail)

    def error(self, message: str, *, detail: Optional[str] = None) -> None:
        """Red error message."""
        self._console.print(f"[bold red]✗[/bold red] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def info(self, message: str, *, detail: Optional[str] = None) -> None:
        """Blue info message."""
        self._console.print(f"[blue]•[/blue] {message}" + (f" [dim]{detail}[/dim]" if detail else ""))

    def debug(self, message: str, *, detail: Optional[str] = None) -> None:
        """Dim message, only when verbose."""
        if not self._verbose:
            return
        self._console.print(f"[dim]· {message}[/dim]" + (f" [dim]{detail}[/dim]" if detail else ""))


console = Console(verbose=BUILD.verbose)
