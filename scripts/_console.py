"""Shared console and one-line status helpers."""

from __future__ import annotations

import rich.console

console = rich.console.Console(highlight=False)


def info(msg: str) -> None:
    console.print(f"[blue]ℹ[/blue] {msg}")


def success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def warn(msg: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {msg}")


def error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")
