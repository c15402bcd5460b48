"""Rich console setup and pipeline progress helpers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

if TYPE_CHECKING:
    from .models import AnalysisResult, ChapterTemplate

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Pipeline callbacks protocol
# ---------------------------------------------------------------------------


class PipelineCallbacks(Protocol):
    """Protocol for round/chapter progress reporting."""

    def on_phase_start(self, phase: str, description: str) -> None: ...
    def on_phase_end(self, phase: str, success: bool) -> None: ...
    def on_round_start(self, round_num: int, max_rounds: int) -> None: ...
    def on_round_end(self, round_num: int, new_rows: int, total_rows: int, distinct: int) -> None: ...
    def on_chapter_start(self, round_num: int, total_rounds: int, chapter_name: str, enhance: bool) -> None: ...
    def on_chapter_end(self, round_num: int, chapter_key: str, length: int) -> None: ...
    def on_status(self, message: str) -> None: ...
    def on_warning(self, message: str) -> None: ...
    def on_error(self, message: str) -> None: ...


class NullCallbacks:
    """Callbacks that report nothing (server-side and test use)."""

    def on_phase_start(self, phase: str, description: str) -> None:
        pass

    def on_phase_end(self, phase: str, success: bool) -> None:
        pass

    def on_round_start(self, round_num: int, max_rounds: int) -> None:
        pass

    def on_round_end(self, round_num: int, new_rows: int, total_rows: int, distinct: int) -> None:
        pass

    def on_chapter_start(self, round_num: int, total_rounds: int, chapter_name: str, enhance: bool) -> None:
        pass

    def on_chapter_end(self, round_num: int, chapter_key: str, length: int) -> None:
        pass

    def on_status(self, message: str) -> None:
        pass

    def on_warning(self, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class RichCallbacks:
    """Rich-based implementation of PipelineCallbacks."""

    def on_phase_start(self, phase: str, description: str) -> None:
        console.rule(f"[bold blue]{phase}[/] - {description}")

    def on_phase_end(self, phase: str, success: bool) -> None:
        status = "[green]OK[/]" if success else "[red]FAILED[/]"
        console.print(f"  Phase {phase}: {status}")

    def on_round_start(self, round_num: int, max_rounds: int) -> None:
        console.print(f"  [cyan]Round {round_num}/{max_rounds}[/]")

    def on_round_end(self, round_num: int, new_rows: int, total_rows: int, distinct: int) -> None:
        console.print(
            f"  [dim]Round {round_num}:[/] +{new_rows} rows "
            f"(total {total_rows}, {distinct} functional processes)"
        )

    def on_chapter_start(self, round_num: int, total_rounds: int, chapter_name: str, enhance: bool) -> None:
        label = "Enhancing" if enhance else "Generating"
        console.print(f"  [cyan]{round_num}/{total_rounds}[/] {label} {chapter_name}")

    def on_chapter_end(self, round_num: int, chapter_key: str, length: int) -> None:
        console.print(f"  [dim]Done:[/] {chapter_key} ({length} chars)")

    def on_status(self, message: str) -> None:
        console.print(f"  [dim]{message}[/]")

    def on_warning(self, message: str) -> None:
        console.print(f"  [yellow]WARNING:[/] {message}")

    def on_error(self, message: str) -> None:
        console.print(f"  [red]ERROR:[/] {message}")


def print_analysis_summary(result: AnalysisResult) -> None:
    """Render the E/R/W/X distribution of an analysis run as a table."""
    counts = result.type_counts()
    table = Table(title="COSMIC split summary", show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Rounds", str(result.rounds))
    table.add_row("Functional processes", str(result.distinct_processes))
    table.add_row("Data movements", str(len(result.rows)))
    for movement, count in counts.items():
        table.add_row(f"  {movement}", str(count))
    table.add_row("Stop reason", result.stop_reason.value)
    console.print()
    console.print(table)


def print_templates(templates: list[ChapterTemplate]) -> None:
    table = Table(title="Chapter templates", show_lines=True)
    table.add_column("ID", style="dim", width=4)
    table.add_column("Name", style="cyan")
    table.add_column("Chapters")
    table.add_column("Rounds", justify="right")
    for tpl in templates:
        table.add_row(
            str(tpl.template_id),
            tpl.name,
            "\n".join(c.display_name for c in tpl.chapters),
            str(tpl.total_rounds),
        )
    console.print(table)

