"""
Rich console configuration for the activity heatmap renderer.

Everything goes to stderr: stdout is reserved for the PNG frame stream.
Provides progress bars, summary panels and styled logging.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.theme import Theme
from rich.panel import Panel
from rich.table import Table
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    BarColumn,
    TaskProgressColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    MofNCompleteColumn,
)

HEAT_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "highlight": "bold magenta",
    "muted": "dim",
    "heat": "bold red",
    "tiles": "bold blue",
    "gps": "green",
})

# Global console instance
console = Console(theme=HEAT_THEME, stderr=True)


def setup_rich_logging(verbose: bool = False) -> None:
    """
    Configure logging to use the Rich handler.

    Args:
        verbose: Enable DEBUG level logging with full details
    """
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=console,
                show_time=verbose,
                show_path=verbose,
                rich_tracebacks=True,
                tracebacks_show_locals=verbose,
                markup=False,
            )
        ],
        force=True,  # Override any existing configuration
    )


def create_progress() -> Progress:
    """
    Create a progress bar for long multi-item steps (parsing, accumulation).

    Returns:
        Configured Progress instance
    """
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, style="red", complete_style="bold red"),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    )


def create_tile_progress() -> Progress:
    """
    Create a lighter, transient progress bar for tile downloads.

    Returns:
        Configured Progress instance
    """
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[tiles]{task.description}"),
        BarColumn(bar_width=30, style="dim blue", complete_style="blue"),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


def print_config_summary(
    input_dir: str,
    output_file: str,
    center: tuple,
    size: tuple,
    zoom: int,
    heatmap_kind: str,
    tint: float,
    video_file: Optional[str] = None,
    stream: bool = False,
    frame_rate: Optional[int] = None,
) -> None:
    """
    Print a styled configuration summary panel.

    Args:
        input_dir: Activity directory
        output_file: Final image path
        center: (lat, lon) of the viewport center
        size: (width, height) in pixels
        zoom: Basemap zoom level
        heatmap_kind: Heatmap resolution name
        tint: Basemap darkening strength
        video_file: Optional progress video path
        stream: Whether PNG frames go to stdout
        frame_rate: Points between progress frames
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Input", escape(str(input_dir)))
    table.add_row("Output", f"[green]{escape(str(output_file))}[/]")
    table.add_row("Center", f"[gps]{center[0]:.5f}, {center[1]:.5f}[/]")
    table.add_row("Size", f"{size[0]}x{size[1]}")
    table.add_row("Zoom", f"{zoom}")
    table.add_row("Heatmap", f"[heat]{heatmap_kind}[/]")
    table.add_row("Tint", f"{tint:.2f}")

    frame_targets = []
    if video_file:
        frame_targets.append(f"video: [highlight]{escape(str(video_file))}[/]")
    if stream:
        frame_targets.append("stdout (PNG)")
    if frame_targets:
        table.add_row("Frames", f"{', '.join(frame_targets)} every {frame_rate} points")
    else:
        table.add_row("Frames", "[dim]none[/]")

    panel = Panel(
        table,
        title="[bold]Configuration[/]",
        border_style="red",
        padding=(1, 2),
    )
    console.print(panel)
    console.print()


def print_phase(phase_num: int, total_phases: int, description: str) -> None:
    """
    Print a phase header for multi-step processing.

    Args:
        phase_num: Current phase number (1-indexed)
        total_phases: Total number of phases
        description: Description of this phase
    """
    console.print(
        f"\n[bold red]Step {phase_num}/{total_phases}:[/] [bold]{description}[/]"
    )


def print_completion_summary(
    output_file: str,
    activity_count: int,
    track_points: Optional[int] = None,
    skipped: Optional[int] = None,
    frames: Optional[int] = None,
) -> None:
    """
    Print a styled completion summary.

    Args:
        output_file: Path to the final image
        activity_count: Activities drawn on the heatmap
        track_points: Screen points accumulated (optional)
        skipped: Activities that could not be used (optional)
        frames: Progress frames written (optional)
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold green")

    table.add_row("Activities", str(activity_count))
    if track_points:
        table.add_row("Track Points", f"{track_points:,}")
    if skipped:
        table.add_row("Skipped", f"[warning]{skipped}[/]")
    if frames:
        table.add_row("Frames", f"{frames:,}")
    table.add_row("Output", escape(str(output_file)))

    panel = Panel(
        table,
        title="[bold green]Complete[/]",
        border_style="green",
        padding=(1, 2),
    )
    console.print()
    console.print(panel)


def print_error(message: str, hint: Optional[str] = None) -> None:
    """
    Print a styled error message.

    Args:
        message: Error message
        hint: Optional hint for resolution
    """
    console.print(f"\n[error]Error:[/] {escape(message)}")
    if hint:
        console.print(f"[muted]Hint: {hint}[/]")
