"""scanlabel CLI — headless labeling and store maintenance.

Commands:
    scanlabel info                 Show store summary and written frames
    scanlabel ingest               Transcode the raw log into the sample cache
    scanlabel show <frame>         List a frame's segments and labels
    scanlabel label <frame>        Label a frame and store it
    scanlabel export               Write feature/label training text
    scanlabel clean                Erase all stored labels
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from scanlabel.storage.errors import StorageError

console = Console()
err_console = Console(stderr=True)


@contextmanager
def _session(ctx: click.Context) -> Iterator:
    from scanlabel import LabelingSession

    config = ctx.obj["config"]
    try:
        with LabelingSession(config, config_path=ctx.obj["config_path"]) as session:
            session.tick()
            yield session
    except StorageError as e:
        console.print(f"[red]Storage error: {e}[/red]")
        raise SystemExit(1)


def _require_frame(session, frame: int) -> None:
    if not 0 <= frame < session.max_frame:
        console.print(
            f"[red]Frame {frame} out of range 0..{session.max_frame - 1}[/red]"
        )
        raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="scanlabel")
@click.option("--config", "-c", "config_path", default="scanlabel.cfg",
              type=click.Path(path_type=Path), help="Session config file")
@click.option("--root", type=click.Path(path_type=Path), default=None,
              help="Data root for a newly created config (default: config directory)")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, root: Path | None, verbose: bool) -> None:
    """scanlabel — label laser scan segments for classifier training."""
    from scanlabel.utils.schema import SessionConfig

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["config"] = SessionConfig.load_or_create(config_path, root)


@cli.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Show store summary."""
    with _session(ctx) as session:
        summary = session.store.summary()
        config = session.config

        console.print()
        console.print(Panel.fit(
            f"[bold]{config.raw_data_path.name}[/bold]",
            subtitle=f"{ctx.obj['config_path']}",
        ))

        meta_table = Table(show_header=False, box=None, padding=(0, 2))
        meta_table.add_column("Key", style="dim")
        meta_table.add_column("Value")
        meta_table.add_row("HZ", str(config.hz))
        meta_table.add_row("Frames", str(session.max_frame))
        meta_table.add_row("Store slots", str(summary.max_frame))
        meta_table.add_row("Frames written", str(summary.frames_written))
        meta_table.add_row("Highest written", str(summary.written_max_frame))
        meta_table.add_row("Segments", str(summary.segments))
        meta_table.add_row("Positive labels", str(summary.positive_labels))
        meta_table.add_row("Feature bytes", str(summary.feature_bytes))
        meta_table.add_row("Label bytes", str(summary.label_bytes))
        console.print(meta_table)

        written = session.store.label_table.written()
        if len(written) > 0:
            console.print()
            frames_table = Table(title="Written Frames")
            frames_table.add_column("Frame", justify="right")
            frames_table.add_column("Segments", justify="right")
            frames_table.add_column("Offset", justify="right")
            frames_table.add_column("Labels")

            for frame in written[:20]:
                frame = int(frame)
                labels = session.store.get(frame)
                frames_table.add_row(
                    str(frame),
                    str(len(labels)),
                    str(session.store.label_table.offset(frame)),
                    " ".join(str(v) for v in labels),
                )
            if len(written) > 20:
                frames_table.add_row("...", f"({len(written) - 20} more)", "", "")
            console.print(frames_table)
        console.print()


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Re-ingest even if the cache is fresh")
@click.pass_context
def ingest(ctx: click.Context, force: bool) -> None:
    """Transcode the raw log into the sample cache."""
    from scanlabel.source import FrameSource

    config = ctx.obj["config"]
    source = FrameSource(config.raw_data_path, config.raw_cache_path, hz=config.hz)
    try:
        n = source.ingest(force=force)
    except StorageError as e:
        console.print(f"[red]Storage error: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]{n} samples cached ({n // config.hz} frames at {config.hz} Hz)[/green]")


@cli.command()
@click.argument("frame", type=int)
@click.option("--features", "-f", "show_features", is_flag=True, default=False,
              help="Also print each segment's feature values")
@click.pass_context
def show(ctx: click.Context, frame: int, show_features: bool) -> None:
    """List the segments of a frame with their labels."""
    with _session(ctx) as session:
        _require_frame(session, frame)
        session.seek(frame)
        session.tick()

        table = Table(title=f"Frame {session.frame}")
        table.add_column("Segment", justify="right")
        table.add_column("Points", justify="right")
        table.add_column("Centroid")
        table.add_column("Label", justify="right")
        for seg in session.segment_infos():
            label = "[red]1[/red]" if seg.label else "0"
            table.add_row(
                str(seg.index),
                str(seg.points),
                f"({seg.centroid_x:.3f}, {seg.centroid_y:.3f})",
                label,
            )
        console.print(table)

        if show_features and session.frame_data is not None:
            from scanlabel.features import FEATURE_NAMES

            # One column per segment keeps the table narrow
            feature_table = Table(title="Features")
            feature_table.add_column("Feature", style="dim")
            for i in range(session.frame_data.num_segments):
                feature_table.add_column(f"#{i}", justify="right")
            for name, values in zip(FEATURE_NAMES, session.frame_data.features.T):
                feature_table.add_row(name, *(f"{v:.4g}" for v in values))
            console.print(feature_table)

        if session.frame in session.store:
            console.print("[dim]stored[/dim]")
        if session.last_warning:
            console.print(f"[yellow]⚠ {session.last_warning}[/yellow]")


@cli.command()
@click.argument("frame", type=int)
@click.option("--labels", "-l", default=None, help="Comma-separated 0/1 label per segment")
@click.option("--nearest", is_flag=True, default=False, help="Label the segment nearest the sensor")
@click.option("--rect", nargs=4, type=float, default=None,
              help="Label segments inside X_MIN Y_MIN X_MAX Y_MAX")
@click.pass_context
def label(
    ctx: click.Context,
    frame: int,
    labels: str | None,
    nearest: bool,
    rect: tuple[float, float, float, float] | None,
) -> None:
    """Label a frame and store it."""
    if labels is None and not nearest and not rect:
        console.print("[red]Give --labels, --nearest or --rect[/red]")
        raise SystemExit(1)

    with _session(ctx) as session:
        _require_frame(session, frame)
        session.seek(frame)
        session.tick()

        if labels is not None:
            try:
                session.set_labels([int(v) for v in labels.split(",") if v.strip()])
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
                raise SystemExit(1)
        if rect:
            session.label_rect(*rect)
        if nearest:
            session.label_nearest()

        if not session.save():
            console.print(f"[yellow]Frame {session.frame} has no segments, nothing saved[/yellow]")
            return
        console.print(
            f"[green]Saved frame {session.frame}: "
            f"{' '.join(str(v) for v in session.labels)}[/green]"
        )


@cli.command()
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None,
              help="Output directory (default: paths from the config)")
@click.pass_context
def export(ctx: click.Context, output: Path | None) -> None:
    """Export stored records as training text."""
    from scanlabel.export.text import export_to_dir

    with _session(ctx) as session:
        if output is not None:
            created = export_to_dir(session.store, output)
        else:
            session.export()
            created = [session.config.feature_output_path, session.config.label_output_path]
        for p in created:
            console.print(f"  Created: {p}")
        console.print(f"[green]Exported {session.frames_written} frame(s)[/green]")


@cli.command()
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
def clean(ctx: click.Context, yes: bool) -> None:
    """Erase every stored label and feature record."""
    if not yes:
        click.confirm("All stored labels will be erased. Continue?", abort=True)

    with _session(ctx) as session:
        session.clean_requested = True
        session.tick()
        console.print("[green]Store cleaned[/green]")


if __name__ == "__main__":
    cli()
