"""ephysreplay CLI — inspect and play back recordings.

Commands:
    ephysreplay info <file>       Show the stream index
    ephysreplay events <file>     List events in a playback window
    ephysreplay read <file>       Read a playback window and show per-channel stats
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
import numpy as np
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ephysreplay import __version__
from ephysreplay.errors import EphysReplayError

console = Console()


def _open_replay(file: Path, stream: int = 0):
    from ephysreplay import Replay

    try:
        return Replay(file, stream=stream)
    except (EphysReplayError, IndexError) as e:
        console.print(f"[red]Error opening {file}: {e}[/red]")
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="ephysreplay")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """ephysreplay — record and replay electrophysiology streams."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
def info(file: Path) -> None:
    """Show the stream index of a recording."""
    replay = _open_replay(file)

    console.print()
    meta = replay.metadata
    title = meta.identifier if meta is not None and meta.identifier else file.name
    console.print(Panel.fit(f"[bold]{title}[/bold]", subtitle=f"{file}"))

    if meta is not None:
        meta_table = Table(show_header=False, box=None, padding=(0, 2))
        meta_table.add_column("Key", style="dim")
        meta_table.add_column("Value")
        meta_table.add_row("Experiment", str(meta.experiment_number))
        meta_table.add_row("Recording", str(meta.recording_number))
        meta_table.add_row("Created", meta.created_at)
        console.print(meta_table)

    console.print()
    streams_table = Table(title="Streams")
    streams_table.add_column("#", justify="right")
    streams_table.add_column("Name")
    streams_table.add_column("Samples", justify="right")
    streams_table.add_column("Channels", justify="right")
    streams_table.add_column("Rate (Hz)", justify="right")
    streams_table.add_column("Events", justify="right")

    for i, stream in enumerate(replay.streams):
        rate = f"{stream.sample_rate:g}" if stream.has_known_rate else "unknown"
        n_events = len(replay.stream_events(stream.name))
        streams_table.add_row(
            str(i), stream.name, str(stream.num_samples), str(stream.num_channels), rate, str(n_events)
        )
    console.print(streams_table)

    if replay.spike_series:
        console.print()
        spikes_table = Table(title="Spike series")
        spikes_table.add_column("Name")
        spikes_table.add_column("Spikes", justify="right")
        spikes_table.add_column("Channels", justify="right")
        spikes_table.add_column("Samples", justify="right")
        for s in replay.spike_series:
            spikes_table.add_row(s.name, str(s.num_spikes), str(s.num_channels), str(s.num_samples))
        console.print(spikes_table)

    replay.close()
    console.print()


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("--stream", "-s", default=0, help="Stream index")
@click.option("--start", default=0, help="First playback sample (inclusive)")
@click.option("--stop", default=None, type=int, help="Last playback sample (exclusive), default one loop")
def events(file: Path, stream: int, start: int, stop: int | None) -> None:
    """List the events of a stream inside a playback window."""
    replay = _open_replay(file, stream)

    try:
        if stop is None:
            stop = start + replay.num_samples
        records = replay.events_in_window(start, stop)
    except (EphysReplayError, RuntimeError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        replay.close()
        raise SystemExit(1)

    table = Table(title=f"Events in [{start}, {stop}) of {replay.active_stream.name}")
    table.add_column("Sample", justify="right")
    table.add_column("Line", justify="right")
    table.add_column("State")
    for record in records:
        table.add_row(str(record.sample_number), str(record.channel), "on" if record.state else "off")
    console.print(table)
    console.print(f"[green]{len(records)} event(s)[/green]")
    replay.close()


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("--stream", "-s", default=0, help="Stream index")
@click.option("--start", default=0, help="Playback sample to seek to")
@click.option("--count", "-n", default=1024, help="Samples to read")
def read(file: Path, stream: int, start: int, count: int) -> None:
    """Read one playback window and show per-channel statistics."""
    replay = _open_replay(file, stream)

    try:
        replay.seek(start)
        position = replay.position
        n, samples = replay.read_window(count)
    except (EphysReplayError, RuntimeError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        replay.close()
        raise SystemExit(1)

    console.print(f"Read {n} of {count} samples from position {position}")
    if n > 0:
        table = Table(title=replay.active_stream.name)
        table.add_column("Channel")
        table.add_column("Min (uV)", justify="right")
        table.add_column("Max (uV)", justify="right")
        table.add_column("Mean (uV)", justify="right")
        for k, channel in enumerate(replay.active_stream.channels):
            column = samples[:, k]
            table.add_row(
                channel.name,
                f"{np.min(column):.2f}",
                f"{np.max(column):.2f}",
                f"{np.mean(column):.2f}",
            )
        console.print(table)
    replay.close()


if __name__ == "__main__":
    cli()
