"""Replay — play a recorded file back as an endless stream.

Usage:
    from ephysreplay import Replay

    with Replay("experiment1_recording1.nwb") as r:
        print(r)                          # Summary
        r.select_stream(0)
        r.seek(0)
        n, block = r.read_window(1024)    # block: [n, channels] float32, microvolts
        events = r.events_in_window(0, n)

The recording is treated as a ring: positions wrap modulo the stream length
so playback can run past the end of the file. One ``read_window`` call never
crosses the end of the recording; the next call continues from sample 0.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np

from ephysreplay.errors import SeekOutOfRange
from ephysreplay.storage.calibration import to_physical
from ephysreplay.storage.reader import EventTable, Reader
from ephysreplay.utils.schema import EventRecord, RecordingMetadata, SpikeSeriesInfo, StreamInfo

logger = logging.getLogger(__name__)


class Replay:
    """Read a recording through a looping playback cursor.

    Args:
        path: Path to a recording file.
        stream: Index of the stream to make active initially.
    """

    def __init__(self, path: str | Path, stream: int = 0) -> None:
        self._reader = Reader(path)
        self._reader.open()

        self._active: int | None = None
        self._pos = 0
        self._scales: np.ndarray | None = None

        if self._reader.streams:
            try:
                self.select_stream(stream)
            except IndexError:
                self._reader.close()
                raise
        else:
            logger.warning("No continuous streams found in %s", path)

    def close(self) -> None:
        """Close the underlying file."""
        self._reader.close()

    def __enter__(self) -> Replay:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Properties ---

    @property
    def streams(self) -> list[StreamInfo]:
        """Stream index of the file."""
        return self._reader.streams

    @property
    def active_stream(self) -> StreamInfo:
        if self._active is None:
            raise RuntimeError("No active stream. The file has no continuous streams.")
        return self._reader.streams[self._active]

    @property
    def active_index(self) -> int | None:
        return self._active

    @property
    def position(self) -> int:
        """Cursor position within the active stream, in [0, num_samples)."""
        return self._pos

    @property
    def num_samples(self) -> int:
        return self.active_stream.num_samples

    @property
    def num_channels(self) -> int:
        return self.active_stream.num_channels

    @property
    def sample_rate(self) -> float:
        return self.active_stream.sample_rate

    @property
    def metadata(self) -> RecordingMetadata | None:
        return self._reader.metadata

    @property
    def settings_text(self) -> str | None:
        return self._reader.settings_text

    @property
    def spike_series(self) -> list[SpikeSeriesInfo]:
        return self._reader.spike_series

    @property
    def events(self) -> EventTable:
        """Stored events of the active stream."""
        return self.stream_events(self.active_stream.name)

    def stream_events(self, name: str) -> EventTable:
        """Stored events of a stream, with sample numbers relative to its first sample."""
        return self._reader.events.get(name, EventTable(stream=name))

    # --- Cursor ---

    def select_stream(self, index: int) -> StreamInfo:
        """Make a stream active and rewind the cursor to sample 0."""
        streams = self._reader.streams
        if not 0 <= index < len(streams):
            raise IndexError(f"Stream index {index} out of range ({len(streams)} streams)")
        self._active = index
        self._pos = 0
        stream = streams[index]
        self._scales = np.array([c.bit_volts for c in stream.channels], dtype=np.float64)
        logger.debug("Active stream: %s (%d samples)", stream.name, stream.num_samples)
        return stream

    def _ring_length(self) -> int:
        n = self.active_stream.num_samples
        if n == 0:
            raise SeekOutOfRange(f"Stream '{self.active_stream.name}' has no samples")
        return n

    def seek(self, sample_pos: int) -> int:
        """Move the cursor to ``sample_pos`` modulo the stream length."""
        self._pos = int(sample_pos) % self._ring_length()
        return self._pos

    def read_window(self, count: int, out: np.ndarray | None = None) -> tuple[int, np.ndarray]:
        """Read up to ``count`` samples of every channel from the cursor.

        Stops at the end of the recording; the cursor then wraps to 0.

        Args:
            count: Number of samples requested.
            out: Optional float32 buffer with at least ``count`` rows and one
                column per channel. A new array is allocated when omitted.

        Returns:
            (samples_read, samples) where samples is [samples_read, channels]
            in physical units.
        """
        n = self._ring_length()
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")

        to_read = min(count, n - self._pos)
        channels = self.active_stream.num_channels
        if out is None:
            out = np.empty((to_read, channels), dtype=np.float32)
        elif out.ndim != 2 or out.shape[0] < to_read or out.shape[1] != channels:
            raise ValueError(
                f"Output buffer of shape {out.shape} cannot hold {to_read} x {channels} samples"
            )

        window = out[:to_read]
        if to_read > 0:
            raw = self._reader.read_rows(self._active, self._pos, to_read)
            to_physical(raw, self._scales, out=window)

        self._pos = (self._pos + to_read) % n
        return to_read, window

    # --- Events ---

    def events_in_window(self, start: int, stop: int) -> list[EventRecord]:
        """Events of the active stream inside ``[start, stop)`` of the looped timeline.

        ``start`` and ``stop`` are absolute playback sample numbers; every
        loop of the recording that the interval touches contributes its
        events, shifted by ``loop * num_samples``. Intervals crossing the
        end of the recording are split at the boundary.
        """
        n = self._ring_length()
        if start < 0:
            raise ValueError(f"start must be >= 0, got {start}")
        if stop <= start:
            return []

        table = self.events
        if len(table) == 0:
            return []

        records: list[EventRecord] = []
        for loop in range(start // n, (stop - 1) // n + 1):
            offset = loop * n
            local_start = max(start - offset, 0)
            local_stop = min(stop - offset, n)
            mask = (table.sample_numbers >= local_start) & (table.sample_numbers < local_stop)
            for channel, state, sample in zip(
                table.channels[mask], table.states[mask], table.sample_numbers[mask]
            ):
                records.append(
                    EventRecord(
                        channel=int(channel) - 1,
                        state=bool(state),
                        sample_number=int(sample) + offset,
                    )
                )
        return records

    # --- Spikes ---

    def spikes(self, name: str) -> tuple[np.ndarray, np.ndarray]:
        """Timestamps and physical waveforms of a spike series."""
        return self._reader.read_spikes(name)

    # --- Display ---

    def summary(self) -> str:
        """Generate a human-readable summary string."""
        lines = []
        lines.append(f"Recording: {self._reader.path.name}")
        meta = self.metadata
        if meta is not None and meta.identifier:
            lines.append(f"Identifier: {meta.identifier}")
        lines.append(f"Streams: {len(self.streams)}")
        for i, stream in enumerate(self.streams):
            marker = "*" if i == self._active else " "
            rate = f"{stream.sample_rate:g} Hz" if stream.has_known_rate else "unknown rate"
            lines.append(
                f" {marker}[{i}] {stream.name}: {stream.num_samples} samples x "
                f"{stream.num_channels} channels, {rate}, "
                f"{len(self.stream_events(stream.name))} events"
            )
        if self.spike_series:
            lines.append(f"Spike series: {', '.join(s.name for s in self.spike_series)}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        active = self.active_stream.name if self._active is not None else None
        return (
            f"Replay(path='{self._reader.path}', streams={len(self.streams)}, "
            f"active={active!r}, position={self._pos})"
        )

    def __str__(self) -> str:
        return self.summary()

    def __len__(self) -> int:
        return self.num_samples
