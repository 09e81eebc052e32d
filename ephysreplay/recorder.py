"""Recorder — the main interface for recording an acquisition session.

Usage:
    from ephysreplay import Recorder

    rec = Recorder("data/", channels, event_channels=[ttl], experiment_number=1)
    rec.start()

    # From any producer thread, per channel:
    rec.write_block(channel_index, samples, sample_number=first_sample)
    rec.write_event(0, state=True, sample_number=12345, line=2)

    rec.save()

Or as a context manager:

    with Recorder("data/", channels) as rec:
        for block in acquisition:
            for i, samples in enumerate(block):
                rec.write_block(i, samples)

Channels must be sorted by stream; the planner groups adjacent channels of
the same (source, stream) into one dataset.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import numpy as np

from ephysreplay.storage.format import FILE_EXTENSION
from ephysreplay.storage.planner import plan_channels
from ephysreplay.storage.writer import RecordingWriter
from ephysreplay.utils.schema import (
    ContinuousChannel,
    EventChannel,
    RecordingLayout,
    RecordingMetadata,
    SpikeElectrode,
)

logger = logging.getLogger(__name__)


def recording_filename(experiment_number: int, recording_number: int) -> str:
    return f"experiment{experiment_number}_recording{recording_number}{FILE_EXTENSION}"


class Recorder:
    """Records continuous data, TTL events and spikes to an .nwb file.

    Args:
        root_folder: Directory the file is written to.
        channels: Continuous channels, sorted by stream.
        event_channels: TTL event sources.
        spike_electrodes: Spike electrodes.
        experiment_number: Experiment counter, used in the file name.
        recording_number: Recording counter, used in the file name.
        identifier: Free text identifier stored in the file.
        metadata: Extra user metadata stored with the recording.
        settings_text: Settings of the acquisition chain, stored verbatim.
        path: Explicit output path, overriding the name derived from the
            experiment and recording numbers.
    """

    def __init__(
        self,
        root_folder: str | Path,
        channels: Sequence[ContinuousChannel],
        event_channels: Iterable[EventChannel] = (),
        spike_electrodes: Iterable[SpikeElectrode] = (),
        experiment_number: int = 1,
        recording_number: int = 1,
        identifier: str = "",
        metadata: dict[str, Any] | None = None,
        settings_text: str | None = None,
        path: str | Path | None = None,
    ) -> None:
        meta = dict(metadata or {})

        if path is None:
            self._path = Path(root_folder) / recording_filename(experiment_number, recording_number)
        else:
            self._path = Path(path)
            if not self._path.suffix:
                self._path = self._path.with_suffix(FILE_EXTENSION)

        self._metadata = RecordingMetadata(
            identifier=identifier,
            session_description=meta.pop("session_description", ""),
            experiment_number=experiment_number,
            recording_number=recording_number,
            user_metadata=meta,
        )
        self._channels = list(channels)
        self._event_channels = list(event_channels)
        self._spike_electrodes = list(spike_electrodes)
        self._settings_text = settings_text

        self._layout: RecordingLayout | None = None
        self._writer: RecordingWriter | None = None
        self._start_lock = threading.Lock()
        self._started = False
        self._saved = False

    def start(self) -> None:
        """Plan the channel groups and open the output file."""
        with self._start_lock:
            if self._started:
                raise RuntimeError("Recording already started.")
            self._start()

    def _start(self) -> None:
        self._layout = plan_channels(self._channels, self._event_channels, self._spike_electrodes)
        self._writer = RecordingWriter(
            self._path,
            self._layout,
            metadata=self._metadata,
            settings_text=self._settings_text,
        )
        self._writer.open()
        self._started = True
        logger.info("Recording to %s", self._path)

    def _ensure_started(self) -> RecordingWriter:
        if self._saved:
            raise RuntimeError("Recording already saved.")
        if not self._started:
            with self._start_lock:
                if not self._started:
                    self._start()
        assert self._writer is not None
        return self._writer

    def write_block(
        self,
        channel_index: int,
        samples: Any,
        sample_number: int | None = None,
        timestamps: Any = None,
    ) -> None:
        """Write one block of samples (microvolts) for a channel.

        Starts the recording on first use. See RecordingWriter.write_block.
        """
        writer = self._ensure_started()
        writer.write_block(
            channel_index,
            np.asarray(samples, dtype=np.float64),
            sample_number=sample_number,
            timestamps=timestamps,
        )

    def write_event(self, event_index: int, state: bool, sample_number: int, line: int = 0) -> None:
        """Record a TTL edge on an event channel."""
        if not self._started:
            raise RuntimeError("Cannot write events before recording starts. Call start() first.")
        writer = self._ensure_started()
        writer.write_event(event_index, state, sample_number, line=line)

    def write_spike(
        self,
        electrode_index: int,
        waveform: Any,
        timestamp: float,
        sample_number: int | None = None,
    ) -> None:
        """Record one spike waveform on an electrode."""
        if not self._started:
            raise RuntimeError("Cannot write spikes before recording starts. Call start() first.")
        writer = self._ensure_started()
        writer.write_spike(electrode_index, waveform, timestamp, sample_number=sample_number)

    def save(self) -> Path:
        """Finalize and save the recording.

        Returns:
            Path to the saved file.
        """
        if not self._started:
            raise RuntimeError("Nothing to save — recording was never started.")
        if self._saved:
            raise RuntimeError("Recording already saved.")

        assert self._writer is not None
        self._writer.close()
        self._saved = True
        return self._path

    @property
    def layout(self) -> RecordingLayout:
        """Group topology, available once the recording started."""
        if self._layout is None:
            raise RuntimeError("Recording not started.")
        return self._layout

    @property
    def path(self) -> Path:
        """Output file path."""
        return self._path

    @property
    def metadata(self) -> RecordingMetadata:
        return self._metadata

    def num_samples(self, channel_index: int) -> int:
        """Samples written so far for a channel."""
        if self._writer is None:
            return 0
        return self._writer.append_position(channel_index)

    # Context manager support
    def __enter__(self) -> Recorder:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._started and not self._saved:
            self.save()

    def __repr__(self) -> str:
        if self._started and not self._saved:
            status = "recording"
        elif self._saved:
            status = "saved"
        else:
            status = "idle"
        return f"Recorder(path='{self._path}', channels={len(self._channels)}, status={status})"
