"""HDF5 reader for ephysreplay .nwb files.

Scans the acquisition group once on open and builds the stream index:
continuous series with their calibration and (possibly inferred) sample
rate, TTL event tables aligned to sample 0 of their stream, and spike logs.
An entry that fails to parse is logged and left out; it never prevents
the rest of the file from opening.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import h5py
import numpy as np
from pydantic import ValidationError

from ephysreplay.errors import ContainerOpenFailed, EntryParseSkipped
from ephysreplay.storage.calibration import to_physical, volts_to_bit_volts
from ephysreplay.storage.container import (
    close_container,
    list_groups,
    open_container,
    read_attribute,
    read_hyperslab,
)
from ephysreplay.storage.format import (
    ACQUISITION_GROUP,
    CHANNEL_CONVERSION_DATASET,
    CHANNEL_TYPE_DATASET,
    CONTINUOUS_TYPE,
    CONVERSION_ATTR,
    DATA_DATASET,
    EVENT_SUFFIX,
    EVENTS_TYPE,
    GENERAL_GROUP,
    INTERVAL_ATTR,
    METADATA_ATTR,
    NEURODATA_TYPE_ATTR,
    SETTINGS_DATASET,
    SOURCE_SERIES_ATTR,
    SPIKES_TYPE,
    SYNC_DATASET,
    TIMESTAMPS_DATASET,
    UNKNOWN_SAMPLE_RATE,
    strip_event_suffix,
)
from ephysreplay.utils.schema import ChannelInfo, RecordingMetadata, SpikeSeriesInfo, StreamInfo

logger = logging.getLogger(__name__)

# Errors that mean "this entry is malformed" rather than "the file is unusable"
_PARSE_ERRORS = (KeyError, OSError, ValueError, IndexError, TypeError, AttributeError)


class EntryKind(enum.Enum):
    CONTINUOUS = "continuous"
    EVENTS = "events"
    SPIKES = "spikes"
    UNKNOWN = "unknown"


def classify_entry(name: str, neurodata_type: str | None) -> EntryKind:
    """Decide once how an acquisition entry is handled."""
    if neurodata_type == CONTINUOUS_TYPE:
        return EntryKind.CONTINUOUS
    if neurodata_type == EVENTS_TYPE and name.endswith(EVENT_SUFFIX):
        return EntryKind.EVENTS
    if neurodata_type == SPIKES_TYPE:
        return EntryKind.SPIKES
    return EntryKind.UNKNOWN


def _dataset(node: h5py.Group, name: str) -> h5py.Dataset:
    member = node[name]
    if not isinstance(member, h5py.Dataset):
        raise TypeError(f"'{name}' is not a dataset")
    return member


def infer_sample_rate(timestamps: h5py.Dataset | None) -> float:
    """Sample rate of a series from its timestamps dataset.

    Uses the ``interval`` attribute when present, otherwise the spacing of
    the first three timestamps. Returns -1.0 when neither gives an answer.
    """
    if timestamps is None:
        return UNKNOWN_SAMPLE_RATE

    interval = read_attribute(timestamps, INTERVAL_ATTR)
    if interval is not None:
        interval = float(interval)
        if np.isfinite(interval) and interval > 0:
            return 1.0 / interval
        logger.warning("Ignoring invalid sampling interval %r on %s", interval, timestamps.name)

    if timestamps.ndim != 1 or timestamps.shape[0] < 3:
        return UNKNOWN_SAMPLE_RATE
    t = np.asarray(timestamps[:3], dtype=np.float64)
    if t[0] >= 0 and t[2] > t[0]:
        return float(2.0 / (t[2] - t[0]))
    return UNKNOWN_SAMPLE_RATE


@dataclass
class EventTable:
    """TTL edges of one stream, in stored form.

    ``channels`` are the stored 1-based line numbers, ``sample_numbers`` are
    relative to the first sample of the stream.
    """

    stream: str
    channels: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    states: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    sample_numbers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __len__(self) -> int:
        return len(self.sample_numbers)

    def merge(self, other: EventTable) -> EventTable:
        """Combine two tables of the same stream, ordered by sample number."""
        sample_numbers = np.concatenate([self.sample_numbers, other.sample_numbers])
        order = np.argsort(sample_numbers, kind="stable")
        return EventTable(
            stream=self.stream,
            channels=np.concatenate([self.channels, other.channels])[order],
            states=np.concatenate([self.states, other.states])[order],
            sample_numbers=sample_numbers[order],
        )


class Reader:
    """Discovers and reads the streams of a recording file.

    Caches the stream index on open; sample data is read lazily.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

        self._file: h5py.File | None = None
        self._streams: list[StreamInfo] | None = None
        self._events: dict[str, EventTable] = {}
        self._spikes: list[SpikeSeriesInfo] = []
        self._skipped: list[EntryParseSkipped] = []
        self._metadata: RecordingMetadata | None = None
        self._settings_text: str | None = None

    def open(self) -> None:
        """Open the file and build the stream index."""
        if not self.path.exists():
            raise ContainerOpenFailed(f"Recording not found: {self.path}")

        self._file = open_container(self.path)
        if ACQUISITION_GROUP not in self._file:
            self.close()
            raise ContainerOpenFailed(f"{self.path} has no '{ACQUISITION_GROUP}' group")

        try:
            self._metadata = self._read_metadata()
            self._settings_text = self._read_settings()
            self._discover()
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        """Close the file."""
        if self._file is not None:
            close_container(self._file)
            self._file = None

    def __enter__(self) -> Reader:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Discovery ---

    def _discover(self) -> None:
        assert self._file is not None
        acquisition = self._file[ACQUISITION_GROUP]

        streams: list[StreamInfo] = []
        event_entries: list[str] = []
        self._events = {}
        self._spikes = []
        self._skipped = []

        for name in list_groups(self._file, ACQUISITION_GROUP):
            try:
                node = acquisition[name]
                kind = classify_entry(name, read_attribute(node, NEURODATA_TYPE_ATTR))
            except _PARSE_ERRORS as e:
                self._skip(EntryParseSkipped(name, f"unreadable entry: {e}"))
                continue
            try:
                if kind is EntryKind.CONTINUOUS:
                    streams.append(self._parse_continuous(name, node))
                elif kind is EntryKind.EVENTS:
                    # Resolved once every stream's base sample number is known
                    event_entries.append(name)
                elif kind is EntryKind.SPIKES:
                    self._spikes.append(self._parse_spikes(name, node))
                else:
                    logger.debug("Ignoring acquisition entry '%s'", name)
            except EntryParseSkipped as e:
                self._skip(e)

        by_name = {s.name: s for s in streams}
        for name in event_entries:
            try:
                table = self._parse_events(name, acquisition[name], by_name)
            except EntryParseSkipped as e:
                self._skip(e)
                continue
            if table.stream in self._events:
                self._events[table.stream] = self._events[table.stream].merge(table)
            else:
                self._events[table.stream] = table

        self._streams = streams
        logger.info(
            "Discovered %d streams, %d event tables, %d spike series in %s (%d entries skipped)",
            len(streams),
            len(self._events),
            len(self._spikes),
            self.path,
            len(self._skipped),
        )

    def _skip(self, error: EntryParseSkipped) -> None:
        logger.warning("%s", error)
        self._skipped.append(error)

    def _parse_continuous(self, name: str, node: h5py.Group) -> StreamInfo:
        try:
            data = _dataset(node, DATA_DATASET)
            if data.ndim != 2:
                raise ValueError(f"'{DATA_DATASET}' must be 2-D, got shape {data.shape}")
            num_samples, num_channels = data.shape

            conversion = read_attribute(data, CONVERSION_ATTR)
            if conversion is None:
                raise KeyError(f"'{DATA_DATASET}' has no '{CONVERSION_ATTR}' attribute")
            series_bit_volts = float(volts_to_bit_volts(float(conversion)))

            timestamps = _dataset(node, TIMESTAMPS_DATASET) if TIMESTAMPS_DATASET in node else None
            sample_rate = infer_sample_rate(timestamps)

            base_sample_number = 0
            if SYNC_DATASET in node:
                sync = _dataset(node, SYNC_DATASET)
                if sync.shape[0] > 0:
                    base_sample_number = int(sync[0])

            if CHANNEL_CONVERSION_DATASET in node:
                bit_volts = volts_to_bit_volts(_dataset(node, CHANNEL_CONVERSION_DATASET)[()])
            else:
                bit_volts = np.full(num_channels, series_bit_volts)
            if CHANNEL_TYPE_DATASET in node:
                channel_types = np.asarray(_dataset(node, CHANNEL_TYPE_DATASET)[()], dtype=np.int64)
            else:
                channel_types = np.zeros(num_channels, dtype=np.int64)
            if bit_volts.shape != (num_channels,) or channel_types.shape != (num_channels,):
                raise ValueError(
                    f"channel metadata sized {bit_volts.shape}/{channel_types.shape} "
                    f"for {num_channels} columns"
                )

            channels = [
                ChannelInfo(name=f"CH{k}", bit_volts=float(bit_volts[k]), channel_type=int(channel_types[k]))
                for k in range(num_channels)
            ]
        except _PARSE_ERRORS as e:
            raise EntryParseSkipped(name, str(e)) from e

        if sample_rate == UNKNOWN_SAMPLE_RATE:
            logger.warning("Could not determine the sample rate of '%s'", name)

        return StreamInfo(
            name=name,
            num_samples=int(num_samples),
            sample_rate=sample_rate,
            bit_volts=series_bit_volts,
            base_sample_number=base_sample_number,
            channels=channels,
        )

    def _parse_events(self, name: str, node: h5py.Group, streams: dict[str, StreamInfo]) -> EventTable:
        try:
            stream_name = read_attribute(node, SOURCE_SERIES_ATTR) or strip_event_suffix(name)
        except _PARSE_ERRORS as e:
            raise EntryParseSkipped(name, str(e)) from e
        stream = streams.get(stream_name)
        if stream is None:
            raise EntryParseSkipped(name, f"no continuous stream named '{stream_name}'")

        try:
            codes = np.asarray(_dataset(node, DATA_DATASET)[()], dtype=np.int64)
            sync = np.rint(np.asarray(_dataset(node, SYNC_DATASET)[()], dtype=np.float64)).astype(np.int64)
            if codes.ndim != 1 or codes.shape != sync.shape:
                raise ValueError(f"edge codes {codes.shape} and sync {sync.shape} differ in shape")
            if np.any(codes == 0):
                raise ValueError("edge code 0 does not name a TTL line")
        except _PARSE_ERRORS as e:
            raise EntryParseSkipped(name, str(e)) from e

        return EventTable(
            stream=stream_name,
            channels=np.abs(codes),
            states=codes > 0,
            sample_numbers=sync - stream.base_sample_number,
        )

    def _parse_spikes(self, name: str, node: h5py.Group) -> SpikeSeriesInfo:
        try:
            data = _dataset(node, DATA_DATASET)
            if data.ndim != 3:
                raise ValueError(f"'{DATA_DATASET}' must be 3-D, got shape {data.shape}")
            conversion = read_attribute(data, CONVERSION_ATTR)
            if conversion is None:
                raise KeyError(f"'{DATA_DATASET}' has no '{CONVERSION_ATTR}' attribute")
            return SpikeSeriesInfo(
                name=name,
                num_spikes=int(data.shape[0]),
                num_channels=int(data.shape[1]),
                num_samples=int(data.shape[2]),
                bit_volts=float(volts_to_bit_volts(float(conversion))),
            )
        except _PARSE_ERRORS as e:
            raise EntryParseSkipped(name, str(e)) from e

    def _read_metadata(self) -> RecordingMetadata | None:
        assert self._file is not None
        try:
            raw = read_attribute(self._file, METADATA_ATTR)
            if raw is None:
                return None
            return RecordingMetadata.from_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            logger.warning("Unreadable recording metadata in %s: %s", self.path, e)
            return None

    def _read_settings(self) -> str | None:
        assert self._file is not None
        if GENERAL_GROUP not in self._file or SETTINGS_DATASET not in self._file[GENERAL_GROUP]:
            return None
        value = self._file[GENERAL_GROUP][SETTINGS_DATASET][()]
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    # --- Accessors ---

    def _require_open(self) -> h5py.File:
        if self._file is None or self._streams is None:
            raise RuntimeError("Reader not opened. Call .open() first.")
        return self._file

    @property
    def streams(self) -> list[StreamInfo]:
        self._require_open()
        assert self._streams is not None
        return self._streams

    @property
    def events(self) -> dict[str, EventTable]:
        """Event tables keyed by stream name."""
        self._require_open()
        return self._events

    @property
    def spike_series(self) -> list[SpikeSeriesInfo]:
        self._require_open()
        return self._spikes

    @property
    def skipped(self) -> list[EntryParseSkipped]:
        """Entries left out of the index, with the reason."""
        self._require_open()
        return self._skipped

    @property
    def metadata(self) -> RecordingMetadata | None:
        self._require_open()
        return self._metadata

    @property
    def settings_text(self) -> str | None:
        self._require_open()
        return self._settings_text

    def read_rows(self, stream_index: int, start: int, count: int) -> np.ndarray:
        """Read ``count`` stored rows of a stream as int16, shape [count, channels]."""
        f = self._require_open()
        stream = self.streams[stream_index]
        ds = f[ACQUISITION_GROUP][stream.name][DATA_DATASET]
        return read_hyperslab(ds, (start, 0), (count, stream.num_channels))

    def read_spikes(self, name: str) -> tuple[np.ndarray, np.ndarray]:
        """Spike timestamps and physical waveforms [spikes, channels, samples] of a spike series."""
        f = self._require_open()
        info = next((s for s in self._spikes if s.name == name), None)
        if info is None:
            raise KeyError(f"Spike series '{name}' not found. Available: {[s.name for s in self._spikes]}")
        node = f[ACQUISITION_GROUP][name]
        timestamps = np.asarray(node[TIMESTAMPS_DATASET][()], dtype=np.float64)
        waveforms = to_physical(node[DATA_DATASET][()], info.bit_volts)
        return timestamps, waveforms
