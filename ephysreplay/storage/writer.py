"""Streaming HDF5 writer for ephysreplay .nwb files.

Writes continuous blocks, TTL events and spike waveforms incrementally into
chunked, resizable datasets laid out by a RecordingLayout. Datasets are
over-allocated while recording and truncated to their written length on close.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import h5py
import numpy as np

from ephysreplay.errors import GroupSizeMismatch
from ephysreplay.storage.calibration import bit_volts_to_volts, to_fixed_point, validate_scale
from ephysreplay.storage.container import (
    append_to_dataset,
    close_container,
    create_container,
    create_extensible_dataset,
    truncate_dataset,
    write_attribute,
)
from ephysreplay.storage.format import (
    ACQUISITION_GROUP,
    CHANNEL_CONVERSION_DATASET,
    CHANNEL_TYPE_DATASET,
    CHUNK_SAMPLES,
    COMPRESSION,
    CONTINUOUS_TYPE,
    CONVERSION_ATTR,
    DATA_DATASET,
    EVENTS_TYPE,
    FLUSH_EVERY_BLOCKS,
    GENERAL_GROUP,
    IDENTIFIER_ATTR,
    INTERVAL_ATTR,
    METADATA_ATTR,
    NEURODATA_TYPE_ATTR,
    NWB_VERSION,
    NWB_VERSION_ATTR,
    SAMPLE_DTYPE,
    SESSION_DESCRIPTION_ATTR,
    SETTINGS_DATASET,
    SOURCE_ID_ATTR,
    SOURCE_SERIES_ATTR,
    SPIKES_TYPE,
    STREAM_ID_ATTR,
    SYNC_DATASET,
    TIMESTAMPS_DATASET,
    UNIT_ATTR,
)
from ephysreplay.utils.schema import (
    ContinuousGroup,
    EventSeriesPlan,
    RecordingLayout,
    RecordingMetadata,
    SpikeElectrode,
)

logger = logging.getLogger(__name__)

# Event and spike logs grow slowly compared to continuous data
LOG_INITIAL_ROWS = 256
LOG_CHUNK_ROWS = 256


class _GroupState:
    """Write-side bookkeeping for one continuous group."""

    def __init__(
        self,
        group: ContinuousGroup,
        data: h5py.Dataset,
        timestamps: h5py.Dataset,
        sync: h5py.Dataset,
    ) -> None:
        self.group = group
        self.data = data
        self.timestamps = timestamps
        self.sync = sync
        self.lock = threading.Lock()
        # Append position of every channel, indexed by offset
        self.positions = [0] * group.num_channels
        # Block start -> [size, channels still to write it]
        self.pending: dict[int, list[int]] = {}
        self.num_samples = 0
        self.shared_length = 0
        self.next_sample_number = 0
        self.blocks_written = 0


class _LogState:
    """Append-only event or spike log."""

    def __init__(self, name: str, datasets: dict[str, h5py.Dataset]) -> None:
        self.name = name
        self.datasets = datasets
        self.count = 0

    def append(self, **rows: Any) -> None:
        for key, value in rows.items():
            append_to_dataset(
                self.datasets[key],
                self.count,
                np.asarray(value)[np.newaxis, ...],
                chunk_samples=LOG_CHUNK_ROWS,
            )
        self.count += 1

    def truncate(self) -> None:
        for ds in self.datasets.values():
            truncate_dataset(ds, self.count)


class RecordingWriter:
    """Writes one recording session into an HDF5 container.

    Per-channel ``write_block`` calls may come from different threads. All
    writes touching a group's datasets hold that group's lock; event and
    spike logs share one writer-level lock.
    """

    def __init__(
        self,
        path: str | Path,
        layout: RecordingLayout,
        metadata: RecordingMetadata | None = None,
        settings_text: str | None = None,
        compression: str | None = COMPRESSION,
        chunk_samples: int = CHUNK_SAMPLES,
    ) -> None:
        self.path = Path(path)
        self.layout = layout
        self.metadata = metadata or RecordingMetadata()
        self.settings_text = settings_text
        self.compression = compression
        self.chunk_samples = chunk_samples

        self._file: h5py.File | None = None
        self._groups: list[_GroupState] = []
        self._events: list[_LogState] = []
        self._spikes: list[_LogState] = []
        self._lock = threading.Lock()

    # --- Lifecycle ---

    def open(self) -> None:
        """Create the file and the dataset structure of the layout."""
        for group in self.layout.groups:
            validate_scale([c.bit_volts for c in group.channels])
        for electrode in self.layout.spike_electrodes:
            validate_scale(electrode.bit_volts)

        self._file = create_container(self.path)
        try:
            self._build()
        except BaseException:
            close_container(self._file)
            self._file = None
            raise

        logger.info(
            "Opened %s: %d continuous groups, %d event logs, %d spike electrodes",
            self.path,
            len(self._groups),
            len(self._events),
            len(self._spikes),
        )

    def _build(self) -> None:
        assert self._file is not None
        write_attribute(self._file, NWB_VERSION_ATTR, NWB_VERSION)
        write_attribute(self._file, IDENTIFIER_ATTR, self.metadata.identifier)
        write_attribute(self._file, SESSION_DESCRIPTION_ATTR, self.metadata.session_description)

        if self.settings_text:
            general = self._file.create_group(GENERAL_GROUP)
            general.create_dataset(
                SETTINGS_DATASET, data=self.settings_text, dtype=h5py.string_dtype("utf-8")
            )

        acquisition = self._file.create_group(ACQUISITION_GROUP)
        self._groups = [self._create_group(acquisition, g) for g in self.layout.groups]
        self._events = [self._create_event_log(acquisition, p) for p in self.layout.event_series]
        self._spikes = [self._create_spike_log(acquisition, e) for e in self.layout.spike_electrodes]

    def _create_group(self, acquisition: h5py.Group, group: ContinuousGroup) -> _GroupState:
        g = acquisition.create_group(group.name)
        write_attribute(g, NEURODATA_TYPE_ATTR, CONTINUOUS_TYPE)
        write_attribute(g, SOURCE_ID_ATTR, group.source_id)
        write_attribute(g, STREAM_ID_ATTR, group.stream_id)

        data = create_extensible_dataset(
            g, DATA_DATASET, (group.num_channels,), SAMPLE_DTYPE,
            chunk_samples=self.chunk_samples, compression=self.compression,
        )
        write_attribute(data, CONVERSION_ATTR, float(bit_volts_to_volts(group.channels[0].bit_volts)))
        write_attribute(data, UNIT_ATTR, "volts")

        timestamps = create_extensible_dataset(
            g, TIMESTAMPS_DATASET, (), np.float64,
            chunk_samples=self.chunk_samples, compression=self.compression,
        )
        write_attribute(timestamps, INTERVAL_ATTR, 1.0 / group.sample_rate)
        write_attribute(timestamps, UNIT_ATTR, "seconds")

        sync = create_extensible_dataset(
            g, SYNC_DATASET, (), np.int64,
            chunk_samples=self.chunk_samples, compression=self.compression,
        )

        g.create_dataset(
            CHANNEL_CONVERSION_DATASET,
            data=bit_volts_to_volts([c.bit_volts for c in group.channels]).astype(np.float32),
        )
        g.create_dataset(
            CHANNEL_TYPE_DATASET,
            data=np.array([c.channel_type for c in group.channels], dtype=np.uint8),
        )
        return _GroupState(group, data, timestamps, sync)

    def _create_event_log(self, acquisition: h5py.Group, plan: EventSeriesPlan) -> _LogState:
        g = acquisition.create_group(plan.entry_name)
        write_attribute(g, NEURODATA_TYPE_ATTR, EVENTS_TYPE)
        if plan.source_series is not None:
            write_attribute(g, SOURCE_SERIES_ATTR, plan.source_series)
        datasets = {
            DATA_DATASET: self._create_log_dataset(g, DATA_DATASET, (), np.int32),
            SYNC_DATASET: self._create_log_dataset(g, SYNC_DATASET, (), np.int64),
            TIMESTAMPS_DATASET: self._create_log_dataset(g, TIMESTAMPS_DATASET, (), np.float64),
        }
        return _LogState(plan.entry_name, datasets)

    def _create_spike_log(self, acquisition: h5py.Group, electrode: SpikeElectrode) -> _LogState:
        g = acquisition.create_group(electrode.name)
        write_attribute(g, NEURODATA_TYPE_ATTR, SPIKES_TYPE)
        data = self._create_log_dataset(
            g, DATA_DATASET, (electrode.num_channels, electrode.num_samples), SAMPLE_DTYPE
        )
        write_attribute(data, CONVERSION_ATTR, float(bit_volts_to_volts(electrode.bit_volts)))
        write_attribute(data, UNIT_ATTR, "volts")
        datasets = {
            DATA_DATASET: data,
            TIMESTAMPS_DATASET: self._create_log_dataset(g, TIMESTAMPS_DATASET, (), np.float64),
            SYNC_DATASET: self._create_log_dataset(g, SYNC_DATASET, (), np.int64),
        }
        return _LogState(electrode.name, datasets)

    def _create_log_dataset(
        self, group: h5py.Group, name: str, shape: tuple[int, ...], dtype: Any
    ) -> h5py.Dataset:
        return create_extensible_dataset(
            group, name, shape, dtype,
            chunk_samples=LOG_CHUNK_ROWS,
            initial_samples=LOG_INITIAL_ROWS,
            compression=self.compression,
        )

    # --- Continuous data ---

    def write_block(
        self,
        channel_index: int,
        samples: np.ndarray,
        sample_number: int | None = None,
        timestamps: np.ndarray | None = None,
    ) -> None:
        """Append one block of physical samples for a channel.

        Args:
            channel_index: Position of the channel in the planned channel list.
            samples: 1-D array of physical samples (microvolts).
            sample_number: Absolute sample number of the first sample. When
                omitted, continues from the group's previous block.
            timestamps: Optional explicit timestamps in seconds, one per
                sample. Derived from sample numbers when omitted.

        Only the group's leader channel (offset 0) writes the shared
        timestamps and sync datasets.
        """
        self._require_open()
        if not 0 <= channel_index < self.layout.num_channels:
            raise IndexError(
                f"Channel index {channel_index} out of range (0..{self.layout.num_channels - 1})"
            )

        cursor = self.layout.cursors[channel_index]
        state = self._groups[cursor.group_index]
        channel = state.group.channels[cursor.offset]

        arr = np.asarray(samples, dtype=np.float64)
        if arr.ndim != 1:
            raise ValueError(f"Samples must be 1-D, got shape {arr.shape}")
        size = arr.shape[0]
        if size == 0:
            return
        if timestamps is not None:
            timestamps = np.asarray(timestamps, dtype=np.float64)
            if timestamps.shape != (size,):
                raise ValueError(
                    f"Expected {size} timestamps for channel '{channel.name}', got shape {timestamps.shape}"
                )
        counts = to_fixed_point(arr, channel.bit_volts)

        with state.lock:
            position = state.positions[cursor.offset]
            self._claim_block(state, position, size)
            end = append_to_dataset(
                state.data, position, counts, column=cursor.offset, chunk_samples=self.chunk_samples
            )
            state.num_samples = max(state.num_samples, end)
            if cursor.is_leader:
                self._write_shared(state, position, size, sample_number, timestamps)
            state.positions[cursor.offset] = end

    def _claim_block(self, state: _GroupState, position: int, size: int) -> None:
        """Check a block against the size fixed by the first channel to reach ``position``."""
        if state.group.num_channels == 1:
            return
        entry = state.pending.get(position)
        if entry is None:
            state.pending[position] = [size, state.group.num_channels - 1]
            return
        expected, remaining = entry
        if size != expected:
            raise GroupSizeMismatch(state.group.name, position, expected, size)
        if remaining == 1:
            del state.pending[position]
        else:
            entry[1] = remaining - 1

    def _write_shared(
        self,
        state: _GroupState,
        position: int,
        size: int,
        sample_number: int | None,
        timestamps: np.ndarray | None,
    ) -> None:
        """Leader-only: write the block's timestamps and sample numbers."""
        base = state.next_sample_number if sample_number is None else int(sample_number)
        sample_numbers = base + np.arange(size, dtype=np.int64)
        if timestamps is None:
            timestamps = sample_numbers / state.group.sample_rate

        append_to_dataset(state.timestamps, position, timestamps, chunk_samples=self.chunk_samples)
        append_to_dataset(state.sync, position, sample_numbers, chunk_samples=self.chunk_samples)
        state.shared_length = position + size
        state.next_sample_number = base + size
        state.blocks_written += 1

        if state.blocks_written % FLUSH_EVERY_BLOCKS == 0:
            self._flush()

    # --- Events and spikes ---

    def write_event(self, event_index: int, state: bool, sample_number: int, line: int = 0) -> None:
        """Append one TTL edge to an event log.

        The edge is stored as ``+(line + 1)`` when rising and ``-(line + 1)``
        when falling, next to its absolute sample number.
        """
        self._require_open()
        if not 0 <= event_index < len(self._events):
            raise IndexError(f"Event index {event_index} out of range")
        if line < 0:
            raise ValueError(f"TTL line must be >= 0, got {line}")

        plan = self.layout.event_series[event_index]
        code = (line + 1) if state else -(line + 1)
        with self._lock:
            self._events[event_index].append(
                **{
                    DATA_DATASET: np.int32(code),
                    SYNC_DATASET: np.int64(sample_number),
                    TIMESTAMPS_DATASET: np.float64(sample_number / plan.channel.sample_rate),
                }
            )

    def write_spike(
        self,
        electrode_index: int,
        waveform: np.ndarray,
        timestamp: float,
        sample_number: int | None = None,
    ) -> None:
        """Append one spike waveform frame.

        Args:
            electrode_index: Index of the electrode in the layout.
            waveform: ``num_channels * num_samples`` physical values, channel-major.
            timestamp: Spike time in seconds.
            sample_number: Absolute sample number of the spike, stored as -1 when omitted.
        """
        self._require_open()
        if not 0 <= electrode_index < len(self._spikes):
            raise IndexError(f"Electrode index {electrode_index} out of range")

        electrode = self.layout.spike_electrodes[electrode_index]
        wave = np.asarray(waveform, dtype=np.float64)
        expected = electrode.num_channels * electrode.num_samples
        if wave.size != expected:
            raise ValueError(
                f"Electrode '{electrode.name}' expects {expected} waveform values, got {wave.size}"
            )
        frame = to_fixed_point(
            wave.reshape(electrode.num_channels, electrode.num_samples), electrode.bit_volts
        )
        with self._lock:
            self._spikes[electrode_index].append(
                **{
                    DATA_DATASET: frame,
                    TIMESTAMPS_DATASET: np.float64(timestamp),
                    SYNC_DATASET: np.int64(-1 if sample_number is None else sample_number),
                }
            )

    # --- Bookkeeping ---

    def _require_open(self) -> None:
        if self._file is None:
            raise RuntimeError("Writer not opened. Call .open() first.")

    def _flush(self) -> None:
        """Flush data to disk."""
        if self._file is not None:
            self._file.flush()

    def append_position(self, channel_index: int) -> int:
        """Number of samples written so far for a channel."""
        cursor = self.layout.cursors[channel_index]
        return self._groups[cursor.group_index].positions[cursor.offset]

    def num_events(self, event_index: int) -> int:
        return self._events[event_index].count

    def num_spikes(self, electrode_index: int) -> int:
        return self._spikes[electrode_index].count

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def close(self) -> None:
        """Finalize and close the file.

        Truncates datasets to their written length and stores the metadata.
        """
        if self._file is None:
            return

        with self._lock:
            for state in self._groups:
                with state.lock:
                    if state.pending or min(state.positions) != state.num_samples:
                        logger.warning(
                            "Group '%s' closed with unequal channel lengths (%s)",
                            state.group.name,
                            state.positions,
                        )
                    if state.shared_length != state.num_samples:
                        logger.warning(
                            "Group '%s' has %d samples but %d timestamps",
                            state.group.name,
                            state.num_samples,
                            state.shared_length,
                        )
                    truncate_dataset(state.data, state.num_samples)
                    truncate_dataset(state.timestamps, state.shared_length)
                    truncate_dataset(state.sync, state.shared_length)

            for log in (*self._events, *self._spikes):
                log.truncate()

            write_attribute(self._file, METADATA_ATTR, self.metadata.to_json())
            close_container(self._file)
            self._file = None

        logger.info("Closed %s", self.path)
