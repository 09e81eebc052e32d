"""Tests for ephysreplay core pipeline: plan → record → discover → replay."""

import threading
from unittest.mock import patch

import h5py
import numpy as np
import pytest

from ephysreplay import Recorder, Replay
from ephysreplay.errors import (
    ContainerOpenFailed,
    GroupSizeMismatch,
    InvalidCalibration,
    SeekOutOfRange,
)
from ephysreplay.storage.calibration import (
    bit_volts_to_volts,
    to_fixed_point,
    to_physical,
    volts_to_bit_volts,
)
from ephysreplay.storage.planner import plan_channels
from ephysreplay.storage.reader import EntryKind, Reader, classify_entry
from ephysreplay.storage.writer import RecordingWriter
from ephysreplay.utils.schema import (
    ContinuousChannel,
    EventChannel,
    RecordingMetadata,
    SpikeElectrode,
)

BIT_VOLTS = 0.195


def make_channels(n, source_id=100, stream_id=0, sample_rate=1000.0, bit_volts=BIT_VOLTS, start=0):
    return [
        ContinuousChannel(
            name=f"CH{start + i}",
            global_index=start + i,
            local_index=i,
            source_id=source_id,
            stream_id=stream_id,
            bit_volts=bit_volts,
            sample_rate=sample_rate,
        )
        for i in range(n)
    ]


def open_writer(path, channels, event_channels=(), spike_electrodes=()):
    layout = plan_channels(channels, event_channels, spike_electrodes)
    writer = RecordingWriter(path, layout, RecordingMetadata(identifier="test"))
    writer.open()
    return writer


def assert_released(path):
    """No HDF5 handle on ``path`` is left open, so it can be recreated."""
    with h5py.File(path, "w"):
        pass


def write_series(
    acquisition,
    name,
    num_samples=10,
    num_channels=2,
    conversion=1e-7,
    timestamps=None,
    interval=None,
    sync=None,
):
    """Hand-build a continuous entry the way another producer might."""
    g = acquisition.create_group(name)
    g.attrs["neurodata_type"] = "ElectricalSeries"
    data = g.create_dataset("data", data=np.zeros((num_samples, num_channels), dtype=np.int16))
    data.attrs["conversion"] = conversion
    if timestamps is None:
        timestamps = np.arange(num_samples) / 1000.0
    ts = g.create_dataset("timestamps", data=np.asarray(timestamps, dtype=np.float64))
    if interval is not None:
        ts.attrs["interval"] = interval
    if sync is None:
        sync = np.arange(num_samples)
    g.create_dataset("sync", data=np.asarray(sync, dtype=np.int64))
    g.create_dataset("channel_conversion", data=np.full(num_channels, conversion, dtype=np.float32))
    g.create_dataset("channel_type", data=np.zeros(num_channels, dtype=np.uint8))
    return g


# ── Calibration ────────────────────────────────────────────


class TestCalibration:
    def test_roundtrip_within_one_step(self):
        rng = np.random.default_rng(0)
        x = rng.uniform(-2000.0, 2000.0, 500)
        restored = to_physical(to_fixed_point(x, BIT_VOLTS), BIT_VOLTS)
        assert np.all(np.abs(restored - x) <= BIT_VOLTS)

    def test_fixed_point_dtype_and_rounding(self):
        counts = to_fixed_point(np.array([0.0, 1.0, -1.0, 0.24]), 0.5)
        assert counts.dtype == np.int16
        np.testing.assert_array_equal(counts, [0, 2, -2, 0])

    def test_per_column_scale(self):
        samples = np.array([[1.0, 4.0], [2.0, 8.0]])
        counts = to_fixed_point(samples, np.array([0.5, 2.0]))
        np.testing.assert_array_equal(counts, [[2, 2], [4, 4]])
        np.testing.assert_allclose(to_physical(counts, np.array([0.5, 2.0])), samples)

    def test_saturates_at_int16_limits(self):
        counts = to_fixed_point(np.array([1e9, -1e9]), 1.0)
        np.testing.assert_array_equal(counts, [32767, -32768])

    @pytest.mark.parametrize("scale", [0.0, np.nan, np.inf, -np.inf])
    def test_invalid_scale_rejected(self, scale):
        with pytest.raises(InvalidCalibration):
            to_fixed_point(np.ones(3), scale)
        with pytest.raises(InvalidCalibration):
            to_physical(np.ones(3, dtype=np.int16), scale)

    def test_zero_in_column_scales_rejected(self):
        with pytest.raises(InvalidCalibration):
            to_fixed_point(np.ones((2, 2)), np.array([1.0, 0.0]))

    def test_volts_conversion(self):
        assert float(bit_volts_to_volts(BIT_VOLTS)) == pytest.approx(1.95e-7)
        assert float(volts_to_bit_volts(1.95e-7)) == pytest.approx(BIT_VOLTS)


# ── Planner ────────────────────────────────────────────────


class TestPlanner:
    def test_groups_by_stream(self):
        channels = (
            make_channels(3, source_id=100, stream_id=0)
            + make_channels(2, source_id=100, stream_id=1, start=3)
            + make_channels(1, source_id=101, stream_id=0, start=5)
        )
        layout = plan_channels(channels)

        assert len(layout.groups) == 3
        assert [c.group_index for c in layout.cursors] == [0, 0, 0, 1, 1, 2]
        assert [c.offset for c in layout.cursors] == [0, 1, 2, 0, 1, 0]
        for group in layout.groups:
            assert {c.stream_key for c in group.channels} == {(group.source_id, group.stream_id)}
            offsets = [
                cur.offset for cur, ch in zip(layout.cursors, channels) if ch in group.channels
            ]
            assert sorted(offsets) == list(range(group.num_channels))

    def test_singleton_group(self):
        channels = make_channels(2) + make_channels(1, stream_id=7, start=2) + make_channels(2, start=3)
        layout = plan_channels(channels)
        assert [g.num_channels for g in layout.groups] == [2, 1, 2]
        assert layout.cursors[2].is_leader

    def test_repeated_stream_gets_unique_name(self):
        channels = make_channels(1) + make_channels(1, stream_id=1, start=1) + make_channels(1, start=2)
        layout = plan_channels(channels)
        names = [g.name for g in layout.groups]
        assert names == ["100.0", "100.1", "100.0_1"]

    def test_mixed_rates_in_group_rejected(self):
        channels = make_channels(1) + make_channels(1, sample_rate=2000.0, start=1)
        with pytest.raises(ValueError, match="runs at"):
            plan_channels(channels)

    def test_event_channels_linked_to_stream(self):
        events = [
            EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0),
            EventChannel(name="Orphan", source_id=999, stream_id=0, sample_rate=1000.0),
        ]
        layout = plan_channels(make_channels(2), events)
        assert layout.event_series[0].entry_name == "TTL.TTL"
        assert layout.event_series[0].source_series == "100.0"
        assert layout.event_series[1].source_series is None

    def test_duplicate_event_entry_rejected(self):
        events = [EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)] * 2
        with pytest.raises(ValueError, match="Duplicate"):
            plan_channels(make_channels(1), events)

    def test_spike_electrode_calibration_from_first_channel(self):
        channels = make_channels(2, bit_volts=0.5) + make_channels(2, bit_volts=2.0, start=2)
        electrode = SpikeElectrode(name="Tetrode 1", channels=channels, num_samples=40)
        layout = plan_channels(channels, spike_electrodes=[electrode])
        assert layout.spike_electrodes[0].num_channels == 4
        assert layout.spike_electrodes[0].bit_volts == 0.5

    def test_empty_channel_name_rejected(self):
        with pytest.raises(ValueError):
            ContinuousChannel(
                name="", global_index=0, local_index=0, source_id=1, stream_id=0,
                bit_volts=1.0, sample_rate=1000.0,
            )


# ── Writer ─────────────────────────────────────────────────


class TestWriter:
    def test_write_and_inspect_layout(self, tmp_path):
        path = tmp_path / "layout.nwb"
        channels = make_channels(3) + make_channels(2, stream_id=1, sample_rate=2000.0, start=3)
        writer = open_writer(path, channels)
        for i in range(5):
            writer.write_block(i, np.full(10, 10.0 * i), sample_number=500)
        writer.close()

        with h5py.File(path, "r") as f:
            g = f["acquisition/100.0"]
            assert g.attrs["neurodata_type"] == "ElectricalSeries"
            assert g["data"].shape == (10, 3)
            assert g["data"].dtype == np.int16
            np.testing.assert_array_equal(g["sync"][()], np.arange(500, 510))
            np.testing.assert_allclose(g["timestamps"][()], np.arange(500, 510) / 1000.0)
            assert g["timestamps"].attrs["interval"] == pytest.approx(0.001)
            np.testing.assert_allclose(g["channel_conversion"][()], [1.95e-7] * 3, rtol=1e-6)
            np.testing.assert_array_equal(g["data"][:, 2], np.rint(20.0 / BIT_VOLTS))
            assert f["acquisition/100.1/data"].shape == (10, 2)
            np.testing.assert_allclose(f["acquisition/100.1/timestamps"][0], 0.25)

    def test_leader_writes_shared_datasets_once(self, tmp_path):
        writer = open_writer(tmp_path / "leader.nwb", make_channels(4))
        with patch.object(writer, "_write_shared", wraps=writer._write_shared) as spy:
            # Non-leaders first: arrival order must not matter
            for i in (3, 1, 2, 0):
                writer.write_block(i, np.zeros(16))
        assert spy.call_count == 1
        writer.close()

    def test_sample_numbers_continue_between_blocks(self, tmp_path):
        path = tmp_path / "continue.nwb"
        writer = open_writer(path, make_channels(2))
        for _ in range(3):
            writer.write_block(0, np.zeros(10))
            writer.write_block(1, np.zeros(10))
        assert writer.append_position(0) == 30
        assert writer.append_position(1) == 30
        writer.close()

        with h5py.File(path, "r") as f:
            np.testing.assert_array_equal(f["acquisition/100.0/sync"][()], np.arange(30))

    def test_explicit_timestamps(self, tmp_path):
        path = tmp_path / "ts.nwb"
        writer = open_writer(path, make_channels(1))
        writer.write_block(0, np.zeros(3), sample_number=0, timestamps=[10.0, 10.5, 11.0])
        with pytest.raises(ValueError, match="timestamps"):
            writer.write_block(0, np.zeros(3), timestamps=[1.0, 2.0])
        writer.close()

        with h5py.File(path, "r") as f:
            np.testing.assert_allclose(f["acquisition/100.0/timestamps"][()], [10.0, 10.5, 11.0])

    def test_group_size_mismatch(self, tmp_path):
        writer = open_writer(tmp_path / "mismatch.nwb", make_channels(2))
        writer.write_block(0, np.zeros(10))
        with pytest.raises(GroupSizeMismatch) as exc:
            writer.write_block(1, np.zeros(8))
        assert exc.value.expected == 10
        assert exc.value.got == 8
        assert writer.append_position(1) == 0
        writer.close()

    def test_group_size_mismatch_non_leader_first(self, tmp_path):
        writer = open_writer(tmp_path / "mismatch2.nwb", make_channels(3))
        writer.write_block(2, np.zeros(10))
        with pytest.raises(GroupSizeMismatch):
            writer.write_block(0, np.zeros(12))
        writer.close()

    def test_channel_ahead_of_group(self, tmp_path):
        """A channel may run several blocks ahead of the rest of its group."""
        path = tmp_path / "ahead.nwb"
        writer = open_writer(path, make_channels(2))
        writer.write_block(1, np.full(5, 1.0))
        writer.write_block(1, np.full(5, 2.0))
        writer.write_block(0, np.zeros(5))
        writer.write_block(0, np.zeros(5))
        writer.close()

        with h5py.File(path, "r") as f:
            assert f["acquisition/100.0/data"].shape == (10, 2)
            assert f["acquisition/100.0/sync"].shape == (10,)

    def test_concurrent_producers(self, tmp_path):
        path = tmp_path / "threads.nwb"
        writer = open_writer(path, make_channels(8))

        def produce(channel_index):
            for _ in range(10):
                writer.write_block(channel_index, np.full(100, 10.0 * channel_index))

        threads = [threading.Thread(target=produce, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        writer.close()

        with h5py.File(path, "r") as f:
            data = f["acquisition/100.0/data"][()]
            assert data.shape == (1000, 8)
            for k in range(8):
                np.testing.assert_allclose(data[:, k] * BIT_VOLTS, 10.0 * k, atol=BIT_VOLTS)
            np.testing.assert_array_equal(f["acquisition/100.0/sync"][()], np.arange(1000))

    def test_events_and_spikes(self, tmp_path):
        path = tmp_path / "logs.nwb"
        channels = make_channels(4)
        ttl = EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)
        electrode = SpikeElectrode(name="Tetrode 1", channels=channels, num_samples=8)
        writer = open_writer(path, channels, [ttl], [electrode])

        writer.write_event(0, True, 1005, line=2)
        writer.write_event(0, False, 1010, line=2)
        writer.write_spike(0, np.full(32, 50.0), 1.5, sample_number=1500)
        with pytest.raises(ValueError, match="waveform"):
            writer.write_spike(0, np.zeros(31), 1.6)
        assert writer.num_events(0) == 2
        assert writer.num_spikes(0) == 1
        writer.close()

        with h5py.File(path, "r") as f:
            events = f["acquisition/TTL.TTL"]
            assert events.attrs["source_series"] == "100.0"
            np.testing.assert_array_equal(events["data"][()], [3, -3])
            np.testing.assert_array_equal(events["sync"][()], [1005, 1010])
            np.testing.assert_allclose(events["timestamps"][()], [1.005, 1.010])

            spikes = f["acquisition/Tetrode 1"]
            assert spikes["data"].shape == (1, 4, 8)
            assert spikes["sync"][0] == 1500
            np.testing.assert_array_equal(spikes["data"][0], np.rint(50.0 / BIT_VOLTS))

    def test_write_before_open_raises(self, tmp_path):
        layout = plan_channels(make_channels(1))
        writer = RecordingWriter(tmp_path / "closed.nwb", layout)
        with pytest.raises(RuntimeError, match="not opened"):
            writer.write_block(0, np.zeros(4))

    def test_channel_index_out_of_range(self, tmp_path):
        writer = open_writer(tmp_path / "range.nwb", make_channels(2))
        with pytest.raises(IndexError):
            writer.write_block(5, np.zeros(4))
        writer.close()


# ── Discovery ──────────────────────────────────────────────


class TestDiscovery:
    def test_classify_entry(self):
        assert classify_entry("100.0", "ElectricalSeries") is EntryKind.CONTINUOUS
        assert classify_entry("100.0.TTL", "TimeSeries") is EntryKind.EVENTS
        assert classify_entry("messages", "TimeSeries") is EntryKind.UNKNOWN
        assert classify_entry("Tetrode 1", "SpikeEventSeries") is EntryKind.SPIKES
        assert classify_entry("misc", None) is EntryKind.UNKNOWN

    def test_rate_from_interval(self, tmp_path):
        path = tmp_path / "interval.nwb"
        with h5py.File(path, "w") as f:
            write_series(f.create_group("acquisition"), "s", interval=0.001, timestamps=np.zeros(10))

        with Reader(path) as reader:
            assert reader.streams[0].sample_rate == 1000.0

    def test_rate_from_timestamps(self, tmp_path):
        path = tmp_path / "timestamps.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            write_series(acq, "a", timestamps=np.arange(10) * 0.001)
            write_series(acq, "b", timestamps=np.arange(10) * 0.0005)
            write_series(acq, "c", timestamps=np.arange(10) * 0.001 - 1.0)
            write_series(acq, "d", num_samples=2, timestamps=[0.1, 0.2])

        with Reader(path) as reader:
            rates = {s.name: s.sample_rate for s in reader.streams}
        assert rates["a"] == pytest.approx(1000.0)
        assert rates["b"] == pytest.approx(2000.0)
        assert rates["c"] == -1.0
        assert rates["d"] == -1.0

    def test_channel_metadata(self, tmp_path):
        path = tmp_path / "meta.nwb"
        with h5py.File(path, "w") as f:
            g = write_series(f.create_group("acquisition"), "s", num_channels=3, conversion=2e-7)
            del g["channel_type"]
            g.create_dataset("channel_type", data=np.array([0, 1, 2], dtype=np.uint8))

        with Reader(path) as reader:
            stream = reader.streams[0]
        assert stream.num_samples == 10
        assert stream.num_channels == 3
        assert stream.bit_volts == pytest.approx(0.2)
        assert [c.channel_type for c in stream.channels] == [0, 1, 2]
        assert [c.name for c in stream.channels] == ["CH0", "CH1", "CH2"]
        assert all(c.bit_volts == pytest.approx(0.2) for c in stream.channels)

    def test_corrupt_entry_skipped(self, tmp_path):
        path = tmp_path / "corrupt.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            for name in ("a", "b", "c"):
                write_series(acq, name)
            bad = acq.create_group("bad")
            bad.attrs["neurodata_type"] = "ElectricalSeries"
            bad.create_dataset("data", data=np.zeros(10, dtype=np.int16))
            short = write_series(acq, "short_conversion")
            del short["channel_conversion"]
            short.create_dataset("channel_conversion", data=np.ones(5, dtype=np.float32))

        with Reader(path) as reader:
            assert [s.name for s in reader.streams] == ["a", "b", "c"]
            assert {e.entry for e in reader.skipped} == {"bad", "short_conversion"}

    def test_entry_with_group_members_skipped(self, tmp_path):
        path = tmp_path / "group_members.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            write_series(acq, "a")
            write_series(acq, "b")
            data_group = acq.create_group("data_is_group")
            data_group.attrs["neurodata_type"] = "ElectricalSeries"
            data_group.create_group("data")
            ts_group = write_series(acq, "timestamps_is_group")
            del ts_group["timestamps"]
            ts_group.create_group("timestamps")

        with Reader(path) as reader:
            assert [s.name for s in reader.streams] == ["a", "b"]
            assert {e.entry for e in reader.skipped} == {"data_is_group", "timestamps_is_group"}

    def test_undecodable_attributes_skipped(self, tmp_path):
        path = tmp_path / "garbled.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            write_series(acq, "a")
            write_series(acq, "b")
            garbled = acq.create_group("garbled")
            garbled.attrs["neurodata_type"] = np.bytes_(b"\xff\xfe")
            ev = acq.create_group("a.TTL")
            ev.attrs["neurodata_type"] = "TimeSeries"
            ev.attrs["source_series"] = np.bytes_(b"\xff")
            ev.create_dataset("data", data=np.array([1], dtype=np.int32))
            ev.create_dataset("sync", data=np.array([5], dtype=np.int64))

        with Reader(path) as reader:
            assert [s.name for s in reader.streams] == ["a", "b"]
            assert {e.entry for e in reader.skipped} == {"garbled", "a.TTL"}
            assert reader.events == {}

    def test_failed_open_releases_file(self, tmp_path):
        path = tmp_path / "released.nwb"
        with h5py.File(path, "w") as f:
            write_series(f.create_group("acquisition"), "a")

        reader = Reader(path)
        with patch.object(Reader, "_discover", side_effect=RuntimeError("interrupted")):
            with pytest.raises(RuntimeError, match="interrupted"):
                reader.open()
        assert_released(path)

    def test_events_aligned_to_stream_start(self, tmp_path):
        path = tmp_path / "events.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            write_series(acq, "100.0", num_samples=200, sync=np.arange(1000, 1200))
            ev = acq.create_group("100.0.TTL")
            ev.attrs["neurodata_type"] = "TimeSeries"
            ev.create_dataset("data", data=np.array([1, -1, 4], dtype=np.int32))
            ev.create_dataset("sync", data=np.array([1050.0, 1100.0, 1150.0]))

        with Reader(path) as reader:
            table = reader.events["100.0"]
        np.testing.assert_array_equal(table.sample_numbers, [50, 100, 150])
        np.testing.assert_array_equal(table.channels, [1, 1, 4])
        np.testing.assert_array_equal(table.states, [True, False, True])

    def test_events_without_stream_skipped(self, tmp_path):
        path = tmp_path / "orphan.nwb"
        with h5py.File(path, "w") as f:
            acq = f.create_group("acquisition")
            write_series(acq, "100.0")
            ev = acq.create_group("nowhere.TTL")
            ev.attrs["neurodata_type"] = "TimeSeries"
            ev.create_dataset("data", data=np.array([1], dtype=np.int32))
            ev.create_dataset("sync", data=np.array([5], dtype=np.int64))

        with Reader(path) as reader:
            assert len(reader.streams) == 1
            assert reader.events == {}
            assert reader.skipped[0].entry == "nowhere.TTL"

    def test_missing_acquisition_group(self, tmp_path):
        path = tmp_path / "empty.nwb"
        with h5py.File(path, "w") as f:
            f.create_group("general")
        with pytest.raises(ContainerOpenFailed):
            Reader(path).open()

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "not_hdf5.nwb"
        path.write_text("definitely not HDF5")
        with pytest.raises(ContainerOpenFailed):
            Reader(path).open()
        with pytest.raises(ContainerOpenFailed):
            Reader(tmp_path / "missing.nwb").open()

    def test_accessors_require_open(self, tmp_path):
        reader = Reader(tmp_path / "x.nwb")
        with pytest.raises(RuntimeError, match="not opened"):
            _ = reader.streams


# ── Recorder ───────────────────────────────────────────────


class TestRecorder:
    def test_file_naming(self, tmp_path):
        rec = Recorder(tmp_path, make_channels(1), experiment_number=2, recording_number=3)
        assert rec.path == tmp_path / "experiment2_recording3.nwb"

    def test_context_manager(self, tmp_path):
        with Recorder(tmp_path, make_channels(2)) as rec:
            rec.write_block(0, np.zeros(10))
            rec.write_block(1, np.zeros(10))
            assert rec.num_samples(1) == 10
        assert rec.path.exists()
        assert "saved" in repr(rec)

    def test_auto_start_on_write_block(self, tmp_path):
        rec = Recorder(tmp_path, make_channels(1))
        assert "idle" in repr(rec)
        rec.write_block(0, np.zeros(4))
        assert "recording" in repr(rec)
        rec.save()

        with Replay(rec.path) as r:
            assert r.num_samples == 4

    def test_event_before_start_raises(self, tmp_path):
        events = [EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)]
        rec = Recorder(tmp_path, make_channels(1), event_channels=events)
        with pytest.raises(RuntimeError, match="start"):
            rec.write_event(0, True, 10)

    def test_zero_scale_rejected_on_channel(self):
        with pytest.raises(ValueError):
            make_channels(1, bit_volts=0.0)

    def test_invalid_scale_leaves_path_reusable(self, tmp_path):
        bad = ContinuousChannel.model_construct(
            name="CH0", global_index=0, local_index=0, source_id=100, stream_id=0,
            bit_volts=0.0, sample_rate=1000.0, channel_type=0,
        )
        rec = Recorder(tmp_path, [bad])
        with pytest.raises(InvalidCalibration):
            rec.start()
        assert not rec.path.exists()

        with Recorder(tmp_path, make_channels(1)) as retry:
            retry.write_block(0, np.zeros(8))
        assert retry.path == rec.path
        with Replay(retry.path) as r:
            assert r.num_samples == 8

    def test_failed_writer_open_releases_file(self, tmp_path):
        path = tmp_path / "partial.nwb"
        ttl = EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)
        layout = plan_channels(make_channels(1), [ttl])
        writer = RecordingWriter(path, layout)
        with patch.object(RecordingWriter, "_create_event_log", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError, match="disk full"):
                writer.open()
        assert not writer.is_open
        assert_released(path)

    def test_save_twice_raises(self, tmp_path):
        rec = Recorder(tmp_path, make_channels(1))
        rec.start()
        rec.save()
        with pytest.raises(RuntimeError, match="already saved"):
            rec.save()

    def test_metadata_and_settings_preserved(self, tmp_path):
        with Recorder(
            tmp_path,
            make_channels(1),
            identifier="rig-7",
            metadata={"session_description": "baseline", "subject": "m12"},
            settings_text="<SETTINGS/>",
        ) as rec:
            rec.write_block(0, np.zeros(4))

        with Replay(rec.path) as r:
            assert r.metadata.identifier == "rig-7"
            assert r.metadata.session_description == "baseline"
            assert r.metadata.user_metadata["subject"] == "m12"
            assert r.settings_text == "<SETTINGS/>"


# ── Replay ─────────────────────────────────────────────────


class TestReplay:
    @pytest.fixture
    def recording(self, tmp_path):
        """1000 samples of a ramp on two channels, starting at sample 1000, with TTL events."""
        ramp = np.arange(1000) * 0.5
        ttl = EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)
        with Recorder(tmp_path, make_channels(2), event_channels=[ttl]) as rec:
            rec.write_block(0, ramp, sample_number=1000)
            rec.write_block(1, -ramp)
            rec.write_event(0, True, 1005, line=2)
            rec.write_event(0, True, 1050)
            rec.write_event(0, False, 1995, line=1)
        return rec.path

    def test_stream_index(self, recording):
        with Replay(recording) as r:
            assert len(r.streams) == 1
            stream = r.active_stream
            assert stream.name == "100.0"
            assert stream.num_samples == 1000
            assert stream.sample_rate == 1000.0
            assert stream.base_sample_number == 1000
            assert stream.channels[0].bit_volts == pytest.approx(BIT_VOLTS)
            assert len(r) == 1000

    def test_read_window_stops_at_boundary(self, recording):
        ramp = np.arange(1000) * 0.5
        with Replay(recording) as r:
            r.seek(995)
            n, block = r.read_window(20)
            assert n == 5
            assert block.shape == (5, 2)
            np.testing.assert_allclose(block[:, 0], ramp[995:], atol=BIT_VOLTS)
            np.testing.assert_allclose(block[:, 1], -ramp[995:], atol=BIT_VOLTS)
            assert r.position == 0

            r.seek(0)
            n, block = r.read_window(10)
            assert n == 10
            np.testing.assert_allclose(block[:, 0], ramp[:10], atol=BIT_VOLTS)
            assert r.position == 10

    def test_seek_wraps(self, recording):
        with Replay(recording) as r:
            assert r.seek(2250) == 250
            assert r.seek(-1) == 999

    def test_read_into_caller_buffer(self, recording):
        with Replay(recording) as r:
            buf = np.zeros((64, 2), dtype=np.float32)
            r.seek(100)
            n, block = r.read_window(64, out=buf)
            assert n == 64
            assert np.shares_memory(block, buf)
            np.testing.assert_allclose(buf[0, 0], 50.0, atol=BIT_VOLTS)
            with pytest.raises(ValueError, match="buffer"):
                r.read_window(64, out=np.zeros((10, 2), dtype=np.float32))

    def test_bad_initial_stream_releases_file(self, recording):
        with pytest.raises(IndexError):
            Replay(recording, stream=9)
        assert_released(recording)

    def test_select_stream(self, recording):
        with Replay(recording) as r:
            r.seek(500)
            r.select_stream(0)
            assert r.position == 0
            with pytest.raises(IndexError):
                r.select_stream(3)

    def test_event_projection_into_later_loop(self, recording):
        with Replay(recording) as r:
            records = r.events_in_window(1050, 1060)
        assert len(records) == 1
        assert records[0].sample_number == 1050
        assert records[0].channel == 0
        assert records[0].state is True

    def test_event_projection_across_boundary(self, recording):
        with Replay(recording) as r:
            records = r.events_in_window(990, 1010)
        assert [e.sample_number for e in records] == [995, 1005]
        assert [e.channel for e in records] == [1, 2]
        assert [e.state for e in records] == [False, True]

    def test_event_projection_multiple_loops(self, recording):
        with Replay(recording) as r:
            records = r.events_in_window(0, 3000)
            assert len(records) == 9
            assert r.events_in_window(10, 10) == []
            with pytest.raises(ValueError):
                r.events_in_window(-5, 10)

    def test_empty_stream_cannot_seek(self, tmp_path):
        rec = Recorder(tmp_path, make_channels(2))
        rec.start()
        rec.save()

        with Replay(rec.path) as r:
            assert r.num_samples == 0
            with pytest.raises(SeekOutOfRange):
                r.seek(0)
            with pytest.raises(SeekOutOfRange):
                r.read_window(10)

    def test_multiple_streams(self, tmp_path):
        channels = make_channels(2) + make_channels(3, stream_id=1, sample_rate=2000.0, start=2)
        with Recorder(tmp_path, channels) as rec:
            for i in range(2):
                rec.write_block(i, np.zeros(10))
            for i in range(2, 5):
                rec.write_block(i, np.full(20, 5.0))

        with Replay(rec.path) as r:
            assert [(s.name, s.num_samples, s.num_channels) for s in r.streams] == [
                ("100.0", 10, 2),
                ("100.1", 20, 3),
            ]
            r.select_stream(1)
            assert r.sample_rate == pytest.approx(2000.0)
            n, block = r.read_window(100)
            assert n == 20
            np.testing.assert_allclose(block, 5.0, atol=BIT_VOLTS)

    def test_spikes_roundtrip(self, tmp_path):
        channels = make_channels(4)
        electrode = SpikeElectrode(name="Tetrode 1", channels=channels, num_samples=10)
        waveform = np.linspace(-100.0, 100.0, 40)
        with Recorder(tmp_path, channels, spike_electrodes=[electrode]) as rec:
            rec.write_block(0, np.zeros(5))
            rec.write_spike(0, waveform, 0.25)

        with Replay(rec.path) as r:
            assert r.spike_series[0].num_spikes == 1
            timestamps, waveforms = r.spikes("Tetrode 1")
        np.testing.assert_allclose(timestamps, [0.25])
        assert waveforms.shape == (1, 4, 10)
        np.testing.assert_allclose(waveforms.reshape(-1), waveform, atol=BIT_VOLTS)

    def test_summary_and_repr(self, recording):
        with Replay(recording) as r:
            s = r.summary()
            assert "100.0" in s
            assert "1000 samples" in s
            assert "3 events" in s
            assert "100.0" in repr(r)


# ── CLI ────────────────────────────────────────────────────


class TestCLI:
    @pytest.fixture
    def recording(self, tmp_path):
        ttl = EventChannel(name="TTL", source_id=100, stream_id=0, sample_rate=1000.0)
        with Recorder(tmp_path, make_channels(2), event_channels=[ttl], identifier="cli_test") as rec:
            rec.write_block(0, np.full(100, 10.0))
            rec.write_block(1, np.full(100, 20.0))
            rec.write_event(0, True, 42)
        return rec.path

    def test_cli_info(self, recording):
        from click.testing import CliRunner

        from ephysreplay.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["info", str(recording)])
        assert result.exit_code == 0
        assert "cli_test" in result.output
        assert "100.0" in result.output
        assert "100" in result.output

    def test_cli_events(self, recording):
        from click.testing import CliRunner

        from ephysreplay.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["events", str(recording), "--start", "100", "--stop", "200"])
        assert result.exit_code == 0
        assert "142" in result.output
        assert "1 event(s)" in result.output

    def test_cli_read(self, recording):
        from click.testing import CliRunner

        from ephysreplay.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["read", str(recording), "--start", "90", "--count", "50"])
        assert result.exit_code == 0
        assert "Read 10 of 50 samples from position 90" in result.output

    def test_cli_version(self):
        from click.testing import CliRunner

        from ephysreplay.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert "0.1.0" in result.output
