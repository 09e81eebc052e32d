"""ephysreplay — record and replay multi-stream electrophysiology data.

Writes continuous samples, TTL events and spike waveforms into an NWB-style
HDF5 file, and plays a recorded file back as an endless, looping stream.

Quick start:
    from ephysreplay import ContinuousChannel, Recorder, Replay

    channels = [
        ContinuousChannel(name=f"CH{i}", global_index=i, local_index=i,
                          source_id=100, stream_id=0, bit_volts=0.195,
                          sample_rate=30000.0)
        for i in range(4)
    ]

    # Record
    with Recorder("data/", channels) as rec:
        for i in range(4):
            rec.write_block(i, samples[i], sample_number=0)

    # Replay
    with Replay("data/experiment1_recording1.nwb") as r:
        print(r)                          # Stream index
        r.seek(29000)
        n, block = r.read_window(2048)    # stops at the end of the file
        events = r.events_in_window(29000, 31048)
"""

__version__ = "0.1.0"

from ephysreplay.errors import (
    ContainerOpenFailed,
    EntryParseSkipped,
    EphysReplayError,
    GroupSizeMismatch,
    InvalidCalibration,
    SeekOutOfRange,
)
from ephysreplay.recorder import Recorder
from ephysreplay.replay import Replay
from ephysreplay.storage.planner import plan_channels
from ephysreplay.utils.schema import (
    ContinuousChannel,
    EventChannel,
    EventRecord,
    SpikeElectrode,
    StreamInfo,
)

__all__ = [
    "Recorder",
    "Replay",
    "plan_channels",
    "ContinuousChannel",
    "EventChannel",
    "EventRecord",
    "SpikeElectrode",
    "StreamInfo",
    "EphysReplayError",
    "InvalidCalibration",
    "GroupSizeMismatch",
    "ContainerOpenFailed",
    "EntryParseSkipped",
    "SeekOutOfRange",
    "__version__",
]
