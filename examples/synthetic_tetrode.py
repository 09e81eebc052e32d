"""ephysreplay Example: Synthetic Two-Stream Recording with Looping Playback

This example needs no acquisition hardware. It synthesizes a 30 kHz
headstage stream (4 electrode channels grouped as a tetrode) and a 2 kHz
auxiliary stream, writes them block by block from one thread per channel
with TTL edges and spike snippets, then plays the file back as an endless
loop.

Run:
    python examples/synthetic_tetrode.py

Output:
    - Creates synthetic_tetrode/experiment1_recording1.nwb
    - Prints the stream index
    - Reads a window across the end of the file and lists its events
"""

import threading

import numpy as np

from ephysreplay import ContinuousChannel, EventChannel, Recorder, Replay, SpikeElectrode

HEADSTAGE_RATE = 30000.0
AUX_RATE = 2000.0
DURATION_S = 2.0
BLOCK = 1024


def make_channels() -> list[ContinuousChannel]:
    headstage = [
        ContinuousChannel(
            name=f"CH{i + 1}", global_index=i, local_index=i,
            source_id=100, stream_id=0, bit_volts=0.195, sample_rate=HEADSTAGE_RATE,
        )
        for i in range(4)
    ]
    aux = [
        ContinuousChannel(
            name=f"AUX{i + 1}", global_index=4 + i, local_index=i,
            source_id=100, stream_id=1, bit_volts=37.4, sample_rate=AUX_RATE,
            channel_type=1,
        )
        for i in range(2)
    ]
    return headstage + aux


def synthesize(rate: float, scale: float, seed: int) -> np.ndarray:
    """Noise plus a slow oscillation, in microvolts."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(rate * DURATION_S)) / rate
    return scale * (np.sin(2 * np.pi * 8.0 * t) + 0.2 * rng.normal(size=t.size))


def record(root: str) -> str:
    channels = make_channels()
    ttl = EventChannel(name="Sync", source_id=100, stream_id=0, sample_rate=HEADSTAGE_RATE)
    tetrode = SpikeElectrode(name="Tetrode 1", channels=channels[:4], num_samples=40)

    with Recorder(
        root,
        channels,
        event_channels=[ttl],
        spike_electrodes=[tetrode],
        identifier="synthetic_tetrode",
        metadata={"session_description": "synthetic two-stream demo"},
    ) as rec:

        def produce(index: int) -> None:
            ch = channels[index]
            signal = synthesize(ch.sample_rate, 100.0 if ch.channel_type == 0 else 5000.0, seed=index)
            for start in range(0, signal.size, BLOCK):
                rec.write_block(index, signal[start:start + BLOCK])

        threads = [threading.Thread(target=produce, args=(i,)) for i in range(len(channels))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # A 10 Hz sync pulse on line 0, 5 ms wide
        for pulse in range(int(DURATION_S * 10)):
            onset = int(pulse * HEADSTAGE_RATE / 10)
            rec.write_event(0, True, onset)
            rec.write_event(0, False, onset + int(0.005 * HEADSTAGE_RATE))

        rng = np.random.default_rng(7)
        for sample in np.sort(rng.integers(0, int(HEADSTAGE_RATE * DURATION_S), 50)):
            waveform = -80.0 * np.exp(-((np.arange(40) - 12) ** 2) / 20.0)
            rec.write_spike(0, np.tile(waveform, 4), sample / HEADSTAGE_RATE, sample_number=int(sample))

    return str(rec.path)


def play(path: str) -> None:
    with Replay(path) as r:
        print(r)
        print()

        n = r.num_samples
        r.seek(n - 500)
        got, block = r.read_window(BLOCK)
        print(f"Read {got} samples before the end of the file, cursor now at {r.position}")
        got, block = r.read_window(BLOCK)
        print(f"Read {got} samples after wrapping, peak {np.abs(block).max():.1f} uV")

        for event in r.events_in_window(n - 500, n + BLOCK):
            edge = "rising" if event.state else "falling"
            print(f"  line {event.channel} {edge} at playback sample {event.sample_number}")


if __name__ == "__main__":
    play(record("synthetic_tetrode"))
