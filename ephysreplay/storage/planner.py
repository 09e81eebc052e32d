"""Channel grouping: partition a stream-sorted channel list into write groups.

Channels must arrive sorted by stream. The list is walked once and a new
group starts whenever ``(source_id, stream_id)`` changes, so a stream that
appears in two non-adjacent runs produces two groups.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from ephysreplay.storage.format import event_entry_name
from ephysreplay.utils.schema import (
    ContinuousChannel,
    ContinuousGroup,
    EventChannel,
    EventSeriesPlan,
    RecordingLayout,
    SpikeElectrode,
    WriteCursor,
)

logger = logging.getLogger(__name__)


def group_name(source_id: int, stream_id: int) -> str:
    return f"{source_id}.{stream_id}"


def plan_channels(
    channels: Sequence[ContinuousChannel],
    event_channels: Iterable[EventChannel] = (),
    spike_electrodes: Iterable[SpikeElectrode] = (),
) -> RecordingLayout:
    """Build the group topology for one recording.

    Args:
        channels: Continuous channels, pre-sorted by stream.
        event_channels: TTL event sources; each gets its own event log.
        spike_electrodes: Spike electrodes; each forms its own group.

    Returns:
        RecordingLayout with one WriteCursor per input channel, in input order.
    """
    layout = RecordingLayout()
    used_names: set[str] = set()
    current: ContinuousGroup | None = None

    for channel in channels:
        if current is None or channel.stream_key != (current.source_id, current.stream_id):
            name = _unique(group_name(*channel.stream_key), used_names)
            current = ContinuousGroup(
                name=name,
                source_id=channel.source_id,
                stream_id=channel.stream_id,
            )
            layout.groups.append(current)
        elif channel.sample_rate != current.sample_rate:
            raise ValueError(
                f"Channel '{channel.name}' runs at {channel.sample_rate} Hz but group "
                f"'{current.name}' runs at {current.sample_rate} Hz"
            )

        layout.cursors.append(
            WriteCursor(group_index=len(layout.groups) - 1, offset=current.num_channels)
        )
        current.channels.append(channel)

    # First group of each stream owns that stream's events
    stream_groups: dict[tuple[int, int], str] = {}
    for group in layout.groups:
        stream_groups.setdefault((group.source_id, group.stream_id), group.name)

    for event_channel in event_channels:
        entry = event_entry_name(event_channel.name)
        if entry in used_names:
            raise ValueError(f"Duplicate event entry name '{entry}'")
        used_names.add(entry)
        source_series = stream_groups.get(event_channel.stream_key)
        if source_series is None:
            logger.warning(
                "Event channel '%s' has no continuous stream (source %d, stream %d)",
                event_channel.name,
                event_channel.source_id,
                event_channel.stream_id,
            )
        layout.event_series.append(
            EventSeriesPlan(entry_name=entry, channel=event_channel, source_series=source_series)
        )

    for electrode in spike_electrodes:
        if electrode.name in used_names:
            raise ValueError(f"Spike electrode name '{electrode.name}' collides with another entry")
        used_names.add(electrode.name)
        layout.spike_electrodes.append(electrode)

    logger.debug(
        "Planned %d channels into %d groups, %d event logs, %d spike electrodes",
        layout.num_channels,
        len(layout.groups),
        len(layout.event_series),
        len(layout.spike_electrodes),
    )
    return layout


def _unique(name: str, used: set[str]) -> str:
    candidate = name
    n = 1
    while candidate in used:
        candidate = f"{name}_{n}"
        n += 1
    used.add(candidate)
    return candidate
