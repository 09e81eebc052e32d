"""Pydantic models for ephysreplay data structures."""

from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ephysreplay.storage.calibration import validate_scale
from ephysreplay.storage.format import FORMAT_VERSION, UNKNOWN_SAMPLE_RATE


class SystemInfo(BaseModel):
    """Captured system information at recording time."""

    python_version: str = Field(default_factory=lambda: platform.python_version())
    platform: str = Field(default_factory=lambda: platform.platform())
    hostname: str = Field(default_factory=lambda: platform.node())


class RecordingMetadata(BaseModel):
    """Metadata for a recording session."""

    identifier: str = ""
    session_description: str = ""
    experiment_number: int = 1
    recording_number: int = 1
    user_metadata: dict[str, Any] = Field(default_factory=dict)
    system_info: SystemInfo = Field(default_factory=SystemInfo)
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    format_version: str = FORMAT_VERSION

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> RecordingMetadata:
        return cls.model_validate_json(data)


# ── Write side ─────────────────────────────────────────────


class ContinuousChannel(BaseModel):
    """One continuous channel as delivered by the acquisition topology."""

    model_config = ConfigDict(frozen=True)

    name: str
    global_index: int
    local_index: int
    source_id: int
    stream_id: int
    bit_volts: float  # microvolts per count
    sample_rate: float = Field(gt=0)
    channel_type: int = 0  # 0 electrode, 1 aux, 2 adc

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Channel name must not be empty")
        return v

    @field_validator("bit_volts")
    @classmethod
    def scale_is_valid(cls, v: float) -> float:
        validate_scale(v)
        return v

    @property
    def stream_key(self) -> tuple[int, int]:
        return (self.source_id, self.stream_id)


class EventChannel(BaseModel):
    """A TTL event source. Lines are numbered from 0."""

    model_config = ConfigDict(frozen=True)

    name: str
    source_id: int
    stream_id: int
    sample_rate: float = Field(gt=0)

    @property
    def stream_key(self) -> tuple[int, int]:
        return (self.source_id, self.stream_id)


class SpikeElectrode(BaseModel):
    """A spike electrode: a fixed set of continuous channels and a waveform length."""

    model_config = ConfigDict(frozen=True)

    name: str
    channels: tuple[ContinuousChannel, ...]
    num_samples: int

    @field_validator("channels", mode="before")
    @classmethod
    def coerce_channels(cls, v: Any) -> tuple[Any, ...]:
        if isinstance(v, list):
            return tuple(v)
        return v

    @field_validator("channels")
    @classmethod
    def at_least_one_channel(cls, v: tuple[ContinuousChannel, ...]) -> tuple[ContinuousChannel, ...]:
        if len(v) == 0:
            raise ValueError("Spike electrode needs at least one channel")
        return v

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    @property
    def bit_volts(self) -> float:
        """Calibration of the electrode, taken from its first channel."""
        return self.channels[0].bit_volts


class ContinuousGroup(BaseModel):
    """Channels sharing one data dataset and one timestamp/sync dataset."""

    name: str
    source_id: int
    stream_id: int
    channels: list[ContinuousChannel] = Field(default_factory=list)

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    @property
    def sample_rate(self) -> float:
        return self.channels[0].sample_rate


class WriteCursor(BaseModel):
    """Where a channel's samples go: which group, and which column of it."""

    model_config = ConfigDict(frozen=True)

    group_index: int
    offset: int

    @property
    def is_leader(self) -> bool:
        return self.offset == 0


class EventSeriesPlan(BaseModel):
    """On-disk entry for one event channel."""

    entry_name: str
    channel: EventChannel
    source_series: str | None = None


class RecordingLayout(BaseModel):
    """Group topology of one recording, produced once by the planner."""

    groups: list[ContinuousGroup] = Field(default_factory=list)
    cursors: list[WriteCursor] = Field(default_factory=list)
    event_series: list[EventSeriesPlan] = Field(default_factory=list)
    spike_electrodes: list[SpikeElectrode] = Field(default_factory=list)

    @property
    def num_channels(self) -> int:
        return len(self.cursors)


# ── Read side ──────────────────────────────────────────────


class ChannelInfo(BaseModel):
    """Per-column metadata of a recorded continuous stream."""

    name: str
    bit_volts: float
    channel_type: int = 0


class StreamInfo(BaseModel):
    """A continuous stream discovered in a container."""

    name: str
    num_samples: int
    sample_rate: float = UNKNOWN_SAMPLE_RATE
    bit_volts: float = 1.0
    base_sample_number: int = 0
    channels: list[ChannelInfo] = Field(default_factory=list)

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    @property
    def has_known_rate(self) -> bool:
        return self.sample_rate > 0

    @property
    def duration(self) -> float | None:
        """Length in seconds, or None when the sample rate is unknown."""
        if not self.has_known_rate:
            return None
        return self.num_samples / self.sample_rate


class EventRecord(BaseModel):
    """A TTL edge on a stream's sample timeline."""

    model_config = ConfigDict(frozen=True)

    channel: int
    state: bool
    sample_number: int


class SpikeSeriesInfo(BaseModel):
    """A spike waveform log discovered in a container."""

    name: str
    num_spikes: int
    num_channels: int
    num_samples: int
    bit_volts: float
