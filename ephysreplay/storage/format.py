"""ephysreplay .nwb file format constants and helpers.

The container is HDF5 with an NWB-style structure:

    /                       — nwb_version, identifier, metadata (JSON) attrs
    /general/settings       — optional settings text of the acquisition chain
    /acquisition/
        /<group>            — ElectricalSeries: data [N, C] int16, timestamps,
                              sync, channel_conversion, channel_type
        /<event>.TTL        — TimeSeries: data (signed edge codes), sync, timestamps
        /<electrode>        — SpikeEventSeries: data [S, C, W] int16, timestamps, sync
"""

# HDF5 group/dataset paths
ACQUISITION_GROUP = "acquisition"
GENERAL_GROUP = "general"
SETTINGS_DATASET = "settings"

DATA_DATASET = "data"
TIMESTAMPS_DATASET = "timestamps"
SYNC_DATASET = "sync"
CHANNEL_CONVERSION_DATASET = "channel_conversion"
CHANNEL_TYPE_DATASET = "channel_type"

# Attributes
NEURODATA_TYPE_ATTR = "neurodata_type"
CONVERSION_ATTR = "conversion"
INTERVAL_ATTR = "interval"
UNIT_ATTR = "unit"
SOURCE_SERIES_ATTR = "source_series"
SOURCE_ID_ATTR = "source_id"
STREAM_ID_ATTR = "stream_id"
METADATA_ATTR = "metadata"
IDENTIFIER_ATTR = "identifier"
SESSION_DESCRIPTION_ATTR = "session_description"
NWB_VERSION_ATTR = "nwb_version"

# neurodata_type tags
CONTINUOUS_TYPE = "ElectricalSeries"
EVENTS_TYPE = "TimeSeries"
SPIKES_TYPE = "SpikeEventSeries"

# Name suffix of TTL event entries
EVENT_SUFFIX = ".TTL"

# File extension
FILE_EXTENSION = ".nwb"

# Stored sample type
SAMPLE_DTYPE = "int16"

# Compression settings
COMPRESSION = "gzip"
COMPRESSION_OPTS = 4  # compression level 1-9, 4 is good speed/ratio balance

# Chunk size for streaming writes (samples per chunk)
CHUNK_SAMPLES = 4096

# Initial dataset allocation (grows dynamically)
INITIAL_SAMPLES = 16384

# Flush after this many leader blocks
FLUSH_EVERY_BLOCKS = 64

# Sentinel for an unknown sampling rate
UNKNOWN_SAMPLE_RATE = -1.0

# Version of the format
NWB_VERSION = "2.6.0"
FORMAT_VERSION = "1.0.0"


def event_entry_name(name: str) -> str:
    """Name of the acquisition entry holding a TTL event log."""
    return f"{name}{EVENT_SUFFIX}"


def strip_event_suffix(name: str) -> str:
    if name.endswith(EVENT_SUFFIX):
        return name[: -len(EVENT_SUFFIX)]
    return name
