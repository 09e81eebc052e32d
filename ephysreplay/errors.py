"""Exception types raised by ephysreplay."""

from __future__ import annotations


class EphysReplayError(Exception):
    """Base class for all ephysreplay errors."""


class InvalidCalibration(EphysReplayError, ValueError):
    """A calibration scale is zero or not finite."""


class GroupSizeMismatch(EphysReplayError, ValueError):
    """Channels of one group wrote blocks of different sizes at the same position."""

    def __init__(self, group: str, position: int, expected: int, got: int) -> None:
        self.group = group
        self.position = position
        self.expected = expected
        self.got = got
        super().__init__(
            f"Group '{group}' block at sample {position}: "
            f"expected {expected} samples, got {got}"
        )


class ContainerOpenFailed(EphysReplayError, OSError):
    """The container could not be opened or has no acquisition root."""


class EntryParseSkipped(EphysReplayError):
    """An acquisition entry could not be parsed and was left out of the index."""

    def __init__(self, entry: str, reason: str) -> None:
        self.entry = entry
        self.reason = reason
        super().__init__(f"Skipping entry '{entry}': {reason}")


class SeekOutOfRange(EphysReplayError, IndexError):
    """The active stream has no samples to position the cursor in."""
