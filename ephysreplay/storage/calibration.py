"""Conversion between physical samples and stored int16 counts.

In memory, samples are microvolts and ``bit_volts`` is microvolts per count.
The file stores conversions in volts per count; the factor between the two
is applied only by ``bit_volts_to_volts`` and ``volts_to_bit_volts``.
"""

from __future__ import annotations

import numpy as np

from ephysreplay.errors import InvalidCalibration

MICROVOLTS_PER_VOLT = 1e6

_INT16_MIN = np.iinfo(np.int16).min
_INT16_MAX = np.iinfo(np.int16).max


def validate_scale(bit_volts: float | np.ndarray) -> np.ndarray:
    """Return the scale as a float64 array, rejecting zero or non-finite values."""
    scale = np.asarray(bit_volts, dtype=np.float64)
    if scale.size == 0:
        raise InvalidCalibration("Calibration scale is empty")
    if not np.all(np.isfinite(scale)):
        raise InvalidCalibration(f"Calibration scale must be finite, got {bit_volts!r}")
    if np.any(scale == 0):
        raise InvalidCalibration(f"Calibration scale must be non-zero, got {bit_volts!r}")
    return scale


def to_fixed_point(samples: np.ndarray | float, bit_volts: float | np.ndarray) -> np.ndarray:
    """Convert physical samples to int16 counts.

    ``bit_volts`` is a scalar or one value per column (last axis). Values
    outside the int16 range saturate.
    """
    scale = validate_scale(bit_volts)
    counts = np.rint(np.asarray(samples, dtype=np.float64) / scale)
    return np.clip(counts, _INT16_MIN, _INT16_MAX).astype(np.int16)


def to_physical(
    raw: np.ndarray | int,
    bit_volts: float | np.ndarray,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Convert int16 counts back to physical samples (float32)."""
    scale = validate_scale(bit_volts)
    values = np.asarray(raw, dtype=np.float64) * scale
    if out is None:
        return values.astype(np.float32)
    out[...] = values
    return out


def bit_volts_to_volts(bit_volts: float | np.ndarray) -> np.ndarray:
    """Microvolts per count to the volts per count stored on disk."""
    return validate_scale(bit_volts) / MICROVOLTS_PER_VOLT


def volts_to_bit_volts(conversion: float | np.ndarray) -> np.ndarray:
    """Volts per count read from disk to microvolts per count."""
    return validate_scale(conversion) * MICROVOLTS_PER_VOLT
