"""Thin h5py layer: the container operations the writer and reader rely on."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import h5py
import numpy as np

from ephysreplay.errors import ContainerOpenFailed
from ephysreplay.storage.format import CHUNK_SAMPLES, COMPRESSION, COMPRESSION_OPTS, INITIAL_SAMPLES

logger = logging.getLogger(__name__)


def open_container(path: str | Path) -> h5py.File:
    """Open an existing container read-only."""
    path = Path(path)
    try:
        return h5py.File(str(path), "r")
    except (OSError, ValueError) as e:
        raise ContainerOpenFailed(f"Cannot open container {path}: {e}") from e


def create_container(path: str | Path) -> h5py.File:
    """Create (truncate) a container for writing."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        return h5py.File(str(path), "w")
    except (OSError, ValueError) as e:
        raise ContainerOpenFailed(f"Cannot create container {path}: {e}") from e


def close_container(handle: h5py.File | None) -> None:
    if handle is not None and handle.id.valid:
        handle.close()


def list_groups(handle: h5py.File | h5py.Group, path: str) -> list[str]:
    """Names of the subgroups under ``path``, in storage order."""
    node = handle[path]
    return [name for name, item in node.items() if isinstance(item, h5py.Group)]


def read_attribute(node: h5py.HLObject, name: str, default: Any = None) -> Any:
    """Read an attribute, decoding byte strings. Missing attributes give ``default``."""
    if name not in node.attrs:
        return default
    value = node.attrs[name]
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, np.ndarray) and value.shape == ():
        return value.item()
    return value


def write_attribute(node: h5py.HLObject, name: str, value: Any) -> None:
    node.attrs[name] = value


def create_extensible_dataset(
    group: h5py.Group,
    name: str,
    shape: tuple[int, ...],
    dtype: Any,
    chunk_samples: int = CHUNK_SAMPLES,
    initial_samples: int = INITIAL_SAMPLES,
    compression: str | None = COMPRESSION,
) -> h5py.Dataset:
    """Create a dataset that grows along axis 0.

    ``shape`` is the shape of one row (``()`` for a 1-D dataset).
    """
    maxshape = (None, *shape)
    initial_shape = (initial_samples, *shape)
    chunks = (max(1, min(chunk_samples, initial_samples)), *shape)
    kwargs: dict[str, Any] = {}
    if compression is not None:
        kwargs["compression"] = compression
        if compression == "gzip":
            kwargs["compression_opts"] = COMPRESSION_OPTS
    return group.create_dataset(
        name,
        shape=initial_shape,
        maxshape=maxshape,
        dtype=dtype,
        chunks=chunks,
        **kwargs,
    )


def append_to_dataset(
    ds: h5py.Dataset,
    offset: int,
    data: np.ndarray,
    column: int | None = None,
    chunk_samples: int = CHUNK_SAMPLES,
) -> int:
    """Write ``data`` at rows ``[offset, offset + len(data))``, growing the dataset.

    With ``column`` set, only that column of a 2-D dataset is written.
    Returns the end row.
    """
    end = offset + len(data)
    if end > ds.shape[0]:
        new_size = max(ds.shape[0] * 2, end + chunk_samples)
        ds.resize(new_size, axis=0)
    if column is None:
        ds[offset:end] = data
    else:
        ds[offset:end, column] = data
    return end


def truncate_dataset(ds: h5py.Dataset, length: int) -> None:
    """Shrink an over-allocated dataset to its written length."""
    if ds.shape[0] != length:
        ds.resize(length, axis=0)


def read_hyperslab(ds: h5py.Dataset, offset: tuple[int, ...], shape: tuple[int, ...]) -> np.ndarray:
    """Read the block of ``shape`` starting at ``offset``."""
    selection = tuple(slice(o, o + n) for o, n in zip(offset, shape))
    return ds[selection]
