"""
Safetensors Reader

Reads safetensors streams without pickle.

Features:
- Header-only index reads (for key checks before touching the payload)
- Key filtering: unrequested tensors are seeked over, not read
- Works on non-seekable streams by reading the payload in file order
"""

import io
import logging
import struct
import sys
from typing import BinaryIO, Collection, Dict, Optional

import torch

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.dtypes import byteswap, tensor_from_bytes
from weightbridge.errors import MalformedHeader, StreamError
from weightbridge.safetensors.spec import (
    HEADER_LENGTH_SIZE,
    SafetensorsHeader,
    decode_header,
)

logger = logging.getLogger(__name__)

_SKIP_CHUNK = 1024 * 1024


def _read(stream: BinaryIO, n: int) -> bytes:
    try:
        return stream.read(n)
    except OSError as e:
        raise StreamError(f"Failed to read safetensors stream: {e}") from e


def _remaining(stream: BinaryIO) -> Optional[int]:
    """Bytes between the current position and the end, or None if unknown."""
    try:
        if not stream.seekable():
            return None
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
    except OSError as e:
        raise StreamError(f"Failed to seek safetensors stream: {e}") from e
    return end - position


def read_index(stream: BinaryIO, config: Optional[CodecConfig] = None) -> SafetensorsHeader:
    """
    Read and validate the header only.

    The stream is left positioned at the start of the payload.

    Raises:
        MalformedHeader: The length prefix, JSON, or offsets are invalid
        UnsupportedDType: A tensor uses an unknown dtype tag
    """
    config = config or DEFAULT_CONFIG

    prefix = _read(stream, HEADER_LENGTH_SIZE)
    if len(prefix) != HEADER_LENGTH_SIZE:
        raise MalformedHeader(f"Stream too short for a header length ({len(prefix)} bytes)")
    header_len = struct.unpack('<Q', prefix)[0]

    if header_len > config.max_header_size:
        raise MalformedHeader(f"Header too large: {header_len} > {config.max_header_size}")

    data = _read(stream, header_len)
    if len(data) != header_len:
        raise MalformedHeader(f"Truncated header: expected {header_len} bytes, got {len(data)}")

    header = decode_header(data, _remaining(stream))
    logger.debug("Read safetensors header: %d tensors, %d payload bytes",
                 len(header.tensors), header.payload_size)
    return header


def load_state_dict(
    stream: BinaryIO,
    keys: Optional[Collection[str]] = None,
    config: Optional[CodecConfig] = None,
    header: Optional[SafetensorsHeader] = None,
) -> Dict[str, torch.Tensor]:
    """
    Load tensors from a safetensors stream.

    Args:
        stream: Binary stream positioned at the start of the file, or at the
            payload start when ``header`` is given
        keys: Names to load (None = all)
        config: Header size limit
        header: Header already read with ``read_index``

    Returns:
        ``name -> tensor`` in payload order
    """
    if header is None:
        header = read_index(stream, config)

    try:
        seekable = stream.seekable()
        base = stream.tell() if seekable else 0
    except OSError as e:
        raise StreamError(f"Failed to query safetensors stream: {e}") from e

    swap = sys.byteorder != "little"
    position = 0
    state_dict: Dict[str, torch.Tensor] = {}

    for entry in header.in_file_order():
        if keys is not None and entry.name not in keys:
            continue

        if entry.begin != position:
            if seekable:
                try:
                    stream.seek(base + entry.begin)
                except OSError as e:
                    raise StreamError(f"Failed to seek safetensors stream: {e}") from e
            else:
                _discard(stream, entry.begin - position)
            position = entry.begin

        data = _read(stream, entry.nbytes)
        if len(data) != entry.nbytes:
            raise StreamError(
                f"Unexpected end of stream reading {entry.name!r}: "
                f"expected {entry.nbytes} bytes, got {len(data)}"
            )
        position = entry.end

        if swap:
            data = byteswap(data, entry.dtype)
        state_dict[entry.name] = tensor_from_bytes(data, entry.dtype, entry.shape)

    logger.debug("Loaded %d of %d safetensors tensors", len(state_dict), len(header.tensors))
    return state_dict


def _discard(stream: BinaryIO, count: int) -> None:
    while count > 0:
        chunk = _read(stream, min(count, _SKIP_CHUNK))
        if not chunk:
            raise StreamError("Unexpected end of stream while skipping payload")
        count -= len(chunk)
