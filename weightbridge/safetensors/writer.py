"""
Safetensors Writer

Writes a state dict as a safetensors stream: names sorted, offsets assigned in
that order, header then payload with no padding. Identical input always
produces identical bytes.
"""

import logging
import sys
from typing import BinaryIO, Dict, Mapping, Optional

import torch

from weightbridge.config import CodecConfig
from weightbridge.dtypes import byteswap, element_size, tensor_to_bytes
from weightbridge.errors import MalformedHeader, StreamError, UnexpectedStructure
from weightbridge.safetensors.spec import (
    METADATA_KEY,
    SafetensorsHeader,
    TensorEntry,
    encode_header,
)

logger = logging.getLogger(__name__)


def build_header(
    state_dict: Mapping[str, torch.Tensor],
    metadata: Optional[Dict[str, str]] = None,
) -> SafetensorsHeader:
    """Lay out ``state_dict`` in sorted name order."""
    if metadata is not None and not all(
        isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
    ):
        raise MalformedHeader(f"{METADATA_KEY} must map strings to strings")

    header = SafetensorsHeader(metadata=dict(metadata) if metadata is not None else None)
    offset = 0
    for name in sorted(state_dict):
        tensor = state_dict[name]
        if name == METADATA_KEY:
            raise MalformedHeader(f"{METADATA_KEY} is reserved and cannot name a tensor")
        if not isinstance(tensor, torch.Tensor):
            raise UnexpectedStructure(f"Value for {name!r} is not a tensor")
        if not tensor.is_contiguous():
            raise UnexpectedStructure(f"Tensor {name!r} is not contiguous")

        size = tensor.numel() * element_size(tensor.dtype)
        entry = TensorEntry(
            name=name,
            dtype=tensor.dtype,
            shape=tuple(tensor.shape),
            begin=offset,
            end=offset + size,
        )
        entry.to_dict()  # raises UnsupportedDType before anything is written
        header.tensors[name] = entry
        offset += size
    return header


def save_state_dict(
    stream: BinaryIO,
    state_dict: Mapping[str, torch.Tensor],
    metadata: Optional[Dict[str, str]] = None,
    config: Optional[CodecConfig] = None,
) -> int:
    """
    Write ``state_dict`` to ``stream``.

    Args:
        stream: Writable binary stream
        state_dict: ``name -> tensor``; every tensor must be contiguous
        metadata: Optional ``__metadata__`` strings
        config: Header size limit

    Returns:
        Total bytes written
    """
    header = build_header(state_dict, metadata)
    header_bytes = encode_header(header, config)
    swap = sys.byteorder != "little"

    try:
        stream.write(header_bytes)
        total = len(header_bytes)
        for name, entry in header.tensors.items():
            data = tensor_to_bytes(state_dict[name])
            if swap:
                data = byteswap(data, entry.dtype)
            stream.write(data)
            total += len(data)
    except OSError as e:
        raise StreamError(f"Failed to write safetensors stream: {e}") from e

    logger.debug("Wrote %d safetensors tensors (%d bytes)", len(header.tensors), total)
    return total
