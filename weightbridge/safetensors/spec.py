"""
Safetensors Format Specification

Layout:
- Header length: 8 bytes, little-endian uint64
- Header: UTF-8 JSON object
    {
        "__metadata__": {"key": "value", ...},      (optional, str -> str)
        "<name>": {
            "dtype": "F32",
            "shape": [2, 3],
            "data_offsets": [begin, end]             (relative to payload start)
        },
        ...
    }
- Payload: raw little-endian tensor bytes

The byte ranges of all tensors tile the payload exactly: sorted by begin, the
first begins at 0, each begins where the previous one ends, and the last one
ends at the end of the payload.
"""

import json
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import torch

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.dtypes import element_size, numel, safetensors_dtype, safetensors_tag
from weightbridge.errors import MalformedHeader

HEADER_LENGTH_SIZE = 8
METADATA_KEY = "__metadata__"


@dataclass
class TensorEntry:
    """Header entry of one tensor."""
    name: str
    dtype: torch.dtype
    shape: Tuple[int, ...]
    begin: int
    end: int

    @property
    def nbytes(self) -> int:
        return self.end - self.begin

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "dtype": safetensors_tag(self.dtype),
            "shape": list(self.shape),
            "data_offsets": [self.begin, self.end],
        }

    @classmethod
    def from_dict(cls, name: str, d: Any) -> "TensorEntry":
        """Deserialize from dictionary, checking field types."""
        if not isinstance(d, dict):
            raise MalformedHeader(f"Entry for {name!r} is not an object")
        try:
            tag, shape, offsets = d["dtype"], d["shape"], d["data_offsets"]
        except KeyError as e:
            raise MalformedHeader(f"Entry for {name!r} has no {e.args[0]!r} field") from None

        if not isinstance(tag, str):
            raise MalformedHeader(f"Entry for {name!r} has a non-string dtype")
        if not isinstance(shape, list) or not all(_is_count(dim) for dim in shape):
            raise MalformedHeader(f"Entry for {name!r} has an invalid shape: {shape!r}")
        if (not isinstance(offsets, list) or len(offsets) != 2
                or not all(_is_count(o) for o in offsets)):
            raise MalformedHeader(f"Entry for {name!r} has invalid data_offsets: {offsets!r}")

        begin, end = offsets
        if end < begin:
            raise MalformedHeader(f"Entry for {name!r} ends before it begins: {offsets!r}")

        return cls(
            name=name,
            dtype=safetensors_dtype(tag),
            shape=tuple(shape),
            begin=begin,
            end=end,
        )


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass
class SafetensorsHeader:
    """
    Parsed header: tensor entries in document order plus optional metadata.
    """
    tensors: Dict[str, TensorEntry] = field(default_factory=dict)
    metadata: Optional[Dict[str, str]] = None

    @property
    def payload_size(self) -> int:
        return max((t.end for t in self.tensors.values()), default=0)

    def names(self) -> List[str]:
        return list(self.tensors)

    def in_file_order(self) -> List[TensorEntry]:
        """Entries sorted by payload offset."""
        return sorted(self.tensors.values(), key=lambda t: (t.begin, t.end))

    def to_json(self) -> str:
        """Serialize header to compact JSON, metadata first."""
        data: Dict[str, Any] = {}
        if self.metadata is not None:
            data[METADATA_KEY] = self.metadata
        for name, entry in self.tensors.items():
            data[name] = entry.to_dict()
        return json.dumps(data, separators=(',', ':'), ensure_ascii=False)

    @classmethod
    def from_json(cls, json_str: str) -> "SafetensorsHeader":
        """Deserialize header from JSON (structure only, no offset checks)."""
        try:
            pairs = json.loads(json_str, object_pairs_hook=_reject_duplicates)
        except ValueError as e:
            raise MalformedHeader(f"Header is not valid JSON: {e}") from None
        if not isinstance(pairs, dict):
            raise MalformedHeader("Header is not a JSON object")

        header = cls()
        for name, value in pairs.items():
            if name == METADATA_KEY:
                header.metadata = _check_metadata(value)
            else:
                header.tensors[name] = TensorEntry.from_dict(name, value)
        return header


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise MalformedHeader(f"Duplicate header key: {key!r}")
        result[key] = value
    return result


def _check_metadata(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise MalformedHeader(f"{METADATA_KEY} must map strings to strings")
    return dict(value)


def validate_header(header: SafetensorsHeader, payload_size: Optional[int] = None) -> None:
    """
    Check that every entry's size matches its dtype and shape, and that the
    byte ranges tile the payload with no gap or overlap.

    Args:
        header: Parsed header
        payload_size: Bytes after the header, when known
    """
    for entry in header.tensors.values():
        expected = numel(entry.shape) * element_size(entry.dtype)
        if entry.nbytes != expected:
            raise MalformedHeader(
                f"Entry for {entry.name!r} spans {entry.nbytes} bytes, "
                f"expected {expected} for shape {list(entry.shape)}"
            )

    position = 0
    for entry in header.in_file_order():
        if entry.begin != position:
            kind = "overlaps" if entry.begin < position else "leaves a gap before"
            raise MalformedHeader(
                f"Entry for {entry.name!r} {kind} offset {position} "
                f"(data_offsets [{entry.begin}, {entry.end}])"
            )
        position = entry.end

    if payload_size is not None and position != payload_size:
        raise MalformedHeader(
            f"Tensors cover {position} bytes but the payload holds {payload_size}"
        )


def encode_header(header: SafetensorsHeader, config: Optional[CodecConfig] = None) -> bytes:
    """
    Encode header to bytes.

    Format:
    - Header length (8 bytes, uint64)
    - Header JSON (variable length, no padding)
    """
    config = config or DEFAULT_CONFIG
    json_bytes = header.to_json().encode('utf-8')

    if len(json_bytes) > config.max_header_size:
        raise MalformedHeader(f"Header too large: {len(json_bytes)} > {config.max_header_size}")

    return struct.pack('<Q', len(json_bytes)) + json_bytes


def decode_header(data: bytes, payload_size: Optional[int] = None) -> SafetensorsHeader:
    """
    Decode and validate the JSON part of a header.

    Args:
        data: Header bytes (after the length prefix)
        payload_size: Bytes after the header, when known
    """
    try:
        json_str = data.decode('utf-8')
    except UnicodeDecodeError:
        raise MalformedHeader("Header is not valid UTF-8") from None

    header = SafetensorsHeader.from_json(json_str)
    validate_header(header, payload_size)
    return header
