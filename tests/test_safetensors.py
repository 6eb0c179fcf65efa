"""
Tests for the safetensors codec

Header layout and validation, key filtering, and interoperability with the
safetensors package.
"""

import io
import json
import struct

import pytest
import torch
from safetensors.torch import load as st_load
from safetensors.torch import save as st_save

from weightbridge.config import CodecConfig
from weightbridge.errors import MalformedHeader, UnexpectedStructure, UnsupportedDType
from weightbridge.safetensors import (
    SafetensorsHeader,
    TensorEntry,
    load_state_dict,
    read_index,
    save_state_dict,
)


def build_file(header: dict, payload: bytes = b"") -> bytes:
    raw = json.dumps(header).encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw + payload


def save_bytes(state_dict, metadata=None) -> bytes:
    buffer = io.BytesIO()
    save_state_dict(buffer, state_dict, metadata)
    return buffer.getvalue()


class CountingStream(io.BytesIO):
    """BytesIO that counts the bytes handed out by read()."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.bytes_read = 0

    def read(self, size=-1):
        data = super().read(size)
        self.bytes_read += len(data)
        return data


class NonSeekable(io.RawIOBase):
    """Read-only stream without seek support."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def readinto(self, b) -> int:
        return self._buffer.readinto(b)


F32_PAIR = {"dtype": "F32", "shape": [2], "data_offsets": [0, 8]}


# =============================================================================
# Interoperability
# =============================================================================

@pytest.mark.interop
class TestInterop:
    """Round trips through the safetensors package."""

    def test_read_library_output(self):
        tensors = {
            "weight": torch.randn(3, 4),
            "steps": torch.arange(5, dtype=torch.int64),
            "mask": torch.tensor([True, False]),
            "half": torch.randn(2, 2).to(torch.float16),
            "scalar": torch.tensor(1.25),
        }
        loaded = load_state_dict(io.BytesIO(st_save(tensors)))

        assert set(loaded) == set(tensors)
        for name, tensor in tensors.items():
            assert loaded[name].dtype == tensor.dtype
            assert torch.equal(loaded[name], tensor)

    def test_library_reads_our_output(self):
        tensors = {
            "b": torch.randn(2, 3),
            "a": torch.arange(4, dtype=torch.int32),
            "c": torch.randn(5).to(torch.bfloat16),
        }
        loaded = st_load(save_bytes(tensors))

        for name, tensor in tensors.items():
            assert torch.equal(loaded[name], tensor)

    def test_library_metadata(self):
        data = st_save({"w": torch.ones(2)}, metadata={"format": "pt"})
        assert read_index(io.BytesIO(data)).metadata == {"format": "pt"}


# =============================================================================
# Writer layout
# =============================================================================

class TestWriter:
    """Tests for the safetensors writer."""

    def test_layout(self):
        """Sorted names, metadata first, contiguous offsets, no padding."""
        data = save_bytes(
            {"b": torch.ones(3), "a": torch.zeros(2, dtype=torch.int16)},
            metadata={"source": "test"},
        )
        header_len = struct.unpack("<Q", data[:8])[0]
        header = json.loads(data[8:8 + header_len])

        assert list(header) == ["__metadata__", "a", "b"]
        assert header["a"] == {"dtype": "I16", "shape": [2], "data_offsets": [0, 4]}
        assert header["b"] == {"dtype": "F32", "shape": [3], "data_offsets": [4, 16]}
        assert len(data) == 8 + header_len + 16

    def test_compact_json(self):
        data = save_bytes({"w": torch.ones(1)})
        assert b" " not in data[8:]

    def test_deterministic(self):
        tensors = {"x": torch.arange(6.0).reshape(2, 3), "y": torch.ones(2)}
        assert save_bytes(tensors) == save_bytes(dict(reversed(list(tensors.items()))))

    def test_non_contiguous_rejected(self):
        with pytest.raises(UnexpectedStructure):
            save_bytes({"t": torch.arange(6.0).reshape(2, 3).t()})

    def test_unsupported_dtype(self):
        with pytest.raises(UnsupportedDType):
            save_bytes({"c": torch.zeros(2, dtype=torch.complex128)})

    def test_reserved_name(self):
        with pytest.raises(MalformedHeader):
            save_bytes({"__metadata__": torch.ones(1)})

    def test_metadata_must_be_strings(self):
        with pytest.raises(MalformedHeader):
            save_bytes({"w": torch.ones(1)}, metadata={"epoch": 3})

    def test_empty_state_dict(self):
        data = save_bytes({})
        assert read_index(io.BytesIO(data)).tensors == {}


# =============================================================================
# Reader and header validation
# =============================================================================

class TestReader:
    """Tests for index reads, filtering and header validation."""

    def test_index_entries(self):
        data = save_bytes({"w": torch.ones(2, 3), "b": torch.ones(3)})
        header = read_index(io.BytesIO(data))

        assert isinstance(header, SafetensorsHeader)
        assert header.names() == ["b", "w"]
        assert header.tensors["w"] == TensorEntry("w", torch.float32, (2, 3), 12, 36)
        assert header.payload_size == 36

    def test_index_reads_only_header(self):
        data = save_bytes({"w": torch.ones(100)})
        stream = CountingStream(data)
        header = read_index(stream)

        header_len = struct.unpack("<Q", data[:8])[0]
        assert stream.bytes_read == 8 + header_len
        assert header.tensors["w"].nbytes == 400

    def test_skipped_keys_not_read(self):
        data = save_bytes({"big": torch.ones(1000), "small": torch.ones(2)})
        stream = CountingStream(data)
        loaded = load_state_dict(stream, keys={"small"})

        header_len = struct.unpack("<Q", data[:8])[0]
        assert list(loaded) == ["small"]
        assert stream.bytes_read == 8 + header_len + 8

    def test_non_seekable_stream(self):
        tensors = {"a": torch.arange(3.0), "b": torch.arange(4.0), "c": torch.arange(5.0)}
        loaded = load_state_dict(NonSeekable(save_bytes(tensors)), keys={"a", "c"})

        assert list(loaded) == ["a", "c"]
        assert torch.equal(loaded["c"], tensors["c"])

    def test_document_order_independent_of_offsets(self):
        """Entries may be listed in any order as long as the ranges tile the payload."""
        header = {
            "second": {"dtype": "F32", "shape": [1], "data_offsets": [4, 8]},
            "first": {"dtype": "F32", "shape": [1], "data_offsets": [0, 4]},
        }
        payload = struct.pack("<ff", 1.0, 2.0)
        loaded = load_state_dict(io.BytesIO(build_file(header, payload)))

        assert loaded["first"].item() == 1.0
        assert loaded["second"].item() == 2.0

    def test_overlapping_offsets(self):
        header = {
            "a": F32_PAIR,
            "b": {"dtype": "F32", "shape": [2], "data_offsets": [4, 12]},
        }
        with pytest.raises(MalformedHeader, match="overlaps"):
            read_index(io.BytesIO(build_file(header, bytes(12))))

    def test_gap_between_entries(self):
        header = {
            "a": F32_PAIR,
            "b": {"dtype": "F32", "shape": [2], "data_offsets": [12, 20]},
        }
        with pytest.raises(MalformedHeader, match="gap"):
            read_index(io.BytesIO(build_file(header, bytes(20))))

    def test_reversed_offsets(self):
        header = {"a": {"dtype": "F32", "shape": [2], "data_offsets": [8, 0]}}
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(build_file(header, bytes(8))))

    def test_fails_before_payload(self):
        """A bad header is reported without reading any payload byte."""
        header = {
            "a": F32_PAIR,
            "b": {"dtype": "F32", "shape": [2], "data_offsets": [4, 12]},
        }
        data = build_file(header, bytes(12))
        stream = CountingStream(data)
        with pytest.raises(MalformedHeader):
            load_state_dict(stream)
        assert stream.bytes_read == len(data) - 12

    def test_size_does_not_match_shape(self):
        header = {"a": {"dtype": "F32", "shape": [3], "data_offsets": [0, 8]}}
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(build_file(header, bytes(8))))

    def test_payload_length_mismatch(self):
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(build_file({"a": F32_PAIR}, bytes(12))))

    def test_unknown_dtype(self):
        header = {"a": {"dtype": "F128", "shape": [1], "data_offsets": [0, 16]}}
        with pytest.raises(UnsupportedDType):
            read_index(io.BytesIO(build_file(header, bytes(16))))

    def test_invalid_json(self):
        raw = b"{not json"
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(struct.pack("<Q", len(raw)) + raw))

    def test_header_not_an_object(self):
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(build_file([1, 2, 3])))

    def test_truncated_length_prefix(self):
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(b"\x10\x00\x00"))

    def test_truncated_header(self):
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(struct.pack("<Q", 100) + b"{}"))

    def test_header_too_large(self):
        data = save_bytes({"w": torch.ones(1)})
        with pytest.raises(MalformedHeader, match="too large"):
            read_index(io.BytesIO(data), CodecConfig(max_header_size=16))

    def test_metadata_values_must_be_strings(self):
        header = {"__metadata__": {"epoch": 3}, "a": F32_PAIR}
        with pytest.raises(MalformedHeader):
            read_index(io.BytesIO(build_file(header, bytes(8))))

    def test_duplicate_keys(self):
        raw = b'{"a":{"dtype":"F32","shape":[2],"data_offsets":[0,8]},' \
              b'"a":{"dtype":"F32","shape":[2],"data_offsets":[0,8]}}'
        with pytest.raises(MalformedHeader, match="Duplicate"):
            read_index(io.BytesIO(struct.pack("<Q", len(raw)) + raw + bytes(8)))
