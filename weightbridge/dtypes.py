"""
dtype tables and raw byte conversion.

Both formats name element types with their own tags:
- the pickle container references storage classes (``torch.FloatStorage``)
- safetensors headers use short tags (``"F32"``)

The tables below are total over the supported element types; anything else
raises UnsupportedDType instead of falling back to a default.
"""

from typing import Dict

import numpy as np
import torch

from weightbridge.errors import UnsupportedDType


# Storage class names written by torch.save (``torch.<name>``)
STORAGE_TYPES: Dict[str, torch.dtype] = {
    "DoubleStorage": torch.float64,
    "FloatStorage": torch.float32,
    "HalfStorage": torch.float16,
    "BFloat16Storage": torch.bfloat16,
    "LongStorage": torch.int64,
    "IntStorage": torch.int32,
    "ShortStorage": torch.int16,
    "CharStorage": torch.int8,
    "ByteStorage": torch.uint8,
    "BoolStorage": torch.bool,
    "ComplexDoubleStorage": torch.complex128,
    "ComplexFloatStorage": torch.complex64,
}

_STORAGE_NAMES: Dict[torch.dtype, str] = {v: k for k, v in STORAGE_TYPES.items()}

# Scalar type attributes of the torch module that may appear as GLOBALs
SCALAR_TAGS: Dict[str, torch.dtype] = {
    "float64": torch.float64,
    "double": torch.float64,
    "float32": torch.float32,
    "float": torch.float32,
    "float16": torch.float16,
    "half": torch.float16,
    "bfloat16": torch.bfloat16,
    "int64": torch.int64,
    "long": torch.int64,
    "int32": torch.int32,
    "int": torch.int32,
    "int16": torch.int16,
    "short": torch.int16,
    "int8": torch.int8,
    "uint8": torch.uint8,
    "bool": torch.bool,
    "complex128": torch.complex128,
    "cdouble": torch.complex128,
    "complex64": torch.complex64,
    "cfloat": torch.complex64,
}

# Safetensors header tags
SAFETENSORS_TAGS: Dict[str, torch.dtype] = {
    "F64": torch.float64,
    "F32": torch.float32,
    "F16": torch.float16,
    "BF16": torch.bfloat16,
    "F8_E4M3": torch.float8_e4m3fn,
    "F8_E5M2": torch.float8_e5m2,
    "I64": torch.int64,
    "I32": torch.int32,
    "I16": torch.int16,
    "I8": torch.int8,
    "U64": torch.uint64,
    "U32": torch.uint32,
    "U16": torch.uint16,
    "U8": torch.uint8,
    "BOOL": torch.bool,
    "C64": torch.complex64,
}

_SAFETENSORS_NAMES: Dict[torch.dtype, str] = {v: k for k, v in SAFETENSORS_TAGS.items()}


def storage_type_name(dtype: torch.dtype) -> str:
    """Convert a torch dtype to the storage class name used in pickles."""
    try:
        return _STORAGE_NAMES[dtype]
    except KeyError:
        raise UnsupportedDType(f"No pickle storage type for dtype {dtype}") from None


def storage_type_dtype(name: str) -> torch.dtype:
    """Convert a pickled storage class name to a torch dtype."""
    try:
        return STORAGE_TYPES[name]
    except KeyError:
        raise UnsupportedDType(f"Unsupported storage type: torch.{name}") from None


def safetensors_tag(dtype: torch.dtype) -> str:
    """Convert a torch dtype to its safetensors tag."""
    try:
        return _SAFETENSORS_NAMES[dtype]
    except KeyError:
        raise UnsupportedDType(f"No safetensors tag for dtype {dtype}") from None


def safetensors_dtype(tag: str) -> torch.dtype:
    """Convert a safetensors tag to a torch dtype."""
    try:
        return SAFETENSORS_TAGS[tag]
    except (KeyError, TypeError):
        raise UnsupportedDType(f"Unsupported safetensors dtype: {tag!r}") from None


def element_size(dtype: torch.dtype) -> int:
    """Bytes per element."""
    return dtype.itemsize


def numel(shape) -> int:
    """Number of elements for a shape."""
    n = 1
    for dim in shape:
        n *= dim
    return n


# =============================================================================
# Raw bytes <-> torch
# =============================================================================

def storage_from_bytes(data: bytes) -> torch.UntypedStorage:
    """Copy raw bytes into a new CPU untyped storage."""
    if not data:
        return torch.empty(0, dtype=torch.uint8).untyped_storage()
    return torch.frombuffer(bytearray(data), dtype=torch.uint8).untyped_storage()


def storage_to_bytes(storage: torch.UntypedStorage) -> bytes:
    """Raw bytes of a whole untyped storage."""
    nbytes = storage.nbytes()
    if nbytes == 0:
        return b""
    if storage.device.type != "cpu":
        storage = storage.cpu()
    flat = torch.empty((0,), dtype=torch.uint8).set_(storage, 0, (nbytes,), (1,))
    return flat.numpy().tobytes()


def tensor_from_bytes(data: bytes, dtype: torch.dtype, shape) -> torch.Tensor:
    """Reinterpret contiguous raw bytes as a tensor of ``dtype`` and ``shape``."""
    if not data:
        return torch.empty(tuple(shape), dtype=dtype)
    flat = torch.frombuffer(bytearray(data), dtype=dtype)
    return flat.reshape(tuple(shape))


def tensor_to_bytes(tensor: torch.Tensor) -> bytes:
    """Raw bytes of a tensor's elements in logical (row-major) order."""
    t = tensor.detach()
    if t.device.type != "cpu":
        t = t.cpu()
    if t.numel() == 0:
        return b""
    return t.reshape(-1).view(torch.uint8).numpy().tobytes()


def byteswap(data: bytes, dtype: torch.dtype) -> bytes:
    """Swap the byte order of every element (complex: of each component)."""
    size = element_size(dtype)
    if dtype.is_complex:
        size //= 2
    if size == 1 or not data:
        return data
    array = np.frombuffer(data, dtype=np.dtype(f"u{size}"))
    return array.byteswap().tobytes()
