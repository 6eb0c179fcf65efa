"""
Safetensors codec.

Header + payload tensor format, read and written without the safetensors
runtime.
"""

from weightbridge.safetensors.reader import load_state_dict, read_index
from weightbridge.safetensors.spec import (
    METADATA_KEY,
    SafetensorsHeader,
    TensorEntry,
    decode_header,
    encode_header,
    validate_header,
)
from weightbridge.safetensors.writer import build_header, save_state_dict

__all__ = [
    "METADATA_KEY",
    "SafetensorsHeader",
    "TensorEntry",
    "decode_header",
    "encode_header",
    "validate_header",
    "read_index",
    "load_state_dict",
    "build_header",
    "save_state_dict",
]
