"""
Codec configuration.

A single dataclass holds the limits and layout choices shared by the pickle
container codec and the safetensors codec. Every entry point accepts an
optional ``config=`` argument and falls back to ``DEFAULT_CONFIG``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class CodecConfig:
    """Configuration for load and save calls."""
    # Restricted unpickler limits
    max_stack_depth: int = 100_000
    max_memo_size: int = 1_000_000

    # Safetensors header limit (same cap as the reference implementation)
    max_header_size: int = 100 * 1024 * 1024  # 100 MB

    # Zip container layout
    archive_name: str = "archive"
    write_byteorder: bool = True
    storage_alignment: int = 64

    # Items per SETITEMS batch, matching CPython's pickler
    pickle_batch_size: int = 1000

    def __post_init__(self) -> None:
        if self.max_stack_depth <= 0:
            raise ValueError(f"max_stack_depth must be positive, got {self.max_stack_depth}")
        if self.max_header_size <= 0:
            raise ValueError(f"max_header_size must be positive, got {self.max_header_size}")
        if self.storage_alignment < 0:
            raise ValueError(f"storage_alignment must be >= 0, got {self.storage_alignment}")
        if self.pickle_batch_size <= 0:
            raise ValueError(f"pickle_batch_size must be positive, got {self.pickle_batch_size}")
        if not self.archive_name or "/" in self.archive_name:
            raise ValueError(f"Invalid archive name: {self.archive_name!r}")


DEFAULT_CONFIG = CodecConfig()
