"""
weightbridge error kinds.

Every failure of a load or save call surfaces as one of the exceptions below.
None of them is retried internally or downgraded to a warning.

    WeightBridgeError
    ├── FileNotFound          path-based entry points only
    ├── StreamError           underlying stream failure
    ├── UnsupportedProtocol   disallowed opcode or unwhitelisted symbol
    ├── UnexpectedStructure   decoded graph is not a flat name -> tensor mapping
    ├── MissingStorage        persistent reference without a container member
    ├── UnsupportedDType      element type with no tag mapping
    ├── StateMismatch         strict-mode key-set mismatch
    ├── ShapeMismatch         matched key with incompatible shape
    └── MalformedHeader       safetensors header invalid
"""

from typing import Iterable, Optional, Tuple


class WeightBridgeError(Exception):
    """Base class for all weightbridge errors."""


class FileNotFound(WeightBridgeError, FileNotFoundError):
    """A path passed to a load entry point does not exist."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}")
        self.path = path


class StreamError(WeightBridgeError, OSError):
    """Reading from or writing to the underlying stream failed."""


class UnsupportedProtocol(WeightBridgeError):
    """The pickle stream or container uses something outside the whitelist."""


class UnexpectedStructure(WeightBridgeError):
    """Decoded data is not a flat mapping of names to tensors."""


class MissingStorage(WeightBridgeError):
    """A persistent storage reference has no matching container member."""

    def __init__(self, key: str, member: Optional[str] = None):
        where = f" (expected member {member!r})" if member else ""
        super().__init__(f"Storage {key!r} not found in archive{where}")
        self.key = key
        self.member = member


class UnsupportedDType(WeightBridgeError):
    """A tensor element type has no mapping in the target format."""


class StateMismatch(WeightBridgeError):
    """Source and target key sets differ while loading strictly."""

    def __init__(self, missing: Iterable[str], unexpected: Iterable[str]):
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        super().__init__(
            "The loaded state dict is not identical to the target state dict. "
            f"Missing keys: {self.missing}. Unexpected keys: {self.unexpected}."
        )


class ShapeMismatch(WeightBridgeError):
    """A key present in both mappings has different shapes."""

    def __init__(self, key: str, loaded: Tuple[int, ...], target: Tuple[int, ...]):
        self.key = key
        self.loaded_shape = tuple(loaded)
        self.target_shape = tuple(target)
        super().__init__(
            f"Shape mismatch for {key!r}: loaded {self.loaded_shape}, "
            f"target {self.target_shape}"
        )


class MalformedHeader(WeightBridgeError):
    """A safetensors header is not valid length-prefixed JSON or its offsets are invalid."""
