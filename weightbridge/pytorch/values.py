"""
Values produced by the restricted unpickler.

Plain pickle scalars and containers decode to the matching Python builtins.
Everything that would normally import or call external code decodes to one of
the tagged dataclasses below instead, so nothing outside this package is ever
executed.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Tuple

import torch


@dataclass(frozen=True)
class Global:
    """A whitelisted (module, name) pair resolved to a local constructor."""
    module: str
    name: str
    build: Callable[..., Any] = field(repr=False, compare=False)

    @property
    def qualname(self) -> str:
        return f"{self.module}.{self.name}"


@dataclass(frozen=True)
class StorageType:
    """A ``torch.<X>Storage`` class reference, reduced to its element type."""
    name: str
    dtype: torch.dtype


@dataclass(frozen=True)
class ScalarTag:
    """A ``torch.<dtype>`` reference such as ``torch.float32``."""
    name: str
    dtype: torch.dtype


@dataclass(frozen=True)
class PersistentRef:
    """A storage referenced by key; the bytes live in the container."""
    key: str
    dtype: torch.dtype
    numel: int
    location: str = "cpu"


@dataclass(frozen=True)
class TensorRef:
    """
    A strided view into an arena storage.

    Offsets and strides are in elements of ``dtype``. A TensorRef never owns
    bytes; several refs may point at the same ``storage_key``.
    """
    dtype: torch.dtype
    shape: Tuple[int, ...]
    stride: Tuple[int, ...]
    storage_key: str
    storage_offset: int = 0
    requires_grad: bool = False

    @property
    def numel(self) -> int:
        n = 1
        for dim in self.shape:
            n *= dim
        return n

    def extent(self) -> int:
        """Number of storage elements needed to address every element."""
        if self.numel == 0:
            return self.storage_offset
        last = sum((size - 1) * stride for size, stride in zip(self.shape, self.stride))
        return self.storage_offset + last + 1
