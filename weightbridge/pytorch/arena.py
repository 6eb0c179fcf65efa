"""
Storage arena.

Holds the raw backing buffers of one load call, keyed by storage key.
TensorRefs decoded from the pickle stream point into the arena; when they are
materialized, every tensor on the same key becomes a view of one shared
``torch.UntypedStorage``, so aliasing in the file is aliasing in memory.

The arena is scoped to a single call: ``close()`` drops every buffer and the
entry points call it in a ``finally`` block.
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import torch

from weightbridge.dtypes import byteswap, element_size, storage_from_bytes
from weightbridge.errors import UnexpectedStructure
from weightbridge.pytorch.container import TorchZipReader, storage_record
from weightbridge.pytorch.values import PersistentRef, TensorRef

logger = logging.getLogger(__name__)


@dataclass
class StorageBlob:
    """One storage member: declared element type and size, bytes loaded lazily."""
    key: str
    dtype: torch.dtype
    numel: int
    nbytes: int
    _storage: Optional[torch.UntypedStorage] = field(default=None, repr=False)


class StorageArena:
    """
    Arena of storages resolved against a container.

    Usage:
        with StorageArena(reader) as arena:
            blob = arena.resolve(persistent_ref)
            tensor = arena.materialize(tensor_ref)
    """

    def __init__(self, reader: TorchZipReader):
        self.reader = reader
        self._swap = reader.byteorder != sys.byteorder
        self._blobs: Dict[str, StorageBlob] = {}

    def __len__(self) -> int:
        return len(self._blobs)

    def __contains__(self, key: str) -> bool:
        return key in self._blobs

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Drop every blob and its buffer."""
        self._blobs.clear()

    def resolve(self, ref: PersistentRef) -> StorageBlob:
        """
        Register the storage behind a persistent reference.

        The member must exist and its length must match the declared element
        count. Repeated references to one key must agree on the element type.
        """
        blob = self._blobs.get(ref.key)
        if blob is not None:
            if blob.dtype != ref.dtype:
                raise UnexpectedStructure(
                    f"Storage {ref.key!r} referenced as both {blob.dtype} and {ref.dtype}"
                )
            return blob

        nbytes = ref.numel * element_size(ref.dtype)
        actual = self.reader.storage_size(ref.key)
        if actual != nbytes:
            raise UnexpectedStructure(
                f"Storage {ref.key!r} holds {actual} bytes, expected {nbytes} "
                f"({ref.numel} x {ref.dtype})"
            )

        blob = StorageBlob(key=ref.key, dtype=ref.dtype, numel=ref.numel, nbytes=nbytes)
        self._blobs[ref.key] = blob
        return blob

    def storage(self, key: str) -> torch.UntypedStorage:
        """The shared untyped storage for ``key``, read from the archive on first use."""
        blob = self._blobs[key]
        if blob._storage is None:
            data = self.reader.read_storage(key)
            if self._swap:
                data = byteswap(data, blob.dtype)
            blob._storage = storage_from_bytes(data)
            logger.debug("Loaded %s (%d bytes)", storage_record(key), blob.nbytes)
        return blob._storage

    def check(self, ref: TensorRef) -> None:
        """Validate that a tensor view fits inside its storage."""
        blob = self._blobs.get(ref.storage_key)
        if blob is None:
            raise UnexpectedStructure(f"Tensor refers to unregistered storage {ref.storage_key!r}")
        if blob.dtype != ref.dtype:
            raise UnexpectedStructure(
                f"Tensor dtype {ref.dtype} does not match storage {ref.storage_key!r} ({blob.dtype})"
            )
        if len(ref.shape) != len(ref.stride):
            raise UnexpectedStructure(f"Shape {ref.shape} and stride {ref.stride} differ in rank")
        if ref.storage_offset < 0 or any(d < 0 for d in ref.shape) or any(s < 0 for s in ref.stride):
            raise UnexpectedStructure(
                f"Negative shape, stride or offset: {ref.shape}, {ref.stride}, {ref.storage_offset}"
            )
        if ref.extent() > blob.numel:
            raise UnexpectedStructure(
                f"Tensor view {ref.shape}/{ref.stride}+{ref.storage_offset} exceeds "
                f"storage {ref.storage_key!r} of {blob.numel} elements"
            )

    def materialize(self, ref: TensorRef) -> torch.Tensor:
        """Build a tensor view over the arena storage."""
        self.check(ref)
        tensor = torch.empty((0,), dtype=ref.dtype)
        return tensor.set_(self.storage(ref.storage_key), ref.storage_offset, ref.shape, ref.stride)

    def materialize_all(self, refs: Mapping[str, TensorRef]) -> Dict[str, torch.Tensor]:
        """Materialize every ref of a decoded state dict, preserving order."""
        return {name: self.materialize(ref) for name, ref in refs.items()}
