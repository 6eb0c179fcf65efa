"""
torch.save archive codec.

Reads and writes the zip-based format of ``torch.save`` for flat state dicts,
without unpickling arbitrary objects.
"""

from weightbridge.pytorch.arena import StorageArena, StorageBlob
from weightbridge.pytorch.container import TorchZipReader, TorchZipWriter
from weightbridge.pytorch.pickler import StateDictPickler, encode, save_state_dict
from weightbridge.pytorch.unpickler import (
    RestrictedUnpickler,
    decode,
    decode_archive,
    load_state_dict,
)
from weightbridge.pytorch.values import PersistentRef, TensorRef

__all__ = [
    "StorageArena",
    "StorageBlob",
    "TorchZipReader",
    "TorchZipWriter",
    "StateDictPickler",
    "encode",
    "save_state_dict",
    "RestrictedUnpickler",
    "decode",
    "decode_archive",
    "load_state_dict",
    "PersistentRef",
    "TensorRef",
]
