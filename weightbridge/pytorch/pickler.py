"""
State dict pickler producing the same bytes as torch.save.

The pickler emits protocol 2 opcodes with CPython's memo numbering: every
object is memoized by identity the first time it is written and referenced by
BINGET afterwards. Tensors are written as ``_rebuild_tensor_v2`` calls whose
storage argument is a persistent id; the storages themselves become separate
archive members.

Usage:
    with open("model.bin", "wb") as f:
        save_state_dict(f, model.state_dict())
"""

import logging
import struct
from collections import OrderedDict
from dataclasses import dataclass
from itertools import islice
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple

import torch
import torch._utils

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.dtypes import STORAGE_TYPES, element_size, storage_to_bytes, storage_type_name
from weightbridge.errors import UnexpectedStructure
from weightbridge.pytorch import opcodes as op
from weightbridge.pytorch.container import PICKLE_RECORD, TorchZipWriter

logger = logging.getLogger(__name__)

# Location tag of every saved storage; one object so repeats hit the memo
CPU_LOCATION = "cpu"


@dataclass(frozen=True)
class _TypedStorage:
    """The storage argument of a tensor: untyped bytes viewed as ``dtype``."""
    storage: torch.UntypedStorage
    dtype: torch.dtype


def encode_long(x: int) -> bytes:
    """Two's complement little-endian bytes of ``x`` as LONG1 stores them."""
    if x == 0:
        return b""
    nbytes = (x.bit_length() >> 3) + 1
    result = x.to_bytes(nbytes, byteorder="little", signed=True)
    if x < 0 and nbytes > 1:
        if result[-1] == 0xFF and (result[-2] & 0x80) != 0:
            result = result[:-1]
    return result


class StateDictPickler:
    """
    Pickler for one state dict.

    After ``dump()``, ``storages`` maps each storage key to the storage and
    element type it was saved with, in first-use order.

    Args:
        config: Batch size for SETITEMS/APPENDS
    """

    def __init__(self, config: Optional[CodecConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self._out: List[bytes] = []
        self.memo: Dict[int, Tuple[int, Any]] = {}
        self.id_map: Dict[int, str] = {}
        self.storages: "OrderedDict[str, _TypedStorage]" = OrderedDict()
        self._storage_dtypes: Dict[int, torch.dtype] = {}

    def dump(self, state_dict: Dict[str, torch.Tensor]) -> bytes:
        """Pickle ``state_dict`` as an OrderedDict and return the stream bytes."""
        if not isinstance(state_dict, OrderedDict):
            ordered = OrderedDict(state_dict)
            metadata = getattr(state_dict, "_metadata", None)
            if metadata is not None:
                ordered._metadata = metadata
            state_dict = ordered

        self.write(op.PROTO + bytes([op.DEFAULT_PROTOCOL]))
        self.save(state_dict)
        self.write(op.STOP)

        data = b"".join(self._out)
        logger.debug("Pickled %d tensors into %d bytes (%d storages, %d memo entries)",
                     len(state_dict), len(data), len(self.storages), len(self.memo))
        return data

    def write(self, data: bytes) -> None:
        self._out.append(data)

    # -------------------------------------------------------------------------
    # Memo
    # -------------------------------------------------------------------------

    def memoize(self, obj: Any) -> None:
        """Store ``obj`` in the memo under the next index."""
        idx = len(self.memo)
        self.write(self.put(idx))
        self.memo[id(obj)] = idx, obj

    @staticmethod
    def put(idx: int) -> bytes:
        if idx < 256:
            return op.BINPUT + bytes([idx])
        return op.LONG_BINPUT + struct.pack("<I", idx)

    @staticmethod
    def get(idx: int) -> bytes:
        if idx < 256:
            return op.BINGET + bytes([idx])
        return op.LONG_BINGET + struct.pack("<I", idx)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def save(self, obj: Any) -> None:
        pid = self.persistent_id(obj)
        if pid is not None:
            self.save(pid)
            self.write(op.BINPERSID)
            return

        x = self.memo.get(id(obj))
        if x is not None:
            self.write(self.get(x[0]))
            return

        t = type(obj)
        if obj is None:
            self.write(op.NONE)
        elif t is bool:
            self.write(op.NEWTRUE if obj else op.NEWFALSE)
        elif t is int:
            self.save_long(obj)
        elif t is float:
            self.write(op.BINFLOAT + struct.pack(">d", obj))
        elif t is str:
            self.save_str(obj)
        elif t is tuple:
            self.save_tuple(obj)
        elif t is list:
            self.save_list(obj)
        elif t is dict:
            self.save_dict(obj)
        elif t is OrderedDict:
            self.save_ordered_dict(obj)
        elif isinstance(obj, torch.Tensor):
            self.save_tensor(obj)
        elif isinstance(obj, type) and STORAGE_TYPES.get(obj.__name__) is not None:
            self.save_global(obj, "torch", obj.__name__)
        else:
            raise UnexpectedStructure(f"Cannot pickle {t.__name__} in a state dict")

    def save_long(self, obj: int) -> None:
        if obj >= 0:
            if obj <= 0xFF:
                self.write(op.BININT1 + bytes([obj]))
                return
            if obj <= 0xFFFF:
                self.write(op.BININT2 + struct.pack("<H", obj))
                return
        if -0x80000000 <= obj <= 0x7FFFFFFF:
            self.write(op.BININT + struct.pack("<i", obj))
            return
        encoded = encode_long(obj)
        if len(encoded) > 255:
            raise UnexpectedStructure(f"Integer too large to pickle: {len(encoded)} bytes")
        self.write(op.LONG1 + bytes([len(encoded)]) + encoded)

    def save_str(self, obj: str) -> None:
        encoded = obj.encode("utf-8", "surrogatepass")
        self.write(op.BINUNICODE + struct.pack("<I", len(encoded)) + encoded)
        self.memoize(obj)

    def save_tuple(self, obj: tuple) -> None:
        if not obj:
            self.write(op.EMPTY_TUPLE)
            return
        n = len(obj)
        if n <= 3:
            for element in obj:
                self.save(element)
            self.write((op.TUPLE1, op.TUPLE2, op.TUPLE3)[n - 1])
        else:
            self.write(op.MARK)
            for element in obj:
                self.save(element)
            self.write(op.TUPLE)
        self.memoize(obj)

    def save_list(self, obj: list) -> None:
        self.write(op.EMPTY_LIST)
        self.memoize(obj)
        for batch in self._batches(obj):
            if len(batch) > 1:
                self.write(op.MARK)
                for item in batch:
                    self.save(item)
                self.write(op.APPENDS)
            else:
                self.save(batch[0])
                self.write(op.APPEND)

    def save_dict(self, obj: dict) -> None:
        self.write(op.EMPTY_DICT)
        self.memoize(obj)
        self._batch_setitems(obj.items())

    def save_ordered_dict(self, obj: "OrderedDict[Any, Any]") -> None:
        # OrderedDict.__reduce__: (OrderedDict, (), vars(obj) or None, None, items)
        self.save_global(OrderedDict, "collections", "OrderedDict")
        self.save(())
        self.write(op.REDUCE)
        self.memoize(obj)
        self._batch_setitems(obj.items())
        state = dict(vars(obj))
        if state:
            self.save(state)
            self.write(op.BUILD)

    def save_global(self, obj: Any, module: str, name: str) -> None:
        x = self.memo.get(id(obj))
        if x is not None:
            self.write(self.get(x[0]))
            return
        self.write(op.GLOBAL + f"{module}\n{name}\n".encode("ascii"))
        self.memoize(obj)

    def _batches(self, items: Iterable[Any]):
        it = iter(items)
        while True:
            batch = list(islice(it, self.config.pickle_batch_size))
            if batch:
                yield batch
            if len(batch) < self.config.pickle_batch_size:
                return

    def _batch_setitems(self, items: Iterable[Tuple[Any, Any]]) -> None:
        for batch in self._batches(items):
            if len(batch) > 1:
                self.write(op.MARK)
                for k, v in batch:
                    self.save(k)
                    self.save(v)
                self.write(op.SETITEMS)
            else:
                k, v = batch[0]
                self.save(k)
                self.save(v)
                self.write(op.SETITEM)

    # -------------------------------------------------------------------------
    # Tensors and storages
    # -------------------------------------------------------------------------

    def save_tensor(self, tensor: torch.Tensor) -> None:
        """Write ``_rebuild_tensor_v2(storage, offset, size, stride, False, hooks)``."""
        storage_type_name(tensor.dtype)
        args = (
            _TypedStorage(tensor.untyped_storage(), tensor.dtype),
            tensor.storage_offset(),
            tuple(tensor.size()),
            tensor.stride(),
            False,
            OrderedDict(),
        )
        self.save_global(torch._utils._rebuild_tensor_v2, "torch._utils", "_rebuild_tensor_v2")
        self.save(args)
        self.write(op.REDUCE)
        self.memoize(tensor)

    def persistent_id(self, obj: Any) -> Optional[tuple]:
        """``("storage", storage type, key, location, numel)`` for tensor storages."""
        if not isinstance(obj, _TypedStorage):
            return None

        storage, dtype = obj.storage, obj.dtype
        if storage.data_ptr() != 0:
            seen = self._storage_dtypes.setdefault(storage.data_ptr(), dtype)
            if seen != dtype:
                raise UnexpectedStructure(
                    "Cannot save multiple tensors that view the same data as different types"
                )

        storage_type = getattr(torch, storage_type_name(dtype))
        storage_key = self.id_map.setdefault(storage._cdata, str(len(self.id_map)))
        storage_numel = storage.nbytes() // element_size(dtype)
        self.storages.setdefault(storage_key, obj)
        return ("storage", storage_type, storage_key, CPU_LOCATION, storage_numel)


def encode(stream: BinaryIO, state_dict: Dict[str, torch.Tensor],
           config: Optional[CodecConfig] = None) -> List[str]:
    """
    Write ``state_dict`` to ``stream`` as a torch.save zip archive.

    Returns:
        Archive member names, in write order
    """
    config = config or DEFAULT_CONFIG
    pickler = StateDictPickler(config)
    data = pickler.dump(state_dict)

    with TorchZipWriter(stream, config) as writer:
        writer.write_version()
        writer.write_record(PICKLE_RECORD, data)
        if config.write_byteorder:
            writer.write_byteorder()
        for key, entry in pickler.storages.items():
            storage = entry.storage
            if storage.device.type != "cpu":
                storage = storage.cpu()
            writer.write_storage(key, storage_to_bytes(storage))

    return writer.records


save_state_dict = encode
