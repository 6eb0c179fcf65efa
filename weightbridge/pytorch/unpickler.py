"""
Restricted unpickler for torch.save archives.

A small stack machine that understands the opcodes needed to describe an
ordered mapping of names to tensors. It never imports modules or calls
functions named by the stream: GLOBAL resolves against a static whitelist of
local constructors, REDUCE only invokes those constructors, and BINPERSID
resolves storage references against the call's StorageArena. Anything else
fails closed with UnsupportedProtocol.

Usage:
    with open("model.bin", "rb") as f:
        state_dict = load_state_dict(f)
"""

import logging
import struct
from collections import OrderedDict
from dataclasses import replace
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

import torch

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.dtypes import SCALAR_TAGS, STORAGE_TYPES, storage_type_dtype
from weightbridge.errors import UnexpectedStructure, UnsupportedProtocol
from weightbridge.pytorch import opcodes as op
from weightbridge.pytorch.arena import StorageArena
from weightbridge.pytorch.container import PICKLE_RECORD, TorchZipReader
from weightbridge.pytorch.values import (
    Global,
    PersistentRef,
    ScalarTag,
    StorageType,
    TensorRef,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Whitelisted constructors
# =============================================================================

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _int_tuple(value: Any, what: str) -> Tuple[int, ...]:
    if not isinstance(value, (tuple, list)) or not all(_is_int(v) for v in value):
        raise UnexpectedStructure(f"Tensor {what} must be a tuple of ints, got {value!r}")
    return tuple(value)


def _build_ordered_dict(*args: Any) -> "OrderedDict[Any, Any]":
    """``collections.OrderedDict`` with no args, or a list of pairs (old pickles)."""
    if not args:
        return OrderedDict()
    if len(args) == 1 and isinstance(args[0], list):
        pairs = args[0]
        if all(isinstance(p, (list, tuple)) and len(p) == 2 for p in pairs):
            try:
                return OrderedDict((k, v) for k, v in pairs)
            except TypeError:
                raise UnsupportedProtocol("Unhashable OrderedDict key") from None
    raise UnsupportedProtocol(f"Unsupported OrderedDict arguments: {args!r}")


def _make_tensor_ref(storage: Any, storage_offset: Any, size: Any, stride: Any,
                     requires_grad: Any = False) -> TensorRef:
    if not isinstance(storage, PersistentRef):
        raise UnexpectedStructure(f"Tensor storage must be a persistent reference, got {storage!r}")
    if not _is_int(storage_offset):
        raise UnexpectedStructure(f"Tensor storage offset must be an int, got {storage_offset!r}")
    if not isinstance(requires_grad, bool):
        raise UnexpectedStructure(f"requires_grad must be a bool, got {requires_grad!r}")
    return TensorRef(
        dtype=storage.dtype,
        shape=_int_tuple(size, "size"),
        stride=_int_tuple(stride, "stride"),
        storage_key=storage.key,
        storage_offset=storage_offset,
        requires_grad=requires_grad,
    )


def _rebuild_tensor(storage, storage_offset, size, stride) -> TensorRef:
    return _make_tensor_ref(storage, storage_offset, size, stride)


def _rebuild_tensor_v2(storage, storage_offset, size, stride, requires_grad,
                       backward_hooks, metadata=None) -> TensorRef:
    if backward_hooks:
        raise UnsupportedProtocol("Tensors with backward hooks are not supported")
    if metadata:
        raise UnsupportedProtocol(f"Tensor metadata is not supported: {metadata!r}")
    return _make_tensor_ref(storage, storage_offset, size, stride, requires_grad)


def _rebuild_parameter(data, requires_grad, backward_hooks) -> TensorRef:
    if not isinstance(data, TensorRef):
        raise UnexpectedStructure(f"Parameter data must be a tensor, got {data!r}")
    if backward_hooks:
        raise UnsupportedProtocol("Parameters with backward hooks are not supported")
    if not isinstance(requires_grad, bool):
        raise UnexpectedStructure(f"requires_grad must be a bool, got {requires_grad!r}")
    return replace(data, requires_grad=requires_grad)


_CONSTRUCTORS: Dict[Tuple[str, str], Callable[..., Any]] = {
    ("collections", "OrderedDict"): _build_ordered_dict,
    ("torch._utils", "_rebuild_tensor"): _rebuild_tensor,
    ("torch._utils", "_rebuild_tensor_v2"): _rebuild_tensor_v2,
    ("torch._utils", "_rebuild_parameter"): _rebuild_parameter,
}


def find_global(module: str, name: str) -> Any:
    """Resolve a GLOBAL against the whitelist."""
    build = _CONSTRUCTORS.get((module, name))
    if build is not None:
        return Global(module, name, build)
    if module == "torch":
        if name in STORAGE_TYPES:
            return StorageType(name, storage_type_dtype(name))
        if name in SCALAR_TAGS:
            return ScalarTag(name, SCALAR_TAGS[name])
    raise UnsupportedProtocol(f"Global {module}.{name} is not allowed")


class _Stop(Exception):
    def __init__(self, value: Any):
        self.value = value


# =============================================================================
# Stack machine
# =============================================================================

class RestrictedUnpickler:
    """
    Opcode interpreter over a pickle byte stream.

    The memo, stack and mark stack belong to one instance, which is used for
    one ``load()`` call.

    Args:
        data: Pickle bytes (the archive's data.pkl member)
        arena: Storage arena resolving persistent references
        config: Limits for stack depth and memo size
    """

    dispatch: Dict[int, Callable[["RestrictedUnpickler"], None]] = {}

    def __init__(self, data: bytes, arena: StorageArena, config: Optional[CodecConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self.arena = arena
        self._data = data
        self._pos = 0
        self.stack: List[Any] = []
        self.metastack: List[List[Any]] = []
        self.memo: Dict[int, Any] = {}
        self.proto = 0

    def load(self) -> Any:
        """Run the stream to its STOP opcode and return the top value."""
        dispatch = self.dispatch
        try:
            while True:
                offset = self._pos
                code = self._read(1)[0]
                handler = dispatch.get(code)
                if handler is None:
                    raise UnsupportedProtocol(
                        f"Opcode {op.opcode_name(code)} at offset {offset} is not allowed"
                    )
                handler(self)
        except _Stop as stop:
            if self.metastack or self.stack:
                raise UnexpectedStructure("Pickle stream stopped with values left on the stack")
            logger.debug("Unpickled %d bytes (protocol %d, %d memo entries)",
                         self._pos, self.proto, len(self.memo))
            return stop.value

    # -------------------------------------------------------------------------
    # Stream and stack helpers
    # -------------------------------------------------------------------------

    def _read(self, n: int) -> bytes:
        end = self._pos + n
        if n < 0 or end > len(self._data):
            raise UnsupportedProtocol(f"Pickle stream truncated at offset {self._pos}")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def _unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self._read(struct.calcsize(fmt)))[0]

    def _readline(self) -> bytes:
        end = self._data.find(b"\n", self._pos)
        if end < 0:
            raise UnsupportedProtocol(f"Pickle stream truncated at offset {self._pos}")
        line = self._data[self._pos:end]
        self._pos = end + 1
        return line

    def _depth(self) -> int:
        return len(self.stack) + sum(len(s) for s in self.metastack) + len(self.metastack)

    def push(self, value: Any) -> None:
        if self._depth() >= self.config.max_stack_depth:
            raise UnsupportedProtocol(f"Stack depth exceeds {self.config.max_stack_depth}")
        self.stack.append(value)

    def pop(self) -> Any:
        if not self.stack:
            raise UnsupportedProtocol(f"Stack underflow at offset {self._pos - 1}")
        return self.stack.pop()

    def top(self) -> Any:
        if not self.stack:
            raise UnsupportedProtocol(f"Stack underflow at offset {self._pos - 1}")
        return self.stack[-1]

    def pop_mark(self) -> List[Any]:
        if not self.metastack:
            raise UnsupportedProtocol(f"No MARK to pop at offset {self._pos - 1}")
        items = self.stack
        self.stack = self.metastack.pop()
        return items

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def load_proto(self) -> None:
        proto = self._read(1)[0]
        if not op.DEFAULT_PROTOCOL <= proto <= op.HIGHEST_PROTOCOL:
            raise UnsupportedProtocol(f"Unsupported pickle protocol: {proto}")
        self.proto = proto
    dispatch[op.PROTO[0]] = load_proto

    def load_frame(self) -> None:
        size = self._unpack("<Q")
        if self._pos + size > len(self._data):
            raise UnsupportedProtocol(f"Frame of {size} bytes runs past the end of the stream")
    dispatch[op.FRAME[0]] = load_frame

    def load_stop(self) -> None:
        raise _Stop(self.pop())
    dispatch[op.STOP[0]] = load_stop

    def load_mark(self) -> None:
        if self._depth() >= self.config.max_stack_depth:
            raise UnsupportedProtocol(f"Stack depth exceeds {self.config.max_stack_depth}")
        self.metastack.append(self.stack)
        self.stack = []
    dispatch[op.MARK[0]] = load_mark

    def load_pop(self) -> None:
        if self.stack:
            self.stack.pop()
        else:
            self.pop_mark()
    dispatch[op.POP[0]] = load_pop

    def load_pop_mark(self) -> None:
        self.pop_mark()
    dispatch[op.POP_MARK[0]] = load_pop_mark

    # -------------------------------------------------------------------------
    # Scalars
    # -------------------------------------------------------------------------

    def load_none(self) -> None:
        self.push(None)
    dispatch[op.NONE[0]] = load_none

    def load_true(self) -> None:
        self.push(True)
    dispatch[op.NEWTRUE[0]] = load_true

    def load_false(self) -> None:
        self.push(False)
    dispatch[op.NEWFALSE[0]] = load_false

    def load_binint(self) -> None:
        self.push(self._unpack("<i"))
    dispatch[op.BININT[0]] = load_binint

    def load_binint1(self) -> None:
        self.push(self._read(1)[0])
    dispatch[op.BININT1[0]] = load_binint1

    def load_binint2(self) -> None:
        self.push(self._unpack("<H"))
    dispatch[op.BININT2[0]] = load_binint2

    def load_long1(self) -> None:
        n = self._read(1)[0]
        self.push(int.from_bytes(self._read(n), "little", signed=True))
    dispatch[op.LONG1[0]] = load_long1

    def load_binfloat(self) -> None:
        self.push(self._unpack(">d"))
    dispatch[op.BINFLOAT[0]] = load_binfloat

    def _decode_str(self, raw: bytes) -> str:
        try:
            return raw.decode("utf-8", "surrogatepass")
        except UnicodeDecodeError:
            raise UnsupportedProtocol(f"Invalid UTF-8 string at offset {self._pos}") from None

    def load_binunicode(self) -> None:
        self.push(self._decode_str(self._read(self._unpack("<I"))))
    dispatch[op.BINUNICODE[0]] = load_binunicode

    def load_short_binunicode(self) -> None:
        self.push(self._decode_str(self._read(self._read(1)[0])))
    dispatch[op.SHORT_BINUNICODE[0]] = load_short_binunicode

    def load_binunicode8(self) -> None:
        self.push(self._decode_str(self._read(self._unpack("<Q"))))
    dispatch[op.BINUNICODE8[0]] = load_binunicode8

    def _decode_ascii(self, raw: bytes) -> str:
        # Python 2 str objects; torch only ever stores ASCII here
        try:
            return raw.decode("ascii")
        except UnicodeDecodeError:
            raise UnsupportedProtocol(f"Non-ASCII legacy string at offset {self._pos}") from None

    def load_binstring(self) -> None:
        self.push(self._decode_ascii(self._read(self._unpack("<i"))))
    dispatch[op.BINSTRING[0]] = load_binstring

    def load_short_binstring(self) -> None:
        self.push(self._decode_ascii(self._read(self._read(1)[0])))
    dispatch[op.SHORT_BINSTRING[0]] = load_short_binstring

    def load_binbytes(self) -> None:
        self.push(self._read(self._unpack("<I")))
    dispatch[op.BINBYTES[0]] = load_binbytes

    def load_short_binbytes(self) -> None:
        self.push(self._read(self._read(1)[0]))
    dispatch[op.SHORT_BINBYTES[0]] = load_short_binbytes

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def load_empty_tuple(self) -> None:
        self.push(())
    dispatch[op.EMPTY_TUPLE[0]] = load_empty_tuple

    def load_tuple(self) -> None:
        self.push(tuple(self.pop_mark()))
    dispatch[op.TUPLE[0]] = load_tuple

    def load_tuple1(self) -> None:
        self.push((self.pop(),))
    dispatch[op.TUPLE1[0]] = load_tuple1

    def load_tuple2(self) -> None:
        b = self.pop()
        a = self.pop()
        self.push((a, b))
    dispatch[op.TUPLE2[0]] = load_tuple2

    def load_tuple3(self) -> None:
        c = self.pop()
        b = self.pop()
        a = self.pop()
        self.push((a, b, c))
    dispatch[op.TUPLE3[0]] = load_tuple3

    def load_empty_list(self) -> None:
        self.push([])
    dispatch[op.EMPTY_LIST[0]] = load_empty_list

    def _target_list(self) -> list:
        target = self.top()
        if not isinstance(target, list):
            raise UnsupportedProtocol(f"APPEND onto {type(target).__name__}")
        return target

    def load_append(self) -> None:
        value = self.pop()
        self._target_list().append(value)
    dispatch[op.APPEND[0]] = load_append

    def load_appends(self) -> None:
        items = self.pop_mark()
        self._target_list().extend(items)
    dispatch[op.APPENDS[0]] = load_appends

    def load_empty_dict(self) -> None:
        self.push({})
    dispatch[op.EMPTY_DICT[0]] = load_empty_dict

    def _set_items(self, items: List[Any]) -> None:
        target = self.top()
        if not isinstance(target, dict):
            raise UnsupportedProtocol(f"SETITEM onto {type(target).__name__}")
        try:
            for i in range(0, len(items), 2):
                target[items[i]] = items[i + 1]
        except TypeError:
            raise UnsupportedProtocol(f"Unhashable dict key at offset {self._pos - 1}") from None

    def load_setitem(self) -> None:
        value = self.pop()
        key = self.pop()
        self._set_items([key, value])
    dispatch[op.SETITEM[0]] = load_setitem

    def load_setitems(self) -> None:
        items = self.pop_mark()
        if len(items) % 2:
            raise UnsupportedProtocol("SETITEMS with an odd number of items")
        self._set_items(items)
    dispatch[op.SETITEMS[0]] = load_setitems

    # -------------------------------------------------------------------------
    # Memo
    # -------------------------------------------------------------------------

    def _memo_put(self, index: int) -> None:
        if index not in self.memo and len(self.memo) >= self.config.max_memo_size:
            raise UnsupportedProtocol(f"Memo exceeds {self.config.max_memo_size} entries")
        self.memo[index] = self.top()

    def _memo_get(self, index: int) -> None:
        try:
            value = self.memo[index]
        except KeyError:
            raise UnsupportedProtocol(f"Memo entry {index} is not defined") from None
        self.push(value)

    def load_binput(self) -> None:
        self._memo_put(self._read(1)[0])
    dispatch[op.BINPUT[0]] = load_binput

    def load_long_binput(self) -> None:
        self._memo_put(self._unpack("<I"))
    dispatch[op.LONG_BINPUT[0]] = load_long_binput

    def load_memoize(self) -> None:
        self._memo_put(len(self.memo))
    dispatch[op.MEMOIZE[0]] = load_memoize

    def load_binget(self) -> None:
        self._memo_get(self._read(1)[0])
    dispatch[op.BINGET[0]] = load_binget

    def load_long_binget(self) -> None:
        self._memo_get(self._unpack("<I"))
    dispatch[op.LONG_BINGET[0]] = load_long_binget

    # -------------------------------------------------------------------------
    # Objects
    # -------------------------------------------------------------------------

    def load_global(self) -> None:
        module = self._decode_ascii(self._readline())
        name = self._decode_ascii(self._readline())
        self.push(find_global(module, name))
    dispatch[op.GLOBAL[0]] = load_global

    def load_stack_global(self) -> None:
        name = self.pop()
        module = self.pop()
        if not isinstance(module, str) or not isinstance(name, str):
            raise UnsupportedProtocol("STACK_GLOBAL requires str module and name")
        self.push(find_global(module, name))
    dispatch[op.STACK_GLOBAL[0]] = load_stack_global

    def load_reduce(self) -> None:
        args = self.pop()
        func = self.top()
        if not isinstance(func, Global):
            raise UnsupportedProtocol(f"REDUCE on non-callable {func!r}")
        if not isinstance(args, tuple):
            raise UnsupportedProtocol(f"REDUCE arguments must be a tuple, got {type(args).__name__}")
        try:
            value = func.build(*args)
        except TypeError as e:
            raise UnsupportedProtocol(f"Bad arguments for {func.qualname}: {e}") from None
        self.stack[-1] = value
    dispatch[op.REDUCE[0]] = load_reduce

    def load_build(self) -> None:
        state = self.pop()
        inst = self.top()
        if isinstance(inst, TensorRef):
            if state:
                raise UnsupportedProtocol("Tensor state updates are not supported")
            return
        if isinstance(inst, OrderedDict) and isinstance(state, dict):
            for key, value in state.items():
                if (not isinstance(key, str) or not key.isidentifier() or key.startswith("__")
                        or hasattr(OrderedDict, key)):
                    raise UnsupportedProtocol(f"Attribute {key!r} is not allowed")
                setattr(inst, key, value)
            return
        raise UnsupportedProtocol(f"BUILD on {type(inst).__name__} is not allowed")
    dispatch[op.BUILD[0]] = load_build

    def load_binpersid(self) -> None:
        pid = self.pop()
        self.push(self.persistent_load(pid))
    dispatch[op.BINPERSID[0]] = load_binpersid

    def persistent_load(self, pid: Any) -> PersistentRef:
        """Resolve ``("storage", StorageType, key, location, numel)`` against the arena."""
        if not isinstance(pid, tuple) or len(pid) != 5:
            raise UnsupportedProtocol(f"Unsupported persistent id: {pid!r}")
        typename, storage_type, key, location, numel = pid
        if isinstance(typename, bytes):
            typename = typename.decode("ascii", "replace")
        if typename != "storage":
            raise UnsupportedProtocol(f"Unknown persistent id type: {typename!r}")
        if not isinstance(storage_type, StorageType):
            raise UnsupportedProtocol(f"Persistent id has no storage type: {storage_type!r}")
        if not isinstance(key, str) or not isinstance(location, str):
            raise UnexpectedStructure(f"Invalid storage key or location: {key!r}, {location!r}")
        if not _is_int(numel) or numel < 0:
            raise UnexpectedStructure(f"Invalid storage size: {numel!r}")

        ref = PersistentRef(key=key, dtype=storage_type.dtype, numel=numel, location=location)
        self.arena.resolve(ref)
        return ref


# =============================================================================
# Convenience functions
# =============================================================================

def validate_state_dict(value: Any, arena: StorageArena) -> "OrderedDict[str, TensorRef]":
    """Check that a decoded value is a flat mapping of names to tensor refs."""
    if not isinstance(value, dict):
        raise UnexpectedStructure(f"Top-level object is a {type(value).__name__}, expected a mapping")
    for name, ref in value.items():
        if not isinstance(name, str):
            raise UnexpectedStructure(f"State dict key {name!r} is not a string")
        if not isinstance(ref, TensorRef):
            raise UnexpectedStructure(f"State dict value for {name!r} is not a tensor")
        arena.check(ref)
    if isinstance(value, OrderedDict):
        return value
    return OrderedDict(value)


def decode_archive(reader: TorchZipReader, arena: StorageArena,
                   config: Optional[CodecConfig] = None) -> "OrderedDict[str, TensorRef]":
    """Decode the object graph of an open archive into tensor refs."""
    data = reader.read_record(PICKLE_RECORD)
    value = RestrictedUnpickler(data, arena, config).load()
    refs = validate_state_dict(value, arena)
    logger.debug("Decoded %d tensors over %d storages", len(refs), len(arena))
    return refs


def decode(source: BinaryIO, config: Optional[CodecConfig] = None) -> "OrderedDict[str, TensorRef]":
    """
    Decode an archive to ``name -> TensorRef`` without reading storage bytes.

    Every persistent reference is checked against the archive members, so a
    missing storage fails here with MissingStorage.
    """
    with TorchZipReader(source) as reader, StorageArena(reader) as arena:
        return decode_archive(reader, arena, config)


def load_state_dict(source: BinaryIO, config: Optional[CodecConfig] = None) -> Dict[str, torch.Tensor]:
    """
    Load an archive written by torch.save into a state dict.

    Tensors that share a storage in the archive share memory in the result.
    """
    with TorchZipReader(source) as reader, StorageArena(reader) as arena:
        refs = decode_archive(reader, arena, config)
        state_dict = OrderedDict(arena.materialize_all(refs))
    metadata = getattr(refs, "_metadata", None)
    if metadata is not None:
        state_dict._metadata = metadata
    return state_dict
