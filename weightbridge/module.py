"""
Module-level entry points.

Save a module's state dict as a torch.save archive or a safetensors file,
and load one back into a live module under strict or non-strict policy.

``dest``/``src`` is either a path (opened and closed here) or an open binary
stream. Streams are closed when the call returns unless ``leave_open`` is set.

Usage:
    save_pickle(model, "model.bin")
    load_pickle(model, "model.bin", strict=False, report=report)

    save_safetensors(model, "model.safetensors", metadata={"format": "pt"})
    load_safetensors(model, "model.safetensors")
"""

import io
import logging
import os
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Collection, Dict, Iterator, Optional, Union

import torch
from torch import nn

from weightbridge import safetensors
from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.errors import FileNotFound, StreamError
from weightbridge.pytorch import encode
from weightbridge.pytorch.arena import StorageArena
from weightbridge.pytorch.container import TorchZipReader
from weightbridge.pytorch.unpickler import decode_archive
from weightbridge.reconcile import ReconcileResult, check_keys, reconcile

logger = logging.getLogger(__name__)

PathOrStream = Union[str, os.PathLike, BinaryIO]


# =============================================================================
# Stream handling
# =============================================================================

@contextmanager
def _open(target: PathOrStream, mode: str, leave_open: bool = False) -> Iterator[BinaryIO]:
    if isinstance(target, (str, os.PathLike)):
        path = Path(target)
        if "r" in mode and not path.is_file():
            raise FileNotFound(str(path))
        try:
            f = open(path, mode)
        except OSError as e:
            raise StreamError(f"Failed to open {path}: {e}") from e
        with f:
            yield f
        return

    try:
        yield target
    finally:
        if not leave_open:
            target.close()


def _seekable(stream: BinaryIO) -> bool:
    try:
        return stream.seekable()
    except (AttributeError, OSError):
        return False


def _state_dict(module: nn.Module, skip: Optional[Collection[str]]) -> Dict[str, torch.Tensor]:
    """Snapshot of the module's tensors without ``skip``, keeping ``_metadata``."""
    state_dict = module.state_dict()
    if not skip:
        return state_dict
    filtered = OrderedDict((k, v) for k, v in state_dict.items() if k not in skip)
    metadata = getattr(state_dict, "_metadata", None)
    if metadata is not None:
        filtered._metadata = metadata
    return filtered


def _fill_report(report: Optional[Dict[str, bool]], result: ReconcileResult) -> None:
    if report is not None:
        report.update(result.report)


# =============================================================================
# torch.save archives
# =============================================================================

def save_pickle(
    module: nn.Module,
    dest: PathOrStream,
    skip: Optional[Collection[str]] = None,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> nn.Module:
    """
    Save ``module.state_dict()`` in the torch.save archive format.

    Args:
        module: Source module
        dest: Path or writable binary stream
        skip: State dict keys to leave out
        leave_open: Keep ``dest`` open when it is a stream
        config: Codec configuration

    Returns:
        ``module``
    """
    config = config or DEFAULT_CONFIG
    state_dict = _state_dict(module, skip)

    with _open(dest, "wb", leave_open) as stream:
        if _seekable(stream):
            records = encode(stream, state_dict, config)
        else:
            buffer = io.BytesIO()
            records = encode(buffer, state_dict, config)
            try:
                stream.write(buffer.getvalue())
            except OSError as e:
                raise StreamError(f"Failed to write archive: {e}") from e

    logger.info("Saved %d tensors as a torch archive (%d members)", len(state_dict), len(records))
    return module


def load_pickle(
    module: nn.Module,
    src: PathOrStream,
    strict: bool = True,
    skip: Optional[Collection[str]] = None,
    report: Optional[Dict[str, bool]] = None,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> nn.Module:
    """
    Load a torch.save archive into ``module``.

    The whole object graph is decoded before any key check, but storage bytes
    are only read for tensors that are copied.

    Args:
        module: Destination module, updated in place
        src: Path or readable binary stream
        strict: Require the archive and module key sets to match
        skip: Keys ignored on both sides
        report: Filled with ``name -> bool`` (copied / not consumed)
        leave_open: Keep ``src`` open when it is a stream
        config: Codec configuration

    Returns:
        ``module``
    """
    skip = set(skip or ())
    target = module.state_dict()

    with _open(src, "rb", leave_open) as stream:
        if not _seekable(stream):
            stream = io.BytesIO(stream.read())

        with TorchZipReader(stream) as reader, StorageArena(reader) as arena:
            refs = decode_archive(reader, arena, config)
            if strict:
                check_keys(refs, target, skip)
            loaded = arena.materialize_all(
                OrderedDict((k, v) for k, v in refs.items() if k not in skip and k in target)
            )
            result = reconcile(
                loaded, target, strict, skip,
                extra_unexpected=[k for k in refs if k not in target],
            )

    _fill_report(report, result)
    logger.info("Loaded %d tensors from a torch archive (%d unexpected, %d missing)",
                len(result.copied), len(result.unexpected), len(result.missing))
    return module


def load_state_dict_pickle(
    src: PathOrStream,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> Dict[str, torch.Tensor]:
    """Decode a torch.save archive into a plain state dict."""
    with _open(src, "rb", leave_open) as stream:
        if not _seekable(stream):
            stream = io.BytesIO(stream.read())
        with TorchZipReader(stream) as reader, StorageArena(reader) as arena:
            refs = decode_archive(reader, arena, config)
            return OrderedDict(arena.materialize_all(refs))


# =============================================================================
# Safetensors
# =============================================================================

def save_safetensors(
    module: nn.Module,
    dest: PathOrStream,
    skip: Optional[Collection[str]] = None,
    metadata: Optional[Dict[str, str]] = None,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> nn.Module:
    """
    Save ``module.state_dict()`` as safetensors.

    Args:
        module: Source module
        dest: Path or writable binary stream
        skip: State dict keys to leave out
        metadata: Optional ``__metadata__`` strings
        leave_open: Keep ``dest`` open when it is a stream
        config: Codec configuration

    Returns:
        ``module``
    """
    state_dict = _state_dict(module, skip)

    with _open(dest, "wb", leave_open) as stream:
        total = safetensors.save_state_dict(stream, state_dict, metadata, config)

    logger.info("Saved %d tensors as safetensors (%d bytes)", len(state_dict), total)
    return module


def load_safetensors(
    module: nn.Module,
    src: PathOrStream,
    strict: bool = True,
    skip: Optional[Collection[str]] = None,
    report: Optional[Dict[str, bool]] = None,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> nn.Module:
    """
    Load a safetensors file into ``module``.

    The header is read and compared first, so a strict key mismatch fails
    without reading any tensor data. Only tensors the module has are read.

    Args:
        module: Destination module, updated in place
        src: Path or readable binary stream
        strict: Require the file and module key sets to match
        skip: Keys ignored on both sides
        report: Filled with ``name -> bool`` (copied / not consumed)
        leave_open: Keep ``src`` open when it is a stream
        config: Codec configuration

    Returns:
        ``module``
    """
    skip = set(skip or ())
    target = module.state_dict()

    with _open(src, "rb", leave_open) as stream:
        header = safetensors.read_index(stream, config)
        names = [name for name in header.names() if name not in skip]
        if strict:
            check_keys(names, target, skip)

        wanted = {name for name in names if name in target}
        loaded = safetensors.load_state_dict(stream, keys=wanted, config=config, header=header)

    result = reconcile(
        loaded, target, strict, skip,
        extra_unexpected=[name for name in names if name not in target],
    )

    _fill_report(report, result)
    logger.info("Loaded %d tensors from safetensors (%d unexpected, %d missing)",
                len(result.copied), len(result.unexpected), len(result.missing))
    return module


def load_state_dict_safetensors(
    src: PathOrStream,
    leave_open: bool = False,
    config: Optional[CodecConfig] = None,
) -> Dict[str, torch.Tensor]:
    """Read every tensor of a safetensors file into a plain state dict."""
    with _open(src, "rb", leave_open) as stream:
        return safetensors.load_state_dict(stream, config=config)
