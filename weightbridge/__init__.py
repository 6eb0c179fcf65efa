"""
weightbridge - model weight exchange for PyTorch modules

Reads and writes torch.save archives and safetensors files without
unpickling arbitrary objects.

Key Features:
- Restricted unpickler: static opcode and global whitelists, fails closed
- Byte-compatible encoder: the same data.pkl and storage members as torch.save
- Shared storages stay shared: aliased tensors load as views of one buffer
- Safetensors codec with header-only index checks
- Strict / non-strict state dict reconciliation with skip keys and a report

Usage:
    import weightbridge

    weightbridge.save_pickle(model, "model.bin")
    weightbridge.load_pickle(model, "model.bin", strict=True)

    report = {}
    weightbridge.load_safetensors(model, "model.safetensors", strict=False, report=report)
"""

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.errors import (
    FileNotFound,
    MalformedHeader,
    MissingStorage,
    ShapeMismatch,
    StateMismatch,
    StreamError,
    UnexpectedStructure,
    UnsupportedDType,
    UnsupportedProtocol,
    WeightBridgeError,
)
from weightbridge.module import (
    load_pickle,
    load_safetensors,
    load_state_dict_pickle,
    load_state_dict_safetensors,
    save_pickle,
    save_safetensors,
)
from weightbridge.reconcile import ReconcileResult, reconcile
from weightbridge.version import __version__, __version_info__

__all__ = [
    "__version__",
    "__version_info__",
    "CodecConfig",
    "DEFAULT_CONFIG",
    "save_pickle",
    "load_pickle",
    "save_safetensors",
    "load_safetensors",
    "load_state_dict_pickle",
    "load_state_dict_safetensors",
    "reconcile",
    "ReconcileResult",
    "WeightBridgeError",
    "FileNotFound",
    "StreamError",
    "UnsupportedProtocol",
    "UnexpectedStructure",
    "MissingStorage",
    "UnsupportedDType",
    "StateMismatch",
    "ShapeMismatch",
    "MalformedHeader",
]
