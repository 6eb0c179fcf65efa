"""
State dict reconciliation.

Merges a loaded ``name -> tensor`` mapping into a module's live tensors.

- Skip keys are removed from both sides first.
- Strict mode requires identical key sets and fails before any copy.
- Non-strict mode copies every key present on both sides, in loaded order.
  Keys only in the source are reported as unexpected; keys only in the
  target are left untouched.
- A shape mismatch on a shared key always fails. Copies already made for
  earlier keys stay in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Tuple

import torch

from weightbridge.errors import ShapeMismatch, StateMismatch

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one merge."""
    copied: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)

    @property
    def report(self) -> Dict[str, bool]:
        """True for copied keys, False for source keys that were not consumed."""
        report = {name: True for name in self.copied}
        report.update((name, False) for name in self.unexpected)
        return report


def diff_keys(
    loaded: Iterable[str],
    target: Iterable[str],
    skip: Optional[Collection[str]] = None,
) -> Tuple[List[str], List[str]]:
    """
    Compare key sets after removing ``skip``.

    Returns:
        (missing, unexpected): target keys absent from the source, and source
        keys absent from the target, each in encounter order
    """
    skip = set(skip or ())
    loaded_keys = [k for k in loaded if k not in skip]
    target_keys = [k for k in target if k not in skip]
    loaded_set, target_set = set(loaded_keys), set(target_keys)
    missing = [k for k in target_keys if k not in loaded_set]
    unexpected = [k for k in loaded_keys if k not in target_set]
    return missing, unexpected


def check_keys(
    loaded: Iterable[str],
    target: Iterable[str],
    skip: Optional[Collection[str]] = None,
) -> None:
    """Raise StateMismatch unless the key sets are identical outside ``skip``."""
    missing, unexpected = diff_keys(loaded, target, skip)
    if missing or unexpected:
        raise StateMismatch(missing, unexpected)


def reconcile(
    loaded: Mapping[str, torch.Tensor],
    target: Mapping[str, torch.Tensor],
    strict: bool = True,
    skip: Optional[Collection[str]] = None,
    extra_unexpected: Iterable[str] = (),
) -> ReconcileResult:
    """
    Copy ``loaded`` into ``target`` in place.

    Args:
        loaded: Decoded tensors
        target: Live tensors of the destination module (e.g. ``state_dict()``)
        strict: Require identical key sets
        skip: Keys ignored on both sides
        extra_unexpected: Source keys that were deliberately not decoded
            (e.g. safetensors entries unknown to the target)

    Returns:
        ReconcileResult with copied, missing and unexpected keys
    """
    skip = set(skip or ())
    loaded = {k: v for k, v in loaded.items() if k not in skip}

    missing, unexpected = diff_keys(loaded, target, skip)
    for name in extra_unexpected:
        if name not in skip and name not in target and name not in unexpected:
            unexpected.append(name)

    if strict and (missing or unexpected):
        raise StateMismatch(missing, unexpected)

    result = ReconcileResult(missing=missing, unexpected=unexpected)
    with torch.no_grad():
        for name, tensor in loaded.items():
            dst = target.get(name)
            if dst is None:
                continue
            if tuple(tensor.shape) != tuple(dst.shape):
                raise ShapeMismatch(name, tuple(tensor.shape), tuple(dst.shape))
            dst.copy_(tensor)
            result.copied.append(name)

    logger.debug("Reconciled %d tensors (%d missing, %d unexpected)",
                 len(result.copied), len(missing), len(unexpected))
    return result
