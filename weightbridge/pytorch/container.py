"""
Zip container used by torch.save.

Archive layout (all members under one root folder, stored uncompressed):

┌──────────────────────────────┐
│ <root>/version               │ ASCII file format version, e.g. "3\\n"
├──────────────────────────────┤
│ <root>/data.pkl              │ Restricted pickle stream (object graph)
├──────────────────────────────┤
│ <root>/byteorder (optional)  │ "little" or "big"
├──────────────────────────────┤
│ <root>/data/<key>            │ Raw storage bytes, one member per key
└──────────────────────────────┘

Streams that are not zip archives use the legacy (pre-1.6) torch layout,
which is not supported.
"""

import logging
import struct
import sys
import zipfile
from typing import BinaryIO, Dict, List, Optional

from weightbridge.config import CodecConfig, DEFAULT_CONFIG
from weightbridge.errors import (
    MissingStorage,
    StreamError,
    UnexpectedStructure,
    UnsupportedProtocol,
)

logger = logging.getLogger(__name__)

PICKLE_RECORD = "data.pkl"
VERSION_RECORDS = ("version", ".data/version")
BYTEORDER_RECORD = "byteorder"
STORAGE_PREFIX = "data/"

# Version written by torch.save, and the newest version torch itself reads
FILE_FORMAT_VERSION = 3
MIN_SUPPORTED_VERSION = 1
MAX_SUPPORTED_VERSION = 10

# Fixed member timestamp so identical input gives identical archives
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

_LOCAL_HEADER_SIZE = 30
_EXTRA_HEADER_SIZE = 4


def storage_record(key: str) -> str:
    """Member name (relative to the root folder) holding storage ``key``."""
    return f"{STORAGE_PREFIX}{key}"


class TorchZipReader:
    """
    Reader for torch.save zip archives.

    Members are only read when asked for, so storages that are never
    referenced are never pulled out of the archive.

    Usage:
        with TorchZipReader(stream) as reader:
            pickle_bytes = reader.read_record("data.pkl")
            raw = reader.read_storage("0")
    """

    def __init__(self, stream: BinaryIO):
        try:
            self._zip = zipfile.ZipFile(stream, "r")
        except zipfile.BadZipFile:
            raise UnsupportedProtocol(
                "Not a zip archive: the legacy torch.save format is not supported"
            ) from None
        except OSError as e:
            raise StreamError(f"Failed to read archive: {e}") from e

        try:
            self._members: Dict[str, zipfile.ZipInfo] = {
                info.filename: info for info in self._zip.infolist()
            }
            self.root = self._find_root()
            self.version = self._read_version()
            self.byteorder = self._read_byteorder()
        except BaseException:
            self._zip.close()
            raise

        logger.debug(
            "Opened torch archive %r (version %d, byteorder %s, %d members)",
            self.root, self.version, self.byteorder, len(self._members),
        )

    def close(self) -> None:
        """Release the archive (the underlying stream is left alone)."""
        self._zip.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # =========================================================================
    # Layout discovery
    # =========================================================================

    def _find_root(self) -> str:
        roots = [
            name[: -len(PICKLE_RECORD)]
            for name in self._members
            if name.endswith("/" + PICKLE_RECORD) and name.count("/") == 1
        ]
        if not roots:
            raise UnexpectedStructure(f"Archive has no {PICKLE_RECORD} member")
        if len(roots) > 1:
            raise UnexpectedStructure(f"Archive has several root folders: {sorted(roots)}")

        root = roots[0]
        if root + "constants.pkl" in self._members:
            raise UnsupportedProtocol("TorchScript archives are not supported")
        return root

    def _read_version(self) -> int:
        for record in VERSION_RECORDS:
            if self.has_record(record):
                raw = self.read_record(record)
                break
        else:
            raise UnsupportedProtocol("Archive has no version record")

        try:
            version = int(raw.decode("ascii").strip())
        except (UnicodeDecodeError, ValueError):
            raise UnsupportedProtocol(f"Invalid version record: {raw[:16]!r}") from None

        if not MIN_SUPPORTED_VERSION <= version <= MAX_SUPPORTED_VERSION:
            raise UnsupportedProtocol(f"Unsupported archive version: {version}")
        return version

    def _read_byteorder(self) -> str:
        if not self.has_record(BYTEORDER_RECORD):
            return "little"
        raw = self.read_record(BYTEORDER_RECORD)
        if raw not in (b"little", b"big"):
            raise UnsupportedProtocol(f"Unknown endianness type: {raw[:16]!r}")
        return raw.decode("ascii")

    # =========================================================================
    # Member access
    # =========================================================================

    def has_record(self, name: str) -> bool:
        """Check whether ``<root>/<name>`` exists."""
        return self.root + name in self._members

    def record_size(self, name: str) -> int:
        """Uncompressed size of a member, without reading it."""
        return self._members[self.root + name].file_size

    def read_record(self, name: str, offset: int = 0, size: Optional[int] = None) -> bytes:
        """
        Read a member, or a byte range of it.

        Args:
            name: Member name relative to the root folder
            offset: First byte to read
            size: Number of bytes (None = to the end)
        """
        info = self._members[self.root + name]
        try:
            if offset == 0 and size is None:
                return self._zip.read(info)
            with self._zip.open(info) as member:
                member.seek(offset)
                return member.read(-1 if size is None else size)
        except zipfile.BadZipFile as e:
            raise UnsupportedProtocol(f"Corrupt archive member {info.filename!r}: {e}") from e
        except OSError as e:
            raise StreamError(f"Failed to read {info.filename!r}: {e}") from e

    def storage_names(self) -> List[str]:
        """Keys of every storage member, in archive order."""
        prefix = self.root + STORAGE_PREFIX
        return [name[len(prefix):] for name in self._members if name.startswith(prefix)]

    def storage_size(self, key: str) -> int:
        """Byte length of storage ``key``."""
        record = storage_record(key)
        if not self.has_record(record):
            raise MissingStorage(key, self.root + record)
        return self.record_size(record)

    def read_storage(self, key: str) -> bytes:
        """Raw bytes of storage ``key``."""
        record = storage_record(key)
        if not self.has_record(record):
            raise MissingStorage(key, self.root + record)
        return self.read_record(record)


class TorchZipWriter:
    """
    Writer for torch.save zip archives.

    Members are written in call order, uncompressed, with a fixed timestamp.
    Each member's payload is padded to ``config.storage_alignment`` bytes
    through an ``FB`` extra field, the way torch's own writer aligns records.

    Usage:
        with TorchZipWriter(stream) as writer:
            writer.write_version()
            writer.write_record("data.pkl", pickle_bytes)
            writer.write_storage("0", raw)
    """

    def __init__(self, stream: BinaryIO, config: Optional[CodecConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self.root = self.config.archive_name + "/"
        try:
            self._zip = zipfile.ZipFile(stream, "w", compression=zipfile.ZIP_STORED, allowZip64=True)
        except OSError as e:
            raise StreamError(f"Failed to open archive for writing: {e}") from e
        self._written: List[str] = []

    def close(self) -> None:
        """Write the central directory (the underlying stream is left alone)."""
        try:
            self._zip.close()
        except OSError as e:
            raise StreamError(f"Failed to finalize archive: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def records(self) -> List[str]:
        """Member names written so far, in order."""
        return list(self._written)

    def write_record(self, name: str, data: bytes) -> None:
        """Write ``<root>/<name>``."""
        filename = self.root + name
        if filename in self._written:
            raise ValueError(f"Duplicate archive member: {filename}")

        info = zipfile.ZipInfo(filename, date_time=ZIP_EPOCH)
        info.compress_type = zipfile.ZIP_STORED
        info.create_system = 3
        info.extra = self._padding(filename)

        try:
            self._zip.writestr(info, data)
        except OSError as e:
            raise StreamError(f"Failed to write {filename!r}: {e}") from e

        self._written.append(filename)
        logger.debug("Wrote %s (%d bytes)", filename, len(data))

    def write_version(self, version: int = FILE_FORMAT_VERSION) -> None:
        """Write the version marker."""
        self.write_record(VERSION_RECORDS[0], f"{version}\n".encode("ascii"))

    def write_byteorder(self) -> None:
        """Write the byte order marker of this machine."""
        self.write_record(BYTEORDER_RECORD, sys.byteorder.encode("ascii"))

    def write_storage(self, key: str, data: bytes) -> None:
        """Write storage ``key``."""
        self.write_record(storage_record(key), data)

    def _padding(self, filename: str) -> bytes:
        alignment = self.config.storage_alignment
        if alignment <= 1:
            return b""
        start = (
            self._zip.start_dir
            + _LOCAL_HEADER_SIZE
            + len(filename.encode("utf-8"))
            + _EXTRA_HEADER_SIZE
        )
        pad = -start % alignment
        return b"FB" + struct.pack("<H", pad) + b"Z" * pad
