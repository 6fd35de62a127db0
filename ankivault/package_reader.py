#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

package_reader.py

Open a flashcard package (.apkg/.colpkg ZIP container) and pull entries
out of it on demand.

A modern package holds:
- collection.anki21b  zstd-framed SQLite database (required)
- media               media manifest, usually zstd-framed protobuf
- 0, 1, 2, ...        media blobs named by manifest key, each zstd-framed

Older packages only ship collection.anki2 / collection.anki21 with a
loosely-typed schema; those are rejected with UnsupportedFormat instead of
being half-imported.

Nothing is extracted up front. Media entries are read one at a time when
the caller asks for them, so peak memory stays at the database size plus
one media blob.

Usage:
    from ankivault.package_reader import open_package, decompress_database

    handle = open_package(Path("deck.apkg").read_bytes())
    raw_db = decompress_database(handle.extract(DATABASE_ENTRY))
"""

from __future__ import annotations

import io
import zipfile
from typing import List, Optional

import zstd

from ankivault.errors import CorruptArchive, UnsupportedFormat
from ankivault.icons import WARNING


# ============================================================================
# Constants
# ============================================================================

DATABASE_ENTRY = "collection.anki21b"
LEGACY_DATABASE_ENTRIES = ("collection.anki21", "collection.anki2")
MEDIA_ENTRY = "media"

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
SQLITE_HEADER = b"SQLite format 3\x00"

# SECURITY: Size limits to prevent zip bombs and DoS
MAX_MEMBERS = 200000
MAX_ENTRY_SIZE = 1024 * 1024 * 1024   # 1 GB per entry
MAX_COMPRESSION_RATIO = 1000


# ============================================================================
# Member validation
# ============================================================================

def is_safe_member_name(member: str) -> bool:
    """
    Validate zip member name for path traversal attempts.

    SECURITY: Media keys come straight from member names and are later
    handed to a writer, so a malicious package must not be able to smuggle
    paths through them.

    Blocks:
        - Absolute paths (/, C:, etc.)
        - Parent directory references (..)
        - Dangerous characters (\\0, <, >, etc.)
    """
    if not member:
        return False

    if member.startswith('/') or member.startswith('\\'):
        return False

    if len(member) >= 2 and member[1] == ':':
        return False

    parts = member.replace('\\', '/').split('/')
    if '..' in parts:
        return False

    dangerous_chars = ['\0', '<', '>', '|', '?', '*']
    if any(char in member for char in dangerous_chars):
        return False

    return True


def is_zstd_frame(data: bytes) -> bool:
    return data[:4] == ZSTD_MAGIC


# ============================================================================
# Archive handle
# ============================================================================

class ArchiveHandle:
    """
    An opened package container.

    Holds the ZipFile over the caller's bytes; entries are decompressed
    only when extract() is called. Not safe for concurrent use.
    """

    def __init__(self, zf: zipfile.ZipFile):
        self._zf = zf
        self._names = set(zf.namelist())

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    def has_entry(self, name: str) -> bool:
        return name in self._names

    def media_keys(self) -> List[str]:
        """Numbered media entries, sorted numerically."""
        keys = [n for n in self._names if n.isdigit() and is_safe_member_name(n)]
        return sorted(keys, key=int)

    def extract(self, name: str) -> bytes:
        """
        Read one entry fully into memory.

        Raises:
            CorruptArchive: If the entry is missing, oversized, suspiciously
                compressed, or fails its CRC check
        """
        if not is_safe_member_name(name) or name not in self._names:
            raise CorruptArchive(
                message=f"Package entry not found: {name}",
                context={"entry": name},
            )

        info = self._zf.getinfo(name)

        if info.file_size > MAX_ENTRY_SIZE:
            raise CorruptArchive(
                message=f"Package entry too large: {name}",
                context={"size_mb": f"{info.file_size / (1024 * 1024):.1f}"},
            )

        # SECURITY: Check compression ratio (zip bomb detection)
        if info.file_size > 0 and info.compress_size > 0:
            ratio = info.file_size / info.compress_size
            if ratio > MAX_COMPRESSION_RATIO:
                raise CorruptArchive(
                    message=f"Suspicious compression ratio for entry: {name}",
                    context={"ratio": f"{ratio:.0f}x"},
                )

        try:
            return self._zf.read(name)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError, ValueError) as e:
            raise CorruptArchive(
                message=f"Failed to read package entry: {name}",
                context={"entry": name},
                cause=e,
            )
        except NotImplementedError as e:
            raise CorruptArchive(
                message=f"Unsupported compression method for entry: {name}",
                context={"entry": name},
                cause=e,
            )

    def extract_optional(self, name: str) -> Optional[bytes]:
        if name not in self._names:
            return None
        return self.extract(name)


# ============================================================================
# Opening
# ============================================================================

def open_package(data: bytes, verbose: bool = False) -> ArchiveHandle:
    """
    Open a package container from bytes and check its required entries.

    Args:
        data: Raw bytes of the .apkg/.colpkg file
        verbose: Print [apkg] status lines

    Returns:
        ArchiveHandle

    Raises:
        CorruptArchive: If the bytes are not a readable ZIP container
        UnsupportedFormat: If the compressed database entry is absent
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data), 'r')
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError, ValueError) as e:
        raise CorruptArchive(
            message="Package is not a readable ZIP container",
            suggestion="Re-export the deck and make sure the download completed",
            context={"size": len(data)},
            cause=e,
        )

    names = zf.namelist()

    # SECURITY: Check number of members
    if len(names) > MAX_MEMBERS:
        zf.close()
        raise CorruptArchive(
            message=f"Package contains too many entries: {len(names)}",
            context={"limit": MAX_MEMBERS},
        )

    if DATABASE_ENTRY not in names:
        zf.close()
        legacy = [n for n in LEGACY_DATABASE_ENTRIES if n in names]
        if legacy:
            raise UnsupportedFormat(
                message="Package uses a legacy database format",
                suggestion="Re-export with the current desktop version (leave "
                           "'support older versions' unchecked)",
                context={"found": ", ".join(legacy), "expected": DATABASE_ENTRY},
            )
        raise UnsupportedFormat(
            message="Package has no compressed database entry",
            suggestion="Check that the file is a flashcard package export",
            context={"expected": DATABASE_ENTRY},
        )

    unsafe = [n for n in names if not is_safe_member_name(n)]
    if unsafe and verbose:
        print(f"[apkg:warn] {WARNING} Ignoring {len(unsafe)} unsafe entry name(s)")

    if verbose:
        print(f"[apkg] Opened package with {len(names)} entries")

    return ArchiveHandle(zf)


# ============================================================================
# Database frame
# ============================================================================

def decompress_database(frame: bytes) -> bytes:
    """
    Decompress the zstd-framed database entry.

    Raises:
        CorruptArchive: If the frame is invalid/truncated or does not hold
            an SQLite database
    """
    if not is_zstd_frame(frame):
        raise CorruptArchive(
            message="Database entry is not a zstd frame",
            context={"magic": frame[:4].hex()},
        )

    try:
        raw = zstd.decompress(frame)
    except zstd.Error as e:
        raise CorruptArchive(
            message="Database compression frame is invalid or truncated",
            context={"frame_size": len(frame)},
            cause=e,
        )

    if not raw.startswith(SQLITE_HEADER):
        raise CorruptArchive(
            message="Decompressed database is not an SQLite file",
            context={"header": raw[:16].hex()},
        )

    return raw


# ============================================================================
# Media frames
# ============================================================================

def decompress_media(data: bytes, key: str) -> bytes:
    """
    Strip the zstd frame a modern package puts around each media blob.

    Unframed blobs pass through unchanged.

    Raises:
        CorruptArchive: If the frame is invalid or truncated
    """
    if not is_zstd_frame(data):
        return data

    try:
        return zstd.decompress(data)
    except zstd.Error as e:
        raise CorruptArchive(
            message=f"Media entry compression frame is invalid or truncated: {key}",
            context={"entry": key, "frame_size": len(data)},
            cause=e,
        )
