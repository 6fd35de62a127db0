#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

media_manifest.py

Decode the package media manifest (the "media" entry).

The manifest is a MediaEntries protobuf message, normally wrapped in a
zstd frame. Entry N of the repeated list describes archive member "N":

    MediaEntries { repeated MediaEntry entries = 1; }
    MediaEntry   { string name = 1; uint32 size = 2; bytes sha1 = 3; }

The result is a MediaManifest that maps archive keys to original
filenames and back. A manifest that fails to decode is fatal for the
whole import: without it no media reference can be verified.

Usage:
    from ankivault.media_manifest import decode_media_manifest

    manifest = decode_media_manifest(handle.extract("media"), registry)
    manifest.key_for("photo.jpg")   # -> "0"
"""

from __future__ import annotations

from typing import List, Optional

import zstd

from ankivault.errors import CorruptArchive
from ankivault.models import MediaEntry, MediaManifest
from ankivault.package_reader import is_zstd_frame
from ankivault.protobuf_config import SchemaRegistry, decode_message


def unwrap_manifest(data: bytes) -> bytes:
    """Strip the zstd frame if there is one; raw bytes pass through."""
    if not is_zstd_frame(data):
        return data

    try:
        return zstd.decompress(data)
    except zstd.Error as e:
        raise CorruptArchive(
            message="Media manifest compression frame is invalid or truncated",
            context={"frame_size": len(data)},
            cause=e,
        )


def decode_media_manifest(data: Optional[bytes], registry: SchemaRegistry) -> MediaManifest:
    """
    Decode the media manifest into a MediaManifest.

    Args:
        data: Contents of the "media" entry (compressed or not); None or
            empty means the package carries no media
        registry: Protobuf schema registry

    Returns:
        MediaManifest

    Raises:
        ProtobufDecodeError: If the manifest is structurally invalid
        CorruptArchive: If its compression frame is unreadable
    """
    if not data:
        return MediaManifest()

    message = decode_message(unwrap_manifest(data), "MediaEntries", registry)

    entries: List[MediaEntry] = []
    for index, raw_entry in enumerate(message["entries"]):
        name = raw_entry["name"]
        if not name:
            # Removed media keep their slot so later keys stay aligned
            continue
        entries.append(MediaEntry(
            key=str(index),
            name=name,
            size=raw_entry["size"],
            sha1=raw_entry["sha1"],
        ))

    return MediaManifest(tuple(entries))
