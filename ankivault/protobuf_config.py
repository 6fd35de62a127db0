#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

protobuf_config.py

Minimal protobuf wire-format decoding for the configuration blobs stored
in the package database and for the media manifest.

Only the handful of fields ankivault needs are described, in an explicit
SchemaRegistry value that callers build once and pass into every decode
call. Field numbers missing from a schema are skipped whatever their wire
type, so blobs written by newer exporters still decode. Decoding fails
only on structurally broken input: a truncated varint or length, a wire
type that does not exist, or a known field arriving with the wrong wire
type.

Messages described:
    TemplateConfig   1: q_format (string)   2: a_format (string)
    NotetypeConfig   1: kind (enum; 0 = normal, 1 = cloze)
    MediaEntries     1: entries (repeated MediaEntry)
    MediaEntry       1: name (string)   2: size (uint32)   3: sha1 (bytes)

Usage:
    from ankivault.protobuf_config import build_schema_registry, decode_template_config

    registry = build_schema_registry()
    config = decode_template_config(row_config_bytes, registry)
    print(config.question_format)
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from ankivault.errors import ProtobufDecodeError
from ankivault.models import NoteKind


# ============================================================================
# Wire format
# ============================================================================

WIRE_VARINT = 0
WIRE_I64 = 1
WIRE_LEN = 2
WIRE_I32 = 5

MAX_VARINT_BYTES = 10

# Wire type each field kind must arrive with
KIND_WIRE_TYPES = {
    "string": WIRE_LEN,
    "bytes": WIRE_LEN,
    "message": WIRE_LEN,
    "uint": WIRE_VARINT,
    "enum": WIRE_VARINT,
}


def read_varint(data: bytes, pos: int) -> Tuple[int, int]:
    """Read a varint from bytes, return (value, new_position)."""
    result = 0
    shift = 0
    for _ in range(MAX_VARINT_BYTES):
        if pos >= len(data):
            raise ProtobufDecodeError(
                message="Truncated varint",
                context={"offset": pos, "length": len(data)},
            )
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7

    raise ProtobufDecodeError(
        message="Varint longer than 10 bytes",
        context={"offset": pos},
    )


def iter_wire_fields(data: bytes) -> Iterator[Tuple[int, int, Any]]:
    """
    Walk a message's top-level fields.

    Yields:
        (field_number, wire_type, value) where value is an int for
        VARINT/I32/I64 and bytes for LEN
    """
    pos = 0
    while pos < len(data):
        tag, pos = read_varint(data, pos)
        field_num = tag >> 3
        wire_type = tag & 0x07

        if field_num == 0:
            raise ProtobufDecodeError(
                message="Invalid field number 0",
                context={"offset": pos},
            )

        if wire_type == WIRE_VARINT:
            value, pos = read_varint(data, pos)
        elif wire_type == WIRE_LEN:
            length, pos = read_varint(data, pos)
            if pos + length > len(data):
                raise ProtobufDecodeError(
                    message="Length-delimited field runs past end of message",
                    context={"field": field_num, "length": length, "remaining": len(data) - pos},
                )
            value = data[pos:pos + length]
            pos += length
        elif wire_type in (WIRE_I32, WIRE_I64):
            width = 4 if wire_type == WIRE_I32 else 8
            if pos + width > len(data):
                raise ProtobufDecodeError(
                    message="Fixed-width field runs past end of message",
                    context={"field": field_num, "width": width},
                )
            value = int.from_bytes(data[pos:pos + width], "little")
            pos += width
        else:
            # Groups (3/4) are not used by any known exporter; 6/7 do not exist
            raise ProtobufDecodeError(
                message=f"Unsupported wire type {wire_type}",
                context={"field": field_num, "offset": pos},
            )

        yield field_num, wire_type, value


# ============================================================================
# Schema registry
# ============================================================================

@dataclass(frozen=True)
class FieldSpec:
    number: int
    name: str
    kind: str
    repeated: bool = False
    message: Optional[str] = None

    def default(self) -> Any:
        if self.repeated:
            return []
        if self.kind == "string":
            return ""
        if self.kind == "bytes":
            return b""
        if self.kind == "message":
            return None
        return 0


@dataclass(frozen=True)
class MessageSchema:
    name: str
    fields: Tuple[FieldSpec, ...]

    def field(self, number: int) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.number == number:
                return spec
        return None


@dataclass(frozen=True)
class SchemaRegistry:
    """Immutable set of message schemas, looked up by message name."""
    messages: Mapping[str, MessageSchema]

    def get(self, name: str) -> MessageSchema:
        try:
            return self.messages[name]
        except KeyError:
            raise KeyError(f"No protobuf schema registered for message {name!r}")


def build_schema_registry() -> SchemaRegistry:
    """Build the registry of every message ankivault decodes."""
    schemas = [
        MessageSchema("TemplateConfig", (
            FieldSpec(1, "q_format", "string"),
            FieldSpec(2, "a_format", "string"),
        )),
        MessageSchema("NotetypeConfig", (
            FieldSpec(1, "kind", "enum"),
        )),
        MessageSchema("MediaEntries", (
            FieldSpec(1, "entries", "message", repeated=True, message="MediaEntry"),
        )),
        MessageSchema("MediaEntry", (
            FieldSpec(1, "name", "string"),
            FieldSpec(2, "size", "uint"),
            FieldSpec(3, "sha1", "bytes"),
        )),
    ]
    return SchemaRegistry(MappingProxyType({s.name: s for s in schemas}))


# ============================================================================
# Generic decode
# ============================================================================

def decode_message(data: Optional[bytes], message_name: str, registry: SchemaRegistry) -> Dict[str, Any]:
    """
    Decode bytes into a dict of field name -> value using a registered schema.

    Absent fields get their proto3 default; unknown field numbers are
    skipped. For repeated fields every occurrence is kept, for singular
    fields the last occurrence wins.

    Raises:
        ProtobufDecodeError: On structurally invalid input
    """
    schema = registry.get(message_name)
    result = {spec.name: spec.default() for spec in schema.fields}

    if not data:
        return result

    for field_num, wire_type, raw in iter_wire_fields(bytes(data)):
        spec = schema.field(field_num)
        if spec is None:
            continue

        expected = KIND_WIRE_TYPES[spec.kind]
        if wire_type != expected:
            raise ProtobufDecodeError(
                message=f"Field {message_name}.{spec.name} has wire type {wire_type}, expected {expected}",
                context={"field": field_num},
            )

        value = _convert_value(spec, raw, registry)
        if spec.repeated:
            result[spec.name].append(value)
        else:
            result[spec.name] = value

    return result


def _convert_value(spec: FieldSpec, raw: Any, registry: SchemaRegistry) -> Any:
    if spec.kind == "string":
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtobufDecodeError(
                message=f"Field {spec.name} is not valid UTF-8",
                cause=e,
            )
    if spec.kind == "bytes":
        return bytes(raw)
    if spec.kind == "message":
        return decode_message(raw, spec.message, registry)
    return raw


# ============================================================================
# Typed config decoders
# ============================================================================

@dataclass(frozen=True)
class TemplateConfig:
    question_format: str
    answer_format: str


def decode_template_config(data: Optional[bytes], registry: SchemaRegistry) -> TemplateConfig:
    """Decode a templates.config blob into its question/answer formats."""
    fields = decode_message(data, "TemplateConfig", registry)
    return TemplateConfig(
        question_format=fields["q_format"],
        answer_format=fields["a_format"],
    )


def decode_notetype_kind(data: Optional[bytes], registry: SchemaRegistry) -> NoteKind:
    """
    Decode a notetypes.config blob into the note type kind.

    Kinds this version does not know about are treated as standard.
    """
    fields = decode_message(data, "NotetypeConfig", registry)
    try:
        return NoteKind(fields["kind"])
    except ValueError:
        return NoteKind.STANDARD
