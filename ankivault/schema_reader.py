#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

schema_reader.py

Read-only access to the decompressed package database.

The database is opened straight from memory (no temp file) and checked
for every table and column the importer relies on before any row is
read. Rows are mapped to records by column name.

Expected (modern) schema, columns used:
    notetypes (id, name, config)
    fields    (ntid, ord, name)
    templates (ntid, ord, name, config)
    notes     (id, mid, tags, flds)
    cards     (id, nid, did, ord)
    decks     (id, name)

Legacy databases keep note types as JSON inside col.models instead; they
are reported as UnsupportedFormat.

Usage:
    from ankivault.schema_reader import SchemaReader

    with SchemaReader.from_bytes(raw_db) as reader:
        cards = reader.read_cards()
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Sequence

from ankivault.errors import CorruptArchive, SchemaMismatch, UnsupportedFormat
from ankivault.models import CardRecord, DeckRecord, NoteRecord


EXPECTED_COLUMNS: Dict[str, Sequence[str]] = {
    "notetypes": ("id", "name", "config"),
    "fields": ("ntid", "ord", "name"),
    "templates": ("ntid", "ord", "name", "config"),
    "notes": ("id", "mid", "tags", "flds"),
    "cards": ("id", "nid", "did", "ord"),
    "decks": ("id", "name"),
}

DECK_NAME_SEPARATOR = "\x1f"


# ============================================================================
# Raw row records
# ============================================================================

@dataclass(frozen=True)
class NoteTypeRow:
    id: int
    name: str
    config: bytes


@dataclass(frozen=True)
class FieldRow:
    note_type_id: int
    ordinal: int
    name: str


@dataclass(frozen=True)
class TemplateRow:
    note_type_id: int
    ordinal: int
    name: str
    config: bytes


# ============================================================================
# Reader
# ============================================================================

class SchemaReader:
    """Fixed read-only queries over one in-memory database connection."""

    def __init__(self, conn: sqlite3.Connection, deck_separator: str = "::"):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.deck_separator = deck_separator
        self.validate()

    @classmethod
    def from_bytes(cls, raw: bytes, deck_separator: str = "::") -> "SchemaReader":
        """
        Open a database image held in memory.

        Raises:
            CorruptArchive: If SQLite cannot load the image
            SchemaMismatch / UnsupportedFormat: See validate()
        """
        conn = sqlite3.connect(":memory:")
        try:
            conn.deserialize(raw)
        except sqlite3.Error as e:
            conn.close()
            raise CorruptArchive(
                message="Database image could not be loaded",
                context={"size": len(raw)},
                cause=e,
            )
        try:
            return cls(conn, deck_separator=deck_separator)
        except Exception:
            conn.close()
            raise

    def __enter__(self) -> "SchemaReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _columns(self, table: str) -> List[str]:
        rows = self._query(f"PRAGMA table_info({table})")
        return [row["name"] for row in rows]

    def _is_legacy_schema(self) -> bool:
        if "models" not in self._columns("col"):
            return False
        row = self._query("SELECT models FROM col LIMIT 1")
        return bool(row and row[0]["models"])

    def validate(self) -> None:
        """
        Check every expected table and column.

        Raises:
            UnsupportedFormat: If the legacy JSON-in-col schema is detected
            SchemaMismatch: If anything else expected is missing
        """
        missing = []
        for table, columns in EXPECTED_COLUMNS.items():
            present = set(self._columns(table))
            if not present:
                missing.append(table)
                continue
            missing.extend(f"{table}.{c}" for c in columns if c not in present)

        if not missing:
            return

        if "notetypes" in missing and self._is_legacy_schema():
            raise UnsupportedFormat(
                message="Database uses the legacy schema (note types stored in col.models)",
                suggestion="Re-export with the current desktop version",
            )

        raise SchemaMismatch(
            message="Database is missing expected tables/columns",
            context={"missing": ", ".join(missing)},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query(self, sql: str) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql).fetchall()
        except sqlite3.DatabaseError as e:
            raise CorruptArchive(
                message="Database query failed",
                context={"sql": sql},
                cause=e,
            )

    def read_decks(self) -> List[DeckRecord]:
        rows = self._query("SELECT id, name FROM decks ORDER BY id")
        return [
            DeckRecord(
                id=row["id"],
                name=self.deck_separator.join(row["name"].split(DECK_NAME_SEPARATOR)),
            )
            for row in rows
        ]

    def read_note_types(self) -> List[NoteTypeRow]:
        rows = self._query("SELECT id, name, config FROM notetypes ORDER BY id")
        return [
            NoteTypeRow(id=row["id"], name=row["name"], config=bytes(row["config"] or b""))
            for row in rows
        ]

    def read_fields(self) -> List[FieldRow]:
        rows = self._query("SELECT ntid, ord, name FROM fields ORDER BY ntid, ord")
        return [
            FieldRow(note_type_id=row["ntid"], ordinal=row["ord"], name=row["name"])
            for row in rows
        ]

    def read_templates(self) -> List[TemplateRow]:
        rows = self._query("SELECT ntid, ord, name, config FROM templates ORDER BY ntid, ord")
        return [
            TemplateRow(
                note_type_id=row["ntid"],
                ordinal=row["ord"],
                name=row["name"],
                config=bytes(row["config"] or b""),
            )
            for row in rows
        ]

    def read_notes(self) -> List[NoteRecord]:
        rows = self._query("SELECT id, mid, tags, flds FROM notes ORDER BY id")
        return [
            NoteRecord.from_raw(
                note_id=row["id"],
                note_type_id=row["mid"],
                flds=row["flds"],
                tags=row["tags"],
            )
            for row in rows
        ]

    def read_cards(self) -> List[CardRecord]:
        rows = self._query("SELECT id, nid, did, ord FROM cards ORDER BY id")
        return [
            CardRecord(
                id=row["id"],
                note_id=row["nid"],
                deck_id=row["did"],
                template_ordinal=row["ord"],
            )
            for row in rows
        ]
