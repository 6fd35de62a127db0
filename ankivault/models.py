#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

models.py

Read-only record types produced while importing a flashcard package.

Database rows are turned into these records by column name (never by
tuple position), so a reordered column in an exported database cannot
silently shift data into the wrong attribute. All records are frozen
snapshots built once per import run.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import frontmatter


FIELD_SEPARATOR = "\x1f"

PROTECTION_COMMENT = (
    "<!-- flashcard-content: DO NOT EDIT BELOW - Edit the frontmatter above instead! -->"
)


class NoteKind(enum.IntEnum):
    """Note type kind as stored in the note type config blob."""
    STANDARD = 0
    CLOZE = 1


# ============================================================================
# Source records
# ============================================================================

@dataclass(frozen=True)
class DeckRecord:
    id: int
    name: str


@dataclass(frozen=True)
class FieldDef:
    ordinal: int
    name: str


@dataclass(frozen=True)
class TemplateDef:
    ordinal: int
    name: str
    question_format: str
    answer_format: str


@dataclass(frozen=True)
class NoteTypeRecord:
    """A note type with its fields and card templates, both ordered by ordinal."""
    id: int
    name: str
    kind: NoteKind
    fields: Tuple[FieldDef, ...]
    templates: Tuple[TemplateDef, ...]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def template_at(self, ordinal: int) -> Optional[TemplateDef]:
        for template in self.templates:
            if template.ordinal == ordinal:
                return template
        return None


@dataclass(frozen=True)
class NoteRecord:
    id: int
    note_type_id: int
    field_values: Tuple[str, ...]
    tags: Tuple[str, ...]

    @classmethod
    def from_raw(cls, note_id: int, note_type_id: int, flds: str, tags: str) -> "NoteRecord":
        """Split the delimited field string and the space-separated tag string."""
        values = tuple(flds.split(FIELD_SEPARATOR)) if flds is not None else ("",)
        tag_list = sorted(set((tags or "").split()))
        return cls(
            id=note_id,
            note_type_id=note_type_id,
            field_values=values,
            tags=tuple(tag_list),
        )


@dataclass(frozen=True)
class CardRecord:
    id: int
    note_id: int
    deck_id: int
    template_ordinal: int


@dataclass(frozen=True)
class MediaEntry:
    """One manifest entry; ``key`` is the numbered archive entry name."""
    key: str
    name: str
    size: int = 0
    sha1: bytes = b""


@dataclass(frozen=True)
class MediaManifest:
    """Bidirectional mapping between archive entry keys and original filenames."""
    entries: Tuple[MediaEntry, ...] = ()

    def __post_init__(self):
        by_key: Dict[str, MediaEntry] = {}
        by_name: Dict[str, MediaEntry] = {}
        for entry in self.entries:
            by_key[entry.key] = entry
            by_name.setdefault(entry.name, entry)
        object.__setattr__(self, "_by_key", by_key)
        object.__setattr__(self, "_by_name", by_name)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, filename: object) -> bool:
        return filename in self._by_name

    def filename_for(self, key: str) -> Optional[str]:
        entry = self._by_key.get(str(key))
        return entry.name if entry else None

    def key_for(self, filename: str) -> Optional[str]:
        entry = self._by_name.get(filename)
        return entry.key if entry else None

    @property
    def filenames(self) -> List[str]:
        return [entry.name for entry in self.entries]


# ============================================================================
# Conversion output
# ============================================================================

@dataclass(frozen=True)
class ConversionResult:
    markdown: str
    media_files: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class FlashcardArtifact:
    """One generated flashcard, ready to hand to the vault writer."""
    card_id: int
    note_id: int
    deck_name: str
    note_type_name: str
    template_name: str
    fields: Mapping[str, str]
    tags: Tuple[str, ...]
    generated_body: str
    media_refs: FrozenSet[str] = frozenset()

    def frontmatter_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "_type": "flashcard",
            "_deck": self.deck_name,
            "_note_type": self.note_type_name,
            "_template": self.template_name,
            "_card_id": self.card_id,
            "_note_id": self.note_id,
            "_tags": list(self.tags),
        }
        # User fields live at the top level; plugin keys are underscore-prefixed
        for name, value in self.fields.items():
            if name not in data:
                data[name] = value
        return data

    def to_document(self) -> str:
        """Render the artifact as a Markdown note with YAML frontmatter."""
        body = f"{PROTECTION_COMMENT}\n\n{self.generated_body}"
        post = frontmatter.Post(body, **self.frontmatter_data())
        return frontmatter.dumps(post, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "note_id": self.note_id,
            "deck_name": self.deck_name,
            "note_type_name": self.note_type_name,
            "template_name": self.template_name,
            "fields": dict(self.fields),
            "tags": list(self.tags),
            "generated_body": self.generated_body,
            "media_refs": sorted(self.media_refs),
        }


@dataclass(frozen=True)
class CardFailure:
    card_id: int
    error: str
    error_type: str = "CardConversionError"

    def to_dict(self) -> Dict[str, Any]:
        return {"card_id": self.card_id, "error": self.error, "error_type": self.error_type}


@dataclass(frozen=True)
class ImportReport:
    """Result of one import run; artifacts and failures ordered by card id."""
    artifacts: Tuple[FlashcardArtifact, ...] = ()
    failures: Tuple[CardFailure, ...] = ()
    media_files: Tuple[str, ...] = ()
    missing_media: Tuple[str, ...] = ()
    cancelled: bool = False
    card_count: int = 0

    @property
    def succeeded(self) -> int:
        return len(self.artifacts)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return self.card_count

    def summary(self) -> str:
        lines = [
            f"Cards: {self.total}",
            f"Succeeded: {self.succeeded}",
            f"Failed: {self.failed}",
            f"Media files: {len(self.media_files)}",
        ]
        if self.missing_media:
            lines.append(f"Missing media: {', '.join(self.missing_media)}")
        if self.cancelled:
            lines.append("Cancelled before all cards were processed")
        for failure in self.failures:
            lines.append(f"  card {failure.card_id}: {failure.error}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "failures": [f.to_dict() for f in self.failures],
            "media_files": list(self.media_files),
            "missing_media": list(self.missing_media),
        }
