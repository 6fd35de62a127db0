#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

note_types.py

Group field rows, template rows and decoded config blobs into
NoteTypeRecords.

Ordinal invariants are enforced here and are fatal (SchemaMismatch):
- field ordinals of a note type are exactly 0..n-1
- template ordinals of a note type are unique

A config blob that fails to decode only knocks out its own note type: it
is listed in AssembledNoteTypes.failures and every card of that note type
later fails individually.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from ankivault.errors import ProtobufDecodeError, SchemaMismatch
from ankivault.icons import WARNING
from ankivault.models import FieldDef, NoteKind, NoteTypeRecord, TemplateDef
from ankivault.protobuf_config import (
    SchemaRegistry,
    TemplateConfig,
    decode_notetype_kind,
    decode_template_config,
)
from ankivault.schema_reader import FieldRow, NoteTypeRow, TemplateRow


@dataclass
class AssembledNoteTypes:
    note_types: Dict[int, NoteTypeRecord] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)  # note type id -> error


@dataclass
class DecodedConfigs:
    kinds: Dict[int, NoteKind] = field(default_factory=dict)
    templates: Dict[tuple, TemplateConfig] = field(default_factory=dict)  # (ntid, ord) -> config
    failures: Dict[int, str] = field(default_factory=dict)


class NoteTypeAssembler:
    def __init__(self, registry: SchemaRegistry, verbose: bool = False):
        self.registry = registry
        self.verbose = verbose

    def decode_configs(
        self,
        note_type_rows: Sequence[NoteTypeRow],
        template_rows: Sequence[TemplateRow],
    ) -> DecodedConfigs:
        """Decode every note type and template config blob, row by row."""
        decoded = DecodedConfigs()

        for row in note_type_rows:
            try:
                decoded.kinds[row.id] = decode_notetype_kind(row.config, self.registry)
            except ProtobufDecodeError as e:
                decoded.failures[row.id] = f"Note type config could not be decoded: {e.message}"

        for row in template_rows:
            if row.note_type_id in decoded.failures:
                continue
            try:
                decoded.templates[(row.note_type_id, row.ordinal)] = decode_template_config(
                    row.config, self.registry
                )
            except ProtobufDecodeError as e:
                decoded.failures[row.note_type_id] = (
                    f"Template '{row.name}' config could not be decoded: {e.message}"
                )

        return decoded

    def assemble(
        self,
        note_type_rows: Sequence[NoteTypeRow],
        field_rows: Sequence[FieldRow],
        template_rows: Sequence[TemplateRow],
    ) -> AssembledNoteTypes:
        """
        Build NoteTypeRecords keyed by note type id.

        Raises:
            SchemaMismatch: If an ordinal invariant is violated
        """
        decoded = self.decode_configs(note_type_rows, template_rows)

        fields_by_type: Dict[int, List[FieldRow]] = defaultdict(list)
        for row in field_rows:
            fields_by_type[row.note_type_id].append(row)

        templates_by_type: Dict[int, List[TemplateRow]] = defaultdict(list)
        for row in template_rows:
            templates_by_type[row.note_type_id].append(row)

        known_ids = {row.id for row in note_type_rows}
        orphans = sorted((set(fields_by_type) | set(templates_by_type)) - known_ids)
        if orphans and self.verbose:
            print(f"[notetypes:warn] {WARNING} Ignoring fields/templates of unknown note type(s): "
                  f"{', '.join(str(o) for o in orphans)}")

        result = AssembledNoteTypes(failures=dict(decoded.failures))

        for row in note_type_rows:
            fields = sorted(fields_by_type.get(row.id, []), key=lambda f: f.ordinal)
            templates = sorted(templates_by_type.get(row.id, []), key=lambda t: t.ordinal)

            self._check_field_ordinals(row, fields)
            self._check_template_ordinals(row, templates)

            if row.id in decoded.failures:
                continue

            result.note_types[row.id] = NoteTypeRecord(
                id=row.id,
                name=row.name,
                kind=decoded.kinds[row.id],
                fields=tuple(FieldDef(ordinal=f.ordinal, name=f.name) for f in fields),
                templates=tuple(
                    TemplateDef(
                        ordinal=t.ordinal,
                        name=t.name,
                        question_format=decoded.templates[(row.id, t.ordinal)].question_format,
                        answer_format=decoded.templates[(row.id, t.ordinal)].answer_format,
                    )
                    for t in templates
                ),
            )

        if self.verbose:
            print(f"[notetypes] Assembled {len(result.note_types)} note type(s)")
            for ntid, error in sorted(result.failures.items()):
                print(f"[notetypes:warn] {WARNING} Note type {ntid} excluded: {error}")

        return result

    @staticmethod
    def _check_field_ordinals(row: NoteTypeRow, fields: List[FieldRow]) -> None:
        ordinals = [f.ordinal for f in fields]
        if ordinals != list(range(len(fields))) or not fields:
            raise SchemaMismatch(
                message=f"Field ordinals of note type '{row.name}' are not contiguous from 0",
                context={"note_type_id": row.id, "ordinals": ordinals},
            )

    @staticmethod
    def _check_template_ordinals(row: NoteTypeRow, templates: List[TemplateRow]) -> None:
        ordinals = [t.ordinal for t in templates]
        if len(set(ordinals)) != len(ordinals):
            raise SchemaMismatch(
                message=f"Template ordinals of note type '{row.name}' are not unique",
                context={"note_type_id": row.id, "ordinals": ordinals},
            )
