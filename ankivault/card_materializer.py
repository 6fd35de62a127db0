#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

card_materializer.py

Turn one card row into one FlashcardArtifact.

For each card the note, note type, template and deck are resolved, the
question and answer templates are rendered with the note's field values,
both sides go through ContentConverter, and the result is assembled into
an artifact whose body is:

    <question markdown>

    ---

    <answer markdown>

Every card row maps to exactly one artifact or one CardFailure. Which
cards exist is decided by the package's card rows, never recomputed here.

Template language handled:
    {{Field}}                       raw field HTML
    {{#Field}}...{{/Field}}         kept when the field is non-empty
    {{^Field}}...{{/Field}}         kept when the field is empty
    {{filter:Field}}                cloze/hint/furigana/kana/kanji/tts render
                                    the value, text: strips HTML, type: renders
                                    nothing
    {{FrontSide}} {{Tags}} {{Deck}} {{Subdeck}} {{Type}} {{Card}}

Materialization is pure (no I/O, no shared mutable state), so cards can
be processed on any number of worker threads.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

from bs4 import BeautifulSoup

from ankivault.errors import AnkiVaultError, CardConversionError, HTMLConversionError
from ankivault.html_to_markdown import ContentConverter
from ankivault.models import (
    CardFailure,
    CardRecord,
    DeckRecord,
    FlashcardArtifact,
    NoteKind,
    NoteRecord,
    NoteTypeRecord,
    TemplateDef,
)


TAG_RE = re.compile(r"\{\{([#^/]?)(.*?)\}\}", re.DOTALL)
ANSWER_DIVIDER_RE = re.compile(r"<hr[^>]*\bid\s*=\s*[\"']?answer[\"']?[^>]*>", re.IGNORECASE)
EMPTY_FIELD_RE = re.compile(r"<br\s*/?>|</?div\s*/?>|&nbsp;|\s", re.IGNORECASE)


# ============================================================================
# Template parsing
# ============================================================================

@dataclass
class _Text:
    text: str


@dataclass
class _FieldRef:
    expression: str


@dataclass
class _Section:
    name: str
    inverted: bool
    children: List = field(default_factory=list)


def parse_template(source: str) -> List:
    """
    Parse template text into a list of text, field and section nodes.

    Raises:
        CardConversionError: If a section is not closed, or closed out of order
    """
    root: List = []
    stack = [("", root)]
    pos = 0

    for match in TAG_RE.finditer(source):
        if match.start() > pos:
            stack[-1][1].append(_Text(source[pos:match.start()]))
        pos = match.end()

        sigil = match.group(1)
        name = match.group(2).strip()

        if sigil in ("#", "^"):
            section = _Section(name=name, inverted=(sigil == "^"))
            stack[-1][1].append(section)
            stack.append((name, section.children))
        elif sigil == "/":
            if len(stack) == 1 or stack[-1][0] != name:
                raise CardConversionError(
                    f"Template closes section '{name}' that is not open",
                )
            stack.pop()
        else:
            stack[-1][1].append(_FieldRef(name))

    if pos < len(source):
        stack[-1][1].append(_Text(source[pos:]))

    if len(stack) > 1:
        raise CardConversionError(f"Template section '{stack[-1][0]}' is never closed")

    return root


def is_empty_field(value: str) -> bool:
    """A field is empty when it holds only whitespace, &nbsp;, <br> and empty <div> tags."""
    return not EMPTY_FIELD_RE.sub("", value or "")


# ============================================================================
# Rendering
# ============================================================================

class TemplateRenderer:
    """Render one side of a card template against a note's field values."""

    def __init__(self, fields: Mapping[str, str], builtins: Mapping[str, str]):
        self.fields = fields
        self.builtins = builtins

    def _lookup(self, name: str) -> str:
        if name in self.fields:
            return self.fields[name]
        if name in self.builtins:
            return self.builtins[name]
        raise CardConversionError(f"Template references unknown field '{name}'")

    def _field_value(self, expression: str) -> str:
        parts = [p.strip() for p in expression.split(":")]
        name = parts[-1]
        filters = parts[:-1]

        # {{type:Back}}, {{type:cloze:Text}}, ... render nothing
        if any(f.split(" ", 1)[0] == "type" for f in filters):
            return ""

        value = self._lookup(name)

        # cloze, hint, furigana, kana, kanji and tts render the value as is
        for name_filter in filters:
            if name_filter.split(" ", 1)[0] == "text":
                value = BeautifulSoup(value, 'html.parser').get_text()

        return value

    def render_nodes(self, nodes: List) -> str:
        out = []
        for node in nodes:
            if isinstance(node, _Text):
                out.append(node.text)
            elif isinstance(node, _FieldRef):
                out.append(self._field_value(node.expression))
            elif isinstance(node, _Section):
                name = node.name.split(":")[-1].strip()
                empty = is_empty_field(self._lookup(name))
                if empty == node.inverted:
                    out.append(self.render_nodes(node.children))
        return "".join(out)

    def render(self, source: str) -> str:
        html = self.render_nodes(parse_template(source))
        return ANSWER_DIVIDER_RE.sub("", html)


# ============================================================================
# Materializer
# ============================================================================

class CardMaterializer:
    """
    Map card rows to FlashcardArtifacts.

    Args:
        notes: note id -> NoteRecord
        note_types: note type id -> NoteTypeRecord (assembled successfully)
        decks: deck id -> DeckRecord
        excluded_note_types: note type id -> reason it could not be assembled
        converter: ContentConverter to use (a fresh one by default)
        deck_separator: separator between deck name components
        side_separator: line between question and answer in the body
    """

    def __init__(
        self,
        notes: Mapping[int, NoteRecord],
        note_types: Mapping[int, NoteTypeRecord],
        decks: Mapping[int, DeckRecord],
        excluded_note_types: Optional[Mapping[int, str]] = None,
        converter: Optional[ContentConverter] = None,
        deck_separator: str = "::",
        side_separator: str = "---",
    ):
        self.notes = notes
        self.note_types = note_types
        self.decks = decks
        self.excluded_note_types = excluded_note_types or {}
        self.converter = converter or ContentConverter()
        self.deck_separator = deck_separator
        self.side_separator = side_separator

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve_note_type(self, card: CardRecord, note: NoteRecord) -> NoteTypeRecord:
        ntid = note.note_type_id
        if ntid in self.excluded_note_types:
            raise CardConversionError(
                f"Note type {ntid} could not be loaded: {self.excluded_note_types[ntid]}",
                card_id=card.id,
            )
        note_type = self.note_types.get(ntid)
        if note_type is None:
            raise CardConversionError(f"Note {note.id} uses unknown note type {ntid}", card_id=card.id)
        return note_type

    def _resolve_template(self, card: CardRecord, note_type: NoteTypeRecord) -> TemplateDef:
        # Cloze cards all share the single template; their ordinal is the cloze number
        if note_type.kind == NoteKind.CLOZE and note_type.templates:
            return note_type.templates[0]

        template = note_type.template_at(card.template_ordinal)
        if template is None:
            raise CardConversionError(
                f"Template ordinal {card.template_ordinal} is out of range for note type "
                f"'{note_type.name}' ({len(note_type.templates)} template(s))",
                card_id=card.id,
            )
        return template

    def _field_map(self, card: CardRecord, note: NoteRecord, note_type: NoteTypeRecord) -> Dict[str, str]:
        names = note_type.field_names
        if len(note.field_values) != len(names):
            raise CardConversionError(
                f"Note {note.id} has {len(note.field_values)} field value(s) but note type "
                f"'{note_type.name}' defines {len(names)}",
                card_id=card.id,
            )
        return dict(zip(names, note.field_values))

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _convert(self, card: CardRecord, html: str):
        try:
            return self.converter.convert(html)
        except HTMLConversionError as e:
            raise CardConversionError(
                f"Card content could not be converted: {e.message}",
                card_id=card.id,
                cause=e,
            )

    def materialize(self, card: CardRecord) -> FlashcardArtifact:
        """
        Build the artifact for one card.

        Raises:
            CardConversionError: If anything about this card cannot be resolved
        """
        note = self.notes.get(card.note_id)
        if note is None:
            raise CardConversionError(f"Card references missing note {card.note_id}", card_id=card.id)

        note_type = self._resolve_note_type(card, note)
        template = self._resolve_template(card, note_type)
        fields = self._field_map(card, note, note_type)

        deck = self.decks.get(card.deck_id)
        if deck is None:
            raise CardConversionError(f"Card references unknown deck {card.deck_id}", card_id=card.id)

        builtins = {
            "FrontSide": "",
            "Tags": " ".join(note.tags),
            "Deck": deck.name,
            "Subdeck": deck.name.split(self.deck_separator)[-1],
            "Type": note_type.name,
            "Card": template.name,
        }
        renderer = TemplateRenderer(fields, builtins)

        try:
            question_html = renderer.render(template.question_format)
            answer_html = renderer.render(template.answer_format)
        except CardConversionError as e:
            e.card_id = card.id
            raise

        question = self._convert(card, question_html)
        if not question.markdown:
            raise CardConversionError("The front of this card is blank", card_id=card.id)
        answer = self._convert(card, answer_html)

        body = question.markdown
        if answer.markdown:
            body = f"{body}\n\n{self.side_separator}\n\n{answer.markdown}"

        return FlashcardArtifact(
            card_id=card.id,
            note_id=note.id,
            deck_name=deck.name,
            note_type_name=note_type.name,
            template_name=template.name,
            fields=fields,
            tags=note.tags,
            generated_body=body,
            media_refs=question.media_files | answer.media_files,
        )

    def try_materialize(self, card: CardRecord) -> Union[FlashcardArtifact, CardFailure]:
        """Like materialize(), but a failure comes back as a CardFailure value."""
        try:
            return self.materialize(card)
        except AnkiVaultError as e:
            return CardFailure(card_id=card.id, error=e.message, error_type=type(e).__name__)
