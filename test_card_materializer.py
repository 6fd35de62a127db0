#!/usr/bin/env python3
"""
Test note type assembly and card materialization

Tests:
1. Note type assembly and ordinal invariants
2. Template rendering (fields, sections, filters, built-ins)
3. Artifact composition
4. Per-card failures
"""

import pytest

from ankivault.card_materializer import (
    CardMaterializer,
    TemplateRenderer,
    is_empty_field,
    parse_template,
)
from ankivault.errors import CardConversionError, SchemaMismatch
from ankivault.models import (
    CardFailure,
    CardRecord,
    DeckRecord,
    FieldDef,
    FlashcardArtifact,
    NoteKind,
    NoteRecord,
    NoteTypeRecord,
    TemplateDef,
)
from ankivault.note_types import NoteTypeAssembler
from ankivault.protobuf_config import build_schema_registry
from ankivault.schema_reader import FieldRow, NoteTypeRow, TemplateRow
from conftest import notetype_config, pb_varint, template_config


# ============================================================================
# Note type assembly
# ============================================================================

@pytest.fixture
def assembler():
    return NoteTypeAssembler(build_schema_registry())


def test_assemble_note_types(assembler):
    result = assembler.assemble(
        [NoteTypeRow(1, "Basic", notetype_config(0)), NoteTypeRow(2, "Cloze", notetype_config(1))],
        [FieldRow(1, 1, "Back"), FieldRow(1, 0, "Front"), FieldRow(2, 0, "Text")],
        [
            TemplateRow(1, 0, "Card 1", template_config("{{Front}}", "{{Back}}")),
            TemplateRow(2, 0, "Cloze", template_config("{{cloze:Text}}", "{{cloze:Text}}")),
        ],
    )
    basic = result.note_types[1]
    assert basic.kind == NoteKind.STANDARD
    assert basic.field_names == ["Front", "Back"]
    assert basic.template_at(0).question_format == "{{Front}}"
    assert basic.template_at(1) is None
    assert result.note_types[2].kind == NoteKind.CLOZE
    assert result.failures == {}


def test_field_ordinal_gap_is_fatal(assembler):
    with pytest.raises(SchemaMismatch):
        assembler.assemble(
            [NoteTypeRow(1, "Basic", b"")],
            [FieldRow(1, 0, "Front"), FieldRow(1, 2, "Back")],
            [TemplateRow(1, 0, "Card 1", template_config("{{Front}}", ""))],
        )


def test_note_type_without_fields_is_fatal(assembler):
    with pytest.raises(SchemaMismatch):
        assembler.assemble(
            [NoteTypeRow(1, "Empty", b"")],
            [],
            [TemplateRow(1, 0, "Card 1", template_config("x", ""))],
        )


def test_duplicate_template_ordinal_is_fatal(assembler):
    with pytest.raises(SchemaMismatch):
        assembler.assemble(
            [NoteTypeRow(1, "Basic", b"")],
            [FieldRow(1, 0, "Front")],
            [
                TemplateRow(1, 0, "Card 1", template_config("{{Front}}", "")),
                TemplateRow(1, 0, "Card 1 again", template_config("{{Front}}", "")),
            ],
        )


def test_bad_config_excludes_only_that_note_type(assembler):
    result = assembler.assemble(
        [NoteTypeRow(1, "Good", b""), NoteTypeRow(2, "Broken", b"")],
        [FieldRow(1, 0, "Front"), FieldRow(2, 0, "Front")],
        [
            TemplateRow(1, 0, "Card 1", template_config("{{Front}}", "")),
            TemplateRow(2, 0, "Card 1", pb_varint(1, 4)),
        ],
    )
    assert list(result.note_types) == [1]
    assert "Card 1" in result.failures[2]


def test_assembler_status_lines(capsys):
    NoteTypeAssembler(build_schema_registry(), verbose=True).assemble(
        [NoteTypeRow(1, "Basic", b"")],
        [FieldRow(1, 0, "Front"), FieldRow(99, 0, "Orphan")],
        [TemplateRow(1, 0, "Card 1", template_config("{{Front}}", ""))],
    )
    out = capsys.readouterr().out
    assert "[notetypes] Assembled 1 note type(s)" in out
    assert "[notetypes:warn]" in out


# ============================================================================
# Template rendering
# ============================================================================

def render(source, fields=None, builtins=None):
    return TemplateRenderer(fields or {}, builtins or {}).render(source)


def test_field_substitution():
    assert render("Q: {{Front}}", {"Front": "<b>x</b>"}) == "Q: <b>x</b>"


def test_field_name_with_spaces():
    assert render("{{ Back Extra }}", {"Back Extra": "more"}) == "more"


def test_section_non_empty_and_empty():
    source = "{{#Extra}}[{{Extra}}]{{/Extra}}"
    assert render(source, {"Extra": "yes"}) == "[yes]"
    assert render(source, {"Extra": ""}) == ""
    assert render(source, {"Extra": " &nbsp;<br> "}) == ""


def test_inverted_section():
    source = "{{^Extra}}nothing extra{{/Extra}}"
    assert render(source, {"Extra": ""}) == "nothing extra"
    assert render(source, {"Extra": "x"}) == ""


def test_nested_sections():
    source = "{{#A}}a{{#B}}b{{/B}}{{/A}}"
    assert render(source, {"A": "1", "B": "1"}) == "ab"
    assert render(source, {"A": "1", "B": ""}) == "a"
    assert render(source, {"A": "", "B": "1"}) == ""


def test_filters():
    fields = {"Text": "{{c1::x}}", "Back": "<i>four</i>"}
    assert render("{{cloze:Text}}", fields) == "{{c1::x}}"
    assert render("{{text:Back}}", fields) == "four"
    assert render("{{type:Back}}", fields) == ""
    assert render("{{type:cloze:Text}}", fields) == ""
    assert render("{{tts en_US:Back}}", fields) == "<i>four</i>"


def test_builtins():
    builtins = {"Deck": "Languages::Spanish", "Subdeck": "Spanish", "Tags": "a b", "FrontSide": ""}
    assert render("{{Deck}}|{{Subdeck}}|{{Tags}}|{{FrontSide}}", {}, builtins) == "Languages::Spanish|Spanish|a b|"


def test_answer_divider_removed():
    assert render("Q<hr id=answer>A") == "QA"
    assert render('Q<hr id="answer" />A') == "QA"


def test_unknown_field_raises():
    with pytest.raises(CardConversionError) as exc_info:
        render("{{Missing}}", {"Front": "x"})
    assert "Missing" in exc_info.value.message


def test_unbalanced_sections_raise():
    with pytest.raises(CardConversionError):
        parse_template("{{#A}}open")
    with pytest.raises(CardConversionError):
        parse_template("close{{/A}}")
    with pytest.raises(CardConversionError):
        parse_template("{{#A}}{{#B}}{{/A}}{{/B}}")


def test_is_empty_field():
    assert is_empty_field("")
    assert is_empty_field(" <br/> &nbsp; ")
    assert not is_empty_field("0")


def test_empty_div_wrappers_count_as_empty():
    assert is_empty_field("<div></div>")
    assert is_empty_field("<div><br></div> <DIV/>")
    assert not is_empty_field("<div>x</div>")
    assert not is_empty_field('<div class="x"></div>')

    source = "{{#Extra}}[{{Extra}}]{{/Extra}}{{^Extra}}none{{/Extra}}"
    assert render(source, {"Extra": "<div><br></div>"}) == "none"


# ============================================================================
# Materialization
# ============================================================================

BASIC = NoteTypeRecord(
    id=10,
    name="Basic (optional reversed card)",
    kind=NoteKind.STANDARD,
    fields=(FieldDef(0, "Front"), FieldDef(1, "Back"), FieldDef(2, "Add Reverse")),
    templates=(
        TemplateDef(0, "Card 1", "{{Front}}", "{{FrontSide}}<hr id=answer>{{Back}}"),
        TemplateDef(1, "Card 2", "{{#Add Reverse}}{{Back}}{{/Add Reverse}}",
                    "{{FrontSide}}<hr id=answer>{{Front}}"),
    ),
)

CLOZE = NoteTypeRecord(
    id=20,
    name="Cloze",
    kind=NoteKind.CLOZE,
    fields=(FieldDef(0, "Text"), FieldDef(1, "Back Extra")),
    templates=(TemplateDef(0, "Cloze", "{{cloze:Text}}", "{{cloze:Text}}<br>{{Back Extra}}"),),
)


@pytest.fixture
def materializer():
    notes = {
        1: NoteRecord(1, 10, ("<b>Gato</b>", "cat <img src='cat.jpg'>", ""), ("spanish",)),
        2: NoteRecord(2, 20, ("{{c1::Paris}} and {{c2::Rome::Italy}}", "capitals"), ()),
        3: NoteRecord(3, 10, ("only one",), ()),
        4: NoteRecord(4, 99, ("x",), ()),
        5: NoteRecord(5, 30, ("x",), ()),
    }
    return CardMaterializer(
        notes=notes,
        note_types={10: BASIC, 20: CLOZE},
        decks={1: DeckRecord(1, "Languages::Spanish")},
        excluded_note_types={30: "Template 'Card 1' config could not be decoded: Truncated varint"},
    )


def test_materialize_basic(materializer):
    artifact = materializer.materialize(CardRecord(100, 1, 1, 0))
    assert isinstance(artifact, FlashcardArtifact)
    assert artifact.generated_body == "**Gato**\n\n---\n\ncat ![[cat.jpg]]"
    assert artifact.deck_name == "Languages::Spanish"
    assert artifact.note_type_name == "Basic (optional reversed card)"
    assert artifact.template_name == "Card 1"
    assert artifact.fields["Front"] == "<b>Gato</b>"
    assert artifact.tags == ("spanish",)
    assert artifact.media_refs == frozenset({"cat.jpg"})


def test_cloze_cards_share_the_template(materializer):
    first = materializer.materialize(CardRecord(200, 2, 1, 0))
    second = materializer.materialize(CardRecord(201, 2, 1, 1))
    assert first.generated_body == "==Paris== and ==Rome==\n\n---\n\n==Paris== and ==Rome==\ncapitals"
    assert second.generated_body == first.generated_body
    assert "Italy" not in first.generated_body


def test_stale_reverse_card_with_empty_trigger_fails(materializer):
    result = materializer.try_materialize(CardRecord(101, 1, 1, 1))
    assert isinstance(result, CardFailure)
    assert result.card_id == 101
    assert "blank" in result.error


def test_template_ordinal_out_of_range(materializer):
    result = materializer.try_materialize(CardRecord(102, 1, 1, 5))
    assert isinstance(result, CardFailure)
    assert "out of range" in result.error


def test_field_count_mismatch(materializer):
    result = materializer.try_materialize(CardRecord(103, 3, 1, 0))
    assert isinstance(result, CardFailure)
    assert "field value" in result.error


def test_unknown_note_type(materializer):
    result = materializer.try_materialize(CardRecord(104, 4, 1, 0))
    assert isinstance(result, CardFailure)
    assert "unknown note type" in result.error


def test_excluded_note_type(materializer):
    result = materializer.try_materialize(CardRecord(105, 5, 1, 0))
    assert isinstance(result, CardFailure)
    assert "could not be loaded" in result.error


def test_missing_note_and_deck(materializer):
    assert "missing note" in materializer.try_materialize(CardRecord(106, 42, 1, 0)).error
    assert "unknown deck" in materializer.try_materialize(CardRecord(107, 1, 9, 0)).error


def test_unknown_field_failure_carries_card_id(materializer):
    broken = NoteTypeRecord(
        id=10, name="Broken", kind=NoteKind.STANDARD,
        fields=BASIC.fields,
        templates=(TemplateDef(0, "Card 1", "{{Nope}}", ""),),
    )
    materializer.note_types = {10: broken}
    with pytest.raises(CardConversionError) as exc_info:
        materializer.materialize(CardRecord(108, 1, 1, 0))
    assert exc_info.value.card_id == 108


def test_custom_side_separator():
    materializer = CardMaterializer(
        notes={1: NoteRecord(1, 10, ("Q", "A", ""), ())},
        note_types={10: BASIC},
        decks={1: DeckRecord(1, "Default")},
        side_separator="***",
    )
    assert materializer.materialize(CardRecord(1, 1, 1, 0)).generated_body == "Q\n\n***\n\nA"
