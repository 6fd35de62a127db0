#!/usr/bin/env python3
"""
Shared fixtures: build flashcard packages in memory.

PackageBuilder creates a modern-schema SQLite database with the stdlib
sqlite3 module, serializes it, frames it with zstd and zips it together
with a protobuf media manifest and numbered media entries, which is the
layout the desktop exporter produces.
"""

import io
import sqlite3
import zipfile

import pytest
import zstd


# ============================================================================
# Protobuf encoding helpers
# ============================================================================

def encode_varint(value):
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def pb_varint(field_num, value):
    return encode_varint(field_num << 3) + encode_varint(value)


def pb_bytes(field_num, data):
    return encode_varint((field_num << 3) | 2) + encode_varint(len(data)) + data


def pb_string(field_num, text):
    return pb_bytes(field_num, text.encode("utf-8"))


def template_config(question_format, answer_format):
    return pb_string(1, question_format) + pb_string(2, answer_format)


def notetype_config(kind=0):
    # proto3 omits default values, so a standard note type has an empty kind
    return pb_varint(1, kind) if kind else b""


def media_manifest(entries):
    """entries: list of (name, data)"""
    return b"".join(
        pb_bytes(1, pb_string(1, name) + pb_varint(2, len(data)) + pb_bytes(3, b"\x01" * 20))
        for name, data in entries
    )


# ============================================================================
# Database schema (columns the exporter writes; ankivault reads a subset)
# ============================================================================

MODERN_SCHEMA = """
CREATE TABLE col (
    id integer PRIMARY KEY,
    crt integer NOT NULL DEFAULT 0,
    ver integer NOT NULL DEFAULT 18,
    models text NOT NULL DEFAULT ''
);
CREATE TABLE notetypes (
    id integer PRIMARY KEY,
    name text NOT NULL,
    mtime_secs integer NOT NULL DEFAULT 0,
    usn integer NOT NULL DEFAULT 0,
    config blob NOT NULL
);
CREATE TABLE fields (
    ntid integer NOT NULL,
    ord integer NOT NULL,
    name text NOT NULL,
    config blob NOT NULL DEFAULT x'',
    PRIMARY KEY (ntid, ord)
);
CREATE TABLE templates (
    ntid integer NOT NULL,
    ord integer NOT NULL,
    name text NOT NULL,
    mtime_secs integer NOT NULL DEFAULT 0,
    usn integer NOT NULL DEFAULT 0,
    config blob NOT NULL,
    PRIMARY KEY (ntid, ord)
);
CREATE TABLE notes (
    id integer PRIMARY KEY,
    guid text NOT NULL DEFAULT '',
    mid integer NOT NULL,
    mod integer NOT NULL DEFAULT 0,
    usn integer NOT NULL DEFAULT 0,
    tags text NOT NULL DEFAULT '',
    flds text NOT NULL,
    sfld text NOT NULL DEFAULT '',
    csum integer NOT NULL DEFAULT 0,
    flags integer NOT NULL DEFAULT 0,
    data text NOT NULL DEFAULT ''
);
CREATE TABLE cards (
    id integer PRIMARY KEY,
    nid integer NOT NULL,
    did integer NOT NULL,
    ord integer NOT NULL,
    mod integer NOT NULL DEFAULT 0,
    type integer NOT NULL DEFAULT 0,
    queue integer NOT NULL DEFAULT 0,
    due integer NOT NULL DEFAULT 0
);
CREATE TABLE decks (
    id integer PRIMARY KEY,
    name text NOT NULL,
    mtime_secs integer NOT NULL DEFAULT 0,
    common blob NOT NULL DEFAULT x'',
    kind blob NOT NULL DEFAULT x''
);
INSERT INTO col (id) VALUES (1);
"""


class PackageBuilder:
    """Collects decks, note types, notes, cards and media, then builds a package."""

    def __init__(self):
        self.decks = [(1, "Default")]
        self.note_types = []   # (id, name, config bytes)
        self.fields = []       # (ntid, ord, name)
        self.templates = []    # (ntid, ord, name, config bytes)
        self.notes = []        # (id, mid, tags, flds)
        self.cards = []        # (id, nid, did, ord)
        self.media = []        # (name, data)
        self.extra_entries = {}
        self.manifest_override = None
        self.omitted_entries = set()

    def add_deck(self, deck_id, name):
        self.decks.append((deck_id, name))
        return self

    def add_note_type(self, ntid, name, fields, templates, kind=0, config=None):
        """templates: list of (name, question_format, answer_format)"""
        self.note_types.append((ntid, name, notetype_config(kind) if config is None else config))
        for ordinal, field_name in enumerate(fields):
            self.fields.append((ntid, ordinal, field_name))
        for ordinal, (template_name, qfmt, afmt) in enumerate(templates):
            self.templates.append((ntid, ordinal, template_name, template_config(qfmt, afmt)))
        return self

    def add_note(self, note_id, ntid, values, tags=""):
        self.notes.append((note_id, ntid, tags, "\x1f".join(values)))
        return self

    def add_card(self, card_id, note_id, deck_id, ordinal=0):
        self.cards.append((card_id, note_id, deck_id, ordinal))
        return self

    def add_media(self, name, data):
        self.media.append((name, data))
        return self

    def database_bytes(self):
        conn = sqlite3.connect(":memory:")
        try:
            conn.executescript(MODERN_SCHEMA)
            conn.executemany("INSERT INTO decks (id, name) VALUES (?, ?)", self.decks)
            conn.executemany("INSERT INTO notetypes (id, name, config) VALUES (?, ?, ?)", self.note_types)
            conn.executemany("INSERT INTO fields (ntid, ord, name) VALUES (?, ?, ?)", self.fields)
            conn.executemany(
                "INSERT INTO templates (ntid, ord, name, config) VALUES (?, ?, ?, ?)", self.templates
            )
            conn.executemany("INSERT INTO notes (id, mid, tags, flds) VALUES (?, ?, ?, ?)", self.notes)
            conn.executemany("INSERT INTO cards (id, nid, did, ord) VALUES (?, ?, ?, ?)", self.cards)
            conn.commit()
            return conn.serialize()
        finally:
            conn.close()

    def build(self, include_database=True, compress_manifest=True, compress_media=False):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
            if include_database:
                zf.writestr("collection.anki21b", zstd.compress(self.database_bytes()))

            if self.manifest_override is not None:
                manifest = self.manifest_override
            else:
                manifest = media_manifest(self.media)
                if manifest and compress_manifest:
                    manifest = zstd.compress(manifest)
            zf.writestr("media", manifest)

            for index, (_name, data) in enumerate(self.media):
                if str(index) in self.omitted_entries:
                    continue
                if compress_media:
                    data = zstd.compress(data)
                zf.writestr(str(index), data)

            for name, data in self.extra_entries.items():
                zf.writestr(name, data)
        return buf.getvalue()


# ============================================================================
# Sample collection
# ============================================================================

BASIC_ANSWER = "{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}"

PHOTO_BYTES = b"\x89PNG\r\n\x1a\nfake occlusion image"


def populate_sample(builder):
    """
    3 decks, 7 note types, 7 notes, 9 cards, 1 media file.

    Card ids 101-109.
    """
    builder.add_deck(2, "Languages")
    builder.add_deck(3, "Languages\x1fSpanish")

    builder.add_note_type(1000, "Basic", ["Front", "Back"], [
        ("Card 1", "{{Front}}", BASIC_ANSWER),
    ])
    builder.add_note_type(2000, "Basic (and reversed card)", ["Front", "Back"], [
        ("Card 1", "{{Front}}", BASIC_ANSWER),
        ("Card 2", "{{Back}}", "{{FrontSide}}\n\n<hr id=answer>\n\n{{Front}}"),
    ])
    builder.add_note_type(3000, "Basic (optional reversed card)", ["Front", "Back", "Add Reverse"], [
        ("Card 1", "{{Front}}", BASIC_ANSWER),
        ("Card 2", "{{#Add Reverse}}{{Back}}{{/Add Reverse}}",
         "{{FrontSide}}\n\n<hr id=answer>\n\n{{Front}}"),
    ])
    builder.add_note_type(4000, "Basic (type in the answer)", ["Front", "Back"], [
        ("Card 1", "{{Front}}\n\n{{type:Back}}", "{{Front}}\n\n<hr id=answer>\n\n{{type:Back}}<br>{{Back}}"),
    ])
    builder.add_note_type(5000, "Cloze", ["Text", "Back Extra"], [
        ("Cloze", "{{cloze:Text}}", "{{cloze:Text}}<br>\n{{Back Extra}}"),
    ], kind=1)
    builder.add_note_type(6000, "Image Occlusion", ["Occlusion", "Image", "Header", "Back Extra"], [
        ("Image Occlusion",
         "{{#Header}}<div>{{Header}}</div>{{/Header}}<div>{{cloze:Occlusion}}</div><div>{{Image}}</div>",
         "{{#Header}}<div>{{Header}}</div>{{/Header}}<div>{{cloze:Occlusion}}</div>"
         "<div>{{Image}}</div>{{#Back Extra}}<div>{{Back Extra}}</div>{{/Back Extra}}"),
    ], kind=1)
    # Extra config field 99 stands in for anything a newer exporter adds
    builder.add_note_type(7000, "Vocabulary", ["Word", "Meaning", "Example"], [
        ("Recognition",
         "<div class=word>{{Word}}</div>",
         "{{FrontSide}}<hr id=answer>{{Meaning}}{{#Example}}<br><i>{{Example}}</i>{{/Example}}"),
    ], config=pb_string(99, "future option"))

    builder.add_note(1, 1000, ["What is the capital of <b>France</b>?", "Paris"], tags="geography europe")
    builder.add_note(2, 2000, ["Hund", "dog"], tags="german")
    builder.add_note(3, 3000, ["<b>Gato</b>", "cat", "y"], tags="spanish")
    builder.add_note(4, 4000, ["2 + 2 =", "4"])
    builder.add_note(5, 5000, ["The capital of {{c1::France::country}} is Paris.", "Since 987"])
    builder.add_note(6, 6000, [
        "{{c1::image-occlusion:rect:left=.1:top=.2:width=.3:height=.4:oi=1}}",
        '<img src="occlusion%20diagram.png">',
        "Heart anatomy",
        "",
    ])
    builder.add_note(7, 7000, ["perro", "dog", "El perro ladra."], tags="spanish")

    builder.add_card(101, 1, 1, 0)
    builder.add_card(102, 2, 2, 0)
    builder.add_card(103, 2, 2, 1)
    builder.add_card(104, 3, 3, 0)
    builder.add_card(105, 3, 3, 1)
    builder.add_card(106, 4, 1, 0)
    builder.add_card(107, 5, 1, 0)
    builder.add_card(108, 6, 1, 0)
    builder.add_card(109, 7, 3, 0)

    builder.add_media("occlusion diagram.png", PHOTO_BYTES)
    return builder


@pytest.fixture
def builder():
    return PackageBuilder()


@pytest.fixture
def sample_builder():
    return populate_sample(PackageBuilder())


@pytest.fixture
def sample_package(sample_builder):
    return sample_builder.build()
