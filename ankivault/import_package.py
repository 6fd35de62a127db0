#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

import_package.py

Import a flashcard package end to end and produce an ImportReport.

Pipeline (sequential up to materialization):
1. Open the container and check for the compressed database
2. Decompress the database and read every row it needs
3. Decode the media manifest and the note type / template configs
4. Assemble note types
5. Materialize cards, optionally on a worker pool
6. Sort results by card id and aggregate the report

Setup failures (UnsupportedFormat, CorruptArchive, SchemaMismatch, a bad
media manifest) are raised straight to the caller. Per-card failures are
recorded in the report and never stop the batch.

Media bytes are not part of the report: after run(), iter_media() reads
the referenced blobs from the still-open package one at a time.

Usage:
    from ankivault.import_package import ImportCoordinator

    with ImportCoordinator() as coordinator:
        report = coordinator.run_path(Path("Spanish.apkg"))
        for artifact in report.artifacts:
            write_note(artifact.to_document())
        for name, data in coordinator.iter_media(report):
            write_media(name, data)
        print(report.summary())
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

from ankivault.card_materializer import CardMaterializer
from ankivault.config_utils import ImportSettings
from ankivault.errors import AnkiVaultError
from ankivault.icons import ERROR, INFO, SUCCESS, WARNING
from ankivault.media_manifest import decode_media_manifest
from ankivault.models import (
    CardFailure,
    CardRecord,
    FlashcardArtifact,
    ImportReport,
    MediaManifest,
)
from ankivault.note_types import NoteTypeAssembler
from ankivault.package_reader import (
    DATABASE_ENTRY,
    MEDIA_ENTRY,
    ArchiveHandle,
    decompress_database,
    decompress_media,
    open_package,
)
from ankivault.protobuf_config import build_schema_registry
from ankivault.schema_reader import SchemaReader


CardResult = Union[FlashcardArtifact, CardFailure]


class ImportCoordinator:
    """
    Runs one import and keeps the package open for lazy media reads.

    cancel() may be called from any thread. Cards already being converted
    finish; cards not yet started are skipped, so the report holds a
    shorter but fully consistent artifact list.
    """

    def __init__(self, settings: Optional[ImportSettings] = None):
        self.settings = settings or ImportSettings()
        self._cancel_event = threading.Event()
        self._handle: Optional[ArchiveHandle] = None
        self._manifest = MediaManifest()

    def __enter__(self) -> "ImportCoordinator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run_path(self, path: Path) -> ImportReport:
        return self.run(Path(path).read_bytes())

    def run(self, data: bytes) -> ImportReport:
        """
        Import a package held in memory.

        Args:
            data: Raw bytes of the package file

        Returns:
            ImportReport

        Raises:
            UnsupportedFormat, CorruptArchive, SchemaMismatch,
            ProtobufDecodeError: Fatal setup errors; nothing is imported
        """
        verbose = self.settings.verbose
        self.close()

        handle = open_package(data, verbose=verbose)
        try:
            raw_db = decompress_database(handle.extract(DATABASE_ENTRY))

            with SchemaReader.from_bytes(raw_db, deck_separator=self.settings.deck_separator) as reader:
                decks = reader.read_decks()
                note_type_rows = reader.read_note_types()
                field_rows = reader.read_fields()
                template_rows = reader.read_templates()
                notes = reader.read_notes()
                cards = reader.read_cards()

            if verbose:
                print(f"[db] {len(decks)} deck(s), {len(note_type_rows)} note type(s), "
                      f"{len(notes)} note(s), {len(cards)} card(s)")

            registry = build_schema_registry()

            manifest = decode_media_manifest(handle.extract_optional(MEDIA_ENTRY), registry)
            if verbose:
                print(f"[media] {INFO} Manifest lists {len(manifest)} file(s)")

            archived = set(handle.media_keys())
            unbacked = frozenset(e.name for e in manifest.entries if e.key not in archived)
            if unbacked and verbose:
                print(f"[media:warn] {WARNING} {len(unbacked)} manifest file(s) have no "
                      f"package entry: {', '.join(sorted(unbacked))}")

            assembled = NoteTypeAssembler(registry, verbose=verbose).assemble(
                note_type_rows, field_rows, template_rows
            )

            materializer = CardMaterializer(
                notes={note.id: note for note in notes},
                note_types=assembled.note_types,
                decks={deck.id: deck for deck in decks},
                excluded_note_types=assembled.failures,
                deck_separator=self.settings.deck_separator,
                side_separator=self.settings.side_separator,
            )
            results = self._materialize_all(materializer, cards)

        except Exception:
            handle.close()
            raise

        self._handle = handle
        self._manifest = manifest

        report = self._build_report(results, manifest, unbacked, len(cards))
        if verbose:
            self._print_summary(report)
        return report

    def _materialize_all(self, materializer: CardMaterializer, cards: Sequence[CardRecord]) -> List[CardResult]:
        if self.settings.max_workers == 1:
            results = []
            for card in cards:
                if self._cancel_event.is_set():
                    break
                results.append(materializer.try_materialize(card))
            return results

        def work(card: CardRecord) -> Optional[CardResult]:
            if self._cancel_event.is_set():
                return None
            return materializer.try_materialize(card)

        results = []
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures = [executor.submit(work, card) for card in cards]
            for future in as_completed(futures):
                result = future.result()
                if result is not None:
                    results.append(result)
        return results

    @staticmethod
    def _build_report(results: List[CardResult], manifest: MediaManifest,
                      unbacked: FrozenSet[str], card_count: int) -> ImportReport:
        artifacts = sorted(
            (r for r in results if isinstance(r, FlashcardArtifact)),
            key=lambda a: a.card_id,
        )
        failures = sorted(
            (r for r in results if isinstance(r, CardFailure)),
            key=lambda f: f.card_id,
        )

        referenced = set()
        present = {name for name in manifest.filenames if name not in unbacked}
        for artifact in artifacts:
            referenced.update(artifact.media_refs)

        return ImportReport(
            artifacts=tuple(artifacts),
            failures=tuple(failures),
            media_files=tuple(sorted(name for name in referenced if name in present)),
            missing_media=tuple(sorted(name for name in referenced if name not in present)),
            cancelled=len(results) < card_count,
            card_count=card_count,
        )

    @staticmethod
    def _print_summary(report: ImportReport) -> None:
        print(f"[import] {SUCCESS} Imported {report.succeeded} of {report.total} card(s)")
        if report.failed:
            print(f"[import:error] {ERROR} {report.failed} card(s) failed")
            for failure in report.failures:
                print(f"  - card {failure.card_id}: {failure.error}")
        if report.missing_media:
            print(f"[import:warn] {WARNING} {len(report.missing_media)} referenced media file(s) "
                  f"not in package: {', '.join(report.missing_media)}")
        if report.cancelled:
            print(f"[import:warn] {WARNING} Import was cancelled")

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def iter_media(self, report: ImportReport) -> Iterator[Tuple[str, bytes]]:
        """
        Yield (basename, bytes) for every media file the report references.

        Blobs are read from the package one at a time, on demand, and
        returned with their zstd frame removed.

        Raises:
            AnkiVaultError: If no package is open (run() not called, or closed)
            CorruptArchive: If a manifest entry's blob cannot be read or
                decompressed
        """
        if self._handle is None:
            raise AnkiVaultError(
                message="No package is open",
                suggestion="Call run() before reading media, and read it before close()",
            )

        for name in report.media_files:
            key = self._manifest.key_for(name)
            if key is None:
                continue
            yield name, decompress_media(self._handle.extract(key), key)
