#!/usr/bin/env python3
"""
# ankivault
# Licensed under the MIT License. See LICENSE in the project root.

errors.py

Error taxonomy for the package import pipeline.

Every error carries a human message, an optional suggestion for the user,
and a context mapping that ends up in the rendered text. Pipeline-setup
errors (UnsupportedFormat, CorruptArchive, SchemaMismatch, and
ProtobufDecodeError on the media manifest) stop the import; per-card
errors (CardConversionError) are recorded in the report instead.

Usage:
    from ankivault.errors import CorruptArchive

    raise CorruptArchive(
        message="Package is not a valid ZIP container",
        suggestion="Re-export the deck from the desktop application",
        context={"size": len(data)},
        cause=e,
    )
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AnkiVaultError(Exception):
    """Base class for every error raised by ankivault."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.context = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        lines = [self.message]
        if self.suggestion:
            lines.append(f"  Suggestion: {self.suggestion}")
        for key, value in self.context.items():
            lines.append(f"  {key}: {value}")
        if self.cause is not None:
            lines.append(f"  Caused by: {type(self.cause).__name__}: {self.cause}")
        return "\n".join(lines)


# ============================================================================
# Fatal (pipeline setup)
# ============================================================================

class UnsupportedFormat(AnkiVaultError):
    """Package lacks the compressed database or uses a legacy schema."""
    pass


class CorruptArchive(AnkiVaultError):
    """Container, entry or compression frame is unreadable."""
    pass


class SchemaMismatch(AnkiVaultError):
    """Expected table/column is absent or an ordinal invariant is violated."""
    pass


class ProtobufDecodeError(AnkiVaultError):
    """Structurally invalid protobuf bytes (bad wire type, truncation)."""
    pass


class ConfigurationError(AnkiVaultError):
    """Invalid ankivault settings."""
    pass


# ============================================================================
# Per-card (recorded, never fatal)
# ============================================================================

class HTMLConversionError(AnkiVaultError):
    """Error during HTML to Markdown conversion"""
    pass


class CardConversionError(AnkiVaultError):
    """A single card could not be resolved, rendered or converted."""

    def __init__(self, message: str, card_id: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.card_id = card_id
