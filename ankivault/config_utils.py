#!/usr/bin/env python3
"""
config_utils.py - ankivault import settings

Settings are read from an optional YAML file (ankivault.yaml by default):

    max_workers: 4          # card materialization pool size (1 = inline)
    deck_separator: "::"    # joins hierarchical deck names
    side_separator: "---"   # line between question and answer in the body
    verbose: true           # print [apkg]/[import] status lines

Usage:
    from ankivault.config_utils import load_settings

    settings = load_settings(Path("ankivault.yaml"))
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ankivault.errors import ConfigurationError


DEFAULT_SETTINGS_FILE = "ankivault.yaml"


@dataclass(frozen=True)
class ImportSettings:
    max_workers: int = 4
    deck_separator: str = "::"
    side_separator: str = "---"
    verbose: bool = True

    def __post_init__(self):
        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int):
            raise ConfigurationError(
                message="max_workers must be an integer",
                context={"max_workers": self.max_workers},
            )
        if self.max_workers < 1:
            raise ConfigurationError(
                message="max_workers must be at least 1",
                suggestion="Use 1 to convert cards in the calling thread",
                context={"max_workers": self.max_workers},
            )
        for name in ("deck_separator", "side_separator"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigurationError(
                    message=f"{name} must be a non-empty string",
                    context={name: value},
                )
        if not isinstance(self.verbose, bool):
            raise ConfigurationError(
                message="verbose must be true or false",
                context={"verbose": self.verbose},
            )

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ImportSettings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                message=f"Unknown setting(s): {', '.join(unknown)}",
                suggestion=f"Valid settings are: {', '.join(sorted(known))}",
            )
        return cls(**data)


def load_settings(path: Optional[Path] = None) -> ImportSettings:
    """
    Load import settings from a YAML file.

    Args:
        path: Settings file (default: ./ankivault.yaml). A missing file
            yields the default settings.

    Returns:
        ImportSettings

    Raises:
        ConfigurationError: If the file is not valid YAML or holds invalid values
    """
    settings_path = Path(path) if path is not None else Path.cwd() / DEFAULT_SETTINGS_FILE

    if not settings_path.is_file():
        return ImportSettings()

    try:
        data = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(
            message="Settings file is not valid YAML",
            context={"path": str(settings_path)},
            cause=e,
        )

    if data is None:
        return ImportSettings()
    if not isinstance(data, dict):
        raise ConfigurationError(
            message="Settings file must contain a mapping",
            context={"path": str(settings_path)},
        )

    return ImportSettings.from_mapping(data)
