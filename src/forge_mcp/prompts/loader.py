"""Prompt template loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import PromptTemplates


class PromptLoadError(RuntimeError):
    """Raised when one or more prompt files cannot be parsed."""


class PromptLoader:
    """Loads prompt template overrides from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        """Return the normalized search paths."""

        return list(self._search_paths)

    def load(self) -> PromptTemplates:
        """Merge every override file over the built-in templates.

        Files are read in search-path order, so later paths win on conflicting keys.
        """

        overrides: dict[str, Any] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue
                if not isinstance(document, dict):
                    errors.append(f"Prompt file {path} must contain a mapping")
                    continue

                try:
                    PromptTemplates.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Prompt validation error in {path}: {exc}")
                    continue

                overrides.update(document)

        if errors:
            raise PromptLoadError("; ".join(errors))

        return PromptTemplates.model_validate(overrides)


__all__ = ["PromptLoadError", "PromptLoader"]
