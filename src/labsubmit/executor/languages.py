"""
Language registry.

Maps the identifiers used by assignments and the editor (``python``,
``cpp`` ...) to the runtime name and version the execution backend
understands.  A registry is a snapshot: it is built once at process start
and never mutated afterwards, so it can be shared between concurrent
requests without locking.  Supporting a new language means shipping a new
snapshot, either by editing :data:`BUILTIN_LANGUAGES` or by pointing
``LABSUBMIT_LANGUAGES_FILE`` at a JSON file of the form::

    [{"id": "python", "runtime_name": "python", "runtime_version": "3.10.0",
      "display_name": "Python", "file_name": "main.py"}]
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, List, Optional

from ..errors import UnsupportedLanguage


@dataclass(frozen=True)
class LanguageSpec:
    """A language as accepted by the execution backend."""

    id: str
    runtime_name: str
    runtime_version: str
    display_name: str = ""
    file_name: str = "main"


BUILTIN_LANGUAGES = (
    LanguageSpec("python", "python", "3.10.0", "Python", "main.py"),
    LanguageSpec("javascript", "javascript", "18.15.0", "JavaScript", "main.js"),
    LanguageSpec("cpp", "cpp", "10.2.0", "C++", "main.cpp"),
    LanguageSpec("java", "java", "15.0.2", "Java", "Main.java"),
    LanguageSpec("c", "c", "10.2.0", "C", "main.c"),
    LanguageSpec("asm", "nasm", "2.15.05", "Assembly", "main.asm"),
    LanguageSpec("bash", "bash", "5.2.0", "Bash", "main.sh"),
    LanguageSpec("sql", "sqlite3", "3.36.0", "SQL", "main.sql"),
)


class LanguageRegistry:
    """Read-only lookup table from language id to :class:`LanguageSpec`."""

    def __init__(self, specs: Iterable[LanguageSpec]) -> None:
        table = {}
        for spec in specs:
            key = spec.id.strip().lower()
            if not key:
                raise ValueError("Language id must not be empty")
            if key in table:
                raise ValueError(f"Duplicate language id: {spec.id}")
            table[key] = spec
        self._table = MappingProxyType(table)

    @classmethod
    def default(cls) -> "LanguageRegistry":
        return cls(BUILTIN_LANGUAGES)

    @classmethod
    def from_file(cls, path: str | Path) -> "LanguageRegistry":
        """Load a snapshot from a JSON array of language objects."""
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(entries, list):
            raise ValueError(f"Language file {path} must contain a JSON array")
        specs = []
        for entry in entries:
            try:
                specs.append(
                    LanguageSpec(
                        id=entry["id"],
                        runtime_name=entry["runtime_name"],
                        runtime_version=entry["runtime_version"],
                        display_name=entry.get("display_name", entry["id"]),
                        file_name=entry.get("file_name", "main"),
                    )
                )
            except (KeyError, TypeError, AttributeError):
                raise ValueError(f"Invalid language entry in {path}: {entry!r}")
        return cls(specs)

    def resolve(self, language_id: Optional[str]) -> LanguageSpec:
        """Return the spec for ``language_id`` or raise :class:`UnsupportedLanguage`."""
        spec = self.get(language_id)
        if spec is None:
            raise UnsupportedLanguage(language_id)
        return spec

    def get(self, language_id: Optional[str]) -> Optional[LanguageSpec]:
        if not isinstance(language_id, str):
            return None
        return self._table.get(language_id.strip().lower())

    def ids(self) -> List[str]:
        return list(self._table)

    def __contains__(self, language_id: object) -> bool:
        return isinstance(language_id, str) and self.get(language_id) is not None

    def __iter__(self) -> Iterator[LanguageSpec]:
        return iter(self._table.values())

    def __len__(self) -> int:
        return len(self._table)
