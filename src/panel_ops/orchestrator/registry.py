"""Handler registry: operation type to handler command."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from panel_ops.orchestrator.errors import (
    HandlerUnavailableError,
    NoHandlerError,
    RegistryConfigError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HandlerEntry:
    """One registry mapping."""

    operation_type: str
    command: tuple[str, ...]

    @property
    def executable(self) -> str:
        return self.command[0]


@dataclass(frozen=True, slots=True)
class HandlerCheck:
    """Availability of one registered handler."""

    operation_type: str
    executable: str
    available: bool


class HandlerRegistry:
    """Immutable lookup of handler commands, loaded once at process start."""

    def __init__(self, entries: Iterable[HandlerEntry] = ()) -> None:
        mapping: dict[str, HandlerEntry] = {}
        for entry in entries:
            if entry.operation_type in mapping:
                raise RegistryConfigError(
                    f"Duplicate handler mapping for {entry.operation_type!r}",
                )
            mapping[entry.operation_type] = entry
        self._entries: Mapping[str, HandlerEntry] = MappingProxyType(mapping)

    @classmethod
    def load(cls, path: Path) -> HandlerRegistry:
        """Parse a ``type=command`` registry file."""

        try:
            text = path.read_text("utf-8")
        except OSError as error:
            raise RegistryConfigError(f"Cannot read handler registry {path}: {error}") from error
        registry = cls(parse_lines(text.splitlines(), origin=str(path)))
        logger.info("Loaded %d handler mappings from %s", len(registry), path)
        return registry

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, operation_type: object) -> bool:
        return operation_type in self._entries

    @property
    def entries(self) -> Mapping[str, HandlerEntry]:
        return self._entries

    def get(self, operation_type: str) -> HandlerEntry | None:
        return self._entries.get(operation_type)

    def resolve(self, operation_type: str) -> HandlerEntry:
        """Return the runnable entry for a type or raise a terminal lookup error."""

        entry = self._entries.get(operation_type)
        if entry is None:
            raise NoHandlerError(operation_type)
        if not is_runnable(entry.executable):
            raise HandlerUnavailableError(operation_type, entry.executable)
        return entry

    def check(self) -> list[HandlerCheck]:
        return [
            HandlerCheck(
                operation_type=operation_type,
                executable=entry.executable,
                available=is_runnable(entry.executable),
            )
            for operation_type, entry in sorted(self._entries.items())
        ]


def parse_lines(lines: Iterable[str], *, origin: str = "<registry>") -> list[HandlerEntry]:
    """Parse registry lines; blank lines and ``#`` comments are skipped."""

    entries: list[HandlerEntry] = []
    seen: set[str] = set()
    for line_no, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise RegistryConfigError(f"{origin}:{line_no}: expected 'type=command', got {raw!r}")
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if not key:
            raise RegistryConfigError(f"{origin}:{line_no}: empty operation type")
        if not value:
            raise RegistryConfigError(f"{origin}:{line_no}: empty command for {key!r}")
        if key in seen:
            raise RegistryConfigError(f"{origin}:{line_no}: duplicate mapping for {key!r}")
        try:
            command = tuple(shlex.split(value))
        except ValueError as error:
            raise RegistryConfigError(f"{origin}:{line_no}: {error}") from error
        if not command:
            raise RegistryConfigError(f"{origin}:{line_no}: empty command for {key!r}")
        seen.add(key)
        entries.append(HandlerEntry(operation_type=key, command=command))
    return entries


def is_runnable(executable: str) -> bool:
    """True when the path (or bare name on PATH) points at an executable file."""

    if os.sep not in executable and (os.altsep is None or os.altsep not in executable):
        return shutil.which(executable) is not None
    path = Path(executable)
    return path.is_file() and os.access(path, os.X_OK)
