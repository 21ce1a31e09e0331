from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

from .models import EditLocation

logger = logging.getLogger(__name__)


def uri_to_path(uri: str) -> str:
    """Convert a `file://` URI to a local path; plain paths pass through."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return uri
    return unquote(parsed.path)


class Workspace(ABC):
    """Line-addressed text containers the orchestrator edits and persists."""

    @abstractmethod
    def line(self, path: str, number: int) -> str:
        """Return the 1-based line `number` of `path`."""
        raise NotImplementedError

    @abstractmethod
    def replace(self, location: EditLocation, lines: Sequence[str]) -> None:
        """Replace the inclusive line span of `location` with `lines`."""
        raise NotImplementedError

    @abstractmethod
    def save(self, path: str) -> None:
        """Persist `path` if it was changed."""
        raise NotImplementedError


@dataclass(slots=True)
class TextBuffer:
    path: str
    lines: list[str] = field(default_factory=list)
    trailing_newline: bool = True
    modified: bool = False

    @classmethod
    def load(cls, path: str) -> TextBuffer:
        text = Path(path).read_text(encoding="utf-8")
        trailing_newline = text.endswith("\n") or not text
        lines = text.split("\n") if text else []
        if text and trailing_newline:
            lines.pop()
        return cls(path=path, lines=lines, trailing_newline=trailing_newline)

    def render(self) -> str:
        text = "\n".join(self.lines)
        if self.trailing_newline and self.lines:
            text += "\n"
        return text


class FileWorkspace(Workspace):
    """Workspace backed by files on disk.

    Files are read once and edited in memory; `save()` writes a buffer back
    only when it was modified.
    """

    def __init__(self) -> None:
        self._buffers: dict[str, TextBuffer] = {}

    def buffer(self, path: str) -> TextBuffer:
        path = uri_to_path(path)
        buffer = self._buffers.get(path)
        if buffer is None:
            buffer = TextBuffer.load(path)
            self._buffers[path] = buffer
        return buffer

    def line(self, path: str, number: int) -> str:
        lines = self.buffer(path).lines
        if number < 1 or number > len(lines):
            raise IndexError(f"line {number} out of range for {path} ({len(lines)} lines)")
        return lines[number - 1]

    def line_count(self, path: str) -> int:
        return len(self.buffer(path).lines)

    def replace(self, location: EditLocation, lines: Sequence[str]) -> None:
        buffer = self.buffer(location.path)
        start = location.start_line - 1
        end = location.end_line
        if start < 0 or end > len(buffer.lines) or start >= end:
            raise IndexError(
                f"span {location.start_line}-{location.end_line} out of range "
                f"for {location.path} ({len(buffer.lines)} lines)"
            )
        buffer.lines[start:end] = list(lines)
        buffer.modified = True

    def is_modified(self, path: str) -> bool:
        buffer = self._buffers.get(uri_to_path(path))
        return buffer is not None and buffer.modified

    def modified_paths(self) -> list[str]:
        return [path for path, buffer in self._buffers.items() if buffer.modified]

    def save(self, path: str) -> None:
        buffer = self._buffers.get(uri_to_path(path))
        if buffer is None or not buffer.modified:
            return
        Path(buffer.path).write_text(buffer.render(), encoding="utf-8")
        buffer.modified = False
        logger.debug("saved %s", buffer.path)
