"""File-access collaborator used by the conversion core."""

from __future__ import annotations

import base64
import os
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Protocol


class HostError(OSError):
    """Raised when the host cannot satisfy a file or directory request."""


@dataclass
class FileEntry:
    relative_path: str
    is_dir: bool


class Host(Protocol):
    def read_text_file(self, relative_path: str) -> str: ...

    def read_binary_file_base64(self, relative_path: str) -> str: ...

    def write_text_file(self, relative_path: str, contents: str) -> None: ...

    def get_directory_structure(self) -> List[FileEntry]: ...

    def get_system_time(self) -> float: ...

    def get_last_modification_time(self, relative_path: str) -> float: ...


class LocalHost:
    """Serve host requests from a directory on the local filesystem.

    Every path is interpreted relative to ``root`` using forward slashes.
    Requests that would leave ``root`` are refused with :class:`HostError`.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, relative_path: str) -> Path:
        candidate = (self.root / PurePosixPath(relative_path)).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise HostError(f"Path {relative_path} is outside of {self.root}") from None
        return candidate

    def read_text_file(self, relative_path: str) -> str:
        path = self._resolve(relative_path)
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise HostError(f"Unable to read {relative_path}: {exc}") from exc

    def read_binary_file_base64(self, relative_path: str) -> str:
        path = self._resolve(relative_path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise HostError(f"Unable to read {relative_path}: {exc}") from exc
        return base64.b64encode(data).decode("ascii")

    def write_text_file(self, relative_path: str, contents: str) -> None:
        path = self._resolve(relative_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(contents, encoding="utf-8", newline="\n")
        except OSError as exc:
            raise HostError(f"Unable to write {relative_path}: {exc}") from exc

    def get_directory_structure(self) -> List[FileEntry]:
        if not self.root.is_dir():
            raise HostError(f"Root directory not found: {self.root}")
        entries: List[FileEntry] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            base = Path(dirpath)
            for name in dirnames:
                rel = (base / name).relative_to(self.root).as_posix()
                entries.append(FileEntry(relative_path=rel, is_dir=True))
            for name in sorted(filenames):
                rel = (base / name).relative_to(self.root).as_posix()
                entries.append(FileEntry(relative_path=rel, is_dir=False))
        return entries

    def get_system_time(self) -> float:
        return time.time()

    def get_last_modification_time(self, relative_path: str) -> float:
        path = self._resolve(relative_path)
        try:
            return path.stat().st_mtime
        except OSError as exc:
            raise HostError(f"Unable to stat {relative_path}: {exc}") from exc
