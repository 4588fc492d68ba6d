"""Filesystem-backed document index and editor context.

A vault is a directory of Markdown documents addressed by POSIX paths
relative to its root. ``EditorState`` stands in for the host editor: it holds
the last captured open document and text selection.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from bridge_constants import MAX_CONTEXT_TEXT
from bridge.token_estimator import clamp_text

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIX = ".md"


@dataclass(frozen=True)
class VaultFile:
    path: str

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def basename(self) -> str:
        name = self.name
        return name[: -len(MARKDOWN_SUFFIX)] if name.endswith(MARKDOWN_SUFFIX) else name


@dataclass(frozen=True)
class VaultFolder:
    path: str

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class Vault:
    """Read-only view over the Markdown documents below ``root``."""

    def __init__(self, root):
        self.root = Path(root).expanduser().resolve()

    def _visible(self, rel: Path) -> bool:
        return not any(part.startswith(".") for part in rel.parts)

    def markdown_files(self) -> List[VaultFile]:
        if not self.root.is_dir():
            return []
        files = []
        for path in self.root.rglob(f"*{MARKDOWN_SUFFIX}"):
            rel = path.relative_to(self.root)
            if path.is_file() and self._visible(rel):
                files.append(VaultFile(rel.as_posix()))
        return sorted(files, key=lambda f: f.path)

    def folders(self) -> List[VaultFolder]:
        if not self.root.is_dir():
            return []
        found = []
        for path in self.root.rglob("*"):
            rel = path.relative_to(self.root)
            if path.is_dir() and self._visible(rel):
                found.append(VaultFolder(rel.as_posix()))
        return sorted(found, key=lambda f: f.path)

    def _file_at(self, rel_path: str) -> Optional[VaultFile]:
        candidate = (self.root / rel_path).resolve()
        try:
            rel = candidate.relative_to(self.root)
        except ValueError:
            return None
        if candidate.is_file() and candidate.suffix == MARKDOWN_SUFFIX and self._visible(rel):
            return VaultFile(rel.as_posix())
        return None

    def get_markdown_file(self, loose_path: str) -> Optional[VaultFile]:
        """Find a document by exact path, by path + ``.md``, then by basename."""
        raw = str(loose_path or "").strip()
        if not raw:
            return None
        by_exact = self._file_at(raw)
        if by_exact:
            return by_exact
        md_path = raw if raw.endswith(MARKDOWN_SUFFIX) else f"{raw}{MARKDOWN_SUFFIX}"
        by_md = self._file_at(md_path)
        if by_md:
            return by_md
        for f in self.markdown_files():
            if f.path in (raw, md_path) or f.basename == raw:
                return f
        return None

    def get_folder(self, loose_path: str) -> Optional[VaultFolder]:
        raw = str(loose_path or "").strip().rstrip("/")
        if not raw:
            return None
        candidate = (self.root / raw).resolve()
        try:
            rel = candidate.relative_to(self.root)
        except ValueError:
            rel = None
        if rel is not None and rel.parts and self._visible(rel) and candidate.is_dir():
            return VaultFolder(rel.as_posix())
        for folder in self.folders():
            if folder.path == raw or folder.name == raw:
                return folder
        return None

    def files_in_folder(self, folder: VaultFolder) -> List[VaultFile]:
        prefix = f"{folder.path.rstrip('/')}/"
        files = [f for f in self.markdown_files() if f.path.startswith(prefix)]
        return sorted(files, key=lambda f: f.path.casefold())

    def read(self, file: VaultFile) -> str:
        return (self.root / file.path).read_text(encoding="utf-8")


@dataclass
class NoteContext:
    path: str = ""
    text: str = ""


@dataclass
class SelectionContext:
    path: str = ""
    text: str = ""
    line_count: int = 0

    @property
    def active(self) -> bool:
        return self.line_count > 0 and bool(self.text.strip())


class EditorState:
    """Last captured open document and selection from the host editor."""

    def __init__(self):
        self.note = NoteContext()
        self.selection = SelectionContext()

    def capture_note(self, path: str, text: str) -> None:
        self.note = NoteContext(path or "", clamp_text(text or "", MAX_CONTEXT_TEXT))

    def capture_selection(self, path: str, text: str) -> None:
        selected = str(text or "")
        if not selected.strip():
            self.selection = SelectionContext(path or "", "", 0)
            return
        normalized = selected.replace("\r", "").rstrip("\n")
        line_count = max(1, len(normalized.split("\n")))
        self.selection = SelectionContext(path or "", clamp_text(selected, MAX_CONTEXT_TEXT), line_count)

    def clear_selection(self) -> None:
        self.selection = SelectionContext()

    def selection_context(self) -> SelectionContext:
        if not self.selection.active:
            return SelectionContext()
        return SelectionContext(
            self.selection.path or self.note.path,
            self.selection.text,
            self.selection.line_count,
        )

    def prompt_note_context(self, vault: Vault) -> NoteContext:
        """The open document, re-read from the vault when only its path is known."""
        if self.note.path and self.note.text.strip():
            return self.note
        if not self.note.path:
            return self.note
        file = vault.get_markdown_file(self.note.path)
        if file is None:
            return self.note
        try:
            text = clamp_text(vault.read(file), MAX_CONTEXT_TEXT)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Could not read open document %s: %s", file.path, e)
            return self.note
        if text.strip():
            self.note = NoteContext(file.path, text)
        return NoteContext(file.path, text)
