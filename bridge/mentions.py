"""Mention resolution -- ``@[[path]]`` tokens to document/folder content.

Resolution degrades silently: an unknown or unreadable path is skipped so a
turn still goes out with whatever context could be gathered.
"""

import logging
import re
from typing import Iterable, List, Optional

from bridge_constants import (
    MAX_CONTEXT_TEXT,
    MAX_FOLDER_REF_FILE_CHARS,
    MAX_FOLDER_REF_FILES,
    MAX_FOLDER_REF_TOTAL_CHARS,
    MAX_MENTIONS_PER_MESSAGE,
)
from bridge.models import MentionRef, ResolvedReference
from bridge.token_estimator import clamp_text
from bridge.vault import Vault, VaultFolder

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"@\[\[([^\]]+)\]\]")
EMPTY_FOLDER_TEXT = "(该文件夹下没有 Markdown 文档)"


def mention_token(path: str) -> str:
    return f"@[[{path}]]"


def extract_mention_paths(text: str) -> List[str]:
    """Distinct mention paths in first-appearance order, capped per message."""
    seen = []
    for match in MENTION_PATTERN.finditer(str(text or "")):
        path = match.group(1).strip()
        if path and path not in seen:
            seen.append(path)
    return seen[:MAX_MENTIONS_PER_MESSAGE]


class MentionResolver:
    """Turns mention tokens in free text into resolved references."""

    def __init__(
        self,
        vault: Vault,
        *,
        max_folder_files: int = MAX_FOLDER_REF_FILES,
        max_folder_total_chars: int = MAX_FOLDER_REF_TOTAL_CHARS,
        max_folder_file_chars: int = MAX_FOLDER_REF_FILE_CHARS,
    ):
        self.vault = vault
        self.max_folder_files = max_folder_files
        self.max_folder_total_chars = max_folder_total_chars
        self.max_folder_file_chars = max_folder_file_chars

    def resolve(self, text: str) -> List[ResolvedReference]:
        refs: List[ResolvedReference] = []
        for path in extract_mention_paths(text):
            try:
                ref = self._resolve_one(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("Skipping unreadable mention %s: %s", path, e)
                continue
            if ref is not None:
                refs.append(ref)
        return refs

    def _resolve_one(self, path: str) -> Optional[ResolvedReference]:
        file = self.vault.get_markdown_file(path)
        if file is not None:
            text = clamp_text(self.vault.read(file), MAX_CONTEXT_TEXT)
            return ResolvedReference("file", file.path, text)
        folder = self.vault.get_folder(path)
        if folder is None:
            logger.debug("Mention %s matched no document or folder", path)
            return None
        return self._resolve_folder(folder)

    def _resolve_folder(self, folder: VaultFolder) -> ResolvedReference:
        all_files = self.vault.files_in_folder(folder)
        if not all_files:
            return ResolvedReference("folder", folder.path, EMPTY_FOLDER_TEXT)

        chunks: List[str] = []
        total_chars = 0
        for f in all_files[: self.max_folder_files]:
            if total_chars >= self.max_folder_total_chars:
                break
            try:
                raw = self.vault.read(f)
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("Skipping unreadable folder document %s: %s", f.path, e)
                continue
            block = f"### {f.path}\n{clamp_text(raw, self.max_folder_file_chars)}"
            next_len = total_chars + len(block) + 2
            if chunks and next_len > self.max_folder_total_chars:
                break
            chunks.append(block)
            total_chars = next_len

        header = f"文件夹: {folder.path}\n已纳入 {len(chunks)}/{len(all_files)} 个文档"
        if len(chunks) < len(all_files):
            header += "（有截断）"
        body = "\n\n".join(chunks)
        return ResolvedReference("folder", folder.path, f"{header}\n\n{body}".strip())


# ---------------------------------------------------------------------------
# Draft mention normalization (persisted per session)
# ---------------------------------------------------------------------------

def normalize_mention_entry(raw) -> Optional[MentionRef]:
    if isinstance(raw, MentionRef):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None
    ref_type = "folder" if raw.get("type") == "folder" else "file"
    path = str(raw.get("path") or "").strip()
    if ref_type == "folder":
        path = path.rstrip("/")
    if not path:
        return None
    default_name = path.split("/")[-1] or path if ref_type == "folder" else path
    name = str(raw.get("name") or default_name).strip() or path
    return MentionRef(type=ref_type, path=path, name=name, auto=bool(raw.get("auto")))


def normalize_mention_entries(entries: Optional[Iterable]) -> List[MentionRef]:
    """Normalize and de-duplicate by ``(type, path)``, keeping first occurrence."""
    by_key = {}
    for item in entries or []:
        ref = normalize_mention_entry(item)
        if ref is not None and ref.key not in by_key:
            by_key[ref.key] = ref
    return list(by_key.values())


# ---------------------------------------------------------------------------
# Prompt formatting
# ---------------------------------------------------------------------------

def format_one_mention_ref_for_prompt(ref: ResolvedReference, index: int, keep_empty: bool = False) -> str:
    i = index + 1
    text = ref.text or ("" if keep_empty else "(空)")
    label = "文件夹" if ref.type == "folder" else "文档"
    return f"{label}{i}路径: {ref.path or 'unknown'}\n{label}{i}内容:\n{text}"


def format_mention_refs_for_prompt(refs: List[ResolvedReference], keep_empty: bool = False) -> str:
    return "\n\n".join(format_one_mention_ref_for_prompt(r, i, keep_empty) for i, r in enumerate(refs))


def has_mention_ref_text(refs: List[ResolvedReference]) -> bool:
    return any((r.text or "").strip() for r in refs)
