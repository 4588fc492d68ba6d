"""Skill catalog -- SKILL.md-backed instruction snippets a session can opt into.

Skills live in directories below a few configured roots. A directory holding
a ``SKILL.md`` file is a leaf skill; its id is ``<root label>:<relative dir>``
so ids stay stable across rescans of an unchanged tree.
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import yaml

from bridge_constants import (
    MAX_CONTEXT_TEXT,
    MAX_SKILL_DESCRIPTION_CHARS,
    MAX_SKILL_SNIPPET_CHARS,
    MAX_SKILLS_PER_SESSION,
    SKILL_CACHE_TTL_SECONDS,
    SKILL_MARKER_FILE,
)
from bridge.models import Skill
from bridge.token_estimator import clamp_text

logger = logging.getLogger(__name__)

SKIP_DIR_NAMES = frozenset({
    "node_modules", ".git", ".hg", ".svn", "dist", "build", "target", "__pycache__",
})
ALLOWED_DOT_DIR = ".system"


@dataclass(frozen=True)
class SkillRoot:
    label: str
    root: Path


def default_skill_roots(vault_root=None, extra_roots: Iterable[SkillRoot] = ()) -> List[SkillRoot]:
    candidates = [SkillRoot("home", Path.home() / ".codex" / "skills")]
    if vault_root:
        base = Path(vault_root)
        candidates.append(SkillRoot("vault", base / ".codex" / "skills"))
        candidates.append(SkillRoot("vault-local", base / "Skills"))
    candidates.extend(extra_roots)

    roots: List[SkillRoot] = []
    seen = set()
    for item in candidates:
        key = os.path.normpath(str(item.root))
        if key in seen:
            continue
        seen.add(key)
        roots.append(item)
    return roots


def parse_skill_roots(entries: Iterable[str]) -> List[SkillRoot]:
    """Parse ``label=path`` strings; a bare path gets the label ``extra``."""
    roots = []
    for entry in entries or []:
        text = str(entry or "").strip()
        if not text:
            continue
        label, sep, path = text.partition("=")
        if not sep:
            label, path = "extra", text
        roots.append(SkillRoot(label.strip() or "extra", Path(path.strip()).expanduser()))
    return roots


def _front_matter_description(text: str) -> str:
    if not text.startswith("---"):
        return ""
    lines = text.split("\n")
    for end, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            break
    else:
        return ""
    try:
        meta = yaml.safe_load("\n".join(lines[1:end]))
    except yaml.YAMLError:
        return ""
    if isinstance(meta, dict) and meta.get("description"):
        return str(meta["description"]).strip()
    return ""


def extract_skill_description(markdown: str) -> str:
    """One-line description: front-matter ``description``, else the first prose line."""
    text = str(markdown or "").replace("\r\n", "\n")
    if not text.strip():
        return ""
    described = _front_matter_description(text)
    if described:
        return described[:MAX_SKILL_DESCRIPTION_CHARS]

    in_front_matter = text.startswith("---")
    for index, raw in enumerate(text.split("\n")):
        line = raw.strip()
        if in_front_matter:
            if index > 0 and line == "---":
                in_front_matter = False
            continue
        if not line or line.startswith("#") or line.startswith("```"):
            continue
        return line[:MAX_SKILL_DESCRIPTION_CHARS]
    return ""


def short_skill_name_from_id(skill_id: str) -> str:
    text = str(skill_id or "")
    if not text:
        return "skill"
    no_prefix = text.split(":", 1)[1] if ":" in text else text
    parts = [p for p in no_prefix.split("/") if p]
    return parts[-1] if parts else no_prefix


def _find_marker(entries: List[os.DirEntry]) -> Optional[os.DirEntry]:
    for entry in entries:
        try:
            if entry.is_file() and entry.name.upper() == SKILL_MARKER_FILE.upper():
                return entry
        except OSError:
            continue
    return None


def scan_skill_catalog(root, label: str) -> List[Skill]:
    """Depth-first walk of ``root`` collecting leaf skill directories."""
    root_path = Path(root)
    if not root_path.is_dir():
        return []

    items: List[Skill] = []
    stack = [root_path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            logger.debug("Skipping unreadable skill dir %s: %s", current, e)
            continue

        marker = _find_marker(entries)
        if marker is not None:
            try:
                body = Path(marker.path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug("Could not read %s: %s", marker.path, e)
                body = ""
            rel_dir = current.relative_to(root_path).as_posix()
            skill_id = f"{label}:{rel_dir or '.'}"
            items.append(Skill(
                id=skill_id,
                name=current.name or short_skill_name_from_id(skill_id),
                description=extract_skill_description(body),
                body=clamp_text(body, MAX_SKILL_SNIPPET_CHARS),
                path=marker.path,
            ))
            continue

        for entry in entries:
            try:
                if not entry.is_dir():
                    continue
            except OSError:
                continue
            if entry.name in SKIP_DIR_NAMES:
                continue
            if entry.name.startswith(".") and entry.name != ALLOWED_DOT_DIR:
                continue
            stack.append(Path(entry.path))
    return items


def normalize_skill_ids(ids) -> List[str]:
    if not isinstance(ids, (list, tuple)):
        return []
    result: List[str] = []
    for item in ids:
        skill_id = str(item or "").strip()
        if skill_id and skill_id not in result:
            result.append(skill_id)
    return result[:MAX_SKILLS_PER_SESSION]


class SkillCatalog:
    """Scans the configured roots, caching the result for a short TTL."""

    def __init__(self, roots: List[SkillRoot], ttl_seconds: float = SKILL_CACHE_TTL_SECONDS):
        self.roots = list(roots)
        self.ttl_seconds = ttl_seconds
        self._cache: Optional[List[Skill]] = None
        self._cache_ts = 0.0

    def invalidate(self) -> None:
        self._cache = None

    def list_skills(self, force_refresh: bool = False) -> List[Skill]:
        now = time.monotonic()
        if not force_refresh and self._cache is not None and now - self._cache_ts < self.ttl_seconds:
            return self._cache

        items: List[Skill] = []
        for root in self.roots:
            items.extend(scan_skill_catalog(root.root, root.label))
        items.sort(key=lambda s: (s.name.casefold(), s.id.casefold()))

        logger.debug("Skill catalog rescanned: %d skills across %d roots", len(items), len(self.roots))
        self._cache = items
        self._cache_ts = now
        return items

    def search(self, query: str) -> List[Skill]:
        """Case-insensitive substring filter over name, id and description."""
        q = str(query or "").strip().lower()
        skills = self.list_skills()
        if not q:
            return skills
        return [s for s in skills if q in f"{s.name} {s.id} {s.description}".lower()]

    def resolve_selected(self, ids) -> List[Skill]:
        """Look selected ids up in a fresh catalog, bounded by a combined body budget."""
        wanted = normalize_skill_ids(ids)
        if not wanted:
            return []
        by_id = {s.id: s for s in self.list_skills()}
        refs: List[Skill] = []
        total = 0
        for skill_id in wanted:
            skill = by_id.get(skill_id)
            if skill is None:
                logger.debug("Selected skill %s no longer in catalog", skill_id)
                continue
            body = clamp_text(skill.body, MAX_SKILL_SNIPPET_CHARS)
            next_total = total + len(body)
            if refs and next_total > MAX_CONTEXT_TEXT * 2:
                break
            refs.append(Skill(skill.id, skill.name, skill.description, body, skill.path))
            total = next_total
        return refs


def indent_text(text: str, spaces: int) -> str:
    pad = " " * max(0, spaces or 0)
    return "\n".join(f"{pad}{line}" for line in str(text or "").split("\n"))


def format_skill_refs_for_prompt(skills: List[Skill]) -> str:
    if not skills:
        return ""
    lines = ["已启用 Skills（按以下技能规则执行）:"]
    for idx, skill in enumerate(skills, start=1):
        lines.append(f"{idx}. {skill.name or short_skill_name_from_id(skill.id)} ({skill.id or 'unknown'})")
        if skill.description:
            lines.append(f"   描述: {skill.description}")
        if skill.body:
            lines.append(f"   SKILL.md 摘要:\n{indent_text(skill.body, 3)}")
    return "\n".join(lines)
