"""Session persistence -- normalization, ordering and the on-disk state blob.

Everything loaded from disk passes through ``normalize_session`` before the
rest of the bridge sees it. ``persist()`` runs the same normalize-sort-truncate
pass over the live objects (in place, so callers holding a ``Session`` keep a
valid reference) and writes the blob atomically.

Writes are serialized by an ``asyncio.Lock``: a caller awaiting ``persist()``
lands after every write queued before it, and each write reads the freshest
in-memory state when it runs.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from bridge_constants import (
    DEFAULT_SESSION_TITLE,
    MAX_CHAT_HISTORY,
    MAX_COMPACT_SUMMARY_CHARS,
    MAX_SESSION_MESSAGES,
)
from bridge.mentions import normalize_mention_entries
from bridge.models import Message, Session, new_id, now_ms
from bridge.skill_catalog import normalize_skill_ids

logger = logging.getLogger(__name__)

PENDING_PLACEHOLDER = "(处理中...)"
INTERRUPTED_PLACEHOLDER = "（上次会话未完成，已中断）"
INTERRUPTED_LABEL = "Interrupted"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _coerce_int(value, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value == value and abs(value) != float("inf") else default
    return default


def normalize_message(raw) -> Optional[Message]:
    """Validate one stored message; placeholders and blank content are dropped."""
    if isinstance(raw, Message):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None
    role = raw.get("role")
    content = raw.get("content")
    if role not in ("user", "assistant") or not isinstance(content, str):
        return None

    trimmed = content.strip()
    was_pending = bool(raw.get("pending"))
    if not trimmed:
        return None
    if was_pending and trimmed in (PENDING_PLACEHOLDER, INTERRUPTED_PLACEHOLDER):
        return None
    if role == "assistant" and trimmed == INTERRUPTED_PLACEHOLDER:
        return None

    label = raw.get("thoughtLabel")
    if not isinstance(label, str) or not label:
        label = INTERRUPTED_LABEL if was_pending else ""
    thought = raw.get("thought")
    return Message(
        role=role,
        content=content,
        thought=thought if isinstance(thought, str) else "",
        thought_duration_ms=_coerce_int(raw.get("thoughtDurationMs"), 0),
        thought_label=label,
        thought_expanded=bool(raw.get("thoughtExpanded")),
    )


def _first_string(raw: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def normalize_session(raw) -> Optional[Session]:
    """Coerce a stored mapping (or a live ``Session``) into a clean ``Session``.

    Returns ``None`` for anything that is not a mapping. Applying it twice
    yields the same result as applying it once.
    """
    if isinstance(raw, Session):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None

    now = now_ms()
    messages = []
    for item in raw.get("messages") or []:
        msg = normalize_message(item)
        if msg is not None:
            messages.append(msg)
    if len(messages) > MAX_SESSION_MESSAGES:
        messages = messages[-MAX_SESSION_MESSAGES:]

    compacted = raw.get("compactedContext")
    compacted = compacted if isinstance(compacted, str) else ""
    if len(compacted) > MAX_COMPACT_SUMMARY_CHARS:
        compacted = compacted[-MAX_COMPACT_SUMMARY_CHARS:]

    draft_skills = raw.get("draftSkills")
    return Session(
        id=str(raw.get("id") or new_id()),
        title=str(raw.get("title") or DEFAULT_SESSION_TITLE),
        created_at=_coerce_int(raw.get("createdAt"), 0) or now,
        updated_at=_coerce_int(raw.get("updatedAt"), 0) or now,
        messages=messages,
        agent_session_id=_first_string(raw, "agentSessionId", "codexSessionId"),
        agent_thread_id=_first_string(raw, "agentThreadId", "codexThreadId"),
        draft_mentions=normalize_mention_entries(raw.get("draftMentions")),
        draft_skills=normalize_skill_ids(draft_skills if isinstance(draft_skills, list) else []),
        compacted_context=compacted,
        last_prompt_tokens=max(0, _coerce_int(raw.get("lastPromptTokens"), 0)),
        auto_doc_mention_disabled=bool(raw.get("autoDocMentionDisabled")),
        auto_doc_mention_seeded=bool(raw.get("autoDocMentionSeeded")),
    )


def new_session(messages: Optional[List[Message]] = None) -> Session:
    return Session(messages=list(messages or []))


def trim_session_messages(session: Optional[Session]) -> None:
    if session is not None and len(session.messages) > MAX_SESSION_MESSAGES:
        session.messages = session.messages[-MAX_SESSION_MESSAGES:]


def _has_pending_messages(raw_sessions) -> bool:
    for raw in raw_sessions:
        if not isinstance(raw, dict):
            continue
        for msg in raw.get("messages") or []:
            if isinstance(msg, dict) and msg.get("pending") is True:
                return True
    return False


# ---------------------------------------------------------------------------
# Storage backend
# ---------------------------------------------------------------------------

class JsonStateBackend:
    """The whole state blob in one JSON file, replaced atomically on save."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            try:
                os.chmod(tmp_name, 0o600)
            except OSError:
                pass  # Windows doesn't support chmod the same way
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SessionStore:
    """Ordered, bounded list of sessions plus the active-session pointer.

    Args:
        backend: Object with ``load() -> dict`` and ``save(dict)``.
        settings_provider: Returns the settings fields written alongside the
            sessions in the persisted blob.
    """

    def __init__(self, backend, settings_provider: Callable[[], Dict[str, Any]] = None):
        self.backend = backend
        self.settings_provider = settings_provider or dict
        self.sessions: List[Session] = []
        self.active_session_id = ""
        self._persist_lock = asyncio.Lock()
        self._background: set = set()

    # ----- Loading -----

    def reset_to_default(self) -> Session:
        session = new_session()
        self.sessions = [session]
        self.active_session_id = session.id
        return session

    async def load(self) -> Dict[str, Any]:
        """Load, normalize, sort and truncate stored sessions.

        Returns the raw stored blob. Backend errors propagate so the caller
        can fall back to a default state.
        """
        stored = await asyncio.to_thread(self.backend.load)
        raw_sessions = stored.get("chatSessions")
        if isinstance(raw_sessions, list) and raw_sessions:
            normalized = [s for s in (normalize_session(r) for r in raw_sessions) if s is not None]
            normalized.sort(key=lambda s: s.updated_at, reverse=True)
            normalized = normalized[:MAX_CHAT_HISTORY]
            if normalized:
                self.sessions = normalized
                self.active_session_id = str(stored.get("activeSessionId") or normalized[0].id)
                if _has_pending_messages(raw_sessions):
                    logger.info("Cleaning up interrupted placeholders from previous run")
                    await self.persist_quietly()
                return stored

        legacy = stored.get("chatHistory")
        migrated = []
        if isinstance(legacy, list):
            migrated = [m for m in (normalize_message(x) for x in legacy) if m is not None]
            if migrated:
                logger.info("Migrating %d legacy chat messages into a session", len(migrated))
        self.reset_to_default().messages = migrated[-MAX_SESSION_MESSAGES:]
        await self.persist()
        return stored

    # ----- Persistence -----

    def _normalize_in_place(self) -> None:
        kept: List[Session] = []
        for session in self.sessions:
            clean = normalize_session(session)
            if clean is None:
                continue
            session.absorb(clean)
            kept.append(session)
        kept.sort(key=lambda s: s.updated_at, reverse=True)
        self.sessions = kept[:MAX_CHAT_HISTORY]
        if not self.sessions:
            self.reset_to_default()
        if not any(s.id == self.active_session_id for s in self.sessions):
            self.active_session_id = self.sessions[0].id

    def snapshot(self) -> Dict[str, Any]:
        data = dict(self.settings_provider() or {})
        data["chatSessions"] = [s.to_dict() for s in self.sessions]
        data["activeSessionId"] = self.active_session_id
        return data

    async def persist(self) -> None:
        async with self._persist_lock:
            self._normalize_in_place()
            await asyncio.to_thread(self.backend.save, self.snapshot())

    async def persist_quietly(self) -> bool:
        """Best-effort persist; in-memory state stays authoritative on failure."""
        try:
            await self.persist()
            return True
        except Exception as e:
            logger.warning("Failed to persist session state: %s", e)
            return False

    def schedule_persist(self) -> None:
        """Fire-and-forget ``persist_quietly`` on the running loop, if any."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.persist_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def flush(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ----- Lookup & mutation -----

    def get_active_session(self) -> Optional[Session]:
        for session in self.sessions:
            if session.id == self.active_session_id:
                return session
        if self.sessions:
            self.active_session_id = self.sessions[0].id
            return self.sessions[0]
        return None

    def get_session(self, session_id: str) -> Optional[Session]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    async def create_session(self) -> Session:
        session = new_session()
        self.sessions.insert(0, session)
        self.active_session_id = session.id
        await self.persist()
        return session

    async def delete_session(self, session_id: str) -> Session:
        """Remove a session and return the (possibly new) active session."""
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if not self.sessions:
            return await self.create_session()
        if self.active_session_id == session_id:
            self.active_session_id = self.sessions[0].id
        await self.persist()
        return self.get_active_session()

    async def set_active(self, session_id: str) -> Optional[Session]:
        session = self.get_session(session_id)
        if session is None:
            return None
        self.active_session_id = session.id
        await self.persist()
        return session

    async def set_draft_mentions(self, session: Session, mentions: Iterable) -> None:
        session.draft_mentions = normalize_mention_entries(mentions)
        await self.persist_quietly()

    async def set_draft_skills(self, session: Session, skill_ids: Iterable[str]) -> None:
        session.draft_skills = normalize_skill_ids(list(skill_ids or []))
        await self.persist_quietly()
