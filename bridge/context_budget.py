"""Context budget manager -- usage estimation and history compaction.

Usage is a rough token estimate of what the next prompt will carry, floored
at the last measured prompt size so the meter never drops below reality.
When the estimate crosses the soft threshold, older messages are replaced by
an agent-written summary kept in ``Session.compacted_context``.
"""

import logging
import math
from typing import Optional, Sequence

from bridge_constants import (
    CONTEXT_COMPACT_HARD_RATIO,
    CONTEXT_COMPACT_KEEP_RECENT_MESSAGES,
    CONTEXT_COMPACT_SOFT_RATIO,
    CONTEXT_RATIO_CEILING,
    CONTEXT_WINDOW_1M,
    CONTEXT_WINDOW_STANDARD,
    MAX_COMPACT_SUMMARY_CHARS,
    MAX_COMPACT_TRANSCRIPT_CHARS,
    MAX_SESSION_MESSAGES,
)
from bridge.config import BridgeSettings
from bridge.errors import BridgeError
from bridge.history_formatter import role_label
from bridge.models import CompactionResult, ContextUsage, Message, Session, now_ms
from bridge.session_store import trim_session_messages
from bridge.token_estimator import clamp_text, estimate_tokens

logger = logging.getLogger(__name__)

# Fixed per-item costs (tokens) for context whose text is not resolved yet
COMPACTED_CONTEXT_OVERHEAD = 80
FOLDER_MENTION_COST = 1800
FILE_MENTION_COST = 700
SKILL_COST = 420
IMAGE_COST = 1200
NOTE_ESTIMATE_CHARS = 4000
SELECTION_ESTIMATE_CHARS = 2000

FALLBACK_SUMMARY_HEADER = "## 历史上下文摘要（自动回退）"
FALLBACK_SUMMARY_MESSAGES = 6
FALLBACK_SUMMARY_CHARS = 260

SUMMARY_INSTRUCTIONS = (
    "请把下面这段多轮对话压缩为“可继续对话的上下文记忆”。",
    "要求：",
    "1) 用中文，简洁且信息完整。",
    "2) 保留用户目标、约束、偏好、已完成事项、未完成事项、关键结论。",
    "3) 输出 Markdown，使用小标题和要点列表。",
    "4) 不要杜撰未出现的事实。",
    "",
    "对话内容：",
)


def compaction_notice(count: int, reason: str) -> str:
    return f"（上下文已压缩：{count} 条历史消息，原因：{reason or 'manual'}）"


def build_transcript(messages: Sequence[Message]) -> str:
    blocks = [f"{role_label(m.role)}:\n{(m.content or '').strip()}" for m in messages]
    return "\n\n".join(blocks)[:MAX_COMPACT_TRANSCRIPT_CHARS]


def build_summary_prompt(messages: Sequence[Message]) -> str:
    return "\n".join([*SUMMARY_INSTRUCTIONS, build_transcript(messages)])


def fallback_summary(messages: Sequence[Message]) -> str:
    lines = [
        f"{role_label(m.role)}: {(m.content or '')[:FALLBACK_SUMMARY_CHARS]}"
        for m in messages[-FALLBACK_SUMMARY_MESSAGES:]
    ]
    return f"{FALLBACK_SUMMARY_HEADER}\n" + "\n".join(lines)


def merge_compacted_context(existing: str, summary: str) -> str:
    """Append ``summary``, keeping the newest ``MAX_COMPACT_SUMMARY_CHARS`` characters."""
    merged = "\n\n".join(p for p in ((existing or "").strip(), summary) if p)
    return merged[-MAX_COMPACT_SUMMARY_CHARS:]


class ContextBudgetManager:
    """Estimates context usage per session and compacts history when asked.

    Args:
        settings: Live settings (window size, note-context toggle).
        store: ``SessionStore`` used to persist after usage marks and compactions.
        summarizer: Coroutine function ``(prompt) -> str``, normally
            ``AgentProcessDriver.summarize``.
        editor: Optional ``EditorState`` whose note/selection count toward usage.
    """

    def __init__(self, settings: BridgeSettings, store, summarizer, editor=None):
        self.settings = settings
        self.store = store
        self.summarizer = summarizer
        self.editor = editor
        self._compacting = set()

    def context_window(self) -> int:
        return CONTEXT_WINDOW_1M if self.settings.show_1m_context else CONTEXT_WINDOW_STANDARD

    def is_compacting(self, session: Optional[Session]) -> bool:
        return session is not None and session.id in self._compacting

    def estimate_usage(
        self,
        session: Optional[Session],
        draft_input: str = "",
        mentions: Sequence = (),
        skills: Sequence = (),
        image_count: int = 0,
    ) -> ContextUsage:
        window = self.context_window()
        if session is None:
            return ContextUsage(used=0, max=window, ratio=0.0)

        recent_count = max(20, math.floor(MAX_SESSION_MESSAGES * 0.7))
        used = 0
        for msg in session.messages[-recent_count:]:
            used += estimate_tokens(f"{msg.role or 'user'}\n{msg.content}")
        if session.compacted_context.strip():
            used += estimate_tokens(session.compacted_context) + COMPACTED_CONTEXT_OVERHEAD
        if self.editor is not None:
            if self.settings.include_note_context_in_chat and self.editor.note.text:
                used += estimate_tokens(clamp_text(self.editor.note.text, NOTE_ESTIMATE_CHARS))
            if self.editor.selection.text:
                used += estimate_tokens(clamp_text(self.editor.selection.text, SELECTION_ESTIMATE_CHARS))
        for ref in mentions or ():
            used += FOLDER_MENTION_COST if getattr(ref, "type", "file") == "folder" else FILE_MENTION_COST
        used += len(skills or ()) * SKILL_COST
        used += max(0, int(image_count or 0)) * IMAGE_COST
        if draft_input:
            used += estimate_tokens(draft_input)
        if session.last_prompt_tokens > 0:
            used = max(used, int(session.last_prompt_tokens))

        ratio = max(0.0, min(CONTEXT_RATIO_CEILING, used / window)) if window > 0 else 0.0
        return ContextUsage(used=used, max=window, ratio=ratio)

    def mark_prompt_usage(self, session: Optional[Session], tokens) -> None:
        if session is None or not isinstance(tokens, (int, float)) or not tokens > 0:
            return
        session.last_prompt_tokens = math.floor(tokens)
        session.touch()
        self.store.schedule_persist()

    async def maybe_auto_compact(self, session: Optional[Session], draft_input: str = "") -> CompactionResult:
        if session is None or self.is_compacting(session):
            return CompactionResult(performed=False)
        usage = self.estimate_usage(session, draft_input=draft_input)
        if usage.ratio < CONTEXT_COMPACT_SOFT_RATIO:
            return CompactionResult(performed=False, usage=usage)
        reason = "auto-hard" if usage.ratio >= CONTEXT_COMPACT_HARD_RATIO else "auto-soft"
        logger.info("Context at %.0f%% for session %s, compacting (%s)", usage.ratio * 100, session.id, reason)
        result = await self.compact(session, reason)
        if result.usage is None:
            result.usage = usage
        return result

    async def _summarize(self, messages: Sequence[Message]) -> str:
        try:
            return str(await self.summarizer(build_summary_prompt(messages)) or "").strip()
        except (BridgeError, OSError) as e:
            logger.warning("Summary call failed, using fallback summary: %s", e)
            return ""

    async def compact(self, session: Optional[Session], reason: str = "manual") -> CompactionResult:
        if session is None or self.is_compacting(session):
            return CompactionResult(performed=False)
        existing = list(session.messages)
        keep = CONTEXT_COMPACT_KEEP_RECENT_MESSAGES
        if len(existing) <= keep + 1:
            return CompactionResult(performed=False)
        to_summarize = existing[:-keep]

        self._compacting.add(session.id)
        try:
            summary = await self._summarize(to_summarize) or fallback_summary(to_summarize)

            session.compacted_context = merge_compacted_context(session.compacted_context, summary)
            notice = Message(role="assistant", content=compaction_notice(len(to_summarize), reason))
            session.messages = [notice, *session.messages[len(to_summarize):]]
            session.last_prompt_tokens = 0
            session.updated_at = max(now_ms(), session.updated_at + 1)
            trim_session_messages(session)
            await self.store.persist_quietly()
            logger.info("Compacted %d messages in session %s (%s)", len(to_summarize), session.id, reason)
            return CompactionResult(
                performed=True,
                summarized_count=len(to_summarize),
                usage=self.estimate_usage(session),
            )
        finally:
            self._compacting.discard(session.id)
