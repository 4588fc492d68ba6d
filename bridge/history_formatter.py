"""Bounded renderings of a session's recent turns.

Every variant shares the same input filter (see ``_eligible_messages``): only
non-blank user/assistant messages count, and a trailing user message equal to
the in-flight input is dropped so it is not sent twice.
"""

import re
from typing import List, Optional

from bridge.models import Message, Session
from bridge.token_estimator import clamp_text

HISTORY_TRUNCATION_MARKER = "\n...(已截断)"


def role_label(role: str) -> str:
    return "助手" if role == "assistant" else "用户"


def _eligible_messages(session: Optional[Session], current_input: str) -> List[Message]:
    if session is None or not session.messages:
        return []
    messages = [
        msg
        for msg in session.messages
        if msg.role in ("user", "assistant") and isinstance(msg.content, str) and msg.content.strip()
    ]
    if not messages:
        return []
    normalized_current = str(current_input or "").strip()
    last = messages[-1]
    if last.role == "user" and last.content.strip() == normalized_current:
        messages = messages[:-1]
    return messages


def _clip(text: str, limit: int) -> str:
    if len(text) > limit:
        return f"{text[:limit]}{HISTORY_TRUNCATION_MARKER}"
    return text


def format_conversation_history(session: Optional[Session], current_input: str) -> str:
    """Last six turns, each clipped at 700 characters (manual-stitching mode)."""
    messages = _eligible_messages(session, current_input)
    if not messages:
        return ""
    recent = []
    for msg in messages[-6:]:
        text = re.sub(r"\s+\n", "\n", msg.content.strip())
        recent.append(f"{role_label(msg.role)}:\n{_clip(text, 700)}")
    return "最近对话历史（按时间顺序）:\n" + "\n\n".join(recent)


def format_compact_conversation_history(
    session: Optional[Session],
    current_input: str,
    max_turns: int = 4,
    max_chars: int = 260,
) -> str:
    """One line per message for the last ``max_turns`` turns."""
    messages = _eligible_messages(session, current_input)
    if not messages:
        return ""
    limit_turns = max(1, int(max_turns))
    limit_chars = max(80, int(max_chars))
    lines = []
    for msg in messages[-limit_turns:]:
        text = re.sub(r"\s+", " ", msg.content.strip())
        if len(text) > limit_chars:
            text = f"{text[:limit_chars]}..."
        lines.append(f"{role_label(msg.role)}: {text}")
    return "会话记忆:\n" + "\n".join(lines)


def format_conversation_history_with_budget(
    session: Optional[Session],
    current_input: str,
    max_turns: int = 20,
    max_total_chars: int = 60000,
    max_per_message_chars: int = 8000,
) -> str:
    """Newest-first accumulation under a total character budget.

    At least one message is always included; the result is rendered in
    chronological order.
    """
    messages = _eligible_messages(session, current_input)
    if not messages:
        return ""
    turn_limit = max(1, int(max_turns))
    total_limit = max(2000, int(max_total_chars))
    one_limit = max(300, int(max_per_message_chars))

    picked: List[str] = []
    total = 0
    for msg in reversed(messages):
        if len(picked) >= turn_limit:
            break
        block = f"{role_label(msg.role)}:\n{_clip(msg.content.strip(), one_limit)}"
        next_total = total + len(block) + 2
        if picked and next_total > total_limit:
            break
        picked.append(block)
        total = next_total
    if not picked:
        return ""
    picked.reverse()
    return f"会话记忆（最近优先，预算{total_limit}字符）:\n" + "\n\n".join(picked)


def get_last_assistant_message(
    session: Optional[Session],
    current_input: str,
    max_chars: int = 4000,
) -> str:
    messages = _eligible_messages(session, current_input)
    limit = max(400, int(max_chars))
    for msg in reversed(messages):
        if msg.role == "assistant":
            return clamp_text(msg.content.strip(), limit)
    return ""
