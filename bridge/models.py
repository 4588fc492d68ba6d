"""Core data structures for chat sessions, references and skills.

``to_dict()`` produces the persisted (camelCase) shape; the reverse direction
goes through ``bridge.session_store.normalize_session`` so that loaded data is
never trusted past that boundary.
"""

import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from bridge_constants import DEFAULT_SESSION_TITLE


def now_ms() -> int:
    """Wall-clock milliseconds, the unit used for session timestamps."""
    return int(time.time() * 1000)


def new_id() -> str:
    return f"{now_ms():x}-{uuid.uuid4().hex[:6]}"


@dataclass
class Message:
    """One chat turn as displayed and sent."""

    role: str
    content: str
    thought: str = ""
    thought_duration_ms: int = 0
    thought_label: str = ""
    thought_expanded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "thought": self.thought,
            "thoughtDurationMs": self.thought_duration_ms,
            "thoughtLabel": self.thought_label,
            "thoughtExpanded": self.thought_expanded,
        }


@dataclass
class MentionRef:
    """A staged reference to a vault document or folder (never holds content)."""

    type: str
    path: str
    name: str
    auto: bool = False

    @property
    def key(self) -> str:
        return f"{self.type}:{self.path}"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "path": self.path, "name": self.name, "auto": self.auto}


@dataclass
class ResolvedReference:
    """A mention resolved to text at prompt-build time."""

    type: str
    path: str
    text: str


@dataclass
class Skill:
    id: str
    name: str
    description: str = ""
    body: str = ""
    path: str = ""


@dataclass
class Session:
    """One conversation thread."""

    id: str = field(default_factory=new_id)
    title: str = DEFAULT_SESSION_TITLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    messages: List[Message] = field(default_factory=list)
    agent_session_id: str = ""
    agent_thread_id: str = ""
    draft_mentions: List[MentionRef] = field(default_factory=list)
    draft_skills: List[str] = field(default_factory=list)
    compacted_context: str = ""
    last_prompt_tokens: int = 0
    auto_doc_mention_disabled: bool = False
    auto_doc_mention_seeded: bool = False

    def touch(self) -> None:
        self.updated_at = max(now_ms(), self.updated_at)

    def absorb(self, other: "Session") -> None:
        """Copy every field of ``other`` onto this instance, keeping identity."""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "agentSessionId": self.agent_session_id,
            "agentThreadId": self.agent_thread_id,
            "draftMentions": [m.to_dict() for m in self.draft_mentions],
            "draftSkills": list(self.draft_skills),
            "compactedContext": self.compacted_context,
            "lastPromptTokens": self.last_prompt_tokens,
            "autoDocMentionDisabled": self.auto_doc_mention_disabled,
            "autoDocMentionSeeded": self.auto_doc_mention_seeded,
        }


@dataclass
class ContextUsage:
    used: int
    max: int
    ratio: float


@dataclass
class CompactionResult:
    performed: bool
    summarized_count: Optional[int] = None
    usage: Optional[ContextUsage] = None


@dataclass
class AgentResult:
    """What one driver invocation hands back to the caller."""

    text: str
    session_id: str = ""
    thread_id: str = ""


@dataclass
class ProgressEvent:
    """One progress notification from a running turn.

    ``type`` is one of ``status``, ``delta``, ``reasoning``, ``tool`` or the
    terminal ``done``.
    """

    type: str
    text: str = ""
