"""Turn orchestration -- what happens when the user sends a chat message.

Every turn ends with an assistant message appended and the session
persisted, including failed and interrupted turns: streamed partial output is
kept, otherwise a short placeholder explains what happened.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from bridge_constants import DEFAULT_SESSION_TITLE, MAX_SESSION_TITLE_CHARS, MAX_THOUGHT_CHARS
from bridge.errors import BridgeError, SessionBusyError, is_interrupted_error
from bridge.intent import looks_like_routing_reply
from bridge.mentions import mention_token, normalize_mention_entries, normalize_mention_entry
from bridge.models import Message, MentionRef, ProgressEvent, Session
from bridge.session_store import trim_session_messages
from bridge.token_estimator import estimate_tokens

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "(空响应)"
INTERRUPTED_REPLY = "已中断本次生成。"
AUTO_COMPACT_NOTICE = "上下文占用较高，已自动压缩历史上下文"
DEFAULT_INSTRUCTION = "请润色并保持原意"
IMAGE_ONLY_CONTENT = "(图片)"
IMAGE_ONLY_TITLE = "图片提问"


def thought_label(elapsed_ms: int) -> str:
    return f"Thought for {max(0, elapsed_ms // 1000)}s"


@dataclass
class TurnOutcome:
    session: Session
    message: Message
    ok: bool
    interrupted: bool = False
    error: Optional[BaseException] = None
    compacted: bool = False


class _TurnProgress:
    """Collects a turn's streamed answer and reasoning while relaying events."""

    def __init__(self, forward: Optional[Callable[[ProgressEvent], None]]):
        self.forward = forward
        self.answer = ""
        self.reasoning = ""
        self.status = "Thinking..."

    def __call__(self, event: ProgressEvent) -> None:
        if event.type == "delta":
            self.answer += event.text
        elif event.type == "reasoning":
            self.reasoning += event.text
        elif event.type in ("status", "tool"):
            self.status = event.text
        if self.forward is not None:
            self.forward(event)


class ChatTurnRunner:
    """Sends chat turns for a ``BridgeApp``, one in flight per session."""

    def __init__(self, app):
        self.app = app
        self._busy = set()

    def is_busy(self, session: Session) -> bool:
        return session.id in self._busy

    async def send_message(
        self,
        text: str,
        mentions: Sequence = (),
        image_paths: Sequence[str] = (),
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        session: Optional[Session] = None,
    ) -> Optional[TurnOutcome]:
        """Run one turn; returns ``None`` when there is nothing to send."""
        app = self.app
        session = session or app.store.get_active_session()
        if session is None:
            raise BridgeError("会话未初始化，请重试")
        if self.is_busy(session):
            raise SessionBusyError(f"Session {session.id} already has a turn in flight")

        typed = str(text or "").strip()
        refs = normalize_mention_entries(mentions)
        images = [str(p) for p in image_paths if p]
        image_names = [p.replace("\\", "/").rsplit("/", 1)[-1] for p in images]
        user_text = " ".join(p for p in (" ".join(mention_token(r.path) for r in refs), typed) if p).strip()
        if not user_text and not images:
            return None

        self._busy.add(session.id)
        try:
            return await self._run_turn(session, typed, user_text, images, image_names, on_progress)
        finally:
            self._busy.discard(session.id)

    async def _run_turn(self, session, typed, user_text, images, image_names, on_progress) -> TurnOutcome:
        app = self.app
        display = (typed or user_text)
        if image_names:
            display += f"\n[附图 {len(image_names)} 张: {', '.join(image_names)}]"
        session.messages.append(Message(role="user", content=display.strip() or IMAGE_ONLY_CONTENT))
        session.touch()
        if not session.title or session.title == DEFAULT_SESSION_TITLE:
            session.title = (typed or user_text or (IMAGE_ONLY_TITLE if image_names else ""))[:MAX_SESSION_TITLE_CHARS]
        session.draft_mentions = []
        trim_session_messages(session)
        await app.store.persist_quietly()

        progress = _TurnProgress(on_progress)
        started = time.monotonic()
        token = app.begin_run()
        compacted = False
        try:
            auto = await app.budget.maybe_auto_compact(session, user_text)
            if auto.performed:
                compacted = True
                app.notify(AUTO_COMPACT_NOTICE)
            prompt_input = "\n".join(p for p in (user_text, f"附图: {', '.join(image_names)}" if image_names else "") if p)
            prompt = app.prompts.build(prompt_input, session)
            app.budget.mark_prompt_usage(session, estimate_tokens(prompt))

            result = await app.driver.run(prompt, session, progress, images, token)

            answer = (result.text or "").strip() or EMPTY_RESPONSE
            if looks_like_routing_reply(answer):
                logger.warning("Agent reply in session %s looks like skill/vault routing", session.id)
            if result.session_id:
                session.agent_session_id = result.session_id
            if result.thread_id:
                session.agent_thread_id = result.thread_id
            message = self._assistant_message(answer, progress, started)
            outcome = TurnOutcome(session, message, ok=True, compacted=compacted)
        except Exception as e:
            interrupted = is_interrupted_error(e)
            if progress.answer.strip():
                answer = progress.answer.strip()
            elif interrupted:
                answer = INTERRUPTED_REPLY
            else:
                answer = f"执行失败：{e}"
            if interrupted:
                logger.info("Turn interrupted in session %s", session.id)
            else:
                unexpected = not isinstance(e, (BridgeError, OSError))
                logger.warning("Turn failed in session %s: %s", session.id, e, exc_info=unexpected)
                app.notify(f"Codex 执行失败: {e}")
            message = self._assistant_message(answer, progress, started)
            outcome = TurnOutcome(session, message, ok=False, interrupted=interrupted, error=e, compacted=compacted)
        finally:
            app.clear_active_run(token)

        session.messages.append(outcome.message)
        session.touch()
        trim_session_messages(session)
        await app.store.persist_quietly()
        return outcome

    @staticmethod
    def _assistant_message(answer: str, progress: _TurnProgress, started: float) -> Message:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return Message(
            role="assistant",
            content=answer,
            thought=progress.reasoning.strip()[:MAX_THOUGHT_CHARS],
            thought_duration_ms=elapsed_ms,
            thought_label=thought_label(elapsed_ms),
            thought_expanded=False,
        )


# ---------------------------------------------------------------------------
# Draft mentions
# ---------------------------------------------------------------------------

async def ensure_auto_doc_mention(app, session: Optional[Session], selected: Sequence = ()) -> bool:
    """Seed the open document as an ``auto`` mention on an empty session.

    Skipped when the user removed an auto mention before, when mentions are
    already staged, or once the session has messages.
    """
    if session is None or session.auto_doc_mention_disabled:
        return False
    if selected or session.draft_mentions or session.messages:
        return False
    note_path = app.editor.note.path
    if not note_path:
        return False
    file = app.vault.get_markdown_file(note_path)
    if file is None:
        return False
    session.auto_doc_mention_seeded = True
    session.draft_mentions = [MentionRef(type="file", path=file.path, name=file.basename or file.path, auto=True)]
    session.touch()
    await app.store.persist_quietly()
    return True


async def add_mention(app, session: Session, raw) -> None:
    ref = normalize_mention_entry(raw)
    if ref is None or any(m.key == ref.key for m in session.draft_mentions):
        return
    ref.auto = False
    await app.store.set_draft_mentions(session, [*session.draft_mentions, ref])


async def remove_mention(app, session: Session, raw) -> None:
    ref = normalize_mention_entry(raw)
    if ref is None:
        return
    removed = [m for m in session.draft_mentions if m.key == ref.key]
    if any(m.auto for m in removed):
        session.auto_doc_mention_disabled = True
    await app.store.set_draft_mentions(session, [m for m in session.draft_mentions if m.key != ref.key])


# ---------------------------------------------------------------------------
# One-shot text processing
# ---------------------------------------------------------------------------

def render_process_prompt(template: str, text: str, instruction: str = "", file_path: str = "") -> str:
    return (
        template.replace("{{instruction}}", instruction or DEFAULT_INSTRUCTION)
        .replace("{{text}}", text)
        .replace("{{file}}", file_path or "unknown")
    )


async def process_text(app, text: str, instruction: str = "", file_path: str = "") -> str:
    """Rewrite ``text`` with the configured template through a session-less run.

    Returns ``""`` when the agent gave nothing usable.
    """
    prompt = render_process_prompt(app.settings.prompt_template, text, instruction, file_path)
    token = app.begin_run()
    try:
        result = await app.driver.run(prompt, None, cancel_token=token)
    finally:
        app.clear_active_run(token)
    return (result.text or "").strip()


def apply_processed_text(original: str, output: str, apply_mode: str = "replace") -> str:
    if apply_mode == "append":
        return f"{original}\n\n{output}"
    return output
