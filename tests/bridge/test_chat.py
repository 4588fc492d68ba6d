"""Tests for bridge.chat -- one chat turn from input to persisted reply."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridge.app_context import BridgeApp
from bridge.chat import (
    AUTO_COMPACT_NOTICE,
    EMPTY_RESPONSE,
    INTERRUPTED_REPLY,
    ChatTurnRunner,
    add_mention,
    apply_processed_text,
    ensure_auto_doc_mention,
    process_text,
    remove_mention,
    render_process_prompt,
    thought_label,
)
from bridge.config import BridgeSettings
from bridge.errors import SessionBusyError, TurnFailedError
from bridge.models import AgentResult, Message, ProgressEvent, Session


class MemoryBackend:
    def __init__(self):
        self.saves = []

    def load(self):
        return {}

    def save(self, data):
        self.saves.append(json.loads(json.dumps(data)))


@pytest.fixture
def app(tmp_path):
    vault_dir = tmp_path / "vault"
    vault_dir.mkdir()
    (vault_dir / "doc.md").write_text("DOC BODY", encoding="utf-8")
    settings = BridgeSettings(vault_path=str(vault_dir))
    app = BridgeApp(settings, home=tmp_path / "home", backend=MemoryBackend(), notify=MagicMock())
    app.store.reset_to_default()
    return app


def _reply(text="answer", session_id="sess-1", thread_id="thread-1", events=()):
    async def run(prompt, session=None, on_progress=None, image_paths=(), cancel_token=None):
        for event in events:
            on_progress(event)
        if session is None:
            return AgentResult("summary text")
        return AgentResult(text, session_id=session_id, thread_id=thread_id)

    return AsyncMock(side_effect=run)


# ---------------------------------------------------------------------------
# Successful turns
# ---------------------------------------------------------------------------


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_happy_path(self, app):
        app.driver.run = _reply(events=[ProgressEvent("reasoning", "pondering"), ProgressEvent("delta", "ans")])
        session = app.store.get_active_session()
        outcome = await ChatTurnRunner(app).send_message("什么是 Rust 的所有权")
        await app.store.flush()

        assert outcome.ok
        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert session.messages[1].content == "answer"
        assert session.messages[1].thought == "pondering"
        assert session.messages[1].thought_label.startswith("Thought for ")
        assert (session.agent_session_id, session.agent_thread_id) == ("sess-1", "thread-1")
        assert session.title == "什么是 Rust 的所有权"
        assert session.last_prompt_tokens > 0
        saved = app.store.backend.saves[-1]["chatSessions"][0]
        assert saved["messages"][-1]["content"] == "answer"

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, app):
        app.driver.run = _reply()
        assert await ChatTurnRunner(app).send_message("   ") is None
        app.driver.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_answer_placeholder(self, app):
        app.driver.run = _reply(text="  ")
        outcome = await ChatTurnRunner(app).send_message("hi")
        assert outcome.message.content == EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_title_truncated_and_kept(self, app):
        app.driver.run = _reply()
        runner = ChatTurnRunner(app)
        session = app.store.get_active_session()
        await runner.send_message("x" * 40)
        assert session.title == "x" * 24
        await runner.send_message("second question")
        assert session.title == "x" * 24

    @pytest.mark.asyncio
    async def test_images(self, app):
        app.driver.run = _reply()
        outcome = await ChatTurnRunner(app).send_message("", image_paths=["/tmp/shots/a.png"])
        session = outcome.session
        assert session.messages[0].content == "[附图 1 张: a.png]"
        assert session.title == "图片提问"
        prompt, _, _, images, _ = app.driver.run.await_args.args
        assert "附图: a.png" in prompt
        assert images == ["/tmp/shots/a.png"]

    @pytest.mark.asyncio
    async def test_mentions_resolved_into_prompt(self, app):
        app.driver.run = _reply()
        session = app.store.get_active_session()
        session.draft_mentions = []
        outcome = await ChatTurnRunner(app).send_message("总结一下", mentions=[{"type": "file", "path": "doc.md"}])
        prompt = app.driver.run.await_args.args[0]
        assert "DOC BODY" in prompt
        assert "@[[doc.md]] 总结一下" in prompt
        assert outcome.session.messages[0].content == "总结一下"
        assert outcome.session.draft_mentions == []

    @pytest.mark.asyncio
    async def test_auto_compaction_notice(self, app):
        app.driver.run = _reply()
        session = app.store.get_active_session()
        session.messages = [Message("user" if i % 2 == 0 else "assistant", f"m{i}") for i in range(20)]
        session.last_prompt_tokens = 190_000
        outcome = await ChatTurnRunner(app).send_message("继续")
        assert outcome.compacted
        app.notify.assert_any_call(AUTO_COMPACT_NOTICE)
        assert session.compacted_context == "summary text"
        assert session.messages[0].content.startswith("（上下文已压缩")
        assert app.driver.run.await_count == 2


# ---------------------------------------------------------------------------
# Failures and interruption
# ---------------------------------------------------------------------------


class TestFailedTurns:
    @pytest.mark.asyncio
    async def test_failure_keeps_partial_text(self, app):
        async def run(prompt, session=None, on_progress=None, image_paths=(), cancel_token=None):
            on_progress(ProgressEvent("delta", "half an ans"))
            raise TurnFailedError("stream closed")

        app.driver.run = AsyncMock(side_effect=run)
        outcome = await ChatTurnRunner(app).send_message("q")
        assert not outcome.ok and not outcome.interrupted
        assert outcome.message.content == "half an ans"
        app.notify.assert_called_with("Codex 执行失败: stream closed")
        assert app.store.backend.saves[-1]["chatSessions"][0]["messages"][-1]["content"] == "half an ans"

    @pytest.mark.asyncio
    async def test_failure_without_partial(self, app):
        app.driver.run = AsyncMock(side_effect=TurnFailedError("boom"))
        outcome = await ChatTurnRunner(app).send_message("q")
        assert outcome.message.content == "执行失败：boom"
        assert isinstance(outcome.error, TurnFailedError)

    @pytest.mark.asyncio
    async def test_undecodable_open_document_is_skipped(self, app):
        (app.vault.root / "latin.md").write_bytes("caf\xe9".encode("latin-1"))
        app.editor.capture_note("latin.md", "")
        app.driver.run = _reply()
        outcome = await ChatTurnRunner(app).send_message("hello there")
        assert outcome.ok
        assert "latin.md" not in app.driver.run.await_args.args[0]
        assert [m.role for m in outcome.session.messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_unexpected_error_still_appends_reply(self, app):
        app.driver.run = _reply()
        app.prompts.build = MagicMock(side_effect=ValueError("bad template"))
        outcome = await ChatTurnRunner(app).send_message("q")
        assert not outcome.ok and not outcome.interrupted
        assert outcome.message.content == "执行失败：bad template"
        app.driver.run.assert_not_called()
        app.notify.assert_called_with("Codex 执行失败: bad template")
        saved = app.store.backend.saves[-1]["chatSessions"][0]["messages"]
        assert [m["role"] for m in saved] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_interrupt_active_run(self, app):
        started = asyncio.Event()

        async def slow(prompt, session, on_progress=None, image_paths=()):
            on_progress(ProgressEvent("delta", "partial"))
            started.set()
            await asyncio.sleep(30)

        app.driver.run_via_app_server = AsyncMock(side_effect=slow)
        task = asyncio.create_task(ChatTurnRunner(app).send_message("q"))
        await asyncio.wait_for(started.wait(), timeout=5)
        assert app.interrupt_active_run() is True
        outcome = await asyncio.wait_for(task, timeout=5)
        assert outcome.interrupted
        assert outcome.message.content == "partial"
        app.notify.assert_not_called()
        assert app.interrupt_active_run() is False

    @pytest.mark.asyncio
    async def test_interrupt_without_partial(self, app):
        started = asyncio.Event()

        async def slow(prompt, session, on_progress=None, image_paths=()):
            started.set()
            await asyncio.sleep(30)

        app.driver.run_via_app_server = AsyncMock(side_effect=slow)
        task = asyncio.create_task(ChatTurnRunner(app).send_message("q"))
        await asyncio.wait_for(started.wait(), timeout=5)
        app.interrupt_active_run()
        outcome = await asyncio.wait_for(task, timeout=5)
        assert outcome.message.content == INTERRUPTED_REPLY

    @pytest.mark.asyncio
    async def test_one_turn_per_session(self, app):
        gate = asyncio.Event()

        async def run(prompt, session=None, on_progress=None, image_paths=(), cancel_token=None):
            await gate.wait()
            return AgentResult("done")

        app.driver.run = AsyncMock(side_effect=run)
        runner = ChatTurnRunner(app)
        first = asyncio.create_task(runner.send_message("one"))
        await asyncio.sleep(0.05)
        assert runner.is_busy(app.store.get_active_session())
        with pytest.raises(SessionBusyError):
            await runner.send_message("two")
        gate.set()
        assert (await first).ok
        assert not runner.is_busy(app.store.get_active_session())


# ---------------------------------------------------------------------------
# Draft mentions
# ---------------------------------------------------------------------------


class TestAutoDocMention:
    @pytest.mark.asyncio
    async def test_seeds_open_document(self, app):
        session = app.store.get_active_session()
        app.editor.capture_note("doc", "")
        assert await ensure_auto_doc_mention(app, session) is True
        assert [(m.path, m.name, m.auto) for m in session.draft_mentions] == [("doc.md", "doc", True)]
        assert session.auto_doc_mention_seeded

    @pytest.mark.asyncio
    async def test_skipped_cases(self, app):
        session = app.store.get_active_session()
        assert await ensure_auto_doc_mention(app, session) is False  # no open note
        app.editor.capture_note("missing.md", "")
        assert await ensure_auto_doc_mention(app, session) is False
        app.editor.capture_note("doc.md", "")
        session.messages.append(Message("user", "hi"))
        assert await ensure_auto_doc_mention(app, session) is False
        session.messages.clear()
        assert await ensure_auto_doc_mention(app, session, selected=[{"path": "x.md"}]) is False
        session.auto_doc_mention_disabled = True
        assert await ensure_auto_doc_mention(app, session) is False
        assert await ensure_auto_doc_mention(app, None) is False

    @pytest.mark.asyncio
    async def test_removing_auto_mention_disables_reseeding(self, app):
        session = app.store.get_active_session()
        app.editor.capture_note("doc.md", "")
        await ensure_auto_doc_mention(app, session)
        await remove_mention(app, session, {"type": "file", "path": "doc.md"})
        assert session.draft_mentions == []
        assert session.auto_doc_mention_disabled
        assert await ensure_auto_doc_mention(app, session) is False

    @pytest.mark.asyncio
    async def test_add_mention_dedups(self, app):
        session = app.store.get_active_session()
        await add_mention(app, session, {"type": "folder", "path": "notes/"})
        await add_mention(app, session, {"type": "folder", "path": "notes"})
        assert [m.key for m in session.draft_mentions] == ["folder:notes"]


# ---------------------------------------------------------------------------
# Text processing
# ---------------------------------------------------------------------------


class TestProcessText:
    def test_render_defaults(self):
        out = render_process_prompt("{{instruction}}|{{text}}|{{file}}", "body")
        assert out == "请润色并保持原意|body|unknown"

    def test_apply_modes(self):
        assert apply_processed_text("orig", "new", "replace") == "new"
        assert apply_processed_text("orig", "new", "append") == "orig\n\nnew"

    @pytest.mark.asyncio
    async def test_process_text_runs_without_session(self, app):
        app.driver.run = AsyncMock(return_value=AgentResult("  polished  "))
        out = await process_text(app, "rough", "make it shine", "doc.md")
        assert out == "polished"
        prompt, session = app.driver.run.await_args.args
        assert session is None
        assert "make it shine" in prompt and "rough" in prompt and "doc.md" in prompt


def test_thought_label():
    assert thought_label(2500) == "Thought for 2s"
    assert thought_label(-1) == "Thought for 0s"
