"""Tests for bridge.agent_driver -- path selection, fallback and cancellation."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bridge.agent_driver import STATUS_EXEC, STATUS_FALLBACK, AgentProcessDriver, CancelToken, ProgressStream
from bridge.config import BridgeSettings
from bridge.errors import CodexAppServerError, InterruptedRunError, TurnFailedError
from bridge.models import AgentResult, ProgressEvent, Session


def _driver(command="codex", **settings):
    return AgentProcessDriver(BridgeSettings(codex_command=command, **settings), cwd=None)


# ---------------------------------------------------------------------------
# CancelToken / ProgressStream
# ---------------------------------------------------------------------------


class TestCancelToken:
    @pytest.mark.asyncio
    async def test_cancel_before_bind_cancels_on_bind(self):
        token = CancelToken()
        assert token.cancel() is True
        task = asyncio.create_task(asyncio.sleep(10))
        token.bind(task)
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancel_twice(self):
        token = CancelToken()
        token.bind(asyncio.create_task(asyncio.sleep(10)))
        assert token.cancel() is True
        assert token.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_after_done(self):
        token = CancelToken()
        task = asyncio.create_task(asyncio.sleep(0))
        token.bind(task)
        await task
        assert token.cancel() is False
        assert not token.cancelled


class TestProgressStream:
    @pytest.mark.asyncio
    async def test_events_then_done(self):
        stream = ProgressStream()

        async def work():
            stream.push(ProgressEvent("delta", "a"))
            await asyncio.sleep(0)
            stream.push(ProgressEvent("delta", "b"))
            return "result"

        stream.attach(asyncio.create_task(work()))
        seen = [e async for e in stream]
        assert [(e.type, e.text) for e in seen] == [("delta", "a"), ("delta", "b"), ("done", "")]
        assert await stream.result() == "result"

    @pytest.mark.asyncio
    async def test_failure_raises_from_iteration(self):
        stream = ProgressStream()

        async def work():
            stream.push(ProgressEvent("status", "x"))
            raise TurnFailedError("bad")

        stream.attach(asyncio.create_task(work()))
        seen = []
        with pytest.raises(TurnFailedError):
            async for event in stream:
                seen.append(event.type)
        assert seen == ["status"]

    @pytest.mark.asyncio
    async def test_cancelled_task_is_interruption(self):
        stream = ProgressStream()
        task = asyncio.create_task(asyncio.sleep(10))
        stream.attach(task)
        task.cancel()
        with pytest.raises(InterruptedRunError):
            async for _ in stream:
                pass


# ---------------------------------------------------------------------------
# Path selection (mocked paths)
# ---------------------------------------------------------------------------


class TestPathSelection:
    def test_sandbox_follows_agent_mode(self):
        assert _driver(agent_mode=True).sandbox_mode == "workspace-write"
        assert _driver(agent_mode=False).sandbox_mode == "read-only"

    @pytest.mark.asyncio
    async def test_no_session_goes_straight_to_exec(self):
        driver = _driver()
        with patch.object(driver, "run_via_app_server", new=AsyncMock()) as app, \
             patch.object(driver, "run_exec", new=AsyncMock(return_value=AgentResult("x"))) as exe:
            result = await driver.run("p", None)
        assert result.text == "x"
        app.assert_not_called()
        exe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_protocol_error_falls_back_with_status(self):
        driver = _driver()
        events = []
        with patch.object(driver, "run_via_app_server", new=AsyncMock(side_effect=CodexAppServerError("no app-server"))), \
             patch.object(driver, "run_exec", new=AsyncMock(return_value=AgentResult("fallback"))) as exe:
            result = await driver.run("p", Session(), events.append)
        assert result.text == "fallback"
        exe.assert_awaited_once()
        assert ProgressEvent("status", STATUS_FALLBACK) in events

    @pytest.mark.asyncio
    async def test_turn_error_propagates_without_fallback(self):
        driver = _driver()
        with patch.object(driver, "run_via_app_server", new=AsyncMock(side_effect=TurnFailedError("model died"))), \
             patch.object(driver, "run_exec", new=AsyncMock()) as exe:
            with pytest.raises(TurnFailedError):
                await driver.run("p", Session())
        exe.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_token_interrupts(self):
        driver = _driver()

        async def slow(*args, **kwargs):
            await asyncio.sleep(10)

        token = CancelToken()
        with patch.object(driver, "run_via_app_server", new=AsyncMock(side_effect=slow)):
            run = asyncio.create_task(driver.run("p", Session(), cancel_token=token))
            await asyncio.sleep(0.05)
            assert token.cancel() is True
            with pytest.raises(InterruptedRunError):
                await run

    @pytest.mark.asyncio
    async def test_summarize_is_sessionless(self):
        driver = _driver()
        with patch.object(driver, "run_exec", new=AsyncMock(return_value=AgentResult("summary"))) as exe:
            assert await driver.summarize("prompt") == "summary"
        assert exe.await_args.args[1] is None


# ---------------------------------------------------------------------------
# End to end against the fake binary
# ---------------------------------------------------------------------------


class TestDriverAgainstFakeBinary:
    @pytest.mark.asyncio
    async def test_streaming_path(self, fake_codex, tmp_path):
        driver = AgentProcessDriver(BridgeSettings(codex_command=fake_codex), cwd=tmp_path, logs_dir=tmp_path / "logs")
        result = await driver.run("hi", Session())
        assert result.text == "Hello world"
        assert result.thread_id == "thread-new"

    @pytest.mark.asyncio
    async def test_resume_rejected_starts_new_thread(self, fake_codex, monkeypatch):
        monkeypatch.setenv("FAKE_CODEX_MODE", "resume_fails")
        events = []
        driver = _driver(fake_codex)
        result = await driver.run("hi", Session(agent_thread_id="stale"), events.append)
        assert result.thread_id == "thread-new"
        assert result.text == "Hello world"
        assert STATUS_FALLBACK not in [e.text for e in events]

    @pytest.mark.asyncio
    async def test_missing_app_server_falls_back_to_exec(self, fake_codex, fake_codex_log, monkeypatch):
        monkeypatch.setenv("FAKE_CODEX_MODE", "no_app_server")
        events = []
        result = await _driver(fake_codex).run("hi", Session(), events.append)
        assert result.text == "exec answer"
        assert [e.text for e in events if e.type == "status"][-2:] == [STATUS_FALLBACK, STATUS_EXEC]
        assert any("prompt" in e for e in fake_codex_log())

    @pytest.mark.asyncio
    async def test_closed_stdout_falls_back_without_waiting(self, fake_codex, monkeypatch):
        monkeypatch.setenv("FAKE_CODEX_MODE", "close_after_init")
        result = await asyncio.wait_for(_driver(fake_codex).run("hi", Session()), timeout=10)
        assert result.text == "exec answer"

    @pytest.mark.asyncio
    async def test_missing_thread_id_falls_back_to_exec(self, fake_codex, monkeypatch):
        monkeypatch.setenv("FAKE_CODEX_MODE", "no_thread")
        assert (await _driver(fake_codex).run("hi", Session())).text == "exec answer"

    @pytest.mark.asyncio
    async def test_agent_error_is_not_retried(self, fake_codex, fake_codex_log, monkeypatch):
        monkeypatch.setenv("FAKE_CODEX_MODE", "turn_error")
        with pytest.raises(TurnFailedError, match="model overloaded"):
            await _driver(fake_codex).run("hi", Session())
        assert not any("prompt" in e for e in fake_codex_log())
