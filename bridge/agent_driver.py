"""Agent Process Driver -- picks the streaming or batch path for one turn.

Given a session, a turn goes through ``codex app-server`` so the agent keeps
its own thread memory. If that path fails before the turn is accepted (the
binary lacks ``app-server``, the handshake breaks, ``thread/start`` returns
no id) the driver retries once with ``codex exec``. Failures of an accepted
turn and user interruption propagate unchanged.

Each invocation owns its child process and tears it down exactly once.
Cancellation goes through a per-invocation ``CancelToken``.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Sequence

from bridge.codex_app_server import AppServerSession, CodexAppServerClient, compose_base_instructions
from bridge.codex_exec import run_codex_exec
from bridge.config import BridgeSettings, selected_model
from bridge.errors import CodexAppServerError, InterruptedRunError, TurnError
from bridge.models import AgentResult, ProgressEvent, Session

logger = logging.getLogger(__name__)

STATUS_EXEC = "使用兼容模式执行中..."
STATUS_FALLBACK = "app-server 不可用，回退兼容模式..."

ProgressCallback = Callable[[ProgressEvent], None]


class CancelToken:
    """Cancellation handle for one driver invocation."""

    def __init__(self):
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> bool:
        """Request cancellation; returns False if already cancelled or settled."""
        if self._cancelled:
            return False
        if self._task is not None and self._task.done():
            return False
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
        return True


class ProgressStream:
    """Async-iterator view of a turn's progress events.

    Pass ``push`` as the driver's ``on_progress`` callback and ``attach`` the
    task running the turn. Iteration yields events and ends with a ``done``
    event; if the turn fails, iteration raises its exception instead.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Future] = None
        self._finished = False

    def push(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    def attach(self, task: asyncio.Future) -> None:
        self._task = task
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Future) -> None:
        self._queue.put_nowait(task)

    async def result(self):
        if self._task is None:
            raise RuntimeError("ProgressStream has no attached task")
        return await self._task

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, ProgressEvent):
            return item
        self._finished = True
        if item.cancelled():
            raise InterruptedRunError()
        if item.exception() is not None:
            raise item.exception()
        return ProgressEvent("done", "")


class AgentProcessDriver:
    """Runs prompts through the ``codex`` binary."""

    def __init__(self, settings: BridgeSettings, *, cwd=None, logs_dir: Optional[Path] = None):
        self.settings = settings
        self.cwd = str(cwd) if cwd else None
        self.logs_dir = logs_dir

    @property
    def sandbox_mode(self) -> str:
        return "workspace-write" if self.settings.agent_mode else "read-only"

    async def run(
        self,
        prompt: str,
        session: Optional[Session] = None,
        on_progress: Optional[ProgressCallback] = None,
        image_paths: Sequence[str] = (),
        cancel_token: Optional[CancelToken] = None,
    ) -> AgentResult:
        token = cancel_token or CancelToken()
        task = asyncio.create_task(self._run(prompt, session, on_progress, list(image_paths)))
        token.bind(task)
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                raise InterruptedRunError() from None
            raise

    async def _run(self, prompt, session, on_progress, image_paths) -> AgentResult:
        if session is None:
            return await self.run_exec(prompt, None, on_progress, image_paths)
        try:
            return await self.run_via_app_server(prompt, session, on_progress, image_paths)
        except TurnError:
            raise
        except CodexAppServerError as e:
            logger.warning("codex app-server unavailable, falling back to exec: %s", e)
            if on_progress is not None:
                on_progress(ProgressEvent("status", STATUS_FALLBACK))
            return await self.run_exec(prompt, session, on_progress, image_paths)

    async def run_via_app_server(
        self,
        prompt: str,
        session: Session,
        on_progress: Optional[ProgressCallback] = None,
        image_paths: Sequence[str] = (),
    ) -> AgentResult:
        client = CodexAppServerClient(binary=self.settings.codex_command, cwd=self.cwd, logs_dir=self.logs_dir)
        try:
            await client.start()
            runner = AppServerSession(
                client,
                cwd=self.cwd or "",
                model=selected_model(self.settings),
                sandbox=self.sandbox_mode,
                base_instructions=compose_base_instructions(self.settings.chat_system_prompt),
                turn_timeout=self.settings.turn_timeout_seconds,
                on_progress=on_progress,
            )
            return await runner.run_turn(
                prompt,
                thread_id=session.agent_thread_id,
                session_id=session.agent_session_id,
                image_paths=image_paths,
            )
        finally:
            await client.close()

    async def run_exec(
        self,
        prompt: str,
        session: Optional[Session] = None,
        on_progress: Optional[ProgressCallback] = None,
        image_paths: Sequence[str] = (),
    ) -> AgentResult:
        if on_progress is not None:
            on_progress(ProgressEvent("status", STATUS_EXEC))
        return await run_codex_exec(
            self.settings.codex_command,
            prompt,
            codex_args=self.settings.codex_args,
            model=selected_model(self.settings),
            sandbox=self.sandbox_mode,
            session_id=session.agent_session_id if session is not None else "",
            image_paths=image_paths,
            cwd=self.cwd,
        )

    async def summarize(self, prompt: str) -> str:
        """Standalone, session-less call (used by compaction)."""
        result = await self.run(prompt, session=None)
        return result.text
