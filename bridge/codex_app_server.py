"""Minimal stdio JSON-RPC client for `codex app-server`, plus the turn protocol.

``CodexAppServerClient`` owns one child process: it matches responses to
requests by id and queues server notifications. ``AppServerSession`` drives
one turn over that client (initialize, resume or start a thread, listen,
``turn/start``, wait for completion) and ``TurnState`` folds the turn's
notifications into a final answer.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from bridge_constants import CLIENT_NAME, CLIENT_TITLE, CLIENT_VERSION, DEFAULT_TURN_TIMEOUT_SECONDS
from bridge.errors import CodexAppServerError, TurnFailedError, TurnTimeoutError
from bridge.models import AgentResult, ProgressEvent

logger = logging.getLogger(__name__)

RPC_LOG_ENV = "CODEX_BRIDGE_RPC_LOG"
STREAM_LIMIT = 32 * 1024 * 1024
CLOSE_GRACE_SECONDS = 2.0

_STREAM_CLOSED = object()


@dataclass
class RpcResponse:
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class CodexAppServerClient:
    """JSON-RPC client for codex app-server over stdio."""

    def __init__(
        self,
        *,
        binary: str = "codex",
        base_args: Sequence[str] = (),
        cwd: Optional[str] = None,
        logs_dir: Optional[Path] = None,
    ) -> None:
        self.binary = binary
        self.base_args = list(base_args)
        self.cwd = cwd
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._next_id = 1
        self._pending: Dict[int, asyncio.Future] = {}
        self._notifications: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._stream_closed = False
        self._stderr_log_path = None
        self._rpc_log_path = None
        if logs_dir is not None:
            logs_dir = Path(logs_dir)
            try:
                logs_dir.mkdir(parents=True, exist_ok=True)
                self._stderr_log_path = logs_dir / "codex-app-server.log"
                self._rpc_log_path = logs_dir / "codex-app-server-rpc.log"
            except OSError as e:
                logger.debug("App-server log dir unavailable: %s", e)
        self._rpc_log_enabled = str(os.getenv(RPC_LOG_ENV, "")).strip().lower() in {"1", "true", "yes", "on"}

    @property
    def running(self) -> bool:
        return self._proc is not None and not self._closed and not self._stream_closed

    async def start(self) -> None:
        if self._proc is not None:
            return
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.binary,
                *self.base_args,
                "app-server",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise CodexAppServerError(f"Failed to start {self.binary} app-server: {exc}") from exc
        self._reader_task = asyncio.create_task(self._reader_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())

    async def close(self) -> None:
        """Stop the child process; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        proc = self._proc
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        self._fail_all_pending("codex app-server client closed")
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=CLOSE_GRACE_SECONDS)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass

    async def __aenter__(self) -> "CodexAppServerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def initialize(
        self,
        *,
        client_name: str = CLIENT_NAME,
        client_title: str = CLIENT_TITLE,
        client_version: str = CLIENT_VERSION,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "clientInfo": {
                "name": client_name,
                "title": client_title,
                "version": client_version,
            },
            "capabilities": None,
        }
        result = await self.call("initialize", params=params, timeout=15.0)
        await self.notify("initialized", params={})
        return result

    async def call(self, method: str, *, params: Optional[Dict[str, Any]] = None, timeout: float = 30.0) -> Dict[str, Any]:
        req_id = self._allocate_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}})
            response: RpcResponse = await asyncio.wait_for(future, timeout=max(0.1, timeout))
        except asyncio.TimeoutError as exc:
            raise CodexAppServerError(f"Timed out waiting for response to {method}") from exc
        finally:
            self._pending.pop(req_id, None)
        if response.error:
            code = response.error.get("code")
            message = response.error.get("message", "Unknown error")
            raise CodexAppServerError(f"{method} failed ({code}): {message}")
        return response.result if isinstance(response.result, dict) else {}

    async def notify(self, method: str, *, params: Optional[Dict[str, Any]] = None) -> None:
        await self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def next_notification(self) -> Dict[str, Any]:
        """Next server notification; raises once the stream has ended."""
        msg = await self._notifications.get()
        if msg is _STREAM_CLOSED:
            self._notifications.put_nowait(_STREAM_CLOSED)
            raise CodexAppServerError("codex app-server stream closed")
        return msg

    def _allocate_id(self) -> int:
        req_id = self._next_id
        self._next_id += 1
        return req_id

    async def _send(self, payload: Dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or self._closed:
            raise CodexAppServerError("codex app-server process is not running")
        if self._stream_closed:
            raise CodexAppServerError("codex app-server stream closed")
        line = json.dumps(payload, ensure_ascii=False)
        self._log_rpc(">>", payload)
        async with self._write_lock:
            try:
                proc.stdin.write((line + "\n").encode("utf-8"))
                await proc.stdin.drain()
            except (ConnectionError, RuntimeError) as exc:
                raise CodexAppServerError("Failed writing to codex app-server stdin") from exc

    async def _reader_loop(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        try:
            while True:
                raw_line = await proc.stdout.readline()
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line)
                except ValueError:
                    logger.debug("Invalid app-server JSON line: %s", line)
                    continue
                self._dispatch_message(msg)
        except ValueError as exc:
            logger.warning("codex app-server stdout unreadable: %s", exc)
        finally:
            self._stream_closed = True
            self._fail_all_pending("codex app-server stream closed")
            self._notifications.put_nowait(_STREAM_CLOSED)

    async def _stderr_loop(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            raw_line = await proc.stderr.readline()
            if not raw_line:
                return
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.debug("codex app-server stderr: %s", line)
            if self._stderr_log_path is None:
                continue
            try:
                ts = datetime.now().isoformat(timespec="seconds")
                with self._stderr_log_path.open("a", encoding="utf-8") as f:
                    f.write(f"{ts} {line}\n")
            except OSError:
                # Logging must never break the stderr reader loop.
                pass

    def _dispatch_message(self, msg: Dict[str, Any]) -> None:
        if not isinstance(msg, dict):
            return
        self._log_rpc("<<", msg)
        if "id" in msg and ("result" in msg or "error" in msg):
            req_id = msg.get("id")
            if not isinstance(req_id, int):
                return
            future = self._pending.pop(req_id, None)
            if future is None or future.done():
                return
            error = msg.get("error")
            future.set_result(RpcResponse(
                result=msg.get("result"),
                error=error if isinstance(error, dict) or error is None else {"message": str(error)},
            ))
            return
        if "method" in msg:
            self._notifications.put_nowait(msg)

    def _fail_all_pending(self, reason: str) -> None:
        pending = list(self._pending.items())
        self._pending.clear()
        for _, future in pending:
            if not future.done():
                future.set_result(RpcResponse(error={"code": -1, "message": reason}))

    def _log_rpc(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self._rpc_log_enabled or self._rpc_log_path is None:
            return
        try:
            ts = datetime.now().isoformat(timespec="seconds")
            serialized = json.dumps(payload, ensure_ascii=False)
            with self._rpc_log_path.open("a", encoding="utf-8") as f:
                f.write(f"{ts} {direction} {serialized}\n")
        except (OSError, TypeError, ValueError):
            pass


# ---------------------------------------------------------------------------
# Turn protocol
# ---------------------------------------------------------------------------

STATUS_CONNECTED = "已连接 Codex，会话初始化中..."
STATUS_RESUME_FAILED = "会话恢复失败，已自动回退到历史拼接模式..."
STATUS_LISTENING = "已建立流式监听，准备生成..."
STATUS_TURN_STARTED = "已发送，模型思考中..."
STATUS_REASONING = "模型正在推理..."
STATUS_TOOL = "正在调用工具..."
STATUS_COMPLETED = "生成完成，正在整理..."

TOOL_ITEM_TYPES = ("commandExecution", "mcpToolCall")

BEHAVIOR_RULES = (
    "你是 Obsidian 内的对话助手。",
    "请直接回答用户消息，不要把正常对话改写成“你想在 vault 做什么”。",
    "除非用户明确要求，否则不要输出技能分流或安装指引。",
    "默认使用中文回答。",
)

ProgressCallback = Callable[[ProgressEvent], None]


def compose_base_instructions(system_prompt: str) -> str:
    return "\n".join(p for p in (system_prompt or "", *BEHAVIOR_RULES) if p)


class TurnState:
    """Accumulates the notifications of one turn on one thread.

    Notifications for any other thread, or for a stale turn once the active
    turn id is known, are ignored.
    """

    def __init__(self, thread_id: str, on_progress: Optional[ProgressCallback] = None):
        self.thread_id = thread_id
        self.turn_id = ""
        self.on_progress = on_progress
        self._chunks: List[str] = []

    @property
    def streamed_text(self) -> str:
        return "".join(self._chunks)

    def _emit(self, event_type: str, text: str) -> None:
        if self.on_progress is not None and text:
            self.on_progress(ProgressEvent(event_type, text))

    def _same_thread(self, params: Dict[str, Any]) -> bool:
        return params.get("threadId") == self.thread_id

    def _same_turn(self, turn_id) -> bool:
        return not self.turn_id or turn_id == self.turn_id

    def handle(self, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply one notification; returns the completed turn when it finishes.

        Raises ``TurnFailedError`` when the server reports an error for the
        active turn.
        """
        method = msg.get("method")
        params = msg.get("params")
        if not isinstance(params, dict) or not self._same_thread(params):
            return None

        if method == "item/agentMessage/delta":
            if self._same_turn(params.get("turnId")):
                delta = str(params.get("delta") or "")
                self._chunks.append(delta)
                self._emit("delta", delta)
        elif method in ("item/reasoning/textDelta", "item/reasoning/summaryTextDelta"):
            if self._same_turn(params.get("turnId")):
                self._emit("reasoning", str(params.get("delta") or ""))
        elif method == "turn/started":
            self._emit("status", STATUS_TURN_STARTED)
        elif method == "item/started":
            item = params.get("item") if isinstance(params.get("item"), dict) else {}
            item_type = str(item.get("type") or "")
            if item_type == "reasoning":
                self._emit("status", STATUS_REASONING)
            elif item_type in TOOL_ITEM_TYPES:
                self._emit("tool", STATUS_TOOL)
        elif method == "turn/completed":
            turn = params.get("turn")
            if isinstance(turn, dict) and self._same_turn(turn.get("id")):
                self._emit("status", STATUS_COMPLETED)
                return turn
        elif method == "error":
            if self._same_turn(params.get("turnId")):
                error = params.get("error") if isinstance(params.get("error"), dict) else {}
                raise TurnFailedError(str(error.get("message") or "turn failed"))
        return None

    def final_text(self, turn: Optional[Dict[str, Any]]) -> str:
        text = self.streamed_text.strip()
        if text or not isinstance(turn, dict):
            return text
        items = turn.get("items") if isinstance(turn.get("items"), list) else []
        texts = [
            it["text"]
            for it in items
            if isinstance(it, dict) and it.get("type") == "agentMessage" and isinstance(it.get("text"), str)
        ]
        return "\n".join(texts).strip()


class AppServerSession:
    """Runs one turn over a started client.

    Anything that fails before ``turn/start`` is accepted raises
    ``CodexAppServerError``; failures of the accepted turn raise a
    ``TurnError`` subclass.
    """

    def __init__(
        self,
        client: CodexAppServerClient,
        *,
        cwd: str,
        model: str,
        sandbox: str,
        base_instructions: str,
        turn_timeout: float = DEFAULT_TURN_TIMEOUT_SECONDS,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.client = client
        self.cwd = cwd
        self.model = model
        self.sandbox = sandbox
        self.base_instructions = base_instructions
        self.turn_timeout = turn_timeout
        self.on_progress = on_progress
        self.turn_accepted = False

    def _status(self, text: str) -> None:
        if self.on_progress is not None:
            self.on_progress(ProgressEvent("status", text))

    async def _resume_thread(self, thread_id: str) -> str:
        try:
            resumed = await self.client.call("thread/resume", params={"threadId": thread_id})
        except CodexAppServerError as e:
            logger.info("thread/resume %s failed, starting a new thread: %s", thread_id, e)
            self._status(STATUS_RESUME_FAILED)
            return ""
        thread = resumed.get("thread") if isinstance(resumed.get("thread"), dict) else {}
        return str(thread.get("id") or thread_id)

    async def _start_thread(self) -> str:
        started = await self.client.call("thread/start", params={
            "cwd": self.cwd,
            "model": self.model,
            "approvalPolicy": "never",
            "sandbox": self.sandbox,
            "baseInstructions": self.base_instructions,
            "developerInstructions": None,
        })
        thread = started.get("thread") if isinstance(started.get("thread"), dict) else {}
        thread_id = str(thread.get("id") or "")
        if not thread_id:
            raise CodexAppServerError("thread/start 未返回 threadId")
        return thread_id

    async def _wait_for_turn(self, state: TurnState) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.turn_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TurnTimeoutError("turn timeout")
            try:
                msg = await asyncio.wait_for(self.client.next_notification(), timeout=remaining)
            except asyncio.TimeoutError:
                raise TurnTimeoutError("turn timeout") from None
            except CodexAppServerError as e:
                raise TurnFailedError(str(e)) from e
            turn = state.handle(msg)
            if turn is not None:
                return turn

    async def run_turn(
        self,
        prompt: str,
        *,
        thread_id: str = "",
        session_id: str = "",
        image_paths: Sequence[str] = (),
    ) -> AgentResult:
        await self.client.initialize()
        self._status(STATUS_CONNECTED)

        if thread_id:
            thread_id = await self._resume_thread(thread_id)
        if not thread_id:
            thread_id = await self._start_thread()

        listener = await self.client.call(
            "addConversationListener",
            params={"conversationId": thread_id, "experimentalRawEvents": False},
        )
        self._status(STATUS_LISTENING)
        subscription_id = listener.get("subscriptionId")

        turn_input: List[Dict[str, Any]] = [{"type": "text", "text": str(prompt or ""), "text_elements": []}]
        turn_input += [{"type": "localImage", "path": str(p)} for p in image_paths if p]

        state = TurnState(thread_id, self.on_progress)
        started = await self.client.call("turn/start", params={"threadId": thread_id, "input": turn_input})
        self.turn_accepted = True
        turn = started.get("turn") if isinstance(started.get("turn"), dict) else {}
        state.turn_id = str(turn.get("id") or "")

        completed = await self._wait_for_turn(state)
        text = state.final_text(completed)

        if isinstance(subscription_id, str) and subscription_id:
            try:
                await self.client.call("removeConversationListener", params={"subscriptionId": subscription_id})
            except CodexAppServerError as e:
                logger.debug("removeConversationListener failed: %s", e)

        return AgentResult(text=text, session_id=session_id, thread_id=thread_id)
