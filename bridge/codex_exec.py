"""One-shot ``codex exec`` invocation, the batch fallback path.

A fresh run writes its answer to a scratch file passed with ``-o`` so the
reply never interleaves with progress output on stdout. A resume run
(``exec resume <session id>``) reads the whole of stdout as the reply.
Either way a session id may be recovered from the combined output.
"""

import asyncio
import logging
import os
import re
import shlex
import tempfile
import time
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from bridge.errors import CodexExecError
from bridge.models import AgentResult

logger = logging.getLogger(__name__)

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
SESSION_ID_PATTERNS = (
    re.compile(rf"session id:\s*({_UUID})", re.IGNORECASE),
    re.compile(rf"session_id[\"'\s:=]+({_UUID})", re.IGNORECASE),
    re.compile(rf"\"sessionId\"\s*:\s*\"({_UUID})\"", re.IGNORECASE),
)

# Flags from the user's codex_args that make no sense for a scripted exec run
_DROPPED_ARGS = frozenset({"-", "--", "--full-auto"})


def split_args(text: str) -> List[str]:
    """Shell-style split of the configured extra arguments."""
    if not text or not text.strip():
        return []
    try:
        return shlex.split(text)
    except ValueError as e:
        logger.debug("Unbalanced quoting in codex args %r (%s); splitting on whitespace", text, e)
        return text.split()


def pick_model_from_args(args: Sequence[str]) -> str:
    for i, item in enumerate(args):
        if item in ("-m", "--model"):
            return args[i + 1] if i + 1 < len(args) else ""
        if item.startswith("--model="):
            return item[len("--model="):]
    return ""


def scratch_output_path() -> Path:
    name = f"codex-bridge-{int(time.time() * 1000)}-{uuid.uuid4().hex}.txt"
    return Path(tempfile.gettempdir()) / name


def build_exec_args(
    *,
    codex_args: str,
    model: str,
    sandbox: str,
    session_id: str = "",
    image_paths: Sequence[str] = (),
    output_file: Optional[Path] = None,
) -> List[str]:
    """Argument vector (without the binary) for one batch run.

    ``session_id`` selects resume mode, which takes the prompt from stdin via
    a trailing ``-``; otherwise ``output_file`` is required.
    """
    extra = [a for a in split_args(codex_args) if a and a not in _DROPPED_ARGS]
    extra += ["-m", model]
    images: List[str] = []
    for path in image_paths:
        if path:
            images += ["-i", str(path)]

    if session_id:
        return ["exec", "resume", session_id, "--skip-git-repo-check", *extra, *images, "-"]
    if output_file is None:
        raise ValueError("output_file is required for a fresh exec run")
    return [
        "exec", "--skip-git-repo-check", "--color", "never", "--sandbox", sandbox,
        *extra, *images, "-o", str(output_file),
    ]


def extract_session_id(text: str) -> str:
    source = str(text or "")
    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(source)
        if match:
            return match.group(1)
    return ""


def _read_and_remove(path: Optional[Path]) -> str:
    if path is None or not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    finally:
        try:
            path.unlink()
        except OSError as e:
            logger.debug("Could not remove scratch file %s: %s", path, e)


async def run_codex_exec(
    command: str,
    prompt: str,
    *,
    codex_args: str,
    model: str,
    sandbox: str,
    session_id: str = "",
    image_paths: Sequence[str] = (),
    cwd=None,
) -> AgentResult:
    """Run one batch turn and return its answer.

    Raises ``CodexExecError`` on spawn failure or non-zero exit. If the
    awaiting task is cancelled the child is killed before the cancellation
    propagates. The scratch file is removed on every path.
    """
    output_file = None if session_id else scratch_output_path()
    argv = build_exec_args(
        codex_args=codex_args,
        model=model,
        sandbox=sandbox,
        session_id=session_id,
        image_paths=image_paths,
        output_file=output_file,
    )
    logger.debug("Running %s %s", command, " ".join(argv))

    try:
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *argv,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CodexExecError(f"Failed to start {command}: {e}") from e

        try:
            stdout_b, stderr_b = await proc.communicate(str(prompt or "").encode("utf-8"))
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        stdout = (stdout_b or b"").decode("utf-8", errors="replace")
        stderr = (stderr_b or b"").decode("utf-8", errors="replace")
        content = _read_and_remove(output_file)
    finally:
        if output_file is not None and output_file.exists():
            try:
                os.unlink(output_file)
            except OSError:
                pass

    if proc.returncode != 0:
        message = stderr.strip() or f"exit code {proc.returncode}"
        raise CodexExecError(message, returncode=proc.returncode, stderr=stderr)

    parsed_id = extract_session_id(f"{stderr}\n{stdout}")
    text = stdout.strip() if session_id else (content.strip() or stdout.strip())
    return AgentResult(text=text, session_id=parsed_id or session_id)
