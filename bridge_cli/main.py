"""
Codex Bridge command-line entry point.

Every command builds a ``BridgeApp`` from the bridge home (settings, state,
logs), runs one coroutine on a fresh event loop and persists on the way out.

Usage:
    codex-bridge chat [--note=PATH]
    codex-bridge send "summarize this" [--note=PATH] [--images=a.png,b.png]
    codex-bridge sessions | new | use ID | delete ID
    codex-bridge compact | usage | models [--select=MODEL]
    codex-bridge skills [--refresh] [--query=TEXT]
    codex-bridge process notes.md [--instruction=TEXT] [--write]

Global flags (any position): --home=DIR --vault=DIR --verbose
"""

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import fire

from bridge_constants import get_bridge_home
from bridge.agent_driver import ProgressStream
from bridge.app_context import BridgeApp
from bridge.async_bridge import run_async
from bridge.chat import ChatTurnRunner, apply_processed_text, ensure_auto_doc_mention, process_text
from bridge.errors import BridgeError
from bridge_cli.models import menu_labels

logger = logging.getLogger(__name__)

LOG_FILE = "bridge.log"
EXIT_COMMANDS = ("/exit", "/quit")


def setup_logging(home: Path, verbose: bool = False) -> None:
    """Console logging on stderr plus a rotating file under ``<home>/logs``."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    try:
        log_dir = home / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_dir / LOG_FILE, maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8")
    except OSError as e:
        logger.warning("File logging disabled: %s", e)
        return
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root = logging.getLogger()
    root.addHandler(handler)
    if root.level > handler.level:
        root.setLevel(handler.level)


def _split_list(value) -> list:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    return [p.strip() for p in str(value).split(",") if p.strip()]


class BridgeCLI:
    """Codex Bridge -- chat with a local codex agent over your notes.

    Args:
        home: Bridge home directory (default: $CODEX_BRIDGE_HOME or ~/.codex-bridge).
        vault: Document root the agent works in (default: settings, then cwd).
        verbose: Enable debug logging.
    """

    def __init__(self, home: Optional[str] = None, vault: Optional[str] = None, verbose: bool = False):
        self._home = Path(home).expanduser() if home else get_bridge_home()
        self._vault = vault
        setup_logging(self._home, verbose)

    # ----- plumbing -----

    @staticmethod
    def _notify(text: str) -> None:
        print(f"[notice] {text}", file=sys.stderr)

    def _run(self, handler):
        """Run ``handler(app)`` with the app started up and shut down around it.

        A truthy handler result is used as the process exit code.
        """
        async def main():
            overrides = {"vault_path": str(self._vault)} if self._vault else {}
            app = BridgeApp.create(self._home, notify=self._notify, **overrides)
            await app.startup()
            try:
                return await handler(app)
            finally:
                await app.shutdown()

        try:
            code = run_async(main())
        except (BridgeError, OSError, UnicodeDecodeError) as e:
            print(f"Error: {e}", file=sys.stderr)
            code = 1
        if code:
            sys.exit(code)

    @staticmethod
    def _capture_note(app: BridgeApp, note: Optional[str]) -> None:
        if not note:
            return
        file = app.vault.get_markdown_file(str(note))
        if file is None:
            print(f"[notice] Document not found in vault: {note}", file=sys.stderr)
            return
        try:
            text = app.vault.read(file)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Could not read --note document %s: %s", file.path, e)
            print(f"[notice] Could not read {file.path}; continuing without document context", file=sys.stderr)
            return
        app.editor.capture_note(file.path, text)

    @staticmethod
    async def _stream_turn(app: BridgeApp, runner: ChatTurnRunner, text: str, images=()):
        session = app.store.get_active_session()
        await ensure_auto_doc_mention(app, session)
        mentions = list(session.draft_mentions) if session is not None else []

        stream = ProgressStream()
        task = asyncio.ensure_future(
            runner.send_message(text, mentions=mentions, image_paths=images, on_progress=stream.push)
        )
        stream.attach(task)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, app.interrupt_active_run)
            trapped = True
        except (NotImplementedError, RuntimeError):
            trapped = False

        streamed = False
        try:
            async for event in stream:
                if event.type == "delta":
                    sys.stdout.write(event.text)
                    sys.stdout.flush()
                    streamed = True
                elif event.type in ("status", "tool") and event.text:
                    print(f"  ... {event.text}", file=sys.stderr)
        finally:
            if trapped:
                loop.remove_signal_handler(signal.SIGINT)

        outcome = await stream.result()
        if outcome is None:
            return None
        if not streamed or not outcome.ok:
            if streamed:
                print()
            print(outcome.message.content)
        else:
            print()
        if outcome.message.thought_label:
            print(f"  ({outcome.message.thought_label})", file=sys.stderr)
        return outcome

    # ----- commands -----

    def send(self, text: str, note: Optional[str] = None, images=None):
        """Send one chat turn on the active session and stream the answer."""
        async def handler(app):
            self._capture_note(app, note)
            runner = ChatTurnRunner(app)
            outcome = await self._stream_turn(app, runner, str(text), _split_list(images))
            if outcome is not None and not outcome.ok and not outcome.interrupted:
                return 1

        self._run(handler)

    def chat(self, note: Optional[str] = None):
        """Interactive chat loop. Ctrl+C interrupts the running turn; /exit quits.

        In-chat commands: /new, /compact, /usage, /exit.
        """
        async def handler(app):
            self._capture_note(app, note)
            runner = ChatTurnRunner(app)
            session = app.store.get_active_session()
            print(f"Session: {session.title} ({session.id})  -- /exit to quit")
            while True:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    print()
                    return
                line = line.strip()
                if not line:
                    continue
                if line in EXIT_COMMANDS:
                    return
                if line == "/new":
                    session = await app.store.create_session()
                    print(f"New session {session.id}")
                    continue
                if line == "/compact":
                    await self._compact(app)
                    continue
                if line == "/usage":
                    self._print_usage(app)
                    continue
                await self._stream_turn(app, runner, line)

        self._run(handler)

    def sessions(self):
        """List stored sessions, newest first; the active one is marked."""
        async def handler(app):
            for s in app.store.sessions:
                marker = "*" if s.id == app.store.active_session_id else " "
                print(f"{marker} {s.id}  {s.title}  ({len(s.messages)} messages)")

        self._run(handler)

    def new(self):
        """Start a new session and make it active."""
        async def handler(app):
            session = await app.store.create_session()
            print(session.id)

        self._run(handler)

    def use(self, session_id: str):
        """Switch the active session."""
        async def handler(app):
            session = await app.store.set_active(str(session_id))
            if session is None:
                print(f"No such session: {session_id}", file=sys.stderr)
                return 1
            print(f"Active: {session.title} ({session.id})")

        self._run(handler)

    def delete(self, session_id: str):
        """Delete a session; a fresh one is created if none remain."""
        async def handler(app):
            active = await app.store.delete_session(str(session_id))
            print(f"Active: {active.title} ({active.id})")

        self._run(handler)

    @staticmethod
    async def _compact(app: BridgeApp) -> None:
        session = app.store.get_active_session()
        result = await app.budget.compact(session, "manual")
        if result.performed:
            print(f"Compacted {result.summarized_count} messages.")
        else:
            print("Nothing to compact.")

    def compact(self):
        """Summarize older history of the active session into compacted memory."""
        self._run(self._compact)

    @staticmethod
    def _print_usage(app: BridgeApp) -> None:
        usage = app.budget.estimate_usage(app.store.get_active_session())
        print(f"Context: {usage.used}/{usage.max} tokens ({usage.ratio:.0%})")

    def usage(self):
        """Show the estimated context occupancy of the active session."""
        async def handler(app):
            self._print_usage(app)

        self._run(handler)

    def skills(self, refresh: bool = False, query: str = ""):
        """List discovered skills (filtered by --query)."""
        async def handler(app):
            if refresh:
                app.skills.invalidate()
            found = app.skills.search(query) if query else app.skills.list_skills()
            if not found:
                print("No skills found.")
            for skill in found:
                line = f"{skill.id}  {skill.name}"
                print(f"{line}  - {skill.description}" if skill.description else line)

        self._run(handler)

    def process(self, file: str, instruction: str = "", write: bool = False):
        """Rewrite a document with the prompt template; --write applies it in place."""
        async def handler(app):
            target = app.vault.get_markdown_file(str(file))
            path = app.vault.root / target.path if target is not None else Path(file)
            original = await asyncio.to_thread(path.read_text, encoding="utf-8")
            output = await process_text(app, original, instruction, target.path if target else str(file))
            if not output:
                print("Agent returned an empty result; nothing applied.", file=sys.stderr)
                return 1
            if not write:
                print(output)
                return
            updated = apply_processed_text(original, output, app.settings.apply_mode)
            await asyncio.to_thread(path.write_text, updated, encoding="utf-8")
            print(f"Updated {path} ({app.settings.apply_mode})")

        self._run(handler)

    def models(self, select: Optional[str] = None):
        """List configured model options; --select persists a new choice."""
        async def handler(app):
            if select:
                await app.set_selected_model(str(select))
            for label in menu_labels(app.model_options(), app.selected_model()):
                print(label)

        self._run(handler)


def main():
    fire.Fire(BridgeCLI)


if __name__ == "__main__":
    main()
