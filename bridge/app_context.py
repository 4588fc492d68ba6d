"""Application context -- one object owning every long-lived component.

Construction order matters: vault and editor state first, then the session
store (its blob also carries settings), the skill catalog and mention
resolver, the agent driver, the budget manager (which summarizes through the
driver) and finally the prompt builder (which consults all of the above).
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from bridge_constants import get_bridge_home
from bridge.agent_driver import AgentProcessDriver, CancelToken
from bridge.config import BridgeSettings, load_settings, model_options, selected_model
from bridge.context_budget import ContextBudgetManager
from bridge.mentions import MentionResolver
from bridge.prompt_builder import PromptBuilder
from bridge.session_store import JsonStateBackend, SessionStore, trim_session_messages
from bridge.skill_catalog import SkillCatalog, default_skill_roots, parse_skill_roots
from bridge.vault import EditorState, Vault

logger = logging.getLogger(__name__)

STARTUP_FAILURE_NOTICE = "Codex Bridge 初始化异常，已回退到默认会话。"
STATE_FILE = "state.json"


class BridgeApp:
    """Wires settings, storage and the agent driver together.

    ``notify`` receives transient user-facing notices (the CLI prints them).
    """

    def __init__(
        self,
        settings: BridgeSettings,
        home: Optional[Path] = None,
        backend=None,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self.settings = settings
        self.home = Path(home) if home else get_bridge_home()
        self.notify = notify or (lambda text: logger.info("%s", text))

        self.vault = Vault(settings.resolved_vault_path())
        self.editor = EditorState()
        self.store = SessionStore(
            backend or JsonStateBackend(self.home / STATE_FILE),
            settings_provider=self.settings.persisted_fields,
        )
        self.skills = SkillCatalog(default_skill_roots(self.vault.root, parse_skill_roots(settings.skill_roots)))
        self.resolver = MentionResolver(self.vault)
        self.driver = AgentProcessDriver(settings, cwd=self.vault.root, logs_dir=self.home / "logs")
        self.budget = ContextBudgetManager(settings, self.store, self.driver.summarize, editor=self.editor)
        self.prompts = PromptBuilder(
            settings,
            vault=self.vault,
            editor=self.editor,
            resolver=self.resolver,
            skills=self.skills,
            budget=self.budget,
        )
        self._active_run: Optional[CancelToken] = None
        self.startup_notice = ""

    @classmethod
    def create(cls, home: Optional[Path] = None, notify: Optional[Callable[[str], None]] = None, **overrides):
        """Load settings (persisted blob < config.yaml < env) and build the app."""
        home = Path(home) if home else get_bridge_home()
        backend = JsonStateBackend(home / STATE_FILE)
        try:
            persisted = backend.load()
        except (OSError, ValueError) as e:
            logger.warning("Could not read persisted settings: %s", e)
            persisted = {}
        settings = load_settings(home, persisted)
        if overrides:
            settings = settings.model_copy(update=overrides)
        return cls(settings, home=home, backend=backend, notify=notify)

    # ----- Lifecycle -----

    async def startup(self) -> None:
        try:
            await self.store.load()
        except Exception as e:
            logger.warning("Failed to load session state, starting with a default session: %s", e)
            self.store.reset_to_default()
            self.startup_notice = STARTUP_FAILURE_NOTICE
            self.notify(STARTUP_FAILURE_NOTICE)

    async def shutdown(self) -> None:
        self.interrupt_active_run()
        self._active_run = None
        await self.store.flush()
        await self.store.persist_quietly()

    # ----- Active run slot -----

    def begin_run(self) -> CancelToken:
        """Fresh token for a new turn; it replaces the previous one as the interruptible run."""
        token = CancelToken()
        self._active_run = token
        return token

    def interrupt_active_run(self) -> bool:
        token = self._active_run
        return token.cancel() if token is not None else False

    def clear_active_run(self, token: Optional[CancelToken] = None) -> None:
        if token is None or self._active_run is token:
            self._active_run = None

    # ----- Models & modes -----

    def model_options(self) -> List[str]:
        return model_options(self.settings)

    def selected_model(self) -> str:
        return selected_model(self.settings)

    async def set_selected_model(self, model: str) -> bool:
        value = str(model or "").strip()
        if not value:
            return False
        self.settings.selected_model = value
        await self.store.persist()
        return True

    async def set_agent_mode(self, enabled: bool, session=None) -> None:
        self.settings.agent_mode = bool(enabled)
        if session is not None:
            session.touch()
            trim_session_messages(session)
        await self.store.persist()
