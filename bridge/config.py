"""Bridge settings -- defaults, persisted blob, config.yaml and environment.

Precedence (lowest to highest):
    1. ``BridgeSettings`` defaults
    2. settings fields stored in the persisted state blob
    3. ``<home>/config.yaml``
    4. ``CODEX_BRIDGE_<FIELD>`` environment variables

``<home>/.env`` is loaded into the environment first, then a project ``.env``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from bridge_constants import (
    DEFAULT_TURN_TIMEOUT_SECONDS,
    FALLBACK_MODEL,
    LEGACY_MODEL_OPTIONS,
    RECOMMENDED_MODEL_OPTIONS,
    get_bridge_home,
)
from bridge.codex_exec import pick_model_from_args, split_args
from bridge.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CODEX_BRIDGE_"

DEFAULT_PROMPT_TEMPLATE = (
    "你是 Obsidian 写作助手。请根据下面要求处理文本。\n"
    "要求：{{instruction}}\n\n"
    "文件：{{file}}\n\n"
    "文本开始\n{{text}}\n文本结束\n\n"
    "只输出最终文本，不要解释。"
)

DEFAULT_CHAT_SYSTEM_PROMPT = (
    "你是 Obsidian 中的 AI 助手。默认使用中文回答，直接回答问题，不要只反问用户。"
    "若用户提到“这个文档/本文/这篇”，默认指当前打开文档并直接基于文档内容完成任务。"
)


class BridgeSettings(BaseModel):
    """User-tunable settings, persisted in camelCase alongside the sessions."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    codex_command: str = "codex"
    codex_args: str = "--full-auto"
    selected_model: str = "gpt-5.2-codex"
    model_options: str = RECOMMENDED_MODEL_OPTIONS
    agent_mode: bool = True
    native_context_mode: bool = True
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    apply_mode: str = "replace"
    chat_system_prompt: str = DEFAULT_CHAT_SYSTEM_PROMPT
    include_note_context_in_chat: bool = True
    send_shortcut: str = "enter"
    show_1m_context: bool = Field(default=False, alias="show1MContext")
    turn_timeout_seconds: float = DEFAULT_TURN_TIMEOUT_SECONDS
    vault_path: str = ""
    skill_roots: List[str] = Field(default_factory=list)

    def persisted_fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def resolved_vault_path(self) -> Path:
        return Path(self.vault_path).expanduser() if self.vault_path else Path.cwd()


def _field_names_by_key() -> Dict[str, str]:
    mapping = {}
    for name, info in BridgeSettings.model_fields.items():
        mapping[name] = name
        if info.alias:
            mapping[info.alias] = name
    return mapping


def _canonical(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map snake_case or camelCase keys to field names, dropping unknown keys."""
    keys = _field_names_by_key()
    return {keys[k]: v for k, v in raw.items() if isinstance(k, str) and k in keys}


def load_env_files(home: Path) -> None:
    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


def read_config_yaml(home: Path) -> Dict[str, Any]:
    path = home / "config.yaml"
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in BridgeSettings.model_fields:
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is None:
            continue
        if name == "skill_roots":
            overrides[name] = [v.strip() for v in value.split(",") if v.strip()]
        else:
            overrides[name] = value
    return overrides


def load_settings(home: Optional[Path] = None, persisted: Optional[Dict[str, Any]] = None) -> BridgeSettings:
    home = Path(home) if home else get_bridge_home()
    load_env_files(home)

    merged: Dict[str, Any] = {}
    merged.update(_canonical(persisted or {}))
    merged.update(_canonical(read_config_yaml(home)))
    merged.update(_env_overrides())
    try:
        settings = BridgeSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e
    logger.debug("Settings loaded from %s (%d overridden fields)", home, len(merged))
    return settings


def model_options(settings: BridgeSettings) -> List[str]:
    raw = str(settings.model_options or "")
    compact = "".join(raw.split())
    source = RECOMMENDED_MODEL_OPTIONS if not compact or compact == LEGACY_MODEL_OPTIONS else raw
    options: List[str] = []
    for item in source.split(","):
        value = item.strip()
        if value and value not in options:
            options.append(value)
    return options or RECOMMENDED_MODEL_OPTIONS.split(",")


def selected_model(settings: BridgeSettings) -> str:
    from_setting = str(settings.selected_model or "").strip()
    if from_setting:
        return from_setting
    return pick_model_from_args(split_args(settings.codex_args)) or FALLBACK_MODEL
