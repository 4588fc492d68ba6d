"""Shared constants for Codex Bridge.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

BRIDGE_HOME_ENV = "CODEX_BRIDGE_HOME"
DEFAULT_BRIDGE_HOME = Path.home() / ".codex-bridge"


def get_bridge_home() -> Path:
    """Resolve the bridge home directory (respects CODEX_BRIDGE_HOME)."""
    return Path(os.getenv(BRIDGE_HOME_ENV, DEFAULT_BRIDGE_HOME)).expanduser()


# Session store limits
MAX_CHAT_HISTORY = 10
MAX_SESSION_MESSAGES = 80
DEFAULT_SESSION_TITLE = "新对话"
MAX_SESSION_TITLE_CHARS = 24

# Prompt context limits (characters)
MAX_CONTEXT_TEXT = 12000
MAX_MENTIONS_PER_MESSAGE = 8
MAX_FOLDER_REF_FILES = 15
MAX_FOLDER_REF_TOTAL_CHARS = 30000
MAX_FOLDER_REF_FILE_CHARS = 3000

# Context window budgets (tokens)
CONTEXT_WINDOW_STANDARD = 200_000
CONTEXT_WINDOW_1M = 1_000_000
CONTEXT_COMPACT_SOFT_RATIO = 0.8
CONTEXT_COMPACT_HARD_RATIO = 0.9
CONTEXT_RATIO_CEILING = 1.2
CONTEXT_COMPACT_KEEP_RECENT_MESSAGES = 12
MAX_COMPACT_SUMMARY_CHARS = 12000
MAX_COMPACT_TRANSCRIPT_CHARS = 90000

# Skills
MAX_SKILLS_PER_SESSION = 8
MAX_SKILL_SNIPPET_CHARS = 2400
MAX_SKILL_DESCRIPTION_CHARS = 140
SKILL_CACHE_TTL_SECONDS = 10.0
SKILL_MARKER_FILE = "SKILL.md"

# Agent process
DEFAULT_TURN_TIMEOUT_SECONDS = 120.0
MAX_THOUGHT_CHARS = 6000
CLIENT_NAME = "codex_bridge"
CLIENT_TITLE = "Codex Bridge"
CLIENT_VERSION = "0.1.0"

# Models
RECOMMENDED_MODEL_OPTIONS = "gpt-5.2-codex,gpt-5.3-codex,gpt-5.1-codex-max,gpt-5.2,gpt-5.1-codex-mini"
LEGACY_MODEL_OPTIONS = "gpt-5,gpt-5-mini,gpt-4.1"
FALLBACK_MODEL = "gpt-5"
