"""
Canonical list of agent models offered by the CLI.

Add, remove, or reorder entries here -- ``codex-bridge models`` picks up the
change automatically. Options configured in settings that are not listed
here are still shown, just without a description.
"""

from typing import Iterable, Optional

# (model_id, display description shown in menus)
CODEX_MODELS: list[tuple[str, str]] = [
    ("gpt-5.2-codex",       "recommended"),
    ("gpt-5.3-codex",       ""),
    ("gpt-5.1-codex-max",   "long-horizon"),
    ("gpt-5.2",             ""),
    ("gpt-5.1-codex-mini",  "fast"),
]


def model_ids() -> list[str]:
    """Return just the model-id strings (convenience helper)."""
    return [mid for mid, _ in CODEX_MODELS]


def menu_labels(options: Optional[Iterable[str]] = None, selected: str = "") -> list[str]:
    """Return display labels like '* gpt-5.2-codex (recommended)'.

    The currently selected model is marked with ``*``.
    """
    descriptions = dict(CODEX_MODELS)
    labels = []
    for mid in (list(options) if options is not None else model_ids()):
        desc = descriptions.get(mid, "")
        label = f"{mid} ({desc})" if desc else mid
        labels.append(f"{'*' if mid == selected else ' '} {label}")
    return labels
