"""Token estimation and text clamping utilities.

Pure utility functions with no bridge dependencies. The estimate is
deliberately crude (UTF-8 bytes / 3) and only used for relative budgeting.
"""

import math

TRUNCATION_MARKER = "\n...(truncated)"


def estimate_tokens(text) -> int:
    """Rough token estimate: UTF-8 byte length divided by 3, rounded up.

    Returns 0 only for empty input; any non-empty string costs at least 1.
    """
    raw = str(text or "")
    if not raw:
        return 0
    return max(1, math.ceil(len(raw.encode("utf-8")) / 3))


def clamp_text(text, max_len: int) -> str:
    """Clip ``text`` to ``max_len`` characters, appending a truncation marker."""
    if not text:
        return ""
    text = str(text)
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}{TRUNCATION_MARKER}"
