from __future__ import annotations

import re
from typing import Optional

# "Context: 96%", "context usage 40%", "context window at 72.5%", "ctx 25%"
_CONTEXT_FIRST_RE = re.compile(
    r"\b(?:context|ctx)\b[^0-9%\n]{0,24}?(\d{1,3}(?:\.\d+)?)\s*%",
    re.IGNORECASE,
)
# "73% context", "73 % of context used"
_PERCENT_FIRST_RE = re.compile(
    r"(\d{1,3}(?:\.\d+)?)\s*%\s*(?:of\s+(?:the\s+)?)?(?:context|ctx)\b",
    re.IGNORECASE,
)


def _clamp_percent(value: float) -> Optional[float]:
    if value < 0 or value > 100:
        return None
    return value


def extract_context_percent(text: str) -> Optional[float]:
    """Return the last explicit context-usage percentage found in `text`."""
    if not text:
        return None
    last_pos = -1
    last_value: Optional[float] = None
    for pattern in (_CONTEXT_FIRST_RE, _PERCENT_FIRST_RE):
        for match in pattern.finditer(text):
            try:
                value = _clamp_percent(float(match.group(1)))
            except ValueError:
                continue
            if value is None:
                continue
            if match.start() > last_pos:
                last_pos = match.start()
                last_value = value
    return last_value
