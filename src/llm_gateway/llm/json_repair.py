"""Best-effort repair of truncated or malformed tool-call arguments.

Length-limited streams usually cut a call off mid-string or mid-object, so
the repair closes one open string, balances brackets and drops trailing
commas.  It is purely syntactic and never consults a schema.  Only a single
unterminated string is closed; inputs with several are not recovered.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

_logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_CLOSERS = {"{": "}", "[": "]"}


def count_unescaped_quotes(text: str) -> int:
    """Count ``"`` characters that are not escaped with a backslash."""
    count = 0
    escape = False
    for ch in text:
        if escape:
            escape = False
        elif ch == "\\":
            escape = True
        elif ch == '"':
            count += 1
    return count


def missing_closers(text: str) -> str:
    """Closers needed for brackets left open outside of string literals.

    Returned innermost first, so ``{"a": [1`` needs ``]}``.  Surplus
    closers are ignored.
    """
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in text:
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]") and stack and stack[-1] == ch:
            stack.pop()
    return "".join(reversed(stack))


def repair_text(raw: str) -> str:
    """Apply the structural repairs to *raw* and return the new text."""
    repaired = raw.strip()
    if count_unescaped_quotes(repaired) % 2:
        # An odd run of trailing backslashes would escape the closing quote
        trailing = len(repaired) - len(repaired.rstrip("\\"))
        if trailing % 2:
            repaired = repaired[:-1]
        repaired += '"'
    repaired += missing_closers(repaired)
    return _TRAILING_COMMA.sub(r"\1", repaired)


def repair_json(raw: str | None) -> Any | None:
    """Parse tool-call arguments, repairing them if needed.

    Returns
    -------
    The parsed value; ``{}`` for empty input; ``None`` when even the
    repaired text does not parse.
    """
    if raw is None or not raw.strip():
        return {}

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    repaired = repair_text(raw)
    try:
        value = json.loads(repaired)
    except json.JSONDecodeError:
        _logger.warning("JSON repair failed. Original: %s", raw)
        _logger.warning("Repaired attempt: %s", repaired)
        return None

    _logger.debug("Repaired tool arguments: %s -> %s", raw, repaired)
    return value
