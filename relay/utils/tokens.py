# relay/utils/tokens.py
from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

CHARS_PER_TOKEN = 4


def approx_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~= 4 chars."""
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))


def message_tokens(message: Mapping[str, Any]) -> int:
    return approx_tokens(f"{message.get('role', '')}: {message.get('content') or ''}")


def approx_tokens_messages(messages: Iterable[Mapping[str, Any]]) -> int:
    """Estimate for a chat message list.

    Messages are costed independently, so removing one lowers the total by
    exactly its own ``message_tokens``.
    """
    return sum(message_tokens(m) for m in messages)
