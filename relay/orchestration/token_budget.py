from __future__ import annotations

from typing import Any, Dict, List

from relay.utils.tokens import approx_tokens_messages, message_tokens


def trim_to_budget(messages: List[Dict[str, Any]], max_tokens: int) -> List[Dict[str, Any]]:
    """Drop the oldest non-system messages until the estimate fits ``max_tokens``.

    System messages are always kept and relative order is preserved. A list
    already within budget is returned unchanged.
    """
    total = approx_tokens_messages(messages)
    if total <= max_tokens:
        return messages

    dropped: set[int] = set()
    for i, m in enumerate(messages):
        if total <= max_tokens:
            break
        if m.get("role") == "system":
            continue
        dropped.add(i)
        total -= message_tokens(m)
    return [m for i, m in enumerate(messages) if i not in dropped]
