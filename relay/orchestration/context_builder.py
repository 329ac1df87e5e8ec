from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from relay.storage.schemas import Message


def _with_suffix(text: str, suffix: Optional[str]) -> str:
    if not suffix:
        return text
    return f"{text.rstrip()}\n\n{suffix.strip()}"


def build_model_messages(
    history: Sequence[Message],
    user_text: str,
    *,
    system_prompt: str,
    system_suffix: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Prior transcript, a leading system instruction, then the new user message.

    A transcript that already opens with a system message keeps it (with the
    suffix appended when given); otherwise ``system_prompt`` is prepended.
    """
    messages = [m.to_prompt() for m in history]
    if messages and messages[0]["role"] == "system":
        messages[0] = {"role": "system", "content": _with_suffix(messages[0]["content"], system_suffix)}
    else:
        messages.insert(0, {"role": "system", "content": _with_suffix(system_prompt, system_suffix)})
    messages.append({"role": "user", "content": user_text})
    return messages
