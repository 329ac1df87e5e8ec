# relay/storage/base.py
from __future__ import annotations

from typing import List, Optional, Protocol

from relay.storage.schemas import Message


class ConversationStore(Protocol):
    async def fetch(self, conversation_id: str) -> Optional[List[Message]]:
        """Return the transcript, ``None`` when the key is missing.

        Raises ``StoreError`` on backend or decoding failure.
        """
        ...

    async def read(self, conversation_id: str) -> List[Message]:
        """Fail-open read: missing key or any failure yields ``[]``."""
        ...

    async def write(self, conversation_id: str, messages: List[Message]) -> bool:
        """Fail-open write: returns ``False`` on failure, never raises, never retries."""
        ...
