# relay/providers/base.py
from __future__ import annotations

from typing import AsyncIterator, Dict, List, Optional, Protocol

from relay.orchestration.cancellation import AbortHandle


class ProviderStream(Protocol):
    def fragments(self) -> AsyncIterator[str]:
        """Yield assistant text fragments in arrival order."""
        ...

    async def aclose(self) -> None: ...


class Provider(Protocol):
    async def open_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        abort: Optional[AbortHandle] = None,
    ) -> ProviderStream:
        """Start a streaming generation and return once the upstream has answered.

        Raises ``ProviderUnavailable`` when no response could be obtained and
        ``ProviderError`` for a non-success status or a missing body.
        """
        ...
