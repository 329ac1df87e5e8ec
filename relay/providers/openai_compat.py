# relay/providers/openai_compat.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from relay.core.errors import ProviderError, ProviderUnavailable
from relay.core.settings import AppSettings, get_settings
from relay.orchestration.cancellation import AbortHandle

log = logging.getLogger("app.provider")

_ERROR_BODY_LIMIT = 500


def extract_text(obj: Dict[str, Any]) -> Optional[str]:
    """Pull the text fragment out of one decoded stream event."""
    choices = obj.get("choices") or []
    if choices:
        first = choices[0] or {}
        delta = first.get("delta") or {}
        content = delta.get("content")
        if content:
            return content
        text = first.get("text") or first.get("token") or first.get("text_delta")
        if text:
            return text
        return None
    # Workers AI style: {"response": "..."}
    response = obj.get("response")
    if isinstance(response, str) and response:
        return response
    return None


def clean_text(text: str) -> str:
    """Pair up surrogate escapes; any still unpaired become U+FFFD."""
    return text.encode("utf-16", "surrogatepass").decode("utf-16", "replace")


def split_surrogate_tail(text: str) -> Tuple[str, str]:
    """Split off a trailing high surrogate whose low half is in the next event."""
    if text and "\ud800" <= text[-1] <= "\udbff":
        return text[:-1], text[-1]
    return text, ""


def sse_data(line: str) -> Optional[str]:
    if line.startswith("data: "):
        return line[len("data: "):]
    if line.startswith("data:"):
        return line[len("data:"):].lstrip()
    return None


class HttpProviderStream:
    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        abort: Optional[AbortHandle] = None,
    ) -> None:
        self._client = client
        self._response = response
        self._abort = abort
        self._closed = False

    async def fragments(self) -> AsyncIterator[str]:
        """Text fragments, each valid UTF-8 even if an escape pair spans two events."""
        carry = ""
        if self._abort is not None:
            self._abort.raise_if_aborted()
        async for line in self._response.aiter_lines():
            if self._abort is not None:
                self._abort.raise_if_aborted()
            if not line:
                continue
            data_str = sse_data(line)
            if data_str is None:
                continue
            if data_str.strip() == "[DONE]":
                break
            try:
                obj = json.loads(data_str)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue
            text = extract_text(obj)
            if not text:
                continue
            text, carry = split_surrogate_tail(carry + text)
            if text:
                yield clean_text(text)
        if carry:
            yield clean_text(carry)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class OpenAICompatProvider:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(self, chat_url: str, *, api_key: Optional[str] = None, timeout: float = 60.0) -> None:
        self.chat_url = chat_url
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def open_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        abort: Optional[AbortHandle] = None,
    ) -> HttpProviderStream:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        # No read timeout: a stalled stream is ended by an explicit cancel
        client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, read=None))
        try:
            request = client.build_request("POST", self.chat_url, json=payload, headers=self._headers())
            try:
                response = await client.send(request, stream=True)
            except httpx.TransportError as exc:
                raise ProviderUnavailable(f"Failed to reach provider: {exc}") from exc

            if not response.is_success:
                body = await response.aread()
                await response.aclose()
                detail = body.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
                raise ProviderError(
                    f"Provider error {response.status_code}: {detail}",
                    upstream_status=response.status_code,
                )
            if response.status_code == 204 or response.headers.get("content-length") == "0":
                await response.aclose()
                raise ProviderError("Provider returned an empty body", upstream_status=response.status_code)
        except BaseException:
            await client.aclose()
            raise

        log.info({"event": "provider.stream_open", "model": model, "status": response.status_code})
        return HttpProviderStream(client, response, abort)


def get_provider(settings: Optional[AppSettings] = None) -> OpenAICompatProvider:
    s = settings or get_settings()
    return OpenAICompatProvider(
        s.provider_chat_url,
        api_key=s.provider_api_key,
        timeout=s.provider_timeout_sec,
    )
