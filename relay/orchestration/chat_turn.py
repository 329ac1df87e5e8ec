"""One chat turn: invoke the model, stream to the caller, persist the transcript.

The caller gets its body as soon as the provider starts answering. The same
fragments are teed into an accumulator drained by a tracked background task,
which persists ``[...history, user, assistant]`` once the stream finishes or
is aborted. Persistence never blocks, delays or fails the response.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from relay.core.errors import ProviderUnavailable, ValidationError
from relay.core.metrics import TOKENS, TURN_SECONDS, TURNS
from relay.core.settings import AppSettings
from relay.orchestration.background import BackgroundTasks
from relay.orchestration.cancellation import AbortHandle, CancellationRegistry, GenerationAborted
from relay.orchestration.context_builder import build_model_messages
from relay.orchestration.tee import StreamTee, TeeBranch
from relay.orchestration.token_budget import trim_to_budget
from relay.providers.base import Provider, ProviderStream
from relay.storage.base import ConversationStore
from relay.storage.schemas import Message
from relay.utils.tokens import approx_tokens, approx_tokens_messages

log = logging.getLogger("app.chat")

_NULLISH_IDS = {"null", "undefined", "none"}


@dataclass(frozen=True)
class ChatOptions:
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    web_search_enabled: bool = False


@dataclass(frozen=True)
class GenerationParams:
    model: str
    temperature: float
    max_tokens: int
    web_search_enabled: bool = False


@dataclass
class TurnResult:
    conversation_id: str
    content: str
    interrupted: bool
    persisted: bool
    elapsed_ms: float
    prompt_tokens: int
    completion_tokens: int


@dataclass
class ChatTurn:
    conversation_id: str
    body: AsyncIterator[bytes]
    persistence: "asyncio.Task[TurnResult]" = field(repr=False)


def new_conversation_id() -> str:
    return uuid.uuid4().hex


def resolve_conversation_id(raw: Optional[str]) -> str:
    if raw is None:
        return new_conversation_id()
    value = str(raw).strip()
    if not value or value.lower() in _NULLISH_IDS:
        return new_conversation_id()
    return raw


def _check_text(content: Any, what: str) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError(f"{what} must have non-empty content")
    try:
        content.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValidationError(f"{what} is not valid unicode text") from exc
    return content


def latest_user_message(messages: Sequence[Mapping[str, Any]]) -> str:
    """Text of the last message, which must be a non-empty user message."""
    if not messages:
        raise ValidationError("messages must contain at least one user message")
    last = messages[-1]
    if not isinstance(last, Mapping) or last.get("role") != "user":
        raise ValidationError("the last message must have role 'user'")
    return _check_text(last.get("content"), "the last user message")


class ChatProxy:
    def __init__(
        self,
        *,
        provider: Provider,
        store: ConversationStore,
        registry: CancellationRegistry,
        tasks: BackgroundTasks,
        settings: AppSettings,
    ) -> None:
        self.provider = provider
        self.store = store
        self.registry = registry
        self.tasks = tasks
        self.settings = settings

    def resolve_params(self, options: Optional[ChatOptions] = None) -> GenerationParams:
        opts = options or ChatOptions()
        s = self.settings
        max_tokens = opts.max_tokens or s.default_max_output_tokens
        return GenerationParams(
            model=opts.model or s.chat_model,
            temperature=s.temperature if opts.temperature is None else opts.temperature,
            max_tokens=max(1, min(int(max_tokens), s.max_output_tokens_limit)),
            web_search_enabled=bool(opts.web_search_enabled),
        )

    async def handle_chat_turn(
        self,
        conversation_id: Optional[str],
        user_message: str,
        options: Optional[ChatOptions] = None,
    ) -> ChatTurn:
        _check_text(user_message, "the user message")
        params = self.resolve_params(options)
        cid = resolve_conversation_id(conversation_id)

        handle = AbortHandle()
        self.registry.register(cid, handle)
        started = time.perf_counter()
        user_msg = Message(role="user", content=user_message)
        try:
            history = await self.store.read(cid)
            suffix = self.settings.web_search_prompt_suffix if params.web_search_enabled else None
            prompt = build_model_messages(
                history, user_message, system_prompt=self.settings.system_prompt, system_suffix=suffix
            )
            self._require_fits(cid, prompt)
            prompt = trim_to_budget(prompt, self.settings.max_context_tokens)
            stream = await self._open_stream(cid, prompt, params, handle)
        except BaseException:
            self.registry.clear(cid, handle)
            TURNS.labels(outcome="failed").inc()
            raise

        tee: StreamTee[str] = StreamTee(stream.fragments(), 2, on_close=stream.aclose)
        client_branch, internal_branch = tee.branches
        handle.bind(tee.start())

        persistence = self.tasks.spawn(
            self._drain_and_persist(
                cid,
                handle,
                internal_branch,
                history=history,
                user_msg=user_msg,
                params=params,
                prompt_tokens=approx_tokens_messages(prompt),
                started=started,
            ),
            name=f"persist-turn:{cid}",
        )
        return ChatTurn(cid, self._client_body(cid, client_branch), persistence)

    def _require_fits(self, cid: str, prompt: List[Dict[str, str]]) -> None:
        # System messages and the new user message must survive trimming
        kept = [m for m in prompt[:-1] if m["role"] == "system"] + prompt[-1:]
        needed = approx_tokens_messages(kept)
        if needed > self.settings.max_context_tokens:
            log.warning(
                {
                    "event": "chat.message_too_long",
                    "conversation_id": cid,
                    "tokens_est": needed,
                    "budget": self.settings.max_context_tokens,
                }
            )
            raise ValidationError("the user message is too long for the model context window")

    async def _open_stream(
        self,
        cid: str,
        prompt: List[Dict[str, str]],
        params: GenerationParams,
        handle: AbortHandle,
    ) -> ProviderStream:
        kwargs = dict(model=params.model, temperature=params.temperature, max_tokens=params.max_tokens, abort=handle)
        try:
            return await self.provider.open_stream(prompt, **kwargs)
        except ProviderUnavailable as exc:
            log.warning({"event": "provider.retry", "conversation_id": cid, "error": str(exc)})
            return await self.provider.open_stream(prompt, **kwargs)

    async def _client_body(self, cid: str, branch: TeeBranch[str]) -> AsyncIterator[bytes]:
        try:
            async for fragment in branch:
                yield fragment.encode("utf-8")
        except GenerationAborted:
            log.info({"event": "chat.client_stream_aborted", "conversation_id": cid})
        except Exception as exc:  # noqa: BLE001 - logged in full by the drain task
            log.warning({"event": "chat.client_stream_failed", "conversation_id": cid, "error": str(exc)})
        finally:
            await branch.aclose()

    async def _drain_and_persist(
        self,
        cid: str,
        handle: AbortHandle,
        branch: TeeBranch[str],
        *,
        history: List[Message],
        user_msg: Message,
        params: GenerationParams,
        prompt_tokens: int,
        started: float,
    ) -> TurnResult:
        parts: List[str] = []
        interrupted = False
        try:
            try:
                async for fragment in branch:
                    parts.append(fragment)
            except GenerationAborted:
                interrupted = True
            except Exception:  # noqa: BLE001
                log.exception({"event": "chat.drain_failed", "conversation_id": cid})

            content = "".join(parts)
            assistant = Message(role="assistant", content=content, interrupted=True if interrupted else None)
            persisted = await self.store.write(cid, [*history, user_msg, assistant])
        finally:
            # Held until the write lands so the next turn on this id reads this one
            self.registry.clear(cid, handle)

        elapsed = time.perf_counter() - started
        completion_tokens = approx_tokens(content)
        TURNS.labels(outcome="interrupted" if interrupted else "completed").inc()
        TURN_SECONDS.observe(elapsed)
        TOKENS.labels(kind="prompt").inc(prompt_tokens)
        TOKENS.labels(kind="completion").inc(completion_tokens)
        log.info(
            {
                "event": "chat.turn",
                "conversation_id": cid,
                "model": params.model,
                "elapsed_ms": round(elapsed * 1000, 2),
                "prompt_tokens_est": prompt_tokens,
                "completion_tokens_est": completion_tokens,
                "interrupted": interrupted,
                "persisted": persisted,
            }
        )
        return TurnResult(
            conversation_id=cid,
            content=content,
            interrupted=interrupted,
            persisted=persisted,
            elapsed_ms=round(elapsed * 1000, 2),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
