# relay/storage/repo.py
"""SQL-backed conversation store.

Error policy is fail-open: chat availability wins over history durability.
``read`` degrades to an empty transcript and ``write`` reports ``False``;
both log the failure and bump ``relay_store_errors_total``. Only ``fetch``
raises, for callers (the history endpoint) that must tell "missing" from
"broken".
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relay.core.errors import StoreError
from relay.core.metrics import STORE_ERRORS
from relay.storage.models import Base, ConversationRecord
from relay.storage.schemas import Message, dump_transcript, load_transcript

log = logging.getLogger("app.store")


def make_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # Store I/O runs in worker threads
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, echo=False, future=True, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return engine


class SqlConversationStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with Session(self.engine, future=True, expire_on_commit=False) as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def _load(self, conversation_id: str) -> Optional[List[Message]]:
        try:
            with self.session_scope() as s:
                row = s.get(ConversationRecord, conversation_id)
                if row is None:
                    return None
                raw = row.messages_json
            return load_transcript(raw)
        except (SQLAlchemyError, PydanticValidationError, ValueError) as exc:
            raise StoreError(f"read failed for {conversation_id}: {exc}") from exc

    def _save(self, conversation_id: str, messages: List[Message]) -> None:
        try:
            payload = dump_transcript(messages)
        except ValueError as exc:
            # PydanticSerializationError, e.g. text holding a lone surrogate
            raise StoreError(f"write failed for {conversation_id}: {exc}") from exc
        try:
            with self.session_scope() as s:
                row = s.get(ConversationRecord, conversation_id)
                if row is None:
                    s.add(ConversationRecord(id=conversation_id, messages_json=payload))
                else:
                    row.messages_json = payload
                    row.last_updated = datetime.now(timezone.utc)
        except SQLAlchemyError as exc:
            raise StoreError(f"write failed for {conversation_id}: {exc}") from exc

    async def fetch(self, conversation_id: str) -> Optional[List[Message]]:
        return await asyncio.to_thread(self._load, conversation_id)

    async def read(self, conversation_id: str) -> List[Message]:
        try:
            return await self.fetch(conversation_id) or []
        except StoreError:
            STORE_ERRORS.labels(op="read").inc()
            log.exception({"event": "store.read_failed", "conversation_id": conversation_id})
            return []

    async def write(self, conversation_id: str, messages: List[Message]) -> bool:
        try:
            await asyncio.to_thread(self._save, conversation_id, messages)
        except StoreError:
            STORE_ERRORS.labels(op="write").inc()
            log.exception({"event": "store.write_failed", "conversation_id": conversation_id})
            return False
        return True

    def dispose(self) -> None:
        self.engine.dispose()
