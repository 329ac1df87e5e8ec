# relay/storage/models.py
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRecord(Base):
    """Key/value row: one conversation id -> JSON list of messages."""

    __tablename__ = "conversations"

    id = Column(String(128), primary_key=True)
    messages_json = Column(Text, nullable=False, default="[]")
    last_updated = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, index=True)
