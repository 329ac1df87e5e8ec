# relay/storage/schemas.py
from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Role = Literal["system", "user", "assistant"]


def now_ms() -> int:
    return int(time.time() * 1000)


class Message(BaseModel):
    """One transcript entry. ``createdAt`` is epoch milliseconds."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    role: Role
    content: str
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    interrupted: Optional[bool] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


TRANSCRIPT = TypeAdapter(List[Message])


def dump_transcript(messages: List[Message]) -> str:
    return TRANSCRIPT.dump_json(messages, by_alias=True, exclude_none=True).decode("utf-8")


def load_transcript(raw: str) -> List[Message]:
    return TRANSCRIPT.validate_json(raw)
