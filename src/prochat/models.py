"""Pydantic models for the persisted conversation record."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New conversation"
_TITLE_MAX_CHARS = 60


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


class StoredMessage(BaseModel):
    role: str
    content: str
    timestamp: str = Field(default_factory=now_iso)


class StoredConversation(BaseModel):
    id: str = Field(default_factory=_uuid)
    title: str = DEFAULT_TITLE
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    messages: list[StoredMessage] = Field(default_factory=list)

    def auto_title(self) -> None:
        """Title the conversation from its first user message if still untitled."""
        if self.title != DEFAULT_TITLE:
            return
        for msg in self.messages:
            if msg.role == "user" and msg.content.strip():
                text = msg.content.strip().replace("\n", " ")
                if len(text) > _TITLE_MAX_CHARS:
                    text = text[:_TITLE_MAX_CHARS] + "..."
                self.title = text
                return

    def touch(self) -> None:
        self.updated_at = now_iso()


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
    message_count: int
