from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False

    @classmethod
    def new(cls, user_id: str, ttl_minutes: int = 60 * 24) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )


@dataclass
class Project:
    """A user-owned workspace holding a system prompt, model choice and files."""

    id: str
    user_id: str
    name: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    params: Optional[Dict] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Chat:
    id: str
    user_id: str
    project_id: str
    title: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Message:
    """One turn of a chat.

    ``user_id`` is the author for user turns and ``None`` for assistant turns.
    ``seq`` breaks ties between messages stored within the same clock tick.
    """

    id: str
    chat_id: str
    role: str
    content: str
    seq: int = 0
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ProjectFile:
    id: str
    project_id: str
    user_id: str
    name: str
    mime: str
    size: int
    storage_url: str
    created_at: datetime = field(default_factory=datetime.utcnow)
