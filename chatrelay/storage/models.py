from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from chatrelay.config import AuthType, ProviderFamily


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every record stores time."""
    return datetime.utcnow()


@dataclass
class User:
    id: str
    username: str
    role: str = "user"
    personal_prompt: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role.lower() == "admin"


@dataclass
class Connection:
    id: int
    provider: ProviderFamily
    base_url: str
    auth_type: AuthType = AuthType.BEARER
    api_key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    azure_api_version: Optional[str] = None
    prefix: str = ""
    enabled: bool = True


@dataclass
class ModelCatalogEntry:
    connection_id: int
    raw_id: str
    model_id: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatSession:
    id: str
    user_id: Optional[str] = None
    anonymous_key: Optional[str] = None
    title: str = "New chat"
    connection_id: Optional[int] = None
    model_raw_id: Optional[str] = None
    system_prompt: Optional[str] = None
    reasoning_enabled: Optional[bool] = None
    reasoning_effort: Optional[str] = None
    ollama_think: Optional[bool] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, **kwargs: Any) -> "ChatSession":
        return cls(id=str(uuid.uuid4()), **kwargs)

    @property
    def has_model(self) -> bool:
        return bool(self.connection_id and self.model_raw_id)


@dataclass
class Message:
    id: int
    session_id: str
    role: str
    content: str
    created_at: datetime
    client_message_id: Optional[str] = None
    parent_message_id: Optional[int] = None
    reasoning: Optional[str] = None
    group_id: Optional[int] = None

    def as_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class MessageGroup:
    id: int
    session_id: str
    summary: str
    compressed_messages: List[Dict[str, Any]]
    start_message_id: Optional[int]
    end_message_id: Optional[int]
    last_message_id: Optional[int]
    user_id: Optional[str] = None
    expanded: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def compressed_count(self) -> int:
        return len(self.compressed_messages)


@dataclass
class QuotaRecord:
    scope: str
    identifier: str
    used_count: int = 0
    last_reset_at: Optional[datetime] = None
    custom_daily_limit: Optional[int] = None
    user_id: Optional[str] = None


@dataclass
class UsageRecord:
    id: int
    session_id: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    context_limit: int
    message_id: Optional[int] = None
    provider_host: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskTrace:
    id: str
    actor: str
    status: str = "running"
    trace_level: str = "standard"
    session_id: Optional[str] = None
    client_message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_count: int = 0
    log_file_path: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
