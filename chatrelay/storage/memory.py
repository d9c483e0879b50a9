from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from chatrelay.config import AuthType, ProviderFamily
from chatrelay.logging import get_logger
from chatrelay.storage.errors import DuplicateKey, MissingReference
from chatrelay.storage.models import (
    ChatSession,
    Connection,
    Message,
    MessageGroup,
    ModelCatalogEntry,
    QuotaRecord,
    TaskTrace,
    UsageRecord,
    User,
    utcnow,
)

# Tables restored when a transaction body raises
_TRANSACTIONAL_TABLES = (
    "sessions",
    "messages",
    "message_groups",
    "quota_records",
    "usage_records",
    "task_traces",
)


class MemoryStore:
    """In-process store for the chat pipeline.

    Every public method takes ``_data_lock``. ``transaction()`` holds the same
    re-entrant lock for the duration of the block and restores the mutable
    tables if the block raises, which gives quota debits and message dedup the
    all-or-nothing behaviour the pipeline relies on.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.connections: Dict[int, Connection] = {}
        self.model_catalog: Dict[tuple[int, str], ModelCatalogEntry] = {}
        self.sessions: Dict[str, ChatSession] = {}
        self.messages: Dict[int, Message] = {}
        self.message_groups: Dict[int, MessageGroup] = {}
        self.quota_records: Dict[tuple[str, str], QuotaRecord] = {}
        self.usage_records: Dict[int, UsageRecord] = {}
        self.task_traces: Dict[str, TaskTrace] = {}
        self.system_settings: Dict[str, str] = {}
        self._sequences: Dict[str, int] = {}
        self._seq_lock = threading.Lock()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    def _next_id(self, kind: str) -> int:
        with self._seq_lock:
            value = self._sequences.get(kind, 0) + 1
            self._sequences[kind] = value
            return value

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Run a block atomically; nested blocks join the outermost one."""
        with self._data_lock:
            snapshot = None
            if self._tx_depth == 0:
                snapshot = {
                    name: copy.deepcopy(getattr(self, name)) for name in _TRANSACTIONAL_TABLES
                }
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    for name, table in snapshot.items():
                        setattr(self, name, table)
                    self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1

    # users and connections
    def create_user(
        self,
        username: str,
        *,
        role: str = "user",
        personal_prompt: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            user = User(
                id=user_id or str(uuid.uuid4()),
                username=username,
                role=role,
                personal_prompt=personal_prompt,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def create_connection(
        self,
        provider: ProviderFamily | str,
        base_url: str,
        *,
        auth_type: AuthType | str = AuthType.BEARER,
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        azure_api_version: Optional[str] = None,
        prefix: str = "",
    ) -> Connection:
        with self._data_lock:
            conn = Connection(
                id=self._next_id("connection"),
                provider=ProviderFamily(provider),
                base_url=base_url,
                auth_type=AuthType(auth_type),
                api_key=api_key,
                headers={str(k): str(v) for k, v in (headers or {}).items()},
                azure_api_version=azure_api_version,
                prefix=prefix,
            )
            self.connections[conn.id] = conn
            return conn

    def get_connection(self, connection_id: int) -> Optional[Connection]:
        with self._data_lock:
            return self.connections.get(connection_id)

    _CONNECTION_FIELDS = {
        "base_url",
        "auth_type",
        "api_key",
        "headers",
        "azure_api_version",
        "prefix",
        "enabled",
    }

    def update_connection(self, connection_id: int, **fields: Any) -> Connection:
        unknown = set(fields) - self._CONNECTION_FIELDS
        if unknown:
            raise ValueError(f"unknown connection fields: {sorted(unknown)}")
        with self._data_lock:
            conn = self.connections.get(connection_id)
            if not conn:
                raise MissingReference("connection not found", {"connection_id": connection_id})
            for name, value in fields.items():
                if name == "auth_type":
                    value = AuthType(value)
                elif name == "headers":
                    value = {str(k): str(v) for k, v in (value or {}).items()}
                setattr(conn, name, value)
            return conn

    def upsert_model_catalog_entry(
        self,
        connection_id: int,
        raw_id: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        model_id: Optional[str] = None,
    ) -> ModelCatalogEntry:
        with self._data_lock:
            conn = self.connections.get(connection_id)
            if not conn:
                raise MissingReference("connection not found", {"connection_id": connection_id})
            entry = ModelCatalogEntry(
                connection_id=connection_id,
                raw_id=raw_id,
                model_id=model_id or f"{conn.prefix}{raw_id}",
                meta=dict(meta or {}),
            )
            self.model_catalog[(connection_id, raw_id)] = entry
            return entry

    def get_model_catalog_entry(
        self, connection_id: int, raw_id: str
    ) -> Optional[ModelCatalogEntry]:
        with self._data_lock:
            return self.model_catalog.get((connection_id, raw_id))

    # system settings
    def get_system_settings(self) -> Dict[str, str]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._data_lock:
            if value is None:
                self.system_settings.pop(key, None)
            else:
                self.system_settings[key] = str(value)

    # chat sessions
    def create_chat_session(
        self,
        *,
        user_id: Optional[str] = None,
        anonymous_key: Optional[str] = None,
        connection_id: Optional[int] = None,
        model_raw_id: Optional[str] = None,
        title: str = "New chat",
        system_prompt: Optional[str] = None,
        reasoning_enabled: Optional[bool] = None,
        reasoning_effort: Optional[str] = None,
        ollama_think: Optional[bool] = None,
    ) -> ChatSession:
        if not user_id and not anonymous_key:
            raise MissingReference("chat session needs an owner")
        with self._data_lock:
            if user_id and user_id not in self.users:
                raise MissingReference("session owner missing", {"user_id": user_id})
            if connection_id is not None and connection_id not in self.connections:
                raise MissingReference("connection not found", {"connection_id": connection_id})
            session = ChatSession.new(
                user_id=user_id,
                anonymous_key=anonymous_key,
                connection_id=connection_id,
                model_raw_id=model_raw_id,
                title=title,
                system_prompt=system_prompt,
                reasoning_enabled=reasoning_enabled,
                reasoning_effort=reasoning_effort,
                ollama_think=ollama_think,
            )
            self.sessions[session.id] = session
            return session

    def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def session_exists(self, session_id: str) -> bool:
        with self._data_lock:
            return session_id in self.sessions

    def delete_chat_session(self, session_id: str) -> bool:
        """Delete a session with its messages and groups; usage records are kept."""
        with self._data_lock:
            if self.sessions.pop(session_id, None) is None:
                return False
            self.messages = {
                mid: msg for mid, msg in self.messages.items() if msg.session_id != session_id
            }
            self.message_groups = {
                gid: grp
                for gid, grp in self.message_groups.items()
                if grp.session_id != session_id
            }
            return True

    # messages
    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        client_message_id: Optional[str] = None,
        parent_message_id: Optional[int] = None,
        reasoning: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        with self._data_lock:
            if session_id not in self.sessions:
                raise MissingReference("chat session not found", {"session_id": session_id})
            if client_message_id and self.get_message_by_client_id(session_id, client_message_id):
                raise DuplicateKey(
                    "client message id already used",
                    {"session_id": session_id, "client_message_id": client_message_id},
                )
            msg = Message(
                id=self._next_id("message"),
                session_id=session_id,
                role=role,
                content=content,
                created_at=created_at or utcnow(),
                client_message_id=client_message_id,
                parent_message_id=parent_message_id,
                reasoning=reasoning,
            )
            self.messages[msg.id] = msg
            return msg

    def get_message(self, message_id: int) -> Optional[Message]:
        with self._data_lock:
            return self.messages.get(message_id)

    def get_message_by_client_id(
        self, session_id: str, client_message_id: str
    ) -> Optional[Message]:
        with self._data_lock:
            for msg in self.messages.values():
                if msg.session_id == session_id and msg.client_message_id == client_message_id:
                    return msg
            return None

    def find_latest_user_message(self, session_id: str, content: str) -> Optional[Message]:
        with self._data_lock:
            matches = [
                msg
                for msg in self.messages.values()
                if msg.session_id == session_id and msg.role == "user" and msg.content == content
            ]
            if not matches:
                return None
            return max(matches, key=lambda m: (m.created_at, m.id))

    def list_messages(
        self,
        session_id: str,
        *,
        upper_bound: Optional[datetime] = None,
        ungrouped_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Messages in chronological order; ``limit`` keeps the newest ones."""
        with self._data_lock:
            msgs = [
                msg
                for msg in self.messages.values()
                if msg.session_id == session_id
                and (upper_bound is None or msg.created_at <= upper_bound)
                and (not ungrouped_only or msg.group_id is None)
            ]
            msgs.sort(key=lambda m: (m.created_at, m.id))
            if limit is not None:
                msgs = msgs[-limit:] if limit > 0 else []
            return msgs

    # compression groups
    def create_message_group(
        self,
        session_id: str,
        *,
        summary: str,
        compressed_messages: List[Dict[str, Any]],
        start_message_id: Optional[int],
        end_message_id: Optional[int],
        last_message_id: Optional[int],
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageGroup:
        with self._data_lock:
            if session_id not in self.sessions:
                raise MissingReference("chat session not found", {"session_id": session_id})
            group = MessageGroup(
                id=self._next_id("message_group"),
                session_id=session_id,
                summary=summary,
                compressed_messages=list(compressed_messages),
                start_message_id=start_message_id,
                end_message_id=end_message_id,
                last_message_id=last_message_id,
                user_id=user_id,
                metadata=dict(metadata or {}),
            )
            self.message_groups[group.id] = group
            return group

    def assign_messages_to_group(
        self, session_id: str, group_id: int, message_ids: Iterable[int]
    ) -> int:
        """Attach still-ungrouped messages to a group and return how many moved."""
        with self._data_lock:
            if group_id not in self.message_groups:
                raise MissingReference("message group not found", {"group_id": group_id})
            updated = 0
            for mid in message_ids:
                msg = self.messages.get(mid)
                if msg and msg.session_id == session_id and msg.group_id is None:
                    msg.group_id = group_id
                    updated += 1
            return updated

    def get_message_group(
        self, session_id: str, group_id: int, *, include_cancelled: bool = False
    ) -> Optional[MessageGroup]:
        with self._data_lock:
            group = self.message_groups.get(group_id)
            if not group or group.session_id != session_id:
                return None
            if group.is_cancelled and not include_cancelled:
                return None
            return group

    def list_message_groups(
        self, session_id: str, *, include_cancelled: bool = False
    ) -> List[MessageGroup]:
        with self._data_lock:
            groups = [
                g
                for g in self.message_groups.values()
                if g.session_id == session_id and (include_cancelled or not g.is_cancelled)
            ]
            groups.sort(key=lambda g: g.id)
            return groups

    def set_message_group_expanded(self, session_id: str, group_id: int, expanded: bool) -> bool:
        with self._data_lock:
            group = self.get_message_group(session_id, group_id)
            if not group:
                return False
            group.expanded = expanded
            return True

    def release_message_group(self, session_id: str, group_id: int, *, cancelled_at: datetime) -> int:
        """Ungroup all members and stamp the group cancelled; returns released count."""
        with self._data_lock:
            group = self.message_groups.get(group_id)
            if not group or group.session_id != session_id:
                raise MissingReference("message group not found", {"group_id": group_id})
            released = 0
            for msg in self.messages.values():
                if msg.session_id == session_id and msg.group_id == group_id:
                    msg.group_id = None
                    released += 1
            group.cancelled_at = cancelled_at
            group.expanded = False
            return released

    # quota
    def get_quota_record(self, scope: str, identifier: str) -> Optional[QuotaRecord]:
        with self._data_lock:
            return self.quota_records.get((scope, identifier))

    def save_quota_record(self, record: QuotaRecord) -> QuotaRecord:
        with self._data_lock:
            self.quota_records[(record.scope, record.identifier)] = record
            return record

    # usage
    def record_usage(
        self,
        *,
        session_id: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        context_limit: int,
        message_id: Optional[int] = None,
        provider_host: Optional[str] = None,
    ) -> UsageRecord:
        with self._data_lock:
            record = UsageRecord(
                id=self._next_id("usage"),
                session_id=session_id,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
                context_limit=context_limit,
                message_id=message_id,
                provider_host=provider_host,
            )
            self.usage_records[record.id] = record
            return record

    def list_usage_records(self, session_id: Optional[str] = None) -> List[UsageRecord]:
        with self._data_lock:
            records = [
                r for r in self.usage_records.values() if session_id is None or r.session_id == session_id
            ]
            records.sort(key=lambda r: r.id)
            return records

    # task traces
    def create_task_trace(
        self,
        *,
        actor: str,
        trace_level: str = "standard",
        session_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TaskTrace:
        with self._data_lock:
            trace = TaskTrace(
                id=uuid.uuid4().hex,
                actor=actor,
                trace_level=trace_level,
                session_id=session_id,
                client_message_id=client_message_id,
                metadata=dict(metadata or {}),
            )
            self.task_traces[trace.id] = trace
            return trace

    def get_task_trace(self, trace_id: str) -> Optional[TaskTrace]:
        with self._data_lock:
            return self.task_traces.get(trace_id)

    def update_task_trace(self, trace_id: str, **fields: Any) -> TaskTrace:
        with self._data_lock:
            trace = self.task_traces.get(trace_id)
            if not trace:
                raise MissingReference("task trace not found", {"trace_id": trace_id})
            for key, value in fields.items():
                if not hasattr(trace, key):
                    raise AttributeError(f"TaskTrace has no field {key!r}")
                setattr(trace, key, value)
            return trace
