"""Per-invocation diagnostic traces for the chat pipeline.

A ``TraceRecorder`` buffers sanitized events in memory and appends them in
batches to ``trace-<id>.log`` as JSON lines. Recording is best-effort: the
first I/O failure disables the recorder and the request carries on.
"""

from __future__ import annotations

import json
import traceback
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from chatrelay.config import DeploymentEnv, Settings
from chatrelay.logging import get_logger
from chatrelay.service.actors import Actor
from chatrelay.service.system_settings import (
    SystemSettingsService,
    parse_bool,
    parse_int_in_range,
)
from chatrelay.storage.models import utcnow
from chatrelay.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

MAX_STRING_LENGTH = 500
MAX_ARRAY_ITEMS = 10
MAX_OBJECT_ENTRIES = 20
MAX_DEPTH = 2
ELLIPSIS = "…"

DEFAULT_BATCH_SIZE = 20
MIN_MAX_EVENTS = 100
TRACE_CONFIG_CACHE_KEY = "task_trace_config"

TRACE_STATUSES = ("running", "completed", "error", "cancelled")

_SENSITIVE_HEADER_NEEDLES = (
    "authorization",
    "proxy-authorization",
    "api-key",
    "x-api-key",
    "x-openai-api-key",
    "x-rapidapi-key",
    "x-azure-api-key",
    "subscription-key",
    "cookie",
    "set-cookie",
    "token",
    "secret",
    "openrouter",
)


def truncate_string(value: str, limit: int = MAX_STRING_LENGTH) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}{ELLIPSIS}"


def sanitize_payload(payload: Any, depth: int = 0) -> Any:
    """Bound a payload for the trace file.

    Strings are truncated, sequences and mappings lose their tail, and
    anything nested deeper than two levels collapses to a placeholder.
    Callables are dropped; unknown objects become ``None``.
    """

    if payload is None or isinstance(payload, (bool, int, float)):
        return payload
    if isinstance(payload, str):
        return truncate_string(payload)
    if isinstance(payload, (datetime, date)):
        return payload.isoformat()
    if isinstance(payload, bytes):
        return f"[bytes({len(payload)})]"
    if callable(payload):
        return None
    if isinstance(payload, (list, tuple, set)):
        items = list(payload)
        if depth > MAX_DEPTH:
            return f"[array({len(items)})]"
        return [sanitize_payload(item, depth + 1) for item in items[:MAX_ARRAY_ITEMS]]
    if isinstance(payload, Mapping):
        if depth > MAX_DEPTH:
            return "[object]"
        result: Dict[str, Any] = {}
        for key, value in list(payload.items())[:MAX_OBJECT_ENTRIES]:
            if callable(value):
                continue
            result[str(key)] = sanitize_payload(value, depth + 1)
        return result
    return None


def _mask_header_value(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return ""
    if len(trimmed) <= 8:
        return "***"
    return f"{trimmed[:4]}{ELLIPSIS}{trimmed[-4:]}"


def redact_headers_for_trace(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    if not headers:
        return {}
    redacted: Dict[str, str] = {}
    for key, raw in headers.items():
        if raw is None:
            continue
        serialized = ", ".join(str(v) for v in raw) if isinstance(raw, (list, tuple)) else str(raw)
        lower = str(key).lower()
        if any(needle in lower for needle in _SENSITIVE_HEADER_NEEDLES):
            redacted[str(key)] = _mask_header_value(serialized)
        else:
            redacted[str(key)] = truncate_string(serialized, 200)
    return redacted


def _content_preview(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return truncate_string(content, 240)
    if isinstance(content, list):
        texts = [
            part.get("text")
            for part in content
            if isinstance(part, Mapping) and isinstance(part.get("text"), str)
        ]
        return truncate_string("\n".join(t for t in texts if t), 240)
    return None


def _summarize_messages(messages: List[Any]) -> List[Dict[str, Any]]:
    summary = []
    for msg in messages[:5]:
        if not isinstance(msg, Mapping):
            summary.append({"role": None})
            continue
        item: Dict[str, Any] = {
            "role": msg.get("role"),
            "contentPreview": _content_preview(msg.get("content")),
        }
        if msg.get("name"):
            item["name"] = msg.get("name")
        if isinstance(msg.get("thinking"), str):
            item["thinkingPreview"] = truncate_string(msg["thinking"], 160)
        summary.append(item)
    return summary


def _summarize_images(images: List[Any]) -> List[Dict[str, Any]]:
    return [
        {
            "mime": img.get("mime") if isinstance(img, Mapping) else None,
            "size": len(img["data"])
            if isinstance(img, Mapping) and isinstance(img.get("data"), str)
            else None,
        }
        for img in images[:4]
    ]


def summarize_body_for_trace(body: Any) -> Any:
    if body is None:
        return None
    if isinstance(body, str):
        return {"kind": "text", "length": len(body), "preview": truncate_string(body, 260)}
    if isinstance(body, (list, tuple)):
        return {
            "kind": "array",
            "length": len(body),
            "sample": [summarize_body_for_trace(item) for item in list(body)[:5]],
        }
    if isinstance(body, Mapping):
        result: Dict[str, Any] = {}
        for key, value in body.items():
            lower = str(key).lower()
            if key == "messages" and isinstance(value, list):
                result["messages"] = _summarize_messages(value)
            elif key == "images" and isinstance(value, list):
                result["images"] = _summarize_images(value)
            elif "header" in lower or "token" in lower:
                result[key] = "[redacted]"
            else:
                result[key] = sanitize_payload(value)
        return result
    return body


def summarize_error_for_trace(error: Any) -> Dict[str, Any]:
    if isinstance(error, BaseException):
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return {
            "name": type(error).__name__,
            "message": str(error),
            "stack": truncate_string(stack, 800) if stack else None,
        }
    return {"error": sanitize_payload(error)}


@dataclass(frozen=True)
class TraceConfig:
    enabled: bool = False
    default_on: bool = False
    admin_only: bool = True
    env: str = "dev"
    retention_days: int = 7
    max_events: int = 2000


@dataclass(frozen=True)
class TraceDecision:
    enabled: bool
    trace_level: str
    config: TraceConfig
    reason: Optional[str] = None


class TraceConfigService:
    """Trace policy read from system settings and cached for 30 seconds."""

    def __init__(self, system_settings: SystemSettingsService, cache: TTLCache) -> None:
        self.system_settings = system_settings
        self.cache = cache

    def get_config(self) -> TraceConfig:
        raw = self.cache.get_or_load(TRACE_CONFIG_CACHE_KEY, self._load)
        return TraceConfig(**raw)

    def _load(self) -> Dict[str, Any]:
        settings = self.system_settings
        env = settings.get_str("task_trace_env").lower()
        return {
            "enabled": parse_bool(settings.get("task_trace_enabled"), False),
            "default_on": parse_bool(settings.get("task_trace_default_on"), False),
            "admin_only": parse_bool(settings.get("task_trace_admin_only"), True),
            "env": env if env in {"prod", "both"} else "dev",
            "retention_days": parse_int_in_range(
                settings.get("task_trace_retention_days"), 7, 1, 365
            ),
            "max_events": parse_int_in_range(
                settings.get("task_trace_max_events"), 2000, 200, 200000
            ),
        }

    def invalidate(self) -> None:
        self.cache.invalidate()

    def should_enable(
        self,
        actor: Optional[Actor],
        requested: Optional[bool],
        env: DeploymentEnv,
    ) -> TraceDecision:
        return should_enable_trace(self.get_config(), actor, requested, env)


def should_enable_trace(
    config: TraceConfig,
    actor: Optional[Actor],
    requested: Optional[bool],
    env: DeploymentEnv,
) -> TraceDecision:
    if not config.enabled:
        return TraceDecision(False, "standard", config, "disabled")
    is_prod = env == DeploymentEnv.PRODUCTION
    if config.env == "both":
        env_allowed = True
    elif config.env == "prod":
        env_allowed = is_prod
    else:
        env_allowed = not is_prod
    if not env_allowed:
        return TraceDecision(False, "standard", config, "env_blocked")
    if config.admin_only and not (actor is not None and actor.is_admin):
        return TraceDecision(False, "standard", config, "actor_blocked")
    desired = requested if isinstance(requested, bool) else config.default_on
    if not desired:
        return TraceDecision(False, "standard", config, "opt_out")
    return TraceDecision(True, "explicit" if requested is True else "standard", config)


def resolve_trace_log_dir(settings: Settings) -> Path:
    if settings.task_trace_log_dir:
        return Path(settings.task_trace_log_dir)
    return Path(settings.shared_fs_root) / "logs" / "task-trace"


@dataclass
class _PendingEvent:
    seq: int
    event_type: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)

    def to_line(self) -> str:
        return json.dumps(
            {
                "seq": self.seq,
                "eventType": self.event_type,
                "payload": self.payload,
                "timestamp": self.timestamp.isoformat() + "Z",
            },
            ensure_ascii=False,
            default=str,
        )


class TraceRecorder:
    """Buffered event log for one pipeline invocation.

    A disabled recorder accepts every call and does nothing, so callers never
    need to branch on whether tracing is on.
    """

    def __init__(
        self,
        store=None,
        *,
        enabled: bool = False,
        actor_identifier: str = "",
        session_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
        trace_level: str = "standard",
        metadata: Optional[Dict[str, Any]] = None,
        max_events: int = 2000,
        batch_size: int = DEFAULT_BATCH_SIZE,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.enabled = enabled and store is not None
        self.actor_identifier = actor_identifier
        self.session_id = session_id
        self.client_message_id = client_message_id
        self.trace_level = trace_level or "standard"
        self.metadata: Dict[str, Any] = sanitize_payload(metadata or {})
        self.max_events = max(MIN_MAX_EVENTS, int(max_events))
        self.batch_size = max(1, int(batch_size))
        self.log_dir = log_dir
        self.trace_id: Optional[str] = None
        self.log_file_path: Optional[Path] = None
        self.started_at = utcnow()
        self._seq = 0
        self._pending: List[_PendingEvent] = []
        self._overflowed = False
        self._finalized = False

    @classmethod
    def disabled(cls) -> "TraceRecorder":
        return cls(None, enabled=False)

    @classmethod
    def start(cls, store, *, log_dir: Path, **kwargs: Any) -> "TraceRecorder":
        recorder = cls(store, log_dir=log_dir, **kwargs)
        if not recorder.enabled:
            return recorder
        try:
            trace = store.create_task_trace(
                actor=recorder.actor_identifier,
                trace_level=recorder.trace_level,
                session_id=recorder.session_id,
                client_message_id=recorder.client_message_id,
                metadata=recorder.metadata,
            )
            recorder.trace_id = trace.id
            log_dir.mkdir(parents=True, exist_ok=True)
            recorder.log_file_path = log_dir / f"trace-{trace.id}.log"
            store.update_task_trace(trace.id, log_file_path=str(recorder.log_file_path))
        except Exception as exc:
            logger.error("task_trace_create_failed", trace_id=recorder.trace_id, error=str(exc))
            recorder._abandon(f"trace setup failed: {exc}")
        return recorder

    @property
    def is_enabled(self) -> bool:
        return self.enabled and self.trace_id is not None

    @property
    def event_count(self) -> int:
        return self._seq

    def set_message_context(self, client_message_id: Optional[str] = None) -> None:
        self.client_message_id = client_message_id or self.client_message_id

    def log(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if not self.is_enabled or self._finalized:
            return
        if self._seq >= self.max_events:
            if not self._overflowed:
                self._overflowed = True
                self._push("trace_overflow", {"max_events": self.max_events})
            return
        self._push(event_type, payload)
        if len(self._pending) >= self.batch_size:
            self.flush()

    def _abandon(self, reason: str) -> None:
        """Stop recording and close the trace row as ``error``."""
        self.enabled = False
        self._pending = []
        if self.trace_id is None:
            return
        try:
            self.store.update_task_trace(
                self.trace_id,
                status="error",
                ended_at=utcnow(),
                metadata={**self.metadata, "error": truncate_string(reason)},
                event_count=self._seq,
            )
        except Exception as exc:
            logger.error("task_trace_abandon_failed", trace_id=self.trace_id, error=str(exc))

    def _push(self, event_type: str, payload: Optional[Dict[str, Any]]) -> None:
        self._seq += 1
        self._pending.append(
            _PendingEvent(
                seq=self._seq,
                event_type=event_type,
                payload=sanitize_payload(payload or {}),
            )
        )

    def flush(self, force: bool = False) -> None:
        """Append buffered events to the trace file.

        Without ``force`` nothing is written until a full batch is buffered.
        """
        if not self.is_enabled or not self._pending:
            return
        if not force and len(self._pending) < self.batch_size:
            return
        chunk, self._pending = self._pending, []
        if self.log_file_path is None:
            logger.warning("task_trace_log_path_missing", trace_id=self.trace_id)
            return
        try:
            with self.log_file_path.open("a", encoding="utf-8") as handle:
                handle.write("\n".join(evt.to_line() for evt in chunk) + "\n")
        except OSError as exc:
            logger.error("task_trace_flush_failed", trace_id=self.trace_id, error=str(exc))
            self._abandon(f"trace write failed: {exc}")

    def finalize(
        self,
        status: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self.is_enabled or self._finalized:
            return
        if status not in TRACE_STATUSES:
            raise ValueError(f"unknown trace status {status!r}")
        self._finalized = True
        self.flush(force=True)
        if not self.enabled:
            return
        ended_at = utcnow()
        merged = dict(self.metadata)
        if metadata:
            merged.update(sanitize_payload(metadata))
        if error:
            merged["error"] = truncate_string(error)
        try:
            self.store.update_task_trace(
                self.trace_id,
                status=status,
                ended_at=ended_at,
                duration_ms=int((ended_at - self.started_at).total_seconds() * 1000),
                metadata=merged,
                event_count=self._seq,
            )
        except Exception as exc:
            logger.error("task_trace_finalize_failed", trace_id=self.trace_id, error=str(exc))


def read_trace_events(path: Optional[str], limit: int = 2000) -> Dict[str, Any]:
    """Read up to ``limit`` events from a trace file; malformed lines are skipped."""
    if not path:
        return {"events": [], "truncated": False}
    file_path = Path(path)
    if not file_path.exists():
        return {"events": [], "truncated": False}
    events: List[Dict[str, Any]] = []
    truncated = False
    with file_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            if len(events) >= limit:
                truncated = True
                break
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("task_trace_line_invalid", path=str(file_path))
    return {"events": events, "truncated": truncated}
