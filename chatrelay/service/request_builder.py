"""Assembly of provider-ready chat requests.

``ChatRequestBuilder.prepare`` turns a session, the caller's options and the
current user turn into a ``PreparedChatRequest``: pinned system prompts,
budgeted history, the outgoing message list, token accounting and the final
provider call (URL, headers, body, timeout).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from chatrelay.config import ProviderFamily, Settings
from chatrelay.logging import get_logger
from chatrelay.service.catalog import ModelCatalog
from chatrelay.service.context_window import ContextWindowService
from chatrelay.service.errors import BadRequestError
from chatrelay.service.history import HISTORY_WINDOW, load_history
from chatrelay.service.providers import (
    ProviderRequest,
    build_headers,
    safe_host,
    shape_provider_call,
)
from chatrelay.service.system_settings import (
    SystemSettingsService,
    parse_bool,
    parse_float,
    parse_int,
)
from chatrelay.service.tokenizer import budget_with_pinned, count_conversation_tokens
from chatrelay.storage.models import ChatSession, Connection

logger = get_logger(__name__)

DEFAULT_SESSION_PROMPT = "today's date is {day time}"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_PROVIDER_TIMEOUT_MS = 300000

WEB_SEARCH_HINT = (
    "Only call web_search when up-to-date information is needed, and the query must "
    "contain concrete keywords (event, date, place, person or the question itself). "
    "If no search is needed, answer directly without calling tools. If the results are "
    "not enough, you may call web_search again until the information is sufficient or "
    "the limit is reached. Use read_url to fetch a page when the user gives an explicit URL."
)
PYTHON_RUNNER_HINT = (
    "You have a per-session workspace toolchain: python_runner, workspace_git_clone, "
    "workspace_list_files and workspace_read_text. Write downloadable files to "
    "/workspace/artifacts. Clone repositories into /workspace/repos before browsing them. "
    "Python runs in an isolated sandbox; prefer short deterministic code and print() the "
    "key results."
)
MARKDOWN_DIRECTIVE = (
    "Format the answer with Markdown. When a table cell holds several items, use Markdown "
    'lists or line breaks (for example lines starting with "- " or "• ") and never HTML '
    "list tags such as <li>, <ul> or <ol>."
)

SKILL_HINTS = {
    "web_search": WEB_SEARCH_HINT,
    "python_runner": PYTHON_RUNNER_HINT,
}

PROTECTED_BODY_KEYS = frozenset({"model", "messages", "stream"})
FORBIDDEN_HEADER_NAMES = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "host",
        "connection",
        "transfer-encoding",
        "content-length",
        "accept-encoding",
    }
)

_PLACEHOLDER_CACHE: Dict[str, re.Pattern] = {}


@dataclass
class ImageAttachment:
    data: str
    mime: str


@dataclass
class ChatPayload:
    """Caller options for one completion turn."""

    session_id: str
    content: str
    images: List[ImageAttachment] = field(default_factory=list)
    client_message_id: Optional[str] = None
    reasoning_enabled: Optional[bool] = None
    reasoning_effort: Optional[str] = None
    ollama_think: Optional[bool] = None
    context_enabled: bool = True
    save_reasoning: bool = True
    features: Dict[str, bool] = field(default_factory=dict)
    custom_body: Optional[Dict[str, Any]] = None
    custom_headers: List[Dict[str, str]] = field(default_factory=list)
    trace: Optional[bool] = None


@dataclass(frozen=True)
class ReasoningOptions:
    enabled: bool
    effort: str
    ollama_think: bool


@dataclass
class PreparedChatRequest:
    prompt_tokens: int
    context_limit: int
    context_remaining: int
    applied_max_tokens: int
    context_enabled: bool
    messages: List[Dict[str, Any]]
    base_body: Dict[str, Any]
    provider_request: ProviderRequest
    reasoning: ReasoningOptions
    custom_body_blocked_keys: List[str] = field(default_factory=list)
    custom_header_blocked: List[str] = field(default_factory=list)


def format_day_time(now: datetime) -> str:
    """``YYYY-MM-DD HH:MM:SS (UTC+hh:mm)`` in the server's local zone."""
    local = now.astimezone() if now.tzinfo is None else now
    offset = local.utcoffset()
    total_minutes = int(offset.total_seconds() // 60) if offset is not None else 0
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{local.strftime('%Y-%m-%d %H:%M:%S')} (UTC{sign}{hours:02d}:{minutes:02d})"


def _placeholder_pattern(name: str) -> re.Pattern:
    pattern = _PLACEHOLDER_CACHE.get(name)
    if pattern is None:
        inner = r"\s+".join(re.escape(part) for part in name.split())
        pattern = re.compile(r"\{\s*" + inner + r"\s*\}", re.IGNORECASE)
        _PLACEHOLDER_CACHE[name] = pattern
    return pattern


def apply_prompt_template(template: Optional[str], variables: Dict[str, str]) -> str:
    normalized = (template or "").strip()
    if not normalized:
        return ""
    result = normalized
    for name, value in variables.items():
        if name:
            result = _placeholder_pattern(name).sub(lambda _m, v=value: v, result)
    return result


def merge_custom_body(
    base: Dict[str, Any], custom: Optional[Dict[str, Any]]
) -> tuple[Dict[str, Any], List[str]]:
    """Deep-merge ``custom`` into a copy of ``base``.

    Protected keys are refused at every level and reported by dotted path.
    """
    if not isinstance(custom, dict):
        return base, []
    blocked: List[str] = []

    def merge(target: Dict[str, Any], source: Dict[str, Any], path: str) -> Dict[str, Any]:
        for key, value in source.items():
            next_path = f"{path}.{key}" if path else key
            if key in PROTECTED_BODY_KEYS:
                blocked.append(next_path)
                continue
            if isinstance(value, dict):
                existing = target.get(key)
                target[key] = merge(
                    dict(existing) if isinstance(existing, dict) else {}, value, next_path
                )
            else:
                target[key] = value
        return target

    return merge(dict(base), custom, ""), blocked


def merge_custom_headers(
    provider_headers: Dict[str, str],
    extra_headers: Dict[str, str],
    custom_headers: Optional[List[Dict[str, str]]],
) -> tuple[Dict[str, str], List[str]]:
    if not custom_headers:
        return provider_headers, []
    merged = dict(provider_headers)
    blocked: List[str] = []
    for header in custom_headers:
        name = str((header or {}).get("name") or "").strip()
        value = str((header or {}).get("value") or "").strip()
        if not name or not value:
            continue
        lower = name.lower()
        if (
            lower in FORBIDDEN_HEADER_NAMES
            or lower.startswith("proxy-")
            or lower.startswith("sec-")
            or any(k.lower() == lower for k in extra_headers)
            or any(k.lower() == lower for k in merged)
        ):
            blocked.append(name)
            continue
        merged[name] = value
    return merged, blocked


def build_messages_payload(
    messages: List[Dict[str, Any]],
    content: str,
    images: List[ImageAttachment],
) -> List[Dict[str, Any]]:
    payload = [{"role": m["role"], "content": m["content"]} for m in messages]
    parts: List[Dict[str, Any]] = []
    text = (content or "").strip()
    if text:
        parts.append({"type": "text", "text": text})
    for image in images or []:
        parts.append(
            {"type": "image_url", "image_url": {"url": f"data:{image.mime};base64,{image.data}"}}
        )
    if not parts:
        return payload
    last = payload[-1] if payload else None
    if last and last["role"] == "user" and last["content"] == content:
        payload[-1] = {"role": "user", "content": parts}
    else:
        payload.append({"role": "user", "content": parts})
    return payload


class ChatRequestBuilder:
    def __init__(
        self,
        store,
        settings: Settings,
        system_settings: SystemSettingsService,
        context_windows: ContextWindowService,
        catalog: ModelCatalog,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.system_settings = system_settings
        self.context_windows = context_windows
        self.catalog = catalog
        self.clock = clock

    def resolve_connection(self, session: ChatSession) -> Connection:
        connection = (
            self.store.get_connection(session.connection_id) if session.connection_id else None
        )
        if not session.has_model or connection is None:
            raise BadRequestError(
                "Chat session connection is not ready", detail={"session_id": session.id}
            )
        return connection

    def prepare(
        self,
        session: ChatSession,
        payload: ChatPayload,
        content: str,
        images: Optional[List[ImageAttachment]] = None,
        *,
        history_upper_bound: Optional[datetime] = None,
        personal_prompt: Optional[str] = None,
    ) -> PreparedChatRequest:
        connection = self.resolve_connection(session)
        provider = ProviderFamily(connection.provider)

        pinned = self.build_pinned_prompts(session, payload, personal_prompt=personal_prompt)

        context_limit = self.context_windows.resolve_context_limit(
            session.connection_id, session.model_raw_id, provider
        )
        current_turn = {"role": "user", "content": content}
        if payload.context_enabled:
            history = load_history(
                self.store,
                session.id,
                upper_bound=history_upper_bound,
                limit=HISTORY_WINDOW,
            )
            conversation = [
                m for m in history if m["role"] != "user" or m["content"] != content
            ]
            budget = budget_with_pinned(pinned, conversation + [current_turn], context_limit)
            truncated = budget["history"]
        else:
            truncated = [current_turn]

        combined = pinned + truncated
        prompt_tokens = count_conversation_tokens(combined)
        context_remaining = max(0, context_limit - prompt_tokens)
        completion_limit = self.context_windows.resolve_completion_limit(
            session.connection_id, session.model_raw_id, provider
        )
        applied_max_tokens = max(
            1, min(completion_limit or context_limit, max(1, context_remaining))
        )

        messages = build_messages_payload(combined, content, images or [])
        base_body: Dict[str, Any] = {
            "model": session.model_raw_id,
            "messages": messages,
            "stream": False,
            "temperature": self.resolve_temperature(session),
            "max_tokens": applied_max_tokens,
        }
        reasoning = self.resolve_reasoning(session, payload)
        apply_reasoning(base_body, reasoning)
        base_body, blocked_keys = merge_custom_body(base_body, payload.custom_body)
        if blocked_keys:
            logger.info("custom_body_keys_blocked", session_id=session.id, keys=blocked_keys)

        provider_headers = build_headers(
            connection, system_oauth_token=self._system_oauth_token()
        )
        headers, blocked_headers = merge_custom_headers(
            provider_headers, connection.headers or {}, payload.custom_headers
        )
        if blocked_headers:
            logger.info(
                "custom_headers_blocked", session_id=session.id, headers=blocked_headers
            )

        url, body = shape_provider_call(
            provider,
            connection.base_url,
            session.model_raw_id,
            base_body,
            azure_api_version=connection.azure_api_version,
        )
        provider_request = ProviderRequest(
            url=url,
            headers=headers,
            body=body,
            timeout_ms=self.resolve_timeout_ms(),
            provider_label=provider.value,
            provider_host=safe_host(connection.base_url),
            extra_headers=dict(connection.headers or {}),
        )
        logger.debug(
            "chat_request_prepared",
            session_id=session.id,
            provider=provider.value,
            prompt_tokens=prompt_tokens,
            context_limit=context_limit,
            applied_max_tokens=applied_max_tokens,
            history_messages=len(truncated),
        )
        return PreparedChatRequest(
            prompt_tokens=prompt_tokens,
            context_limit=context_limit,
            context_remaining=context_remaining,
            applied_max_tokens=applied_max_tokens,
            context_enabled=payload.context_enabled,
            messages=messages,
            base_body=dict(base_body),
            provider_request=provider_request,
            reasoning=reasoning,
            custom_body_blocked_keys=blocked_keys,
            custom_header_blocked=blocked_headers,
        )

    def build_pinned_prompts(
        self,
        session: ChatSession,
        payload: ChatPayload,
        *,
        personal_prompt: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        variables = {"day time": format_day_time(self.clock())}
        global_prompt = self.system_settings.get_str("chat_system_prompt")
        primary = (
            apply_prompt_template(session.system_prompt, variables)
            or apply_prompt_template(personal_prompt, variables)
            or apply_prompt_template(global_prompt, variables)
            or apply_prompt_template(DEFAULT_SESSION_PROMPT, variables)
        )
        prompts: List[Dict[str, str]] = []
        if primary:
            prompts.append({"role": "system", "content": primary})
        for feature, hint in SKILL_HINTS.items():
            if payload.features.get(feature):
                prompts.append({"role": "system", "content": hint})
        prompts.append({"role": "system", "content": MARKDOWN_DIRECTIVE})
        return prompts

    def resolve_reasoning(self, session: ChatSession, payload: ChatPayload) -> ReasoningOptions:
        fallback_enabled = parse_bool(self.system_settings.get("reasoning_enabled"), True)
        if isinstance(payload.reasoning_enabled, bool):
            enabled = payload.reasoning_enabled
        elif session.reasoning_enabled is not None:
            enabled = session.reasoning_enabled
        else:
            enabled = fallback_enabled
        effort = (
            payload.reasoning_effort
            or session.reasoning_effort
            or self.system_settings.get_str("openai_reasoning_effort")
            or ""
        )
        fallback_think = parse_bool(self.system_settings.get("ollama_think"), False)
        if isinstance(payload.ollama_think, bool):
            think = payload.ollama_think
        elif session.ollama_think is not None:
            think = session.ollama_think
        else:
            think = fallback_think
        return ReasoningOptions(enabled=bool(enabled), effort=str(effort), ollama_think=bool(think))

    def resolve_temperature(self, session: ChatSession) -> float:
        meta = self.catalog.get_meta(session.connection_id, session.model_raw_id)
        if meta is not None and meta.temperature is not None:
            return meta.temperature
        configured = parse_float(self.system_settings.get("temperature_default"))
        if configured is not None and 0 <= configured <= 2:
            return configured
        return DEFAULT_TEMPERATURE

    def resolve_timeout_ms(self) -> int:
        parsed = parse_int(self.system_settings.get("provider_timeout_ms"))
        if parsed is not None and parsed > 0:
            return parsed
        return DEFAULT_PROVIDER_TIMEOUT_MS

    def _system_oauth_token(self) -> Optional[str]:
        return self.system_settings.get_str("system_oauth_token") or self.settings.system_oauth_token


def apply_reasoning(body: Dict[str, Any], reasoning: ReasoningOptions) -> None:
    body.pop("reasoning_effort", None)
    body.pop("think", None)
    if reasoning.enabled and reasoning.effort:
        body["reasoning_effort"] = reasoning.effort
    if reasoning.enabled and reasoning.ollama_think:
        body["think"] = True
