from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlparse

from chatrelay.config import AuthType, ProviderFamily
from chatrelay.storage.models import Connection

DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"


@dataclass
class ProviderRequest:
    """A fully shaped upstream call, ready for the requester."""

    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    timeout_ms: int
    provider_label: str
    provider_host: Optional[str] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)


def safe_host(base_url: str) -> Optional[str]:
    try:
        return urlparse(base_url).hostname or None
    except ValueError:
        return None


def flatten_message_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    pieces: List[str] = []
    for part in content:
        if not isinstance(part, Mapping):
            continue
        if part.get("type") == "text" and part.get("text"):
            pieces.append(str(part["text"]))
        elif part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url")
            pieces.append(f"[image:{url}]")
    return "\n".join(pieces)


def to_plain_text_messages(messages: List[Mapping[str, Any]]) -> List[Dict[str, str]]:
    return [
        {"role": msg.get("role"), "content": flatten_message_content(msg.get("content"))}
        for msg in messages
    ]


def apply_completion_token_field(body: Dict[str, Any]) -> Dict[str, Any]:
    """o1-family models reject ``max_tokens`` and expect ``max_completion_tokens``."""
    model = body.get("model")
    if isinstance(model, str) and model.lower().startswith("o1"):
        if body.get("max_tokens") is not None:
            body["max_completion_tokens"] = body.pop("max_tokens")
    return body


def build_headers(
    connection: Connection,
    *,
    system_oauth_token: Optional[str] = None,
) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    auth_type = AuthType(connection.auth_type)
    if auth_type == AuthType.BEARER and connection.api_key:
        if connection.provider == ProviderFamily.AZURE_OPENAI:
            headers["api-key"] = connection.api_key
        else:
            headers["Authorization"] = f"Bearer {connection.api_key}"
    elif auth_type == AuthType.SYSTEM_OAUTH and system_oauth_token:
        headers["Authorization"] = f"Bearer {system_oauth_token}"
    for key, value in (connection.headers or {}).items():
        headers[str(key)] = str(value)
    return headers


def shape_provider_call(
    provider: ProviderFamily,
    base_url: str,
    raw_model_id: str,
    body: Dict[str, Any],
    *,
    azure_api_version: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    """Return ``(url, body)`` in the wire shape ``provider`` expects."""

    base = (base_url or "").rstrip("/")
    payload = apply_completion_token_field({**body, "model": raw_model_id, "stream": False})

    if provider == ProviderFamily.OPENAI:
        return f"{base}/chat/completions", payload
    if provider == ProviderFamily.AZURE_OPENAI:
        version = azure_api_version or DEFAULT_AZURE_API_VERSION
        url = (
            f"{base}/openai/deployments/{quote(raw_model_id, safe='')}"
            f"/chat/completions?api-version={quote(version, safe='')}"
        )
        return url, payload
    if provider == ProviderFamily.OLLAMA:
        ollama_body: Dict[str, Any] = {
            "model": raw_model_id,
            "stream": False,
            "messages": to_plain_text_messages(body.get("messages") or []),
        }
        options: Dict[str, Any] = {}
        max_tokens = body.get("max_tokens", body.get("max_completion_tokens"))
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if body.get("temperature") is not None:
            options["temperature"] = body["temperature"]
        if options:
            ollama_body["options"] = options
        if body.get("think"):
            ollama_body["think"] = True
        return f"{base}/api/chat", ollama_body
    raise ValueError(f"Unsupported provider: {provider}")
