from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.service.request_builder import ChatPayload, ImageAttachment

# Maximum nested JSON depth accepted in custom request bodies
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000
MAX_CONTENT_LENGTH = 200_000
MAX_IMAGES = 8
MAX_CUSTOM_HEADERS = 32

_ALLOWED_IMAGE_MIME = frozenset({"image/png", "image/jpeg", "image/webp", "image/gif"})
_REASONING_EFFORTS = frozenset({"", "low", "medium", "high"})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches the merge logic.

    Raises:
        ValueError: If depth or array length exceeds the limits
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_error",
    "provider_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ImageInput(BaseModel):
    data: str
    mime: str = "image/png"

    @field_validator("mime")
    @classmethod
    def _validate_mime(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _ALLOWED_IMAGE_MIME:
            raise ValueError(f"unsupported image type {value!r}")
        return normalized

    @field_validator("data")
    @classmethod
    def _validate_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("image data must be base64") from exc
        return value


class CustomHeader(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    value: str = Field("", max_length=4096)


class CompletionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1)
    content: str = Field("", max_length=MAX_CONTENT_LENGTH)
    images: List[ImageInput] = Field(default_factory=list, max_length=MAX_IMAGES)
    client_message_id: Optional[str] = Field(None, max_length=128)
    reasoning_enabled: Optional[bool] = None
    reasoning_effort: Optional[str] = None
    ollama_think: Optional[bool] = None
    context_enabled: bool = True
    save_reasoning: bool = True
    features: Dict[str, bool] = Field(default_factory=dict)
    custom_body: Optional[Dict[str, Any]] = None
    custom_headers: List[CustomHeader] = Field(
        default_factory=list, max_length=MAX_CUSTOM_HEADERS
    )
    trace: Optional[bool] = None

    @field_validator("reasoning_effort")
    @classmethod
    def _validate_effort(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in _REASONING_EFFORTS:
            raise ValueError("reasoning_effort must be one of low, medium, high")
        return normalized

    @field_validator("custom_body")
    @classmethod
    def _validate_custom_body(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        _validate_json_depth(value)
        return value

    def to_payload(self) -> ChatPayload:
        return ChatPayload(
            session_id=self.session_id,
            content=self.content,
            images=[ImageAttachment(data=img.data, mime=img.mime) for img in self.images],
            client_message_id=self.client_message_id,
            reasoning_enabled=self.reasoning_enabled,
            reasoning_effort=self.reasoning_effort,
            ollama_think=self.ollama_think,
            context_enabled=self.context_enabled,
            save_reasoning=self.save_reasoning,
            features=dict(self.features),
            custom_body=self.custom_body,
            custom_headers=[{"name": h.name, "value": h.value} for h in self.custom_headers],
            trace=self.trace,
        )


class CompletionResponse(BaseModel):
    content: str
    usage: Dict[str, int]
    quota: Dict[str, Any]
    usage_source: str
    reasoning: Optional[str] = None
    user_message_id: Optional[int] = None
    assistant_message_id: Optional[int] = None
    message_reused: bool = False
    compression: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None


class CompressionExpandRequest(BaseModel):
    expanded: bool


class CompressionGroupResponse(BaseModel):
    group_id: int
    expanded: Optional[bool] = None
    cancelled: Optional[bool] = None
    released_count: Optional[int] = None


class TraceEventsResponse(BaseModel):
    trace_id: str
    status: str
    events: List[Dict[str, Any]]
    truncated: bool
