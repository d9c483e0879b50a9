from __future__ import annotations

import math
from typing import Any, Callable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, field_validator

from chatrelay.logging import get_logger
from chatrelay.storage.models import Connection, ModelCatalogEntry

logger = get_logger(__name__)


def _positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(str(value).strip()) if not isinstance(value, (int, float)) else float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num) or num <= 0:
        return None
    return int(num)


class ModelMeta(BaseModel):
    """Per-model capability metadata stored alongside a catalog entry.

    Parsed once when a catalog entry is read. Unknown keys are dropped and
    numeric limits that are missing, malformed or non-positive become ``None``
    rather than failing the request.
    """

    context_window: Optional[int] = None
    max_output_tokens: Optional[int] = None
    custom_max_output_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    completion_limit: Optional[int] = None
    temperature: Optional[float] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator(
        "context_window",
        "max_output_tokens",
        "custom_max_output_tokens",
        "max_completion_tokens",
        "completion_limit",
        mode="before",
    )
    @classmethod
    def _coerce_limit(cls, value: Any) -> Optional[int]:
        return _positive_int(value)

    @field_validator("temperature", mode="before")
    @classmethod
    def _coerce_temperature(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            num = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(num) or num < 0 or num > 2:
            return None
        return num

    @property
    def completion_override(self) -> Optional[int]:
        for candidate in (
            self.custom_max_output_tokens,
            self.max_output_tokens,
            self.max_completion_tokens,
            self.completion_limit,
        ):
            if candidate:
                return candidate
        return None


def parse_model_meta(raw: Optional[Mapping[str, Any]]) -> ModelMeta:
    if not raw:
        return ModelMeta()
    if not isinstance(raw, Mapping):
        logger.warning("model_meta_not_object", meta_type=type(raw).__name__)
        return ModelMeta()
    try:
        return ModelMeta.model_validate(dict(raw))
    except PydanticValidationError as exc:
        logger.warning("model_meta_invalid", error=str(exc))
        return ModelMeta()


class ModelCatalog:
    """Catalog entries with their parsed metadata.

    Writes go through ``upsert_entry`` and ``update_connection`` so that
    caches registered with ``on_change`` are dropped for the affected
    connection or model.
    """

    def __init__(self, store) -> None:
        self.store = store
        self._dependents: List[Callable[[int, Optional[str]], Any]] = []

    def get_meta(self, connection_id: Optional[int], raw_id: Optional[str]) -> Optional[ModelMeta]:
        if connection_id is None or not raw_id:
            return None
        entry = self.store.get_model_catalog_entry(connection_id, raw_id)
        if entry is None:
            return None
        return parse_model_meta(entry.meta)

    def on_change(self, callback: Callable[[int, Optional[str]], Any]) -> None:
        """Register a cache keyed by ``(connection_id, raw_id)``."""
        self._dependents.append(callback)

    def upsert_entry(
        self,
        connection_id: int,
        raw_id: str,
        *,
        meta: Optional[Mapping[str, Any]] = None,
        model_id: Optional[str] = None,
    ) -> ModelCatalogEntry:
        entry = self.store.upsert_model_catalog_entry(
            connection_id, raw_id, meta=dict(meta or {}), model_id=model_id
        )
        self._notify(connection_id, raw_id)
        return entry

    def update_connection(self, connection_id: int, **fields: Any) -> Connection:
        """Change a connection and drop cached limits for all of its models."""
        connection = self.store.update_connection(connection_id, **fields)
        self._notify(connection_id, None)
        return connection

    def _notify(self, connection_id: int, raw_id: Optional[str]) -> None:
        for callback in self._dependents:
            callback(connection_id, raw_id)
        logger.info("model_catalog_changed", connection_id=connection_id, model=raw_id)
