from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from chatrelay.config import ProviderFamily
from chatrelay.logging import get_logger
from chatrelay.service.catalog import ModelCatalog
from chatrelay.service.errors import ContextWindowNotConfiguredError
from chatrelay.service.system_settings import SystemSettingsService, parse_int
from chatrelay.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

CONTEXT_CACHE_TTL_SECONDS = 5 * 60
DEFAULT_MAX_CONTEXT_TOKENS = 4000
DEFAULT_COMPLETION_LIMIT = 32000
MAX_COMPLETION_LIMIT = 256000

KNOWN_CONTEXT_WINDOWS: List[Tuple[re.Pattern, int]] = [
    (re.compile(r"^gpt-4o-mini(-.*)?$", re.IGNORECASE), 64_000),
    (re.compile(r"^gpt-4o(-.*)?$", re.IGNORECASE), 128_000),
    (re.compile(r"^gpt-4\.1-mini(-.*)?$", re.IGNORECASE), 64_000),
    (re.compile(r"^gpt-4\.1(-.*)?$", re.IGNORECASE), 128_000),
    (re.compile(r"^gpt-4-turbo(-.*)?$", re.IGNORECASE), 128_000),
    (re.compile(r"^gpt-4(-.*)?$", re.IGNORECASE), 8_192),
    (re.compile(r"^gpt-3\.5-turbo(-.*)?$", re.IGNORECASE), 16_385),
    (re.compile(r"^o1-mini(-.*)?$", re.IGNORECASE), 128_000),
    (re.compile(r"^o1-preview(-.*)?$", re.IGNORECASE), 128_000),
    (re.compile(r"^gemini-1\.5-pro(-.*)?$", re.IGNORECASE), 1_000_000),
    (re.compile(r"^gemini-1\.5-flash(-.*)?$", re.IGNORECASE), 1_000_000),
]


@dataclass(frozen=True)
class ContextCacheKey:
    connection_id: Optional[int]
    raw_model_id: Optional[str]

    def as_tuple(self) -> tuple:
        return (
            "none" if self.connection_id is None else self.connection_id,
            self.raw_model_id or "none",
        )


def guess_known_context_window(raw_model_id: Optional[str]) -> Optional[int]:
    if not raw_model_id:
        return None
    target = raw_model_id.strip()
    for pattern, tokens in KNOWN_CONTEXT_WINDOWS:
        if pattern.match(target):
            return tokens
    return None


class ContextWindowService:
    """Resolves how many tokens a model accepts and may emit.

    Lookups go catalog metadata first, then the table of well-known model
    families, then the system-wide fallback. Results are cached per
    ``(connection_id, raw_model_id)`` until ``invalidate`` is called or the
    TTL lapses.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        system_settings: SystemSettingsService,
        context_cache: TTLCache,
        completion_cache: TTLCache,
    ) -> None:
        self.catalog = catalog
        self.system_settings = system_settings
        self.context_cache = context_cache
        self.completion_cache = completion_cache

    def resolve_context_limit(
        self,
        connection_id: Optional[int],
        raw_model_id: Optional[str],
        provider: Optional[ProviderFamily] = None,
    ) -> int:
        key = ContextCacheKey(connection_id, raw_model_id)
        cached = self.context_cache.get(key.as_tuple())
        if cached is not None:
            return int(cached)

        meta = self.catalog.get_meta(connection_id, raw_model_id)
        limit = meta.context_window if meta and meta.context_window else 0
        source = "catalog"
        if not limit:
            limit = guess_known_context_window(raw_model_id) or 0
            source = "known_model"
        if not limit:
            fallback = parse_int(self.system_settings.get("max_context_tokens"))
            limit = max(0, DEFAULT_MAX_CONTEXT_TOKENS if fallback is None else fallback)
            source = "system_setting"
        if limit <= 0:
            logger.error(
                "context_window_not_configured",
                connection_id=connection_id,
                model=raw_model_id,
                provider=getattr(provider, "value", provider),
            )
            raise ContextWindowNotConfiguredError(
                "Context window is not configured for the selected model",
                detail={"connection_id": connection_id, "model": raw_model_id},
            )
        logger.debug(
            "context_window_resolved", model=raw_model_id, limit=limit, source=source
        )
        self.context_cache.set(key.as_tuple(), limit)
        return limit

    def resolve_completion_limit(
        self,
        connection_id: Optional[int],
        raw_model_id: Optional[str],
        provider: Optional[ProviderFamily] = None,
    ) -> int:
        key = ContextCacheKey(connection_id, raw_model_id)
        cached = self.completion_cache.get(key.as_tuple())
        if cached is not None:
            return int(cached)

        meta = self.catalog.get_meta(connection_id, raw_model_id)
        limit = (meta.completion_override if meta else None) or 0
        if not limit:
            configured = parse_int(self.system_settings.get("reasoning_max_output_tokens_default"))
            if configured is None:
                configured = DEFAULT_COMPLETION_LIMIT
            limit = max(0, min(MAX_COMPLETION_LIMIT, configured))
        if not limit:
            limit = 1
        self.completion_cache.set(key.as_tuple(), limit)
        return limit

    def invalidate(
        self,
        connection_id: Optional[int] = None,
        raw_model_id: Optional[str] = None,
    ) -> None:
        if connection_id is None and raw_model_id is None:
            self.context_cache.invalidate()
            self.completion_cache.invalidate()
            return
        key = ContextCacheKey(connection_id, raw_model_id).as_tuple()
        if raw_model_id is None:
            # Every model on the connection
            key = (key[0], "")
        self.context_cache.invalidate(key)
        self.completion_cache.invalidate(key)
