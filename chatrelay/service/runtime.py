from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.catalog import ModelCatalog
from chatrelay.service.chat import ChatCompletionService
from chatrelay.service.compression import ConversationCompressor
from chatrelay.service.context_window import CONTEXT_CACHE_TTL_SECONDS, ContextWindowService
from chatrelay.service.messages import MessageIntake
from chatrelay.service.provider_requester import ProviderRequester
from chatrelay.service.quota import QuotaLedger
from chatrelay.service.request_builder import ChatRequestBuilder
from chatrelay.service.system_settings import SystemSettingsService
from chatrelay.service.trace import TraceConfigService
from chatrelay.service.usage import UsageReconciler
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.ttl_cache import CacheFactory

logger = get_logger(__name__)

SETTINGS_CACHE_TTL_SECONDS = 30
QUOTA_POLICY_CACHE_TTL_SECONDS = 30
TRACE_CONFIG_CACHE_TTL_SECONDS = 30


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds every pipeline service once and wires them together."""

    def __init__(self, *, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )
        self.store = MemoryStore()

        self.caches = CacheFactory()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                self.caches = CacheFactory.connect(self.settings.redis_url)
            except Exception as exc:
                redis_error = exc

        if self.caches.backend != "redis":
            if (
                self.settings.redis_url
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for shared settings and context-window caches; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE"
                if self.settings.test_mode
                else ("ALLOW_REDIS_FALLBACK_DEV" if self.settings.redis_url else "NO_REDIS_URL")
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; settings, quota policy "
                    "and context-window caches are per-process."
                ),
                mode=fallback_mode,
            )

        self.system_settings = SystemSettingsService(
            self.store,
            self.settings,
            self.caches.build("system_settings", SETTINGS_CACHE_TTL_SECONDS),
        )
        self.catalog = ModelCatalog(self.store)
        self.context_windows = ContextWindowService(
            self.catalog,
            self.system_settings,
            self.caches.build("context_window", CONTEXT_CACHE_TTL_SECONDS),
            self.caches.build("completion_limit", CONTEXT_CACHE_TTL_SECONDS),
        )
        self.quota = QuotaLedger(
            self.store,
            self.system_settings,
            self.caches.build("quota_policy", QUOTA_POLICY_CACHE_TTL_SECONDS),
        )
        self.trace_config = TraceConfigService(
            self.system_settings,
            self.caches.build("task_trace", TRACE_CONFIG_CACHE_TTL_SECONDS),
        )
        self.system_settings.on_change(self.quota.invalidate_policy)
        self.system_settings.on_change(self.trace_config.invalidate)
        self.system_settings.on_change(self.context_windows.invalidate)
        self.catalog.on_change(self.context_windows.invalidate)

        self.requester = ProviderRequester(
            http_client,
            backoff_429_ms=self.settings.provider_backoff_429_ms,
            backoff_5xx_ms=self.settings.provider_backoff_5xx_ms,
        )
        self.intake = MessageIntake(self.store, self.quota)
        self.compressor = ConversationCompressor(
            self.store,
            self.settings,
            self.system_settings,
            self.context_windows,
            self.requester,
        )
        self.builder = ChatRequestBuilder(
            self.store,
            self.settings,
            self.system_settings,
            self.context_windows,
            self.catalog,
        )
        self.reconciler = UsageReconciler(self.store)
        self.chat = ChatCompletionService(
            self.store,
            self.settings,
            self.intake,
            self.compressor,
            self.builder,
            self.requester,
            self.reconciler,
            self.trace_config,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=self.caches.backend,
            provider_backoff_429_ms=self.settings.provider_backoff_429_ms,
            provider_backoff_5xx_ms=self.settings.provider_backoff_5xx_ms,
        )

    async def aclose(self) -> None:
        await self.requester.aclose()
        self.caches.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, http_client: Optional[httpx.AsyncClient] = None) -> Runtime:
    """Rebuild the runtime singleton for an isolated test."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.caches.close()
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(http_client=http_client)
        return runtime
