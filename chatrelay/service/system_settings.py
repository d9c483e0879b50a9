"""Merged view of operational settings.

Environment-backed ``Settings`` provide the fallbacks; rows in the store's
system settings table win when present. Pipeline services read individual
keys through the typed helpers below, which never raise on malformed input
and fall back to the documented defaults instead.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

SETTINGS_CACHE_KEY = "system_settings"

_TRUE_VALUES = {"true", "1", "yes", "y", "on"}
_FALSE_VALUES = {"false", "0", "no", "n", "off"}


def parse_bool(raw: Any, fallback: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return fallback
    normalized = str(raw).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


def parse_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return None


def parse_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_int_in_range(raw: Any, fallback: int, low: int, high: int) -> int:
    parsed = parse_int(raw)
    if parsed is None:
        return fallback
    return max(low, min(high, parsed))


def parse_float_in_range(raw: Any, fallback: float, low: float, high: float) -> float:
    parsed = parse_float(raw)
    if parsed is None:
        return fallback
    return max(low, min(high, parsed))


class SystemSettingsService:
    """Read-through access to system settings with a short TTL."""

    def __init__(self, store, settings: Settings, cache: TTLCache) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._dependents: List[Callable[[], Any]] = []

    def on_change(self, callback: Callable[[], Any]) -> None:
        """Register a cache that derives from these settings.

        Every ``update`` calls the registered callbacks after the settings
        view itself is dropped.
        """
        self._dependents.append(callback)

    def snapshot(self) -> Dict[str, Any]:
        return self.cache.get_or_load(SETTINGS_CACHE_KEY, self._load)

    def _load(self) -> Dict[str, Any]:
        merged: Dict[str, Any] = dict(self.settings.fallback_settings())
        stored = self.store.get_system_settings() or {}
        merged.update(stored)
        logger.debug("system_settings_loaded", stored_keys=len(stored))
        return merged

    def invalidate(self) -> None:
        self.cache.invalidate()

    def get(self, key: str, default: Any = None) -> Any:
        value = self.snapshot().get(key)
        if value is None or (isinstance(value, str) and value == ""):
            return default
        return value

    def get_str(self, key: str, default: str = "") -> str:
        value = self.get(key)
        if value is None:
            return default
        return str(value).strip()

    def get_bool(self, key: str, default: bool) -> bool:
        return parse_bool(self.get(key), default)

    def get_int(self, key: str, default: int) -> int:
        parsed = parse_int(self.get(key))
        return default if parsed is None else parsed

    def update(self, key: str, value: Any) -> None:
        """Write a setting through to the store and drop every derived cache."""
        self.store.set_system_setting(key, value)
        self.invalidate()
        for callback in self._dependents:
            callback()
        logger.info("system_setting_updated", key=key, dependents=len(self._dependents))
