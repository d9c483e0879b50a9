"""Tests for model metadata parsing and context/completion limit resolution."""

import pytest

from chatrelay.config import ProviderFamily
from chatrelay.service.catalog import parse_model_meta
from chatrelay.service.context_window import (
    ContextCacheKey,
    guess_known_context_window,
)
from chatrelay.service.errors import ContextWindowNotConfiguredError
from chatrelay.service.runtime import get_runtime


@pytest.fixture
def rt():
    runtime = get_runtime()
    conn = runtime.store.create_connection("openai", "https://api.example.test/v1")
    return runtime, conn


class TestModelMeta:
    """Tests for ModelMeta boundary parsing."""

    def test_unknown_keys_ignored(self):
        meta = parse_model_meta({"context_window": 8000, "vision": True, "color": "blue"})
        assert meta.context_window == 8000
        assert not hasattr(meta, "color")

    def test_bad_limits_become_none(self):
        meta = parse_model_meta(
            {"context_window": "abc", "max_output_tokens": -5, "completion_limit": 0}
        )
        assert meta.context_window is None
        assert meta.max_output_tokens is None
        assert meta.completion_limit is None

    def test_numeric_strings_accepted(self):
        assert parse_model_meta({"context_window": "32768"}).context_window == 32768

    def test_temperature_out_of_range_dropped(self):
        assert parse_model_meta({"temperature": 3}).temperature is None
        assert parse_model_meta({"temperature": 0.3}).temperature == 0.3

    def test_completion_override_order(self):
        meta = parse_model_meta(
            {"max_output_tokens": 100, "custom_max_output_tokens": 50, "completion_limit": 10}
        )
        assert meta.completion_override == 50
        assert parse_model_meta({"completion_limit": 10}).completion_override == 10

    def test_non_mapping_meta(self):
        assert parse_model_meta(["nope"]).context_window is None
        assert parse_model_meta(None).context_window is None


class TestKnownWindows:
    """Tests for the built-in model family table."""

    @pytest.mark.parametrize(
        "model,expected",
        [
            ("gpt-4o-mini", 64_000),
            ("gpt-4o-2024-08-06", 128_000),
            ("gpt-4.1-mini", 64_000),
            ("gpt-4", 8_192),
            ("GPT-3.5-TURBO", 16_385),
            ("o1-preview", 128_000),
            ("gemini-1.5-pro-latest", 1_000_000),
        ],
    )
    def test_known_models(self, model, expected):
        assert guess_known_context_window(model) == expected

    def test_unknown_model(self):
        assert guess_known_context_window("llama3:8b") is None
        assert guess_known_context_window(None) is None


class TestResolveContextLimit:
    """Tests for ContextWindowService.resolve_context_limit."""

    def test_catalog_wins(self, rt):
        runtime, conn = rt
        runtime.store.upsert_model_catalog_entry(
            conn.id, "gpt-4o", meta={"context_window": 9000}
        )
        assert runtime.context_windows.resolve_context_limit(conn.id, "gpt-4o") == 9000

    def test_known_table_before_fallback(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_context_limit(conn.id, "gpt-4o-mini") == 64_000

    def test_system_setting_fallback(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_context_limit(conn.id, "llama3") == 4000
        runtime.system_settings.update("max_context_tokens", "12000")
        assert runtime.context_windows.resolve_context_limit(conn.id, "llama3") == 12000

    def test_zero_fallback_is_configuration_error(self, rt):
        runtime, conn = rt
        runtime.system_settings.update("max_context_tokens", "0")
        with pytest.raises(ContextWindowNotConfiguredError) as exc_info:
            runtime.context_windows.resolve_context_limit(
                conn.id, "llama3", ProviderFamily.OLLAMA
            )
        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "configuration_error"

    def test_cached_until_invalidated(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_context_limit(conn.id, "custom") == 4000
        runtime.store.upsert_model_catalog_entry(conn.id, "custom", meta={"context_window": 777})
        assert runtime.context_windows.resolve_context_limit(conn.id, "custom") == 4000

        runtime.context_windows.invalidate(connection_id=conn.id, raw_model_id="custom")
        assert runtime.context_windows.resolve_context_limit(conn.id, "custom") == 777

    def test_invalidate_whole_connection(self, rt):
        runtime, conn = rt
        runtime.context_windows.resolve_context_limit(conn.id, "a-model")
        runtime.store.upsert_model_catalog_entry(conn.id, "a-model", meta={"context_window": 555})
        runtime.context_windows.invalidate(connection_id=conn.id)
        assert runtime.context_windows.resolve_context_limit(conn.id, "a-model") == 555

    def test_catalog_write_refreshes_cached_limit(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_context_limit(conn.id, "gpt-4o-mini") == 64_000
        assert runtime.context_windows.resolve_completion_limit(conn.id, "gpt-4o-mini") == 32000

        runtime.catalog.upsert_entry(
            conn.id,
            "gpt-4o-mini",
            meta={"context_window": 1024, "max_output_tokens": 256},
        )

        assert runtime.context_windows.resolve_context_limit(conn.id, "gpt-4o-mini") == 1024
        assert runtime.context_windows.resolve_completion_limit(conn.id, "gpt-4o-mini") == 256

    def test_catalog_write_keeps_other_connections_cached(self, rt):
        runtime, conn = rt
        other = runtime.store.create_connection("openai", "https://other.example.test/v1")
        assert runtime.context_windows.resolve_context_limit(other.id, "custom") == 4000
        runtime.store.upsert_model_catalog_entry(other.id, "custom", meta={"context_window": 900})

        runtime.catalog.upsert_entry(conn.id, "custom", meta={"context_window": 700})

        assert runtime.context_windows.resolve_context_limit(conn.id, "custom") == 700
        assert runtime.context_windows.resolve_context_limit(other.id, "custom") == 4000

    def test_connection_update_refreshes_its_models(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_context_limit(conn.id, "a-model") == 4000
        runtime.store.upsert_model_catalog_entry(conn.id, "a-model", meta={"context_window": 555})

        updated = runtime.catalog.update_connection(conn.id, enabled=False)

        assert updated.enabled is False
        assert runtime.context_windows.resolve_context_limit(conn.id, "a-model") == 555

    def test_settings_update_refreshes_fallback_limit(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 32000
        runtime.system_settings.update("reasoning_max_output_tokens_default", "4096")
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 4096


class TestResolveCompletionLimit:
    """Tests for ContextWindowService.resolve_completion_limit."""

    def test_meta_override(self, rt):
        runtime, conn = rt
        runtime.store.upsert_model_catalog_entry(
            conn.id, "m", meta={"max_completion_tokens": 2048}
        )
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 2048

    def test_default_setting(self, rt):
        runtime, conn = rt
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 32000

    def test_setting_is_capped(self, rt):
        runtime, conn = rt
        runtime.system_settings.update("reasoning_max_output_tokens_default", "9999999")
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 256000

    def test_zero_setting_floors_at_one(self, rt):
        runtime, conn = rt
        runtime.system_settings.update("reasoning_max_output_tokens_default", "0")
        assert runtime.context_windows.resolve_completion_limit(conn.id, "m") == 1


class TestContextCacheKey:
    """Tests for cache key rendering."""

    def test_missing_parts_render_as_none(self):
        assert ContextCacheKey(None, None).as_tuple() == ("none", "none")
        assert ContextCacheKey(3, "gpt-4o").as_tuple() == (3, "gpt-4o")
