"""Tests for automatic context compression and group management."""

from datetime import timedelta

import pytest

from chatrelay.service.compression import (
    SUMMARY_SYSTEM_PROMPT,
    fallback_summary,
    format_summary_input,
)
from chatrelay.service.errors import CompressionConflictError
from chatrelay.service.history import load_history
from chatrelay.storage.models import utcnow


def _fill(store, session_id, count, size=200):
    start = utcnow() - timedelta(hours=1)
    messages = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append(
            store.append_message(
                session_id,
                role,
                f"{role} turn {i} " + "x" * size,
                created_at=start + timedelta(seconds=i),
            )
        )
    return messages


@pytest.fixture
def small_window(runtime, seeded):
    """Shrink the seeded model to a 1024-token window with a four-message tail."""
    runtime.store.upsert_model_catalog_entry(
        seeded["connection"].id, "gpt-4o-mini", meta={"context_window": 1024}
    )
    runtime.system_settings.update("context_compression_tail_messages", "4")
    return seeded


async def _compress(runtime, session, **kwargs):
    return await runtime.compressor.compress_if_needed(
        session, actor_content="what next?", **kwargs
    )


# =============================================================================
# Helpers
# =============================================================================


class TestSummaryFormatting:
    """Tests for summary prompt input and the fallback digest."""

    def test_summary_input_is_numbered(self):
        text = format_summary_input(
            [
                {"role": "user", "content": "hello\n\n  world"},
                {"role": "tool", "content": ""},
            ]
        )
        assert text == "1. [user] hello world\n2. [other] (empty)"

    def test_summary_input_clips_long_lines(self):
        text = format_summary_input([{"role": "assistant", "content": "a" * 2000}])
        assert text.endswith("a...")
        assert len(text) == len("1. [assistant] ") + 1600 + 3

    def test_fallback_summary_sections(self):
        summary = fallback_summary(
            [
                {"role": "user", "content": "first question"},
                {"role": "assistant", "content": "first answer"},
                {"role": "user", "content": "second question"},
                {"role": "user", "content": "third question"},
            ]
        )
        lines = summary.splitlines()
        assert lines[0] == "User main questions:"
        assert "- first question" in lines
        assert "- third question" in lines
        assert "- first answer" in lines

    def test_fallback_summary_without_assistant(self):
        summary = fallback_summary([{"role": "user", "content": "only"}])
        assert summary.endswith("Recent assistant conclusions:\n- (none)")


# =============================================================================
# Skip reasons
# =============================================================================


class TestSkipReasons:
    """Tests for the cases where compression does nothing."""

    @pytest.mark.asyncio
    async def test_session_without_model(self, runtime):
        user = runtime.store.create_user("dan")
        session = runtime.store.create_chat_session(user_id=user.id)
        outcome = await _compress(runtime, session)
        assert (outcome.applied, outcome.reason) == (False, "session_model_missing")

    @pytest.mark.asyncio
    async def test_disabled(self, runtime, small_window):
        runtime.system_settings.update("context_compression_enabled", "false")
        outcome = await _compress(runtime, small_window["session"])
        assert outcome.reason == "disabled"

    @pytest.mark.asyncio
    async def test_not_enough_messages(self, runtime, small_window):
        session = small_window["session"]
        _fill(runtime.store, session.id, 7)
        outcome = await _compress(runtime, session)
        assert outcome.reason == "not_enough_messages"

    @pytest.mark.asyncio
    async def test_below_threshold(self, runtime, small_window, provider):
        session = small_window["session"]
        _fill(runtime.store, session.id, 10, size=10)
        outcome = await _compress(runtime, session)
        assert outcome.reason == "below_threshold"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_protected_message_shrinks_candidates(self, runtime, small_window):
        session = small_window["session"]
        messages = _fill(runtime.store, session.id, 20)
        outcome = await _compress(runtime, session, protected_message_id=messages[2].id)
        assert outcome.reason == "candidate_too_small"


# =============================================================================
# Applying compression
# =============================================================================


class TestCompression:
    """Tests for summary generation and group persistence."""

    @pytest.mark.asyncio
    async def test_compresses_older_messages(self, runtime, small_window, provider):
        session = small_window["session"]
        messages = _fill(runtime.store, session.id, 20)
        provider.push(200, {"choices": [{"message": {"content": "Key facts so far."}}]})

        outcome = await _compress(runtime, session)

        assert outcome.applied is True
        assert outcome.payload["compressed_count"] == 16
        assert outcome.payload["tail_messages"] == 4
        assert outcome.payload["threshold_tokens"] == 512
        assert outcome.payload["after_tokens"] < outcome.payload["before_tokens"]

        group = runtime.store.get_message_group(session.id, outcome.payload["group_id"])
        assert group.summary == "Key facts so far."
        assert group.start_message_id == messages[0].id
        assert group.end_message_id == messages[15].id
        assert group.metadata["source"] == "auto"
        assert [m["id"] for m in group.compressed_messages] == [m.id for m in messages[:16]]

        ungrouped = runtime.store.list_messages(session.id, ungrouped_only=True)
        assert [m.id for m in ungrouped] == [m.id for m in messages[16:]]

        body = provider.body()
        assert body["model"] == "gpt-4o-mini"
        assert body["messages"][0] == {"role": "system", "content": SUMMARY_SYSTEM_PROMPT}
        assert "Latest user input (for judging continuity): what next?" in body["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_history_folds_group_into_digest(self, runtime, small_window):
        session = small_window["session"]
        _fill(runtime.store, session.id, 20)
        await _compress(runtime, session)

        history = load_history(runtime.store, session.id)
        assert len(history) == 5
        assert history[0]["role"] == "system"
        assert history[0]["content"].startswith("[Compressed history summary, 16 messages]")

    @pytest.mark.asyncio
    async def test_provider_failure_uses_fallback_summary(self, runtime, small_window, provider):
        session = small_window["session"]
        _fill(runtime.store, session.id, 20)
        provider.push(500, {"error": "down"})
        provider.push(500, {"error": "still down"})

        outcome = await _compress(runtime, session)

        assert outcome.applied is True
        group = runtime.store.get_message_group(session.id, outcome.payload["group_id"])
        assert group.summary.startswith("User main questions:")

    @pytest.mark.asyncio
    async def test_conflict_rolls_back_group(self, runtime, small_window, monkeypatch):
        session = small_window["session"]
        _fill(runtime.store, session.id, 20)
        monkeypatch.setattr(runtime.store, "assign_messages_to_group", lambda *a, **k: 0)

        with pytest.raises(CompressionConflictError) as exc_info:
            await _compress(runtime, session)

        assert exc_info.value.status_code == 409
        assert runtime.store.list_message_groups(session.id, include_cancelled=True) == []

    @pytest.mark.asyncio
    async def test_cancelled_members_are_not_recompressed(self, runtime, small_window):
        session = small_window["session"]
        messages = _fill(runtime.store, session.id, 20)
        outcome = await _compress(runtime, session)
        runtime.compressor.cancel_group(session.id, outcome.payload["group_id"])

        _fill(runtime.store, session.id, 10)
        second = await _compress(runtime, session)

        assert second.applied is True
        group = runtime.store.get_message_group(session.id, second.payload["group_id"])
        released = {m.id for m in messages[:16]}
        assert not released & {m["id"] for m in group.compressed_messages}


# =============================================================================
# Group management
# =============================================================================


class TestGroupManagement:
    """Tests for expanding and cancelling groups."""

    @pytest.mark.asyncio
    async def test_expand_and_collapse(self, runtime, small_window):
        session = small_window["session"]
        _fill(runtime.store, session.id, 20)
        outcome = await _compress(runtime, session)
        group_id = outcome.payload["group_id"]

        assert runtime.compressor.update_group_expanded(session.id, group_id, True) is True
        assert runtime.store.get_message_group(session.id, group_id).expanded is True
        assert runtime.compressor.update_group_expanded(session.id, 999, True) is False

    @pytest.mark.asyncio
    async def test_cancel_releases_members(self, runtime, small_window):
        session = small_window["session"]
        _fill(runtime.store, session.id, 20)
        outcome = await _compress(runtime, session)
        group_id = outcome.payload["group_id"]

        result = runtime.compressor.cancel_group(session.id, group_id)

        assert result == {"cancelled": True, "released_count": 16}
        assert runtime.store.get_message_group(session.id, group_id) is None
        assert len(runtime.store.list_messages(session.id, ungrouped_only=True)) == 20
        assert runtime.compressor.cancel_group(session.id, group_id) == {
            "cancelled": False,
            "released_count": 0,
        }
        assert runtime.compressor.update_group_expanded(session.id, group_id, True) is False
