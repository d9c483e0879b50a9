from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from chatrelay.config import ProviderFamily, Settings
from chatrelay.logging import get_logger
from chatrelay.service.context_window import ContextWindowService
from chatrelay.service.errors import CompressionConflictError
from chatrelay.service.history import format_group_digest
from chatrelay.service.provider_requester import ProviderRequester
from chatrelay.service.providers import ProviderRequest, build_headers, safe_host, shape_provider_call
from chatrelay.service.system_settings import (
    SystemSettingsService,
    parse_bool,
    parse_float_in_range,
    parse_int_in_range,
)
from chatrelay.service.tokenizer import count_conversation_tokens, truncate_messages
from chatrelay.service.trace import TraceRecorder
from chatrelay.service.usage import extract_text
from chatrelay.storage.models import ChatSession, Message, MessageGroup, utcnow

logger = get_logger(__name__)

DEFAULT_THRESHOLD_RATIO = 0.5
DEFAULT_TAIL_MESSAGES = 12
MIN_MESSAGES_TO_COMPRESS = 4
MIN_CONTEXT_WINDOW = 1024
MIN_SUMMARY_TIMEOUT_MS = 10000
SUMMARY_LINE_LIMIT = 1600
FALLBACK_CLIP = 80

SUMMARY_SYSTEM_PROMPT = "\n".join(
    [
        "You compress conversation context.",
        "Compress the history into a reusable memory summary.",
        "Output rules:",
        "1) Output only the summary body, with no preamble or closing remarks.",
        "2) Keep the user's goals, constraints, confirmed facts, todos and open questions.",
        "3) Do not speculate and do not add facts.",
        "4) Keep it between 200 and 600 words.",
    ]
)


@dataclass
class CompressionPolicy:
    enabled: bool = True
    threshold_ratio: float = DEFAULT_THRESHOLD_RATIO
    tail_messages: int = DEFAULT_TAIL_MESSAGES


@dataclass
class CompressionOutcome:
    applied: bool
    reason: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def format_summary_input(messages: List[Dict[str, Any]]) -> str:
    lines = []
    for index, msg in enumerate(messages, start=1):
        role = msg.get("role")
        role = role if role in {"user", "assistant"} else "other"
        normalized = re.sub(r"\s+", " ", str(msg.get("content") or "")).strip()
        if len(normalized) > SUMMARY_LINE_LIMIT:
            normalized = f"{normalized[:SUMMARY_LINE_LIMIT]}..."
        lines.append(f"{index}. [{role}] {normalized or '(empty)'}")
    return "\n".join(lines)


def fallback_summary(messages: List[Dict[str, Any]]) -> str:
    """Deterministic digest used when the summarization call fails."""
    user_turns = [
        str(m.get("content") or "").strip() for m in messages if m.get("role") == "user"
    ]
    user_turns = [t for t in user_turns if t]
    assistant_turns = [
        str(m.get("content") or "").strip() for m in messages if m.get("role") == "assistant"
    ]
    assistant_turns = [t for t in assistant_turns if t]

    def bullets(items: List[str]) -> str:
        return "\n".join(f"- {item[:FALLBACK_CLIP]}" for item in items) or "- (none)"

    return "\n".join(
        [
            "User main questions:",
            bullets(user_turns[:2]),
            "Recent user focus:",
            bullets(user_turns[-2:]),
            "Recent assistant conclusions:",
            bullets(assistant_turns[-2:]),
        ]
    )


class ConversationCompressor:
    """Folds older history into a summary group once the context grows too large."""

    def __init__(
        self,
        store,
        settings: Settings,
        system_settings: SystemSettingsService,
        context_windows: ContextWindowService,
        requester: ProviderRequester,
    ) -> None:
        self.store = store
        self.settings = settings
        self.system_settings = system_settings
        self.context_windows = context_windows
        self.requester = requester

    def policy(self) -> CompressionPolicy:
        return CompressionPolicy(
            enabled=parse_bool(self.system_settings.get("context_compression_enabled"), True),
            threshold_ratio=parse_float_in_range(
                self.system_settings.get("context_compression_threshold_ratio"),
                DEFAULT_THRESHOLD_RATIO,
                0.2,
                0.9,
            ),
            tail_messages=parse_int_in_range(
                self.system_settings.get("context_compression_tail_messages"),
                DEFAULT_TAIL_MESSAGES,
                4,
                50,
            ),
        )

    def _cancelled_member_ids(self, session_id: str) -> Set[int]:
        released: Set[int] = set()
        for group in self.store.list_message_groups(session_id, include_cancelled=True):
            if not group.is_cancelled:
                continue
            for item in group.compressed_messages:
                if isinstance(item, dict) and item.get("id") is not None:
                    released.add(int(item["id"]))
        return released

    async def compress_if_needed(
        self,
        session: ChatSession,
        *,
        actor_content: str,
        protected_message_id: Optional[int] = None,
        history_upper_bound: Optional[datetime] = None,
        trace: Optional[TraceRecorder] = None,
    ) -> CompressionOutcome:
        connection = (
            self.store.get_connection(session.connection_id) if session.connection_id else None
        )
        if not session.has_model or connection is None:
            return CompressionOutcome(False, "session_model_missing")

        policy = self.policy()
        if not policy.enabled:
            return CompressionOutcome(False, "disabled")

        provider = ProviderFamily(connection.provider)
        resolved = self.context_windows.resolve_context_limit(
            session.connection_id, session.model_raw_id, provider
        )
        context_limit = resolved if resolved > 0 else MIN_CONTEXT_WINDOW
        threshold_tokens = max(1, int(context_limit * policy.threshold_ratio))

        ungrouped = self.store.list_messages(
            session.id, upper_bound=history_upper_bound, ungrouped_only=True
        )
        if len(ungrouped) < policy.tail_messages + MIN_MESSAGES_TO_COMPRESS:
            return CompressionOutcome(False, "not_enough_messages")

        before_tokens = count_conversation_tokens([m.as_prompt() for m in ungrouped])
        if before_tokens <= threshold_tokens:
            return CompressionOutcome(False, "below_threshold")

        candidates = self._select_candidates(
            session.id, ungrouped, policy.tail_messages, protected_message_id
        )
        if len(candidates) < MIN_MESSAGES_TO_COMPRESS:
            return CompressionOutcome(False, "candidate_too_small")

        candidate_conversation = [m.as_prompt() for m in candidates]
        summary_budget = max(512, int(max(MIN_CONTEXT_WINDOW, context_limit) * 0.6))
        summary_input = truncate_messages(candidate_conversation, summary_budget)
        if len(summary_input) < 2:
            return CompressionOutcome(False, "summary_input_too_small")

        summary = (
            await self._generate_summary(session, connection, summary_input, actor_content, trace)
        ).strip()
        if not summary:
            return CompressionOutcome(False, "summary_empty")

        metadata = {
            "source": "auto",
            "threshold_ratio": policy.threshold_ratio,
            "threshold_tokens": threshold_tokens,
            "before_tokens": before_tokens,
            "tail_messages": policy.tail_messages,
            "compressed_count": len(candidates),
            "context_limit": context_limit,
        }
        group = self._persist_group(session, candidates, summary, metadata)

        candidate_tokens = count_conversation_tokens(candidate_conversation)
        summary_tokens = count_conversation_tokens(
            [{"role": "system", "content": format_group_digest(group)}]
        )
        after_tokens = max(1, before_tokens - candidate_tokens + summary_tokens)
        payload = {
            "group_id": group.id,
            "compressed_count": len(candidates),
            "threshold_tokens": threshold_tokens,
            "before_tokens": before_tokens,
            "after_tokens": after_tokens,
            "tail_messages": policy.tail_messages,
        }
        logger.info("conversation_compressed", session_id=session.id, **payload)
        return CompressionOutcome(True, payload=payload)

    def _select_candidates(
        self,
        session_id: str,
        ungrouped: List[Message],
        tail_messages: int,
        protected_message_id: Optional[int],
    ) -> List[Message]:
        eligible = ungrouped[:-tail_messages] if tail_messages > 0 else list(ungrouped)
        if protected_message_id is not None:
            for index, msg in enumerate(eligible):
                if msg.id == protected_message_id:
                    eligible = eligible[:index]
                    break
        released = self._cancelled_member_ids(session_id)
        return [m for m in eligible if m.id not in released]

    def _persist_group(
        self,
        session: ChatSession,
        candidates: List[Message],
        summary: str,
        metadata: Dict[str, Any],
    ) -> MessageGroup:
        snapshot = [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "created_at": m.created_at.isoformat(),
            }
            for m in candidates
        ]
        with self.store.transaction():
            group = self.store.create_message_group(
                session.id,
                summary=summary,
                compressed_messages=snapshot,
                start_message_id=candidates[0].id,
                end_message_id=candidates[-1].id,
                last_message_id=candidates[-1].id,
                user_id=session.user_id,
                metadata=metadata,
            )
            updated = self.store.assign_messages_to_group(
                session.id, group.id, [m.id for m in candidates]
            )
            if updated == 0:
                logger.warning(
                    "compression_race_conflict", session_id=session.id, group_id=group.id
                )
                raise CompressionConflictError(
                    "Messages were already compressed by another request",
                    detail={"session_id": session.id},
                )
        return group

    async def _generate_summary(
        self,
        session: ChatSession,
        connection,
        messages: List[Dict[str, Any]],
        actor_content: str,
        trace: Optional[TraceRecorder],
    ) -> str:
        latest = (actor_content or "").strip() or "(empty)"
        user_prompt = "\n".join(
            [
                "The following history messages need to be compressed:",
                format_summary_input(messages),
                "",
                f"Latest user input (for judging continuity): {latest}",
            ]
        )
        body = {
            "temperature": 0.2,
            "max_tokens": 1024,
            "messages": [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }
        provider = ProviderFamily(connection.provider)
        url, shaped = shape_provider_call(
            provider,
            connection.base_url,
            session.model_raw_id,
            body,
            azure_api_version=connection.azure_api_version,
        )
        timeout_ms = parse_int_in_range(
            self.system_settings.get("provider_timeout_ms"), 300000, 10000, 3600000
        )
        request = ProviderRequest(
            url=url,
            headers=build_headers(
                connection,
                system_oauth_token=self.system_settings.get_str("system_oauth_token")
                or self.settings.system_oauth_token,
            ),
            body=shaped,
            timeout_ms=max(MIN_SUMMARY_TIMEOUT_MS, timeout_ms),
            provider_label=provider.value,
            provider_host=safe_host(connection.base_url),
        )
        try:
            response = await self.requester.request_with_backoff(
                request, trace=trace, session_id=session.id, route="compression"
            )
        except Exception as exc:
            logger.warning(
                "compression_summary_request_failed",
                session_id=session.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return fallback_summary(messages)

        if not response.is_success:
            logger.warning(
                "compression_summary_status",
                session_id=session.id,
                status=response.status_code,
                error=response.text[:200],
            )
            return fallback_summary(messages)
        try:
            text = extract_text(response.json())
        except ValueError:
            return fallback_summary(messages)
        return text.strip() or fallback_summary(messages)

    def update_group_expanded(self, session_id: str, group_id: int, expanded: bool) -> bool:
        return self.store.set_message_group_expanded(session_id, group_id, expanded)

    def cancel_group(self, session_id: str, group_id: int) -> Dict[str, Any]:
        with self.store.transaction():
            group = self.store.get_message_group(session_id, group_id)
            if group is None:
                return {"cancelled": False, "released_count": 0}
            released = self.store.release_message_group(
                session_id, group_id, cancelled_at=utcnow()
            )
        logger.info(
            "compression_group_cancelled",
            session_id=session_id,
            group_id=group_id,
            released_count=released,
        )
        return {"cancelled": True, "released_count": released}
