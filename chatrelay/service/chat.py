from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.actors import Actor, AuthenticatedActor, owns_session
from chatrelay.service.compression import ConversationCompressor
from chatrelay.service.errors import BadRequestError, NotFoundError, ProviderRequestError
from chatrelay.service.messages import MessageIntake
from chatrelay.service.provider_requester import ProviderRequester
from chatrelay.service.quota import serialize_snapshot
from chatrelay.service.request_builder import ChatPayload, ChatRequestBuilder
from chatrelay.service.trace import (
    TraceConfigService,
    TraceRecorder,
    resolve_trace_log_dir,
    summarize_error_for_trace,
)
from chatrelay.service.usage import CompletionAttempt, UsageReconciler
from chatrelay.storage.models import ChatSession

logger = get_logger(__name__)


@dataclass
class CompletionResult:
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
    blocked: Dict[str, Any] = field(default_factory=dict)


class ChatCompletionService:
    """Runs one non-streaming completion turn end to end.

    Quota and dedup, compression, request assembly, the provider call and
    reconciliation happen in that order. Every invocation gets a trace that
    is finalized exactly once with ``completed``, ``error`` or ``cancelled``.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        intake: MessageIntake,
        compressor: ConversationCompressor,
        builder: ChatRequestBuilder,
        requester: ProviderRequester,
        reconciler: UsageReconciler,
        trace_config: TraceConfigService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.intake = intake
        self.compressor = compressor
        self.builder = builder
        self.requester = requester
        self.reconciler = reconciler
        self.trace_config = trace_config

    def load_session(self, actor: Actor, session_id: str) -> ChatSession:
        session = self.store.get_chat_session(session_id)
        if session is None or not owns_session(actor, session):
            raise NotFoundError("Chat session not found", detail={"session_id": session_id})
        if not session.has_model:
            raise BadRequestError(
                "Chat session has no model bound", detail={"session_id": session_id}
            )
        return session

    def start_trace(self, actor: Actor, payload: ChatPayload, session: ChatSession) -> TraceRecorder:
        try:
            decision = self.trace_config.should_enable(actor, payload.trace, self.settings.app_env)
        except Exception as exc:
            logger.warning("task_trace_decision_failed", error=str(exc))
            return TraceRecorder.disabled()
        if not decision.enabled:
            return TraceRecorder.disabled()
        return TraceRecorder.start(
            self.store,
            log_dir=resolve_trace_log_dir(self.settings),
            enabled=True,
            actor_identifier=actor.identifier,
            session_id=session.id,
            client_message_id=payload.client_message_id,
            trace_level=decision.trace_level,
            metadata={"mode": "completion", "model": session.model_raw_id},
            max_events=decision.config.max_events,
        )

    async def complete(self, actor: Actor, payload: ChatPayload) -> CompletionResult:
        session = self.load_session(actor, payload.session_id)
        trace = self.start_trace(actor, payload, session)
        trace.log(
            "request:received",
            {
                "session_id": session.id,
                "actor": actor.identifier,
                "content_length": len(payload.content or ""),
                "images": len(payload.images),
                "context_enabled": payload.context_enabled,
            },
        )
        try:
            result = await self._run(actor, payload, session, trace)
        except asyncio.CancelledError:
            trace.log("request:cancelled", {})
            trace.finalize("cancelled")
            raise
        except Exception as exc:
            trace.log("request:error", {"error": summarize_error_for_trace(exc)})
            trace.finalize("error", error=str(exc))
            raise
        trace.finalize(
            "completed",
            metadata={"usage": result.usage, "usage_source": result.usage_source},
        )
        result.trace_id = trace.trace_id
        return result

    async def _run(
        self,
        actor: Actor,
        payload: ChatPayload,
        session: ChatSession,
        trace: TraceRecorder,
    ) -> CompletionResult:
        intake = self.intake.accept_user_message(
            actor, session.id, payload.content, payload.client_message_id
        )
        trace.set_message_context(intake.message.client_message_id)
        trace.log(
            "quota:checked",
            {
                "message_id": intake.message.id,
                "reused": intake.reused,
                "quota": intake.quota_payload(),
            },
        )

        compression: Optional[Dict[str, Any]] = None
        try:
            outcome = await self.compressor.compress_if_needed(
                session,
                actor_content=payload.content,
                protected_message_id=intake.message.id,
                history_upper_bound=intake.message.created_at,
                trace=trace,
            )
            trace.log(
                "context:compression",
                {"applied": outcome.applied, "reason": outcome.reason, **outcome.payload},
            )
            if outcome.applied:
                compression = outcome.payload
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "conversation_compression_failed",
                session_id=session.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            trace.log("context:compression_failed", {"error": summarize_error_for_trace(exc)})

        personal_prompt = None
        if isinstance(actor, AuthenticatedActor):
            user = self.store.get_user(actor.user_id)
            personal_prompt = user.personal_prompt if user else None

        prepared = self.builder.prepare(
            session,
            payload,
            payload.content,
            payload.images,
            history_upper_bound=intake.message.created_at,
            personal_prompt=personal_prompt,
        )
        trace.log(
            "request:prepared",
            {
                "prompt_tokens": prepared.prompt_tokens,
                "context_limit": prepared.context_limit,
                "context_remaining": prepared.context_remaining,
                "applied_max_tokens": prepared.applied_max_tokens,
                "provider": prepared.provider_request.provider_label,
                "blocked_body_keys": prepared.custom_body_blocked_keys,
                "blocked_headers": prepared.custom_header_blocked,
            },
        )

        response = await self.requester.request_with_backoff(
            prepared.provider_request, trace=trace, session_id=session.id
        )
        if not response.is_success:
            logger.warning(
                "provider_request_failed",
                session_id=session.id,
                status=response.status_code,
                body=response.text[:200],
            )
            raise ProviderRequestError(response.status_code, reason=response.reason_phrase)
        try:
            response_json = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                response.status_code, reason="invalid JSON body"
            ) from exc

        reconciled = self.reconciler.finalize(
            CompletionAttempt(
                session_id=session.id,
                model=session.model_raw_id or "unknown",
                response_json=response_json,
                prompt_tokens=prepared.prompt_tokens,
                context_limit=prepared.context_limit,
                context_remaining=prepared.context_remaining,
                provider_host=prepared.provider_request.provider_host,
                save_reasoning=payload.save_reasoning,
            ),
            trace=trace,
        )
        return CompletionResult(
            content=reconciled.content,
            usage=reconciled.usage,
            quota=intake.quota_payload(),
            usage_source=reconciled.usage_source,
            reasoning=reconciled.reasoning if payload.save_reasoning else None,
            user_message_id=intake.message.id,
            assistant_message_id=reconciled.assistant_message_id,
            message_reused=intake.reused,
            compression=compression,
            blocked={
                "body_keys": prepared.custom_body_blocked_keys,
                "headers": prepared.custom_header_blocked,
            },
        )
