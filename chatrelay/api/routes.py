from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from chatrelay.api.schemas import (
    CompletionRequest,
    CompletionResponse,
    CompressionExpandRequest,
    CompressionGroupResponse,
    Envelope,
    TraceEventsResponse,
)
from chatrelay.logging import get_logger
from chatrelay.service.actors import Actor, AnonymousActor, AuthenticatedActor, owns_session
from chatrelay.service.quota import serialize_snapshot
from chatrelay.service.runtime import get_runtime
from chatrelay.service.trace import read_trace_events

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_TRACE_EVENTS_PAGE = 10000


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    x_anonymous_key: Optional[str] = Header(None, alias="X-Anonymous-Key"),
) -> Actor:
    """Resolve the caller from identity headers set by the upstream gateway."""
    user_id = (x_user_id or "").strip()
    if user_id:
        user = get_runtime().store.get_user(user_id)
        if user is None:
            raise _http_error("unauthorized", "unknown user", status_code=401)
        role = user.role
        requested_role = (x_user_role or "").strip().lower()
        # The header may only drop privileges the stored user already has
        if requested_role and requested_role != "admin" and user.is_admin:
            logger.info("actor_role_lowered", user_id=user.id, role=requested_role)
            role = requested_role
        return AuthenticatedActor(user_id=user.id, username=user.username, role=role)
    anonymous_key = (x_anonymous_key or "").strip()
    if anonymous_key:
        return AnonymousActor(key=anonymous_key)
    raise _http_error("unauthorized", "missing caller identity", status_code=401)


def _require_owned_session(runtime, actor: Actor, session_id: str):
    session = runtime.store.get_chat_session(session_id)
    if session is None or not owns_session(actor, session):
        raise _http_error("not_found", "chat session not found", status_code=404)
    return session


@router.post("/chat/completion", response_model=Envelope, tags=["chat"])
async def chat_completion(body: CompletionRequest, actor: Actor = Depends(get_actor)):
    """Run one non-streaming completion turn.

    Raises:
        404: If the session does not exist or belongs to someone else
        429: If the caller's daily quota is exhausted
        502/504: If the provider fails or times out
    """
    runtime = get_runtime()
    result = await runtime.chat.complete(actor, body.to_payload())
    response = CompletionResponse(
        content=result.content,
        usage=result.usage,
        quota=result.quota,
        usage_source=result.usage_source,
        reasoning=result.reasoning,
        user_message_id=result.user_message_id,
        assistant_message_id=result.assistant_message_id,
        message_reused=result.message_reused,
        compression=result.compression,
        trace_id=result.trace_id,
    )
    return Envelope(status="ok", data=response.model_dump())


@router.patch(
    "/chat/sessions/{session_id}/compression/{group_id}",
    response_model=Envelope,
    tags=["chat"],
)
async def update_compression_group(
    session_id: str,
    group_id: int,
    body: CompressionExpandRequest,
    actor: Actor = Depends(get_actor),
):
    runtime = get_runtime()
    _require_owned_session(runtime, actor, session_id)
    if not runtime.compressor.update_group_expanded(session_id, group_id, body.expanded):
        raise _http_error("not_found", "compression group not found", status_code=404)
    return Envelope(
        status="ok",
        data=CompressionGroupResponse(group_id=group_id, expanded=body.expanded).model_dump(
            exclude_none=True
        ),
    )


@router.post(
    "/chat/sessions/{session_id}/compression/{group_id}/cancel",
    response_model=Envelope,
    tags=["chat"],
)
async def cancel_compression_group(
    session_id: str, group_id: int, actor: Actor = Depends(get_actor)
):
    """Release a compression group so its messages rejoin raw history."""
    runtime = get_runtime()
    _require_owned_session(runtime, actor, session_id)
    outcome = runtime.compressor.cancel_group(session_id, group_id)
    if not outcome["cancelled"]:
        raise _http_error("not_found", "compression group not found", status_code=404)
    return Envelope(
        status="ok",
        data=CompressionGroupResponse(
            group_id=group_id,
            cancelled=True,
            released_count=outcome["released_count"],
        ).model_dump(exclude_none=True),
    )


@router.get("/quota", response_model=Envelope, tags=["quota"])
async def get_quota(actor: Actor = Depends(get_actor)):
    runtime = get_runtime()
    snapshot = runtime.quota.inspect(actor)
    return Envelope(status="ok", data=serialize_snapshot(snapshot))


@router.get("/traces/{trace_id}/events", response_model=Envelope, tags=["traces"])
async def get_trace_events(
    trace_id: str,
    limit: int = Query(2000, ge=1, le=MAX_TRACE_EVENTS_PAGE),
    actor: Actor = Depends(get_actor),
):
    runtime = get_runtime()
    trace = runtime.store.get_task_trace(trace_id)
    if trace is None or (trace.actor != actor.identifier and not actor.is_admin):
        raise _http_error("not_found", "trace not found", status_code=404)
    page = read_trace_events(trace.log_file_path, limit)
    logger.debug("task_trace_events_read", trace_id=trace_id, count=len(page["events"]))
    return Envelope(
        status="ok",
        data=TraceEventsResponse(
            trace_id=trace.id,
            status=trace.status,
            events=page["events"],
            truncated=page["truncated"],
        ).model_dump(),
    )
