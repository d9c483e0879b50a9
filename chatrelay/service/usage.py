from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from chatrelay.logging import get_logger
from chatrelay.service.tokenizer import count_tokens
from chatrelay.service.trace import TraceRecorder, summarize_error_for_trace

logger = get_logger(__name__)

USAGE_SOURCE_PROVIDER = "provider"
USAGE_SOURCE_FALLBACK = "fallback"

_PROMPT_KEYS = ("prompt_tokens", "prompt_eval_count", "input_tokens")
_COMPLETION_KEYS = ("completion_tokens", "eval_count", "output_tokens")


def _first_count(usage: Mapping[str, Any], keys: tuple) -> int:
    for key in keys:
        value = usage.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            number = int(float(value))
        except (TypeError, ValueError):
            continue
        if number > 0:
            return number
    return 0


def _usage_block(response_json: Any) -> Mapping[str, Any]:
    if not isinstance(response_json, Mapping):
        return {}
    usage = response_json.get("usage")
    if isinstance(usage, Mapping):
        return usage
    # Ollama reports counters at the top level
    return response_json


def extract_usage(
    response_json: Any,
    *,
    prompt_tokens: int,
    completion_estimate: int,
) -> tuple[Dict[str, int], str]:
    """Normalize provider usage counters.

    Returns ``(usage, source)``. When the provider reports nothing useful the
    local prompt count and completion estimate are used instead.
    """
    usage = _usage_block(response_json)
    prompt = _first_count(usage, _PROMPT_KEYS)
    completion = _first_count(usage, _COMPLETION_KEYS)
    total = _first_count(usage, ("total_tokens",))

    if not (prompt or completion or total):
        prompt = max(0, int(prompt_tokens))
        completion = max(0, int(completion_estimate))
        return (
            {
                "prompt_tokens": prompt,
                "completion_tokens": completion,
                "total_tokens": prompt + completion,
            },
            USAGE_SOURCE_FALLBACK,
        )

    if not prompt:
        prompt = max(0, int(prompt_tokens))
    if not total:
        total = prompt + completion
    return (
        {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total},
        USAGE_SOURCE_PROVIDER,
    )


def extract_text(response_json: Any) -> str:
    if not isinstance(response_json, Mapping):
        return ""
    choices = response_json.get("choices")
    if isinstance(choices, list) and choices:
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
    message = response_json.get("message")
    if isinstance(message, Mapping) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


def extract_reasoning(response_json: Any) -> Optional[str]:
    if not isinstance(response_json, Mapping):
        return None
    choices = response_json.get("choices")
    if isinstance(choices, list) and choices:
        message = (choices[0] or {}).get("message") or {}
        reasoning = message.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            return reasoning
    message = response_json.get("message")
    if isinstance(message, Mapping):
        thinking = message.get("thinking")
        if isinstance(thinking, str) and thinking:
            return thinking
    return None


@dataclass
class CompletionAttempt:
    """What the reconciler needs to know about one successful provider call."""

    session_id: str
    model: str
    response_json: Any
    prompt_tokens: int
    context_limit: int
    context_remaining: int
    provider_host: Optional[str] = None
    save_reasoning: bool = True


@dataclass
class ReconcileResult:
    content: str
    reasoning: Optional[str]
    assistant_message_id: Optional[int]
    usage: Dict[str, int]
    usage_source: str


class UsageReconciler:
    def __init__(self, store) -> None:
        self.store = store

    def finalize(
        self, attempt: CompletionAttempt, *, trace: Optional[TraceRecorder] = None
    ) -> ReconcileResult:
        text = extract_text(attempt.response_json)
        reasoning = extract_reasoning(attempt.response_json)
        counts, source = extract_usage(
            attempt.response_json,
            prompt_tokens=attempt.prompt_tokens,
            completion_estimate=count_tokens(text),
        )
        usage = {
            **counts,
            "context_limit": attempt.context_limit,
            "context_remaining": attempt.context_remaining,
        }

        assistant_id: Optional[int] = None
        if text:
            assistant_id = self._persist_assistant(attempt, text, reasoning, trace)
        self._persist_usage(attempt, usage, assistant_id, trace)

        if trace is not None:
            trace.log(
                "usage:reconciled",
                {
                    "usage": usage,
                    "usage_source": source,
                    "assistant_message_id": assistant_id,
                },
            )
        return ReconcileResult(
            content=text,
            reasoning=reasoning,
            assistant_message_id=assistant_id,
            usage=usage,
            usage_source=source,
        )

    def _persist_assistant(
        self,
        attempt: CompletionAttempt,
        text: str,
        reasoning: Optional[str],
        trace: Optional[TraceRecorder],
    ) -> Optional[int]:
        if not self.store.session_exists(attempt.session_id):
            logger.warning(
                "assistant_message_skipped_session_missing", session_id=attempt.session_id
            )
            return None
        try:
            message = self.store.append_message(
                attempt.session_id,
                "assistant",
                text,
                reasoning=reasoning if (reasoning and attempt.save_reasoning) else None,
            )
            return message.id
        except Exception as exc:
            logger.warning(
                "assistant_message_persist_failed",
                session_id=attempt.session_id,
                error=str(exc),
            )
            if trace is not None:
                trace.log("db:assistant_persist_failed", {"error": summarize_error_for_trace(exc)})
            return None

    def _persist_usage(
        self,
        attempt: CompletionAttempt,
        usage: Dict[str, int],
        assistant_id: Optional[int],
        trace: Optional[TraceRecorder],
    ) -> None:
        try:
            self.store.record_usage(
                session_id=attempt.session_id,
                model=attempt.model or "unknown",
                prompt_tokens=usage["prompt_tokens"],
                completion_tokens=usage["completion_tokens"],
                total_tokens=usage["total_tokens"],
                context_limit=usage["context_limit"],
                message_id=assistant_id,
                provider_host=attempt.provider_host,
            )
        except Exception as exc:
            logger.warning(
                "usage_record_persist_failed", session_id=attempt.session_id, error=str(exc)
            )
            if trace is not None:
                trace.log("db:usage_persist_failed", {"error": summarize_error_for_trace(exc)})
