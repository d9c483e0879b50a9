from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Sequence

MESSAGE_OVERHEAD_TOKENS = 4
CONVERSATION_OVERHEAD_TOKENS = 3
IMAGE_PART_TOKENS = 85


def count_tokens(text: Any) -> int:
    """Approximate provider tokenization without a vocabulary.

    ASCII runs average four characters per token; every other character is
    counted as its own token. The estimate is monotonic in the input length.
    """

    if not text:
        return 0
    if not isinstance(text, str):
        text = str(text)
    ascii_chars = 0
    other_chars = 0
    for ch in text:
        if ord(ch) < 128:
            ascii_chars += 1
        else:
            other_chars += 1
    return math.ceil(ascii_chars / 4) + other_chars


def count_content_tokens(content: Any) -> int:
    if isinstance(content, list):
        total = 0
        for part in content:
            if not isinstance(part, Mapping):
                total += count_tokens(part)
                continue
            kind = part.get("type")
            if kind == "text":
                total += count_tokens(part.get("text", ""))
            elif kind in {"image_url", "image"}:
                total += IMAGE_PART_TOKENS
        return total
    return count_tokens(content)


def count_message_tokens(message: Mapping[str, Any]) -> int:
    return (
        MESSAGE_OVERHEAD_TOKENS
        + count_content_tokens(message.get("content"))
        + count_tokens(message.get("role", ""))
    )


def count_conversation_tokens(messages: Sequence[Mapping[str, Any]]) -> int:
    return CONVERSATION_OVERHEAD_TOKENS + sum(count_message_tokens(m) for m in messages)


def truncate_messages(
    messages: Sequence[Mapping[str, Any]], max_tokens: int
) -> List[Dict[str, Any]]:
    """Keep the newest messages that fit in ``max_tokens``, oldest first.

    Walks from the newest message backwards and stops at the first message
    that would overflow, so the result is always a contiguous suffix.
    """

    kept: List[Dict[str, Any]] = []
    used = CONVERSATION_OVERHEAD_TOKENS
    for message in reversed(messages):
        cost = count_message_tokens(message)
        if used + cost > max_tokens:
            break
        kept.append(dict(message))
        used += cost
    kept.reverse()
    return kept


def budget_with_pinned(
    pinned: Sequence[Mapping[str, Any]],
    history: Sequence[Mapping[str, Any]],
    context_limit: int,
) -> Dict[str, Any]:
    """Reserve room for pinned prompts, then fit as much history as possible.

    Returns ``pinned_tokens``, the ``remaining`` budget (never negative) and
    the truncated ``history``.
    """

    pinned_tokens = count_conversation_tokens(pinned) if pinned else 0
    remaining = max(0, context_limit - pinned_tokens)
    return {
        "pinned_tokens": pinned_tokens,
        "remaining": remaining,
        "history": truncate_messages(history, max(1, remaining)),
    }
