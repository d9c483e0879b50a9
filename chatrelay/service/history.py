from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from chatrelay.storage.models import MessageGroup

HISTORY_WINDOW = 50
DIGEST_ROLE = "system"


def format_group_digest(group: MessageGroup) -> str:
    return f"[Compressed history summary, {group.compressed_count} messages]\n{group.summary}"


def load_history(
    store,
    session_id: str,
    *,
    upper_bound: Optional[datetime] = None,
    limit: Optional[int] = HISTORY_WINDOW,
) -> List[Dict[str, Any]]:
    """Conversation as prompt messages, with compressed runs folded into digests.

    Each active group contributes one digest message at the position of its
    first member. ``limit`` keeps the newest entries after folding.
    """

    messages = store.list_messages(session_id, upper_bound=upper_bound)
    groups = {g.id: g for g in store.list_message_groups(session_id)}
    folded: List[Dict[str, Any]] = []
    emitted_groups = set()
    for msg in messages:
        group = groups.get(msg.group_id) if msg.group_id is not None else None
        if group is None:
            folded.append(msg.as_prompt())
            continue
        if group.id in emitted_groups:
            continue
        emitted_groups.add(group.id)
        folded.append({"role": DIGEST_ROLE, "content": format_group_digest(group)})
    if limit is not None:
        folded = folded[-limit:] if limit > 0 else []
    return folded
