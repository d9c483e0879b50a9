from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from chatrelay.logging import get_logger
from chatrelay.service.actors import Actor, AuthenticatedActor
from chatrelay.service.errors import QuotaExceededError
from chatrelay.service.quota import QuotaLedger, QuotaSnapshot, serialize_snapshot
from chatrelay.storage.models import Message, utcnow

logger = get_logger(__name__)

MESSAGE_DEDUPE_WINDOW = timedelta(seconds=30)


@dataclass
class IntakeResult:
    message: Message
    reused: bool
    quota: QuotaSnapshot

    def quota_payload(self) -> Dict[str, Any]:
        return serialize_snapshot(self.quota)


def normalize_client_message_id(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


class MessageIntake:
    """Stores a user turn and debits quota at most once per logical turn.

    A retried submission is recognised by its client message id or, when the
    client sent none, by identical content within the dedupe window. Reused
    turns only inspect the quota; new turns consume it in the same
    transaction that stores the message.
    """

    def __init__(self, store, quota: QuotaLedger) -> None:
        self.store = store
        self.quota = quota

    def accept_user_message(
        self,
        actor: Actor,
        session_id: str,
        content: str,
        client_message_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> IntakeResult:
        moment = now or utcnow()
        client_id = normalize_client_message_id(client_message_id)

        with self.store.transaction():
            existing: Optional[Message] = None
            if client_id:
                existing = self.store.get_message_by_client_id(session_id, client_id)
            else:
                candidate = self.store.find_latest_user_message(session_id, content)
                if candidate and moment - candidate.created_at <= MESSAGE_DEDUPE_WINDOW:
                    existing = candidate

            if existing is not None:
                logger.info(
                    "user_message_reused",
                    session_id=session_id,
                    message_id=existing.id,
                    client_message_id=client_id,
                )
                return IntakeResult(
                    message=existing,
                    reused=True,
                    quota=self.quota.inspect(actor, now=moment),
                )

            result = self.quota.consume(actor, now=moment)
            if not result.success:
                raise QuotaExceededError(
                    serialize_snapshot(result.snapshot),
                    required_login=not isinstance(actor, AuthenticatedActor),
                )
            message = self.store.append_message(
                session_id,
                "user",
                content,
                client_message_id=client_id,
                created_at=moment,
            )
            return IntakeResult(message=message, reused=False, quota=result.snapshot)
