"""Conversation memory: bounded context windows over a persisted message log.

The manager is stateless between turns. Every call works on the log snapshot
it is handed and returns the new log instead of writing it, so the caller
decides when (and whether) to persist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, TypeVar, Union

from pydantic import ValidationError

from agent.core.messages import InboundMessage, MessageMetadata, StoredMessage, TextPart
from config.settings import Settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def extract_text(message: InboundMessage) -> str:
    content = ""
    for part in message.parts:
        if isinstance(part, TextPart) and part.text:
            content += part.text
    return content.strip()


def select_latest_inbound_message(
    messages: Sequence[InboundMessage], user_only: bool = False
) -> Optional[InboundMessage]:
    for message in reversed(messages):
        if user_only and message.role != "user":
            continue
        if extract_text(message):
            return message
    return None


def is_duplicate(log: Sequence[StoredMessage], text: str) -> bool:
    return any(msg.role == "user" and msg.content == text for msg in log)


def _keep_last(log: Sequence[T], cap: int) -> List[T]:
    if len(log) <= cap:
        return list(log)
    return list(log[-cap:])


def window_for_context(log: Sequence[StoredMessage], cap: int) -> List[StoredMessage]:
    return _keep_last(log, cap)


def trim_for_storage(log: Sequence[StoredMessage], cap: int) -> List[StoredMessage]:
    return _keep_last(log, cap)


def to_stored_message(message: InboundMessage, timestamp: Optional[str] = None) -> Optional[StoredMessage]:
    content = extract_text(message)
    if not content:
        return None
    created_at = timestamp or message.metadata.get("createdAt") or utc_timestamp()
    try:
        return StoredMessage(
            role=message.role,
            content=content,
            metadata=MessageMetadata(created_at=str(created_at)),
        )
    except ValidationError as exc:
        logger.warning("Could not convert %s message for storage: %s", message.role, exc)
        return None


class TurnStatus(str, Enum):
    OK = "ok"
    CLEARED = "cleared"
    EMPTY = "empty"
    DUPLICATE = "duplicate"
    NON_USER = "non_user"
    CONVERSION_FAILED = "conversion_failed"


@dataclass(frozen=True)
class TurnOutcome:
    """Result of a turn. ``updated_log`` is None when the stored log must stay as it is."""

    status: TurnStatus
    detail: str = ""
    deleted: int = 0
    updated_log: Optional[List[StoredMessage]] = None

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {"status": self.status.value}
        if self.status is TurnStatus.CLEARED:
            body["deleted"] = self.deleted
        if self.detail:
            body["detail"] = self.detail
        return body


@dataclass
class PendingTurn:
    """A validated turn waiting for the model's reply."""

    log: List[StoredMessage]
    user_message: InboundMessage
    created_at: str
    context_messages: List[Dict[str, str]]
    history_omitted: int
    storage_cap: int
    clock: Callable[[], datetime] = field(repr=False, default=lambda: datetime.now(timezone.utc))

    def complete(self, assistant_text: str) -> TurnOutcome:
        user_stored = to_stored_message(self.user_message, self.created_at)
        if user_stored is None:
            logger.warning("Failed to convert user message, history left unchanged")
            return TurnOutcome(
                TurnStatus.CONVERSION_FAILED,
                detail="Could not store the user message",
            )

        logger.info("AI response: %r", _preview(assistant_text or ""))
        appended = [user_stored]
        if assistant_text and assistant_text.strip():
            appended.append(
                StoredMessage(
                    role="assistant",
                    content=assistant_text,
                    metadata=MessageMetadata(created_at=utc_timestamp(self.clock())),
                )
            )
        else:
            logger.warning("Empty assistant response discarded")

        trimmed = trim_for_storage(self.log + appended, self.storage_cap)
        logger.info("Saved %d messages (%d -> %d)", len(trimmed), len(self.log), len(trimmed))
        return TurnOutcome(TurnStatus.OK, updated_log=trimmed)


class ContextManager:
    def __init__(
        self,
        max_context: int = 15,
        max_stored: int = 100,
        clear_command: str = "(clear requested)",
        reject_duplicates: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_stored <= max_context:
            raise ValueError("max_stored must be greater than max_context")
        self.max_context = max_context
        self.max_stored = max_stored
        self.clear_command = clear_command
        self.reject_duplicates = reject_duplicates
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextManager":
        return cls(
            max_context=settings.max_messages_in_context,
            max_stored=settings.max_stored_messages,
            clear_command=settings.clear_command,
            reject_duplicates=settings.reject_duplicates,
        )

    def handle_turn(
        self, log: Sequence[StoredMessage], messages: Sequence[InboundMessage]
    ) -> Union[TurnOutcome, PendingTurn]:
        log = list(log)
        logger.info("Loaded %d messages, received %d in request", len(log), len(messages))

        latest = select_latest_inbound_message(messages)
        if latest is None:
            logger.warning("No valid inbound message found")
            return TurnOutcome(TurnStatus.EMPTY, detail="No valid message")

        text = extract_text(latest)
        if latest.role == "system" and text == self.clear_command:
            logger.info("Clear requested, deleting %d messages", len(log))
            return TurnOutcome(TurnStatus.CLEARED, deleted=len(log), updated_log=[])

        if latest.role != "user":
            logger.warning("Ignoring inbound %s message", latest.role)
            return TurnOutcome(TurnStatus.NON_USER, detail=f"Ignored {latest.role} message")

        logger.info("Processing user message: %r", _preview(text))
        if self.reject_duplicates and is_duplicate(log, text):
            logger.warning("Duplicate message detected, skipping")
            return TurnOutcome(TurnStatus.DUPLICATE, detail="Duplicate message")

        created_at = utc_timestamp(self.clock())
        stamped = latest.model_copy(update={"metadata": {**latest.metadata, "createdAt": created_at}})

        recent = window_for_context(log, self.max_context)
        context = [msg.as_turn() for msg in recent]
        context.append({"role": "user", "content": text})
        logger.info(
            "Using %d messages for AI (%d history + 1 new)", len(context), len(recent)
        )

        return PendingTurn(
            log=log,
            user_message=stamped,
            created_at=created_at,
            context_messages=context,
            history_omitted=len(log) - len(recent),
            storage_cap=self.max_stored,
            clock=self.clock,
        )
