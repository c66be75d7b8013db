# =============================================================================
# File: pairchat/chat/events.py
# Description: Notification events delivered by the realtime backend
# =============================================================================

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from pairchat.chat.enums import EventKind
from pairchat.chat.exceptions import InvalidEventError
from pairchat.chat.read_models import Message
from pairchat.common.base.base_model import BaseEvent


class Created(BaseEvent):
    """A message row was inserted"""
    kind: Literal["created"] = "created"
    message: Message


class Mutated(BaseEvent):
    """A message row was updated (edit, soft delete, receipt or reaction)"""
    kind: Literal["mutated"] = "mutated"
    message: Message


ChatEvent = Annotated[Union[Created, Mutated], Field(discriminator="kind")]

_CHAT_EVENT_ADAPTER: TypeAdapter[ChatEvent] = TypeAdapter(ChatEvent)

# Backend change types mapped onto event kinds
_CHANGE_TYPES: Dict[str, EventKind] = {
    "INSERT": EventKind.CREATED,
    "UPDATE": EventKind.MUTATED,
    "created": EventKind.CREATED,
    "mutated": EventKind.MUTATED,
}


def parse_event(payload: Dict[str, Any], conversation_id: Optional[str] = None) -> Union[Created, Mutated]:
    """
    Validate a raw backend payload into a typed event.

    Accepts either {"kind": "created", "message": {...}} or the change-feed
    shape {"eventType": "INSERT", "new": {...}}.

    Raises:
        InvalidEventError: payload is malformed or belongs to another conversation
    """
    if not isinstance(payload, dict):
        raise InvalidEventError(f"Event payload must be an object, got {type(payload).__name__}")

    if "kind" not in payload and "eventType" in payload:
        kind = _CHANGE_TYPES.get(payload["eventType"])
        if kind is None:
            raise InvalidEventError(f"Unsupported change type: {payload['eventType']}")
        payload = {"kind": kind.value, "message": payload.get("new")}

    try:
        event = _CHAT_EVENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise InvalidEventError(f"Invalid event payload: {e.error_count()} error(s)") from e

    if conversation_id is not None and event.message.conversation_id != conversation_id:
        raise InvalidEventError(
            f"Event for conversation {event.message.conversation_id} delivered to {conversation_id}"
        )
    return event
