# =============================================================================
# File: pairchat/chat/read_models.py
# Description: Chat read models held by the client-side store
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pairchat.chat.enums import DeliveryStatus, MessageKind
from pairchat.utils.datetime_utils import ensure_utc

# Fields that only exist on the client and are never written to the backend
LOCAL_ONLY_FIELDS = frozenset({"delivery_status"})


def _coerce_user_set(value: Any) -> Any:
    """Accept {user: true} maps and lists as user sets."""
    if value is None:
        return frozenset()
    if isinstance(value, dict):
        return frozenset(user_id for user_id, flag in value.items() if flag)
    if isinstance(value, (list, tuple, set)):
        return frozenset(value)
    return value


class Message(BaseModel):
    """
    Message entity (backend table: messages).

    Immutable; every mutation produces a new instance via model_copy.
    Accepts both snake_case and camelCase keys from the backend.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    attachment_ref: Optional[str] = None
    kind: MessageKind = MessageKind.TEXT
    created_at: datetime
    updated_at: Optional[datetime] = None
    reply_to_id: Optional[str] = None
    # Tombstone
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    # Set-union fields
    read_by: FrozenSet[str] = Field(default_factory=frozenset)
    reactions: Dict[str, FrozenSet[str]] = Field(default_factory=dict)
    # Monotonic per-message counter, when the backend provides one
    revision: Optional[int] = None
    # Id issued by the sending client for optimistic reconciliation
    client_temp_id: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None

    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra='ignore',
    )

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("read_by", mode="before")
    @classmethod
    def _read_by(cls, value: Any) -> Any:
        return _coerce_user_set(value)

    @field_validator("reactions", mode="before")
    @classmethod
    def _reactions(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            coerced = {emoji: _coerce_user_set(users) for emoji, users in value.items()}
            # Keep the map sparse
            return {emoji: users for emoji, users in coerced.items() if users}
        return value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_provisional(self) -> bool:
        return self.delivery_status == DeliveryStatus.SENDING

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        """Canonical order: (created_at, id), ties broken by id."""
        return self.created_at, self.id

    @property
    def last_modified(self) -> datetime:
        return self.updated_at or self.created_at

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by

    @property
    def is_seen(self) -> bool:
        """True once anyone other than the sender has read the message."""
        return any(user_id != self.sender_id for user_id in self.read_by)

    def reaction_count(self, emoji: str) -> int:
        return len(self.reactions.get(emoji, ()))

    def to_row(self) -> Dict[str, Any]:
        """Serialize for the backend; drops client-only fields."""
        row = self.model_dump(mode="json", exclude=set(LOCAL_ONLY_FIELDS))
        row["read_by"] = sorted(self.read_by)
        row["reactions"] = {emoji: sorted(users) for emoji, users in self.reactions.items()}
        return row


class PresenceRecord(BaseModel):
    """Online/last-seen record (backend table: user_status), one per user"""
    user_id: str
    is_online: bool = False
    last_seen: datetime

    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra='ignore',
    )

    @field_validator("last_seen")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
