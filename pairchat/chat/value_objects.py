# =============================================================================
# File: pairchat/chat/value_objects.py
# Description: Chat domain value objects
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from pairchat.chat.enums import MessageKind
from pairchat.chat.exceptions import InvalidDraftError


@dataclass(frozen=True)
class SessionContext:
    """
    Value Object: who is looking at which conversation.

    Passed explicitly to every component of a conversation view instead of
    a process-wide "current user".
    """
    user_id: str
    conversation_id: str
    participant_ids: Tuple[str, ...] = ()
    display_names: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.conversation_id:
            raise ValueError("conversation_id cannot be empty")
        object.__setattr__(self, "participant_ids", tuple(self.participant_ids))

    def display_name(self, user_id: str) -> str:
        """Display name for a user, falling back to the raw id"""
        return self.display_names.get(user_id, user_id)

    @property
    def peer_ids(self) -> Tuple[str, ...]:
        """Everyone in the conversation except the local user"""
        return tuple(p for p in self.participant_ids if p != self.user_id)

    @property
    def channel_name(self) -> str:
        """Realtime channel shared by message sync and typing presence"""
        return f"conversation:{self.conversation_id}"


@dataclass(frozen=True)
class MessageDraft:
    """
    Value Object: a message the user is about to send.

    Content is trimmed. A draft needs either text or an attachment, and
    image/gif drafts need an attachment reference.
    """
    content: Optional[str] = None
    kind: MessageKind = MessageKind.TEXT
    attachment_ref: Optional[str] = None
    reply_to_id: Optional[str] = None

    def __post_init__(self) -> None:
        content = self.content.strip() if self.content else None
        object.__setattr__(self, "content", content or None)

        if self.kind in (MessageKind.IMAGE, MessageKind.GIF) and not self.attachment_ref:
            raise InvalidDraftError(f"{self.kind.value} message requires an attachment")
        if not self.content and not self.attachment_ref:
            raise InvalidDraftError("Message cannot be empty")

    @classmethod
    def text(cls, content: str, reply_to_id: Optional[str] = None) -> 'MessageDraft':
        return cls(content=content, kind=MessageKind.TEXT, reply_to_id=reply_to_id)

    @classmethod
    def image(cls, attachment_ref: str, caption: Optional[str] = None) -> 'MessageDraft':
        return cls(content=caption, kind=MessageKind.IMAGE, attachment_ref=attachment_ref)

    @classmethod
    def gif(cls, attachment_ref: str) -> 'MessageDraft':
        return cls(kind=MessageKind.GIF, attachment_ref=attachment_ref)
