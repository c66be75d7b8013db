# =============================================================================
# File: pairchat/chat/exceptions.py
# Description: Chat domain exceptions
# =============================================================================

from typing import Optional, TYPE_CHECKING

from pairchat.common.exceptions.exceptions import (
    ConflictError,
    DomainError,
    InfrastructureError,
    ResourceNotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from pairchat.chat.enums import ConnectionState, OutboxOperation
    from pairchat.chat.value_objects import MessageDraft


class ChatError(DomainError):
    """Base exception for Chat domain"""
    pass


class MessageNotFoundError(ResourceNotFoundError):
    """Message not found in the local store"""
    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class MessageConflictError(ConflictError):
    """Mutation targets a message that is gone (e.g. edit racing a delete)"""
    def __init__(self, message_id: str, action: str):
        super().__init__(f"Cannot {action} message {message_id}: no longer present")
        self.message_id = message_id
        self.action = action


class TransientIOError(InfrastructureError):
    """
    Persist call failed. The optimistic change has been rolled back;
    retrying is left to the caller.
    """
    def __init__(
        self,
        operation: 'OutboxOperation',
        message_id: str,
        cause: Optional[BaseException] = None,
        draft: Optional['MessageDraft'] = None,
    ):
        super().__init__(f"Failed to {operation.value} message {message_id}: {cause}")
        self.operation = operation
        self.message_id = message_id
        self.cause = cause
        self.draft = draft


class StaleDeliveryError(ChatError):
    """Incoming event is older than the held revision; ignored, never surfaced"""
    def __init__(self, message_id: str):
        super().__init__(f"Stale delivery for message {message_id}")
        self.message_id = message_id


class ChannelDisconnectError(InfrastructureError):
    """Notification stream dropped"""
    def __init__(self, channel: str, reason: Optional[str] = None):
        super().__init__(f"Channel {channel} disconnected" + (f": {reason}" if reason else ""))
        self.channel = channel
        self.reason = reason


class InvalidEventError(ValidationError):
    """Backend payload failed validation at the boundary"""
    pass


class InvalidDraftError(ValidationError):
    """Draft cannot be sent"""
    pass


class InvalidStateTransitionError(ChatError):
    """Connection state machine received an illegal transition"""
    def __init__(self, current: 'ConnectionState', target: 'ConnectionState'):
        super().__init__(f"Illegal transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
