# =============================================================================
# File: pairchat/chat/enums.py
# Description: Chat domain enumerations
# =============================================================================

from enum import Enum


class MessageKind(str, Enum):
    """Types of messages"""
    TEXT = "text"
    IMAGE = "image"
    GIF = "gif"


class DeliveryStatus(str, Enum):
    """Local delivery status of a message (never persisted)"""
    SENDING = "sending"
    SENT = "sent"


class EventKind(str, Enum):
    """Notification kinds delivered by the realtime backend"""
    CREATED = "created"
    MUTATED = "mutated"


class ConnectionState(str, Enum):
    """Conversation view connection state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCED = "synced"
    DEGRADED = "degraded"
    RESYNCING = "resyncing"


class OutboxOperation(str, Enum):
    """Optimistic mutations issued by the Outbox"""
    SEND = "send"
    EDIT = "edit"
    REMOVE = "remove"
    REACT = "react"
    MARK_READ = "mark_read"
