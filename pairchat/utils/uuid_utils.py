# =============================================================================
# File: pairchat/utils/uuid_utils.py  - Message ID Utilities
# =============================================================================
# Client-issued identifiers for optimistic messages.
#
# Ids are random UUIDs rendered as strings. The same id is written on the
# provisional Store entry and sent with the insert request, so the echo of
# the persisted row can be matched back to the entry that produced it.
# =============================================================================

import uuid
from uuid import UUID


def generate_message_id() -> str:
    """
    Generate a new message id for an optimistic send.

    Returns:
        String representation of a UUIDv4
    """
    return str(uuid.uuid4())


def generate_event_id() -> UUID:
    """Generate a new event id."""
    return uuid.uuid4()
