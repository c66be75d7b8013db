# =============================================================================
# File: pairchat/common/base/base_model.py
# Description: Base Pydantic model for all notification events
# =============================================================================

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Final, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from pairchat.utils.uuid_utils import generate_event_id

_DEFAULT_EVENT_VERSION: Final[int] = 1


class BaseEvent(BaseModel):
    """
    Base Pydantic model for events delivered by the realtime backend.
    Ensures common metadata fields are present in every event.
    """
    event_id: uuid.UUID = Field(default_factory=generate_event_id)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=_DEFAULT_EVENT_VERSION, description="Version of this event model's schema")

    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        populate_by_name=True,
        extra='ignore',
    )

    def to_dict_for_bus(self) -> Dict[str, Any]:
        """
        Serializes the event to a JSON-safe dictionary
        (UUID and datetime converted to strings).
        """
        return self.model_dump(mode="json", by_alias=True)
