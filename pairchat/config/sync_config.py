# =============================================================================
# File: pairchat/config/sync_config.py
# Description: Message sync engine configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from pairchat.common.base.base_config import BaseConfig


class SyncConfig(BaseConfig):
    """
    Sync Controller configuration.

    Environment variables use the CHAT_SYNC_ prefix, e.g.
    CHAT_SYNC_MAX_BUFFERED_EVENTS=5000.
    """

    # Merged over BaseConfig.model_config by pydantic
    model_config = SettingsConfigDict(env_prefix='CHAT_SYNC_')

    max_buffered_events: int = Field(
        default=1000,
        ge=1,
        description="Events held while Degraded/Resyncing; oldest dropped on overflow"
    )

    reconnect_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="First delay before re-subscribing after a channel drop"
    )

    reconnect_backoff_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiplier applied to the reconnect delay after each failed attempt"
    )

    reconnect_max_delay_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound for the reconnect delay"
    )

    @model_validator(mode="after")
    def _check_delays(self) -> "SyncConfig":
        if self.reconnect_max_delay_seconds < self.reconnect_initial_delay_seconds:
            raise ValueError("reconnect_max_delay_seconds must be >= reconnect_initial_delay_seconds")
        return self


@lru_cache(maxsize=1)
def get_sync_config() -> SyncConfig:
    """Get sync configuration singleton"""
    return SyncConfig()
