# =============================================================================
# File: pairchat/config/presence_config.py
# Description: Presence and typing indicator configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from pairchat.common.base.base_config import BaseConfig


class PresenceConfig(BaseConfig):
    """
    Presence Tracker configuration.

    The owner is set offline once no activity has been recorded for
    inactivity_timeout_seconds. The check runs every
    activity_check_interval_seconds, so the effective timeout is between
    the two (120s to 150s with defaults).
    """

    # Merged over BaseConfig.model_config by pydantic
    model_config = SettingsConfigDict(env_prefix='CHAT_PRESENCE_')

    inactivity_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Inactivity after which the owner is written offline"
    )

    activity_check_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often the inactivity check samples the activity clock"
    )

    typing_idle_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Local typing membership is retracted after this much input silence"
    )

    watch_retry_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="First delay before re-subscribing to peers' presence after the feed fails"
    )

    watch_retry_backoff_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiplier applied to the re-subscribe delay after each failure"
    )

    watch_retry_max_delay_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound for the re-subscribe delay"
    )

    @model_validator(mode="after")
    def _check_interval(self) -> "PresenceConfig":
        if self.activity_check_interval_seconds > self.inactivity_timeout_seconds:
            raise ValueError("activity_check_interval_seconds must not exceed inactivity_timeout_seconds")
        if self.watch_retry_max_delay_seconds < self.watch_retry_initial_delay_seconds:
            raise ValueError("watch_retry_max_delay_seconds must be >= watch_retry_initial_delay_seconds")
        return self


@lru_cache(maxsize=1)
def get_presence_config() -> PresenceConfig:
    """Get presence configuration singleton"""
    return PresenceConfig()
