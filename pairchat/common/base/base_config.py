# =============================================================================
# File: pairchat/common/base/base_config.py
# Description: Base settings class for pairchat configuration
# =============================================================================
#
# Every settings class derives from BaseConfig, sets its own env_prefix
# and is built through an @lru_cache(maxsize=1) getter:
#
#     class SyncConfig(BaseConfig):
#         model_config = SettingsConfigDict(env_prefix='CHAT_SYNC_')
#         max_buffered_events: int = 1000
#
#     @lru_cache(maxsize=1)
#     def get_sync_config() -> SyncConfig:
#         return SyncConfig()
#
# Chat components take an explicit config instance and only fall back to
# the cached getter when none is given.
# =============================================================================

from typing import Any, Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class for all pairchat settings.

    - values come from the environment and an optional .env file
    - variable names are case-insensitive
    - nested values use the __ delimiter
    - unknown variables are ignored
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe view of the effective settings, for startup logs"""
        return self.model_dump(mode="json")

    @classmethod
    def env_name(cls, field_name: str) -> str:
        """Environment variable that overrides field_name"""
        if field_name not in cls.model_fields:
            raise KeyError(field_name)
        return f"{cls.model_config.get('env_prefix', '')}{field_name}".upper()
