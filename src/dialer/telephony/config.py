"""
Voice provider configuration.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported voice provider types."""

    RETELL = "retell"
    MOCK = "mock"


class VoiceProviderConfig(BaseSettings):
    """Voice provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="VOICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: ProviderType = Field(default=ProviderType.RETELL)

    api_key: str = Field(default="")
    api_base_url: str = Field(default="https://api.retellai.com")

    # Caller id used when a campaign has none of its own
    from_number: str = Field(default="")

    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)


def get_voice_provider_config() -> VoiceProviderConfig:
    return VoiceProviderConfig()
