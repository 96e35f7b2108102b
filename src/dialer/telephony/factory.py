"""
Voice provider factory.
"""

from functools import lru_cache

from dialer.shared.logging import get_logger
from dialer.telephony.adapters.mock import MockVoiceProvider
from dialer.telephony.adapters.retell import RetellAdapter
from dialer.telephony.config import ProviderType, VoiceProviderConfig, get_voice_provider_config
from dialer.telephony.interface import VoiceProvider

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def build_voice_provider(cfg: VoiceProviderConfig) -> VoiceProvider:
    """Create the provider adapter selected by configuration."""
    logger.info(
        "Voice provider config resolved",
        extra={
            "provider_type": cfg.provider_type.value,
            "api_key": _mask(cfg.api_key),
            "api_base_url": cfg.api_base_url,
            "from_number": cfg.from_number,
        },
    )

    if cfg.provider_type == ProviderType.RETELL:
        return RetellAdapter(
            api_key=cfg.api_key,
            base_url=cfg.api_base_url,
            timeout=cfg.request_timeout_seconds,
        )

    if cfg.provider_type == ProviderType.MOCK:
        return MockVoiceProvider()

    raise ValueError(f"Unsupported voice provider_type: {cfg.provider_type}")


@lru_cache(maxsize=1)
def get_voice_provider() -> VoiceProvider:
    """Create and cache the provider for this process."""
    return build_voice_provider(get_voice_provider_config())
