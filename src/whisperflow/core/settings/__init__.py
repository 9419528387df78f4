"""Settings and per-session configuration."""

from .settings import (
    DEFAULT_PROFILE,
    ConfigOverlay,
    EffectiveConfig,
    LLMProviderSettings,
    PowerModeProfile,
    RetryPolicy,
    Settings,
    get_config_dir,
    get_settings,
)

__all__ = [
    "DEFAULT_PROFILE",
    "ConfigOverlay",
    "EffectiveConfig",
    "LLMProviderSettings",
    "PowerModeProfile",
    "RetryPolicy",
    "Settings",
    "get_config_dir",
    "get_settings",
]
