"""
Settings management with JSON persistence.

Handles loading, saving, and validating application settings, plus the
frozen per-session EffectiveConfig derived from them.
Uses platformdirs for cross-platform directory resolution.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from platformdirs import user_config_path
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...utils.logger import get_logger
from .config import (
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    MODEL_CACHE_CAPACITY,
    MODEL_IDLE_TTL,
)

if TYPE_CHECKING:
    from ..transcript_processor.llm_processor import Enhancement

logger = get_logger(__name__)

APP_NAME = "whisperflow"


def _get_default_enhancements() -> List[dict]:
    from ..transcript_processor.llm_processor import get_default_enhancements

    return [e.model_dump() for e in get_default_enhancements()]


def get_config_dir() -> Path:
    return user_config_path(APP_NAME, ensure_exists=True)


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    backoff_seconds: float = Field(default=DEFAULT_RETRY_BACKOFF, ge=0.0)

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * attempt


class ConfigOverlay(BaseModel):
    """Fields a power mode may override. None means "keep the default"."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    model_id: Optional[str] = None
    prompt: Optional[str] = None
    language: Optional[str] = None
    enhancement_enabled: Optional[bool] = None
    enhancement_prompt: Optional[str] = None


class PowerModeProfile(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    name: str = ""
    app_ids: List[str] = Field(default_factory=list)
    url_patterns: List[str] = Field(default_factory=list)
    overlay: ConfigOverlay = Field(default_factory=ConfigOverlay)
    enabled: bool = True
    defined_at: datetime = Field(default_factory=datetime.now)

    @field_validator("id")
    @classmethod
    def id_not_empty(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("id must be a non-empty string")
        return v


DEFAULT_PROFILE = PowerModeProfile(
    id="default", name="Default", defined_at=datetime.min
)


class EffectiveConfig(BaseModel):
    """Merged configuration for one session. Frozen once a session starts."""

    model_config = ConfigDict(frozen=True)

    model_id: str
    prompt: Optional[str] = None
    language: Optional[str] = None
    enhancement_enabled: bool = False
    enhancement_prompt: Optional[str] = None
    input_device: Optional[str] = None
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    vocabulary_replacements: Tuple[Tuple[str, str], ...] = ()
    profile_id: str = DEFAULT_PROFILE.id


class LLMProviderSettings(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    model: str = ""
    api_key: Optional[str] = None
    api_base: Optional[str] = None


class Settings(BaseModel):
    model_config = ConfigDict(validate_assignment=False)

    input_device: Optional[str] = None
    model_id: str = "sherpa-onnx-nemo-parakeet-tdt-0.6b-v2-int8"
    language: Optional[str] = None
    transcription_prompt: Optional[str] = None

    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1, le=10)
    retry_backoff: float = Field(default=DEFAULT_RETRY_BACKOFF, ge=0.0)

    model_cache_capacity: int = Field(default=MODEL_CACHE_CAPACITY, ge=1)
    model_idle_ttl: Optional[float] = Field(default=MODEL_IDLE_TTL, ge=0.0)

    enhancement_enabled: bool = False
    enhancements: List[dict] = Field(default_factory=list)
    active_enhancement_id: Optional[str] = None
    llm_provider: str = "openai"
    llm_provider_settings: Dict[str, dict] = Field(default_factory=dict)

    power_modes: List[PowerModeProfile] = Field(default_factory=list)
    custom_models: List[dict] = Field(default_factory=list)
    vocabulary_replacements: List[Tuple[str, str]] = Field(default_factory=list)

    @field_validator("model_id")
    @classmethod
    def model_id_not_empty(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("model_id must be a non-empty string")
        return v

    @classmethod
    def load(cls) -> "Settings":
        config_file = get_config_dir() / "settings.json"

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)

                # Filter to valid keys only
                valid_keys = cls.model_fields.keys()
                filtered_data = {k: v for k, v in data.items() if k in valid_keys}

                if "power_modes" in filtered_data:
                    filtered_data["power_modes"] = cls._load_power_modes(
                        filtered_data["power_modes"]
                    )

                if "enhancements" in filtered_data:
                    if not isinstance(filtered_data["enhancements"], list):
                        filtered_data["enhancements"] = []

                # Validate each field individually, falling back to defaults on error
                settings = cls._load_with_fallbacks(filtered_data)

                if not settings.enhancements:
                    settings.enhancements = _get_default_enhancements()

                return settings
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning(
                    f"Could not load settings: {e}. Using defaults.", exc_info=True
                )
                return cls()

        settings = cls()
        settings.enhancements = _get_default_enhancements()
        return settings

    @staticmethod
    def _load_power_modes(raw) -> List[PowerModeProfile]:
        if not isinstance(raw, list):
            logger.warning("Invalid power_modes configuration, ignoring")
            return []

        profiles = []
        for item in raw:
            try:
                profiles.append(PowerModeProfile.model_validate(item))
            except Exception:
                logger.warning(f"Skipping invalid power mode profile: {item!r}")
        return profiles

    @classmethod
    def _load_with_fallbacks(cls, data: dict) -> "Settings":
        """Load settings with field-level fallback to defaults on validation errors."""
        defaults = cls()
        result_data = {}

        for field_name in cls.model_fields:
            if field_name in data:
                try:
                    if field_name == "power_modes":
                        # Already validated profile by profile
                        result_data[field_name] = data[field_name]
                    else:
                        test_data = {field_name: data[field_name]}
                        validated = cls.model_validate(
                            {**defaults.model_dump(), **test_data}
                        )
                        result_data[field_name] = getattr(validated, field_name)
                except Exception:
                    default_val = getattr(defaults, field_name)
                    logger.warning(
                        f"Invalid {field_name} {data[field_name]!r}, resetting to {default_val}"
                    )
                    result_data[field_name] = default_val
            else:
                result_data[field_name] = getattr(defaults, field_name)

        return cls.model_construct(**result_data)

    def save(self) -> None:
        config_file = get_config_dir() / "settings.json"

        data = self.model_dump(mode="json")

        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)

    def get_active_enhancement(self) -> Optional["Enhancement"]:
        if not self.active_enhancement_id:
            return None

        from ..transcript_processor.llm_processor import Enhancement

        for enh_dict in self.enhancements:
            if enh_dict.get("id") == self.active_enhancement_id:
                return Enhancement.model_validate(enh_dict)

        return None

    def get_provider_settings(self, provider_id: str) -> LLMProviderSettings:
        if provider_id in self.llm_provider_settings:
            return LLMProviderSettings.model_validate(
                self.llm_provider_settings[provider_id]
            )
        return LLMProviderSettings()

    @property
    def llm_model(self) -> str:
        return self.get_provider_settings(self.llm_provider).model

    @property
    def llm_api_key(self) -> Optional[str]:
        return self.get_provider_settings(self.llm_provider).api_key

    @property
    def llm_api_base(self) -> Optional[str]:
        return self.get_provider_settings(self.llm_provider).api_base

    def to_effective_config(
        self, overlay: Optional[ConfigOverlay] = None, profile_id: Optional[str] = None
    ) -> EffectiveConfig:
        """Merge these defaults with an optional power mode overlay."""
        overlay = overlay or ConfigOverlay()
        enhancement = self.get_active_enhancement()

        def pick(override, default):
            return default if override is None else override

        return EffectiveConfig(
            model_id=pick(overlay.model_id, self.model_id),
            prompt=pick(overlay.prompt, self.transcription_prompt),
            language=pick(overlay.language, self.language),
            enhancement_enabled=pick(
                overlay.enhancement_enabled, self.enhancement_enabled
            ),
            enhancement_prompt=pick(
                overlay.enhancement_prompt,
                enhancement.prompt if enhancement else None,
            ),
            input_device=self.input_device,
            request_timeout=self.request_timeout,
            retry=RetryPolicy(
                max_attempts=self.retry_attempts, backoff_seconds=self.retry_backoff
            ),
            vocabulary_replacements=tuple(
                (original, replacement)
                for original, replacement in self.vocabulary_replacements
            ),
            profile_id=profile_id or DEFAULT_PROFILE.id,
        )


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.load()
    return _settings_instance
