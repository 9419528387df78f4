import json
import warnings
from pathlib import Path
from typing import List, Optional, Protocol

import litellm
from litellm import completion, completion_cost
from pydantic import BaseModel, ConfigDict

from ...utils.logger import get_logger
from ..events import CancellationToken
from ..settings.settings import EffectiveConfig

logger = get_logger(__name__)


class Enhancement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    prompt: str


class Enhancer(Protocol):
    def enhance(
        self,
        text: str,
        prompt: str,
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Return the enhanced text, or the input unchanged if enhancement fails."""


class LLMProcessor:

    @staticmethod
    def format_model_name(model: str, provider: str) -> str:
        known_prefixes = (
            "openrouter/",
            "ollama/",
            "gemini/",
            "openai/",
            "anthropic/",
            "azure/",
            "groq/",
        )

        if model.startswith(known_prefixes):
            return model

        prefix_map = {
            "openrouter": "openrouter/",
            "ollama": "ollama/",
            "gemini": "gemini/",
            "groq": "groq/",
        }

        prefix = prefix_map.get(provider)
        if prefix:
            return f"{prefix}{model}"

        return model

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base

        model_info = litellm.model_cost.get(model, {})
        self._supports_system_messages = model_info.get(
            "supports_system_messages", True
        )

        if not self._supports_system_messages:
            logger.info(
                f"Model {model} does not support system messages (per model_cost)"
            )

        logger.info(
            f"LLMProcessor initialized with model: {model}, api_base: {api_base}"
        )

    def process(self, text: str, prompt: str, timeout: Optional[float] = None) -> str:
        """Run the prompt over the text. Returns the input unchanged on failure."""
        if not text or not text.strip():
            return text

        logger.info(f"Applying enhancement to text ({len(text)} chars)")

        try:
            if self._supports_system_messages:
                messages = [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": text},
                ]
            else:
                messages = [{"role": "user", "content": f"{prompt}\n\n{text}"}]
                logger.debug(f"Merged system prompt with user prompt for {self.model}")

            kwargs = {
                "model": self.model,
                "messages": messages,
            }

            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.api_base:
                kwargs["api_base"] = self.api_base
            if timeout:
                kwargs["timeout"] = timeout

            response = completion(**kwargs)

            result_text = response.choices[0].message.content or ""

            try:
                with warnings.catch_warnings():
                    warnings.filterwarnings(
                        "ignore",
                        message="Pydantic serializer warnings",
                        category=UserWarning,
                    )
                    cost = completion_cost(completion_response=response)
            except Exception:
                cost = None

            logger.info(
                f"Enhancement complete: {len(text)} -> {len(result_text)} chars, cost=${cost:.6f}"
                if cost
                else f"Enhancement complete: {len(text)} -> {len(result_text)} chars"
            )

            return result_text.strip()

        except Exception as e:
            logger.error(f"LLM processing failed: {e}", exc_info=True)
            return text

    def enhance(
        self,
        text: str,
        prompt: str,
        config: EffectiveConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        if cancel_token is not None and cancel_token.cancelled:
            return text
        return self.process(text, prompt, timeout=config.request_timeout)


def load_default_enhancements() -> List[Enhancement]:
    json_path = Path(__file__).parent / "enhancement_prompts.json"

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return [Enhancement.model_validate(item) for item in data]


_default_enhancements: Optional[List[Enhancement]] = None


def get_default_enhancements() -> List[Enhancement]:
    global _default_enhancements
    if _default_enhancements is None:
        _default_enhancements = load_default_enhancements()
    return _default_enhancements


DEFAULT_ENHANCEMENT_PROMPT = (
    "Fix punctuation, capitalization and obvious transcription errors in the "
    "dictated text. Reply with the corrected text only."
)
