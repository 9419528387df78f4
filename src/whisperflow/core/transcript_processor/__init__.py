from .llm_processor import (
    DEFAULT_ENHANCEMENT_PROMPT,
    Enhancement,
    Enhancer,
    LLMProcessor,
    get_default_enhancements,
)
from .vocabulary_processor import apply_vocabulary_replacements

__all__ = [
    "DEFAULT_ENHANCEMENT_PROMPT",
    "Enhancement",
    "Enhancer",
    "LLMProcessor",
    "apply_vocabulary_replacements",
    "get_default_enhancements",
]
