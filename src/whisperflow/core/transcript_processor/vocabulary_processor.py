"""Vocabulary replacement applied to raw transcripts before enhancement."""

import re
from typing import Iterable, Tuple

from ...utils.logger import get_logger

logger = get_logger(__name__)


def apply_vocabulary_replacements(
    text: str,
    replacements: Iterable[Tuple[str, str]],
    case_sensitive: bool = False,
) -> str:
    """
    Replace whole-word occurrences of each ``original`` with ``replacement``.

    Rules apply in the order given, so a later rule sees the output of the
    earlier ones. Empty originals are skipped.
    """
    result = text
    for original, replacement in replacements:
        if not original:
            continue
        pattern = re.compile(
            rf"(?<!\w){re.escape(original)}(?!\w)",
            0 if case_sensitive else re.IGNORECASE,
        )
        result = pattern.sub(lambda _match: replacement, result)

    if result != text:
        logger.debug(
            f"Applied vocabulary replacements: '{text[:50]}' -> '{result[:50]}'"
        )

    return result
