from .service import (
    ContextSignal,
    PowerModeContextService,
    match_specificity,
    url_matches,
)

__all__ = [
    "ContextSignal",
    "PowerModeContextService",
    "match_specificity",
    "url_matches",
]
