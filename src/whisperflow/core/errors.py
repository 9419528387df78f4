"""
Exception hierarchy for the session core.

Every error carries a human readable message; provider and model loading
errors additionally carry a machine readable kind/reason so callers can
decide whether to retry.
"""

from enum import Enum
from typing import Optional


class WhisperFlowError(Exception):
    """Base class for all errors raised by the session core."""


class SessionBusyError(WhisperFlowError):
    """A session was started while another one is still active."""


class StateTransitionError(WhisperFlowError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid session transition: {current.name} -> {requested.name}"
        )


class CaptureError(WhisperFlowError):
    """The audio device was unavailable or went away mid-session."""


class ProviderErrorKind(Enum):
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UNSUPPORTED = "unsupported"


RETRYABLE_PROVIDER_ERRORS = frozenset(
    {ProviderErrorKind.NETWORK, ProviderErrorKind.AUTH, ProviderErrorKind.RATE_LIMIT}
)


class ProviderError(WhisperFlowError):
    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        retry_after: Optional[float] = None,
    ):
        self.kind = kind
        self.retry_after = retry_after
        super().__init__(f"[{kind.value}] {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_PROVIDER_ERRORS


class UnsupportedProviderError(ProviderError):
    def __init__(self, message: str):
        super().__init__(ProviderErrorKind.UNSUPPORTED, message)


class ModelLoadReason(Enum):
    MISSING = "missing"
    CORRUPT = "corrupt"
    RESOURCE_EXHAUSTED = "resource_exhausted"


class ModelLoadError(WhisperFlowError):
    def __init__(self, model_id: str, reason: ModelLoadReason, message: str = ""):
        self.model_id = model_id
        self.reason = reason
        detail = f": {message}" if message else ""
        super().__init__(
            f"Failed to load model '{model_id}' ({reason.value}){detail}"
        )
