"""
Power mode resolution.

Picks the configuration overlay that applies to the frontmost application
or browser URL. Resolution runs once, synchronously, before a session
starts; the resulting EffectiveConfig is frozen, so context changes observed
later never reach a running session.

Matching policy:
1. A URL pattern match beats an application id match.
2. Among matches of equal specificity, the most recently defined profile
   wins (``defined_at``), then the one listed last.
3. No match returns DEFAULT_PROFILE, which overlays nothing.
"""

import threading
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from ...utils.logger import get_logger
from ..events import EventChannel, Unsubscribe
from ..settings.settings import (
    DEFAULT_PROFILE,
    EffectiveConfig,
    PowerModeProfile,
    Settings,
)

logger = get_logger(__name__)

_URL_MATCH = 2
_APP_MATCH = 1
_NO_MATCH = 0


@dataclass(frozen=True)
class ContextSignal:
    app_id: Optional[str] = None
    url: Optional[str] = None


def _normalize_url(url: str) -> str:
    url = url.strip().lower()
    if "://" not in url:
        url = "//" + url
    parts = urlsplit(url)
    host = parts.hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return f"{host}{parts.path}".rstrip("/")


def url_matches(pattern: str, url: str) -> bool:
    if not pattern or not url:
        return False

    if any(ch in pattern for ch in "*?["):
        target = url.strip().lower()
        return fnmatchcase(target, pattern.lower()) or fnmatchcase(
            _normalize_url(target), pattern.lower()
        )

    wanted = _normalize_url(pattern)
    actual = _normalize_url(url)
    if not wanted:
        return False
    if actual == wanted or actual.startswith(wanted + "/"):
        return True
    # Subdomains: "mail.google.com" matches pattern "google.com"
    host, _, path = actual.partition("/")
    wanted_host, _, wanted_path = wanted.partition("/")
    if not host.endswith("." + wanted_host):
        return False
    return (
        not wanted_path
        or path == wanted_path
        or path.startswith(wanted_path + "/")
    )


def match_specificity(profile: PowerModeProfile, signal: ContextSignal) -> int:
    if not profile.enabled:
        return _NO_MATCH
    if signal.url and any(url_matches(p, signal.url) for p in profile.url_patterns):
        return _URL_MATCH
    if signal.app_id:
        app_id = signal.app_id.lower()
        if any(app_id == candidate.lower() for candidate in profile.app_ids):
            return _APP_MATCH
    return _NO_MATCH


class PowerModeContextService:
    def __init__(self, profiles: Iterable[PowerModeProfile] = ()):
        self._profiles: List[PowerModeProfile] = list(profiles)
        self._latest_signal = ContextSignal()
        self._lock = threading.Lock()
        self._unsubscribe: Optional[Unsubscribe] = None

    @property
    def profiles(self) -> List[PowerModeProfile]:
        with self._lock:
            return list(self._profiles)

    def set_profiles(self, profiles: Iterable[PowerModeProfile]) -> None:
        with self._lock:
            self._profiles = list(profiles)

    @property
    def latest_signal(self) -> ContextSignal:
        with self._lock:
            return self._latest_signal

    def attach(self, channel: EventChannel[ContextSignal]) -> None:
        """Follow a context observer; replaces any previous subscription."""
        self.detach()
        self._unsubscribe = channel.subscribe(self._on_context_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_context_changed(self, signal: ContextSignal) -> None:
        with self._lock:
            self._latest_signal = signal
        logger.debug(f"Context changed: app={signal.app_id} url={signal.url}")

    def resolve_active_profile(
        self, signal: Optional[ContextSignal] = None
    ) -> PowerModeProfile:
        with self._lock:
            profiles = list(self._profiles)
            if signal is None:
                signal = self._latest_signal

        best: Optional[Tuple[int, float, int]] = None
        best_profile = DEFAULT_PROFILE
        for position, profile in enumerate(profiles):
            specificity = match_specificity(profile, signal)
            if specificity == _NO_MATCH:
                continue
            rank = (specificity, profile.defined_at.timestamp(), position)
            if best is None or rank > best:
                best = rank
                best_profile = profile

        if best_profile is not DEFAULT_PROFILE:
            logger.info(
                f"Power mode '{best_profile.name or best_profile.id}' matched "
                f"(app={signal.app_id}, url={signal.url})"
            )
        return best_profile

    def effective_config(
        self, defaults: Settings, signal: Optional[ContextSignal] = None
    ) -> EffectiveConfig:
        profile = self.resolve_active_profile(signal)
        return defaults.to_effective_config(profile.overlay, profile_id=profile.id)
