"""
Recording session orchestrator.

Owns the single active Session and drives it through

    IDLE -> RECORDING -> TRANSCRIBING -> (ENHANCING) -> COMPLETED

with FAILED and CANCELLED reachable from every active state and IDLE
reachable again only through reset(). Every state mutation happens under one
re-entrant lock, and the state-change notification for a transition is
published while that lock is held, so subscribers see transitions in order
and exactly once.

Transcription and enhancement run on a worker thread. Cancellation is
cooperative: the session's CancellationToken is set, backends that can
observe it stop early, and any result that arrives after cancellation is
logged and dropped instead of moving the session.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Optional

from ...utils.logger import get_logger
from ..asr.backends import ModelDescriptor, TranscriptionBackend
from ..asr.model_cache import ModelContextCache
from ..asr.registry import ProviderRegistry
from ..audio.capture import AudioCapture, DeviceEvent
from ..errors import (
    CaptureError,
    ProviderError,
    SessionBusyError,
    StateTransitionError,
    WhisperFlowError,
)
from ..events import EventChannel, Unsubscribe
from ..settings.settings import EffectiveConfig
from ..transcript_processor.llm_processor import DEFAULT_ENHANCEMENT_PROMPT, Enhancer
from ..transcript_processor.vocabulary_processor import apply_vocabulary_replacements
from .session import Session, SessionState, StateChange, can_transition

logger = get_logger(__name__)


class _SessionCancelled(Exception):
    pass


def _done_future(session: Session) -> "Future[Session]":
    future: "Future[Session]" = Future()
    future.set_result(session)
    return future


class RecordingOrchestrator:
    """
    Top-level session state machine.

    Dependencies are passed in explicitly; create one orchestrator per
    application and hand it to whatever drives it (CLI, hotkey, UI).

    Example:
        orchestrator = RecordingOrchestrator(registry, cache, AudioRecorder())
        orchestrator.subscribe(print)
        orchestrator.start_session(power_modes.effective_config(settings))
        session = orchestrator.stop_and_transcribe().result()
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ModelContextCache,
        audio: AudioCapture,
        enhancer: Optional[Enhancer] = None,
        on_session_finished: Optional[Callable[[Session], None]] = None,
        max_workers: int = 2,
    ):
        self._registry = registry
        self._cache = cache
        self._audio = audio
        self._enhancer = enhancer
        self._on_session_finished = on_session_finished

        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._pipelines: Dict[str, "Future[Session]"] = {}
        self._leases: Dict[str, str] = {}
        self._notifications: EventChannel[StateChange] = EventChannel("session-state")
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="whisperflow-session"
        )
        self._device_unsubscribe: Optional[Unsubscribe] = None
        device_events = getattr(audio, "device_events", None)
        if device_events is not None:
            self._device_unsubscribe = device_events.subscribe(self._on_device_event)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[StateChange], None]) -> Unsubscribe:
        return self._notifications.subscribe(callback)

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._session.state if self._session else SessionState.IDLE

    @property
    def current_session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def status(self) -> SessionState:
        return self.state

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_session(self, config: EffectiveConfig) -> Session:
        with self._lock:
            current = self._session
            if current is not None:
                if current.state.is_active:
                    raise SessionBusyError(
                        f"Session {current.id} is still {current.state.name}"
                    )
                self._reject(current.state, SessionState.RECORDING)

            session = Session(config=config)
            self._session = session
            self._transition(session, SessionState.RECORDING)

            try:
                self._audio.start(config.input_device)
            except CaptureError as e:
                logger.error(f"Could not start capture: {e}")
                self._transition(session, SessionState.FAILED, e)
            except Exception as e:
                logger.exception("Unexpected error starting capture")
                self._transition(
                    session, SessionState.FAILED, CaptureError(str(e))
                )
            else:
                logger.info(
                    f"Session {session.id} recording (model={config.model_id}, "
                    f"profile={config.profile_id})"
                )
            return session

    def stop_and_transcribe(self) -> "Future[Session]":
        with self._lock:
            session = self._session
            if session is None or session.state is not SessionState.RECORDING:
                self._reject(self.state, SessionState.TRANSCRIBING)

            try:
                clip = self._audio.stop()
            except Exception as e:
                logger.exception("Failed to finalize captured audio")
                self._transition(session, SessionState.FAILED, CaptureError(str(e)))
                return _done_future(session)

            if clip is None or clip.is_empty:
                logger.warning("No audio data captured")
                self._transition(
                    session, SessionState.FAILED, CaptureError("No audio captured")
                )
                return _done_future(session)

            session.audio = clip
            logger.info(
                f"Captured {clip.duration:.2f}s of audio, starting background transcription"
            )
            self._transition(session, SessionState.TRANSCRIBING)
            future = self._executor.submit(self._run_pipeline, session)
            self._pipelines[session.id] = future
            future.add_done_callback(lambda _f, sid=session.id: self._forget(sid))
            return future

    def cancel(self) -> Session:
        with self._lock:
            session = self._session
            if session is None or not session.state.is_active:
                self._reject(self.state, SessionState.CANCELLED)

            session.cancel_token.cancel()
            if session.state is SessionState.RECORDING:
                try:
                    self._audio.stop()
                except Exception:
                    logger.exception("Error stopping capture during cancel")

            self._transition(session, SessionState.CANCELLED)
            logger.info(f"Session {session.id} cancelled")
            return session

    def reset(self) -> None:
        with self._lock:
            session = self._session
            if session is None or not session.state.is_terminal:
                self._reject(self.state, SessionState.IDLE)

            pipeline = self._pipelines.pop(session.id, None)
            if pipeline is None or pipeline.done():
                self._release_lease(session.id)
            elif session.id in self._leases:
                logger.info(
                    f"Model for session {session.id} stays borrowed until its "
                    f"provider call returns"
                )

            self._session = None
            self._notifications.publish(
                StateChange(
                    session_id=None,
                    state=SessionState.IDLE,
                    timestamp=datetime.now(),
                )
            )

    def close(self) -> None:
        with self._lock:
            if self._session is not None and self._session.state.is_active:
                self.cancel()
            if self._device_unsubscribe is not None:
                self._device_unsubscribe()
                self._device_unsubscribe = None
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Pipeline (worker thread)
    # ------------------------------------------------------------------

    def _run_pipeline(self, session: Session) -> Session:
        start_time = time.time()
        try:
            descriptor = self._registry.get_model(session.config.model_id)
            backend = self._registry.resolve(descriptor)
            with self._lock:
                if not self._is_current(session, SessionState.TRANSCRIBING):
                    raise _SessionCancelled()
                session.model = descriptor

            raw_text = self._transcribe(session, descriptor, backend)

            logger.info(
                f"Transcription completed in {time.time() - start_time:.2f}s: "
                f"'{raw_text[:50]}{'...' if len(raw_text) > 50 else ''}'"
            )
            if not raw_text:
                logger.warning("Transcription returned empty result")

            processed = apply_vocabulary_replacements(
                raw_text, session.config.vocabulary_replacements
            )
            enhance = session.config.enhancement_enabled and bool(processed)

            with self._lock:
                if not self._is_current(session, SessionState.TRANSCRIBING):
                    raise _SessionCancelled()
                session.raw_text = raw_text
                if enhance and self._enhancer is None:
                    logger.warning("Enhancement enabled but no enhancer configured")
                    enhance = False
                if not enhance:
                    session.enhanced_text = processed
                    self._transition(session, SessionState.COMPLETED)
                    return session
                self._transition(session, SessionState.ENHANCING)

            prompt = session.config.enhancement_prompt or DEFAULT_ENHANCEMENT_PROMPT
            try:
                enhanced = self._enhancer.enhance(
                    processed, prompt, session.config, session.cancel_token
                )
            except Exception as e:
                logger.warning(f"Enhancement failed, keeping transcription: {e}")
                enhanced = processed

            with self._lock:
                if not self._is_current(session, SessionState.ENHANCING):
                    raise _SessionCancelled()
                session.enhanced_text = enhanced
                self._transition(session, SessionState.COMPLETED)

            logger.info(f"Total processing completed in {time.time() - start_time:.2f}s")
            return session

        except _SessionCancelled:
            logger.info(
                f"Discarding late result for session {session.id} "
                f"({session.state.name})"
            )
            return session
        except WhisperFlowError as e:
            self._fail(session, e)
            return session
        except Exception as e:
            logger.exception(f"Background transcription error: {e}")
            self._fail(session, e)
            return session

    def _transcribe(
        self,
        session: Session,
        descriptor: ModelDescriptor,
        backend: TranscriptionBackend,
    ) -> str:
        needs_handle = (
            backend.capabilities().requires_model_handle or descriptor.requires_handle
        )
        handle = None
        if needs_handle:
            context = self._cache.acquire(descriptor.id)
            with self._lock:
                self._leases[session.id] = descriptor.id
            handle = context.handle

        try:
            return self._invoke_with_retry(session, descriptor, backend, handle)
        finally:
            if needs_handle:
                self._release_lease(session.id)

    def _invoke_with_retry(
        self,
        session: Session,
        descriptor: ModelDescriptor,
        backend: TranscriptionBackend,
        handle,
    ) -> str:
        policy = session.config.retry
        attempt = 0
        while True:
            if session.cancel_token.cancelled:
                raise _SessionCancelled()
            attempt += 1
            try:
                return backend.transcribe(
                    session.audio, descriptor, handle, session.config, session.cancel_token
                )
            except ProviderError as e:
                if not e.retryable or attempt >= policy.max_attempts:
                    raise
                delay = e.retry_after if e.retry_after is not None else policy.delay_for(attempt)
                logger.warning(
                    f"Provider error on attempt {attempt}/{policy.max_attempts}: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                if delay > 0 and session.cancel_token.wait(delay):
                    raise _SessionCancelled()

    # ------------------------------------------------------------------
    # State handling (callers hold self._lock)
    # ------------------------------------------------------------------

    def _transition(
        self,
        session: Session,
        new_state: SessionState,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._lock:
            if not can_transition(session.state, new_state):
                self._reject(session.state, new_state)

            previous = session.state
            session.state = new_state
            now = datetime.now()
            if new_state.is_terminal:
                session.ended_at = now
                session.error = error

            logger.debug(f"Session {session.id}: {previous.name} -> {new_state.name}")
            self._notifications.publish(
                StateChange(
                    session_id=session.id,
                    state=new_state,
                    timestamp=now,
                    error=error,
                )
            )

            if new_state.is_terminal and self._on_session_finished is not None:
                try:
                    self._on_session_finished(session)
                except Exception:
                    logger.exception("Session hand-off failed")

    def _reject(self, current: SessionState, requested: SessionState) -> None:
        error = StateTransitionError(current, requested)
        logger.warning(str(error))
        raise error

    def _is_current(self, session: Session, expected: SessionState) -> bool:
        return self._session is session and session.state is expected

    def _fail(self, session: Session, error: BaseException) -> None:
        with self._lock:
            if self._session is session and session.state.is_active:
                logger.error(f"Session {session.id} failed: {error}")
                self._transition(session, SessionState.FAILED, error)
            else:
                logger.info(
                    f"Ignoring error for session {session.id} "
                    f"({session.state.name}): {error}"
                )

    def _release_lease(self, session_id: str) -> None:
        with self._lock:
            model_id = self._leases.pop(session_id, None)
        if model_id is not None:
            self._cache.release(model_id)

    def _forget(self, session_id: str) -> None:
        with self._lock:
            if self._session is None or self._session.id != session_id:
                self._pipelines.pop(session_id, None)

    def _on_device_event(self, event: DeviceEvent) -> None:
        if event.connected:
            return
        with self._lock:
            session = self._session
            if session is None or session.state is not SessionState.RECORDING:
                return
            wanted = session.config.input_device
            if wanted is not None and event.device not in (None, wanted):
                return

            logger.error(f"Input device lost while recording: {event.message}")
            session.cancel_token.cancel()
            try:
                self._audio.stop()
            except Exception:
                logger.exception("Error stopping capture after device loss")
            self._transition(
                session,
                SessionState.FAILED,
                CaptureError(event.message or "Input device disconnected"),
            )
