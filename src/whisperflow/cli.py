"""CLI entry point."""

import argparse
import logging
import sys
from typing import Optional, TextIO

from . import __version__
from .core.asr import (
    ModelContextCache,
    ProviderKind,
    SherpaOnnxModelStore,
    create_default_registry,
)
from .core.asr.model_store import is_model_downloaded
from .core.audio import AudioCapture, AudioRecorder, WavFileCapture
from .core.errors import WhisperFlowError
from .core.power_mode import ContextSignal, PowerModeContextService
from .core.session import RecordingOrchestrator, Session, SessionState, StateChange
from .core.settings import Settings, get_settings
from .core.transcript_processor import LLMProcessor
from .utils.logger import get_logger, set_console_level, shutdown_logging

logger = get_logger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 3


def exit_code_for(session: Optional[Session]) -> int:
    if session is None:
        return EXIT_COMPLETED
    if session.state is SessionState.COMPLETED:
        return EXIT_COMPLETED
    if session.state is SessionState.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def build_enhancer(settings: Settings) -> Optional[LLMProcessor]:
    if not settings.llm_model:
        return None
    model = LLMProcessor.format_model_name(settings.llm_model, settings.llm_provider)
    return LLMProcessor(
        model=model,
        api_key=settings.llm_api_key,
        api_base=settings.llm_api_base,
    )


class App:
    """Wires settings, power modes, registry, cache and orchestrator together."""

    def __init__(self, settings: Settings, audio: AudioCapture, out: Optional[TextIO] = None):
        self.settings = settings
        self.out = out or sys.stdout
        self.registry = create_default_registry(settings)
        self.cache = ModelContextCache(
            SherpaOnnxModelStore(models=self.registry.models),
            capacity=settings.model_cache_capacity,
            idle_ttl=settings.model_idle_ttl,
        )
        self.power_modes = PowerModeContextService(settings.power_modes)
        self.orchestrator = RecordingOrchestrator(
            self.registry,
            self.cache,
            audio,
            enhancer=build_enhancer(settings),
            on_session_finished=self._on_session_finished,
        )
        self.orchestrator.subscribe(self._print_state)

    def effective_config(self, signal: Optional[ContextSignal] = None, model_id=None):
        config = self.power_modes.effective_config(self.settings, signal)
        if model_id:
            config = config.model_copy(update={"model_id": model_id})
        return config

    def _print_state(self, change: StateChange) -> None:
        line = f"[{change.timestamp:%H:%M:%S}] {change.state.name}"
        if change.error is not None:
            line += f": {change.error}"
        print(line, file=self.out, flush=True)

    def _on_session_finished(self, session: Session) -> None:
        logger.info(
            f"Session {session.id} finished as {session.state.name} "
            f"(profile={session.config.profile_id}, duration={session.duration})"
        )

    def close(self) -> None:
        self.orchestrator.close()
        self.cache.shutdown()


def _signal_from_args(args) -> Optional[ContextSignal]:
    if getattr(args, "app", None) or getattr(args, "url", None):
        return ContextSignal(app_id=args.app, url=args.url)
    return None


def cmd_transcribe(args, settings: Settings) -> int:
    app = App(settings, WavFileCapture(args.audio_path))
    try:
        config = app.effective_config(_signal_from_args(args), args.model)
        session = app.orchestrator.start_session(config)
        if session.state is SessionState.RECORDING:
            session = app.orchestrator.stop_and_transcribe().result()
        if session.state is SessionState.COMPLETED:
            print(session.final_text or "", file=app.out)
        return exit_code_for(session)
    finally:
        app.close()


def cmd_run(args, settings: Settings, stdin: Optional[TextIO] = None) -> int:
    stdin = stdin or sys.stdin
    app = App(settings, AudioRecorder())
    signal = _signal_from_args(args)
    last: Optional[Session] = None
    print("Commands: start, stop, cancel, status, reset, quit", file=app.out)
    try:
        for raw in stdin:
            command = raw.strip().lower()
            if not command:
                continue
            if command in ("quit", "exit"):
                break
            try:
                if command == "start":
                    config = app.effective_config(signal, args.model)
                    last = app.orchestrator.start_session(config)
                elif command == "stop":
                    last = app.orchestrator.stop_and_transcribe().result()
                    if last.state is SessionState.COMPLETED:
                        print(last.final_text or "", file=app.out)
                elif command == "cancel":
                    last = app.orchestrator.cancel()
                elif command == "reset":
                    app.orchestrator.reset()
                elif command == "status":
                    session = app.orchestrator.current_session
                    detail = f" ({session.id})" if session else ""
                    print(f"{app.orchestrator.status().name}{detail}", file=app.out)
                else:
                    print(f"Unknown command: {command}", file=app.out)
            except WhisperFlowError as e:
                print(f"Error: {e}", file=app.out)
        return exit_code_for(last)
    finally:
        app.close()


def cmd_models(args, settings: Settings) -> int:
    registry = create_default_registry(settings)
    for model in registry.models:
        line = f"{model.id} [{model.provider.value}] {model.name}"
        if model.provider is ProviderKind.LOCAL:
            downloaded = is_model_downloaded(model.id, model.engine)
            line += " (downloaded)" if downloaded else " (not downloaded)"
        if model.id == settings.model_id:
            line += " *"
        print(line)
    return EXIT_COMPLETED


def cmd_status(args, settings: Settings) -> int:
    service = PowerModeContextService(settings.power_modes)
    signal = _signal_from_args(args) or ContextSignal()
    profile = service.resolve_active_profile(signal)
    config = settings.to_effective_config(profile.overlay, profile_id=profile.id)
    print(f"Profile: {profile.name or profile.id}")
    for key, value in config.model_dump().items():
        print(f"  {key}: {value}")
    return EXIT_COMPLETED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="whisperflow")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr.")
    sub = parser.add_subparsers(dest="command")

    def add_context(cmd):
        cmd.add_argument("--app", help="Active application id for power modes.")
        cmd.add_argument("--url", help="Active browser URL for power modes.")

    run_cmd = sub.add_parser("run", help="Interactive session loop on stdin.")
    run_cmd.add_argument("--model", help="Override the model id.")
    add_context(run_cmd)

    transcribe_cmd = sub.add_parser("transcribe", help="Transcribe a WAV file.")
    transcribe_cmd.add_argument("audio_path", help="Path to a WAV file.")
    transcribe_cmd.add_argument("--model", help="Override the model id.")
    add_context(transcribe_cmd)

    sub.add_parser("models", help="List available models.")

    status_cmd = sub.add_parser("status", help="Show the effective configuration.")
    add_context(status_cmd)

    return parser


COMMANDS = {
    "run": cmd_run,
    "transcribe": cmd_transcribe,
    "models": cmd_models,
    "status": cmd_status,
}


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_USAGE if e.code else EXIT_COMPLETED

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    if args.verbose:
        set_console_level(logging.DEBUG)

    try:
        return COMMANDS[args.command](args, get_settings())
    except WhisperFlowError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        shutdown_logging()
