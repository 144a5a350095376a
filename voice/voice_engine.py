import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.event_bus import Event, EventBus, Subscription
from events.events import (
    CommandDetected, ListeningChanged, RecognitionError, TranscriptRecognized,
    RecognizerEnded, RecognizerError, RecognizerResult, RecognizerStarted,
)
from voice.command_vocabulary import CommandVocabulary, DEFAULT_VOCABULARY
from voice.language import Language
from voice.recognizer import Recognizer, SpeechSynthesizer

# Configure logger
logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Re-issuing start() from inside the recognizer's own termination callback
# is unreliable on some platforms, hence the pause before a restart.
RESTART_DELAY = 0.3
# Trailing window after speech playback during which results are treated as echo.
ECHO_GUARD = 0.3

@dataclass
class VoiceTimings:
    restart_delay: float = RESTART_DELAY
    echo_guard: float = ECHO_GUARD
    speech_rate: float = 1.0
    suppress_while_speaking: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "VoiceTimings":
        voice = config.get("voice", {})
        return cls(
            restart_delay=float(voice.get("restart_delay", RESTART_DELAY)),
            echo_guard=float(voice.get("echo_guard", ECHO_GUARD)),
            speech_rate=float(voice.get("speech_rate", 1.0)),
            suppress_while_speaking=bool(voice.get("suppress_while_speaking", True)),
        )

class RestartPolicy:
    """
    Delay before the n-th consecutive restart of a continuous session.
    Returning None ends the loop; the default never does.
    """
    def __init__(self, delay: float = RESTART_DELAY):
        self.delay = delay

    def delay_for(self, attempt: int) -> Optional[float]:
        return self.delay

@dataclass
class RecognitionSession:
    language: Language
    continuous_requested: bool = False
    listening: bool = False
    last_transcript: str = ""
    # external session opened and not yet ended/errored
    outstanding: bool = False
    restarts: int = 0

class VoiceCommandEngine:
    """
    Owns the recognition session and keeps it alive in continuous mode by
    reissuing start() after every natural end or error. Transcripts, commands,
    errors and listening changes are published on the bus.

    Only one engine may hold the recognizer at a time across the process:
    start() on one engine force-releases whichever engine is active.
    """

    _active: Optional["VoiceCommandEngine"] = None

    def __init__(
        self,
        bus: EventBus,
        recognizer: Recognizer,
        synthesizer: SpeechSynthesizer,
        language: Language = Language.PRIMARY,
        vocabulary: CommandVocabulary = DEFAULT_VOCABULARY,
        timings: VoiceTimings = None,
        restart_policy: RestartPolicy = None,
    ):
        self.bus = bus
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self.language = language
        self.vocabulary = vocabulary
        self.timings = timings or VoiceTimings()
        self.restart_policy = restart_policy or RestartPolicy(self.timings.restart_delay)

        self._session: Optional[RecognitionSession] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._speaking = 0
        self._mute_until = 0.0
        self._lock: Optional[asyncio.Lock] = None

        self.recognizer.attach(self.handle_recognizer_event)

    # ── read-only status ─────────────────────────────────────────────
    @property
    def session(self) -> Optional[RecognitionSession]:
        return self._session

    @property
    def is_listening(self) -> bool:
        return self._session is not None and self._session.listening

    @property
    def last_transcript(self) -> str:
        return self._session.last_transcript if self._session else ""

    @property
    def is_active(self) -> bool:
        return VoiceCommandEngine._active is self

    @property
    def is_speaking(self) -> bool:
        return self._speaking > 0

    # ── subscriptions ────────────────────────────────────────────────
    def on_transcript(self, handler: Callable[[TranscriptRecognized], Any]) -> Subscription:
        return self.bus.subscribe(TranscriptRecognized, handler)

    def on_command(self, handler: Callable[[CommandDetected], Any]) -> Subscription:
        return self.bus.subscribe(CommandDetected, handler)

    def on_error(self, handler: Callable[[RecognitionError], Any]) -> Subscription:
        return self.bus.subscribe(RecognitionError, handler)

    def on_listening(self, handler: Callable[[ListeningChanged], Any]) -> Subscription:
        return self.bus.subscribe(ListeningChanged, handler)

    # ── session control ──────────────────────────────────────────────
    async def start(self, continuous: bool = False, language: Language = None) -> bool:
        async with self._session_lock():
            return await self._start_locked(continuous, language)

    async def _start_locked(self, continuous: bool, language: Optional[Language]) -> bool:
        owner = VoiceCommandEngine._active
        if owner is not None and owner is not self:
            logger.info("Releasing recognizer held by another engine")
            await owner._force_release()
        if self._session is not None and self._session.outstanding:
            await self._force_release()
        self._cancel_restart()

        if language is not None:
            self.language = language
        session = self._session
        if session is None:
            session = RecognitionSession(language=self.language)
            self._session = session
        session.language = self.language
        session.continuous_requested = continuous
        VoiceCommandEngine._active = self

        session.outstanding = True
        try:
            await self.recognizer.start(session.language.locale, continuous)
        except Exception as e:
            session.outstanding = False
            logger.error("Failed to start recognition: %s", e, exc_info=True)
            self._report_error("start-failed", str(e))
            if self._session is session:
                self._schedule_restart(session)
            return False

        if self._session is not session:
            # another engine took the recognizer while it was opening
            logger.info("Session released during start; releasing recognizer")
            await self._release_quietly()
            return False

        logger.info("Recognition started (%s, continuous=%s)", session.language.locale, continuous)
        return True

    async def stop(self) -> None:
        self._cancel_restart()
        if self._session is not None:
            # must not wait for the lock: a racing ended/error must not restart
            self._session.continuous_requested = False
        async with self._session_lock():
            session = self._session
            self._cancel_restart()
            if session is None:
                return
            session.continuous_requested = False
            self._session = None
            if VoiceCommandEngine._active is self:
                VoiceCommandEngine._active = None
            try:
                await self.recognizer.stop()
            except Exception as e:
                logger.error("Failed to stop recognition: %s", e, exc_info=True)
                self._report_error("stop-failed", str(e))
            try:
                await self.recognizer.destroy()
            except Exception as e:
                logger.error("Failed to release recognizer: %s", e, exc_info=True)
                self._report_error("stop-failed", str(e))
            session.outstanding = False
            self._set_listening(session, False)
            logger.info("Recognition stopped")

    async def close(self) -> None:
        await self.stop()
        await self.stop_speaking()
        self.recognizer.attach(None)

    def _session_lock(self) -> asyncio.Lock:
        # created lazily so it binds to the loop that runs the engine
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _force_release(self) -> None:
        session = self._session
        self._cancel_restart()
        self._session = None
        if VoiceCommandEngine._active is self:
            VoiceCommandEngine._active = None
        if session is None:
            return
        session.continuous_requested = False
        await self._release_quietly()
        session.outstanding = False
        self._set_listening(session, False)

    async def _release_quietly(self) -> None:
        try:
            await self.recognizer.stop()
        except Exception as e:
            logger.debug("Ignoring error while stopping recognizer: %s", e)
        try:
            await self.recognizer.destroy()
        except Exception as e:
            logger.debug("Ignoring error while destroying recognizer: %s", e)

    # ── recognizer events ────────────────────────────────────────────
    def handle_recognizer_event(self, event: Event) -> None:
        session = self._session
        if session is None:
            logger.debug("Dropping %s: no active session", type(event).__name__)
            return

        if isinstance(event, RecognizerStarted):
            self._set_listening(session, True)
        elif isinstance(event, RecognizerResult):
            self._on_result(session, event.transcript, event.captured_at)
        elif isinstance(event, RecognizerError):
            logger.warning("Recognizer error %s: %s", event.code, event.message)
            self._report_error(event.code, event.message)
            self._on_terminated(session)
        elif isinstance(event, RecognizerEnded):
            self._on_terminated(session)
        else:
            logger.debug("Unknown recognizer event %r", event)

    def _on_result(self, session: RecognitionSession, text: str, captured_at: Optional[float] = None) -> None:
        if self._suppressed(captured_at):
            logger.debug("Ignoring %r captured during speech playback", text)
            return
        session.last_transcript = text
        session.restarts = 0
        logger.debug("Recognized: %r", text)

        command = self.vocabulary.detect_command(text)
        self.bus.emit(TranscriptRecognized(text=text, language=session.language.locale))
        if command is not None:
            logger.info("Command detected: %s (%r)", command.name, text)
            self.bus.emit(CommandDetected(command=command, text=text))

    def _on_terminated(self, session: RecognitionSession) -> None:
        session.outstanding = False
        self._set_listening(session, False)
        if session.continuous_requested:
            self._schedule_restart(session)

    # ── continuous restart loop ──────────────────────────────────────
    def _schedule_restart(self, session: RecognitionSession) -> None:
        if not session.continuous_requested:
            return
        delay = self.restart_policy.delay_for(session.restarts + 1)
        if delay is None:
            logger.info("Restart policy stopped the loop after %d attempts", session.restarts)
            return
        self._cancel_restart()
        logger.debug("Restarting recognition in %.2fs", delay)
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(delay, self._restart, session)

    def _restart(self, session: RecognitionSession) -> None:
        self._restart_handle = None
        if self._session is not session or not session.continuous_requested or session.outstanding:
            return
        session.restarts += 1
        self._restart_task = asyncio.create_task(self._restart_session(session))

    async def _restart_session(self, session: RecognitionSession) -> bool:
        async with self._session_lock():
            # stop() may have run while this restart waited for the lock
            if self._session is not session or not session.continuous_requested or session.outstanding:
                return False
            return await self._start_locked(True, session.language)

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    # ── speech output ────────────────────────────────────────────────
    async def speak(self, text: str, language: Language = None, rate: float = None, pitch: float = 1.0) -> bool:
        lang = language or self.language
        rate = self.timings.speech_rate if rate is None else rate
        self._speaking += 1
        try:
            await self.synthesizer.speak(text, lang.locale, rate=rate, pitch=pitch)
            logger.info("Spoke: %r", text)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Text-to-speech failed: %s", e, exc_info=True)
            return False
        finally:
            self._speaking -= 1
            self._mute_until = time.monotonic() + self.timings.echo_guard

    async def stop_speaking(self) -> None:
        try:
            await self.synthesizer.stop()
        except Exception as e:
            logger.error("Failed to stop speech: %s", e, exc_info=True)

    def _suppressed(self, captured_at: Optional[float] = None) -> bool:
        if not self.timings.suppress_while_speaking:
            return False
        if self._speaking > 0 or time.monotonic() < self._mute_until:
            return True
        # a recording that began before playback ended has the prompt in it
        return captured_at is not None and captured_at < self._mute_until

    # ── helpers ──────────────────────────────────────────────────────
    def _set_listening(self, session: RecognitionSession, listening: bool) -> None:
        if session.listening == listening:
            return
        session.listening = listening
        logger.debug("Listening: %s", listening)
        self.bus.emit(ListeningChanged(listening=listening))

    def _report_error(self, code: str, message: str = "") -> None:
        self.bus.emit(RecognitionError(code=code, message=message))
