# voice/recognizer.py

from abc import ABC, abstractmethod
from typing import Callable, Optional

from core.event_bus import Event

RecognizerListener = Callable[[Event], None]

class Recognizer(ABC):
    """
    Platform speech-to-text contract.

    A recognizer serves one utterance per session and reports progress by
    calling the attached listener with RecognizerStarted, RecognizerResult,
    RecognizerError and RecognizerEnded, in that order. Events must be
    delivered on the event loop thread.
    """

    def __init__(self):
        self._listener: Optional[RecognizerListener] = None

    def attach(self, listener: Optional[RecognizerListener]):
        self._listener = listener

    def _dispatch(self, event: Event):
        if self._listener is not None:
            self._listener(event)

    @abstractmethod
    async def start(self, locale: str, continuous: bool) -> None:
        """Open a session. Raise on failure."""

    @abstractmethod
    async def stop(self) -> None:
        """Ask the running session to finish."""

    async def destroy(self) -> None:
        """Release session resources. Default is a no-op."""
        return None

class SpeechSynthesizer(ABC):
    """Text-to-speech contract; speak() resolves once playback has finished."""

    @abstractmethod
    async def speak(self, text: str, locale: str, rate: float = 1.0, pitch: float = 1.0) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...
