from dataclasses import dataclass, field
from core.event_bus import Event
from typing import Any, Dict, Optional

# ── Engine output (published on the shared bus) ───────────────────────

@dataclass
class TranscriptRecognized(Event):
    text: str               # raw recognizer text, not normalized
    language: str = ""

@dataclass
class CommandDetected(Event):
    command: Any            # voice.command_vocabulary.Command
    text: str

@dataclass
class RecognitionError(Event):
    code: str
    message: str = ""

@dataclass
class ListeningChanged(Event):
    listening: bool

# ── Driving mode ──────────────────────────────────────────────────────

@dataclass
class DrivingStateChanged(Event):
    previous: Optional[Any]  # driving.controller.DrivingState
    current: Any
    trigger: str             # touch | inactivity | voice | programmatic | init

@dataclass
class NavigationRequested(Event):
    target: str
    params: Dict[str, Any] = field(default_factory=dict)

# ── Recognizer -> engine (delivered directly, never on the bus) ───────

@dataclass
class RecognizerStarted(Event):
    pass

@dataclass
class RecognizerResult(Event):
    transcript: str
    # time.monotonic() at the utterance's speech onset, if known
    captured_at: Optional[float] = None

@dataclass
class RecognizerError(Event):
    code: str
    message: str = ""

@dataclass
class RecognizerEnded(Event):
    pass
