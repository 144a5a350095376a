import asyncio
from typing import List

import pytest

from core.event_bus import EventBus
from driving.controller import DrivingModeController, DrivingTimings
from events.events import RecognizerEnded, RecognizerError, RecognizerResult, RecognizerStarted
from voice.language import Language
from voice.recognizer import Recognizer, SpeechSynthesizer
from voice.voice_engine import VoiceCommandEngine, VoiceTimings

FAST_VOICE = VoiceTimings(restart_delay=0.01, echo_guard=0.0)
FAST_DRIVING = DrivingTimings(
    inactivity_timeout=0.05,
    mount_delay=0.0,
    settle_delay=0.0,
    exit_delay=0.02,
)

class FakeRecognizer(Recognizer):
    def __init__(self, journal: List[str] = None):
        super().__init__()
        self.journal = journal if journal is not None else []
        self.starts = []
        self.stops = 0
        self.destroys = 0
        self.fail_start = False
        self.fail_stop = False
        self.auto_started = True
        self.gate: asyncio.Event = None
        self.stop_gate: asyncio.Event = None

    async def start(self, locale, continuous):
        self.starts.append((locale, continuous))
        self.journal.append("recognizer.start")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_start:
            raise RuntimeError("microphone busy")
        if self.auto_started:
            self.started()

    async def stop(self):
        self.stops += 1
        self.journal.append("recognizer.stop")
        if self.stop_gate is not None:
            await self.stop_gate.wait()
        if self.fail_stop:
            raise RuntimeError("recognizer gone")

    async def destroy(self):
        self.destroys += 1
        self.journal.append("recognizer.destroy")

    def started(self):
        self._dispatch(RecognizerStarted())

    def result(self, text, captured_at=None):
        self._dispatch(RecognizerResult(transcript=text, captured_at=captured_at))

    def error(self, code, message=""):
        self._dispatch(RecognizerError(code=code, message=message))

    def ended(self):
        self._dispatch(RecognizerEnded())

class FakeSynthesizer(SpeechSynthesizer):
    def __init__(self, journal: List[str] = None):
        self.journal = journal if journal is not None else []
        self.spoken = []
        self.stops = 0
        self.fail = False
        self.gate: asyncio.Event = None

    async def speak(self, text, locale, rate=1.0, pitch=1.0):
        self.spoken.append((text, locale, rate))
        self.journal.append(f"speak:{text}")
        if self.fail:
            raise RuntimeError("no voice installed")
        if self.gate is not None:
            await self.gate.wait()

    async def stop(self):
        self.stops += 1

    @property
    def texts(self):
        return [t for t, _, _ in self.spoken]

class FakeHaptics:
    def __init__(self):
        self.pulses = []
        self.fail = False

    async def pulse(self, intensity):
        if self.fail:
            raise NotImplementedError("no vibration motor")
        self.pulses.append(intensity)

class FakeBrightness:
    def __init__(self, level=0.5):
        self.level = level
        self.levels = []
        self.fail_read = False
        self.fail_write = False

    async def get_level(self):
        if self.fail_read:
            raise OSError("brightness unavailable")
        return self.level

    async def set_level(self, level):
        if self.fail_write:
            raise OSError("brightness unavailable")
        self.level = level
        self.levels.append(level)

class FakeNavigator:
    def __init__(self):
        self.requests = []

    def request_navigate(self, target, params=None):
        self.requests.append((target, params or {}))

@pytest.fixture(autouse=True)
def reset_active_engine():
    VoiceCommandEngine._active = None
    yield
    VoiceCommandEngine._active = None

@pytest.fixture
def journal():
    return []

@pytest.fixture
def bus():
    return EventBus()

@pytest.fixture
def recognizer(journal):
    return FakeRecognizer(journal)

@pytest.fixture
def synthesizer(journal):
    return FakeSynthesizer(journal)

@pytest.fixture
def engine(bus, recognizer, synthesizer):
    return VoiceCommandEngine(bus, recognizer, synthesizer, language=Language.PRIMARY, timings=FAST_VOICE)

@pytest.fixture
def haptics():
    return FakeHaptics()

@pytest.fixture
def brightness():
    return FakeBrightness()

@pytest.fixture
def navigator():
    return FakeNavigator()

@pytest.fixture
def views():
    return []

@pytest.fixture
def controller(bus, engine, haptics, brightness, navigator, views):
    return DrivingModeController(
        bus, engine, haptics, brightness, navigator,
        renderer=views.append,
        timings=FAST_DRIVING,
        capture_target="capture",
        home_target="home",
    )

async def settle(bus: EventBus, controller: DrivingModeController = None, delay: float = 0.0):
    """Let timers fire and fire-and-forget handlers finish."""
    await asyncio.sleep(delay)
    await bus.drain()
    if controller is not None:
        await controller.drain()
    await bus.drain()
