import asyncio
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, List, Optional, Set, Tuple

from core.event_bus import EventBus, Subscription
from events.events import CommandDetected, DrivingStateChanged, ListeningChanged, TranscriptRecognized
from driving.effects import Pulse
from driving.prompts import prompt, status_label
from voice.command_vocabulary import Command
from voice.language import Language
from voice.voice_engine import VoiceCommandEngine

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Wait for the host screen to settle before touching the recognizer.
MOUNT_DELAY = 0.3
# The recognizer has no "ready" acknowledgement: give it this long before
# the welcome prompt so it does not transcribe our own voice.
SETTLE_DELAY = 0.5
INACTIVITY_TIMEOUT = 15.0
EXIT_DELAY = 1.0

class DrivingState(Enum):
    WAITING = "waiting"
    SLEEP = "sleep"
    READY = "ready"

class Phase(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    EXITING = "exiting"
    CLOSED = "closed"

class Trigger:
    INIT = "init"
    TOUCH = "touch"
    INACTIVITY = "inactivity"
    VOICE = "voice"
    PROGRAMMATIC = "programmatic"

ACTIONS = {
    DrivingState.WAITING: ("touch", "exit"),
    DrivingState.SLEEP: ("touch",),
    DrivingState.READY: ("capture", "cancel"),
}

@dataclass
class DrivingTimings:
    inactivity_timeout: float = INACTIVITY_TIMEOUT
    mount_delay: float = MOUNT_DELAY
    settle_delay: float = SETTLE_DELAY
    exit_delay: float = EXIT_DELAY
    brightness_active: float = 0.8
    brightness_ready: float = 1.0
    brightness_sleep: float = 0.2
    brightness_restore: float = 0.8

    @classmethod
    def from_config(cls, config: dict) -> "DrivingTimings":
        driving = config.get("driving", {})
        return cls(**{
            f.name: float(driving.get(f.name, f.default))
            for f in fields(cls)
        })

@dataclass
class DrivingModeView:
    state: Optional[DrivingState]
    phase: Phase
    listening: bool
    transcript: str
    actions: Tuple[str, ...] = field(default_factory=tuple)
    brightness: Optional[float] = None
    opacity: float = 1.0
    status: str = ""

class DrivingModeController:
    """
    Hands-free supervisory state machine: WAITING, SLEEP and READY.

    Touches, voice commands and the inactivity timer move it between states;
    every transition is applied synchronously before any awaited side effect,
    so two stimuli never interleave on the state. Side-effect failures
    (haptics, brightness) are logged and otherwise ignored.

    The engine is borrowed, not owned: the controller starts and stops it but
    never closes it.
    """

    def __init__(
        self,
        bus: EventBus,
        engine: VoiceCommandEngine,
        haptics,
        brightness,
        navigator,
        renderer: Callable[[DrivingModeView], Any] = None,
        language: Language = None,
        timings: DrivingTimings = None,
        capture_target: str = "/(tabs)/capture",
        home_target: str = "/(tabs)",
    ):
        self.bus = bus
        self.engine = engine
        self.haptics = haptics
        self.brightness = brightness
        self.navigator = navigator
        self.renderer = renderer
        self.language = language or engine.language
        self.timings = timings or DrivingTimings()
        self.capture_target = capture_target
        self.home_target = home_target

        self._state: Optional[DrivingState] = None
        self._phase = Phase.UNINITIALIZED
        self._inactivity_handle: Optional[asyncio.TimerHandle] = None
        self._exit_handle: Optional[asyncio.TimerHandle] = None
        self._subscriptions: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self._sleep_task: Optional[asyncio.Task] = None
        self._level: Optional[float] = None
        self._original_level: Optional[float] = None

    # ── read-only status ─────────────────────────────────────────────
    @property
    def current_state(self) -> Optional[DrivingState]:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_listening(self) -> bool:
        return self.engine.is_listening

    @property
    def last_transcript(self) -> str:
        return self.engine.last_transcript

    @property
    def inactivity_armed(self) -> bool:
        return self._inactivity_handle is not None

    @property
    def view(self) -> DrivingModeView:
        state = self._state
        return DrivingModeView(
            state=state,
            phase=self._phase,
            listening=self.is_listening,
            transcript=self.last_transcript,
            actions=ACTIONS.get(state, ()) if self._phase is Phase.ACTIVE else (),
            brightness=self._level,
            opacity=0.3 if state is DrivingState.SLEEP else 1.0,
            status=status_label(self.language, state.name) if state else "",
        )

    # ── lifecycle ────────────────────────────────────────────────────
    async def initialize(self) -> bool:
        """Arm listening, then greet. Runs once per controller."""
        if self._phase is not Phase.UNINITIALIZED:
            logger.debug("initialize() ignored in phase %s", self._phase.value)
            return False
        self._phase = Phase.INITIALIZING
        logger.info("Initializing driving mode")

        self._subscriptions = [
            self.engine.on_command(self._on_command_event),
            self.engine.on_listening(self._on_listening_event),
            self.engine.on_transcript(self._on_transcript_event),
        ]
        self._original_level = await self._read_brightness()

        await asyncio.sleep(self.timings.mount_delay)
        if self._phase is not Phase.INITIALIZING:
            return False

        # listen first, speak after the settle delay
        if not await self.engine.start(continuous=True, language=self.language):
            logger.warning("Voice recognition unavailable; driving mode continues without it")
        await asyncio.sleep(self.timings.settle_delay)
        if self._phase is not Phase.INITIALIZING:
            return False

        self._phase = Phase.ACTIVE
        self._enter(DrivingState.WAITING, Trigger.INIT)
        await self._set_brightness(self.timings.brightness_active)
        self._say("welcome")
        return True

    async def close(self) -> None:
        """Host teardown: silence, release the microphone, restore the screen."""
        if self._phase is Phase.CLOSED:
            return
        self._phase = Phase.CLOSED
        self._cancel_inactivity()
        if self._exit_handle is not None:
            self._exit_handle.cancel()
            self._exit_handle = None
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        await self.engine.stop_speaking()
        await self.engine.stop()
        await self._restore_brightness()
        logger.info("Driving mode closed")

    async def drain(self) -> None:
        """Wait for fire-and-forget side effects (prompts) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── stimuli ──────────────────────────────────────────────────────
    async def touch(self) -> None:
        """Touch anywhere on the screen."""
        if self._phase is not Phase.ACTIVE:
            logger.debug("Touch ignored in phase %s", self._phase.value)
            return
        if self._state is DrivingState.SLEEP:
            logger.info("Waking from sleep")
            self._enter(DrivingState.WAITING, Trigger.TOUCH)
            await self._pulse(Pulse.MEDIUM)
            await self._set_brightness(self.timings.brightness_active)
            if self._sleep_task is not None and not self._sleep_task.done():
                # the recognizer must be released before it is reopened
                await asyncio.gather(self._sleep_task, return_exceptions=True)
            await self.engine.start(continuous=True, language=self.language)
        elif self._state is DrivingState.WAITING:
            await self._arm_ready(Trigger.TOUCH)
        else:
            logger.debug("Touch on background ignored in %s", self._state.name)

    async def touch_capture(self) -> None:
        """Touch on the capture control."""
        if self._phase is Phase.ACTIVE and self._state is DrivingState.READY:
            await self._request_capture(via_voice=False)

    async def touch_cancel(self) -> None:
        """Touch on the cancel control."""
        if self._phase is Phase.ACTIVE and self._state is DrivingState.READY:
            await self._cancel_ready(Trigger.TOUCH)

    async def request_exit(self) -> None:
        """Exit control or programmatic exit."""
        await self._exit(Trigger.PROGRAMMATIC)

    async def handle_command(self, command: Command) -> None:
        logger.info("Driving-mode command %s in %s", command.name,
                    self._state.name if self._state else self._phase.value)
        if command is Command.EXIT:
            await self._exit(Trigger.VOICE)
            return
        if self._phase is not Phase.ACTIVE:
            logger.debug("Command %s ignored in phase %s", command.name, self._phase.value)
            return

        if command is Command.EVALUATE:
            if self._state is DrivingState.WAITING:
                await self._arm_ready(Trigger.VOICE)
        elif command is Command.CAPTURE:
            if self._state is DrivingState.READY:
                await self._request_capture(via_voice=True)
            elif self._state is DrivingState.WAITING:
                await self._arm_ready(Trigger.VOICE, then_capture=True)
        elif command is Command.CANCEL:
            if self._state is DrivingState.READY:
                await self._cancel_ready(Trigger.VOICE)
        else:
            logger.debug("No transition for %s in %s", command.name, self._state.name)

    # ── transitions ──────────────────────────────────────────────────
    def _enter(self, state: DrivingState, trigger: str) -> None:
        previous = self._state
        if previous is DrivingState.WAITING and state is not DrivingState.WAITING:
            self._cancel_inactivity()
        self._state = state
        if state is DrivingState.WAITING:
            self._arm_inactivity()
        logger.info("Driving mode %s -> %s (%s)",
                    previous.name if previous else "-", state.name, trigger)
        self.bus.emit(DrivingStateChanged(previous=previous, current=state, trigger=trigger))
        self._render()

    async def _arm_ready(self, trigger: str, then_capture: bool = False) -> None:
        self._enter(DrivingState.READY, trigger)
        await self._pulse(Pulse.SUCCESS)
        await self._set_brightness(self.timings.brightness_ready)
        self._say("ready")
        if then_capture and self._state is DrivingState.READY and self._phase is Phase.ACTIVE:
            await self._request_capture(via_voice=True, pulse=False)

    async def _request_capture(self, via_voice: bool, pulse: bool = True) -> None:
        # hand over to the capture flow; no more transitions after this
        self._phase = Phase.EXITING
        self._render()
        if pulse:
            await self._pulse(Pulse.HEAVY)
        self._navigate(self.capture_target, {"via_voice": via_voice, "driving_mode": True})

    async def _cancel_ready(self, trigger: str) -> None:
        self._enter(DrivingState.WAITING, trigger)
        await self._set_brightness(self.timings.brightness_active)
        self._say("cancelled")

    async def _exit(self, trigger: str) -> None:
        if self._phase not in (Phase.INITIALIZING, Phase.ACTIVE):
            logger.debug("Exit ignored in phase %s", self._phase.value)
            return
        logger.info("Leaving driving mode (%s)", trigger)
        self._phase = Phase.EXITING
        self._cancel_inactivity()
        self._render()
        self._say("exiting")
        await self._restore_brightness()
        await self.engine.stop()
        loop = asyncio.get_running_loop()
        self._exit_handle = loop.call_later(self.timings.exit_delay, self._navigate_home)

    def _navigate_home(self) -> None:
        self._exit_handle = None
        self._navigate(self.home_target, {})

    # ── inactivity timer ─────────────────────────────────────────────
    def _arm_inactivity(self) -> None:
        self._cancel_inactivity()
        loop = asyncio.get_running_loop()
        self._inactivity_handle = loop.call_later(self.timings.inactivity_timeout, self._on_inactivity)

    def _cancel_inactivity(self) -> None:
        if self._inactivity_handle is not None:
            self._inactivity_handle.cancel()
            self._inactivity_handle = None

    def _on_inactivity(self) -> None:
        self._inactivity_handle = None
        if self._phase is not Phase.ACTIVE or self._state is not DrivingState.WAITING:
            return
        logger.info("No activity for %.0fs; going to sleep", self.timings.inactivity_timeout)
        self._enter(DrivingState.SLEEP, Trigger.INACTIVITY)
        self._sleep_task = self._spawn(self._sleep())

    async def _sleep(self) -> None:
        await self._set_brightness(self.timings.brightness_sleep)
        # a touch may already have woken us
        if self._state is DrivingState.SLEEP:
            await self.engine.stop()

    # ── bus handlers ─────────────────────────────────────────────────
    async def _on_command_event(self, ev: CommandDetected) -> None:
        await self.handle_command(ev.command)

    def _on_listening_event(self, ev: ListeningChanged) -> None:
        self._render()

    def _on_transcript_event(self, ev: TranscriptRecognized) -> None:
        self._render()

    # ── side effects ─────────────────────────────────────────────────
    def _say(self, key: str) -> None:
        self._spawn(self.engine.speak(prompt(self.language, key), language=self.language))

    async def _pulse(self, intensity: Pulse) -> None:
        try:
            await self.haptics.pulse(intensity)
        except Exception as e:
            logger.warning("Haptic pulse failed: %s", e)

    async def _set_brightness(self, level: float) -> None:
        try:
            await self.brightness.set_level(level)
            self._level = level
        except Exception as e:
            logger.warning("Could not set brightness to %.2f: %s", level, e)
        self._render()

    async def _read_brightness(self) -> Optional[float]:
        try:
            return await self.brightness.get_level()
        except Exception as e:
            logger.warning("Could not read brightness: %s", e)
            return None

    async def _restore_brightness(self) -> None:
        level = self._original_level
        if level is None:
            level = self.timings.brightness_restore
        await self._set_brightness(level)

    def _navigate(self, target: str, params: dict) -> None:
        try:
            self.navigator.request_navigate(target, params)
        except Exception as e:
            logger.error("Navigation to %s failed: %s", target, e, exc_info=True)

    def _render(self) -> None:
        if self.renderer is None:
            return
        try:
            self.renderer(self.view)
        except Exception as e:
            logger.warning("Render failed: %s", e, exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
