# assistant.py

import asyncio
import logging
import sys

from config import Config
from core.event_bus import EventBus
from audio.audio_module import AudioModule
from driving.controller import DrivingModeController, DrivingModeView, DrivingTimings
from driving.effects import BusNavigator, DbusBrightness, SoundHaptics
from events.events import NavigationRequested, RecognitionError
from voice import language
from voice.stt_module import HttpRecognizer
from voice.tts_module import HttpSpeechSynthesizer
from voice.voice_engine import VoiceCommandEngine, VoiceTimings

logger = logging.getLogger("assistant")

# console stand-ins for the screen's touch targets
KEYS = {
    "": "touch",
    "t": "touch",
    "c": "touch_capture",
    "x": "touch_cancel",
    "q": "request_exit",
}

def render(view: DrivingModeView):
    mic = "🎤" if view.listening else "·"
    logger.info("[%s] %s %s actions=%s brightness=%s heard=%r",
                view.phase.value, view.status or "-", mic, ",".join(view.actions),
                view.brightness, view.transcript)

async def read_touches(controller: DrivingModeController, done: asyncio.Event):
    loop = asyncio.get_running_loop()
    while not done.is_set():
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        action = KEYS.get(line.strip().lower())
        if action is None:
            logger.info("Keys: <enter>/t touch, c capture, x cancel, q exit")
            continue
        await getattr(controller, action)()

async def main():
    config = Config.get_config()
    bus = EventBus()
    audio = AudioModule()
    lang = language.resolve(config["voice"]["language"])

    engine = VoiceCommandEngine(
        bus,
        HttpRecognizer(audio, config),
        HttpSpeechSynthesizer(audio, config),
        language=lang,
        timings=VoiceTimings.from_config(config),
    )
    brightness = DbusBrightness()
    controller = DrivingModeController(
        bus,
        engine,
        haptics=SoundHaptics(audio, config["sounds"]),
        brightness=brightness,
        navigator=BusNavigator(bus),
        renderer=render,
        language=lang,
        timings=DrivingTimings.from_config(config),
        capture_target=config["driving"]["capture_target"],
        home_target=config["driving"]["home_target"],
    )

    done = asyncio.Event()

    def handle_navigation(ev: NavigationRequested):
        print(f"[APP] Navigate to {ev.target} params={ev.params}")
        done.set()

    def handle_error(ev: RecognitionError):
        logger.debug("Recognition error %s %s", ev.code, ev.message)

    bus.subscribe(NavigationRequested, handle_navigation)
    bus.subscribe(RecognitionError, handle_error)

    await controller.initialize()
    touches = asyncio.create_task(read_touches(controller, done))
    try:
        await done.wait()
    finally:
        touches.cancel()
        await controller.close()
        await engine.close()
        brightness.close()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
